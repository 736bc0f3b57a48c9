import json

import pytest

from import_json import clear_all, import_records, read_records

DEVICES = [
    {"id": "a", "name": "Lounge left", "ip": "10.0.0.1", "relayIndex": 0},
    {"id": "c", "name": "Study", "ip": "10.0.0.2", "relayIndex": 0, "btSensorId": 200},
    {"id": "bad", "name": "No relay", "ip": "10.0.0.9"},
]

ROOMS = [
    {
        "roomId": "r1",
        "name": "Lounge",
        "radiatorDeviceIds": ["a"],
        "controlMode": "schedule",
        "schedule": {"mon": [{"startTime": "09:00", "endTime": "17:00", "enabledRadiatorIds": ["a"]}]},
    },
    {"roomId": "r2", "name": "Study", "radiatorDeviceIds": ["c"], "controlMode": "thermostat",
     "sensorDeviceId": "c", "targetTempC": 20},
    {"roomId": "r3", "name": "Hall", "radiatorDeviceIds": ["bad"], "controlMode": "schedule"},
]


def test_read_records(tmp_path):
    path = tmp_path / "devices.json"
    path.write_text(json.dumps(DEVICES))
    assert read_records(path) == DEVICES
    assert read_records(tmp_path / "missing.json") == []

    path.write_text(json.dumps({"id": "a"}))
    with pytest.raises(ValueError):
        read_records(path)


def test_import_skips_invalid_records(registry):
    devices, rooms, errors = import_records(registry, DEVICES, ROOMS)
    assert (devices, rooms) == (2, 2)
    assert len(errors) == 2
    assert errors[0].startswith("device bad")
    assert errors[1].startswith("room r3")
    assert registry.get_room("r2").hysteresis_c == 1.0


def test_reimport_reports_duplicates(registry):
    import_records(registry, DEVICES[:2], ROOMS[:2])
    devices, rooms, errors = import_records(registry, DEVICES[:2], ROOMS[:2])
    assert (devices, rooms) == (0, 0)
    assert len(errors) == 4


def test_clear_all(registry, session_factory):
    import_records(registry, DEVICES[:2], ROOMS[:2])
    clear_all(session_factory)
    assert registry.list_devices() == []
    assert registry.list_rooms() == []
