"""
Device and room registries.

Rooms and devices live in the database as loosely-typed columns (JSON text for
radiator lists and schedules). Everything is parsed and validated into the
typed records below at this boundary, so the control loop only ever sees
configuration it can trust.

Wire format (API and legacy JSON files) keeps the original camelCase keys:

    device: {"id", "name", "ip", "relayIndex", "btSensorId"?}
    room:   {"roomId", "name", "radiatorDeviceIds", "controlMode",
             "sensorDeviceId", "targetTempC", "hysteresisC", "schedule"}
    slot:   {"startTime": "HH:MM", "endTime": "HH:MM",
             "enabledRadiatorIds": [...], "targetTempC"?}
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field

import settings
from errors import ConfigReferenceError, Conflict, InvalidInput, NotFound
from models import AppSettings, DeviceConfig, RoomConfig

logger = logging.getLogger(__name__)

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")  # datetime.weekday() order
MODE_SCHEDULE = "schedule"
MODE_THERMOSTAT = "thermostat"
CONTROL_MODES = (MODE_SCHEDULE, MODE_THERMOSTAT)
MINUTES_PER_DAY = 24 * 60

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")


# =============================================================================
# TYPED RECORDS
# =============================================================================

@dataclass(frozen=True)
class Device:
    id: str
    name: str
    address: str
    relay_index: int
    sensor_index: int | None = None

    @property
    def has_sensor(self) -> bool:
        return self.sensor_index is not None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "ip": self.address,
            "relayIndex": self.relay_index,
        }
        if self.sensor_index is not None:
            data["btSensorId"] = self.sensor_index
        return data


@dataclass(frozen=True)
class TimeSlot:
    """Half-open [start, end) window in minutes since local midnight."""

    start: int
    end: int
    enabled_radiator_ids: tuple[str, ...] = ()
    target_temp_c: float | None = None

    def contains(self, minute: int) -> bool:
        # A slot whose end isn't after its start never matches (no midnight spans)
        return self.start <= minute < self.end

    def enables(self, radiator_id: str) -> bool:
        return radiator_id in self.enabled_radiator_ids

    def to_dict(self) -> dict:
        data = {
            "startTime": format_hhmm(self.start),
            "endTime": format_hhmm(self.end),
            "enabledRadiatorIds": list(self.enabled_radiator_ids),
        }
        if self.target_temp_c is not None:
            data["targetTempC"] = self.target_temp_c
        return data


@dataclass(frozen=True)
class Room:
    room_id: str
    name: str
    radiator_ids: tuple[str, ...]
    control_mode: str
    sensor_device_id: str | None = None
    target_temp_c: float | None = None
    hysteresis_c: float | None = None
    schedule: dict[str, tuple[TimeSlot, ...]] | None = field(default=None, hash=False)

    @property
    def is_thermostat(self) -> bool:
        return self.control_mode == MODE_THERMOSTAT

    def slots_for(self, weekday: str) -> tuple[TimeSlot, ...]:
        if not self.schedule:
            return ()
        return self.schedule.get(weekday, ())

    def active_slot(self, weekday: str, minute: int) -> TimeSlot | None:
        """First slot of the day containing `minute`, in stored order."""
        for slot in self.slots_for(weekday):
            if slot.contains(minute):
                return slot
        return None

    def to_dict(self) -> dict:
        return {
            "roomId": self.room_id,
            "name": self.name,
            "radiatorDeviceIds": list(self.radiator_ids),
            "controlMode": self.control_mode,
            "sensorDeviceId": self.sensor_device_id,
            "targetTempC": self.target_temp_c,
            "hysteresisC": self.hysteresis_c,
            "schedule": schedule_to_dict(self.schedule),
        }


@dataclass
class RejectedRoom:
    """A stored room that failed validation; its radiators get planned off."""

    room_id: str
    radiator_ids: tuple[str, ...]
    error: str


@dataclass
class Snapshot:
    """Consistent view of the configuration for one tick."""

    devices: dict[str, Device]
    rooms: list[Room]
    rejected: list[RejectedRoom] = field(default_factory=list)


# =============================================================================
# PARSING
# =============================================================================

def parse_hhmm(value, field_name: str, allow_end_of_day: bool = False) -> int:
    """'HH:MM' -> minutes since midnight. '24:00' is accepted for slot ends."""
    if not isinstance(value, str):
        raise InvalidInput(f"{field_name} must be a 'HH:MM' string")
    match = _HHMM.match(value.strip())
    if not match:
        raise InvalidInput(f"{field_name} must be a 'HH:MM' string, got {value!r}")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if allow_end_of_day and hours == 24 and minutes == 0:
        return MINUTES_PER_DAY
    if hours > 23 or minutes > 59:
        raise InvalidInput(f"{field_name} is not a valid time: {value!r}")
    return hours * 60 + minutes


def format_hhmm(minute: int) -> str:
    return f"{minute // 60:02d}:{minute % 60:02d}"


def _number(value, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInput(f"{field_name} must be a number")
    try:
        number = float(value)
    except OverflowError:
        number = math.inf
    if not math.isfinite(number):
        raise InvalidInput(f"{field_name} must be a finite number")
    return number


def _index(value, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidInput(f"Invalid {field_name}. Must be a non-negative integer.")
    return value


def _text(data: dict, key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f"Missing required field: {key}")
    return value


def _id_list(value, field_name: str) -> tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise InvalidInput(f"{field_name} must be an array of device ids")
    # Keep the author's order, drop repeats
    return tuple(dict.fromkeys(value))


def parse_slot(data, where: str) -> TimeSlot:
    if not isinstance(data, dict):
        raise InvalidInput(f"{where} must be an object")
    start = parse_hhmm(data.get("startTime"), f"{where}.startTime")
    end = parse_hhmm(data.get("endTime"), f"{where}.endTime", allow_end_of_day=True)
    enabled = _id_list(data.get("enabledRadiatorIds", []), f"{where}.enabledRadiatorIds")
    target = data.get("targetTempC")
    if target is not None:
        target = _number(target, f"{where}.targetTempC")
    if end <= start:
        logger.warning(f"{where} ends before it starts ({format_hhmm(start)}-{format_hhmm(end)}); it will never be active")
    return TimeSlot(start=start, end=end, enabled_radiator_ids=enabled, target_temp_c=target)


def parse_schedule(data) -> dict[str, tuple[TimeSlot, ...]] | None:
    if data is None:
        return None
    if not isinstance(data, dict):
        raise InvalidInput("schedule must be an object keyed by weekday")
    schedule = {}
    for day, slots in data.items():
        key = day.lower() if isinstance(day, str) else day
        if key not in WEEKDAYS:
            raise InvalidInput(f"Unknown schedule day {day!r}; use one of {', '.join(WEEKDAYS)}")
        if not isinstance(slots, list):
            raise InvalidInput(f"schedule.{key} must be an array of time slots")
        schedule[key] = tuple(parse_slot(slot, f"schedule.{key}[{i}]") for i, slot in enumerate(slots))
    return schedule


def schedule_to_dict(schedule: dict[str, tuple[TimeSlot, ...]] | None) -> dict | None:
    if schedule is None:
        return None
    return {day: [slot.to_dict() for slot in slots] for day, slots in schedule.items()}


def parse_device(data: dict) -> Device:
    """Validate a device record in wire format."""
    if not isinstance(data, dict):
        raise InvalidInput("Device must be an object")
    for key in ("id", "name", "ip", "relayIndex"):
        if data.get(key) is None:
            raise InvalidInput("Missing required fields: id, name, ip, relayIndex")
    sensor = data.get("btSensorId")
    return Device(
        id=_text(data, "id"),
        name=_text(data, "name"),
        address=_text(data, "ip"),
        relay_index=_index(data["relayIndex"], "relayIndex"),
        sensor_index=_index(sensor, "btSensorId") if sensor is not None else None,
    )


def parse_room(data: dict, devices: dict[str, Device] | None = None) -> Room:
    """
    Validate a room record in wire format.

    When `devices` is given, radiator and sensor references are checked against
    it (write path). Snapshots skip the check: a dangling reference there only
    turns the affected radiator off.
    """
    if not isinstance(data, dict):
        raise InvalidInput("Room must be an object")
    if any(data.get(key) is None for key in ("roomId", "name", "radiatorDeviceIds", "controlMode")):
        raise InvalidInput("Missing required fields: roomId, name, radiatorDeviceIds, controlMode")

    radiator_ids = _id_list(data["radiatorDeviceIds"], "radiatorDeviceIds")
    if not radiator_ids:
        raise InvalidInput("radiatorDeviceIds must not be empty")

    mode = data["controlMode"]
    if mode not in CONTROL_MODES:
        raise InvalidInput("controlMode must be 'thermostat' or 'schedule'")

    if devices is not None:
        for device_id in radiator_ids:
            if device_id not in devices:
                raise ConfigReferenceError(f"Radiator device with id '{device_id}' not found")

    sensor_device_id = target = hysteresis = None
    if mode == MODE_THERMOSTAT:
        sensor_device_id = data.get("sensorDeviceId")
        if not sensor_device_id or data.get("targetTempC") is None:
            raise InvalidInput("Thermostat mode requires sensorDeviceId and targetTempC")
        target = _number(data["targetTempC"], "targetTempC")
        hysteresis = data.get("hysteresisC")
        hysteresis = settings.DEFAULT_HYSTERESIS_C if hysteresis is None else _number(hysteresis, "hysteresisC")
        if hysteresis <= 0:
            raise InvalidInput("hysteresisC must be positive")
        if devices is not None:
            sensor = devices.get(sensor_device_id)
            if sensor is None:
                raise ConfigReferenceError(f"Sensor device with id '{sensor_device_id}' not found")
            if not sensor.has_sensor:
                raise ConfigReferenceError(f"Sensor device '{sensor_device_id}' does not have a btSensorId defined")

    return Room(
        room_id=_text(data, "roomId"),
        name=_text(data, "name"),
        radiator_ids=radiator_ids,
        control_mode=mode,
        sensor_device_id=sensor_device_id,
        target_temp_c=target,
        hysteresis_c=hysteresis,
        schedule=parse_schedule(data.get("schedule")),
    )


# =============================================================================
# ROW <-> RECORD
# =============================================================================

def _device_from_row(row: DeviceConfig) -> Device:
    return Device(
        id=row.id,
        name=row.name,
        address=row.ip,
        relay_index=row.relay_index,
        sensor_index=row.bt_sensor_id,
    )


def _row_to_wire(row: RoomConfig) -> dict:
    return {
        "roomId": row.room_id,
        "name": row.name,
        "radiatorDeviceIds": json.loads(row.radiator_ids_json),
        "controlMode": row.control_mode,
        "sensorDeviceId": row.sensor_device_id,
        "targetTempC": row.target_temp_c,
        "hysteresisC": row.hysteresis_c,
        "schedule": json.loads(row.schedule_json) if row.schedule_json else None,
    }


def _room_from_row(row: RoomConfig) -> Room:
    try:
        return parse_room(_row_to_wire(row))
    except ValueError as e:
        raise InvalidInput(f"Stored room '{row.room_id}' has corrupt JSON: {e}") from e


def _store_room(row: RoomConfig, room: Room):
    row.name = room.name
    row.control_mode = room.control_mode
    row.radiator_ids_json = json.dumps(list(room.radiator_ids))
    row.sensor_device_id = room.sensor_device_id
    row.target_temp_c = room.target_temp_c
    row.hysteresis_c = room.hysteresis_c
    schedule = schedule_to_dict(room.schedule)
    row.schedule_json = json.dumps(schedule) if schedule is not None else None


def _stored_radiator_ids(row: RoomConfig) -> tuple[str, ...]:
    """Best-effort radiator list for a row that doesn't parse."""
    try:
        ids = json.loads(row.radiator_ids_json or "[]")
    except ValueError:
        return ()
    if not isinstance(ids, list):
        return ()
    return tuple(i for i in ids if isinstance(i, str))


# =============================================================================
# REGISTRY
# =============================================================================

class Registry:
    """CRUD over devices and rooms, plus the per-tick snapshot."""

    def __init__(self, session_factory):
        self.SessionLocal = session_factory

    # --- devices -------------------------------------------------------------

    def _devices(self, db) -> dict[str, Device]:
        return {row.id: _device_from_row(row) for row in db.query(DeviceConfig).all()}

    def list_devices(self) -> list[Device]:
        db = self.SessionLocal()
        try:
            return [_device_from_row(row) for row in db.query(DeviceConfig).order_by(DeviceConfig.id).all()]
        finally:
            db.close()

    def get_device(self, device_id: str) -> Device:
        db = self.SessionLocal()
        try:
            row = db.get(DeviceConfig, device_id)
            if row is None:
                raise NotFound("Device not found")
            return _device_from_row(row)
        finally:
            db.close()

    def add_device(self, data: dict) -> Device:
        device = parse_device(data)
        db = self.SessionLocal()
        try:
            if db.get(DeviceConfig, device.id) is not None:
                raise Conflict(f"Device with id '{device.id}' already exists")
            db.add(DeviceConfig(
                id=device.id,
                name=device.name,
                ip=device.address,
                relay_index=device.relay_index,
                bt_sensor_id=device.sensor_index,
            ))
            db.commit()
        finally:
            db.close()
        logger.info(f"Added device: {device.name} (ID: {device.id})")
        return device

    def update_device(self, device_id: str, data: dict) -> Device:
        """Partial update; btSensorId=None removes the sensor."""
        if not isinstance(data, dict):
            raise InvalidInput("Device update must be an object")
        db = self.SessionLocal()
        try:
            row = db.get(DeviceConfig, device_id)
            if row is None:
                raise NotFound("Device not found")
            merged = _device_from_row(row).to_dict()
            merged.update({k: v for k, v in data.items() if k in ("name", "ip", "relayIndex", "btSensorId")})
            merged["id"] = device_id
            device = parse_device(merged)
            if row.bt_sensor_id is not None and device.sensor_index is None:
                self._check_not_sensor_for_room(db, device_id)
            row.name = device.name
            row.ip = device.address
            row.relay_index = device.relay_index
            row.bt_sensor_id = device.sensor_index
            db.commit()
        finally:
            db.close()
        logger.info(f"Updated device: {device.name} (ID: {device_id})")
        return device

    def _check_not_sensor_for_room(self, db, device_id: str):
        for row in db.query(RoomConfig).filter(RoomConfig.sensor_device_id == device_id).all():
            if row.control_mode == MODE_THERMOSTAT:
                raise Conflict(f"Device '{device_id}' is the sensor for room '{row.room_id}'")

    def delete_device(self, device_id: str):
        db = self.SessionLocal()
        try:
            row = db.get(DeviceConfig, device_id)
            if row is None:
                raise NotFound("Device not found")
            for room in db.query(RoomConfig).all():
                if device_id in _stored_radiator_ids(room) or room.sensor_device_id == device_id:
                    raise Conflict(f"Device '{device_id}' is still used by room '{room.room_id}'")
            db.delete(row)
            db.commit()
        finally:
            db.close()
        logger.info(f"Deleted device: {device_id}")

    # --- rooms ---------------------------------------------------------------

    def list_rooms(self) -> list[Room]:
        return self.snapshot().rooms

    def get_room(self, room_id: str) -> Room:
        db = self.SessionLocal()
        try:
            row = db.get(RoomConfig, room_id)
            if row is None:
                raise NotFound("Room not found")
            return _room_from_row(row)
        finally:
            db.close()

    def find_room(self, room_id: str) -> Room | None:
        """Like get_room, but None for unknown rooms."""
        try:
            return self.get_room(room_id)
        except NotFound:
            return None

    def add_room(self, data: dict) -> Room:
        db = self.SessionLocal()
        try:
            room = parse_room(data, self._devices(db))
            if db.get(RoomConfig, room.room_id) is not None:
                raise Conflict(f"Room with roomId '{room.room_id}' already exists")
            row = RoomConfig(room_id=room.room_id)
            _store_room(row, room)
            db.add(row)
            db.commit()
        finally:
            db.close()
        logger.info(f"Created room: {room.name} (ID: {room.room_id})")
        return room

    def replace_room(self, room_id: str, data: dict) -> Room:
        if not isinstance(data, dict):
            raise InvalidInput("Room must be an object")
        db = self.SessionLocal()
        try:
            row = db.get(RoomConfig, room_id)
            if row is None:
                raise NotFound("Room not found")
            room = parse_room({**data, "roomId": room_id}, self._devices(db))
            _store_room(row, room)
            db.commit()
        finally:
            db.close()
        logger.info(f"Updated room: {room.name} (ID: {room_id})")
        return room

    def _patch_room(self, room_id: str, changes: dict) -> Room:
        db = self.SessionLocal()
        try:
            row = db.get(RoomConfig, room_id)
            if row is None:
                raise NotFound("Room not found")
            room = parse_room({**_row_to_wire(row), **changes}, self._devices(db))
            _store_room(row, room)
            db.commit()
            return room
        finally:
            db.close()

    def set_target(self, room_id: str, target_temp_c) -> Room:
        if target_temp_c is None:
            raise InvalidInput("Missing targetTempC")
        target = _number(target_temp_c, "targetTempC")
        if not self.get_room(room_id).is_thermostat:
            raise InvalidInput("Can only set target temperature for rooms in thermostat mode")
        room = self._patch_room(room_id, {"targetTempC": target})
        logger.info(f"Updated target temperature for room {room_id} to {target}°C")
        return room

    def set_schedule(self, room_id: str, schedule) -> Room:
        if not isinstance(schedule, dict):
            raise InvalidInput("Invalid schedule provided")
        room = self._patch_room(room_id, {"schedule": schedule})
        logger.info(f"Updated schedule for room {room_id}")
        return room

    def delete_room(self, room_id: str):
        db = self.SessionLocal()
        try:
            row = db.get(RoomConfig, room_id)
            if row is None:
                raise NotFound("Room not found")
            db.delete(row)
            db.commit()
        finally:
            db.close()
        logger.info(f"Deleted room: {room_id}")

    # --- control loop --------------------------------------------------------

    def snapshot(self) -> Snapshot:
        """Read every device and room once. Rooms that fail validation are rejected, not raised."""
        db = self.SessionLocal()
        try:
            devices = self._devices(db)
            rooms, rejected = [], []
            for row in db.query(RoomConfig).order_by(RoomConfig.room_id).all():
                try:
                    rooms.append(_room_from_row(row))
                except InvalidInput as e:
                    logger.error(f"Room {row.room_id}: invalid stored configuration: {e.message}")
                    rejected.append(RejectedRoom(row.room_id, _stored_radiator_ids(row), e.message))
            return Snapshot(devices=devices, rooms=rooms, rejected=rejected)
        finally:
            db.close()

    def control_loop_enabled(self) -> bool:
        db = self.SessionLocal()
        try:
            row = db.get(AppSettings, 1)
            if row is None or row.control_loop_enabled is None:
                return True
            return row.control_loop_enabled
        finally:
            db.close()

    def set_control_loop_enabled(self, enabled: bool) -> bool:
        db = self.SessionLocal()
        try:
            row = db.get(AppSettings, 1)
            if row is None:
                row = AppSettings(id=1)
                db.add(row)
            row.control_loop_enabled = bool(enabled)
            db.commit()
        finally:
            db.close()
        logger.info(f"Control loop {'enabled' if enabled else 'DISABLED'}")
        return bool(enabled)
