import os
import tempfile
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta

# Point the app at a throwaway database before anything imports settings
_TMP_DIR = tempfile.mkdtemp(prefix="shelly-heating-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/app.db"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from boost import BoostStore
from control_loop import ControlLoop
from dispatcher import CommandedStateCache
from models import Base
from registry import Registry
from shelly import DeviceResult, Outcome, RelayStatus, SensorReading

# 2024-01-01 was a Monday
MONDAY_10AM = datetime(2024, 1, 1, 10, 0)


class FakeClock:
    """Callable clock the tests can move."""

    def __init__(self, now: datetime = MONDAY_10AM):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeTransport:
    """In-memory stand-in for ShellyClient."""

    def __init__(self):
        self.relays: dict[tuple[str, int], bool] = {}
        self.power: dict[tuple[str, int], float] = {}
        self.sensors: dict[tuple[str, int], float] = {}
        self.failures: dict[tuple[str, int], Outcome] = {}
        self.calls: list[tuple] = []
        # Seconds each call blocks its worker thread, to exercise concurrency limits
        self.delay = 0.0
        self.in_flight = 0
        self.peak_in_flight = 0
        self._lock = threading.Lock()

    @contextmanager
    def _busy(self):
        with self._lock:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            yield
        finally:
            with self._lock:
                self.in_flight -= 1

    def fail(self, ip: str, index: int, outcome: Outcome = Outcome.TIMEOUT):
        self.failures[(ip, index)] = outcome

    def recover(self, ip: str, index: int):
        self.failures.pop((ip, index), None)

    def _failure(self, ip, index):
        outcome = self.failures.get((ip, index))
        if outcome is not None:
            return DeviceResult.failure(outcome, f"simulated {outcome.value}")
        return None

    def set_calls(self) -> list[tuple]:
        return [c for c in self.calls if c[0] == "set_relay"]

    def get_relay_status(self, ip, relay_index):
        with self._busy():
            self.calls.append(("get_relay_status", ip, relay_index))
            failure = self._failure(ip, relay_index)
            if failure:
                return failure
            on = self.relays.get((ip, relay_index), False)
            power = self.power.get((ip, relay_index), 0.0)
            return DeviceResult.success(RelayStatus(on, power, {"id": relay_index, "output": on, "apower": power}))

    def set_relay(self, ip, relay_index, on):
        with self._busy():
            self.calls.append(("set_relay", ip, relay_index, on))
            failure = self._failure(ip, relay_index)
            if failure:
                return failure
            was_on = self.relays.get((ip, relay_index), False)
            self.relays[(ip, relay_index)] = on
            return DeviceResult.success({"was_on": was_on})

    def toggle_relay(self, ip, relay_index):
        with self._busy():
            self.calls.append(("toggle_relay", ip, relay_index))
            failure = self._failure(ip, relay_index)
            if failure:
                return failure
            was_on = self.relays.get((ip, relay_index), False)
            self.relays[(ip, relay_index)] = not was_on
            return DeviceResult.success({"was_on": was_on})

    def get_sensor_value(self, ip, sensor_index):
        with self._busy():
            self.calls.append(("get_sensor_value", ip, sensor_index))
            failure = self._failure(ip, sensor_index)
            if failure:
                return failure
            if (ip, sensor_index) not in self.sensors:
                return DeviceResult.failure(Outcome.SENSOR_NOT_FOUND, "HTTP 400")
            value = self.sensors[(ip, sensor_index)]
            return DeviceResult.success(SensorReading(value, None, {"id": sensor_index, "value": value}))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def registry(session_factory):
    return Registry(session_factory)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def boost_store(registry, clock):
    return BoostStore(registry.find_room, clock=clock)


@pytest.fixture
def cache():
    return CommandedStateCache()


@pytest.fixture
def loop(registry, boost_store, cache, transport, clock):
    return ControlLoop(registry, boost_store, cache, transport, interval=0.01, max_concurrency=2, clock=clock)


@pytest.fixture
def seeded(registry):
    """Two radiators, one relay that also carries a sensor, and the rooms from the docs."""
    registry.add_device({"id": "a", "name": "Lounge left", "ip": "10.0.0.1", "relayIndex": 0})
    registry.add_device({"id": "b", "name": "Lounge right", "ip": "10.0.0.1", "relayIndex": 1})
    registry.add_device({"id": "c", "name": "Study", "ip": "10.0.0.2", "relayIndex": 0, "btSensorId": 200})
    registry.add_room({
        "roomId": "r1",
        "name": "Lounge",
        "radiatorDeviceIds": ["a", "b"],
        "controlMode": "schedule",
        "schedule": {"mon": [{"startTime": "09:00", "endTime": "17:00", "enabledRadiatorIds": ["a"]}]},
    })
    registry.add_room({
        "roomId": "r2",
        "name": "Study",
        "radiatorDeviceIds": ["c"],
        "controlMode": "thermostat",
        "sensorDeviceId": "c",
        "targetTempC": 20,
        "hysteresisC": 1,
        "schedule": {"mon": [{"startTime": "00:00", "endTime": "24:00", "enabledRadiatorIds": ["c"]}]},
    })
    return registry
