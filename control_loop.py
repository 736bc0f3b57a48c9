"""
Radiator heating control loop.

Every tick, for every room:
  - schedule rooms: radiators enabled by the active time slot are on
  - thermostat rooms: enabled radiators are on while the room needs heat,
    judged against a hysteresis band around the target
  - boosted radiators are on, whatever the above says
  - no active slot (and no boost) means off

Planning (reconcile) is a pure function. Sensor reads happen before it and
relay commands after it, and only changed states are sent.

Usage:
    python control_loop.py [--interval 10] [--once]
"""

import argparse
import asyncio
import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Mapping

import settings
from boost import Boost, BoostStore
from dispatcher import OFF, ON, CommandedStateCache, DispatchOutcome, DispatchStatus, Dispatcher, call_device
from errors import TickInProgress
from models import init_db
from registry import WEEKDAYS, Device, Registry, Room, TimeSlot, format_hhmm
from shelly import ShellyClient

logger = logging.getLogger(__name__)


def local_now() -> datetime:
    """Wall-clock now in the configured zone (host local time when unset)."""
    return datetime.now(settings.LOCAL_TZ)


# =============================================================================
# PLANNING
# =============================================================================

@dataclass
class RoomDecision:
    """How one room's radiators were decided on this tick."""

    room_id: str
    control_mode: str
    active_slot: TimeSlot | None = None
    boosted: tuple[str, ...] = ()
    temperature: float | None = None
    target_temp_c: float | None = None
    heating_needed: bool | None = None
    desired: dict[str, str] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        slot = self.active_slot
        return {
            "roomId": self.room_id,
            "controlMode": self.control_mode,
            "activeSlot": f"{format_hhmm(slot.start)}-{format_hhmm(slot.end)}" if slot else None,
            "boostedRadiatorIds": list(self.boosted),
            "currentTempC": self.temperature,
            "targetTempC": self.target_temp_c,
            "heatingNeeded": self.heating_needed,
            "desired": dict(self.desired),
            "errors": list(self.errors),
        }


@dataclass
class Plan:
    """Desired state for every radiator, plus how each room got there."""

    desired: dict[str, str] = field(default_factory=dict)
    rooms: dict[str, RoomDecision] = field(default_factory=dict)

    def add(self, decision: RoomDecision):
        self.rooms[decision.room_id] = decision
        self.desired.update(decision.desired)

    def force_off(self, room_id: str, radiator_ids, error: str, control_mode: str = "unknown"):
        decision = RoomDecision(room_id, control_mode, errors=[error])
        decision.desired = {radiator_id: OFF for radiator_id in radiator_ids}
        self.add(decision)

    @property
    def errors(self) -> list[str]:
        return [f"{room_id}: {e}" for room_id, d in self.rooms.items() for e in d.errors]


def reconcile(rooms: list[Room], devices: Mapping[str, Device], boosts: Mapping[str, Boost],
              now: datetime, last_state: Mapping[str, str],
              temperatures: Mapping[str, float] | None = None) -> Plan:
    """
    Decide the desired state of every radiator.

    Args:
        rooms: parsed room configuration
        devices: device id -> Device
        boosts: room id -> active Boost (already pruned)
        now: local wall-clock time for schedule lookup
        last_state: device id -> last commanded "on"/"off" (hysteresis memory)
        temperatures: room id -> current °C for thermostat rooms whose sensor
            read succeeded; missing means "don't heat"
    """
    temperatures = temperatures or {}
    weekday = WEEKDAYS[now.weekday()]
    minute = now.hour * 60 + now.minute
    plan = Plan()

    for room in rooms:
        try:
            decision = _plan_room(room, devices, boosts.get(room.room_id), weekday, minute,
                                  now, last_state, temperatures)
        except Exception as e:
            logger.exception(f"Error processing room {room.room_id}")
            plan.force_off(room.room_id, room.radiator_ids, f"{type(e).__name__}: {e}", room.control_mode)
            continue
        plan.add(decision)

    return plan


def _plan_room(room: Room, devices: Mapping[str, Device], boost: Boost | None, weekday: str,
               minute: int, now: datetime, last_state: Mapping[str, str],
               temperatures: Mapping[str, float]) -> RoomDecision:
    active_slot = room.active_slot(weekday, minute)
    if boost is not None and not boost.is_active(now):
        boost = None

    decision = RoomDecision(
        room.room_id,
        room.control_mode,
        active_slot=active_slot,
        boosted=boost.radiator_ids if boost else (),
    )
    enabled = active_slot.enabled_radiator_ids if active_slot else ()
    logger.debug(f"Room {room.room_id}: Active Slot Enabled Radiators: [{', '.join(enabled)}]")

    heating_needed = False
    if room.is_thermostat:
        heating_needed = _heating_needed(room, devices, active_slot, last_state, temperatures, decision)

    for radiator_id in room.radiator_ids:
        if radiator_id not in devices:
            message = f"radiator device '{radiator_id}' not found"
            logger.error(f"Room {room.room_id}: {message}; forcing it off")
            decision.errors.append(message)
            decision.desired[radiator_id] = OFF
            continue

        if boost is not None and boost.covers(radiator_id):
            state = ON
            logger.debug(f"Room {room.room_id}: Radiator {radiator_id} is in BOOST mode")
        elif active_slot is None:
            state = OFF
        elif room.is_thermostat:
            state = ON if active_slot.enables(radiator_id) and heating_needed else OFF
        else:
            state = ON if active_slot.enables(radiator_id) else OFF
        decision.desired[radiator_id] = state

    return decision


def _heating_needed(room: Room, devices: Mapping[str, Device], active_slot: TimeSlot | None,
                    last_state: Mapping[str, str], temperatures: Mapping[str, float],
                    decision: RoomDecision) -> bool:
    """Thermostat decision with hysteresis. Anything missing means no heat."""
    if not room.sensor_device_id:
        logger.warning(f"Room {room.room_id}: No sensor configured for thermostat mode.")
        decision.heating_needed = False
        return False

    sensor = devices.get(room.sensor_device_id)
    if sensor is None or not sensor.has_sensor:
        message = f"sensor device '{room.sensor_device_id}' not found or has no btSensorId"
        logger.error(f"Room {room.room_id}: {message}")
        decision.errors.append(message)
        decision.heating_needed = False
        return False

    target = room.target_temp_c
    if active_slot is not None and active_slot.target_temp_c is not None:
        target = active_slot.target_temp_c
    decision.target_temp_c = target

    current = temperatures.get(room.room_id)
    if current is None:
        logger.warning(f"Room {room.room_id}: Could not read temp; not heating this tick.")
        decision.heating_needed = False
        return False
    decision.temperature = current

    lower = target - room.hysteresis_c
    upper = target + room.hysteresis_c
    if current < lower:
        needed = True
    elif current > upper:
        needed = False
    else:
        # Inside the band: keep doing what we were doing
        needed = any(last_state.get(r) == ON for r in room.radiator_ids)

    logger.info(f"Room {room.room_id} (Thermo): Temp={current}°C, Target={target}°C "
                f"[{lower}, {upper}] => HeatingNeeded={needed}")
    decision.heating_needed = needed
    return needed


# =============================================================================
# SENSOR READS
# =============================================================================

async def read_room_temperatures(rooms: list[Room], devices: Mapping[str, Device],
                                 transport: ShellyClient, limiter: asyncio.Semaphore,
                                 deadline: float = settings.DEVICE_TIMEOUT_SEC) -> dict[str, float]:
    """Read each thermostat sensor once, concurrently. Failed reads are left out."""
    sensors: dict[str, Device] = {}
    for room in rooms:
        if not room.is_thermostat or not room.sensor_device_id:
            continue
        sensor = devices.get(room.sensor_device_id)
        if sensor is not None and sensor.has_sensor:
            sensors[sensor.id] = sensor

    async def read(sensor: Device) -> float | None:
        async with limiter:
            try:
                result = await call_device(transport.get_sensor_value, sensor.address, sensor.sensor_index,
                                           deadline=deadline)
            except Exception:
                logger.exception(f"Transport raised while reading sensor on {sensor.id}")
                return None
        if not result.ok:
            logger.error(f"Error fetching sensor {sensor.sensor_index} on {sensor.id} ({sensor.address}): "
                         f"{result.outcome.value}: {result.error}")
            return None
        return result.data.value

    ids = list(sensors)
    values = await asyncio.gather(*(read(sensors[i]) for i in ids))
    readings = dict(zip(ids, values))

    temperatures = {}
    for room in rooms:
        value = readings.get(room.sensor_device_id) if room.is_thermostat else None
        if value is not None:
            temperatures[room.room_id] = value
    return temperatures


# =============================================================================
# LOOP
# =============================================================================

@dataclass
class TickReport:
    started_at: datetime
    finished_at: datetime
    plan: Plan
    outcomes: list[DispatchOutcome]
    expired_boosts: list[str]
    dispatch_enabled: bool

    def count(self, status: DispatchStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    def to_dict(self) -> dict:
        return {
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat(),
            "dispatchEnabled": self.dispatch_enabled,
            "desired": dict(self.plan.desired),
            "rooms": {room_id: d.to_dict() for room_id, d in self.plan.rooms.items()},
            "outcomes": [o.to_dict() for o in self.outcomes],
            "expiredBoosts": list(self.expired_boosts),
            "errors": self.plan.errors,
        }


class ControlLoop:
    """Runs serialized ticks: prune boosts, read sensors, plan, dispatch."""

    def __init__(self, registry: Registry, boosts: BoostStore, cache: CommandedStateCache,
                 transport: ShellyClient, interval: float = settings.CONTROL_LOOP_INTERVAL_SEC,
                 max_concurrency: int = settings.MAX_CONCURRENT_DEVICE_CALLS,
                 deadline: float = settings.DEVICE_TIMEOUT_SEC,
                 clock: Callable[[], datetime] = local_now):
        self.registry = registry
        self.boosts = boosts
        self.cache = cache
        self.transport = transport
        self.interval = interval
        self.max_concurrency = max_concurrency
        self.clock = clock
        self.deadline = deadline
        self.dispatcher = Dispatcher(transport, cache, max_concurrency, deadline)
        self.last_report: TickReport | None = None
        self.ticks = 0
        self._tick_lock = asyncio.Lock()

    @property
    def tick_in_progress(self) -> bool:
        return self._tick_lock.locked()

    async def tick(self) -> TickReport:
        """Run one tick. Raises TickInProgress instead of overlapping a running one."""
        if self._tick_lock.locked():
            raise TickInProgress("A heating control tick is already running")
        async with self._tick_lock:
            return await self._tick()

    async def _tick(self) -> TickReport:
        started = self.clock()
        self.ticks += 1
        logger.debug(f"Running heating control loop (tick {self.ticks})...")

        # Expired boosts must be gone before anything reads them
        expired = self.boosts.prune(started)
        snapshot = self.registry.snapshot()
        limiter = asyncio.Semaphore(self.max_concurrency)

        temperatures = await read_room_temperatures(snapshot.rooms, snapshot.devices, self.transport, limiter,
                                                     self.deadline)
        plan = reconcile(
            snapshot.rooms,
            snapshot.devices,
            self.boosts.get_all_active(started),
            started,
            self.cache.snapshot(),
            temperatures,
        )
        for rejected in snapshot.rejected:
            # Radiators shared with a valid room keep that room's plan
            shared = [r for r in rejected.radiator_ids if r in plan.desired]
            if shared:
                logger.warning(f"Room {rejected.room_id} is invalid; leaving [{', '.join(shared)}] "
                               f"to the valid rooms that also control them")
            orphaned = [r for r in rejected.radiator_ids if r not in plan.desired]
            plan.force_off(rejected.room_id, orphaned, rejected.error)

        enabled = self.registry.control_loop_enabled()
        if enabled:
            outcomes = await self.dispatcher.dispatch(plan.desired, snapshot.devices, limiter)
        else:
            logger.info("Control loop disabled; planned states not dispatched")
            outcomes = []

        report = TickReport(started, self.clock(), plan, outcomes, expired, enabled)
        self.last_report = report
        logger.info(f"Heating control loop finished: {len(plan.desired)} radiators, "
                    f"{report.count(DispatchStatus.SENT)} sent, {report.count(DispatchStatus.FAILED)} failed")
        return report

    async def run(self):
        """Tick forever. A tick always finishes before the next sleep starts."""
        logger.info(f"Heating control loop scheduled to run every {self.interval} seconds.")
        while True:
            try:
                await self.tick()
            except TickInProgress:
                logger.warning("Skipping scheduled tick: previous tick still running")
            except Exception:
                logger.exception("Heating control tick failed")
            await asyncio.sleep(self.interval)


def build_control_loop(session_factory, interval: float = settings.CONTROL_LOOP_INTERVAL_SEC) -> ControlLoop:
    """Wire a ControlLoop with the real Shelly transport."""
    registry = Registry(session_factory)
    return ControlLoop(
        registry,
        BoostStore(registry.find_room, clock=local_now),
        CommandedStateCache(),
        ShellyClient(timeout=settings.DEVICE_TIMEOUT_SEC),
        interval=interval,
    )


async def run_until_signalled(loop: ControlLoop):
    stop = asyncio.Event()
    event_loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        event_loop.add_signal_handler(sig, stop.set)

    task = asyncio.create_task(loop.run())
    await stop.wait()
    logger.info("Shutting down...")
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    logger.info("Control loop stopped")


def main():
    parser = argparse.ArgumentParser(description="Headless radiator heating control loop")
    parser.add_argument("--interval", type=float, default=settings.CONTROL_LOOP_INTERVAL_SEC,
                        help=f"Seconds between ticks (default: {settings.CONTROL_LOOP_INTERVAL_SEC})")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    args = parser.parse_args()

    settings.configure_logging()
    _, SessionLocal = init_db(settings.DATABASE_URL)
    loop = build_control_loop(SessionLocal, interval=args.interval)

    if args.once:
        report = asyncio.run(loop.tick())
        for device_id, state in sorted(report.plan.desired.items()):
            print(f"{device_id}: {state}")
        for error in report.plan.errors:
            print(f"ERROR {error}")
        return

    asyncio.run(run_until_signalled(loop))


if __name__ == "__main__":
    main()
