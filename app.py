"""
Shelly radiator heating backend.

Stores devices and rooms, exposes manual relay/sensor access and boost
controls, and runs the heating control loop in the background.

Usage:
    python app.py
    uvicorn app:app --host 0.0.0.0 --port 3001
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

import settings
from boost import BoostStore
from control_loop import ControlLoop, local_now
from dispatcher import CommandedStateCache, call_device
from errors import HeatingError, InvalidInput, NotFound
from models import init_db
from registry import Registry
from shelly import DeviceResult, Outcome, ShellyClient

logger = logging.getLogger(__name__)

# Database setup
engine, SessionLocal = init_db(settings.DATABASE_URL)

# Process-wide components, wired once
registry = Registry(SessionLocal)
boosts = BoostStore(registry.find_room, clock=local_now)
state_cache = CommandedStateCache()
transport = ShellyClient(timeout=settings.DEVICE_TIMEOUT_SEC)
control_loop = ControlLoop(registry, boosts, state_cache, transport)

control_task = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the control loop on startup, stop it on shutdown."""
    global control_task

    settings.configure_logging()
    logger.info(f"Using database: {settings.DATABASE_URL}")
    logger.info(f"Control loop: {'enabled' if registry.control_loop_enabled() else 'DISABLED'}")

    control_task = asyncio.create_task(control_loop.run())

    yield

    if control_task:
        control_task.cancel()
        try:
            await control_task
        except asyncio.CancelledError:
            pass


app = FastAPI(title="Shelly Heating", lifespan=lifespan)


@app.exception_handler(HeatingError)
async def heating_error_handler(request: Request, exc: HeatingError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


async def _call(func, *args) -> DeviceResult:
    return await call_device(func, *args, deadline=settings.DEVICE_TIMEOUT_SEC)


def _device_error(result: DeviceResult, what: str, device) -> JSONResponse:
    logger.error(f"Error {what} for {device.name} ({device.address}, relay {device.relay_index}): "
                 f"{result.outcome.value}: {result.error}")
    status = 504 if result.outcome is Outcome.TIMEOUT else 502
    return JSONResponse(status_code=status, content={
        "message": f"Failed {what} on Shelly device {device.name}",
        "error": result.error,
        "outcome": result.outcome.value,
    })


# =============================================================================
# DEVICES
# =============================================================================

@app.get("/devices")
async def list_devices():
    return [d.to_dict() for d in registry.list_devices()]


@app.post("/devices", status_code=201)
async def create_device(data: dict):
    return registry.add_device(data).to_dict()


@app.get("/devices/{device_id}")
async def get_device(device_id: str):
    return registry.get_device(device_id).to_dict()


@app.put("/devices/{device_id}")
async def update_device(device_id: str, data: dict):
    before = registry.get_device(device_id)
    device = registry.update_device(device_id, data)
    if (device.address, device.relay_index) != (before.address, before.relay_index):
        # Cached state belonged to the old relay; the next tick commands the new one
        state_cache.forget(device_id)
    return device.to_dict()


@app.delete("/devices/{device_id}", status_code=204)
async def delete_device(device_id: str):
    registry.delete_device(device_id)
    state_cache.forget(device_id)
    return Response(status_code=204)


@app.get("/devices/{device_id}/status")
async def device_status(device_id: str):
    """Raw Switch.GetStatus from the relay."""
    device = registry.get_device(device_id)
    result = await _call(transport.get_relay_status, device.address, device.relay_index)
    if not result.ok:
        return _device_error(result, "fetching status", device)
    return result.data.raw


@app.get("/devices/{device_id}/power")
async def device_power(device_id: str):
    """Just the current power draw."""
    device = registry.get_device(device_id)
    result = await _call(transport.get_relay_status, device.address, device.relay_index)
    if not result.ok:
        return _device_error(result, "fetching power", device)
    return {"id": device.id, "name": device.name, "apower": result.data.power_watts}


@app.get("/devices/{device_id}/sensor")
async def device_sensor(device_id: str):
    """BTHome sensor reading for a device that has one."""
    device = registry.get_device(device_id)
    if not device.has_sensor:
        raise NotFound("No BT Sensor ID defined for this device")
    result = await _call(transport.get_sensor_value, device.address, device.sensor_index)
    if result.outcome is Outcome.SENSOR_NOT_FOUND:
        raise NotFound(f"BT Sensor with ID {device.sensor_index} not found on device {device.name}")
    if not result.ok:
        return _device_error(result, "fetching BT sensor status", device)
    return result.data.raw


@app.post("/devices/{device_id}/control")
async def control_device(device_id: str, data: dict):
    """Manual on/off. The control loop will override it when its plan changes."""
    state = data.get("state")
    if state not in ("on", "off"):
        raise InvalidInput("Invalid 'state' value. Use 'on' or 'off'.")
    device = registry.get_device(device_id)
    result = await _call(transport.set_relay, device.address, device.relay_index, state == "on")
    if not result.ok:
        return _device_error(result, "controlling relay", device)
    logger.info(f"Manual command: {device.name} (ID: {device_id}) -> {state}")
    return await device_status(device_id)


@app.post("/devices/{device_id}/toggle")
async def toggle_device(device_id: str):
    device = registry.get_device(device_id)
    result = await _call(transport.toggle_relay, device.address, device.relay_index)
    if not result.ok:
        return _device_error(result, "toggling relay", device)
    logger.info(f"Manual toggle: {device.name} (ID: {device_id})")
    return await device_status(device_id)


# =============================================================================
# BOOST
# =============================================================================
# Declared before /rooms/{room_id} so "boosted" isn't taken for a room id

@app.get("/rooms/boosted")
async def boosted_rooms():
    """All currently boosted rooms."""
    now = local_now()
    boosts.prune(now)
    return {
        room_id: {
            "until": b.until.isoformat(),
            "radiatorIds": list(b.radiator_ids),
            "remainingMinutes": b.remaining_minutes(now),
        }
        for room_id, b in boosts.get_all_active(now).items()
    }


@app.post("/rooms/{room_id}/boost")
async def start_boost(room_id: str, data: dict):
    boost = boosts.start(room_id, data.get("durationMinutes"), data.get("radiatorIds"))
    now = local_now()
    return {
        "roomId": room_id,
        "boostedRadiators": list(boost.radiator_ids),
        "boostUntil": boost.until.isoformat(),
        "remainingMinutes": boost.remaining_minutes(now),
    }


@app.post("/rooms/{room_id}/cancel-boost")
async def cancel_boost(room_id: str):
    boosts.cancel(room_id)
    return {"message": "Boost cancelled successfully"}


@app.get("/rooms/{room_id}/boost-status")
async def boost_status(room_id: str):
    now = local_now()
    boosts.prune(now)
    boost = boosts.get_active(room_id, now)
    if boost is None:
        return {"boosted": False}
    return {
        "boosted": True,
        "until": boost.until.isoformat(),
        "radiatorIds": list(boost.radiator_ids),
        "remainingMinutes": boost.remaining_minutes(now),
    }


# =============================================================================
# ROOMS
# =============================================================================

@app.get("/rooms")
async def list_rooms():
    return [r.to_dict() for r in registry.list_rooms()]


@app.post("/rooms", status_code=201)
async def create_room(data: dict):
    return registry.add_room(data).to_dict()


@app.get("/rooms/{room_id}")
async def get_room(room_id: str):
    return registry.get_room(room_id).to_dict()


@app.put("/rooms/{room_id}")
async def replace_room(room_id: str, data: dict):
    return registry.replace_room(room_id, data).to_dict()


@app.put("/rooms/{room_id}/target")
async def set_room_target(room_id: str, data: dict):
    return registry.set_target(room_id, data.get("targetTempC")).to_dict()


@app.put("/rooms/{room_id}/schedule")
async def set_room_schedule(room_id: str, data: dict):
    return registry.set_schedule(room_id, data.get("schedule")).to_dict()


@app.delete("/rooms/{room_id}", status_code=204)
async def delete_room(room_id: str):
    registry.delete_room(room_id)
    boosts.discard(room_id)
    return Response(status_code=204)


# =============================================================================
# CONTROL LOOP
# =============================================================================

@app.get("/api/status")
async def get_status():
    """Latest tick, what we believe each relay is set to, and active boosts."""
    now = local_now()
    boosts.prune(now)
    report = control_loop.last_report
    return {
        "controlLoopEnabled": registry.control_loop_enabled(),
        "intervalSec": control_loop.interval,
        "ticks": control_loop.ticks,
        "tickInProgress": control_loop.tick_in_progress,
        "lastTick": report.to_dict() if report else None,
        "commandedStates": state_cache.snapshot(),
        "boosts": {room_id: b.to_dict(now) for room_id, b in boosts.get_all_active(now).items()},
    }


@app.get("/api/settings")
async def get_settings():
    return {"controlLoopEnabled": registry.control_loop_enabled()}


@app.post("/api/settings/control-loop")
async def set_control_loop(data: dict):
    """Master kill switch: when off, ticks still plan but send nothing."""
    enabled = data.get("enabled", True)
    if not isinstance(enabled, bool):
        raise InvalidInput("'enabled' must be true or false")
    return {"controlLoopEnabled": registry.set_control_loop_enabled(enabled)}


@app.post("/api/tick")
async def run_tick():
    """Run a tick now instead of waiting for the timer."""
    report = await control_loop.tick()
    return report.to_dict()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
