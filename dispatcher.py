"""Commanded-state cache and relay command dispatch."""

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum

import settings
from registry import Device
from shelly import DeviceResult, Outcome, ShellyClient

logger = logging.getLogger(__name__)

ON = "on"
OFF = "off"


class CommandedStateCache:
    """
    Last state we successfully sent to each device.

    Only written after a command succeeds. A device with no entry has never
    been commanded by this process.
    """

    def __init__(self):
        self._states: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, device_id: str) -> str | None:
        with self._lock:
            return self._states.get(device_id)

    def set(self, device_id: str, state: str):
        if state not in (ON, OFF):
            raise ValueError(f"Invalid state {state!r}")
        with self._lock:
            self._states[device_id] = state

    def forget(self, device_id: str):
        with self._lock:
            self._states.pop(device_id, None)

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return dict(self._states)


class DispatchStatus(Enum):
    UNCHANGED = "unchanged"
    SENT = "sent"
    FAILED = "failed"
    UNKNOWN_DEVICE = "unknown_device"


@dataclass
class DispatchOutcome:
    device_id: str
    desired: str
    status: DispatchStatus
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "deviceId": self.device_id,
            "desired": self.desired,
            "status": self.status.value,
            "error": self.error,
        }


async def call_device(func, *args, deadline: float) -> DeviceResult:
    """
    Run a blocking transport call in a worker thread.

    `deadline` bounds the whole call, while the transport's own timeout applies
    per socket read. An overrun comes back as TIMEOUT and its thread is left to
    finish on its own.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), deadline)
    except asyncio.TimeoutError:
        return DeviceResult.failure(Outcome.TIMEOUT, f"No complete response within {deadline}s")


class Dispatcher:
    """Sends only the relay commands whose desired state differs from the cache."""

    def __init__(self, transport: ShellyClient, cache: CommandedStateCache, max_concurrency: int = 4,
                 deadline: float = settings.DEVICE_TIMEOUT_SEC):
        self.transport = transport
        self.cache = cache
        self.max_concurrency = max_concurrency
        self.deadline = deadline

    async def dispatch(self, desired: dict[str, str], devices: dict[str, Device],
                       limiter: asyncio.Semaphore | None = None) -> list[DispatchOutcome]:
        """One attempt per changed device; failures are retried next tick, not now."""
        limiter = limiter or asyncio.Semaphore(self.max_concurrency)
        logger.debug(f"Applying radiator commands: {desired}")
        return list(await asyncio.gather(*(
            self._apply(device_id, state, devices.get(device_id), limiter)
            for device_id, state in desired.items()
        )))

    async def _apply(self, device_id: str, state: str, device: Device | None,
                     limiter: asyncio.Semaphore) -> DispatchOutcome:
        if self.cache.get(device_id) == state:
            return DispatchOutcome(device_id, state, DispatchStatus.UNCHANGED)

        if device is None:
            logger.error(f"Cannot apply command: Device {device_id} not found")
            return DispatchOutcome(device_id, state, DispatchStatus.UNKNOWN_DEVICE, "Device not found")

        async with limiter:
            logger.info(f"Setting device {device_id} ({device.name}) to {state}")
            try:
                result = await call_device(self.transport.set_relay, device.address, device.relay_index,
                                           state == ON, deadline=self.deadline)
            except Exception as e:
                logger.exception(f"Transport raised while setting {device_id} to {state}")
                result = DeviceResult.failure(Outcome.UNREACHABLE, str(e))

        if not result.ok:
            logger.error(f"Failed to set {device.name} ({device.address}, relay {device.relay_index}) "
                         f"to {state}: {result.outcome.value}: {result.error}")
            return DispatchOutcome(device_id, state, DispatchStatus.FAILED, result.error)

        self.cache.set(device_id, state)
        return DispatchOutcome(device_id, state, DispatchStatus.SENT)
