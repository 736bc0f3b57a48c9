"""
Shelly Gen2 Local RPC Client

Talks to Shelly relays (and the BTHome sensors paired with them) over plain
HTTP GET on the local network. No auth, no acknowledgement beyond the HTTP
status.

Endpoints used:
  /rpc/Switch.GetStatus?id=<relay>         -> {"output": bool, "apower": float, ...}
  /rpc/Switch.Set?id=<relay>&on=true|false -> {"was_on": bool}
  /rpc/Switch.Toggle?id=<relay>            -> {"was_on": bool}
  /rpc/BTHomeSensor.GetStatus?id=<sensor>  -> {"id": int, "value": float, "last_updated_ts": int}

Every call is independent, has its own timeout, and never raises for network
trouble: failures come back as a DeviceResult with a non-OK outcome.

Usage:
    python shelly.py status 192.168.0.40 0
    python shelly.py on 192.168.0.40 0
    python shelly.py off 192.168.0.40 0
    python shelly.py toggle 192.168.0.40 0
    python shelly.py sensor 192.168.0.40 200
"""

import json
import socket
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

DEFAULT_TIMEOUT_SEC = 5.0


class Outcome(Enum):
    OK = "ok"
    UNREACHABLE = "unreachable"
    TIMEOUT = "timeout"
    SENSOR_NOT_FOUND = "sensor_not_found"


@dataclass
class DeviceResult:
    """Result of a single device call."""

    outcome: Outcome
    data: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK

    @classmethod
    def success(cls, data=None) -> "DeviceResult":
        return cls(Outcome.OK, data=data)

    @classmethod
    def failure(cls, outcome: Outcome, error: str) -> "DeviceResult":
        return cls(outcome, error=error)


@dataclass
class RelayStatus:
    on: bool
    power_watts: float
    raw: dict


@dataclass
class SensorReading:
    value: float
    timestamp: datetime | None
    raw: dict


def switch_status_url(ip: str, relay_index: int) -> str:
    return f"http://{ip}/rpc/Switch.GetStatus?id={relay_index}"


def switch_set_url(ip: str, relay_index: int, on: bool) -> str:
    return f"http://{ip}/rpc/Switch.Set?id={relay_index}&on={'true' if on else 'false'}"


def switch_toggle_url(ip: str, relay_index: int) -> str:
    return f"http://{ip}/rpc/Switch.Toggle?id={relay_index}"


def bthome_sensor_url(ip: str, sensor_index: int) -> str:
    return f"http://{ip}/rpc/BTHomeSensor.GetStatus?id={sensor_index}"


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return True
    return isinstance(exc, URLError) and isinstance(exc.reason, (socket.timeout, TimeoutError))


class ShellyClient:
    """
    Device transport for Shelly Gen2 relays.

    Args:
        timeout: seconds allowed per HTTP call
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SEC):
        self.timeout = timeout

    def _get(self, url: str, sensor: bool = False) -> DeviceResult:
        """GET a Shelly RPC URL and decode the JSON body."""
        try:
            req = Request(url, method="GET")
            with urlopen(req, timeout=self.timeout) as response:
                body = response.read().decode("utf-8")
        except HTTPError as e:
            # Shelly answers 400/404 when asked for a component id it doesn't have
            if sensor and e.code in (400, 404):
                return DeviceResult.failure(Outcome.SENSOR_NOT_FOUND, f"HTTP {e.code}")
            return DeviceResult.failure(Outcome.UNREACHABLE, f"HTTP {e.code}")
        except Exception as e:
            if _is_timeout(e):
                return DeviceResult.failure(Outcome.TIMEOUT, f"Timed out after {self.timeout}s")
            reason = e.reason if isinstance(e, URLError) else e
            return DeviceResult.failure(Outcome.UNREACHABLE, f"Connection error: {reason}")

        if not body:
            return DeviceResult.success({})
        try:
            return DeviceResult.success(json.loads(body))
        except ValueError:
            return DeviceResult.failure(Outcome.UNREACHABLE, f"Invalid JSON response: {body[:80]!r}")

    def get_relay_status(self, ip: str, relay_index: int) -> DeviceResult:
        """Read relay output and active power. data is a RelayStatus."""
        result = self._get(switch_status_url(ip, relay_index))
        if not result.ok:
            return result
        raw = result.data if isinstance(result.data, dict) else {}
        return DeviceResult.success(RelayStatus(
            on=bool(raw.get("output", False)),
            power_watts=float(raw.get("apower") or 0),
            raw=raw,
        ))

    def set_relay(self, ip: str, relay_index: int, on: bool) -> DeviceResult:
        """Switch a relay on or off."""
        return self._get(switch_set_url(ip, relay_index, on))

    def toggle_relay(self, ip: str, relay_index: int) -> DeviceResult:
        """Flip a relay."""
        return self._get(switch_toggle_url(ip, relay_index))

    def get_sensor_value(self, ip: str, sensor_index: int) -> DeviceResult:
        """Read a BTHome sensor. data is a SensorReading."""
        result = self._get(bthome_sensor_url(ip, sensor_index), sensor=True)
        if not result.ok:
            return result
        raw = result.data if isinstance(result.data, dict) else {}
        value = raw.get("value")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return DeviceResult.failure(Outcome.UNREACHABLE, f"Sensor {sensor_index} returned no value")
        ts = raw.get("last_updated_ts")
        timestamp = datetime.fromtimestamp(ts, tz=timezone.utc) if isinstance(ts, (int, float)) else None
        return DeviceResult.success(SensorReading(value=float(value), timestamp=timestamp, raw=raw))


def main():
    if len(sys.argv) < 4:
        print("Usage:")
        print("  python shelly.py status <ip> <relay>  - Relay output and power")
        print("  python shelly.py on <ip> <relay>      - Turn relay on")
        print("  python shelly.py off <ip> <relay>     - Turn relay off")
        print("  python shelly.py toggle <ip> <relay>  - Toggle relay")
        print("  python shelly.py sensor <ip> <id>     - Read BTHome sensor")
        return

    cmd, ip, index = sys.argv[1].lower(), sys.argv[2], int(sys.argv[3])
    client = ShellyClient()

    if cmd == "status":
        result = client.get_relay_status(ip, index)
        if result.ok:
            print(f"Relay {index}: {'ON' if result.data.on else 'OFF'} ({result.data.power_watts}W)")
    elif cmd in ("on", "off"):
        result = client.set_relay(ip, index, cmd == "on")
        if result.ok:
            print(f"Relay {index} turned {cmd.upper()}")
    elif cmd == "toggle":
        result = client.toggle_relay(ip, index)
        if result.ok:
            print(f"Relay {index} toggled")
    elif cmd == "sensor":
        result = client.get_sensor_value(ip, index)
        if result.ok:
            print(f"Sensor {index}: {result.data.value} (at {result.data.timestamp})")
    else:
        print(f"Unknown command: {cmd}")
        return

    if not result.ok:
        print(f"ERROR ({result.outcome.value}): {result.error}")


if __name__ == "__main__":
    main()
