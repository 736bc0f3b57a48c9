import io
import json
import socket
from urllib.error import HTTPError, URLError

import pytest

import shelly
from shelly import Outcome, ShellyClient


class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


@pytest.fixture
def requests(monkeypatch):
    """Records requested URLs; each test sets `requests.reply` to a body or an exception."""

    class Recorder:
        urls = []
        timeouts = []
        reply = b"{}"

    def fake_urlopen(req, timeout=None):
        Recorder.urls.append(req.full_url)
        Recorder.timeouts.append(timeout)
        if isinstance(Recorder.reply, BaseException):
            raise Recorder.reply
        body = Recorder.reply if isinstance(Recorder.reply, bytes) else json.dumps(Recorder.reply).encode()
        return FakeResponse(body)

    Recorder.urls = []
    Recorder.timeouts = []
    monkeypatch.setattr(shelly, "urlopen", fake_urlopen)
    return Recorder


def http_error(code):
    return HTTPError("http://x", code, "Bad Request", {}, None)


def test_urls():
    assert shelly.switch_status_url("10.0.0.1", 0) == "http://10.0.0.1/rpc/Switch.GetStatus?id=0"
    assert shelly.switch_set_url("10.0.0.1", 1, True) == "http://10.0.0.1/rpc/Switch.Set?id=1&on=true"
    assert shelly.switch_set_url("10.0.0.1", 1, False) == "http://10.0.0.1/rpc/Switch.Set?id=1&on=false"
    assert shelly.switch_toggle_url("10.0.0.1", 2) == "http://10.0.0.1/rpc/Switch.Toggle?id=2"
    assert shelly.bthome_sensor_url("10.0.0.1", 200) == "http://10.0.0.1/rpc/BTHomeSensor.GetStatus?id=200"


def test_relay_status(requests):
    requests.reply = {"id": 0, "output": True, "apower": 812.4}
    result = ShellyClient(timeout=2).get_relay_status("10.0.0.1", 0)
    assert result.ok
    assert result.data.on is True
    assert result.data.power_watts == 812.4
    assert result.data.raw["id"] == 0
    assert requests.timeouts == [2]


def test_set_relay(requests):
    requests.reply = {"was_on": False}
    result = ShellyClient().set_relay("10.0.0.1", 1, True)
    assert result.ok
    assert result.data == {"was_on": False}
    assert requests.urls == ["http://10.0.0.1/rpc/Switch.Set?id=1&on=true"]


def test_sensor_value(requests):
    requests.reply = {"id": 200, "value": 20.7, "last_updated_ts": 1704103200}
    result = ShellyClient().get_sensor_value("10.0.0.2", 200)
    assert result.ok
    assert result.data.value == 20.7
    assert result.data.timestamp.year == 2024


def test_sensor_without_value(requests):
    requests.reply = {"id": 200, "value": None}
    result = ShellyClient().get_sensor_value("10.0.0.2", 200)
    assert result.outcome is Outcome.UNREACHABLE


@pytest.mark.parametrize("code", [400, 404])
def test_unknown_sensor_id(requests, code):
    requests.reply = http_error(code)
    assert ShellyClient().get_sensor_value("10.0.0.2", 999).outcome is Outcome.SENSOR_NOT_FOUND


def test_http_error_on_relay_is_unreachable(requests):
    requests.reply = http_error(400)
    assert ShellyClient().get_relay_status("10.0.0.1", 7).outcome is Outcome.UNREACHABLE


@pytest.mark.parametrize("exc", [socket.timeout("timed out"), TimeoutError(), URLError(socket.timeout("timed out"))])
def test_timeouts(requests, exc):
    requests.reply = exc
    result = ShellyClient(timeout=0.5).set_relay("10.0.0.1", 0, False)
    assert result.outcome is Outcome.TIMEOUT
    assert "0.5" in result.error


def test_connection_refused(requests):
    requests.reply = URLError(ConnectionRefusedError(111, "Connection refused"))
    result = ShellyClient().toggle_relay("10.0.0.1", 0)
    assert result.outcome is Outcome.UNREACHABLE
    assert "refused" in result.error


def test_invalid_json(requests):
    requests.reply = b"<html>not rpc</html>"
    assert ShellyClient().get_relay_status("10.0.0.1", 0).outcome is Outcome.UNREACHABLE
