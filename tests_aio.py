import asyncio
import datetime
import logging
import struct
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock, call, patch

from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer
import pytest
import pytest_asyncio

from lamplighter import base_device
from lamplighter.base_device import ZERO, BaseDevice, DeviceConnection
from lamplighter.cli import async_setup_devices
from lamplighter.config import parse_config
from lamplighter.const import (
    ARM_TRANSITION,
    DEFAULT_POWER_TRANSITION,
    DISPATCH_MAX_SLEEP,
    ECHO_RETRY_BACKOFF,
    MAX_UINT16,
    NEVER_TIME,
    ORACLE_RETRY_DELAY,
    STEP_CONNECT,
    STEP_ECHO,
    STEP_RESET_COLOR,
    STEP_SET_COLOR,
    STEP_TIMEOUT,
)
from lamplighter.dispatcher import Dispatcher
from lamplighter.exceptions import (
    OracleUnavailable,
    ProtocolMismatch,
    TransitionError,
    TransportFailure,
    TransportTimeout,
)
from lamplighter.job import Job
from lamplighter.lifx import AIOLifxBulb
from lamplighter.protocol import (
    MSG_ACKNOWLEDGEMENT,
    MSG_ECHO_REQUEST,
    MSG_ECHO_RESPONSE,
    MSG_GET_LABEL,
    MSG_GET_POWER,
    MSG_GET_VERSION,
    MSG_LIGHT_GET,
    MSG_LIGHT_SET_COLOR,
    MSG_LIGHT_SET_POWER,
    MSG_STATE_LABEL,
    MSG_STATE_POWER,
    MSG_STATE_UNHANDLED,
    MSG_STATE_VERSION,
    ProtocolLIFX,
    construct_light_state,
    parse_message,
)
from lamplighter.schedule import CronSchedule, Schedule, SolarSchedule
from lamplighter.shelly import AIOShellySwitch
from lamplighter.solar import Location, SolarEvent, SolarEvents, SolarOracle
from lamplighter.tasmota import AIOTasmotaSwitch
from lamplighter.utils import ColorState
from lamplighter.web import create_app

UTC = datetime.timezone.utc
NOW = datetime.datetime(2024, 3, 10, 19, 0, tzinfo=UTC)
TARGET_COLOR = ColorState.from_human(brightness=80, kelvin=2700)
FIVE_SECONDS = datetime.timedelta(seconds=5)
MAC = "d0:73:d5:01:02:03"


class FakeConnection(DeviceConnection):
    """Records every capability call."""

    def __init__(self, power=False, echo_errors=None, errors=None):
        self.power = power
        self.color = ColorState(0, 0, 0, 3500)
        self.echo_errors = list(echo_errors or [])
        self.errors = dict(errors or {})
        self.calls = []
        self.closed = False

    def _check(self, name):
        if name in self.errors:
            raise self.errors[name]

    async def async_echo(self, payload=b""):
        self.calls.append(("echo",))
        if self.echo_errors:
            raise self.echo_errors.pop(0)

    async def async_get_power(self):
        self.calls.append(("get_power",))
        self._check("get_power")
        return self.power

    async def async_get_color(self):
        self.calls.append(("get_color",))
        return self.color

    async def async_set_power(self, on, duration=ZERO):
        self.calls.append(("set_power", on, duration))
        self._check("set_power")
        self.power = on

    async def async_set_color(self, color, duration):
        self.calls.append(("set_color", color, duration))
        self._check("set_color")
        self.color = color

    async def async_close(self):
        self.closed = True


class FakeDevice(BaseDevice):
    device_type = "fake"

    def __init__(self, conn=None, connect_error=None, label="porch"):
        super().__init__(label, "127.0.0.1")
        self.conn = conn or FakeConnection()
        self.connect_error = connect_error

    async def async_connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        return self.conn


@pytest.fixture
def mock_backoff():
    with patch.object(base_device, "async_linear_backoff") as backoff:
        yield backoff


@pytest.mark.asyncio
async def test_transition_off_only_powers_down():
    conn = FakeConnection(power=True)
    device = FakeDevice(conn)
    await device.async_transition(ColorState.from_human(brightness=0), FIVE_SECONDS)
    assert conn.calls == [("echo",), ("set_power", False, FIVE_SECONDS)]
    assert conn.closed


@pytest.mark.asyncio
async def test_transition_device_off_arms_before_power_on():
    conn = FakeConnection(power=False)
    device = FakeDevice(conn)
    await device.async_transition(TARGET_COLOR, FIVE_SECONDS)
    assert conn.calls == [
        ("echo",),
        ("get_power",),
        ("set_color", TARGET_COLOR._replace(brightness=0), ARM_TRANSITION),
        ("set_power", True, ZERO),
        ("set_color", TARGET_COLOR, FIVE_SECONDS),
    ]
    assert conn.closed


@pytest.mark.asyncio
async def test_transition_device_on_sets_color_only():
    conn = FakeConnection(power=True)
    device = FakeDevice(conn)
    await device.async_transition(TARGET_COLOR, FIVE_SECONDS)
    assert conn.calls == [
        ("echo",),
        ("get_power",),
        ("set_color", TARGET_COLOR, FIVE_SECONDS),
    ]


@pytest.mark.asyncio
async def test_echo_retries_timeouts_with_linear_backoff(mock_backoff):
    conn = FakeConnection(
        power=True, echo_errors=[TransportTimeout("no answer")] * 4
    )
    device = FakeDevice(conn)
    await device.async_transition(TARGET_COLOR, FIVE_SECONDS)
    assert conn.calls.count(("echo",)) == 5
    assert conn.calls[-1] == ("set_color", TARGET_COLOR, FIVE_SECONDS)
    assert mock_backoff.await_args_list == [
        call(1, ECHO_RETRY_BACKOFF),
        call(2, ECHO_RETRY_BACKOFF),
        call(3, ECHO_RETRY_BACKOFF),
        call(4, ECHO_RETRY_BACKOFF),
    ]


@pytest.mark.asyncio
async def test_echo_gives_up_after_five_timeouts(mock_backoff):
    conn = FakeConnection(echo_errors=[TransportTimeout("no answer")] * 5)
    device = FakeDevice(conn)
    with pytest.raises(TransitionError) as exc_info:
        await device.async_transition(TARGET_COLOR, FIVE_SECONDS)
    assert exc_info.value.step == STEP_ECHO
    assert exc_info.value.label == "porch"
    assert exc_info.value.is_timeout
    assert conn.calls == [("echo",)] * 5
    assert mock_backoff.await_count == 4
    assert conn.closed


@pytest.mark.asyncio
async def test_echo_other_errors_abort_immediately(mock_backoff):
    conn = FakeConnection(echo_errors=[TransportFailure("connection refused")])
    device = FakeDevice(conn)
    with pytest.raises(TransitionError) as exc_info:
        await device.async_transition(TARGET_COLOR, FIVE_SECONDS)
    assert exc_info.value.step == STEP_ECHO
    assert not exc_info.value.is_timeout
    assert conn.calls == [("echo",)]
    mock_backoff.assert_not_awaited()


@pytest.mark.asyncio
async def test_connect_failure():
    device = FakeDevice(connect_error=TransportFailure("no route to host"))
    with pytest.raises(TransitionError) as exc_info:
        await device.async_transition(TARGET_COLOR, FIVE_SECONDS)
    assert exc_info.value.step == STEP_CONNECT
    assert str(exc_info.value) == "porch: connect: no route to host"


@pytest.mark.asyncio
async def test_failed_step_is_named():
    conn = FakeConnection(errors={"set_color": ProtocolMismatch("unhandled")})
    device = FakeDevice(conn)
    with pytest.raises(TransitionError) as exc_info:
        await device.async_transition(TARGET_COLOR, FIVE_SECONDS)
    assert exc_info.value.step == STEP_RESET_COLOR
    assert isinstance(exc_info.value.cause, ProtocolMismatch)
    assert ("set_power", True, ZERO) not in conn.calls
    assert conn.closed

    conn = FakeConnection(power=True, errors={"set_color": TransportFailure("x")})
    with pytest.raises(TransitionError) as exc_info:
        await FakeDevice(conn).async_transition(TARGET_COLOR, FIVE_SECONDS)
    assert exc_info.value.step == STEP_SET_COLOR


@pytest.mark.asyncio
async def test_transition_deadline():
    conn = FakeConnection()

    async def _hang():
        await asyncio.sleep(10)

    conn.async_get_power = _hang
    device = FakeDevice(conn)
    with patch.object(base_device, "TRANSITION_TIMEOUT", 0.01):
        with pytest.raises(TransitionError) as exc_info:
            await device.async_transition(TARGET_COLOR, FIVE_SECONDS)
    assert exc_info.value.step == STEP_TIMEOUT
    assert exc_info.value.is_timeout
    assert conn.closed


@pytest.mark.asyncio
async def test_status():
    conn = FakeConnection(power=True)
    conn.color = TARGET_COLOR
    status = await FakeDevice(conn).async_status()
    assert status == {
        "power": True,
        "hue": 0.0,
        "saturation": 0.0,
        "brightness": 80.0,
        "kelvin": 2700,
    }
    assert conn.calls == [("get_power",), ("get_color",)]
    assert conn.closed


class FixedSchedule(Schedule):
    def __init__(self, instants, pending_retry=False):
        self.instants = list(instants)
        self.retry = pending_retry
        self.calls = []

    def __str__(self):
        return "fixed"

    def next(self, now):
        self.calls.append(now)
        if self.instants:
            return self.instants.pop(0)
        return NEVER_TIME

    @property
    def pending_retry(self):
        return self.retry


@pytest.mark.asyncio
async def test_job_runs_transition():
    device = FakeDevice(FakeConnection(power=True))
    job = Job(device, TARGET_COLOR, FIVE_SECONDS, FixedSchedule([]))
    assert str(job) == "porch [fixed]"
    await job.async_run()
    assert device.conn.calls[-1] == ("set_color", TARGET_COLOR, FIVE_SECONDS)


@pytest.mark.asyncio
async def test_job_logs_failures(caplog):
    caplog.set_level(logging.INFO)
    device = FakeDevice(connect_error=TransportFailure("unreachable"))
    job = Job(device, TARGET_COLOR, FIVE_SECONDS, FixedSchedule([]))
    await job.async_run()
    assert "porch [fixed]: transition failed: porch: connect: unreachable" in (
        caplog.text
    )

    with patch.object(
        device, "async_transition", AsyncMock(side_effect=RuntimeError("boom"))
    ):
        await job.async_run()
    assert "unexpected error during transition" in caplog.text


def test_job_rejects_negative_transition():
    with pytest.raises(ValueError):
        Job(FakeDevice(), TARGET_COLOR, -FIVE_SECONDS, FixedSchedule([]))


def _mock_job(schedule):
    job = MagicMock()
    job.schedule = schedule
    job.async_run = AsyncMock()
    return job


@pytest.mark.asyncio
async def test_dispatcher_fires_due_jobs():
    dispatcher = Dispatcher(clock=lambda: NOW)
    tomorrow = NOW + datetime.timedelta(days=1)
    due = _mock_job(FixedSchedule([tomorrow]))
    later = _mock_job(FixedSchedule([]))
    due_entry = dispatcher.add_job(due)
    later_entry = dispatcher.add_job(later)
    due_entry.next = NOW
    later_entry.next = NOW + datetime.timedelta(seconds=10)

    assert dispatcher.dispatch_due(NOW) == 10.0
    await dispatcher.async_stop()

    due.async_run.assert_awaited_once()
    later.async_run.assert_not_awaited()
    assert due_entry.next == tomorrow
    assert due.schedule.calls == [NOW]
    assert later.schedule.calls == []


@pytest.mark.asyncio
async def test_dispatcher_does_not_fire_on_retry_instants():
    dispatcher = Dispatcher(clock=lambda: NOW)
    retry_at = NOW + ORACLE_RETRY_DELAY
    job = _mock_job(FixedSchedule([retry_at], pending_retry=True))
    entry = dispatcher.add_job(job)
    entry.next = NOW

    assert dispatcher.dispatch_due(NOW) == ORACLE_RETRY_DELAY.total_seconds()
    await dispatcher.async_stop()
    job.async_run.assert_not_awaited()
    assert entry.next == retry_at


@pytest.mark.asyncio
async def test_dispatcher_skips_disabled_entries():
    dispatcher = Dispatcher(clock=lambda: NOW)
    job = _mock_job(FixedSchedule([]))
    entry = dispatcher.add_job(job)
    assert entry.next == NEVER_TIME

    assert dispatcher.dispatch_due(NOW) == DISPATCH_MAX_SLEEP
    await dispatcher.async_stop()
    job.async_run.assert_not_awaited()
    assert job.schedule.calls == []


class FailingOracle(SolarOracle):
    def __init__(self):
        self.calls = 0

    def get_solar_events(self, location, when):
        self.calls += 1
        raise OracleUnavailable("service unavailable")


class EveningOracle(SolarOracle):
    def get_solar_events(self, location, when):
        day = when.date()
        return SolarEvents(
            datetime.datetime.combine(day, datetime.time(6), tzinfo=when.tzinfo),
            datetime.datetime.combine(day, datetime.time(18), tzinfo=when.tzinfo),
        )


@pytest.mark.asyncio
async def test_dispatcher_with_unavailable_oracle():
    oracle = FailingOracle()
    schedule = SolarSchedule(
        Location(40.7, -74.0), SolarEvent.SUNSET, datetime.timedelta(0), oracle
    )
    job = _mock_job(schedule)
    now = NOW
    dispatcher = Dispatcher(clock=lambda: now)
    entry = dispatcher.add_job(job)
    entry.next = schedule.next(now)
    assert entry.next == now + ORACLE_RETRY_DELAY

    for _ in range(5):
        now = entry.next
        dispatcher.dispatch_due(now)
    assert entry.next == NEVER_TIME
    assert oracle.calls == 5

    now += datetime.timedelta(days=1)
    assert dispatcher.dispatch_due(now) == DISPATCH_MAX_SLEEP
    await dispatcher.async_stop()
    job.async_run.assert_not_awaited()
    assert oracle.calls == 5


@pytest.mark.asyncio
async def test_dispatcher_fires_large_negative_offset_once():
    schedule = SolarSchedule(
        Location(40.7, -74.0),
        SolarEvent.SUNSET,
        datetime.timedelta(hours=-25),
        EveningOracle(),
    )
    job = _mock_job(schedule)
    dispatcher = Dispatcher(clock=lambda: NOW)
    entry = dispatcher.add_job(job)
    entry.next = schedule.next(NOW)
    assert entry.next > NOW

    now = entry.next
    for _ in range(5):
        assert dispatcher.dispatch_due(now) == DISPATCH_MAX_SLEEP
    await dispatcher.async_stop()
    job.async_run.assert_awaited_once()
    assert entry.next == now + datetime.timedelta(days=1)


@pytest.mark.asyncio
async def test_dispatcher_start_and_stop():
    dispatcher = Dispatcher(clock=lambda: NOW)
    in_an_hour = NOW + datetime.timedelta(hours=1)
    job = _mock_job(FixedSchedule([in_an_hour]))
    entry = dispatcher.add_job(job)
    dispatcher.start()
    assert entry.next == in_an_hour
    await asyncio.sleep(0)
    await dispatcher.async_stop()
    job.async_run.assert_not_awaited()


@pytest.mark.asyncio
async def test_dispatcher_runs_missed_solar_jobs():
    dispatcher = Dispatcher(clock=lambda: NOW)
    location = Location(40.7, -74.0)
    passed = _mock_job(
        SolarSchedule(location, SolarEvent.SUNSET, ZERO, EveningOracle())
    )
    upcoming = _mock_job(
        SolarSchedule(
            location, SolarEvent.SUNSET, datetime.timedelta(hours=2), EveningOracle()
        )
    )
    cron = _mock_job(CronSchedule("0 12 * * *"))
    for job in (passed, upcoming, cron):
        dispatcher.add_job(job)

    assert dispatcher.run_missed() == 1
    await dispatcher.async_stop()
    passed.async_run.assert_awaited_once()
    upcoming.async_run.assert_not_awaited()
    cron.async_run.assert_not_awaited()


class FakeBulb:
    """Answers LIFX requests the way a bulb would."""

    def __init__(self, power=False, product=27, label="Porch"):
        self.power = power
        self.color = ColorState(0, 0, 0, 3500)
        self.product = product
        self.label = label
        self.silent = False
        self.unhandled: List[int] = []
        self.received = []
        self.transports = []

    def handle(self, data: bytes) -> Optional[bytes]:
        message = parse_message(data)
        self.received.append(message)
        if self.silent:
            return None
        header = message.header
        protocol = ProtocolLIFX(header.target, header.source)
        seq = header.sequence
        if header.type in self.unhandled:
            return protocol.construct_message(
                MSG_STATE_UNHANDLED, struct.pack("<H", header.type), seq
            )
        if header.type == MSG_ECHO_REQUEST:
            return protocol.construct_message(MSG_ECHO_RESPONSE, message.payload, seq)
        if header.type == MSG_GET_POWER:
            level = 0xFFFF if self.power else 0
            return protocol.construct_message(
                MSG_STATE_POWER, struct.pack("<H", level), seq
            )
        if header.type == MSG_LIGHT_SET_POWER:
            level, _ = struct.unpack("<HI", message.payload)
            self.power = level != 0
            return protocol.construct_message(MSG_ACKNOWLEDGEMENT, b"", seq)
        if header.type == MSG_LIGHT_SET_COLOR:
            _, *hsbk, _ = struct.unpack("<BHHHHI", message.payload)
            self.color = ColorState(*hsbk)
            return protocol.construct_message(MSG_ACKNOWLEDGEMENT, b"", seq)
        if header.type == MSG_LIGHT_GET:
            return construct_light_state(
                protocol, seq, self.color, self.power, self.label
            )
        if header.type == MSG_GET_VERSION:
            return protocol.construct_message(
                MSG_STATE_VERSION, struct.pack("<III", 1, self.product, 0), seq
            )
        if header.type == MSG_GET_LABEL:
            return protocol.construct_message(
                MSG_STATE_LABEL, self.label.encode().ljust(32, b"\x00"), seq
            )
        return None

    def types(self):
        return [message.header.type for message in self.received]


@pytest_asyncio.fixture
async def fake_bulb():
    """Fixture to answer LIFX datagrams from a fake bulb."""
    loop = asyncio.get_running_loop()
    bulb = FakeBulb()

    async def _mock_create_datagram_endpoint(func, remote_addr=None, **kwargs):
        protocol = func()
        transport = MagicMock()
        transport.get_extra_info.return_value = remote_addr

        def _sendto(data, addr=None):
            reply = bulb.handle(data)
            if reply is not None:
                loop.call_soon(protocol.datagram_received, reply, remote_addr)

        transport.sendto.side_effect = _sendto
        protocol.connection_made(transport)
        bulb.transports.append(transport)
        return transport, protocol

    with patch.object(
        loop, "create_datagram_endpoint", _mock_create_datagram_endpoint
    ):
        yield bulb


@pytest.mark.asyncio
async def test_lifx_setup(fake_bulb):
    light = AIOLifxBulb("porch", "192.168.1.20", MAC)
    await light.async_setup()
    assert light.product == 27
    assert light.device_label == "porch"
    assert light.model == "LIFX product 27"
    assert fake_bulb.types() == [MSG_ECHO_REQUEST, MSG_GET_VERSION, MSG_GET_LABEL]
    assert fake_bulb.transports[0].close.called


@pytest.mark.asyncio
async def test_lifx_setup_rejects_switches(fake_bulb):
    fake_bulb.product = 70
    light = AIOLifxBulb("porch", "192.168.1.20", MAC)
    with pytest.raises(ProtocolMismatch):
        await light.async_setup()


@pytest.mark.asyncio
async def test_lifx_transition_from_off(fake_bulb):
    light = AIOLifxBulb("porch", "192.168.1.20", MAC)
    duration = datetime.timedelta(seconds=10)
    await light.async_transition(TARGET_COLOR, duration)

    assert fake_bulb.types() == [
        MSG_ECHO_REQUEST,
        MSG_GET_POWER,
        MSG_LIGHT_SET_COLOR,
        MSG_LIGHT_SET_POWER,
        MSG_LIGHT_SET_COLOR,
    ]
    _, arm, power_on, final = fake_bulb.received[1:]
    assert struct.unpack("<BHHHHI", arm.payload) == (0, 0, 0, 0, 2700, 1)
    assert struct.unpack("<HI", power_on.payload) == (0xFFFF, 0)
    assert struct.unpack("<BHHHHI", final.payload) == (0, *TARGET_COLOR, 10000)
    assert fake_bulb.power
    assert fake_bulb.color == TARGET_COLOR
    mac = bytes.fromhex("d073d5010203")
    assert all(msg.header.target[:6] == mac for msg in fake_bulb.received)


@pytest.mark.asyncio
async def test_lifx_transition_to_off(fake_bulb):
    fake_bulb.power = True
    light = AIOLifxBulb("porch", "192.168.1.20", MAC)
    await light.async_transition(ColorState.from_human(brightness=0), FIVE_SECONDS)
    assert fake_bulb.types() == [MSG_ECHO_REQUEST, MSG_LIGHT_SET_POWER]
    assert struct.unpack("<HI", fake_bulb.received[1].payload) == (0, 5000)
    assert not fake_bulb.power


@pytest.mark.asyncio
async def test_lifx_kelvin_is_clamped(fake_bulb):
    fake_bulb.power = True
    light = AIOLifxBulb("porch", "192.168.1.20", MAC)
    await light.async_transition(ColorState(0, 0, MAX_UINT16, 0), FIVE_SECONDS)
    assert fake_bulb.color == ColorState(0, 0, MAX_UINT16, 1500)


@pytest.mark.asyncio
async def test_lifx_unresponsive(fake_bulb, mock_backoff):
    fake_bulb.silent = True
    light = AIOLifxBulb("porch", "192.168.1.20", MAC, request_timeout=0.01)
    with pytest.raises(TransitionError) as exc_info:
        await light.async_transition(TARGET_COLOR, FIVE_SECONDS)
    assert exc_info.value.step == STEP_ECHO
    assert exc_info.value.is_timeout
    assert fake_bulb.types() == [MSG_ECHO_REQUEST] * 5
    assert mock_backoff.await_count == 4


@pytest.mark.asyncio
async def test_lifx_unhandled_request(fake_bulb):
    fake_bulb.power = True
    fake_bulb.unhandled = [MSG_LIGHT_SET_COLOR]
    light = AIOLifxBulb("porch", "192.168.1.20", MAC)
    with pytest.raises(TransitionError) as exc_info:
        await light.async_transition(TARGET_COLOR, FIVE_SECONDS)
    assert exc_info.value.step == STEP_SET_COLOR
    assert isinstance(exc_info.value.cause, ProtocolMismatch)


@pytest.mark.asyncio
async def test_lifx_status(fake_bulb):
    fake_bulb.power = True
    fake_bulb.color = TARGET_COLOR
    light = AIOLifxBulb("porch", "192.168.1.20", MAC)
    status = await light.async_status()
    assert status["power"] is True
    assert status["brightness"] == 80.0
    assert status["kelvin"] == 2700
    assert fake_bulb.types() == [MSG_GET_POWER, MSG_LIGHT_GET]


@pytest.mark.asyncio
async def test_lifx_dial_failure():
    loop = asyncio.get_running_loop()

    async def _refuse(*args, **kwargs):
        raise OSError("Network is unreachable")

    light = AIOLifxBulb("porch", "192.168.1.20", MAC)
    with patch.object(loop, "create_datagram_endpoint", _refuse):
        with pytest.raises(TransitionError) as exc_info:
            await light.async_transition(TARGET_COLOR, FIVE_SECONDS)
    assert exc_info.value.step == STEP_CONNECT


def _tasmota_app(state):
    async def _command(request):
        command = request.query["cmnd"]
        state["commands"].append(command)
        if state.get("broken"):
            return web.Response(status=500)
        if command == "Status 2":
            return web.json_response(
                {"StatusFWR": {"Version": "12.1.1(tasmota)", "Hardware": "ESP8266EX"}}
            )
        if command == "Power On":
            state["power"] = "ON"
        elif command == "Power Off":
            state["power"] = "OFF"
        return web.json_response({"POWER": state["power"]})

    app = web.Application()
    app.router.add_get("/cm", _command)
    return app


@pytest.mark.asyncio
async def test_tasmota_switch():
    state = {"power": "OFF", "commands": []}
    async with TestServer(_tasmota_app(state)) as server:
        switch = AIOTasmotaSwitch("lamp", f"{server.host}:{server.port}")
        await switch.async_setup()
        assert switch.firmware == "12.1.1(tasmota)"
        assert switch.hardware == "ESP8266EX"

        await switch.async_transition(TARGET_COLOR, FIVE_SECONDS)
        assert state["power"] == "ON"
        assert state["commands"] == ["Status 2", "State", "Power", "Power On"]

        state["commands"].clear()
        await switch.async_transition(ColorState.from_human(), FIVE_SECONDS)
        assert state["power"] == "OFF"
        assert state["commands"] == ["State", "Power Off"]

        assert (await switch.async_status())["power"] is False


@pytest.mark.asyncio
async def test_tasmota_http_error():
    state = {"power": "OFF", "commands": [], "broken": True}
    async with TestServer(_tasmota_app(state)) as server:
        switch = AIOTasmotaSwitch("lamp", f"{server.host}:{server.port}")
        with pytest.raises(TransitionError) as exc_info:
            await switch.async_transition(TARGET_COLOR, FIVE_SECONDS)
    assert exc_info.value.step == STEP_ECHO
    assert isinstance(exc_info.value.cause, ProtocolMismatch)
    assert state["commands"] == ["State"]


def _shelly_app(state):
    async def _status(request):
        state["calls"].append(("Switch.GetStatus", dict(request.query)))
        return web.json_response({"id": 0, "output": state["output"]})

    async def _set(request):
        state["calls"].append(("Switch.Set", dict(request.query)))
        was_on = state["output"]
        state["output"] = request.query["on"] == "true"
        return web.json_response({"was_on": was_on})

    async def _config(request):
        return web.json_response({"device": {"fw_id": "20230913-112003/v1.0.3"}})

    async def _kvs(request):
        return web.json_response({"etag": "x", "value": "Plus+1PM"})

    app = web.Application()
    app.router.add_get("/rpc/Switch.GetStatus", _status)
    app.router.add_get("/rpc/Switch.Set", _set)
    app.router.add_get("/rpc/Sys.GetConfig", _config)
    app.router.add_get("/rpc/KVS.Get", _kvs)
    return app


@pytest.mark.asyncio
async def test_shelly_switch():
    state = {"output": False, "calls": []}
    async with TestServer(_shelly_app(state)) as server:
        switch = AIOShellySwitch("fan", f"{server.host}:{server.port}", index=1)
        await switch.async_setup()
        assert switch.firmware == "20230913-112003/v1.0.3"
        assert switch.hardware == "Plus 1PM"

        await switch.async_transition(TARGET_COLOR, FIVE_SECONDS)
        assert state["output"] is True
        assert state["calls"] == [
            ("Switch.GetStatus", {"id": "1"}),
            ("Switch.GetStatus", {"id": "1"}),
            ("Switch.Set", {"id": "1", "on": "true"}),
        ]

        await switch.async_transition(ColorState.from_human(), FIVE_SECONDS)
        assert state["output"] is False
        assert state["calls"][-1] == ("Switch.Set", {"id": "1", "on": "false"})


@pytest.mark.asyncio
async def test_setup_devices_skips_unreachable(fake_bulb):
    config = parse_config(
        {
            "location": {"latitude": 40.7, "longitude": -74.0},
            "devices": {
                "porch": {"type": "lifx", "host": "192.168.1.20", "mac": MAC},
                "lamp": {"type": "s31", "host": "192.168.1.21"},
            },
        }
    )
    with patch.object(
        AIOTasmotaSwitch,
        "async_setup",
        AsyncMock(side_effect=TransportFailure("unreachable")),
    ):
        devices = await async_setup_devices(config)
    assert list(devices) == ["porch"]
    assert devices["porch"].device_label == "porch"


@pytest_asyncio.fixture
async def web_client():
    conn = FakeConnection(power=True)
    devices = {
        "porch": FakeDevice(conn),
        "garage": FakeDevice(connect_error=TransportFailure("unreachable")),
    }
    async with TestClient(TestServer(create_app(devices))) as client:
        client.conn = conn
        yield client


@pytest.mark.asyncio
async def test_web_power(web_client):
    resp = await web_client.get(
        "/porch", params={"brightness": "80", "kelvin": "2700", "transition": "2500"}
    )
    assert resp.status == 200
    assert await resp.json() == {
        "hue": 0.0,
        "saturation": 0.0,
        "brightness": 80.0,
        "kelvin": 2700,
        "transition": "2.5s",
    }
    assert web_client.conn.calls[-1] == (
        "set_color",
        TARGET_COLOR,
        datetime.timedelta(milliseconds=2500),
    )


@pytest.mark.asyncio
async def test_web_power_clamps_values(web_client):
    resp = await web_client.get(
        "/porch",
        params={
            "brightness": "150",
            "hue": "400",
            "saturation": "-3",
            "kelvin": "20000",
        },
    )
    assert resp.status == 200
    body = await resp.json()
    assert body["brightness"] == 100.0
    assert body["hue"] == 0.0
    assert body["saturation"] == 0.0
    assert body["kelvin"] == 9000
    assert body["transition"] == "2s"
    assert web_client.conn.calls[-1] == (
        "set_color",
        ColorState(0, 0, MAX_UINT16, 9000),
        DEFAULT_POWER_TRANSITION,
    )


@pytest.mark.asyncio
async def test_web_power_off_form(web_client):
    resp = await web_client.post("/porch", data={"brightness": "0"})
    assert resp.status == 200
    assert web_client.conn.calls[-1] == ("set_power", False, DEFAULT_POWER_TRANSITION)


@pytest.mark.asyncio
async def test_web_power_color_name(web_client):
    resp = await web_client.get("/porch", params={"brightness": "50", "color": "blue"})
    assert resp.status == 200
    body = await resp.json()
    assert body["hue"] == 240.0
    assert body["saturation"] == 100.0


@pytest.mark.asyncio
async def test_web_power_errors(web_client):
    resp = await web_client.get("/porch", params={"kelvin": "2700"})
    assert resp.status == 400
    assert await resp.json() == {"error": "brightness parameter is required"}

    resp = await web_client.get("/porch", params={"brightness": "80", "hue": "red"})
    assert resp.status == 500
    assert await resp.json() == {"error": "unable to parse hue parameter"}

    resp = await web_client.get(
        "/porch", params={"brightness": "80", "transition": "soon"}
    )
    assert resp.status == 500
    assert await resp.json() == {"error": "unable to parse transition parameter"}

    assert web_client.conn.calls == []

    resp = await web_client.get("/attic", params={"brightness": "80"})
    assert resp.status == 404

    resp = await web_client.get("/garage", params={"brightness": "80"})
    assert resp.status == 500
    assert await resp.json() == {"error": "unable to set brightness on device"}


@pytest.mark.asyncio
async def test_web_status(web_client):
    web_client.conn.color = TARGET_COLOR
    resp = await web_client.get("/porch/status")
    assert resp.status == 200
    assert await resp.json() == {
        "power": True,
        "hue": 0.0,
        "saturation": 0.0,
        "brightness": 80.0,
        "kelvin": 2700,
    }

    resp = await web_client.get("/garage/status")
    assert resp.status == 500
