import datetime
import json
import os
import struct
import unittest
from unittest.mock import patch

import pytest

from lamplighter.cli import local_timezone, parse_listen, parseArgs
from lamplighter.config import create_device, create_jobs, load_config, parse_config
from lamplighter.const import (
    DEFAULT_JOB_TRANSITION,
    MAX_UINT16,
    NEVER_TIME,
    ORACLE_RETRY_DELAY,
)
from lamplighter.exceptions import ConfigError, OracleUnavailable, TransitionError
from lamplighter.lifx import AIOLifxBulb
from lamplighter.protocol import (
    MSG_ECHO_REQUEST,
    MSG_LIGHT_SET_COLOR,
    MSG_LIGHT_SET_POWER,
    MSG_SET_POWER,
    ProtocolLIFX,
    construct_light_state,
    mac_to_target,
    parse_label,
    parse_light_state,
    parse_message,
    parse_power,
    parse_version,
)
from lamplighter.schedule import (
    CronSchedule,
    ScheduleState,
    SolarSchedule,
    parse_schedule,
)
from lamplighter.relay import AIORelayConnection
from lamplighter.shelly import AIOShellyConnection, AIOShellySwitch
from lamplighter.solar import (
    AstralSolarOracle,
    Location,
    SolarEvent,
    SolarEvents,
    SolarOracle,
)
from lamplighter.tasmota import AIOTasmotaConnection, AIOTasmotaSwitch
from lamplighter.utils import (
    ColorState,
    clamp_kelvin,
    color_to_hue_saturation,
    format_duration,
    hue_to_u16,
    parse_duration,
    parse_transition,
    percent_to_u16,
    u16_to_hue,
    u16_to_percent,
)

UTC = datetime.timezone.utc
LOCATION = Location(40.7, -74.0)
TODAY = datetime.date(2024, 3, 10)
TOMORROW = datetime.date(2024, 3, 11)
ONE_DAY = datetime.timedelta(days=1)
TARGET = bytes.fromhex("d073d5010203") + b"\x00\x00"


def at(hour, minute=0, second=0, day=TODAY):
    return datetime.datetime.combine(
        day, datetime.time(hour, minute, second), tzinfo=UTC
    )


class FakeOracle(SolarOracle):
    """Sunrise at 06:00 and sunset at 18:00 every day, failing on request."""

    def __init__(self, failures=0, sunrise=(6, 0), sunset=(18, 0)):
        self.failures = failures
        self.sunrise = datetime.time(*sunrise)
        self.sunset = datetime.time(*sunset)
        self.calls = []

    def get_solar_events(self, location, when):
        self.calls.append(when)
        if self.failures:
            self.failures -= 1
            raise OracleUnavailable("service unavailable")
        day = when.date()
        return SolarEvents(
            datetime.datetime.combine(day, self.sunrise, tzinfo=when.tzinfo),
            datetime.datetime.combine(day, self.sunset, tzinfo=when.tzinfo),
        )


class TestSolarSchedule(unittest.TestCase):
    def test_trigger_later_today(self):
        schedule = SolarSchedule(
            LOCATION, SolarEvent.SUNSET, datetime.timedelta(hours=-1), FakeOracle()
        )
        assert schedule.next(at(12)) == at(17)
        assert schedule.state is ScheduleState.HEALTHY

    def test_trigger_passed_rolls_to_tomorrow(self):
        schedule = SolarSchedule(
            LOCATION, SolarEvent.SUNSET, datetime.timedelta(0), FakeOracle()
        )
        now = at(19)
        trigger = schedule.next(now)
        assert trigger == at(18, day=TOMORROW)
        assert trigger > now

    def test_negative_offset_passed_rolls_to_tomorrow(self):
        schedule = SolarSchedule(
            LOCATION, SolarEvent.SUNSET, datetime.timedelta(hours=-1), FakeOracle()
        )
        assert schedule.next(at(17, 30)) == at(17, day=TOMORROW)

    def test_trigger_equal_to_now_rolls_to_tomorrow(self):
        schedule = SolarSchedule(
            LOCATION, SolarEvent.SUNRISE, datetime.timedelta(minutes=30), FakeOracle()
        )
        assert schedule.next(at(6, 30)) == at(6, 30, day=TOMORROW)
        assert schedule.next(at(6, 29, 59)) == at(6, 30)

    def test_offset_beyond_a_day_before_the_event(self):
        schedule = SolarSchedule(
            LOCATION, SolarEvent.SUNSET, datetime.timedelta(hours=-25), FakeOracle()
        )
        now = at(20)
        assert schedule.next(now) == at(17, day=TOMORROW)
        assert schedule.next(at(16)) == at(17)

    def test_offset_beyond_a_day_after_the_event(self):
        schedule = SolarSchedule(
            LOCATION, SolarEvent.SUNSET, datetime.timedelta(hours=30), FakeOracle()
        )
        assert schedule.next(at(20)) == at(0, day=TOMORROW)
        assert schedule.next(at(0, day=TOMORROW)) == at(0, day=TODAY + 2 * ONE_DAY)

    def test_large_offsets_advance_one_day_per_trigger(self):
        for hours in (-49, -30, -25, 25, 30, 49):
            oracle = FakeOracle()
            schedule = SolarSchedule(
                LOCATION, SolarEvent.SUNRISE, datetime.timedelta(hours=hours), oracle
            )
            now = at(12)
            previous = None
            for _ in range(5):
                trigger = schedule.next(now)
                assert trigger > now, hours
                if previous is not None:
                    assert trigger - previous == ONE_DAY, hours
                previous = now = trigger
            assert len(oracle.calls) <= 15

    def test_oracle_failure_retries_in_a_minute(self):
        oracle = FakeOracle(failures=1)
        schedule = SolarSchedule(
            LOCATION, SolarEvent.SUNRISE, datetime.timedelta(0), oracle
        )
        now = at(3)
        assert schedule.next(now) == now + ORACLE_RETRY_DELAY
        assert schedule.state is ScheduleState.DEGRADED
        assert schedule.failure_count == 1
        assert schedule.pending_retry

    def test_disabled_after_five_failures(self):
        oracle = FakeOracle(failures=100)
        schedule = SolarSchedule(
            LOCATION, SolarEvent.SUNSET, datetime.timedelta(0), oracle
        )
        now = at(12)
        for attempt in range(1, 6):
            assert schedule.next(now) == now + ORACLE_RETRY_DELAY
            assert schedule.failure_count == attempt
            now += ORACLE_RETRY_DELAY
        assert schedule.state is ScheduleState.DISABLED

        assert schedule.next(now) == NEVER_TIME
        assert schedule.next(now + datetime.timedelta(days=1)) == NEVER_TIME
        assert len(oracle.calls) == 5

    def test_recovery_resets_failures(self):
        oracle = FakeOracle(failures=4)
        schedule = SolarSchedule(
            LOCATION, SolarEvent.SUNSET, datetime.timedelta(0), oracle
        )
        now = at(12)
        for _ in range(4):
            schedule.next(now)
        assert schedule.state is ScheduleState.DEGRADED

        assert schedule.next(now) == at(18)
        assert schedule.failure_count == 0
        assert schedule.state is ScheduleState.HEALTHY
        assert not schedule.pending_retry

    def test_failure_while_rolling_over(self):
        oracle = FakeOracle()
        schedule = SolarSchedule(
            LOCATION, SolarEvent.SUNSET, datetime.timedelta(0), oracle
        )
        real_events = oracle.get_solar_events

        def _fail_tomorrow(location, when):
            if when.date() == TOMORROW:
                raise OracleUnavailable("no data for tomorrow")
            return real_events(location, when)

        oracle.get_solar_events = _fail_tomorrow
        now = at(20)
        assert schedule.next(now) == now + ORACLE_RETRY_DELAY
        assert schedule.failure_count == 1

    def test_naive_now_is_treated_as_local_time(self):
        schedule = SolarSchedule(
            LOCATION, SolarEvent.SUNSET, datetime.timedelta(0), FakeOracle()
        )
        trigger = schedule.next(datetime.datetime(2024, 3, 10, 12, 0))
        assert trigger.tzinfo is not None
        assert trigger > datetime.datetime(2024, 3, 10, 12, 0).astimezone()

    def test_passed_today(self):
        schedule = SolarSchedule(
            LOCATION, SolarEvent.SUNSET, datetime.timedelta(hours=-1), FakeOracle()
        )
        assert schedule.passed_today(at(17))
        assert schedule.passed_today(at(23))
        assert not schedule.passed_today(at(16, 59))

        early = SolarSchedule(
            LOCATION, SolarEvent.SUNSET, datetime.timedelta(hours=-25), FakeOracle()
        )
        assert early.passed_today(at(17))
        assert not early.passed_today(at(16))

    def test_str(self):
        oracle = FakeOracle()
        hour = datetime.timedelta(hours=1)
        sunset = SolarSchedule(LOCATION, SolarEvent.SUNSET, -hour, oracle)
        assert str(sunset) == "@sunset -1h"
        sunrise = SolarSchedule(LOCATION, SolarEvent.SUNRISE, hour * 0, oracle)
        assert str(sunrise) == "@sunrise"


class TestAstralOracle(unittest.TestCase):
    def test_sunrise_before_sunset(self):
        oracle = AstralSolarOracle()
        when = datetime.datetime(2024, 6, 21, 12, 0, tzinfo=UTC)
        events = oracle.get_solar_events(Location(51.5, -0.13), when)
        assert events.sunrise.date() == when.date()
        assert events.sunset.date() == when.date()
        assert events.sunrise < events.sunset
        assert 3 <= events.sunrise.hour <= 4
        assert 20 <= events.sunset.hour <= 21

    def test_polar_day_is_unavailable(self):
        oracle = AstralSolarOracle()
        when = datetime.datetime(2024, 6, 21, 12, 0, tzinfo=UTC)
        with pytest.raises(OracleUnavailable):
            oracle.get_solar_events(Location(80.0, 15.0), when)

    def test_polar_day_degrades_schedule(self):
        schedule = SolarSchedule(
            Location(80.0, 15.0),
            SolarEvent.SUNSET,
            datetime.timedelta(0),
            AstralSolarOracle(),
        )
        now = datetime.datetime(2024, 6, 21, 12, 0, tzinfo=UTC)
        assert schedule.next(now) == now + ORACLE_RETRY_DELAY
        assert schedule.state is ScheduleState.DEGRADED


class TestParseSchedule(unittest.TestCase):
    def test_solar_expressions(self):
        oracle = FakeOracle()
        schedule = parse_schedule("@sunset -1h", LOCATION, oracle)
        assert isinstance(schedule, SolarSchedule)
        assert schedule.event is SolarEvent.SUNSET
        assert schedule.offset == datetime.timedelta(hours=-1)

        schedule = parse_schedule("@sunrise", LOCATION, oracle)
        assert isinstance(schedule, SolarSchedule)
        assert schedule.event is SolarEvent.SUNRISE
        assert schedule.offset == datetime.timedelta(0)

        schedule = parse_schedule("@sunrise 30m", LOCATION, oracle)
        assert schedule.offset == datetime.timedelta(minutes=30)

    def test_cron_expressions(self):
        schedule = parse_schedule("0 23 * * *", LOCATION, FakeOracle())
        assert isinstance(schedule, CronSchedule)
        assert schedule.next(at(22)) == at(23)
        assert schedule.next(at(23)) == at(23, day=TOMORROW)

    def test_invalid_expressions(self):
        oracle = FakeOracle()
        for expression in ("@sunset+1h", "@sunset soon", "not a schedule"):
            with pytest.raises(ValueError):
                parse_schedule(expression, LOCATION, oracle)


class TestConversions(unittest.TestCase):
    def test_hue(self):
        assert hue_to_u16(0) == 0
        assert hue_to_u16(180) == 32768
        assert hue_to_u16(360) == 0
        assert hue_to_u16(-10) == 0
        assert u16_to_hue(32768) == 180.0
        assert u16_to_hue(hue_to_u16(90)) == 90.0

    def test_percent(self):
        assert percent_to_u16(0) == 0
        assert percent_to_u16(100) == MAX_UINT16
        assert percent_to_u16(50) == 32767
        assert percent_to_u16(-5) == 0
        assert percent_to_u16(150) == MAX_UINT16
        assert u16_to_percent(MAX_UINT16) == 100.0

    def test_kelvin(self):
        assert clamp_kelvin(1000) == 1500
        assert clamp_kelvin(2700) == 2700
        assert clamp_kelvin(10000) == 9000

    def test_color_state_from_human(self):
        color = ColorState.from_human(
            hue=400, saturation=-1, brightness=120, kelvin=100
        )
        assert color == ColorState(0, 0, MAX_UINT16, 1500)
        assert not color.is_off
        assert ColorState.from_human(brightness=0).is_off
        assert ColorState.from_human(brightness=80, kelvin=2700).as_human() == {
            "hue": 0.0,
            "saturation": 0.0,
            "brightness": 80.0,
            "kelvin": 2700,
        }

    def test_color_names(self):
        assert color_to_hue_saturation("red") == (0.0, 100.0)
        hue, saturation = color_to_hue_saturation("#00ff00")
        assert hue == pytest.approx(120.0)
        assert saturation == 100.0
        assert color_to_hue_saturation("notacolor") is None


class TestDurations(unittest.TestCase):
    def test_parse_duration(self):
        assert parse_duration("15m") == datetime.timedelta(minutes=15)
        assert parse_duration("250ms") == datetime.timedelta(milliseconds=250)
        assert parse_duration("-1h30m") == -datetime.timedelta(hours=1, minutes=30)
        assert parse_duration("+1.5h") == datetime.timedelta(hours=1, minutes=30)
        assert parse_duration("0") == datetime.timedelta(0)
        for value in ("", "10", "1d", "h", "-", "1h 30m"):
            with pytest.raises(ValueError):
                parse_duration(value)

    def test_parse_transition(self):
        assert parse_transition("2500") == datetime.timedelta(milliseconds=2500)
        assert parse_transition("2s") == datetime.timedelta(seconds=2)
        assert parse_transition("0") == datetime.timedelta(0)
        with pytest.raises(ValueError):
            parse_transition("-1s")
        with pytest.raises(ValueError):
            parse_transition("soon")

    def test_format_duration(self):
        assert format_duration(datetime.timedelta(0)) == "0s"
        assert format_duration(datetime.timedelta(hours=-1)) == "-1h"
        assert format_duration(datetime.timedelta(minutes=90)) == "1h30m"
        assert format_duration(datetime.timedelta(milliseconds=250)) == "250ms"
        assert format_duration(datetime.timedelta(milliseconds=1500)) == "1.5s"


class TestLIFXProtocol(unittest.TestCase):
    def test_mac_to_target(self):
        assert mac_to_target("d0:73:d5:01:02:03") == TARGET
        assert mac_to_target("D073D5010203") == TARGET
        with pytest.raises(ValueError):
            mac_to_target("d0:73:d5")
        with pytest.raises(ValueError):
            mac_to_target("zz:73:d5:01:02:03")

    def test_set_color(self):
        protocol = ProtocolLIFX(TARGET, source=1234)
        color = ColorState(1, 2, 3, 3500)
        packet = protocol.construct_set_color(7, color, 1.5)
        assert len(packet) == 49

        message = parse_message(packet)
        assert message.header.size == 49
        assert message.header.type == MSG_LIGHT_SET_COLOR
        assert message.header.source == 1234
        assert message.header.sequence == 7
        assert message.header.target == TARGET
        assert message.header.ack_required
        assert not message.header.res_required
        assert not message.header.tagged
        assert struct.unpack("<BHHHHI", message.payload) == (0, 1, 2, 3, 3500, 1500)

    def test_set_light_power(self):
        protocol = ProtocolLIFX(TARGET, source=1234)
        message = parse_message(protocol.construct_set_light_power(3, False, 900))
        assert message.header.type == MSG_LIGHT_SET_POWER
        assert struct.unpack("<HI", message.payload) == (0, 900000)

        message = parse_message(protocol.construct_set_power(4, True))
        assert message.header.type == MSG_SET_POWER
        assert parse_power(message.payload)

    def test_echo_request(self):
        protocol = ProtocolLIFX(TARGET, source=1234)
        message = parse_message(protocol.construct_echo_request(9, b"ping"))
        assert message.header.type == MSG_ECHO_REQUEST
        assert message.header.res_required
        assert len(message.payload) == 64
        assert message.payload.startswith(b"ping\x00")

    def test_light_state(self):
        protocol = ProtocolLIFX(TARGET, source=1234)
        color = ColorState(100, 200, 300, 2700)
        message = parse_message(
            construct_light_state(protocol, 5, color, True, "Porch")
        )
        state = parse_light_state(message.payload)
        assert state.color == color
        assert state.power
        assert state.label == "Porch"

    def test_version_and_label(self):
        assert parse_version(struct.pack("<III", 1, 27, 0)) == (1, 27)
        assert parse_label(b"Kitchen".ljust(32, b"\x00")) == "Kitchen"

    def test_sequence_wraps(self):
        protocol = ProtocolLIFX(TARGET)
        assert 2 <= protocol.source <= 0xFFFFFFFF
        sequences = [protocol.next_sequence() for _ in range(256)]
        assert sequences[0] == 1
        assert sequences[254] == 255
        assert sequences[255] == 0

    def test_parse_invalid(self):
        assert parse_message(b"\x00" * 10) is None
        packet = bytearray(ProtocolLIFX(TARGET, source=2).construct_get_power(1))
        packet[2:4] = struct.pack("<H", 0x1000 | 1025)
        assert parse_message(bytes(packet)) is None


class TestRelayConnection(unittest.TestCase):
    def test_switch_is_abstract(self):
        assert AIORelayConnection._async_switch.__isabstractmethod__
        for cls in (AIOTasmotaConnection, AIOShellyConnection):
            assert not getattr(cls._async_switch, "__isabstractmethod__", False)


class TestTransitionError(unittest.TestCase):
    def test_message(self):
        ex = TransitionError("porch", "echo device", OracleUnavailable("gone"))
        assert str(ex) == "porch: echo device: gone"
        assert not ex.is_timeout
        assert str(TransitionError("porch", "timeout")) == "porch: timeout"


CONFIG = {
    "location": {"latitude": 40.7, "longitude": -74.0},
    "devices": {
        "porch": {"type": "lifx", "host": "192.168.1.20", "mac": "d0:73:d5:01:02:03"},
        "lamp": {"type": "s31", "host": "192.168.1.21"},
        "fan": {"type": "shelly", "host": "192.168.1.22", "index": 1},
    },
    "jobs": [
        {
            "schedule": "@sunset -1h",
            "device": "porch",
            "brightness": 80,
            "kelvin": 2700,
            "transition": "30m",
        },
        {"schedule": "0 23 * * *", "device": "porch", "brightness": 0},
        {"schedule": "@sunrise", "device": "lamp", "color": "red", "brightness": 150},
    ],
}


def _config(**changes):
    data = json.loads(json.dumps(CONFIG))
    data.update(changes)
    return data


class TestConfig(unittest.TestCase):
    def test_parse(self):
        config = parse_config(_config())
        assert config.location == Location(40.7, -74.0)
        assert set(config.devices) == {"porch", "lamp", "fan"}

        first, second, third = config.jobs
        assert first.device == "porch"
        assert first.target == ColorState.from_human(brightness=80, kelvin=2700)
        assert first.transition == datetime.timedelta(minutes=30)
        assert second.target.is_off
        assert second.transition == DEFAULT_JOB_TRANSITION
        assert third.target == ColorState(0, MAX_UINT16, MAX_UINT16, 3500)

    def test_missing_device(self):
        with pytest.raises(ConfigError, match="missing device"):
            parse_config(
                _config(jobs=[{"schedule": "@sunset", "device": "garage"}])
            )

    def test_unknown_device_type(self):
        with pytest.raises(ConfigError, match="unknown device type"):
            parse_config(_config(devices={"x": {"type": "hue", "host": "h"}}))

    def test_lifx_needs_mac(self):
        with pytest.raises(ConfigError, match="mac"):
            parse_config(_config(devices={"x": {"type": "lifx", "host": "h"}}))

    def test_bad_transition(self):
        with pytest.raises(ConfigError):
            parse_config(
                _config(
                    jobs=[
                        {"schedule": "@sunset", "device": "lamp", "transition": "-5m"}
                    ]
                )
            )

    def test_wrong_shapes(self):
        with pytest.raises(ConfigError, match="devices must be an object"):
            parse_config(_config(devices=["porch"]))
        with pytest.raises(ConfigError, match="porch: device must be an object"):
            parse_config(_config(devices={"porch": "lifx"}))
        with pytest.raises(ConfigError, match="jobs must be a list"):
            parse_config(_config(jobs={"schedule": "@sunset"}))
        with pytest.raises(ConfigError, match="job 0: must be an object"):
            parse_config(_config(jobs=["@sunset"]))

    def test_bad_location(self):
        with pytest.raises(ConfigError, match="location"):
            parse_config(_config(location={"latitude": 95, "longitude": 0}))
        data = _config()
        del data["location"]
        with pytest.raises(ConfigError, match="location"):
            parse_config(data)

    def test_unknown_color(self):
        with pytest.raises(ConfigError, match="color"):
            parse_config(
                _config(jobs=[{"schedule": "@sunset", "device": "lamp", "color": "x"}])
            )

    def test_create_device(self):
        config = parse_config(_config())
        porch = create_device("porch", config.devices["porch"])
        assert isinstance(porch, AIOLifxBulb)
        assert porch.target == TARGET
        lamp = create_device("lamp", config.devices["lamp"])
        assert isinstance(lamp, AIOTasmotaSwitch)
        fan = create_device("fan", config.devices["fan"])
        assert isinstance(fan, AIOShellySwitch)
        assert fan.index == 1

    def test_create_jobs(self):
        config = parse_config(_config())
        devices = {"porch": create_device("porch", config.devices["porch"])}
        jobs = create_jobs(config, devices, FakeOracle())
        assert [str(job) for job in jobs] == [
            "porch [@sunset -1h]",
            "porch [0 23 * * *]",
        ]

        with pytest.raises(ConfigError, match="not available"):
            create_jobs(config, devices, FakeOracle(), skip_missing=False)

    def test_create_jobs_bad_schedule(self):
        config = parse_config(
            _config(jobs=[{"schedule": "every day", "device": "porch"}])
        )
        devices = {"porch": create_device("porch", config.devices["porch"])}
        with pytest.raises(ConfigError):
            create_jobs(config, devices, FakeOracle())


def test_load_config(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(CONFIG))
    config = load_config(str(path))
    assert len(config.jobs) == 3


def test_load_config_errors(tmp_path):
    with pytest.raises(ConfigError, match="read config file"):
        load_config(str(tmp_path / "missing.json"))

    path = tmp_path / "broken.json"
    path.write_text("{not json")
    with pytest.raises(ConfigError, match="decode config file"):
        load_config(str(path))

    path.write_text("[]")
    with pytest.raises(ConfigError):
        load_config(str(path))


class TestCli(unittest.TestCase):
    def test_parse_listen(self):
        assert parse_listen("127.0.0.1:8080") == ("127.0.0.1", 8080)
        assert parse_listen(":9000") == ("0.0.0.0", 9000)
        assert parse_listen("localhost") == ("localhost", 9000)
        with pytest.raises(ValueError):
            parse_listen("localhost:http")
        with pytest.raises(ValueError):
            parse_listen("localhost:70000")

    def test_parse_args(self):
        options, _ = parseArgs(
            ["--config", "lights.json", "--run-missed", "-l", ":8000"]
        )
        assert options.config == "lights.json"
        assert options.run_missed
        assert not options.debug
        assert (options.host, options.port) == ("0.0.0.0", 8000)

        options, _ = parseArgs([])
        assert options.config == "config.json"
        assert (options.host, options.port) == ("0.0.0.0", 9000)

    def test_local_timezone(self):
        with patch.dict(os.environ, {"TZ": "UTC"}):
            assert local_timezone().utcoffset(None) == datetime.timedelta(0)
        with patch.dict(os.environ, {"TZ": ""}):
            assert local_timezone() is None
        with patch.dict(os.environ, {"TZ": "Nowhere/Special"}):
            with pytest.raises(ConfigError):
                local_timezone()
