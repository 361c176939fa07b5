"""Lamplighter constants."""

import datetime
from typing import Final


# Scheduling
NEVER_TIME: Final = datetime.datetime.min.replace(tzinfo=datetime.timezone.utc)
ORACLE_RETRY_LIMIT: Final = 5
ORACLE_RETRY_DELAY: Final = datetime.timedelta(minutes=1)
SCHEDULE_SUNRISE: Final = "@sunrise"
SCHEDULE_SUNSET: Final = "@sunset"
DISPATCH_MAX_SLEEP: Final = 60.0  # seconds

# Transitions
TRANSITION_TIMEOUT: Final = 10.0  # whole operation, seconds
PROBE_TIMEOUT: Final = 1.0  # startup connectivity check, seconds
REQUEST_TIMEOUT: Final = 1.0  # single request/response round trip, seconds
ECHO_ATTEMPTS: Final = 5
ECHO_RETRY_BACKOFF: Final = 0.25  # multiplied by the attempt number
ARM_TRANSITION: Final = datetime.timedelta(milliseconds=1)
DEFAULT_POWER_TRANSITION: Final = datetime.timedelta(seconds=2)
DEFAULT_JOB_TRANSITION: Final = datetime.timedelta(minutes=15)

# Color ranges
MAX_UINT16: Final = 0xFFFF
HUE_DEGREES_MAX: Final = 360.0
PERCENT_MAX: Final = 100.0
MIN_KELVIN: Final = 1500
MAX_KELVIN: Final = 9000
KELVIN_NEUTRAL: Final = 3500

# Devices
DEVICE_TYPE_LIFX: Final = "lifx"
DEVICE_TYPE_S31: Final = "s31"
DEVICE_TYPE_SHELLY: Final = "shelly"
LIFX_PORT: Final = 56700

# Steps reported by TransitionError
STEP_CONNECT: Final = "connect"
STEP_ECHO: Final = "echo device"
STEP_SET_LIGHT_POWER: Final = "set light power"
STEP_GET_POWER: Final = "get power"
STEP_RESET_COLOR: Final = "reset color"
STEP_SET_POWER: Final = "set power"
STEP_SET_COLOR: Final = "set color"
STEP_GET_COLOR: Final = "get color"
STEP_TIMEOUT: Final = "timeout"

# Web
DEFAULT_LISTEN_HOST: Final = "0.0.0.0"
DEFAULT_LISTEN_PORT: Final = 9000
DEFAULT_CONFIG_FILE: Final = "config.json"
