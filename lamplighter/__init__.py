"""Init file for Lamplighter"""
from .base_device import BaseDevice
from .dispatcher import Dispatcher
from .exceptions import TransitionError
from .job import Job
from .lifx import AIOLifxBulb
from .schedule import CronSchedule, SolarSchedule, parse_schedule
from .shelly import AIOShellySwitch
from .solar import AstralSolarOracle, Location, SolarEvent
from .tasmota import AIOTasmotaSwitch
from .utils import ColorState

__all__ = [
    "AIOLifxBulb",
    "AIOShellySwitch",
    "AIOTasmotaSwitch",
    "AstralSolarOracle",
    "BaseDevice",
    "ColorState",
    "CronSchedule",
    "Dispatcher",
    "Job",
    "Location",
    "SolarEvent",
    "SolarSchedule",
    "TransitionError",
    "parse_schedule",
]
