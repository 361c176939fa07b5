"""Configuration file.

{
    "location": {"latitude": 40.7, "longitude": -74.0},
    "devices": {
        "porch": {"type": "lifx", "host": "192.168.1.20", "mac": "d0:73:d5:00:00:01"},
        "lamp": {"type": "s31", "host": "192.168.1.21"},
        "fan": {"type": "shelly", "host": "192.168.1.22", "index": 0}
    },
    "jobs": [
        {"schedule": "@sunset -1h", "device": "porch", "brightness": 80,
         "kelvin": 2700, "transition": "15m"},
        {"schedule": "0 23 * * *", "device": "porch", "brightness": 0}
    ]
}
"""

import datetime
import json
import logging
from typing import Any, Dict, List, NamedTuple, Optional, TypedDict

from .base_device import BaseDevice
from .const import (
    DEFAULT_JOB_TRANSITION,
    DEVICE_TYPE_LIFX,
    DEVICE_TYPE_S31,
    DEVICE_TYPE_SHELLY,
    KELVIN_NEUTRAL,
    LIFX_PORT,
)
from .exceptions import ConfigError
from .job import Job
from .lifx import AIOLifxBulb
from .schedule import parse_schedule
from .shelly import AIOShellySwitch
from .solar import Location, SolarOracle
from .tasmota import AIOTasmotaSwitch
from .utils import ColorState, color_to_hue_saturation, parse_transition

_LOGGER = logging.getLogger(__name__)

DEVICE_TYPES = {DEVICE_TYPE_LIFX, DEVICE_TYPE_S31, DEVICE_TYPE_SHELLY}


class DeviceData(TypedDict, total=False):
    type: str
    host: str
    mac: str
    port: int
    index: int


class JobData(TypedDict, total=False):
    schedule: str
    device: str
    hue: float  # 0-360
    saturation: float  # 0-100
    brightness: float  # 0-100
    kelvin: int  # 1500-9000
    color: str  # css name or hex, sets hue and saturation
    transition: str


class JobConfig(NamedTuple):
    schedule: str
    device: str
    target: ColorState
    transition: datetime.timedelta


class Config(NamedTuple):
    location: Location
    devices: Dict[str, DeviceData]
    jobs: List[JobConfig]


def _job_target(job: JobData) -> ColorState:
    hue = float(job.get("hue", 0))
    saturation = float(job.get("saturation", 0))
    color = job.get("color")
    if color:
        converted = color_to_hue_saturation(color)
        if converted is None:
            raise ConfigError(f"unknown color {color!r}")
        if "hue" not in job:
            hue = converted[0]
        if "saturation" not in job:
            saturation = converted[1]
    return ColorState.from_human(
        hue=hue,
        saturation=saturation,
        brightness=float(job.get("brightness", 0)),
        kelvin=int(job.get("kelvin", KELVIN_NEUTRAL)),
    )


def _parse_job(idx: int, job: JobData, devices: Dict[str, DeviceData]) -> JobConfig:
    schedule = job.get("schedule")
    if not schedule:
        raise ConfigError(f"job {idx}: schedule is required")
    device = job.get("device")
    if device not in devices:
        raise ConfigError(f"job {idx}: schedule references missing device {device!r}")
    transition = DEFAULT_JOB_TRANSITION
    if job.get("transition"):
        try:
            transition = parse_transition(str(job["transition"]))
        except ValueError as ex:
            raise ConfigError(f"job {idx}: {ex}") from ex
    try:
        target = _job_target(job)
    except (TypeError, ValueError) as ex:
        raise ConfigError(f"job {idx}: {ex}") from ex
    return JobConfig(schedule, device, target, transition)


def parse_config(data: Dict[str, Any]) -> Config:
    """Validate a decoded configuration."""
    try:
        location = Location.from_dict(data["location"])
    except (KeyError, TypeError, ValueError) as ex:
        raise ConfigError(f"invalid location: {ex}") from ex

    devices: Dict[str, DeviceData] = data.get("devices") or {}
    if not isinstance(devices, dict):
        raise ConfigError("devices must be an object")
    for label, device in devices.items():
        if not isinstance(device, dict):
            raise ConfigError(f"{label}: device must be an object")
        if device.get("type") not in DEVICE_TYPES:
            raise ConfigError(f"{label}: unknown device type: {device.get('type')}")
        if not device.get("host"):
            raise ConfigError(f"{label}: host is required")
        if device["type"] == DEVICE_TYPE_LIFX and not device.get("mac"):
            raise ConfigError(f"{label}: mac is required for lifx devices")

    job_list = data.get("jobs") or []
    if not isinstance(job_list, list):
        raise ConfigError("jobs must be a list")
    jobs: List[JobConfig] = []
    for idx, job in enumerate(job_list):
        if not isinstance(job, dict):
            raise ConfigError(f"job {idx}: must be an object")
        jobs.append(_parse_job(idx, job, devices))
    return Config(location, devices, jobs)


def load_config(filename: str) -> Config:
    try:
        with open(filename, encoding="utf-8") as fp:
            data = json.load(fp)
    except OSError as ex:
        raise ConfigError(f"read config file: {ex}") from ex
    except ValueError as ex:
        raise ConfigError(f"decode config file: {ex}") from ex
    if not isinstance(data, dict):
        raise ConfigError("config file must contain an object")
    return parse_config(data)


def create_device(label: str, device: DeviceData) -> BaseDevice:
    device_type = device.get("type")
    if device_type == DEVICE_TYPE_LIFX:
        return AIOLifxBulb(
            label, device["host"], device["mac"], int(device.get("port", LIFX_PORT))
        )
    if device_type == DEVICE_TYPE_S31:
        return AIOTasmotaSwitch(label, device["host"])
    if device_type == DEVICE_TYPE_SHELLY:
        return AIOShellySwitch(label, device["host"], int(device.get("index", 0)))
    raise ConfigError(f"{label}: unknown device type: {device_type}")


def create_jobs(
    config: Config,
    devices: Dict[str, BaseDevice],
    oracle: SolarOracle,
    skip_missing: bool = True,
) -> List[Job]:
    """Bind each configured job to its device and schedule.

    Jobs whose device failed to connect are skipped when skip_missing is set.
    """
    jobs: List[Job] = []
    for idx, job in enumerate(config.jobs):
        device: Optional[BaseDevice] = devices.get(job.device)
        if device is None:
            if skip_missing:
                _LOGGER.warning(
                    "job %s: device %r is not available, skipping", idx, job.device
                )
                continue
            raise ConfigError(f"job {idx}: device {job.device!r} is not available")
        try:
            schedule = parse_schedule(job.schedule, config.location, oracle)
        except ValueError as ex:
            raise ConfigError(f"job {idx}: {ex}") from ex
        jobs.append(Job(device, job.target, job.transition, schedule))
    return jobs
