"""HTTP control of configured devices.

GET|POST /{label}?brightness=80&kelvin=2700&transition=2s
GET      /{label}/status
"""

import datetime
import logging
from typing import Any, Dict, Mapping

from aiohttp import web

from .base_device import BaseDevice
from .const import DEFAULT_POWER_TRANSITION, KELVIN_NEUTRAL
from .exceptions import TransitionError
from .utils import (
    ColorState,
    color_to_hue_saturation,
    format_duration,
    parse_transition,
)

_LOGGER = logging.getLogger(__name__)

DEVICES_KEY = web.AppKey("devices", Dict[str, BaseDevice])


class ParamError(ValueError):
    """A request parameter could not be parsed."""

    def __init__(self, name: str, value: str) -> None:
        super().__init__(f"unable to parse {name} parameter")
        self.name = name
        self.value = value


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _float_param(params: Mapping[str, str], name: str, default: float) -> float:
    if name not in params:
        return default
    try:
        return float(params[name])
    except ValueError as ex:
        raise ParamError(name, params[name]) from ex


def _int_param(params: Mapping[str, str], name: str, default: int) -> int:
    if name not in params:
        return default
    try:
        return int(params[name])
    except ValueError as ex:
        raise ParamError(name, params[name]) from ex


def parse_power_params(params: Mapping[str, str]) -> ColorState:
    """Build the target color from request parameters, clamping every value.

    An explicit hue or saturation wins over the one derived from color.
    """
    hue = saturation = 0.0
    if params.get("color"):
        converted = color_to_hue_saturation(params["color"])
        if converted is None:
            raise ParamError("color", params["color"])
        hue, saturation = converted
    return ColorState.from_human(
        hue=_float_param(params, "hue", hue),
        saturation=_float_param(params, "saturation", saturation),
        brightness=_float_param(params, "brightness", 0),
        kelvin=_int_param(params, "kelvin", KELVIN_NEUTRAL),
    )


def parse_transition_param(params: Mapping[str, str]) -> datetime.timedelta:
    if "transition" not in params:
        return DEFAULT_POWER_TRANSITION
    try:
        return parse_transition(params["transition"])
    except ValueError as ex:
        raise ParamError("transition", params["transition"]) from ex


async def _async_params(request: web.Request) -> Dict[str, str]:
    params = dict(request.query)
    if request.method == "POST":
        form = await request.post()
        params.update((k, v) for k, v in form.items() if isinstance(v, str))
    return params


def _device(request: web.Request) -> BaseDevice:
    label = request.match_info["label"]
    try:
        return request.app[DEVICES_KEY][label]
    except KeyError as ex:
        raise web.HTTPNotFound(
            text=f'{{"error": "unknown device {label}"}}',
            content_type="application/json",
        ) from ex


async def power_handler(request: web.Request) -> web.Response:
    device = _device(request)
    params = await _async_params(request)
    if "brightness" not in params:
        return _error(400, "brightness parameter is required")
    try:
        target = parse_power_params(params)
        transition = parse_transition_param(params)
    except ParamError as ex:
        _LOGGER.error(
            "%s: parse %s param %r: %s", device.label, ex.name, ex.value, ex.__cause__
        )
        return _error(500, str(ex))

    try:
        await device.async_transition(target, transition)
    except TransitionError as ex:
        _LOGGER.error("%s: transition: %s", device.label, ex)
        return _error(500, "unable to set brightness on device")

    body: Dict[str, Any] = target.as_human()
    body["transition"] = format_duration(transition)
    return web.json_response(body)


async def status_handler(request: web.Request) -> web.Response:
    device = _device(request)
    try:
        status = await device.async_status()
    except TransitionError as ex:
        _LOGGER.error("%s: status: %s", device.label, ex)
        return _error(500, "unable to get device state")
    return web.json_response(status)


def create_app(devices: Dict[str, BaseDevice]) -> web.Application:
    app = web.Application()
    app[DEVICES_KEY] = devices
    app.router.add_get("/{label}/status", status_handler)
    app.router.add_route("GET", "/{label}", power_handler)
    app.router.add_route("POST", "/{label}", power_handler)
    return app
