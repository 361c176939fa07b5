import colorsys
import contextlib
import datetime
import math
import re
from typing import Any, Dict, NamedTuple, Optional, Tuple, cast

import webcolors  # type: ignore

from .const import (
    HUE_DEGREES_MAX,
    KELVIN_NEUTRAL,
    MAX_KELVIN,
    MAX_UINT16,
    MIN_KELVIN,
    PERCENT_MAX,
)

HUE_SCALE = MAX_UINT16 + 1  # hue is circular, 360 degrees wraps to 0

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


class ColorState(NamedTuple):
    """HSBK color, every field in device units."""

    hue: int  # 0-65535 maps to 0-360 degrees
    saturation: int  # 0-65535 maps to 0-100%
    brightness: int  # 0-65535 maps to 0-100%, 0 is off
    kelvin: int  # 1500-9000

    @classmethod
    def from_human(
        cls,
        hue: float = 0,
        saturation: float = 0,
        brightness: float = 0,
        kelvin: int = KELVIN_NEUTRAL,
    ) -> "ColorState":
        """Build a color from degrees, percentages and Kelvin.

        Out of range values are clamped, never rejected.
        """
        return cls(
            hue_to_u16(hue),
            percent_to_u16(saturation),
            percent_to_u16(brightness),
            clamp_kelvin(kelvin),
        )

    @property
    def is_off(self) -> bool:
        return self.brightness == 0

    def as_human(self) -> Dict[str, Any]:
        return {
            "hue": round(u16_to_hue(self.hue), 2),
            "saturation": round(u16_to_percent(self.saturation), 2),
            "brightness": round(u16_to_percent(self.brightness), 2),
            "kelvin": self.kelvin,
        }


def clamp(value: float, minimum: float, maximum: float) -> float:
    return max(minimum, min(maximum, value))


def hue_to_u16(degrees: float) -> int:
    degrees = clamp(degrees, 0, HUE_DEGREES_MAX)
    return int(math.floor(degrees / HUE_DEGREES_MAX * HUE_SCALE)) % HUE_SCALE


def percent_to_u16(percent: float) -> int:
    percent = clamp(percent, 0, PERCENT_MAX)
    return int(math.floor(percent / PERCENT_MAX * MAX_UINT16))


def clamp_kelvin(kelvin: float) -> int:
    return int(clamp(kelvin, MIN_KELVIN, MAX_KELVIN))


def u16_to_hue(value: int) -> float:
    return value * HUE_DEGREES_MAX / HUE_SCALE


def u16_to_percent(value: int) -> float:
    return value / MAX_UINT16 * PERCENT_MAX


def color_to_hue_saturation(color: str) -> Optional[Tuple[float, float]]:
    """Convert a css color name or web hex code to (degrees, percent)."""
    color = color.strip()
    rgb: Optional[Tuple[int, int, int]] = None

    # try to convert from an english name
    with contextlib.suppress(ValueError):
        rgb = cast(Tuple[int, int, int], tuple(webcolors.name_to_rgb(color)))

    # try to convert an web hex code
    if rgb is None:
        with contextlib.suppress(ValueError):
            rgb = cast(
                Tuple[int, int, int],
                tuple(webcolors.hex_to_rgb(webcolors.normalize_hex(color))),
            )

    if rgb is None:
        return None
    hue, saturation, _ = colorsys.rgb_to_hsv(*(channel / 255 for channel in rgb))
    return hue * HUE_DEGREES_MAX, saturation * PERCENT_MAX


def parse_duration(value: str) -> datetime.timedelta:
    """Parse a signed duration string such as "-1h30m", "250ms" or "15m"."""
    text = value.strip()
    if not text:
        raise ValueError(f"invalid duration {value!r}")
    sign = 1
    if text[0] in "+-":
        if text[0] == "-":
            sign = -1
        text = text[1:]
    if text == "0":
        return datetime.timedelta(0)

    seconds = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_RE.match(text, pos)
        if match is None:
            raise ValueError(f"invalid duration {value!r}")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0:
        raise ValueError(f"invalid duration {value!r}")
    return datetime.timedelta(seconds=sign * seconds)


def parse_transition(value: str) -> datetime.timedelta:
    """Parse a transition; a bare integer is a number of milliseconds."""
    value = value.strip()
    if value.isdigit():
        return datetime.timedelta(milliseconds=int(value))
    duration = parse_duration(value)
    if duration < datetime.timedelta(0):
        raise ValueError(f"transition must not be negative: {value!r}")
    return duration


def format_duration(duration: datetime.timedelta) -> str:
    """Format a timedelta the way parse_duration reads it."""
    total_ms = int(round(duration.total_seconds() * 1000))
    if total_ms == 0:
        return "0s"
    sign = "-" if total_ms < 0 else ""
    total_ms = abs(total_ms)
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    seconds, millis = divmod(rem, 1000)
    out = ""
    if hours:
        out += f"{hours}h"
    if minutes:
        out += f"{minutes}m"
    if seconds or millis:
        if millis and not (hours or minutes or seconds):
            out += f"{millis}ms"
        elif millis:
            out += f"{seconds}.{millis:03d}".rstrip("0") + "s"
        else:
            out += f"{seconds}s"
    return sign + out
