"""Device capability set and the transition state machine built on it."""

from abc import abstractmethod
import asyncio
import datetime
import logging
from typing import Any, Dict, Optional

from .aioutils import async_linear_backoff, asyncio_timeout
from .const import (
    ARM_TRANSITION,
    ECHO_ATTEMPTS,
    ECHO_RETRY_BACKOFF,
    PROBE_TIMEOUT,
    STEP_CONNECT,
    STEP_ECHO,
    STEP_GET_COLOR,
    STEP_GET_POWER,
    STEP_RESET_COLOR,
    STEP_SET_COLOR,
    STEP_SET_LIGHT_POWER,
    STEP_SET_POWER,
    STEP_TIMEOUT,
    TRANSITION_TIMEOUT,
)
from .exceptions import (
    LamplighterError,
    ProtocolMismatch,
    TransitionError,
    TransportFailure,
    TransportTimeout,
)
from .utils import ColorState

_LOGGER = logging.getLogger(__name__)

ZERO = datetime.timedelta(0)


class DeviceConnection:
    """A single open exchange with a device.

    Connections are opened per operation and closed when it completes;
    they are never shared between concurrent operations.
    """

    @abstractmethod
    async def async_echo(self, payload: bytes = b"") -> None:
        """Round trip a liveness probe."""

    @abstractmethod
    async def async_get_power(self) -> bool:
        """Return True if the device is on."""

    @abstractmethod
    async def async_get_color(self) -> ColorState:
        """Return the current color."""

    @abstractmethod
    async def async_set_power(
        self, on: bool, duration: datetime.timedelta = ZERO
    ) -> None:
        """Switch the device on or off over duration."""

    @abstractmethod
    async def async_set_color(
        self, color: ColorState, duration: datetime.timedelta
    ) -> None:
        """Move to color over duration."""

    def sanitize_color(self, color: ColorState) -> ColorState:
        """Adjust a color to what the device can display."""
        return color

    @abstractmethod
    async def async_close(self) -> None:
        """Release the connection."""


class BaseDevice:
    """A device reachable on the LAN.

    Subclasses only open connections; the order in which capabilities are
    used lives here so every device type behaves the same way.
    """

    device_type = "unknown"

    def __init__(self, label: str, host: str) -> None:
        self.label = label
        self.host = host
        self.model: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.device_type} {self.label} ({self.host})"

    @abstractmethod
    async def async_connect(self) -> DeviceConnection:
        """Open a connection, raising TransportFailure or ProtocolMismatch."""

    async def async_setup(self) -> None:
        """Identify the device once at startup."""
        await self.async_probe()

    async def async_probe(self) -> None:
        """Check the device answers, with a short deadline."""
        try:
            async with asyncio_timeout(PROBE_TIMEOUT):
                conn = await self.async_connect()
                try:
                    await conn.async_echo()
                finally:
                    await conn.async_close()
        except asyncio.TimeoutError as ex:
            raise TransportTimeout(f"{self.label}: probe timed out") from ex

    async def _async_echo(self, conn: DeviceConnection) -> None:
        """Echo with linear backoff, retrying only when the probe times out."""
        for attempt in range(1, ECHO_ATTEMPTS + 1):
            try:
                await conn.async_echo()
            except TransportTimeout as ex:
                _LOGGER.debug(
                    "%s: echo timed out (%s/%s): %s",
                    self.label,
                    attempt,
                    ECHO_ATTEMPTS,
                    ex,
                )
                if attempt == ECHO_ATTEMPTS:
                    raise
                await async_linear_backoff(attempt, ECHO_RETRY_BACKOFF)
            else:
                return

    async def async_transition(
        self, target: ColorState, duration: datetime.timedelta
    ) -> None:
        """Move the device to target over duration.

        Raises TransitionError naming the step that failed.
        """
        try:
            async with asyncio_timeout(TRANSITION_TIMEOUT):
                await self._async_transition(target, duration)
        except asyncio.TimeoutError as ex:
            raise TransitionError(self.label, STEP_TIMEOUT, ex) from ex

    async def _async_transition(
        self, target: ColorState, duration: datetime.timedelta
    ) -> None:
        try:
            conn = await self.async_connect()
        except LamplighterError as ex:
            raise TransitionError(self.label, STEP_CONNECT, ex) from ex
        try:
            await self._async_run_steps(conn, target, duration)
        finally:
            await conn.async_close()

    async def _async_run_steps(
        self,
        conn: DeviceConnection,
        target: ColorState,
        duration: datetime.timedelta,
    ) -> None:
        step = STEP_ECHO
        try:
            await self._async_echo(conn)

            if target.is_off:
                step = STEP_SET_LIGHT_POWER
                _LOGGER.debug("%s: power off over %s", self.label, duration)
                await conn.async_set_power(False, duration)
                return

            step = STEP_GET_POWER
            is_on = await conn.async_get_power()
            target = conn.sanitize_color(target)

            if not is_on:
                # Arm hue/saturation/kelvin at zero brightness so the device
                # does not flash its last color when it powers on
                step = STEP_RESET_COLOR
                _LOGGER.debug("%s: device is off, arming %s", self.label, target)
                await conn.async_set_color(
                    target._replace(brightness=0), ARM_TRANSITION
                )
                step = STEP_SET_POWER
                await conn.async_set_power(True)

            step = STEP_SET_COLOR
            _LOGGER.debug("%s: set color %s over %s", self.label, target, duration)
            await conn.async_set_color(target, duration)
        except (TransportFailure, ProtocolMismatch) as ex:
            raise TransitionError(self.label, step, ex) from ex

    async def async_status(self) -> Dict[str, Any]:
        """Return the current power and color in human units."""
        try:
            async with asyncio_timeout(TRANSITION_TIMEOUT):
                try:
                    conn = await self.async_connect()
                except LamplighterError as ex:
                    raise TransitionError(self.label, STEP_CONNECT, ex) from ex
                step = STEP_GET_POWER
                try:
                    is_on = await conn.async_get_power()
                    step = STEP_GET_COLOR
                    color = await conn.async_get_color()
                except (TransportFailure, ProtocolMismatch) as ex:
                    raise TransitionError(self.label, step, ex) from ex
                finally:
                    await conn.async_close()
        except asyncio.TimeoutError as ex:
            raise TransitionError(self.label, STEP_TIMEOUT, ex) from ex
        return {"power": is_on, **color.as_human()}
