"""Relays driven over a local REST interface.

A relay has no color: it is on whenever the requested brightness is not
zero. Color writes are accepted and ignored so the transition sequence
can treat relays like any other device.
"""

from abc import abstractmethod
import asyncio
import datetime
import logging
from typing import Any, Dict, Optional

import aiohttp

from .base_device import ZERO, BaseDevice, DeviceConnection
from .const import KELVIN_NEUTRAL, MAX_UINT16, REQUEST_TIMEOUT
from .exceptions import ProtocolMismatch, TransportFailure, TransportTimeout
from .utils import ColorState

_LOGGER = logging.getLogger(__name__)


class AIORelayConnection(DeviceConnection):
    """An HTTP session used for the duration of one operation."""

    def __init__(self, label: str, host: str, request_timeout: float) -> None:
        self.label = label
        self.host = host
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=request_timeout)
        )

    async def async_close(self) -> None:
        await self._session.close()

    async def async_get_json(
        self, path: str, params: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        url = f"http://{self.host}/{path}"
        try:
            async with self._session.get(url, params=params) as resp:
                resp.raise_for_status()
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError as ex:
            raise TransportTimeout(f"{self.label}: {path}: timed out") from ex
        except aiohttp.ClientResponseError as ex:
            raise ProtocolMismatch(f"{self.label}: {path}: {ex.status}") from ex
        except aiohttp.ClientError as ex:
            raise TransportFailure(f"{self.label}: {path}: {ex}") from ex
        except ValueError as ex:
            raise ProtocolMismatch(f"{self.label}: {path}: invalid json") from ex
        if not isinstance(data, dict):
            raise ProtocolMismatch(f"{self.label}: {path}: unexpected {data!r}")
        _LOGGER.debug("%s: %s <= %s", self.label, path, data)
        return data

    async def async_get_color(self) -> ColorState:
        brightness = MAX_UINT16 if await self.async_get_power() else 0
        return ColorState(0, 0, brightness, KELVIN_NEUTRAL)

    async def async_set_color(
        self, color: ColorState, duration: datetime.timedelta
    ) -> None:
        """Relays have no color."""

    async def async_set_power(
        self, on: bool, duration: datetime.timedelta = ZERO
    ) -> None:
        await self._async_switch(on)

    @abstractmethod
    async def _async_switch(self, on: bool) -> None:
        """Switch the relay on or off."""


class AIORelay(BaseDevice):
    """Base for relays, creating one HTTP session per operation."""

    connection_class = AIORelayConnection

    def __init__(
        self, label: str, host: str, request_timeout: float = REQUEST_TIMEOUT
    ) -> None:
        super().__init__(label, host)
        self.request_timeout = request_timeout
        self.firmware: Optional[str] = None
        self.hardware: Optional[str] = None

    def _connection(self) -> AIORelayConnection:
        return self.connection_class(self.label, self.host, self.request_timeout)

    async def async_connect(self) -> DeviceConnection:
        return self._connection()
