import asyncio
import datetime
import logging
from typing import Callable, Dict, Optional

from .aioprotocol import AIOLIFXProtocol
from .aioutils import asyncio_timeout
from .base_device import ZERO, BaseDevice, DeviceConnection
from .const import DEVICE_TYPE_LIFX, LIFX_PORT, PROBE_TIMEOUT, REQUEST_TIMEOUT
from .exceptions import ProtocolMismatch, TransportFailure, TransportTimeout
from .protocol import (
    MSG_ACKNOWLEDGEMENT,
    MSG_ECHO_RESPONSE,
    MSG_LIGHT_STATE,
    MSG_STATE_LABEL,
    MSG_STATE_POWER,
    MSG_STATE_UNHANDLED,
    MSG_STATE_VERSION,
    SWITCH_PRODUCTS,
    VENDOR_LIFX,
    LIFXMessage,
    LIFXVersion,
    ProtocolLIFX,
    mac_to_target,
    parse_label,
    parse_light_state,
    parse_message,
    parse_power,
    parse_version,
)
from .utils import ColorState, clamp_kelvin

_LOGGER = logging.getLogger(__name__)


class AIOLifxConnection(DeviceConnection):
    """One UDP exchange with a LIFX device."""

    def __init__(
        self, label: str, protocol: ProtocolLIFX, request_timeout: float
    ) -> None:
        self.label = label
        self.request_timeout = request_timeout
        self._protocol = protocol
        self._aio_protocol: Optional[AIOLIFXProtocol] = None
        self._futures: Dict[int, "asyncio.Future[LIFXMessage]"] = {}

    async def async_open(self, host: str, port: int) -> None:
        loop = asyncio.get_running_loop()
        try:
            _, self._aio_protocol = await loop.create_datagram_endpoint(
                lambda: AIOLIFXProtocol(
                    self._async_data_received, self._async_connection_lost
                ),
                remote_addr=(host, port),
            )
        except OSError as ex:
            raise TransportFailure(f"{self.label}: dial {host}:{port}: {ex}") from ex

    async def async_close(self) -> None:
        if self._aio_protocol is not None:
            self._aio_protocol.close()
            self._aio_protocol = None

    def _async_data_received(self, data: bytes) -> None:
        message = parse_message(data)
        if message is None or message.header.source != self._protocol.source:
            return
        future = self._futures.get(message.header.sequence)
        if future is None or future.done():
            return
        if message.header.type == MSG_STATE_UNHANDLED:
            future.set_exception(
                ProtocolMismatch(f"{self.label}: device does not handle request")
            )
            return
        future.set_result(message)

    def _async_connection_lost(self, exc: Optional[Exception]) -> None:
        for future in self._futures.values():
            if not future.done():
                future.set_exception(
                    TransportFailure(f"{self.label}: connection lost: {exc}")
                )

    async def _async_request(
        self, construct: Callable[[int], bytes], response_type: int
    ) -> LIFXMessage:
        if self._aio_protocol is None:
            raise TransportFailure(f"{self.label}: connection is closed")
        sequence = self._protocol.next_sequence()
        future: "asyncio.Future[LIFXMessage]" = (
            asyncio.get_running_loop().create_future()
        )
        self._futures[sequence] = future
        try:
            self._aio_protocol.write(construct(sequence))
            message = await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as ex:
            raise TransportTimeout(
                f"{self.label}: no response within {self.request_timeout}s"
            ) from ex
        finally:
            self._futures.pop(sequence, None)
        if message.header.type != response_type:
            raise ProtocolMismatch(
                f"{self.label}: expected message type {response_type}, "
                f"got {message.header.type}"
            )
        return message

    async def async_echo(self, payload: bytes = b"") -> None:
        await self._async_request(
            lambda seq: self._protocol.construct_echo_request(seq, payload),
            MSG_ECHO_RESPONSE,
        )

    async def async_get_power(self) -> bool:
        message = await self._async_request(
            self._protocol.construct_get_power, MSG_STATE_POWER
        )
        return parse_power(message.payload)

    async def async_get_color(self) -> ColorState:
        message = await self._async_request(
            self._protocol.construct_light_get, MSG_LIGHT_STATE
        )
        return parse_light_state(message.payload).color

    async def async_set_power(
        self, on: bool, duration: datetime.timedelta = ZERO
    ) -> None:
        await self._async_request(
            lambda seq: self._protocol.construct_set_light_power(
                seq, on, duration.total_seconds()
            ),
            MSG_ACKNOWLEDGEMENT,
        )

    async def async_set_color(
        self, color: ColorState, duration: datetime.timedelta
    ) -> None:
        await self._async_request(
            lambda seq: self._protocol.construct_set_color(
                seq, color, duration.total_seconds()
            ),
            MSG_ACKNOWLEDGEMENT,
        )

    def sanitize_color(self, color: ColorState) -> ColorState:
        return color._replace(kelvin=clamp_kelvin(color.kelvin))

    async def async_get_version(self) -> LIFXVersion:
        message = await self._async_request(
            self._protocol.construct_get_version, MSG_STATE_VERSION
        )
        return parse_version(message.payload)

    async def async_get_label(self) -> str:
        message = await self._async_request(
            self._protocol.construct_get_label, MSG_STATE_LABEL
        )
        return parse_label(message.payload)


class AIOLifxBulb(BaseDevice):
    """A LIFX bulb controlled over the LAN protocol."""

    device_type = DEVICE_TYPE_LIFX

    def __init__(
        self,
        label: str,
        host: str,
        mac: str,
        port: int = LIFX_PORT,
        request_timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        super().__init__(label, host)
        self.port = port
        self.target = mac_to_target(mac)
        self.request_timeout = request_timeout
        self.device_label: Optional[str] = None
        self.product: Optional[int] = None

    async def async_connect(self) -> AIOLifxConnection:
        conn = AIOLifxConnection(
            self.label, ProtocolLIFX(self.target), self.request_timeout
        )
        await conn.async_open(self.host, self.port)
        return conn

    async def async_setup(self) -> None:
        """Check the device is a LIFX light and read its label."""
        try:
            async with asyncio_timeout(PROBE_TIMEOUT):
                conn = await self.async_connect()
                try:
                    await conn.async_echo()
                    version = await conn.async_get_version()
                    if (
                        version.vendor != VENDOR_LIFX
                        or version.product in SWITCH_PRODUCTS
                    ):
                        raise ProtocolMismatch(
                            f"{self.label}: device is not a light: {version}"
                        )
                    self.product = version.product
                    self.device_label = (await conn.async_get_label()).lower()
                finally:
                    await conn.async_close()
        except asyncio.TimeoutError as ex:
            raise TransportTimeout(f"{self.label}: setup timed out") from ex
        self.model = f"LIFX product {self.product}"
        _LOGGER.debug(
            "%s: connected to %s %r", self.label, self.model, self.device_label
        )
