import asyncio
from asyncio.transports import BaseTransport, DatagramTransport
import logging
from typing import Any, Callable, Optional, Tuple, cast

_LOGGER = logging.getLogger(__name__)


class AIOLIFXProtocol(asyncio.DatagramProtocol):
    """A asyncio.DatagramProtocol implementing a wrapper around the LIFX protocol."""

    def __init__(
        self,
        data_received: Callable[[bytes], Any],
        connection_lost: Callable[[Optional[Exception]], Any],
    ) -> None:
        self._data_receive_callback = data_received
        self._connection_lost_callback = connection_lost
        self.transport: Optional[DatagramTransport] = None
        self.peername: Optional[Tuple[str, int]] = None

    def connection_lost(self, exc: Optional[Exception]) -> None:
        """Handle connection lost."""
        _LOGGER.debug("%s: Connection lost: %s", self.peername, exc)
        self._connection_lost_callback(exc)

    def connection_made(self, transport: BaseTransport) -> None:
        """Handle connection made."""
        self.transport = cast(DatagramTransport, transport)
        self.peername = transport.get_extra_info("peername")

    def error_received(self, exc: Exception) -> None:
        """Handle an ICMP error, such as port unreachable."""
        _LOGGER.debug("%s: Error received: %s", self.peername, exc)
        self._connection_lost_callback(exc)

    def write(self, data: bytes) -> None:
        """Send a datagram to the device."""
        assert self.transport is not None
        _LOGGER.debug(
            "%s => %s (%d)",
            self.peername,
            " ".join(f"0x{x:02X}" for x in data),
            len(data),
        )
        self.transport.sendto(data)

    def close(self) -> None:
        """Close the transport."""
        if self.transport is not None:
            self.transport.close()

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        """Process a datagram from the device."""
        _LOGGER.debug(
            "%s <= %s (%d)",
            addr,
            " ".join(f"0x{x:02X}" for x in data),
            len(data),
        )
        self._data_receive_callback(data)
