"""Shelly Gen2 relays using the RPC over HTTP interface."""

import logging
from typing import Dict, Optional
from urllib.parse import unquote_plus

from .const import DEVICE_TYPE_SHELLY, REQUEST_TIMEOUT
from .exceptions import ProtocolMismatch
from .relay import AIORelay, AIORelayConnection

_LOGGER = logging.getLogger(__name__)


class AIOShellyConnection(AIORelayConnection):
    def __init__(
        self, label: str, host: str, request_timeout: float, index: int = 0
    ) -> None:
        super().__init__(label, host, request_timeout)
        self.index = index

    async def async_rpc(
        self, method: str, params: Optional[Dict[str, str]] = None
    ) -> Dict[str, object]:
        return await self.async_get_json(f"rpc/{method}", params)

    async def _async_switch_status(self) -> Dict[str, object]:
        return await self.async_rpc("Switch.GetStatus", {"id": str(self.index)})

    async def async_echo(self, payload: bytes = b"") -> None:
        await self._async_switch_status()

    async def async_get_power(self) -> bool:
        status = await self._async_switch_status()
        output = status.get("output")
        if not isinstance(output, bool):
            raise ProtocolMismatch(f"{self.label}: no output in {status!r}")
        return output

    async def _async_switch(self, on: bool) -> None:
        await self.async_rpc(
            "Switch.Set",
            {"id": str(self.index), "on": "true" if on else "false"},
        )


class AIOShellySwitch(AIORelay):
    """One switch channel of a Shelly relay."""

    device_type = DEVICE_TYPE_SHELLY

    def __init__(
        self,
        label: str,
        host: str,
        index: int = 0,
        request_timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        super().__init__(label, host, request_timeout)
        self.index = index

    def _connection(self) -> AIOShellyConnection:
        return AIOShellyConnection(
            self.label, self.host, self.request_timeout, self.index
        )

    async def async_setup(self) -> None:
        conn = self._connection()
        try:
            config = await conn.async_rpc("Sys.GetConfig", {"id": "0"})
            kvs = await conn.async_rpc("KVS.Get", {"key": "model"})
        finally:
            await conn.async_close()
        device = config.get("device")
        if not isinstance(device, dict):
            raise ProtocolMismatch(f"{self.label}: not a shelly device: {config!r}")
        self.firmware = device.get("fw_id")
        model = kvs.get("value")
        self.hardware = unquote_plus(model) if isinstance(model, str) else None
        self.model = f"Shelly {self.hardware} {self.firmware}"
        _LOGGER.debug("%s: connected to %s", self.label, self.model)
