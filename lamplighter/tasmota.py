"""Tasmota firmware relays such as the Sonoff S31."""

import logging
from typing import Dict

from .const import DEVICE_TYPE_S31
from .exceptions import ProtocolMismatch
from .relay import AIORelay, AIORelayConnection

_LOGGER = logging.getLogger(__name__)

TASMOTA_COMMAND_PATH = "cm"


def _power_is_on(data: Dict[str, object], label: str) -> bool:
    power = data.get("POWER")
    if not isinstance(power, str):
        raise ProtocolMismatch(f"{label}: no POWER in {data!r}")
    return power.upper() == "ON"


class AIOTasmotaConnection(AIORelayConnection):
    async def async_command(self, command: str) -> Dict[str, object]:
        return await self.async_get_json(TASMOTA_COMMAND_PATH, {"cmnd": command})

    async def async_echo(self, payload: bytes = b"") -> None:
        await self.async_command("State")

    async def async_get_power(self) -> bool:
        return _power_is_on(await self.async_command("Power"), self.label)

    async def _async_switch(self, on: bool) -> None:
        data = await self.async_command("Power On" if on else "Power Off")
        _power_is_on(data, self.label)


class AIOTasmotaSwitch(AIORelay):
    """A relay running Tasmota, driven through cm?cmnd= requests."""

    device_type = DEVICE_TYPE_S31
    connection_class = AIOTasmotaConnection

    async def async_setup(self) -> None:
        conn = self._connection()
        try:
            data = await conn.async_get_json(
                TASMOTA_COMMAND_PATH, {"cmnd": "Status 2"}
            )
        finally:
            await conn.async_close()
        status = data.get("StatusFWR")
        if not isinstance(status, dict):
            raise ProtocolMismatch(f"{self.label}: not a tasmota device: {data!r}")
        self.firmware = status.get("Version")
        self.hardware = status.get("Hardware")
        self.model = f"Sonoff S31 {self.hardware} {self.firmware}"
        _LOGGER.debug("%s: connected to %s", self.label, self.model)
