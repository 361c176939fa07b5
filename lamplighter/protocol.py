"""LIFX LAN protocol."""

import logging
import random
import struct
from typing import NamedTuple, Optional

from .utils import ColorState

_LOGGER = logging.getLogger(__name__)

PROTOCOL_NUMBER = 1024
HEADER_LEN = 36
ECHO_PAYLOAD_LEN = 64
LABEL_LEN = 32

VENDOR_LIFX = 1
# Products that answer the protocol but have no light
SWITCH_PRODUCTS = {70, 71, 89}

# Message types
MSG_GET_POWER = 20
MSG_SET_POWER = 21
MSG_STATE_POWER = 22
MSG_GET_LABEL = 23
MSG_STATE_LABEL = 25
MSG_GET_VERSION = 32
MSG_STATE_VERSION = 33
MSG_ACKNOWLEDGEMENT = 45
MSG_ECHO_REQUEST = 58
MSG_ECHO_RESPONSE = 59
MSG_LIGHT_GET = 101
MSG_LIGHT_SET_COLOR = 102
MSG_LIGHT_STATE = 107
MSG_LIGHT_SET_POWER = 117
MSG_LIGHT_STATE_POWER = 118
MSG_STATE_UNHANDLED = 223

POWER_ON = 0xFFFF
POWER_OFF = 0

_HEADER = struct.Struct("<HHI8s6sBBQHH")
_SET_COLOR = struct.Struct("<BHHHHI")
_LIGHT_STATE = struct.Struct("<HHHHhH32sQ")
_SET_LIGHT_POWER = struct.Struct("<HI")
_LEVEL = struct.Struct("<H")
_VERSION = struct.Struct("<III")


class LIFXHeader(NamedTuple):
    size: int
    tagged: bool
    source: int
    target: bytes
    ack_required: bool
    res_required: bool
    sequence: int
    type: int


class LIFXMessage(NamedTuple):
    header: LIFXHeader
    payload: bytes


class LIFXLightState(NamedTuple):
    color: ColorState
    power: bool
    label: str


class LIFXVersion(NamedTuple):
    vendor: int
    product: int


def mac_to_target(mac: str) -> bytes:
    """Convert "d0:73:d5:01:02:03" (or without separators) to an 8 byte target."""
    digits = mac.replace(":", "").replace("-", "").strip()
    if len(digits) != 12:
        raise ValueError(f"invalid mac address {mac!r}")
    try:
        return bytes.fromhex(digits) + b"\x00\x00"
    except ValueError as ex:
        raise ValueError(f"invalid mac address {mac!r}") from ex


def _decode_label(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace")


def parse_message(data: bytes) -> Optional[LIFXMessage]:
    """Split a datagram into header and payload, None if it is not LIFX."""
    if len(data) < HEADER_LEN:
        return None
    (
        size,
        protocol,
        source,
        target,
        _,
        flags,
        sequence,
        _,
        msg_type,
        _,
    ) = _HEADER.unpack_from(data)
    if protocol & 0xFFF != PROTOCOL_NUMBER or size > len(data):
        return None
    header = LIFXHeader(
        size=size,
        tagged=bool(protocol & (1 << 13)),
        source=source,
        target=target,
        ack_required=bool(flags & 0x02),
        res_required=bool(flags & 0x01),
        sequence=sequence,
        type=msg_type,
    )
    return LIFXMessage(header, bytes(data[HEADER_LEN:size]))


def parse_power(payload: bytes) -> bool:
    (level,) = _LEVEL.unpack_from(payload)
    return level != POWER_OFF


def parse_light_state(payload: bytes) -> LIFXLightState:
    (
        hue,
        saturation,
        brightness,
        kelvin,
        _,
        power,
        label,
        _,
    ) = _LIGHT_STATE.unpack_from(payload)
    return LIFXLightState(
        ColorState(hue, saturation, brightness, kelvin),
        power != POWER_OFF,
        _decode_label(label),
    )


def parse_version(payload: bytes) -> LIFXVersion:
    vendor, product, _ = _VERSION.unpack_from(payload)
    return LIFXVersion(vendor, product)


def parse_label(payload: bytes) -> str:
    return _decode_label(payload[:LABEL_LEN])


def duration_to_ms(seconds: float) -> int:
    return max(0, min(0xFFFFFFFF, int(round(seconds * 1000))))


class ProtocolLIFX:
    """Builds LIFX packets addressed to one device."""

    def __init__(self, target: bytes, source: Optional[int] = None) -> None:
        self.target = target
        # 0 and 1 are reserved source ids
        self.source = source if source is not None else random.randint(2, 0xFFFFFFFF)
        self._sequence = 0

    def next_sequence(self) -> int:
        self._sequence = (self._sequence + 1) % 0x100
        return self._sequence

    def construct_message(
        self,
        msg_type: int,
        payload: bytes = b"",
        sequence: int = 0,
        ack_required: bool = False,
        res_required: bool = False,
    ) -> bytes:
        flags = 0
        if res_required:
            flags |= 0x01
        if ack_required:
            flags |= 0x02
        header = _HEADER.pack(
            HEADER_LEN + len(payload),
            PROTOCOL_NUMBER | (1 << 12),  # addressable, not tagged
            self.source,
            self.target,
            b"\x00" * 6,
            flags,
            sequence,
            0,
            msg_type,
            0,
        )
        return header + payload

    def construct_echo_request(self, sequence: int, payload: bytes = b"") -> bytes:
        body = payload[:ECHO_PAYLOAD_LEN].ljust(ECHO_PAYLOAD_LEN, b"\x00")
        return self.construct_message(
            MSG_ECHO_REQUEST, body, sequence, res_required=True
        )

    def construct_get_power(self, sequence: int) -> bytes:
        return self.construct_message(
            MSG_GET_POWER, sequence=sequence, res_required=True
        )

    def construct_set_power(self, sequence: int, on: bool) -> bytes:
        return self.construct_message(
            MSG_SET_POWER,
            _LEVEL.pack(POWER_ON if on else POWER_OFF),
            sequence,
            ack_required=True,
        )

    def construct_set_light_power(
        self, sequence: int, on: bool, duration: float
    ) -> bytes:
        return self.construct_message(
            MSG_LIGHT_SET_POWER,
            _SET_LIGHT_POWER.pack(
                POWER_ON if on else POWER_OFF, duration_to_ms(duration)
            ),
            sequence,
            ack_required=True,
        )

    def construct_light_get(self, sequence: int) -> bytes:
        return self.construct_message(
            MSG_LIGHT_GET, sequence=sequence, res_required=True
        )

    def construct_set_color(
        self, sequence: int, color: ColorState, duration: float
    ) -> bytes:
        return self.construct_message(
            MSG_LIGHT_SET_COLOR,
            _SET_COLOR.pack(0, *color, duration_to_ms(duration)),
            sequence,
            ack_required=True,
        )

    def construct_get_version(self, sequence: int) -> bytes:
        return self.construct_message(
            MSG_GET_VERSION, sequence=sequence, res_required=True
        )

    def construct_get_label(self, sequence: int) -> bytes:
        return self.construct_message(
            MSG_GET_LABEL, sequence=sequence, res_required=True
        )


def construct_light_state(
    protocol: ProtocolLIFX, sequence: int, color: ColorState, power: bool, label: str
) -> bytes:
    """Build a LightState reply, used by tests and mock devices."""
    return protocol.construct_message(
        MSG_LIGHT_STATE,
        _LIGHT_STATE.pack(
            *color,
            0,
            POWER_ON if power else POWER_OFF,
            label.encode()[:LABEL_LEN],
            0,
        ),
        sequence,
    )
