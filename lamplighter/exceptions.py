"""Lamplighter exceptions."""
import asyncio
from typing import Optional


class LamplighterError(Exception):
    """Base class for lamplighter errors."""


class OracleUnavailable(LamplighterError):
    """The solar oracle could not produce sunrise/sunset for a date."""


class TransportFailure(LamplighterError):
    """A device could not be reached or the exchange failed."""


class TransportTimeout(TransportFailure):
    """A device did not answer before the deadline."""


class ProtocolMismatch(LamplighterError):
    """The device does not speak the expected protocol or capability."""


class ConfigError(ValueError):
    """The configuration file is invalid."""


class TransitionError(LamplighterError):
    """A transition step failed on a device."""

    def __init__(
        self, label: str, step: str, cause: Optional[BaseException] = None
    ) -> None:
        self.label = label
        self.step = step
        self.cause = cause
        message = f"{label}: {step}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)

    @property
    def is_timeout(self) -> bool:
        return isinstance(
            self.cause, (TransportTimeout, TimeoutError, asyncio.TimeoutError)
        )
