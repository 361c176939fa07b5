import datetime
import logging

from .base_device import BaseDevice
from .exceptions import TransitionError
from .schedule import Schedule
from .utils import ColorState, format_duration

_LOGGER = logging.getLogger(__name__)


class Job:
    """Move one device to a target color whenever its schedule fires."""

    def __init__(
        self,
        device: BaseDevice,
        target: ColorState,
        transition: datetime.timedelta,
        schedule: Schedule,
    ) -> None:
        if transition < datetime.timedelta(0):
            raise ValueError("transition must not be negative")
        self.device = device
        self.target = target
        self.transition = transition
        self.schedule = schedule

    def __str__(self) -> str:
        return f"{self.device.label} [{self.schedule}]"

    async def async_run(self) -> None:
        """Run the transition; failures are logged, never raised."""
        _LOGGER.info(
            "%s: transition to %s over %s",
            self,
            self.target.as_human(),
            format_duration(self.transition),
        )
        try:
            await self.device.async_transition(self.target, self.transition)
        except TransitionError as ex:
            _LOGGER.error("%s: transition failed: %s", self, ex)
        except Exception:  # pylint: disable=broad-except
            _LOGGER.exception("%s: unexpected error during transition", self)
        else:
            _LOGGER.debug("%s: transition sent", self)
