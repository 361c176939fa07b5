"""Solar events for a location."""

from abc import abstractmethod
import datetime
from enum import Enum
import logging
from typing import Any, Dict, NamedTuple

from astral import Observer
from astral.sun import sun

from .exceptions import OracleUnavailable

_LOGGER = logging.getLogger(__name__)


class SolarEvent(Enum):
    SUNRISE = "sunrise"
    SUNSET = "sunset"


class Location(NamedTuple):
    latitude: float
    longitude: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Location":
        latitude = float(data["latitude"])
        longitude = float(data["longitude"])
        if not -90 <= latitude <= 90:
            raise ValueError(f"latitude {latitude} must be within [-90, 90]")
        if not -180 <= longitude <= 180:
            raise ValueError(f"longitude {longitude} must be within [-180, 180]")
        return cls(latitude, longitude)


class SolarEvents(NamedTuple):
    sunrise: datetime.datetime
    sunset: datetime.datetime

    def get(self, event: SolarEvent) -> datetime.datetime:
        if event is SolarEvent.SUNRISE:
            return self.sunrise
        return self.sunset


class SolarOracle:
    """Source of sunrise and sunset instants."""

    @abstractmethod
    def get_solar_events(
        self, location: Location, when: datetime.datetime
    ) -> SolarEvents:
        """Return sunrise and sunset for the calendar date of when.

        The date is taken in the time zone of when, and the instants are
        returned in that time zone. Raises OracleUnavailable on failure.
        """


class AstralSolarOracle(SolarOracle):
    """Compute sunrise and sunset locally with astral."""

    def __init__(self, elevation: float = 0.0) -> None:
        self.elevation = elevation

    def get_solar_events(
        self, location: Location, when: datetime.datetime
    ) -> SolarEvents:
        observer = Observer(location.latitude, location.longitude, self.elevation)
        try:
            times = sun(
                observer,
                date=when.date(),
                tzinfo=when.tzinfo or datetime.timezone.utc,
            )
        except ValueError as ex:
            # The sun never rises or never sets on this date at this latitude
            raise OracleUnavailable(
                f"{location}: no solar events on {when.date()}: {ex}"
            ) from ex
        _LOGGER.debug(
            "%s: sunrise %s sunset %s",
            location,
            times["sunrise"].isoformat(),
            times["sunset"].isoformat(),
        )
        return SolarEvents(times["sunrise"], times["sunset"])
