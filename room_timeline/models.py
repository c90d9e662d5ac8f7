"""Pydantic data models used by the timeline engine and API responses.

These models define the booking intervals consumed by the engine, the room
configuration it reconciles against and the slots it produces. They are
separate from the Google API data structures to decouple our internal
representation from external dependencies. Input and output models are
frozen: the engine never mutates what it is given or what it has emitted.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

SlotStatus = Literal["booked", "available", "closed"]
TimePeriod = Literal["now", "upcoming", "later"]


class BookingInterval(BaseModel):
    """A confirmed reservation for one room on one day, times as ``HH:MM``."""

    model_config = ConfigDict(frozen=True)

    start_time: str
    end_time: str
    name: str = "Untitled Booking"
    creator: str = "Unknown"


class RoomConfig(BaseModel):
    """Operating hours and metadata for a single room."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    open_time: str = "07:00"
    close_time: str = "23:00"
    restricted_hours: bool = False
    bookable: bool = False
    id: Optional[int] = None
    calendar_id: Optional[str] = None


class Slot(BaseModel):
    """One contiguous segment of the day's timeline.

    ``timePeriod`` is unset until the slot has been classified, and
    ``minutes_left`` is only ever set on the slot classified as ``now``.
    Serialise with :meth:`to_json` so unset optional fields are omitted.
    """

    model_config = ConfigDict(frozen=True)

    start_time: str
    end_time: str
    status: SlotStatus
    timeRange: str
    timePeriod: Optional[TimePeriod] = None
    minutes_left: Optional[int] = None
    name: Optional[str] = None
    creator: Optional[str] = None

    def to_json(self) -> dict:
        return self.model_dump(exclude_none=True)


class RoomInfo(BaseModel):
    """Room metadata returned alongside a timeline."""

    name: str
    id: Optional[int] = None
    bookable: bool = False


class ApiStatus(BaseModel):
    """State of the booking source credentials and the last fetch."""

    authenticated: bool
    tokenValid: bool
    tokenExpiresIn: Optional[str] = None
    lastFetched: Optional[str] = None


class LogEntry(BaseModel):
    timestamp: str
    level: str
    message: str
