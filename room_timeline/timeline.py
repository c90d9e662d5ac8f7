"""Booking timeline reconciliation engine.

Given the bookings of one room for one day, the room's operating hours and
the current local time, :func:`reconcile` produces an ordered list of
:class:`~room_timeline.models.Slot` objects that tile the rest of the day
without gaps. Each slot is tagged ``now``, ``upcoming`` or ``later`` in
chronological order, and the ``now`` slot carries ``minutes_left``.

Everything here is pure: no I/O, no clock reads and no module state. The
caller samples the current time once and passes it in, so every comparison
made during one call sees the same instant. All times are local wall-clock
minutes of the day; no time-zone conversion happens in this module.
"""

from __future__ import annotations

import enum
import logging
import re
from collections import Counter
from typing import Iterable, List, NamedTuple, Optional, Sequence

from .models import BookingInterval, RoomConfig, Slot

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60
QUARTER_HOUR = 15

# H:MM or HH:MM, optionally followed by :SS (ignored).
_TIME_RE = re.compile(r"^([0-9]{1,2}):([0-9]{2})(?::([0-9]{2}))?$")


class TimeParseError(ValueError):
    """Raised when a time of day cannot be parsed as ``HH:MM``."""

    def __init__(self, value: object) -> None:
        super().__init__(f"Invalid time of day: {value!r}")
        self.value = value


class RoundedTime(NamedTuple):
    hour: int
    minute: int
    text: str

    @property
    def minutes(self) -> int:
        return self.hour * 60 + self.minute


def to_minutes(text: str) -> int:
    """Convert an ``HH:MM`` string to minutes since midnight.

    ``24:00`` is accepted as the end of the day. Seconds, if present, are
    ignored.

    Raises:
        TimeParseError: if ``text`` is not a valid time of day.
    """
    if not isinstance(text, str):
        raise TimeParseError(text)
    match = _TIME_RE.match(text.strip())
    if match is None:
        raise TimeParseError(text)
    hour = int(match.group(1))
    minute = int(match.group(2))
    second = int(match.group(3) or 0)
    if minute > 59 or second > 59 or hour > 24:
        raise TimeParseError(text)
    if hour == 24 and (minute or second):
        raise TimeParseError(text)
    return hour * 60 + minute


def format_minutes(minutes: int) -> str:
    """Format minutes since midnight as a zero-padded ``HH:MM`` string."""
    if not 0 <= minutes <= MINUTES_PER_DAY:
        raise ValueError(f"Minute of day out of range: {minutes}")
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def quarter_round_down(hour: int, minute: int) -> RoundedTime:
    """Floor a time of day to the previous quarter-hour boundary.

    Flooring (rather than rounding to nearest) keeps the timeline anchor at
    or before the current time, so ``minutes_left`` can never go negative
    because of the anchor, and requests a few seconds apart share an anchor.
    """
    rounded = minute - minute % QUARTER_HOUR
    return RoundedTime(hour, rounded, f"{hour:02d}:{rounded:02d}")


def _slot(start: int, end: int, status: str, **extra) -> Slot:
    start_text = format_minutes(start)
    end_text = format_minutes(end)
    return Slot(
        start_time=start_text,
        end_time=end_text,
        status=status,
        timeRange=f"{start_text} - {end_text}",
        **extra,
    )


def _closed_tail(room: RoomConfig) -> Slot:
    # Wraps past midnight, e.g. 23:00 - 07:00.
    return _slot(to_minutes(room.close_time), to_minutes(room.open_time), "closed")


def _warn_empty_booking(booking: BookingInterval) -> None:
    logger.warning(
        "Skipping booking %r with no duration (%s - %s)",
        booking.name,
        booking.start_time,
        booking.end_time,
    )


def merge_slots(
    bookings: Sequence[BookingInterval],
    window_start: int,
    window_end: int,
    room: RoomConfig,
) -> List[Slot]:
    """Tile ``[window_start, window_end)`` with booked and available slots.

    ``bookings`` must already be sorted by start time and limited to those
    ending after ``window_start``. Bookings that do not end after they
    start are skipped. A booking that is in progress at
    ``window_start`` keeps its real start time. Zero-width gaps produce no
    slot. For rooms with restricted hours a ``closed`` slot from closing to
    opening time is appended after the tiling.
    """
    slots: List[Slot] = []
    cursor = window_start
    previous_end: Optional[int] = None
    for booking in bookings:
        start = to_minutes(booking.start_time)
        end = to_minutes(booking.end_time)
        if end <= start:
            _warn_empty_booking(booking)
            continue
        if start > cursor:
            slots.append(_slot(cursor, start, "available"))
        elif previous_end is not None and start < previous_end:
            logger.warning(
                "Booking %r (%s - %s) overlaps the previous booking ending at %s",
                booking.name,
                booking.start_time,
                booking.end_time,
                format_minutes(previous_end),
            )
        slots.append(_slot(start, end, "booked", name=booking.name, creator=booking.creator))
        # Never move backwards when a booking is nested inside an earlier one.
        cursor = max(cursor, end)
        previous_end = cursor
    if cursor < window_end:
        slots.append(_slot(cursor, window_end, "available"))
    if room.restricted_hours:
        slots.append(_closed_tail(room))
    return slots


def full_day_slots(room: RoomConfig) -> List[Slot]:
    """Return the timeline for a day with nothing left booked.

    The whole configured day is shown as available, independent of the
    current time: opening to closing hours plus the closed tail for rooms
    with restricted hours, midnight to midnight otherwise.
    """
    if room.restricted_hours:
        return [
            _slot(to_minutes(room.open_time), to_minutes(room.close_time), "available"),
            _closed_tail(room),
        ]
    return [_slot(0, MINUTES_PER_DAY, "available")]


class _PeriodState(enum.Enum):
    AWAITING_NOW = enum.auto()
    AWAITING_UPCOMING = enum.auto()
    IN_LATER = enum.auto()


def classify_periods(slots: Iterable[Slot], now_minutes: int) -> List[Slot]:
    """Tag slots ``now``, ``upcoming`` and ``later`` in chronological order.

    The first slot is ``now`` and the second ``upcoming`` regardless of their
    status; every other slot is ``later``. The closed tail is always
    ``later`` and does not take the ``upcoming`` position. Only the ``now``
    slot gets ``minutes_left``.
    """
    state = _PeriodState.AWAITING_NOW
    classified: List[Slot] = []
    for slot in slots:
        if slot.status == "closed":
            classified.append(slot.model_copy(update={"timePeriod": "later"}))
            continue
        if state is _PeriodState.AWAITING_NOW:
            minutes_left = max(0, to_minutes(slot.end_time) - now_minutes)
            classified.append(slot.model_copy(update={"timePeriod": "now", "minutes_left": minutes_left}))
            state = _PeriodState.AWAITING_UPCOMING
        elif state is _PeriodState.AWAITING_UPCOMING:
            classified.append(slot.model_copy(update={"timePeriod": "upcoming"}))
            state = _PeriodState.IN_LATER
        else:
            classified.append(slot.model_copy(update={"timePeriod": "later"}))
    return classified


def _summarise(slots: Sequence[Slot]) -> None:
    statuses = Counter(slot.status for slot in slots)
    periods = Counter(slot.timePeriod for slot in slots)
    logger.info(
        "Timeline built: %s; periods: %s",
        ", ".join(f"{count} {status.upper()}" for status, count in statuses.items()),
        ", ".join(f"{count} {period.upper()}" for period, count in periods.items()),
    )


def reconcile(bookings: Iterable[BookingInterval], room: RoomConfig, now) -> List[Slot]:
    """Build the classified timeline for one room and one day.

    Args:
        bookings: the day's bookings for the room, in any order.
        room: the room's operating hours.
        now: the current local time; any object with ``hour`` and
            ``minute`` attributes (``datetime.datetime`` or
            ``datetime.time``).

    Returns:
        The ordered list of classified slots.

    Raises:
        TimeParseError: if any booking or room time is malformed. No
            partial timeline is returned.
    """
    # Stable sort: bookings starting together keep their input order.
    ordered = sorted(bookings, key=lambda booking: to_minutes(booking.start_time))
    ends = [to_minutes(booking.end_time) for booking in ordered]

    now_minutes = now.hour * 60 + now.minute
    anchor = quarter_round_down(now.hour, now.minute)
    current: List[BookingInterval] = []
    for booking, end in zip(ordered, ends):
        if end <= to_minutes(booking.start_time):
            _warn_empty_booking(booking)
        elif end > anchor.minutes:
            current.append(booking)
    logger.info(
        "Reconciling %d bookings at %s (anchor %s), %d not yet ended",
        len(ordered),
        format_minutes(now_minutes),
        anchor.text,
        len(current),
    )

    if current:
        merged = merge_slots(current, anchor.minutes, to_minutes(room.close_time), room)
    else:
        logger.info("No bookings left for the day, returning the full-day timeline")
        merged = full_day_slots(room)

    slots = classify_periods(merged, now_minutes)
    _summarise(slots)
    return slots
