"""Main application entry point for the room timeline service.

This module defines the FastAPI application, configures logging, manages
in-memory caching of the room registry and of fetched bookings, and serves
the JSON API consumed by the room display.

Endpoints:
  - ``/api/bookings``: the classified timeline for a room and day.
  - ``/api/room``: metadata for a room.
  - ``/api/rooms``: the configured room names.
  - ``/api/status``: booking source credentials and last fetch/error.
  - ``/api/logs``: recent log records.
  - ``/health``: simple health check endpoint.

Every ``/api`` route requires the ``x-api-key`` header to match ``API_KEY``;
requests are logged with method, path, status and duration so they show up
in ``/api/logs``.

Fetched bookings are cached per room and day for ``REFRESH_SECONDS`` behind
a threading lock so the calendar is not queried on every display refresh.
The timeline itself is rebuilt on every request from a freshly sampled
current time. Failures never produce a partial timeline: the response
falls back to stale bookings or an empty list, and the error is surfaced
via ``lastError`` on ``/api/status``.
"""

from __future__ import annotations

import hmac
import logging
import threading
import time
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import APIKeyHeader

from .config import settings
from .google_client import GoogleBookingSource
from .log_buffer import LogBuffer
from .models import BookingInterval, RoomConfig, RoomInfo
from .rooms import RoomRegistry, RoomsFileError, UnknownRoomError
from .timeline import TimeParseError, reconcile

logger = logging.getLogger("room_timeline")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger.setLevel(logging.INFO)

log_buffer = LogBuffer(capacity=settings.log_buffer_size)
logger.addHandler(log_buffer)

app = FastAPI(title="Room Timeline Service")

# CORS is disabled by default because the display and API run on the same origin.
if settings.enable_cors:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

_api_key_header = APIKeyHeader(name="x-api-key", auto_error=False)


def require_api_key(api_key: Optional[str] = Security(_api_key_header)) -> None:
    """Reject the request unless ``x-api-key`` matches the configured key.

    An empty ``API_KEY`` setting rejects every key.
    """
    if not api_key:
        logger.warning("Missing required header: x-api-key")
        raise HTTPException(status_code=401, detail="Missing required header: x-api-key")
    if not settings.api_key or not hmac.compare_digest(api_key.encode(), settings.api_key.encode()):
        logger.warning("Invalid API key attempt")
        raise HTTPException(status_code=401, detail="Invalid API key")


@app.middleware("http")
async def log_api_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    if request.url.path.startswith("/api"):
        logger.info(
            "%s %s %s in %dms",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000,
        )
    return response


_local_tz = ZoneInfo(settings.local_timezone)
_booking_source = GoogleBookingSource()

# Upper bound on cached room/day entries, whatever their age.
MAX_CACHED_BOOKINGS = 64

_cache_lock = threading.Lock()
_cache: Dict[str, Any] = {
    "registry": None,
    "bookings": {},
    "last_fetched": None,
    "last_error": None,
}


def _utcnow() -> datetime:
    """Return the current time in UTC."""
    return datetime.now(timezone.utc)


def _local_now() -> datetime:
    """Return the current wall-clock time in the configured local zone."""
    return datetime.now(_local_tz)


def _iso_z(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


def _cache_fresh(ts: Optional[datetime], max_age_seconds: int) -> bool:
    """Return True if the timestamp ``ts`` is within ``max_age_seconds`` of now."""
    if ts is None:
        return False
    return (_utcnow() - ts).total_seconds() < max_age_seconds


def _get_registry() -> RoomRegistry:
    """Load the room registry on first use."""
    with _cache_lock:
        if _cache.get("registry") is not None:
            return _cache["registry"]
    try:
        registry = RoomRegistry.from_file(settings.rooms_file)
    except RoomsFileError as exc:
        logger.error("Error loading rooms: %s", exc)
        with _cache_lock:
            _cache["last_error"] = f"ROOMS_ERROR: {exc}"
        raise HTTPException(status_code=500, detail=str(exc))
    with _cache_lock:
        _cache["registry"] = registry
    return registry


def _get_room(name: str) -> RoomConfig:
    try:
        return _get_registry().get(name)
    except UnknownRoomError:
        raise HTTPException(status_code=404, detail=f"Unknown room: {name}")


def _get_bookings_cached(room_name: str, room: RoomConfig, day: date) -> List[BookingInterval]:
    """Retrieve bookings for a room and day, using the cache if it is fresh.

    On fetch failure the last bookings fetched for the same room and day
    are returned if there are any; otherwise the error propagates.
    """
    key = (room_name, day.isoformat())
    with _cache_lock:
        cached = _cache["bookings"].get(key)
        if cached is not None and _cache_fresh(cached[0], settings.refresh_seconds):
            return cached[1]
    if not room.calendar_id:
        logger.warning("Room %r has no calendar configured, treating it as unbooked", room_name)
        return []
    try:
        bookings = _booking_source.fetch_bookings(room.calendar_id, day, _local_tz)
    except Exception as exc:
        logger.exception("Error fetching bookings for %s: %s", room_name, exc)
        with _cache_lock:
            _cache["last_error"] = f"BOOKINGS_ERROR: {exc}"
        if cached is not None:
            logger.warning("Serving stale bookings for %s on %s", room_name, key[1])
            return cached[1]
        raise
    with _cache_lock:
        # Re-insert so the entry moves to the end of the insertion order.
        _cache["bookings"].pop(key, None)
        _cache["bookings"][key] = (_utcnow(), bookings)
        _prune_bookings_cache(_cache["bookings"])
        _cache["last_fetched"] = _utcnow()
        _cache["last_error"] = None
    return bookings


def _prune_bookings_cache(entries: Dict[tuple, tuple]) -> None:
    """Drop expired room/day entries, keeping each room's newest for stale fallback.

    Caller must hold ``_cache_lock``. Past ``MAX_CACHED_BOOKINGS`` the oldest
    entries go regardless of age.
    """
    newest: Dict[str, tuple] = {}
    for key, (fetched_at, _) in entries.items():
        current = newest.get(key[0])
        if current is None or fetched_at >= entries[current][0]:
            newest[key[0]] = key
    keep = set(newest.values())
    for key, (fetched_at, _) in list(entries.items()):
        if key not in keep and not _cache_fresh(fetched_at, settings.refresh_seconds):
            del entries[key]
    if len(entries) > MAX_CACHED_BOOKINGS:
        by_age = sorted(entries, key=lambda k: entries[k][0])
        for key in by_age[: len(entries) - MAX_CACHED_BOOKINGS]:
            del entries[key]


@app.get("/api/bookings", dependencies=[Depends(require_api_key)])
def api_bookings(
    room: Optional[str] = None,
    day: Optional[date] = Query(default=None, alias="date"),
) -> Dict[str, Any]:
    """Return the classified timeline for a room and day."""
    room_name = room or settings.default_room
    config = _get_room(room_name)
    # Sampled once; every comparison in the timeline uses this instant.
    now = _local_now()
    day = day or now.date()
    logger.info("Received request for bookings of %s on %s", room_name, day.isoformat())

    try:
        bookings = _get_bookings_cached(room_name, config, day)
    except Exception:
        # Already logged and recorded as lastError.
        return {"bookings": []}

    try:
        slots = reconcile(bookings, config, now)
    except TimeParseError as exc:
        logger.error("Cannot build timeline for %s: %s", room_name, exc)
        with _cache_lock:
            _cache["last_error"] = f"TIMELINE_ERROR: {exc}"
        return {"bookings": []}
    return {"bookings": [slot.to_json() for slot in slots]}


@app.get("/api/room", dependencies=[Depends(require_api_key)])
def api_room(room: Optional[str] = None) -> Dict[str, Any]:
    """Return metadata for a room."""
    room_name = room or settings.default_room
    config = _get_room(room_name)
    info = RoomInfo(name=room_name, id=config.id, bookable=config.bookable)
    return {"room": info.model_dump()}


@app.get("/api/rooms", dependencies=[Depends(require_api_key)])
def api_rooms() -> Dict[str, Any]:
    """Return the configured room names."""
    names = _get_registry().names()
    return {"count": len(names), "items": names}


@app.get("/api/status", dependencies=[Depends(require_api_key)])
def api_status() -> Dict[str, Any]:
    """Return the booking source status and the last recorded error."""
    status = _booking_source.status()
    with _cache_lock:
        last_fetched = _cache.get("last_fetched")
        last_error = _cache.get("last_error")
    if last_fetched is not None:
        status = status.model_copy(update={"lastFetched": _iso_z(last_fetched)})
    return {"apiStatus": status.model_dump(exclude_none=True), "lastError": last_error}


@app.get("/api/logs", dependencies=[Depends(require_api_key)])
def api_logs() -> Dict[str, Any]:
    """Return the most recent log records, oldest first."""
    return {"logs": [entry.model_dump() for entry in log_buffer.entries()]}


@app.get("/health")
def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return {"status": "ok", "timestamp": _iso_z(_utcnow())}
