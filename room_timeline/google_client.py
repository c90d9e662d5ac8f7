"""Google Calendar booking source for the room timeline service.

This module loads service account credentials and reads one room
calendar's events for one local day, converting them into
``BookingInterval`` objects with local ``HH:MM`` times. It encapsulates
retry logic with exponential back-off for transient errors and is careful
to avoid exposing sensitive information. Credentials and settings are
provided via the ``Settings`` object in ``room_timeline.config``.

Time-zone handling lives here: the timeline engine only ever sees local
wall-clock times. The functions are deliberately synchronous, matching
the FastAPI route handlers that call them.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict, List, Optional, Tuple

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import settings
from .models import ApiStatus, BookingInterval

logger = logging.getLogger(__name__)

# Reading room calendars is all we need. Do not add broader scopes unless
# absolutely required.
SCOPES: Tuple[str, ...] = ("https://www.googleapis.com/auth/calendar.readonly",)

TRANSIENT_STATUSES = (429, 500, 502, 503, 504)


class CredentialsNotConfiguredError(RuntimeError):
    """Raised when the service account settings are missing."""


def _load_sa_info() -> dict:
    """Load the service account credentials from the configured path or JSON.

    The ``GOOGLE_SERVICE_ACCOUNT_JSON`` setting may contain either a JSON
    string or a filesystem path pointing to the JSON key.
    """
    raw = settings.google_service_account_json.strip()
    if not raw:
        raise CredentialsNotConfiguredError("GOOGLE_SERVICE_ACCOUNT_JSON is not set")
    # Detect inline JSON by looking for a brace at the start.
    if raw.startswith("{"):
        return json.loads(raw)
    with open(raw, "r", encoding="utf-8") as fh:
        return json.load(fh)


def get_delegated_credentials() -> service_account.Credentials:
    """Return service account credentials delegated to ``GOOGLE_IMPERSONATE_USER``."""
    if not settings.google_impersonate_user:
        raise CredentialsNotConfiguredError("GOOGLE_IMPERSONATE_USER is not set")
    sa_info = _load_sa_info()
    creds = service_account.Credentials.from_service_account_info(sa_info, scopes=SCOPES)
    return creds.with_subject(settings.google_impersonate_user)


def build_calendar_service(credentials: Any):
    """Build and return a Calendar service client."""
    return build("calendar", "v3", credentials=credentials, cache_discovery=False)


def _parse_rfc3339(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _iso_z(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def event_to_booking(
    event: Dict[str, Any],
    day_start: datetime,
    day_end: datetime,
    tz: tzinfo,
) -> Optional[BookingInterval]:
    """Convert a Calendar event to a booking on the local day ``[day_start, day_end)``.

    Cancelled events and events outside the day yield ``None``. Events
    crossing midnight are clipped to ``00:00``/``24:00`` and all-day events
    cover the whole day.
    """
    if event.get("status") == "cancelled":
        return None
    creator = event.get("creator") or {}
    name = event.get("summary") or "Untitled Booking"
    creator_name = creator.get("displayName") or creator.get("email") or "Unknown"

    start = event.get("start") or {}
    end = event.get("end") or {}
    if "dateTime" not in start or "dateTime" not in end:
        if "date" in start:
            return BookingInterval(start_time="00:00", end_time="24:00", name=name, creator=creator_name)
        return None

    start_dt = _parse_rfc3339(start["dateTime"]).astimezone(tz)
    end_dt = _parse_rfc3339(end["dateTime"]).astimezone(tz)
    if end_dt <= day_start or start_dt >= day_end:
        return None
    start_text = "00:00" if start_dt <= day_start else start_dt.strftime("%H:%M")
    end_text = "24:00" if end_dt >= day_end else end_dt.strftime("%H:%M")
    return BookingInterval(start_time=start_text, end_time=end_text, name=name, creator=creator_name)


class GoogleBookingSource:
    """Reads bookings for a room calendar from Google Calendar.

    The source owns the delegated credentials and the Calendar client,
    created on first use and reused afterwards; google-auth refreshes the
    access token as it nears expiry.

    Args:
        credentials_loader: returns the credentials to use.
        service_builder: builds a Calendar client from credentials.
        max_retries: number of times to retry on transient errors.
        backoff_seconds: initial backoff delay for retries.
        sleep: called with the delay between retries.
    """

    def __init__(
        self,
        credentials_loader: Callable[[], Any] = get_delegated_credentials,
        service_builder: Callable[[Any], Any] = build_calendar_service,
        *,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._credentials_loader = credentials_loader
        self._service_builder = service_builder
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._credentials: Any = None
        self._service: Any = None
        self._lock = threading.Lock()

    def _get_service(self):
        with self._lock:
            if self._service is None:
                credentials = self._credentials_loader()
                self._service = self._service_builder(credentials)
                self._credentials = credentials
                logger.info("Calendar client created")
            return self._service

    def _execute(self, request, what: str) -> Dict[str, Any]:
        attempt = 0
        while True:
            try:
                return request.execute()
            except HttpError as exc:
                attempt += 1
                # Retry on 5xx or rate-limit errors.
                status = getattr(exc.resp, "status", None)
                if attempt <= self._max_retries and status in TRANSIENT_STATUSES:
                    delay = self._backoff_seconds * (2 ** (attempt - 1))
                    logger.warning(
                        "%s transient error (status=%s), retrying in %.1fs (attempt %s/%s)",
                        what,
                        status,
                        delay,
                        attempt,
                        self._max_retries,
                    )
                    self._sleep(delay)
                    continue
                logger.error("%s failed after %s attempts: %s", what, attempt, exc)
                raise

    def fetch_bookings(self, calendar_id: str, day: date, tz: tzinfo) -> List[BookingInterval]:
        """Return the bookings of ``calendar_id`` on the local ``day``.

        Raises:
            HttpError: if the Google API request fails after retries.
            CredentialsNotConfiguredError: if no service account is set up.
        """
        day_start = datetime.combine(day, datetime.min.time(), tzinfo=tz)
        day_end = datetime.combine(day + timedelta(days=1), datetime.min.time(), tzinfo=tz)
        service = self._get_service()

        events: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            request = service.events().list(
                calendarId=calendar_id,
                timeMin=_iso_z(day_start),
                timeMax=_iso_z(day_end),
                singleEvents=True,
                orderBy="startTime",
                pageToken=page_token,
            )
            response = self._execute(request, "Events query")
            events.extend(response.get("items", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        bookings = [
            booking
            for booking in (event_to_booking(event, day_start, day_end, tz) for event in events)
            if booking is not None
        ]
        logger.info("Received %d bookings for %s on %s", len(bookings), calendar_id, day.isoformat())
        return bookings

    def status(self) -> ApiStatus:
        """Describe the cached credentials without touching the network."""
        credentials = self._credentials
        if credentials is None:
            return ApiStatus(authenticated=False, tokenValid=False)
        valid = bool(getattr(credentials, "valid", False))
        expires_in = None
        expiry = getattr(credentials, "expiry", None)
        if valid and expiry is not None:
            # google-auth keeps expiry as a naive UTC datetime.
            now = datetime.now(timezone.utc).replace(tzinfo=None)
            remaining = max(int((expiry - now).total_seconds()), 0)
            hours, seconds = divmod(remaining, 3600)
            expires_in = f"{hours}h {seconds // 60}m"
        return ApiStatus(authenticated=True, tokenValid=valid, tokenExpiresIn=expires_in)
