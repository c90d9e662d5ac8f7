from datetime import date, datetime, tzinfo
from zoneinfo import ZoneInfo

import pytest
from fastapi.testclient import TestClient

from room_timeline import main
from room_timeline.models import ApiStatus, BookingInterval, RoomConfig
from room_timeline.rooms import RoomRegistry

API_KEY = "display-secret"

client = TestClient(main.app, headers={"x-api-key": API_KEY})
anonymous = TestClient(main.app)

NZ = ZoneInfo("Pacific/Auckland")


class _FakeSource:
    def __init__(self, bookings: list[BookingInterval] | None = None, error: Exception | None = None) -> None:
        self.bookings = bookings or []
        self.error = error
        self.calls: list[tuple[str, date, tzinfo]] = []

    def fetch_bookings(self, calendar_id: str, day: date, tz: tzinfo) -> list[BookingInterval]:
        self.calls.append((calendar_id, day, tz))
        if self.error is not None:
            raise self.error
        return list(self.bookings)

    def status(self) -> ApiStatus:
        return ApiStatus(authenticated=True, tokenValid=True, tokenExpiresIn="0h 45m")


@pytest.fixture
def source(monkeypatch: pytest.MonkeyPatch) -> _FakeSource:
    fake = _FakeSource([BookingInterval(start_time="09:30", end_time="10:00", name="Team sync", creator="alice")])
    registry = RoomRegistry(
        {
            "Small Tutorial Room": RoomConfig(id=1, calendar_id="small@resource", bookable=True),
            "Seminar Room": RoomConfig(
                id=2,
                calendar_id="seminar@resource",
                open_time="08:00",
                close_time="18:00",
                restricted_hours=True,
            ),
            "Unlisted": RoomConfig(id=3),
        },
    )
    monkeypatch.setattr(main.settings, "api_key", API_KEY)
    monkeypatch.setattr(main, "_booking_source", fake)
    monkeypatch.setattr(main, "_local_now", lambda: datetime(2026, 3, 2, 9, 7, 30, tzinfo=NZ))
    monkeypatch.setitem(main._cache, "registry", registry)
    monkeypatch.setitem(main._cache, "bookings", {})
    monkeypatch.setitem(main._cache, "last_fetched", None)
    monkeypatch.setitem(main._cache, "last_error", None)
    return fake


def test_bookings_endpoint_returns_classified_timeline(source: _FakeSource) -> None:
    response = client.get("/api/bookings", params={"room": "Small Tutorial Room"})

    assert response.status_code == 200
    assert response.json() == {
        "bookings": [
            {
                "start_time": "09:00",
                "end_time": "09:30",
                "status": "available",
                "timeRange": "09:00 - 09:30",
                "timePeriod": "now",
                "minutes_left": 23,
            },
            {
                "start_time": "09:30",
                "end_time": "10:00",
                "status": "booked",
                "timeRange": "09:30 - 10:00",
                "timePeriod": "upcoming",
                "name": "Team sync",
                "creator": "alice",
            },
            {
                "start_time": "10:00",
                "end_time": "23:00",
                "status": "available",
                "timeRange": "10:00 - 23:00",
                "timePeriod": "later",
            },
        ],
    }
    assert source.calls == [("small@resource", date(2026, 3, 2), main._local_tz)]


def test_bookings_endpoint_uses_default_room_and_requested_date(
    source: _FakeSource,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(main.settings, "default_room", "Seminar Room")

    response = client.get("/api/bookings", params={"date": "2026-03-05"})

    assert response.status_code == 200
    statuses = [slot["status"] for slot in response.json()["bookings"]]
    assert statuses[-1] == "closed"
    assert source.calls[0][:2] == ("seminar@resource", date(2026, 3, 5))


def test_bookings_are_cached_per_room_and_day(source: _FakeSource) -> None:
    client.get("/api/bookings", params={"room": "Small Tutorial Room"})
    client.get("/api/bookings", params={"room": "Small Tutorial Room"})
    client.get("/api/bookings", params={"room": "Small Tutorial Room", "date": "2026-03-03"})

    assert len(source.calls) == 2


def test_room_without_calendar_shows_full_day(source: _FakeSource) -> None:
    response = client.get("/api/bookings", params={"room": "Unlisted"})

    assert response.json()["bookings"] == [
        {
            "start_time": "00:00",
            "end_time": "24:00",
            "status": "available",
            "timeRange": "00:00 - 24:00",
            "timePeriod": "now",
            "minutes_left": 1440 - 547,
        },
    ]
    assert source.calls == []


def test_unknown_room_returns_404(source: _FakeSource) -> None:
    response = client.get("/api/bookings", params={"room": "Attic"})

    assert response.status_code == 404


def test_malformed_date_is_rejected(source: _FakeSource) -> None:
    response = client.get("/api/bookings", params={"date": "02/03/2026"})

    assert response.status_code == 422


def test_fetch_failure_returns_empty_timeline_and_records_error(source: _FakeSource) -> None:
    source.error = RuntimeError("calendar unavailable")

    response = client.get("/api/bookings")

    assert response.status_code == 200
    assert response.json() == {"bookings": []}
    status = client.get("/api/status").json()
    assert status["lastError"] == "BOOKINGS_ERROR: calendar unavailable"


def test_fetch_failure_serves_stale_bookings(source: _FakeSource, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main.settings, "refresh_seconds", 0)
    client.get("/api/bookings")
    source.error = RuntimeError("calendar unavailable")

    response = client.get("/api/bookings")

    assert [slot["status"] for slot in response.json()["bookings"]] == ["available", "booked", "available"]


def test_malformed_booking_time_returns_empty_timeline(source: _FakeSource) -> None:
    source.bookings = [BookingInterval(start_time="9.30", end_time="10:00")]

    response = client.get("/api/bookings")

    assert response.json() == {"bookings": []}
    assert client.get("/api/status").json()["lastError"].startswith("TIMELINE_ERROR")


def test_room_endpoint_returns_metadata(source: _FakeSource) -> None:
    response = client.get("/api/room", params={"room": "Small Tutorial Room"})

    assert response.status_code == 200
    assert response.json() == {"room": {"name": "Small Tutorial Room", "id": 1, "bookable": True}}


def test_rooms_endpoint_lists_names(source: _FakeSource) -> None:
    data = client.get("/api/rooms").json()

    assert data["count"] == 3
    assert "Seminar Room" in data["items"]


def test_status_endpoint_reports_source_and_last_fetch(source: _FakeSource) -> None:
    assert "lastFetched" not in client.get("/api/status").json()["apiStatus"]

    client.get("/api/bookings")
    data = client.get("/api/status").json()

    assert data["apiStatus"]["authenticated"] is True
    assert data["apiStatus"]["tokenExpiresIn"] == "0h 45m"
    assert data["apiStatus"]["lastFetched"].endswith("Z")
    assert data["lastError"] is None


def test_logs_endpoint_exposes_recent_records(source: _FakeSource) -> None:
    main.log_buffer.clear()

    client.get("/api/bookings")
    logs = client.get("/api/logs").json()["logs"]

    messages = [entry["message"] for entry in logs]
    assert any("Received request for bookings of Small Tutorial Room" in m for m in messages)
    assert any(m.startswith("Timeline built") for m in messages)
    assert {"timestamp", "level", "message"} <= set(logs[0])


def test_health_endpoint_returns_expected_shape() -> None:
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["timestamp"].endswith("Z")


def test_missing_api_key_is_rejected(source: _FakeSource) -> None:
    main.log_buffer.clear()

    response = anonymous.get("/api/bookings")

    assert response.status_code == 401
    assert response.json() == {"detail": "Missing required header: x-api-key"}
    assert source.calls == []
    warnings = [e for e in main.log_buffer.entries() if e.level == "WARNING"]
    assert [e.message for e in warnings] == ["Missing required header: x-api-key"]


def test_wrong_api_key_is_rejected(source: _FakeSource) -> None:
    main.log_buffer.clear()

    response = anonymous.get("/api/status", headers={"x-api-key": "guess"})

    assert response.status_code == 401
    assert response.json() == {"detail": "Invalid API key"}
    assert any(e.level == "WARNING" and e.message == "Invalid API key attempt" for e in main.log_buffer.entries())


def test_valid_api_key_is_accepted_on_every_api_route(source: _FakeSource) -> None:
    for path in ("/api/bookings", "/api/room", "/api/rooms", "/api/status", "/api/logs"):
        response = anonymous.get(path, headers={"x-api-key": API_KEY})
        assert response.status_code == 200, path


def test_unset_api_key_rejects_everything(source: _FakeSource, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main.settings, "api_key", "")

    response = client.get("/api/rooms")

    assert response.status_code == 401
    assert response.json() == {"detail": "Invalid API key"}


def test_health_does_not_need_api_key() -> None:
    assert anonymous.get("/health").status_code == 200


def test_api_requests_are_logged_with_status_and_duration(source: _FakeSource) -> None:
    main.log_buffer.clear()

    client.get("/api/bookings", params={"room": "Attic"})
    anonymous.get("/api/rooms")

    messages = [e.message for e in main.log_buffer.entries()]
    assert any(m.startswith("GET /api/bookings 404 in ") and m.endswith("ms") for m in messages)
    assert any(m.startswith("GET /api/rooms 401 in ") for m in messages)


def test_expired_cache_entries_are_evicted(source: _FakeSource, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main.settings, "refresh_seconds", 0)

    for offset in range(1, 31):
        client.get("/api/bookings", params={"date": f"2026-04-{offset:02d}"})

    assert list(main._cache["bookings"]) == [("Small Tutorial Room", "2026-04-30")]


def test_cache_is_capped_while_entries_are_fresh(source: _FakeSource, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main, "MAX_CACHED_BOOKINGS", 5)

    for offset in range(1, 13):
        client.get("/api/bookings", params={"date": f"2026-05-{offset:02d}"})

    cached = main._cache["bookings"]
    assert len(cached) == 5
    assert ("Small Tutorial Room", "2026-05-12") in cached
    assert ("Small Tutorial Room", "2026-05-01") not in cached


def test_stale_fallback_survives_eviction(source: _FakeSource, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main.settings, "refresh_seconds", 0)
    client.get("/api/bookings", params={"date": "2026-03-01"})
    client.get("/api/bookings")
    source.error = RuntimeError("calendar unavailable")

    response = client.get("/api/bookings")

    assert [slot["status"] for slot in response.json()["bookings"]] == ["available", "booked", "available"]
