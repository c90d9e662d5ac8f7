# Package initializer for the room booking timeline service.

"""
The `room_timeline` package turns a room's bookings for one day into a
gapless timeline of booked, available and closed slots for display.

Modules:

- ``config``: application settings loaded from environment variables.
- ``models``: Pydantic data models for bookings, rooms and timeline slots.
- ``timeline``: the pure reconciliation engine (merging and classification).
- ``rooms``: the room registry loaded from ``rooms.json``.
- ``google_client``: the Google Calendar booking source.
- ``log_buffer``: an in-memory buffer of recent log records.
- ``main``: the FastAPI application definition.

"""
