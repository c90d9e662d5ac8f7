"""Application configuration settings.

This module defines the ``Settings`` class using ``pydantic-settings`` to
load configuration from environment variables (and an optional ``.env``
file). It centralises all runtime configuration for the application, such
as Google API credentials, the room registry location and the local time
zone used to resolve "now".
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Configuration values loaded from environment variables.

    Environment variable names map to fields by alias. The Google
    credentials are only needed once a booking is actually fetched, so
    they default to empty strings and the service can start (and be
    tested) without them.
    """

    # Google authentication
    google_service_account_json: str = Field(default="", alias="GOOGLE_SERVICE_ACCOUNT_JSON")
    google_impersonate_user: str = Field(default="", alias="GOOGLE_IMPERSONATE_USER")

    # API access
    api_key: str = Field(
        default="",
        alias="API_KEY",
        description="Value clients must send in the x-api-key header. When empty every /api request is rejected.",
    )

    # Rooms
    rooms_file: str = Field(
        default="data/rooms.json",
        alias="ROOMS_FILE",
        description="Path to the JSON file describing rooms and their operating hours.",
    )
    default_room: str = Field(
        default="Small Tutorial Room",
        alias="DEFAULT_ROOM",
        description="Room used when a request does not name one.",
    )

    # Timeline behaviour
    local_timezone: str = Field(
        default="Pacific/Auckland",
        alias="LOCAL_TIMEZONE",
        description="IANA zone in which booking times and the current time are expressed.",
    )
    refresh_seconds: int = Field(
        default=60,
        alias="REFRESH_SECONDS",
        description="Number of seconds fetched bookings for a room and day are reused before refetching.",
    )

    # Diagnostics
    log_buffer_size: int = Field(
        default=100,
        alias="LOG_BUFFER_SIZE",
        description="Number of recent log records kept in memory and served by /api/logs.",
    )
    enable_cors: bool = Field(default=False, alias="ENABLE_CORS")

    class Config:
        env_file = ".env"
        extra = "ignore"


# Instantiate settings at module import time. This allows other modules to
# import ``settings`` directly without repeatedly reading environment variables.
settings = Settings()
