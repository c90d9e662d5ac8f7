"""Room registry loaded from a JSON file.

The file maps room names to their configuration::

    {
      "rooms": {
        "Small Tutorial Room": {
          "id": 1,
          "calendar_id": "c_1888...@resource.calendar.google.com",
          "open_time": "08:00",
          "close_time": "18:00",
          "restricted_hours": true,
          "bookable": true
        }
      }
    }

Missing ``open_time``/``close_time`` fall back to ``07:00``/``23:00`` and
missing flags to ``false``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Union

from pydantic import ValidationError

from .models import RoomConfig
from .timeline import TimeParseError, to_minutes

logger = logging.getLogger(__name__)


class RoomsFileError(Exception):
    """Raised when the rooms file is missing or malformed."""


class UnknownRoomError(KeyError):
    """Raised when a room name is not present in the registry."""


def load_rooms(path: Union[str, Path]) -> Dict[str, RoomConfig]:
    """Read and validate the rooms file at ``path``.

    Raises:
        RoomsFileError: if the file cannot be read, is not JSON, has no
            ``rooms`` mapping, or contains an invalid room entry.
    """
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except FileNotFoundError as exc:
        raise RoomsFileError(f"rooms file not found at {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise RoomsFileError(f"cannot read rooms file {path}: {exc}") from exc

    entries = raw.get("rooms") if isinstance(raw, dict) else None
    if not isinstance(entries, dict):
        raise RoomsFileError(f"{path} must contain a 'rooms' object")

    rooms: Dict[str, RoomConfig] = {}
    for name, entry in entries.items():
        try:
            room = RoomConfig.model_validate(entry or {})
            to_minutes(room.open_time)
            to_minutes(room.close_time)
        except (ValidationError, TimeParseError) as exc:
            raise RoomsFileError(f"invalid configuration for room {name!r}: {exc}") from exc
        rooms[name] = room
    logger.info("Loaded %d rooms from %s", len(rooms), path)
    return rooms


class RoomRegistry:
    """Name lookup over the configured rooms."""

    def __init__(self, rooms: Dict[str, RoomConfig]) -> None:
        self._rooms = dict(rooms)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "RoomRegistry":
        return cls(load_rooms(path))

    def names(self) -> List[str]:
        return list(self._rooms)

    def get(self, name: str) -> RoomConfig:
        try:
            return self._rooms[name]
        except KeyError:
            raise UnknownRoomError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._rooms
