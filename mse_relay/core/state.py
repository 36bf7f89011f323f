"""
core/state.py — Thread-safe map of graphics elements currently on air.

Keys are opaque strings and are NOT uniform:
  - direct element notifications are keyed by element id
  - carousel feed notifications are keyed by "<carousel-path>:<feed>",
    because one carousel can run several feeds at once

So every "is element X playing" question scans record values by element_id.
That is a linear scan; the number of simultaneously on-air elements is small.
"""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Optional

from mse_relay.protocol.messages import (
    element_id_from_path,
    playlist_name_from_path,
    show_name_from_path,
)


@dataclass(frozen=True)
class PlayingElement:
    show_name: str
    playlist_name: str
    element_id: str
    element_path: str
    observed_at: float = field(default_factory=time.time)

    @classmethod
    def from_path(cls, path: str, element_id: Optional[str] = None) -> Optional["PlayingElement"]:
        """Build a record from an element path. Returns None if no element id can be derived."""
        element_id = element_id or element_id_from_path(path)
        if not element_id:
            return None
        return cls(
            show_name=show_name_from_path(path),
            playlist_name=playlist_name_from_path(path),
            element_id=element_id,
            element_path=path,
        )

    def to_dict(self) -> dict:
        return asdict(self)


class OnAirState:
    def __init__(self):
        self._lock = threading.RLock()
        self._records: dict[str, PlayingElement] = {}

    def record_playing(self, key: str, record: PlayingElement) -> None:
        with self._lock:
            self._records[key] = record

    def clear_by_element_or_key(self, identifier: str) -> list[str]:
        """Remove every record whose key or element_id equals identifier. Returns removed keys."""
        with self._lock:
            removed = [
                key for key, rec in self._records.items()
                if key == identifier or rec.element_id == identifier
            ]
            for key in removed:
                del self._records[key]
            return removed

    def find_element_id(self, show_name: str, playlist_name: Optional[str] = None) -> Optional[str]:
        with self._lock:
            for rec in self._records.values():
                if rec.show_name != show_name:
                    continue
                if playlist_name is None or rec.playlist_name == playlist_name:
                    return rec.element_id
        return None

    def is_playing(self, element_id: str) -> bool:
        with self._lock:
            return any(rec.element_id == element_id for rec in self._records.values())

    def all_playing_element_ids(self) -> set[str]:
        with self._lock:
            return {rec.element_id for rec in self._records.values()}

    def snapshot(self) -> dict[str, PlayingElement]:
        with self._lock:
            return dict(self._records)

    def reset(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
