"""
protocol/snapshot.py — Reads the on-air picture out of a "get /storage/shows" reply.

The reply payload is an XML tree of <entry> nodes. Shows and playlists are
tagged with type="show" / type="playlist", and a carousel playlist carries one
active_<feed>="<element id>" attribute per output feed:

    <entry name="shows">
      <entry name="NewsAM" type="show">
        <entry name="carousel" type="playlist" active_Main="E5"/>
      </entry>
    </entry>
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass

from .messages import ACTIVE_PREFIX

log = logging.getLogger(__name__)

SHOWS_ROOT = "/storage/shows"
DEFAULT_PLAYLIST = "carousel"

_ESCAPE_RE = re.compile(r"\{[0-9]+\}")
_DECLARATION_RE = re.compile(r"<\?xml[^>]*\?>")


@dataclass(frozen=True)
class ActiveCarousel:
    show_name: str
    playlist_name: str
    feed: str
    element_id: str

    @property
    def path(self) -> str:
        return f"{SHOWS_ROOT}/{self.show_name}/playlists/{self.playlist_name}"

    @property
    def key(self) -> str:
        """Same path:feed key a live "set <path> active_<feed> <id>" update uses."""
        return f"{self.path}:{self.feed}"

    @property
    def element_path(self) -> str:
        return f"{self.path}/elements/{self.element_id}"


def parse_active_carousels(payload: str) -> list[ActiveCarousel]:
    """Every active_<feed> assignment found under a show. Unreadable payloads yield []."""
    text = _DECLARATION_RE.sub("", _ESCAPE_RE.sub("", payload)).strip()
    if not text.startswith("<"):
        return []
    try:
        root = ET.fromstring(f"<reply>{text}</reply>")
    except ET.ParseError as e:
        log.debug(f"Unreadable shows snapshot: {e}")
        return []

    found: list[ActiveCarousel] = []
    _collect(root, "", "", found)
    return found


def _collect(node: ET.Element, show: str, playlist: str, found: list[ActiveCarousel]) -> None:
    name = node.get("name")
    if name:
        match node.get("type"):
            case "show":
                show = name
            case "playlist":
                playlist = name

    for attr, value in node.attrib.items():
        if attr.startswith(ACTIVE_PREFIX) and value and show:
            found.append(ActiveCarousel(
                show_name=show,
                playlist_name=playlist or DEFAULT_PLAYLIST,
                feed=attr[len(ACTIVE_PREFIX):],
                element_id=value,
            ))

    for child in node:
        _collect(child, show, playlist, found)
