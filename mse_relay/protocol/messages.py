"""
protocol/messages.py — Typed PepTalk/TreeTalk events.

interpret() maps a tokenized frame onto one of a closed set of events:

  1 protocol peptalk noaliases                         → ProtocolAck
  3 ok ...                                             → CommandAck
  3 error inexistant                                   → CommandError
  * set <path> carousel_status run                     → ElementPlaying
  * set attribute <path> active_<feed> <element-id>    → CarouselActive
  * node <parent> <prev> <self> <next> <name> element ...
        carousel_status run ...                        → ElementPlaying
  * changed <node-id> carousel_status <old>            → AttributeChanged
  * insert <path> <xml>                                → Insert
  anything else                                        → Unrecognized
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Union

from .tokenizer import Frame, FrameParseError, split_frames, tokenize

log = logging.getLogger(__name__)

CAROUSEL_STATUS = "carousel_status"
STATUS_RUN = "run"
ACTIVE_PREFIX = "active_"
UNKNOWN = "unknown"

_ELEMENTS_RE = re.compile(r"/elements/([^/\s]+)")
_SHOW_RE = re.compile(r"/shows/([^/]+)")
_PLAYLIST_RE = re.compile(r"/playlists/([^/]+)")


# ──────────────────────────────────────────────────────────────────────────────
# Events
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ElementPlaying:
    path: str
    node_id: Optional[str] = None


@dataclass(frozen=True)
class CarouselActive:
    path: str
    feed: str
    element_id: str


@dataclass(frozen=True)
class AttributeChanged:
    node_id: str
    attr_name: str
    old_value: str = ""


@dataclass(frozen=True)
class ProtocolAck:
    capabilities: tuple[str, ...] = ()


@dataclass(frozen=True)
class CommandAck:
    request_id: str
    extra: tuple[str, ...] = ()

    @property
    def payload(self) -> str:
        return " ".join(self.extra)


@dataclass(frozen=True)
class CommandError:
    request_id: str
    message: str = ""


@dataclass(frozen=True)
class Insert:
    path: str
    payload: str = ""


@dataclass(frozen=True)
class Unrecognized:
    request_id: str = ""
    message_type: str = ""
    args: tuple[str, ...] = field(default_factory=tuple)


ProtocolEvent = Union[
    ElementPlaying,
    CarouselActive,
    AttributeChanged,
    ProtocolAck,
    CommandAck,
    CommandError,
    Insert,
    Unrecognized,
]


# ──────────────────────────────────────────────────────────────────────────────
# Path decomposition
# ──────────────────────────────────────────────────────────────────────────────

def element_id_from_path(path: str) -> Optional[str]:
    """
    /storage/shows/NewsAM/playlists/Main/elements/E1 → "E1".
    Falls back to the last path segment when there is no /elements/ part.
    """
    matches = _ELEMENTS_RE.findall(path)
    if matches:
        return matches[-1]
    last = path.rstrip("/").rsplit("/", 1)[-1]
    return last or None


def show_name_from_path(path: str) -> str:
    m = _SHOW_RE.search(path)
    return m.group(1) if m else UNKNOWN


def playlist_name_from_path(path: str) -> str:
    m = _PLAYLIST_RE.search(path)
    return m.group(1) if m else UNKNOWN


# ──────────────────────────────────────────────────────────────────────────────
# Interpreter
# ──────────────────────────────────────────────────────────────────────────────

def _interpret_set(args: list[str]) -> ProtocolEvent:
    # Both "set <path> <attr> <value>" and "set attribute <path> <attr> <value>" occur.
    if args and args[0] == "attribute" and len(args) >= 3:
        args = args[1:]
    if len(args) < 2:
        return Unrecognized(message_type="set", args=tuple(args))

    path, attr_name = args[0], args[1]
    value = " ".join(args[2:])

    if attr_name == CAROUSEL_STATUS and value == STATUS_RUN:
        return ElementPlaying(path=path)
    if attr_name.startswith(ACTIVE_PREFIX):
        return CarouselActive(path=path, feed=attr_name[len(ACTIVE_PREFIX):], element_id=value)
    return Unrecognized(message_type="set", args=tuple(args))


def _interpret_node(args: list[str]) -> ProtocolEvent:
    if len(args) < 6:
        return Unrecognized(message_type="node", args=tuple(args))

    _parent, _previous, self_id, _next, name, node_type = args[:6]
    attrs = args[6:]
    if node_type == "element":
        for j in range(0, len(attrs) - 1, 2):
            if attrs[j] == CAROUSEL_STATUS and attrs[j + 1] == STATUS_RUN:
                return ElementPlaying(path=name, node_id=self_id)
    return Unrecognized(message_type="node", args=tuple(args))


def interpret(fields: list[str]) -> ProtocolEvent:
    """Turn tokenized fields into a ProtocolEvent. Never raises on unknown input."""
    if len(fields) < 2:
        return Unrecognized(args=tuple(fields))

    request_id, message_type, args = fields[0], fields[1], fields[2:]

    match message_type:
        case "protocol":
            return ProtocolAck(capabilities=tuple(args))
        case "ok":
            return CommandAck(request_id=request_id, extra=tuple(args))
        case "error":
            return CommandError(request_id=request_id, message=" ".join(args))
        case "set":
            return _interpret_set(args)
        case "node":
            return _interpret_node(args)
        case "changed" if len(args) >= 2:
            return AttributeChanged(node_id=args[0], attr_name=args[1], old_value=" ".join(args[2:]))
        case "insert" if args:
            return Insert(path=args[0], payload=" ".join(args[1:]))
        case _:
            return Unrecognized(request_id=request_id, message_type=message_type, args=tuple(args))


def parse_packet(packet: Frame) -> list[ProtocolEvent]:
    """Split, tokenize and interpret every frame in a packet, skipping malformed ones."""
    events: list[ProtocolEvent] = []
    for line in split_frames(packet):
        try:
            fields = tokenize(line)
        except FrameParseError as e:
            log.debug(f"Dropping malformed frame {line!r}: {e}")
            continue
        events.append(interpret(fields))
    return events
