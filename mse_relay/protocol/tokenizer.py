"""
protocol/tokenizer.py — PepTalk frame tokenizer.

A frame is one line of wire text:

    <request-id> <message-type> <field> <field> ...

Fields are either bare tokens (a run of non-whitespace) or length-prefixed
literals, written as {N} followed by exactly N raw bytes. A literal may contain
spaces or braces, and its length counts bytes of the UTF-8 encoded frame, not
characters. Packets are split into frames on line breaks before tokenizing, so
a literal never spans two lines on the wire.

    1 set /storage/shows/A/elements/E1 title {11}Hello World
      → ["1", "set", "/storage/shows/A/elements/E1", "title", "Hello World"]
"""

from __future__ import annotations

from typing import Union

SEPARATORS = b" \r\n\t"
LITERAL_OPEN = ord("{")
LITERAL_CLOSE = ord("}")

Frame = Union[str, bytes]


class FrameParseError(ValueError):
    """A single frame could not be tokenized. Only that frame is dropped."""


def _to_bytes(frame: Frame) -> bytes:
    return frame.encode("utf-8") if isinstance(frame, str) else frame


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


def tokenize(frame: Frame) -> list[str]:
    """
    Split one frame into its fields.

    Raises FrameParseError on a malformed literal (missing '}', non-numeric
    length, or a length that runs past the end of the frame) and on frames
    with fewer than two fields.
    """
    data = _to_bytes(frame)
    size = len(data)
    fields: list[str] = []
    i = 0

    while i < size:
        while i < size and data[i] in SEPARATORS:
            i += 1
        if i >= size:
            break

        if data[i] == LITERAL_OPEN:
            close = data.find(b"}", i + 1)
            if close == -1:
                raise FrameParseError(f"unterminated literal length at byte {i}")
            digits = data[i + 1:close]
            if not digits or not digits.isdigit():
                raise FrameParseError(f"invalid literal length {_decode(digits)!r}")
            length = int(digits)
            start = close + 1
            end = start + length
            if end > size:
                raise FrameParseError(
                    f"literal declares {length} bytes but only {size - start} remain"
                )
            fields.append(_decode(data[start:end]))
            i = end
        else:
            start = i
            while i < size and data[i] not in SEPARATORS:
                i += 1
            fields.append(_decode(data[start:i]))

    if len(fields) < 2:
        raise FrameParseError(f"frame needs a request id and a message type, got {len(fields)} field(s)")
    return fields


def split_frames(packet: Frame) -> list[str]:
    """Split a received packet into its non-blank lines."""
    text = _decode(packet) if isinstance(packet, bytes) else packet
    return [line for line in text.split("\n") if line.strip()]


# ── Outbound ─────────────────────────────────────────────────────────────────

def encode_field(value: object) -> str:
    """
    Render one outbound field. Values that would not survive as a bare token
    (empty, containing whitespace, or starting with '{') become literals.
    """
    text = str(value)
    if text and not text.startswith("{") and not any(c.isspace() for c in text):
        return text
    return "{%d}%s" % (len(text.encode("utf-8")), text)


def format_command(*fields: object) -> str:
    """Join fields into a command body, e.g. format_command("get", path, 2)."""
    return " ".join(encode_field(f) for f in fields)
