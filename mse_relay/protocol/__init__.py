"""protocol — PepTalk framing and message interpretation."""
from .tokenizer import FrameParseError, encode_field, format_command, split_frames, tokenize
from .messages import (
    AttributeChanged,
    CarouselActive,
    CommandAck,
    CommandError,
    ElementPlaying,
    Insert,
    ProtocolAck,
    ProtocolEvent,
    Unrecognized,
    element_id_from_path,
    interpret,
    parse_packet,
    playlist_name_from_path,
    show_name_from_path,
)
from .snapshot import ActiveCarousel, parse_active_carousels

__all__ = [
    "FrameParseError", "encode_field", "format_command", "split_frames", "tokenize",
    "AttributeChanged", "CarouselActive", "CommandAck", "CommandError", "ElementPlaying",
    "Insert", "ProtocolAck", "ProtocolEvent", "Unrecognized",
    "element_id_from_path", "interpret", "parse_packet",
    "playlist_name_from_path", "show_name_from_path",
    "ActiveCarousel", "parse_active_carousels",
]
