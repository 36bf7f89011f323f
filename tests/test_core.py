"""
tests/ — Basic test coverage for mse-relay modules.
Run with: pytest tests/ -v
"""

import threading

import pytest


# ─── Tokenizer ────────────────────────────────────────────────────────────────

from mse_relay.protocol import (
    FrameParseError,
    encode_field,
    format_command,
    split_frames,
    tokenize,
)


@pytest.mark.parametrize("frame", [
    "1 protocol peptalk",
    "* set /storage/shows/A/elements/E1 carousel_status run",
    "  12   ok   a b c  \r",
    "* changed E7 carousel_status run",
])
def test_bare_tokens_match_whitespace_split(frame):
    assert tokenize(frame) == frame.split()


def test_literal_field_keeps_embedded_space():
    fields = tokenize("3 set /path title {5}ab cd next")
    assert fields == ["3", "set", "/path", "title", "ab cd", "next"]


def test_literal_resumes_right_after_its_bytes():
    assert tokenize("1 ok {3}abcdef") == ["1", "ok", "abc", "def"]


def test_literal_may_contain_line_breaks_and_braces():
    assert tokenize("1 ok {7}a\nb {}c") == ["1", "ok", "a\nb {}c"]


def test_literal_length_counts_utf8_bytes():
    # "é" is two bytes in UTF-8
    assert tokenize("1 ok {6}café! x") == ["1", "ok", "café!", "x"]


def test_empty_literal():
    assert tokenize("1 ok {0} tail") == ["1", "ok", "", "tail"]


@pytest.mark.parametrize("frame", [
    "1 ok {5}ab",        # runs past the end
    "1 ok {5ab cd",      # no closing brace
    "1 ok {x}abc",       # non-numeric length
    "1 ok {}abc",        # empty length
    "1 ok {-1}abc",      # negative length
    "lonely",            # no message type
    "",
])
def test_malformed_frames_raise_parse_error(frame):
    with pytest.raises(FrameParseError):
        tokenize(frame)


def test_tokenize_accepts_bytes():
    assert tokenize(b"1 ok {3}a b") == ["1", "ok", "a b"]


def test_split_frames_drops_blank_lines():
    packet = "1 protocol peptalk\r\n\n   \n* set /a x y\n"
    assert split_frames(packet) == ["1 protocol peptalk\r", "* set /a x y"]


def test_encode_field_uses_literals_only_when_needed():
    assert encode_field("/storage/shows") == "/storage/shows"
    assert encode_field("Hello World") == "{11}Hello World"
    assert encode_field("") == "{0}"
    assert encode_field("{x}") == "{3}{x}"
    assert encode_field(2) == "2"


def test_encoded_command_tokenizes_back():
    body = format_command("set", "/storage/shows/A/elements/E1", "title", "Breaking News")
    assert tokenize(f"4 {body}") == ["4", "set", "/storage/shows/A/elements/E1", "title", "Breaking News"]


# ─── Message interpreter ──────────────────────────────────────────────────────

from mse_relay.protocol import (
    AttributeChanged,
    CarouselActive,
    CommandAck,
    CommandError,
    ElementPlaying,
    Insert,
    ProtocolAck,
    Unrecognized,
    element_id_from_path,
    interpret,
    parse_packet,
    playlist_name_from_path,
    show_name_from_path,
)


def events(frame: str):
    return interpret(tokenize(frame))


def test_interpret_protocol_ack():
    assert events("1 protocol peptalk noaliases") == ProtocolAck(capabilities=("peptalk", "noaliases"))


def test_interpret_ok_and_error():
    assert events("7 ok <xml/>") == CommandAck(request_id="7", extra=("<xml/>",))
    assert events("8 error inexistant path") == CommandError(request_id="8", message="inexistant path")


def test_interpret_element_playing():
    ev = events("* set /storage/shows/NewsAM/playlists/Main/elements/E1 carousel_status run")
    assert ev == ElementPlaying(path="/storage/shows/NewsAM/playlists/Main/elements/E1")
    assert element_id_from_path(ev.path) == "E1"
    assert show_name_from_path(ev.path) == "NewsAM"
    assert playlist_name_from_path(ev.path) == "Main"


def test_interpret_set_attribute_form():
    ev = events("* set attribute /storage/shows/S/playlists/carousel/elements active_Main E3")
    assert ev == CarouselActive(path="/storage/shows/S/playlists/carousel/elements", feed="Main", element_id="E3")


def test_interpret_carousel_active():
    assert events("* set /carousel1 active_feedA E7") == CarouselActive(path="/carousel1", feed="feedA", element_id="E7")


def test_interpret_other_set_is_unrecognized():
    assert isinstance(events("* set /a/elements/E1 carousel_status cued"), Unrecognized)
    assert isinstance(events("* set /a/elements/E1 title hello"), Unrecognized)


def test_interpret_node_snapshot():
    ev = events("* node /parent prev E9 next E9 element name x carousel_status run")
    assert ev == ElementPlaying(path="E9", node_id="E9")


def test_interpret_node_not_running():
    assert isinstance(events("* node /parent prev E9 next E9 element carousel_status cued"), Unrecognized)
    assert isinstance(events("* node /parent prev E9 next E9 folder carousel_status run"), Unrecognized)


def test_interpret_changed():
    assert events("* changed E7 carousel_status run") == AttributeChanged(node_id="E7", attr_name="carousel_status", old_value="run")


def test_interpret_insert():
    assert events("* insert /storage/shows/A {13}<element id/>") == Insert(path="/storage/shows/A", payload="<element id/>")


def test_interpret_unknown_type():
    ev = events("* subscribed /storage/shows")
    assert ev == Unrecognized(request_id="*", message_type="subscribed", args=("/storage/shows",))


def test_path_decomposition_defaults():
    assert element_id_from_path("/carousel1/current") == "current"
    assert element_id_from_path("E5") == "E5"
    assert show_name_from_path("/carousel1") == "unknown"
    assert playlist_name_from_path("/carousel1") == "unknown"


def test_parse_packet_skips_only_malformed_frame():
    packet = (
        "* set /s/elements/E1 carousel_status run\n"
        "* set {5}ab\n"
        "* set /s/elements/E2 carousel_status run\n"
    )
    parsed = parse_packet(packet)
    assert [e.path for e in parsed] == ["/s/elements/E1", "/s/elements/E2"]


def test_packet_line_break_ends_frame_even_inside_literal():
    # frames are cut on "\n" first, so "{3}a" is short and "b" lacks a type
    assert parse_packet("1 ok {3}a\nb\n2 ok fine\n") == [CommandAck(request_id="2", extra=("fine",))]


from mse_relay.protocol import ActiveCarousel, parse_active_carousels


def test_snapshot_reply_yields_active_carousels():
    xml = (
        '<entry name="shows">'
        '<entry name="NewsAM" type="show">'
        '<entry name="carousel" type="playlist" active_Main="E5">'
        '<entry name="elements"><element name="E5" status="pre"/></entry>'
        "</entry>"
        '<entry name="Lower" type="playlist" active_Preview="E9"/>'
        "</entry>"
        '<entry name="Sports" type="show" active_Main=""/>'
        "</entry>"
    )
    found = parse_active_carousels(xml)
    assert found == [
        ActiveCarousel(show_name="NewsAM", playlist_name="carousel", feed="Main", element_id="E5"),
        ActiveCarousel(show_name="NewsAM", playlist_name="Lower", feed="Preview", element_id="E9"),
    ]
    assert found[0].key == "/storage/shows/NewsAM/playlists/carousel:Main"
    assert found[0].element_path == "/storage/shows/NewsAM/playlists/carousel/elements/E5"


def test_snapshot_outside_a_show_is_ignored():
    assert parse_active_carousels('<entry name="x" active_Main="E1"/>') == []


def test_snapshot_without_playlist_defaults_to_carousel():
    (c,) = parse_active_carousels('<entry name="S" type="show" active_Main="E1"/>')
    assert c.playlist_name == "carousel"


def test_snapshot_strips_length_escapes():
    (c,) = parse_active_carousels('{40}<entry name="S" type="show" active_Main="E1"/>')
    assert c.element_id == "E1"


@pytest.mark.parametrize("payload", ["", "not xml", "<entry name=", "{3}abc"])
def test_unreadable_snapshot_is_empty(payload):
    assert parse_active_carousels(payload) == []


# ─── On-air state ─────────────────────────────────────────────────────────────

from mse_relay.core import OnAirState, PlayingElement


def test_state_dual_keys_cleared_by_element_id():
    state = OnAirState()
    state.record_playing("/carousel1:feedA", PlayingElement.from_path("/carousel1/elements/E7", "E7"))
    state.record_playing("E1", PlayingElement.from_path("/storage/shows/NewsAM/playlists/Main/elements/E1"))

    assert state.is_playing("E7")
    assert state.all_playing_element_ids() == {"E1", "E7"}

    assert state.clear_by_element_or_key("E7") == ["/carousel1:feedA"]
    assert not state.is_playing("E7")
    assert state.is_playing("E1")


def test_state_clear_by_key():
    state = OnAirState()
    state.record_playing("/c:Main", PlayingElement.from_path("/c/elements/E2", "E2"))
    assert state.clear_by_element_or_key("/c:Main") == ["/c:Main"]
    assert len(state) == 0


def test_state_find_element_id():
    state = OnAirState()
    state.record_playing("E1", PlayingElement.from_path("/storage/shows/NewsAM/playlists/Main/elements/E1"))
    state.record_playing("E2", PlayingElement.from_path("/storage/shows/NewsAM/playlists/Lower/elements/E2"))

    assert state.find_element_id("NewsAM", "Lower") == "E2"
    assert state.find_element_id("NewsAM") in {"E1", "E2"}
    assert state.find_element_id("Sports") is None
    assert state.find_element_id("NewsAM", "Missing") is None


def test_state_reset_and_snapshot_copy():
    state = OnAirState()
    state.record_playing("E1", PlayingElement.from_path("/x/elements/E1"))
    snap = state.snapshot()
    state.reset()
    assert "E1" in snap
    assert state.all_playing_element_ids() == set()


def test_state_concurrent_writers():
    state = OnAirState()

    def writer(prefix: str):
        for i in range(200):
            key = f"{prefix}{i}"
            state.record_playing(key, PlayingElement.from_path(f"/s/elements/{key}"))
            state.is_playing(key)
            state.all_playing_element_ids()

    threads = [threading.Thread(target=writer, args=(p,)) for p in "abcd"]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(state.all_playing_element_ids()) == 800


def test_playing_element_from_path_without_id():
    assert PlayingElement.from_path("") is None


# ─── Config ───────────────────────────────────────────────────────────────────

from mse_relay.config import Settings


def test_settings_defaults():
    s = Settings()
    assert s.mse.port == 8595
    assert s.mse.reconnect_interval == 5.0
    assert s.mse.initial_query == "get /storage/shows 2"
    assert s.api.port == 8080


def test_settings_yaml_load(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text(
        "mse:\n  host: 10.0.0.12\n  subscriptions:\n    - subscribe /storage/shows\n"
        "api:\n  port: 9090\n"
        "channels:\n"
        "  - name: main\n    host: 10.0.0.12\n"
        "  - name: backup\n    host: 10.0.0.13\n    port: 8600\n    enabled: false\n"
    )
    s = Settings.load(config)
    assert s.mse.host == "10.0.0.12"
    assert s.mse.subscriptions == ["subscribe /storage/shows"]
    assert s.api.port == 9090
    assert [ch.name for ch in s.effective_channels()] == ["main", "backup"]
    assert s.channels[1].port == 8600
    assert s.channels[1].enabled is False


def test_settings_default_channel(tmp_path):
    s = Settings.load(tmp_path / "missing.yaml")
    (ch,) = s.effective_channels()
    assert ch.name == "default"
    assert ch.port == s.mse.port
    assert s.client_options()["reconnect_interval"] == s.mse.reconnect_interval


def test_settings_yaml_roundtrip(tmp_path):
    s = Settings.load(tmp_path / "missing.yaml")
    out = tmp_path / "out.yaml"
    s.to_yaml(out)
    again = Settings.load(out)
    assert again.mse.port == s.mse.port
    assert again.api.port == s.api.port
