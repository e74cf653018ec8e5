from pathlib import Path
import io
import queue
import sys
import threading

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from display.virtual import VirtualDisplay
from playback import RadioState, Route, Station
from playback.status import (
    EventKind,
    StatusEvent,
    StatusReader,
    StatusRenderer,
    beautify,
    format_status_line,
    format_volume,
    is_only_lower_case,
    parse_status_line,
    remove_noise,
    split_title,
)


# ---------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Ärger über Öl", "Aerger ueber Oel"),
        ("Straße", "Strasse"),
        ("Don’t stop", "Don't stop"),
        ("Señor Café", "Senor Cafe"),
        ("Wait…", "Wait..."),
        ("tab\there", "tabhere"),
    ],
)
def test_beautify_maps_characters(raw, expected):
    assert beautify(raw) == expected


def test_beautify_camel_case_only_touches_shouted_titles():
    assert beautify("HELLO WORLD", camel_case=True) == "Hello World"
    assert beautify("DON'T STOP ME NOW", camel_case=True) == "Don't Stop Me Now"
    assert beautify("all lower case", camel_case=True) == "all lower case"
    assert beautify("HELLO WORLD") == "HELLO WORLD"


def test_is_only_lower_case():
    assert is_only_lower_case("abc 123 (x)") is True
    assert is_only_lower_case("Abc") is False


@pytest.mark.parametrize(
    "title, expected",
    [
        ("Memory Pages (CDM Radio Edit)", "Memory Pages"),
        ("Tide (Electro RMX)", "Tide"),
        ("After dark (On The Road Again)", "After dark (On The Road Again)"),
        ("Slave to the rhythm .(cover)", "Slave to the rhythm"),
        ("Blue Monday (Radio Edit)", "Blue Monday"),
        ("Empty () parens", "Empty () parens"),
        ("Around the World (Extended Mix) Live", "Around the World Live"),
        ("Yesterday (Remastered)", "Yesterday (Remastered)"),
        ("No brackets", "No brackets"),
        ("Odd )order(", "Odd )order("),
    ],
)
def test_remove_noise(title, expected):
    assert remove_noise(title) == expected


def test_split_title():
    assert split_title("Artist - Track") == ("Artist", "Track")
    assert split_title("Artist - Track - Live") == ("Artist", "Track - Live")
    assert split_title("Just a jingle") == ("Just a jingle",)
    assert split_title(" - leading") == (" - leading",)


def test_volume_and_status_line_formats():
    assert format_volume(55, 20) == "Vol 55%"
    assert format_volume(55, 18) == "V 55%"
    assert format_status_line("128 kbit/s", "Vol 55%", False, 20) == "128 kbit/s   Vol 55%"
    assert format_status_line("128 kbit/s", "V 55%", False, 18) == "128 kbit/s   V 55%"
    assert format_status_line("128 kbit/s", "Vol 55%", True, 20) == "128 kbit/s    -mute-"


# ---------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------


def test_parse_station_name():
    events = parse_status_line("Name   : Jazz Radio Premium\n")
    assert events == [StatusEvent(EventKind.STATION, "Jazz Radio Premium")]


def test_parse_icy_title_with_separator():
    events = parse_status_line("ICY Info: StreamTitle='Nina Simone - Feeling Good';StreamUrl='';\n")
    assert len(events) == 1
    assert events[0].kind is EventKind.TITLE
    assert events[0].value == "Nina Simone - Feeling Good"
    assert events[0].segments == ("Nina Simone", "Feeling Good")


def test_parse_icy_title_without_separator():
    events = parse_status_line("ICY Info: StreamTitle='Station jingle';\n")
    assert events[0].segments == ("Station jingle",)


def test_parse_bitrate_volume_and_mute():
    assert parse_status_line("Bitrate: 128kbit/s\n") == [
        StatusEvent(EventKind.BITRATE, "128kbit/s")
    ]
    assert parse_status_line("Volume: 57 %\n") == [StatusEvent(EventKind.VOLUME, "57")]
    assert parse_status_line("\x1b[J Volume: 42.6 %") == [StatusEvent(EventKind.VOLUME, "43")]
    assert parse_status_line("Mute: enabled") == [
        StatusEvent(EventKind.MUTE, "enabled", flag=True)
    ]
    assert parse_status_line("Mute: disabled")[0].flag is False


def test_parse_ignores_unrelated_lines():
    assert parse_status_line("Cache fill: 12.50% (32768 bytes)") == []
    assert parse_status_line("Volume: loud") == []
    assert parse_status_line("") == []


# ---------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------


@pytest.fixture()
def display():
    disp = VirtualDisplay(scroll_speed_ms=5000)
    yield disp
    disp.close()


@pytest.fixture()
def state():
    return RadioState([Station("1", "One", "http://one"), Station("2", "Two", "http://two")])


def _renderer(display, state, **kwargs):
    return StatusRenderer(display, state, **kwargs)


def test_announce_shows_header_and_ip_on_first_station(display, state):
    renderer = _renderer(display, state, ip_address="192.168.1.20")
    renderer.announce(0, state.stations[0])
    assert display.sync(2)
    assert display.lines == ["-> 1 One", "", "", "192.168.1.20"]
    assert display.history()[0].kind.value == "clear"


def test_announce_shows_clock_on_other_stations(display, state):
    renderer = _renderer(display, state, ip_address="10.0.0.1")
    renderer.announce(1, state.stations[1])
    assert display.sync(2)
    assert display.lines[0] == "-> 2 Two"
    assert display.lines[3] != "10.0.0.1"
    assert len(display.lines[3]) == len("12:00:00  01.01.26")


def test_render_two_segment_title(display, state):
    renderer = _renderer(display, state)
    renderer.render(parse_status_line("ICY Info: StreamTitle='Artist - Track';")[0])
    assert display.sync(2)
    assert display.lines[1] == "Artist"
    assert display.lines[2] == "Track"
    assert state.title_lines == ["Artist", "Track"]


def test_render_single_segment_title_clears_third_line(display, state):
    renderer = _renderer(display, state)
    display.print_line(2, "stale")
    renderer.render(parse_status_line("ICY Info: StreamTitle='Jingle';")[0])
    assert display.sync(2)
    assert display.lines[1] == "Jingle"
    assert display.lines[2] == ""


def test_render_removes_noise_from_track(display, state):
    renderer = _renderer(display, state, noise_removal=True)
    renderer.render(
        parse_status_line("ICY Info: StreamTitle='Grace Jones - Slave to the rhythm .(cover)';")[0]
    )
    assert display.sync(2)
    assert display.lines[2] == "Slave to the rhythm"


def test_render_status_line_tracks_volume_and_mute(display, state):
    renderer = _renderer(display, state)
    renderer.render(StatusEvent(EventKind.BITRATE, "128 kbit/s"))
    renderer.render(StatusEvent(EventKind.VOLUME, "61"))
    assert display.sync(2)
    assert display.lines[3] == "128 kbit/s   Vol 61%"
    assert state.volume_analog == 61

    renderer.render(StatusEvent(EventKind.MUTE, "enabled", flag=True))
    assert display.sync(2)
    assert state.muted is True
    assert display.lines[3] == "128 kbit/s    -mute-"


def test_volume_event_updates_bluetooth_level_on_bluetooth_route(display, state):
    state.route = Route.BLUETOOTH
    renderer = _renderer(display, state)
    renderer.render(StatusEvent(EventKind.VOLUME, "20"))
    assert state.volume_bluetooth == 20
    assert state.volume_analog != 20


def test_stopped_only_reported_for_current_stream(display, state):
    current = object()
    renderer = _renderer(display, state, is_current_stream=lambda s: s is current)
    state.playing = True
    renderer.render(StatusEvent(EventKind.STOPPED), object())
    assert display.sync(2)
    assert "Playing stopped" not in display.prints(1)
    assert state.playing is True

    renderer.render(StatusEvent(EventKind.STOPPED), current)
    assert display.sync(2)
    assert display.lines[1] == "Playing stopped"
    assert state.playing is False


def test_output_from_replaced_player_is_ignored(display, state):
    current, previous = object(), object()
    state.route = Route.BLUETOOTH
    renderer = _renderer(display, state, is_current_stream=lambda s: s is current)
    renderer.announce(1, state.stations[1])

    renderer.render(StatusEvent(EventKind.VOLUME, "80"), previous)
    renderer.render(StatusEvent(EventKind.MUTE, "enabled", flag=True), previous)
    renderer.render(parse_status_line("Name: Old Station")[0], previous)
    renderer.render(parse_status_line("ICY Info: StreamTitle='Old - Song';")[0], previous)
    assert display.sync(2)
    assert state.volume_bluetooth == 35
    assert state.muted is False
    assert state.station_name == ""
    assert state.title_lines == ["", ""]
    assert display.lines[:3] == ["-> 2 Two", "", ""]

    renderer.render(StatusEvent(EventKind.VOLUME, "40"), current)
    renderer.render(parse_status_line("Name: New Station")[0], current)
    assert display.sync(2)
    assert state.volume_bluetooth == 40
    assert display.lines[0] == "New Station"


# ---------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------


def test_reader_consumes_streams_in_handoff_order():
    streams: "queue.Queue" = queue.Queue()
    seen = []
    done = threading.Event()

    def on_event(event, stream):
        seen.append((event.kind, event.value, stream))
        if event.kind is EventKind.STOPPED and stream is second:
            done.set()

    first = io.BytesIO(b"Name: First\nBitrate: 96kbit/s\n")
    second = io.BytesIO("ICY Info: StreamTitle='Caf\xe9';\n".encode("latin-1"))
    reader = StatusReader(streams, on_event)
    reader.start()
    streams.put(first)
    streams.put(second)
    assert done.wait(2)
    streams.put(None)
    reader.join(2)

    assert seen == [
        (EventKind.STATION, "First", first),
        (EventKind.BITRATE, "96kbit/s", first),
        (EventKind.STOPPED, "", first),
        (EventKind.TITLE, "Café", second),
        (EventKind.STOPPED, "", second),
    ]


def test_reader_survives_closed_stream_and_render_errors():
    calls = []

    class Closed:
        def readline(self):
            raise ValueError("I/O operation on closed file")

    def on_event(event, stream):
        calls.append(event.kind)
        if event.kind is EventKind.STATION:
            raise RuntimeError("render failed")

    reader = StatusReader(queue.Queue(), on_event)
    reader.consume(Closed())
    reader.consume(io.BytesIO(b"Name: X\nBitrate: 1\n"))
    assert calls == [
        EventKind.STOPPED,
        EventKind.STATION,
        EventKind.BITRATE,
        EventKind.STOPPED,
    ]
