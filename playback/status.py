"""
Player status lines: parsing, text preparation and rendering.

``StatusReader`` drains one player stdout after another from the handoff
queue, ``parse_status_line`` turns lines into ``StatusEvent`` records and
``StatusRenderer`` applies them to ``RadioState`` and the display.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import IO, Any, Callable, List, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    import queue

    from display import Display

    from . import RadioState, Station

logger = logging.getLogger(__name__)

DEFAULT_WIDE_THRESHOLD = 20

# ---------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------

CHAR_MAP = {
    "’": "'",
    "´": "'",
    "á": "a",
    "é": "e",
    "ê": "e",
    "è": "e",
    "í": "i",
    "à": "a",
    "ä": "ae",
    "Ä": "Ae",
    "ö": "oe",
    "Ö": "Oe",
    "ü": "ue",
    "Ü": "Ue",
    "ß": "ss",
    "…": "...",
    "Ó": "O",
    "ó": "o",
    "õ": "o",
    "ñ": "n",
    "ø": "o",
    "É": "E",
}

_LOWER_CHARS = frozenset("0123456789abcdefghijklmnopqrstuvwxyz.+-*/%&!# _,;:()[]{}")
_WORD_START = re.compile(r"(^|[^A-Za-z0-9_'])([a-z])")

NOISE_WORDS = ("edit", "mix", "cdm", "cut", "rmx", "cover")


def is_only_lower_case(text: str) -> bool:
    """True when ``text`` has no uppercase letters or unusual symbols."""
    return all(c in _LOWER_CHARS for c in text)


def _title_case(text: str) -> str:
    return _WORD_START.sub(lambda m: m.group(1) + m.group(2).upper(), text.lower())


def beautify(text: str, camel_case: bool = False) -> str:
    """Map non-ASCII characters to displayable ones, optionally title-case."""
    out: List[str] = []
    for ch in text:
        mapped = CHAR_MAP.get(ch)
        if mapped is not None:
            out.append(mapped)
        elif 32 <= ord(ch) <= 126:
            out.append(ch)
    result = "".join(out)
    if camel_case and not is_only_lower_case(result):
        return _title_case(result)
    return result


def remove_noise(title: str) -> str:
    """Drop a parenthesized qualifier like ``(Radio Edit)`` from a title."""
    opening = title.find("(")
    closing = title.find(")")
    if opening < 0 or closing < 0 or closing < opening:
        return title
    noise = title[opening + 1 : closing].lower()
    if not noise or not any(word in noise for word in NOISE_WORDS):
        return title
    cleaned = (title[:opening] + title[closing + 1 :]).replace("  ", " ")
    cleaned = cleaned.replace(" .", "").strip()
    logger.debug("removeNoise: %s", cleaned)
    return cleaned


def split_title(title: str) -> Tuple[str, ...]:
    """Split ``Artist - Track``; a title without separator stays whole."""
    sep = title.find(" - ")
    if sep > 0:
        return title[:sep], title[sep + 3 :]
    return (title,)


def format_volume(level: int, width: int, wide_threshold: int = DEFAULT_WIDE_THRESHOLD) -> str:
    fmt = "V {}%" if width < wide_threshold else "Vol {}%"
    return fmt.format(level)


def format_status_line(
    bitrate: str,
    volume_text: str,
    muted: bool,
    width: int,
    wide_threshold: int = DEFAULT_WIDE_THRESHOLD,
) -> str:
    """Bitrate left, volume (or ``-mute-``) right aligned."""
    vol = "-mute-" if muted else volume_text
    if width < wide_threshold:
        return f"{bitrate:<10}{vol:>8}"
    return f"{bitrate:<10}{vol:>10}"


# ---------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------


class EventKind(Enum):
    STATION = "station"
    TITLE = "title"
    BITRATE = "bitrate"
    VOLUME = "volume"
    MUTE = "mute"
    STOPPED = "stopped"


@dataclass(frozen=True)
class StatusEvent:
    kind: EventKind
    value: str = ""
    segments: Tuple[str, ...] = ()
    flag: bool = False


def _after_colon(line: str) -> Optional[str]:
    _head, sep, rest = line.partition(":")
    if not sep:
        return None
    return rest.strip(" \r\n")


def _stream_title(payload: str) -> Optional[str]:
    for item in payload.split(";"):
        item = item.strip()
        if not item.startswith("StreamTitle="):
            continue
        value = item[len("StreamTitle=") :]
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        return value
    return None


def parse_status_line(line: str) -> List[StatusEvent]:
    """Decode one player output line; unknown lines yield no events."""
    events: List[StatusEvent] = []
    if line.startswith("Name"):
        name = _after_colon(line)
        if name is not None:
            events.append(StatusEvent(EventKind.STATION, name))
    if line.startswith("ICY Info:"):
        title = _stream_title(line[len("ICY Info:") :])
        if title is not None:
            events.append(StatusEvent(EventKind.TITLE, title, split_title(title)))
    if line.startswith("Bitrate"):
        bitrate = _after_colon(line)
        if bitrate is not None:
            events.append(StatusEvent(EventKind.BITRATE, bitrate))
    if "Volume:" in line:
        tokens = line.split("Volume:", 1)[1].split()
        if tokens:
            try:
                level = int(round(float(tokens[0].rstrip("%"))))
            except ValueError:
                level = None
            if level is not None:
                events.append(StatusEvent(EventKind.VOLUME, str(level)))
    if "Mute:" in line:
        rest = line.split("Mute:", 1)[1]
        events.append(StatusEvent(EventKind.MUTE, rest.strip(), flag="enabled" in rest))
    return events


# ---------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------


class StatusRenderer:
    """Turn status events and station changes into display output."""

    def __init__(
        self,
        display: "Display",
        state: "RadioState",
        *,
        camel_case: bool = False,
        noise_removal: bool = False,
        scroll_station: bool = False,
        wide_threshold: int = DEFAULT_WIDE_THRESHOLD,
        ip_address: str = "",
        is_current_stream: Optional[Callable[[Any], bool]] = None,
    ) -> None:
        self._display = display
        self._state = state
        self._camel_case = camel_case
        self._noise_removal = noise_removal
        self._scroll_station = scroll_station
        self._wide_threshold = wide_threshold
        self.ip_address = ip_address
        self.is_current_stream = is_current_stream or (lambda _stream: False)

    def print_line(self, line: int, text: str, scroll: bool = False, raw: bool = False) -> None:
        t = text.strip()
        if not raw:
            t = beautify(t, self._camel_case)
        self._display.print_line(line, t, scroll)

    def announce(self, index: int, station: "Station") -> None:
        """Header shown while a new session starts."""
        self._state.station_name = ""
        self._state.title_lines = ["", ""]
        self._display.clear()
        self.print_line(0, "-> " + station.display_name)
        self.print_line(1, "")
        self.print_line(2, "")
        if index == 0:
            self.print_line(3, self.ip_address)
        else:
            self.print_line(3, time.strftime("%H:%M:%S  %d.%m.%y"))

    def set_volume_level(self, level: int) -> None:
        self._state.volume_text = format_volume(
            level, self._display.chars_per_line, self._wide_threshold
        )

    def render_status_line(self) -> None:
        s = format_status_line(
            self._state.bitrate,
            self._state.volume_text,
            self._state.muted,
            self._display.chars_per_line,
            self._wide_threshold,
        )
        self.print_line(3, s, raw=True)

    def render(self, event: StatusEvent, stream: Any = None) -> None:
        kind = event.kind
        if (
            stream is not None
            and kind is not EventKind.STOPPED
            and not self.is_current_stream(stream)
        ):
            # Output still buffered from a player that has been replaced.
            logger.debug("Dropping %s from previous player", kind.value)
            return
        if kind is EventKind.STATION:
            self._state.station_name = event.value
            self.print_line(0, event.value, self._scroll_station)
            logger.info("Station: %s", event.value)
        elif kind is EventKind.TITLE:
            self._render_title(event)
        elif kind is EventKind.BITRATE:
            self._state.bitrate = event.value
            logger.debug("Bitrate: %s", event.value)
            self.render_status_line()
        elif kind is EventKind.VOLUME:
            level = int(event.value)
            self._state.record_volume(level)
            self.set_volume_level(level)
            logger.debug("Volume: %d", level)
            self.render_status_line()
        elif kind is EventKind.MUTE:
            self._state.set_muted(event.flag)
            self.render_status_line()
        elif kind is EventKind.STOPPED:
            if self.is_current_stream(stream):
                logger.warning("Playing stopped")
                self._state.playing = False
                self.print_line(1, "Playing stopped")
                self.print_line(2, "")
            else:
                logger.debug("Previous player output ended")

    def _render_title(self, event: StatusEvent) -> None:
        segments = event.segments or (event.value,)
        if len(segments) > 1:
            artist, track = segments[0], segments[1]
            if self._noise_removal:
                track = remove_noise(beautify(track.strip(), self._camel_case))
            self._state.title_lines = [artist, track]
            self.print_line(1, artist, True)
            self.print_line(2, track, True)
            title = event.value
            if title.strip() != "-" and title != self._state.station_name:
                logger.info("Title:   %s", title)
        else:
            title = segments[0]
            if self._noise_removal:
                title = remove_noise(beautify(title.strip(), self._camel_case))
            self._state.title_lines = [title, ""]
            self.print_line(1, title, True)
            self.print_line(2, "")


# ---------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------


def _decode(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


class StatusReader:
    """Drain handed-off player outputs one after the other."""

    def __init__(
        self,
        streams: "queue.Queue[Optional[IO[bytes]]]",
        on_event: Callable[[StatusEvent, Any], None],
        *,
        echo: bool = False,
    ) -> None:
        self._streams = streams
        self._on_event = on_event
        self._echo = echo
        self._thread = threading.Thread(target=self._run, name="StatusReader", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread.is_alive():
            self._thread.join(timeout)

    def _run(self) -> None:
        while True:
            stream = self._streams.get()
            if stream is None:
                break
            self.consume(stream)

    def consume(self, stream: IO[bytes]) -> None:
        """Read ``stream`` to its end, then report a synthetic stop."""
        try:
            for raw in iter(stream.readline, b""):
                line = _decode(raw)
                if self._echo and line.strip():
                    logger.info("Process output: %s", line.rstrip())
                for event in parse_status_line(line):
                    self._dispatch(event, stream)
        except (OSError, ValueError) as exc:
            # Closed underneath us by the session teardown.
            logger.debug("Player output closed: %s", exc)
        self._dispatch(StatusEvent(EventKind.STOPPED), stream)

    def _dispatch(self, event: StatusEvent, stream: Any) -> None:
        try:
            self._on_event(event, stream)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to render %s", event.kind.value)
