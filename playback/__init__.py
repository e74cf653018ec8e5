"""
Playback session lifecycle for the external player process.

``PlaybackManager`` owns the one live player process. Every switch tears
the previous process down completely (quit byte, pipes closed, exit awaited)
before the next one is spawned, all under ``RadioState.station_lock``.
"""

from __future__ import annotations

import logging
import os
import queue
import shlex
import subprocess
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import IO, Any, Callable, Dict, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .status import StatusRenderer

logger = logging.getLogger(__name__)

DEFAULT_VOLUME_ANALOG = 55
DEFAULT_VOLUME_BLUETOOTH = 35
DEFAULT_PLAYER_CMD = "mplayer -quiet -volume {volume} {url}"


# ---------------------------------------------------------------------
# Stations
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class Station:
    """One entry of the station list."""

    label: str
    name: str
    url: str
    numbered: bool = True

    @property
    def display_name(self) -> str:
        return f"{self.label} {self.name}" if self.numbered else self.name


DEFAULT_STATIONS: List[Station] = [
    Station(
        "1",
        "RadioHH",
        "http://stream.radiohamburg.de/rhh-live/mp3-192/linkradiohamburgde",
        numbered=False,
    ),
    Station(
        "2",
        "Jazz Radio",
        "http://jazzradio.ice.infomaniak.ch/jazzradio-high.mp3",
        numbered=False,
    ),
    Station("3", "M1.FM Chillout", "http://tuner.m1.fm/chillout.mp3", numbered=False),
]


def load_stations(path: str) -> List[Station]:
    """Read ``name, url`` lines; fall back to the built-in list when empty."""
    stations: List[Station] = []
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as fh:
            for raw in fh:
                items = raw.strip("\r\n").split(",")
                if len(items) != 2:
                    continue
                name, url = items[0].strip(), items[1].strip()
                stations.append(Station(str(len(stations) + 1), name, url))
    except FileNotFoundError:
        logger.info("Station file %s not found; using defaults", path)
    except OSError as exc:
        logger.error("Failed to read station file %s: %s", path, exc)
    if not stations:
        return list(DEFAULT_STATIONS)
    return stations


# ---------------------------------------------------------------------
# Persisted station index + volumes
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class PersistedState:
    station_index: int = 0
    volume_analog: int = DEFAULT_VOLUME_ANALOG
    volume_bluetooth: int = DEFAULT_VOLUME_BLUETOOTH


def _field_int(fields: List[str], idx: int, default: int) -> int:
    if idx >= len(fields) or not fields[idx].strip():
        return default
    try:
        return int(fields[idx].strip())
    except ValueError:
        return default


def load_persisted_state(path: str) -> PersistedState:
    """Load ``index\\nanalog\\nbluetooth``; the index is 1-based on disk."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            fields = fh.read().strip(" \n").split("\n")
    except FileNotFoundError:
        return PersistedState()
    except OSError as exc:
        logger.warning("Failed to read %s: %s", path, exc)
        return PersistedState()
    index = _field_int(fields, 0, 1) - 1
    state = PersistedState(
        station_index=max(0, index),
        volume_analog=_field_int(fields, 1, DEFAULT_VOLUME_ANALOG),
        volume_bluetooth=_field_int(fields, 2, DEFAULT_VOLUME_BLUETOOTH),
    )
    logger.debug("Loaded state %s", state)
    return state


def save_persisted_state(path: str, state: PersistedState) -> None:
    """Rewrite the state file; failures are logged, never raised."""
    payload = f"{state.station_index + 1}\n{state.volume_analog}\n{state.volume_bluetooth}"
    try:
        dir_name = os.path.dirname(path)
        if dir_name:
            os.makedirs(dir_name, exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(payload)
    except OSError as exc:
        logger.warning("Error writing file %s: %s", path, exc)
        return
    logger.debug("Saved state %s", state)


# ---------------------------------------------------------------------
# Shared radio state
# ---------------------------------------------------------------------


class Route(Enum):
    ANALOG = "analog"
    BLUETOOTH = "bluetooth"


class TransportCommand(Enum):
    VOLUME_UP = b"*"
    VOLUME_DOWN = b"/"
    TOGGLE_MUTE = b"m"
    QUIT = b"q"


@dataclass
class RadioState:
    """State shared between poller, watchdog, status reader and API.

    ``station_lock`` guards station_index, the session and ``connected``;
    ``transport_lock`` guards player stdin writes and the volume/mute fields.
    """

    stations: List[Station]
    station_index: int = -1
    connected: bool = False
    sinks: List[str] = field(default_factory=list)
    volume_analog: int = DEFAULT_VOLUME_ANALOG
    volume_bluetooth: int = DEFAULT_VOLUME_BLUETOOTH
    route: Route = Route.ANALOG
    muted: bool = False
    bitrate: str = ""
    volume_text: str = ""
    station_name: str = ""
    title_lines: List[str] = field(default_factory=lambda: ["", ""])
    playing: bool = False
    station_lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )
    transport_lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    @property
    def current_station(self) -> Optional[Station]:
        idx = self.station_index
        if 0 <= idx < len(self.stations):
            return self.stations[idx]
        return None

    def active_volume(self) -> int:
        return self.volume_bluetooth if self.route is Route.BLUETOOTH else self.volume_analog

    def record_volume(self, level: int) -> None:
        """Store a level reported by the player for the active route."""
        with self.transport_lock:
            if self.route is Route.BLUETOOTH:
                self.volume_bluetooth = level
            else:
                self.volume_analog = level

    def set_muted(self, muted: bool) -> None:
        with self.transport_lock:
            self.muted = muted

    def persisted(self) -> PersistedState:
        return PersistedState(
            station_index=max(0, self.station_index),
            volume_analog=self.volume_analog,
            volume_bluetooth=self.volume_bluetooth,
        )

    def snapshot(self) -> Dict[str, Any]:
        """Return a JSON-friendly view for the status API."""
        station = self.current_station
        return {
            "station_index": self.station_index,
            "station": station.display_name if station else None,
            "station_url": station.url if station else None,
            "station_name": self.station_name,
            "title": list(self.title_lines),
            "bitrate": self.bitrate,
            "volume": self.active_volume(),
            "volume_analog": self.volume_analog,
            "volume_bluetooth": self.volume_bluetooth,
            "muted": self.muted,
            "route": self.route.value,
            "bluetooth_connected": self.connected,
            "bluetooth_sinks": list(self.sinks),
            "playing": self.playing,
        }


# ---------------------------------------------------------------------
# Player sessions
# ---------------------------------------------------------------------


@dataclass
class PlaybackSession:
    station_index: int
    route: Route
    process: Any
    stdin: IO[bytes]
    stdout: IO[bytes]


def build_player_command(template: str, url: str, volume: int) -> List[str]:
    """Expand the player template into argv, keeping url/volume single args."""
    cmd_str = template.format(url=shlex.quote(url), volume=shlex.quote(str(volume)))
    parts = shlex.split(cmd_str)
    if not parts:
        raise ValueError("player command produced empty argv")
    return parts


def _close_quietly(stream: Optional[IO[bytes]]) -> None:
    if stream is None:
        return
    try:
        stream.close()
    except (OSError, ValueError) as exc:
        logger.debug("Pipe close failed: %s", exc)


class PlaybackManager:
    """Start, stop and control the player process for the selected station."""

    def __init__(
        self,
        state: RadioState,
        renderer: "StatusRenderer",
        *,
        command_template: str = DEFAULT_PLAYER_CMD,
        schedule_save: Optional[Callable[[], None]] = None,
        spawn: Callable[..., Any] = subprocess.Popen,
        quit_timeout_s: float = 3.0,
    ) -> None:
        self._state = state
        self._renderer = renderer
        self._template = command_template
        self._schedule_save = schedule_save or (lambda: None)
        self._spawn = spawn
        self._quit_timeout_s = quit_timeout_s
        self._session: Optional[PlaybackSession] = None
        self._streams: "queue.Queue[Optional[IO[bytes]]]" = queue.Queue()
        self._closed = False

    @property
    def streams(self) -> "queue.Queue[Optional[IO[bytes]]]":
        """Handoff queue of player stdout streams, ``None`` on shutdown."""
        return self._streams

    @property
    def session(self) -> Optional[PlaybackSession]:
        return self._session

    def is_current_stream(self, stream: Any) -> bool:
        session = self._session
        return session is not None and session.stdout is stream

    # ---------------------- station switching ----------------------

    def switch_to(self, index: int) -> bool:
        """Restart playback on station ``index`` (wrapped to the list)."""
        with self._state.station_lock:
            started = self._switch_locked(index)
        self._schedule_save()
        return started

    def next_station(self) -> bool:
        with self._state.station_lock:
            started = self._switch_locked(self._state.station_index + 1)
        self._schedule_save()
        return started

    def previous_station(self) -> bool:
        with self._state.station_lock:
            idx = self._state.station_index
            target = idx - 1 if idx > 0 else len(self._state.stations) - 1
            started = self._switch_locked(target)
        self._schedule_save()
        return started

    def restart(self, connected: Optional[bool] = None) -> bool:
        """Restart the current station, optionally with a new route."""
        with self._state.station_lock:
            if connected is not None:
                self._state.connected = connected
            if self._state.station_index < 0:
                logger.debug("No station selected yet; nothing to restart")
                return False
            return self._switch_locked(self._state.station_index)

    def shutdown(self) -> None:
        """Stop the live player and release the status reader."""
        with self._state.station_lock:
            self._closed = True
            self._stop_session_locked()
        self._streams.put(None)

    def _switch_locked(self, index: int) -> bool:
        if self._closed:
            logger.debug("Manager closed; ignoring switch to %d", index)
            return False
        stations = self._state.stations
        if not stations:
            logger.error("Station list is empty")
            return False
        index %= len(stations)
        self._state.station_index = index
        station = stations[index]
        logger.info("New station: %s", station.display_name)
        self._renderer.announce(index, station)
        self._stop_session_locked()
        return self._start_session_locked(index, station)

    def _stop_session_locked(self) -> None:
        session = self._session
        if session is None:
            return
        self._session = None
        self._state.playing = False
        with self._state.transport_lock:
            try:
                session.stdin.write(TransportCommand.QUIT.value)
                session.stdin.flush()
            except (OSError, ValueError) as exc:
                logger.debug("Quit write failed: %s", exc)
            _close_quietly(session.stdin)
        try:
            session.process.wait(timeout=self._quit_timeout_s)
        except subprocess.TimeoutExpired:
            logger.warning(
                "Player pid %s ignored quit; killing", getattr(session.process, "pid", "?")
            )
            session.process.kill()
            session.process.wait()
        # The status reader may still be draining stdout, so it is closed
        # only once the process is gone.
        _close_quietly(session.stdout)
        logger.debug("Player for station %d stopped", session.station_index)

    def _start_session_locked(self, index: int, station: Station) -> bool:
        connected = self._state.connected
        route = Route.BLUETOOTH if connected else Route.ANALOG
        with self._state.transport_lock:
            self._state.route = route
            volume = self._state.active_volume()
        logger.debug("Using %s volume %d", route.value, volume)
        self._renderer.set_volume_level(volume)
        try:
            argv = build_player_command(self._template, station.url, volume)
            proc = self._spawn(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
        except (OSError, ValueError) as exc:
            logger.error("Failed to start player for %s: %s", station.url, exc)
            return False
        if proc.stdin is None or proc.stdout is None:
            logger.error("Player started without pipes; stopping it")
            proc.kill()
            proc.wait()
            return False
        self._session = PlaybackSession(index, route, proc, proc.stdin, proc.stdout)
        self._state.playing = True
        self._streams.put(proc.stdout)
        logger.info(
            "Player started pid=%s route=%s volume=%d",
            getattr(proc, "pid", "?"),
            route.value,
            volume,
        )
        return True

    # ---------------------- transport ----------------------

    def send_transport(self, command: TransportCommand) -> bool:
        """Write one control byte to the live player."""
        with self._state.transport_lock:
            session = self._session
            if session is None:
                logger.warning("No player running; dropping %s", command.name)
                return False
            try:
                session.stdin.write(command.value)
                session.stdin.flush()
            except (OSError, ValueError) as exc:
                logger.error("Player write failed (%s): %s", command.name, exc)
                return False
        return True

    def volume_up(self) -> bool:
        sent = self.send_transport(TransportCommand.VOLUME_UP)
        self._schedule_save()
        return sent

    def volume_down(self) -> bool:
        sent = self.send_transport(TransportCommand.VOLUME_DOWN)
        self._schedule_save()
        return sent

    def toggle_mute(self) -> bool:
        return self.send_transport(TransportCommand.TOGGLE_MUTE)
