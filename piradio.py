#!/usr/bin/env python3
"""
Internet radio appliance: buttons, character display and an mplayer session.

Usage:
    python3 piradio.py [--oled] [--noise] [--backlightOff] [--config cfg.yaml]
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import socket
import subprocess
import sys
import threading
from typing import Any, Callable, Dict, Optional

import requests
import yaml

from buttons import (
    DEFAULT_DEBOUNCE_MS,
    DEFAULT_PINS,
    DEFAULT_POLL_INTERVAL_MS,
    Action,
    GpioButtons,
    InputPoller,
)
from connectivity import (
    DEFAULT_INTERVAL_S,
    DEFAULT_PROBE_PATH,
    ConnectivityWatchdog,
    discover_sinks,
    link_present,
)
from debouncer import Debouncer
from display import Backlight, QueuedDisplay, create_display
from display.virtual import VirtualDisplay
from playback import (
    DEFAULT_PLAYER_CMD,
    PlaybackManager,
    RadioState,
    load_persisted_state,
    load_stations,
    save_persisted_state,
)
from playback.status import DEFAULT_WIDE_THRESHOLD, StatusReader, StatusRenderer

# ---------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _resolve_log_level(value: Optional[str]) -> int:
    """Resolve log level from string or numeric value."""
    if not value:
        return logging.INFO
    raw = value.strip()
    if raw.isdigit():
        return int(raw)
    return getattr(logging, raw.upper(), logging.INFO)


LOG_LEVEL = _resolve_log_level(os.getenv("LOG_LEVEL", "INFO"))

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger("radio")

# ---------------------------------------------------------------------
# Paths and timing constants
# ---------------------------------------------------------------------

HOME_PATH: str = os.getenv(
    "PIRADIO_HOME", os.path.join(os.path.expanduser("~"), ".piradio")
)
STATE_FILE = "last_values"
STATIONS_FILE = "stations"
CONFIG_FILE = "config.yaml"
LOG_FILE = "log"

SAVE_DEBOUNCE_S = 15.0
PROBE_RETRY_S = 0.3

# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------


def _parse_int(value: Any, default: int) -> int:
    """Parse an int from a value or return a default on failure."""
    try:
        if isinstance(value, str):
            return int(value, 0)
        return int(value)  # type: ignore[arg-type]
    except Exception:
        return default


def _parse_bool(value: Any, default: bool) -> bool:
    """Parse a bool from bool/str/number inputs; fall back to default."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"1", "true", "yes", "on"}:
            return True
        if v in {"0", "false", "no", "off"}:
            return False
    return default


def _parse_float(value: Any, default: float) -> float:
    """Parse a float or return a default when conversion fails."""
    try:
        return float(value)
    except Exception:
        return default


def _parse_str(value: Any, default: str = "") -> str:
    """Coerce simple scalar values to string, otherwise return default."""
    return str(value) if isinstance(value, (str, int, float)) else default


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _enforce(cond: bool, msg: str) -> None:
    """Abort execution with a config error when a condition fails."""
    if not cond:
        logger.critical("Config error: %s", msg)
        raise SystemExit(2)


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name, {})
    if value is None:
        return {}
    _enforce(isinstance(value, dict), f"{name} must be a mapping")
    return value


# ---------------------------------------------------------------------
# Config model
# ---------------------------------------------------------------------


class AppConfig:
    """Parsed, validated application configuration."""

    # Display
    display_type: str
    scroll_speed_ms: int
    scroll_station: bool
    lcd_delay_s: int
    i2c_bus: int
    lcd_address: int
    wide_threshold: int

    # Player
    player_command: str
    debug: bool

    # Buttons + backlight
    pins: Dict[Action, int]
    poll_interval_ms: int
    debounce_ms: int
    backlight_auto_off: bool
    backlight_off_time_s: int

    # Text
    camel_case: bool
    remove_noise: bool

    # Bluetooth
    bluetooth_enabled: bool
    bt_probe_path: str
    bt_interval_s: float

    # API
    api_host: str
    api_port: int

    def __init__(self, raw: Dict[str, Any]) -> None:
        _enforce(isinstance(raw, dict), "root must be a mapping")
        disp = _section(raw, "display")
        player = _section(raw, "player")
        buttons = _section(raw, "buttons")
        backlight = _section(raw, "backlight")
        text = _section(raw, "text")
        bt = _section(raw, "bluetooth")
        api = _section(raw, "api")

        self.display_type = _parse_str(disp.get("type", "lcd"), "lcd").strip().lower()
        _enforce(
            self.display_type in {"lcd", "oled", "virtual"},
            "display.type must be lcd, oled or virtual",
        )
        self.scroll_speed_ms = _parse_int(disp.get("scroll_speed_ms", 500), 500)
        self.scroll_station = _parse_bool(disp.get("scroll_station", False), False)
        self.lcd_delay_s = _parse_int(disp.get("lcd_delay_s", 3), 3)
        self.i2c_bus = _parse_int(disp.get("i2c_bus", 1), 1)
        self.lcd_address = _parse_int(disp.get("lcd_address", 0x27), 0x27)
        self.wide_threshold = _parse_int(
            disp.get("wide_threshold", DEFAULT_WIDE_THRESHOLD), DEFAULT_WIDE_THRESHOLD
        )

        self.player_command = (
            _parse_str(player.get("command", DEFAULT_PLAYER_CMD), DEFAULT_PLAYER_CMD).strip()
            or DEFAULT_PLAYER_CMD
        )
        self.debug = _parse_bool(player.get("debug", False), False)

        self.pins = dict(DEFAULT_PINS)
        for action in Action:
            if action.value in buttons:
                pin = _parse_int(buttons.get(action.value), -1)
                _enforce(0 <= pin <= 27, f"buttons.{action.value} must be a BCM pin 0..27")
                self.pins[action] = pin
        self.poll_interval_ms = max(
            10,
            _parse_int(buttons.get("poll_interval_ms", DEFAULT_POLL_INTERVAL_MS), DEFAULT_POLL_INTERVAL_MS),
        )
        self.debounce_ms = max(
            10, _parse_int(buttons.get("debounce_ms", DEFAULT_DEBOUNCE_MS), DEFAULT_DEBOUNCE_MS)
        )

        self.backlight_auto_off = _parse_bool(backlight.get("auto_off", False), False)
        self.backlight_off_time_s = _parse_int(backlight.get("off_time_s", 15), 15)

        self.camel_case = _parse_bool(text.get("camel_case", False), False)
        self.remove_noise = _parse_bool(text.get("remove_noise", False), False)

        self.bluetooth_enabled = _parse_bool(bt.get("enabled", True), True)
        self.bt_probe_path = _parse_str(bt.get("probe_path", DEFAULT_PROBE_PATH), DEFAULT_PROBE_PATH)
        self.bt_interval_s = max(
            0.1, _parse_float(bt.get("interval_s", DEFAULT_INTERVAL_S), DEFAULT_INTERVAL_S)
        )

        self.api_host = _parse_str(api.get("host", "0.0.0.0"), "0.0.0.0")
        self.api_port = _parse_int(api.get("port", 0), 0)
        if not (0 <= self.api_port <= 65535):
            logger.warning("Invalid API port %s; API disabled", self.api_port)
            self.api_port = 0

        self.clamp()

    def clamp(self) -> None:
        """Keep timing values inside the ranges the hardware tolerates."""
        self.backlight_off_time_s = _clamp(self.backlight_off_time_s, 3, 3600)
        self.scroll_speed_ms = _clamp(self.scroll_speed_ms, 100, 10000)
        self.lcd_delay_s = _clamp(self.lcd_delay_s, 1, 10)

    def apply_args(self, args: argparse.Namespace) -> None:
        """Command-line flags win over the config file."""
        if args.camelCase is not None:
            self.camel_case = args.camelCase
        if args.debug is not None:
            self.debug = args.debug
        if args.lcdDelay is not None:
            self.lcd_delay_s = args.lcdDelay
        if args.noise is not None:
            self.remove_noise = args.noise
        if args.oled:
            self.display_type = "oled"
        if args.display:
            self.display_type = args.display
        if args.noBluetooth:
            self.bluetooth_enabled = False
        if args.backlightOff is not None:
            self.backlight_auto_off = args.backlightOff
        if args.backlightOffTime is not None:
            self.backlight_off_time_s = args.backlightOffTime
        if args.scrollSpeed is not None:
            self.scroll_speed_ms = args.scrollSpeed
        if args.scrollStation is not None:
            self.scroll_station = args.scrollStation
        if args.api_port is not None:
            self.api_port = args.api_port
        if args.api_host:
            self.api_host = args.api_host
        self.clamp()


def load_config(path: Optional[str]) -> AppConfig:
    """Load the YAML config; a missing file means defaults."""
    if not path or not os.path.exists(path):
        return AppConfig({})
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        logger.critical("Invalid YAML in %s: %s", path, exc)
        raise SystemExit(2)
    except OSError as exc:
        logger.error("Failed to read config %s: %s; using defaults", path, exc)
        return AppConfig({})
    return AppConfig(raw)


# ---------------------------------------------------------------------
# Network helpers
# ---------------------------------------------------------------------


def local_ip_address() -> str:
    """Return the primary non-loopback IPv4 address, or '' when offline."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packet is sent; connect() only selects the outgoing interface.
        sock.connect(("8.8.8.8", 80))
        addr = sock.getsockname()[0]
    except OSError as exc:
        logger.warning("No network address available: %s", exc)
        return ""
    finally:
        sock.close()
    if addr.startswith("127."):
        return ""
    logger.info("IP address: %s", addr)
    return addr


def stream_reachable(url: str, timeout: float = 5.0) -> bool:
    """Return True when the stream URL answers at all."""
    try:
        with requests.get(url, stream=True, timeout=timeout):
            return True
    except requests.RequestException:
        return False


def wait_for_stream(
    url: str,
    stop_event: threading.Event,
    *,
    interval_s: float = PROBE_RETRY_S,
    probe: Callable[[str], bool] = stream_reachable,
) -> bool:
    """Block until ``url`` is reachable; False when stopped first."""
    while not stop_event.is_set():
        if probe(url):
            return True
        logger.debug("URL %s is NOT available", url)
        stop_event.wait(interval_s)
    return False


# ---------------------------------------------------------------------
# Application wiring
# ---------------------------------------------------------------------


class RadioApp:
    """Owns every long-lived component and their start/stop order."""

    def __init__(
        self,
        cfg: AppConfig,
        home: str = HOME_PATH,
        *,
        display: Optional[QueuedDisplay] = None,
        spawn: Callable[..., Any] = subprocess.Popen,
        pressed: Optional[Callable[[int], bool]] = None,
        link_probe: Optional[Callable[[], bool]] = None,
        stream_probe: Callable[[str], bool] = stream_reachable,
        sink_discovery: Callable[[], Any] = discover_sinks,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self.cfg = cfg
        self.home = home
        self.stop_event = stop_event or threading.Event()
        self.state_path = os.path.join(home, STATE_FILE)
        self._stream_probe = stream_probe
        self._sink_discovery = sink_discovery
        self._link_probe = link_probe or (lambda: link_present(cfg.bt_probe_path))

        stations = load_stations(os.path.join(home, STATIONS_FILE))
        persisted = load_persisted_state(self.state_path)
        self.start_index = persisted.station_index
        self.state = RadioState(
            stations,
            volume_analog=persisted.volume_analog,
            volume_bluetooth=persisted.volume_bluetooth,
        )

        self.display = display or self._create_display()
        self.write_debouncer = Debouncer(SAVE_DEBOUNCE_S, "state-write")
        self.button_debouncer = Debouncer(cfg.debounce_ms / 1000.0, "buttons")
        self.backlight_debouncer = (
            Debouncer(cfg.backlight_off_time_s, "backlight")
            if cfg.backlight_auto_off
            else None
        )
        self.backlight = Backlight(self.display, self.backlight_debouncer)

        self.renderer = StatusRenderer(
            self.display,
            self.state,
            camel_case=cfg.camel_case,
            noise_removal=cfg.remove_noise,
            scroll_station=cfg.scroll_station,
            wide_threshold=cfg.wide_threshold,
        )
        self.manager = PlaybackManager(
            self.state,
            self.renderer,
            command_template=cfg.player_command,
            schedule_save=self.schedule_save,
            spawn=spawn,
        )
        self.renderer.is_current_stream = self.manager.is_current_stream
        self.reader = StatusReader(self.manager.streams, self.renderer.render, echo=cfg.debug)

        self._gpio: Optional[GpioButtons] = None
        if pressed is None:
            self._gpio = GpioButtons(cfg.pins)
            pressed = self._gpio.pressed
        self.poller = InputPoller(
            cfg.pins,
            pressed,
            {
                Action.NEXT_STATION: self.manager.next_station,
                Action.PREVIOUS_STATION: self.manager.previous_station,
                Action.VOLUME_UP: self.manager.volume_up,
                Action.VOLUME_DOWN: self.manager.volume_down,
                Action.TOGGLE_MUTE: self.manager.toggle_mute,
            },
            self.button_debouncer,
            backlight=self.backlight,
            is_muted=lambda: self.state.muted,
            interval_ms=cfg.poll_interval_ms,
        )
        self.watchdog: Optional[ConnectivityWatchdog] = None
        self._api_thread: Optional[threading.Thread] = None

    def _create_display(self) -> QueuedDisplay:
        try:
            return create_display(
                self.cfg.display_type,
                scroll_speed_ms=self.cfg.scroll_speed_ms,
                scroll_header=self.cfg.scroll_station,
                init_delay_s=self.cfg.lcd_delay_s,
                i2c_bus=self.cfg.i2c_bus,
                lcd_address=self.cfg.lcd_address,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Couldn't initialize display: %s; using virtual display", exc)
            return VirtualDisplay(scroll_speed_ms=self.cfg.scroll_speed_ms)

    # ---------------------- persistence ----------------------

    def schedule_save(self) -> None:
        self.write_debouncer.arm(self.save_state)

    def save_state(self) -> None:
        save_persisted_state(self.state_path, self.state.persisted())

    # ---------------------- lifecycle ----------------------

    def _discover(self) -> None:
        sinks, connected = self._sink_discovery()
        with self.state.station_lock:
            self.state.sinks = list(sinks)
            self.state.connected = bool(connected)

    def start(self) -> bool:
        """Bring everything up; False when stopped before the first station."""
        self.renderer.ip_address = local_ip_address()
        self.backlight.wake()
        self.reader.start()
        self.poller.start()

        discovery: Optional[threading.Thread] = None
        if self.cfg.bluetooth_enabled:
            discovery = threading.Thread(target=self._discover, name="BtDiscovery", daemon=True)
            discovery.start()

        first_url = self.state.stations[0].url
        if not wait_for_stream(first_url, self.stop_event, probe=self._stream_probe):
            return False
        if discovery is not None:
            discovery.join()
        self.manager.switch_to(self.start_index)

        if self.cfg.bluetooth_enabled:
            self.watchdog = ConnectivityWatchdog(
                self.manager,
                self.state,
                probe=self._link_probe,
                interval_s=self.cfg.bt_interval_s,
            )
            self.watchdog.start()
        if self.cfg.api_port:
            self._start_api()
        return True

    def _start_api(self) -> None:
        try:
            from web import create_app, run_app

            logging.getLogger("werkzeug").setLevel(logging.WARNING)
        except Exception as exc:  # noqa: BLE001
            logger.error("API requested but Flask is not available: %s", exc)
            return
        app = create_app(self.state, self.manager)
        self._api_thread = threading.Thread(
            target=run_app,
            args=(app, self.cfg.api_host, self.cfg.api_port),
            name="API",
            daemon=True,
        )
        self._api_thread.start()
        logger.info("API server started at http://%s:%s", self.cfg.api_host, self.cfg.api_port)

    def run(self) -> None:
        """Start and block until the stop event is set, then shut down."""
        try:
            self.start()
            self.stop_event.wait()
        finally:
            self.stop()

    def stop(self) -> None:
        """Tear down in reverse dependency order."""
        self.stop_event.set()
        self.poller.stop()
        self.button_debouncer.cancel()
        if self.watchdog is not None:
            self.watchdog.stop()
        self.manager.shutdown()
        self.reader.join(timeout=2)
        self.write_debouncer.flush()
        self.backlight.cancel()
        self.display.close()
        if self._gpio is not None:
            self._gpio.close()
            self._gpio = None
        logger.info("piradio stopped")


# ---------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Internet radio with buttons and LCD/OLED")
    parser.add_argument("--config", type=str, default=None, help="YAML config file")
    parser.add_argument(
        "--camelCase", action="store_true", default=None, help="set to format title"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="set to output mplayer info on the log",
    )
    parser.add_argument(
        "--lcdDelay", type=int, default=None, help="initial delay for LCD in s (1s...10s)"
    )
    parser.add_argument(
        "--noise", action="store_true", default=None, help="set to remove noise from title"
    )
    parser.add_argument("--oled", action="store_true", help="set to use OLED Display")
    parser.add_argument(
        "--display",
        choices=["lcd", "oled", "virtual"],
        default=None,
        help="display backend (overrides --oled)",
    )
    parser.add_argument(
        "--noBluetooth", action="store_true", help="set to only use analog output"
    )
    parser.add_argument(
        "--backlightOff",
        action="store_true",
        default=None,
        help="set to switch off backlight after some time",
    )
    parser.add_argument(
        "--backlightOffTime",
        type=int,
        default=None,
        help="backlight switch off time in s (3s...3600s)",
    )
    parser.add_argument(
        "--scrollSpeed", type=int, default=None, help="scroll speed in ms (100ms...10000ms)"
    )
    parser.add_argument(
        "--scrollStation",
        action="store_true",
        default=None,
        help="set to scroll station names",
    )
    parser.add_argument(
        "--api-port", type=int, default=None, help="Start the status API on this port (0 disables)"
    )
    parser.add_argument("--api-host", type=str, default=None, help="Host/interface for the API")
    parser.add_argument(
        "--log-level", type=str, default=None, help="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    return parser


def main() -> None:
    """CLI entry point for the radio."""
    args = build_parser().parse_args()

    if args.log_level:
        level = _resolve_log_level(args.log_level)
        logging.getLogger().setLevel(level)
        logger.setLevel(level)

    os.makedirs(HOME_PATH, exist_ok=True)
    try:
        file_handler = logging.FileHandler(os.path.join(HOME_PATH, LOG_FILE), encoding="utf-8")
    except OSError as exc:
        logger.warning("File logging disabled: %s", exc)
    else:
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(file_handler)

    logger.info("Starting piradio...")
    cfg = load_config(args.config or os.path.join(HOME_PATH, CONFIG_FILE))
    cfg.apply_args(args)

    stop_requested = threading.Event()

    def _handle_stop(signum: int, _frame: object) -> None:
        try:
            name = signal.Signals(signum).name
        except Exception:
            name = str(signum)
        logger.warning("Stop requested (%s)", name)
        stop_requested.set()

    for sig_name in ("SIGTERM", "SIGINT", "SIGHUP", "SIGQUIT"):
        sig = getattr(signal, sig_name, None)
        if sig is None:
            continue
        try:
            signal.signal(sig, _handle_stop)
        except Exception:
            pass

    try:
        app = RadioApp(cfg, HOME_PATH, stop_event=stop_requested)
    except RuntimeError as exc:
        logger.critical("Startup failed: %s", exc)
        sys.exit(1)
    app.run()


if __name__ == "__main__":
    main()
