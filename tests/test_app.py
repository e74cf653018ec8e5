from pathlib import Path
import io
import subprocess
import sys
import threading
from typing import Any, List

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

pytest.importorskip("yaml")
pytest.importorskip("requests")

import piradio
from buttons import Action
from display.virtual import VirtualDisplay


# ---------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------


def test_defaults_without_config_file(tmp_path: Path):
    cfg = piradio.load_config(str(tmp_path / "missing.yaml"))
    assert cfg.display_type == "lcd"
    assert cfg.scroll_speed_ms == 500
    assert cfg.lcd_delay_s == 3
    assert cfg.backlight_auto_off is False
    assert cfg.bluetooth_enabled is True
    assert cfg.pins[Action.NEXT_STATION] == 5
    assert cfg.api_port == 0


def test_yaml_values_are_parsed_and_clamped(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "display:\n"
        "  type: oled\n"
        "  scroll_speed_ms: 20\n"
        "  lcd_delay_s: 99\n"
        "  lcd_address: '0x3f'\n"
        "backlight:\n"
        "  auto_off: yes\n"
        "  off_time_s: 1\n"
        "buttons:\n"
        "  next: 17\n"
        "text:\n"
        "  camel_case: 'on'\n"
        "api:\n"
        "  port: 8080\n",
        encoding="utf-8",
    )
    cfg = piradio.load_config(str(path))
    assert cfg.display_type == "oled"
    assert cfg.scroll_speed_ms == 100
    assert cfg.lcd_delay_s == 10
    assert cfg.lcd_address == 0x3F
    assert cfg.backlight_auto_off is True
    assert cfg.backlight_off_time_s == 3
    assert cfg.pins[Action.NEXT_STATION] == 17
    assert cfg.camel_case is True
    assert cfg.api_port == 8080


def test_invalid_yaml_aborts(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text("display: [unclosed\n", encoding="utf-8")
    with pytest.raises(SystemExit):
        piradio.load_config(str(path))


@pytest.mark.parametrize(
    "raw",
    [
        {"display": {"type": "crt"}},
        {"display": "lcd"},
        {"buttons": {"mute": 40}},
    ],
)
def test_invalid_values_abort(raw):
    with pytest.raises(SystemExit):
        piradio.AppConfig(raw)


def test_command_line_overrides_config():
    cfg = piradio.AppConfig({"text": {"camel_case": False}, "display": {"scroll_speed_ms": 800}})
    args = piradio.build_parser().parse_args(
        [
            "--camelCase",
            "--noise",
            "--oled",
            "--noBluetooth",
            "--backlightOff",
            "--backlightOffTime",
            "5000",
            "--scrollSpeed",
            "250",
            "--lcdDelay",
            "0",
        ]
    )
    cfg.apply_args(args)
    assert cfg.camel_case is True
    assert cfg.remove_noise is True
    assert cfg.display_type == "oled"
    assert cfg.bluetooth_enabled is False
    assert cfg.backlight_auto_off is True
    assert cfg.backlight_off_time_s == 3600
    assert cfg.scroll_speed_ms == 250
    assert cfg.lcd_delay_s == 1


def test_absent_flags_keep_config_values():
    cfg = piradio.AppConfig({"text": {"camel_case": True}, "display": {"scroll_station": True}})
    cfg.apply_args(piradio.build_parser().parse_args([]))
    assert cfg.camel_case is True
    assert cfg.scroll_station is True
    assert cfg.display_type == "lcd"


def test_resolve_log_level():
    assert piradio._resolve_log_level("debug") == 10
    assert piradio._resolve_log_level("30") == 30
    assert piradio._resolve_log_level("") == 20
    assert piradio._resolve_log_level("bogus") == 20


@pytest.mark.parametrize(
    "scalar, expected",
    [
        ("yes", True),
        ("'on'", True),
        ("1", True),
        ("-1", True),
        ("'TRUE'", True),
        ("no", False),
        ("'off'", False),
        ("0", False),
        ("0.0", False),
        ("'  false  '", False),
    ],
)
def test_yaml_flag_values(tmp_path: Path, scalar: str, expected: bool):
    path = tmp_path / "config.yaml"
    path.write_text(f"text:\n  remove_noise: {scalar}\n", encoding="utf-8")
    assert piradio.load_config(str(path)).remove_noise is expected


@pytest.mark.parametrize("scalar", ["maybe", "[1, 2]", "~"])
def test_unrecognized_flag_values_keep_default(tmp_path: Path, scalar: str):
    path = tmp_path / "config.yaml"
    path.write_text(
        f"bluetooth:\n  enabled: {scalar}\ntext:\n  camel_case: {scalar}\n",
        encoding="utf-8",
    )
    cfg = piradio.load_config(str(path))
    assert cfg.bluetooth_enabled is True
    assert cfg.camel_case is False


def test_numeric_values_accept_strings_and_fall_back(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "display:\n"
        "  i2c_bus: '3'\n"
        "  lcd_address: 0x3f\n"
        "  wide_threshold: wide\n"
        "bluetooth:\n"
        "  interval_s: '1.5'\n"
        "buttons:\n"
        "  debounce_ms: fast\n",
        encoding="utf-8",
    )
    cfg = piradio.load_config(str(path))
    assert cfg.i2c_bus == 3
    assert cfg.lcd_address == 0x3F
    assert cfg.wide_threshold == 20
    assert cfg.bt_interval_s == 1.5
    assert cfg.debounce_ms == 100


# ---------------------------------------------------------------------
# Stream liveness
# ---------------------------------------------------------------------


def test_wait_for_stream_retries_until_reachable():
    answers = [False, False, True]
    probed: List[str] = []

    def probe(url: str) -> bool:
        probed.append(url)
        return answers.pop(0)

    assert piradio.wait_for_stream("http://x", threading.Event(), interval_s=0.01, probe=probe)
    assert probed == ["http://x"] * 3


def test_wait_for_stream_gives_up_when_stopped():
    stop = threading.Event()
    stop.set()
    assert piradio.wait_for_stream("http://x", stop, probe=lambda url: True) is False


def test_stream_reachable_handles_request_errors(monkeypatch: pytest.MonkeyPatch):
    def boom(*_: Any, **__: Any):
        raise piradio.requests.ConnectionError("down")

    monkeypatch.setattr(piradio.requests, "get", boom)
    assert piradio.stream_reachable("http://x") is False


# ---------------------------------------------------------------------
# Application wiring
# ---------------------------------------------------------------------


class Proc:
    def __init__(self, output: bytes) -> None:
        self.pid = 4242
        self.stdin = io.BytesIO()
        self.stdout = io.BytesIO(output)

    def wait(self, timeout: Any = None) -> int:
        return 0

    def kill(self) -> None:
        return None


class Spawner:
    def __init__(self) -> None:
        self.argvs: List[List[str]] = []

    def __call__(self, argv: List[str], **kwargs: Any) -> Proc:
        assert kwargs["stdin"] is subprocess.PIPE
        self.argvs.append(list(argv))
        return Proc(b"Name: Test FM\nICY Info: StreamTitle='A - B';\n")


@pytest.fixture()
def app_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(piradio, "local_ip_address", lambda: "10.0.0.5")
    (tmp_path / "last_values").write_text("2\n50\n30", encoding="utf-8")
    (tmp_path / "stations").write_text(
        "One,http://one.example\nTwo,http://two.example\n", encoding="utf-8"
    )
    cfg = piradio.AppConfig({"bluetooth": {"enabled": False}})
    return tmp_path, cfg


def test_app_starts_persisted_station_and_saves_on_stop(app_env):
    home, cfg = app_env
    display = VirtualDisplay()
    spawner = Spawner()
    app = piradio.RadioApp(
        cfg,
        str(home),
        display=display,
        spawn=spawner,
        pressed=lambda pin: False,
        stream_probe=lambda url: True,
    )
    assert app.start() is True
    assert app.state.station_index == 1
    assert spawner.argvs == [["mplayer", "-quiet", "-volume", "50", "http://two.example"]]

    app.manager.next_station()
    app.stop()

    assert app.state.station_index == 0
    assert (home / "last_values").read_text(encoding="utf-8") == "1\n50\n30"
    assert display.closed is True
    assert "-> 2 Two" in display.prints(0)


def test_app_start_aborts_when_stopped_before_stream_is_up(app_env):
    home, cfg = app_env
    stop = threading.Event()
    spawner = Spawner()
    app = piradio.RadioApp(
        cfg,
        str(home),
        display=VirtualDisplay(),
        spawn=spawner,
        pressed=lambda pin: False,
        stream_probe=lambda url: False,
        stop_event=stop,
    )
    stop.set()
    assert app.start() is False
    app.stop()
    assert spawner.argvs == []


def test_app_falls_back_to_virtual_display(app_env, monkeypatch: pytest.MonkeyPatch):
    home, cfg = app_env

    def broken(*_: Any, **__: Any):
        raise RuntimeError("smbus2 is required")

    monkeypatch.setattr(piradio, "create_display", broken)
    app = piradio.RadioApp(cfg, str(home), spawn=Spawner(), pressed=lambda pin: False)
    try:
        assert isinstance(app.display, VirtualDisplay)
    finally:
        app.stop()
