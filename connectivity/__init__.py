"""
Bluetooth audio sink discovery and link watchdog.

Discovery asks ``bluetoothctl`` for paired devices that expose an Audio
Sink. The watchdog polls link presence (an input event node created by
BlueZ for the connected device) and restarts playback on every edge.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from typing import Callable, List, Optional, Sequence, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from playback import PlaybackManager, RadioState

logger = logging.getLogger(__name__)

DEFAULT_PROBE_PATH = "/dev/input/event0"
DEFAULT_INTERVAL_S = 3.0
BLUETOOTHCTL_TIMEOUT_S = 15.0

Runner = Callable[[Sequence[str]], Tuple[int, str]]


def run_command(argv: Sequence[str]) -> Tuple[int, str]:
    """Run a short helper command; returns (exit code, stdout)."""
    try:
        proc = subprocess.run(
            list(argv),
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            timeout=BLUETOOTHCTL_TIMEOUT_S,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.error("%s failed: %s", argv[0] if argv else "?", exc)
        return -1, ""
    return proc.returncode, proc.stdout.decode("utf-8", "replace")


def discover_sinks(run: Runner = run_command) -> Tuple[List[str], bool]:
    """Return paired audio sink addresses (in listing order) and whether one is connected."""
    code, out = run(["bluetoothctl", "devices"])
    if code != 0:
        logger.error("bluetoothctl devices failed (exit %s)", code)
        return [], False
    sinks: List[str] = []
    connected = False
    logger.info("BT Devices paired:")
    for row in out.splitlines():
        parts = row.split(" ")
        if len(parts) < 2:
            continue
        mac = parts[1]
        info_code, info = run(["bluetoothctl", "info", mac])
        if info_code != 0 or "Audio Sink" not in info:
            continue
        sinks.append(mac)
        logger.info("%s", mac)
        if "Connected: yes" in info:
            logger.info("BT connected to %s", mac)
            connected = True
    return sinks, connected


def connect_sink(mac: str, run: Runner = run_command) -> bool:
    code, _out = run(["bluetoothctl", "connect", mac])
    return code == 0


def link_present(path: str = DEFAULT_PROBE_PATH) -> bool:
    return os.path.exists(path)


class ConnectivityWatchdog:
    """Edge-triggered restart of playback on Bluetooth connect/disconnect."""

    def __init__(
        self,
        manager: "PlaybackManager",
        state: "RadioState",
        *,
        probe: Optional[Callable[[], bool]] = None,
        connect: Callable[[str], bool] = connect_sink,
        interval_s: float = DEFAULT_INTERVAL_S,
    ) -> None:
        self._manager = manager
        self._state = state
        self._probe = probe or link_present
        self._connect = connect
        self._interval_s = interval_s
        self._last: Optional[bool] = state.connected
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="ConnectivityWatchdog", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self._interval_s + 1)
        self._thread = None

    def poll_once(self) -> bool:
        """Observe the link once. Returns True when playback was restarted."""
        connected = self._probe()
        restarted = False
        if connected != self._last:
            logger.info(
                "Bluetooth %s; restarting player",
                "connected" if connected else "disconnected",
            )
            self._manager.restart(connected=connected)
            restarted = True
        self._last = connected
        if not connected:
            self._reconnect()
        return restarted

    def _reconnect(self) -> None:
        for mac in list(self._state.sinks):
            if self._stop.is_set():
                return
            if self._connect(mac):
                logger.info("Success with device %s", mac)
                return

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:  # noqa: BLE001
                logger.exception("Connectivity poll failed")
            if self._stop.wait(self._interval_s):
                break
