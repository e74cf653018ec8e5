"""
GPIO button polling.

Buttons are wired to ground with the internal pull-up enabled, so a LOW
level means pressed. Each poll dispatches the first pressed button through
the shared button debouncer.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Dict, Mapping, Optional, TYPE_CHECKING

# RPi backend (default on Raspberry Pi)
try:
    import RPi.GPIO as GPIO  # type: ignore[import-not-found]
except Exception:  # noqa: BLE001
    GPIO = None  # type: ignore[assignment]

from debouncer import Debouncer

if TYPE_CHECKING:
    from display import Backlight

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 70
DEFAULT_DEBOUNCE_MS = 100


class Action(Enum):
    NEXT_STATION = "next"
    PREVIOUS_STATION = "previous"
    VOLUME_UP = "volume_up"
    VOLUME_DOWN = "volume_down"
    TOGGLE_MUTE = "mute"


# Priority order: the first pressed button in this order wins a poll.
ACTION_ORDER = (
    Action.NEXT_STATION,
    Action.PREVIOUS_STATION,
    Action.VOLUME_UP,
    Action.VOLUME_DOWN,
    Action.TOGGLE_MUTE,
)

DEFAULT_PINS: Dict[Action, int] = {
    Action.NEXT_STATION: 5,
    Action.PREVIOUS_STATION: 6,
    Action.VOLUME_UP: 19,
    Action.VOLUME_DOWN: 26,
    Action.TOGGLE_MUTE: 16,
}

VOLUME_ACTIONS = frozenset({Action.VOLUME_UP, Action.VOLUME_DOWN})


class GpioButtons:
    """RPi.GPIO inputs with pull-ups; ``pressed(pin)`` is True on LOW."""

    def __init__(self, pins: Mapping[Action, int]) -> None:
        if GPIO is None:
            raise RuntimeError("RPi.GPIO is required for buttons (pip install RPi.GPIO)")
        GPIO.setwarnings(False)
        GPIO.setmode(GPIO.BCM)
        for action, pin in pins.items():
            GPIO.setup(pin, GPIO.IN, pull_up_down=GPIO.PUD_UP)
            logger.debug("Button %s on GPIO%d", action.value, pin)

    def pressed(self, pin: int) -> bool:
        return GPIO.input(pin) == GPIO.LOW

    def close(self) -> None:
        try:
            GPIO.cleanup()
        except Exception as exc:  # noqa: BLE001
            logger.debug("GPIO cleanup failed: %s", exc)


class InputPoller:
    """Sample the buttons at a fixed interval and dispatch debounced actions."""

    def __init__(
        self,
        pins: Mapping[Action, int],
        pressed: Callable[[int], bool],
        handlers: Mapping[Action, Callable[[], object]],
        debouncer: Debouncer,
        *,
        backlight: Optional["Backlight"] = None,
        is_muted: Callable[[], bool] = lambda: False,
        interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    ) -> None:
        self._pins = dict(pins)
        self._pressed = pressed
        self._handlers = dict(handlers)
        self._debouncer = debouncer
        self._backlight = backlight
        self._is_muted = is_muted
        self._interval_s = max(1, int(interval_ms)) / 1000.0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="InputPoller", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=1)
        self._thread = None

    def poll_once(self) -> Optional[Action]:
        """Sample every button once; returns the action taken, if any."""
        for action in ACTION_ORDER:
            pin = self._pins.get(action)
            if pin is None or not self._pressed(pin):
                continue
            handler = self._handlers.get(action)
            if handler is not None and not (action in VOLUME_ACTIONS and self._is_muted()):
                self._debouncer.arm(handler)
            if self._backlight is not None:
                self._backlight.wake()
            return action
        return None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:  # noqa: BLE001
                logger.exception("Button poll failed")
            if self._stop.wait(self._interval_s):
                break
