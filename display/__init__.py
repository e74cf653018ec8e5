"""
Character display abstraction with a single-writer command queue.

Producers (button poller, status renderer, scroll tickers, API) enqueue
``DisplayCommand`` records and return at once; one consumer thread applies
them to the device strictly in submission order.
"""

from __future__ import annotations

import logging
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from debouncer import Debouncer

logger = logging.getLogger(__name__)

SCROLL_GAP = "     "
DEFAULT_SCROLL_SPEED_MS = 500


class Display(ABC):
    """Capabilities the radio needs from a text display."""

    @property
    @abstractmethod
    def chars_per_line(self) -> int: ...

    @property
    @abstractmethod
    def num_lines(self) -> int: ...

    @abstractmethod
    def clear(self) -> None: ...

    @abstractmethod
    def backlight(self, on: bool) -> None: ...

    @abstractmethod
    def clear_line(self, line: int) -> None: ...

    @abstractmethod
    def print_line(self, line: int, text: str, scroll: bool = False) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


class CommandKind(Enum):
    CLEAR = "clear"
    BACKLIGHT = "backlight"
    CLEAR_LINE = "clear_line"
    PRINT_LINE = "print_line"
    SYNC = "sync"


@dataclass(frozen=True)
class DisplayCommand:
    kind: CommandKind
    line: int = 0
    text: str = ""
    on: bool = False
    done: Optional[threading.Event] = field(default=None, compare=False, repr=False)


class ScrollTicker:
    """Periodically queue a rotating window of ``text`` for one line."""

    def __init__(
        self,
        line: int,
        text: str,
        width: int,
        interval_s: float,
        submit: Callable[[DisplayCommand], bool],
    ) -> None:
        self.line = line
        self.text = text
        self._width = width
        self._interval_s = interval_s
        self._submit = submit
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"ScrollTicker-{line}", daemon=True
        )

    @property
    def active(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        """Stop the ticker and wait until it can no longer queue output."""
        self._stop.set()
        if self._thread is threading.current_thread():
            return
        if self._thread.is_alive():
            self._thread.join()

    def _run(self) -> None:
        window = self.text + SCROLL_GAP
        while True:
            self._submit(
                DisplayCommand(CommandKind.PRINT_LINE, self.line, window[: self._width])
            )
            if self._stop.wait(self._interval_s):
                break
            window = window[1:] + window[:1]


class QueuedDisplay(Display):
    """Base class for devices driven through the command queue.

    Subclasses implement the ``_apply_*`` hooks, which only ever run on the
    consumer thread, and call ``start()`` once the device is ready.
    """

    def __init__(
        self,
        chars_per_line: int,
        num_lines: int = 4,
        scroll_speed_ms: int = DEFAULT_SCROLL_SPEED_MS,
    ) -> None:
        self._chars_per_line = chars_per_line
        self._num_lines = num_lines
        self._scroll_interval_s = max(1, int(scroll_speed_ms)) / 1000.0
        self._queue: "queue.Queue[Optional[DisplayCommand]]" = queue.Queue()
        self._tickers: Dict[int, ScrollTicker] = {}
        self._last_text: List[str] = [""] * num_lines
        self._ticker_lock = threading.Lock()
        self._closed = threading.Event()
        self._consumer = threading.Thread(
            target=self._consume, name="DisplayQueue", daemon=True
        )

    # ---------------------- capability API ----------------------

    @property
    def chars_per_line(self) -> int:
        return self._chars_per_line

    @property
    def num_lines(self) -> int:
        return self._num_lines

    def start(self) -> None:
        if not self._consumer.is_alive():
            self._consumer.start()

    def clear(self) -> None:
        self._enqueue(DisplayCommand(CommandKind.CLEAR))

    def backlight(self, on: bool) -> None:
        self._enqueue(DisplayCommand(CommandKind.BACKLIGHT, on=bool(on)))

    def clear_line(self, line: int) -> None:
        if not self._valid_line(line):
            return
        self._enqueue(DisplayCommand(CommandKind.CLEAR_LINE, line))

    def print_line(self, line: int, text: str, scroll: bool = False) -> None:
        if not self._valid_line(line):
            return
        with self._ticker_lock:
            self._stop_ticker_locked(line)
            self._last_text[line] = text
            if scroll and len(text) > self._chars_per_line:
                if self._closed.is_set():
                    return
                ticker = ScrollTicker(
                    line,
                    text,
                    self._chars_per_line,
                    self._scroll_interval_s,
                    self._enqueue,
                )
                self._tickers[line] = ticker
                ticker.start()
                return
            self._enqueue(DisplayCommand(CommandKind.PRINT_LINE, line, text))

    def last_text(self, line: int) -> str:
        """Return the text most recently requested for ``line``."""
        with self._ticker_lock:
            return self._last_text[line]

    def scrolling(self, line: int) -> bool:
        with self._ticker_lock:
            ticker = self._tickers.get(line)
            return ticker is not None and ticker.active

    def sync(self, timeout: Optional[float] = None) -> bool:
        """Block until every command queued so far has been applied."""
        done = threading.Event()
        if not self._enqueue(DisplayCommand(CommandKind.SYNC, done=done)):
            return False
        return done.wait(timeout)

    def close(self) -> None:
        """Stop all tickers, drain the queue and release the device."""
        with self._ticker_lock:
            if self._closed.is_set():
                return
            for line in list(self._tickers):
                self._stop_ticker_locked(line)
            self._closed.set()
        self._queue.put(None)
        if self._consumer.is_alive():
            self._consumer.join(timeout=5)
        try:
            self._close_device()
        except Exception as exc:  # noqa: BLE001
            logger.error("Display close failed: %s", exc)

    # ---------------------- internals ----------------------

    def _valid_line(self, line: int) -> bool:
        if 0 <= line < self._num_lines:
            return True
        logger.warning("Ignoring display line %d (device has %d)", line, self._num_lines)
        return False

    def _stop_ticker_locked(self, line: int) -> None:
        ticker = self._tickers.pop(line, None)
        if ticker is not None:
            ticker.stop()

    def _enqueue(self, cmd: DisplayCommand) -> bool:
        if self._closed.is_set():
            logger.debug("Display closed; dropping %s", cmd.kind.value)
            return False
        self._queue.put(cmd)
        return True

    def _consume(self) -> None:
        while True:
            cmd = self._queue.get()
            if cmd is None:
                break
            try:
                self._apply(cmd)
            except Exception as exc:  # noqa: BLE001
                logger.error("Display command %s failed: %s", cmd.kind.value, exc)

    def _apply(self, cmd: DisplayCommand) -> None:
        if cmd.kind is CommandKind.CLEAR:
            self._apply_clear()
        elif cmd.kind is CommandKind.BACKLIGHT:
            self._apply_backlight(cmd.on)
        elif cmd.kind is CommandKind.CLEAR_LINE:
            self._apply_clear_line(cmd.line)
        elif cmd.kind is CommandKind.PRINT_LINE:
            self._apply_print(cmd.line, cmd.text)
        elif cmd.kind is CommandKind.SYNC and cmd.done is not None:
            cmd.done.set()

    @abstractmethod
    def _apply_clear(self) -> None: ...

    @abstractmethod
    def _apply_backlight(self, on: bool) -> None: ...

    @abstractmethod
    def _apply_clear_line(self, line: int) -> None: ...

    @abstractmethod
    def _apply_print(self, line: int, text: str) -> None: ...

    def _close_device(self) -> None:
        return None


class Backlight:
    """Switch the backlight on and optionally off again after a quiet period."""

    def __init__(self, display: Display, off_timer: Optional[Debouncer] = None) -> None:
        self._display = display
        self._off_timer = off_timer

    def wake(self) -> None:
        self._display.backlight(True)
        if self._off_timer is not None:
            self._off_timer.arm(self._switch_off)

    def cancel(self) -> None:
        if self._off_timer is not None:
            self._off_timer.cancel()

    def _switch_off(self) -> None:
        self._display.backlight(False)


def create_display(
    kind: str,
    *,
    scroll_speed_ms: int = DEFAULT_SCROLL_SPEED_MS,
    scroll_header: bool = False,
    init_delay_s: float = 3.0,
    i2c_bus: int = 1,
    lcd_address: int = 0x27,
) -> QueuedDisplay:
    """Instantiate the requested backend: ``lcd``, ``oled`` or ``virtual``."""
    kind = (kind or "lcd").strip().lower()
    if kind == "oled":
        from .oled import OledDisplay

        return OledDisplay(scroll_speed_ms=scroll_speed_ms, i2c_bus=i2c_bus)
    if kind == "virtual":
        from .virtual import VirtualDisplay

        return VirtualDisplay(scroll_speed_ms=scroll_speed_ms)
    if kind != "lcd":
        raise ValueError(f"unknown display type: {kind}")
    from .lcd import LcdDisplay

    return LcdDisplay(
        scroll_speed_ms=scroll_speed_ms,
        scroll_header=scroll_header,
        init_delay_s=init_delay_s,
        i2c_bus=i2c_bus,
        address=lcd_address,
    )
