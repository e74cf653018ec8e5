"""In-memory display used for headless runs and tests."""

from __future__ import annotations

import logging
import threading
from typing import List

from . import DEFAULT_SCROLL_SPEED_MS, CommandKind, DisplayCommand, QueuedDisplay

logger = logging.getLogger(__name__)


class VirtualDisplay(QueuedDisplay):
    """Records every applied command and mirrors the visible lines."""

    def __init__(
        self,
        chars_per_line: int = 20,
        num_lines: int = 4,
        scroll_speed_ms: int = DEFAULT_SCROLL_SPEED_MS,
        autostart: bool = True,
    ) -> None:
        super().__init__(chars_per_line, num_lines, scroll_speed_ms)
        self._record_lock = threading.Lock()
        self.applied: List[DisplayCommand] = []
        self.lines: List[str] = [""] * num_lines
        self.backlight_on = False
        self.closed = False
        if autostart:
            self.start()

    def history(self) -> List[DisplayCommand]:
        with self._record_lock:
            return list(self.applied)

    def prints(self, line: int) -> List[str]:
        """Texts applied to ``line`` in order."""
        return [
            c.text
            for c in self.history()
            if c.kind is CommandKind.PRINT_LINE and c.line == line
        ]

    def _record(self, cmd: DisplayCommand) -> None:
        with self._record_lock:
            self.applied.append(cmd)

    def _apply_clear(self) -> None:
        self.lines = [""] * self.num_lines
        self._record(DisplayCommand(CommandKind.CLEAR))

    def _apply_backlight(self, on: bool) -> None:
        self.backlight_on = on
        self._record(DisplayCommand(CommandKind.BACKLIGHT, on=on))

    def _apply_clear_line(self, line: int) -> None:
        self.lines[line] = ""
        self._record(DisplayCommand(CommandKind.CLEAR_LINE, line))

    def _apply_print(self, line: int, text: str) -> None:
        self.lines[line] = text[: self.chars_per_line]
        self._record(DisplayCommand(CommandKind.PRINT_LINE, line, text))
        logger.debug("display[%d] %r", line, self.lines[line])

    def _close_device(self) -> None:
        self.closed = True
