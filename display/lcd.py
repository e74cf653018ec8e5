"""
HD44780 20x4 character LCD behind a PCF8574 I2C backpack.

Only the consumer thread of ``QueuedDisplay`` calls into the bus.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

try:
    import smbus2  # type: ignore[import-not-found]
except Exception:  # noqa: BLE001
    smbus2 = None  # type: ignore[assignment]

from . import DEFAULT_SCROLL_SPEED_MS, QueuedDisplay

logger = logging.getLogger(__name__)

NUM_CHARS = 20
NUM_LINES = 4
LINE_OFFSETS = (0x00, 0x40, 0x14, 0x54)

# PCF8574 bit layout
_RS = 0x01
_EN = 0x04
_BACKLIGHT = 0x08

# HD44780 instructions
_CMD_CLEAR = 0x01
_CMD_ENTRY_MODE = 0x06
_CMD_DISPLAY_ON = 0x0C
_CMD_FUNCTION_4BIT_2LINE = 0x28
_CMD_SET_DDRAM = 0x80


class LcdDisplay(QueuedDisplay):
    """Queued HD44780 display; line 0 gets an ellipsis unless it may scroll."""

    def __init__(
        self,
        *,
        scroll_speed_ms: int = DEFAULT_SCROLL_SPEED_MS,
        scroll_header: bool = False,
        init_delay_s: float = 3.0,
        i2c_bus: int = 1,
        address: int = 0x27,
        bus: Optional[Any] = None,
    ) -> None:
        super().__init__(NUM_CHARS, NUM_LINES, scroll_speed_ms)
        self._address = address
        self._scroll_header = scroll_header
        self._backlight_bits = _BACKLIGHT
        if bus is None:
            if smbus2 is None:
                raise RuntimeError(
                    "smbus2 is required for the LCD backend (pip install smbus2)"
                )
            logger.info("LCD initializing on bus %d addr 0x%02X", i2c_bus, address)
            bus = smbus2.SMBus(i2c_bus)
        self._bus = bus
        self._init_controller()
        if init_delay_s > 0:
            time.sleep(init_delay_s)
        self.start()
        self.clear()
        self.backlight(True)

    # ---------------------- low level ----------------------

    def _write_byte(self, value: int) -> None:
        self._bus.write_byte(self._address, value | self._backlight_bits)

    def _pulse(self, value: int) -> None:
        self._write_byte(value | _EN)
        time.sleep(0.0005)
        self._write_byte(value & ~_EN)
        time.sleep(0.0001)

    def _write4(self, value: int) -> None:
        self._write_byte(value)
        self._pulse(value)

    def _send(self, value: int, mode: int = 0) -> None:
        self._write4(mode | (value & 0xF0))
        self._write4(mode | ((value << 4) & 0xF0))

    def _init_controller(self) -> None:
        # Datasheet wake-up: three times 8-bit mode, then switch to 4-bit.
        for _ in range(3):
            self._write4(0x30)
            time.sleep(0.005)
        self._write4(0x20)
        self._send(_CMD_FUNCTION_4BIT_2LINE)
        self._send(_CMD_DISPLAY_ON)
        self._send(_CMD_CLEAR)
        time.sleep(0.002)
        self._send(_CMD_ENTRY_MODE)

    def _fit(self, line: int, text: str) -> str:
        if len(text) > NUM_CHARS and line == 0 and not self._scroll_header:
            return text[: NUM_CHARS - 3] + "..."
        return text[:NUM_CHARS].ljust(NUM_CHARS)

    # ---------------------- command hooks ----------------------

    def _apply_clear(self) -> None:
        self._send(_CMD_CLEAR)
        time.sleep(0.1)

    def _apply_backlight(self, on: bool) -> None:
        self._backlight_bits = _BACKLIGHT if on else 0
        self._write_byte(0)

    def _apply_clear_line(self, line: int) -> None:
        # Every print pads the whole line, so there is nothing to erase first.
        return None

    def _apply_print(self, line: int, text: str) -> None:
        self._send(_CMD_SET_DDRAM | LINE_OFFSETS[line])
        for ch in self._fit(line, text):
            self._send(ord(ch) if ord(ch) < 0x80 else ord("?"), _RS)

    def _close_device(self) -> None:
        close = getattr(self._bus, "close", None)
        if callable(close):
            close()
