"""
SSD1306 128x64 OLED rendered as four lines of text via luma.oled and Pillow.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from PIL import Image, ImageDraw, ImageFont

try:
    from luma.core.interface.serial import i2c  # type: ignore[import-not-found]
    from luma.oled.device import ssd1306  # type: ignore[import-not-found]
except Exception:  # noqa: BLE001
    i2c = ssd1306 = None  # type: ignore[assignment]

from . import DEFAULT_SCROLL_SPEED_MS, QueuedDisplay

logger = logging.getLogger(__name__)

NUM_CHARS = 18
NUM_LINES = 4
LINE_HEIGHT = 16


class OledDisplay(QueuedDisplay):
    """Queued OLED; keeps a 1-bit frame buffer and pushes it on every change."""

    def __init__(
        self,
        *,
        scroll_speed_ms: int = DEFAULT_SCROLL_SPEED_MS,
        i2c_bus: int = 1,
        address: int = 0x3C,
        device: Optional[Any] = None,
    ) -> None:
        super().__init__(NUM_CHARS, NUM_LINES, scroll_speed_ms)
        if device is None:
            if i2c is None or ssd1306 is None:
                raise RuntimeError(
                    "luma.oled is required for the OLED backend (pip install luma.oled)"
                )
            logger.info("OLED initializing on bus %d addr 0x%02X", i2c_bus, address)
            device = ssd1306(i2c(port=i2c_bus, address=address))
        self._device = device
        self._image = Image.new("1", tuple(device.size))
        self._draw = ImageDraw.Draw(self._image)
        self._font = ImageFont.load_default()
        self.start()
        self.clear()

    def _flush(self) -> None:
        self._device.display(self._image)

    def _erase(self, line: int) -> None:
        top = line * LINE_HEIGHT
        self._draw.rectangle(
            (0, top, self._image.width - 1, top + LINE_HEIGHT - 1), fill=0
        )

    def _apply_clear(self) -> None:
        self._draw.rectangle((0, 0, self._image.width - 1, self._image.height - 1), fill=0)
        self._flush()

    def _apply_backlight(self, on: bool) -> None:
        # OLED pixels are self-lit.
        return None

    def _apply_clear_line(self, line: int) -> None:
        self._erase(line)

    def _apply_print(self, line: int, text: str) -> None:
        self._erase(line)
        self._draw.text((0, line * LINE_HEIGHT + 2), text[:NUM_CHARS], font=self._font, fill=1)
        self._flush()

    def _close_device(self) -> None:
        cleanup = getattr(self._device, "cleanup", None)
        if callable(cleanup):
            cleanup()
