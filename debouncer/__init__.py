"""
Trailing-edge debouncer built on threading.Timer.

Every call to ``arm`` replaces the pending action and restarts the quiet
window; only the last action of a burst runs.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class Debouncer:
    """Run the last armed action once the calls have been quiet for ``wait_s``."""

    def __init__(self, wait_s: float, name: str = "debounce") -> None:
        self._wait_s = max(0.0, float(wait_s))
        self._name = name
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._action: Optional[Callable[[], None]] = None
        self._generation = 0

    @property
    def wait_s(self) -> float:
        return self._wait_s

    @property
    def pending(self) -> bool:
        """Return True while an action is waiting to fire."""
        with self._lock:
            return self._action is not None

    def arm(self, action: Callable[[], None]) -> None:
        """Schedule ``action``, cancelling whatever was scheduled before."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            self._action = action
            timer = threading.Timer(self._wait_s, self._fire, args=(self._generation,))
            timer.name = f"{self._name}-{self._generation}"
            timer.daemon = True
            self._timer = timer
            timer.start()

    __call__ = arm

    def cancel(self) -> None:
        """Drop the pending action, if any."""
        with self._lock:
            self._drop_locked()

    def flush(self) -> bool:
        """Run the pending action now. Returns False when nothing was pending."""
        with self._lock:
            action = self._action
            self._drop_locked()
        if action is None:
            return False
        self._run(action)
        return True

    def _drop_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._action = None
        # A timer that already started firing must see a stale generation.
        self._generation += 1

    def _fire(self, generation: int) -> None:
        with self._lock:
            # Superseded between the timer expiring and acquiring the lock.
            if generation != self._generation:
                return
            action = self._action
            self._action = None
            self._timer = None
        if action is not None:
            self._run(action)

    def _run(self, action: Callable[[], None]) -> None:
        try:
            action()
        except Exception:  # noqa: BLE001
            logger.exception("Debounced action failed (%s)", self._name)
