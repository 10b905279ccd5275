"""Observer registration used by every sync component."""

from __future__ import annotations

import logging
import sys
from typing import Callable

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class Listeners:
    """A list of callbacks with add/remove and fault-isolated notify.

    ``add`` returns an unsubscribe function so callers can tear down without
    keeping a reference to the callback. A failing callback is logged and
    does not stop the others, nor the event handler that notified them.
    """

    def __init__(self, name: str = ""):
        self._name = name
        self._callbacks: list[Callable] = []

    def add(self, callback: Callable) -> Callable[[], None]:
        self._callbacks.append(callback)
        return lambda: self.remove(callback)

    def remove(self, callback: Callable) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def clear(self) -> None:
        self._callbacks.clear()

    def notify(self, *args) -> None:
        for callback in list(self._callbacks):
            try:
                callback(*args)
            except Exception:
                logger.exception(f"{self._name or 'listener'} callback failed")
