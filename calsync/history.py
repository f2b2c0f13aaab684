from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable

from calsync.models import HistoryAction

logger = logging.getLogger(__name__)

MAX_HISTORY = 50

ActionHandler = Callable[[HistoryAction], None]


@dataclass
class CategoryHandlers:
    on_undo: ActionHandler
    on_redo: ActionHandler


class CommandLog:
    """Bounded undo/redo stacks with one inverse handler pair per category.

    Handler failures are logged and leave both stacks untouched; undo and redo
    never raise to the caller.
    """

    def __init__(self, max_depth: int = MAX_HISTORY) -> None:
        self.max_depth = max_depth
        self._undo: deque[HistoryAction] = deque(maxlen=max_depth)
        self._redo: deque[HistoryAction] = deque(maxlen=max_depth)
        self._handlers: dict[str, CategoryHandlers] = {}
        self._lock = threading.RLock()

    def register(self, category: str, on_undo: ActionHandler, on_redo: ActionHandler) -> None:
        with self._lock:
            self._handlers[category] = CategoryHandlers(on_undo=on_undo, on_redo=on_redo)

    def record(self, action: HistoryAction) -> None:
        with self._lock:
            self._undo.append(action)
            self._redo.clear()
        logger.debug("Recorded %s/%s %s", action.category, action.kind, action.description)

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def undo(self) -> bool:
        return self._replay(self._undo, self._redo, "undo")

    def redo(self) -> bool:
        return self._replay(self._redo, self._undo, "redo")

    def _replay(self, source: deque[HistoryAction], target: deque[HistoryAction], direction: str) -> bool:
        with self._lock:
            if not source:
                return False
            action = source[-1]
            handlers = self._handlers.get(action.category)
            if handlers is None:
                logger.warning("No history handler registered for category %s", action.category)
                return False
            handler = handlers.on_undo if direction == "undo" else handlers.on_redo
            try:
                handler(action)
            except Exception:
                logger.exception("History %s failed for %s/%s", direction, action.category, action.kind)
                return False
            source.pop()
            target.append(action)
        return True

    def clear(self) -> None:
        with self._lock:
            self._undo.clear()
            self._redo.clear()

    def snapshot(self) -> dict[str, list[dict[str, str]]]:
        with self._lock:
            return {
                "undo": [{"category": a.category, "kind": a.kind, "description": a.description} for a in self._undo],
                "redo": [{"category": a.category, "kind": a.kind, "description": a.description} for a in self._redo],
            }
