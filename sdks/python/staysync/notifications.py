"""User-visible notices.

All components report through one ``Notifier`` so the UI layer subscribes in
a single place instead of special-casing each manager.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, List, Optional

from .models import utcnow

logger = logging.getLogger(__name__)


class NoticeLevel(str, Enum):
    """Notice severity."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    PARTIAL = "partial"


@dataclass
class Notice:
    """A message meant for the user."""
    level: NoticeLevel
    title: str
    message: str
    source: str
    reference_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


_LOG_LEVELS = {
    NoticeLevel.INFO: logging.INFO,
    NoticeLevel.WARNING: logging.WARNING,
    NoticeLevel.ERROR: logging.ERROR,
    NoticeLevel.PARTIAL: logging.ERROR,
}


class Notifier:
    """Fan-out channel for notices with a bounded history."""

    def __init__(self, history_size: int = 100):
        self._listeners: List[Callable[[Notice], None]] = []
        self.history: Deque[Notice] = deque(maxlen=history_size)

    def subscribe(self, listener: Callable[[Notice], None]) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(
        self,
        level: NoticeLevel,
        title: str,
        message: str,
        source: str,
        reference_id: Optional[str] = None,
    ) -> Notice:
        notice = Notice(level, title, message, source, reference_id)
        self.history.append(notice)
        logger.log(_LOG_LEVELS[level], "[%s] %s: %s", source, title, message)
        for listener in list(self._listeners):
            listener(notice)
        return notice

    def info(self, title: str, message: str, source: str, **kwargs) -> Notice:
        return self.notify(NoticeLevel.INFO, title, message, source, **kwargs)

    def warning(self, title: str, message: str, source: str, **kwargs) -> Notice:
        return self.notify(NoticeLevel.WARNING, title, message, source, **kwargs)

    def error(self, title: str, message: str, source: str, **kwargs) -> Notice:
        return self.notify(NoticeLevel.ERROR, title, message, source, **kwargs)

    def partial(self, title: str, message: str, source: str, reference_id: str) -> Notice:
        return self.notify(NoticeLevel.PARTIAL, title, message, source, reference_id)

    def titles(self) -> List[str]:
        return [notice.title for notice in self.history]
