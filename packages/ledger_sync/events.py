"""Change notifications broadcast after every successful sync cycle."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from typing import TypeAlias
from dataclasses import dataclass, field
from datetime import datetime

from .logging_setup import get_logger
from .models import utcnow

_logger = get_logger("ledger_sync.events")


@dataclass(frozen=True, slots=True)
class ChangeNotification:
    username: str
    timestamp: datetime = field(default_factory=utcnow)


ChangeHandler: TypeAlias = Callable[[ChangeNotification], None]


class ChangeBus:
    """Observer registry. A failing subscriber never affects the others.

    Only the newest ``history_limit`` notifications are remembered.
    """

    def __init__(self, *, history_limit: int = 100) -> None:
        self._handlers: list[ChangeHandler] = []
        self._history: deque[ChangeNotification] = deque(maxlen=history_limit)

    def subscribe(self, handler: ChangeHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    def publish(self, notification: ChangeNotification) -> None:
        self._history.append(notification)
        for handler in list(self._handlers):
            try:
                handler(notification)
            except Exception:
                _logger.exception("change subscriber failed for %s", notification.username)

    def history(self) -> list[ChangeNotification]:
        return list(self._history)


__all__ = ["ChangeBus", "ChangeHandler", "ChangeNotification"]
