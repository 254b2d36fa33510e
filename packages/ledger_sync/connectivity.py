"""Connectivity and visibility signal.

The host application (a desktop shell, a browser bridge, a test) pushes
edges into a :class:`ConnectivitySignal`; the orchestrator subscribes and
turns them into sync triggers or state transitions. Only edges are
delivered: calling ``set_online(True)`` while already online is a no-op.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeAlias
from enum import StrEnum

from .logging_setup import get_logger

_logger = get_logger("ledger_sync.connectivity")


class ConnectivityEvent(StrEnum):
    BECAME_ONLINE = "became_online"
    BECAME_OFFLINE = "became_offline"
    FOCUS_GAINED = "focus_gained"
    VISIBILITY_GAINED = "visibility_gained"
    VISIBILITY_LOST = "visibility_lost"


ConnectivityCallback: TypeAlias = Callable[[ConnectivityEvent], None]


class ConnectivitySignal:
    def __init__(self, *, online: bool = True, visible: bool = True) -> None:
        self._online = online
        self._visible = visible
        self._callbacks: list[ConnectivityCallback] = []

    @property
    def online(self) -> bool:
        return self._online

    @property
    def visible(self) -> bool:
        return self._visible

    def subscribe(self, callback: ConnectivityCallback) -> Callable[[], None]:
        """Register ``callback``; the returned function unsubscribes it."""

        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    def _emit(self, event: ConnectivityEvent) -> None:
        _logger.debug("connectivity event: %s", event.value)
        for cb in list(self._callbacks):
            try:
                cb(event)
            except Exception:
                _logger.exception("connectivity subscriber failed on %s", event.value)

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        self._emit(ConnectivityEvent.BECAME_ONLINE if online else ConnectivityEvent.BECAME_OFFLINE)

    def set_visible(self, visible: bool) -> None:
        if visible == self._visible:
            return
        self._visible = visible
        self._emit(
            ConnectivityEvent.VISIBILITY_GAINED if visible else ConnectivityEvent.VISIBILITY_LOST
        )

    def focus(self) -> None:
        self._emit(ConnectivityEvent.FOCUS_GAINED)


__all__ = ["ConnectivityCallback", "ConnectivityEvent", "ConnectivitySignal"]
