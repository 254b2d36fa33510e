"""Interfaces of collaborators that live outside the sync engine."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .errors import InvalidCredentials
from .models import UserRecord
from .stores import RecordStore


@runtime_checkable
class Authenticator(Protocol):
    """Issues the user session the orchestrator runs under.

    ``authenticate`` raises :class:`~ledger_sync.errors.InvalidCredentials`
    for a bad username/password pair.
    """

    def authenticate(self, username: str, password: str) -> UserRecord: ...

    def current_user(self) -> UserRecord | None: ...


class StoreUserAuthenticator:
    """Password-less lookup against a replica's user table.

    Used by the CLI, where the operator already has database access and
    registration happens elsewhere. ``password`` is accepted for interface
    compatibility and ignored.
    """

    def __init__(self, store: RecordStore) -> None:
        self._store = store
        self._current: UserRecord | None = None

    def authenticate(self, username: str, password: str = "") -> UserRecord:
        user = self._store.find_user(username)
        if user is None or not user.is_active:
            raise InvalidCredentials(f"unknown or inactive user: {username}")
        self._current = user
        return user

    def current_user(self) -> UserRecord | None:
        return self._current


__all__ = ["Authenticator", "StoreUserAuthenticator"]
