"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the ledger models used by ``ledger_sync``.
"""

from .ledger import Base, LsDevice, LsSyncLog, LsTransaction, LsUser

__all__ = [
    "Base",
    "LsDevice",
    "LsSyncLog",
    "LsTransaction",
    "LsUser",
]
