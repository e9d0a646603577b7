"""
Storage Package.

Persistence for the settlement engine. Every ledger, order and
trade mutation is written inside one database transaction.

Modules:
- database: Engine, sessions, transaction scope
- models/: ORM tables
"""

from storage.database import Database, PersistenceError

__all__ = ["Database", "PersistenceError"]
