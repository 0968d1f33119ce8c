"""Database modules for ledger persistence."""

from .session import Base, SessionLocal, create_db_engine, get_db_context, init_db
from .repository import SqlAlchemyCompliancePort

__all__ = [
    "Base",
    "SessionLocal",
    "SqlAlchemyCompliancePort",
    "create_db_engine",
    "get_db_context",
    "init_db",
]
