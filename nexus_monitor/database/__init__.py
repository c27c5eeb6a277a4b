"""
Database Module
"""
from .connection import (
    init_database,
    close_database,
    create_tables,
    get_db,
    get_db_dependency,
    get_session_factory,
    build_engine,
    build_session_factory,
)
from .models import (
    Base,
    AlertLevel,
    ImportedOrder,
    NexusAlert,
    NotificationPreference,
    SalesSummary,
    TransactionStatus,
)

__all__ = [
    "init_database",
    "close_database",
    "create_tables",
    "get_db",
    "get_db_dependency",
    "get_session_factory",
    "build_engine",
    "build_session_factory",
    "Base",
    "AlertLevel",
    "ImportedOrder",
    "NexusAlert",
    "NotificationPreference",
    "SalesSummary",
    "TransactionStatus",
]
