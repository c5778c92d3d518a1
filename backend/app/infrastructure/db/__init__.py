"""
Database Infrastructure Package for the Billing Engine

Exports database utilities and dependencies.
"""

from app.infrastructure.db.database import (
    DatabaseManager,
    get_db_manager,
    get_session,
    get_session_factory,
    init_db,
    close_db,
)

from app.infrastructure.db.dependencies import (
    SessionDep,
    SessionFactoryDep,
    get_subscription_repository,
    SubscriptionRepoDep,
)


__all__ = [
    # Database management
    "DatabaseManager",
    "get_db_manager",
    "get_session",
    "get_session_factory",
    "init_db",
    "close_db",
    # Dependencies
    "SessionDep",
    "SessionFactoryDep",
    "get_subscription_repository",
    "SubscriptionRepoDep",
]
