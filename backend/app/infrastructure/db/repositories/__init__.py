"""
Repository Layer for the Billing Engine

Exports all repository classes for dependency injection.
"""

from app.infrastructure.db.repositories.base_repository import (
    BaseRepository,
    IReadRepository,
    IWriteRepository,
)
from app.infrastructure.db.repositories.user_profile_repository import (
    UserProfileRepository,
)
from app.infrastructure.db.repositories.payment_session_repository import (
    PaymentSessionRepository,
)
from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from app.infrastructure.db.repositories.payment_history_repository import (
    PaymentHistoryRepository,
)
from app.infrastructure.db.repositories.contract_repository import (
    ContractSignatureRepository,
)
from app.infrastructure.db.repositories.webhook_event_repository import (
    WebhookEventRepository,
)


__all__ = [
    # Base
    "BaseRepository",
    "IReadRepository",
    "IWriteRepository",
    # Repositories
    "UserProfileRepository",
    "PaymentSessionRepository",
    "SubscriptionRepository",
    "PaymentHistoryRepository",
    "ContractSignatureRepository",
    "WebhookEventRepository",
]
