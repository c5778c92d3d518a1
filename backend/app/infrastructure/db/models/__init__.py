"""
SQLModel ORM Models for the Billing Engine

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from app.infrastructure.db.models.base import (
    BaseModel,
    TimestampMixin,
    UUIDMixin,
)
from app.infrastructure.db.models.user_profile import UserProfile
from app.infrastructure.db.models.payment_session import PaymentSessionModel
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.models.payment_history import PaymentHistoryModel
from app.infrastructure.db.models.contract_signature import ContractSignatureModel
from app.infrastructure.db.models.webhook_event import (
    WebhookEventModel,
    WebhookReprocessLogModel,
)


__all__ = [
    # Base
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    # Auth mirror
    "UserProfile",
    # Billing
    "PaymentSessionModel",
    "SubscriptionModel",
    "PaymentHistoryModel",
    "ContractSignatureModel",
    "WebhookEventModel",
    "WebhookReprocessLogModel",
]
