"""
Payments Infrastructure Module

Cardcom hosted-page client used by the payment lifecycle services.
"""

from app.infrastructure.payments.cardcom_service import (
    CardcomService,
    LowProfilePage,
    get_cardcom_service,
)

__all__ = ["CardcomService", "LowProfilePage", "get_cardcom_service"]
