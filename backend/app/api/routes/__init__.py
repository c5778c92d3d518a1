# API Routes Module
from app.api.routes import (
    payments,
    webhooks,
    contracts,
    subscriptions,
    admin,
)

__all__ = [
    "payments",
    "webhooks",
    "contracts",
    "subscriptions",
    "admin",
]
