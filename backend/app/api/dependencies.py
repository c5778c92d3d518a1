"""
API Dependencies

FastAPI dependency injection for authentication and the billing services.

Security: JWT tokens are verified cryptographically. Asymmetric tokens
(ES256/RS256) are checked against the Supabase JWKS; HS256 tokens against
the project's JWT secret. Never decode without verification.
"""

import logging
from functools import lru_cache
from typing import Annotated, Optional

import jwt
from jwt import PyJWKClient
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config.settings import get_settings
from app.infrastructure.db.dependencies import SessionFactoryDep
from app.infrastructure.payments.cardcom_service import CardcomService, get_cardcom_service
from app.infrastructure.services.contract_service import ContractService
from app.infrastructure.services.payment_session_service import PaymentSessionService
from app.infrastructure.services.payment_status_service import PaymentStatusService
from app.infrastructure.services.reconciler import Reconciler
from app.infrastructure.services.recovery_service import RecoveryService
from app.infrastructure.services.renewal_service import RenewalService
from app.infrastructure.services.subscription_service import SubscriptionService
from app.infrastructure.services.webhook_ingestor import WebhookIngestor


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

_ASYMMETRIC_ALGORITHMS = ["ES256", "RS256"]


@lru_cache
def _get_jwks_client() -> PyJWKClient:
    """Return a cached PyJWKClient for the Supabase JWKS endpoint."""
    settings = get_settings()
    jwks_url = f"{settings.supabase_url}/auth/v1/.well-known/jwks.json"
    return PyJWKClient(jwks_url, cache_keys=True)


def verify_token(token: str) -> dict:
    """
    Verify a Supabase access token and return its claims.

    The strategy is picked from the token header: HS256 uses
    ``SUPABASE_JWT_SECRET``, everything else goes through JWKS.

    Raises:
        jwt.InvalidTokenError: signature, expiry, issuer or audience invalid
        jwt.exceptions.PyJWKClientError: signing key could not be fetched
    """
    settings = get_settings()
    issuer = f"{settings.supabase_url}/auth/v1"
    options = {"require": ["exp", "sub", "iss"]}

    algorithm = jwt.get_unverified_header(token).get("alg")
    if algorithm == "HS256":
        if not settings.supabase_jwt_secret:
            raise jwt.InvalidTokenError("HS256 token received but no JWT secret configured")
        return jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=["HS256"],
            issuer=issuer,
            audience="authenticated",
            options=options,
        )

    signing_key = _get_jwks_client().get_signing_key_from_jwt(token)
    return jwt.decode(
        token,
        signing_key.key,
        algorithms=_ASYMMETRIC_ALGORITHMS,
        issuer=issuer,
        audience="authenticated",
        options=options,
    )


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Extract and verify user ID from a Supabase JWT.

    Returns:
        Authenticated user ID (``sub`` claim).

    Raises:
        HTTPException 401: token missing, expired, or invalid.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = verify_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        )
    except (jwt.exceptions.PyJWKClientError, jwt.InvalidTokenError) as e:
        logger.warning("JWT verification failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or unverifiable token",
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user ID",
        )
    return user_id


async def get_optional_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    """
    Optionally extract user ID from JWT token.

    Returns ``None`` if no token is provided (anonymous checkout). A token
    that is present but invalid is still rejected.
    """
    if not credentials:
        return None
    return await get_current_user_id(credentials)


CurrentUserId = Annotated[str, Depends(get_current_user_id)]
OptionalUserId = Annotated[Optional[str], Depends(get_optional_user_id)]


# =============================================================================
# Service providers
# =============================================================================

CardcomDep = Annotated[CardcomService, Depends(get_cardcom_service)]


def get_reconciler(session_factory: SessionFactoryDep) -> Reconciler:
    return Reconciler(session_factory)


def get_webhook_ingestor(
    session_factory: SessionFactoryDep,
    reconciler: Annotated[Reconciler, Depends(get_reconciler)],
) -> WebhookIngestor:
    return WebhookIngestor(session_factory, reconciler)


IngestorDep = Annotated[WebhookIngestor, Depends(get_webhook_ingestor)]


def get_payment_session_service(
    session_factory: SessionFactoryDep,
    cardcom: CardcomDep,
) -> PaymentSessionService:
    return PaymentSessionService(session_factory, cardcom)


def get_payment_status_service(
    session_factory: SessionFactoryDep,
    ingestor: IngestorDep,
    cardcom: CardcomDep,
) -> PaymentStatusService:
    return PaymentStatusService(session_factory, ingestor, cardcom)


def get_contract_service(session_factory: SessionFactoryDep) -> ContractService:
    return ContractService(session_factory)


def get_subscription_service(session_factory: SessionFactoryDep) -> SubscriptionService:
    return SubscriptionService(session_factory)


def get_recovery_service(
    session_factory: SessionFactoryDep,
    ingestor: IngestorDep,
) -> RecoveryService:
    return RecoveryService(session_factory, ingestor)


def get_renewal_service(
    session_factory: SessionFactoryDep,
    ingestor: IngestorDep,
    cardcom: CardcomDep,
) -> RenewalService:
    return RenewalService(session_factory, ingestor, cardcom)


PaymentSessionServiceDep = Annotated[PaymentSessionService, Depends(get_payment_session_service)]
PaymentStatusServiceDep = Annotated[PaymentStatusService, Depends(get_payment_status_service)]
ContractServiceDep = Annotated[ContractService, Depends(get_contract_service)]
SubscriptionServiceDep = Annotated[SubscriptionService, Depends(get_subscription_service)]
RecoveryServiceDep = Annotated[RecoveryService, Depends(get_recovery_service)]
RenewalServiceDep = Annotated[RenewalService, Depends(get_renewal_service)]


async def require_entitlement(
    user_id: CurrentUserId,
    subscriptions: SubscriptionServiceDep,
) -> str:
    """
    Route guard for protected features.

    Usage:
        @router.get("/journal", dependencies=[Depends(require_entitlement)])
    """
    await subscriptions.require_entitlement(user_id)
    return user_id
