"""
Test configuration and fixtures for the Billing Engine.

Provides shared fixtures for unit and integration tests: an in-memory
SQLite database, a fixed clock, a fake Cardcom API behind
httpx.MockTransport, and the FastAPI app wired to both.
"""

import json
import os
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional

# Settings are read at import time; configure before importing the app
os.environ["ENVIRONMENT"] = "testing"
os.environ["SUPABASE_URL"] = "http://localhost:54321"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret-that-is-long-enough-for-hs256-signing"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["CARDCOM_TERMINAL_NUMBER"] = "1000"
os.environ["CARDCOM_API_NAME"] = "test-api-name"
os.environ["FRONTEND_URL"] = "http://localhost:5173"
os.environ["PUBLIC_API_URL"] = "https://api.example.com"
os.environ.pop("DATABASE_URL", None)

import httpx
import jwt
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

import app.infrastructure.db.models  # noqa: F401  (register tables)
from app.config.settings import Settings
from app.domain.subscription import PaymentOperation, PlanType, SessionStatus
from app.infrastructure.db.models import PaymentSessionModel, UserProfile
from app.infrastructure.payments.cardcom_service import CardcomService
from app.infrastructure.services.contract_service import ContractService
from app.infrastructure.services.payment_session_service import PaymentSessionService
from app.infrastructure.services.payment_status_service import PaymentStatusService
from app.infrastructure.services.reconciler import Reconciler
from app.infrastructure.services.recovery_service import RecoveryService
from app.infrastructure.services.renewal_service import RenewalService
from app.infrastructure.services.subscription_service import SubscriptionService
from app.infrastructure.services.webhook_ingestor import WebhookIngestor


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

USER_ID = "11111111-1111-1111-1111-111111111111"
OTHER_USER_ID = "22222222-2222-2222-2222-222222222222"


# =============================================================================
# Clock / Settings
# =============================================================================

class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    """Settings with zero retry delay so retry tests run instantly."""
    return Settings(
        cardcom_terminal_number=1000,
        cardcom_api_name="test-api-name",
        public_api_url="https://api.example.com",
        frontend_url="http://localhost:5173",
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        _env_file=None,
    )


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def add_profile(session_factory):
    """Insert a row into the profiles mirror."""
    async def _add(user_id: str = USER_ID, email: str = "buyer@example.com") -> None:
        async with session_factory() as session, session.begin():
            session.add(UserProfile(id=user_id, email=email))
    return _add


@pytest_asyncio.fixture
async def add_session(session_factory, clock):
    """Insert a payment session directly, bypassing the provider."""
    counter = {"n": 0}

    async def _add(
        plan_id: PlanType = PlanType.MONTHLY,
        operation: PaymentOperation = PaymentOperation.CREATE_TOKEN_ONLY,
        amount: Decimal = Decimal("0"),
        user_id: Optional[str] = USER_ID,
        status: SessionStatus = SessionStatus.PENDING,
        expires_in: timedelta = timedelta(minutes=30),
        email: str = "buyer@example.com",
        reference: Optional[str] = None,
    ) -> PaymentSessionModel:
        counter["n"] += 1
        n = counter["n"]
        now = clock()
        model = PaymentSessionModel(
            provider_session_id=f"lp-{n}",
            reference=reference or f"{plan_id.value}.{user_id or 'anon-0000'}.{n}",
            user_id=user_id,
            owner_key=user_id or f"anon:{email}",
            plan_id=plan_id.value,
            amount=amount,
            operation=operation.value,
            status=status.value,
            contact_email=email,
            url=f"https://secure.cardcom.solutions/lp/lp-{n}",
            created_at=now,
            updated_at=now,
            expires_at=now + expires_in,
        )
        async with session_factory() as session, session.begin():
            session.add(model)
        return model

    return _add


# =============================================================================
# Cardcom Fake
# =============================================================================

class FakeCardcomAPI:
    """
    In-process stand-in for the LowProfile API.

    ``results`` maps LowProfileId to the GetLpResult body; set
    ``create_response`` to an httpx.Response or an exception to make the
    next Create calls fail. Token charges are approved unless the token is
    listed in ``declined_tokens`` or ``charge_response`` is set; a repeated
    ExternalUniqTranId gets the original transaction back.
    """

    def __init__(self):
        self.requests: list[tuple[str, dict]] = []
        self.results: dict[str, dict] = {}
        self.create_response = None
        self.charge_response = None
        self.declined_tokens: dict[str, int] = {}
        self._transactions: dict[str, int] = {}
        self._counter = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        path = request.url.path
        self.requests.append((path, body))

        if path.endswith("/LowProfile/Create"):
            if isinstance(self.create_response, Exception):
                raise self.create_response
            if self.create_response is not None:
                return self.create_response
            self._counter += 1
            lp_id = f"lp-created-{self._counter}"
            return httpx.Response(
                200,
                json={
                    "ResponseCode": 0,
                    "Description": "OK",
                    "LowProfileId": lp_id,
                    "Url": f"https://secure.cardcom.solutions/External/LowProfile.aspx?LowProfileCode={lp_id}",
                },
            )

        if path.endswith("/LowProfile/GetLpResult"):
            lp_id = body.get("LowProfileId")
            if lp_id in self.results:
                return httpx.Response(200, json=self.results[lp_id])
            return httpx.Response(
                200,
                json={"ResponseCode": 700, "Description": "Page not submitted", "LowProfileId": lp_id},
            )

        if path.endswith("/Transactions/Transaction"):
            return self._charge(body)

        return httpx.Response(404, json={"ResponseCode": 1, "Description": "Unknown endpoint"})

    def _charge(self, body: dict) -> httpx.Response:
        if isinstance(self.charge_response, Exception):
            raise self.charge_response
        if self.charge_response is not None:
            return self.charge_response
        code = self.declined_tokens.get(body.get("Token"), 0)
        if code:
            return httpx.Response(
                200,
                json={"ResponseCode": code, "Description": "Insufficient funds", "TranzactionId": 0},
            )
        unique_id = body.get("ExternalUniqTranId")
        if unique_id not in self._transactions:
            self._transactions[unique_id] = 70001 + len(self._transactions)
        return httpx.Response(
            200,
            json={
                "ResponseCode": 0,
                "Description": "Approved",
                "TranzactionId": self._transactions[unique_id],
                "Amount": body.get("Amount"),
                "Last4CardDigits": "4580",
                "CardMonth": 12,
                "CardYear": 2028,
                "ApprovalNumber": "0055555",
            },
        )

    def calls_to(self, suffix: str) -> list[dict]:
        return [body for path, body in self.requests if path.endswith(suffix)]


@pytest.fixture
def cardcom_api() -> FakeCardcomAPI:
    return FakeCardcomAPI()


@pytest_asyncio.fixture
async def cardcom(cardcom_api, test_settings) -> AsyncGenerator[CardcomService, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(cardcom_api.handler)) as client:
        yield CardcomService(settings=test_settings, client=client)


# =============================================================================
# Service Fixtures
# =============================================================================

async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def reconciler(session_factory, test_settings, clock) -> Reconciler:
    return Reconciler(session_factory, test_settings, clock, sleep=_no_sleep)


@pytest.fixture
def ingestor(session_factory, reconciler, clock) -> WebhookIngestor:
    return WebhookIngestor(session_factory, reconciler, clock)


@pytest.fixture
def payment_sessions(session_factory, cardcom, test_settings, clock) -> PaymentSessionService:
    return PaymentSessionService(session_factory, cardcom, test_settings, clock)


@pytest.fixture
def status_service(session_factory, ingestor, cardcom, test_settings, clock) -> PaymentStatusService:
    return PaymentStatusService(session_factory, ingestor, cardcom, test_settings, clock)


@pytest.fixture
def contracts(session_factory, test_settings, clock) -> ContractService:
    return ContractService(session_factory, test_settings, clock)


@pytest.fixture
def subscriptions(session_factory, test_settings, clock) -> SubscriptionService:
    return SubscriptionService(session_factory, test_settings, clock)


@pytest.fixture
def recovery(session_factory, ingestor, test_settings, clock) -> RecoveryService:
    return RecoveryService(session_factory, ingestor, test_settings, clock)


@pytest.fixture
def renewals(session_factory, ingestor, cardcom, test_settings, clock) -> RenewalService:
    return RenewalService(session_factory, ingestor, cardcom, test_settings, clock)


# =============================================================================
# Sample Payloads
# =============================================================================

def token_payload(low_profile_id: str, return_value: str = "", email: str = "buyer@example.com") -> dict:
    """Successful CreateTokenOnly notification."""
    return {
        "ResponseCode": 0,
        "Description": "OK",
        "LowProfileId": low_profile_id,
        "TranzactionId": 0,
        "ReturnValue": return_value,
        "Operation": "CreateTokenOnly",
        "UIValues": {"CardOwnerEmail": email, "CardOwnerName": "Dana Buyer"},
        "TokenInfo": {
            "Token": "tok-5f2a9c",
            "TokenExDate": "20290131",
            "CardYear": 2029,
            "CardMonth": 1,
            "TokenApprovalNumber": "0012345",
        },
    }


def charge_payload(
    low_profile_id: str,
    amount: str = "3371",
    return_value: str = "",
    transaction_id: int = 90001,
    response_code: int = 0,
    email: str = "buyer@example.com",
) -> dict:
    """ChargeAndCreateToken notification; non-zero code for a decline."""
    payload = {
        "ResponseCode": response_code,
        "Description": "OK" if response_code == 0 else "Declined",
        "LowProfileId": low_profile_id,
        "TranzactionId": transaction_id,
        "ReturnValue": return_value,
        "Operation": "ChargeAndCreateToken",
        "UIValues": {"CardOwnerEmail": email, "CardOwnerName": "Dana Buyer"},
        "TranzactionInfo": {
            "ResponseCode": response_code,
            "Description": "Approved" if response_code == 0 else "Insufficient funds",
            "TranzactionId": transaction_id,
            "Amount": amount,
            "Last4CardDigits": "4580",
            "CardMonth": 12,
            "CardYear": 2028,
            "ApprovalNumber": "0098765",
            "Brand": "Visa",
        },
    }
    if response_code == 0:
        payload["TokenInfo"] = {
            "Token": "tok-charge-77",
            "TokenExDate": "20281231",
            "CardYear": 2028,
            "CardMonth": 12,
        }
    return payload


# =============================================================================
# App Fixtures
# =============================================================================

def auth_headers(user_id: str = USER_ID) -> dict[str, str]:
    """Bearer header with an HS256 token signed by the test secret."""
    from app.config.settings import get_settings

    settings = get_settings()
    token = jwt.encode(
        {
            "sub": user_id,
            "aud": "authenticated",
            "iss": f"{settings.supabase_url}/auth/v1",
            "exp": int(time.time()) + 3600,
        },
        settings.supabase_jwt_secret,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}


@pytest.fixture
def app(session_factory, cardcom):
    """FastAPI application bound to the test database and fake provider."""
    from app.main import app
    from app.infrastructure.db.database import get_session_factory
    from app.infrastructure.payments.cardcom_service import get_cardcom_service

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_cardcom_service] = lambda: cardcom
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async test client over ASGI."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
