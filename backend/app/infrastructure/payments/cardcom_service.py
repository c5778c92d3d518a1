"""
Cardcom Payment Service

Infrastructure client for the Cardcom LowProfile (hosted payment page) API.
The card is entered on Cardcom's page; this service opens pages, reads
their results and charges card tokens saved by earlier pages.

Error mapping:
- network failure, timeout, HTTP 5xx -> ProviderUnavailable (retryable)
- HTTP 4xx, malformed body, ResponseCode != 0 on Create -> ProviderRejected
- a declined token charge is returned, not raised
"""

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Any, Optional

import httpx
from pydantic import BaseModel

from app.config.settings import Settings, get_settings
from app.domain.plans import PlanDefinition
from app.domain.subscription import PaymentOperation
from app.infrastructure.exceptions import (
    ConfigurationError,
    ProviderRejected,
    ProviderUnavailable,
)


logger = logging.getLogger(__name__)


# JValidateType: 2 = card check only (token pages), 5 = regular debit
_VALIDATE_TOKEN_ONLY = 2
_VALIDATE_DEBIT = 5


class LowProfilePage(BaseModel):
    """Hosted page opened for one payment session."""
    low_profile_id: str
    url: str


class CardcomService:
    """
    Cardcom LowProfile API client.

    Args:
        settings: Application settings (defaults to the cached instance)
        client: Shared httpx client; a short-lived one is created per call
            when omitted
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings or get_settings()
        self._client = client

    def _credentials(self) -> dict[str, Any]:
        missing = []
        if not self._settings.cardcom_terminal_number:
            missing.append("CARDCOM_TERMINAL_NUMBER")
        if not self._settings.cardcom_api_name:
            missing.append("CARDCOM_API_NAME")
        if missing:
            raise ConfigurationError("Cardcom credentials are not configured", missing_keys=missing)
        return {
            "TerminalNumber": self._settings.cardcom_terminal_number,
            "ApiName": self._settings.cardcom_api_name,
        }

    async def _post(self, path: str, body: dict[str, Any], operation: str) -> dict[str, Any]:
        url = f"{self._settings.cardcom_base_url}/{path}"
        timeout = self._settings.provider_timeout_seconds

        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.post(url, json=body)
        except httpx.TimeoutException as e:
            logger.warning(f"[CARDCOM] {operation} timed out after {timeout}s")
            raise ProviderUnavailable(
                f"Cardcom {operation} timed out", operation=operation, original_error=e
            )
        except httpx.HTTPError as e:
            logger.warning(f"[CARDCOM] {operation} network error: {e}")
            raise ProviderUnavailable(
                f"Cardcom {operation} failed: {e}", operation=operation, original_error=e
            )

        if response.status_code >= 500:
            logger.warning(f"[CARDCOM] {operation} returned HTTP {response.status_code}")
            raise ProviderUnavailable(
                f"Cardcom {operation} returned HTTP {response.status_code}",
                operation=operation,
            )
        if response.status_code >= 400:
            logger.error(f"[CARDCOM] {operation} rejected with HTTP {response.status_code}")
            raise ProviderRejected(
                f"Cardcom {operation} returned HTTP {response.status_code}",
                operation=operation,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderRejected(
                f"Cardcom {operation} returned a non-JSON body",
                operation=operation,
                original_error=e,
            )
        if not isinstance(data, dict):
            raise ProviderRejected(f"Cardcom {operation} returned an unexpected body", operation=operation)
        return data

    async def create_low_profile(
        self,
        *,
        session_id: str,
        reference: str,
        plan: PlanDefinition,
        operation: PaymentOperation,
        amount: Decimal,
        email: str,
        full_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> LowProfilePage:
        """
        Open a hosted payment page.

        Args:
            session_id: Local session id, echoed in the redirect URLs
            reference: Correlation token sent as ReturnValue
            plan: Plan being purchased
            operation: Charge, tokenize, or both
            amount: Amount in plan currency (0 for token-only)
            email: Card owner e-mail, prefilled on the page
            full_name: Card owner name, prefilled on the page
            phone: Card owner phone, prefilled on the page

        Returns:
            LowProfilePage with the provider id and URL

        Raises:
            ProviderUnavailable: Transient failure, nothing was created
            ProviderRejected: Cardcom refused the request
        """
        frontend = self._settings.frontend_url
        body = {
            **self._credentials(),
            "Operation": operation.provider_name,
            "ReturnValue": reference,
            "Amount": float(amount),
            "WebHookUrl": self._settings.webhook_url,
            "SuccessRedirectUrl": f"{frontend}/payment/success?session_id={session_id}",
            "FailedRedirectUrl": f"{frontend}/payment/failed?session_id={session_id}",
            "ProductName": f"{plan.name} subscription",
            "Language": self._settings.cardcom_language,
            "ISOCoinId": self._settings.cardcom_iso_coin_id,
            "MaxNumOfPayments": plan.max_installments if operation.charges else 1,
            "UIDefinition": {
                "CardOwnerNameValue": full_name or "",
                "CardOwnerEmailValue": email,
                "CardOwnerPhoneValue": phone or "",
                "IsCardOwnerEmailRequired": True,
            },
            "AdvancedDefinition": {
                "JValidateType": (
                    _VALIDATE_TOKEN_ONLY
                    if operation == PaymentOperation.CREATE_TOKEN_ONLY
                    else _VALIDATE_DEBIT
                ),
            },
        }

        logger.info(
            f"[CARDCOM] Creating LowProfile for session {session_id} "
            f"({plan.plan_id.value}, {operation.value}, {amount})"
        )
        data = await self._post("LowProfile/Create", body, "create_low_profile")

        response_code = _as_int(data.get("ResponseCode"))
        if response_code != 0:
            description = data.get("Description") or "unknown error"
            logger.error(f"[CARDCOM] Create rejected ({response_code}): {description}")
            raise ProviderRejected(
                f"Cardcom rejected the payment page: {description}",
                operation="create_low_profile",
                response_code=response_code,
            )

        low_profile_id = data.get("LowProfileId")
        url = data.get("Url")
        if not low_profile_id or not url:
            raise ProviderRejected(
                "Cardcom response is missing LowProfileId or Url",
                operation="create_low_profile",
            )

        return LowProfilePage(low_profile_id=str(low_profile_id), url=url)

    async def get_low_profile_result(self, low_profile_id: str) -> dict[str, Any]:
        """
        Fetch the current result of a hosted page.

        The body has the same shape as the webhook notification. A non-zero
        ResponseCode here usually means the page was not submitted yet, so
        it is returned as-is for the caller to interpret.
        """
        body = {**self._credentials(), "LowProfileId": low_profile_id}
        data = await self._post("LowProfile/GetLpResult", body, "get_low_profile_result")
        logger.debug(
            f"[CARDCOM] GetLpResult {low_profile_id}: ResponseCode={data.get('ResponseCode')}"
        )
        return data

    async def charge_token(
        self,
        *,
        token: str,
        amount: Decimal,
        unique_id: str,
        card_month: Optional[str] = None,
        card_year: Optional[str] = None,
        email: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Charge a stored card token without a payment page.

        ``unique_id`` goes out as ExternalUniqTranId, so repeating a call
        whose answer was lost does not charge the card twice.

        Returns:
            The raw transaction body. A declined card comes back with a
            non-zero ResponseCode and is not raised.

        Raises:
            ProviderUnavailable: Transient failure; the outcome is unknown
            ProviderRejected: Cardcom refused the request itself
        """
        body: dict[str, Any] = {
            **self._credentials(),
            "Token": token,
            "Amount": float(amount),
            "ExternalUniqTranId": unique_id,
            "ISOCoinId": self._settings.cardcom_iso_coin_id,
            "NumOfPayments": 1,
        }
        expiry = card_expiry_mmyy(card_month, card_year)
        if expiry:
            body["CardExpirationMMYY"] = expiry
        if email:
            body["CardOwnerInformation"] = {"CardOwnerEmail": email}

        logger.info(f"[CARDCOM] Charging token for {unique_id} ({amount})")
        data = await self._post("Transactions/Transaction", body, "charge_token")
        logger.info(
            f"[CARDCOM] Token charge {unique_id}: ResponseCode={data.get('ResponseCode')} "
            f"TranzactionId={data.get('TranzactionId')}"
        )
        return data


def card_expiry_mmyy(month: Optional[str], year: Optional[str]) -> Optional[str]:
    """Card expiry as MMYY; None when either part is missing or not numeric."""
    try:
        return f"{int(month):02d}{int(year) % 100:02d}"
    except (TypeError, ValueError):
        return None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@lru_cache
def get_cardcom_service() -> CardcomService:
    """Get cached Cardcom service instance."""
    return CardcomService()
