"""
Contract API Routes

Signing the subscription agreement and checking whether it is signed.
"""

from typing import Optional

from fastapi import APIRouter, Request, status

from app.api.dependencies import ContractServiceDep, CurrentUserId
from app.domain.billing_dto import (
    ContractSignedResponse,
    ContractStatusResponse,
    SignContractRequest,
)


router = APIRouter(prefix="/contracts")


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@router.post(
    "/sign",
    response_model=ContractSignedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def sign_contract(
    body: SignContractRequest,
    request: Request,
    user_id: CurrentUserId,
    service: ContractServiceDep,
):
    """Record the signed agreement for the current user."""
    return await service.sign(
        user_id,
        body,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


@router.get("/status", response_model=ContractStatusResponse)
async def get_contract_status(user_id: CurrentUserId, service: ContractServiceDep):
    return await service.get_status(user_id)
