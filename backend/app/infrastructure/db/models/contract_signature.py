"""
Contract Signature Database Model

Immutable record of a signed subscription agreement, including the exact
contract text shown to the user.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Text
from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel, JSONType, UTCDateTime, utc_now


class ContractSignatureModel(BaseModel, table=True):
    """Append-only; the latest row per user is authoritative."""

    __tablename__ = "contract_signatures"

    user_id: str = Field(index=True, max_length=36)
    plan_id: str = Field(max_length=20)

    # Signer identity
    full_name: str = Field(max_length=255)
    email: str = Field(max_length=320)
    phone: Optional[str] = Field(default=None, max_length=50)
    id_number: Optional[str] = Field(default=None, max_length=20)
    address: Optional[str] = Field(default=None, max_length=500)

    # What was signed
    contract_html: str = Field(sa_type=Text)
    contract_version: str = Field(max_length=20)
    signature_image: str = Field(sa_type=Text)
    agreed_to_terms: bool = Field(default=False)
    agreed_to_privacy: bool = Field(default=False)

    # Client metadata
    ip_address: Optional[str] = Field(default=None, max_length=64)
    user_agent: Optional[str] = Field(default=None, max_length=1024)
    browser_info: Optional[dict[str, Any]] = Field(default=None, sa_type=JSONType)

    signed_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime, nullable=False)
