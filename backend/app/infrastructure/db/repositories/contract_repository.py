"""
Contract Signature Repository
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.infrastructure.db.models.contract_signature import ContractSignatureModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


class ContractSignatureRepository(BaseRepository[ContractSignatureModel]):
    """Signatures are inserted once and never modified."""

    def __init__(self, session: AsyncSession):
        super().__init__(ContractSignatureModel, session)

    async def get_latest_for_user(self, user_id: str) -> Optional[ContractSignatureModel]:
        stmt = (
            select(ContractSignatureModel)
            .where(ContractSignatureModel.user_id == user_id)
            .order_by(ContractSignatureModel.signed_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()
