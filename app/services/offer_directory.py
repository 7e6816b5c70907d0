"""
Offer Directory - read-only view of offers owned by merchant CRUD.

Changes made elsewhere take effect on the next issue or validate call.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Offer
from app.models.domain import OfferInfo


class OfferDirectory:
    """Look up offer state needed by issuance and validation."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_offer(self, offer_id: UUID) -> OfferInfo | None:
        """Return the offer's current state, or None if it does not exist."""
        stmt = select(Offer).where(Offer.id == offer_id)
        result = await self.session.execute(stmt)
        offer = result.scalar_one_or_none()
        if offer is None:
            return None
        return OfferInfo(
            offer_id=offer.id,
            merchant_id=offer.merchant_id,
            active=offer.active,
            per_day_cap=offer.per_day_cap,
            timezone=offer.timezone,
        )
