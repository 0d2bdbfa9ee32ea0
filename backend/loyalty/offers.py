"""
Offer catalog: read-side lookups used on the order path, plus the admin
operations that create offers and maintain their qualifying variations.

Eligibility is explicit membership only. A variation counts toward an
offer when an active QualifyingVariation row links it to an active offer;
nothing is inferred from category or brand metadata.
"""

import uuid
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import LoyaltyOffer, QualifyingVariation
from loyalty.audit import log_audit_event
from loyalty.constants import AuditAction
from loyalty.errors import ImmutableOfferFieldError, LoyaltyError, OfferConflictError, OfferNotFoundError

logger = structlog.get_logger()

UPDATABLE_OFFER_FIELDS = {
    "offer_name",
    "window_months",
    "reward_type",
    "reward_value",
    "reward_description",
    "description",
    "is_active",
}
REQUIRED_OFFER_FIELDS = {"offer_name", "window_months", "reward_type", "is_active"}


def variation_to_dict(variation: QualifyingVariation) -> dict[str, Any]:
    return {
        "qualifying_variation_id": variation.qualifying_variation_id,
        "offer_id": variation.offer_id,
        "variation_id": variation.variation_id,
        "item_id": variation.item_id,
        "item_name": variation.item_name,
        "variation_name": variation.variation_name,
        "sku": variation.sku,
        "is_active": variation.is_active,
    }


class OfferCatalog:
    """Merchant-scoped access to loyalty offers and qualifying variations."""

    def __init__(self, db: AsyncSession, merchant_id: uuid.UUID):
        if not merchant_id:
            raise ValueError("merchant_id is required for OfferCatalog")
        self.db = db
        self.merchant_id = merchant_id

    # ── Reads ──────────────────────────────────────────────────────────

    async def get_active_offers(self) -> list[LoyaltyOffer]:
        result = await self.db.execute(
            select(LoyaltyOffer)
            .where(LoyaltyOffer.merchant_id == self.merchant_id, LoyaltyOffer.is_active.is_(True))
            .order_by(LoyaltyOffer.brand_name, LoyaltyOffer.size_group)
        )
        return list(result.scalars().all())

    async def list_offers(self, include_inactive: bool = False) -> list[LoyaltyOffer]:
        if not include_inactive:
            return await self.get_active_offers()
        result = await self.db.execute(
            select(LoyaltyOffer)
            .where(LoyaltyOffer.merchant_id == self.merchant_id)
            .order_by(LoyaltyOffer.is_active.desc(), LoyaltyOffer.brand_name, LoyaltyOffer.size_group)
        )
        return list(result.scalars().all())

    async def get_all_qualifying_variation_ids(self) -> set[str]:
        """Union of active variations across all active offers."""
        result = await self.db.execute(
            select(QualifyingVariation.variation_id)
            .join(LoyaltyOffer, LoyaltyOffer.offer_id == QualifyingVariation.offer_id)
            .where(
                QualifyingVariation.merchant_id == self.merchant_id,
                QualifyingVariation.is_active.is_(True),
                LoyaltyOffer.merchant_id == self.merchant_id,
                LoyaltyOffer.is_active.is_(True),
            )
        )
        return set(result.scalars().all())

    async def get_offers_for_variation(self, variation_id: str) -> list[LoyaltyOffer]:
        """Every active offer this variation contributes to."""
        result = await self.db.execute(
            select(LoyaltyOffer)
            .join(QualifyingVariation, QualifyingVariation.offer_id == LoyaltyOffer.offer_id)
            .where(
                QualifyingVariation.merchant_id == self.merchant_id,
                QualifyingVariation.variation_id == variation_id,
                QualifyingVariation.is_active.is_(True),
                LoyaltyOffer.merchant_id == self.merchant_id,
                LoyaltyOffer.is_active.is_(True),
            )
            .order_by(LoyaltyOffer.created_at)
        )
        return list(result.scalars().unique().all())

    async def get_offer_by_id(self, offer_id: uuid.UUID) -> LoyaltyOffer | None:
        result = await self.db.execute(
            select(LoyaltyOffer).where(
                LoyaltyOffer.merchant_id == self.merchant_id,
                LoyaltyOffer.offer_id == offer_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_qualifying_variations(self, offer_id: uuid.UUID, include_inactive: bool = False) -> list[QualifyingVariation]:
        query = select(QualifyingVariation).where(
            QualifyingVariation.merchant_id == self.merchant_id,
            QualifyingVariation.offer_id == offer_id,
        )
        if not include_inactive:
            query = query.where(QualifyingVariation.is_active.is_(True))
        result = await self.db.execute(query.order_by(QualifyingVariation.item_name))
        return list(result.scalars().all())

    # ── Admin ──────────────────────────────────────────────────────────

    async def _require_offer(self, offer_id: uuid.UUID) -> LoyaltyOffer:
        offer = await self.get_offer_by_id(offer_id)
        if offer is None:
            raise OfferNotFoundError(f"Offer {offer_id} not found")
        return offer

    async def _ensure_no_active_duplicate(self, brand_name: str, size_group: str, exclude_id: uuid.UUID | None = None):
        query = select(LoyaltyOffer.offer_id).where(
            LoyaltyOffer.merchant_id == self.merchant_id,
            LoyaltyOffer.brand_name == brand_name,
            LoyaltyOffer.size_group == size_group,
            LoyaltyOffer.is_active.is_(True),
        )
        if exclude_id is not None:
            query = query.where(LoyaltyOffer.offer_id != exclude_id)
        if (await self.db.execute(query)).first() is not None:
            raise OfferConflictError(f"An active offer already exists for {brand_name} {size_group}")

    async def create_offer(
        self,
        *,
        offer_name: str,
        brand_name: str,
        size_group: str,
        required_quantity: int,
        window_months: int = 12,
        reward_type: str = "free_item",
        reward_value: int | None = None,
        reward_description: str | None = None,
        description: str | None = None,
        created_by: str | None = None,
    ) -> LoyaltyOffer:
        if required_quantity <= 0:
            raise ValueError("required_quantity must be positive")
        if window_months <= 0:
            raise ValueError("window_months must be positive")
        await self._ensure_no_active_duplicate(brand_name, size_group)

        offer = LoyaltyOffer(
            merchant_id=self.merchant_id,
            offer_name=offer_name,
            brand_name=brand_name,
            size_group=size_group,
            required_quantity=required_quantity,
            reward_quantity=1,
            window_months=window_months,
            reward_type=reward_type,
            reward_value=reward_value,
            reward_description=reward_description,
            description=description,
            is_active=True,
            created_by=created_by,
        )
        self.db.add(offer)
        await self.db.flush()
        log_audit_event(
            self.db,
            merchant_id=self.merchant_id,
            action=AuditAction.OFFER_CREATED,
            offer_id=offer.offer_id,
            new_quantity=required_quantity,
            triggered_by="ADMIN",
            user_id=created_by,
            details={"brand_name": brand_name, "size_group": size_group, "window_months": window_months},
        )
        await self.db.commit()
        logger.info(
            "loyalty.offer.created",
            merchant_id=str(self.merchant_id),
            offer_id=str(offer.offer_id),
            brand_name=brand_name,
            size_group=size_group,
        )
        return offer

    async def update_offer(self, offer_id: uuid.UUID, user_id: str | None = None, **changes: Any) -> LoyaltyOffer:
        if "required_quantity" in changes:
            raise ImmutableOfferFieldError("required_quantity cannot be changed after creation")
        unknown = set(changes) - UPDATABLE_OFFER_FIELDS
        if unknown:
            raise ValueError(f"Unknown offer fields: {sorted(unknown)}")
        nulled = sorted(key for key in REQUIRED_OFFER_FIELDS if key in changes and changes[key] is None)
        if nulled:
            raise LoyaltyError(f"Fields cannot be null: {nulled}")

        offer = await self._require_offer(offer_id)
        if changes.get("is_active") and not offer.is_active:
            await self._ensure_no_active_duplicate(offer.brand_name, offer.size_group, exclude_id=offer.offer_id)
        if changes.get("window_months") is not None and changes["window_months"] <= 0:
            raise ValueError("window_months must be positive")

        applied = {}
        for key, value in changes.items():
            if getattr(offer, key) != value:
                setattr(offer, key, value)
                applied[key] = value
        if not applied:
            return offer

        action = AuditAction.OFFER_DEACTIVATED if applied.get("is_active") is False else AuditAction.OFFER_UPDATED
        log_audit_event(
            self.db,
            merchant_id=self.merchant_id,
            action=action,
            offer_id=offer.offer_id,
            triggered_by="ADMIN",
            user_id=user_id,
            details={"changes": applied},
        )
        await self.db.commit()
        logger.info("loyalty.offer.updated", merchant_id=str(self.merchant_id), offer_id=str(offer_id), fields=sorted(applied))
        return offer

    async def deactivate_offer(self, offer_id: uuid.UUID, user_id: str | None = None) -> LoyaltyOffer:
        """Soft-deactivate; offers are never deleted once rewards reference them."""
        return await self.update_offer(offer_id, user_id=user_id, is_active=False)

    async def add_qualifying_variations(
        self,
        offer_id: uuid.UUID,
        variations: list[dict[str, Any]],
        user_id: str | None = None,
    ) -> dict[str, list[str]]:
        """Attach catalog variations to an offer. Already-active links are skipped."""
        offer = await self._require_offer(offer_id)
        existing = {
            v.variation_id: v
            for v in await self.get_qualifying_variations(offer.offer_id, include_inactive=True)
        }

        added: list[str] = []
        skipped: list[str] = []
        for item in variations:
            variation_id = item["variation_id"]
            current = existing.get(variation_id)
            if current is not None and current.is_active:
                skipped.append(variation_id)
                continue
            if current is not None:
                current.is_active = True
            else:
                current = QualifyingVariation(
                    merchant_id=self.merchant_id,
                    offer_id=offer.offer_id,
                    variation_id=variation_id,
                    item_id=item.get("item_id"),
                    item_name=item.get("item_name"),
                    variation_name=item.get("variation_name"),
                    sku=item.get("sku"),
                    is_active=True,
                )
                self.db.add(current)
                existing[variation_id] = current
            added.append(variation_id)
            log_audit_event(
                self.db,
                merchant_id=self.merchant_id,
                action=AuditAction.VARIATION_ADDED,
                offer_id=offer.offer_id,
                triggered_by="ADMIN",
                user_id=user_id,
                details={"variation_id": variation_id, "item_name": item.get("item_name")},
            )

        await self.db.commit()
        logger.info(
            "loyalty.offer.variations_added",
            merchant_id=str(self.merchant_id),
            offer_id=str(offer_id),
            added=len(added),
            skipped=len(skipped),
        )
        return {"added": added, "skipped": skipped}

    async def remove_qualifying_variation(self, offer_id: uuid.UUID, variation_id: str, user_id: str | None = None) -> bool:
        result = await self.db.execute(
            select(QualifyingVariation).where(
                QualifyingVariation.merchant_id == self.merchant_id,
                QualifyingVariation.offer_id == offer_id,
                QualifyingVariation.variation_id == variation_id,
                QualifyingVariation.is_active.is_(True),
            )
        )
        variation = result.scalar_one_or_none()
        if variation is None:
            return False

        variation.is_active = False
        log_audit_event(
            self.db,
            merchant_id=self.merchant_id,
            action=AuditAction.VARIATION_REMOVED,
            offer_id=offer_id,
            triggered_by="ADMIN",
            user_id=user_id,
            details={"variation_id": variation_id},
        )
        await self.db.commit()
        return True
