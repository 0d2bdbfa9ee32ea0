"""
Loyalty Router — offer admin, order processing, progress and redemption.

The back-office surface over the loyalty engine:
  1. Admin configures offers and their qualifying variations
  2. Orders are processed (webhook path, manual re-process, or catchup)
  3. Staff look up customer progress and redeem earned rewards

All endpoints are scoped to the merchant in the caller's token.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_merchant_id, get_square_client, get_tenant_db
from core.config import get_settings
from db.models import utcnow
from loyalty.constants import CustomerSource, OrderSource, RedemptionType
from loyalty.errors import ImmutableOfferFieldError, LoyaltyError, OfferConflictError, OfferNotFoundError
from loyalty.offers import OfferCatalog, variation_to_dict
from loyalty.orders import OrderProcessor
from loyalty.purchases import PurchaseRecorder
from loyalty.rewards import RewardManager
from loyalty.windows import as_naive_utc

router = APIRouter(prefix="/api/v1/loyalty", tags=["loyalty"])


# ─── Schemas ────────────────────────────────────────────────────────────────

class OfferResponse(BaseModel):
    offer_id: UUID
    offer_name: str
    brand_name: str
    size_group: str
    required_quantity: int
    reward_quantity: int
    window_months: int
    reward_type: str
    reward_value: int | None
    reward_description: str | None
    description: str | None
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class OfferCreateRequest(BaseModel):
    offer_name: str = Field(..., min_length=1, max_length=255)
    brand_name: str = Field(..., min_length=1, max_length=255)
    size_group: str = Field(..., min_length=1, max_length=100)
    required_quantity: int = Field(..., gt=0)
    window_months: int = Field(12, gt=0)
    reward_type: str = "free_item"
    reward_value: int | None = Field(None, ge=0)
    reward_description: str | None = None
    description: str | None = None


class OfferUpdateRequest(BaseModel):
    offer_name: str | None = None
    window_months: int | None = Field(None, gt=0)
    reward_type: str | None = None
    reward_value: int | None = Field(None, ge=0)
    reward_description: str | None = None
    description: str | None = None
    is_active: bool | None = None
    required_quantity: int | None = None  # rejected: immutable after creation


class VariationRequest(BaseModel):
    variation_id: str = Field(..., min_length=1)
    item_id: str | None = None
    item_name: str | None = None
    variation_name: str | None = None
    sku: str | None = None


class AddVariationsRequest(BaseModel):
    variations: list[VariationRequest] = Field(..., min_length=1)


class ManualPurchaseRequest(BaseModel):
    """Manual purchase entry for receipts that never reached Square."""
    square_order_id: str = Field(..., min_length=1)
    square_customer_id: str = Field(..., min_length=1)
    variation_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    unit_price_cents: int = Field(..., ge=0)
    total_price_cents: int | None = Field(None, ge=0)
    purchased_at: datetime | None = None
    square_location_id: str | None = None


class ManualRefundRequest(BaseModel):
    square_refund_id: str = Field(..., min_length=1)
    square_order_id: str = Field(..., min_length=1)
    variation_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    unit_price_cents: int | None = Field(None, ge=0)
    refunded_at: datetime | None = None


class RedeemRequest(BaseModel):
    square_order_id: str | None = None
    square_customer_id: str | None = None
    redeemed_variation_id: str | None = None
    redeemed_value_cents: int | None = Field(None, ge=0)
    redemption_type: RedemptionType = RedemptionType.MANUAL_ADMIN
    admin_notes: str | None = None


class RevokeRequest(BaseModel):
    reason: str = Field(..., min_length=1)


def _raise_for_loyalty_error(exc: LoyaltyError):
    if isinstance(exc, OfferNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, OfferConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ImmutableOfferFieldError):
        raise HTTPException(status_code=422, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))


# ─── Offers ─────────────────────────────────────────────────────────────────

@router.get("/offers", response_model=list[OfferResponse])
async def list_offers(
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
):
    return await OfferCatalog(db, merchant_id).list_offers(include_inactive=include_inactive)


@router.post("/offers", response_model=OfferResponse, status_code=201)
async def create_offer(
    body: OfferCreateRequest,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
    user: dict = Depends(get_current_user),
):
    try:
        return await OfferCatalog(db, merchant_id).create_offer(**body.model_dump(), created_by=user.get("sub"))
    except LoyaltyError as exc:
        _raise_for_loyalty_error(exc)


@router.patch("/offers/{offer_id}", response_model=OfferResponse)
async def update_offer(
    offer_id: UUID,
    body: OfferUpdateRequest,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
    user: dict = Depends(get_current_user),
):
    """Update mutable offer fields. required_quantity is immutable."""
    try:
        return await OfferCatalog(db, merchant_id).update_offer(
            offer_id, user_id=user.get("sub"), **body.model_dump(exclude_unset=True)
        )
    except LoyaltyError as exc:
        _raise_for_loyalty_error(exc)


@router.post("/offers/{offer_id}/deactivate", response_model=OfferResponse)
async def deactivate_offer(
    offer_id: UUID,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
    user: dict = Depends(get_current_user),
):
    try:
        return await OfferCatalog(db, merchant_id).deactivate_offer(offer_id, user_id=user.get("sub"))
    except LoyaltyError as exc:
        _raise_for_loyalty_error(exc)


@router.get("/offers/{offer_id}/variations")
async def list_offer_variations(
    offer_id: UUID,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
):
    catalog = OfferCatalog(db, merchant_id)
    if await catalog.get_offer_by_id(offer_id) is None:
        raise HTTPException(status_code=404, detail="Offer not found")
    return [variation_to_dict(v) for v in await catalog.get_qualifying_variations(offer_id)]


@router.post("/offers/{offer_id}/variations")
async def add_offer_variations(
    offer_id: UUID,
    body: AddVariationsRequest,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
    user: dict = Depends(get_current_user),
):
    try:
        return await OfferCatalog(db, merchant_id).add_qualifying_variations(
            offer_id,
            [v.model_dump() for v in body.variations],
            user_id=user.get("sub"),
        )
    except LoyaltyError as exc:
        _raise_for_loyalty_error(exc)


@router.delete("/offers/{offer_id}/variations/{variation_id}", status_code=204)
async def remove_offer_variation(
    offer_id: UUID,
    variation_id: str,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
    user: dict = Depends(get_current_user),
):
    removed = await OfferCatalog(db, merchant_id).remove_qualifying_variation(
        offer_id, variation_id, user_id=user.get("sub")
    )
    if not removed:
        raise HTTPException(status_code=404, detail="Qualifying variation not found")


# ─── Orders & purchases ─────────────────────────────────────────────────────

@router.post("/orders/{order_id}/process")
async def process_order(
    order_id: str,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
    client=Depends(get_square_client),
):
    """Fetch an order from Square and run it through the loyalty pipeline."""
    order = await client.get_order(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found in Square")
    processor = OrderProcessor(
        db,
        merchant_id,
        order_source=client,
        directory=client,
        loyalty_bridge=client,
        cache_customer_details=get_settings().loyalty_cache_customer_details,
    )
    return await processor.process_order(order, source=OrderSource.MANUAL)


@router.get("/orders/{order_id}/trace")
async def get_order_trace(
    order_id: str,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
):
    return await OrderProcessor(db, merchant_id).get_order_trace(order_id)


@router.post("/purchases")
async def record_manual_purchase(
    body: ManualPurchaseRequest,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
):
    return await PurchaseRecorder(db, merchant_id).record_purchase(
        square_order_id=body.square_order_id,
        square_customer_id=body.square_customer_id,
        variation_id=body.variation_id,
        quantity=body.quantity,
        unit_price_cents=body.unit_price_cents,
        total_price_cents=body.total_price_cents,
        purchased_at=body.purchased_at or utcnow(),
        square_location_id=body.square_location_id,
        customer_source=CustomerSource.MANUAL.value,
    )


@router.post("/refunds")
async def record_manual_refund(
    body: ManualRefundRequest,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
):
    return await PurchaseRecorder(db, merchant_id).process_refund(
        square_refund_id=body.square_refund_id,
        square_order_id=body.square_order_id,
        variation_id=body.variation_id,
        quantity=body.quantity,
        unit_price_cents=body.unit_price_cents,
        refunded_at=body.refunded_at,
    )



# ─── Customers ──────────────────────────────────────────────────────────────

@router.get("/customers/{customer_id}/rewards")
async def get_customer_rewards(
    customer_id: str,
    include_redeemed: bool = False,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
):
    return await RewardManager(db, merchant_id).get_customer_rewards(customer_id, include_redeemed=include_redeemed)


@router.get("/customers/{customer_id}/stats")
async def get_customer_reward_stats(
    customer_id: str,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
):
    return await RewardManager(db, merchant_id).get_reward_stats(customer_id)


@router.get("/customers/{customer_id}/progress")
async def get_customer_progress(
    customer_id: str,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
):
    """Per-offer progress and reward counts for the customer profile."""
    return await PurchaseRecorder(db, merchant_id).get_customer_offer_progress(customer_id)


@router.get("/customers/{customer_id}/offers/{offer_id}/progress")
async def get_customer_offer_progress(
    customer_id: str,
    offer_id: UUID,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
):
    progress = await PurchaseRecorder(db, merchant_id).get_current_progress(customer_id, offer_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="Offer not found")
    progress["redeemable_reward"] = await RewardManager(db, merchant_id).get_redeemable_reward(customer_id, offer_id)
    return progress


@router.get("/customers/{customer_id}/purchases")
async def get_customer_purchases(
    customer_id: str,
    offer_id: UUID | None = None,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
):
    return await PurchaseRecorder(db, merchant_id).get_purchase_history(customer_id, offer_id=offer_id, limit=limit)


# ─── Rewards & redemptions ──────────────────────────────────────────────────

@router.get("/rewards/{reward_id}")
async def get_reward(
    reward_id: UUID,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
):
    reward = await RewardManager(db, merchant_id).get_reward_by_id(reward_id)
    if reward is None:
        raise HTTPException(status_code=404, detail="Reward not found")
    return reward


@router.post("/rewards/{reward_id}/redeem")
async def redeem_reward(
    reward_id: UUID,
    body: RedeemRequest,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
    user: dict = Depends(get_current_user),
):
    """
    Redeem an earned reward. Failures come back as the structured result:
    404 for reward_not_found, 409 for every other rejection.
    """
    result = await RewardManager(db, merchant_id).redeem_reward(
        reward_id,
        square_order_id=body.square_order_id,
        redeemed_variation_id=body.redeemed_variation_id,
        redeemed_value_cents=body.redeemed_value_cents,
        redeemed_by_user_id=user.get("sub"),
        admin_notes=body.admin_notes,
        redemption_type=body.redemption_type,
        square_customer_id=body.square_customer_id,
    )
    if not result["success"]:
        status_code = 404 if result["reason"] == "reward_not_found" else 409
        raise HTTPException(status_code=status_code, detail=jsonable_encoder(result))
    return result


@router.post("/rewards/{reward_id}/revoke")
async def revoke_reward(
    reward_id: UUID,
    body: RevokeRequest,
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
    user: dict = Depends(get_current_user),
):
    result = await RewardManager(db, merchant_id).revoke_reward(reward_id, body.reason, user_id=user.get("sub"))
    if not result["success"]:
        status_code = 404 if result["reason"] == "reward_not_found" else 409
        raise HTTPException(status_code=status_code, detail=jsonable_encoder(result))
    return result


@router.get("/redemptions")
async def list_redemptions(
    customer_id: str | None = None,
    offer_id: UUID | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: UUID = Depends(get_merchant_id),
):
    return await RewardManager(db, merchant_id).list_redemptions(
        square_customer_id=customer_id,
        offer_id=offer_id,
        start=as_naive_utc(start) if start else None,
        end=as_naive_utc(end) if end else None,
        limit=limit,
    )
