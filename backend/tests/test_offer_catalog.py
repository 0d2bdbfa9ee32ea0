import uuid

import pytest
from sqlalchemy import select

from db.models import LoyaltyAuditLog
from loyalty.errors import ImmutableOfferFieldError, LoyaltyError, OfferConflictError, OfferNotFoundError
from loyalty.offers import OfferCatalog


@pytest.fixture
def catalog(test_db, merchant_id, seeded_db):
    return OfferCatalog(test_db, merchant_id)


async def test_variation_lookup_fans_out_to_every_offer(catalog, seeded_db):
    offers = await catalog.get_offers_for_variation("VAR_SHARED")
    assert {o.offer_id for o in offers} == {seeded_db["small"].offer_id, seeded_db["large"].offer_id}

    assert await catalog.get_offers_for_variation("VAR_UNKNOWN") == []
    assert await catalog.get_all_qualifying_variation_ids() == {"VAR_SMALL", "VAR_LARGE", "VAR_SHARED"}


async def test_create_offer_rejects_active_duplicate(catalog):
    with pytest.raises(OfferConflictError):
        await catalog.create_offer(
            offer_name="Another Acana Small",
            brand_name="Acana",
            size_group="small",
            required_quantity=10,
        )


async def test_create_offer_writes_audit_row(catalog, test_db):
    offer = await catalog.create_offer(
        offer_name="Orijen Small Bag",
        brand_name="Orijen",
        size_group="small",
        required_quantity=8,
        created_by="staff-user-1",
    )

    assert offer.is_active
    assert offer.reward_quantity == 1
    audit = (
        await test_db.execute(select(LoyaltyAuditLog).where(LoyaltyAuditLog.offer_id == offer.offer_id))
    ).scalar_one()
    assert audit.action == "OFFER_CREATED"
    assert audit.user_id == "staff-user-1"


async def test_required_quantity_is_immutable(catalog, seeded_db):
    with pytest.raises(ImmutableOfferFieldError):
        await catalog.update_offer(seeded_db["small"].offer_id, required_quantity=4)


async def test_update_rejects_null_required_field(catalog, seeded_db):
    with pytest.raises(LoyaltyError):
        await catalog.update_offer(seeded_db["small"].offer_id, is_active=None)


async def test_update_unknown_offer(catalog):
    with pytest.raises(OfferNotFoundError):
        await catalog.update_offer(uuid.uuid4(), offer_name="nope")


async def test_deactivate_then_reactivate_checks_conflicts(catalog, seeded_db):
    small = seeded_db["small"]
    deactivated = await catalog.deactivate_offer(small.offer_id, user_id="staff-user-1")
    assert deactivated.is_active is False
    assert small.offer_id not in {o.offer_id for o in await catalog.get_active_offers()}
    assert len(await catalog.list_offers(include_inactive=True)) == 2

    replacement = await catalog.create_offer(
        offer_name="Acana Small v2",
        brand_name="Acana",
        size_group="small",
        required_quantity=4,
    )
    with pytest.raises(OfferConflictError):
        await catalog.update_offer(small.offer_id, is_active=True)
    assert replacement.is_active


async def test_add_and_remove_qualifying_variations(catalog, seeded_db):
    offer_id = seeded_db["small"].offer_id

    result = await catalog.add_qualifying_variations(
        offer_id,
        [
            {"variation_id": "VAR_SMALL"},
            {"variation_id": "VAR_NEW", "item_name": "Acana Senior", "variation_name": "2kg"},
        ],
    )
    assert result == {"added": ["VAR_NEW"], "skipped": ["VAR_SMALL"]}

    assert await catalog.remove_qualifying_variation(offer_id, "VAR_NEW")
    assert not await catalog.remove_qualifying_variation(offer_id, "VAR_NEW")
    active_ids = {v.variation_id for v in await catalog.get_qualifying_variations(offer_id)}
    assert "VAR_NEW" not in active_ids

    readded = await catalog.add_qualifying_variations(offer_id, [{"variation_id": "VAR_NEW"}])
    assert readded["added"] == ["VAR_NEW"]
    all_rows = await catalog.get_qualifying_variations(offer_id, include_inactive=True)
    assert [v.variation_id for v in all_rows].count("VAR_NEW") == 1


async def test_inactive_offer_variations_do_not_qualify(catalog, seeded_db):
    await catalog.deactivate_offer(seeded_db["large"].offer_id)

    offers = await catalog.get_offers_for_variation("VAR_SHARED")
    assert [o.offer_id for o in offers] == [seeded_db["small"].offer_id]
    assert "VAR_LARGE" not in await catalog.get_all_qualifying_variation_ids()
