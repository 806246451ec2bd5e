"""Tests des vues boutique : liste des sous-commandes et versements des fonds."""

import pytest
import pytest_asyncio

from conftest import OTHER_STORE_ID, STORE_ID, deliver, order_payload
from core.result import ErrorKind
from models.common import DeliveryStatus
from models.order import FundReleaseStatus
from services.delivery_service import list_store_sub_orders
from services.order_service import create_order


async def _place(buyer, clock, store_id, amount, shipping=0) -> str:
    result = await create_order(order_payload(buyer, {store_id: amount}, shipping=shipping), clock=clock)
    assert result.ok
    return result.value["sub_orders"][0]["sub_order_id"]


# ── Liste des sous-commandes ──────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_store_listing_is_scoped_and_newest_first(stores, buyer, clock, machine, store_owner):
    first = await _place(buyer, clock, STORE_ID, 100000)
    clock.advance(hours=2)
    second = await _place(buyer, clock, STORE_ID, 200000)
    await _place(buyer, clock, OTHER_STORE_ID, 300000)
    await machine.update_delivery_status(second, DeliveryStatus.PROCESSING, store_owner)

    everything = (await list_store_sub_orders(STORE_ID)).value
    processing = (await list_store_sub_orders(STORE_ID, delivery_status=DeliveryStatus.PROCESSING)).value
    by_id = (await list_store_sub_orders(STORE_ID, search=first)).value
    by_product = (await list_store_sub_orders(STORE_ID, search="cuir")).value
    paged = (await list_store_sub_orders(STORE_ID, page=2, limit=1)).value

    assert [s["sub_order_id"] for s in everything["sub_orders"]] == [second, first]
    assert [s["sub_order_id"] for s in processing["sub_orders"]] == [second]
    assert [s["sub_order_id"] for s in by_id["sub_orders"]] == [first]
    assert by_product["pagination"]["total"] == 2
    assert [s["sub_order_id"] for s in paged["sub_orders"]] == [first]
    assert paged["pagination"]["has_prev_page"] is True


@pytest.mark.asyncio
async def test_store_listing_date_range(stores, buyer, clock):
    start = clock()
    await _place(buyer, clock, STORE_ID, 100000)
    clock.advance(days=2)
    later = await _place(buyer, clock, STORE_ID, 100000)

    recent = (await list_store_sub_orders(STORE_ID, from_date=clock())).value
    inverted = await list_store_sub_orders(STORE_ID, from_date=clock(), to_date=start)

    assert [s["sub_order_id"] for s in recent["sub_orders"]] == [later]
    assert inverted.error.kind == ErrorKind.BAD_REQUEST


# ── Versements ────────────────────────────────────────────────────────────────
@pytest_asyncio.fixture
async def releases(stores, buyer, clock, machine, escrow, store_owner, admin):
    """Un versement de chaque statut pour STORE_ID."""
    released = await _place(buyer, clock, STORE_ID, 300000, shipping=1500)
    ready = await _place(buyer, clock, STORE_ID, 100000)
    await deliver(machine, released, store_owner)
    await deliver(machine, ready, store_owner)
    clock.advance(days=8)
    assert (await escrow.release_escrow(released, admin)).ok

    clock.advance(hours=1)
    pending = await _place(buyer, clock, STORE_ID, 600000)
    refunded = await _place(buyer, clock, STORE_ID, 200000)
    await machine.update_delivery_status(refunded, DeliveryStatus.CANCELED, store_owner)
    await machine.refund_sub_order(refunded, admin)
    return {"released": released, "ready": ready, "pending": pending, "refunded": refunded}


@pytest.mark.asyncio
async def test_fund_release_summary_by_status(releases, escrow):
    summary = (await escrow.fund_release_summary(STORE_ID)).value["summary"]

    assert summary == {
        "pending":  {"count": 1, "total_amount": 550000},   # 600 000 - (5 % + ₦200)
        "ready":    {"count": 1, "total_amount": 85000},    # 100 000 - (5 % + ₦100)
        "released": {"count": 1, "total_amount": 286500},   # 285 000 + livraison
        "refunded": {"count": 1, "total_amount": 180000},
    }
    empty = (await escrow.fund_release_summary(OTHER_STORE_ID)).value["summary"]
    assert all(s == {"count": 0, "total_amount": 0} for s in empty.values())


@pytest.mark.asyncio
async def test_fund_release_list_filters_and_sorts(releases, escrow):
    ready = (await escrow.list_store_fund_releases(STORE_ID, status=FundReleaseStatus.READY)).value
    by_amount = (await escrow.list_store_fund_releases(STORE_ID, sort="amount")).value
    newest = (await escrow.list_store_fund_releases(STORE_ID, sort="newest", limit=2)).value

    assert [r["sub_order_id"] for r in ready["fund_releases"]] == [releases["ready"]]
    assert [r["total_amount"] for r in by_amount["fund_releases"]] == [600000, 300000, 200000, 100000]
    assert {r["sub_order_id"] for r in newest["fund_releases"]} == {releases["pending"], releases["refunded"]}
    assert newest["pagination"]["total"] == 4

    released = next(r for r in by_amount["fund_releases"] if r["status"] == "released")
    assert released["settlement"]["commission"] == 15000
    assert released["released_at"] is not None


@pytest.mark.asyncio
async def test_fund_release_list_rejects_unknown_sort(releases, escrow):
    result = await escrow.list_store_fund_releases(STORE_ID, sort="random")
    assert result.error.kind == ErrorKind.BAD_REQUEST


@pytest.mark.asyncio
async def test_pending_becomes_ready_when_window_closes(stores, buyer, clock, machine, escrow, store_owner):
    sub_id = await _place(buyer, clock, STORE_ID, 100000)
    await deliver(machine, sub_id, store_owner)

    before = (await escrow.get_fund_release(sub_id, store_owner)).value
    clock.advance(days=7, seconds=1)
    after = (await escrow.get_fund_release(sub_id, store_owner)).value

    assert before["status"] == "pending"
    assert after["status"] == "ready"
    assert after["scheduled_for"] is not None


@pytest.mark.asyncio
async def test_fund_release_detail_is_scoped(releases, escrow, other_store_owner, admin):
    assert (await escrow.get_fund_release(releases["ready"], other_store_owner)).error.kind == ErrorKind.FORBIDDEN
    assert (await escrow.get_fund_release(releases["ready"], admin)).value["status"] == "ready"
    assert (await escrow.get_fund_release("sub_missing", admin)).error.kind == ErrorKind.NOT_FOUND
