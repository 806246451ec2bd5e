"""Tests de la file des remboursements côté admin."""

import pytest
import pytest_asyncio

from conftest import OTHER_STORE_ID, STORE_ID, deliver, order_payload
from core.result import ErrorKind
from models.common import DeliveryStatus
from services import delivery_service
from services.order_service import create_order


async def _place(buyer, clock, store_id, amount, shipping=0) -> str:
    result = await create_order(order_payload(buyer, {store_id: amount}, shipping=shipping), clock=clock)
    assert result.ok
    return result.value["sub_orders"][0]["sub_order_id"]


@pytest_asyncio.fixture
async def queue(machine, stores, buyer, clock, store_owner, other_store_owner, admin, mongo):
    """Une annulation (Ikeja), un échec de livraison (Yaba), une livraison et un remboursement hors file."""
    await mongo.users.insert_one({"user_id": buyer.user_id, "name": buyer.name, "email": buyer.email,
                                  "phone": "+2348012345678", "role": "buyer", "is_active": True})

    canceled = await _place(buyer, clock, STORE_ID, 300000, shipping=1500)
    await machine.update_delivery_status(canceled, DeliveryStatus.CANCELED, store_owner, "Rupture de stock")

    clock.advance(days=3)
    failed = await _place(buyer, clock, OTHER_STORE_ID, 120000)
    for status in (DeliveryStatus.PROCESSING, DeliveryStatus.SHIPPED,
                   DeliveryStatus.OUT_FOR_DELIVERY, DeliveryStatus.FAILED_DELIVERY):
        assert (await machine.update_delivery_status(failed, status, other_store_owner)).ok

    delivered = await _place(buyer, clock, STORE_ID, 80000)
    await deliver(machine, delivered, store_owner)

    refunded = await _place(buyer, clock, STORE_ID, 50000)
    await machine.update_delivery_status(refunded, DeliveryStatus.CANCELED, store_owner)
    assert (await machine.refund_sub_order(refunded, admin)).ok

    return {"canceled": canceled, "failed": failed, "delivered": delivered, "refunded": refunded}


@pytest.mark.asyncio
async def test_queue_holds_only_unrefunded_review_cases(queue):
    result = (await delivery_service.list_refund_queue()).value

    assert [s["sub_order_id"] for s in result["sub_orders"]] == [queue["failed"], queue["canceled"]]
    assert result["summary"] == {"total_pending_refunds": 2, "total_refund_amount": 301500 + 120000}
    first = result["sub_orders"][0]
    assert first["store_name"] == "Boutique Yaba"
    assert first["refund_amount"] == 120000
    assert "status_history" not in first


@pytest.mark.asyncio
async def test_queue_filters(queue, clock):
    canceled = (await delivery_service.list_refund_queue(delivery_status=DeliveryStatus.CANCELED)).value
    by_store = (await delivery_service.list_refund_queue(store_id=OTHER_STORE_ID)).value
    recent = (await delivery_service.list_refund_queue(from_date=clock())).value
    by_store_name = (await delivery_service.list_refund_queue(search="ikeja")).value
    by_buyer = (await delivery_service.list_refund_queue(search="CHIOMA")).value

    assert [s["sub_order_id"] for s in canceled["sub_orders"]] == [queue["canceled"]]
    assert [s["sub_order_id"] for s in by_store["sub_orders"]] == [queue["failed"]]
    assert [s["sub_order_id"] for s in recent["sub_orders"]] == [queue["failed"]]
    assert [s["sub_order_id"] for s in by_store_name["sub_orders"]] == [queue["canceled"]]
    assert by_buyer["pagination"]["total"] == 2
    assert canceled["summary"]["total_refund_amount"] == 301500


@pytest.mark.asyncio
async def test_queue_rejects_status_outside_review(queue):
    result = await delivery_service.list_refund_queue(delivery_status=DeliveryStatus.DELIVERED)
    assert result.error.kind == ErrorKind.BAD_REQUEST


@pytest.mark.asyncio
async def test_refund_detail(queue):
    detail = (await delivery_service.get_refund_detail(queue["canceled"])).value

    assert detail["refund_amount"] == 301500
    assert detail["store"]["name"] == "Boutique Ikeja"
    assert detail["customer"]["phone"] == "+2348012345678"
    assert detail["order"]["order_id"] == detail["sub_order"]["order_id"]
    assert detail["sub_order"]["products"][0]["total_price"] == 300000
    assert detail["sub_order"]["escrow"]["refund_reason"] == "Rupture de stock"


@pytest.mark.asyncio
async def test_refund_detail_outside_queue_is_not_found(queue):
    for key in ("delivered", "refunded"):
        result = await delivery_service.get_refund_detail(queue[key])
        assert result.error.kind == ErrorKind.NOT_FOUND
    assert (await delivery_service.get_refund_detail("sub_missing")).error.kind == ErrorKind.NOT_FOUND
