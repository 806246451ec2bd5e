"""Tests de la machine d'états de livraison et de ses effets sur l'escrow."""

from datetime import timedelta

import pytest

import config as config_module
from conftest import deliver
from core.result import ErrorKind
from core.utils import as_utc
from models.common import DeliveryStatus
from services.delivery_service import ALLOWED_TRANSITIONS, ADMIN_TRANSITIONS, is_transition_allowed


def test_seller_graph_has_no_path_out_of_terminal_states():
    for terminal in (DeliveryStatus.DELIVERED, DeliveryStatus.CANCELED, DeliveryStatus.REFUNDED):
        assert ALLOWED_TRANSITIONS[terminal] == []
    assert not is_transition_allowed(DeliveryStatus.CANCELED, DeliveryStatus.REFUNDED, is_admin=False)
    assert is_transition_allowed(DeliveryStatus.CANCELED, DeliveryStatus.REFUNDED, is_admin=True)
    assert DeliveryStatus.RETURNED in ADMIN_TRANSITIONS[DeliveryStatus.DELIVERED]


@pytest.mark.asyncio
async def test_full_delivery_path_sets_dates_once(machine, sub_order, store_owner, mongo):
    result = await deliver(machine, sub_order["sub_order_id"], store_owner)

    assert result["previous_status"] == "out_for_delivery"
    assert result["escrow_effect"] == "held"
    doc = await mongo.sub_orders.find_one({"sub_order_id": sub_order["sub_order_id"]})
    assert doc["delivery_status"] == "delivered"
    assert as_utc(doc["return_window"]) - as_utc(doc["delivery_date"]) == timedelta(days=7)
    assert doc["escrow"]["held"] is True and doc["escrow"]["released"] is False
    # order_placed + 4 transitions
    assert [h["status"] for h in doc["status_history"]] == [
        "order_placed", "processing", "shipped", "out_for_delivery", "delivered",
    ]


@pytest.mark.asyncio
async def test_skipping_states_is_rejected_and_changes_nothing(machine, sub_order, store_owner, mongo):
    result = await machine.update_delivery_status(sub_order["sub_order_id"], DeliveryStatus.DELIVERED, store_owner)

    assert result.error.kind == ErrorKind.BAD_REQUEST
    doc = await mongo.sub_orders.find_one({"sub_order_id": sub_order["sub_order_id"]})
    assert doc["delivery_status"] == "order_placed"
    assert doc["delivery_date"] is None
    assert len(doc["status_history"]) == 1


@pytest.mark.asyncio
async def test_unknown_status_value_is_a_bad_request(machine, sub_order, store_owner):
    result = await machine.update_delivery_status(sub_order["sub_order_id"], "teleported", store_owner)
    assert result.error.kind == ErrorKind.BAD_REQUEST


@pytest.mark.asyncio
async def test_missing_sub_order_and_foreign_store(machine, sub_order, other_store_owner, store_owner):
    missing = await machine.update_delivery_status("sub_nope", DeliveryStatus.PROCESSING, store_owner)
    foreign = await machine.update_delivery_status(sub_order["sub_order_id"], DeliveryStatus.PROCESSING, other_store_owner)

    assert missing.error.kind == ErrorKind.NOT_FOUND
    assert foreign.error.kind == ErrorKind.FORBIDDEN


@pytest.mark.asyncio
async def test_cancel_flags_escrow_for_review(machine, sub_order, store_owner, mongo):
    result = await machine.update_delivery_status(sub_order["sub_order_id"], DeliveryStatus.CANCELED, store_owner)

    assert result.value["escrow_effect"] == "flagged_for_review"
    escrow = result.value["sub_order"]["escrow"]
    assert escrow["held"] is True and escrow["refunded"] is False
    assert escrow["refund_reason"] == "À examiner : Annulée"
    assert await mongo.wallet_transactions.count_documents({}) == 0


@pytest.mark.asyncio
async def test_refund_is_admin_only(machine, sub_order, store_owner, admin):
    sub_id = sub_order["sub_order_id"]
    await machine.update_delivery_status(sub_id, DeliveryStatus.CANCELED, store_owner, "Rupture de stock")

    by_store = await machine.update_delivery_status(sub_id, DeliveryStatus.REFUNDED, store_owner)
    by_admin = await machine.refund_sub_order(sub_id, admin)

    assert by_store.error.kind == ErrorKind.BAD_REQUEST
    escrow = by_admin.value["sub_order"]["escrow"]
    assert by_admin.value["escrow_effect"] == "refunded"
    assert escrow["refunded"] is True and escrow["held"] is False and escrow["released"] is False
    assert escrow["refund_reason"] == "Commande remboursée"


@pytest.mark.asyncio
async def test_refund_rejected_once_escrow_released(machine, sub_order, store_owner, admin, mongo):
    sub_id = sub_order["sub_order_id"]
    await machine.update_delivery_status(sub_id, DeliveryStatus.CANCELED, store_owner)
    await mongo.sub_orders.update_one({"sub_order_id": sub_id}, {"$set": {"escrow.released": True, "escrow.held": False}})

    result = await machine.refund_sub_order(sub_id, admin, "Trop tard")

    assert result.error.kind == ErrorKind.BAD_REQUEST


@pytest.mark.asyncio
async def test_redelivery_after_failure_sets_dates_and_clears_review_flag(machine, sub_order, store_owner, clock):
    sub_id = sub_order["sub_order_id"]
    for status in (DeliveryStatus.PROCESSING, DeliveryStatus.SHIPPED, DeliveryStatus.OUT_FOR_DELIVERY):
        assert (await machine.update_delivery_status(sub_id, status, store_owner)).ok
    failed = await machine.update_delivery_status(sub_id, DeliveryStatus.FAILED_DELIVERY, store_owner, "Absent")
    assert failed.value["sub_order"]["escrow"]["refund_reason"] == "Absent"
    assert failed.value["sub_order"]["delivery_date"] is None

    clock.advance(days=1)
    result = await machine.update_delivery_status(sub_id, DeliveryStatus.DELIVERED, store_owner)

    doc = result.value["sub_order"]
    assert result.value["escrow_effect"] == "held"
    assert doc["escrow"]["refund_reason"] is None
    assert doc["escrow"]["held"] is True
    assert as_utc(doc["delivery_date"]) == clock()
    assert as_utc(doc["return_window"]) == clock() + timedelta(days=7)


@pytest.mark.asyncio
async def test_admin_return_only_inside_window(machine, sub_order, store_owner, admin, clock):
    sub_id = sub_order["sub_order_id"]
    await deliver(machine, sub_id, store_owner)

    clock.advance(days=8)
    late = await machine.update_delivery_status(sub_id, DeliveryStatus.RETURNED, admin)
    assert late.error.kind == ErrorKind.BAD_REQUEST

    clock.advance(days=-5)
    in_time = await machine.update_delivery_status(sub_id, DeliveryStatus.RETURNED, admin, "Article défectueux")
    assert in_time.value["escrow_effect"] == "flagged_for_review"
    assert in_time.value["sub_order"]["escrow"]["refund_reason"] == "Article défectueux"


@pytest.mark.asyncio
async def test_buyer_and_admin_are_notified(machine, sub_order, store_owner, notifier, monkeypatch):
    monkeypatch.setattr(config_module.settings, "ADMIN_NOTIFICATION_EMAIL", "ops@example.com")
    sub_id = sub_order["sub_order_id"]

    await machine.update_delivery_status(sub_id, DeliveryStatus.PROCESSING, store_owner)
    await machine.update_delivery_status(sub_id, DeliveryStatus.CANCELED, store_owner, "Client injoignable")

    assert notifier.recipients == ["chioma@example.com", "chioma@example.com", "ops@example.com"]


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_transition(machine, sub_order, store_owner, notifier):
    async def broken(*args, **kwargs):
        raise RuntimeError("SMTP down")
    notifier.send = broken

    result = await machine.update_delivery_status(sub_order["sub_order_id"], DeliveryStatus.PROCESSING, store_owner)

    assert result.ok


@pytest.mark.asyncio
async def test_confirm_receipt_rules(machine, sub_order, store_owner, buyer, other_store_owner, mongo):
    sub_id = sub_order["sub_order_id"]
    too_early = await machine.confirm_receipt(sub_id, buyer)
    assert too_early.error.kind == ErrorKind.BAD_REQUEST

    await deliver(machine, sub_id, store_owner)
    assert (await machine.confirm_receipt(sub_id, other_store_owner)).error.kind == ErrorKind.FORBIDDEN

    confirmed = await machine.confirm_receipt(sub_id, buyer)
    assert confirmed.value["confirmed"] is True
    assert confirmed.value["auto_confirmed"] is False
    assert (await machine.confirm_receipt(sub_id, buyer)).error.kind == ErrorKind.BAD_REQUEST

    doc = await mongo.sub_orders.find_one({"sub_order_id": sub_id})
    assert doc["escrow"]["held"] is True
    assert doc["status_history"][-1]["notes"] == "Réception confirmée par l'acheteur"


@pytest.mark.asyncio
async def test_history_is_visible_to_store_and_admin_only(machine, sub_order, store_owner, admin, buyer):
    sub_id = sub_order["sub_order_id"]
    await machine.update_delivery_status(sub_id, DeliveryStatus.PROCESSING, store_owner, "Emballage")

    history = (await machine.get_status_history(sub_id, store_owner)).value
    assert history["status_history"][-1]["notes"] == "Emballage"
    assert (await machine.get_status_history(sub_id, admin)).ok
    assert (await machine.get_status_history(sub_id, buyer)).error.kind == ErrorKind.FORBIDDEN
    assert (await machine.get_sub_order(sub_id, buyer)).ok
