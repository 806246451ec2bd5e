"""Tests HTTP : authentification, routage et traduction des erreurs des moteurs."""

import httpx
import pytest
import pytest_asyncio

from conftest import ACCOUNT_NUMBER, OTHER_STORE_ID, STORE_ID, fund, order_payload
from core.rate_limit import limiter
from core.security import create_access_token
from main import app


def _auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}


STORE = _auth("usr_store01")
BUYER = _auth("usr_buyer01")
ADMIN = _auth("usr_admin01")


@pytest_asyncio.fixture
async def api(mongo, stores, monkeypatch):
    monkeypatch.setattr(limiter, "enabled", False)
    await mongo.users.insert_many([
        {"user_id": "usr_store01", "name": "Tunde", "role": "store_owner", "store_id": STORE_ID, "is_active": True},
        {"user_id": "usr_buyer01", "name": "Chioma Obi", "email": "chioma@example.com", "role": "buyer",
         "is_active": True},
        {"user_id": "usr_ghost01", "name": "Ancien", "role": "buyer", "is_active": False},
    ])
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _place_order(api, buyer) -> str:
    payload = order_payload(buyer, {STORE_ID: 300000}).model_dump(mode="json")
    resp = await api.post("/api/admin/orders", json=payload, headers=ADMIN)
    assert resp.status_code == 201, resp.text
    return resp.json()["sub_order_ids"][0]


@pytest.mark.asyncio
async def test_health(api):
    resp = await api.get("/health")
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_authentication_is_required(api):
    assert (await api.get("/api/wallets/me")).status_code == 401
    assert (await api.get("/api/wallets/me", headers={"Authorization": "Bearer nope"})).status_code == 401
    assert (await api.get("/api/wallets/me", headers=_auth("usr_ghost01"))).status_code == 403


@pytest.mark.asyncio
async def test_admin_routes_reject_store_owner(api):
    assert (await api.get("/api/admin/withdrawals", headers=STORE)).status_code == 403
    assert (await api.get("/api/wallets/me", headers=BUYER)).status_code == 403


@pytest.mark.asyncio
async def test_store_drives_delivery_and_buyer_confirms(api, buyer):
    sub_id = await _place_order(api, buyer)

    skipped = await api.put(f"/api/store/orders/{sub_id}/status", json={"delivery_status": "delivered"}, headers=STORE)
    assert skipped.status_code == 400
    assert skipped.json()["detail"]["kind"] == "bad_request"

    for status in ("processing", "shipped", "out_for_delivery", "delivered"):
        resp = await api.put(f"/api/store/orders/{sub_id}/status", json={"delivery_status": status}, headers=STORE)
        assert resp.status_code == 200, resp.text
    assert resp.json()["escrow_effect"] == "held"

    confirmed = await api.post(f"/api/orders/sub-orders/{sub_id}/confirm-receipt", headers=BUYER)
    history = await api.get(f"/api/store/orders/{sub_id}/history", headers=STORE)

    assert confirmed.json()["customer_confirmed_delivery"]["confirmed"] is True
    assert len(history.json()["status_history"]) == 6


@pytest.mark.asyncio
async def test_unknown_status_is_a_validation_error(api, buyer):
    sub_id = await _place_order(api, buyer)
    resp = await api.put(f"/api/store/orders/{sub_id}/status", json={"delivery_status": "lost"}, headers=STORE)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_withdrawal_round_trip(api, ledger):
    await fund(ledger, 300000)

    fees = await api.get("/api/wallets/me/withdrawals/fees", params={"amount": 150000}, headers=STORE)
    created = await api.post(
        "/api/wallets/me/withdrawals",
        json={"amount": 150000, "bank_account_id": ACCOUNT_NUMBER},
        headers=STORE,
    )
    assert created.status_code == 201, created.text
    request = created.json()
    assert fees.json()["net_amount"] == request["net_amount"] == 150000 - 7250

    wallet = (await api.get("/api/wallets/me", headers=STORE)).json()
    assert (wallet["balance"], wallet["pending"]) == (150000, 150000)

    approved = await api.post(
        f"/api/admin/withdrawals/{request['request_id']}/approve",
        json={"transaction_reference": "TRF-100"},
        headers=ADMIN,
    )
    again = await api.post(
        f"/api/admin/withdrawals/{request['request_id']}/reject",
        json={"reason": "trop tard"},
        headers=ADMIN,
    )
    assert approved.status_code == 200
    assert again.status_code == 400

    mine = await api.get(f"/api/wallets/me/withdrawals/{request['request_id']}", headers=STORE)
    assert mine.json()["bank_details"]["account_number"].endswith("6789")
    foreign = await api.get(f"/api/wallets/stores/{OTHER_STORE_ID}/withdrawals/{request['request_id']}", headers=STORE)
    assert foreign.status_code == 403

    txs = (await api.get("/api/wallets/me/transactions", params={"type": "debit"}, headers=STORE)).json()
    assert txs["transactions"][0]["related_document"]["status"] == "approved"

    report = (await api.get(f"/api/admin/wallets/{STORE_ID}/reconcile", headers=ADMIN)).json()
    assert report["consistent"] is True


@pytest.mark.asyncio
async def test_withdrawal_below_minimum(api, ledger):
    await fund(ledger, 300000)
    resp = await api.post(
        "/api/wallets/me/withdrawals",
        json={"amount": 50000, "bank_account_id": ACCOUNT_NUMBER},
        headers=STORE,
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_admin_queues(api, buyer):
    await _place_order(api, buyer)

    sweep = await api.post("/api/admin/delivery-confirmations/sweep", headers=ADMIN)
    queue = await api.get("/api/admin/delivery-confirmations", headers=ADMIN)
    releases = await api.get("/api/admin/escrow/release-queue", headers=ADMIN)
    missing = await api.post("/api/admin/delivery-confirmations/sub_missing/auto-confirm", headers=ADMIN)

    assert sweep.json() == {"confirmed": 0}
    assert queue.json()["pagination"]["total"] == 0
    assert releases.json()["pagination"]["total"] == 0
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_reading_wallet_does_not_create_it(api, mongo):
    resp = await api.get("/api/wallets/me", headers=STORE)

    assert resp.status_code == 404
    assert resp.json()["detail"]["kind"] == "not_found"
    assert await mongo.wallets.count_documents({}) == 0


@pytest.mark.asyncio
async def test_store_listing_and_fund_release_routes(api, buyer):
    sub_id = await _place_order(api, buyer)

    listing = await api.get("/api/store/orders", params={"search": "cuir"}, headers=STORE)
    releases = await api.get("/api/store/orders/fund-releases", params={"status": "pending"}, headers=STORE)
    summary = await api.get("/api/store/orders/fund-releases/summary", headers=STORE)
    detail = await api.get(f"/api/store/orders/fund-releases/{sub_id}", headers=STORE)
    bad_sort = await api.get("/api/store/orders/fund-releases", params={"sort": "random"}, headers=STORE)

    assert [s["sub_order_id"] for s in listing.json()["sub_orders"]] == [sub_id]
    assert releases.json()["fund_releases"][0]["sub_order_id"] == sub_id
    assert summary.json()["summary"]["pending"]["count"] == 1
    assert detail.json()["status"] == "pending"
    assert bad_sort.status_code == 422
    assert (await api.get("/api/store/orders", headers=BUYER)).status_code == 403


@pytest.mark.asyncio
async def test_admin_refund_routes(api, buyer):
    sub_id = await _place_order(api, buyer)
    await api.put(f"/api/store/orders/{sub_id}/status", json={"delivery_status": "canceled"}, headers=STORE)

    queue = await api.get("/api/admin/refunds", params={"search": "chioma"}, headers=ADMIN)
    detail = await api.get(f"/api/admin/refunds/{sub_id}", headers=ADMIN)
    wrong_status = await api.get("/api/admin/refunds", params={"delivery_status": "shipped"}, headers=ADMIN)

    assert queue.json()["summary"] == {"total_pending_refunds": 1, "total_refund_amount": 300000}
    assert detail.json()["store"]["name"] == "Boutique Ikeja"
    assert wrong_status.status_code == 400
    assert (await api.get("/api/admin/refunds", headers=STORE)).status_code == 403
