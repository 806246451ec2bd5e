"""Fixtures communes : base Mongo en mémoire, horloge contrôlable, notifier factice."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

import database
from config import SettlementConfig
from models.common import Actor, DeliveryStatus, UserRole
from models.order import BuyerSnapshot, OrderCreate, OrderProduct, ShippingMethod, SubOrderCreate
from models.wallet import TransactionSource
from services.confirmation_service import AutoConfirmationSweep
from services.delivery_service import DeliveryStateMachine
from services.escrow_service import EscrowReleaseService
from services.order_service import create_order
from services.wallet_service import WalletLedger
from services.withdrawal_service import WithdrawalEngine

STORE_ID = "sto_test0001"
OTHER_STORE_ID = "sto_test0002"
ACCOUNT_NUMBER = "0123456789"


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, message, ref_type=None, ref_id=None):
        self.sent.append((message, ref_type, ref_id))

    @property
    def recipients(self) -> list[str]:
        return [m.recipient for m, _, _ in self.sent]


@pytest.fixture
def mongo(monkeypatch):
    instance = AsyncMongoMockClient()["settlement_test"]
    monkeypatch.setattr(database, "_db_instance", instance)
    monkeypatch.setattr(database, "client", None)
    return instance


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def config():
    return SettlementConfig()


@pytest.fixture
def ledger(mongo, config, clock):
    return WalletLedger(config, clock=clock)


@pytest.fixture
def machine(mongo, config, notifier, clock):
    return DeliveryStateMachine(config, notifier=notifier, clock=clock)


@pytest.fixture
def sweep(mongo, config, clock):
    return AutoConfirmationSweep(config, clock=clock)


@pytest.fixture
def withdrawals(ledger, config, notifier, clock):
    return WithdrawalEngine(ledger, config, notifier=notifier, clock=clock)


@pytest.fixture
def escrow(ledger, config, notifier, clock):
    return EscrowReleaseService(ledger, config, notifier=notifier, clock=clock)


@pytest.fixture
def store_owner():
    return Actor(user_id="usr_store01", role=UserRole.STORE_OWNER, name="Tunde", store_id=STORE_ID)


@pytest.fixture
def other_store_owner():
    return Actor(user_id="usr_store02", role=UserRole.STORE_OWNER, name="Bola", store_id=OTHER_STORE_ID)


@pytest.fixture
def admin():
    return Actor(user_id="usr_admin01", role=UserRole.ADMIN, name="Amaka")


@pytest.fixture
def buyer():
    return Actor(user_id="usr_buyer01", role=UserRole.BUYER, name="Chioma Obi", email="chioma@example.com")


@pytest_asyncio.fixture
async def stores(mongo):
    for store_id, name in ((STORE_ID, "Boutique Ikeja"), (OTHER_STORE_ID, "Boutique Yaba")):
        await mongo.stores.insert_one({
            "store_id":    store_id,
            "name":        name,
            "store_email": f"{store_id}@example.com",
            "payout_accounts": [{
                "payout_method": "bank_transfer",
                "bank_details": {
                    "bank_name":           "Demo Bank",
                    "account_number":      ACCOUNT_NUMBER,
                    "account_holder_name": f"Titulaire {name}",
                    "bank_code":           58,
                },
            }],
        })
    await mongo.users.insert_one({"user_id": "usr_admin01", "name": "Amaka", "email": "amaka@example.com",
                                  "role": "admin", "is_active": True})


async def fund(ledger: WalletLedger, amount: int, store_id: str = STORE_ID) -> None:
    """Crédite le wallet comme le ferait une libération d'escrow."""
    result = await ledger.credit(store_id, amount, TransactionSource.ORDER, "Ventes de test")
    assert result.ok


def order_payload(buyer: Actor, amounts: dict[str, int], shipping: int = 0) -> OrderCreate:
    return OrderCreate(
        buyer=BuyerSnapshot(user_id=buyer.user_id, name=buyer.name, email=buyer.email),
        shipping_address={"address": "12 Allen Avenue, Ikeja", "postal_code": "100271"},
        total_amount=sum(amounts.values()),
        sub_orders=[
            SubOrderCreate(
                store_id=store_id,
                products=[OrderProduct(product_id=f"prd_{store_id}", name="Sac en cuir", quantity=1, unit_price=amount)],
                total_amount=amount,
                shipping_method=ShippingMethod(name="Standard", price=shipping) if shipping else None,
            )
            for store_id, amount in amounts.items()
        ],
    )


@pytest_asyncio.fixture
async def sub_order(stores, buyer, clock):
    """Une sous-commande de 300 000 kobo pour STORE_ID, livraison ₦15."""
    result = await create_order(order_payload(buyer, {STORE_ID: 300000}, shipping=1500), clock=clock)
    assert result.ok
    return result.value["sub_orders"][0]


async def deliver(machine: DeliveryStateMachine, sub_order_id: str, actor: Actor):
    for status in (DeliveryStatus.PROCESSING, DeliveryStatus.SHIPPED,
                   DeliveryStatus.OUT_FOR_DELIVERY, DeliveryStatus.DELIVERED):
        result = await machine.update_delivery_status(sub_order_id, status, actor)
        assert result.ok, result.error
    return result.value
