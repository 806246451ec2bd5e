"""
Service commandes : enregistrement d'un paiement validé (une sous-commande par boutique).
"""
import logging
import uuid
from datetime import datetime
from typing import Callable

from pymongo.errors import PyMongoError

from core.result import Result
from core.utils import utcnow
from database import db, run_in_transaction, session_kwargs
from models.common import Actor, DeliveryStatus, DELIVERY_STATUS_LABELS
from models.order import Order, OrderCreate, SubOrder
from services.delivery_service import history_entry

logger = logging.getLogger(__name__)


def _order_id() -> str:
    return f"ord_{uuid.uuid4().hex[:12]}"


def _sub_order_id() -> str:
    return f"sub_{uuid.uuid4().hex[:12]}"


async def create_order(data: OrderCreate, clock: Callable[[], datetime] = utcnow) -> Result[dict]:
    """Crée la commande et ses sous-commandes, escrow bloqué, statut 'order_placed'."""
    if sum(s.total_amount for s in data.sub_orders) != data.total_amount:
        return Result.bad_request("Le total de la commande ne correspond pas à la somme des sous-commandes")

    store_ids = [s.store_id for s in data.sub_orders]
    if len(set(store_ids)) != len(store_ids):
        return Result.bad_request("Une seule sous-commande par boutique")
    known = await db.stores.count_documents({"store_id": {"$in": store_ids}})
    if known != len(store_ids):
        return Result.bad_request("Boutique inconnue dans la commande")

    now = clock()
    order_id = _order_id()
    sub_orders = [
        SubOrder(
            sub_order_id=_sub_order_id(),
            order_id=order_id,
            store_id=s.store_id,
            buyer=data.buyer,
            products=s.products,
            total_amount=s.total_amount,
            shipping_method=s.shipping_method,
            status_history=[history_entry(
                DeliveryStatus.ORDER_PLACED.value, now,
                DELIVERY_STATUS_LABELS[DeliveryStatus.ORDER_PLACED], data.buyer.user_id,
            )],
            created_at=now,
            updated_at=now,
        ).to_mongo()
        for s in data.sub_orders
    ]

    order = Order(
        order_id=order_id,
        buyer=data.buyer,
        store_ids=store_ids,
        sub_order_ids=[s["sub_order_id"] for s in sub_orders],
        total_amount=data.total_amount,
        shipping_address=data.shipping_address,
        payment_reference=data.payment_reference,
        created_at=now,
        updated_at=now,
    ).to_mongo()

    async def work(session) -> Result[dict]:
        await db.sub_orders.insert_many([dict(s) for s in sub_orders], **session_kwargs(session))
        await db.orders.insert_one(dict(order), **session_kwargs(session))
        return Result.success({**order, "sub_orders": sub_orders})

    try:
        result = await run_in_transaction(work)
    except PyMongoError:
        logger.exception("Erreur base de données pendant la création de commande")
        return Result.internal()

    if result.ok:
        logger.info(f"Commande créée : {order_id} ({len(sub_orders)} sous-commande(s), total={data.total_amount})")
    return result


async def get_order(order_id: str, actor: Actor) -> Result[dict]:
    order = await db.orders.find_one({"order_id": order_id}, {"_id": 0})
    if not order:
        return Result.not_found("Commande introuvable")
    if not actor.is_admin and order["buyer"]["user_id"] != actor.user_id:
        return Result.forbidden("Cette commande ne vous appartient pas")
    cursor = db.sub_orders.find({"order_id": order_id}, {"_id": 0})
    sub_orders = {s["sub_order_id"]: s async for s in cursor}
    order["sub_orders"] = [sub_orders[i] for i in order["sub_order_ids"] if i in sub_orders]
    return Result.success(order)
