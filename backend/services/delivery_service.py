"""
Service livraison : machine d'états des sous-commandes, historique, effets escrow.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from config import SettlementConfig
from core.result import Result
from core.utils import as_utc, date_range_filter, page_skip, pagination, search_regex, utcnow
from database import db, update_guarded
from models.common import Actor, DeliveryStatus, DELIVERY_STATUS_LABELS, StatusHistoryEntry
from services.notification_service import admin_delivery_alert, delivery_status_email, notify_safely

logger = logging.getLogger(__name__)

# ── Machine d'états ───────────────────────────────────────────────────────────
ALLOWED_TRANSITIONS: dict[DeliveryStatus, list[DeliveryStatus]] = {
    DeliveryStatus.ORDER_PLACED: [
        DeliveryStatus.PROCESSING,
        DeliveryStatus.CANCELED,
    ],
    DeliveryStatus.PROCESSING: [
        DeliveryStatus.SHIPPED,
        DeliveryStatus.CANCELED,
    ],
    DeliveryStatus.SHIPPED: [
        DeliveryStatus.OUT_FOR_DELIVERY,
    ],
    DeliveryStatus.OUT_FOR_DELIVERY: [
        DeliveryStatus.DELIVERED,
        DeliveryStatus.FAILED_DELIVERY,
    ],
    DeliveryStatus.FAILED_DELIVERY: [
        DeliveryStatus.DELIVERED,       # nouvelle tentative réussie
    ],
    # États terminaux côté boutique
    DeliveryStatus.DELIVERED: [],
    DeliveryStatus.CANCELED:  [],
    DeliveryStatus.RETURNED:  [],
    DeliveryStatus.REFUNDED:  [],
}

# Transitions réservées aux admins (remboursement, retour accepté)
ADMIN_TRANSITIONS: dict[DeliveryStatus, list[DeliveryStatus]] = {
    DeliveryStatus.CANCELED:        [DeliveryStatus.REFUNDED],
    DeliveryStatus.RETURNED:        [DeliveryStatus.REFUNDED],
    DeliveryStatus.FAILED_DELIVERY: [DeliveryStatus.REFUNDED],
    DeliveryStatus.DELIVERED:       [DeliveryStatus.RETURNED],
}

REVIEW_STATUSES = {DeliveryStatus.CANCELED, DeliveryStatus.RETURNED, DeliveryStatus.FAILED_DELIVERY}
ADMIN_ALERT_STATUSES = {DeliveryStatus.CANCELED, DeliveryStatus.FAILED_DELIVERY}

ESCROW_HELD = "held"
ESCROW_FLAGGED = "flagged_for_review"
ESCROW_REFUNDED = "refunded"


def is_transition_allowed(current: DeliveryStatus, new: DeliveryStatus, is_admin: bool) -> bool:
    if new in ALLOWED_TRANSITIONS.get(current, []):
        return True
    return is_admin and new in ADMIN_TRANSITIONS.get(current, [])


def history_entry(status: str, timestamp: datetime, notes: str, actor_id: Optional[str]) -> dict:
    return StatusHistoryEntry(status=status, timestamp=timestamp, notes=notes, actor_id=actor_id).to_mongo()


def _default_note(previous: DeliveryStatus, new: DeliveryStatus) -> str:
    return f"Statut passé de « {DELIVERY_STATUS_LABELS[previous]} » à « {DELIVERY_STATUS_LABELS[new]} »"


def can_view_sub_order(actor: Actor, sub_order: dict) -> bool:
    return (
        actor.is_admin
        or actor.owns_store(sub_order["store_id"])
        or (sub_order.get("buyer") or {}).get("user_id") == actor.user_id
    )


class DeliveryStateMachine:

    def __init__(self, config: SettlementConfig, notifier=None, clock: Callable[[], datetime] = utcnow):
        self.config = config
        self.notifier = notifier
        self.clock = clock

    async def update_delivery_status(
        self,
        sub_order_id: str,
        new_status: Union[DeliveryStatus, str],
        actor: Actor,
        notes: Optional[str] = None,
    ) -> Result[dict]:
        """
        Transition officielle d'une sous-commande.

        Toutes les vérifications précèdent l'écriture. L'écriture unique change le
        statut, applique l'effet escrow et ajoute l'entrée d'historique ; elle est
        conditionnée au statut lu (Conflict si un autre écrivain est passé avant).
        """
        try:
            new_status = DeliveryStatus(new_status)
        except ValueError:
            return Result.bad_request(f"Statut de livraison inconnu : {new_status}")

        sub_order = await db.sub_orders.find_one({"sub_order_id": sub_order_id}, {"_id": 0})
        if not sub_order:
            return Result.not_found("Sous-commande introuvable")
        if not (actor.is_admin or actor.owns_store(sub_order["store_id"])):
            return Result.forbidden("Cette sous-commande n'appartient pas à votre boutique")

        current = DeliveryStatus(sub_order["delivery_status"])
        if not is_transition_allowed(current, new_status, actor.is_admin):
            return Result.bad_request(
                f"Transition interdite : {current.value} → {new_status.value}"
            )

        escrow = sub_order.get("escrow") or {}
        now = self.clock()
        if new_status == DeliveryStatus.REFUNDED and escrow.get("released"):
            return Result.bad_request("L'escrow a déjà été versé à la boutique, remboursement impossible")
        if current == DeliveryStatus.DELIVERED and new_status == DeliveryStatus.RETURNED:
            window = as_utc(sub_order.get("return_window"))
            if escrow.get("released") or window is None or now > window:
                return Result.bad_request("La fenêtre de retour est fermée pour cette sous-commande")

        updates: dict = {"delivery_status": new_status.value, "updated_at": now}
        escrow_effect = ESCROW_HELD

        if new_status == DeliveryStatus.DELIVERED:
            # Aucun chemin du graphe ne revient à Delivered : dates posées une seule fois
            updates["delivery_date"] = now
            updates["return_window"] = now + timedelta(days=self.config.return_window_days)
            updates["escrow.refund_reason"] = None
        elif new_status in REVIEW_STATUSES:
            updates["escrow.refund_reason"] = notes or f"À examiner : {DELIVERY_STATUS_LABELS[new_status]}"
            escrow_effect = ESCROW_FLAGGED
        elif new_status == DeliveryStatus.REFUNDED:
            updates.update({
                "escrow.refunded":      True,
                "escrow.held":          False,
                "escrow.released":      False,
                "escrow.refund_reason": notes or "Commande remboursée",
            })
            escrow_effect = ESCROW_REFUNDED

        entry = history_entry(new_status.value, now, notes or _default_note(current, new_status), actor.user_id)
        updated = await update_guarded(
            db.sub_orders,
            {"sub_order_id": sub_order_id, "delivery_status": current.value},
            {"$set": updates, "$push": {"status_history": entry}},
        )
        if updated is None:
            return Result.conflict("Le statut a été modifié entre-temps, rechargez la sous-commande")

        logger.info(
            f"Sous-commande {sub_order_id} : {current.value} → {new_status.value} "
            f"(acteur={actor.user_id}, escrow={escrow_effect})"
        )

        await notify_safely(self.notifier, delivery_status_email(updated, new_status, notes),
                            ref_type="sub_order", ref_id=sub_order_id)
        if new_status in ADMIN_ALERT_STATUSES:
            await notify_safely(self.notifier, admin_delivery_alert(updated, new_status, notes),
                                ref_type="sub_order", ref_id=sub_order_id)

        return Result.success({
            "previous_status": current.value,
            "new_status":      new_status.value,
            "escrow_effect":   escrow_effect,
            "sub_order":       updated,
        })

    async def refund_sub_order(self, sub_order_id: str, admin: Actor, reason: Optional[str] = None) -> Result[dict]:
        """Remboursement explicite (admin) d'une sous-commande annulée, retournée ou non livrée."""
        if not admin.is_admin:
            return Result.forbidden()
        return await self.update_delivery_status(sub_order_id, DeliveryStatus.REFUNDED, admin, reason)

    async def confirm_receipt(self, sub_order_id: str, buyer: Actor) -> Result[dict]:
        """L'acheteur confirme lui-même la réception. L'escrow n'est pas touché."""
        sub_order = await db.sub_orders.find_one({"sub_order_id": sub_order_id}, {"_id": 0})
        if not sub_order:
            return Result.not_found("Sous-commande introuvable")
        if (sub_order.get("buyer") or {}).get("user_id") != buyer.user_id:
            return Result.forbidden("Cette commande ne vous appartient pas")
        if sub_order["delivery_status"] != DeliveryStatus.DELIVERED.value:
            return Result.bad_request("La commande n'a pas encore été livrée")
        if (sub_order.get("customer_confirmed_delivery") or {}).get("confirmed"):
            return Result.bad_request("Réception déjà confirmée")

        now = self.clock()
        updated = await update_guarded(
            db.sub_orders,
            {
                "sub_order_id": sub_order_id,
                "delivery_status": DeliveryStatus.DELIVERED.value,
                "customer_confirmed_delivery.confirmed": {"$ne": True},
            },
            {
                "$set": {
                    "customer_confirmed_delivery.confirmed":    True,
                    "customer_confirmed_delivery.confirmed_at": now,
                    "updated_at": now,
                },
                "$push": {"status_history": history_entry(
                    DeliveryStatus.DELIVERED.value, now, "Réception confirmée par l'acheteur", buyer.user_id,
                )},
            },
        )
        if updated is None:
            return Result.conflict("La sous-commande a été modifiée entre-temps")
        logger.info(f"Réception confirmée : sous-commande={sub_order_id} acheteur={buyer.user_id}")
        return Result.success(updated["customer_confirmed_delivery"])

    async def get_sub_order(self, sub_order_id: str, actor: Actor) -> Result[dict]:
        sub_order = await db.sub_orders.find_one({"sub_order_id": sub_order_id}, {"_id": 0})
        if not sub_order:
            return Result.not_found("Sous-commande introuvable")
        if not can_view_sub_order(actor, sub_order):
            return Result.forbidden()
        return Result.success(sub_order)

    async def get_status_history(self, sub_order_id: str, actor: Actor) -> Result[dict]:
        sub_order = await db.sub_orders.find_one(
            {"sub_order_id": sub_order_id},
            {"_id": 0, "sub_order_id": 1, "store_id": 1, "delivery_status": 1, "status_history": 1},
        )
        if not sub_order:
            return Result.not_found("Sous-commande introuvable")
        if not (actor.is_admin or actor.owns_store(sub_order["store_id"])):
            return Result.forbidden()
        return Result.success({
            "sub_order_id":    sub_order_id,
            "delivery_status": sub_order["delivery_status"],
            "status_history":  sub_order.get("status_history", []),
        })


# ── Requêtes de liste ─────────────────────────────────────────────────────────
LIST_FIELDS = {"_id": 0, "status_history": 0}


async def list_store_sub_orders(
    store_id: str,
    page: int = 1,
    limit: int = 20,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    delivery_status: Optional[DeliveryStatus] = None,
    search: Optional[str] = None,
) -> Result[dict]:
    """Sous-commandes d'une boutique, les plus récentes d'abord."""
    if from_date and to_date and as_utc(from_date) > as_utc(to_date):
        return Result.bad_request("La date de début doit précéder la date de fin")

    query: dict = {"store_id": store_id}
    created = date_range_filter(from_date, to_date)
    if created:
        query["created_at"] = created
    if delivery_status:
        query["delivery_status"] = DeliveryStatus(delivery_status).value
    if search and search.strip():
        pattern = search_regex(search)
        query["$or"] = [
            {"sub_order_id": pattern},
            {"order_id": pattern},
            {"buyer.name": pattern},
            {"buyer.email": pattern},
            {"products.name": pattern},
        ]

    cursor = db.sub_orders.find(query, LIST_FIELDS).sort("created_at", -1) \
        .skip(page_skip(page, limit)).limit(limit)
    items = await cursor.to_list(length=limit)
    total = await db.sub_orders.count_documents(query)
    return Result.success({"sub_orders": items, "pagination": pagination(page, limit, total)})


def refund_queue_filter() -> dict:
    """Annulée, retournée ou non livrée, fonds toujours bloqués."""
    return {
        "delivery_status": {"$in": sorted(s.value for s in REVIEW_STATUSES)},
        "escrow.held":     True,
        "escrow.released": {"$ne": True},
        "escrow.refunded": {"$ne": True},
    }


async def list_refund_queue(
    page: int = 1,
    limit: int = 20,
    delivery_status: Optional[DeliveryStatus] = None,
    store_id: Optional[str] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    search: Optional[str] = None,
) -> Result[dict]:
    """
    File des remboursements à traiter par l'admin, la plus récente d'abord.

    La recherche porte sur le nom et l'email de l'acheteur ainsi que sur le nom
    et l'email de la boutique. La synthèse reprend les mêmes filtres que la liste.
    """
    query = refund_queue_filter()
    if delivery_status:
        delivery_status = DeliveryStatus(delivery_status)
        if delivery_status not in REVIEW_STATUSES:
            return Result.bad_request(f"Statut hors file de remboursement : {delivery_status.value}")
        query["delivery_status"] = delivery_status.value
    if store_id:
        query["store_id"] = store_id
    created = date_range_filter(from_date, to_date)
    if created:
        query["created_at"] = created
    if search and search.strip():
        pattern = search_regex(search)
        matching_stores = [
            s["store_id"] async for s in db.stores.find(
                {"$or": [{"name": pattern}, {"store_email": pattern}]}, {"_id": 0, "store_id": 1},
            )
        ]
        query["$or"] = [
            {"buyer.name": pattern},
            {"buyer.email": pattern},
            {"store_id": {"$in": matching_stores}},
        ]

    cursor = db.sub_orders.find(query, LIST_FIELDS).sort("created_at", -1) \
        .skip(page_skip(page, limit)).limit(limit)
    items = await cursor.to_list(length=limit)
    total = await db.sub_orders.count_documents(query)

    store_names = await _store_names({i["store_id"] for i in items})
    for item in items:
        item["store_name"] = store_names.get(item["store_id"])
        item["refund_amount"] = refund_amount(item)

    total_refund_amount = 0
    async for doc in db.sub_orders.find(query, {"_id": 0, "total_amount": 1, "shipping_method": 1}):
        total_refund_amount += refund_amount(doc)

    return Result.success({
        "sub_orders": items,
        "pagination": pagination(page, limit, total),
        "summary": {
            "total_pending_refunds": total,
            "total_refund_amount":   total_refund_amount,
        },
    })


def refund_amount(sub_order: dict) -> int:
    """L'acheteur récupère les articles et la livraison."""
    return sub_order["total_amount"] + (sub_order.get("shipping_method") or {}).get("price", 0)


async def _store_names(store_ids: set) -> dict:
    if not store_ids:
        return {}
    names = {}
    async for s in db.stores.find({"store_id": {"$in": list(store_ids)}}, {"_id": 0, "store_id": 1, "name": 1}):
        names[s["store_id"]] = s["name"]
    return names


async def get_refund_detail(sub_order_id: str) -> Result[dict]:
    """Détail admin d'une sous-commande de la file : commande, acheteur, boutique, articles."""
    sub_order = await db.sub_orders.find_one({"sub_order_id": sub_order_id, **refund_queue_filter()}, {"_id": 0})
    if not sub_order:
        return Result.not_found("Sous-commande absente de la file de remboursement")

    order = await db.orders.find_one(
        {"order_id": sub_order["order_id"]},
        {"_id": 0, "order_id": 1, "total_amount": 1, "shipping_address": 1, "payment_reference": 1, "created_at": 1},
    )
    store = await db.stores.find_one(
        {"store_id": sub_order["store_id"]}, {"_id": 0, "store_id": 1, "name": 1, "store_email": 1},
    )
    buyer = sub_order.get("buyer") or {}
    customer = await db.users.find_one(
        {"user_id": buyer.get("user_id")}, {"_id": 0, "user_id": 1, "name": 1, "email": 1, "phone": 1},
    ) or buyer

    products = [{**p, "total_price": p["unit_price"] * p["quantity"]} for p in sub_order.get("products", [])]
    return Result.success({
        "sub_order":     {**sub_order, "products": products},
        "order":         order,
        "customer":      customer,
        "store":         store,
        "refund_amount": refund_amount(sub_order),
    })
