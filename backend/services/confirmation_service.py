"""
Auto-confirmation des livraisons : filet de sécurité pour les sous-commandes
livrées depuis plus de AUTO_CONFIRM_GRACE_DAYS jours que l'acheteur n'a pas confirmées.

Ne touche qu'au drapeau de confirmation : l'escrow reste bloqué jusqu'à la
libération après la fenêtre de retour.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from config import SettlementConfig
from core.result import Result
from core.utils import as_utc, bson_date, date_range_filter, page_skip, pagination, search_regex, utcnow
from database import db, update_guarded
from models.common import Actor, DeliveryStatus, SYSTEM_ACTOR_ID
from services.delivery_service import history_entry

logger = logging.getLogger(__name__)

AUTO_CONFIRM_NOTE = "Livraison confirmée automatiquement par le système."

ELIGIBLE_FIELDS = {
    "_id": 0, "sub_order_id": 1, "order_id": 1, "store_id": 1, "buyer": 1,
    "total_amount": 1, "delivery_status": 1, "delivery_date": 1, "return_window": 1,
}


def eligible_filter(cutoff: datetime) -> dict:
    """Livrée, ni confirmée ni auto-confirmée, livrée au plus tard à `cutoff`."""
    return {
        "delivery_status": DeliveryStatus.DELIVERED.value,
        "customer_confirmed_delivery.confirmed":      {"$ne": True},
        "customer_confirmed_delivery.auto_confirmed": {"$ne": True},
        "delivery_date": {"$lte": bson_date(cutoff)},
    }


def eligible_list_filter(
    cutoff: datetime,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    search: Optional[str] = None,
) -> dict:
    query = eligible_filter(cutoff)
    bounds = date_range_filter(from_date, to_date)
    if "$gte" in bounds:
        query["delivery_date"]["$gte"] = bounds["$gte"]
    if "$lte" in bounds:
        query["delivery_date"]["$lte"] = min(bounds["$lte"], query["delivery_date"]["$lte"])
    if search:
        query["$or"] = [
            {"buyer.name": search_regex(search)},
            {"buyer.email": search_regex(search)},
        ]
    return query


class AutoConfirmationSweep:

    def __init__(self, config: SettlementConfig, clock: Callable[[], datetime] = utcnow):
        self.config = config
        self.clock = clock

    def cutoff(self) -> datetime:
        return self.clock() - timedelta(days=self.config.auto_confirm_grace_days)

    async def auto_confirm(self, sub_order_id: str, actor: Optional[Actor] = None) -> Result[dict]:
        """
        Une seule écriture conditionnelle : idempotent, et sûr face aux appels concurrents
        (un seul gagne, les autres reçoivent NotFound).
        """
        now = self.clock()
        actor_id = actor.user_id if actor else SYSTEM_ACTOR_ID
        updated = await update_guarded(
            db.sub_orders,
            {"sub_order_id": sub_order_id, **eligible_filter(self.cutoff())},
            {
                "$set": {
                    "customer_confirmed_delivery.auto_confirmed": True,
                    "customer_confirmed_delivery.confirmed_at":   now,
                    "updated_at": now,
                },
                "$push": {"status_history": history_entry(
                    DeliveryStatus.DELIVERED.value, now, AUTO_CONFIRM_NOTE, actor_id,
                )},
            },
        )
        if updated is None:
            return Result.not_found("Sous-commande introuvable ou non éligible à l'auto-confirmation")
        logger.info(f"Auto-confirmation : sous-commande={sub_order_id} par {actor_id}")
        return Result.success(updated["customer_confirmed_delivery"])

    async def list_eligible(
        self,
        page: int = 1,
        limit: int = 20,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        search: Optional[str] = None,
    ) -> Result[dict]:
        """File d'attente admin, la plus ancienne livraison d'abord."""
        query = eligible_list_filter(self.cutoff(), from_date, to_date, search)
        cursor = db.sub_orders.find(query, ELIGIBLE_FIELDS).sort("delivery_date", 1) \
            .skip(page_skip(page, limit)).limit(limit)
        items = await cursor.to_list(length=limit)
        total = await db.sub_orders.count_documents(query)

        now = self.clock()
        for item in items:
            item["days_since_delivery"] = (now - as_utc(item["delivery_date"])).days
        return Result.success({"sub_orders": items, "pagination": pagination(page, limit, total)})

    async def run_sweep(self, limit: Optional[int] = None) -> int:
        """Auto-confirme toutes les sous-commandes éligibles (FIFO). Retourne le nombre traité."""
        cursor = db.sub_orders.find(eligible_filter(self.cutoff()), {"_id": 0, "sub_order_id": 1}) \
            .sort("delivery_date", 1)
        if limit:
            cursor = cursor.limit(limit)

        confirmed = 0
        for doc in await cursor.to_list(length=limit):
            result = await self.auto_confirm(doc["sub_order_id"])
            if result.ok:
                confirmed += 1
        if confirmed:
            logger.info(f"Sweep auto-confirmation : {confirmed} sous-commande(s) confirmée(s)")
        return confirmed
