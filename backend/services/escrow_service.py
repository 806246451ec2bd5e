"""
Service escrow : libération des fonds d'une sous-commande vers le wallet boutique
une fois la fenêtre de retour expirée, commission plateforme déduite.
"""
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional

from pymongo.errors import PyMongoError

from config import SettlementConfig
from core.result import Result
from core.utils import as_utc, bson_date, page_skip, pagination, short_ref, utcnow
from database import db, run_in_transaction, update_guarded
from models.common import Actor, DeliveryStatus
from models.order import FundReleaseStatus, Settlement
from models.wallet import RelatedDocumentType, TransactionSource
from services.notification_service import escrow_released_email, notify_safely
from services.wallet_service import WalletLedger

logger = logging.getLogger(__name__)


def calculate_commission(amount: int, config: SettlementConfig) -> dict:
    """
    Commission = 5 % du montant + frais fixe par palier :
      < seuil bas           → + frais bas (₦100)
      seuil bas ≤ x < haut  → rien
      ≥ seuil haut          → + frais haut (₦200)
    Plafonnée au montant : la part boutique n'est jamais négative.
    """
    percentage_fee = int(
        (Decimal(amount) * Decimal(str(config.commission_rate_percent)) / Decimal(100))
        .quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )
    flat_fee = 0
    if amount < config.commission_lower_threshold:
        flat_fee = config.commission_flat_fee_low
    elif amount >= config.commission_upper_threshold:
        flat_fee = config.commission_flat_fee_high

    commission = min(percentage_fee + flat_fee, amount)
    return {
        "commission":             commission,
        "settle_amount":          amount - commission,
        "applied_percentage_fee": percentage_fee,
        "applied_flat_fee":       flat_fee,
    }


def release_eligible_filter(now: datetime) -> dict:
    """Livrée, escrow bloqué ni versé ni remboursé, fenêtre de retour expirée."""
    return {
        "delivery_status": DeliveryStatus.DELIVERED.value,
        "escrow.held":     True,
        "escrow.released": {"$ne": True},
        "escrow.refunded": {"$ne": True},
        "return_window":   {"$lt": bson_date(now)},
    }


def fund_release_filter(status: FundReleaseStatus, now: datetime) -> dict:
    """Statut de versement exprimé sur l'état escrow des sous-commandes. Les quatre filtres sont disjoints."""
    if status == FundReleaseStatus.RELEASED:
        return {"escrow.released": True}
    if status == FundReleaseStatus.REFUNDED:
        return {"escrow.refunded": True}
    if status == FundReleaseStatus.READY:
        return release_eligible_filter(now)
    return {
        "escrow.held":     True,
        "escrow.released": {"$ne": True},
        "escrow.refunded": {"$ne": True},
        "$or": [
            {"delivery_status": {"$ne": DeliveryStatus.DELIVERED.value}},
            {"return_window": {"$gte": bson_date(now)}},
        ],
    }


def fund_release_status(sub_order: dict, now: datetime) -> FundReleaseStatus:
    escrow = sub_order.get("escrow") or {}
    if escrow.get("released"):
        return FundReleaseStatus.RELEASED
    if escrow.get("refunded"):
        return FundReleaseStatus.REFUNDED
    window = as_utc(sub_order.get("return_window"))
    if sub_order["delivery_status"] == DeliveryStatus.DELIVERED.value and window is not None and window < now:
        return FundReleaseStatus.READY
    return FundReleaseStatus.PENDING


FUND_RELEASE_SORTS = {
    "newest": [("created_at", -1)],
    "oldest": [("created_at", 1)],
    "amount": [("total_amount", -1), ("created_at", -1)],
}

FUND_RELEASE_FIELDS = {
    "_id": 0, "sub_order_id": 1, "order_id": 1, "store_id": 1, "delivery_status": 1,
    "total_amount": 1, "shipping_method": 1, "delivery_date": 1, "return_window": 1,
    "escrow": 1, "settlement": 1, "created_at": 1,
}


class EscrowReleaseService:

    def __init__(
        self,
        ledger: WalletLedger,
        config: SettlementConfig,
        notifier=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.config = config
        self.notifier = notifier
        self.clock = clock

    async def list_release_queue(
        self,
        page: int = 1,
        limit: int = 20,
        store_id: Optional[str] = None,
    ) -> Result[dict]:
        query = release_eligible_filter(self.clock())
        if store_id:
            query["store_id"] = store_id
        cursor = db.sub_orders.find(query, {"_id": 0, "status_history": 0}).sort("return_window", 1) \
            .skip(page_skip(page, limit)).limit(limit)
        items = await cursor.to_list(length=limit)
        total = await db.sub_orders.count_documents(query)

        for item in items:
            shipping = (item.get("shipping_method") or {}).get("price", 0)
            preview = calculate_commission(item["total_amount"], self.config)
            item["release_preview"] = {**preview, "release_amount": preview["settle_amount"] + shipping}
        return Result.success({"sub_orders": items, "pagination": pagination(page, limit, total)})

    # ── Versements côté boutique ──────────────────────────────────────────────
    def fund_release_view(self, sub_order: dict, now: datetime) -> dict:
        """
        Vue « versement » d'une sous-commande. `amount` est la part boutique :
        réellement créditée si l'escrow est versé, projetée sinon (commission du
        jour comprise, livraison incluse).
        """
        status = fund_release_status(sub_order, now)
        shipping = (sub_order.get("shipping_method") or {}).get("price", 0)
        settlement = sub_order.get("settlement")
        if status == FundReleaseStatus.RELEASED and settlement:
            amount = settlement["amount"] + settlement.get("shipping_price", 0)
            commission = settlement.get("commission", 0)
        else:
            preview = calculate_commission(sub_order["total_amount"], self.config)
            amount = preview["settle_amount"] + shipping
            commission = preview["commission"]
        escrow = sub_order.get("escrow") or {}
        return {
            "sub_order_id":    sub_order["sub_order_id"],
            "order_id":        sub_order["order_id"],
            "store_id":        sub_order["store_id"],
            "status":          status.value,
            "delivery_status": sub_order["delivery_status"],
            "total_amount":    sub_order["total_amount"],
            "amount":          amount,
            "commission":      commission,
            "scheduled_for":   sub_order.get("return_window"),
            "released_at":     escrow.get("released_at"),
            "settlement":      settlement,
            "created_at":      sub_order.get("created_at"),
        }

    async def list_store_fund_releases(
        self,
        store_id: str,
        page: int = 1,
        limit: int = 20,
        status: Optional[FundReleaseStatus] = None,
        order_id: Optional[str] = None,
        sort: str = "newest",
    ) -> Result[dict]:
        if sort not in FUND_RELEASE_SORTS:
            return Result.bad_request(f"Tri inconnu : {sort}")
        now = self.clock()
        query: dict = {"store_id": store_id}
        if status:
            query.update(fund_release_filter(FundReleaseStatus(status), now))
        if order_id:
            query["order_id"] = order_id

        cursor = db.sub_orders.find(query, FUND_RELEASE_FIELDS).sort(FUND_RELEASE_SORTS[sort]) \
            .skip(page_skip(page, limit)).limit(limit)
        items = await cursor.to_list(length=limit)
        total = await db.sub_orders.count_documents(query)
        return Result.success({
            "fund_releases": [self.fund_release_view(item, now) for item in items],
            "pagination":    pagination(page, limit, total),
        })

    async def fund_release_summary(self, store_id: str) -> Result[dict]:
        """Nombre et montant cumulé par statut de versement, sur toutes les sous-commandes de la boutique."""
        now = self.clock()
        summary = {s.value: {"count": 0, "total_amount": 0} for s in FundReleaseStatus}
        async for sub_order in db.sub_orders.find({"store_id": store_id}, FUND_RELEASE_FIELDS):
            view = self.fund_release_view(sub_order, now)
            summary[view["status"]]["count"] += 1
            summary[view["status"]]["total_amount"] += view["amount"]
        return Result.success({"store_id": store_id, "summary": summary})

    async def get_fund_release(self, sub_order_id: str, actor: Actor) -> Result[dict]:
        sub_order = await db.sub_orders.find_one({"sub_order_id": sub_order_id}, FUND_RELEASE_FIELDS)
        if not sub_order:
            return Result.not_found("Sous-commande introuvable")
        if not (actor.is_admin or actor.owns_store(sub_order["store_id"])):
            return Result.forbidden("Cette sous-commande n'appartient pas à votre boutique")
        return Result.success(self.fund_release_view(sub_order, self.clock()))

    async def release_escrow(self, sub_order_id: str, admin: Actor, notes: Optional[str] = None) -> Result[dict]:
        if not admin.is_admin:
            return Result.forbidden()

        sub_order = await db.sub_orders.find_one({"sub_order_id": sub_order_id}, {"_id": 0})
        if not sub_order:
            return Result.not_found("Sous-commande introuvable")

        escrow = sub_order.get("escrow") or {}
        now = self.clock()
        errors = []
        if sub_order["delivery_status"] != DeliveryStatus.DELIVERED.value:
            errors.append("la sous-commande n'est pas livrée")
        if escrow.get("refunded"):
            errors.append("la sous-commande a été remboursée")
        if escrow.get("released"):
            errors.append("l'escrow a déjà été versé")
        elif not escrow.get("held"):
            errors.append("aucun escrow bloqué")
        window = as_utc(sub_order.get("return_window"))
        if window is None or now <= window:
            errors.append("la fenêtre de retour n'est pas expirée")
        if errors:
            return Result.bad_request("Libération impossible : " + ", ".join(errors))

        shipping_price = (sub_order.get("shipping_method") or {}).get("price", 0)
        breakdown = calculate_commission(sub_order["total_amount"], self.config)
        release_amount = breakdown["settle_amount"] + shipping_price
        ref = short_ref(sub_order["order_id"])
        settlement = Settlement(
            amount=breakdown["settle_amount"],
            shipping_price=shipping_price,
            commission=breakdown["commission"],
            applied_percentage_fee=breakdown["applied_percentage_fee"],
            applied_flat_fee=breakdown["applied_flat_fee"],
            notes=notes or f"Escrow libéré pour la commande {ref}",
        ).model_dump()

        async def work(session) -> Result[dict]:
            updated = await update_guarded(
                db.sub_orders,
                {"sub_order_id": sub_order_id, **release_eligible_filter(now)},
                {"$set": {
                    "escrow.held":        False,
                    "escrow.released":    True,
                    "escrow.released_at": now,
                    "settlement":         settlement,
                    "updated_at":         now,
                }},
                session=session,
            )
            if updated is None:
                return Result.conflict("La sous-commande a été modifiée entre-temps")
            if release_amount > 0:
                credited = await self.ledger.credit(
                    sub_order["store_id"], release_amount, TransactionSource.ORDER,
                    description=f"Escrow libéré pour la commande {ref}",
                    related_id=sub_order_id,
                    related_type=RelatedDocumentType.ORDER,
                    session=session,
                )
                if not credited.ok:
                    return credited.propagate()
            return Result.success(updated)

        try:
            result = await run_in_transaction(work)
        except PyMongoError:
            logger.exception(f"Erreur base de données pendant la libération de {sub_order_id}")
            return Result.internal()
        if not result.ok:
            return result

        logger.info(
            f"Escrow libéré : sous-commande={sub_order_id} store={sub_order['store_id']} "
            f"versé={release_amount} commission={breakdown['commission']} (admin={admin.user_id})"
        )
        store = await db.stores.find_one({"store_id": sub_order["store_id"]}, {"_id": 0, "name": 1, "store_email": 1})
        await notify_safely(self.notifier, escrow_released_email(store, result.value, release_amount),
                            ref_type="escrow", ref_id=sub_order_id)
        return Result.success({"sub_order": result.value, "release_amount": release_amount})
