"""
Service wallet : registre des portefeuilles boutique.

Toute écriture sur `wallets` passe par WalletLedger. Chaque mouvement est une
mise à jour conditionnelle atomique (find_one_and_update avec garde dans le filtre)
suivie de l'ajout de la ligne de transaction correspondante, dans la session de
l'appelant quand une transaction Mongo est ouverte.

Identités tenues à tout instant :
  Σ crédits − Σ débits == balance
  total_earned == Σ crédits de gains (crédits non liés à une demande de retrait)
  pending == Σ requested_amount des demandes pending / under_review
  balance + pending == total_earned − Σ débits directs − Σ retraits versés
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from config import SettlementConfig
from core.result import Result
from core.utils import date_range_filter, page_skip, pagination, search_regex, utcnow
from database import db, session_kwargs, update_guarded
from models.common import WithdrawalStatus
from models.wallet import RelatedDocumentType, TransactionSource, TransactionType, Wallet, WalletTransaction

logger = logging.getLogger(__name__)


def _wallet_id() -> str:
    return f"wlt_{uuid.uuid4().hex[:12]}"


def _tx_id() -> str:
    return f"wtx_{uuid.uuid4().hex[:12]}"


class WalletLedger:

    def __init__(self, config: SettlementConfig, clock: Callable[[], datetime] = utcnow):
        self.config = config
        self.clock = clock

    async def get_or_create_wallet(self, store_id: str, session=None) -> dict:
        """Retourne le wallet de la boutique, créé à zéro s'il n'existe pas encore."""
        now = self.clock()
        wallet = Wallet(
            wallet_id=_wallet_id(),
            store_id=store_id,
            currency=self.config.currency,
            created_at=now,
            updated_at=now,
        )
        return await update_guarded(
            db.wallets,
            {"store_id": store_id},
            {"$setOnInsert": wallet.model_dump(exclude={"store_id"})},
            session=session,
            upsert=True,
        )

    # ── Mouvements ────────────────────────────────────────────────────────────
    async def credit(
        self,
        store_id: str,
        amount: int,
        source: TransactionSource,
        description: str,
        related_id: Optional[str] = None,
        related_type: RelatedDocumentType = RelatedDocumentType.ADJUSTMENT,
        session=None,
    ) -> Result[dict]:
        """Gains : balance += amount, total_earned += amount."""
        return await self._move(
            store_id, amount,
            guard={},
            inc={"balance": amount, "total_earned": amount},
            tx_type=TransactionType.CREDIT, source=source, description=description,
            related_id=related_id, related_type=related_type, session=session,
            create=True,
        )

    async def debit(
        self,
        store_id: str,
        amount: int,
        source: TransactionSource,
        description: str,
        related_id: Optional[str] = None,
        related_type: RelatedDocumentType = RelatedDocumentType.ADJUSTMENT,
        session=None,
    ) -> Result[dict]:
        return await self._move(
            store_id, amount,
            guard={"balance": {"$gte": amount}},
            inc={"balance": -amount},
            tx_type=TransactionType.DEBIT, source=source, description=description,
            related_id=related_id, related_type=related_type, session=session,
        )

    async def reserve(
        self,
        store_id: str,
        amount: int,
        description: str,
        related_id: str,
        session=None,
    ) -> Result[dict]:
        """balance → pending pour une demande de retrait (transaction de débit)."""
        return await self._move(
            store_id, amount,
            guard={"balance": {"$gte": amount}},
            inc={"balance": -amount, "pending": amount},
            tx_type=TransactionType.DEBIT, source=TransactionSource.WITHDRAWAL, description=description,
            related_id=related_id, related_type=RelatedDocumentType.WITHDRAWAL_REQUEST, session=session,
        )

    async def release_reservation(
        self,
        store_id: str,
        amount: int,
        description: str,
        related_id: str,
        session=None,
    ) -> Result[dict]:
        """pending → balance (demande rejetée), crédit de source adjustment."""
        return await self._move(
            store_id, amount,
            guard={"pending": {"$gte": amount}},
            inc={"balance": amount, "pending": -amount},
            tx_type=TransactionType.CREDIT, source=TransactionSource.ADJUSTMENT, description=description,
            related_id=related_id, related_type=RelatedDocumentType.WITHDRAWAL_REQUEST, session=session,
        )

    async def restore(
        self,
        store_id: str,
        amount: int,
        description: str,
        related_id: str,
        session=None,
    ) -> Result[dict]:
        """Virement échoué : le montant revient en solde, total_earned inchangé."""
        return await self._move(
            store_id, amount,
            guard={},
            inc={"balance": amount},
            tx_type=TransactionType.CREDIT, source=TransactionSource.REFUND, description=description,
            related_id=related_id, related_type=RelatedDocumentType.WITHDRAWAL_REQUEST, session=session,
        )

    async def settle_reserved(self, store_id: str, amount: int, session=None) -> Result[dict]:
        """
        Le montant réservé part en virement externe : pending -= amount.
        Pas de ligne de transaction, le débit a été écrit à la réservation.
        """
        if amount <= 0:
            return Result.bad_request("Le montant doit être positif")
        wallet = await update_guarded(
            db.wallets,
            {"store_id": store_id, "pending": {"$gte": amount}},
            {"$inc": {"pending": -amount}, "$set": {"updated_at": self.clock()}},
            session=session,
        )
        if wallet is None:
            if not await self._exists(store_id, session):
                return Result.not_found("Portefeuille introuvable")
            return Result.bad_request("Montant réservé insuffisant sur le portefeuille")
        logger.info(f"Réservation soldée : store={store_id} montant={amount}")
        return Result.success(wallet)

    async def _move(
        self,
        store_id: str,
        amount: int,
        guard: dict,
        inc: dict,
        tx_type: TransactionType,
        source: TransactionSource,
        description: str,
        related_id: Optional[str],
        related_type: RelatedDocumentType,
        session,
        create: bool = False,
    ) -> Result[dict]:
        """Seuls les crédits créent un wallet absent ; les autres mouvements exigent qu'il existe."""
        if amount <= 0:
            return Result.bad_request("Le montant doit être positif")

        if create:
            await self.get_or_create_wallet(store_id, session=session)
        now = self.clock()
        wallet = await update_guarded(
            db.wallets,
            {"store_id": store_id, **guard},
            {"$inc": inc, "$set": {"updated_at": now}},
            session=session,
        )
        if wallet is None:
            if not await self._exists(store_id, session):
                return Result.not_found("Portefeuille introuvable")
            return Result.bad_request("Solde insuffisant")

        tx = WalletTransaction(
            tx_id=_tx_id(),
            wallet_id=wallet["wallet_id"],
            type=tx_type,
            amount=amount,
            source=source,
            description=description,
            related_document_id=related_id,
            related_document_type=related_type,
            created_at=now,
        ).to_mongo()
        await db.wallet_transactions.insert_one(dict(tx), **session_kwargs(session))
        logger.info(
            f"Wallet {tx_type.value} : store={store_id} montant={amount} source={source.value} "
            f"solde={wallet['balance']} réservé={wallet['pending']}"
        )
        return Result.success(tx)

    async def _exists(self, store_id: str, session) -> bool:
        found = await db.wallets.find_one({"store_id": store_id}, {"_id": 1}, **session_kwargs(session))
        return found is not None


# ── Lectures ──────────────────────────────────────────────────────────────────
WALLET_SUMMARY_FIELDS = {"_id": 0, "wallet_id": 1, "store_id": 1, "balance": 1,
                         "pending": 1, "total_earned": 1, "currency": 1, "updated_at": 1}


async def get_wallet(store_id: str) -> Result[dict]:
    wallet = await db.wallets.find_one({"store_id": store_id}, WALLET_SUMMARY_FIELDS)
    if not wallet:
        return Result.not_found("Portefeuille introuvable")
    return Result.success(wallet)


def transactions_query(
    wallet_id: str,
    tx_type: Optional[TransactionType] = None,
    source: Optional[TransactionSource] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    search: Optional[str] = None,
) -> dict:
    query: dict = {"wallet_id": wallet_id}
    if tx_type:
        query["type"] = tx_type.value
    if source:
        query["source"] = source.value
    bounds = date_range_filter(from_date, to_date)
    if bounds:
        query["created_at"] = bounds
    if search:
        query["$or"] = [
            {"description": search_regex(search)},
            {"related_document_id": search_regex(search)},
        ]
    return query


ORDER_SUMMARY_FIELDS = {"_id": 0, "sub_order_id": 1, "order_id": 1, "total_amount": 1,
                        "delivery_status": 1, "buyer.name": 1, "settlement": 1}
WITHDRAWAL_SUMMARY_FIELDS = {"_id": 0, "request_id": 1, "request_number": 1, "status": 1,
                             "requested_amount": 1, "net_amount": 1}


async def _enrich_transactions(txs: list[dict]) -> list[dict]:
    """Ajoute à chaque transaction un aperçu de son document lié."""
    order_ids = [t["related_document_id"] for t in txs
                 if t.get("related_document_type") == RelatedDocumentType.ORDER.value and t.get("related_document_id")]
    request_ids = [t["related_document_id"] for t in txs
                   if t.get("related_document_type") == RelatedDocumentType.WITHDRAWAL_REQUEST.value
                   and t.get("related_document_id")]

    orders, requests = {}, {}
    if order_ids:
        async for doc in db.sub_orders.find({"sub_order_id": {"$in": order_ids}}, ORDER_SUMMARY_FIELDS):
            orders[doc["sub_order_id"]] = doc
    if request_ids:
        async for doc in db.withdrawal_requests.find({"request_id": {"$in": request_ids}}, WITHDRAWAL_SUMMARY_FIELDS):
            requests[doc["request_id"]] = doc

    for tx in txs:
        ref = tx.get("related_document_id")
        if tx.get("related_document_type") == RelatedDocumentType.ORDER.value:
            tx["related_document"] = orders.get(ref)
        elif tx.get("related_document_type") == RelatedDocumentType.WITHDRAWAL_REQUEST.value:
            tx["related_document"] = requests.get(ref)
        else:
            tx["related_document"] = None
    return txs


async def list_transactions(
    store_id: str,
    page: int = 1,
    limit: int = 20,
    tx_type: Optional[TransactionType] = None,
    source: Optional[TransactionSource] = None,
    days: Optional[int] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    search: Optional[str] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Result[dict]:
    """Transactions du wallet, plus récentes d'abord. `days` prime sur from_date/to_date."""
    wallet = await db.wallets.find_one({"store_id": store_id}, {"_id": 0, "wallet_id": 1})
    if not wallet:
        return Result.not_found("Portefeuille introuvable")

    if days:
        from_date, to_date = clock() - timedelta(days=days), None
    query = transactions_query(wallet["wallet_id"], tx_type, source, from_date, to_date, search)

    cursor = db.wallet_transactions.find(query, {"_id": 0}).sort("created_at", -1) \
        .skip(page_skip(page, limit)).limit(limit)
    txs = await cursor.to_list(length=limit)
    total = await db.wallet_transactions.count_documents(query)

    return Result.success({
        "transactions": await _enrich_transactions(txs),
        "pagination":   pagination(page, limit, total),
    })


async def get_transaction(store_id: str, tx_id: str) -> Result[dict]:
    wallet = await db.wallets.find_one({"store_id": store_id}, {"_id": 0, "wallet_id": 1})
    if not wallet:
        return Result.not_found("Portefeuille introuvable")
    tx = await db.wallet_transactions.find_one(
        {"tx_id": tx_id, "wallet_id": wallet["wallet_id"]}, {"_id": 0}
    )
    if not tx:
        return Result.not_found("Transaction introuvable")
    enriched = await _enrich_transactions([tx])
    return Result.success(enriched[0])


OPEN_WITHDRAWAL_STATUSES = [WithdrawalStatus.PENDING.value, WithdrawalStatus.UNDER_REVIEW.value]
# Montant sorti du wallet par virement externe (approve → settle_reserved). Un retrait
# "failed" a été re-crédité par restore, il n'est pas compté.
SETTLED_WITHDRAWAL_STATUSES = [
    WithdrawalStatus.APPROVED.value,
    WithdrawalStatus.PROCESSING.value,
    WithdrawalStatus.COMPLETED.value,
]


async def _sum_requested(store_id: str, statuses: list[str]) -> int:
    total = 0
    async for req in db.withdrawal_requests.find(
        {"store_id": store_id, "status": {"$in": statuses}},
        {"_id": 0, "requested_amount": 1},
    ):
        total += req["requested_amount"]
    return total


async def reconcile(store_id: str) -> Result[dict]:
    """
    Vérifie les identités du registre pour un wallet (outil admin).

    Les mouvements liés à une demande de retrait (réservation, libération, restauration)
    ne sont ni des gains ni des débits directs ; tous les autres crédits passent par
    credit() et alimentent total_earned.
    """
    wallet = await db.wallets.find_one({"store_id": store_id}, {"_id": 0})
    if not wallet:
        return Result.not_found("Portefeuille introuvable")

    credits = debits = earned = direct_debits = 0
    async for tx in db.wallet_transactions.find({"wallet_id": wallet["wallet_id"]}, {"_id": 0}):
        withdrawal_linked = tx.get("related_document_type") == RelatedDocumentType.WITHDRAWAL_REQUEST.value
        if tx["type"] == TransactionType.CREDIT.value:
            credits += tx["amount"]
            if not withdrawal_linked:
                earned += tx["amount"]
        else:
            debits += tx["amount"]
            if not withdrawal_linked:
                direct_debits += tx["amount"]

    reserved = await _sum_requested(store_id, OPEN_WITHDRAWAL_STATUSES)
    settled = await _sum_requested(store_id, SETTLED_WITHDRAWAL_STATUSES)

    report = {
        "store_id":              store_id,
        "balance":               wallet["balance"],
        "pending":               wallet["pending"],
        "total_earned":          wallet["total_earned"],
        "ledger_credits":        credits,
        "ledger_debits":         debits,
        "ledger_earned":         earned,
        "ledger_direct_debits":  direct_debits,
        "open_withdrawals":      reserved,
        "settled_withdrawals":   settled,
        "balance_matches":       credits - debits == wallet["balance"],
        "total_earned_matches":  earned == wallet["total_earned"],
        "pending_matches":       reserved == wallet["pending"],
        "funds_matches": (
            wallet["balance"] + wallet["pending"]
            == wallet["total_earned"] - direct_debits - settled
        ),
    }
    report["consistent"] = (
        report["balance_matches"] and report["total_earned_matches"]
        and report["pending_matches"] and report["funds_matches"]
    )
    if not report["consistent"]:
        logger.error(f"Wallet incohérent : {report}")
    return Result.success(report)
