"""
Service retraits : demandes de versement des boutiques et circuit de validation admin.

Cycle de vie :
  pending      → under_review | approved | rejected
  under_review → approved | rejected
  approved     → processing | failed
  processing   → completed | failed

Mouvements de fonds :
  création  : balance → pending (débit, source withdrawal)
  approbation : pending -= montant (virement externe, pas de nouvelle transaction)
  rejet     : pending → balance (crédit, source adjustment)
  échec     : balance += montant (crédit, source refund)
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Awaitable, Callable, Optional

from pymongo.errors import PyMongoError

from config import SettlementConfig
from core.result import Result
from core.security import generate_request_number
from core.utils import (
    date_range_filter, mask_account_number, page_skip, pagination, search_regex, utcnow,
)
from database import db, run_in_transaction, session_kwargs, update_guarded
from models.common import Actor, WithdrawalStatus
from models.wallet import PayoutAccount, WithdrawalHistoryEntry, WithdrawalRequest
from services.notification_service import (
    notify_safely, withdrawal_created_email, withdrawal_status_email,
)
from services.wallet_service import WalletLedger

logger = logging.getLogger(__name__)

WITHDRAWAL_TRANSITIONS: dict[WithdrawalStatus, list[WithdrawalStatus]] = {
    WithdrawalStatus.PENDING: [
        WithdrawalStatus.UNDER_REVIEW,
        WithdrawalStatus.APPROVED,
        WithdrawalStatus.REJECTED,
    ],
    WithdrawalStatus.UNDER_REVIEW: [
        WithdrawalStatus.APPROVED,
        WithdrawalStatus.REJECTED,
    ],
    WithdrawalStatus.APPROVED: [
        WithdrawalStatus.PROCESSING,
        WithdrawalStatus.FAILED,
    ],
    WithdrawalStatus.PROCESSING: [
        WithdrawalStatus.COMPLETED,
        WithdrawalStatus.FAILED,
    ],
    # États terminaux
    WithdrawalStatus.REJECTED:  [],
    WithdrawalStatus.COMPLETED: [],
    WithdrawalStatus.FAILED:    [],
}


def sources_for(target: WithdrawalStatus) -> list[str]:
    """Statuts depuis lesquels `target` est atteignable (garde des écritures)."""
    return [s.value for s, targets in WITHDRAWAL_TRANSITIONS.items() if target in targets]


def compute_withdrawal_fees(amount: int, config: SettlementConfig) -> tuple[int, int]:
    """
    Frais = arrondi(montant × taux) + frais fixes, arrondi au kobo supérieur à .5.
    Retourne (processing_fee, net_amount).
    """
    variable = (Decimal(amount) * Decimal(str(config.withdrawal_fee_rate))) \
        .quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    fee = int(variable) + config.withdrawal_fixed_fee
    return fee, amount - fee


def _request_id() -> str:
    return f"wdr_{uuid.uuid4().hex[:12]}"


def _history(status: WithdrawalStatus, now: datetime, admin_id: Optional[str], notes: Optional[str]) -> dict:
    return WithdrawalHistoryEntry(status=status, timestamp=now, admin_id=admin_id, notes=notes).to_mongo()


# Effet wallet d'une transition, exécuté dans la même transaction que l'écriture du statut
WalletEffect = Callable[[dict, object], Awaitable[Result]]


class WithdrawalEngine:

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

    # ── Boutique ──────────────────────────────────────────────────────────────
    async def create_withdrawal_request(
        self,
        store_id: str,
        amount: int,
        bank_account_id: str,
        description: Optional[str] = None,
    ) -> Result[dict]:
        if amount < self.config.min_withdrawal_amount:
            return Result.bad_request(
                f"Montant minimum de retrait : {self.config.min_withdrawal_amount} kobo"
            )

        store = await db.stores.find_one({"store_id": store_id}, {"_id": 0})
        if not store:
            return Result.not_found("Boutique introuvable")
        accounts = [PayoutAccount.model_validate(a) for a in store.get("payout_accounts", [])]
        account = next((a for a in accounts if a.bank_details.account_number == bank_account_id), None)
        if account is None:
            return Result.bad_request("Compte de versement introuvable ou non vérifié")

        wallet = await db.wallets.find_one({"store_id": store_id}, {"_id": 0, "wallet_id": 1, "balance": 1})
        if wallet is None or wallet["balance"] < amount:
            return Result.bad_request("Solde insuffisant pour ce retrait")

        fee, net = compute_withdrawal_fees(amount, self.config)
        if net <= 0:
            return Result.bad_request("Montant du retrait trop faible après déduction des frais")

        request_id = _request_id()
        request_number = generate_request_number()

        async def work(session) -> Result[dict]:
            # La réservation revalide le solde au moment de l'écriture
            reserved = await self.ledger.reserve(
                store_id, amount,
                description=f"Demande de retrait {request_number}",
                related_id=request_id,
                session=session,
            )
            if not reserved.ok:
                return reserved

            now = self.clock()
            request = WithdrawalRequest(
                request_id=request_id,
                request_number=request_number,
                store_id=store_id,
                wallet_id=wallet["wallet_id"],
                requested_amount=amount,
                processing_fee=fee,
                net_amount=net,
                bank_details=account.bank_details,
                status_history=[_history(WithdrawalStatus.PENDING, now, None, "Demande créée par la boutique")],
                description=description,
                created_at=now,
                updated_at=now,
            ).to_mongo()
            await db.withdrawal_requests.insert_one(dict(request), **session_kwargs(session))
            return Result.success(request)

        result = await self._run(work)
        if not result.ok:
            return result

        request = result.value
        logger.info(
            f"Retrait demandé : {request_number} store={store_id} montant={amount} "
            f"frais={fee} net={net}"
        )
        await notify_safely(self.notifier, withdrawal_created_email(store, request),
                            ref_type="withdrawal_request", ref_id=request_id)
        return Result.success(request)

    # ── Admin ─────────────────────────────────────────────────────────────────
    async def approve_withdrawal_request(
        self,
        request_id: str,
        transaction_reference: str,
        admin: Actor,
        notes: Optional[str] = None,
    ) -> Result[dict]:
        if not transaction_reference or not transaction_reference.strip():
            return Result.bad_request("Référence de transaction requise")
        now = self.clock()

        async def settle(request: dict, session) -> Result:
            return await self.ledger.settle_reserved(request["store_id"], request["requested_amount"], session=session)

        return await self._transition(
            request_id, WithdrawalStatus.APPROVED, admin, notes,
            fields={
                "reviewed_by":           admin.user_id,
                "reviewed_at":           now,
                "review_notes":          notes,
                "transaction_reference": transaction_reference.strip(),
            },
            effect=settle,
        )

    async def reject_withdrawal_request(
        self,
        request_id: str,
        reason: str,
        admin: Actor,
        notes: Optional[str] = None,
    ) -> Result[dict]:
        if not reason or not reason.strip():
            return Result.bad_request("Motif de rejet requis")
        now = self.clock()

        async def release(request: dict, session) -> Result:
            return await self.ledger.release_reservation(
                request["store_id"], request["requested_amount"],
                description=f"Retrait {request['request_number']} rejeté : {reason.strip()}",
                related_id=request["request_id"],
                session=session,
            )

        return await self._transition(
            request_id, WithdrawalStatus.REJECTED, admin, notes or reason.strip(),
            fields={
                "reviewed_by":      admin.user_id,
                "reviewed_at":      now,
                "review_notes":     notes,
                "rejection_reason": reason.strip(),
            },
            effect=release,
        )

    async def mark_under_review(self, request_id: str, admin: Actor, notes: Optional[str] = None) -> Result[dict]:
        return await self._transition(
            request_id, WithdrawalStatus.UNDER_REVIEW, admin, notes,
            fields={"reviewed_by": admin.user_id, "reviewed_at": self.clock(), "review_notes": notes},
        )

    async def mark_processing(self, request_id: str, admin: Actor, notes: Optional[str] = None) -> Result[dict]:
        return await self._transition(request_id, WithdrawalStatus.PROCESSING, admin, notes, fields={})

    async def mark_completed(
        self,
        request_id: str,
        admin: Actor,
        transaction_reference: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Result[dict]:
        fields = {"processed_by": admin.user_id, "processed_at": self.clock()}
        if transaction_reference:
            fields["transaction_reference"] = transaction_reference
        return await self._transition(request_id, WithdrawalStatus.COMPLETED, admin, notes, fields=fields)

    async def mark_failed(self, request_id: str, admin: Actor, notes: Optional[str] = None) -> Result[dict]:
        """Le virement n'a pas abouti : le montant demandé revient sur le solde."""
        async def restore(request: dict, session) -> Result:
            return await self.ledger.restore(
                request["store_id"], request["requested_amount"],
                description=f"Virement du retrait {request['request_number']} échoué",
                related_id=request["request_id"],
                session=session,
            )

        return await self._transition(
            request_id, WithdrawalStatus.FAILED, admin, notes,
            fields={"processed_by": admin.user_id, "processed_at": self.clock()},
            effect=restore,
        )

    async def _transition(
        self,
        request_id: str,
        target: WithdrawalStatus,
        admin: Actor,
        notes: Optional[str],
        fields: dict,
        effect: Optional[WalletEffect] = None,
    ) -> Result[dict]:
        """
        Écriture du statut gardée par les statuts sources autorisés (le perdant d'une
        course reçoit BadRequest), puis effet wallet éventuel, dans une même transaction.
        """
        if not admin.is_admin:
            return Result.forbidden()

        current = await db.withdrawal_requests.find_one({"request_id": request_id}, {"_id": 0, "status": 1})
        if not current:
            return Result.not_found("Demande de retrait introuvable")
        allowed_from = sources_for(target)
        if current["status"] not in allowed_from:
            return Result.bad_request(
                f"Transition interdite : {current['status']} → {target.value}"
            )

        async def work(session) -> Result[dict]:
            now = self.clock()
            updated = await update_guarded(
                db.withdrawal_requests,
                {"request_id": request_id, "status": {"$in": allowed_from}},
                {
                    "$set": {**fields, "status": target.value, "updated_at": now},
                    "$push": {"status_history": _history(target, now, admin.user_id, notes)},
                },
                session=session,
            )
            if updated is None:
                return Result.bad_request("La demande a déjà été traitée")
            if effect is not None:
                moved = await effect(updated, session)
                if not moved.ok:
                    return moved.propagate()
            return Result.success(updated)

        result = await self._run(work)
        if not result.ok:
            return result

        request = result.value
        logger.info(
            f"Retrait {request['request_number']} : {current['status']} → {target.value} "
            f"(admin={admin.user_id})"
        )
        store = await db.stores.find_one({"store_id": request["store_id"]}, {"_id": 0, "name": 1, "store_email": 1})
        await notify_safely(self.notifier, withdrawal_status_email(store, request),
                            ref_type="withdrawal_request", ref_id=request_id)
        return Result.success(request)

    async def _run(self, work) -> Result[dict]:
        try:
            return await run_in_transaction(work)
        except PyMongoError:
            logger.exception("Erreur base de données pendant une opération de retrait")
            return Result.internal()


# ── Lectures ──────────────────────────────────────────────────────────────────
async def _store_ids_matching(term: str) -> list[str]:
    cursor = db.stores.find({"name": search_regex(term)}, {"_id": 0, "store_id": 1})
    return [s["store_id"] async for s in cursor]


async def admin_withdrawals_query(
    status: Optional[WithdrawalStatus] = None,
    store_id: Optional[str] = None,
    search: Optional[str] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
) -> dict:
    query: dict = {}
    if status:
        query["status"] = status.value
    if store_id:
        query["store_id"] = store_id
    bounds = date_range_filter(from_date, to_date)
    if bounds:
        query["created_at"] = bounds
    if search:
        clauses = [
            {"request_number": search_regex(search)},
            {"bank_details.account_holder_name": search_regex(search)},
        ]
        store_ids = await _store_ids_matching(search)
        if store_ids:
            clauses.append({"store_id": {"$in": store_ids}})
        query["$or"] = clauses
    return query


async def list_withdrawal_requests(
    page: int = 1,
    limit: int = 20,
    status: Optional[WithdrawalStatus] = None,
    store_id: Optional[str] = None,
    search: Optional[str] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
) -> Result[dict]:
    query = await admin_withdrawals_query(status, store_id, search, from_date, to_date)
    cursor = db.withdrawal_requests.find(query, {"_id": 0, "status_history": 0}) \
        .sort("created_at", -1).skip(page_skip(page, limit)).limit(limit)
    items = await cursor.to_list(length=limit)
    total = await db.withdrawal_requests.count_documents(query)

    store_ids = list({r["store_id"] for r in items})
    stores = {}
    if store_ids:
        async for s in db.stores.find({"store_id": {"$in": store_ids}}, {"_id": 0, "store_id": 1, "name": 1}):
            stores[s["store_id"]] = s["name"]
    for item in items:
        item["store_name"] = stores.get(item["store_id"])

    # Synthèse sur toutes les demandes, indépendamment des filtres
    total_pending = await db.withdrawal_requests.count_documents({"status": WithdrawalStatus.PENDING.value})
    total_approved_amount = 0
    async for r in db.withdrawal_requests.find(
        {"status": WithdrawalStatus.APPROVED.value}, {"_id": 0, "net_amount": 1}
    ):
        total_approved_amount += r["net_amount"]

    return Result.success({
        "withdrawal_requests": items,
        "pagination":          pagination(page, limit, total),
        "summary": {
            "total_pending":         total_pending,
            "total_approved_amount": total_approved_amount,
        },
    })


async def _user_identity(user_id: Optional[str]) -> Optional[dict]:
    if not user_id:
        return None
    return await db.users.find_one({"user_id": user_id}, {"_id": 0, "user_id": 1, "name": 1, "email": 1})


async def get_withdrawal_request_detail(request_id: str) -> Result[dict]:
    """Vue admin complète : boutique, solde courant, identités du réviseur et de l'exécutant."""
    request = await db.withdrawal_requests.find_one({"request_id": request_id}, {"_id": 0})
    if not request:
        return Result.not_found("Demande de retrait introuvable")

    store = await db.stores.find_one(
        {"store_id": request["store_id"]}, {"_id": 0, "store_id": 1, "name": 1, "store_email": 1}
    )
    wallet = await db.wallets.find_one(
        {"store_id": request["store_id"]}, {"_id": 0, "balance": 1, "pending": 1, "total_earned": 1}
    )

    admin_ids = {e.get("admin_id") for e in request.get("status_history", []) if e.get("admin_id")}
    admins = {}
    if admin_ids:
        async for u in db.users.find({"user_id": {"$in": list(admin_ids)}}, {"_id": 0, "user_id": 1, "name": 1}):
            admins[u["user_id"]] = u["name"]
    history = [{**e, "admin_name": admins.get(e.get("admin_id"))} for e in request.get("status_history", [])]

    return Result.success({
        **request,
        "status_history": history,
        "store":          store,
        "wallet":         wallet,
        "reviewer":       await _user_identity(request.get("reviewed_by")),
        "processor":      await _user_identity(request.get("processed_by")),
    })


STORE_HIDDEN_FIELDS = ("reviewed_by", "processed_by")


def _store_view(request: dict) -> dict:
    view = {k: v for k, v in request.items() if k not in STORE_HIDDEN_FIELDS}
    bank = dict(view.get("bank_details") or {})
    bank["account_number"] = mask_account_number(bank.get("account_number", ""))
    view["bank_details"] = bank
    view["status_history"] = [
        {k: v for k, v in e.items() if k != "admin_id"} for e in view.get("status_history", [])
    ]
    return view


async def list_store_withdrawals(
    store_id: str,
    page: int = 1,
    limit: int = 20,
    status: Optional[WithdrawalStatus] = None,
) -> Result[dict]:
    query: dict = {"store_id": store_id}
    if status:
        query["status"] = status.value
    cursor = db.withdrawal_requests.find(query, {"_id": 0}).sort("created_at", -1) \
        .skip(page_skip(page, limit)).limit(limit)
    items = await cursor.to_list(length=limit)
    total = await db.withdrawal_requests.count_documents(query)
    return Result.success({
        "withdrawal_requests": [_store_view(r) for r in items],
        "pagination":          pagination(page, limit, total),
    })


async def get_store_withdrawal_detail(store_id: str, request_id: str) -> Result[dict]:
    request = await db.withdrawal_requests.find_one({"request_id": request_id}, {"_id": 0})
    if not request:
        return Result.not_found("Demande de retrait introuvable")
    if request["store_id"] != store_id:
        return Result.forbidden("Cette demande n'appartient pas à votre boutique")
    return Result.success(_store_view(request))
