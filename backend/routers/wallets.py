"""
Router wallets : wallet boutique, transactions, demandes de retrait.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from config import SettlementConfig, settings
from core.dependencies import (
    get_settlement_config, get_withdrawal_engine, require_store_owner,
)
from core.exceptions import forbidden_exception, unwrap
from core.rate_limit import limiter
from models.common import Actor, WithdrawalStatus
from models.wallet import TransactionSource, TransactionType, WithdrawalCreate
from services import wallet_service, withdrawal_service
from services.withdrawal_service import WithdrawalEngine, compute_withdrawal_fees

router = APIRouter()


@router.get("/me", summary="Mon wallet")
async def get_my_wallet(actor: Actor = Depends(require_store_owner)):
    """Lecture seule : le wallet est créé à l'inscription de la boutique."""
    return unwrap(await wallet_service.get_wallet(actor.store_id))


@router.get("/me/transactions", summary="Historique des transactions")
async def get_my_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    type: Optional[TransactionType] = None,
    source: Optional[TransactionSource] = None,
    days: Optional[int] = Query(None, ge=1),
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    search: Optional[str] = None,
    actor: Actor = Depends(require_store_owner),
):
    return unwrap(await wallet_service.list_transactions(
        actor.store_id, page, limit,
        tx_type=type, source=source, days=days,
        from_date=from_date, to_date=to_date, search=search,
    ))


@router.get("/me/transactions/{tx_id}", summary="Détail d'une transaction")
async def get_my_transaction(tx_id: str, actor: Actor = Depends(require_store_owner)):
    return unwrap(await wallet_service.get_transaction(actor.store_id, tx_id))


@router.get("/me/withdrawals/fees", summary="Simuler les frais d'un retrait")
async def preview_fees(
    amount: int = Query(..., gt=0),
    _actor: Actor = Depends(require_store_owner),
    config: SettlementConfig = Depends(get_settlement_config),
):
    fee, net = compute_withdrawal_fees(amount, config)
    return {"amount": amount, "processing_fee": fee, "net_amount": net}


@router.post("/me/withdrawals", summary="Demander un retrait", status_code=201)
@limiter.limit(settings.WITHDRAWAL_RATE_LIMIT)
async def request_withdrawal(
    request: Request,
    body: WithdrawalCreate,
    actor: Actor = Depends(require_store_owner),
    engine: WithdrawalEngine = Depends(get_withdrawal_engine),
):
    return unwrap(await engine.create_withdrawal_request(
        actor.store_id, body.amount, body.bank_account_id, body.description,
    ))


@router.get("/me/withdrawals", summary="Historique des retraits")
async def get_my_withdrawals(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[WithdrawalStatus] = None,
    actor: Actor = Depends(require_store_owner),
):
    return unwrap(await withdrawal_service.list_store_withdrawals(actor.store_id, page, limit, status))


@router.get("/me/withdrawals/{request_id}", summary="Détail d'un retrait")
async def get_my_withdrawal(request_id: str, actor: Actor = Depends(require_store_owner)):
    return unwrap(await withdrawal_service.get_store_withdrawal_detail(actor.store_id, request_id))


@router.get("/stores/{store_id}/withdrawals/{request_id}", summary="Détail d'un retrait (par boutique)")
async def get_store_withdrawal(
    store_id: str,
    request_id: str,
    actor: Actor = Depends(require_store_owner),
):
    if not actor.owns_store(store_id):
        raise forbidden_exception("Cette boutique ne vous appartient pas")
    return unwrap(await withdrawal_service.get_store_withdrawal_detail(store_id, request_id))
