"""
Router admin : commandes, remboursements, confirmations de livraison, escrow, retraits, wallets.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from core.dependencies import (
    get_confirmation_sweep, get_delivery_machine, get_escrow_service,
    get_withdrawal_engine, require_admin,
)
from core.exceptions import unwrap
from models.common import Actor, DeliveryStatus, WithdrawalStatus
from models.order import DeliveryStatusUpdate, EscrowReleaseRequest, OrderCreate, RefundRequest
from models.wallet import WithdrawalAdminNote, WithdrawalApprove, WithdrawalReject
from services import delivery_service, wallet_service, withdrawal_service
from services.confirmation_service import AutoConfirmationSweep
from services.delivery_service import DeliveryStateMachine
from services.escrow_service import EscrowReleaseService
from services.order_service import create_order
from services.withdrawal_service import WithdrawalEngine

router = APIRouter()


# ── Commandes ─────────────────────────────────────────────────────────────────
@router.post("/orders", summary="Enregistrer une commande payée", status_code=201)
async def admin_create_order(body: OrderCreate, _admin: Actor = Depends(require_admin)):
    return unwrap(await create_order(body))


@router.put("/sub-orders/{sub_order_id}/status", summary="Forcer un changement de statut")
async def admin_update_status(
    sub_order_id: str,
    body: DeliveryStatusUpdate,
    admin: Actor = Depends(require_admin),
    machine: DeliveryStateMachine = Depends(get_delivery_machine),
):
    return unwrap(await machine.update_delivery_status(sub_order_id, body.delivery_status, admin, body.notes))


@router.post("/sub-orders/{sub_order_id}/refund", summary="Rembourser une sous-commande")
async def admin_refund(
    sub_order_id: str,
    body: RefundRequest,
    admin: Actor = Depends(require_admin),
    machine: DeliveryStateMachine = Depends(get_delivery_machine),
):
    return unwrap(await machine.refund_sub_order(sub_order_id, admin, body.reason))


# ── Remboursements ────────────────────────────────────────────────────────────
@router.get("/refunds", summary="File des remboursements")
async def admin_refund_queue(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    delivery_status: Optional[DeliveryStatus] = None,
    store_id: Optional[str] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    search: Optional[str] = None,
    _admin: Actor = Depends(require_admin),
):
    return unwrap(await delivery_service.list_refund_queue(
        page, limit, delivery_status, store_id, from_date, to_date, search,
    ))


@router.get("/refunds/{sub_order_id}", summary="Détail d'un remboursement à traiter")
async def admin_refund_detail(sub_order_id: str, _admin: Actor = Depends(require_admin)):
    return unwrap(await delivery_service.get_refund_detail(sub_order_id))


# ── Confirmations de livraison ────────────────────────────────────────────────
@router.get("/delivery-confirmations", summary="Livraisons à auto-confirmer")
async def admin_confirmation_queue(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    search: Optional[str] = None,
    _admin: Actor = Depends(require_admin),
    sweep: AutoConfirmationSweep = Depends(get_confirmation_sweep),
):
    return unwrap(await sweep.list_eligible(page, limit, from_date, to_date, search))


@router.post("/delivery-confirmations/sweep", summary="Lancer l'auto-confirmation maintenant")
async def admin_run_sweep(
    _admin: Actor = Depends(require_admin),
    sweep: AutoConfirmationSweep = Depends(get_confirmation_sweep),
):
    return {"confirmed": await sweep.run_sweep()}


@router.post("/delivery-confirmations/{sub_order_id}/auto-confirm", summary="Auto-confirmer une livraison")
async def admin_auto_confirm(
    sub_order_id: str,
    admin: Actor = Depends(require_admin),
    sweep: AutoConfirmationSweep = Depends(get_confirmation_sweep),
):
    confirmation = unwrap(await sweep.auto_confirm(sub_order_id, admin))
    return {"sub_order_id": sub_order_id, "customer_confirmed_delivery": confirmation}


# ── Escrow ────────────────────────────────────────────────────────────────────
@router.get("/escrow/release-queue", summary="Escrows libérables")
async def admin_release_queue(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    store_id: Optional[str] = None,
    _admin: Actor = Depends(require_admin),
    escrow: EscrowReleaseService = Depends(get_escrow_service),
):
    return unwrap(await escrow.list_release_queue(page, limit, store_id))


@router.post("/escrow/{sub_order_id}/release", summary="Libérer l'escrow vers la boutique")
async def admin_release_escrow(
    sub_order_id: str,
    body: EscrowReleaseRequest,
    admin: Actor = Depends(require_admin),
    escrow: EscrowReleaseService = Depends(get_escrow_service),
):
    return unwrap(await escrow.release_escrow(sub_order_id, admin, body.notes))


# ── Retraits ──────────────────────────────────────────────────────────────────
@router.get("/withdrawals", summary="Demandes de retrait")
async def admin_list_withdrawals(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[WithdrawalStatus] = None,
    store_id: Optional[str] = None,
    search: Optional[str] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    _admin: Actor = Depends(require_admin),
):
    return unwrap(await withdrawal_service.list_withdrawal_requests(
        page, limit, status, store_id, search, from_date, to_date,
    ))


@router.get("/withdrawals/{request_id}", summary="Détail d'une demande de retrait")
async def admin_withdrawal_detail(request_id: str, _admin: Actor = Depends(require_admin)):
    return unwrap(await withdrawal_service.get_withdrawal_request_detail(request_id))


@router.post("/withdrawals/{request_id}/approve", summary="Approuver un retrait")
async def admin_approve_withdrawal(
    request_id: str,
    body: WithdrawalApprove,
    admin: Actor = Depends(require_admin),
    engine: WithdrawalEngine = Depends(get_withdrawal_engine),
):
    return unwrap(await engine.approve_withdrawal_request(
        request_id, body.transaction_reference, admin, body.notes,
    ))


@router.post("/withdrawals/{request_id}/reject", summary="Rejeter un retrait")
async def admin_reject_withdrawal(
    request_id: str,
    body: WithdrawalReject,
    admin: Actor = Depends(require_admin),
    engine: WithdrawalEngine = Depends(get_withdrawal_engine),
):
    return unwrap(await engine.reject_withdrawal_request(request_id, body.reason, admin, body.notes))


@router.post("/withdrawals/{request_id}/under-review", summary="Passer un retrait en revue")
async def admin_review_withdrawal(
    request_id: str,
    body: WithdrawalAdminNote,
    admin: Actor = Depends(require_admin),
    engine: WithdrawalEngine = Depends(get_withdrawal_engine),
):
    return unwrap(await engine.mark_under_review(request_id, admin, body.notes))


@router.post("/withdrawals/{request_id}/processing", summary="Virement en cours")
async def admin_processing_withdrawal(
    request_id: str,
    body: WithdrawalAdminNote,
    admin: Actor = Depends(require_admin),
    engine: WithdrawalEngine = Depends(get_withdrawal_engine),
):
    return unwrap(await engine.mark_processing(request_id, admin, body.notes))


@router.post("/withdrawals/{request_id}/complete", summary="Virement effectué")
async def admin_complete_withdrawal(
    request_id: str,
    body: WithdrawalAdminNote,
    admin: Actor = Depends(require_admin),
    engine: WithdrawalEngine = Depends(get_withdrawal_engine),
):
    return unwrap(await engine.mark_completed(request_id, admin, body.transaction_reference, body.notes))


@router.post("/withdrawals/{request_id}/fail", summary="Virement échoué")
async def admin_fail_withdrawal(
    request_id: str,
    body: WithdrawalAdminNote,
    admin: Actor = Depends(require_admin),
    engine: WithdrawalEngine = Depends(get_withdrawal_engine),
):
    return unwrap(await engine.mark_failed(request_id, admin, body.notes))


# ── Wallets ───────────────────────────────────────────────────────────────────
@router.get("/wallets/{store_id}", summary="Wallet d'une boutique")
async def admin_get_wallet(store_id: str, _admin: Actor = Depends(require_admin)):
    return unwrap(await wallet_service.get_wallet(store_id))


@router.get("/wallets/{store_id}/reconcile", summary="Contrôle de cohérence du registre")
async def admin_reconcile_wallet(store_id: str, _admin: Actor = Depends(require_admin)):
    return unwrap(await wallet_service.reconcile(store_id))
