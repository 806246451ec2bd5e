"""
Router boutique : sous-commandes, statut de livraison et versements des fonds.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from core.dependencies import get_current_actor, get_delivery_machine, get_escrow_service, require_store_owner
from core.exceptions import unwrap
from models.common import Actor, DeliveryStatus
from models.order import DeliveryStatusUpdate, FundReleaseStatus
from services.delivery_service import DeliveryStateMachine, list_store_sub_orders
from services.escrow_service import EscrowReleaseService

router = APIRouter()


@router.get("", summary="Mes sous-commandes")
async def list_my_sub_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    delivery_status: Optional[DeliveryStatus] = None,
    search: Optional[str] = None,
    actor: Actor = Depends(require_store_owner),
):
    return unwrap(await list_store_sub_orders(
        actor.store_id, page, limit, from_date, to_date, delivery_status, search,
    ))


# ── Versements ────────────────────────────────────────────────────────────────
@router.get("/fund-releases", summary="Historique des versements")
async def list_my_fund_releases(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[FundReleaseStatus] = None,
    order_id: Optional[str] = None,
    sort: str = Query("newest", pattern="^(newest|oldest|amount)$"),
    actor: Actor = Depends(require_store_owner),
    escrow: EscrowReleaseService = Depends(get_escrow_service),
):
    return unwrap(await escrow.list_store_fund_releases(actor.store_id, page, limit, status, order_id, sort))


@router.get("/fund-releases/summary", summary="Synthèse des versements par statut")
async def get_my_fund_release_summary(
    actor: Actor = Depends(require_store_owner),
    escrow: EscrowReleaseService = Depends(get_escrow_service),
):
    return unwrap(await escrow.fund_release_summary(actor.store_id))


@router.get("/fund-releases/{sub_order_id}", summary="Versement d'une sous-commande")
async def get_fund_release(
    sub_order_id: str,
    actor: Actor = Depends(get_current_actor),
    escrow: EscrowReleaseService = Depends(get_escrow_service),
):
    return unwrap(await escrow.get_fund_release(sub_order_id, actor))


# ── Livraison ─────────────────────────────────────────────────────────────────
@router.put("/{sub_order_id}/status", summary="Mettre à jour le statut de livraison")
async def update_status(
    sub_order_id: str,
    body: DeliveryStatusUpdate,
    actor: Actor = Depends(get_current_actor),
    machine: DeliveryStateMachine = Depends(get_delivery_machine),
):
    return unwrap(await machine.update_delivery_status(
        sub_order_id, body.delivery_status, actor, body.notes,
    ))


@router.get("/{sub_order_id}", summary="Détail d'une sous-commande")
async def get_sub_order(
    sub_order_id: str,
    actor: Actor = Depends(get_current_actor),
    machine: DeliveryStateMachine = Depends(get_delivery_machine),
):
    return unwrap(await machine.get_sub_order(sub_order_id, actor))


@router.get("/{sub_order_id}/history", summary="Historique des statuts")
async def get_history(
    sub_order_id: str,
    actor: Actor = Depends(get_current_actor),
    machine: DeliveryStateMachine = Depends(get_delivery_machine),
):
    return unwrap(await machine.get_status_history(sub_order_id, actor))
