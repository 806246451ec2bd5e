"""
Router acheteur : consultation de commande, confirmation de réception.
"""
from fastapi import APIRouter, Depends

from core.dependencies import get_current_actor, get_delivery_machine
from core.exceptions import unwrap
from models.common import Actor
from services.delivery_service import DeliveryStateMachine
from services.order_service import get_order

router = APIRouter()


@router.get("/{order_id}", summary="Ma commande et ses sous-commandes")
async def get_my_order(order_id: str, actor: Actor = Depends(get_current_actor)):
    return unwrap(await get_order(order_id, actor))


@router.post("/sub-orders/{sub_order_id}/confirm-receipt", summary="Confirmer la réception")
async def confirm_receipt(
    sub_order_id: str,
    actor: Actor = Depends(get_current_actor),
    machine: DeliveryStateMachine = Depends(get_delivery_machine),
):
    confirmation = unwrap(await machine.confirm_receipt(sub_order_id, actor))
    return {"sub_order_id": sub_order_id, "customer_confirmed_delivery": confirmation}
