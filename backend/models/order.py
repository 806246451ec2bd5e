from datetime import datetime
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field
from models.common import Address, DeliveryStatus, Document, StatusHistoryEntry


class BuyerSnapshot(BaseModel):
    user_id: str
    name:    str
    email:   Optional[str] = None


class OrderProduct(BaseModel):
    product_id: str
    name:       str
    quantity:   int = Field(gt=0)
    unit_price: int = Field(ge=0)     # kobo, figé au moment de l'achat


class ShippingMethod(BaseModel):
    name:                    str
    price:                   int = 0   # kobo
    estimated_delivery_days: Optional[str] = None   # "3-5 jours"


class CustomerConfirmation(BaseModel):
    confirmed:      bool = False          # confirmé par l'acheteur lui-même
    confirmed_at:   Optional[datetime] = None
    auto_confirmed: bool = False          # confirmé par le système (sweep)


class Escrow(BaseModel):
    held:          bool = True
    released:      bool = False
    released_at:   Optional[datetime] = None
    refunded:      bool = False
    refund_reason: Optional[str] = None


class FundReleaseStatus(str, Enum):
    PENDING  = "pending"    # fonds bloqués, pas encore libérables
    READY    = "ready"      # fenêtre de retour expirée, en attente de l'admin
    RELEASED = "released"
    REFUNDED = "refunded"


class Settlement(BaseModel):
    amount:                 int            # part boutique après commission
    shipping_price:         int = 0
    commission:             int = 0
    applied_percentage_fee: int = 0
    applied_flat_fee:       int = 0
    notes:                  Optional[str] = None


class SubOrder(Document):
    sub_order_id:    str
    order_id:        str
    store_id:        str
    buyer:           BuyerSnapshot
    products:        List[OrderProduct]
    total_amount:    int
    shipping_method: Optional[ShippingMethod] = None
    # Livraison
    delivery_status: DeliveryStatus = DeliveryStatus.ORDER_PLACED
    status_history:  List[StatusHistoryEntry] = []
    delivery_date:   Optional[datetime] = None   # posée une seule fois, au passage en DELIVERED
    return_window:   Optional[datetime] = None   # delivery_date + RETURN_WINDOW_DAYS
    customer_confirmed_delivery: CustomerConfirmation = CustomerConfirmation()
    # Argent
    escrow:          Escrow = Escrow()
    settlement:      Optional[Settlement] = None
    created_at:      datetime
    updated_at:      datetime


class Order(Document):
    order_id:          str
    buyer:             BuyerSnapshot
    store_ids:         List[str]
    sub_order_ids:     List[str]
    total_amount:      int
    shipping_address:  Address
    payment_reference: Optional[str] = None
    created_at:        datetime
    updated_at:        datetime


# ── Entrées ───────────────────────────────────────────────────────────────────
class SubOrderCreate(BaseModel):
    store_id:        str
    products:        List[OrderProduct]
    total_amount:    int = Field(gt=0)
    shipping_method: Optional[ShippingMethod] = None


class OrderCreate(BaseModel):
    buyer:             BuyerSnapshot
    shipping_address:  Address
    total_amount:      int = Field(gt=0)
    sub_orders:        List[SubOrderCreate] = Field(min_length=1)
    payment_reference: Optional[str] = None


class DeliveryStatusUpdate(BaseModel):
    delivery_status: DeliveryStatus
    notes:           Optional[str] = None


class RefundRequest(BaseModel):
    reason: Optional[str] = None


class EscrowReleaseRequest(BaseModel):
    notes: Optional[str] = None
