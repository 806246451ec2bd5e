from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class DeliveryStatus(str, Enum):
    ORDER_PLACED     = "order_placed"
    PROCESSING       = "processing"
    SHIPPED          = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED        = "delivered"
    CANCELED         = "canceled"
    RETURNED         = "returned"
    FAILED_DELIVERY  = "failed_delivery"
    REFUNDED         = "refunded"


DELIVERY_STATUS_LABELS: dict[DeliveryStatus, str] = {
    DeliveryStatus.ORDER_PLACED:     "Commande passée",
    DeliveryStatus.PROCESSING:       "En préparation",
    DeliveryStatus.SHIPPED:          "Expédiée",
    DeliveryStatus.OUT_FOR_DELIVERY: "En cours de livraison",
    DeliveryStatus.DELIVERED:        "Livrée",
    DeliveryStatus.CANCELED:         "Annulée",
    DeliveryStatus.RETURNED:         "Retournée",
    DeliveryStatus.FAILED_DELIVERY:  "Échec de livraison",
    DeliveryStatus.REFUNDED:         "Remboursée",
}


class WithdrawalStatus(str, Enum):
    PENDING      = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED     = "approved"
    PROCESSING   = "processing"
    COMPLETED    = "completed"
    REJECTED     = "rejected"
    FAILED       = "failed"


class UserRole(str, Enum):
    BUYER       = "buyer"
    STORE_OWNER = "store_owner"
    ADMIN       = "admin"
    SUPERADMIN  = "superadmin"


ADMIN_ROLES = {UserRole.ADMIN.value, UserRole.SUPERADMIN.value}


class DeliveryType(str, Enum):
    HOME   = "home"
    CAMPUS = "campus"


class Document(BaseModel):
    """Modèle persisté : les enums sont stockés par leur valeur."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    def to_mongo(self) -> dict:
        return self.model_dump()


class Address(Document):
    address:       str
    postal_code:   Optional[str] = None
    delivery_type: DeliveryType  = DeliveryType.HOME
    campus_name:   Optional[str] = None   # livraison campus uniquement


class StatusHistoryEntry(Document):
    status:    str
    timestamp: datetime
    notes:     Optional[str] = None
    actor_id:  Optional[str] = None   # boutique, admin ou "system"


SYSTEM_ACTOR_ID = "system"


class Actor(BaseModel):
    """Identité de l'appelant, construite par core.dependencies depuis le JWT."""
    user_id:  str
    role:     UserRole
    name:     Optional[str] = None
    email:    Optional[str] = None
    store_id: Optional[str] = None   # boutique gérée (store_owner)

    @property
    def is_admin(self) -> bool:
        return self.role.value in ADMIN_ROLES

    def owns_store(self, store_id: str) -> bool:
        return self.store_id is not None and self.store_id == store_id
