from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel

from models.common import Document


class NotificationStatus(str, Enum):
    SENT      = "sent"
    FAILED    = "failed"
    SIMULATED = "simulated"   # pas de clé API mail configurée


class EmailMessage(BaseModel):
    recipient: str
    subject:   str
    html_body: str
    text_body: str


class Notification(Document):
    notif_id:   str
    recipient:  str
    subject:    str
    status:     NotificationStatus
    # Lien contextuel (ex: sub_order_id, request_id)
    ref_type:   Optional[str] = None   # "sub_order", "withdrawal_request", "escrow"
    ref_id:     Optional[str] = None
    error:      Optional[str] = None
    created_at: datetime
