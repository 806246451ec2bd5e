from datetime import datetime
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field
from models.common import Document, WithdrawalStatus


class TransactionType(str, Enum):
    CREDIT = "credit"   # gains, annulation de réservation
    DEBIT  = "debit"    # retraits


class TransactionSource(str, Enum):
    ORDER      = "order"        # libération d'escrow
    WITHDRAWAL = "withdrawal"   # réservation pour retrait
    REFUND     = "refund"       # virement de retrait échoué, remis en solde
    ADJUSTMENT = "adjustment"   # rejet de retrait, corrections admin


class RelatedDocumentType(str, Enum):
    ORDER              = "order"
    WITHDRAWAL_REQUEST = "withdrawal_request"
    ADJUSTMENT         = "adjustment"


class Wallet(Document):
    wallet_id:    str
    store_id:     str
    balance:      int = 0    # kobo disponible au retrait
    pending:      int = 0    # kobo réservé par des demandes de retrait ouvertes
    total_earned: int = 0    # cumul des crédits de ventes
    currency:     str = "NGN"
    created_at:   datetime
    updated_at:   datetime


class WalletTransaction(Document):
    tx_id:                 str
    wallet_id:             str
    type:                  TransactionType
    amount:                int
    source:                TransactionSource
    description:           str
    related_document_id:   Optional[str] = None
    related_document_type: RelatedDocumentType = RelatedDocumentType.ADJUSTMENT
    created_at:            datetime


class BankDetails(BaseModel):
    bank_name:           str
    account_number:      str
    account_holder_name: str
    bank_code:           Optional[int] = None


class PayoutAccount(BaseModel):
    payout_method: str = "bank_transfer"
    bank_details:  BankDetails


class WithdrawalHistoryEntry(Document):
    status:    WithdrawalStatus
    timestamp: datetime
    admin_id:  Optional[str] = None
    notes:     Optional[str] = None


class WithdrawalRequest(Document):
    request_id:       str
    request_number:   str         # "WDR-AB12CD34"
    store_id:         str
    wallet_id:        str
    requested_amount: int
    processing_fee:   int
    net_amount:       int
    bank_details:     BankDetails  # copie figée à la demande
    status:           WithdrawalStatus = WithdrawalStatus.PENDING
    status_history:   List[WithdrawalHistoryEntry] = []
    description:      Optional[str] = None
    # Revue admin
    reviewed_by:      Optional[str] = None
    reviewed_at:      Optional[datetime] = None
    review_notes:     Optional[str] = None
    rejection_reason: Optional[str] = None
    # Virement
    processed_by:          Optional[str] = None
    processed_at:          Optional[datetime] = None
    transaction_reference: Optional[str] = None
    created_at:       datetime
    updated_at:       datetime


# ── Entrées ───────────────────────────────────────────────────────────────────
class WithdrawalCreate(BaseModel):
    amount:          int = Field(gt=0)   # kobo
    bank_account_id: str = Field(min_length=1)   # numéro de compte d'un compte de versement vérifié
    description:     Optional[str] = None


class WithdrawalApprove(BaseModel):
    transaction_reference: str = Field(min_length=1)
    notes:                 Optional[str] = None


class WithdrawalReject(BaseModel):
    reason: str = Field(min_length=1)
    notes:  Optional[str] = None


class WithdrawalAdminNote(BaseModel):
    notes:                 Optional[str] = None
    transaction_reference: Optional[str] = None
