"""
Service notification : emails transactionnels (acheteur, boutique, admin).

Envoi best-effort : une notification ratée est journalisée et enregistrée en base,
jamais remontée à l'appelant. Appelé après le commit des écritures métier.
"""
import html
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

import httpx

from config import settings
from core.utils import format_naira, short_ref
from database import db
from models.common import DeliveryStatus, DELIVERY_STATUS_LABELS
from models.notification import EmailMessage, Notification, NotificationStatus

logger = logging.getLogger(__name__)


def _notif_id() -> str:
    return f"ntf_{uuid.uuid4().hex[:12]}"


def _headers(api_key: str) -> dict:
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


class EmailNotifier:
    """Expéditeur d'emails via l'API HTTP du fournisseur (simulé sans clé API)."""

    def __init__(self, api_url: Optional[str] = None, api_key: Optional[str] = None):
        self.api_url = api_url or settings.MAIL_API_URL
        self.api_key = api_key if api_key is not None else settings.MAIL_API_KEY

    async def send(
        self,
        message: EmailMessage,
        ref_type: Optional[str] = None,
        ref_id: Optional[str] = None,
    ) -> None:
        status, error = NotificationStatus.SENT, None
        if not self.api_key:
            logger.info(f"[SIMULATION EMAIL] {message.recipient} : {message.subject}")
            status = NotificationStatus.SIMULATED
        else:
            try:
                async with httpx.AsyncClient(timeout=15.0) as client:
                    resp = await client.post(
                        self.api_url,
                        json={
                            "from":    settings.MAIL_FROM_ADDRESS,
                            "to":      message.recipient,
                            "subject": message.subject,
                            "html":    message.html_body,
                            "text":    message.text_body,
                        },
                        headers=_headers(self.api_key),
                    )
                    resp.raise_for_status()
                logger.info(f"Email envoyé à {message.recipient} : {message.subject}")
            except httpx.HTTPError as e:
                logger.warning(f"Email non envoyé à {message.recipient} : {e}")
                status, error = NotificationStatus.FAILED, str(e)

        await _record(message, status, ref_type, ref_id, error)


async def _record(
    message: EmailMessage,
    status: NotificationStatus,
    ref_type: Optional[str],
    ref_id: Optional[str],
    error: Optional[str],
) -> None:
    try:
        await db.notifications.insert_one(Notification(
            notif_id=_notif_id(),
            recipient=message.recipient,
            subject=message.subject,
            status=status,
            ref_type=ref_type,
            ref_id=ref_id,
            error=error,
            created_at=datetime.now(timezone.utc),
        ).to_mongo())
    except Exception as e:
        logger.warning(f"Notification non enregistrée ({message.recipient}) : {e}")


async def notify_safely(
    notifier,
    message: Optional[EmailMessage],
    ref_type: Optional[str] = None,
    ref_id: Optional[str] = None,
) -> None:
    """Aucune exception ne sort d'ici : les moteurs appellent ceci après commit."""
    if notifier is None or message is None:
        return
    try:
        await notifier.send(message, ref_type=ref_type, ref_id=ref_id)
    except Exception as e:
        logger.warning(f"Échec notification « {message.subject} » : {e}")


def _email(recipient: str, subject: str, lines: list[str]) -> EmailMessage:
    text = "\n".join(lines)
    body = "".join(f"<p>{html.escape(line)}</p>" for line in lines if line)
    return EmailMessage(recipient=recipient, subject=subject, html_body=body, text_body=text)


# ── Modèles de messages ───────────────────────────────────────────────────────
STATUS_MESSAGES = {
    DeliveryStatus.PROCESSING:       "Votre commande est en cours de préparation.",
    DeliveryStatus.SHIPPED:          "Votre commande a été expédiée.",
    DeliveryStatus.OUT_FOR_DELIVERY: "Un livreur est en route avec votre commande.",
    DeliveryStatus.DELIVERED:        "Votre commande a été livrée. Merci de confirmer la réception.",
    DeliveryStatus.CANCELED:         "Votre commande a été annulée.",
    DeliveryStatus.RETURNED:         "Le retour de votre commande a été enregistré.",
    DeliveryStatus.FAILED_DELIVERY:  "La livraison de votre commande a échoué. Nous vous recontactons.",
    DeliveryStatus.REFUNDED:         "Votre commande a été remboursée.",
}


def delivery_status_email(sub_order: dict, new_status: DeliveryStatus, notes: Optional[str]) -> Optional[EmailMessage]:
    email = (sub_order.get("buyer") or {}).get("email")
    if not email:
        return None
    ref = short_ref(sub_order["order_id"])
    lines = [
        f"Bonjour {sub_order['buyer'].get('name', '')},",
        STATUS_MESSAGES.get(new_status, f"Statut mis à jour : {DELIVERY_STATUS_LABELS[new_status]}"),
        f"Commande n° {ref}",
    ]
    if notes:
        lines.append(f"Note : {notes}")
    return _email(email, f"Commande {ref} : {DELIVERY_STATUS_LABELS[new_status]}", lines)


def admin_delivery_alert(sub_order: dict, new_status: DeliveryStatus, notes: Optional[str]) -> Optional[EmailMessage]:
    if not settings.ADMIN_NOTIFICATION_EMAIL:
        return None
    ref = short_ref(sub_order["order_id"])
    return _email(
        settings.ADMIN_NOTIFICATION_EMAIL,
        f"[Revue] Commande {ref} : {DELIVERY_STATUS_LABELS[new_status]}",
        [
            f"Sous-commande {sub_order['sub_order_id']} (boutique {sub_order['store_id']})",
            f"Montant : {format_naira(sub_order.get('total_amount', 0))}",
            f"Motif : {notes or '-'}",
            "L'escrow reste bloqué en attendant une décision de remboursement.",
        ],
    )


def withdrawal_created_email(store: dict, request: dict) -> Optional[EmailMessage]:
    if not store.get("store_email"):
        return None
    return _email(
        store["store_email"],
        f"Demande de retrait {request['request_number']} reçue",
        [
            f"Bonjour {store.get('name', '')},",
            f"Nous avons reçu votre demande de retrait de {format_naira(request['requested_amount'])}.",
            f"Frais de traitement : {format_naira(request['processing_fee'])}",
            f"Montant net versé : {format_naira(request['net_amount'])}",
            "Le montant est réservé sur votre portefeuille pendant l'examen de la demande.",
        ],
    )


WITHDRAWAL_STATUS_LINES = {
    "under_review": "Votre demande de retrait est en cours d'examen.",
    "approved":     "Votre demande de retrait a été approuvée.",
    "processing":   "Le virement de votre retrait est en cours.",
    "completed":    "Le virement de votre retrait a été effectué.",
    "rejected":     "Votre demande de retrait a été rejetée. Le montant a été recrédité sur votre solde.",
    "failed":       "Le virement de votre retrait a échoué. Le montant a été recrédité sur votre solde.",
}


def withdrawal_status_email(store: Optional[dict], request: dict) -> Optional[EmailMessage]:
    if not store or not store.get("store_email"):
        return None
    lines = [
        f"Bonjour {store.get('name', '')},",
        WITHDRAWAL_STATUS_LINES.get(request["status"], f"Statut : {request['status']}"),
        f"Demande {request['request_number']} : {format_naira(request['requested_amount'])}",
    ]
    if request.get("rejection_reason"):
        lines.append(f"Motif : {request['rejection_reason']}")
    if request.get("transaction_reference"):
        lines.append(f"Référence du virement : {request['transaction_reference']}")
    return _email(store["store_email"], f"Retrait {request['request_number']}", lines)


def escrow_released_email(store: Optional[dict], sub_order: dict, amount: int) -> Optional[EmailMessage]:
    if not store or not store.get("store_email"):
        return None
    ref = short_ref(sub_order["order_id"])
    return _email(
        store["store_email"],
        f"Paiement disponible pour la commande {ref}",
        [
            f"Bonjour {store.get('name', '')},",
            f"{format_naira(amount)} ont été crédités sur votre portefeuille.",
            f"Commission plateforme : {format_naira((sub_order.get('settlement') or {}).get('commission', 0))}",
        ],
    )
