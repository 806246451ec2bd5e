from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from config import SettlementConfig, settings
from core.security import verify_access_token
from core.exceptions import credentials_exception, forbidden_exception
from database import db
from models.common import Actor, UserRole
from services.confirmation_service import AutoConfirmationSweep
from services.delivery_service import DeliveryStateMachine
from services.escrow_service import EscrowReleaseService
from services.notification_service import EmailNotifier
from services.wallet_service import WalletLedger
from services.withdrawal_service import WithdrawalEngine

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> dict:
    if not credentials:
        raise credentials_exception()
    payload = verify_access_token(credentials.credentials)
    if not payload:
        raise credentials_exception()

    user_id = payload.get("sub")
    if not user_id:
        raise credentials_exception()

    user = await db.users.find_one({"user_id": user_id}, {"_id": 0})
    if not user:
        raise credentials_exception()
    if not user.get("is_active", True):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Compte désactivé",
        )
    return user


def _actor(user: dict) -> Actor:
    try:
        role = UserRole(user.get("role"))
    except ValueError:
        raise forbidden_exception("Rôle inconnu")
    return Actor(
        user_id=user["user_id"],
        role=role,
        name=user.get("name"),
        email=user.get("email"),
        store_id=user.get("store_id"),
    )


async def get_current_actor(current_user: dict = Depends(get_current_user)) -> Actor:
    return _actor(current_user)


def require_role(*roles: UserRole):
    """
    Dépendance qui vérifie que l'utilisateur connecté possède l'un des rôles donnés.
    Usage : Depends(require_role(UserRole.ADMIN, UserRole.SUPERADMIN))
    """
    async def _check(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles:
            raise forbidden_exception()
        return actor
    return _check


# Raccourcis pratiques
require_admin = require_role(UserRole.ADMIN, UserRole.SUPERADMIN)


async def require_store_owner(actor: Actor = Depends(get_current_actor)) -> Actor:
    """Propriétaire de boutique avec une boutique rattachée."""
    if actor.role != UserRole.STORE_OWNER:
        raise forbidden_exception("Réservé aux boutiques")
    if not actor.store_id:
        raise forbidden_exception("Aucune boutique rattachée à ce compte")
    return actor


# ── Moteurs ───────────────────────────────────────────────────────────────────
# Construits une fois au chargement ; remplaçables via app.dependency_overrides.
_config = SettlementConfig.from_settings(settings)
_notifier = EmailNotifier()
_ledger = WalletLedger(_config)
_delivery = DeliveryStateMachine(_config, notifier=_notifier)
_sweep = AutoConfirmationSweep(_config)
_withdrawals = WithdrawalEngine(_ledger, _config, notifier=_notifier)
_escrow = EscrowReleaseService(_ledger, _config, notifier=_notifier)


def get_settlement_config() -> SettlementConfig:
    return _config


def get_delivery_machine() -> DeliveryStateMachine:
    return _delivery


def get_confirmation_sweep() -> AutoConfirmationSweep:
    return _sweep


def get_withdrawal_engine() -> WithdrawalEngine:
    return _withdrawals


def get_escrow_service() -> EscrowReleaseService:
    return _escrow
