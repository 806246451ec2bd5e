import random
import string
from datetime import datetime, timezone, timedelta
from typing import Optional

from jose import jwt, JWTError

from config import settings

# ── JWT ───────────────────────────────────────────────────────────────────────
# Les tokens sont émis par le service d'authentification ; on ne fait ici que
# les vérifier (même secret partagé, même algorithme).
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 120


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Lève JWTError si invalide ou expiré."""
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGORITHM])


def verify_access_token(token: str) -> Optional[dict]:
    try:
        payload = decode_token(token)
        if payload.get("type") != "access":
            return None
        return payload
    except JWTError:
        return None


# ── Numéro de demande de retrait ──────────────────────────────────────────────
def generate_request_number() -> str:
    """Génère un numéro lisible humain : WDR-AB12CD34"""
    chars = string.ascii_uppercase + string.digits
    code = "".join(random.choices(chars, k=8))
    return f"WDR-{code}"
