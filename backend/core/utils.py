import math
import re
from datetime import datetime, time, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise une date lue depuis Mongo en datetime UTC « aware ».
    Selon le client (tz_aware ou non) Mongo renvoie des dates naïves en UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def bson_date(value: datetime) -> datetime:
    """Date à utiliser dans un filtre de requête : UTC naïf, comme le stockage BSON."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def end_of_day(value: datetime) -> datetime:
    """23:59:59.999 le même jour (bornes 'jusqu'au' des filtres de dates)."""
    return datetime.combine(value.date(), time(23, 59, 59, 999000), tzinfo=value.tzinfo)


def date_range_filter(
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
) -> dict:
    """Filtre {$gte, $lte} ; to_date est étendu à la fin de journée."""
    bounds = {}
    if from_date:
        bounds["$gte"] = bson_date(from_date)
    if to_date:
        bounds["$lte"] = bson_date(end_of_day(to_date))
    return bounds


def search_regex(term: str) -> dict:
    """Recherche insensible à la casse, le terme est échappé (pas de regex utilisateur)."""
    return {"$regex": re.escape(term.strip()), "$options": "i"}


def page_skip(page: int, limit: int) -> int:
    return (max(page, 1) - 1) * limit


def pagination(page: int, limit: int, total: int) -> dict:
    pages = math.ceil(total / limit) if limit else 0
    return {
        "page":          page,
        "limit":         limit,
        "total":         total,
        "pages":         pages,
        "has_next_page": page < pages,
        "has_prev_page": page > 1,
    }


def mask_account_number(account_number: str) -> str:
    """
    Masque un numéro de compte en ne laissant que les 4 derniers chiffres.
    Format type: 0123456789 -> ••••••6789
    """
    if not account_number:
        return ""

    clean = account_number.replace(" ", "")
    if len(clean) <= 4:
        return "••••"
    return "•" * (len(clean) - 4) + clean[-4:]


def format_naira(kobo: int) -> str:
    """150050 -> '₦1,500.50'"""
    return f"₦{kobo / 100:,.2f}"


def short_ref(identifier: str) -> str:
    """Référence courte lisible : 'ord_1a2b3c4d5e6f' -> '1A2B3C4D'."""
    return identifier.split("_", 1)[-1][:8].upper()
