# ============================================================
# timeutil.py — Normalisation des dates
# ------------------------------------------------------------
# En base, toutes les dates sont stockées en UTC "naïf" (sans
# tzinfo) pour que SQLite et PostgreSQL comparent les mêmes
# valeurs. Les dates reçues sans timezone sont interprétées
# dans la timezone locale de l'agence.
# ============================================================
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from .config import LOCAL_TZ

_LOCAL = ZoneInfo(LOCAL_TZ)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(dt: datetime) -> datetime:
    # si pas de tz, on suppose la timezone locale
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=_LOCAL)
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_local(dt):
    # les dates stockées sont en UTC naïf
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(_LOCAL).isoformat()
