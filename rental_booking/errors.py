# ============================================================
# errors.py — Taxonomie des erreurs du cœur de réservation
# ------------------------------------------------------------
# Les couches internes (tarification, machine à états, clients)
# lèvent ces exceptions. L'orchestrateur les attrape et les
# renvoie dans un Result : aucune exception ne traverse la
# frontière publique.
# ============================================================
from dataclasses import dataclass, field
from typing import Any, Optional


class BookingError(Exception):
    code = "BookingError"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def as_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "details": self.details}


# --- phase de tarification : corrigible par l'appelant, rien n'est créé
class InvalidWindow(BookingError):
    code = "InvalidWindow"


class IncompleteRateCard(BookingError):
    code = "IncompleteRateCard"


class InvalidPromotion(BookingError):
    code = "InvalidPromotion"


# --- résultat métier attendu, pas une panne
class VehicleUnavailable(BookingError):
    code = "VehicleUnavailable"


class InvalidTransition(BookingError):
    code = "InvalidTransition"

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        super().__init__(
            message or f"Invalid booking transition: {current} -> {target}",
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


class InvalidCompletion(BookingError):
    code = "InvalidCompletion"


# la réservation a été modifiée en continu par d'autres workers
class ConcurrentModification(BookingError):
    code = "ConcurrentModification"


# --- paiement
class PaymentTimeout(BookingError):
    code = "PaymentTimeout"


class ProviderError(BookingError):
    code = "ProviderError"


class NotFound(BookingError):
    code = "NotFound"

    def __init__(self, kind: str, ident: Any):
        super().__init__(f"{kind} {ident} not found", kind=kind, id=ident)
        self.kind = kind
        self.ident = ident


@dataclass
class Result:
    """Structured outcome of a public booking operation.

    Exactly one of ``value`` / ``error`` is meaningful: callers check ``ok``
    and render ``error.as_dict()`` instead of interpreting exceptions.
    """

    value: Any = None
    error: Optional[BookingError] = None
    meta: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value=None, **meta) -> "Result":
        return cls(value=value, meta=meta)

    @classmethod
    def failure(cls, error: BookingError) -> "Result":
        return cls(error=error)
