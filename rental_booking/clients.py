# ============================================================
# clients.py — Appels HTTP vers les services collaborateurs
# ------------------------------------------------------------
# Le cœur de réservation ne possède ni les véhicules, ni les
# promotions, ni les identités, ni les paiements. Il les
# consulte par HTTP (httpx, timeout borné) :
#   - Identity  : acteur courant (rôle + stations assignées)
#   - Vehicle   : grille tarifaire et statut d'un véhicule
#   - Promotion : promotion par code
#   - Payment   : création / statut / remboursement de caution
# ============================================================
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from .config import HTTP_TIMEOUT_S, IDENTITY_URL, PAYMENT_TIMEOUT_S, PAYMENT_URL, PROMOTION_URL, VEHICLE_URL
from .errors import IncompleteRateCard, InvalidPromotion, NotFound, PaymentTimeout, ProviderError
from .models import Actor, PaymentStatus, Promotion, RateCard

logger = logging.getLogger(__name__)


class _ServiceClient:
    def __init__(self, base_url: str, timeout: float = HTTP_TIMEOUT_S, client: Optional[httpx.Client] = None):
        self.http = client or httpx.Client(base_url=base_url, timeout=timeout)

    def _get_json(self, path: str, kind: str, ident, **kwargs) -> dict:
        try:
            r = self.http.get(path, **kwargs)
        except httpx.HTTPError as e:
            logger.error("[client] GET %s failed: %s", path, e)
            raise ProviderError(f"{kind} service unreachable: {e}") from e
        if r.status_code == 404:
            raise NotFound(kind, ident)
        if r.is_error:
            logger.error("[client] GET %s -> %s", path, r.status_code)
            raise ProviderError(f"{kind} service answered {r.status_code}")
        try:
            data = r.json()
        except ValueError as e:
            raise ProviderError(f"{kind} service returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise ProviderError(f"{kind} service returned an unexpected payload")
        return data

    # charge utile mal formée (tarif négatif, rôle inconnu, ...) : erreur métier
    @staticmethod
    def _parse(build, error, kind: str):
        try:
            return build()
        except (ValidationError, KeyError, TypeError, ValueError) as e:
            logger.error("[client] invalid %s payload: %s", kind, e)
            raise error(f"{kind} service returned an invalid payload: {e}") from e


class IdentityClient(_ServiceClient):
    def __init__(self, base_url: str = IDENTITY_URL, **kwargs):
        super().__init__(base_url, **kwargs)

    def get_current_actor(self, token: str) -> Actor:
        data = self._get_json("/v1/me", "session", "current", headers={"Authorization": token})
        return self._parse(lambda: Actor(
            id=str(data["id"]),
            role=str(data["role"]).upper(),
            station_assignments=[str(s) for s in data.get("stationAssignments") or []],
        ), ProviderError, "identity")


class VehicleDirectoryClient(_ServiceClient):
    def __init__(self, base_url: str = VEHICLE_URL, **kwargs):
        super().__init__(base_url, **kwargs)

    def get_rate_card(self, vehicle_id: str) -> RateCard:
        data = self._get_json(f"/v1/vehicles/{vehicle_id}/pricing", "vehicle", vehicle_id)
        # le catalogue appelle le tarif journalier "baseRate"
        return self._parse(lambda: RateCard(
            hourly_rate=data.get("hourlyRate"),
            daily_rate=data.get("dailyRate", data.get("baseRate")),
            weekly_rate=data.get("weeklyRate"),
            monthly_rate=data.get("monthlyRate"),
            deposit_amount=data.get("depositAmount") or 0,
            insurance_rate=data.get("insuranceRate"),
        ), IncompleteRateCard, "vehicle")

    def get_vehicle_status(self, vehicle_id: str) -> str:
        data = self._get_json(f"/v1/vehicles/{vehicle_id}", "vehicle", vehicle_id)
        return str(data.get("status", "AVAILABLE")).upper()


class PromotionClient(_ServiceClient):
    def __init__(self, base_url: str = PROMOTION_URL, **kwargs):
        super().__init__(base_url, **kwargs)

    def get_promotion(self, code: str) -> Promotion:
        data = self._get_json(f"/v1/promotions/code/{code}", "promotion", code)
        return self._parse(lambda: Promotion(
            code=data.get("code", code),
            discount_type=data.get("discountType", "PERCENTAGE"),
            discount_value=data.get("discountValue", data.get("discount", 0)),
            valid_from=data.get("validFrom"),
            valid_until=data.get("validUntil"),
            max_discount_amount=data.get("maxDiscountAmount"),
        ), InvalidPromotion, "promotion")


class PaymentProviderClient(_ServiceClient):
    """Deposit operations against the payment provider.

    Timeouts surface as ``PaymentTimeout`` so the caller leaves the deposit
    PENDING and lets the reconciliation poller retry; any other transport or
    HTTP failure is a ``ProviderError``.
    """

    def __init__(self, base_url: str = PAYMENT_URL, timeout: float = PAYMENT_TIMEOUT_S, **kwargs):
        super().__init__(base_url, timeout=timeout, **kwargs)

    def _call(self, method: str, path: str, **kwargs) -> dict:
        try:
            r = self.http.request(method, path, **kwargs)
            r.raise_for_status()
            data = r.json() if r.content else {}
        except httpx.TimeoutException as e:
            logger.warning("[payment] %s %s timed out", method, path)
            raise PaymentTimeout(f"payment provider timed out on {path}") from e
        except httpx.HTTPError as e:
            logger.error("[payment] %s %s failed: %s", method, path, e)
            raise ProviderError(f"payment provider error on {path}: {e}") from e
        except ValueError as e:
            raise ProviderError(f"payment provider returned a non-JSON body on {path}") from e
        if not isinstance(data, dict):
            raise ProviderError(f"payment provider returned an unexpected payload on {path}")
        return data

    def initiate_deposit(self, booking_id: int, amount: int) -> str:
        data = self._call("POST", "/v1/payments/deposits", json={
            "bookingId": booking_id,
            "amount": amount,
            "description": f"Deposit {booking_id}",
        })
        ref = data.get("paymentRef") or data.get("paymentId")
        if not ref:
            raise ProviderError("payment provider returned no payment reference")
        return str(ref)

    def get_payment_status(self, payment_ref: str) -> PaymentStatus:
        data = self._call("GET", f"/v1/payments/{payment_ref}/status")
        status = str(data.get("status", "PENDING")).upper()
        try:
            return PaymentStatus(status)
        except ValueError:
            # statuts intermédiaires du fournisseur (PROCESSING, ...)
            return PaymentStatus.PENDING

    def refund_deposit(self, payment_ref: str, amount: int) -> None:
        self._call("POST", f"/v1/payments/{payment_ref}/refund", json={"amount": amount})
