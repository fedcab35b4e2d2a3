# ============================================================
# Booking API Router
# ------------------------------------------------------------
# Expose les endpoints REST du cœur de réservation : création,
# devis, consultation, caution (lien, callback, poll),
# annulation, check-out et retour du véhicule.
# Toute la logique est dans l'orchestrateur ; ce module ne fait
# que traduire les Result en réponses HTTP.
# ============================================================
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlmodel import create_engine

from .clients import IdentityClient, PaymentProviderClient, PromotionClient, VehicleDirectoryClient
from .config import DATABASE_URL
from .errors import BookingError, NotFound, Result
from .models import (
    Actor,
    Booking,
    BookingFilter,
    BookingRequest,
    BookingStatus,
    CancelRequest,
    CompletionData,
    DepositStatus,
    PaymentOutcome,
    QuoteRequest,
)
from .orchestrator import BookingOrchestrator
from .poller import PaymentReconciliationPoller
from .timeutil import to_local

# Moteur SQLAlchemy/SQLModel + routeur FastAPI
engine = create_engine(DATABASE_URL, pool_pre_ping=True)
router = APIRouter()

HTTP_STATUS = {
    "InvalidWindow": 400,
    "IncompleteRateCard": 400,
    "InvalidPromotion": 400,
    "InvalidCompletion": 400,
    "NotFound": 404,
    "VehicleUnavailable": 409,
    "InvalidTransition": 409,
    "ConcurrentModification": 409,
    "PaymentTimeout": 504,
    "ProviderError": 502,
}


@lru_cache
def get_payments() -> PaymentProviderClient:
    return PaymentProviderClient()


@lru_cache
def get_orchestrator() -> BookingOrchestrator:
    return BookingOrchestrator(engine, VehicleDirectoryClient(), PromotionClient(), get_payments())


def get_poller(orchestrator: BookingOrchestrator = Depends(get_orchestrator)) -> PaymentReconciliationPoller:
    return PaymentReconciliationPoller(orchestrator, orchestrator.payments)


@lru_cache
def _identity() -> IdentityClient:
    return IdentityClient()


# Dépendance FastAPI : l'acteur courant auprès du service Identity
def get_actor(authorization: str = Header(...)) -> Actor:
    try:
        return _identity().get_current_actor(authorization)
    except NotFound:
        raise HTTPException(401, "invalid session")
    except BookingError as e:
        raise HTTPException(502, e.as_dict())


def unwrap(result: Result):
    if result.ok:
        return result.value
    raise HTTPException(HTTP_STATUS.get(result.error.code, 400), result.error.as_dict())


# Les dates sont stockées en UTC, affichées en local
def booking_view(b: Booking) -> dict:
    return {
        "id": b.id,
        "renter_id": b.renter_id,
        "vehicle_id": b.vehicle_id,
        "station_id": b.station_id,
        "promotion_id": b.promotion_id,
        "status": b.status.value,
        "deposit_status": b.deposit_status.value,
        "start_time": to_local(b.start_time),
        "end_time": to_local(b.end_time),
        "actual_end_time": to_local(b.actual_end_time),
        "pricing_type": b.pricing_type,
        "duration_hours": b.duration_hours,
        "base_price": b.base_price,
        "insurance_amount": b.insurance_amount,
        "tax_amount": b.tax_amount,
        "discount_amount": b.discount_amount,
        "subtotal": b.subtotal,
        "total_amount": b.total_amount,
        "deposit_amount": b.deposit_amount,
        "payment_ref": b.payment_ref,
        "return_odometer": b.return_odometer,
        "battery_level_at_return": b.battery_level_at_return,
        "damage_report": b.damage_report,
        "customer_rating": b.customer_rating,
        "notes": b.notes,
        "created_at": to_local(b.created_at),
        "updated_at": to_local(b.updated_at),
        "cancelled_at": to_local(b.cancelled_at),
        "cancel_reason": b.cancel_reason,
    }


# ------------------------------------------------------------
# POST /v1/bookings — Créer une réservation
# ------------------------------------------------------------
# 201 + réservation PENDING, 409 si le véhicule n'est plus
# disponible (relancer une recherche, pas le même créneau)
# ------------------------------------------------------------
@router.post("/v1/bookings", status_code=201, dependencies=[Depends(get_actor)])
def create_booking(req: BookingRequest, o: BookingOrchestrator = Depends(get_orchestrator)):
    result = o.create_booking(req.renter_id, req.vehicle_id, req.station_id, req.start_time, req.end_time,
                              promotion_code=req.promotion_code, notes=req.notes)
    created = unwrap(result)
    return {**booking_view(created), "pricing": result.meta["breakdown"].as_dict()}


@router.post("/v1/bookings/quote", dependencies=[Depends(get_actor)])
def quote(req: QuoteRequest, o: BookingOrchestrator = Depends(get_orchestrator)):
    return unwrap(o.quote(req.vehicle_id, req.start_time, req.end_time, req.promotion_code)).as_dict()


@router.get("/v1/bookings")
def list_bookings(status: Optional[BookingStatus] = None, deposit_status: Optional[DepositStatus] = None,
                  renter_id: Optional[str] = None, vehicle_id: Optional[str] = None,
                  station_id: Optional[str] = None, limit: int = Query(50, ge=1, le=500),
                  offset: int = Query(0, ge=0),
                  o: BookingOrchestrator = Depends(get_orchestrator), actor: Actor = Depends(get_actor)):
    f = BookingFilter(status=status, deposit_status=deposit_status, renter_id=renter_id,
                      vehicle_id=vehicle_id, station_id=station_id, limit=limit, offset=offset)
    return [booking_view(b) for b in unwrap(o.list_bookings(f, actor))]


@router.get("/v1/bookings/{booking_id}", dependencies=[Depends(get_actor)])
def get_booking(booking_id: int, o: BookingOrchestrator = Depends(get_orchestrator)):
    return booking_view(unwrap(o.get_booking(booking_id)))


# ------------------------------------------------------------
# Caution
# ------------------------------------------------------------
@router.post("/v1/bookings/{booking_id}/deposit", dependencies=[Depends(get_actor)])
def initiate_deposit(booking_id: int, o: BookingOrchestrator = Depends(get_orchestrator)):
    b = unwrap(o.initiate_deposit(booking_id))
    return {"bookingId": b.id, "paymentRef": b.payment_ref, "amount": b.deposit_amount}


# Callback du fournisseur de paiement (peut être redélivré).
# Appelé par le fournisseur, pas par un utilisateur : pas de get_actor.
@router.post("/v1/bookings/{booking_id}/deposit/callback")
def deposit_callback(booking_id: int, outcome: PaymentOutcome,
                     o: BookingOrchestrator = Depends(get_orchestrator)):
    result = o.confirm_deposit(booking_id, outcome)
    return {**booking_view(unwrap(result)), "applied": result.meta.get("applied", False)}


# Le front ne fait plus que lire l'état : le poll déclenche une
# réconciliation côté serveur
@router.post("/v1/bookings/{booking_id}/deposit/poll", dependencies=[Depends(get_actor)])
def poll_deposit(booking_id: int, o: BookingOrchestrator = Depends(get_orchestrator),
                 poller: PaymentReconciliationPoller = Depends(get_poller)):
    result = poller.poll_booking(booking_id, max_attempts=1)
    if not result.ok and result.error.code != "PaymentTimeout":
        unwrap(result)
    return {**booking_view(unwrap(o.get_booking(booking_id))), "reconciled": result.ok}


# ------------------------------------------------------------
# Transitions staff
# ------------------------------------------------------------
@router.post("/v1/bookings/{booking_id}/cancel", dependencies=[Depends(get_actor)])
def cancel(booking_id: int, req: CancelRequest, o: BookingOrchestrator = Depends(get_orchestrator)):
    return booking_view(unwrap(o.cancel_booking(booking_id, req.reason)))


@router.post("/v1/bookings/{booking_id}/checkout", dependencies=[Depends(get_actor)])
def checkout(booking_id: int, o: BookingOrchestrator = Depends(get_orchestrator)):
    return booking_view(unwrap(o.check_out_booking(booking_id)))


@router.post("/v1/bookings/{booking_id}/complete", dependencies=[Depends(get_actor)])
def complete(booking_id: int, data: CompletionData, o: BookingOrchestrator = Depends(get_orchestrator)):
    return booking_view(unwrap(o.complete_booking(booking_id, data)))
