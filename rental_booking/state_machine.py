# ============================================================
# state_machine.py — Cycle de vie d'une réservation
# ------------------------------------------------------------
# Seul module autorisé à modifier Booking.status et
# Booking.deposit_status. Chaque transition :
#   - vérifie le couple (statut courant, événement)
#   - applique ses effets de bord (remboursement, libération
#     du créneau via l'Availability Guard)
#   - ne modifie rien si elle est refusée
#
#   PENDING ──paiement ok──► CONFIRMED ──check-out──► IN_PROGRESS ──check-in──► COMPLETED
#      │  ╰─paiement ko (caution FAILED, statut inchangé)
#      │  ╰─nouveau lien de paiement (caution FAILED → PENDING)
#      ╰──────────┴──annulation──► CANCELLED
# ============================================================
import logging
from typing import Callable, Optional

from .availability import AvailabilityGuard, ReservationToken
from .errors import InvalidCompletion, InvalidTransition
from .models import Booking, BookingRequest, BookingStatus, CompletionData, DepositStatus, PaymentStatus
from .pricing import PriceBreakdown
from .timeutil import to_utc, utcnow

logger = logging.getLogger(__name__)

DAMAGE_REPORT_MAX = 2000

DEPOSIT_INITIATED = "deposit_initiated"
DEPOSIT_PAID = "deposit_paid"
DEPOSIT_FAILED = "deposit_failed"
CANCEL = "cancel"
CHECK_OUT = "check_out"
COMPLETE = "complete"

TRANSITIONS = {
    (BookingStatus.PENDING, DEPOSIT_INITIATED): BookingStatus.PENDING,
    (BookingStatus.PENDING, DEPOSIT_PAID): BookingStatus.CONFIRMED,
    (BookingStatus.PENDING, DEPOSIT_FAILED): BookingStatus.PENDING,
    (BookingStatus.PENDING, CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.CONFIRMED, CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.CONFIRMED, CHECK_OUT): BookingStatus.IN_PROGRESS,
    (BookingStatus.IN_PROGRESS, COMPLETE): BookingStatus.COMPLETED,
}

EVENT_TARGETS = {
    DEPOSIT_INITIATED: BookingStatus.PENDING,
    DEPOSIT_PAID: BookingStatus.CONFIRMED,
    DEPOSIT_FAILED: BookingStatus.PENDING,
    CANCEL: BookingStatus.CANCELLED,
    CHECK_OUT: BookingStatus.IN_PROGRESS,
    COMPLETE: BookingStatus.COMPLETED,
}


def next_status(current: BookingStatus, event: str) -> BookingStatus:
    target = TRANSITIONS.get((BookingStatus(current), event))
    if target is None:
        raise InvalidTransition(BookingStatus(current).value, EVENT_TARGETS[event].value)
    return target


# Un lien de paiement ne peut être émis que pour une réservation
# PENDING dont la caution n'est pas déjà encaissée.
def ensure_deposit_open(booking: Booking) -> None:
    next_status(booking.status, DEPOSIT_INITIATED)
    if booking.deposit_status not in (DepositStatus.PENDING, DepositStatus.FAILED):
        raise InvalidTransition(booking.deposit_status.value, DepositStatus.PENDING.value,
                                f"deposit already {booking.deposit_status.value.lower()}")


def validate_completion(booking: Booking, data: CompletionData) -> None:
    if data.actual_end_time is None:
        raise InvalidCompletion("actual end time is required")
    if to_utc(data.actual_end_time) < booking.start_time:
        raise InvalidCompletion("actual end time precedes booking start")
    if data.return_odometer is not None and data.return_odometer < 0:
        raise InvalidCompletion("return odometer must be non-negative")
    if data.battery_level_at_return is not None and not 0 <= data.battery_level_at_return <= 100:
        raise InvalidCompletion("battery level must be between 0 and 100")
    if data.customer_rating is not None and not 1 <= data.customer_rating <= 5:
        raise InvalidCompletion("customer rating must be between 1 and 5")
    if data.damage_report is not None and len(data.damage_report) > DAMAGE_REPORT_MAX:
        raise InvalidCompletion(f"damage report exceeds {DAMAGE_REPORT_MAX} characters")


class BookingStateMachine:
    """Applies lifecycle transitions to a ``Booking`` in memory.

    The caller owns the session: it commits after a successful transition and
    rolls back when one raises. ``refund`` is invoked with the booking before
    any field changes, so a failing refund leaves the booking untouched.
    """

    def __init__(self, guard: AvailabilityGuard, refund: Optional[Callable[[Booking], None]] = None):
        self.guard = guard
        self.refund = refund

    def create(self, request: BookingRequest, breakdown: PriceBreakdown, token: ReservationToken) -> Booking:
        now = utcnow()
        return Booking(
            renter_id=request.renter_id,
            vehicle_id=request.vehicle_id,
            station_id=request.station_id,
            promotion_id=breakdown.promotion_code,
            start_time=token.start_time,
            end_time=token.end_time,
            status=BookingStatus.PENDING,
            deposit_status=DepositStatus.PENDING,
            pricing_type=breakdown.pricing_type,
            duration_hours=breakdown.duration_hours,
            base_price=breakdown.base_price,
            insurance_amount=breakdown.insurance_amount,
            tax_amount=breakdown.tax_amount,
            discount_amount=breakdown.discount_amount,
            subtotal=breakdown.subtotal,
            total_amount=breakdown.total_amount,
            deposit_amount=breakdown.deposit_amount,
            reservation_token=token.token,
            notes=request.notes,
            created_at=now,
            updated_at=now,
        )

    # Nouvelle tentative après un échec : la caution redevient PENDING
    # pour que le poller suive la nouvelle référence.
    def initiate_deposit(self, booking: Booking, payment_ref: str) -> Booking:
        ensure_deposit_open(booking)
        retried = booking.deposit_status == DepositStatus.FAILED
        booking.payment_ref = payment_ref
        booking.deposit_status = DepositStatus.PENDING
        booking.updated_at = utcnow()
        logger.info("[state] booking %s deposit initiated ref=%s (retry=%s)", booking.id, payment_ref, retried)
        return booking

    def apply_payment(self, booking: Booking, status: PaymentStatus) -> Booking:
        if status == PaymentStatus.PAID:
            target = next_status(booking.status, DEPOSIT_PAID)
            if booking.deposit_status not in (DepositStatus.PENDING, DepositStatus.FAILED):
                raise InvalidTransition(booking.deposit_status.value, DepositStatus.PAID.value)
            booking.status = target
            booking.deposit_status = DepositStatus.PAID
        elif status == PaymentStatus.FAILED:
            next_status(booking.status, DEPOSIT_FAILED)
            if booking.deposit_status not in (DepositStatus.PENDING, DepositStatus.FAILED):
                raise InvalidTransition(booking.deposit_status.value, DepositStatus.FAILED.value)
            booking.deposit_status = DepositStatus.FAILED
        else:
            return booking
        booking.updated_at = utcnow()
        logger.info("[state] booking %s -> %s / deposit %s", booking.id, booking.status.value,
                    booking.deposit_status.value)
        return booking

    def cancel(self, booking: Booking, reason: str = "") -> Booking:
        target = next_status(booking.status, CANCEL)
        refunded = booking.deposit_status == DepositStatus.PAID
        if refunded and self.refund is not None:
            self.refund(booking)

        now = utcnow()
        booking.status = target
        if refunded:
            booking.deposit_status = DepositStatus.REFUNDED
        booking.cancelled_at = now
        booking.cancel_reason = reason
        booking.updated_at = now
        self.guard.release(booking.reservation_token)
        logger.info("[state] booking %s cancelled (refund=%s)", booking.id, refunded)
        return booking

    def check_out(self, booking: Booking) -> Booking:
        booking.status = next_status(booking.status, CHECK_OUT)
        booking.checked_out_at = booking.updated_at = utcnow()
        logger.info("[state] booking %s checked out", booking.id)
        return booking

    def complete(self, booking: Booking, data: CompletionData) -> Booking:
        target = next_status(booking.status, COMPLETE)
        validate_completion(booking, data)

        now = utcnow()
        booking.status = target
        booking.actual_end_time = to_utc(data.actual_end_time)
        booking.return_odometer = data.return_odometer
        booking.battery_level_at_return = data.battery_level_at_return
        booking.damage_report = data.damage_report
        booking.customer_rating = data.customer_rating
        if data.notes:
            booking.notes = data.notes
        booking.completed_at = now
        booking.updated_at = now
        self.guard.release(booking.reservation_token)
        logger.info("[state] booking %s completed", booking.id)
        return booking
