# ============================================================
# orchestrator.py — Point d'entrée public du cœur de réservation
# ------------------------------------------------------------
# Compose la tarification, la garde de disponibilité et la
# machine à états pour servir les cas d'usage :
#   create_booking → quote / initiate_deposit → confirm_deposit
#   → check_out_booking → complete_booking, ou cancel_booking
#
# Chaque opération ouvre sa propre Session (les workers FastAPI
# et le poller tournent en parallèle) et renvoie un Result :
# les erreurs métier ne traversent jamais la frontière sous
# forme d'exception.
#
# Une transition lit la réservation, la modifie puis l'écrit en
# compare-and-swap (BookingRepository.save). Si un autre worker
# l'a modifiée entre-temps, on relit et on rejoue la transition
# sur l'état à jour (ex. annulation pendant un callback PAID :
# le rejeu voit la caution PAID et la rembourse).
# ============================================================
import functools
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from . import pricing
from .availability import AvailabilityGuard, Conflict
from .config import BOOKING_START_GRACE_MIN, RESERVE_ATTEMPTS, WRITE_ATTEMPTS
from .errors import (
    BookingError,
    ConcurrentModification,
    InvalidPromotion,
    InvalidWindow,
    NotFound,
    Result,
    VehicleUnavailable,
)
from .models import (
    Actor,
    ActorRole,
    Booking,
    BookingFilter,
    BookingRequest,
    CompletionData,
    DepositStatus,
    PaymentOutcome,
    PaymentStatus,
)
from .publisher import Notifier
from .repository import BookingRepository, StaleBooking
from .state_machine import BookingStateMachine, ensure_deposit_open
from .timeutil import to_utc, utcnow

logger = logging.getLogger(__name__)

# statuts du catalogue véhicules qui interdisent une nouvelle location
UNRENTABLE_VEHICLE_STATUSES = {"MAINTENANCE", "RETIRED", "UNAVAILABLE"}


def _as_result(op):
    @functools.wraps(op)
    def wrapper(self, *args, **kwargs):
        try:
            return op(self, *args, **kwargs)
        except BookingError as e:
            logger.info("[orchestrator] %s refused: %s - %s", op.__name__, e.code, e.message)
            return Result.failure(e)
    return wrapper


def _event_payload(b: Booking) -> dict:
    return {
        "bookingId": b.id,
        "vehicleId": b.vehicle_id,
        "stationId": b.station_id,
        "status": b.status.value,
        "depositStatus": b.deposit_status.value,
    }


class BookingOrchestrator:
    def __init__(self, engine, vehicles, promotions, payments, notifier: Optional[Notifier] = None,
                 start_grace_min: int = BOOKING_START_GRACE_MIN, reserve_attempts: int = RESERVE_ATTEMPTS,
                 write_attempts: int = WRITE_ATTEMPTS, clock: Callable[[], datetime] = utcnow):
        self.engine = engine
        self.vehicles = vehicles
        self.promotions = promotions
        self.payments = payments
        self.notifier = notifier or Notifier()
        self.start_grace = timedelta(minutes=start_grace_min)
        self.reserve_attempts = reserve_attempts
        self.write_attempts = write_attempts
        self.clock = clock

    def _machine(self, s: Session, refund: Optional[Callable[[Booking], None]] = None) -> BookingStateMachine:
        return BookingStateMachine(AvailabilityGuard(s, attempts=self.reserve_attempts),
                                   refund=refund or self._refund)

    def _refund(self, b: Booking) -> None:
        if not b.payment_ref:
            # caution encaissée hors fournisseur (guichet) : remboursement manuel
            logger.warning("[orchestrator] booking %s paid without payment ref, refund handled offline", b.id)
            return
        self.payments.refund_deposit(b.payment_ref, b.deposit_amount)

    def _load(self, repo: BookingRepository, booking_id: int) -> Booking:
        b = repo.get(booking_id)
        if b is None:
            raise NotFound("booking", booking_id)
        return b

    def _retrying(self, booking_id: int, attempt: Callable):
        for n in range(1, self.write_attempts + 1):
            try:
                return attempt()
            except StaleBooking:
                logger.info("[orchestrator] booking %s changed concurrently, reloading (attempt %d/%d)",
                            booking_id, n, self.write_attempts)
        raise ConcurrentModification(f"booking {booking_id} keeps changing, please retry",
                                     booking_id=booking_id)

    def _price(self, vehicle_id: str, start: datetime, end: datetime, promotion_code: Optional[str]):
        card = self.vehicles.get_rate_card(vehicle_id)
        promotion = None
        if promotion_code:
            try:
                promotion = self.promotions.get_promotion(promotion_code)
            except NotFound:
                raise InvalidPromotion(f"unknown promotion code {promotion_code!r}", code=promotion_code)
        return pricing.price(card, start, end, promotion, at=self.clock())

    # ------------------------------------------------------------
    # Devis sans réservation
    # ------------------------------------------------------------
    @_as_result
    def quote(self, vehicle_id: str, start_time: datetime, end_time: datetime,
              promotion_code: Optional[str] = None) -> Result:
        return Result.success(self._price(vehicle_id, to_utc(start_time), to_utc(end_time), promotion_code))

    # ------------------------------------------------------------
    # Création : prix → réservation atomique du créneau → ligne PENDING
    # ------------------------------------------------------------
    # - si la tarification échoue, aucune réservation n'est tentée
    # - si le créneau est pris (Conflict) → VehicleUnavailable, aucune ligne
    # - créneau, version du verrou et ligne Booking sont committés
    #   ensemble : un échec (ou un arrêt du processus) avant le
    #   commit ne laisse aucun créneau orphelin
    # ------------------------------------------------------------
    @_as_result
    def create_booking(self, renter_id: str, vehicle_id: str, station_id: str,
                       start_time: datetime, end_time: datetime,
                       promotion_code: Optional[str] = None, notes: Optional[str] = None) -> Result:
        start, end = to_utc(start_time), to_utc(end_time)
        if end > start and start < self.clock() - self.start_grace:
            raise InvalidWindow("start time is in the past", start=str(start))

        breakdown = self._price(vehicle_id, start, end, promotion_code)
        vehicle_status = self.vehicles.get_vehicle_status(vehicle_id)
        if vehicle_status in UNRENTABLE_VEHICLE_STATUSES:
            raise VehicleUnavailable(f"vehicle {vehicle_id} is {vehicle_status.lower()}",
                                     vehicle_id=vehicle_id, vehicle_status=vehicle_status)

        request = BookingRequest(renter_id=renter_id, vehicle_id=vehicle_id, station_id=station_id,
                                 start_time=start, end_time=end, promotion_code=promotion_code, notes=notes)
        with Session(self.engine) as s:
            machine = self._machine(s)
            token = machine.guard.reserve(vehicle_id, start, end, commit=False)
            if isinstance(token, Conflict):
                raise VehicleUnavailable(
                    "vehicle is no longer available for this window, please search again",
                    vehicle_id=vehicle_id, start=str(start), end=str(end),
                )
            booking = machine.create(request, breakdown, token)
            try:
                booking = BookingRepository(s).create(booking)
            except Exception:
                s.rollback()
                raise

        logger.info("[orchestrator] booking %s created for vehicle %s (%s -> %s) total=%s",
                    booking.id, vehicle_id, start, end, booking.total_amount)
        self.notifier.notify(renter_id, "BookingCreated", {**_event_payload(booking),
                                                           "totalAmount": booking.total_amount,
                                                           "depositAmount": booking.deposit_amount})
        return Result.success(booking, breakdown=breakdown)

    # ------------------------------------------------------------
    # Caution : lien de paiement puis confirmation idempotente
    # ------------------------------------------------------------
    @_as_result
    def initiate_deposit(self, booking_id: int) -> Result:
        with Session(self.engine) as s:
            b = self._load(BookingRepository(s), booking_id)
            ensure_deposit_open(b)
            amount = b.deposit_amount
        # PaymentTimeout : la réservation reste telle quelle
        payment_ref = self.payments.initiate_deposit(booking_id, amount)

        def attempt():
            with Session(self.engine) as s:
                repo = BookingRepository(s)
                b = self._load(repo, booking_id)
                self._machine(s).initiate_deposit(b, payment_ref)
                return repo.save(b)

        b = self._retrying(booking_id, attempt)
        logger.info("[orchestrator] deposit initiated for booking %s ref=%s", b.id, b.payment_ref)
        return Result.success(b)

    @_as_result
    def confirm_deposit(self, booking_id: int, outcome: PaymentOutcome) -> Result:
        def attempt():
            with Session(self.engine) as s:
                repo = BookingRepository(s)
                b = self._load(repo, booking_id)

                if repo.already_processed(b.id, outcome.outcome_id):
                    logger.info("[orchestrator] outcome %s already applied to booking %s",
                                outcome.outcome_id, b.id)
                    return b, {"applied": False, "duplicate": True}
                if outcome.status == PaymentStatus.PENDING:
                    return b, {"applied": False}
                if self._settled(b, outcome):
                    # une autre voie (callback, poller, staff) a déjà tranché
                    logger.info("[orchestrator] booking %s deposit already %s, ignoring %s",
                                b.id, b.deposit_status.value, outcome.outcome_id)
                    return b, {"applied": False, "stale": True}

                self._machine(s).apply_payment(b, outcome.status)
                if outcome.payment_ref and not b.payment_ref:
                    b.payment_ref = outcome.payment_ref
                repo.mark_processed(b.id, outcome.outcome_id, outcome.status)
                try:
                    return repo.save(b), {"applied": True}
                except IntegrityError:
                    # redélivrance concurrente : l'autre worker a gagné
                    s.rollback()
                    return self._load(repo, booking_id), {"applied": False, "duplicate": True}

        b, meta = self._retrying(booking_id, attempt)
        if meta["applied"]:
            event = "DepositPaid" if outcome.status == PaymentStatus.PAID else "DepositFailed"
            self.notifier.notify(b.renter_id, event, _event_payload(b))
        return Result.success(b, **meta)

    @staticmethod
    def _settled(b: Booking, outcome: PaymentOutcome) -> bool:
        if b.deposit_status in (DepositStatus.PAID, DepositStatus.REFUNDED):
            return True
        if outcome.status != PaymentStatus.FAILED:
            return False
        # une caution FAILED ne se ré-échoue pas
        if b.deposit_status == DepositStatus.FAILED:
            return True
        # échec d'un ancien lien de paiement, remplacé depuis
        return bool(outcome.payment_ref and b.payment_ref and outcome.payment_ref != b.payment_ref)

    # ------------------------------------------------------------
    # Transitions staff / locataire
    # ------------------------------------------------------------
    @_as_result
    def cancel_booking(self, booking_id: int, reason: str = "") -> Result:
        refunded = []

        # si la transition est rejouée, le remboursement accepté n'est pas redemandé
        def refund_once(b: Booking) -> None:
            if not refunded:
                self._refund(b)
                refunded.append(b.payment_ref)

        def attempt():
            with Session(self.engine) as s:
                repo = BookingRepository(s)
                b = self._load(repo, booking_id)
                self._machine(s, refund=refund_once).cancel(b, reason)
                return repo.save(b)

        b = self._retrying(booking_id, attempt)
        self.notifier.notify(b.renter_id, "BookingCancelled", {**_event_payload(b), "reason": reason})
        return Result.success(b)

    @_as_result
    def check_out_booking(self, booking_id: int) -> Result:
        def attempt():
            with Session(self.engine) as s:
                repo = BookingRepository(s)
                b = self._load(repo, booking_id)
                self._machine(s).check_out(b)
                return repo.save(b)

        b = self._retrying(booking_id, attempt)
        self.notifier.notify(b.renter_id, "BookingCheckedOut", _event_payload(b))
        return Result.success(b)

    @_as_result
    def complete_booking(self, booking_id: int, data: CompletionData) -> Result:
        def attempt():
            with Session(self.engine) as s:
                repo = BookingRepository(s)
                b = self._load(repo, booking_id)
                self._machine(s).complete(b, data)
                return repo.save(b)

        b = self._retrying(booking_id, attempt)
        self.notifier.notify(b.renter_id, "BookingCompleted", _event_payload(b))
        return Result.success(b)

    # ------------------------------------------------------------
    # Lecture
    # ------------------------------------------------------------
    @_as_result
    def get_booking(self, booking_id: int) -> Result:
        with Session(self.engine) as s:
            return Result.success(self._load(BookingRepository(s), booking_id))

    # Visibilité par rôle :
    #   ADMIN  → tout
    #   STAFF  → seulement ses stations (aucune station → liste vide)
    #   RENTER → seulement ses propres réservations
    @_as_result
    def list_bookings(self, f: Optional[BookingFilter], actor: Actor) -> Result:
        f = f or BookingFilter()
        station_ids = None
        if actor.role == ActorRole.STAFF:
            station_ids = set(actor.station_assignments)
            if not station_ids:
                return Result.success([])
        elif actor.role == ActorRole.RENTER:
            if f.renter_id is not None and f.renter_id != actor.id:
                return Result.success([])
            f = f.model_copy(update={"renter_id": actor.id})

        with Session(self.engine) as s:
            return Result.success(BookingRepository(s).find(f, station_ids=station_ids))
