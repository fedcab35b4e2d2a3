# ============================================================
# repository.py — Accès aux données Booking
# ------------------------------------------------------------
# Design pattern "Repository" pour la table Booking. Isole les
# requêtes SQLModel de l'orchestrateur et du poller. create() et
# save() committent, avec tout ce que l'appelant a ajouté à la
# session (créneau, issue de paiement) : une seule transaction.
#
# save() écrit en compare-and-swap sur Booking.version : si la
# ligne a changé depuis la lecture (callback, poller, autre
# worker), rollback et StaleBooking ; l'appelant relit et rejoue
# la transition sur l'état à jour.
# ============================================================
from typing import Iterable, List, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from .models import Booking, BookingFilter, BookingStatus, DepositStatus, PaymentStatus, ProcessedPaymentOutcome


class StaleBooking(Exception):
    pass


class BookingRepository:
    def __init__(self, session: Session):
        self.session = session

    def create(self, b: Booking) -> Booking:
        self.session.add(b)
        self.session.commit()
        self.session.refresh(b)
        return b

    def get(self, booking_id: int) -> Optional[Booking]:
        return self.session.exec(select(Booking).where(Booking.id == booking_id)).first()

    def save(self, b: Booking) -> Booking:
        res = self.session.connection().execute(
            update(Booking)
            .where(Booking.id == b.id, Booking.version == b.version)
            .values(version=b.version + 1)
        )
        if res.rowcount != 1:
            self.session.rollback()
            raise StaleBooking(b.id)
        b.version += 1
        self.session.add(b)
        self.session.commit()
        self.session.refresh(b)
        return b

    def find(self, f: BookingFilter, station_ids: Optional[Iterable[str]] = None) -> List[Booking]:
        q = select(Booking)
        if f.status is not None:
            q = q.where(Booking.status == f.status)
        if f.deposit_status is not None:
            q = q.where(Booking.deposit_status == f.deposit_status)
        if f.renter_id is not None:
            q = q.where(Booking.renter_id == f.renter_id)
        if f.vehicle_id is not None:
            q = q.where(Booking.vehicle_id == f.vehicle_id)
        if f.station_id is not None:
            q = q.where(Booking.station_id == f.station_id)
        if station_ids is not None:
            q = q.where(Booking.station_id.in_(list(station_ids)))
        q = q.order_by(Booking.id.desc()).offset(f.offset).limit(f.limit)
        return list(self.session.exec(q).all())

    def pending_deposits(self) -> List[Booking]:
        return list(self.session.exec(
            select(Booking).where(
                Booking.status == BookingStatus.PENDING,
                Booking.deposit_status == DepositStatus.PENDING,
                Booking.payment_ref != None,  # noqa: E711
            ).order_by(Booking.id)
        ).all())

    # ------------------------------------------------------------
    # Issues de paiement déjà traitées
    # ------------------------------------------------------------
    # Le fournisseur de paiement peut redélivrer un callback, et le
    # poller peut observer la même issue : on garde la trace de
    # chaque outcome_id appliqué.
    # ------------------------------------------------------------
    def already_processed(self, booking_id: int, outcome_id: str) -> bool:
        return self.session.exec(select(ProcessedPaymentOutcome).where(
            ProcessedPaymentOutcome.booking_id == booking_id,
            ProcessedPaymentOutcome.outcome_id == outcome_id,
        )).first() is not None

    def mark_processed(self, booking_id: int, outcome_id: str, status: PaymentStatus) -> None:
        self.session.add(ProcessedPaymentOutcome(booking_id=booking_id, outcome_id=outcome_id, status=status))
