# ============================================================
# models.py — Modèles de données SQLModel (service Booking)
# ------------------------------------------------------------
# Tables de la base :
#   1. Booking : la réservation d'un véhicule
#   2. Reservation : créneau [start, end) tenu sur un véhicule
#   3. VehicleLock : compteur de version par véhicule (CAS)
#   4. ProcessedPaymentOutcome : issues de paiement déjà appliquées
# Schémas (non persistés) échangés avec l'API et les
# collaborateurs : RateCard, Promotion, Actor, BookingRequest,
# CompletionData, PaymentOutcome, BookingFilter.
# ============================================================
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from .timeutil import utcnow

# dates stockées en UTC naïf (cf. timeutil) : colonne sans timezone
UTC_DATETIME = DateTime(timezone=False)


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class DepositStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    PAID = "PAID"
    FAILED = "FAILED"
    PENDING = "PENDING"


class ActorRole(str, Enum):
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    RENTER = "RENTER"


# ------------------------------------------------------------
# Booking
# ------------------------------------------------------------
# Cycle de vie : PENDING → CONFIRMED → IN_PROGRESS → COMPLETED
# PENDING / CONFIRMED peuvent passer à CANCELLED.
# Les montants sont calculés une seule fois à la création
# (unités entières de devise) et ne sont jamais recalculés.
# Le statut et le statut de caution ne sont modifiés que par
# state_machine.py. "version" est incrémentée à chaque écriture
# (compare-and-swap dans BookingRepository.save).
# ------------------------------------------------------------
class Booking(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    version: int = 0
    renter_id: str = Field(index=True)
    vehicle_id: str = Field(index=True)
    station_id: str = Field(index=True)
    promotion_id: Optional[str] = None

    start_time: datetime = Field(sa_type=UTC_DATETIME)
    end_time: datetime = Field(sa_type=UTC_DATETIME)
    actual_end_time: Optional[datetime] = Field(default=None, sa_type=UTC_DATETIME)

    status: BookingStatus = Field(default=BookingStatus.PENDING, index=True)
    deposit_status: DepositStatus = Field(default=DepositStatus.PENDING, index=True)

    pricing_type: str = "hourly"
    duration_hours: int = 0
    base_price: int = 0
    insurance_amount: int = 0
    tax_amount: int = 0
    discount_amount: int = 0
    subtotal: int = 0
    total_amount: int = 0
    deposit_amount: int = 0

    reservation_token: Optional[str] = Field(default=None, index=True)
    payment_ref: Optional[str] = Field(default=None, index=True)

    return_odometer: Optional[int] = None
    battery_level_at_return: Optional[float] = None
    damage_report: Optional[str] = None
    customer_rating: Optional[int] = None
    notes: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTC_DATETIME)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTC_DATETIME)
    checked_out_at: Optional[datetime] = Field(default=None, sa_type=UTC_DATETIME)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTC_DATETIME)
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=UTC_DATETIME)
    cancel_reason: Optional[str] = None


# Un créneau tenu par l'Availability Guard. Libéré (active=False)
# à l'annulation ou à la fin de la location, jamais supprimé.
class Reservation(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    token: str = Field(index=True, unique=True)
    vehicle_id: str = Field(index=True)
    start_time: datetime = Field(sa_type=UTC_DATETIME)
    end_time: datetime = Field(sa_type=UTC_DATETIME)
    active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTC_DATETIME)
    released_at: Optional[datetime] = Field(default=None, sa_type=UTC_DATETIME)


class VehicleLock(SQLModel, table=True):
    vehicle_id: str = Field(primary_key=True)
    version: int = 0


# Même principe que la table des messages déjà traités d'un
# consumer : une issue de paiement n'est appliquée qu'une fois.
class ProcessedPaymentOutcome(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("booking_id", "outcome_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    booking_id: int = Field(index=True)
    outcome_id: str
    status: PaymentStatus
    processed_at: datetime = Field(default_factory=utcnow, sa_type=UTC_DATETIME)


# ------------------------------------------------------------
# Schémas d'échange
# ------------------------------------------------------------
class RateCard(SQLModel):
    hourly_rate: Optional[Decimal] = Field(default=None, ge=0)
    daily_rate: Optional[Decimal] = Field(default=None, ge=0)
    weekly_rate: Optional[Decimal] = Field(default=None, ge=0)
    monthly_rate: Optional[Decimal] = Field(default=None, ge=0)
    deposit_amount: Decimal = Field(default=Decimal(0), ge=0)
    insurance_rate: Optional[Decimal] = Field(default=None, ge=0)


class Promotion(SQLModel):
    code: str
    discount_type: str
    discount_value: Decimal
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    max_discount_amount: Optional[Decimal] = None


class Actor(SQLModel):
    id: str
    role: ActorRole
    station_assignments: List[str] = Field(default_factory=list)


class BookingRequest(SQLModel):
    renter_id: str
    vehicle_id: str
    station_id: str
    start_time: datetime
    end_time: datetime
    promotion_code: Optional[str] = None
    notes: Optional[str] = None


class QuoteRequest(SQLModel):
    vehicle_id: str
    start_time: datetime
    end_time: datetime
    promotion_code: Optional[str] = None


class CompletionData(SQLModel):
    actual_end_time: Optional[datetime] = None
    return_odometer: Optional[int] = None
    battery_level_at_return: Optional[float] = None
    damage_report: Optional[str] = None
    customer_rating: Optional[int] = None
    notes: Optional[str] = None


class PaymentOutcome(SQLModel):
    outcome_id: str
    status: PaymentStatus
    payment_ref: Optional[str] = None


class CancelRequest(SQLModel):
    reason: str = ""


class BookingFilter(SQLModel):
    status: Optional[BookingStatus] = None
    deposit_status: Optional[DepositStatus] = None
    renter_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    station_id: Optional[str] = None
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)
