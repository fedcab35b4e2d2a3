from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlmodel import SQLModel, create_engine

from rental_booking import models  # noqa: F401
from rental_booking.errors import NotFound
from rental_booking.models import PaymentStatus, RateCard
from rental_booking.orchestrator import BookingOrchestrator

# horloge figée (UTC naïf, comme en base)
NOW = datetime(2030, 1, 1, 8, 0)
START = datetime(2030, 1, 2, 10, 0, tzinfo=timezone.utc)


def window(hours, offset_hours=0):
    start = START + timedelta(hours=offset_hours)
    return start, start + timedelta(hours=hours)


def scenario_card(**overrides):
    values = dict(hourly_rate=Decimal(10), daily_rate=Decimal(200), weekly_rate=Decimal(1200),
                  insurance_rate=Decimal("0.1"), deposit_amount=Decimal(500))
    values.update(overrides)
    return RateCard(**values)


class FakeVehicles:
    def __init__(self, cards=None, statuses=None):
        self.cards = cards if cards is not None else {"car-1": scenario_card(), "car-2": scenario_card()}
        self.statuses = statuses or {}

    def get_rate_card(self, vehicle_id):
        if vehicle_id not in self.cards:
            raise NotFound("vehicle", vehicle_id)
        return self.cards[vehicle_id]

    def get_vehicle_status(self, vehicle_id):
        return self.statuses.get(vehicle_id, "AVAILABLE")


class FakePromotions:
    def __init__(self, promotions=None):
        self.promotions = promotions or {}

    def get_promotion(self, code):
        if code not in self.promotions:
            raise NotFound("promotion", code)
        return self.promotions[code]


class FakePayments:
    def __init__(self):
        self.initiated = []
        self.refunds = []
        # payment_ref -> liste de réponses successives (PaymentStatus ou exception)
        self.responses = {}
        self.status_calls = 0
        self.fail_initiate = None
        self.fail_refund = None

    def initiate_deposit(self, booking_id, amount):
        if self.fail_initiate:
            raise self.fail_initiate
        self.initiated.append((booking_id, amount))
        return f"pay-{booking_id}"

    def get_payment_status(self, payment_ref):
        self.status_calls += 1
        queue = self.responses.get(payment_ref) or [PaymentStatus.PENDING]
        answer = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(answer, Exception):
            raise answer
        return answer

    def refund_deposit(self, payment_ref, amount):
        if self.fail_refund:
            raise self.fail_refund
        self.refunds.append((payment_ref, amount))


class FakeNotifier:
    def __init__(self):
        self.events = []

    def notify(self, renter_id, event, payload):
        self.events.append((renter_id, event, payload))

    def names(self):
        return [e[1] for e in self.events]


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'booking.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def vehicles():
    return FakeVehicles()


@pytest.fixture
def promotions():
    return FakePromotions()


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def orchestrator(engine, vehicles, promotions, payments, notifier):
    return BookingOrchestrator(engine, vehicles, promotions, payments, notifier,
                               reserve_attempts=20, clock=lambda: NOW)


@pytest.fixture
def make_booking(orchestrator):
    def _make(hours=30, offset_hours=0, vehicle_id="car-1", station_id="st-1", renter_id="renter-1", **kwargs):
        start, end = window(hours, offset_hours)
        result = orchestrator.create_booking(renter_id, vehicle_id, station_id, start, end, **kwargs)
        assert result.ok, result.error
        return result.value
    return _make
