# ============================================================
# pricing.py — Calcul du prix d'une location
# ------------------------------------------------------------
# Fonction pure : (grille tarifaire, créneau, promotion) →
# détail du prix. Aucun accès réseau ni base de données.
#
# Décomposition gloutonne, du palier le plus large au plus fin :
#   mois (720 h) → semaine (168 h) → jour (24 h) → heures
# Un palier mensuel/hebdomadaire n'est retenu que si une unité
# coûte strictement moins cher que la même durée facturée aux
# paliers plus fins. Le reste (< 24 h) est facturé à l'heure.
#
# Tous les montants sont en unités entières de devise, arrondis
# "half-up" à chaque étape.
# ============================================================
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from .config import DEFAULT_INSURANCE_RATE, TAX_RATE
from .errors import IncompleteRateCard, InvalidPromotion, InvalidWindow
from .models import Promotion, RateCard
from .timeutil import to_utc, utcnow

HOURS_PER_DAY = 24
HOURS_PER_WEEK = 7 * HOURS_PER_DAY
HOURS_PER_MONTH = 30 * HOURS_PER_DAY

TAX = Decimal(TAX_RATE)
INSURANCE = Decimal(DEFAULT_INSURANCE_RATE)

PERCENTAGE = "PERCENTAGE"
FIXED = "FIXED"
_DISCOUNT_TYPES = {"PERCENTAGE": PERCENTAGE, "FIXED": FIXED, "FIXED_AMOUNT": FIXED}


def money(value) -> int:
    return int(Decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


@dataclass
class TierLine:
    tier: str
    rate: Decimal
    quantity: int
    cost: int


@dataclass
class PriceBreakdown:
    duration_hours: int
    pricing_type: str
    lines: List[TierLine] = field(default_factory=list)
    base_price: int = 0
    insurance_amount: int = 0
    tax_amount: int = 0
    discount_amount: int = 0
    subtotal: int = 0
    total_amount: int = 0
    deposit_amount: int = 0
    promotion_code: Optional[str] = None

    def quantity(self, tier: str) -> int:
        return sum(line.quantity for line in self.lines if line.tier == tier)

    def cost(self, tier: str) -> int:
        return sum(line.cost for line in self.lines if line.tier == tier)

    def as_dict(self) -> dict:
        d = asdict(self)
        for line in d["lines"]:
            line["rate"] = str(line["rate"])
        return d


def billable_hours(start: datetime, end: datetime) -> int:
    if end <= start:
        raise InvalidWindow("end time must be after start time", start=str(start), end=str(end))
    micros = (end - start) // timedelta(microseconds=1)
    # toute heure entamée est due
    return -(-micros // 3_600_000_000)


def _rate(value) -> Optional[Decimal]:
    if value is None:
        return None
    value = Decimal(value)
    return value if value > 0 else None


def _decompose(hours: int, card: RateCard) -> List[TierLine]:
    hourly = Decimal(card.hourly_rate)
    daily = Decimal(card.daily_rate)
    tiers = [
        ("monthly", _rate(card.monthly_rate), HOURS_PER_MONTH),
        ("weekly", _rate(card.weekly_rate), HOURS_PER_WEEK),
    ]
    return _greedy(hours, tiers, daily, hourly)


def _greedy(hours, tiers, daily, hourly) -> List[TierLine]:
    lines = []
    for i, (name, rate, unit) in enumerate(tiers):
        qty = hours // unit
        if rate is None or qty == 0:
            continue
        finer = sum(line.cost for line in _greedy(unit, tiers[i + 1:], daily, hourly))
        if rate >= finer:
            continue
        lines.append(TierLine(name, rate, qty, money(rate * qty)))
        hours -= qty * unit

    days, hours = divmod(hours, HOURS_PER_DAY)
    if days:
        lines.append(TierLine("daily", daily, days, money(daily * days)))
    if hours:
        lines.append(TierLine("hourly", hourly, hours, money(hourly * hours)))
    return lines


def validate_promotion(promotion: Promotion, at: Optional[datetime] = None) -> str:
    at = at or utcnow()
    kind = _DISCOUNT_TYPES.get((promotion.discount_type or "").upper())
    if kind is None:
        raise InvalidPromotion(f"unknown discount type {promotion.discount_type!r}", code=promotion.code)
    value = Decimal(promotion.discount_value)
    if value <= 0:
        raise InvalidPromotion("discount value must be positive", code=promotion.code)
    if kind == PERCENTAGE and value > 100:
        raise InvalidPromotion("percentage discount cannot exceed 100", code=promotion.code)
    if promotion.valid_from and at < to_utc(promotion.valid_from):
        raise InvalidPromotion("promotion is not active yet", code=promotion.code)
    if promotion.valid_until and at > to_utc(promotion.valid_until):
        raise InvalidPromotion("promotion has expired", code=promotion.code)
    return kind


def _discount(promotion: Optional[Promotion], base: int, ceiling: int, at) -> int:
    if promotion is None:
        return 0
    kind = validate_promotion(promotion, at)
    value = Decimal(promotion.discount_value)
    if kind == PERCENTAGE:
        # le pourcentage ne s'applique qu'au prix de base
        amount = money(base * value / 100)
        if promotion.max_discount_amount is not None:
            amount = min(amount, money(promotion.max_discount_amount))
    else:
        amount = money(value)
    return min(amount, ceiling)


def price(card: RateCard, start: datetime, end: datetime,
          promotion: Optional[Promotion] = None, at: Optional[datetime] = None) -> PriceBreakdown:
    hours = billable_hours(start, end)
    if _rate(card.hourly_rate) is None or _rate(card.daily_rate) is None:
        raise IncompleteRateCard("hourly and daily rates are required")

    lines = _decompose(hours, card)
    base = sum(line.cost for line in lines)
    insurance_rate = INSURANCE if card.insurance_rate is None else Decimal(card.insurance_rate)
    insurance = money(base * insurance_rate)
    tax = money((base + insurance) * TAX)
    gross = base + insurance + tax
    discount = _discount(promotion, base, gross, at)
    subtotal = max(gross - discount, 0)

    return PriceBreakdown(
        duration_hours=hours,
        pricing_type=lines[0].tier if lines else "hourly",
        lines=lines,
        base_price=base,
        insurance_amount=insurance,
        tax_amount=tax,
        discount_amount=discount,
        subtotal=subtotal,
        total_amount=subtotal,
        deposit_amount=money(card.deposit_amount),
        promotion_code=promotion.code if promotion else None,
    )
