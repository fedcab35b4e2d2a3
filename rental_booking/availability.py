# ============================================================
# availability.py — Garde de disponibilité des véhicules
# ------------------------------------------------------------
# Réserve un créneau [start, end) sur un véhicule de façon
# atomique. L'exclusion mutuelle repose sur la base, pas sur
# la mémoire du processus (plusieurs workers / conteneurs) :
#
#   1. on lit la version du véhicule (table VehicleLock) et les
#      créneaux actifs qui chevauchent la demande
#   2. on écrit la réservation ET on fait
#        UPDATE vehicle_lock SET version = v+1 WHERE version = v
#      dans la même transaction (celle de la ligne Booking quand
#      la création passe commit=False)
#   3. si l'UPDATE ne touche aucune ligne (ou si l'insertion de
#      la première ligne de verrou viole la clé primaire), un
#      autre worker a gagné : rollback et on relit
#
# Deux véhicules différents ne partagent aucune ligne : aucun
# verrou global.
# ============================================================
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, select

from .config import RESERVE_ATTEMPTS
from .models import Reservation, VehicleLock
from .timeutil import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationToken:
    token: str
    vehicle_id: str
    start_time: datetime
    end_time: datetime


@dataclass(frozen=True)
class Conflict:
    vehicle_id: str
    start_time: datetime
    end_time: datetime
    held_by: Optional[str] = None


class _LostRace(Exception):
    pass


class AvailabilityGuard:
    def __init__(self, session: Session, attempts: int = RESERVE_ATTEMPTS, backoff_s: float = 0.02):
        self.session = session
        self.attempts = attempts
        self.backoff_s = backoff_s

    def _overlapping(self, vehicle_id: str, start: datetime, end: datetime):
        # intervalles semi-ouverts : [a, b) et [c, d) se chevauchent ssi a < d et c < b
        return self.session.exec(
            select(Reservation).where(
                Reservation.vehicle_id == vehicle_id,
                Reservation.active == True,  # noqa: E712
                Reservation.start_time < end,
                Reservation.end_time > start,
            )
        ).first()

    def is_available(self, vehicle_id: str, start: datetime, end: datetime) -> bool:
        return self._overlapping(vehicle_id, start, end) is None

    def _try_reserve(self, vehicle_id: str, start: datetime, end: datetime,
                     commit: bool) -> Union[ReservationToken, Conflict]:
        lock = self.session.get(VehicleLock, vehicle_id)
        held = self._overlapping(vehicle_id, start, end)
        if held is not None:
            self.session.rollback()
            return Conflict(vehicle_id, start, end, held_by=held.token)

        if lock is None:
            self.session.add(VehicleLock(vehicle_id=vehicle_id, version=1))
            self.session.flush()
        else:
            res = self.session.connection().execute(
                update(VehicleLock)
                .where(VehicleLock.vehicle_id == vehicle_id, VehicleLock.version == lock.version)
                .values(version=lock.version + 1)
            )
            if res.rowcount != 1:
                raise _LostRace()

        token = uuid.uuid4().hex
        self.session.add(Reservation(token=token, vehicle_id=vehicle_id, start_time=start, end_time=end))
        if commit:
            self.session.commit()
        else:
            self.session.flush()
        return ReservationToken(token, vehicle_id, start, end)

    # commit=False : la réservation et la version du verrou restent dans
    # la transaction de l'appelant, qui les committe avec sa propre
    # écriture (ligne Booking) ou les annule par rollback.
    def reserve(self, vehicle_id: str, start: datetime, end: datetime,
                commit: bool = True) -> Union[ReservationToken, Conflict]:
        for attempt in range(1, self.attempts + 1):
            try:
                result = self._try_reserve(vehicle_id, start, end, commit)
            except (_LostRace, IntegrityError, OperationalError) as e:
                self.session.rollback()
                logger.info("[guard] vehicle %s: lost reservation race (attempt %d/%d): %s",
                            vehicle_id, attempt, self.attempts, type(e).__name__)
                time.sleep(self.backoff_s * attempt)
                continue
            if isinstance(result, Conflict):
                logger.info("[guard] vehicle %s: window %s -> %s conflicts with %s",
                            vehicle_id, start, end, result.held_by)
            else:
                logger.info("[guard] vehicle %s reserved %s -> %s token=%s",
                            vehicle_id, start, end, result.token)
            return result

        # contention persistante : on répond comme pour un créneau pris
        logger.warning("[guard] vehicle %s: gave up after %d attempts", vehicle_id, self.attempts)
        return Conflict(vehicle_id, start, end)

    # Idempotent : jeton inconnu ou déjà libéré → rien à faire.
    # Pas de commit ici : la libération fait partie de l'unité de
    # travail de l'appelant (transition de la réservation).
    def release(self, token: Optional[str]) -> bool:
        if not token:
            return False
        r = self.session.exec(select(Reservation).where(Reservation.token == token)).first()
        if r is None or not r.active:
            return False
        r.active = False
        r.released_at = utcnow()
        self.session.add(r)
        logger.info("[guard] released reservation %s on vehicle %s", token, r.vehicle_id)
        return True
