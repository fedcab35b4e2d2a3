# ============================================================
# poller.py — Réconciliation des cautions en attente
# ------------------------------------------------------------
# Le fournisseur de paiement peut perdre un callback. Ce worker
# interroge son statut pour chaque caution PENDING et, sur un
# signal définitif (PAID / FAILED), appelle confirm_deposit.
#
#   - nombre d'essais borné, attente exponentielle plafonnée
#   - arrêt dès que la caution a quitté PENDING (callback,
#     staff, annulation...) pour ne pas écraser un état plus
#     récent
#   - un timeout fournisseur n'est jamais interprété : on
#     réessaie, puis on rend PaymentTimeout
# ============================================================
import logging
import time
from typing import Optional

from sqlmodel import Session

from .config import POLL_BASE_DELAY_S, POLL_INTERVAL_S, POLL_MAX_ATTEMPTS, POLL_MAX_DELAY_S
from .errors import NotFound, PaymentTimeout, ProviderError, Result
from .models import BookingStatus, DepositStatus, PaymentOutcome, PaymentStatus
from .repository import BookingRepository

logger = logging.getLogger(__name__)


class PaymentReconciliationPoller:
    def __init__(self, orchestrator, payments, max_attempts: int = POLL_MAX_ATTEMPTS,
                 base_delay: float = POLL_BASE_DELAY_S, max_delay: float = POLL_MAX_DELAY_S,
                 sleep=time.sleep):
        self.orchestrator = orchestrator
        self.payments = payments
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.sleep = sleep

    def backoff(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def _still_pending(self, booking_id: int):
        with Session(self.orchestrator.engine) as s:
            b = BookingRepository(s).get(booking_id)
        if b is None:
            raise NotFound("booking", booking_id)
        if b.status != BookingStatus.PENDING or b.deposit_status != DepositStatus.PENDING or not b.payment_ref:
            return None
        return b

    def poll_booking(self, booking_id: int, max_attempts: Optional[int] = None) -> Result:
        max_attempts = max_attempts or self.max_attempts
        last_error = None
        for attempt in range(max_attempts):
            try:
                b = self._still_pending(booking_id)
            except NotFound as e:
                return Result.failure(e)
            if b is None:
                logger.info("[poller] booking %s no longer awaiting deposit, stop", booking_id)
                return Result.success(None, settled=True)

            try:
                status = self.payments.get_payment_status(b.payment_ref)
            except (PaymentTimeout, ProviderError) as e:
                last_error = e
                status = PaymentStatus.PENDING
                logger.warning("[poller] booking %s attempt %d/%d: %s", booking_id, attempt + 1,
                               max_attempts, e.message)

            if status != PaymentStatus.PENDING:
                outcome = PaymentOutcome(outcome_id=f"poll:{b.payment_ref}:{status.value}",
                                         status=status, payment_ref=b.payment_ref)
                return self.orchestrator.confirm_deposit(booking_id, outcome)

            if attempt + 1 < max_attempts:
                wait = self.backoff(attempt)
                logger.info("[poller] booking %s still pending, retrying in %.1fs", booking_id, wait)
                self.sleep(wait)

        logger.warning("[poller] booking %s: retry budget exhausted", booking_id)
        if isinstance(last_error, PaymentTimeout) or last_error is None:
            return Result.failure(PaymentTimeout(
                f"deposit for booking {booking_id} still unresolved after {max_attempts} attempts",
                booking_id=booking_id,
            ))
        return Result.failure(last_error)

    def run_once(self) -> dict:
        with Session(self.orchestrator.engine) as s:
            ids = [b.id for b in BookingRepository(s).pending_deposits()]
        results = {}
        for booking_id in ids:
            # un seul essai par cycle : la boucle planifiée fait office de retry
            results[booking_id] = self.poll_booking(booking_id, max_attempts=1)
        return results


#  Boucle planifiée, lancée dans un thread au démarrage du service
def start_poller(poller: PaymentReconciliationPoller, interval: float = POLL_INTERVAL_S, stop=None):
    while stop is None or not stop.is_set():
        try:
            results = poller.run_once()
            if results:
                logger.info("[poller] reconciled %d pending deposit(s)", len(results))
        except Exception as e:
            logger.error("[poller] error: %s, retrying in %ss", e, interval)
        if stop is not None:
            stop.wait(interval)
        else:
            time.sleep(interval)
