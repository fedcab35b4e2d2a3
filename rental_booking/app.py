# ============================================================
# app.py — Point d'entrée du service Booking
# ------------------------------------------------------------
# Initialise l'application FastAPI :
#   - configure le logging
#   - crée les tables dans la base de données
#   - démarre le poller de réconciliation des cautions dans un
#     thread, sans bloquer l'API
#   - monte les routes REST
# ============================================================
import logging
import threading

from fastapi import FastAPI
from sqlmodel import SQLModel

from . import models  # noqa: F401  (enregistre les tables)
from .api import engine, get_orchestrator, get_poller, router
from .config import LOG_DATE_FORMAT, LOG_FORMAT, LOG_LEVEL, POLLER_ENABLED
from .poller import start_poller

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
logger = logging.getLogger(__name__)

app = FastAPI(title="Booking Service")


@app.on_event("startup")
def start():
    # crée les tables (Booking, Reservation, VehicleLock, ProcessedPaymentOutcome)
    SQLModel.metadata.create_all(engine)
    if POLLER_ENABLED:
        poller = get_poller(get_orchestrator())
        threading.Thread(target=start_poller, args=(poller,), daemon=True).start()
        logger.info("[app] payment reconciliation poller started")


@app.get("/health")
def health():
    return {"ok": True}


app.include_router(router)
