# ============================================================
# publisher.py — Émission d'événements RabbitMQ
# ------------------------------------------------------------
# Publie les événements du cycle de vie des réservations sur
# l'échange "events" (fanout). Le service de notification s'y
# abonne et envoie les e-mails / push au locataire.
#
# La notification est "best-effort" : un broker indisponible
# ne doit jamais faire échouer une réservation.
# ============================================================
import json
import logging
import uuid

import pika

from .config import RABBITMQ_HOST

logger = logging.getLogger(__name__)

EXCHANGE = "events"


# Publie un message sur l'échange "events" en mode fanout :
#   - event_type : nom de l'événement (BookingCreated, ...)
#   - payload    : contenu du message
# Tous les consommateurs liés à l'échange reçoivent le message.
def publish_event(event_type: str, payload: dict, host: str = RABBITMQ_HOST):
    conn = pika.BlockingConnection(pika.ConnectionParameters(host=host))
    try:
        ch = conn.channel()
        # durable=True pour survivre aux redémarrages RabbitMQ
        ch.exchange_declare(exchange=EXCHANGE, exchange_type="fanout", durable=True)
        message = {"messageId": uuid.uuid4().hex, "type": event_type, "payload": payload}
        ch.basic_publish(exchange=EXCHANGE, routing_key="", body=json.dumps(message, default=str))
        logger.info("[event] %s %s", event_type, payload)
    finally:
        conn.close()


class Notifier:
    def __init__(self, publish=publish_event):
        self.publish = publish

    def notify(self, renter_id: str, event: str, payload: dict) -> None:
        try:
            self.publish(event, {"renterId": renter_id, **payload})
        except Exception as e:
            logger.warning("[event] %s for renter %s not delivered: %s", event, renter_id, e)
