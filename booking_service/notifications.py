import json
import logging
from sqlalchemy.orm import Session

from . import models
from .config import settings

logger = logging.getLogger("booking_service")


def notify(db: Session, event_type: str, booking: models.BookingRequest, recipients: list[int], **details) -> bool:
    """
    Queues a notification in the outbox for the poller to publish.

    Best-effort: this runs after the booking change has been committed and
    never raises, so a failure here can't undo or block that change.
    Returns whether the event was queued.
    """
    booking_id = None
    try:
        booking_id = booking.id
        payload = {
            "event_type": event_type,
            "booking_id": booking_id,
            "listing_id": booking.listing_id,
            "recipients": recipients,
            **details,
        }
        db.add(models.OutboxEvent(
            topic=settings.KAFKA_NOTIFICATION_TOPIC,
            payload=json.dumps(payload, default=str),
            status="PENDING",
        ))
        db.commit()
    except Exception as e:
        logger.error(f"Failed to queue '{event_type}' notification for booking {booking_id}: {e}")
        db.rollback()
        return False

    logger.info(f"Queued '{event_type}' notification for booking {booking_id} to {recipients}")
    return True
