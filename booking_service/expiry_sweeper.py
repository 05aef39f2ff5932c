import asyncio
import datetime
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .database import SessionLocal
from .config import settings
from .notifications import notify
from .payments import HoldOutcome, StripePaymentAuthorizer, get_payment_authorizer
from . import crud, models

logger = logging.getLogger("expiry_sweeper")


@dataclass
class SweepSummary:
    processed: int = 0
    skipped: int = 0
    errors: list[dict] = field(default_factory=list)
    hosts_reminded: int = 0


def expire_hold(
        db: Session, authorizer: StripePaymentAuthorizer, booking: models.BookingRequest, now: datetime.datetime
) -> bool:
    """
    Releases one expired hold and cancels its booking.

    Returns True if this call moved the booking, False if another caller
    (a host response, or an overlapping sweep) got there first.
    """
    outcome = None
    if booking.payment_intent_id:
        outcome = authorizer.release(
            booking.payment_intent_id, idempotency_key=f"release_{booking.payment_intent_id}"
        )

    if outcome == HoldOutcome.ALREADY_CAPTURED:
        # The host's approval captured the money but its write never landed.
        # Follow the provider rather than expiring a paid booking.
        logger.warning(f"Hold for booking {booking.id} was already captured; recording it as approved.")
        recorded = crud.transition_held_booking(
            db, booking.id,
            status=models.BookingStatus.APPROVED,
            hold_status=models.HoldStatus.CAPTURED,
            payment_status=models.PaymentStatus.PAID,
            paid_at=now,
        )
        if recorded:
            db.refresh(booking)
            notify(db, "booking_approved", booking, [booking.renter_id, booking.host_id])
        return False

    expired = crud.transition_held_booking(
        db, booking.id,
        status=models.BookingStatus.CANCELLED,
        hold_status=models.HoldStatus.EXPIRED,
        payment_status=models.PaymentStatus.RELEASED,
        cancellation_reason="The host did not respond before the payment hold expired.",
    )
    if not expired:
        logger.info(f"Booking {booking.id} was resolved elsewhere; nothing to expire.")
        return False

    logger.info(f"Booking {booking.id} expired; hold {booking.payment_intent_id} released.")
    db.refresh(booking)
    notify(db, "hold_expired", booking, [booking.renter_id, booking.host_id])
    return True


def sweep(
        db: Session, authorizer: StripePaymentAuthorizer, now: datetime.datetime | None = None
) -> SweepSummary:
    """
    Expires every pending booking whose hold deadline has passed.

    Bookings are handled one at a time, each with its own commit; a failure
    on one is recorded in the summary and the sweep moves on.
    """
    now = now or models.utcnow()
    summary = SweepSummary()

    expired_bookings = crud.get_expired_holds(db, now)
    if not expired_bookings:
        logger.info("No expired holds.")
        return summary

    logger.info(f"Found {len(expired_bookings)} expired holds.")
    booking_ids = [b.id for b in expired_bookings]

    for booking_id in booking_ids:
        try:
            booking = crud.get_booking(db, booking_id)
            if booking is None or booking.is_terminal:
                summary.skipped += 1
                continue
            if expire_hold(db, authorizer, booking, now):
                summary.processed += 1
            else:
                summary.skipped += 1
        except Exception as e:
            logger.error(f"Failed to expire booking {booking_id}: {e}")
            db.rollback()
            summary.errors.append({"booking_id": booking_id, "error": str(e)})

    logger.info(
        f"Sweep finished: processed={summary.processed} skipped={summary.skipped} errors={len(summary.errors)}"
    )
    return summary


def remind_pending_hosts(db: Session, now: datetime.datetime | None = None) -> int:
    """
    Nudges hosts about requests they have left waiting.

    A request qualifies once it has been pending for HOST_NUDGE_AFTER_MINUTES,
    until it is HOST_NUDGE_WINDOW_HOURS old, and at most once per
    HOST_NUDGE_INTERVAL_MINUTES. Each host gets one reminder covering all of
    their waiting requests. Returns the number of hosts reminded.
    """
    now = now or models.utcnow()
    bookings = crud.get_bookings_needing_host_nudge(
        db,
        pending_before=now - datetime.timedelta(minutes=settings.HOST_NUDGE_AFTER_MINUTES),
        created_after=now - datetime.timedelta(hours=settings.HOST_NUDGE_WINDOW_HOURS),
        nudged_before=now - datetime.timedelta(minutes=settings.HOST_NUDGE_INTERVAL_MINUTES),
    )
    if not bookings:
        return 0

    by_host: dict[int, list[models.BookingRequest]] = defaultdict(list)
    for booking in bookings:
        by_host[booking.host_id].append(booking)

    reminded = 0
    for host_id, host_bookings in by_host.items():
        booking_ids = [b.id for b in host_bookings]
        queued = notify(
            db, "booking_reminder", host_bookings[0], [host_id],
            booking_ids=booking_ids,
            pending_count=len(booking_ids),
        )
        if not queued:
            continue
        try:
            crud.mark_host_nudged(db, booking_ids, now)
        except SQLAlchemyError as e:
            logger.error(f"Failed to record reminder for host {host_id}: {e}")
            db.rollback()
            continue
        reminded += 1

    logger.info(f"Reminded {reminded} hosts about {len(bookings)} pending requests.")
    return reminded


def sweep_once() -> SweepSummary:
    db: Session = SessionLocal()
    try:
        summary = sweep(db, get_payment_authorizer())
        summary.hosts_reminded = remind_pending_hosts(db)
        return summary
    finally:
        db.close()


async def run_expiry_sweeper():
    """
    Main background loop for the sweeper.
    """
    while True:
        logger.info("Sweeper waking up to check for expired holds and waiting hosts...")
        try:
            await asyncio.to_thread(sweep_once)
        except Exception as e:
            logger.error(f"Error in expiry sweeper loop: {e}")

        await asyncio.sleep(settings.SWEEP_INTERVAL_SECONDS)


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL)
    result = sweep_once()
    logger.info(
        f"processed={result.processed} skipped={result.skipped} "
        f"hosts_reminded={result.hosts_reminded} errors={result.errors}"
    )
