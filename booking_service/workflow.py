"""
Booking request state machine.

    pending/held --approve--> approved/captured/paid
                 --decline--> declined/released/released
                 --cancel---> cancelled/released/released
                 --expire---> cancelled/expired/released   (expiry_sweeper)

Each transition calls the payment provider first and only then writes the
new state with a conditional UPDATE (see crud.transition_held_booking). If
the provider call fails nothing is written; if another caller resolved the
booking in the meantime the write matches no rows and the current row is
returned with ``applied=False``.
"""
import datetime
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud, document_gate, models, schemas
from .config import settings
from .errors import (
    BookingNotFound, DocumentNotFound, DocumentsRequired, InvalidState, ListingNotFound, NotBookingParty,
    PaymentOperationFailed, ValidationFailed,
)
from .notifications import notify
from .payments import HoldOutcome, StripePaymentAuthorizer

logger = logging.getLogger("booking_service")

CENT = Decimal("0.01")


@dataclass
class TransitionResult:
    booking: models.BookingRequest
    # False when someone else resolved the booking before this call could
    applied: bool = True


@dataclass
class PriceQuote:
    subtotal: Decimal
    service_fee: Decimal
    deposit_amount: Decimal
    total_price: Decimal


def quote_price(listing: models.Listing, start_date: datetime.date, end_date: datetime.date) -> PriceQuote:
    days = (end_date - start_date).days
    subtotal = (Decimal(listing.daily_rate) * days).quantize(CENT)
    fee_percent = Decimal(str(settings.RENTER_FEE_PERCENT))
    service_fee = (subtotal * fee_percent / 100).quantize(CENT, rounding=ROUND_HALF_UP)
    deposit_amount = Decimal(listing.deposit_amount or 0).quantize(CENT)
    return PriceQuote(
        subtotal=subtotal,
        service_fee=service_fee,
        deposit_amount=deposit_amount,
        total_price=subtotal + service_fee + deposit_amount,
    )


def _get_booking(db: Session, booking_id: int) -> models.BookingRequest:
    booking = crud.get_booking(db, booking_id)
    if booking is None:
        raise BookingNotFound()
    return booking


def _require_live_hold(booking: models.BookingRequest) -> None:
    if booking.status != models.BookingStatus.PENDING or booking.hold_status != models.HoldStatus.HELD:
        raise InvalidState(
            f"Booking is {booking.status.value} with hold "
            f"{booking.hold_status.value if booking.hold_status else 'none'}."
        )


def _already_resolved(db: Session, booking: models.BookingRequest, message: str) -> TransitionResult:
    """
    The provider says the hold was settled elsewhere. If the local row has
    caught up, report it as resolved; otherwise the row can't move yet.
    """
    db.refresh(booking)
    if booking.is_terminal:
        logger.info(f"Booking {booking.id} already resolved as {booking.status.value}.")
        return TransitionResult(booking, applied=False)
    raise InvalidState(message)


def submit_booking(
        db: Session,
        authorizer: StripePaymentAuthorizer,
        renter_id: int,
        booking_in: schemas.BookingCreate,
        now: datetime.datetime | None = None,
        request_key: str | None = None,
) -> models.BookingRequest:
    """
    Places a payment hold and records a pending booking request.

    Nothing is written unless the hold was authorized. Documents staged with
    the request count toward the gate and are stored as pending alongside the
    booking. A repeated ``request_key`` returns the booking it already created.
    """
    now = now or models.utcnow()

    if request_key:
        existing = crud.get_booking_by_request_key(db, renter_id, request_key)
        if existing is not None:
            logger.info(f"Replaying booking {existing.id} for request key {request_key}")
            return existing

    if booking_in.start_date >= booking_in.end_date:
        raise ValidationFailed("Booking end date must be after start date.")
    if booking_in.start_date < now.date():
        raise ValidationFailed("Booking cannot start in the past.")

    staged_types = [document.document_type for document in booking_in.documents]
    if len(staged_types) != len(set(staged_types)):
        raise ValidationFailed("Each document type can only be attached once.")

    listing = crud.get_listing(db, booking_in.listing_id)
    if listing is None:
        raise ListingNotFound()
    if listing.host_id == renter_id:
        raise ValidationFailed("You cannot book your own listing.")

    gate = document_gate.evaluate(db, listing.id, renter_id, staged_types=set(staged_types), now=now)
    if gate.blocking:
        raise DocumentsRequired(gate.missing)

    quote = quote_price(listing, booking_in.start_date, booking_in.end_date)
    logger.info(
        f"Placing hold for listing {listing.id}, renter {renter_id}: "
        f"subtotal={quote.subtotal} fee={quote.service_fee} deposit={quote.deposit_amount} total={quote.total_price}"
    )

    # Raises PaymentAuthorizationFailed before anything touches the database
    hold = authorizer.authorize_hold(
        amount=quote.total_price,
        payment_method_id=booking_in.payment_method_id,
        customer_id=booking_in.customer_id,
        metadata={
            "listing_id": str(listing.id),
            "renter_id": str(renter_id),
            "host_id": str(listing.host_id),
        },
        idempotency_key=f"hold_{renter_id}_{request_key}" if request_key else None,
    )

    try:
        booking = crud.create_booking(
            db,
            documents=booking_in.documents,
            listing_id=listing.id,
            renter_id=renter_id,
            host_id=listing.host_id,
            start_date=booking_in.start_date,
            end_date=booking_in.end_date,
            fulfillment_type=booking_in.fulfillment_type,
            subtotal=quote.subtotal,
            service_fee=quote.service_fee,
            deposit_amount=quote.deposit_amount,
            total_price=quote.total_price,
            status=models.BookingStatus.PENDING,
            hold_status=models.HoldStatus.HELD,
            payment_status=models.PaymentStatus.UNPAID,
            payment_intent_id=hold.payment_intent_id,
            request_key=request_key,
            hold_expires_at=now + datetime.timedelta(days=settings.HOLD_WINDOW_DAYS),
            is_instant_book=listing.instant_book,
            created_at=now,
        )
    except SQLAlchemyError as e:
        db.rollback()
        if request_key:
            # A concurrent retry with the same key won the insert; it holds the same intent
            existing = crud.get_booking_by_request_key(db, renter_id, request_key)
            if existing is not None:
                logger.info(f"Booking {existing.id} already recorded for request key {request_key}")
                return existing
        logger.error(f"Failed to record booking after hold {hold.payment_intent_id}: {e}. Releasing hold.")
        try:
            authorizer.release(hold.payment_intent_id, idempotency_key=f"release_orphan_{hold.payment_intent_id}")
        except PaymentOperationFailed:
            logger.error(f"Could not release orphaned hold {hold.payment_intent_id}; it will lapse on its own.")
        raise

    logger.info(f"Booking {booking.id} created with hold {hold.payment_intent_id} until {booking.hold_expires_at}")
    notify(db, "booking_requested", booking, [booking.host_id], document_types=sorted(staged_types))

    if listing.instant_book:
        booking = _instant_approve(db, authorizer, booking, now)
    return booking


def _instant_approve(
        db: Session, authorizer: StripePaymentAuthorizer, booking: models.BookingRequest, now: datetime.datetime
) -> models.BookingRequest:
    gate = document_gate.evaluate(
        db, booking.listing_id, booking.renter_id,
        phase=models.DeadlineType.BEFORE_APPROVAL, booking_id=booking.id, now=now,
    )
    if gate.blocking:
        logger.info(f"Instant book {booking.id} waits for documents {gate.missing}; leaving it for the host.")
        return booking
    try:
        result = _approve(db, authorizer, booking, now, response_text=None)
    except (PaymentOperationFailed, InvalidState) as e:
        logger.warning(f"Instant book capture failed for booking {booking.id}: {e}. Leaving it for the host.")
        db.refresh(booking)
        return booking
    if result.applied:
        notify(db, "booking_approved", result.booking, [result.booking.renter_id, result.booking.host_id])
    return result.booking


def _approve(
        db: Session,
        authorizer: StripePaymentAuthorizer,
        booking: models.BookingRequest,
        now: datetime.datetime,
        response_text: str | None,
) -> TransitionResult:
    outcome = authorizer.capture(booking.payment_intent_id, idempotency_key=f"capture_{booking.payment_intent_id}")
    if outcome == HoldOutcome.ALREADY_RELEASED:
        return _already_resolved(db, booking, "The payment hold for this booking is no longer active.")

    applied = crud.transition_held_booking(
        db, booking.id,
        status=models.BookingStatus.APPROVED,
        hold_status=models.HoldStatus.CAPTURED,
        payment_status=models.PaymentStatus.PAID,
        host_response=response_text,
        responded_at=now,
        paid_at=now,
    )
    db.refresh(booking)
    if applied:
        logger.info(f"Booking {booking.id} approved; hold captured ({outcome.value}).")
    else:
        logger.info(f"Booking {booking.id} was resolved as {booking.status.value} before approval landed.")
    return TransitionResult(booking, applied=applied)


def _release(
        db: Session,
        authorizer: StripePaymentAuthorizer,
        booking: models.BookingRequest,
        **values,
) -> TransitionResult:
    outcome = authorizer.release(booking.payment_intent_id, idempotency_key=f"release_{booking.payment_intent_id}")
    if outcome == HoldOutcome.ALREADY_CAPTURED:
        return _already_resolved(db, booking, "Payment for this booking has already been captured.")

    applied = crud.transition_held_booking(db, booking.id, **values)
    db.refresh(booking)
    if not applied:
        logger.info(f"Booking {booking.id} was resolved as {booking.status.value} before release landed.")
    return TransitionResult(booking, applied=applied)


def respond_to_booking(
        db: Session,
        authorizer: StripePaymentAuthorizer,
        booking_id: int,
        host_id: int,
        decision: str,
        response_text: str | None = None,
        now: datetime.datetime | None = None,
) -> TransitionResult:
    now = now or models.utcnow()
    booking = _get_booking(db, booking_id)
    if booking.host_id != host_id:
        raise NotBookingParty("Only the host can respond to this booking.")

    if booking.is_terminal:
        logger.info(f"Respond on booking {booking.id} ignored; already {booking.status.value}.")
        return TransitionResult(booking, applied=False)
    _require_live_hold(booking)

    if decision == "approved":
        gate = document_gate.evaluate(
            db, booking.listing_id, booking.renter_id,
            phase=models.DeadlineType.BEFORE_APPROVAL, booking_id=booking.id, now=now,
        )
        if gate.blocking:
            raise DocumentsRequired(
                gate.missing, "The renter's documents must be approved before this booking can be approved."
            )
        result = _approve(db, authorizer, booking, now, response_text)
        event_type = "booking_approved"
    elif decision == "declined":
        result = _release(
            db, authorizer, booking,
            status=models.BookingStatus.DECLINED,
            hold_status=models.HoldStatus.RELEASED,
            payment_status=models.PaymentStatus.RELEASED,
            host_response=response_text,
            responded_at=now,
        )
        event_type = "booking_declined"
    else:
        raise ValidationFailed(f"Unknown decision '{decision}'.")

    if result.applied:
        notify(db, event_type, result.booking, [result.booking.renter_id], response=response_text)
    return result


def cancel_booking(
        db: Session,
        authorizer: StripePaymentAuthorizer,
        booking_id: int,
        renter_id: int,
        reason: str | None = None,
) -> TransitionResult:
    booking = _get_booking(db, booking_id)
    if booking.renter_id != renter_id:
        raise NotBookingParty("Only the renter can cancel this booking request.")

    if booking.status == models.BookingStatus.CANCELLED:
        return TransitionResult(booking, applied=False)
    if booking.status != models.BookingStatus.PENDING:
        raise InvalidState("Only pending booking requests can be cancelled. Please contact the host.")
    _require_live_hold(booking)

    result = _release(
        db, authorizer, booking,
        status=models.BookingStatus.CANCELLED,
        hold_status=models.HoldStatus.RELEASED,
        payment_status=models.PaymentStatus.RELEASED,
        cancellation_reason=reason,
    )
    if result.applied:
        logger.info(f"Booking {booking.id} cancelled by renter {renter_id}.")
        notify(db, "booking_cancelled", result.booking, [result.booking.host_id], reason=reason)
    return result


def get_booking_for_party(db: Session, booking_id: int, user_id: int) -> models.BookingRequest:
    booking = _get_booking(db, booking_id)
    if user_id not in (booking.renter_id, booking.host_id):
        raise NotBookingParty()
    return booking


def list_documents(db: Session, booking_id: int, user_id: int) -> list[models.BookingDocument]:
    get_booking_for_party(db, booking_id, user_id)
    return crud.get_booking_documents(db, booking_id)


def upload_document(
        db: Session, booking_id: int, renter_id: int, document_in: schemas.BookingDocumentCreate
) -> models.BookingDocument:
    booking = _get_booking(db, booking_id)
    if booking.renter_id != renter_id:
        raise NotBookingParty("Only the renter can upload documents for this booking.")
    if booking.is_terminal:
        raise InvalidState(f"Documents can't be changed once a booking is {booking.status.value}.")

    document = crud.upsert_booking_document(db, booking.id, document_in)
    logger.info(f"Document {document.document_type} uploaded for booking {booking.id}")
    notify(db, "document_uploaded", booking, [booking.host_id], document_type=document.document_type)
    return document


def review_document(
        db: Session,
        booking_id: int,
        document_id: int,
        host_id: int,
        review: schemas.DocumentReview,
        now: datetime.datetime | None = None,
) -> models.BookingDocument:
    booking = _get_booking(db, booking_id)
    if booking.host_id != host_id:
        raise NotBookingParty("Only the host can review documents for this booking.")
    if booking.is_terminal:
        raise InvalidState(f"Documents can't be changed once a booking is {booking.status.value}.")

    document = crud.get_booking_document(db, booking.id, document_id)
    if document is None:
        raise DocumentNotFound()
    if review.decision == "rejected" and not review.rejection_reason:
        raise ValidationFailed("A rejection reason is required.")

    document.status = models.DocumentStatus(review.decision)
    document.rejection_reason = review.rejection_reason if review.decision == "rejected" else None
    document.reviewed_at = now or models.utcnow()
    document.reviewed_by = host_id
    db.commit()
    db.refresh(document)

    logger.info(f"Document {document.id} on booking {booking.id} {review.decision} by host {host_id}")
    notify(
        db, f"document_{review.decision}", booking, [booking.renter_id],
        document_type=document.document_type, rejection_reason=document.rejection_reason,
    )
    return document
