from dataclasses import asdict
from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.orm import Session
from typing import List, Annotated, Optional

from fastapi_limiter.depends import RateLimiter

from .. import schemas, crud, document_gate, models, workflow
from ..auth import get_current_user_id_from_token, get_key_by_user_id_or_ip
from ..database import get_db
from ..payments import StripePaymentAuthorizer, get_payment_authorizer

router = APIRouter(prefix="/bookings", tags=["Bookings"])

# Module-level so tests can swap them out through dependency_overrides
write_limiter = RateLimiter(times=30, minutes=1, identifier=get_key_by_user_id_or_ip)
read_limiter = RateLimiter(times=120, minutes=1, identifier=get_key_by_user_id_or_ip)

UserId = Annotated[int, Depends(get_current_user_id_from_token)]
Authorizer = Annotated[StripePaymentAuthorizer, Depends(get_payment_authorizer)]


def _transition_response(result: workflow.TransitionResult) -> schemas.BookingTransitionRead:
    booking = schemas.BookingTransitionRead.model_validate(result.booking)
    return booking.model_copy(update={"already_resolved": not result.applied})


@router.post(
    "/",
    response_model=schemas.BookingRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(write_limiter)],
)
def create_booking(
        booking: schemas.BookingCreate,
        user_id: UserId,
        authorizer: Authorizer,
        db: Session = Depends(get_db),
        idempotency_key: Annotated[Optional[str], Header(max_length=255)] = None,
):
    """
    Request a booking. The renter's card is authorized for the full amount
    and the hold stays open until the host responds or it expires.

    Retrying with the same `Idempotency-Key` header returns the booking the
    first attempt created instead of placing a second hold.
    """
    return workflow.submit_booking(
        db, authorizer, renter_id=user_id, booking_in=booking, request_key=idempotency_key
    )


@router.get("/", response_model=List[schemas.BookingRead], dependencies=[Depends(read_limiter)])
def read_user_bookings(
        user_id: UserId,
        db: Session = Depends(get_db),
        skip: int = 0,
        limit: int = 100,
):
    """
    Get all booking requests made by the authenticated renter.
    """
    return crud.get_bookings_by_renter(db=db, renter_id=user_id, skip=skip, limit=limit)


@router.get("/hosting", response_model=List[schemas.BookingRead], dependencies=[Depends(read_limiter)])
def read_hosting_bookings(
        user_id: UserId,
        db: Session = Depends(get_db),
        skip: int = 0,
        limit: int = 100,
):
    """
    Get all booking requests received by the authenticated host.
    """
    return crud.get_bookings_by_host(db=db, host_id=user_id, skip=skip, limit=limit)


@router.get("/{booking_id}", response_model=schemas.BookingRead, dependencies=[Depends(read_limiter)])
def read_booking(booking_id: int, user_id: UserId, db: Session = Depends(get_db)):
    return workflow.get_booking_for_party(db, booking_id, user_id)


@router.post(
    "/{booking_id}/respond",
    response_model=schemas.BookingTransitionRead,
    dependencies=[Depends(write_limiter)],
)
def respond_to_booking(
        booking_id: int,
        body: schemas.BookingRespond,
        user_id: UserId,
        authorizer: Authorizer,
        db: Session = Depends(get_db),
):
    """
    Host approves (captures the hold) or declines (releases it).
    """
    result = workflow.respond_to_booking(
        db, authorizer, booking_id=booking_id, host_id=user_id,
        decision=body.decision, response_text=body.response,
    )
    return _transition_response(result)


@router.post(
    "/{booking_id}/cancel",
    response_model=schemas.BookingTransitionRead,
    dependencies=[Depends(write_limiter)],
)
def cancel_booking(
        booking_id: int,
        user_id: UserId,
        authorizer: Authorizer,
        body: Optional[schemas.BookingCancel] = None,
        db: Session = Depends(get_db),
):
    """
    Renter withdraws a pending request; the hold is released.
    """
    result = workflow.cancel_booking(
        db, authorizer, booking_id=booking_id, renter_id=user_id,
        reason=body.reason if body else None,
    )
    return _transition_response(result)


@router.get(
    "/{booking_id}/documents",
    response_model=List[schemas.BookingDocumentRead],
    dependencies=[Depends(read_limiter)],
)
def read_booking_documents(booking_id: int, user_id: UserId, db: Session = Depends(get_db)):
    return workflow.list_documents(db, booking_id, user_id)


@router.post(
    "/{booking_id}/documents",
    response_model=schemas.BookingDocumentRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(write_limiter)],
)
def upload_booking_document(
        booking_id: int,
        document: schemas.BookingDocumentCreate,
        user_id: UserId,
        db: Session = Depends(get_db),
):
    """
    Record a document the renter uploaded to storage. Uploading a type that
    already exists replaces it and sends it back for review.
    """
    return workflow.upload_document(db, booking_id, user_id, document)


@router.post(
    "/{booking_id}/documents/{document_id}/review",
    response_model=schemas.BookingDocumentRead,
    dependencies=[Depends(write_limiter)],
)
def review_booking_document(
        booking_id: int,
        document_id: int,
        review: schemas.DocumentReview,
        user_id: UserId,
        db: Session = Depends(get_db),
):
    return workflow.review_document(db, booking_id, document_id, user_id, review)


@router.get(
    "/{booking_id}/document-gate",
    response_model=schemas.GateResultRead,
    dependencies=[Depends(read_limiter)],
)
def read_booking_document_gate(
        booking_id: int,
        user_id: UserId,
        phase: models.DeadlineType = models.DeadlineType.BEFORE_APPROVAL,
        db: Session = Depends(get_db),
):
    """
    Which documents still hold this booking back at the given phase.
    """
    booking = workflow.get_booking_for_party(db, booking_id, user_id)
    result = document_gate.evaluate(
        db, booking.listing_id, booking.renter_id, phase=phase, booking_id=booking.id
    )
    return schemas.GateResultRead(**asdict(result))
