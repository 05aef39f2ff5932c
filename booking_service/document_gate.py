"""
Decides whether a renter's documents allow a booking to move forward.

Listings attach document rules with a deadline phase. Rules are cumulative:
a ``before_booking_request`` document also has to be in place before the
host approves, and every rule applies before fulfillment. A rule is met when
the renter has an approved document of that type on file (reviewed within
the validity window, on any of their bookings), when it is sent along with
the booking request, or, once a booking exists, when it has been uploaded to
that booking.
"""
import datetime
import logging
from dataclasses import dataclass, field
from sqlalchemy.orm import Session

from . import crud, models
from .config import settings
from .errors import ListingNotFound

logger = logging.getLogger("booking_service")

PHASE_ORDER = [
    models.DeadlineType.BEFORE_BOOKING_REQUEST,
    models.DeadlineType.BEFORE_APPROVAL,
    models.DeadlineType.AFTER_APPROVAL,
]


@dataclass
class GateResult:
    required_types: list[str]
    on_file: list[str] = field(default_factory=list)
    uploaded: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    blocking: bool = False
    # False when there is no renter to check against (anonymous browsing)
    evaluable: bool = True


def _phases_through(phase: models.DeadlineType) -> set[models.DeadlineType]:
    return set(PHASE_ORDER[:PHASE_ORDER.index(phase) + 1])


def documents_on_file(
        db: Session, renter_id: int, document_types: set[str], now: datetime.datetime | None = None
) -> set[str]:
    """Document types the renter has had approved within the validity window."""
    if not document_types:
        return set()
    now = now or models.utcnow()
    approved_since = now - datetime.timedelta(days=settings.DOCUMENT_VALIDITY_DAYS)
    return crud.get_approved_document_types_on_file(db, renter_id, document_types, approved_since)


def evaluate(
        db: Session,
        listing_id: int,
        renter_id: int | None,
        phase: models.DeadlineType = models.DeadlineType.BEFORE_BOOKING_REQUEST,
        booking_id: int | None = None,
        staged_types: set[str] | None = None,
        now: datetime.datetime | None = None,
) -> GateResult:
    listing = crud.get_listing(db, listing_id)
    if listing is None:
        # Fail closed: an unknown listing is not a listing without requirements.
        raise ListingNotFound()

    rules = crud.get_required_documents(db, listing_id)
    if not rules:
        return GateResult(required_types=[])

    required_types = {rule.document_type for rule in rules}
    gated = {rule.document_type for rule in rules if rule.deadline_type in _phases_through(phase)}

    if renter_id is None:
        return GateResult(
            required_types=sorted(required_types),
            missing=sorted(gated),
            blocking=bool(gated),
            evaluable=False,
        )

    on_file = documents_on_file(db, renter_id, required_types, now=now)

    # Staged documents arrive with the request and start out pending
    uploaded: set[str] = set(staged_types or ()) & required_types
    if booking_id is not None:
        # Past the request phase an upload only counts once the host approved it.
        accepted = {models.DocumentStatus.APPROVED}
        if phase == models.DeadlineType.BEFORE_BOOKING_REQUEST:
            accepted.add(models.DocumentStatus.PENDING)
        uploaded |= {
            document.document_type
            for document in crud.get_booking_documents(db, booking_id)
            if document.status in accepted
        }

    missing = gated - on_file - uploaded
    if missing:
        logger.info(
            f"Document gate blocking listing {listing_id} for renter {renter_id} "
            f"at {phase.value}: missing {sorted(missing)}"
        )

    return GateResult(
        required_types=sorted(required_types),
        on_file=sorted(on_file),
        uploaded=sorted(uploaded),
        missing=sorted(missing),
        blocking=bool(missing),
    )
