import datetime
from typing import Iterable
from sqlalchemy import or_
from sqlalchemy.orm import Session
from . import models, schemas


def get_listing(db: Session, listing_id: int) -> models.Listing | None:
    return db.query(models.Listing).filter(models.Listing.id == listing_id).first()


def create_listing(db: Session, listing: schemas.ListingCreate, host_id: int) -> models.Listing:
    db_listing = models.Listing(**listing.model_dump(), host_id=host_id)
    db.add(db_listing)
    db.commit()
    db.refresh(db_listing)
    return db_listing


def get_required_documents(db: Session, listing_id: int) -> list[models.RequiredDocument]:
    return db.query(models.RequiredDocument).filter(
        models.RequiredDocument.listing_id == listing_id
    ).order_by(models.RequiredDocument.id).all()


def get_required_document(db: Session, listing_id: int, rule_id: int) -> models.RequiredDocument | None:
    return db.query(models.RequiredDocument).filter(
        models.RequiredDocument.listing_id == listing_id,
        models.RequiredDocument.id == rule_id,
    ).first()


def create_required_document(
        db: Session, listing_id: int, rule: schemas.RequiredDocumentCreate
) -> models.RequiredDocument:
    db_rule = models.RequiredDocument(listing_id=listing_id, **rule.model_dump())
    db.add(db_rule)
    db.commit()
    db.refresh(db_rule)
    return db_rule


def delete_required_document(db: Session, rule: models.RequiredDocument) -> None:
    db.delete(rule)
    db.commit()


def get_approved_document_types_on_file(
        db: Session, renter_id: int, document_types: set[str], approved_since: datetime.datetime
) -> set[str]:
    """
    Returns the subset of document_types for which the renter has an approved
    document, on any of their bookings, reviewed at or after approved_since.
    """
    rows = db.query(models.BookingDocument.document_type).join(
        models.BookingRequest, models.BookingDocument.booking_id == models.BookingRequest.id
    ).filter(
        models.BookingRequest.renter_id == renter_id,
        models.BookingDocument.document_type.in_(document_types),
        models.BookingDocument.status == models.DocumentStatus.APPROVED,
        models.BookingDocument.reviewed_at >= approved_since,
    ).distinct().all()
    return {row[0] for row in rows}


def get_booking_documents(db: Session, booking_id: int) -> list[models.BookingDocument]:
    return db.query(models.BookingDocument).filter(
        models.BookingDocument.booking_id == booking_id
    ).order_by(models.BookingDocument.uploaded_at.desc()).all()


def get_booking_document(db: Session, booking_id: int, document_id: int) -> models.BookingDocument | None:
    return db.query(models.BookingDocument).filter(
        models.BookingDocument.booking_id == booking_id,
        models.BookingDocument.id == document_id,
    ).first()


def upsert_booking_document(
        db: Session, booking_id: int, document: schemas.BookingDocumentCreate
) -> models.BookingDocument:
    """
    One row per (booking, document_type): a re-upload replaces the file and
    sends the document back to review.
    """
    db_document = db.query(models.BookingDocument).filter(
        models.BookingDocument.booking_id == booking_id,
        models.BookingDocument.document_type == document.document_type,
    ).first()

    if db_document is None:
        db_document = models.BookingDocument(booking_id=booking_id, document_type=document.document_type)
        db.add(db_document)

    db_document.file_url = document.file_url
    db_document.file_name = document.file_name
    db_document.status = models.DocumentStatus.PENDING
    db_document.rejection_reason = None
    db_document.uploaded_at = models.utcnow()
    db_document.reviewed_at = None
    db_document.reviewed_by = None

    db.commit()
    db.refresh(db_document)
    return db_document


def get_booking(db: Session, booking_id: int) -> models.BookingRequest | None:
    return db.query(models.BookingRequest).filter(models.BookingRequest.id == booking_id).first()


def get_bookings_by_renter(db: Session, renter_id: int, skip: int = 0, limit: int = 100):
    return db.query(models.BookingRequest).filter(
        models.BookingRequest.renter_id == renter_id
    ).order_by(models.BookingRequest.id).offset(skip).limit(limit).all()


def get_bookings_by_host(db: Session, host_id: int, skip: int = 0, limit: int = 100):
    return db.query(models.BookingRequest).filter(
        models.BookingRequest.host_id == host_id
    ).order_by(models.BookingRequest.id).offset(skip).limit(limit).all()


def get_booking_by_request_key(db: Session, renter_id: int, request_key: str) -> models.BookingRequest | None:
    return db.query(models.BookingRequest).filter(
        models.BookingRequest.renter_id == renter_id,
        models.BookingRequest.request_key == request_key,
    ).first()


def create_booking(
        db: Session, documents: Iterable[schemas.BookingDocumentCreate] = (), **fields
) -> models.BookingRequest:
    """Inserts the booking and any documents staged with it in one commit."""
    db_booking = models.BookingRequest(**fields)
    for document in documents:
        db_booking.documents.append(models.BookingDocument(
            document_type=document.document_type,
            file_url=document.file_url,
            file_name=document.file_name,
            status=models.DocumentStatus.PENDING,
            uploaded_at=fields.get("created_at") or models.utcnow(),
        ))
    db.add(db_booking)
    db.commit()
    db.refresh(db_booking)
    return db_booking


def transition_held_booking(db: Session, booking_id: int, **values) -> bool:
    """
    Conditionally moves a booking out of pending/held.

    The UPDATE only matches while the row is still pending with a live hold,
    so of two concurrent callers exactly one sees rowcount == 1. Returns
    True if this call won.
    """
    updated = db.query(models.BookingRequest).filter(
        models.BookingRequest.id == booking_id,
        models.BookingRequest.status == models.BookingStatus.PENDING,
        models.BookingRequest.hold_status == models.HoldStatus.HELD,
    ).update(values, synchronize_session=False)
    db.commit()
    return updated == 1


def get_expired_holds(db: Session, now: datetime.datetime, limit: int = 500) -> list[models.BookingRequest]:
    return db.query(models.BookingRequest).filter(
        models.BookingRequest.status == models.BookingStatus.PENDING,
        models.BookingRequest.hold_status == models.HoldStatus.HELD,
        models.BookingRequest.hold_expires_at < now,
    ).order_by(models.BookingRequest.hold_expires_at).limit(limit).all()


def get_bookings_needing_host_nudge(
        db: Session,
        pending_before: datetime.datetime,
        created_after: datetime.datetime,
        nudged_before: datetime.datetime,
) -> list[models.BookingRequest]:
    """
    Pending requests created in (created_after, pending_before) whose host
    has not been nudged since nudged_before.
    """
    return db.query(models.BookingRequest).filter(
        models.BookingRequest.status == models.BookingStatus.PENDING,
        models.BookingRequest.hold_status == models.HoldStatus.HELD,
        models.BookingRequest.created_at < pending_before,
        models.BookingRequest.created_at > created_after,
        or_(
            models.BookingRequest.host_nudge_sent_at.is_(None),
            models.BookingRequest.host_nudge_sent_at < nudged_before,
        ),
    ).order_by(models.BookingRequest.host_id, models.BookingRequest.created_at).all()


def mark_host_nudged(db: Session, booking_ids: list[int], sent_at: datetime.datetime) -> None:
    db.query(models.BookingRequest).filter(
        models.BookingRequest.id.in_(booking_ids)
    ).update({"host_nudge_sent_at": sent_at}, synchronize_session=False)
    db.commit()
