from sqlalchemy import (
    Column, Integer, String, Text, Date, TIMESTAMP, Boolean, Numeric, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship
from enum import Enum as PyEnum
import datetime

from .database import Base


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp, matching the TIMESTAMP columns below."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class ListingCategory(PyEnum):
    FOOD_TRUCK = "food_truck"
    FOOD_TRAILER = "food_trailer"
    GHOST_KITCHEN = "ghost_kitchen"
    VENDOR_LOT = "vendor_lot"


class BookingStatus(PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class HoldStatus(PyEnum):
    HELD = "held"
    CAPTURED = "captured"
    RELEASED = "released"
    EXPIRED = "expired"


class PaymentStatus(PyEnum):
    UNPAID = "unpaid"
    PAID = "paid"
    RELEASED = "released"


class FulfillmentType(PyEnum):
    PICKUP = "pickup"
    DELIVERY = "delivery"
    ON_SITE = "on_site"


class DeadlineType(PyEnum):
    BEFORE_BOOKING_REQUEST = "before_booking_request"
    BEFORE_APPROVAL = "before_approval"
    AFTER_APPROVAL = "after_approval"


class DocumentStatus(PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


TERMINAL_BOOKING_STATUSES = (BookingStatus.APPROVED, BookingStatus.DECLINED, BookingStatus.CANCELLED)


class Listing(Base):
    __tablename__ = "listings"

    id = Column(Integer, primary_key=True, index=True)
    # Users live in the auth service, so this is a plain id
    host_id = Column(Integer, index=True, nullable=False)

    title = Column(String(255), nullable=False)
    category = Column(SQLEnum(ListingCategory), nullable=False)
    daily_rate = Column(Numeric(10, 2), nullable=False)
    deposit_amount = Column(Numeric(10, 2), default=0, nullable=False)
    instant_book = Column(Boolean, default=False, nullable=False)

    created_at = Column(TIMESTAMP, default=utcnow)

    required_documents = relationship(
        "RequiredDocument", back_populates="listing", cascade="all, delete-orphan"
    )


class RequiredDocument(Base):
    __tablename__ = "listing_required_documents"

    id = Column(Integer, primary_key=True, index=True)
    listing_id = Column(Integer, ForeignKey("listings.id"), index=True, nullable=False)

    # Matched against BookingDocument.document_type by value, not by key
    document_type = Column(String(64), nullable=False)
    deadline_type = Column(
        SQLEnum(DeadlineType), default=DeadlineType.BEFORE_BOOKING_REQUEST, nullable=False
    )
    description = Column(Text, nullable=True)

    listing = relationship("Listing", back_populates="required_documents")

    __table_args__ = (
        UniqueConstraint("listing_id", "document_type", name="uq_required_document_type"),
    )


class BookingRequest(Base):
    __tablename__ = "booking_requests"

    id = Column(Integer, primary_key=True, index=True)

    listing_id = Column(Integer, ForeignKey("listings.id"), index=True, nullable=False)
    renter_id = Column(Integer, index=True, nullable=False)
    host_id = Column(Integer, index=True, nullable=False)

    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    fulfillment_type = Column(SQLEnum(FulfillmentType), nullable=True)

    subtotal = Column(Numeric(10, 2), nullable=False)
    service_fee = Column(Numeric(10, 2), nullable=False)
    deposit_amount = Column(Numeric(10, 2), default=0, nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)

    status = Column(SQLEnum(BookingStatus), default=BookingStatus.PENDING, nullable=False)
    hold_status = Column(SQLEnum(HoldStatus), nullable=True)
    payment_status = Column(SQLEnum(PaymentStatus), default=PaymentStatus.UNPAID, nullable=False)
    payment_intent_id = Column(String(255), nullable=True)
    # Client-supplied Idempotency-Key of the submit request, unique per renter
    request_key = Column(String(255), nullable=True)

    # Written once when the hold is placed
    hold_expires_at = Column(TIMESTAMP, nullable=True)
    is_instant_book = Column(Boolean, default=False, nullable=False)

    host_response = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    responded_at = Column(TIMESTAMP, nullable=True)
    paid_at = Column(TIMESTAMP, nullable=True)
    host_nudge_sent_at = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, default=utcnow)

    listing = relationship("Listing")
    documents = relationship("BookingDocument", back_populates="booking")

    __table_args__ = (
        # The sweeper scans on these three columns every run
        Index("ix_booking_requests_hold_sweep", "status", "hold_status", "hold_expires_at"),
        UniqueConstraint("renter_id", "request_key", name="uq_booking_request_key"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BOOKING_STATUSES


class BookingDocument(Base):
    __tablename__ = "booking_documents"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("booking_requests.id"), index=True, nullable=False)

    document_type = Column(String(64), nullable=False)
    file_url = Column(Text, nullable=False)
    file_name = Column(String(255), nullable=False)

    status = Column(SQLEnum(DocumentStatus), default=DocumentStatus.PENDING, nullable=False)
    rejection_reason = Column(Text, nullable=True)
    uploaded_at = Column(TIMESTAMP, default=utcnow)
    reviewed_at = Column(TIMESTAMP, nullable=True)
    reviewed_by = Column(Integer, nullable=True)

    booking = relationship("BookingRequest", back_populates="documents")

    __table_args__ = (
        UniqueConstraint("booking_id", "document_type", name="uq_booking_document_type"),
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True)

    status = Column(String(20), default="PENDING", nullable=False)
    topic = Column(String(255), nullable=False)
    # JSON text, published to Kafka as-is
    payload = Column(Text, nullable=False)

    created_at = Column(TIMESTAMP, default=utcnow)

    __table_args__ = (
        Index('ix_outbox_events_status', 'status'),
    )
