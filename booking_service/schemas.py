from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Literal, Optional
import datetime

from .models import (
    BookingStatus, DeadlineType, DocumentStatus, FulfillmentType, HoldStatus, ListingCategory, PaymentStatus
)

# Document types are free-form, but slug-shaped
DOCUMENT_TYPE_PATTERN = r"^[a-z][a-z0-9_]{1,63}$"


class ListingBase(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    category: ListingCategory
    daily_rate: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    deposit_amount: Decimal = Field(default=Decimal("0"), ge=0, max_digits=10, decimal_places=2)
    instant_book: bool = False


class ListingCreate(ListingBase):
    # host_id comes from the JWT
    pass


class ListingRead(ListingBase):
    id: int
    host_id: int
    created_at: datetime.datetime

    class Config:
        from_attributes = True


class RequiredDocumentCreate(BaseModel):
    document_type: str = Field(pattern=DOCUMENT_TYPE_PATTERN)
    deadline_type: DeadlineType = DeadlineType.BEFORE_BOOKING_REQUEST
    description: Optional[str] = None


class RequiredDocumentRead(RequiredDocumentCreate):
    id: int
    listing_id: int

    class Config:
        from_attributes = True


class BookingDocumentCreate(BaseModel):
    document_type: str = Field(pattern=DOCUMENT_TYPE_PATTERN)
    file_url: str = Field(min_length=1)
    file_name: str = Field(min_length=1, max_length=255)


class BookingBase(BaseModel):
    listing_id: int
    start_date: datetime.date
    end_date: datetime.date
    fulfillment_type: Optional[FulfillmentType] = None


class BookingCreate(BookingBase):
    # renter_id comes from the JWT
    payment_method_id: str = Field(min_length=1)
    customer_id: Optional[str] = None
    # Files uploaded to storage before the request; they go in as pending
    documents: list[BookingDocumentCreate] = Field(default_factory=list, max_length=20)


class BookingRead(BookingBase):
    id: int
    renter_id: int
    host_id: int
    subtotal: Decimal
    service_fee: Decimal
    deposit_amount: Decimal
    total_price: Decimal
    status: BookingStatus
    hold_status: Optional[HoldStatus]
    payment_status: PaymentStatus
    payment_intent_id: Optional[str]
    hold_expires_at: Optional[datetime.datetime]
    is_instant_book: bool
    host_response: Optional[str]
    cancellation_reason: Optional[str]
    responded_at: Optional[datetime.datetime]
    paid_at: Optional[datetime.datetime]
    created_at: datetime.datetime

    class Config:
        from_attributes = True


class BookingTransitionRead(BookingRead):
    # True when another caller (host, renter or sweeper) resolved the booking first
    already_resolved: bool = False


class BookingRespond(BaseModel):
    decision: Literal["approved", "declined"]
    response: Optional[str] = Field(default=None, max_length=2000)


class BookingCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class BookingDocumentRead(BookingDocumentCreate):
    id: int
    booking_id: int
    status: DocumentStatus
    rejection_reason: Optional[str]
    uploaded_at: datetime.datetime
    reviewed_at: Optional[datetime.datetime]
    reviewed_by: Optional[int]

    class Config:
        from_attributes = True


class DocumentReview(BaseModel):
    decision: Literal["approved", "rejected"]
    rejection_reason: Optional[str] = Field(default=None, max_length=2000)


class GateResultRead(BaseModel):
    required_types: list[str]
    on_file: list[str]
    uploaded: list[str]
    missing: list[str]
    blocking: bool
    evaluable: bool


class SweepErrorRead(BaseModel):
    booking_id: int
    error: str


class SweepSummaryRead(BaseModel):
    processed: int
    skipped: int
    errors: list[SweepErrorRead]
    hosts_reminded: int = 0
