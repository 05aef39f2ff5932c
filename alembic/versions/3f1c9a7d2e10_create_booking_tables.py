"""create booking tables

Revision ID: 3f1c9a7d2e10
Revises:
Create Date: 2026-10-19 09:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c9a7d2e10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# SQLAlchemy stores enum member names, so the types list names, not values
listingcategory_enum = sa.Enum('FOOD_TRUCK', 'FOOD_TRAILER', 'GHOST_KITCHEN', 'VENDOR_LOT', name='listingcategory')
deadlinetype_enum = sa.Enum('BEFORE_BOOKING_REQUEST', 'BEFORE_APPROVAL', 'AFTER_APPROVAL', name='deadlinetype')
fulfillmenttype_enum = sa.Enum('PICKUP', 'DELIVERY', 'ON_SITE', name='fulfillmenttype')
bookingstatus_enum = sa.Enum('PENDING', 'APPROVED', 'DECLINED', 'CANCELLED', name='bookingstatus')
holdstatus_enum = sa.Enum('HELD', 'CAPTURED', 'RELEASED', 'EXPIRED', name='holdstatus')
paymentstatus_enum = sa.Enum('UNPAID', 'PAID', 'RELEASED', name='paymentstatus')
documentstatus_enum = sa.Enum('PENDING', 'APPROVED', 'REJECTED', name='documentstatus')


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'listings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('host_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('category', listingcategory_enum, nullable=False),
        sa.Column('daily_rate', sa.Numeric(10, 2), nullable=False),
        sa.Column('deposit_amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('instant_book', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=True),
    )
    op.create_index('ix_listings_id', 'listings', ['id'])
    op.create_index('ix_listings_host_id', 'listings', ['host_id'])

    op.create_table(
        'listing_required_documents',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('listing_id', sa.Integer(), sa.ForeignKey('listings.id'), nullable=False),
        sa.Column('document_type', sa.String(length=64), nullable=False),
        sa.Column('deadline_type', deadlinetype_enum, nullable=False, server_default='BEFORE_BOOKING_REQUEST'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.UniqueConstraint('listing_id', 'document_type', name='uq_required_document_type'),
    )
    op.create_index('ix_listing_required_documents_id', 'listing_required_documents', ['id'])
    op.create_index('ix_listing_required_documents_listing_id', 'listing_required_documents', ['listing_id'])

    op.create_table(
        'booking_requests',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('listing_id', sa.Integer(), sa.ForeignKey('listings.id'), nullable=False),
        sa.Column('renter_id', sa.Integer(), nullable=False),
        sa.Column('host_id', sa.Integer(), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('fulfillment_type', fulfillmenttype_enum, nullable=True),
        sa.Column('subtotal', sa.Numeric(10, 2), nullable=False),
        sa.Column('service_fee', sa.Numeric(10, 2), nullable=False),
        sa.Column('deposit_amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('total_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', bookingstatus_enum, nullable=False, server_default='PENDING'),
        sa.Column('hold_status', holdstatus_enum, nullable=True),
        sa.Column('payment_status', paymentstatus_enum, nullable=False, server_default='UNPAID'),
        sa.Column('payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('hold_expires_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('is_instant_book', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('host_response', sa.Text(), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('responded_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('paid_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=True),
    )
    op.create_index('ix_booking_requests_id', 'booking_requests', ['id'])
    op.create_index('ix_booking_requests_listing_id', 'booking_requests', ['listing_id'])
    op.create_index('ix_booking_requests_renter_id', 'booking_requests', ['renter_id'])
    op.create_index('ix_booking_requests_host_id', 'booking_requests', ['host_id'])
    op.create_index(
        'ix_booking_requests_hold_sweep', 'booking_requests', ['status', 'hold_status', 'hold_expires_at']
    )

    op.create_table(
        'booking_documents',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('booking_id', sa.Integer(), sa.ForeignKey('booking_requests.id'), nullable=False),
        sa.Column('document_type', sa.String(length=64), nullable=False),
        sa.Column('file_url', sa.Text(), nullable=False),
        sa.Column('file_name', sa.String(length=255), nullable=False),
        sa.Column('status', documentstatus_enum, nullable=False, server_default='PENDING'),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('uploaded_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('reviewed_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('reviewed_by', sa.Integer(), nullable=True),
        sa.UniqueConstraint('booking_id', 'document_type', name='uq_booking_document_type'),
    )
    op.create_index('ix_booking_documents_id', 'booking_documents', ['id'])
    op.create_index('ix_booking_documents_booking_id', 'booking_documents', ['booking_id'])

    op.create_table(
        'outbox_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('topic', sa.String(length=255), nullable=False),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=True),
    )
    op.create_index('ix_outbox_events_id', 'outbox_events', ['id'])
    op.create_index('ix_outbox_events_status', 'outbox_events', ['status'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('outbox_events')
    op.drop_table('booking_documents')
    op.drop_table('booking_requests')
    op.drop_table('listing_required_documents')
    op.drop_table('listings')

    # create_table made the ENUM types; drop them after the tables are gone
    for enum_type in (
        documentstatus_enum, paymentstatus_enum, holdstatus_enum, bookingstatus_enum,
        fulfillmenttype_enum, deadlinetype_enum, listingcategory_enum,
    ):
        enum_type.drop(op.get_bind(), checkfirst=True)
