"""add request key and host nudge columns

Revision ID: 8b52e4f0c7a1
Revises: 3f1c9a7d2e10
Create Date: 2026-10-19 15:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '8b52e4f0c7a1'
down_revision: Union[str, Sequence[str], None] = '3f1c9a7d2e10'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.add_column('booking_requests', sa.Column('request_key', sa.String(length=255), nullable=True))
    op.add_column('booking_requests', sa.Column('host_nudge_sent_at', sa.TIMESTAMP(), nullable=True))

    # NULL keys don't collide, so requests sent without a key are unaffected
    op.create_unique_constraint('uq_booking_request_key', 'booking_requests', ['renter_id', 'request_key'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_constraint('uq_booking_request_key', 'booking_requests', type_='unique')
    op.drop_column('booking_requests', 'host_nudge_sent_at')
    op.drop_column('booking_requests', 'request_key')
