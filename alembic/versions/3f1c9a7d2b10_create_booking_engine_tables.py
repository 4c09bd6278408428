"""create booking engine tables

Revision ID: 3f1c9a7d2b10
Revises:
Create Date: 2025-01-06 10:12:44.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f1c9a7d2b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# --- ENUM types, created once up front (pricetype is shared by two tables) ---
pricetype_enum = postgresql.ENUM('DAY', 'WEEK', 'MONTH', name='pricetype', create_type=False)
paymentoption_enum = postgresql.ENUM('BOOKING_ONLY', 'FULL', name='paymentoption', create_type=False)
bookingstatus_enum = postgresql.ENUM('PENDING', 'CONFIRMED', 'CANCELLED', 'COMPLETED',
                                     name='bookingstatus', create_type=False)
bookingpaymentstatus_enum = postgresql.ENUM('PENDING', 'PARTIALLY_PAID', 'PAID', 'FAILED',
                                            name='bookingpaymentstatus', create_type=False)
milestonestatus_enum = postgresql.ENUM('PENDING', 'PAID', name='milestonestatus', create_type=False)
paymentstatus_enum = postgresql.ENUM('PENDING', 'COMPLETED', 'FAILED', 'CANCELLED', 'REFUNDED',
                                     name='paymentstatus', create_type=False)
paymentmethod_enum = postgresql.ENUM('CASH', 'CARD', 'BANK_TRANSFER', 'MANUAL', 'REFUND', 'PENDING',
                                     name='paymentmethod', create_type=False)
paymenttype_enum = postgresql.ENUM('BOOKING', 'RENT', 'EXTENSION', 'REFUND', 'MANUAL',
                                   name='paymenttype', create_type=False)
linkstatus_enum = postgresql.ENUM('ACTIVE', 'COMPLETED', 'EXPIRED', 'REVOKED', name='linkstatus', create_type=False)

ALL_ENUMS = (
    pricetype_enum, paymentoption_enum, bookingstatus_enum, bookingpaymentstatus_enum,
    milestonestatus_enum, paymentstatus_enum, paymentmethod_enum, paymenttype_enum, linkstatus_enum,
)


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    for enum_type in ALL_ENUMS:
        enum_type.create(bind, checkfirst=True)

    # --- Rate catalog (read-only for the engine) ---
    op.create_table(
        'room_prices',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('room_id', sa.Integer(), nullable=False),
        sa.Column('price_type', pricetype_enum, nullable=False),
        sa.Column('fixed_price', sa.Float(), nullable=False),
        sa.Column('discount_price', sa.Float(), nullable=True),
        sa.UniqueConstraint('room_id', 'price_type', name='uq_room_prices_room_type'),
    )
    op.create_index('ix_room_prices_room_id', 'room_prices', ['room_id'])

    op.create_table(
        'bookings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('package_id', sa.Integer(), nullable=False),
        sa.Column('room_ids', sa.JSON(), nullable=False),
        sa.Column('from_date', sa.Date(), nullable=False),
        sa.Column('to_date', sa.Date(), nullable=False),
        sa.Column('number_of_days', sa.Integer(), nullable=False),
        sa.Column('price_type', pricetype_enum, nullable=False),
        sa.Column('rent_amount', sa.Float(), nullable=False),
        sa.Column('booking_fee', sa.Float(), nullable=False),
        sa.Column('total_amount', sa.Float(), nullable=False),
        sa.Column('payment_option', paymentoption_enum, nullable=False),
        sa.Column('status', bookingstatus_enum, nullable=False, server_default='PENDING'),
        sa.Column('payment_status', bookingpaymentstatus_enum, nullable=False, server_default='PENDING'),
        sa.Column('cancellation_reason', sa.String(500), nullable=True),
        sa.Column('cancelled_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('auto_renewal', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('renewal_period_days', sa.Integer(), nullable=True),
        sa.Column('next_renewal_date', sa.Date(), nullable=True),
        sa.Column('milestones_scheduled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_payment_date', sa.TIMESTAMP(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('updated_at', sa.TIMESTAMP(), nullable=True),
    )
    op.create_index('ix_bookings_user_id', 'bookings', ['user_id'])
    op.create_index('ix_bookings_package_id', 'bookings', ['package_id'])
    op.create_index('ix_bookings_dates', 'bookings', ['from_date', 'to_date'])

    op.create_table(
        'milestones',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('booking_id', sa.Integer(), sa.ForeignKey('bookings.id'), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('milestone_type', sa.String(20), nullable=False),
        sa.Column('is_booking_fee', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('due_date', sa.Date(), nullable=False),
        sa.Column('amount', sa.Float(), nullable=False),
        sa.Column('payment_status', milestonestatus_enum, nullable=False, server_default='PENDING'),
        # FK to payments is added below, once that table exists
        sa.Column('payment_id', sa.Integer(), nullable=True),
        sa.Column('paid_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('payment_method', sa.String(30), nullable=True),
        sa.Column('transaction_reference', sa.String(100), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=True),
        sa.UniqueConstraint('booking_id', 'sequence', name='uq_milestones_booking_sequence'),
    )
    op.create_index('ix_milestones_booking_id', 'milestones', ['booking_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('booking_id', sa.Integer(), sa.ForeignKey('bookings.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('milestone_id', sa.Integer(), sa.ForeignKey('milestones.id'), nullable=True),
        sa.Column('amount', sa.Float(), nullable=False),
        sa.Column('payment_method', paymentmethod_enum, nullable=False),
        sa.Column('payment_type', paymenttype_enum, nullable=False),
        sa.Column('status', paymentstatus_enum, nullable=False, server_default='PENDING'),
        sa.Column('transaction_id', sa.String(100), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('paid_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=True),
    )
    op.create_index('ix_payments_booking_id', 'payments', ['booking_id'])
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('ix_payments_milestone_id', 'payments', ['milestone_id'])
    op.create_index('ix_payments_booking_status', 'payments', ['booking_id', 'status'])

    with op.batch_alter_table('milestones') as batch_op:
        batch_op.create_foreign_key('fk_milestones_payment_id', 'payments', ['payment_id'], ['id'])

    op.create_table(
        'payment_links',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('unique_id', sa.String(40), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('booking_id', sa.Integer(), sa.ForeignKey('bookings.id'), nullable=False),
        sa.Column('milestone_id', sa.Integer(), sa.ForeignKey('milestones.id'), nullable=True),
        sa.Column('payment_id', sa.Integer(), sa.ForeignKey('payments.id'), nullable=True),
        sa.Column('amount', sa.Float(), nullable=False),
        sa.Column('status', linkstatus_enum, nullable=False, server_default='ACTIVE'),
        sa.Column('expires_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('paid_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('updated_at', sa.TIMESTAMP(), nullable=True),
    )
    op.create_index('ix_payment_links_unique_id', 'payment_links', ['unique_id'], unique=True)
    op.create_index('ix_payment_links_user_id', 'payment_links', ['user_id'])
    op.create_index('ix_payment_links_booking_id', 'payment_links', ['booking_id'])
    op.create_index('ix_payment_links_milestone_status', 'payment_links', ['milestone_id', 'status'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('payment_links')
    with op.batch_alter_table('milestones') as batch_op:
        batch_op.drop_constraint('fk_milestones_payment_id', type_='foreignkey')
    op.drop_table('payments')
    op.drop_table('milestones')
    op.drop_table('bookings')
    op.drop_table('room_prices')

    bind = op.get_bind()
    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(bind, checkfirst=True)
