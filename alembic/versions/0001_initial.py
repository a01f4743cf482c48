"""initial

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ### commands auto generated ###
    op.create_table('buses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('registration_number', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=True),
        sa.Column('capacity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_buses_registration_number', 'buses', ['registration_number'], unique=True)

    op.create_table('schedules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('bus_id', sa.Integer(), sa.ForeignKey('buses.id', ondelete='CASCADE'), nullable=False),
        sa.Column('travel_dates', sa.JSON(), nullable=False),
        sa.Column('default_available', sa.JSON(), nullable=False),
        sa.Column('default_booked', sa.JSON(), nullable=False),
        sa.Column('fare', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_schedules_bus_id', 'schedules', ['bus_id'], unique=False)

    # date-scoped seat status; one row per (schedule, YYYY-MM-DD, seat)
    op.create_table('schedule_seats',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('schedule_id', sa.Integer(), sa.ForeignKey('schedules.id', ondelete='CASCADE'), nullable=False),
        sa.Column('travel_date', sa.String(length=10), nullable=False),
        sa.Column('seat_label', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='available'),
        sa.Column('is_permanent', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('reservation_id', sa.String(length=36), nullable=True),
        sa.Column('ticket_id', sa.Integer(), nullable=True),
        sa.Column('booking_id', sa.String(length=64), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.UniqueConstraint('schedule_id', 'travel_date', 'seat_label', name='uq_schedule_date_seat'),
    )
    op.create_index('ix_schedule_seats_schedule_date', 'schedule_seats', ['schedule_id', 'travel_date'], unique=False)
    op.create_index('ix_schedule_seats_reservation_id', 'schedule_seats', ['reservation_id'], unique=False)
    op.create_index('ix_schedule_seats_ticket_id', 'schedule_seats', ['ticket_id'], unique=False)

    op.create_table('reservations',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('bus_id', sa.Integer(), sa.ForeignKey('buses.id', ondelete='CASCADE'), nullable=False),
        sa.Column('schedule_id', sa.Integer(), sa.ForeignKey('schedules.id', ondelete='CASCADE'), nullable=False),
        sa.Column('travel_date', sa.String(length=10), nullable=False),
        sa.Column('seat_labels', sa.JSON(), nullable=False),
        sa.Column('state', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('ticket_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_reservations_bus_id', 'reservations', ['bus_id'], unique=False)
    op.create_index('ix_reservations_state_expires', 'reservations', ['state', 'expires_at'], unique=False)

    op.create_table('tickets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('booking_id', sa.String(length=64), nullable=False),
        sa.Column('reservation_id', sa.String(length=36), nullable=True),
        sa.Column('bus_id', sa.Integer(), sa.ForeignKey('buses.id', ondelete='CASCADE'), nullable=False),
        sa.Column('schedule_id', sa.Integer(), sa.ForeignKey('schedules.id', ondelete='SET NULL'), nullable=True),
        sa.Column('travel_date', sa.String(length=10), nullable=False),
        sa.Column('seat_labels', sa.JSON(), nullable=False),
        sa.Column('passenger_name', sa.String(length=255), nullable=True),
        sa.Column('passenger_email', sa.String(length=255), nullable=True),
        sa.Column('passenger_phone', sa.String(length=32), nullable=True),
        sa.Column('price', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('payment_status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_tickets_booking_id', 'tickets', ['booking_id'], unique=True)
    op.create_index('ix_tickets_reservation_id', 'tickets', ['reservation_id'], unique=False)
    op.create_index('ix_tickets_status', 'tickets', ['status'], unique=False)
    op.create_index('ix_tickets_payment_status', 'tickets', ['payment_status'], unique=False)
    op.create_index('ix_tickets_bus_date_payment', 'tickets', ['bus_id', 'travel_date', 'payment_status'], unique=False)

    op.create_table('payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='NPR'),
        sa.Column('provider', sa.String(length=128), nullable=False),
        sa.Column('provider_ref', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='initiated'),
        sa.Column('transaction_id', sa.String(length=255), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('provider_ref', name='payments_provider_ref_key'),
    )
    op.create_index('ix_payments_ticket_id', 'payments', ['ticket_id'], unique=False)
    op.create_index('ix_payments_status', 'payments', ['status'], unique=False)
    # ### end Alembic commands ###


def downgrade():
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_ticket_id', table_name='payments')
    op.drop_table('payments')
    op.drop_index('ix_tickets_bus_date_payment', table_name='tickets')
    op.drop_index('ix_tickets_payment_status', table_name='tickets')
    op.drop_index('ix_tickets_status', table_name='tickets')
    op.drop_index('ix_tickets_reservation_id', table_name='tickets')
    op.drop_index('ix_tickets_booking_id', table_name='tickets')
    op.drop_table('tickets')
    op.drop_index('ix_reservations_state_expires', table_name='reservations')
    op.drop_index('ix_reservations_bus_id', table_name='reservations')
    op.drop_table('reservations')
    op.drop_index('ix_schedule_seats_ticket_id', table_name='schedule_seats')
    op.drop_index('ix_schedule_seats_reservation_id', table_name='schedule_seats')
    op.drop_index('ix_schedule_seats_schedule_date', table_name='schedule_seats')
    op.drop_table('schedule_seats')
    op.drop_index('ix_schedules_bus_id', table_name='schedules')
    op.drop_table('schedules')
    op.drop_index('ix_buses_registration_number', table_name='buses')
    op.drop_table('buses')
