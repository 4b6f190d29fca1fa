"""Initial booking orchestrator schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

Creates:
1. bookings, disputes
2. booking_events (append-only log)
3. availability_days (per-car, per-day ledger)
4. transition_intents (saga intents)
5. webhook_retries, webhook_dead_letters, processed_webhook_events
6. notification_rate_counters (shared email rate limit)
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ===========================================
    # 1. BOOKINGS
    # ===========================================
    op.create_table(
        'bookings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('car_id', sa.String(36), nullable=False),
        sa.Column('customer_id', sa.String(36), nullable=True),
        sa.Column('customer_name', sa.String(200), nullable=True),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('start_date', sa.Date, nullable=False),
        sa.Column('end_date', sa.Date, nullable=False),
        sa.Column('overall_status', sa.String(40), nullable=False, server_default='pending_payment'),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('contract_status', sa.String(20), nullable=False, server_default='not_sent'),
        sa.Column('total_price', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('deposit_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('payment_order_id', sa.String(100), nullable=True),
        sa.Column('payment_authorization_id', sa.String(100), nullable=True),
        sa.Column('payment_capture_id', sa.String(100), nullable=True),
        sa.Column('contract_submission_id', sa.String(100), nullable=True),
        sa.Column('contract_signed_at', sa.DateTime, nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_bookings_car_id', 'bookings', ['car_id'])
    op.create_index('ix_bookings_customer_id', 'bookings', ['customer_id'])
    op.create_index('ix_bookings_payment_order_id', 'bookings', ['payment_order_id'])
    op.create_index('ix_booking_car_dates', 'bookings', ['car_id', 'start_date', 'end_date'])
    op.create_index('ix_booking_overall_status', 'bookings', ['overall_status'])

    op.create_table(
        'disputes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36), nullable=False),
        sa.Column('provider_dispute_id', sa.String(100), nullable=True),
        sa.Column('reason', sa.Text, nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='open'),
        sa.Column('opened_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('resolved_at', sa.DateTime, nullable=True),
        sa.UniqueConstraint('booking_id', name='uq_dispute_booking'),
    )

    # ===========================================
    # 2. BOOKING EVENTS
    # ===========================================
    op.create_table(
        'booking_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('actor_type', sa.String(20), nullable=False, server_default='system'),
        sa.Column('actor_id', sa.String(100), nullable=True),
        sa.Column('details', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_booking_events_booking_created', 'booking_events', ['booking_id', 'created_at'])
    op.create_index('ix_booking_events_type', 'booking_events', ['event_type'])

    # ===========================================
    # 3. AVAILABILITY LEDGER
    # ===========================================
    op.create_table(
        'availability_days',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('car_id', sa.String(36), nullable=False),
        sa.Column('date', sa.Date, nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='available'),
        sa.Column('booking_id', sa.String(36), nullable=True),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint('car_id', 'date', name='uq_availability_car_date'),
    )
    op.create_index('ix_availability_booking', 'availability_days', ['booking_id'])

    # ===========================================
    # 4. TRANSITION INTENTS
    # ===========================================
    op.create_table(
        'transition_intents',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36), nullable=False),
        sa.Column('from_status', sa.String(40), nullable=False),
        sa.Column('to_status', sa.String(40), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('applied_at', sa.DateTime, nullable=True),
    )
    op.create_index('ix_transition_intents_status', 'transition_intents', ['status', 'created_at'])
    op.create_index('ix_transition_intents_booking', 'transition_intents', ['booking_id'])

    # ===========================================
    # 5. WEBHOOK RETRY / DEAD-LETTER
    # ===========================================
    op.create_table(
        'webhook_retries',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('webhook_type', sa.String(20), nullable=False),
        sa.Column('webhook_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=True),
        sa.Column('payload', sa.JSON, nullable=False),
        sa.Column('headers', sa.JSON, nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempt_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer, nullable=False, server_default='5'),
        sa.Column('next_retry_at', sa.DateTime, nullable=True),
        sa.Column('last_attempt_at', sa.DateTime, nullable=True),
        sa.Column('last_error', sa.Text, nullable=True),
        sa.Column('locked_at', sa.DateTime, nullable=True),
        sa.Column('booking_id', sa.String(36), nullable=True),
        sa.Column('requeued_from_id', sa.String(36), nullable=True),
        sa.Column('succeeded_at', sa.DateTime, nullable=True),
        sa.Column('failed_permanently_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_webhook_retries_type_webhook', 'webhook_retries', ['webhook_type', 'webhook_id'])
    op.create_index('ix_webhook_retries_due', 'webhook_retries', ['status', 'next_retry_at'])
    op.create_index('ix_webhook_retries_booking', 'webhook_retries', ['booking_id'])

    op.create_table(
        'webhook_dead_letters',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('retry_record_id', sa.String(36), nullable=False),
        sa.Column('webhook_type', sa.String(20), nullable=False),
        sa.Column('webhook_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=True),
        sa.Column('payload', sa.JSON, nullable=False),
        sa.Column('headers', sa.JSON, nullable=True),
        sa.Column('attempt_count', sa.Integer, nullable=False),
        sa.Column('final_error', sa.Text, nullable=True),
        sa.Column('booking_id', sa.String(36), nullable=True),
        sa.Column('failed_permanently_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('status', sa.String(20), nullable=False, server_default='dead'),
        sa.Column('requeued_at', sa.DateTime, nullable=True),
        sa.Column('requeued_by', sa.String(100), nullable=True),
        sa.Column('requeued_record_id', sa.String(36), nullable=True),
        sa.UniqueConstraint('retry_record_id', name='uq_dead_letter_retry_record'),
    )
    op.create_index('ix_dead_letters_status', 'webhook_dead_letters', ['status', 'failed_permanently_at'])

    op.create_table(
        'processed_webhook_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('webhook_type', sa.String(20), nullable=False),
        sa.Column('webhook_id', sa.String(255), nullable=False),
        sa.Column('retry_record_id', sa.String(36), nullable=True),
        sa.Column('booking_id', sa.String(36), nullable=True),
        sa.Column('processed_at', sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint('webhook_type', 'webhook_id', name='uq_processed_webhook'),
    )

    # ===========================================
    # 6. NOTIFICATION RATE COUNTERS
    # ===========================================
    op.create_table(
        'notification_rate_counters',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('sender', sa.String(255), nullable=False),
        sa.Column('window_start', sa.DateTime, nullable=False),
        sa.Column('count', sa.Integer, nullable=False, server_default='0'),
        sa.UniqueConstraint('sender', 'window_start', name='uq_rate_counter_sender_window'),
    )


def downgrade() -> None:
    op.drop_table('notification_rate_counters')
    op.drop_table('processed_webhook_events')
    op.drop_index('ix_dead_letters_status', table_name='webhook_dead_letters')
    op.drop_table('webhook_dead_letters')
    op.drop_index('ix_webhook_retries_booking', table_name='webhook_retries')
    op.drop_index('ix_webhook_retries_due', table_name='webhook_retries')
    op.drop_index('ix_webhook_retries_type_webhook', table_name='webhook_retries')
    op.drop_table('webhook_retries')
    op.drop_index('ix_transition_intents_booking', table_name='transition_intents')
    op.drop_index('ix_transition_intents_status', table_name='transition_intents')
    op.drop_table('transition_intents')
    op.drop_index('ix_availability_booking', table_name='availability_days')
    op.drop_table('availability_days')
    op.drop_index('ix_booking_events_type', table_name='booking_events')
    op.drop_index('ix_booking_events_booking_created', table_name='booking_events')
    op.drop_table('booking_events')
    op.drop_table('disputes')
    op.drop_index('ix_booking_overall_status', table_name='bookings')
    op.drop_index('ix_booking_car_dates', table_name='bookings')
    op.drop_index('ix_bookings_payment_order_id', table_name='bookings')
    op.drop_index('ix_bookings_customer_id', table_name='bookings')
    op.drop_index('ix_bookings_car_id', table_name='bookings')
    op.drop_table('bookings')
