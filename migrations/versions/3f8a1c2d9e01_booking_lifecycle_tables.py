"""booking lifecycle tables

Revision ID: 3f8a1c2d9e01
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f8a1c2d9e01'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=True),
        sa.Column('action', sa.String(length=80), nullable=False),
        sa.Column('entity', sa.String(length=80), nullable=True),
        sa.Column('entity_id', sa.String(length=80), nullable=True),
        sa.Column('ip', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.String(length=255), nullable=True),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'session_types',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('builder_id', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=120), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('duration_minutes', sa.Integer(), nullable=False),
        sa.Column('price', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('external_event_type_ref', sa.String(length=255), nullable=True),
        sa.Column('scheduling_url', sa.String(length=255), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('session_types', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_session_types_builder_id'), ['builder_id'], unique=False)

    op.create_table(
        'bookings',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('builder_id', sa.String(length=64), nullable=False),
        sa.Column('client_id', sa.String(length=64), nullable=True),
        sa.Column('client_email', sa.String(length=255), nullable=True),
        sa.Column('client_timezone', sa.String(length=64), nullable=True),
        sa.Column('session_type_id', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('current_state', sa.String(length=40), nullable=False),
        sa.Column('payment_status', sa.String(length=20), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('external_event_ref', sa.String(length=255), nullable=True),
        sa.Column('external_payment_ref', sa.String(length=255), nullable=True),
        sa.Column('payment_intent_ref', sa.String(length=255), nullable=True),
        sa.Column('correlation_token', sa.String(length=64), nullable=False),
        sa.Column('payment_attempts', sa.Integer(), nullable=False),
        sa.Column('refunded_amount', sa.Integer(), nullable=False),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        sa.Column('cancelled_by', sa.String(length=40), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('state_data', sa.JSON(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('last_transition', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['session_type_id'], ['session_types.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('bookings', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_bookings_builder_id'), ['builder_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_bookings_client_id'), ['client_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_bookings_session_type_id'), ['session_type_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_bookings_start_time'), ['start_time'], unique=False)
        batch_op.create_index(batch_op.f('ix_bookings_current_state'), ['current_state'], unique=False)
        batch_op.create_index(batch_op.f('ix_bookings_external_event_ref'), ['external_event_ref'], unique=False)
        batch_op.create_index(batch_op.f('ix_bookings_external_payment_ref'), ['external_payment_ref'], unique=False)
        batch_op.create_index(batch_op.f('ix_bookings_correlation_token'), ['correlation_token'], unique=True)

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('booking_id', sa.String(length=32), nullable=False),
        sa.Column('attempt', sa.Integer(), nullable=False),
        sa.Column('purpose', sa.String(length=20), nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('refunded_amount', sa.Integer(), nullable=False),
        sa.Column('stripe_session_id', sa.String(length=255), nullable=True),
        sa.Column('payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('payments', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payments_booking_id'), ['booking_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payments_stripe_session_id'), ['stripe_session_id'], unique=True)

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=80), nullable=False),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'event_id', name='uq_webhook_event_once')
    )
    with op.batch_alter_table('webhook_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_webhook_events_received_at'), ['received_at'], unique=False)

    op.create_table(
        'buffered_webhooks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('correlation_token', sa.String(length=64), nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=80), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('buffered_webhooks', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_buffered_webhooks_correlation_token'), ['correlation_token'], unique=False)
        batch_op.create_index(batch_op.f('ix_buffered_webhooks_expires_at'), ['expires_at'], unique=False)


def downgrade():
    with op.batch_alter_table('buffered_webhooks', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_buffered_webhooks_expires_at'))
        batch_op.drop_index(batch_op.f('ix_buffered_webhooks_correlation_token'))
    op.drop_table('buffered_webhooks')

    with op.batch_alter_table('webhook_events', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_webhook_events_received_at'))
    op.drop_table('webhook_events')

    with op.batch_alter_table('payments', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_payments_stripe_session_id'))
        batch_op.drop_index(batch_op.f('ix_payments_booking_id'))
    op.drop_table('payments')

    with op.batch_alter_table('bookings', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_bookings_correlation_token'))
        batch_op.drop_index(batch_op.f('ix_bookings_external_payment_ref'))
        batch_op.drop_index(batch_op.f('ix_bookings_external_event_ref'))
        batch_op.drop_index(batch_op.f('ix_bookings_current_state'))
        batch_op.drop_index(batch_op.f('ix_bookings_start_time'))
        batch_op.drop_index(batch_op.f('ix_bookings_session_type_id'))
        batch_op.drop_index(batch_op.f('ix_bookings_client_id'))
        batch_op.drop_index(batch_op.f('ix_bookings_builder_id'))
    op.drop_table('bookings')

    with op.batch_alter_table('session_types', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_session_types_builder_id'))
    op.drop_table('session_types')

    op.drop_table('audit_logs')
