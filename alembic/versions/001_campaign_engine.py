"""Create campaign execution and delivery tracking tables

Revision ID: 001_campaign_engine
Revises:
Create Date: 2026-10-19

Note: Using IF NOT EXISTS pattern to make migration idempotent.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import text

# revision identifiers, used by Alembic.
revision = '001_campaign_engine'
down_revision = None
branch_labels = None
depends_on = None


def table_exists(conn, table_name):
    """Check if a table exists in the database."""
    result = conn.execute(text(
        "SELECT EXISTS (SELECT FROM information_schema.tables WHERE table_name = :table_name)"
    ), {"table_name": table_name})
    return result.scalar()


def upgrade():
    """Create campaigns, campaign_progress, message_logs, delivery_events, subscribers."""
    conn = op.get_bind()

    if not table_exists(conn, 'campaigns'):
        op.create_table(
            'campaigns',
            sa.Column('id', sa.Integer, primary_key=True),
            sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
            sa.Column('name', sa.String(255), nullable=False),
            sa.Column('subject', sa.String(500), nullable=True),
            sa.Column('body', sa.Text, nullable=False, server_default=''),
            sa.Column('channel', sa.String(20), nullable=False, server_default='email'),
            sa.Column('status', sa.String(20), nullable=False, server_default='draft', index=True),
            sa.Column('total_recipients', sa.Integer, nullable=False, server_default='0'),
            sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('sent_count', sa.Integer, nullable=False, server_default='0'),
            sa.Column('delivered_count', sa.Integer, nullable=False, server_default='0'),
            sa.Column('opened_count', sa.Integer, nullable=False, server_default='0'),
            sa.Column('clicked_count', sa.Integer, nullable=False, server_default='0'),
            sa.Column('bounced_count', sa.Integer, nullable=False, server_default='0'),
            sa.Column('complained_count', sa.Integer, nullable=False, server_default='0'),
            sa.Column('unsubscribed_count', sa.Integer, nullable=False, server_default='0'),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), onupdate=sa.func.now()),
        )
        print("Created campaigns table")
    else:
        print("campaigns table already exists, skipping")

    if not table_exists(conn, 'campaign_progress'):
        op.create_table(
            'campaign_progress',
            sa.Column('id', sa.Integer, primary_key=True),
            sa.Column('campaign_id', sa.Integer, nullable=False, unique=True, index=True),
            sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
            sa.Column('status', sa.String(20), nullable=False, server_default='scheduled', index=True),
            sa.Column('total_recipients', sa.Integer, nullable=False, server_default='0'),
            sa.Column('emails_sent', sa.Integer, nullable=False, server_default='0'),
            sa.Column('emails_success', sa.Integer, nullable=False, server_default='0'),
            sa.Column('emails_failed', sa.Integer, nullable=False, server_default='0'),
            sa.Column('emails_in_progress', sa.Integer, nullable=False, server_default='0'),
            sa.Column('current_batch_number', sa.Integer, nullable=False, server_default='0'),
            sa.Column('total_batches', sa.Integer, nullable=False, server_default='0'),
            sa.Column('batch_size', sa.Integer, nullable=False, server_default='50'),
            sa.Column('rate_limit_per_minute', sa.Integer, nullable=False, server_default='100'),
            sa.Column('scheduled_time', sa.DateTime(timezone=True), nullable=True, index=True),
            sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('paused_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('last_batch_sent_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('error_message', sa.Text, nullable=True),
            sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        )
        print("Created campaign_progress table")
    else:
        print("campaign_progress table already exists, skipping")

    if not table_exists(conn, 'message_logs'):
        op.create_table(
            'message_logs',
            sa.Column('id', sa.Integer, primary_key=True),
            sa.Column('campaign_id', sa.Integer, nullable=False, index=True),
            sa.Column('batch_number', sa.Integer, nullable=False, server_default='0'),
            sa.Column('recipient', sa.String(255), nullable=False, index=True),
            sa.Column('channel', sa.String(20), nullable=False, server_default='email'),
            sa.Column('status', sa.String(20), nullable=False, server_default='pending', index=True),
            sa.Column('retry_count', sa.Integer, nullable=False, server_default='0'),
            sa.Column('max_retries', sa.Integer, nullable=False, server_default='3'),
            sa.Column('error_message', sa.Text, nullable=True),
            sa.Column('provider_message_id', sa.String(255), nullable=True),
            sa.Column('processing_time_ms', sa.Integer, nullable=True),
            sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('timestamp', sa.DateTime(timezone=True), nullable=True),
        )
        print("Created message_logs table")
    else:
        print("message_logs table already exists, skipping")

    if not table_exists(conn, 'delivery_events'):
        op.create_table(
            'delivery_events',
            sa.Column('id', sa.Integer, primary_key=True),
            sa.Column('campaign_id', sa.Integer, nullable=True, index=True),
            sa.Column('source_event_id', sa.Integer, nullable=True, index=True),
            sa.Column('email', sa.String(255), nullable=False, index=True),
            sa.Column('event_type', sa.String(20), nullable=False, index=True),
            sa.Column('event_data', sa.JSON, nullable=True),
            sa.Column('ip_address', sa.String(64), nullable=True),
            sa.Column('user_agent', sa.Text, nullable=True),
            sa.Column('processed', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(), index=True),
        )
        print("Created delivery_events table")
    else:
        print("delivery_events table already exists, skipping")

    if not table_exists(conn, 'subscribers'):
        op.create_table(
            'subscribers',
            sa.Column('id', sa.Integer, primary_key=True),
            sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
            sa.Column('email', sa.String(255), nullable=True, index=True),
            sa.Column('phone', sa.String(32), nullable=True),
            sa.Column('name', sa.String(255), nullable=True),
            sa.Column('status', sa.String(20), nullable=False, server_default='active', index=True),
            sa.Column('reputation_score', sa.Integer, nullable=False, server_default='100'),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), onupdate=sa.func.now()),
        )
        print("Created subscribers table")
    else:
        print("subscribers table already exists, skipping")


def downgrade():
    """Drop campaign engine tables."""
    op.drop_table('subscribers')
    op.drop_table('delivery_events')
    op.drop_table('message_logs')
    op.drop_table('campaign_progress')
    op.drop_table('campaigns')
