"""Add campaign_first_engagements for once-per-recipient open/click counting

Revision ID: 002_first_engagements
Revises: 001_campaign_engine
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import text

# revision identifiers, used by Alembic.
revision = '002_first_engagements'
down_revision = '001_campaign_engine'
branch_labels = None
depends_on = None


def upgrade():
    """Create campaign_first_engagements and backfill it from stored opens/clicks."""
    conn = op.get_bind()

    exists = conn.execute(text(
        "SELECT EXISTS (SELECT FROM information_schema.tables WHERE table_name = 'campaign_first_engagements')"
    )).scalar()
    if exists:
        print("campaign_first_engagements table already exists, skipping")
        return

    op.create_table(
        'campaign_first_engagements',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('campaign_id', sa.Integer, nullable=False, index=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('campaign_id', 'email', 'event_type', name='uq_first_engagement'),
    )
    conn.execute(text(
        "INSERT INTO campaign_first_engagements (campaign_id, email, event_type, created_at) "
        "SELECT campaign_id, email, event_type, MIN(created_at) FROM delivery_events "
        "WHERE campaign_id IS NOT NULL AND event_type IN ('opened', 'clicked') "
        "GROUP BY campaign_id, email, event_type"
    ))
    print("Created campaign_first_engagements table")


def downgrade():
    """Drop campaign_first_engagements."""
    op.drop_table('campaign_first_engagements')
