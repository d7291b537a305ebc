"""strava sync schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Athlete profile (owned by the wider product; the sync engine reads timezone + coach)
    op.create_table(
        'athlete',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('email', sa.Text(), nullable=True),
        sa.Column('display_name', sa.Text(), nullable=True),
        sa.Column('timezone', sa.Text(), nullable=True),
        sa.Column('coach_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.UniqueConstraint('email'),
    )
    op.create_index('ix_athlete_coach_id', 'athlete', ['coach_id'])

    op.create_table(
        'strava_connection',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('athlete_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('strava_athlete_id', sa.BigInteger(), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('scope', sa.Text(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['athlete_id'], ['athlete.id'], ),
        sa.UniqueConstraint('athlete_id'),
        sa.UniqueConstraint('strava_athlete_id'),
    )

    op.create_table(
        'strava_sync_intent',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('athlete_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('strava_activity_id', sa.Text(), nullable=True),
        sa.Column('source', sa.Text(), server_default='manual', nullable=False),
        sa.Column('status', sa.Text(), server_default='PENDING', nullable=False),
        sa.Column('attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('lease_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['athlete_id'], ['athlete.id'], ),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'DONE', 'FAILED')",
            name='ck_strava_sync_intent_status',
        ),
    )
    op.create_index('ix_strava_sync_intent_athlete_id', 'strava_sync_intent', ['athlete_id'])
    op.create_index('ix_strava_sync_intent_eligible', 'strava_sync_intent', ['status', 'next_attempt_at', 'created_at'])

    op.create_table(
        'calendar_item',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('athlete_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('coach_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('planned_start_time_local', sa.Text(), nullable=True),
        sa.Column('discipline', sa.Text(), nullable=False),
        sa.Column('subtype', sa.Text(), nullable=True),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('planned_duration_minutes', sa.Integer(), nullable=True),
        sa.Column('planned_distance_km', sa.Float(), nullable=True),
        sa.Column('distance_meters', sa.Float(), nullable=True),
        sa.Column('status', sa.Text(), server_default='PLANNED', nullable=False),
        sa.Column('planning_status', sa.Text(), server_default='PLANNED', nullable=False),
        sa.Column('origin', sa.Text(), nullable=True),
        sa.Column('source_activity_id', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['athlete_id'], ['athlete.id'], ),
        sa.UniqueConstraint('athlete_id', 'origin', 'source_activity_id', name='uq_calendar_item_athlete_origin_source'),
        sa.CheckConstraint(
            "status IN ('PLANNED', 'MODIFIED', 'COMPLETED_SYNCED_DRAFT', 'COMPLETED_SYNCED', 'COMPLETED_MANUAL', 'SKIPPED')",
            name='ck_calendar_item_status',
        ),
    )
    op.create_index('ix_calendar_item_athlete_discipline_date', 'calendar_item', ['athlete_id', 'discipline', 'date'])

    op.create_table(
        'completed_activity',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('athlete_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('source', sa.Text(), server_default='STRAVA', nullable=False),
        sa.Column('external_provider', sa.Text(), nullable=True),
        sa.Column('external_activity_id', sa.Text(), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False),
        sa.Column('distance_km', sa.Float(), nullable=True),
        sa.Column('metrics_json', postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('calendar_item_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('match_day_diff', sa.Integer(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('pain_flag', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['athlete_id'], ['athlete.id'], ),
        sa.ForeignKeyConstraint(['calendar_item_id'], ['calendar_item.id'], ),
        sa.UniqueConstraint('calendar_item_id'),
        sa.UniqueConstraint('athlete_id', 'source', 'external_activity_id', name='uq_completed_activity_athlete_source_external'),
    )
    op.create_index('ix_completed_activity_athlete_id', 'completed_activity', ['athlete_id'])


def downgrade() -> None:
    op.drop_index('ix_completed_activity_athlete_id', table_name='completed_activity')
    op.drop_table('completed_activity')
    op.drop_index('ix_calendar_item_athlete_discipline_date', table_name='calendar_item')
    op.drop_table('calendar_item')
    op.drop_index('ix_strava_sync_intent_eligible', table_name='strava_sync_intent')
    op.drop_index('ix_strava_sync_intent_athlete_id', table_name='strava_sync_intent')
    op.drop_table('strava_sync_intent')
    op.drop_table('strava_connection')
    op.drop_index('ix_athlete_coach_id', table_name='athlete')
    op.drop_table('athlete')
