"""Create recurring event tables

Revision ID: 001_create_event_tables
Revises:
Create Date: 2024-01-01

Creates the recurrence engine schema:
- event_series: recurring or single event definitions (rule text, anchor,
  wall-clock times, revision counter, integrity hold, split lineage)
- event_instance_overrides: per-date exceptions and cancellations
- event_rsvps: per-occurrence attendance for members and guests
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '001_create_event_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """
    Create event_series, event_instance_overrides and event_rsvps.

    Overrides and RSVPs are keyed by (series_id, instance_date) and are
    deleted with their series.
    """

    op.create_table(
        'event_series',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('uuid', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('chapter_id', sa.Integer(), nullable=True),
        sa.Column('audience', sa.String(length=20), nullable=False, server_default='chapter'),
        sa.Column('group_id', sa.Integer(), nullable=True),
        sa.Column('visibility', sa.String(length=20), nullable=False, server_default='public'),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('location_name', sa.String(length=255), nullable=True),
        sa.Column('location_address', sa.String(length=500), nullable=True),
        sa.Column('is_virtual', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('virtual_link', sa.String(length=500), nullable=True),
        sa.Column('max_attendees', sa.Integer(), nullable=True),
        sa.Column('rsvp_deadline', sa.DateTime(), nullable=True),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('start_time', sa.Time(), nullable=True),
        sa.Column('end_time', sa.Time(), nullable=True),
        sa.Column('timezone', sa.String(length=64), nullable=False, server_default='America/New_York'),
        sa.Column('is_all_day', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('rule', sa.String(length=255), nullable=True),
        sa.Column('series_until', sa.Date(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='published'),
        sa.Column('split_from_id', sa.Integer(), nullable=True),
        sa.Column('revision', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('integrity_hold', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_by_member_id', sa.Integer(), nullable=True),
        sa.Column('updated_by_member_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['split_from_id'], ['event_series.id'], ondelete='SET NULL'),
        sa.CheckConstraint(
            'series_until IS NULL OR series_until >= start_date',
            name='ck_event_series_until_after_start'
        ),
    )
    op.create_index('ix_event_series_uuid', 'event_series', ['uuid'], unique=True)
    op.create_index('ix_event_series_chapter_id', 'event_series', ['chapter_id'])
    op.create_index('ix_event_series_start_date', 'event_series', ['start_date'])
    op.create_index('ix_event_series_series_until', 'event_series', ['series_until'])
    op.create_index('ix_event_series_split_from_id', 'event_series', ['split_from_id'])
    op.create_index('idx_event_series_chapter_start', 'event_series', ['chapter_id', 'start_date'])

    op.create_table(
        'event_instance_overrides',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('series_id', sa.Integer(), nullable=False),
        sa.Column('instance_date', sa.Date(), nullable=False),
        sa.Column('cancelled', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('location_name', sa.String(length=255), nullable=True),
        sa.Column('location_address', sa.String(length=500), nullable=True),
        sa.Column('is_virtual', sa.Boolean(), nullable=True),
        sa.Column('virtual_link', sa.String(length=500), nullable=True),
        sa.Column('start_time', sa.Time(), nullable=True),
        sa.Column('end_time', sa.Time(), nullable=True),
        sa.Column('max_attendees', sa.Integer(), nullable=True),
        sa.Column('rsvp_deadline', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['series_id'], ['event_series.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('series_id', 'instance_date', name='uq_override_series_date'),
    )
    op.create_index('ix_event_instance_overrides_series_id', 'event_instance_overrides', ['series_id'])

    op.create_table(
        'event_rsvps',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('uuid', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('series_id', sa.Integer(), nullable=False),
        sa.Column('instance_date', sa.Date(), nullable=False),
        sa.Column('member_id', sa.Integer(), nullable=True),
        sa.Column('guest_email', sa.String(length=255), nullable=True),
        sa.Column('guest_name', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('guest_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['series_id'], ['event_series.id'], ondelete='CASCADE'),
        sa.CheckConstraint(
            '(member_id IS NULL) <> (guest_email IS NULL)',
            name='ck_rsvp_single_identity'
        ),
        sa.CheckConstraint('guest_count >= 0', name='ck_rsvp_guest_count'),
        sa.UniqueConstraint('series_id', 'instance_date', 'member_id', name='uq_rsvp_member'),
        sa.UniqueConstraint('series_id', 'instance_date', 'guest_email', name='uq_rsvp_guest'),
    )
    op.create_index('ix_event_rsvps_uuid', 'event_rsvps', ['uuid'], unique=True)
    op.create_index('ix_event_rsvps_series_id', 'event_rsvps', ['series_id'])
    op.create_index(
        'idx_rsvp_series_date_status',
        'event_rsvps',
        ['series_id', 'instance_date', 'status']
    )


def downgrade() -> None:
    """Drop the event tables (RSVPs and overrides first)."""
    op.drop_index('idx_rsvp_series_date_status', table_name='event_rsvps')
    op.drop_index('ix_event_rsvps_series_id', table_name='event_rsvps')
    op.drop_index('ix_event_rsvps_uuid', table_name='event_rsvps')
    op.drop_table('event_rsvps')

    op.drop_index('ix_event_instance_overrides_series_id', table_name='event_instance_overrides')
    op.drop_table('event_instance_overrides')

    op.drop_index('idx_event_series_chapter_start', table_name='event_series')
    op.drop_index('ix_event_series_split_from_id', table_name='event_series')
    op.drop_index('ix_event_series_series_until', table_name='event_series')
    op.drop_index('ix_event_series_start_date', table_name='event_series')
    op.drop_index('ix_event_series_chapter_id', table_name='event_series')
    op.drop_index('ix_event_series_uuid', table_name='event_series')
    op.drop_table('event_series')
