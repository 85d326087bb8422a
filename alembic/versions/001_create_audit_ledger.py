"""Create audit chain, merge history, archive metadata and verification tables.

Revision ID: 001
Revises:
Create Date: 2025-10-15
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'audit_events',
        sa.Column('sequence', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(length=36), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('actor', sa.String(length=100), nullable=False),
        sa.Column('action', sa.String(length=100), nullable=False),
        sa.Column('entity_type', sa.String(length=100), nullable=True),
        sa.Column('entity_id', sa.String(length=100), nullable=True),
        sa.Column('correlation_id', sa.String(length=100), nullable=True),
        sa.Column('event_data', sa.Text(), nullable=True),
        sa.Column('previous_hash', sa.String(length=64), nullable=True),
        sa.Column('current_hash', sa.String(length=64), nullable=True),
        sa.Column('original_hash', sa.String(length=64), nullable=True),
        sa.Column('is_offline', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('offline_device_id', sa.String(length=100), nullable=True),
        sa.Column('offline_session_id', sa.String(length=100), nullable=True),
        sa.Column('offline_merge_id', sa.String(length=36), nullable=True),
        sa.Column('integrity_status', sa.String(length=20), nullable=False),
        sa.Column('last_verified_at', sa.DateTime(), nullable=True),
        sa.Column('is_archived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('archived_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('sequence'),
        sa.UniqueConstraint('event_id'),
    )
    op.create_index('ix_audit_events_timestamp', 'audit_events', ['timestamp'])
    op.create_index('ix_audit_events_correlation_id', 'audit_events', ['correlation_id'])
    op.create_index('ix_audit_events_offline_merge_id', 'audit_events', ['offline_merge_id'])
    op.create_index('ix_audit_events_chain_order', 'audit_events', ['timestamp', 'sequence'])

    op.create_table(
        'offline_merge_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('merge_id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=100), nullable=False),
        sa.Column('device_id', sa.String(length=100), nullable=False),
        sa.Column('offline_session_id', sa.String(length=100), nullable=False),
        sa.Column('events_received', sa.Integer(), nullable=False),
        sa.Column('events_merged', sa.Integer(), nullable=False),
        sa.Column('duplicates_skipped', sa.Integer(), nullable=False),
        sa.Column('conflicts_detected', sa.Integer(), nullable=False),
        sa.Column('events_rehashed', sa.Integer(), nullable=False),
        sa.Column('merge_duration_ms', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('error_details', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_offline_merge_history_id', 'offline_merge_history', ['id'])
    op.create_index('ix_offline_merge_history_merge_id', 'offline_merge_history', ['merge_id'], unique=True)
    op.create_index('ix_offline_merge_history_created_at', 'offline_merge_history', ['created_at'])

    op.create_table(
        'audit_archive_metadata',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('archive_id', sa.String(length=36), nullable=False),
        sa.Column('file_name', sa.String(length=255), nullable=False),
        sa.Column('object_key', sa.String(length=500), nullable=False),
        sa.Column('export_date', sa.Date(), nullable=False),
        sa.Column('exported_at', sa.DateTime(), nullable=False),
        sa.Column('event_date_start', sa.DateTime(), nullable=False),
        sa.Column('event_date_end', sa.DateTime(), nullable=False),
        sa.Column('event_count', sa.Integer(), nullable=False),
        sa.Column('file_size', sa.BigInteger(), nullable=False),
        sa.Column('uncompressed_size', sa.BigInteger(), nullable=False),
        sa.Column('compression_ratio', sa.Float(), nullable=False),
        sa.Column('chain_start_hash', sa.String(length=64), nullable=True),
        sa.Column('chain_end_hash', sa.String(length=64), nullable=True),
        sa.Column('chain_link_hash', sa.String(length=64), nullable=True),
        sa.Column('retention_expiry_date', sa.DateTime(), nullable=False),
        sa.Column('storage_location', sa.String(length=50), nullable=False),
        sa.Column('replication_status', sa.String(length=20), nullable=True),
        sa.Column('last_replication_check_at', sa.DateTime(), nullable=True),
        sa.Column('last_accessed_at', sa.DateTime(), nullable=True),
        sa.Column('last_accessed_by', sa.String(length=100), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_archive_metadata_id', 'audit_archive_metadata', ['id'])
    op.create_index('ix_audit_archive_metadata_archive_id', 'audit_archive_metadata', ['archive_id'], unique=True)
    op.create_index('ix_audit_archive_metadata_export_date', 'audit_archive_metadata', ['export_date'], unique=True)
    op.create_index(
        'ix_audit_archive_metadata_replication',
        'audit_archive_metadata',
        ['replication_status'],
    )

    op.create_table(
        'audit_chain_verifications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('verification_id', sa.String(length=36), nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('range_start', sa.DateTime(), nullable=True),
        sa.Column('range_end', sa.DateTime(), nullable=True),
        sa.Column('events_verified', sa.Integer(), nullable=False),
        sa.Column('chain_status', sa.String(length=20), nullable=False),
        sa.Column('broken_event_id', sa.String(length=36), nullable=True),
        sa.Column('broken_event_timestamp', sa.DateTime(), nullable=True),
        sa.Column('broken_position', sa.Integer(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('initiated_by', sa.String(length=100), nullable=False),
        sa.Column('duration_ms', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_chain_verifications_id', 'audit_chain_verifications', ['id'])
    op.create_index(
        'ix_audit_chain_verifications_verification_id',
        'audit_chain_verifications',
        ['verification_id'],
        unique=True,
    )
    op.create_index('ix_audit_chain_verifications_start_time', 'audit_chain_verifications', ['start_time'])


def downgrade() -> None:
    op.drop_index('ix_audit_chain_verifications_start_time', table_name='audit_chain_verifications')
    op.drop_index('ix_audit_chain_verifications_verification_id', table_name='audit_chain_verifications')
    op.drop_index('ix_audit_chain_verifications_id', table_name='audit_chain_verifications')
    op.drop_table('audit_chain_verifications')

    op.drop_index('ix_audit_archive_metadata_replication', table_name='audit_archive_metadata')
    op.drop_index('ix_audit_archive_metadata_export_date', table_name='audit_archive_metadata')
    op.drop_index('ix_audit_archive_metadata_archive_id', table_name='audit_archive_metadata')
    op.drop_index('ix_audit_archive_metadata_id', table_name='audit_archive_metadata')
    op.drop_table('audit_archive_metadata')

    op.drop_index('ix_offline_merge_history_created_at', table_name='offline_merge_history')
    op.drop_index('ix_offline_merge_history_merge_id', table_name='offline_merge_history')
    op.drop_index('ix_offline_merge_history_id', table_name='offline_merge_history')
    op.drop_table('offline_merge_history')

    op.drop_index('ix_audit_events_chain_order', table_name='audit_events')
    op.drop_index('ix_audit_events_offline_merge_id', table_name='audit_events')
    op.drop_index('ix_audit_events_correlation_id', table_name='audit_events')
    op.drop_index('ix_audit_events_timestamp', table_name='audit_events')
    op.drop_table('audit_events')
