"""Create sync orchestrator tables: jobs, ETL ledger, connections, snapshots, synced records

Revision ID: a1c3e5f7b9d2
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers
revision: str = 'a1c3e5f7b9d2'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(table_name):
    bind = op.get_bind()
    insp = inspect(bind)
    return table_name in insp.get_table_names()


def upgrade() -> None:
    # ── sync_jobs ──
    if not _has_table('sync_jobs'):
        op.create_table(
            'sync_jobs',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('platform', sa.String(20), nullable=False, index=True),
            sa.Column('job_type', sa.String(40), nullable=False, index=True),
            sa.Column('entity', sa.String(40), nullable=True),
            sa.Column('brand_id', sa.String(), nullable=False, index=True),
            sa.Column('connection_id', sa.String(), nullable=False, index=True),
            sa.Column('run_id', sa.String(32), nullable=True, index=True),
            sa.Column('chunk_number', sa.Integer(), nullable=True),
            sa.Column('total_chunks', sa.Integer(), nullable=True),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('status', sa.String(20), nullable=False, server_default='waiting', index=True),
            sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('deferrals', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('available_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
            sa.Column('started_at', sa.DateTime(), nullable=True),
            sa.Column('finished_at', sa.DateTime(), nullable=True, index=True),
            sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        )
        op.create_index('ix_sync_jobs_dequeue', 'sync_jobs', ['platform', 'status', 'priority', 'id'])

    # ── etl_jobs (ledger) ──
    if not _has_table('etl_jobs'):
        op.create_table(
            'etl_jobs',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('brand_id', sa.String(), nullable=False, index=True),
            sa.Column('connection_id', sa.String(), nullable=False, index=True),
            sa.Column('entity', sa.String(40), nullable=False),
            sa.Column('job_type', sa.String(60), nullable=False),
            sa.Column('run_id', sa.String(32), nullable=True),
            sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
            sa.Column('progress_pct', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('rows_written', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('total_rows', sa.Integer(), nullable=True),
            sa.Column('chunks_completed', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('started_at', sa.DateTime(), nullable=True),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), index=True),
            sa.UniqueConstraint('brand_id', 'connection_id', 'entity', 'job_type', name='uq_etl_jobs_key'),
        )

    if not _has_table('etl_job_chunks'):
        op.create_table(
            'etl_job_chunks',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('etl_job_id', sa.Integer(), sa.ForeignKey('etl_jobs.id'), nullable=False, index=True),
            sa.Column('chunk_number', sa.Integer(), nullable=False),
            sa.Column('rows_written', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('completed_at', sa.DateTime(), server_default=sa.func.now()),
            sa.UniqueConstraint('etl_job_id', 'chunk_number', name='uq_etl_job_chunks_chunk'),
        )

    # ── platform_connections ──
    if not _has_table('platform_connections'):
        op.create_table(
            'platform_connections',
            sa.Column('id', sa.String(), primary_key=True),
            sa.Column('brand_id', sa.String(), nullable=False, index=True),
            sa.Column('platform_type', sa.String(20), nullable=False, index=True),
            sa.Column('credentials', sa.JSON(), nullable=False),
            sa.Column('account_created_at', sa.DateTime(), nullable=True),
            sa.Column('status', sa.String(20), nullable=False, server_default='active', index=True),
            sa.Column('sync_status', sa.String(20), nullable=False, server_default='idle'),
            sa.Column('last_synced_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        )

    # ── upstream_snapshots ──
    if not _has_table('upstream_snapshots'):
        op.create_table(
            'upstream_snapshots',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('snapshot_key', sa.String(), nullable=False, unique=True, index=True),
            sa.Column('records', sa.JSON(), nullable=False),
            sa.Column('row_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('fetched_at', sa.DateTime(), nullable=False),
        )

    # ── synced_records (natural key deliberately not unique) ──
    if not _has_table('synced_records'):
        op.create_table(
            'synced_records',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('brand_id', sa.String(), nullable=False),
            sa.Column('platform', sa.String(20), nullable=False),
            sa.Column('entity', sa.String(40), nullable=False),
            sa.Column('natural_key', sa.String(), nullable=False),
            sa.Column('record_date', sa.Date(), nullable=True, index=True),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('content_hash', sa.String(64), nullable=False),
            sa.Column('ingested_at', sa.DateTime(), server_default=sa.func.now()),
        )
        op.create_index(
            'ix_synced_records_key', 'synced_records',
            ['brand_id', 'platform', 'entity', 'natural_key'],
        )

    # ── brand_aggregates ──
    if not _has_table('brand_aggregates'):
        op.create_table(
            'brand_aggregates',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('brand_id', sa.String(), nullable=False, index=True),
            sa.Column('platform', sa.String(20), nullable=False),
            sa.Column('entity', sa.String(40), nullable=False),
            sa.Column('record_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('value_total', sa.Float(), nullable=True),
            sa.Column('first_record_date', sa.Date(), nullable=True),
            sa.Column('last_record_date', sa.Date(), nullable=True),
            sa.Column('computed_at', sa.DateTime(), nullable=False),
            sa.UniqueConstraint('brand_id', 'platform', 'entity', name='uq_brand_aggregates_key'),
        )


def downgrade() -> None:
    for table in ('brand_aggregates', 'synced_records', 'upstream_snapshots',
                  'platform_connections', 'etl_job_chunks', 'etl_jobs', 'sync_jobs'):
        if _has_table(table):
            op.drop_table(table)
