"""create job queue and scan tables

Revision ID: a1f3c9d27e10
Revises:
Create Date: 2026-10-18 12:00:00.000000

Hey future me - this is the whole persistence model of the worker!

job_queue:
- One row per job. state: queued, running, succeeded, failed, cancelled
- run_after / leased_until are EPOCH SECONDS (integers), lease math is plain arithmetic
- lease_owner + leased_until = the lease. Expired lease on a running row = crashed worker,
  the job is leasable again
- cancel_requested is advisory, running handlers poll it

scan_runs:
- User-facing mirror of a scan.directory job (1:1 via job_id), counters + timestamps
- Dies with its job (ON DELETE CASCADE) when cleanup_old_jobs prunes the queue

scan_files:
- Discovered audio files, UNIQUE (scan_id, path) so batch flushes can UPSERT

INDEXES:
- ix_job_queue_type_state_run_after: "oldest leasable job of type X" (the lease query)
- ix_job_queue_state_run_after: queue length checks and stats
- ix_job_queue_lease_owner: "what does worker W hold"
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'a1f3c9d27e10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # === Job Queue ===
    op.create_table(
        'job_queue',
        sa.Column('job_id', sa.String(36), primary_key=True),
        sa.Column('job_type', sa.String(50), nullable=False),
        sa.Column('payload', sa.Text, nullable=False),
        sa.Column('state', sa.String(20), nullable=False, server_default='queued'),
        sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer, nullable=False, server_default='3'),
        sa.Column('run_after', sa.Integer, nullable=False),
        sa.Column('leased_until', sa.Integer, nullable=True),
        sa.Column('lease_owner', sa.String(100), nullable=True),
        sa.Column('cancel_requested', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('progress', sa.Text, nullable=True),
        sa.Column('result', sa.Text, nullable=True),
        sa.Column('last_error', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        'ix_job_queue_type_state_run_after',
        'job_queue',
        ['job_type', 'state', 'run_after'],
    )
    op.create_index('ix_job_queue_state_run_after', 'job_queue', ['state', 'run_after'])
    op.create_index('ix_job_queue_lease_owner', 'job_queue', ['lease_owner'])

    # === Scan Runs ===
    op.create_table(
        'scan_runs',
        sa.Column('scan_id', sa.String(36), primary_key=True),
        sa.Column(
            'job_id',
            sa.String(36),
            sa.ForeignKey('job_queue.job_id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('user_id', sa.String(100), nullable=False),
        sa.Column('root_path', sa.Text, nullable=False),
        sa.Column('state', sa.String(20), nullable=False, server_default='queued'),
        sa.Column('files_discovered', sa.Integer, nullable=False, server_default='0'),
        sa.Column('files_persisted', sa.Integer, nullable=False, server_default='0'),
        sa.Column('batches_flushed', sa.Integer, nullable=False, server_default='0'),
        sa.Column('errors', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text, nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_scan_runs_job_id', 'scan_runs', ['job_id'])
    op.create_index('ix_scan_runs_user_state', 'scan_runs', ['user_id', 'state'])

    # === Scan Files ===
    op.create_table(
        'scan_files',
        sa.Column('scan_file_id', sa.String(36), primary_key=True),
        sa.Column(
            'scan_id',
            sa.String(36),
            sa.ForeignKey('scan_runs.scan_id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('path', sa.Text, nullable=False),
        sa.Column('size_bytes', sa.BigInteger, nullable=True),
        sa.Column('mtime_ms', sa.BigInteger, nullable=True),
        sa.Column('extension', sa.String(16), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('scan_id', 'path', name='uq_scan_files_scan_id_path'),
    )
    op.create_index('ix_scan_files_scan_id', 'scan_files', ['scan_id'])


def downgrade() -> None:
    op.drop_index('ix_scan_files_scan_id', table_name='scan_files')
    op.drop_table('scan_files')

    op.drop_index('ix_scan_runs_user_state', table_name='scan_runs')
    op.drop_index('ix_scan_runs_job_id', table_name='scan_runs')
    op.drop_table('scan_runs')

    op.drop_index('ix_job_queue_lease_owner', table_name='job_queue')
    op.drop_index('ix_job_queue_state_run_after', table_name='job_queue')
    op.drop_index('ix_job_queue_type_state_run_after', table_name='job_queue')
    op.drop_table('job_queue')
