"""Create YouTube ingestion tables (credentials, jobs, report file ledger, daily metrics)

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 09:00:00.000000

WHAT:
    Creates the ingestion schema:
    - user_credentials: encrypted Google OAuth credential per user
    - youtube_jobs: reporting jobs registered by users
    - youtube_report_files: ingestion ledger, unique per (user, job, report)
    - youtube_daily_metrics: parsed metric rows owned by a ledger entry

WHY:
    The ledger's unique constraint is the target of the atomic claim
    (INSERT ... ON CONFLICT ON (user_id, job_id, report_id) DO UPDATE).
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261018_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Enums
    # =========================================================================
    job_status = postgresql.ENUM('active', 'inactive', name='jobstatusenum', create_type=False)
    report_file_status = postgresql.ENUM('pending', 'parsed', 'error', name='reportfilestatusenum', create_type=False)
    job_status.create(op.get_bind(), checkfirst=True)
    report_file_status.create(op.get_bind(), checkfirst=True)

    # =========================================================================
    # STEP 2: user_credentials
    # =========================================================================
    op.create_table(
        'user_credentials',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('provider', sa.String(), nullable=False, server_default='google'),
        sa.Column('access_token_enc', sa.String(), nullable=True),
        sa.Column('refresh_token_enc', sa.String(), nullable=True),
        sa.Column('expires_at_ms', sa.BigInteger(), nullable=True),
        sa.Column('scopes', sa.String(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_user_credentials_user_id', 'user_credentials', ['user_id'], unique=True)

    # =========================================================================
    # STEP 3: youtube_jobs
    # =========================================================================
    op.create_table(
        'youtube_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('job_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('report_type_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('create_time', sa.String(), nullable=True),
        sa.Column('status', job_status, nullable=False, server_default='active'),
        sa.Column('last_refreshed', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_youtube_jobs_job_id', 'youtube_jobs', ['job_id'], unique=True)
    op.create_index('ix_youtube_jobs_user_id', 'youtube_jobs', ['user_id'])

    # =========================================================================
    # STEP 4: youtube_report_files (ingestion ledger)
    # =========================================================================
    op.create_table(
        'youtube_report_files',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('job_id', sa.String(), nullable=False),
        sa.Column('report_id', sa.String(), nullable=False),
        sa.Column('start_time', sa.String(), nullable=True),
        sa.Column('end_time', sa.String(), nullable=True),
        sa.Column('file_checksum', sa.String(64), nullable=True),
        sa.Column('download_url', sa.Text(), nullable=True),
        sa.Column('status', report_file_status, nullable=False, server_default='pending'),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'job_id', 'report_id', name='uq_report_files_user_job_report'),
    )

    # =========================================================================
    # STEP 5: youtube_daily_metrics
    # =========================================================================
    op.create_table(
        'youtube_daily_metrics',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'report_file_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('youtube_report_files.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('job_id', sa.String(), nullable=False),
        sa.Column('report_date', sa.String(10), nullable=False),
        sa.Column('channel_id', sa.String(), nullable=False),
        sa.Column('video_id', sa.String(), nullable=True),
        sa.Column('views', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('watch_time_minutes', sa.Float(), nullable=False, server_default='0'),
        sa.Column('estimated_revenue', sa.Numeric(14, 6), nullable=True),
        sa.Column('subscribers_gained', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('subscribers_lost', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('metric_payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_youtube_daily_metrics_report_file_id', 'youtube_daily_metrics', ['report_file_id'])
    op.create_index(
        'ix_daily_metrics_user_job_date',
        'youtube_daily_metrics',
        ['user_id', 'job_id', 'report_date'],
    )


def downgrade() -> None:
    op.drop_index('ix_daily_metrics_user_job_date', table_name='youtube_daily_metrics')
    op.drop_index('ix_youtube_daily_metrics_report_file_id', table_name='youtube_daily_metrics')
    op.drop_table('youtube_daily_metrics')
    op.drop_table('youtube_report_files')
    op.drop_index('ix_youtube_jobs_user_id', table_name='youtube_jobs')
    op.drop_index('ix_youtube_jobs_job_id', table_name='youtube_jobs')
    op.drop_table('youtube_jobs')
    op.drop_index('ix_user_credentials_user_id', table_name='user_credentials')
    op.drop_table('user_credentials')
    op.execute("DROP TYPE IF EXISTS reportfilestatusenum")
    op.execute("DROP TYPE IF EXISTS jobstatusenum")
