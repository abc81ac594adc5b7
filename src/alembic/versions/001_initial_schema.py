"""Initial control-plane schema.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

Tables:
- managed_instances (domain unique among non-deleted rows)
- instance_infrastructure (1:1 by instance_id)
- worker_id_registry (seeded at startup, not here)
- provisioning_events (append-only audit)
- instance_health (1:1 by instance_id)
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'managed_instances',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column('owner_id', sa.BigInteger(), nullable=False),
        sa.Column('domain', sa.String(255), nullable=False),
        sa.Column('display_name', sa.String(255), nullable=False),
        sa.Column('tier', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('worker_id', sa.Integer(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('provisioning_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_managed_instances_owner_id', 'managed_instances', ['owner_id'])
    op.create_index('ix_managed_instances_deleted_at', 'managed_instances', ['deleted_at'])
    # A destroyed instance frees its domain
    op.create_index(
        'uq_managed_instances_domain_live',
        'managed_instances',
        ['domain'],
        unique=True,
        postgresql_where=sa.text('deleted_at IS NULL'),
    )
    op.create_index(
        'idx_managed_instances_status',
        'managed_instances',
        ['status'],
        postgresql_where=sa.text('deleted_at IS NULL'),
    )

    op.create_table(
        'instance_infrastructure',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column(
            'instance_id',
            sa.BigInteger(),
            sa.ForeignKey('managed_instances.id'),
            nullable=False,
            unique=True,
        ),
        sa.Column('network_id', sa.String(), nullable=True),
        sa.Column('container_id', sa.String(), nullable=True),
        sa.Column('database_name', sa.String(), nullable=True),
        sa.Column('database_password_encrypted', sa.Text(), nullable=True),
        sa.Column('storage_bucket', sa.String(), nullable=True),
        sa.Column('storage_access_key', sa.String(), nullable=True),
        sa.Column('storage_secret_key_encrypted', sa.Text(), nullable=True),
        sa.Column('wrapped_dek', sa.Text(), nullable=True),
        sa.Column('bootstrap_token_hash', sa.String(), nullable=True),
        sa.Column('dns_record_id', sa.String(), nullable=True),
        sa.Column('proxy_route_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'worker_id_registry',
        sa.Column('worker_id', sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column('assigned_instance_id', sa.BigInteger(), nullable=True),
        sa.Column('is_tombstoned', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('allocated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('released_at', sa.DateTime(timezone=True), nullable=True),
    )
    # At most one live id per instance
    op.create_index(
        'uq_worker_id_registry_live_instance',
        'worker_id_registry',
        ['assigned_instance_id'],
        unique=True,
        postgresql_where=sa.text('assigned_instance_id IS NOT NULL AND NOT is_tombstoned'),
    )
    op.create_index(
        'idx_worker_id_registry_free',
        'worker_id_registry',
        ['worker_id'],
        postgresql_where=sa.text('assigned_instance_id IS NULL AND NOT is_tombstoned'),
    )

    op.create_table(
        'provisioning_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('instance_id', sa.BigInteger(), nullable=False),
        sa.Column('phase', sa.String(), nullable=False),
        sa.Column('step_name', sa.String(64), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_provisioning_events_instance_id', 'provisioning_events', ['instance_id'])

    op.create_table(
        'instance_health',
        sa.Column('instance_id', sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column('is_healthy', sa.Boolean(), nullable=False),
        sa.Column('consecutive_failures', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_check_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('response_time_ms', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('instance_health')
    op.drop_index('ix_provisioning_events_instance_id', table_name='provisioning_events')
    op.drop_table('provisioning_events')
    op.drop_index('idx_worker_id_registry_free', table_name='worker_id_registry')
    op.drop_index('uq_worker_id_registry_live_instance', table_name='worker_id_registry')
    op.drop_table('worker_id_registry')
    op.drop_table('instance_infrastructure')
    op.drop_index('idx_managed_instances_status', table_name='managed_instances')
    op.drop_index('uq_managed_instances_domain_live', table_name='managed_instances')
    op.drop_index('ix_managed_instances_deleted_at', table_name='managed_instances')
    op.drop_index('ix_managed_instances_owner_id', table_name='managed_instances')
    op.drop_table('managed_instances')
