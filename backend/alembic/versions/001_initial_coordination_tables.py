"""Initial coordination tables

Revision ID: 001_initial_coordination
Revises:
Create Date: 2026-10-19

Creates:
- pipelines, pipeline_ports, port_dependencies
- resource_locks
- feedback_loops
- escalations
- direct_messages

Enum columns are stored as plain strings (non-native enums), so the same
migration runs on SQLite and PostgreSQL.
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial_coordination'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ==========================================================================
    # Execution Plans
    # ==========================================================================
    op.create_table(
        'pipelines',
        sa.Column('id', sa.String(100), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('session_id', sa.String(100), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='pending'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_pipelines_status', 'pipelines', ['status'])

    op.create_table(
        'pipeline_ports',
        sa.Column(
            'pipeline_id',
            sa.String(100),
            sa.ForeignKey('pipelines.id', ondelete='CASCADE'),
            primary_key=True,
        ),
        sa.Column('port_id', sa.String(100), primary_key=True),
        sa.Column('group_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(32), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_pipeline_ports_port_id', 'pipeline_ports', ['port_id'])

    op.create_table(
        'port_dependencies',
        sa.Column('port_id', sa.String(100), primary_key=True),
        sa.Column('depends_on', sa.String(100), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_port_dependencies_depends_on', 'port_dependencies', ['depends_on'])

    # ==========================================================================
    # Resource Locks
    # ==========================================================================
    # The primary key on resource is what makes acquire a single atomic insert
    op.create_table(
        'resource_locks',
        sa.Column('resource', sa.String(500), primary_key=True),
        sa.Column('holder_id', sa.String(100), nullable=False),
        sa.Column('acquired_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_resource_locks_holder_id', 'resource_locks', ['holder_id'])

    # ==========================================================================
    # Feedback Loops
    # ==========================================================================
    op.create_table(
        'feedback_loops',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('channel_id', sa.String(100), nullable=False),
        sa.Column('implementer_id', sa.String(100), nullable=False),
        sa.Column('verifier_id', sa.String(100), nullable=False),
        sa.Column('port_id', sa.String(100), nullable=True),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('current_retry', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(32), nullable=False, server_default='running'),
        sa.Column('last_feedback_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_feedback_loops_channel_id', 'feedback_loops', ['channel_id'])
    op.create_index('ix_feedback_loops_port_id', 'feedback_loops', ['port_id'])
    op.create_index('ix_feedback_loops_status', 'feedback_loops', ['status'])

    # ==========================================================================
    # Escalations
    # ==========================================================================
    op.create_table(
        'escalations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('from_session', sa.String(100), nullable=True),
        sa.Column('to_session', sa.String(100), nullable=True),
        sa.Column('from_port', sa.String(100), nullable=True),
        sa.Column('type', sa.String(32), nullable=False),
        sa.Column('severity', sa.String(32), nullable=False),
        sa.Column('issue', sa.Text(), nullable=False),
        sa.Column('suggestion', sa.Text(), nullable=True),
        sa.Column('context', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='open'),
        sa.Column('resolution', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_escalations_from_session', 'escalations', ['from_session'])
    op.create_index('ix_escalations_type', 'escalations', ['type'])
    op.create_index('ix_escalations_status', 'escalations', ['status'])

    # ==========================================================================
    # Direct Messages
    # ==========================================================================
    op.create_table(
        'direct_messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('channel_id', sa.String(100), nullable=False),
        sa.Column('from_session', sa.String(100), nullable=False),
        sa.Column('to_session', sa.String(100), nullable=False),
        sa.Column('type', sa.String(32), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_direct_messages_channel_id', 'direct_messages', ['channel_id'])
    op.create_index('ix_direct_messages_to_session', 'direct_messages', ['to_session'])


def downgrade() -> None:
    op.drop_table('direct_messages')
    op.drop_table('escalations')
    op.drop_table('feedback_loops')
    op.drop_table('resource_locks')
    op.drop_table('port_dependencies')
    op.drop_table('pipeline_ports')
    op.drop_table('pipelines')
