"""Lead distribution schema: leads, realtors, teams, properties, score store, audit log, events

Revision ID: d41f6b2e8c03
Revises:
Create Date: 2026-10-12 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'd41f6b2e8c03'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table('realtors',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=True),
        sa.Column('email', sa.Text(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='ACTIVE'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table('teams',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=True),
        sa.Column('owner_id', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table('team_members',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('team_id', sa.Text(), nullable=False),
        sa.Column('realtor_id', sa.Text(), nullable=False),
        sa.Column('role', sa.Text(), nullable=False, server_default='REALTOR'),
        sa.Column('joined_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['team_id'], ['teams.id']),
        sa.ForeignKeyConstraint(['realtor_id'], ['realtors.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('team_id', 'realtor_id', name='uq_team_member'),
    )
    op.create_index('ix_team_members_team_id', 'team_members', ['team_id'])
    op.create_index('ix_team_members_realtor_id', 'team_members', ['realtor_id'])

    op.create_table('properties',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('team_id', sa.Text(), nullable=True),
        sa.Column('capturer_realtor_id', sa.Text(), nullable=True),
        sa.Column('owner_realtor_id', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table('leads',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('property_id', sa.Text(), nullable=False),
        sa.Column('contact_id', sa.Text(), nullable=True),
        sa.Column('team_id', sa.Text(), nullable=True),
        sa.Column('pipeline_stage', sa.Text(), nullable=False, server_default='NEW'),
        sa.Column('status', sa.Text(), nullable=False, server_default='UNASSIGNED'),
        sa.Column('responded_at', sa.DateTime(), nullable=True),
        sa.Column('reserved_realtor_id', sa.Text(), nullable=True),
        sa.Column('reserved_at', sa.DateTime(), nullable=True),
        sa.Column('reserved_until', sa.DateTime(), nullable=True),
        sa.Column('rejected_realtor_ids', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('assigned_realtor_id', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('candidate_ranking', sa.JSON(), nullable=True),
        sa.Column('ranked_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('terminal_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_leads_status_reserved_until', 'leads', ['status', 'reserved_until'])
    op.create_index('ix_leads_reserved_realtor_id', 'leads', ['reserved_realtor_id'])

    op.create_table('realtor_scores',
        sa.Column('realtor_id', sa.Text(), nullable=False),
        sa.Column('avg_rating', sa.Float(), nullable=True),
        sa.Column('total_ratings', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('points', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('leads_accepted', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('leads_rejected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('leads_expired', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_response_minutes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('avg_response_minutes', sa.Float(), nullable=True),
        sa.Column('last_assigned_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('realtor_id'),
    )

    op.create_table('score_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('realtor_id', sa.Text(), nullable=False),
        sa.Column('action', sa.Text(), nullable=False),
        sa.Column('points', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_score_history_realtor_id', 'score_history', ['realtor_id'])

    op.create_table('lead_assignment_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('lead_id', sa.Text(), nullable=False),
        sa.Column('from_realtor_id', sa.Text(), nullable=True),
        sa.Column('to_realtor_id', sa.Text(), nullable=False),
        sa.Column('changed_by_user_id', sa.Text(), nullable=True),
        sa.Column('team_id', sa.Text(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['lead_id'], ['leads.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_lead_assignment_logs_lead_id', 'lead_assignment_logs', ['lead_id'])

    op.create_table('lead_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('lead_id', sa.Text(), nullable=False),
        sa.Column('type', sa.Text(), nullable=False),
        sa.Column('from_status', sa.Text(), nullable=True),
        sa.Column('to_status', sa.Text(), nullable=False),
        sa.Column('realtor_id', sa.Text(), nullable=True),
        sa.Column('actor_id', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_lead_events_lead_id', 'lead_events', ['lead_id'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_lead_events_lead_id', 'lead_events')
    op.drop_table('lead_events')
    op.drop_index('ix_lead_assignment_logs_lead_id', 'lead_assignment_logs')
    op.drop_table('lead_assignment_logs')
    op.drop_index('ix_score_history_realtor_id', 'score_history')
    op.drop_table('score_history')
    op.drop_table('realtor_scores')
    op.drop_index('ix_leads_reserved_realtor_id', 'leads')
    op.drop_index('ix_leads_status_reserved_until', 'leads')
    op.drop_table('leads')
    op.drop_table('properties')
    op.drop_index('ix_team_members_realtor_id', 'team_members')
    op.drop_index('ix_team_members_team_id', 'team_members')
    op.drop_table('team_members')
    op.drop_table('teams')
    op.drop_table('realtors')
