"""Restrict leads.pipeline_stage to the known sales stages

Revision ID: e58b1c7a9d24
Revises: d41f6b2e8c03
Create Date: 2026-10-19 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = 'e58b1c7a9d24'
down_revision: Union[str, None] = 'd41f6b2e8c03'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Rows written before the check existed; a typo'd stage would otherwise block the upgrade
    op.execute(
        "UPDATE leads SET pipeline_stage = 'NEW' "
        "WHERE pipeline_stage NOT IN ('NEW', 'CONTACT', 'VISIT', 'PROPOSAL', 'DOCUMENTS', 'WON', 'LOST')"
    )
    with op.batch_alter_table('leads') as batch_op:
        batch_op.create_check_constraint(
            'ck_leads_pipeline_stage',
            "pipeline_stage IN ('NEW', 'CONTACT', 'VISIT', 'PROPOSAL', 'DOCUMENTS', 'WON', 'LOST')",
        )


def downgrade() -> None:
    with op.batch_alter_table('leads') as batch_op:
        batch_op.drop_constraint('ck_leads_pipeline_stage', type_='check')
