"""add url_analysis_cache table

Revision ID: d4e5f6a7b8c9
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'd4e5f6a7b8c9'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'url_analysis_cache',
        sa.Column('url_hash', sa.String(length=64), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('data', sa.JSON().with_variant(postgresql.JSONB(), 'postgresql'), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('url_hash'),
    )
    op.create_index(op.f('ix_url_analysis_cache_expires_at'), 'url_analysis_cache', ['expires_at'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_url_analysis_cache_expires_at'), table_name='url_analysis_cache')
    op.drop_table('url_analysis_cache')
