"""create_records_table

Revision ID: 3f9a2c71d4e0
Revises:
Create Date: 2026-10-19 09:30:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f9a2c71d4e0'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "records",
        sa.Column("key", sa.String(255), primary_key=True),
        sa.Column("prefix", sa.String(100), nullable=False),
        sa.Column("value", sa.JSON(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_records_prefix", "records", ["prefix"])


def downgrade() -> None:
    op.drop_index("idx_records_prefix", table_name="records")
    op.drop_table("records")
