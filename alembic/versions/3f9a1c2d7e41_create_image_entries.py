"""create_image_entries

Revision ID: 3f9a1c2d7e41
Revises:
Create Date: 2026-10-19 10:12:03.118204

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a1c2d7e41"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create image_entries table (one row per source image, attempts in the document)."""
    op.create_table(
        "image_entries",
        sa.Column("image_id", sa.String(length=64), primary_key=True),
        sa.Column("account_id", sa.String(length=64), nullable=True),
        sa.Column("completeness_lock", sa.Boolean(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("document", sa.JSON(), nullable=False),
    )
    # Per-account listing and oldest-first eviction
    op.create_index("ix_image_entries_account_id", "image_entries", ["account_id"])
    op.create_index("ix_image_entries_updated_at", "image_entries", ["updated_at"])


def downgrade() -> None:
    """Drop image_entries table."""
    op.drop_index("ix_image_entries_updated_at", table_name="image_entries")
    op.drop_index("ix_image_entries_account_id", table_name="image_entries")
    op.drop_table("image_entries")
