"""unique target alias

Existing duplicate aliases are renamed ``<alias>-<id>`` (every row but the
oldest holder) before the index becomes unique.

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-18 10:40:00
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op

revision: str = "0002"
down_revision: Union[str, None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute(
        """
        UPDATE targets
        SET alias = alias || '-' || CAST(id AS VARCHAR(20))
        WHERE EXISTS (
            SELECT 1 FROM targets AS holder
            WHERE holder.alias = targets.alias AND holder.id < targets.id
        )
        """
    )
    op.drop_index("ix_targets_alias", table_name="targets")
    op.create_index("ix_targets_alias", "targets", ["alias"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_targets_alias", table_name="targets")
    op.create_index("ix_targets_alias", "targets", ["alias"])
