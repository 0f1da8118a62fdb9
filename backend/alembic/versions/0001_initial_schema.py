"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-09-28 09:12:00
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "discovery_nodes",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=1024), nullable=False),
        sa.Column("node_type", sa.String(length=64), nullable=False),
        sa.Column("labels", sa.JSON(), nullable=False),
        sa.Column("leaf", sa.Boolean(), nullable=False),
        sa.Column("parent_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["parent_id"], ["discovery_nodes.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_discovery_nodes_name", "discovery_nodes", ["name"])
    op.create_index("ix_discovery_nodes_node_type", "discovery_nodes", ["node_type"])
    op.create_index("ix_discovery_nodes_parent_id", "discovery_nodes", ["parent_id"])

    op.create_table(
        "targets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("connect_url", sa.String(length=2048), nullable=False),
        sa.Column("alias", sa.String(length=1024), nullable=False),
        sa.Column("jvm_id", sa.String(length=255), nullable=True),
        sa.Column("labels", sa.JSON(), nullable=False),
        sa.Column("annotations", sa.JSON(), nullable=False),
        sa.Column("discovery_node_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["discovery_node_id"], ["discovery_nodes.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("discovery_node_id"),
    )
    op.create_index("ix_targets_connect_url", "targets", ["connect_url"], unique=True)
    op.create_index("ix_targets_alias", "targets", ["alias"])
    op.create_index("ix_targets_jvm_id", "targets", ["jvm_id"])

    op.create_table(
        "discovery_plugins",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("realm_id", sa.Integer(), nullable=False),
        sa.Column("callback", sa.String(length=2048), nullable=True),
        sa.Column("credential_username", sa.String(length=255), nullable=True),
        sa.Column("credential_password", sa.String(length=255), nullable=True),
        sa.Column("builtin", sa.Boolean(), nullable=False),
        sa.Column("registered_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["realm_id"], ["discovery_nodes.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("realm_id"),
        sa.UniqueConstraint("callback"),
    )


def downgrade() -> None:
    op.drop_table("discovery_plugins")
    op.drop_index("ix_targets_jvm_id", table_name="targets")
    op.drop_index("ix_targets_alias", table_name="targets")
    op.drop_index("ix_targets_connect_url", table_name="targets")
    op.drop_table("targets")
    op.drop_index("ix_discovery_nodes_parent_id", table_name="discovery_nodes")
    op.drop_index("ix_discovery_nodes_node_type", table_name="discovery_nodes")
    op.drop_index("ix_discovery_nodes_name", table_name="discovery_nodes")
    op.drop_table("discovery_nodes")
