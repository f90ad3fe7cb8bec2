"""Initial schema: users, playbooks, skills, mcp_servers, memories, canvas, api_keys.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import ARRAY

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def _playbook_fk() -> sa.Column:
    return sa.Column(
        "playbook_id",
        sa.String(36),
        sa.ForeignKey("playbooks.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String, unique=True, nullable=False),
        sa.Column("display_name", sa.String, nullable=False, server_default=""),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "idx_users_display_name",
        "users",
        ["display_name"],
        unique=True,
        postgresql_where=sa.text("display_name != ''"),
    )

    op.create_table(
        "playbooks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("guid", sa.String(16), unique=True, nullable=False),
        sa.Column("name", sa.String, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("visibility", sa.String, nullable=False, server_default="private"),
        sa.Column("config", sa.JSON, nullable=False, server_default="{}"),
        sa.Column("tags", ARRAY(sa.String), nullable=False, server_default="{}"),
        sa.Column("persona_name", sa.String, nullable=True),
        sa.Column("persona_system_prompt", sa.Text, nullable=True),
        sa.Column("persona_metadata", sa.JSON, nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("idx_playbooks_user", "playbooks", ["user_id"])
    op.create_index("idx_playbooks_visibility", "playbooks", ["visibility"])

    op.create_table(
        "skills",
        sa.Column("id", sa.String(36), primary_key=True),
        _playbook_fk(),
        sa.Column("name", sa.String, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("definition", sa.JSON, nullable=False, server_default="{}"),
        sa.Column("examples", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("content", sa.Text, nullable=True),
        sa.Column("licence", sa.String, nullable=True),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("idx_skills_playbook", "skills", ["playbook_id"])

    op.create_table(
        "mcp_servers",
        sa.Column("id", sa.String(36), primary_key=True),
        _playbook_fk(),
        sa.Column("name", sa.String, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("tools", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("resources", sa.JSON, nullable=False, server_default="[]"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("idx_mcp_servers_playbook", "mcp_servers", ["playbook_id"])

    op.create_table(
        "memories",
        sa.Column("id", sa.String(36), primary_key=True),
        _playbook_fk(),
        sa.Column("key", sa.String, nullable=False),
        sa.Column("value", sa.JSON, nullable=True),
        sa.Column("tags", ARRAY(sa.String), nullable=False, server_default="{}"),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("tier", sa.String, nullable=False, server_default="working_memory"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="50"),
        sa.Column("parent_key", sa.String, nullable=True),
        sa.Column("summary", sa.Text, nullable=True),
        sa.Column("memory_type", sa.String, nullable=False, server_default="fact"),
        sa.Column("status", sa.String, nullable=False, server_default="active"),
        sa.Column("metadata", sa.JSON, nullable=False, server_default="{}"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("playbook_id", "key", name="uq_memories_playbook_key"),
    )
    op.create_index(
        "idx_memories_updated",
        "memories",
        ["playbook_id", sa.text("updated_at DESC")],
    )

    op.create_table(
        "canvas",
        sa.Column("id", sa.String(36), primary_key=True),
        _playbook_fk(),
        sa.Column("slug", sa.String, nullable=False),
        sa.Column("name", sa.String, nullable=False),
        sa.Column("content", sa.Text, nullable=False, server_default=""),
        sa.Column("sections", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("metadata", sa.JSON, nullable=False, server_default="{}"),
        sa.Column("sort_order", sa.Integer, nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("playbook_id", "slug", name="uq_canvas_playbook_slug"),
    )

    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(36), primary_key=True),
        _playbook_fk(),
        sa.Column("key_hash", sa.String(64), unique=True, nullable=False),
        sa.Column("key_prefix", sa.String, nullable=False),
        sa.Column("name", sa.String, nullable=True),
        sa.Column("permissions", ARRAY(sa.String), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _timestamp("created_at"),
    )
    op.create_index("idx_api_keys_playbook", "api_keys", ["playbook_id"])


def downgrade() -> None:
    op.drop_table("api_keys")
    op.drop_table("canvas")
    op.drop_table("memories")
    op.drop_table("mcp_servers")
    op.drop_table("skills")
    op.drop_table("playbooks")
    op.drop_index("idx_users_display_name", table_name="users")
    op.drop_table("users")
