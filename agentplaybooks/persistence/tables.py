"""SQLAlchemy Core table definitions.

Single source of truth for the database schema. Used by Alembic for
migrations and by PostgresRepository for queries.
"""

import uuid

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY

metadata = sa.MetaData()


def _uuid() -> str:
    return str(uuid.uuid4())


def _id_column() -> sa.Column:
    return sa.Column("id", sa.String(36), primary_key=True, default=_uuid)


def _playbook_fk() -> sa.Column:
    return sa.Column(
        "playbook_id",
        sa.String(36),
        sa.ForeignKey("playbooks.id", ondelete="CASCADE"),
        nullable=False,
    )


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


users = sa.Table(
    "users",
    metadata,
    _id_column(),
    sa.Column("email", sa.String, unique=True, nullable=False),
    sa.Column("display_name", sa.String, nullable=False, server_default=""),
    _timestamp("created_at"),
    _timestamp("updated_at"),
)

sa.Index(
    "idx_users_display_name",
    users.c.display_name,
    unique=True,
    postgresql_where=users.c.display_name != "",
)

playbooks = sa.Table(
    "playbooks",
    metadata,
    _id_column(),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("guid", sa.String(16), unique=True, nullable=False),
    sa.Column("name", sa.String, nullable=False),
    sa.Column("description", sa.Text, nullable=True),
    sa.Column("visibility", sa.String, nullable=False, server_default="private"),
    sa.Column("config", sa.JSON, nullable=False, server_default="{}"),
    sa.Column("tags", ARRAY(sa.String), nullable=False, server_default="{}"),
    # One persona per playbook
    sa.Column("persona_name", sa.String, nullable=True),
    sa.Column("persona_system_prompt", sa.Text, nullable=True),
    sa.Column("persona_metadata", sa.JSON, nullable=True),
    _timestamp("created_at"),
    _timestamp("updated_at"),
)

sa.Index("idx_playbooks_user", playbooks.c.user_id)
sa.Index("idx_playbooks_visibility", playbooks.c.visibility)

skills = sa.Table(
    "skills",
    metadata,
    _id_column(),
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

sa.Index("idx_skills_playbook", skills.c.playbook_id)

mcp_servers = sa.Table(
    "mcp_servers",
    metadata,
    _id_column(),
    _playbook_fk(),
    sa.Column("name", sa.String, nullable=False),
    sa.Column("description", sa.Text, nullable=True),
    sa.Column("tools", sa.JSON, nullable=False, server_default="[]"),
    sa.Column("resources", sa.JSON, nullable=False, server_default="[]"),
    _timestamp("created_at"),
    _timestamp("updated_at"),
)

sa.Index("idx_mcp_servers_playbook", mcp_servers.c.playbook_id)

memories = sa.Table(
    "memories",
    metadata,
    _id_column(),
    _playbook_fk(),
    sa.Column("key", sa.String, nullable=False),
    sa.Column("value", sa.JSON(none_as_null=True), nullable=True),
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

sa.Index("idx_memories_updated", memories.c.playbook_id, memories.c.updated_at.desc())

canvas = sa.Table(
    "canvas",
    metadata,
    _id_column(),
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

api_keys = sa.Table(
    "api_keys",
    metadata,
    _id_column(),
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

sa.Index("idx_api_keys_playbook", api_keys.c.playbook_id)

user_api_keys = sa.Table(
    "user_api_keys",
    metadata,
    _id_column(),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("key_hash", sa.String(64), unique=True, nullable=False),
    sa.Column("key_prefix", sa.String, nullable=False),
    sa.Column("name", sa.String, nullable=True),
    sa.Column("permissions", ARRAY(sa.String), nullable=False),
    sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
    _timestamp("created_at"),
)

sa.Index("idx_user_api_keys_user", user_api_keys.c.user_id)
