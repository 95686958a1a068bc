"""create custom field tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "custom_field_definition",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("scope", sa.String(length=16), nullable=False),
        sa.Column("project_id", sa.String(length=64), nullable=True),
        sa.Column("workspace_id", sa.String(length=64), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("api_name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("field_type", sa.String(length=32), nullable=False),
        sa.Column("contexts", sa.JSON(), nullable=False),
        sa.Column("option_set", sa.JSON(), nullable=True),
        sa.Column("formula", sa.JSON(), nullable=True),
        sa.Column("rollup_config", sa.JSON(), nullable=True),
        sa.Column("validation_rules", sa.JSON(), nullable=False),
        sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_private", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_custom_field_definition_scope",
        "custom_field_definition",
        ["scope", "project_id", "workspace_id"],
        unique=False,
    )

    op.create_table(
        "custom_field_value",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("field_id", sa.String(length=64), nullable=False),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity_id", "field_id", name="uq_custom_field_value_entity_field"),
    )
    op.create_index("ix_custom_field_value_field", "custom_field_value", ["field_id"], unique=False)

    op.create_table(
        "custom_field_relationship",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("relationship_name", sa.String(length=128), nullable=False),
        sa.Column("related_entity_id", sa.String(length=64), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "entity_id",
            "relationship_name",
            "related_entity_id",
            name="uq_custom_field_relationship_member",
        ),
    )
    op.create_index(
        "ix_custom_field_relationship_related",
        "custom_field_relationship",
        ["related_entity_id"],
        unique=False,
    )

    op.create_table(
        "custom_field_relationship_change",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("relationship_name", sa.String(length=128), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity_id", "relationship_name", name="uq_custom_field_relationship_change"),
    )

    op.create_table(
        "custom_field_usage_summary",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("scope_key", sa.String(length=160), nullable=False),
        sa.Column("field_id", sa.String(length=64), nullable=True),
        sa.Column("field_name", sa.Text(), nullable=True),
        sa.Column("screens", sa.JSON(), nullable=False),
        sa.Column("automations", sa.JSON(), nullable=False),
        sa.Column("reports", sa.JSON(), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_custom_field_usage_summary_scope",
        "custom_field_usage_summary",
        ["scope_key"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_custom_field_usage_summary_scope", table_name="custom_field_usage_summary")
    op.drop_table("custom_field_usage_summary")
    op.drop_table("custom_field_relationship_change")
    op.drop_index("ix_custom_field_relationship_related", table_name="custom_field_relationship")
    op.drop_table("custom_field_relationship")
    op.drop_index("ix_custom_field_value_field", table_name="custom_field_value")
    op.drop_table("custom_field_value")
    op.drop_index("ix_custom_field_definition_scope", table_name="custom_field_definition")
    op.drop_table("custom_field_definition")
