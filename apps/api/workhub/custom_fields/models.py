from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from workhub.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CustomFieldDefinition(Base):
    __tablename__ = "custom_field_definition"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    scope: Mapped[str] = mapped_column(String(16), nullable=False)
    project_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    workspace_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    api_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    field_type: Mapped[str] = mapped_column(String(32), nullable=False)
    contexts: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    option_set: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    formula: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    # rollup and mirror payloads share one column, told apart by field_type
    rollup_config: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    validation_rules: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_private: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        Index("ix_custom_field_definition_scope", "scope", "project_id", "workspace_id"),
    )


class CustomFieldValue(Base):
    __tablename__ = "custom_field_value"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    field_id: Mapped[str] = mapped_column(String(64), nullable=False)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    computed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("entity_id", "field_id", name="uq_custom_field_value_entity_field"),
        Index("ix_custom_field_value_field", "field_id"),
    )


class CustomFieldRelationship(Base):
    __tablename__ = "custom_field_relationship"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    relationship_name: Mapped[str] = mapped_column(String(128), nullable=False)
    related_entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "entity_id",
            "relationship_name",
            "related_entity_id",
            name="uq_custom_field_relationship_member",
        ),
        Index("ix_custom_field_relationship_related", "related_entity_id"),
    )


class CustomFieldRelationshipChange(Base):
    __tablename__ = "custom_field_relationship_change"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    relationship_name: Mapped[str] = mapped_column(String(128), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("entity_id", "relationship_name", name="uq_custom_field_relationship_change"),
    )


class CustomFieldUsageSummary(Base):
    __tablename__ = "custom_field_usage_summary"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    scope_key: Mapped[str] = mapped_column(String(160), nullable=False)
    field_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    field_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    screens: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    automations: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    reports: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_custom_field_usage_summary_scope", "scope_key"),
    )
