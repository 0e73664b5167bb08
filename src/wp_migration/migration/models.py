"""
SQLAlchemy models for the local content store.

This module defines the schema the engine writes into: entities (posts,
pages, ...), taxonomy terms, users, binary attachments, their metadata,
the identity links that make imports idempotent, and a small key-value
options table for engine-owned state (sealed credentials, run counter).
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Entity(Base):
    """A content entry (post, page, custom kind)."""

    __tablename__ = "entities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="publish")
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    slug: Mapped[str] = mapped_column(String(200), nullable=False, default="", index=True)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    excerpt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    author_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    parent_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    featured_attachment_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("attachments.id", ondelete="SET NULL"),
        nullable=True,
        comment="Featured resource (thumbnail)",
    )
    created_at: Mapped[str] = mapped_column(String(19), nullable=False, default="")
    created_at_gmt: Mapped[str] = mapped_column(String(19), nullable=False, default="")
    modified_at: Mapped[str] = mapped_column(String(19), nullable=False, default="")
    modified_at_gmt: Mapped[str] = mapped_column(String(19), nullable=False, default="")
    run_id: Mapped[int | None] = mapped_column(
        Integer, nullable=True, index=True, comment="Import run that last touched this entity"
    )
    imported_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class EntityMeta(Base):
    """Key/value metadata of an entity."""

    __tablename__ = "entity_meta"
    __table_args__ = (UniqueConstraint("entity_id", "key", name="uq_entity_meta_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("entities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)


class Term(Base):
    """A taxonomy term; slug is unique within its taxonomy."""

    __tablename__ = "terms"
    __table_args__ = (UniqueConstraint("taxonomy", "slug", name="uq_term_taxonomy_slug"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    taxonomy: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    parent_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("terms.id", ondelete="SET NULL"), nullable=True
    )


class TermMeta(Base):
    """Key/value metadata of a term."""

    __tablename__ = "term_meta"
    __table_args__ = (UniqueConstraint("term_id", "key", name="uq_term_meta_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    term_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("terms.id", ondelete="CASCADE"), nullable=False, index=True
    )
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)


class EntityTerm(Base):
    """Assignment of a term to an entity."""

    __tablename__ = "entity_terms"

    entity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("entities.id", ondelete="CASCADE"), primary_key=True
    )
    term_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("terms.id", ondelete="CASCADE"), primary_key=True
    )
    taxonomy: Mapped[str] = mapped_column(String(32), nullable=False, index=True)


class User(Base):
    """A local user account."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    login: Mapped[str] = mapped_column(String(60), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(100), nullable=False, default="", index=True)
    nicename: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    url: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    display_name: Mapped[str] = mapped_column(String(250), nullable=False, default="")
    registered_at: Mapped[str] = mapped_column(String(19), nullable=False, default="")
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    activation_key: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class UserMeta(Base):
    """Key/value metadata of a user."""

    __tablename__ = "user_meta"
    __table_args__ = (UniqueConstraint("user_id", "key", name="uq_user_meta_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)


class Attachment(Base):
    """A binary resource registered locally; one row per logical path."""

    __tablename__ = "attachments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    logical_path: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
        unique=True,
        comment="Tenant-normalized path relative to the uploads root",
    )
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    source_url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    file_path: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[str] = mapped_column(String(19), nullable=False, default="")
    parent_entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sizes: Mapped[Any] = mapped_column(
        JSON, nullable=True, comment="Derived-size manifest (responsive image variants)"
    )
    run_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)


class IdentityLink(Base):
    """
    Durable (source_id, source_tenant, entity_kind) -> local_id correspondence.

    At most one local id per source identity. Links are never deleted by
    the engine; a link whose local row is gone is pointed at its replacement.
    """

    __tablename__ = "identity_links"
    __table_args__ = (
        UniqueConstraint(
            "source_id", "source_tenant", "entity_kind", name="uq_identity_source"
        ),
        Index("idx_identity_local", "entity_kind", "local_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    source_tenant: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_kind: Mapped[str] = mapped_column(
        String(20), nullable=False, comment="entry, term, user or attachment"
    )
    local_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    run_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<IdentityLink(kind={self.entity_kind}, source={self.source_id}@{self.source_tenant}, "
            f"local={self.local_id})>"
        )


class Option(Base):
    """Engine-owned key-value state."""

    __tablename__ = "options"

    name: Mapped[str] = mapped_column(String(191), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False, default="")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
