"""
Local content store.

The engine only talks to the local side through the ``ContentStore``
protocol. ``SqlContentStore`` implements it on top of the SQLAlchemy models;
every method is its own transaction so a crash mid-run leaves each row either
fully written or untouched.
"""

import threading
from typing import Any, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from wp_migration.client.exceptions import StateError
from wp_migration.migration.database import session_scope
from wp_migration.migration.models import (
    Attachment,
    Entity,
    EntityMeta,
    EntityTerm,
    IdentityLink,
    Option,
    Term,
    TermMeta,
    User,
    UserMeta,
)
from wp_migration.utils.logging import get_logger

logger = get_logger(__name__)

ENTITY_FIELDS = frozenset(
    {
        "kind",
        "status",
        "title",
        "slug",
        "body",
        "excerpt",
        "author_id",
        "parent_id",
        "featured_attachment_id",
        "created_at",
        "created_at_gmt",
        "modified_at",
        "modified_at_gmt",
        "run_id",
    }
)
TERM_FIELDS = frozenset({"taxonomy", "name", "slug", "description", "parent_id"})
USER_FIELDS = frozenset(
    {
        "login",
        "email",
        "nicename",
        "url",
        "display_name",
        "registered_at",
        "password_hash",
        "activation_key",
        "status",
    }
)
ATTACHMENT_FIELDS = frozenset(
    {
        "logical_path",
        "title",
        "mime_type",
        "source_url",
        "file_path",
        "created_at",
        "parent_entity_id",
        "sizes",
        "run_id",
    }
)


class ContentStore(Protocol):
    """Operations the engine needs from the local content store."""

    # Entities
    def create_entity(self, fields: dict[str, Any]) -> int: ...

    def update_entity(self, entity_id: int, fields: dict[str, Any]) -> None: ...

    def get_entity(self, entity_id: int) -> dict[str, Any] | None: ...

    def delete_entity(self, entity_id: int) -> None: ...

    def set_entity_meta(self, entity_id: int, key: str, value: Any) -> None: ...

    def get_entity_meta(self, entity_id: int) -> dict[str, Any]: ...

    def delete_entity_meta(self, entity_id: int, key: str) -> None: ...

    # Terms
    def find_term(
        self, taxonomy: str, slug: str | None = None, name: str | None = None
    ) -> int | None: ...

    def create_term(self, fields: dict[str, Any]) -> int: ...

    def update_term(self, term_id: int, fields: dict[str, Any]) -> None: ...

    def get_term(self, term_id: int) -> dict[str, Any] | None: ...

    def set_term_meta(self, term_id: int, key: str, value: Any) -> None: ...

    def get_term_meta(self, term_id: int) -> dict[str, Any]: ...

    def get_entity_terms(self, entity_id: int, taxonomy: str) -> list[int]: ...

    def set_entity_terms(
        self, entity_id: int, taxonomy: str, term_ids: list[int], append: bool = False
    ) -> None: ...

    def remove_entity_terms(self, entity_id: int, taxonomy: str, term_ids: list[int]) -> None: ...

    # Users
    def find_user(self, login: str | None = None, email: str | None = None) -> int | None: ...

    def create_user(self, fields: dict[str, Any]) -> int: ...

    def update_user(self, user_id: int, fields: dict[str, Any]) -> None: ...

    def get_user(self, user_id: int) -> dict[str, Any] | None: ...

    def set_user_meta(self, user_id: int, key: str, value: Any) -> None: ...

    def get_user_meta(self, user_id: int) -> dict[str, Any]: ...

    # Attachments
    def find_attachment_by_path(self, logical_path: str) -> int | None: ...

    def create_attachment(self, fields: dict[str, Any]) -> int: ...

    def get_attachment(self, attachment_id: int) -> dict[str, Any] | None: ...

    # Identity links
    def find_link(self, source_id: int, tenant: int, kind: str) -> int | None: ...

    def put_link(
        self, source_id: int, tenant: int, kind: str, local_id: int, run_id: int | None = None
    ) -> bool: ...

    def replace_link(
        self,
        source_id: int,
        tenant: int,
        kind: str,
        local_id: int,
        run_id: int | None = None,
        expected: int | None = None,
    ) -> bool: ...

    def list_links(self, kind: str, tenant: int) -> list[tuple[int, int]]: ...

    # Options
    def get_option(self, name: str) -> str | None: ...

    def set_option(self, name: str, value: str) -> None: ...

    def delete_option(self, name: str) -> None: ...

    def next_counter(self, name: str) -> int: ...


def _checked(fields: dict[str, Any], allowed: frozenset[str], what: str) -> dict[str, Any]:
    unknown = set(fields) - allowed
    if unknown:
        raise StateError(
            f"Unknown {what} field(s): {', '.join(sorted(unknown))}",
            details={"fields": sorted(unknown)},
        )
    return fields


def _as_dict(obj: Any) -> dict[str, Any]:
    return {column.key: getattr(obj, column.key) for column in obj.__table__.columns}


class SqlContentStore:
    """ContentStore backed by SQLAlchemy sessions.

    Thread safe: sessions are per call and the counter update is serialized
    with a process-local lock on top of the database transaction.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        self._counter_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def create_entity(self, fields: dict[str, Any]) -> int:
        with session_scope(self.session_factory) as session:
            entity = Entity(**_checked(fields, ENTITY_FIELDS, "entity"))
            session.add(entity)
            session.flush()
            logger.debug("entity_created", entity_id=entity.id, kind=entity.kind)
            return entity.id

    def update_entity(self, entity_id: int, fields: dict[str, Any]) -> None:
        _checked(fields, ENTITY_FIELDS, "entity")
        with session_scope(self.session_factory) as session:
            entity = session.get(Entity, entity_id)
            if entity is None:
                raise StateError("Entity not found", details={"entity_id": entity_id})
            for key, value in fields.items():
                setattr(entity, key, value)

    def get_entity(self, entity_id: int) -> dict[str, Any] | None:
        with session_scope(self.session_factory) as session:
            entity = session.get(Entity, entity_id)
            return _as_dict(entity) if entity else None

    def delete_entity(self, entity_id: int) -> None:
        """Delete an entity with its meta and term assignments; links are kept."""
        with session_scope(self.session_factory) as session:
            session.execute(delete(EntityMeta).where(EntityMeta.entity_id == entity_id))
            session.execute(delete(EntityTerm).where(EntityTerm.entity_id == entity_id))
            session.execute(delete(Entity).where(Entity.id == entity_id))
        logger.debug("entity_deleted", entity_id=entity_id)

    def set_entity_meta(self, entity_id: int, key: str, value: Any) -> None:
        with session_scope(self.session_factory) as session:
            row = session.query(EntityMeta).filter_by(entity_id=entity_id, key=key).first()
            if row is None:
                session.add(EntityMeta(entity_id=entity_id, key=key, value=value))
            else:
                row.value = value

    def get_entity_meta(self, entity_id: int) -> dict[str, Any]:
        with session_scope(self.session_factory) as session:
            rows = session.query(EntityMeta).filter_by(entity_id=entity_id).order_by(EntityMeta.id)
            return {row.key: row.value for row in rows}

    def delete_entity_meta(self, entity_id: int, key: str) -> None:
        with session_scope(self.session_factory) as session:
            session.execute(
                delete(EntityMeta).where(EntityMeta.entity_id == entity_id, EntityMeta.key == key)
            )

    # ------------------------------------------------------------------
    # Terms
    # ------------------------------------------------------------------

    def find_term(
        self, taxonomy: str, slug: str | None = None, name: str | None = None
    ) -> int | None:
        """Find a term by slug first, then by name, within ``taxonomy``."""
        with session_scope(self.session_factory) as session:
            if slug:
                term = session.query(Term).filter_by(taxonomy=taxonomy, slug=slug).first()
                if term:
                    return term.id
            if name:
                term = (
                    session.query(Term)
                    .filter_by(taxonomy=taxonomy, name=name)
                    .order_by(Term.id)
                    .first()
                )
                if term:
                    return term.id
        return None

    def create_term(self, fields: dict[str, Any]) -> int:
        with session_scope(self.session_factory) as session:
            term = Term(**_checked(fields, TERM_FIELDS, "term"))
            session.add(term)
            session.flush()
            return term.id

    def update_term(self, term_id: int, fields: dict[str, Any]) -> None:
        _checked(fields, TERM_FIELDS, "term")
        with session_scope(self.session_factory) as session:
            term = session.get(Term, term_id)
            if term is None:
                raise StateError("Term not found", details={"term_id": term_id})
            for key, value in fields.items():
                setattr(term, key, value)

    def get_term(self, term_id: int) -> dict[str, Any] | None:
        with session_scope(self.session_factory) as session:
            term = session.get(Term, term_id)
            return _as_dict(term) if term else None

    def set_term_meta(self, term_id: int, key: str, value: Any) -> None:
        with session_scope(self.session_factory) as session:
            row = session.query(TermMeta).filter_by(term_id=term_id, key=key).first()
            if row is None:
                session.add(TermMeta(term_id=term_id, key=key, value=value))
            else:
                row.value = value

    def get_term_meta(self, term_id: int) -> dict[str, Any]:
        with session_scope(self.session_factory) as session:
            rows = session.query(TermMeta).filter_by(term_id=term_id).order_by(TermMeta.id)
            return {row.key: row.value for row in rows}

    def get_entity_terms(self, entity_id: int, taxonomy: str) -> list[int]:
        with session_scope(self.session_factory) as session:
            return list(
                session.scalars(
                    select(EntityTerm.term_id)
                    .where(EntityTerm.entity_id == entity_id, EntityTerm.taxonomy == taxonomy)
                    .order_by(EntityTerm.term_id)
                )
            )

    def set_entity_terms(
        self, entity_id: int, taxonomy: str, term_ids: list[int], append: bool = False
    ) -> None:
        """Replace (or extend, with ``append``) the entity's terms in one taxonomy."""
        wanted = list(dict.fromkeys(term_ids))
        with session_scope(self.session_factory) as session:
            existing = set(
                session.scalars(
                    select(EntityTerm.term_id).where(
                        EntityTerm.entity_id == entity_id, EntityTerm.taxonomy == taxonomy
                    )
                )
            )
            if not append:
                stale = existing - set(wanted)
                if stale:
                    session.execute(
                        delete(EntityTerm).where(
                            EntityTerm.entity_id == entity_id,
                            EntityTerm.taxonomy == taxonomy,
                            EntityTerm.term_id.in_(stale),
                        )
                    )
            for term_id in wanted:
                if term_id not in existing:
                    session.add(EntityTerm(entity_id=entity_id, term_id=term_id, taxonomy=taxonomy))

    def remove_entity_terms(self, entity_id: int, taxonomy: str, term_ids: list[int]) -> None:
        if not term_ids:
            return
        with session_scope(self.session_factory) as session:
            session.execute(
                delete(EntityTerm).where(
                    EntityTerm.entity_id == entity_id,
                    EntityTerm.taxonomy == taxonomy,
                    EntityTerm.term_id.in_(term_ids),
                )
            )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def find_user(self, login: str | None = None, email: str | None = None) -> int | None:
        """Find a user by login first, then by email."""
        with session_scope(self.session_factory) as session:
            if login:
                user = session.query(User).filter_by(login=login).first()
                if user:
                    return user.id
            if email:
                user = session.query(User).filter_by(email=email).order_by(User.id).first()
                if user:
                    return user.id
        return None

    def create_user(self, fields: dict[str, Any]) -> int:
        with session_scope(self.session_factory) as session:
            user = User(**_checked(fields, USER_FIELDS, "user"))
            session.add(user)
            session.flush()
            return user.id

    def update_user(self, user_id: int, fields: dict[str, Any]) -> None:
        _checked(fields, USER_FIELDS, "user")
        with session_scope(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                raise StateError("User not found", details={"user_id": user_id})
            for key, value in fields.items():
                setattr(user, key, value)

    def get_user(self, user_id: int) -> dict[str, Any] | None:
        with session_scope(self.session_factory) as session:
            user = session.get(User, user_id)
            return _as_dict(user) if user else None

    def set_user_meta(self, user_id: int, key: str, value: Any) -> None:
        with session_scope(self.session_factory) as session:
            row = session.query(UserMeta).filter_by(user_id=user_id, key=key).first()
            if row is None:
                session.add(UserMeta(user_id=user_id, key=key, value=value))
            else:
                row.value = value

    def get_user_meta(self, user_id: int) -> dict[str, Any]:
        with session_scope(self.session_factory) as session:
            rows = session.query(UserMeta).filter_by(user_id=user_id).order_by(UserMeta.id)
            return {row.key: row.value for row in rows}

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def find_attachment_by_path(self, logical_path: str) -> int | None:
        with session_scope(self.session_factory) as session:
            found = session.query(Attachment).filter_by(logical_path=logical_path).first()
            return found.id if found else None

    def create_attachment(self, fields: dict[str, Any]) -> int:
        with session_scope(self.session_factory) as session:
            attachment = Attachment(**_checked(fields, ATTACHMENT_FIELDS, "attachment"))
            session.add(attachment)
            session.flush()
            logger.debug(
                "attachment_created",
                attachment_id=attachment.id,
                logical_path=attachment.logical_path,
            )
            return attachment.id

    def get_attachment(self, attachment_id: int) -> dict[str, Any] | None:
        with session_scope(self.session_factory) as session:
            attachment = session.get(Attachment, attachment_id)
            return _as_dict(attachment) if attachment else None

    # ------------------------------------------------------------------
    # Identity links
    # ------------------------------------------------------------------

    def find_link(self, source_id: int, tenant: int, kind: str) -> int | None:
        with session_scope(self.session_factory) as session:
            link = (
                session.query(IdentityLink)
                .filter_by(source_id=source_id, source_tenant=tenant, entity_kind=kind)
                .first()
            )
            return link.local_id if link else None

    def put_link(
        self, source_id: int, tenant: int, kind: str, local_id: int, run_id: int | None = None
    ) -> bool:
        """Insert a link; False when the identity is already linked."""
        try:
            with session_scope(self.session_factory) as session:
                session.add(
                    IdentityLink(
                        source_id=source_id,
                        source_tenant=tenant,
                        entity_kind=kind,
                        local_id=local_id,
                        run_id=run_id,
                    )
                )
        except IntegrityError:
            logger.debug(
                "identity_link_conflict", source_id=source_id, tenant=tenant, kind=kind
            )
            return False
        return True

    def replace_link(
        self,
        source_id: int,
        tenant: int,
        kind: str,
        local_id: int,
        run_id: int | None = None,
        expected: int | None = None,
    ) -> bool:
        """Point an existing link at ``local_id``.

        With ``expected``, the link only moves if it still points there.

        Returns:
            True if a link was updated
        """
        stmt = (
            update(IdentityLink)
            .where(
                IdentityLink.source_id == source_id,
                IdentityLink.source_tenant == tenant,
                IdentityLink.entity_kind == kind,
            )
            .values(local_id=local_id, run_id=run_id)
        )
        if expected is not None:
            stmt = stmt.where(IdentityLink.local_id == expected)
        with session_scope(self.session_factory) as session:
            return session.execute(stmt).rowcount > 0

    def list_links(self, kind: str, tenant: int) -> list[tuple[int, int]]:
        """All ``(source_id, local_id)`` pairs of one kind and tenant."""
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(IdentityLink.source_id, IdentityLink.local_id)
                .where(IdentityLink.entity_kind == kind, IdentityLink.source_tenant == tenant)
                .order_by(IdentityLink.source_id)
            )
            return [(int(source_id), int(local_id)) for source_id, local_id in rows]

    # ------------------------------------------------------------------
    # Options
    # ------------------------------------------------------------------

    def get_option(self, name: str) -> str | None:
        with session_scope(self.session_factory) as session:
            option = session.get(Option, name)
            return option.value if option else None

    def set_option(self, name: str, value: str) -> None:
        with session_scope(self.session_factory) as session:
            option = session.get(Option, name)
            if option is None:
                session.add(Option(name=name, value=value))
            else:
                option.value = value

    def delete_option(self, name: str) -> None:
        with session_scope(self.session_factory) as session:
            session.execute(delete(Option).where(Option.name == name))

    def next_counter(self, name: str) -> int:
        """Atomically increment an integer option and return the new value."""
        with self._counter_lock:
            with session_scope(self.session_factory) as session:
                option = session.execute(
                    select(Option).where(Option.name == name).with_for_update()
                ).scalar_one_or_none()
                current = int(option.value) if option and option.value.strip().isdigit() else 0
                value = current + 1
                if option is None:
                    session.add(Option(name=name, value=str(value)))
                else:
                    option.value = str(value)
                return value
