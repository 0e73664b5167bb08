"""
Migration state management.

This module provides the IdentityMapper, which keeps the durable
source-to-local identity links that make repeated imports idempotent, and
the RunCounter, the single accessor for the persisted run id.
"""

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from wp_migration.migration.store import ContentStore
from wp_migration.utils.logging import get_logger

logger = get_logger(__name__)

RUN_COUNTER_OPTION = "migration_run_id"

ENTRY = "entry"
TERM = "term"
USER = "user"
ATTACHMENT = "attachment"


class IdentityMapper:
    """
    Maps ``(source_id, source_tenant, kind)`` to a local id.

    Links are unique at the storage layer; the in-memory memo only saves
    round trips within one run and is dropped by :meth:`forget_memo` at the
    start of every run.

    A link whose local row was deleted outside the engine is stale.
    :meth:`find_live` reports it as unlinked and remembers it, and the next
    :meth:`record_link` for that identity moves the link to the new local id.

    Usage:
        mapper = IdentityMapper(store)
        with mapper.claim(42, 3, "entry"):
            local_id = mapper.find_live(42, 3, "entry", store.get_entity)
            if local_id is None:
                local_id = mapper.record_link(42, 3, "entry", store.create_entity(...))
    """

    def __init__(self, store: ContentStore):
        self.store = store
        self._memo: dict[tuple[int, int, str], int] = {}
        self._stale: dict[tuple[int, int, str], int] = {}
        self._claims: dict[tuple[int, int, str], threading.Lock] = {}
        self._lock = threading.RLock()

    def forget_memo(self) -> None:
        """Drop the per-run memo."""
        with self._lock:
            self._memo.clear()
            self._stale.clear()

    @contextmanager
    def claim(self, source_id: int, tenant: int, kind: str) -> Iterator[None]:
        """Serialize find -> create -> link for one source identity.

        Claims must not be nested; each covers a single identity.
        """
        key = (int(source_id), int(tenant), kind)
        with self._lock:
            lock = self._claims.setdefault(key, threading.Lock())
        with lock:
            yield

    def find_local(self, source_id: int, tenant: int, kind: str) -> int | None:
        """
        Look up the local id linked to a source identity.

        Args:
            source_id: Remote id
            tenant: Remote tenant (1 for the base site)
            kind: entry, term, user or attachment

        Returns:
            Local id if linked, None otherwise
        """
        key = (int(source_id), int(tenant), kind)
        with self._lock:
            if key in self._memo:
                return self._memo[key]

            local_id = self.store.find_link(*key)
            if local_id is not None:
                self._memo[key] = local_id
            return local_id

    def find_live(
        self, source_id: int, tenant: int, kind: str, lookup: Callable[[int], Any]
    ) -> int | None:
        """
        Like :meth:`find_local`, but a link whose local row is gone counts as unlinked.

        Args:
            lookup: Fetches the local row by id; returns None when it does not exist
        """
        local_id = self.find_local(source_id, tenant, kind)
        if local_id is None or lookup(local_id) is not None:
            return local_id

        key = (int(source_id), int(tenant), kind)
        with self._lock:
            self._memo.pop(key, None)
            self._stale[key] = local_id
        logger.warning(
            "linked_local_missing",
            kind=kind,
            source_id=source_id,
            tenant=tenant,
            local_id=local_id,
        )
        return None

    def record_link(
        self,
        source_id: int,
        tenant: int,
        kind: str,
        local_id: int,
        run_id: int | None = None,
    ) -> int:
        """
        Link a source identity to a local id.

        A stale link found by :meth:`find_live` is moved to ``local_id``.
        If another writer linked the identity first, the existing link wins
        and its local id is returned.

        Returns:
            The local id now linked to the source identity
        """
        key = (int(source_id), int(tenant), kind)
        with self._lock:
            stale = self._stale.pop(key, None)
            if stale is not None and self.store.replace_link(
                *key, local_id=local_id, run_id=run_id, expected=stale
            ):
                self._memo[key] = local_id
                logger.info(
                    "identity_relinked",
                    kind=kind,
                    source_id=source_id,
                    tenant=tenant,
                    previous=stale,
                    local_id=local_id,
                )
                return local_id

            if self.store.put_link(*key, local_id=local_id, run_id=run_id):
                self._memo[key] = local_id
                logger.debug(
                    "identity_linked",
                    kind=kind,
                    source_id=source_id,
                    tenant=tenant,
                    local_id=local_id,
                )
                return local_id

            existing = self.store.find_link(*key)
            if existing is None:
                # Conflict without a visible row: keep the caller's id for this run
                existing = local_id
            elif existing != local_id:
                logger.warning(
                    "identity_link_exists",
                    kind=kind,
                    source_id=source_id,
                    tenant=tenant,
                    existing=existing,
                    attempted=local_id,
                )
            self._memo[key] = existing
            return existing


class RunCounter:
    """Single accessor for the persisted, monotonically increasing run id."""

    def __init__(self, store: ContentStore, option_name: str = RUN_COUNTER_OPTION):
        self.store = store
        self.option_name = option_name

    def current(self) -> int:
        value = self.store.get_option(self.option_name)
        return int(value) if value and value.strip().isdigit() else 0

    def next_run_id(self) -> int:
        run_id = self.store.next_counter(self.option_name)
        logger.info("run_id_allocated", run_id=run_id)
        return run_id
