"""Hierarchical taxonomy term import.

Terms are imported parents first so a child can always resolve its parent's
local id, either from the current run or from an identity link recorded by
an earlier run. Each term is matched locally by slug, then by name, within
its taxonomy.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import IntegrityError

from wp_migration.client.exceptions import MigrationError
from wp_migration.client.source_client import CancellationToken
from wp_migration.config import TargetConfig
from wp_migration.migration.metadata import decode_meta_value
from wp_migration.migration.query import RemoteQueryBuilder, RemoteTerm, TermNode
from wp_migration.migration.state import TERM, IdentityMapper
from wp_migration.migration.store import ContentStore
from wp_migration.utils.logging import get_logger

logger = get_logger(__name__)

SOURCE_ID_KEY = "_migration_source_id"
SOURCE_TENANT_KEY = "_migration_source_tenant"
RESERVED_KEYS = frozenset({SOURCE_ID_KEY, SOURCE_TENANT_KEY})


@dataclass
class TermPayload:
    """Mutable view of a term handed to term hooks.

    Pre-hooks may change ``name``, ``slug``, ``description``,
    ``parent_source_id`` and ``meta``. Post-hooks additionally see the
    local outcome.
    """

    source_term_id: int
    taxonomy: str
    tenant: int
    name: str
    slug: str
    description: str
    parent_source_id: int
    meta: list[tuple[str, str]] = field(default_factory=list)
    local_term_id: int | None = None
    parent_local_id: int | None = None
    is_new: bool = False


TermHook = Callable[[TermPayload, "TermImportOptions"], None]


@dataclass
class TermImportOptions:
    tenant: int = 1
    taxonomies: list[str] = field(default_factory=list)
    include_ids: list[int] = field(default_factory=list)
    exclude_ids: list[int] = field(default_factory=list)
    chunk_size: int = 500
    dry_run: bool = False
    pre_hook: TermHook | None = None
    post_hook: TermHook | None = None
    force_base_prefix: bool = False
    run_id: int | None = None


@dataclass
class TermImportSummary:
    found: int = 0
    imported: int = 0
    updated: int = 0
    errors: dict[int, list[str]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    map: dict[int, int] = field(default_factory=dict)
    dry_run: bool = False
    cancelled: bool = False

    def add_error(self, source_term_id: int, message: str) -> None:
        self.errors.setdefault(source_term_id, []).append(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "found": self.found,
            "imported": self.imported,
            "updated": self.updated,
            "errors": {str(k): v for k, v in self.errors.items()},
            "warnings": list(self.warnings),
            "map": {str(k): v for k, v in self.map.items()},
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
        }


def order_parents_first(index: list[tuple[int, int]]) -> tuple[list[int], list[int]]:
    """Order term ids so that every parent precedes its children.

    Roots are terms whose parent is 0 or outside the set. Terms caught in a
    parent cycle cannot be ordered; they are returned separately.

    Returns:
        (ordered ids, ids left over because of cycles)
    """
    parents: dict[int, int] = {}
    for term_id, parent in index:
        parents.setdefault(term_id, parent)

    children: dict[int, list[int]] = {term_id: [] for term_id in parents}
    roots = []
    for term_id, parent in parents.items():
        if parent and parent in parents and parent != term_id:
            children[parent].append(term_id)
        else:
            roots.append(term_id)

    ordered: list[int] = []
    visited: set[int] = set(roots)
    tier = roots
    while tier:
        ordered.extend(tier)
        next_tier = []
        for term_id in tier:
            for child in children[term_id]:
                if child not in visited:
                    visited.add(child)
                    next_tier.append(child)
        tier = next_tier

    leftover = [term_id for term_id in parents if term_id not in visited]
    return ordered, leftover


class TermImporter:
    """Imports remote taxonomy terms into the local store."""

    def __init__(
        self,
        query: RemoteQueryBuilder,
        store: ContentStore,
        mapper: IdentityMapper,
        target: TargetConfig,
    ):
        self.query = query
        self.store = store
        self.mapper = mapper
        self.target = target

    def import_terms(
        self, options: TermImportOptions, cancel: CancellationToken | None = None
    ) -> TermImportSummary:
        """Import terms selected by ``options``.

        Per-term failures are collected in ``summary.errors`` and never stop
        the batch. Connection and configuration errors propagate.
        """
        summary = TermImportSummary(dry_run=options.dry_run)
        tenant = max(1, int(options.tenant or 1))

        index = self.query.fetch_term_index(
            tenant,
            options.taxonomies,
            options.include_ids,
            options.exclude_ids,
            options.force_base_prefix,
        )
        ordered, cyclic = order_parents_first(index)
        if cyclic:
            summary.warnings.append(
                f"term_parent_cycle: terms {', '.join(map(str, cyclic))} form a parent cycle"
            )
            logger.warning("term_parent_cycle", tenant=tenant, terms=cyclic)
        ordered.extend(cyclic)

        summary.found = len(ordered)
        logger.info("term_import_started", tenant=tenant, found=summary.found, dry_run=options.dry_run)

        chunk = max(1, int(options.chunk_size))
        for start in range(0, len(ordered), chunk):
            if cancel is not None and cancel.cancelled:
                summary.cancelled = True
                break

            ids = ordered[start : start + chunk]
            position = {term_id: pos for pos, term_id in enumerate(ids)}
            nodes = self.query.fetch_term_rows(ids, tenant, options.force_base_prefix)
            nodes.sort(key=lambda node: position.get(node.source_term_id, len(ids)))

            for node in nodes:
                self._import_one(node, tenant, options, summary)

        logger.info(
            "term_import_completed",
            tenant=tenant,
            found=summary.found,
            imported=summary.imported,
            updated=summary.updated,
            errors=len(summary.errors),
        )
        return summary

    def _import_one(
        self,
        node: TermNode,
        tenant: int,
        options: TermImportOptions,
        summary: TermImportSummary,
    ) -> None:
        rid = node.source_term_id

        if node.taxonomy not in self.target.known_taxonomies():
            summary.add_error(rid, f"Taxonomy '{node.taxonomy}' does not exist locally")
            return

        payload = TermPayload(
            source_term_id=rid,
            taxonomy=node.taxonomy,
            tenant=tenant,
            name=node.name,
            slug=node.slug,
            description=node.description,
            parent_source_id=node.parent_source_id,
            meta=list(node.meta),
        )

        if options.pre_hook is not None:
            try:
                options.pre_hook(payload, options)
            except Exception as e:
                summary.add_error(rid, f"pre_hook (term {rid}): {e}")

        if options.dry_run:
            local_id = self.mapper.find_live(
                rid, tenant, TERM, self.store.get_term
            ) or self.store.find_term(payload.taxonomy, slug=payload.slug, name=payload.name)
            if local_id:
                summary.map[rid] = local_id
            return

        try:
            parent_local = self._resolve_parent(payload, summary)
            local_id, is_new = self._write_term(payload, parent_local)
        except (MigrationError, IntegrityError) as e:
            summary.add_error(rid, f"Failed to write term: {e}")
            logger.warning("term_write_failed", source_term_id=rid, error=str(e))
            return

        if is_new:
            summary.imported += 1
        else:
            summary.updated += 1
        summary.map[rid] = local_id

        try:
            for key, value in payload.meta:
                if not key or key in RESERVED_KEYS:
                    continue
                self.store.set_term_meta(local_id, key, decode_meta_value(value).to_python())
            self.store.set_term_meta(local_id, SOURCE_ID_KEY, rid)
            self.store.set_term_meta(local_id, SOURCE_TENANT_KEY, tenant)
            self.mapper.record_link(rid, tenant, TERM, local_id, options.run_id)
        except (MigrationError, IntegrityError) as e:
            summary.add_error(rid, f"Failed to write term meta: {e}")
            return

        if options.post_hook is not None:
            payload.local_term_id = local_id
            payload.parent_local_id = parent_local
            payload.is_new = is_new
            try:
                options.post_hook(payload, options)
            except Exception as e:
                summary.add_error(rid, f"post_hook (term {rid}): {e}")

    def _resolve_parent(self, payload: TermPayload, summary: TermImportSummary) -> int | None:
        parent = payload.parent_source_id
        if parent <= 0:
            return None

        parent_local = summary.map.get(parent) or self.mapper.find_local(
            parent, payload.tenant, TERM
        )
        if parent_local is None:
            message = (
                f"term_parent_unresolved: term {payload.source_term_id} ({payload.taxonomy}) "
                f"has parent {parent} with no local match; imported as top level"
            )
            summary.warnings.append(message)
            logger.warning(
                "term_parent_unresolved",
                source_term_id=payload.source_term_id,
                parent_source_id=parent,
                tenant=payload.tenant,
            )
        return parent_local

    def _write_term(self, payload: TermPayload, parent_local: int | None) -> tuple[int, bool]:
        local_id = self.mapper.find_live(
            payload.source_term_id, payload.tenant, TERM, self.store.get_term
        )
        if local_id is None:
            local_id = self.store.find_term(payload.taxonomy, slug=payload.slug, name=payload.name)

        fields: dict[str, Any] = {
            "name": payload.name,
            "slug": payload.slug or slugify(payload.name),
            "description": payload.description,
        }
        if parent_local:
            fields["parent_id"] = parent_local

        if local_id is None:
            return self.store.create_term({"taxonomy": payload.taxonomy, **fields}), True

        self.store.update_term(local_id, fields)
        return local_id, False


def slugify(value: str) -> str:
    """Lowercase, dash-separated slug (``"Hello World!"`` -> ``"hello-world"``)."""
    out = []
    dash = False
    for char in value.strip().lower():
        if char.isalnum():
            out.append(char)
            dash = False
        elif not dash and out:
            out.append("-")
            dash = True
    return "".join(out).strip("-")


def lookup_term(store: ContentStore, taxonomy: str, name: str, slug: str = "") -> int | None:
    """Local term id for ``slug`` (or the slug of ``name``), without creating it."""
    return store.find_term(taxonomy, slug=slugify(slug or name) or slugify(name))


def ensure_term(store: ContentStore, taxonomy: str, name: str, slug: str = "") -> int:
    """Local term id for ``slug`` (or the slug of ``name``), creating it if absent."""
    slug = slugify(slug or name) or slugify(name)
    local_id = store.find_term(taxonomy, slug=slug)
    if local_id is None:
        local_id = store.create_term({"taxonomy": taxonomy, "name": name or slug, "slug": slug})
    return local_id


def _resolve_terms(
    store: ContentStore, taxonomy: str, values: list[tuple[str, str]], dry_run: bool
) -> list[int]:
    if dry_run:
        found = (lookup_term(store, taxonomy, name, slug) for name, slug in values)
        return [term_id for term_id in found if term_id is not None]
    return [ensure_term(store, taxonomy, name, slug) for name, slug in values]


def assign_entry_terms(
    store: ContentStore,
    target: TargetConfig,
    local_id: int,
    kind: str,
    terms_by_taxonomy: dict[str, list[RemoteTerm]],
    dry_run: bool = False,
) -> dict[str, list[int]]:
    """Ensure the remote terms exist locally and set them on the entity.

    Taxonomies not allowed for ``kind`` are skipped. In dry-run terms are
    only looked up and nothing is written.

    Returns:
        Local term ids set (or, in dry-run, already present) per taxonomy
    """
    allowed = target.allowed_taxonomies(kind)
    assigned: dict[str, list[int]] = {}

    for taxonomy, terms in terms_by_taxonomy.items():
        if taxonomy not in allowed:
            logger.debug("taxonomy_not_allowed", taxonomy=taxonomy, kind=kind)
            continue

        term_ids = list(
            dict.fromkeys(
                _resolve_terms(store, taxonomy, [(t.name, t.slug) for t in terms], dry_run)
            )
        )
        if term_ids:
            if not dry_run:
                store.set_entity_terms(local_id, taxonomy, term_ids)
            assigned[taxonomy] = term_ids

    return assigned


def apply_term_operations(
    store: ContentStore,
    local_id: int,
    add: dict[str, list[str]] | None = None,
    set_: dict[str, list[str]] | None = None,
    remove: dict[str, list[str]] | None = None,
    dry_run: bool = False,
) -> None:
    """Apply add / set / remove operations (taxonomy -> term slugs or names).

    In dry-run the terms are looked up but neither created nor assigned.
    """
    for taxonomy, values in (set_ or {}).items():
        term_ids = _resolve_terms(store, taxonomy, [(v, "") for v in values if v], dry_run)
        if not dry_run:
            store.set_entity_terms(local_id, taxonomy, term_ids)

    for taxonomy, values in (add or {}).items():
        term_ids = _resolve_terms(store, taxonomy, [(v, "") for v in values if v], dry_run)
        if not dry_run:
            store.set_entity_terms(local_id, taxonomy, term_ids, append=True)

    for taxonomy, values in (remove or {}).items():
        term_ids = []
        for value in values:
            found = store.find_term(taxonomy, slug=slugify(value), name=value)
            if found is not None:
                term_ids.append(found)
        if not dry_run:
            store.remove_entity_terms(local_id, taxonomy, term_ids)
