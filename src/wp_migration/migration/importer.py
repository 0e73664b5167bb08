"""Entry importer: the orchestrator of a migration run.

Drives fetch chunk -> pre-hook -> write decision -> terms -> attachments ->
content rewrite -> post-hook -> mapping for every source row. A failing row
is recorded in the run summary and the loop moves on; only connection and
configuration errors end a run early. Dry-run runs the same stages with the
store writes suppressed.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import IntegrityError

from wp_migration.client.exceptions import (
    ConfigError,
    ConnectionError,
    MigrationError,
    QueryError,
    RowError,
    RunCancelled,
)
from wp_migration.client.source_client import CancellationToken
from wp_migration.config import TargetConfig
from wp_migration.migration.attachments import (
    SOURCE_META_KEY,
    THUMBNAIL_KEY,
    AttachmentResolution,
    AttachmentResolver,
    build_url_rewrite_map,
    rewrite_content,
)
from wp_migration.migration.hooks import EntryDraft, PostHook, PostHookContext, PreHook
from wp_migration.migration.metadata import as_int, meta_to_python
from wp_migration.migration.query import FetchFilter, RemoteQueryBuilder, RemoteTerm, SourceRow
from wp_migration.migration.state import ENTRY, USER, IdentityMapper, RunCounter
from wp_migration.migration.store import ContentStore
from wp_migration.migration.terms import (
    RESERVED_KEYS,
    SOURCE_ID_KEY,
    SOURCE_TENANT_KEY,
    apply_term_operations,
    assign_entry_terms,
    slugify,
)
from wp_migration.migration.users import UserImporter
from wp_migration.utils.logging import get_logger

logger = get_logger(__name__)

WRITE_MODES = ("insert", "update", "upsert")
KEPT_STATUSES = ("publish", "draft", "pending", "private", "future")
DEFAULT_STATUS = "publish"
DEFAULT_KIND = "post"
UNTITLED = "(no title)"
REMOTE_AUTHOR_KEY = "_migration_remote_author"
EDIT_LAST_KEY = "_edit_last"


@dataclass
class RunOptions:
    """Options of one ``run_import`` invocation.

    Raises:
        ConfigError: If ``write_mode`` is not insert, update or upsert
    """

    tenant: int = 1
    fetch: FetchFilter = field(default_factory=FetchFilter)
    write_mode: str = "upsert"
    dry_run: bool = False
    with_media: bool = True
    assign_terms: bool = True
    map_users: bool = True
    meta_ops: dict[str, Any] = field(default_factory=dict)
    term_add: dict[str, list[str]] = field(default_factory=dict)
    term_set: dict[str, list[str]] = field(default_factory=dict)
    term_remove: dict[str, list[str]] = field(default_factory=dict)
    pre_hooks: list[PreHook] = field(default_factory=list)
    post_hooks: list[PostHook] = field(default_factory=list)
    old_media_base_url: str = ""
    run_id: int | None = None
    target_kind: str | None = None
    force_base_prefix: bool = False

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.write_mode not in WRITE_MODES:
            raise ConfigError(
                f"Invalid write mode '{self.write_mode}'",
                details={"allowed": ", ".join(WRITE_MODES)},
            )
        self.tenant = max(1, int(self.tenant or 1))


@dataclass
class RunSummary:
    """Counters and outcomes of one run; returned to the caller, never persisted."""

    tenant: int = 1
    run_id: int | None = None
    dry_run: bool = False
    write_mode: str = "upsert"
    found: int = 0
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    would_import: int = 0
    would_update: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    map: dict[int, int] = field(default_factory=dict)
    registered: int = 0
    reused: int = 0
    thumbnails_set: int = 0
    content_rewritten: int = 0
    missing: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def add_error(self, error: RowError) -> None:
        self.errors.append(
            {"source_id": error.source_id, "stage": error.stage, "message": error.message}
        )
        logger.warning(
            "row_failed", source_id=error.source_id, stage=error.stage, error=error.message
        )

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant": self.tenant,
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "write_mode": self.write_mode,
            "found": self.found,
            "imported": self.imported,
            "updated": self.updated,
            "skipped": self.skipped,
            "would_import": self.would_import,
            "would_update": self.would_update,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "map": {str(k): v for k, v in self.map.items()},
            "attachments": {
                "registered": self.registered,
                "reused": self.reused,
                "thumbnails_set": self.thumbnails_set,
                "content_rewritten": self.content_rewritten,
                "missing": dict(self.missing),
            },
            "cancelled": self.cancelled,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
        }


class EntryImporter:
    """Imports remote entries into the local content store.

    Args:
        query: Remote query builder
        store: Local content store
        mapper: Identity mapper
        target: Local target configuration
        run_counter: Accessor of the persisted run id
        users: Optional user importer used for author and ``_edit_last`` mapping
        attachments: Optional attachment resolver; media is skipped without one
        chunk_size: Entries fetched per page
        old_media_base_url: Legacy uploads base URL used for content rewriting
    """

    def __init__(
        self,
        query: RemoteQueryBuilder,
        store: ContentStore,
        mapper: IdentityMapper,
        target: TargetConfig,
        run_counter: RunCounter,
        users: UserImporter | None = None,
        attachments: AttachmentResolver | None = None,
        chunk_size: int = 500,
        old_media_base_url: str = "",
    ):
        self.query = query
        self.store = store
        self.mapper = mapper
        self.target = target
        self.run_counter = run_counter
        self.users = users
        self.attachments = attachments
        self.chunk_size = max(1, int(chunk_size))
        self.old_media_base_url = old_media_base_url.rstrip("/")

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_remote_entries(
        self, flt: FetchFilter, tenant: int = 1, force_base_prefix: bool = False
    ) -> list[dict[str, Any]]:
        """Remote entries matching ``flt`` with their local id, if already imported."""
        tenant = max(1, int(tenant or 1))
        rows = self.query.fetch_rows(
            flt.model_copy(update={"with_meta": False}), tenant, force_base_prefix
        )
        return [
            {**row.summary(), "local_id": self.mapper.find_local(row.source_id, tenant, ENTRY)}
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run_import(
        self, options: RunOptions, cancel: CancellationToken | None = None
    ) -> RunSummary:
        """Run one import.

        Returns:
            The run summary; ``cancelled`` is set when the token fired mid-run

        Raises:
            ConnectionError: The remote source is unreachable
            ConfigError: Invalid options, before any I/O
        """
        options.validate()
        tenant = options.tenant
        summary = RunSummary(
            tenant=tenant,
            dry_run=options.dry_run,
            write_mode=options.write_mode,
            started_at=datetime.now(UTC),
        )

        self.mapper.forget_memo()
        if self.attachments is not None:
            self.attachments.reset()

        if options.run_id is not None:
            summary.run_id = options.run_id
        elif not options.dry_run:
            summary.run_id = self.run_counter.next_run_id()

        logger.info(
            "import_started",
            tenant=tenant,
            run_id=summary.run_id,
            write_mode=options.write_mode,
            dry_run=options.dry_run,
        )

        try:
            self._run_chunks(options, summary, cancel)
        except RunCancelled:
            summary.cancelled = True

        summary.finished_at = datetime.now(UTC)
        logger.info(
            "import_completed",
            tenant=tenant,
            run_id=summary.run_id,
            found=summary.found,
            imported=summary.imported,
            updated=summary.updated,
            skipped=summary.skipped,
            errors=len(summary.errors),
            cancelled=summary.cancelled,
        )
        return summary

    def _run_chunks(
        self, options: RunOptions, summary: RunSummary, cancel: CancellationToken | None
    ) -> None:
        flt = options.fetch
        limit = flt.limit
        offset = flt.offset or 0
        fetched = 0

        while True:
            if cancel is not None:
                cancel.raise_if_cancelled()

            page_size = self.chunk_size if limit is None else min(self.chunk_size, limit - fetched)
            if page_size <= 0:
                break

            page = flt.model_copy(update={"limit": page_size, "offset": offset})
            try:
                rows = self.query.fetch_rows(page, options.tenant, options.force_base_prefix)
            except QueryError as e:
                summary.add_error(RowError(e.message, None, "fetch", details=e.details))
                break

            if not rows:
                break

            summary.found += len(rows)
            fetched += len(rows)
            offset += len(rows)
            logger.debug("chunk_fetched", tenant=options.tenant, size=len(rows), offset=offset)

            self._process_chunk(rows, options, summary, cancel)

            if len(rows) < page_size:
                break

    def _process_chunk(
        self,
        rows: list[SourceRow],
        options: RunOptions,
        summary: RunSummary,
        cancel: CancellationToken | None,
    ) -> None:
        terms_by_entry: dict[int, dict[str, list[RemoteTerm]]] = {}
        if options.assign_terms:
            try:
                terms_by_entry = self.query.fetch_terms_for_entries(
                    [row.source_id for row in rows],
                    options.tenant,
                    force_base_prefix=options.force_base_prefix,
                )
            except QueryError as e:
                summary.add_error(RowError(e.message, None, "terms", details=e.details))

        for row in rows:
            if cancel is not None:
                cancel.raise_if_cancelled()
            self._import_row(row, terms_by_entry.get(row.source_id, {}), options, summary)

    # ------------------------------------------------------------------
    # One row
    # ------------------------------------------------------------------

    def _import_row(
        self,
        row: SourceRow,
        remote_terms: dict[str, list[RemoteTerm]],
        options: RunOptions,
        summary: RunSummary,
    ) -> None:
        """Run every stage for one row.

        Dry-run goes through the same stages and lookups; only the writes to
        the local store are suppressed and the local id of a new entity is 0.
        """
        rid = row.source_id
        dry_run = options.dry_run
        stage = "prepare"

        try:
            draft = self._draft(row, options)

            for hook in options.pre_hooks:
                self._call_hook(hook, draft, options, summary, rid, "pre_hook")

            stage = "write"
            written = self._write_entity(draft, options, summary)
            if written is None:
                return
            local_id, is_update = written
            summary.map[rid] = local_id

            stage = "meta"
            self._write_meta(local_id, row, draft, options)

            stage = "terms"
            if options.assign_terms and remote_terms:
                assign_entry_terms(
                    self.store, self.target, local_id, draft.kind, remote_terms, dry_run
                )
            apply_term_operations(
                self.store,
                local_id,
                add={
                    taxonomy: [*draft.terms.get(taxonomy, []), *options.term_add.get(taxonomy, [])]
                    for taxonomy in {**draft.terms, **options.term_add}
                },
                set_=options.term_set,
                remove=options.term_remove,
                dry_run=dry_run,
            )

            stage = "attachments"
            resolution = self._resolve_media(row, local_id, options, summary)

            stage = "rewrite"
            self._rewrite(local_id, draft, resolution, options, summary)

            stage = "post_hook"
            context = PostHookContext(
                local_id=local_id,
                row=row,
                is_update=is_update,
                dry_run=dry_run,
                store=self.store,
                users=self.users,
            )
            for hook in options.post_hooks:
                self._call_hook(hook, context, options, summary, rid, "post_hook")

        except (ConnectionError, ConfigError, RunCancelled):
            raise
        except (MigrationError, IntegrityError) as e:
            message = e.message if isinstance(e, MigrationError) else str(e.orig)
            summary.add_error(RowError(message, rid, stage))

    def _write_entity(
        self, draft: EntryDraft, options: RunOptions, summary: RunSummary
    ) -> tuple[int, bool] | None:
        """Create or update the local entity under the identity's claim.

        Returns:
            ``(local_id, is_update)``, or None when the write mode skips the row
        """
        rid = draft.source_id
        tenant = options.tenant

        with self.mapper.claim(rid, tenant, ENTRY):
            existing = self.mapper.find_live(rid, tenant, ENTRY, self.store.get_entity)
            is_update = existing is not None

            if (is_update and options.write_mode == "insert") or (
                not is_update and options.write_mode == "update"
            ):
                summary.skipped += 1
                logger.debug(
                    "row_skipped_by_write_mode",
                    source_id=rid,
                    write_mode=options.write_mode,
                    mapped=is_update,
                )
                return None

            if options.dry_run:
                if is_update:
                    summary.would_update += 1
                else:
                    summary.would_import += 1
                return existing or 0, is_update

            fields = draft.to_fields(summary.run_id)
            if is_update:
                self.store.update_entity(existing, fields)
                summary.updated += 1
                return existing, True

            created = self.store.create_entity(fields)
            local_id = self.mapper.record_link(rid, tenant, ENTRY, created, summary.run_id)
            if local_id == created:
                summary.imported += 1
                return local_id, False

        # Another process linked the identity first: keep its entity
        self.store.delete_entity(created)
        self.store.update_entity(local_id, fields)
        summary.updated += 1
        return local_id, True

    @staticmethod
    def _call_hook(
        hook: Any,
        subject: Any,
        options: RunOptions,
        summary: RunSummary,
        source_id: int,
        stage: str,
    ) -> None:
        try:
            hook(subject, options)
        except RunCancelled:
            raise
        except Exception as e:
            name = getattr(hook, "__name__", repr(hook))
            summary.add_error(RowError(f"{name}: {e}", source_id, stage))

    def _draft(self, row: SourceRow, options: RunOptions) -> EntryDraft:
        kind = options.target_kind or row.kind
        if kind not in self.target.allowed_kinds:
            kind = DEFAULT_KIND

        title = row.title.strip() or UNTITLED
        slug = row.slug or slugify(row.title) or str(row.source_id)

        author_id = None
        if options.map_users and row.author_source_id > 0:
            author_id = self.mapper.find_live(
                row.author_source_id, options.tenant, USER, self.store.get_user
            )

        parent_id = None
        if row.parent_source_id > 0:
            parent_id = self.mapper.find_live(
                row.parent_source_id, options.tenant, ENTRY, self.store.get_entity
            )

        return EntryDraft(
            source_id=row.source_id,
            tenant=options.tenant,
            kind=kind,
            status=row.status if row.status in KEPT_STATUSES else DEFAULT_STATUS,
            title=title,
            slug=slug,
            body=row.body,
            excerpt=row.excerpt,
            author_id=author_id,
            parent_id=parent_id,
            created_at=row.created_at,
            created_at_gmt=row.created_at_gmt,
            modified_at=row.modified_at,
            modified_at_gmt=row.modified_at_gmt,
            meta=meta_to_python(row.metadata),
        )

    def _write_meta(
        self, local_id: int, row: SourceRow, draft: EntryDraft, options: RunOptions
    ) -> None:
        values: dict[str, Any] = {}
        skip = RESERVED_KEYS | {SOURCE_META_KEY, THUMBNAIL_KEY, *self.target.reference_meta_keys}
        for key, value in draft.meta.items():
            if not key or key in skip:
                continue
            if key == EDIT_LAST_KEY:
                value = self._map_editor(row, options)
                if value is None:
                    continue
            values[key] = value

        deleted = [key for key, value in options.meta_ops.items() if value is None]
        for key in deleted:
            values.pop(key, None)
        values.update({key: value for key, value in options.meta_ops.items() if value is not None})

        snapshot = meta_to_python(row.metadata)
        snapshot["post_type"] = row.kind
        values[SOURCE_META_KEY] = snapshot
        if row.author_source_id > 0:
            values[REMOTE_AUTHOR_KEY] = row.author_source_id
        values[SOURCE_ID_KEY] = row.source_id
        values[SOURCE_TENANT_KEY] = row.tenant

        if options.dry_run:
            return
        for key in deleted:
            self.store.delete_entity_meta(local_id, key)
        for key, value in values.items():
            self.store.set_entity_meta(local_id, key, value)

    def _map_editor(self, row: SourceRow, options: RunOptions) -> int | None:
        remote_editor = as_int(row.meta(EDIT_LAST_KEY))
        if remote_editor is None or not options.map_users or self.users is None:
            return None
        local = self.mapper.find_live(remote_editor, options.tenant, USER, self.store.get_user)
        if local is None:
            local = self.users.import_user(remote_editor, options.tenant, options.dry_run)
        return local

    def _resolve_media(
        self,
        row: SourceRow,
        local_id: int,
        options: RunOptions,
        summary: RunSummary,
    ) -> AttachmentResolution | None:
        if not options.with_media or self.attachments is None:
            return None

        resolution = self.attachments.resolve_attachments(
            [row],
            options.tenant,
            summary.run_id,
            parent_local_id=local_id or None,
            dry_run=options.dry_run,
            force_base_prefix=options.force_base_prefix,
        )
        summary.registered += resolution.registered
        summary.reused += resolution.reused
        summary.missing.update(resolution.missing)
        for message in resolution.errors:
            summary.add_error(RowError(message, row.source_id, "attachments"))

        if row.source_id in resolution.featured:
            summary.thumbnails_set += 1
            if not options.dry_run:
                featured = resolution.featured[row.source_id]
                self.store.update_entity(local_id, {"featured_attachment_id": featured})
                self.store.set_entity_meta(local_id, THUMBNAIL_KEY, featured)

        if not options.dry_run:
            for key in self.target.reference_meta_keys:
                remote_ref = as_int(row.meta(key))
                if remote_ref and remote_ref in resolution.map:
                    self.store.set_entity_meta(local_id, key, resolution.map[remote_ref])

        return resolution

    def _rewrite(
        self,
        local_id: int,
        draft: EntryDraft,
        resolution: AttachmentResolution | None,
        options: RunOptions,
        summary: RunSummary,
    ) -> None:
        old_base = options.old_media_base_url or self.old_media_base_url
        url_map = build_url_rewrite_map(old_base, self.target.media_base_url, options.tenant)
        if resolution is not None:
            url_map.update(resolution.url_map)
        if not url_map:
            return

        body = rewrite_content(draft.body, url_map)
        excerpt = rewrite_content(draft.excerpt, url_map)
        if body != draft.body or excerpt != draft.excerpt:
            summary.content_rewritten += 1
            if not options.dry_run:
                self.store.update_entity(local_id, {"body": body, "excerpt": excerpt})
