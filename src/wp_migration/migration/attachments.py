"""Attachment resolution and media URL rewriting.

Binary resources referenced by imported entries (featured images, images in
the body, upload paths stored in metadata) are deduplicated by their
tenant-normalized logical path: one physical file maps to one local
attachment no matter how many entries, sizes or tenants reference it.
"""

import mimetypes
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlsplit

from sqlalchemy.exc import IntegrityError

from wp_migration.client.exceptions import MigrationError, ResourceMissing
from wp_migration.client.source_client import CancellationToken
from wp_migration.client.transport import Downloader
from wp_migration.config import TargetConfig
from wp_migration.migration.metadata import MetaMap, as_int, iter_strings
from wp_migration.migration.query import RemoteQueryBuilder, SourceRow
from wp_migration.migration.state import ATTACHMENT, ENTRY, IdentityMapper
from wp_migration.migration.store import ContentStore
from wp_migration.utils.logging import get_logger

logger = get_logger(__name__)

THUMBNAIL_KEY = "_thumbnail_id"
SOURCE_META_KEY = "_migration_source_meta"

_IMAGE_EXT = r"(?:png|jpe?g|gif|webp|svg)"
_SRC_RE = re.compile(rf"""\ssrc=["']([^"']+\.{_IMAGE_EXT}(?:\?[^"']*)?)["']""", re.IGNORECASE)
_SRCSET_RE = re.compile(r"""\ssrcset=["']([^"']+)["']""", re.IGNORECASE)
_HREF_RE = re.compile(
    rf"""<a\s[^>]*href=["']([^"']+\.{_IMAGE_EXT}(?:\?[^"']*)?)["']""", re.IGNORECASE
)
_IMAGE_URL_RE = re.compile(rf"\.{_IMAGE_EXT}(?:\?.*)?$", re.IGNORECASE)
_FILE_EXT_RE = re.compile(r"\.[A-Za-z0-9]{2,5}$")
_SITES_PREFIX_RE = re.compile(r"^sites/\d+/")
_SIZE_SUFFIX_RE = re.compile(r"-\d+x\d+(?=\.[A-Za-z0-9]+$)")
_UPLOADS_MARKERS = ("/wp-content/uploads/", "/uploads/")


def extract_image_urls(html: str) -> list[str]:
    """Image URLs referenced by ``src``, ``srcset`` and ``<a href>`` in ``html``.

    Order of first appearance is kept; duplicates are dropped.
    """
    if not html:
        return []

    urls: list[str] = list(_SRC_RE.findall(html))

    for candidates in _SRCSET_RE.findall(html):
        for entry in candidates.split(","):
            parts = entry.strip().split()
            if parts and _IMAGE_URL_RE.search(parts[0]):
                urls.append(parts[0])

    urls.extend(_HREF_RE.findall(html))
    return list(dict.fromkeys(url.strip() for url in urls if url.strip()))


def _strip_query(url: str) -> str:
    return url.split("?", 1)[0].split("#", 1)[0]


def uploads_relative_path(url: str, old_base: str, tenant: int | None = None) -> str | None:
    """Path of ``url`` relative to the uploads root, or None if it lives elsewhere.

    Understands ``<base>/sites/<t>/...``, ``<origin>/sites/<t><base path>/...``
    and plain ``<base>/...`` forms, absolute or protocol-relative.
    """
    candidate = _strip_query(url.strip())
    if not candidate:
        return None

    parsed = urlsplit(candidate)
    base = urlsplit(old_base.rstrip("/")) if old_base else None

    if parsed.netloc:
        if base is not None and base.netloc and parsed.netloc.lower() != base.netloc.lower():
            return None
        path = parsed.path
    elif candidate.startswith("/"):
        path = candidate
    else:
        return None

    path = unquote(path)
    base_path = base.path.rstrip("/") if base is not None else ""
    prefixes = []
    if tenant and int(tenant) > 1:
        prefixes.append(f"/sites/{int(tenant)}{base_path}/")
        prefixes.append(f"{base_path}/sites/{int(tenant)}/")
    if base_path:
        prefixes.append(f"{base_path}/")

    relative = None
    for prefix in prefixes:
        if path.startswith(prefix):
            relative = path[len(prefix) :]
            break

    if relative is None:
        for marker in _UPLOADS_MARKERS:
            position = path.rfind(marker)
            if position != -1:
                relative = path[position + len(marker) :]
                break

    if not relative:
        return None
    return _SITES_PREFIX_RE.sub("", relative.lstrip("/"))


def looks_like_upload(value: str, old_base: str, tenant: int | None = None) -> bool:
    """Whether a metadata string is a URL or absolute path of an uploaded file."""
    if not value or len(value) > 2048 or any(c.isspace() for c in value.strip()):
        return False
    if not _FILE_EXT_RE.search(_strip_query(value.strip())):
        return False
    return uploads_relative_path(value, old_base, tenant) is not None


def neutral_path(relative: str) -> str:
    """Tenant-neutral path: no ``sites/<t>/`` prefix and no ``-WxH`` size suffix."""
    rel = _SITES_PREFIX_RE.sub("", unquote(relative).lstrip("/"))
    directory, _, name = rel.rpartition("/")
    name = _SIZE_SUFFIX_RE.sub("", name)
    return f"{directory}/{name}" if directory else name


def prefix_filename(path: str, tenant: int | None) -> str:
    """Prefix the file name with ``t<tenant>-`` (idempotent)."""
    prefix = f"t{max(1, int(tenant or 1))}-"
    directory, _, name = path.rpartition("/")
    if not name.startswith(prefix):
        name = prefix + name
    return f"{directory}/{name}" if directory else name


def logical_path(relative: str, tenant: int | None, tenant_filename_prefix: bool = False) -> str:
    """Deduplication key of a resource relative to the uploads root."""
    path = neutral_path(relative)
    return prefix_filename(path, tenant) if tenant_filename_prefix else path


def build_url_rewrite_map(old_base: str, new_base: str, tenant: int | None) -> dict[str, str]:
    """Prefix replacements from every known form of the old uploads base to the new one.

    Covers both schemes and the protocol-relative form of the old base, the
    tenant-suffixed forms ``<old>/sites/<t>`` and ``<origin>/sites/<t><old path>``
    and the tenant-neutral form.
    """
    old = (old_base or "").strip().rstrip("/")
    new = (new_base or "").strip().rstrip("/")
    if not old or not new or old == new:
        return {}

    parsed = urlsplit(old)
    if parsed.netloc:
        origins = [f"http://{parsed.netloc}", f"https://{parsed.netloc}", f"//{parsed.netloc}"]
        path = parsed.path.rstrip("/")
    else:
        origins = [""]
        path = old

    pairs: dict[str, str] = {}
    for origin in origins:
        base = f"{origin}{path}"
        if tenant and int(tenant) > 1:
            pairs[f"{base}/sites/{int(tenant)}"] = new
            pairs[f"{origin}/sites/{int(tenant)}{path}"] = new
        pairs[base] = new

    pairs.pop(new, None)
    return pairs


def rewrite_content(text: str, url_map: dict[str, str]) -> str:
    """Replace every occurrence of the map's keys in one longest-match-first pass."""
    if not text or not url_map:
        return text

    keys = sorted((key for key in url_map if key), key=len, reverse=True)
    if not keys:
        return text
    pattern = re.compile("|".join(re.escape(key) for key in keys))
    return pattern.sub(lambda match: url_map[match.group(0)], text)


def _positive_int(value: Any) -> int | None:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or None
    return None


@dataclass
class AttachmentResolution:
    map: dict[int, int] = field(default_factory=dict)
    url_map: dict[str, str] = field(default_factory=dict)
    missing: dict[str, str] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    featured: dict[int, int] = field(default_factory=dict)
    registered: int = 0
    reused: int = 0


@dataclass
class AttachmentImportOptions:
    tenant: int = 1
    kinds: list[str] = field(default_factory=list)
    dry_run: bool = False
    force_base_prefix: bool = False
    run_id: int | None = None


@dataclass
class AttachmentSummary:
    total: int = 0
    attached: int = 0
    registered: int = 0
    skipped: int = 0
    missing: int = 0
    warnings: list[str] = field(default_factory=list)
    dry_run: bool = False
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "attached": self.attached,
            "registered": self.registered,
            "skipped": self.skipped,
            "missing": self.missing,
            "warnings": list(self.warnings),
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
        }


class AttachmentResolver:
    """Resolves attachment references of imported entries to local attachments.

    Args:
        query: Remote query builder
        store: Local content store
        mapper: Identity mapper
        target: Local target configuration (uploads dir, new base URL)
        old_base: Uploads base URL of the remote installation
        downloader: Optional downloader for files absent from the uploads dir
        cancel: Optional cancellation token
    """

    def __init__(
        self,
        query: RemoteQueryBuilder,
        store: ContentStore,
        mapper: IdentityMapper,
        target: TargetConfig,
        old_base: str = "",
        downloader: Downloader | None = None,
        cancel: CancellationToken | None = None,
    ):
        self.query = query
        self.store = store
        self.mapper = mapper
        self.target = target
        self.old_base = (old_base or "").rstrip("/")
        self.new_base = target.media_base_url.rstrip("/")
        self.uploads_dir = Path(target.uploads_dir)
        self.downloader = downloader
        self.cancel = cancel
        self._path_cache: dict[str, int] = {}

    def reset(self) -> None:
        """Forget the per-run path cache."""
        self._path_cache.clear()

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def _id_references(self, row: SourceRow) -> list[tuple[int, bool]]:
        refs: list[tuple[int, bool]] = []
        thumb = as_int(row.meta(THUMBNAIL_KEY))
        if thumb:
            refs.append((thumb, True))
        for key in self.target.reference_meta_keys:
            ref = as_int(row.meta(key))
            if ref:
                refs.append((ref, False))
        return refs

    def _url_references(self, row: SourceRow) -> list[str]:
        urls = extract_image_urls(row.body)
        skip = {THUMBNAIL_KEY, *self.target.reference_meta_keys}
        for key, value in row.metadata.items():
            if key in skip:
                continue
            for candidate in iter_strings(value):
                if looks_like_upload(candidate, self.old_base, row.tenant):
                    urls.append(candidate.strip())
        return list(dict.fromkeys(urls))

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_attachments(
        self,
        rows: list[SourceRow],
        tenant: int,
        run_id: int | None,
        parent_local_id: int | None = None,
        dry_run: bool = False,
        force_base_prefix: bool = False,
    ) -> AttachmentResolution:
        """Resolve every attachment reference of ``rows``.

        Missing resources are recorded in ``resolution.missing`` and never
        abort the rows that reference them.
        """
        resolution = AttachmentResolution()

        id_refs: list[tuple[int, int, bool]] = []
        url_refs: list[str] = []
        for row in rows:
            id_refs.extend((ref, row.source_id, featured) for ref, featured in self._id_references(row))
            url_refs.extend(self._url_references(row))

        remote_ids = [ref for ref, _, _ in id_refs]
        remote: dict[int, SourceRow] = {}
        unlinked = [ref for ref in dict.fromkeys(remote_ids) if self._linked(ref, tenant) is None]
        if unlinked:
            remote = self.query.fetch_attachments_by_ids(unlinked, tenant, force_base_prefix)

        for ref, row_id, featured in id_refs:
            self._check_cancel()
            local_id = self._resolve_id(
                ref, tenant, remote.get(ref), run_id, parent_local_id, dry_run, resolution
            )
            if local_id is not None:
                resolution.map[ref] = local_id
                if featured and row_id not in resolution.featured:
                    resolution.featured[row_id] = local_id

        for url in dict.fromkeys(url_refs):
            self._check_cancel()
            self._resolve_url(
                url, tenant, run_id, parent_local_id, dry_run, force_base_prefix, resolution
            )

        return resolution

    def _check_cancel(self) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()

    def _linked(self, source_id: int, tenant: int) -> int | None:
        return self.mapper.find_live(source_id, tenant, ATTACHMENT, self.store.get_attachment)

    def _resolve_id(
        self,
        source_id: int,
        tenant: int,
        remote_row: SourceRow | None,
        run_id: int | None,
        parent_local_id: int | None,
        dry_run: bool,
        resolution: AttachmentResolution,
    ) -> int | None:
        linked = self._linked(source_id, tenant)
        if linked is not None:
            attachment = self.store.get_attachment(linked)
            if attachment:
                self._path_cache.setdefault(attachment["logical_path"], linked)
            resolution.reused += 1
            return linked

        if remote_row is None:
            resolution.missing[str(source_id)] = "Attachment not found in the remote source"
            logger.warning("attachment_missing_remote", source_id=source_id, tenant=tenant)
            return None

        relative = self._attached_file(remote_row)
        if relative is None:
            resolution.missing[str(source_id)] = "Attachment has no file reference"
            return None

        logical = logical_path(relative, tenant, self.target.tenant_filename_prefix)
        existing = self._find_by_path(logical)
        if existing is not None:
            resolution.reused += 1
            if not dry_run and existing:
                self.mapper.record_link(source_id, tenant, ATTACHMENT, existing, run_id)
            return existing

        return self._register(
            logical,
            relative,
            tenant,
            remote_row,
            self._remote_urls(relative, tenant, remote_row),
            run_id,
            parent_local_id,
            dry_run,
            resolution,
            reference=str(source_id),
        )

    def _resolve_url(
        self,
        url: str,
        tenant: int,
        run_id: int | None,
        parent_local_id: int | None,
        dry_run: bool,
        force_base_prefix: bool,
        resolution: AttachmentResolution,
    ) -> None:
        relative = uploads_relative_path(url, self.old_base, tenant)
        if relative is None:
            return

        if self.new_base:
            public = (
                prefix_filename(relative, tenant)
                if self.target.tenant_filename_prefix
                else relative
            )
            resolution.url_map[url] = f"{self.new_base}/{public}"

        logical = logical_path(relative, tenant, self.target.tenant_filename_prefix)
        if self._find_by_path(logical) is not None:
            resolution.reused += 1
            return

        neutral = neutral_path(relative)
        remote_id = self.query.fetch_attachment_ids_by_files(
            [neutral, f"sites/{tenant}/{neutral}"], tenant, force_base_prefix
        )
        source_id = next(iter(remote_id.values()), None)
        remote_row = None
        if source_id is not None:
            remote_row = self.query.fetch_attachments_by_ids(
                [source_id], tenant, force_base_prefix
            ).get(source_id)

        local_id = self._register(
            logical,
            relative,
            tenant,
            remote_row,
            [*self._remote_urls(neutral, tenant, remote_row), _strip_query(url)],
            run_id,
            parent_local_id,
            dry_run,
            resolution,
            reference=logical,
        )
        if local_id is not None and source_id is not None:
            resolution.map[source_id] = local_id

    def _find_by_path(self, logical: str) -> int | None:
        if logical in self._path_cache:
            return self._path_cache[logical]
        local_id = self.store.find_attachment_by_path(logical)
        if local_id is not None:
            self._path_cache[logical] = local_id
        return local_id

    @staticmethod
    def _attached_file(remote_row: SourceRow) -> str | None:
        attached = remote_row.meta("_wp_attached_file")
        for value in iter_strings(attached) if attached is not None else ():
            if value.strip():
                return value.strip()
        if remote_row.guid:
            relative = uploads_relative_path(remote_row.guid, "", remote_row.tenant)
            if relative:
                return relative
        return None

    def _remote_urls(self, relative: str, tenant: int, remote_row: SourceRow | None) -> list[str]:
        urls = []
        if self.old_base:
            neutral = _SITES_PREFIX_RE.sub("", relative.lstrip("/"))
            if tenant > 1:
                urls.append(f"{self.old_base}/sites/{tenant}/{neutral}")
            urls.append(f"{self.old_base}/{neutral}")
        if remote_row is not None and remote_row.guid.startswith(("http://", "https://")):
            urls.append(remote_row.guid)
        return list(dict.fromkeys(urls))

    def _candidate_files(self, logical: str, relative: str, tenant: int) -> list[Path]:
        neutral = neutral_path(relative)
        candidates = [self.uploads_dir / logical, self.uploads_dir / neutral]
        if tenant > 1:
            candidates.append(self.uploads_dir / "sites" / str(tenant) / neutral)
            candidates.append(self.uploads_dir / "blogs.dir" / str(tenant) / "files" / neutral)
        return list(dict.fromkeys(candidates))

    def _locate_file(self, logical: str, relative: str, tenant: int) -> Path | None:
        for candidate in self._candidate_files(logical, relative, tenant):
            if candidate.is_file():
                return candidate
        return None

    def _download(self, urls: list[str], logical: str) -> Path:
        if self.downloader is None:
            raise ResourceMissing("File not found under the uploads directory", reference=logical)

        last_error: ResourceMissing | None = None
        for url in urls:
            try:
                tmp = self.downloader.download_to_temp(url)
            except ResourceMissing as e:
                last_error = e
                continue
            destination = self.uploads_dir / logical
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(tmp), destination)
            logger.info("attachment_downloaded", url=url, path=str(destination))
            return destination

        if last_error is not None:
            raise last_error
        raise ResourceMissing("No download URL for attachment", reference=logical)

    def _register(
        self,
        logical: str,
        relative: str,
        tenant: int,
        remote_row: SourceRow | None,
        urls: list[str],
        run_id: int | None,
        parent_local_id: int | None,
        dry_run: bool,
        resolution: AttachmentResolution,
        reference: str,
    ) -> int | None:
        file_path = self._locate_file(logical, relative, tenant)

        if dry_run:
            if file_path is None and self.downloader is None:
                resolution.missing[reference] = "File not found under the uploads directory"
                return None
            resolution.registered += 1
            self._path_cache[logical] = 0
            return 0

        try:
            if file_path is None:
                file_path = self._download(urls, logical)
        except ResourceMissing as e:
            resolution.missing[reference] = e.message
            logger.warning("attachment_missing", reference=reference, reason=e.message)
            return None

        fields: dict[str, Any] = {
            "logical_path": logical,
            "title": (remote_row.title if remote_row else "") or Path(logical).stem,
            "mime_type": (remote_row.mime_type if remote_row else "")
            or mimetypes.guess_type(logical)[0]
            or "",
            "source_url": urls[0] if urls else "",
            "file_path": str(file_path),
            "created_at": remote_row.created_at if remote_row else "",
            "parent_entity_id": parent_local_id,
            "sizes": self._sizes(remote_row),
            "run_id": run_id,
        }

        try:
            local_id = self.store.create_attachment(fields)
        except IntegrityError:
            # Registered concurrently under the same logical path
            local_id = self.store.find_attachment_by_path(logical)
            if local_id is None:
                resolution.errors.append(f"Could not register attachment {logical}")
                return None
            resolution.reused += 1
        else:
            resolution.registered += 1

        self._path_cache[logical] = local_id
        if remote_row is not None:
            self.mapper.record_link(remote_row.source_id, tenant, ATTACHMENT, local_id, run_id)
        return local_id

    @staticmethod
    def _sizes(remote_row: SourceRow | None) -> Any:
        if remote_row is None:
            return None
        metadata = remote_row.meta("_wp_attachment_metadata")
        if isinstance(metadata, MetaMap):
            sizes = metadata.get("sizes")
            return sizes.to_python() if sizes is not None else None
        return None

    # ------------------------------------------------------------------
    # Re-attach featured resources of imported entries
    # ------------------------------------------------------------------

    def import_attachments(
        self, options: AttachmentImportOptions, cancel: CancellationToken | None = None
    ) -> AttachmentSummary:
        """Set featured attachments of already-imported entries of one tenant.

        The remote featured id comes from the local ``_thumbnail_id`` meta or,
        failing that, the stored source metadata snapshot.
        """
        summary = AttachmentSummary(dry_run=options.dry_run)
        tenant = max(1, int(options.tenant or 1))
        self.reset()

        for source_id, local_id in self.store.list_links(ENTRY, tenant):
            if cancel is not None and cancel.cancelled:
                summary.cancelled = True
                break

            entity = self.store.get_entity(local_id)
            if entity is None or (options.kinds and entity["kind"] not in options.kinds):
                continue

            summary.total += 1
            meta = self.store.get_entity_meta(local_id)
            snapshot = meta.get(SOURCE_META_KEY)
            remote_thumb = None
            if isinstance(snapshot, dict):
                remote_thumb = _positive_int(snapshot.get(THUMBNAIL_KEY))

            if remote_thumb is None:
                summary.skipped += 1
                continue

            try:
                attachment_id = self._linked(remote_thumb, tenant)
                if attachment_id is not None:
                    if not options.dry_run:
                        self._set_featured(local_id, attachment_id)
                    summary.attached += 1
                    continue

                remote = self.query.fetch_attachments_by_ids(
                    [remote_thumb], tenant, options.force_base_prefix
                )
                if remote_thumb not in remote:
                    summary.missing += 1
                    summary.warnings.append(
                        f"Remote attachment {remote_thumb} not found for entry {source_id}"
                    )
                    continue

                resolution = AttachmentResolution()
                attachment_id = self._resolve_id(
                    remote_thumb,
                    tenant,
                    remote[remote_thumb],
                    options.run_id,
                    local_id,
                    options.dry_run,
                    resolution,
                )
            except (MigrationError, IntegrityError) as e:
                summary.missing += 1
                summary.warnings.append(f"Entry {source_id}: {e}")
                continue

            if attachment_id is None:
                summary.missing += 1
                summary.warnings.append(
                    f"Could not register remote attachment {remote_thumb} for entry {source_id}"
                )
                continue

            if not options.dry_run:
                self._set_featured(local_id, attachment_id)
            summary.registered += 1

        logger.info("attachments_reattached", tenant=tenant, **summary.to_dict())
        return summary

    def _set_featured(self, entity_id: int, attachment_id: int) -> None:
        self.store.update_entity(entity_id, {"featured_attachment_id": attachment_id})
        self.store.set_entity_meta(entity_id, THUMBNAIL_KEY, attachment_id)
