"""User import.

Remote users are global to the source installation; for a tenant other than
the base site only users holding a role on that tenant are selected. The
remote password hash, activation key and status are preserved so imported
users keep their credentials.
"""

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import IntegrityError

from wp_migration.client.exceptions import MigrationError
from wp_migration.client.source_client import CancellationToken
from wp_migration.client.tables import TableResolver
from wp_migration.migration.metadata import MetaList, MetaValue
from wp_migration.migration.query import RemoteQueryBuilder
from wp_migration.migration.state import USER, IdentityMapper
from wp_migration.migration.store import ContentStore
from wp_migration.migration.terms import RESERVED_KEYS, SOURCE_ID_KEY, SOURCE_TENANT_KEY
from wp_migration.utils.logging import get_logger

logger = get_logger(__name__)

LOCAL_META_PREFIX = "wp_"
SOURCE_META_KEY = "_migration_source_meta"
MAX_LOGIN_SUFFIX = 1000


@dataclass
class UserImportOptions:
    tenant: int = 1
    include_ids: list[int] = field(default_factory=list)
    exclude_ids: list[int] = field(default_factory=list)
    chunk_size: int = 500
    dry_run: bool = False
    skip_logins: list[str] = field(default_factory=list)
    run_id: int | None = None


@dataclass
class UserImportSummary:
    found: int = 0
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    errors: dict[int, list[str]] = field(default_factory=dict)
    map: dict[int, int] = field(default_factory=dict)
    remote_users: list[dict[str, Any]] = field(default_factory=list)
    dry_run: bool = False
    cancelled: bool = False

    def add_error(self, source_id: int, message: str) -> None:
        self.errors.setdefault(source_id, []).append(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "found": self.found,
            "imported": self.imported,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": {str(k): v for k, v in self.errors.items()},
            "map": {str(k): v for k, v in self.map.items()},
            "remote_users": list(self.remote_users),
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
        }


def normalize_tenant_meta(
    pairs: list[tuple[str, MetaValue]], tenant_prefix: str | None, local_prefix: str = LOCAL_META_PREFIX
) -> list[tuple[str, MetaValue]]:
    """Keep every pair and add a local-prefix copy of tenant-scoped keys.

    ``wp_3_capabilities`` is kept as is and also written as ``wp_capabilities``
    so the user holds the same role on a single-site target.
    """
    if not tenant_prefix:
        return list(pairs)

    out = []
    for key, value in pairs:
        out.append((key, value))
        if key.startswith(tenant_prefix):
            out.append((local_prefix + key[len(tenant_prefix) :], value))
    return out


def meta_snapshot(pairs: list[tuple[str, MetaValue]]) -> dict[str, Any]:
    """Plain-Python snapshot of all source meta; repeated keys become lists."""
    grouped: dict[str, list[MetaValue]] = {}
    for key, value in pairs:
        grouped.setdefault(key, []).append(value)
    return {
        key: (values[0] if len(values) == 1 else MetaList(tuple(values))).to_python()
        for key, values in grouped.items()
    }


class UserImporter:
    """Imports remote users and their meta into the local store."""

    def __init__(
        self,
        query: RemoteQueryBuilder,
        store: ContentStore,
        mapper: IdentityMapper,
        skip_logins: list[str] | None = None,
    ):
        self.query = query
        self.store = store
        self.mapper = mapper
        self.tables: TableResolver = query.tables
        self.skip_logins = set(skip_logins or [])

    def import_users(
        self, options: UserImportOptions, cancel: CancellationToken | None = None
    ) -> UserImportSummary:
        """Import the users selected by ``options``.

        Per-user failures are collected in ``summary.errors``.
        """
        summary = UserImportSummary(dry_run=options.dry_run)
        tenant = max(1, int(options.tenant or 1))
        skip = self.skip_logins | set(options.skip_logins)

        remote_ids = self.query.fetch_user_ids(tenant, options.include_ids, options.exclude_ids)
        summary.found = len(remote_ids)
        logger.info("user_import_started", tenant=tenant, found=summary.found, dry_run=options.dry_run)

        chunk = max(1, int(options.chunk_size))
        for start in range(0, len(remote_ids), chunk):
            if cancel is not None and cancel.cancelled:
                summary.cancelled = True
                break

            ids = remote_ids[start : start + chunk]
            rows = self.query.fetch_users(ids)
            meta = self.query.fetch_user_meta(ids)

            for row in rows:
                rid = int(row["id"])
                login = str(row["user_login"] or "")
                if login in skip:
                    summary.skipped += 1
                    continue

                summary.remote_users.append(
                    {"id": rid, "login": login, "email": str(row["user_email"] or "")}
                )
                try:
                    local_id, is_new = self._import_row(
                        row, meta.get(rid, []), tenant, options.dry_run, options.run_id
                    )
                except (MigrationError, IntegrityError) as e:
                    summary.add_error(rid, f"Failed to import user: {e}")
                    logger.warning("user_import_failed", source_id=rid, error=str(e))
                    continue

                if options.dry_run:
                    if local_id:
                        summary.map[rid] = local_id
                    continue

                summary.map[rid] = local_id
                if is_new:
                    summary.imported += 1
                else:
                    summary.updated += 1

        logger.info(
            "user_import_completed",
            tenant=tenant,
            found=summary.found,
            imported=summary.imported,
            updated=summary.updated,
            errors=len(summary.errors),
        )
        return summary

    def import_user(self, source_id: int, tenant: int = 1, dry_run: bool = False) -> int | None:
        """Import one remote user (author mapping).

        Returns:
            Local user id, the existing match in dry-run, or None if the
            remote user does not exist or is skipped
        """
        tenant = max(1, int(tenant or 1))
        linked = self.mapper.find_live(source_id, tenant, USER, self.store.get_user)
        if linked is not None:
            return linked

        rows = self.query.fetch_users([source_id])
        if not rows:
            return None
        row = rows[0]
        if str(row["user_login"] or "") in self.skip_logins:
            return None

        meta = self.query.fetch_user_meta([source_id]).get(int(source_id), [])
        local_id, _ = self._import_row(row, meta, tenant, dry_run, None)
        return local_id or None

    def find_local_user(self, row: dict[str, Any], tenant: int) -> int | None:
        """Existing local user by identity link, then login, then email."""
        rid = int(row["id"])
        linked = self.mapper.find_live(rid, tenant, USER, self.store.get_user)
        if linked is not None:
            return linked
        return self.store.find_user(
            login=str(row["user_login"] or ""), email=str(row["user_email"] or "")
        )

    def _import_row(
        self,
        row: dict[str, Any],
        pairs: list[tuple[str, MetaValue]],
        tenant: int,
        dry_run: bool,
        run_id: int | None,
    ) -> tuple[int, bool]:
        rid = int(row["id"])
        local_id = self.find_local_user(row, tenant)

        if dry_run:
            return local_id or 0, local_id is None

        profile = {
            "nicename": str(row["user_nicename"] or ""),
            "url": str(row["user_url"] or ""),
            "display_name": str(row["display_name"] or ""),
        }
        registered = row.get("user_registered")
        if registered:
            profile["registered_at"] = str(registered)[:19]

        is_new = local_id is None
        if is_new:
            local_id = self.store.create_user(
                {
                    "login": self._unique_login(str(row["user_login"] or f"user{rid}")),
                    "email": str(row["user_email"] or ""),
                    "password_hash": str(row["user_pass"] or ""),
                    "activation_key": str(row["user_activation_key"] or ""),
                    "status": int(row["user_status"] or 0),
                    **profile,
                }
            )
            logger.debug("user_created", source_id=rid, local_id=local_id)
        else:
            self.store.update_user(local_id, profile)

        for key, value in normalize_tenant_meta(pairs, self.tables.tenant_meta_prefix(tenant)):
            if not key or key in RESERVED_KEYS or key == SOURCE_META_KEY:
                continue
            self.store.set_user_meta(local_id, key, value.to_python())

        self.store.set_user_meta(local_id, SOURCE_ID_KEY, rid)
        self.store.set_user_meta(local_id, SOURCE_TENANT_KEY, tenant)
        self.store.set_user_meta(local_id, SOURCE_META_KEY, meta_snapshot(pairs))

        local_id = self.mapper.record_link(rid, tenant, USER, local_id, run_id)
        return local_id, is_new

    def _unique_login(self, login: str) -> str:
        candidate = login
        for suffix in range(1, MAX_LOGIN_SUFFIX + 1):
            if self.store.find_user(login=candidate) is None:
                return candidate
            candidate = f"{login}_{suffix}"
        raise MigrationError("Could not find a free login", details={"login": login})
