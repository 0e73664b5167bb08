"""Remote query builder.

Compiles a declarative :class:`FetchFilter` into parameterized SQL against
the tenant-resolved remote tables. Every value is a bound parameter (list
values use SQLAlchemy expanding binds); the only identifiers inlined into
statements are resolved table names and allow-listed column names.
"""

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, NamedTuple

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import bindparam, text
from sqlalchemy.sql.elements import TextClause

from wp_migration.client.exceptions import ConfigError, QueryError
from wp_migration.client.source_client import RemoteSource
from wp_migration.migration.metadata import MetaValue, decode_meta_value, merge_meta_rows
from wp_migration.utils.logging import get_logger

logger = get_logger(__name__)

STATUS_ANY = ("publish", "pending", "draft", "future", "private")
ORDERABLE_COLUMNS = ("ID", "post_date", "post_modified_gmt", "post_title")
TAX_FIELDS = ("slug", "name", "term_id")
META_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_\-:.]+$")
MAX_LIMIT = 100000
NO_LIMIT = 9223372036854775807
LIKE_ESCAPE = "!"

ATTACHMENT_META_KEYS = ("_wp_attached_file", "_wp_attachment_metadata", "_wp_attachment_image_alt")

_POST_COLUMNS = """
    p.ID AS id,
    p.post_type AS post_type,
    p.post_status AS post_status,
    p.post_title AS post_title,
    p.post_content AS post_content,
    p.post_excerpt AS post_excerpt,
    p.post_name AS post_name,
    p.post_date AS post_date,
    p.post_date_gmt AS post_date_gmt,
    p.post_modified AS post_modified,
    p.post_modified_gmt AS post_modified_gmt,
    p.post_parent AS post_parent,
    p.post_author AS post_author,
    p.guid AS guid,
    p.post_mime_type AS post_mime_type
"""


def escape_like(value: str) -> str:
    """Escape LIKE wildcards using ``!`` as the escape character."""
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", f"{LIKE_ESCAPE}%")
        .replace("_", f"{LIKE_ESCAPE}_")
    )


def normalize_timestamp(value: int | str) -> str:
    """Normalize an epoch or timestamp string to ``YYYY-MM-DD HH:MM:SS`` UTC.

    Naive timestamps are taken to be UTC already.

    Raises:
        QueryError: If the value cannot be parsed
    """
    try:
        if isinstance(value, int) or (isinstance(value, str) and value.strip().isdigit()):
            moment = datetime.fromtimestamp(int(value), UTC)
        else:
            moment = datetime.fromisoformat(str(value).strip())
            if moment.tzinfo is None:
                moment = moment.replace(tzinfo=UTC)
            moment = moment.astimezone(UTC)
    except (ValueError, OverflowError, OSError) as e:
        raise QueryError(f"Invalid timestamp: {value!r}") from e
    return moment.strftime("%Y-%m-%d %H:%M:%S")


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class TaxClause(BaseModel):
    """One taxonomy condition of a fetch filter."""

    taxonomy: str
    field: str = "slug"
    terms: list[str | int] = Field(default_factory=list)
    operator: Literal["IN", "NOT IN"] = "IN"

    @field_validator("terms", mode="before")
    @classmethod
    def split_terms(cls, v: Any) -> Any:
        return _split_csv(v)

    @field_validator("operator", mode="before")
    @classmethod
    def upper_operator(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class FetchFilter(BaseModel):
    """Declarative selection of remote entries.

    Identifier-like fields (``order_by``, ``meta_keys``, tax ``field``) are
    checked when the filter is compiled, before any I/O.
    """

    kinds: list[str] = Field(default_factory=lambda: ["post"])
    statuses: list[str] = Field(default_factory=lambda: ["publish"])
    include: list[int] | None = None
    exclude: list[int] = Field(default_factory=list)
    modified_after: int | str | None = None
    modified_before: int | str | None = None
    id_gte: int | None = None
    id_lte: int | None = None
    search: str = ""
    tax_query: list[TaxClause] = Field(default_factory=list)
    tax_relation: Literal["AND", "OR"] = "AND"
    order_by: str | None = None
    order: Literal["ASC", "DESC"] | None = None
    limit: int | None = Field(default=None, ge=1, le=MAX_LIMIT)
    offset: int = Field(default=0, ge=0)
    with_meta: bool = True
    meta_keys: list[str] = Field(default_factory=list)

    @field_validator("kinds", "meta_keys", mode="before")
    @classmethod
    def split_lists(cls, v: Any) -> Any:
        return _split_csv(v)

    @field_validator("statuses", mode="before")
    @classmethod
    def expand_any(cls, v: Any) -> Any:
        v = _split_csv(v)
        if isinstance(v, list) and "any" in v:
            return list(STATUS_ANY)
        return v

    @field_validator("include", mode="before")
    @classmethod
    def positive_include(cls, v: Any) -> Any:
        """An empty include list means "no include filter"; [0, -1] means "nothing"."""
        v = _split_csv(v)
        if not v:
            return None
        return [int(i) for i in v if int(i) > 0]

    @field_validator("exclude", mode="before")
    @classmethod
    def positive_exclude(cls, v: Any) -> Any:
        v = _split_csv(v) or []
        return [int(i) for i in v if int(i) > 0]

    @field_validator("order", "tax_relation", mode="before")
    @classmethod
    def upper_keywords(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    def has_modified_bound(self) -> bool:
        return self.modified_after is not None or self.modified_before is not None


@dataclass(frozen=True)
class SourceRow:
    """One remote entry, exactly as stored remotely plus its decoded metadata."""

    source_id: int
    tenant: int
    kind: str
    status: str
    title: str = ""
    body: str = ""
    excerpt: str = ""
    slug: str = ""
    created_at: str = ""
    created_at_gmt: str = ""
    modified_at: str = ""
    modified_at_gmt: str = ""
    parent_source_id: int = 0
    author_source_id: int = 0
    guid: str = ""
    mime_type: str = ""
    metadata: dict[str, MetaValue] = field(default_factory=dict)

    def meta(self, key: str) -> MetaValue | None:
        return self.metadata.get(key)

    def summary(self) -> dict[str, Any]:
        """Compact view for listings and hook payloads."""
        return {
            "id": self.source_id,
            "tenant": self.tenant,
            "kind": self.kind,
            "status": self.status,
            "title": self.title,
            "slug": self.slug,
            "modified_gmt": self.modified_at_gmt,
        }


class RemoteTerm(NamedTuple):
    """A term assigned to a remote entry."""

    term_id: int
    name: str
    slug: str


@dataclass
class TermNode:
    """A remote taxonomy term with its raw meta rows."""

    source_term_id: int
    name: str
    slug: str
    description: str
    parent_source_id: int
    taxonomy: str
    meta: list[tuple[str, str]] = field(default_factory=list)


def _date_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    return str(value)


def _row_to_source(row: dict[str, Any], tenant: int, meta: dict[str, MetaValue]) -> SourceRow:
    return SourceRow(
        source_id=int(row["id"]),
        tenant=tenant,
        kind=str(row["post_type"] or ""),
        status=str(row["post_status"] or ""),
        title=str(row["post_title"] or ""),
        body=str(row["post_content"] or ""),
        excerpt=str(row["post_excerpt"] or ""),
        slug=str(row["post_name"] or ""),
        created_at=_date_str(row["post_date"]),
        created_at_gmt=_date_str(row["post_date_gmt"]),
        modified_at=_date_str(row["post_modified"]),
        modified_at_gmt=_date_str(row["post_modified_gmt"]),
        parent_source_id=int(row["post_parent"] or 0),
        author_source_id=int(row["post_author"] or 0),
        guid=str(row["guid"] or ""),
        mime_type=str(row["post_mime_type"] or ""),
        metadata=meta,
    )


def _unique_ints(values: list[int] | tuple[int, ...] | set[int]) -> list[int]:
    return list(dict.fromkeys(int(v) for v in values if int(v) > 0))


class RemoteQueryBuilder:
    """Builds and runs the read queries of a migration run.

    Args:
        source: Remote source handle (engine plus table resolver)
    """

    def __init__(self, source: RemoteSource):
        self.source = source
        self.tables = source.tables

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def compile(
        self,
        flt: FetchFilter,
        tenant: int | None,
        force_base_prefix: bool = False,
    ) -> tuple[TextClause, dict[str, Any]]:
        """Compile a filter into a statement and its parameters.

        Raises:
            ConfigError: If an identifier is not allow-listed
            QueryError: If a filter value is malformed
        """
        self._validate_identifiers(flt)

        posts = self.tables.posts(tenant, force_base_prefix)
        term_tables = self.tables.terms_tables(tenant, force_base_prefix)

        where: list[str] = []
        params: dict[str, Any] = {}
        expanding: list[str] = []

        where.append("p.post_type IN :kinds")
        params["kinds"] = list(flt.kinds) or ["post"]
        expanding.append("kinds")

        where.append("p.post_status IN :statuses")
        params["statuses"] = list(flt.statuses) or ["publish"]
        expanding.append("statuses")

        if flt.include is not None:
            if flt.include:
                where.append("p.ID IN :include")
                params["include"] = flt.include
                expanding.append("include")
            else:
                where.append("1=0")

        if flt.exclude:
            where.append("p.ID NOT IN :exclude")
            params["exclude"] = flt.exclude
            expanding.append("exclude")

        if flt.modified_after is not None:
            where.append("p.post_modified_gmt > :modified_after")
            params["modified_after"] = normalize_timestamp(flt.modified_after)

        if flt.modified_before is not None:
            where.append("p.post_modified_gmt < :modified_before")
            params["modified_before"] = normalize_timestamp(flt.modified_before)

        if flt.id_gte is not None:
            where.append("p.ID >= :id_gte")
            params["id_gte"] = int(flt.id_gte)

        if flt.id_lte is not None:
            where.append("p.ID <= :id_lte")
            params["id_lte"] = int(flt.id_lte)

        if flt.search:
            where.append(
                f"(p.post_title LIKE :search ESCAPE '{LIKE_ESCAPE}' "
                f"OR p.post_content LIKE :search ESCAPE '{LIKE_ESCAPE}')"
            )
            params["search"] = f"%{escape_like(flt.search)}%"

        if flt.tax_query:
            tax_sql = []
            for index, clause in enumerate(flt.tax_query):
                tax_sql.append(self._tax_exists(index, clause, term_tables, params, expanding))
            joiner = f" {flt.tax_relation} "
            where.append("(" + joiner.join(tax_sql) + ")")

        order_sql = self._order_clause(flt)

        limit = flt.limit if flt.limit is not None else (NO_LIMIT if flt.offset else None)
        page_sql = ""
        if limit is not None:
            page_sql = " LIMIT :limit OFFSET :offset"
            params["limit"] = int(limit)
            params["offset"] = int(flt.offset)

        sql = (
            f"SELECT {_POST_COLUMNS} FROM {posts} p "
            f"WHERE {' AND '.join(where)} ORDER BY {order_sql}{page_sql}"
        )

        statement = text(sql).bindparams(*(bindparam(name, expanding=True) for name in expanding))
        return statement, params

    def _validate_identifiers(self, flt: FetchFilter) -> None:
        if flt.order_by is not None and flt.order_by not in ORDERABLE_COLUMNS:
            raise ConfigError(
                "order_by is not allowed",
                details={"order_by": flt.order_by, "allowed": ",".join(ORDERABLE_COLUMNS)},
            )
        for key in flt.meta_keys:
            if not META_KEY_PATTERN.match(key):
                raise ConfigError("Invalid meta key", details={"meta_key": key})
        for clause in flt.tax_query:
            if clause.field not in TAX_FIELDS:
                raise ConfigError(
                    "Invalid tax_query field",
                    details={"field": clause.field, "allowed": ",".join(TAX_FIELDS)},
                )

    @staticmethod
    def _order_clause(flt: FetchFilter) -> str:
        if flt.order_by is None:
            if flt.has_modified_bound():
                column, direction = "post_modified_gmt", flt.order or "ASC"
            else:
                column, direction = "post_date", flt.order or "DESC"
        else:
            column, direction = flt.order_by, flt.order or "DESC"

        if column == "ID":
            return f"p.ID {direction}"
        return f"p.{column} {direction}, p.ID {direction}"

    @staticmethod
    def _tax_exists(
        index: int,
        clause: TaxClause,
        term_tables: Any,
        params: dict[str, Any],
        expanding: list[str],
    ) -> str:
        terms = [t for t in clause.terms if str(t).strip() != ""]
        if clause.field == "term_id":
            try:
                terms = [int(t) for t in terms]
            except ValueError as e:
                raise QueryError(
                    "term_id tax clause requires integer terms",
                    details={"taxonomy": clause.taxonomy},
                ) from e

        if not terms:
            return "1=0" if clause.operator == "IN" else "1=1"

        tax_name, terms_name = f"tax_{index}", f"tax_terms_{index}"
        params[tax_name] = clause.taxonomy
        params[terms_name] = terms
        expanding.append(terms_name)

        exists = (
            f"EXISTS (SELECT 1 FROM {term_tables.term_relationships} tr{index} "
            f"JOIN {term_tables.term_taxonomy} tt{index} "
            f"ON tt{index}.term_taxonomy_id = tr{index}.term_taxonomy_id "
            f"JOIN {term_tables.terms} t{index} ON t{index}.term_id = tt{index}.term_id "
            f"WHERE tr{index}.object_id = p.ID AND tt{index}.taxonomy = :{tax_name} "
            f"AND t{index}.{clause.field} IN :{terms_name})"
        )
        return exists if clause.operator == "IN" else f"NOT {exists}"

    def fetch_rows(
        self, flt: FetchFilter, tenant: int | None, force_base_prefix: bool = False
    ) -> list[SourceRow]:
        """Fetch entries matching ``flt``, with metadata when requested.

        One query for the rows and one for their metadata; the two are joined
        in memory.
        """
        statement, params = self.compile(flt, tenant, force_base_prefix=force_base_prefix)
        rows = self.source.fetch_all(statement, params)

        tenant_id = int(tenant or 1)
        meta: dict[int, dict[str, MetaValue]] = {}
        if rows and flt.with_meta:
            meta = self.fetch_meta(
                [int(row["id"]) for row in rows], tenant, flt.meta_keys, force_base_prefix
            )

        logger.debug("remote_rows_fetched", tenant=tenant_id, count=len(rows))
        return [_row_to_source(row, tenant_id, meta.get(int(row["id"]), {})) for row in rows]

    def fetch_meta(
        self,
        ids: list[int],
        tenant: int | None,
        keys: list[str] | tuple[str, ...] | None = None,
        force_base_prefix: bool = False,
    ) -> dict[int, dict[str, MetaValue]]:
        """Metadata of the given entries; repeated keys become MetaList values."""
        ids = _unique_ints(ids)
        if not ids:
            return {}

        for key in keys or ():
            if not META_KEY_PATTERN.match(key):
                raise ConfigError("Invalid meta key", details={"meta_key": key})

        postmeta = self.tables.postmeta(tenant, force_base_prefix)
        sql = (
            f"SELECT pm.post_id AS post_id, pm.meta_key AS meta_key, pm.meta_value AS meta_value "
            f"FROM {postmeta} pm WHERE pm.post_id IN :ids"
        )
        binds = [bindparam("ids", expanding=True)]
        params: dict[str, Any] = {"ids": ids}
        if keys:
            sql += " AND pm.meta_key IN :keys"
            binds.append(bindparam("keys", expanding=True))
            params["keys"] = list(keys)
        sql += " ORDER BY pm.post_id ASC, pm.meta_id ASC"

        grouped: dict[int, list[tuple[str, Any]]] = {}
        for row in self.source.fetch_all(text(sql).bindparams(*binds), params):
            grouped.setdefault(int(row["post_id"]), []).append(
                (str(row["meta_key"]), row["meta_value"])
            )
        return {post_id: merge_meta_rows(pairs) for post_id, pairs in grouped.items()}

    def fetch_terms_for_entries(
        self,
        ids: list[int],
        tenant: int | None,
        taxonomies: list[str] | None = None,
        force_base_prefix: bool = False,
    ) -> dict[int, dict[str, list[RemoteTerm]]]:
        """Terms assigned to each entry, grouped by taxonomy."""
        ids = _unique_ints(ids)
        if not ids:
            return {}

        tables = self.tables.terms_tables(tenant, force_base_prefix)
        sql = (
            f"SELECT tr.object_id AS entry_id, tt.taxonomy AS taxonomy, t.term_id AS term_id, "
            f"t.name AS name, t.slug AS slug "
            f"FROM {tables.term_taxonomy} tt "
            f"JOIN {tables.term_relationships} tr ON tr.term_taxonomy_id = tt.term_taxonomy_id "
            f"JOIN {tables.terms} t ON t.term_id = tt.term_id "
            f"WHERE tr.object_id IN :ids"
        )
        binds = [bindparam("ids", expanding=True)]
        params: dict[str, Any] = {"ids": ids}
        if taxonomies:
            sql += " AND tt.taxonomy IN :taxonomies"
            binds.append(bindparam("taxonomies", expanding=True))
            params["taxonomies"] = list(taxonomies)
        sql += " ORDER BY tr.object_id ASC, t.term_id ASC"

        out: dict[int, dict[str, list[RemoteTerm]]] = {}
        for row in self.source.fetch_all(text(sql).bindparams(*binds), params):
            out.setdefault(int(row["entry_id"]), {}).setdefault(str(row["taxonomy"]), []).append(
                RemoteTerm(int(row["term_id"]), str(row["name"] or ""), str(row["slug"] or ""))
            )
        return out

    # ------------------------------------------------------------------
    # Terms
    # ------------------------------------------------------------------

    def fetch_term_index(
        self,
        tenant: int | None,
        taxonomies: list[str] | None = None,
        include_ids: list[int] | None = None,
        exclude_ids: list[int] | None = None,
        force_base_prefix: bool = False,
    ) -> list[tuple[int, int]]:
        """``(term_id, parent_term_id)`` pairs ordered by ``parent ASC, term_id ASC``."""
        tables = self.tables.terms_tables(tenant, force_base_prefix)
        where: list[str] = []
        binds = []
        params: dict[str, Any] = {}

        if taxonomies:
            where.append("tt.taxonomy IN :taxonomies")
            binds.append(bindparam("taxonomies", expanding=True))
            params["taxonomies"] = list(taxonomies)

        include = _unique_ints(include_ids or [])
        if include:
            where.append("t.term_id IN :include")
            binds.append(bindparam("include", expanding=True))
            params["include"] = include

        exclude = _unique_ints(exclude_ids or [])
        if exclude:
            where.append("t.term_id NOT IN :exclude")
            binds.append(bindparam("exclude", expanding=True))
            params["exclude"] = exclude

        sql = (
            f"SELECT t.term_id AS term_id, tt.parent AS parent FROM {tables.terms} t "
            f"JOIN {tables.term_taxonomy} tt ON tt.term_id = t.term_id"
        )
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY tt.parent ASC, t.term_id ASC"

        rows = self.source.fetch_all(text(sql).bindparams(*binds), params)
        return [(int(row["term_id"]), int(row["parent"] or 0)) for row in rows]

    def fetch_term_rows(
        self, ids: list[int], tenant: int | None, force_base_prefix: bool = False
    ) -> list[TermNode]:
        """Term rows (one per taxonomy assignment) with their meta attached."""
        ids = _unique_ints(ids)
        if not ids:
            return []

        tables = self.tables.terms_tables(tenant, force_base_prefix)
        sql = (
            f"SELECT t.term_id AS term_id, t.name AS name, t.slug AS slug, "
            f"tt.taxonomy AS taxonomy, tt.description AS description, tt.parent AS parent "
            f"FROM {tables.terms} t JOIN {tables.term_taxonomy} tt ON tt.term_id = t.term_id "
            f"WHERE t.term_id IN :ids ORDER BY tt.parent ASC, t.term_id ASC"
        )
        rows = self.source.fetch_all(
            text(sql).bindparams(bindparam("ids", expanding=True)), {"ids": ids}
        )
        meta = self.fetch_term_meta(ids, tenant, force_base_prefix)

        return [
            TermNode(
                source_term_id=int(row["term_id"]),
                name=str(row["name"] or ""),
                slug=str(row["slug"] or ""),
                description=str(row["description"] or ""),
                parent_source_id=int(row["parent"] or 0),
                taxonomy=str(row["taxonomy"] or ""),
                meta=list(meta.get(int(row["term_id"]), [])),
            )
            for row in rows
        ]

    def fetch_term_meta(
        self, ids: list[int], tenant: int | None, force_base_prefix: bool = False
    ) -> dict[int, list[tuple[str, str]]]:
        ids = _unique_ints(ids)
        if not ids:
            return {}

        termmeta = self.tables.terms_tables(tenant, force_base_prefix).termmeta
        sql = (
            f"SELECT tm.term_id AS term_id, tm.meta_key AS meta_key, tm.meta_value AS meta_value "
            f"FROM {termmeta} tm WHERE tm.term_id IN :ids ORDER BY tm.meta_id ASC"
        )
        out: dict[int, list[tuple[str, str]]] = {}
        for row in self.source.fetch_all(
            text(sql).bindparams(bindparam("ids", expanding=True)), {"ids": ids}
        ):
            key = str(row["meta_key"] or "")
            if key:
                out.setdefault(int(row["term_id"]), []).append((key, str(row["meta_value"] or "")))
        return out

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def fetch_attachments_by_ids(
        self, ids: list[int], tenant: int | None, force_base_prefix: bool = False
    ) -> dict[int, SourceRow]:
        """Remote attachment rows with their file and size-manifest metadata."""
        ids = _unique_ints(ids)
        if not ids:
            return {}

        posts = self.tables.posts(tenant, force_base_prefix)
        sql = (
            f"SELECT {_POST_COLUMNS} FROM {posts} p "
            f"WHERE p.ID IN :ids AND p.post_type = 'attachment' ORDER BY p.ID ASC"
        )
        rows = self.source.fetch_all(
            text(sql).bindparams(bindparam("ids", expanding=True)), {"ids": ids}
        )
        meta = self.fetch_meta(
            [int(row["id"]) for row in rows], tenant, ATTACHMENT_META_KEYS, force_base_prefix
        )
        tenant_id = int(tenant or 1)
        return {
            int(row["id"]): _row_to_source(row, tenant_id, meta.get(int(row["id"]), {}))
            for row in rows
        }

    def fetch_attachment_ids_by_files(
        self, files: list[str], tenant: int | None, force_base_prefix: bool = False
    ) -> dict[str, int]:
        """Map ``_wp_attached_file`` values to remote attachment ids."""
        files = list(dict.fromkeys(f for f in files if f))
        if not files:
            return {}

        postmeta = self.tables.postmeta(tenant, force_base_prefix)
        sql = (
            f"SELECT pm.post_id AS post_id, pm.meta_value AS meta_value FROM {postmeta} pm "
            f"WHERE pm.meta_key = '_wp_attached_file' AND pm.meta_value IN :files "
            f"ORDER BY pm.post_id ASC"
        )
        out: dict[str, int] = {}
        for row in self.source.fetch_all(
            text(sql).bindparams(bindparam("files", expanding=True)), {"files": files}
        ):
            out.setdefault(str(row["meta_value"]), int(row["post_id"]))
        return out

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def fetch_user_ids(
        self,
        tenant: int | None,
        include_ids: list[int] | None = None,
        exclude_ids: list[int] | None = None,
    ) -> list[int]:
        """User ids; for tenants other than the base site only users with a role there."""
        users, usermeta = self.tables.users(), self.tables.usermeta()
        sql = f"SELECT DISTINCT u.ID AS id FROM {users} u"
        where: list[str] = []
        binds = []
        params: dict[str, Any] = {}

        if not self.tables.uses_base(tenant):
            sql += f" JOIN {usermeta} um ON um.user_id = u.ID AND um.meta_key = :cap_key"
            params["cap_key"] = self.tables.capabilities_key(tenant)

        include = _unique_ints(include_ids or [])
        if include:
            where.append("u.ID IN :include")
            binds.append(bindparam("include", expanding=True))
            params["include"] = include

        exclude = _unique_ints(exclude_ids or [])
        if exclude:
            where.append("u.ID NOT IN :exclude")
            binds.append(bindparam("exclude", expanding=True))
            params["exclude"] = exclude

        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY u.ID ASC"

        return [int(row["id"]) for row in self.source.fetch_all(text(sql).bindparams(*binds), params)]

    def fetch_users(self, ids: list[int]) -> list[dict[str, Any]]:
        ids = _unique_ints(ids)
        if not ids:
            return []

        sql = (
            f"SELECT u.ID AS id, u.user_login AS user_login, u.user_pass AS user_pass, "
            f"u.user_nicename AS user_nicename, u.user_email AS user_email, "
            f"u.user_url AS user_url, u.user_registered AS user_registered, "
            f"u.user_activation_key AS user_activation_key, u.user_status AS user_status, "
            f"u.display_name AS display_name "
            f"FROM {self.tables.users()} u WHERE u.ID IN :ids ORDER BY u.ID ASC"
        )
        return self.source.fetch_all(
            text(sql).bindparams(bindparam("ids", expanding=True)), {"ids": ids}
        )

    def fetch_user_meta(self, ids: list[int]) -> dict[int, list[tuple[str, MetaValue]]]:
        """Decoded user meta rows in storage order."""
        ids = _unique_ints(ids)
        if not ids:
            return {}

        sql = (
            f"SELECT um.user_id AS user_id, um.meta_key AS meta_key, um.meta_value AS meta_value "
            f"FROM {self.tables.usermeta()} um WHERE um.user_id IN :ids ORDER BY um.umeta_id ASC"
        )
        out: dict[int, list[tuple[str, MetaValue]]] = {}
        for row in self.source.fetch_all(
            text(sql).bindparams(bindparam("ids", expanding=True)), {"ids": ids}
        ):
            out.setdefault(int(row["user_id"]), []).append(
                (str(row["meta_key"]), decode_meta_value(row["meta_value"]))
            )
        return out
