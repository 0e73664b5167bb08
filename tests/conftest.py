"""Shared fixtures: a WordPress-like remote schema and a local content store.

The remote side is a SQLite file holding the base tables (``wp_posts``, ...)
and the tables of tenant 3 (``wp_3_posts``, ...). The local side is another
SQLite file initialized through the regular store setup.
"""

from pathlib import Path

import pytest
from sqlalchemy import create_engine, text

from wp_migration.client.source_client import RemoteSource
from wp_migration.client.tables import TableResolver
from wp_migration.config import TargetConfig
from wp_migration.migration.database import create_database_engine, init_database
from wp_migration.migration.query import RemoteQueryBuilder
from wp_migration.migration.state import IdentityMapper, RunCounter
from wp_migration.migration.store import SqlContentStore

OLD_BASE = "http://old.example/uploads"
NEW_BASE = "https://new.example/wp-content/uploads"

TENANT_TABLES = """
CREATE TABLE {p}posts (
    ID INTEGER PRIMARY KEY,
    post_author INTEGER NOT NULL DEFAULT 0,
    post_date TEXT NOT NULL DEFAULT '2024-01-01 00:00:00',
    post_date_gmt TEXT NOT NULL DEFAULT '2024-01-01 00:00:00',
    post_content TEXT NOT NULL DEFAULT '',
    post_title TEXT NOT NULL DEFAULT '',
    post_excerpt TEXT NOT NULL DEFAULT '',
    post_status TEXT NOT NULL DEFAULT 'publish',
    post_name TEXT NOT NULL DEFAULT '',
    post_modified TEXT NOT NULL DEFAULT '2024-01-01 00:00:00',
    post_modified_gmt TEXT NOT NULL DEFAULT '2024-01-01 00:00:00',
    post_parent INTEGER NOT NULL DEFAULT 0,
    guid TEXT NOT NULL DEFAULT '',
    post_type TEXT NOT NULL DEFAULT 'post',
    post_mime_type TEXT NOT NULL DEFAULT ''
);
CREATE TABLE {p}postmeta (
    meta_id INTEGER PRIMARY KEY AUTOINCREMENT,
    post_id INTEGER NOT NULL,
    meta_key TEXT,
    meta_value TEXT
);
CREATE TABLE {p}terms (
    term_id INTEGER PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    slug TEXT NOT NULL DEFAULT '',
    term_group INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE {p}term_taxonomy (
    term_taxonomy_id INTEGER PRIMARY KEY AUTOINCREMENT,
    term_id INTEGER NOT NULL,
    taxonomy TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    parent INTEGER NOT NULL DEFAULT 0,
    count INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE {p}term_relationships (
    object_id INTEGER NOT NULL,
    term_taxonomy_id INTEGER NOT NULL,
    term_order INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (object_id, term_taxonomy_id)
);
CREATE TABLE {p}termmeta (
    meta_id INTEGER PRIMARY KEY AUTOINCREMENT,
    term_id INTEGER NOT NULL,
    meta_key TEXT,
    meta_value TEXT
);
"""

GLOBAL_TABLES = """
CREATE TABLE wp_users (
    ID INTEGER PRIMARY KEY,
    user_login TEXT NOT NULL DEFAULT '',
    user_pass TEXT NOT NULL DEFAULT '',
    user_nicename TEXT NOT NULL DEFAULT '',
    user_email TEXT NOT NULL DEFAULT '',
    user_url TEXT NOT NULL DEFAULT '',
    user_registered TEXT NOT NULL DEFAULT '2020-01-01 00:00:00',
    user_activation_key TEXT NOT NULL DEFAULT '',
    user_status INTEGER NOT NULL DEFAULT 0,
    display_name TEXT NOT NULL DEFAULT ''
);
CREATE TABLE wp_usermeta (
    umeta_id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    meta_key TEXT,
    meta_value TEXT
);
"""

POST_DEFAULTS = {
    "post_author": 0,
    "post_date": "2024-01-01 00:00:00",
    "post_date_gmt": "2024-01-01 00:00:00",
    "post_content": "",
    "post_title": "",
    "post_excerpt": "",
    "post_status": "publish",
    "post_name": "",
    "post_modified": "2024-01-01 00:00:00",
    "post_modified_gmt": "2024-01-01 00:00:00",
    "post_parent": 0,
    "guid": "",
    "post_type": "post",
    "post_mime_type": "",
}

USER_DEFAULTS = {
    "user_pass": "",
    "user_nicename": "",
    "user_email": "",
    "user_url": "",
    "user_registered": "2020-01-01 00:00:00",
    "user_activation_key": "",
    "user_status": 0,
    "display_name": "",
}


class RemoteSite:
    """Writes fixture rows into the fake remote installation."""

    def __init__(self, engine):
        self.engine = engine
        self.tables = TableResolver("wp_", is_multi_tenant=True)

    def _insert(self, table: str, values: dict) -> None:
        columns = ", ".join(values)
        binds = ", ".join(f":{name}" for name in values)
        with self.engine.begin() as conn:
            conn.execute(text(f"INSERT INTO {table} ({columns}) VALUES ({binds})"), values)

    def add_post(self, post_id: int, tenant: int = 1, meta: dict | None = None, **fields) -> int:
        self._insert(self.tables.posts(tenant), {"ID": post_id, **POST_DEFAULTS, **fields})
        for key, value in (meta or {}).items():
            self.add_meta(post_id, key, value, tenant)
        return post_id

    def add_meta(self, post_id: int, key: str, value, tenant: int = 1) -> None:
        self._insert(
            self.tables.postmeta(tenant),
            {"post_id": post_id, "meta_key": key, "meta_value": value},
        )

    def add_attachment(
        self, post_id: int, attached_file: str, tenant: int = 1, metadata: str | None = None, **fields
    ) -> int:
        meta = {"_wp_attached_file": attached_file}
        if metadata is not None:
            meta["_wp_attachment_metadata"] = metadata
        return self.add_post(
            post_id,
            tenant,
            meta=meta,
            post_type="attachment",
            post_status="inherit",
            post_mime_type=fields.pop("post_mime_type", "image/jpeg"),
            **fields,
        )

    def add_term(
        self,
        term_id: int,
        name: str,
        slug: str,
        taxonomy: str = "category",
        parent: int = 0,
        tenant: int = 1,
        description: str = "",
    ) -> int:
        """Insert a term and its taxonomy row; returns the term_taxonomy_id."""
        tables = self.tables.terms_tables(tenant)
        self._insert(tables.terms, {"term_id": term_id, "name": name, "slug": slug})
        self._insert(
            tables.term_taxonomy,
            {"term_id": term_id, "taxonomy": taxonomy, "parent": parent, "description": description},
        )
        with self.engine.connect() as conn:
            return conn.execute(
                text(
                    f"SELECT term_taxonomy_id FROM {tables.term_taxonomy} "
                    "WHERE term_id = :term_id AND taxonomy = :taxonomy"
                ),
                {"term_id": term_id, "taxonomy": taxonomy},
            ).scalar_one()

    def add_term_meta(self, term_id: int, key: str, value: str, tenant: int = 1) -> None:
        self._insert(
            self.tables.terms_tables(tenant).termmeta,
            {"term_id": term_id, "meta_key": key, "meta_value": value},
        )

    def relate(self, object_id: int, term_taxonomy_id: int, tenant: int = 1) -> None:
        self._insert(
            self.tables.terms_tables(tenant).term_relationships,
            {"object_id": object_id, "term_taxonomy_id": term_taxonomy_id},
        )

    def add_user(self, user_id: int, login: str, meta: dict | None = None, **fields) -> int:
        self._insert("wp_users", {"ID": user_id, "user_login": login, **USER_DEFAULTS, **fields})
        for key, value in (meta or {}).items():
            self.add_user_meta(user_id, key, value)
        return user_id

    def add_user_meta(self, user_id: int, key: str, value: str) -> None:
        self._insert("wp_usermeta", {"user_id": user_id, "meta_key": key, "meta_value": value})


@pytest.fixture
def remote_engine(tmp_path: Path):
    engine = create_engine(f"sqlite:///{tmp_path / 'remote.db'}")
    with engine.begin() as conn:
        for prefix in ("wp_", "wp_3_"):
            for statement in TENANT_TABLES.format(p=prefix).split(";"):
                if statement.strip():
                    conn.execute(text(statement))
        for statement in GLOBAL_TABLES.split(";"):
            if statement.strip():
                conn.execute(text(statement))
    yield engine
    engine.dispose()


@pytest.fixture
def remote(remote_engine) -> RemoteSite:
    return RemoteSite(remote_engine)


@pytest.fixture
def source(remote_engine) -> RemoteSource:
    return RemoteSource(
        remote_engine, TableResolver("wp_", is_multi_tenant=True), media_base_url=OLD_BASE
    )


@pytest.fixture
def query(source: RemoteSource) -> RemoteQueryBuilder:
    return RemoteQueryBuilder(source)


@pytest.fixture
def local_engine(tmp_path: Path):
    engine = create_database_engine(f"sqlite:///{tmp_path / 'local.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(local_engine):
    return init_database(local_engine)


@pytest.fixture
def store(session_factory) -> SqlContentStore:
    return SqlContentStore(session_factory)


@pytest.fixture
def mapper(store: SqlContentStore) -> IdentityMapper:
    return IdentityMapper(store)


@pytest.fixture
def run_counter(store: SqlContentStore) -> RunCounter:
    return RunCounter(store)


@pytest.fixture
def uploads_dir(tmp_path: Path) -> Path:
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def target(uploads_dir: Path) -> TargetConfig:
    return TargetConfig(
        database_url="sqlite://",
        media_base_url=NEW_BASE,
        uploads_dir=str(uploads_dir),
        allowed_kinds=["post", "page", "article", "attachment"],
        taxonomies={
            "post": ["category", "post_tag"],
            "article": ["category", "post_tag"],
            "page": [],
        },
    )
