"""Tests for the entry importer run loop."""

import threading
import time

import pytest
from sqlalchemy import func, select

from wp_migration.client.exceptions import ConfigError
from wp_migration.client.source_client import CancellationToken
from wp_migration.migration.attachments import AttachmentResolver
from wp_migration.migration.hooks import resolve_hook
from wp_migration.migration.importer import EntryImporter, RunOptions
from wp_migration.migration.models import Entity
from wp_migration.migration.query import FetchFilter
from wp_migration.migration.state import ENTRY, USER
from wp_migration.migration.terms import SOURCE_ID_KEY, SOURCE_TENANT_KEY
from wp_migration.migration.users import UserImporter

from .conftest import NEW_BASE, OLD_BASE

FEB = "2024-02-01 10:00:00"


@pytest.fixture
def importer(query, store, mapper, target, run_counter):
    return EntryImporter(
        query,
        store,
        mapper,
        target,
        run_counter,
        users=UserImporter(query, store, mapper),
        attachments=AttachmentResolver(query, store, mapper, target, old_base=OLD_BASE),
        chunk_size=2,
        old_media_base_url=OLD_BASE,
    )


def _articles(remote, tenant=1):
    for post_id in (11, 12, 13):
        remote.add_post(
            post_id,
            tenant=tenant,
            post_type="article",
            post_title=f"Article {post_id}",
            post_modified_gmt=FEB,
        )
    remote.add_post(14, tenant=tenant, post_type="article", post_status="draft", post_modified_gmt=FEB)
    remote.add_post(15, tenant=tenant, post_type="article", post_title="Old")


def _article_filter(**overrides):
    values = {
        "kinds": ["article"],
        "statuses": ["publish"],
        "modified_after": "2024-01-01T00:00:00Z",
        "limit": 50,
    }
    values.update(overrides)
    return FetchFilter(**values)


def _entity_count(session_factory):
    with session_factory() as session:
        return session.scalar(select(func.count()).select_from(Entity))


def test_invalid_write_mode():
    with pytest.raises(ConfigError):
        RunOptions(write_mode="merge")


class TestRunImport:
    def test_filtered_upsert_with_pre_linked_row(self, remote, importer, store, mapper):
        _articles(remote)
        linked = store.create_entity({"kind": "article", "title": "Stale"})
        mapper.record_link(12, 1, ENTRY, linked)

        summary = importer.run_import(RunOptions(fetch=_article_filter()))

        assert (summary.found, summary.imported, summary.updated, summary.skipped) == (3, 2, 1, 0)
        assert summary.errors == []
        assert summary.run_id == 1
        assert summary.map[12] == linked
        assert store.get_entity(linked)["title"] == "Article 12"
        assert sorted(summary.map) == [11, 12, 13]

        entity = store.get_entity(summary.map[11])
        assert entity["kind"] == "article"
        assert entity["run_id"] == 1
        meta = store.get_entity_meta(summary.map[11])
        assert meta[SOURCE_ID_KEY] == 11
        assert meta[SOURCE_TENANT_KEY] == 1
        assert meta["_migration_source_meta"] == {"post_type": "article"}

    def test_rerun_is_idempotent(self, remote, importer, store):
        _articles(remote)

        first = importer.run_import(RunOptions(fetch=_article_filter()))
        second = importer.run_import(RunOptions(fetch=_article_filter()))

        assert (second.imported, second.updated) == (0, 3)
        assert second.map == first.map
        assert second.run_id == 2
        assert len(store.list_links(ENTRY, 1)) == 3

    def test_insert_mode_skips_mapped_rows(self, remote, importer, store, mapper):
        _articles(remote)
        mapper.record_link(11, 1, ENTRY, store.create_entity({"kind": "article"}))

        summary = importer.run_import(RunOptions(fetch=_article_filter(), write_mode="insert"))

        assert (summary.imported, summary.updated, summary.skipped) == (2, 0, 1)

    def test_update_mode_skips_unmapped_rows(self, remote, importer, store, mapper):
        _articles(remote)
        mapper.record_link(11, 1, ENTRY, store.create_entity({"kind": "article"}))

        summary = importer.run_import(RunOptions(fetch=_article_filter(), write_mode="update"))

        assert (summary.imported, summary.updated, summary.skipped) == (0, 1, 2)

    def test_dry_run_writes_nothing(self, remote, importer, store, run_counter):
        _articles(remote)

        summary = importer.run_import(RunOptions(fetch=_article_filter(), dry_run=True))

        assert summary.would_import == 3
        assert summary.imported == 0
        assert summary.run_id is None
        assert summary.map == {11: 0, 12: 0, 13: 0}
        assert store.list_links(ENTRY, 1) == []
        assert run_counter.current() == 0

    def test_dry_run_reports_every_stage(
        self, remote, importer, store, uploads_dir, session_factory
    ):
        (uploads_dir / "2024" / "01").mkdir(parents=True)
        (uploads_dir / "2024" / "01" / "x.jpg").write_bytes(b"jpeg")
        remote.add_attachment(10, "2024/01/x.jpg")
        news = remote.add_term(5, "News", "news")
        remote.add_post(
            1,
            meta={"_thumbnail_id": "10", "color": "red"},
            post_content=f'<img src="{OLD_BASE}/2024/01/x.jpg">',
        )
        remote.relate(1, news)

        summary = importer.run_import(
            RunOptions(
                dry_run=True,
                term_add={"post_tag": ["Extra"]},
                meta_ops={"rating": 5, "color": None},
                post_hooks=[resolve_hook("add_term:post_tag:Migrated", "post")],
            )
        )

        assert summary.errors == []
        assert summary.would_import == 1
        assert summary.map == {1: 0}
        assert summary.thumbnails_set == 1
        assert summary.content_rewritten == 1
        assert summary.registered >= 1

        assert store.find_term("category", slug="news") is None
        assert store.find_term("post_tag", slug="extra") is None
        assert store.find_term("post_tag", slug="migrated") is None
        assert store.find_attachment_by_path("2024/01/x.jpg") is None
        assert store.list_links(ENTRY, 1) == []
        assert _entity_count(session_factory) == 0

    def test_dry_run_of_mapped_row_leaves_it_untouched(self, remote, importer, store, mapper):
        remote.add_post(1, post_title="Remote title", meta={"color": "red"})
        local_id = store.create_entity({"kind": "post", "title": "Local title"})
        store.set_entity_meta(local_id, "color", "blue")
        mapper.record_link(1, 1, ENTRY, local_id)

        summary = importer.run_import(
            RunOptions(dry_run=True, term_set={"category": ["Fresh"]}, meta_ops={"color": None})
        )

        assert summary.would_update == 1
        assert summary.map == {1: local_id}
        assert store.get_entity(local_id)["title"] == "Local title"
        assert store.get_entity_meta(local_id) == {"color": "blue"}
        assert store.find_term("category", slug="fresh") is None

    def test_reimport_after_local_entity_was_deleted(
        self, remote, importer, store, mapper, session_factory
    ):
        remote.add_post(11)
        remote.add_post(12)
        ordered = RunOptions(fetch=FetchFilter(order_by="ID", order="ASC"))

        first = importer.run_import(ordered)
        store.delete_entity(first.map[11])
        second = importer.run_import(ordered)
        third = importer.run_import(ordered)

        assert second.errors == [] and third.errors == []
        assert (second.imported, second.updated) == (1, 1)
        assert (third.imported, third.updated) == (0, 2)

        replacement = second.map[11]
        assert replacement != first.map[11]
        assert store.get_entity(replacement) is not None
        assert third.map == second.map
        assert mapper.find_local(11, 1, ENTRY) == replacement
        assert store.list_links(ENTRY, 1) == [(11, replacement), (12, first.map[12])]
        assert store.get_entity_meta(replacement)[SOURCE_ID_KEY] == 11
        assert _entity_count(session_factory) == 2

    def test_hostile_meta_does_not_stop_the_batch(self, remote, importer, store):
        nested = "a:1:{i:0;" * 3000 + "i:1;" + "}" * 3000
        remote.add_post(1, meta={"deep": nested})
        remote.add_post(2)

        summary = importer.run_import(RunOptions())

        assert summary.errors == []
        assert summary.imported == 2
        assert store.get_entity_meta(summary.map[1])["deep"] == nested

    def test_concurrent_runs_create_one_entity(
        self, remote, query, store, mapper, target, run_counter, session_factory, monkeypatch
    ):
        remote.add_post(1)
        create = store.create_entity

        def slow_create(fields):
            time.sleep(0.2)
            return create(fields)

        monkeypatch.setattr(store, "create_entity", slow_create)
        barrier = threading.Barrier(2)
        summaries = []

        def run(run_id):
            worker = EntryImporter(query, store, mapper, target, run_counter)
            barrier.wait()
            summaries.append(worker.run_import(RunOptions(run_id=run_id)))

        threads = [threading.Thread(target=run, args=(run_id,)) for run_id in (1, 2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert len(summaries) == 2
        assert all(summary.errors == [] for summary in summaries)
        assert sorted((s.imported, s.updated) for s in summaries) == [(0, 1), (1, 0)]
        assert summaries[0].map == summaries[1].map
        assert len(store.list_links(ENTRY, 1)) == 1
        assert _entity_count(session_factory) == 1

    def test_identity_linked_elsewhere_keeps_the_linked_entity(
        self, remote, importer, store, session_factory, monkeypatch
    ):
        remote.add_post(1, post_title="Fresh")
        create = store.create_entity
        created = []

        def create_then_lose_the_link(fields):
            local_id = create(fields)
            winner = create({"kind": "post", "title": "Linked elsewhere"})
            store.put_link(1, 1, ENTRY, winner)
            created.extend([local_id, winner])
            return local_id

        monkeypatch.setattr(store, "create_entity", create_then_lose_the_link)

        summary = importer.run_import(RunOptions())

        ours, winner = created
        assert summary.errors == []
        assert (summary.imported, summary.updated) == (0, 1)
        assert summary.map[1] == winner
        assert store.get_entity(ours) is None
        assert store.get_entity(winner)["title"] == "Fresh"
        assert _entity_count(session_factory) == 1

    def test_pre_hook_failure_does_not_stop_the_row(self, remote, importer, store):
        remote.add_post(1, post_title="Kept")

        def explode(draft, options):
            raise ValueError("bad draft")

        summary = importer.run_import(RunOptions(pre_hooks=[explode]))

        assert summary.imported == 1
        assert summary.errors == [
            {"source_id": 1, "stage": "pre_hook", "message": "explode: bad draft"}
        ]
        assert store.get_entity(summary.map[1])["title"] == "Kept"

    def test_force_kind_and_add_term_hooks(self, remote, importer, store):
        remote.add_post(1, post_title="Becomes a page")

        summary = importer.run_import(
            RunOptions(
                pre_hooks=[resolve_hook("force_kind:page", "pre")],
                post_hooks=[resolve_hook("add_term:post_tag:Migrated", "post")],
            )
        )

        local_id = summary.map[1]
        assert store.get_entity(local_id)["kind"] == "page"
        tag = store.find_term("post_tag", slug="migrated")
        assert store.get_entity_terms(local_id, "post_tag") == [tag]

    def test_remap_terms_hook_sees_assigned_terms(self, remote, importer, store, tmp_path):
        source_csv = tmp_path / "source.csv"
        target_csv = tmp_path / "target.csv"
        source_csv.write_text("control,kind,taxonomy,term\n1,post,category,news\n")
        target_csv.write_text("control,kind,taxonomy,term\n1,page,post_tag,Moved\n")
        news = remote.add_term(5, "News", "news")
        remote.add_post(1)
        remote.add_post(2)
        remote.relate(1, news)

        summary = importer.run_import(
            RunOptions(post_hooks=[resolve_hook(f"remap_terms:{source_csv}:{target_csv}", "post")])
        )

        moved = store.find_term("post_tag", slug="moved")
        assert store.get_entity(summary.map[1])["kind"] == "page"
        assert store.get_entity_terms(summary.map[1], "post_tag") == [moved]
        assert store.get_entity(summary.map[2])["kind"] == "post"

    def test_normalizes_kind_status_title_and_slug(self, remote, importer, store):
        remote.add_post(1, post_type="recipe", post_status="publish", post_title="  ")
        remote.add_post(2, post_status="private", post_title="Hello World")

        summary = importer.run_import(
            RunOptions(fetch=FetchFilter(kinds=["recipe", "post"], statuses=["any"]))
        )

        untitled = store.get_entity(summary.map[1])
        assert untitled["kind"] == "post"
        assert untitled["title"] == "(no title)"
        assert untitled["slug"] == "1"

        private = store.get_entity(summary.map[2])
        assert private["status"] == "private"
        assert private["slug"] == "hello-world"

    def test_remote_terms_and_term_operations(self, remote, importer, store):
        remote.add_post(1)
        news = remote.add_term(5, "News", "news")
        remote.relate(1, news)

        summary = importer.run_import(
            RunOptions(term_add={"post_tag": ["Extra"]}, meta_ops={"rating": 5, "_old": None})
        )

        local_id = summary.map[1]
        [category] = store.get_entity_terms(local_id, "category")
        assert store.get_term(category)["slug"] == "news"
        [tag] = store.get_entity_terms(local_id, "post_tag")
        assert store.get_term(tag)["slug"] == "extra"
        assert store.get_entity_meta(local_id)["rating"] == 5

    def test_meta_is_copied_without_reserved_keys(self, remote, importer, store):
        remote.add_post(
            1,
            meta={
                "color": "red",
                "sizes": 'a:1:{s:5:"large";i:1024;}',
                "_edit_lock": "123:1",
                SOURCE_ID_KEY: "999",
            },
        )

        summary = importer.run_import(RunOptions())
        meta = store.get_entity_meta(summary.map[1])

        assert meta["color"] == "red"
        assert meta["sizes"] == {"large": 1024}
        assert meta[SOURCE_ID_KEY] == 1
        assert meta["_migration_source_meta"]["_edit_lock"] == "123:1"

    def test_author_mapping(self, remote, importer, store, mapper):
        remote.add_user(7, "writer")
        remote.add_post(1, post_author=7, meta={"_edit_last": "7"})

        summary = importer.run_import(
            RunOptions(post_hooks=[resolve_hook("map_remote_author", "post")])
        )

        local_user = mapper.find_local(7, 1, USER)
        entity = store.get_entity(summary.map[1])
        assert local_user is not None
        assert entity["author_id"] == local_user
        meta = store.get_entity_meta(summary.map[1])
        assert meta["_edit_last"] == local_user
        assert meta["_migration_remote_author"] == 7

    def test_featured_image_and_content_rewrite(self, remote, importer, store, uploads_dir):
        (uploads_dir / "2024" / "01").mkdir(parents=True)
        (uploads_dir / "2024" / "01" / "x.jpg").write_bytes(b"jpeg")
        remote.add_attachment(10, "2024/01/x.jpg")
        remote.add_post(1, meta={"_thumbnail_id": "10"})
        remote.add_post(
            2,
            post_content=f'<p><img src="{OLD_BASE}/2024/01/x-300x200.jpg"></p>',
            post_excerpt=f"See {OLD_BASE}/2024/01/x.jpg",
        )

        summary = importer.run_import(
            RunOptions(fetch=FetchFilter(order_by="ID", order="ASC"))
        )

        assert (summary.registered, summary.reused, summary.thumbnails_set) == (1, 1, 1)
        assert summary.content_rewritten == 1

        featured = store.get_entity(summary.map[1])["featured_attachment_id"]
        assert featured is not None
        assert store.get_entity_meta(summary.map[1])["_thumbnail_id"] == featured

        rewritten = store.get_entity(summary.map[2])
        assert rewritten["body"] == f'<p><img src="{NEW_BASE}/2024/01/x-300x200.jpg"></p>'
        assert rewritten["excerpt"] == f"See {NEW_BASE}/2024/01/x.jpg"

    def test_missing_media_is_not_a_row_error(self, remote, importer):
        remote.add_post(1, meta={"_thumbnail_id": "99"})

        summary = importer.run_import(RunOptions())

        assert summary.imported == 1
        assert summary.errors == []
        assert "99" in summary.missing

    def test_tenant_rows(self, remote, importer, mapper):
        remote.add_post(1, tenant=3, post_title="Tenant post")
        remote.add_post(1, post_title="Base post")

        summary = importer.run_import(RunOptions(tenant=3))

        assert summary.imported == 1
        assert mapper.find_local(1, 3, ENTRY) == summary.map[1]
        assert mapper.find_local(1, 1, ENTRY) is None

    def test_chunks_respect_limit_and_offset(self, remote, importer):
        for post_id in range(1, 8):
            remote.add_post(post_id)

        summary = importer.run_import(
            RunOptions(fetch=FetchFilter(order_by="ID", order="ASC", limit=5, offset=1))
        )

        assert summary.found == 5
        assert sorted(summary.map) == [2, 3, 4, 5, 6]

    def test_invalid_order_by_is_a_config_error(self, remote, importer):
        remote.add_post(1)

        with pytest.raises(ConfigError):
            importer.run_import(RunOptions(fetch=FetchFilter(order_by="post_password")))

    def test_cancelled_run(self, remote, importer):
        remote.add_post(1)
        token = CancellationToken()
        token.cancel()

        summary = importer.run_import(RunOptions(), cancel=token)

        assert summary.cancelled
        assert summary.imported == 0

    def test_list_remote_entries(self, remote, importer, store, mapper):
        remote.add_post(1, post_title="One")
        remote.add_post(2, post_title="Two")
        mapper.record_link(2, 1, ENTRY, store.create_entity({"kind": "post"}))

        entries = importer.list_remote_entries(FetchFilter(order_by="ID", order="ASC"))

        assert [(e["id"], e["title"]) for e in entries] == [(1, "One"), (2, "Two")]
        assert entries[0]["local_id"] is None
        assert entries[1]["local_id"] == mapper.find_local(2, 1, ENTRY)
