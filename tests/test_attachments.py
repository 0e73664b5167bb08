"""Tests for attachment discovery, dedup, download and URL rewriting."""

import httpx
import pytest

from wp_migration.client.transport import Downloader
from wp_migration.migration.attachments import (
    AttachmentImportOptions,
    AttachmentResolver,
    build_url_rewrite_map,
    extract_image_urls,
    logical_path,
    neutral_path,
    rewrite_content,
    uploads_relative_path,
)
from wp_migration.migration.query import FetchFilter
from wp_migration.migration.state import ATTACHMENT, ENTRY

from .conftest import NEW_BASE, OLD_BASE

SIZES_META = (
    'a:2:{s:4:"file";s:13:"2024/01/x.jpg";s:5:"sizes";a:1:{s:9:"thumbnail";'
    'a:1:{s:4:"file";s:11:"x-150x1.jpg";}}}'
)


class TestUrlHelpers:
    def test_extract_image_urls(self):
        html = (
            '<p><img class="a" src="http://old.example/uploads/a.jpg" '
            'srcset="http://old.example/uploads/a-300x200.jpg 300w, '
            'http://old.example/uploads/a.jpg 1024w">'
            '<a href="http://old.example/uploads/b.PNG">b</a>'
            '<a href="http://old.example/page/">page</a>'
            '<img src="http://old.example/uploads/a.jpg"></p>'
        )
        assert extract_image_urls(html) == [
            "http://old.example/uploads/a.jpg",
            "http://old.example/uploads/a-300x200.jpg",
            "http://old.example/uploads/b.PNG",
        ]

    @pytest.mark.parametrize(
        "url",
        [
            "http://old.example/uploads/sites/3/2024/01/x.jpg",
            "http://old.example/sites/3/uploads/2024/01/x.jpg",
            "//old.example/uploads/2024/01/x.jpg",
            "http://old.example/uploads/2024/01/x.jpg?ver=2",
        ],
    )
    def test_uploads_relative_path(self, url):
        assert uploads_relative_path(url, OLD_BASE, tenant=3) == "2024/01/x.jpg"

    def test_foreign_host_is_ignored(self):
        assert uploads_relative_path("http://cdn.other/uploads/x.jpg", OLD_BASE) is None

    def test_neutral_and_logical_path(self):
        assert neutral_path("sites/3/2024/01/x-300x200.jpg") == "2024/01/x.jpg"
        assert logical_path("2024/01/x-300x200.jpg", 3) == "2024/01/x.jpg"
        assert logical_path("2024/01/x.jpg", 3, tenant_filename_prefix=True) == "2024/01/t3-x.jpg"

    def test_rewrite_map_for_tenant(self):
        url_map = build_url_rewrite_map(OLD_BASE, NEW_BASE, 3)
        body = (
            '<img src="http://old.example/uploads/sites/3/2024/01/x.jpg">'
            '<img src="https://old.example/sites/3/uploads/2024/01/y.jpg">'
            '<img src="//old.example/uploads/2024/01/z.jpg">'
            '<a href="http://old.example/uploads/2024/01/doc.pdf">doc</a>'
        )

        assert rewrite_content(body, url_map) == (
            f'<img src="{NEW_BASE}/2024/01/x.jpg">'
            f'<img src="{NEW_BASE}/2024/01/y.jpg">'
            f'<img src="{NEW_BASE}/2024/01/z.jpg">'
            f'<a href="{NEW_BASE}/2024/01/doc.pdf">doc</a>'
        )

    def test_rewrite_map_empty_without_both_bases(self):
        assert build_url_rewrite_map("", NEW_BASE, 3) == {}
        assert build_url_rewrite_map(OLD_BASE, "", 3) == {}
        assert build_url_rewrite_map(NEW_BASE, NEW_BASE, 3) == {}

    def test_rewrite_is_single_pass(self):
        url_map = {"http://a": "http://ab", "http://ab": "http://x"}
        assert rewrite_content("http://a http://ab", url_map) == "http://ab http://x"


def _resolver(query, store, mapper, target, downloader=None):
    return AttachmentResolver(query, store, mapper, target, old_base=OLD_BASE, downloader=downloader)


class TestResolveAttachments:
    def test_id_and_url_reference_share_one_resource(
        self, remote, query, store, mapper, target, uploads_dir
    ):
        (uploads_dir / "2024" / "01").mkdir(parents=True)
        (uploads_dir / "2024" / "01" / "x.jpg").write_bytes(b"jpeg")
        remote.add_attachment(10, "2024/01/x.jpg", metadata=SIZES_META, post_title="X")
        remote.add_post(1, meta={"_thumbnail_id": "10"})
        remote.add_post(
            2, post_content=f'<img src="{OLD_BASE}/2024/01/x-300x200.jpg">'
        )

        rows = query.fetch_rows(FetchFilter(order_by="ID", order="ASC"), tenant=1)
        resolution = _resolver(query, store, mapper, target).resolve_attachments(
            rows, tenant=1, run_id=1
        )

        assert resolution.registered == 1
        assert resolution.reused == 1
        assert resolution.missing == {}
        local_id = resolution.map[10]
        assert resolution.featured == {1: local_id}
        assert resolution.url_map == {
            f"{OLD_BASE}/2024/01/x-300x200.jpg": f"{NEW_BASE}/2024/01/x-300x200.jpg"
        }

        attachment = store.get_attachment(local_id)
        assert attachment["logical_path"] == "2024/01/x.jpg"
        assert attachment["title"] == "X"
        assert attachment["sizes"] == {"thumbnail": {"file": "x-150x1.jpg"}}
        assert mapper.find_local(10, 1, ATTACHMENT) == local_id

    def test_tenant_file_under_sites_directory(
        self, remote, query, store, mapper, target, uploads_dir
    ):
        folder = uploads_dir / "sites" / "3" / "2024" / "01"
        folder.mkdir(parents=True)
        (folder / "x.jpg").write_bytes(b"jpeg")
        remote.add_attachment(10, "sites/3/2024/01/x.jpg", tenant=3)
        remote.add_post(1, tenant=3, meta={"_thumbnail_id": "10"})

        rows = query.fetch_rows(FetchFilter(), tenant=3)
        resolution = _resolver(query, store, mapper, target).resolve_attachments(rows, 3, 1)

        assert resolution.registered == 1
        assert store.get_attachment(resolution.map[10])["logical_path"] == "2024/01/x.jpg"

    def test_missing_file_without_downloader(self, remote, query, store, mapper, target):
        remote.add_attachment(10, "2024/01/gone.jpg")
        remote.add_post(1, meta={"_thumbnail_id": "10"})

        rows = query.fetch_rows(FetchFilter(), tenant=1)
        resolution = _resolver(query, store, mapper, target).resolve_attachments(rows, 1, 1)

        assert resolution.map == {}
        assert "10" in resolution.missing

    def test_missing_remote_attachment(self, remote, query, store, mapper, target):
        remote.add_post(1, meta={"_thumbnail_id": "55"})

        rows = query.fetch_rows(FetchFilter(), tenant=1)
        resolution = _resolver(query, store, mapper, target).resolve_attachments(rows, 1, 1)

        assert resolution.missing == {"55": "Attachment not found in the remote source"}

    def test_download_when_file_is_absent(
        self, remote, query, store, mapper, target, uploads_dir
    ):
        requested = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            return httpx.Response(200, content=b"downloaded")

        downloader = Downloader(transport=httpx.MockTransport(handler))
        remote.add_attachment(10, "2024/01/new.jpg")
        remote.add_post(1, meta={"_thumbnail_id": "10"})

        rows = query.fetch_rows(FetchFilter(), tenant=1)
        resolution = _resolver(query, store, mapper, target, downloader).resolve_attachments(
            rows, 1, 1
        )
        downloader.close()

        assert resolution.registered == 1
        assert requested == [f"{OLD_BASE}/2024/01/new.jpg"]
        assert (uploads_dir / "2024" / "01" / "new.jpg").read_bytes() == b"downloaded"

    def test_download_not_found_is_missing(self, remote, query, store, mapper, target):
        downloader = Downloader(
            transport=httpx.MockTransport(lambda request: httpx.Response(404))
        )
        remote.add_attachment(10, "2024/01/new.jpg")
        remote.add_post(1, meta={"_thumbnail_id": "10"})

        rows = query.fetch_rows(FetchFilter(), tenant=1)
        resolution = _resolver(query, store, mapper, target, downloader).resolve_attachments(
            rows, 1, 1
        )
        downloader.close()

        assert resolution.registered == 0
        assert "HTTP 404" in resolution.missing["10"]

    def test_dry_run_registers_nothing(self, remote, query, store, mapper, target, uploads_dir):
        (uploads_dir / "x.jpg").write_bytes(b"jpeg")
        remote.add_attachment(10, "x.jpg")
        remote.add_post(1, meta={"_thumbnail_id": "10"})

        rows = query.fetch_rows(FetchFilter(), tenant=1)
        resolution = _resolver(query, store, mapper, target).resolve_attachments(
            rows, 1, None, dry_run=True
        )

        assert resolution.registered == 1
        assert store.find_attachment_by_path("x.jpg") is None
        assert mapper.find_local(10, 1, ATTACHMENT) is None


class TestImportAttachments:
    def test_reattaches_featured_resource(
        self, remote, query, store, mapper, target, uploads_dir
    ):
        (uploads_dir / "x.jpg").write_bytes(b"jpeg")
        remote.add_attachment(10, "x.jpg")
        entity_id = store.create_entity({"kind": "post"})
        store.set_entity_meta(entity_id, "_migration_source_meta", {"_thumbnail_id": "10"})
        mapper.record_link(1, 1, ENTRY, entity_id)
        bare_id = store.create_entity({"kind": "post"})
        mapper.record_link(2, 1, ENTRY, bare_id)

        summary = _resolver(query, store, mapper, target).import_attachments(
            AttachmentImportOptions()
        )

        assert summary.total == 2
        assert summary.registered == 1
        assert summary.skipped == 1
        entity = store.get_entity(entity_id)
        assert entity["featured_attachment_id"] == mapper.find_local(10, 1, ATTACHMENT)

        again = _resolver(query, store, mapper, target).import_attachments(
            AttachmentImportOptions()
        )
        assert again.attached == 1
        assert again.registered == 0
