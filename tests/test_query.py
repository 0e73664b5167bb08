"""Tests for the remote query builder against the SQLite fixture schema."""

import pytest

from wp_migration.client.exceptions import ConfigError, QueryError
from wp_migration.client.tables import TableResolver
from wp_migration.migration.metadata import MetaList, Scalar
from wp_migration.migration.query import (
    STATUS_ANY,
    FetchFilter,
    TaxClause,
    escape_like,
    normalize_timestamp,
)


class TestHelpers:
    def test_escape_like(self):
        assert escape_like("50%_off!") == "50!%!_off!!"

    def test_normalize_epoch(self):
        assert normalize_timestamp(1704067200) == "2024-01-01 00:00:00"
        assert normalize_timestamp("1704067200") == "2024-01-01 00:00:00"

    def test_normalize_iso_with_zone(self):
        assert normalize_timestamp("2024-01-01T00:00:00Z") == "2024-01-01 00:00:00"
        assert normalize_timestamp("2024-01-01T02:00:00+02:00") == "2024-01-01 00:00:00"

    def test_naive_timestamp_is_utc(self):
        assert normalize_timestamp("2024-03-05 10:11:12") == "2024-03-05 10:11:12"

    def test_bad_timestamp(self):
        with pytest.raises(QueryError):
            normalize_timestamp("yesterday")


class TestFetchFilter:
    def test_any_status_expands(self):
        assert FetchFilter(statuses="any").statuses == list(STATUS_ANY)

    def test_csv_kinds(self):
        assert FetchFilter(kinds="post, page").kinds == ["post", "page"]

    def test_include_drops_non_positive(self):
        assert FetchFilter(include=[0, -1]).include == []
        assert FetchFilter(include=[]).include is None
        assert FetchFilter(include="3,0,4").include == [3, 4]

    def test_limit_bounds(self):
        with pytest.raises(ValueError):
            FetchFilter(limit=0)


class TestCompile:
    def test_tenant_tables(self, query):
        statement, _ = query.compile(FetchFilter(), tenant=3)
        sql = str(statement)
        assert "FROM wp_3_posts p" in sql

    def test_tax_clause_uses_tenant_term_tables(self, query):
        flt = FetchFilter(tax_query=[TaxClause(taxonomy="category", terms="news")])
        statement, params = query.compile(flt, tenant=3)
        sql = str(statement)

        assert "wp_3_term_relationships" in sql
        assert "wp_3_term_taxonomy" in sql
        assert params["tax_0"] == "category"
        assert params["tax_terms_0"] == ["news"]

    def test_default_order(self, query):
        statement, _ = query.compile(FetchFilter(), tenant=1)
        assert "ORDER BY p.post_date DESC, p.ID DESC" in str(statement)

    def test_modified_bound_orders_ascending(self, query):
        statement, params = query.compile(
            FetchFilter(modified_after="2024-01-01T00:00:00Z"), tenant=1
        )
        assert "ORDER BY p.post_modified_gmt ASC, p.ID ASC" in str(statement)
        assert params["modified_after"] == "2024-01-01 00:00:00"

    def test_order_by_not_allowed(self, query):
        with pytest.raises(ConfigError):
            query.compile(FetchFilter(order_by="post_content; DROP TABLE x"), tenant=1)

    def test_invalid_meta_key(self, query):
        with pytest.raises(ConfigError):
            query.compile(FetchFilter(meta_keys=["bad key"]), tenant=1)

    def test_invalid_tax_field(self, query):
        with pytest.raises(ConfigError):
            query.compile(
                FetchFilter(tax_query=[TaxClause(taxonomy="category", field="description")]),
                tenant=1,
            )

    def test_non_integer_term_id(self, query):
        flt = FetchFilter(
            tax_query=[TaxClause(taxonomy="category", field="term_id", terms=["abc"])]
        )
        with pytest.raises(QueryError):
            query.compile(flt, tenant=1)


class TestFetchRows:
    def test_filters_by_kind_and_status(self, remote, query):
        remote.add_post(1, post_title="A", post_type="post")
        remote.add_post(2, post_title="B", post_type="page")
        remote.add_post(3, post_title="C", post_type="post", post_status="draft")

        rows = query.fetch_rows(FetchFilter(), tenant=1)
        assert [row.source_id for row in rows] == [1]

        rows = query.fetch_rows(FetchFilter(kinds="post,page", statuses="any"), tenant=1)
        assert sorted(row.source_id for row in rows) == [1, 2, 3]

    def test_tenant_rows(self, remote, query):
        remote.add_post(1, post_title="base")
        remote.add_post(1, tenant=3, post_title="tenant three")

        rows = query.fetch_rows(FetchFilter(), tenant=3)
        assert len(rows) == 1
        assert rows[0].title == "tenant three"
        assert rows[0].tenant == 3

    def test_empty_include_matches_nothing(self, remote, query):
        remote.add_post(1)
        assert query.fetch_rows(FetchFilter(include=[0]), tenant=1) == []

    def test_include_exclude(self, remote, query):
        for post_id in (1, 2, 3):
            remote.add_post(post_id)
        rows = query.fetch_rows(FetchFilter(include=[1, 2, 3], exclude=[2]), tenant=1)
        assert sorted(row.source_id for row in rows) == [1, 3]

    def test_modified_window(self, remote, query):
        remote.add_post(1, post_modified_gmt="2023-12-31 23:59:59")
        remote.add_post(2, post_modified_gmt="2024-02-01 00:00:00")

        rows = query.fetch_rows(FetchFilter(modified_after="2024-01-01"), tenant=1)
        assert [row.source_id for row in rows] == [2]

    def test_search_escapes_wildcards(self, remote, query):
        remote.add_post(1, post_title="100% organic")
        remote.add_post(2, post_title="100 percent")

        rows = query.fetch_rows(FetchFilter(search="100%"), tenant=1)
        assert [row.source_id for row in rows] == [1]

    def test_tax_query(self, remote, query):
        news = remote.add_term(5, "News", "news")
        events = remote.add_term(6, "Events", "events")
        remote.add_post(1)
        remote.add_post(2)
        remote.add_post(3)
        remote.relate(1, news)
        remote.relate(2, events)

        flt = FetchFilter(tax_query=[TaxClause(taxonomy="category", terms="news,events")])
        assert sorted(row.source_id for row in query.fetch_rows(flt, tenant=1)) == [1, 2]

        flt = FetchFilter(
            tax_query=[TaxClause(taxonomy="category", terms="news", operator="NOT IN")]
        )
        assert sorted(row.source_id for row in query.fetch_rows(flt, tenant=1)) == [2, 3]

        flt = FetchFilter(
            tax_query=[TaxClause(taxonomy="category", field="term_id", terms=[6])]
        )
        assert [row.source_id for row in query.fetch_rows(flt, tenant=1)] == [2]

    def test_limit_offset_and_order(self, remote, query):
        for post_id in range(1, 6):
            remote.add_post(post_id)

        flt = FetchFilter(order_by="ID", order="asc", limit=2, offset=1)
        assert [row.source_id for row in query.fetch_rows(flt, tenant=1)] == [2, 3]

        flt = FetchFilter(order_by="ID", order="ASC", offset=3)
        assert [row.source_id for row in query.fetch_rows(flt, tenant=1)] == [4, 5]

    def test_metadata_is_decoded_and_merged(self, remote, query):
        remote.add_post(
            1,
            meta={"color": "blue", "gallery": 'a:2:{i:0;s:1:"x";i:1;s:1:"y";}'},
        )
        remote.add_meta(1, "tag", "one")
        remote.add_meta(1, "tag", "two")

        row = query.fetch_rows(FetchFilter(), tenant=1)[0]

        assert row.meta("color") == Scalar("blue")
        assert row.meta("gallery") == MetaList((Scalar("x"), Scalar("y")))
        assert row.meta("tag") == MetaList((Scalar("one"), Scalar("two")))

    def test_without_meta(self, remote, query):
        remote.add_post(1, meta={"color": "blue"})
        row = query.fetch_rows(FetchFilter(with_meta=False), tenant=1)[0]
        assert row.metadata == {}


class TestRelatedQueries:
    def test_terms_for_entries(self, remote, query):
        news = remote.add_term(5, "News", "news")
        tag = remote.add_term(7, "Hot", "hot", taxonomy="post_tag")
        remote.add_post(1)
        remote.relate(1, news)
        remote.relate(1, tag)

        terms = query.fetch_terms_for_entries([1], tenant=1)
        assert [t.slug for t in terms[1]["category"]] == ["news"]
        assert [t.slug for t in terms[1]["post_tag"]] == ["hot"]

        only_tags = query.fetch_terms_for_entries([1], tenant=1, taxonomies=["post_tag"])
        assert list(only_tags[1]) == ["post_tag"]

    def test_term_index_order(self, remote, query):
        remote.add_term(2, "Child", "child", parent=5)
        remote.add_term(5, "Middle", "middle", parent=9)
        remote.add_term(9, "Root", "root")

        assert query.fetch_term_index(1) == [(9, 0), (2, 5), (5, 9)]

    def test_term_rows_carry_meta(self, remote, query):
        remote.add_term(5, "News", "news", description="All news")
        remote.add_term_meta(5, "color", "red")

        (node,) = query.fetch_term_rows([5], tenant=1)
        assert node.name == "News"
        assert node.description == "All news"
        assert node.meta == [("color", "red")]

    def test_attachments_by_ids_and_files(self, remote, query):
        remote.add_attachment(10, "2024/01/x.jpg", post_title="X")
        remote.add_post(11)

        attachments = query.fetch_attachments_by_ids([10, 11], tenant=1)
        assert list(attachments) == [10]
        assert attachments[10].meta("_wp_attached_file") == Scalar("2024/01/x.jpg")

        assert query.fetch_attachment_ids_by_files(["2024/01/x.jpg", "nope.jpg"], 1) == {
            "2024/01/x.jpg": 10
        }

    def test_user_ids_for_tenant(self, remote, query):
        remote.add_user(1, "admin", meta={"wp_capabilities": 'a:1:{s:13:"administrator";b:1;}'})
        remote.add_user(2, "writer", meta={"wp_3_capabilities": 'a:1:{s:6:"author";b:1;}'})

        assert query.fetch_user_ids(1) == [1, 2]
        assert query.fetch_user_ids(3) == [2]
        assert query.fetch_user_ids(1, exclude_ids=[1]) == [2]

    def test_query_error_on_missing_table(self, query):
        query.tables = TableResolver("missing_")
        with pytest.raises(QueryError):
            query.fetch_rows(FetchFilter(), tenant=1)
