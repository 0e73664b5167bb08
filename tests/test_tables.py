"""Tests for tenant table resolution and remote host parsing."""

import pytest

from wp_migration.client.source_client import build_source_url, parse_host
from wp_migration.client.tables import TableResolver
from wp_migration.config import CredentialRecord


class TestTableResolver:
    @pytest.mark.parametrize("tenant", [None, 0, 1])
    def test_base_tenant_uses_base_tables(self, tenant):
        assert TableResolver("wp_").resolve("posts", tenant) == "wp_posts"

    def test_other_tenant_is_prefixed(self):
        resolver = TableResolver("wp_", is_multi_tenant=True)
        assert resolver.resolve("posts", 3) == "wp_3_posts"
        assert resolver.postmeta(3) == "wp_3_postmeta"

    def test_single_site_ignores_tenant(self):
        assert TableResolver("wp_", is_multi_tenant=False).posts(3) == "wp_posts"

    def test_force_base_prefix(self):
        assert TableResolver("wp_").posts(3, force_base_prefix=True) == "wp_posts"

    def test_terms_tables(self):
        tables = TableResolver("site_").terms_tables(7)
        assert tables.terms == "site_7_terms"
        assert tables.term_taxonomy == "site_7_term_taxonomy"
        assert tables.term_relationships == "site_7_term_relationships"
        assert tables.termmeta == "site_7_termmeta"

    def test_users_are_global(self):
        resolver = TableResolver("wp_")
        assert resolver.users() == "wp_users"
        assert resolver.usermeta() == "wp_usermeta"

    def test_capabilities_key(self):
        resolver = TableResolver("wp_")
        assert resolver.capabilities_key(1) == "wp_capabilities"
        assert resolver.capabilities_key(3) == "wp_3_capabilities"
        assert resolver.tenant_meta_prefix(1) is None
        assert resolver.tenant_meta_prefix(3) == "wp_3_"

    def test_empty_prefix_falls_back(self):
        assert TableResolver("").posts() == "wp_posts"


class TestParseHost:
    def test_plain_host(self):
        spec = parse_host("db.example.com")
        assert (spec.host, spec.port, spec.socket) == ("db.example.com", 3306, None)

    def test_host_and_port(self):
        spec = parse_host("db.example.com:3307")
        assert (spec.host, spec.port) == ("db.example.com", 3307)

    def test_ipv6_with_port(self):
        spec = parse_host("[::1]:3310")
        assert (spec.host, spec.port) == ("::1", 3310)

    def test_socket_only(self):
        spec = parse_host("/var/run/mysqld/mysqld.sock")
        assert spec.host == "localhost"
        assert spec.socket == "/var/run/mysqld/mysqld.sock"

    def test_host_with_socket(self):
        spec = parse_host("localhost:/tmp/mysql.sock")
        assert spec.socket == "/tmp/mysql.sock"

    def test_explicit_port_wins(self):
        assert parse_host("db:3307", port=3308).port == 3308


def test_build_source_url():
    record = CredentialRecord(
        host="db.example.com:3307", database="legacy", user="reader", password="pw"
    )
    url = build_source_url(record)

    assert url.drivername == "mysql+pymysql"
    assert url.host == "db.example.com"
    assert url.port == 3307
    assert url.database == "legacy"
    assert url.password == "pw"
    assert url.query["charset"] == "utf8mb4"


def test_invalid_table_prefix_is_rejected():
    with pytest.raises(ValueError):
        CredentialRecord(host="h", database="d", user="u", table_prefix="wp_; DROP")
