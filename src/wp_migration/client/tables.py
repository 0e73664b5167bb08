"""Physical table names for a (possibly multi-tenant) remote schema.

Tenant 1 (or no tenant) lives in the base tables (``wp_posts``); every other
tenant of a multisite installation has its own copy (``wp_3_posts``). Users
and user meta are shared across tenants.
"""

from typing import NamedTuple


class TermTables(NamedTuple):
    """Tenant-resolved names of the taxonomy tables."""

    terms: str
    term_taxonomy: str
    term_relationships: str
    termmeta: str


class TableResolver:
    """Resolve logical table names under the tenant prefixing convention.

    Pure and I/O free. Unresolvable input degrades to the base-schema form,
    so callers must validate tenant existence on their own.
    """

    def __init__(self, prefix: str = "wp_", is_multi_tenant: bool = True):
        self.prefix = prefix or "wp_"
        self.is_multi_tenant = is_multi_tenant

    def uses_base(self, tenant: int | None, force_base_prefix: bool = False) -> bool:
        """Whether ``tenant`` maps onto the base tables."""
        return (
            force_base_prefix
            or not self.is_multi_tenant
            or not tenant
            or int(tenant) <= 1
        )

    def resolve(
        self, logical_name: str, tenant: int | None = None, force_base_prefix: bool = False
    ) -> str:
        """Return the physical table name.

        Args:
            logical_name: Unprefixed table name, e.g. ``posts``
            tenant: Tenant id, None or 1 for the base site
            force_base_prefix: Always use the base tables

        Returns:
            ``prefix + logical_name`` or ``prefix + tenant + "_" + logical_name``
        """
        if self.uses_base(tenant, force_base_prefix):
            return f"{self.prefix}{logical_name}"
        return f"{self.prefix}{int(tenant)}_{logical_name}"

    def posts(self, tenant: int | None = None, force_base_prefix: bool = False) -> str:
        return self.resolve("posts", tenant, force_base_prefix)

    def postmeta(self, tenant: int | None = None, force_base_prefix: bool = False) -> str:
        return self.resolve("postmeta", tenant, force_base_prefix)

    def options(self, tenant: int | None = None, force_base_prefix: bool = False) -> str:
        return self.resolve("options", tenant, force_base_prefix)

    def terms_tables(self, tenant: int | None = None, force_base_prefix: bool = False) -> TermTables:
        return TermTables(
            terms=self.resolve("terms", tenant, force_base_prefix),
            term_taxonomy=self.resolve("term_taxonomy", tenant, force_base_prefix),
            term_relationships=self.resolve("term_relationships", tenant, force_base_prefix),
            termmeta=self.resolve("termmeta", tenant, force_base_prefix),
        )

    def users(self) -> str:
        return f"{self.prefix}users"

    def usermeta(self) -> str:
        return f"{self.prefix}usermeta"

    def capabilities_key(self, tenant: int | None) -> str:
        """User meta key holding a user's roles on ``tenant``."""
        if self.uses_base(tenant):
            return f"{self.prefix}capabilities"
        return f"{self.prefix}{int(tenant)}_capabilities"

    def tenant_meta_prefix(self, tenant: int | None) -> str | None:
        """Prefix of tenant-scoped user meta keys, or None for the base site."""
        if self.uses_base(tenant):
            return None
        return f"{self.prefix}{int(tenant)}_"
