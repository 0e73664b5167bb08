"""
Credential management commands.

Source database credentials are sealed with the installation key and kept
in the local store's options; they never touch the configuration file.
"""

import click
from pydantic import ValidationError

from wp_migration.cli.context import MigrationContext
from wp_migration.cli.decorators import handle_errors, pass_context, with_cleanup
from wp_migration.cli.utils import echo_info, echo_success, echo_warning, print_table
from wp_migration.client.exceptions import ConfigError
from wp_migration.client.source_client import RemoteSource
from wp_migration.config import CredentialRecord
from wp_migration.utils.logging import get_logger

logger = get_logger(__name__)


@click.group(name="credentials")
def credentials() -> None:
    """Manage the encrypted source credentials."""
    pass


@credentials.command(name="set")
@click.option("--host", required=True, help="host, host:port, [ipv6]:port or socket path")
@click.option("--port", type=int, help="TCP port")
@click.option("--socket", help="Unix socket path")
@click.option("--database", required=True, help="Database name")
@click.option("--user", required=True, help="Database user")
@click.option(
    "--password",
    prompt=True,
    hide_input=True,
    default="",
    envvar="WP_BRIDGE_SOURCE_PASSWORD",
    help="Database password (prompted when omitted)",
)
@click.option("--charset", default="utf8mb4", show_default=True)
@click.option("--collation", default="utf8mb4_unicode_520_ci", show_default=True)
@click.option("--table-prefix", default="wp_", show_default=True)
@click.option("--multi-tenant", is_flag=True, help="The remote installation is multisite")
@click.option("--media-base-url", default="", help="Legacy uploads base URL")
@click.option("--test/--no-test", "test_connection", default=False, help="Test before saving")
@pass_context
@handle_errors
@with_cleanup
def set_credentials(
    ctx: MigrationContext,
    host: str,
    port: int | None,
    socket: str | None,
    database: str,
    user: str,
    password: str,
    charset: str,
    collation: str,
    table_prefix: str,
    multi_tenant: bool,
    media_base_url: str,
    test_connection: bool,
) -> None:
    """Encrypt and store the source credentials.

    Examples:

        wp-bridge credentials set --host db.example.com --database wp --user reader

        wp-bridge credentials set --host 10.0.0.5:3307 --database wp --user reader \\
            --multi-tenant --media-base-url https://old.example/wp-content/uploads --test
    """
    try:
        record = CredentialRecord(
            host=host,
            port=port,
            socket=socket,
            database=database,
            user=user,
            password=password,
            charset=charset,
            collation=collation,
            table_prefix=table_prefix,
            is_multi_tenant=multi_tenant,
            media_base_url=media_base_url,
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid credentials: {e}") from e
    record.require_complete()

    if test_connection:
        _check(ctx, record)

    ctx.credentials.save(record)
    echo_success(f"Credentials for {record.user}@{record.host}/{record.database} saved")


@credentials.command(name="show")
@pass_context
@handle_errors
@with_cleanup
def show_credentials(ctx: MigrationContext) -> None:
    """Show the stored credentials with the password redacted.

    Examples:

        wp-bridge credentials show
    """
    record = ctx.credentials.load()
    if record is None:
        echo_warning("No credentials stored")
        return

    data = record.model_dump()
    data["password"] = "********" if record.password.get_secret_value() else ""
    print_table("Source Credentials", ["Setting", "Value"], [[k, v] for k, v in data.items()])


@credentials.command(name="test")
@pass_context
@handle_errors
@with_cleanup
def test_credentials(ctx: MigrationContext) -> None:
    """Connect to the source database and run a trivial query.

    Uses the configuration's source section when present, the stored
    credentials otherwise.

    Examples:

        wp-bridge credentials test
    """
    _check(ctx, ctx.source_record())
    echo_success("Source database reachable")


@credentials.command(name="clear")
@click.confirmation_option(prompt="Delete the stored credentials?")
@pass_context
@handle_errors
@with_cleanup
def clear_credentials(ctx: MigrationContext) -> None:
    """Delete the stored credentials.

    Examples:

        wp-bridge credentials clear --yes
    """
    ctx.credentials.clear()
    echo_success("Credentials cleared")


def _check(ctx: MigrationContext, record: CredentialRecord) -> None:
    """Raises ConnectionError when the source cannot be reached."""
    echo_info(f"Connecting to {record.host}/{record.database}...")
    perf = ctx.config.performance
    source = RemoteSource.from_credentials(
        record, connect_timeout=perf.connect_timeout, read_timeout=perf.read_timeout
    )
    try:
        source.check_connection()
    finally:
        source.dispose()
