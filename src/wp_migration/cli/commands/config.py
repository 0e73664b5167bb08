"""
Configuration management commands.

This module provides commands for validating, showing and exporting the
bridge configuration.
"""

from pathlib import Path

import click

from wp_migration.cli.context import MigrationContext
from wp_migration.cli.decorators import handle_errors, pass_context, with_cleanup
from wp_migration.cli.utils import echo_error, echo_info, echo_success, echo_warning, print_table
from wp_migration.config import MigrationConfig, save_config_to_yaml
from wp_migration.migration.database import validate_database_connection
from wp_migration.utils.logging import get_logger

logger = get_logger(__name__)


@click.group(name="config")
def config() -> None:
    """Configuration management commands.

    Validate, show and export the bridge configuration.
    """
    pass


@config.command(name="validate")
@click.option(
    "--check-connectivity",
    is_flag=True,
    help="Also test the local store and the source database",
)
@pass_context
@handle_errors
@with_cleanup
def validate(ctx: MigrationContext, check_connectivity: bool) -> None:
    """Validate the configuration.

    Checks that the configuration loads, that the uploads and report
    directories are usable and that the vault key is available.

    Examples:

        wp-bridge config validate --config config.yaml

        wp-bridge config validate --check-connectivity
    """
    echo_info(f"Validating configuration: {ctx.config_path or 'environment'}")
    config = ctx.config

    click.echo()
    _display_config_summary(config)

    click.echo()
    echo_info("Validating paths...")
    _validate_paths(config)

    echo_info("Validating vault key...")
    _validate_vault(config)

    if check_connectivity:
        click.echo()
        echo_info("Testing connectivity...")
        if not validate_database_connection(ctx.engine):
            raise click.ClickException("Local store is not reachable")
        echo_success("Local store reachable")
        ctx.source.check_connection()
        echo_success("Source database reachable")

    click.echo()
    echo_success("Configuration is valid!")


def _display_config_summary(config: MigrationConfig) -> None:
    source = config.source
    rows = [
        ["Source", f"{source.host}/{source.database}" if source else "(vault)"],
        ["Local Database", config.target.database_url],
        ["Uploads Directory", config.target.uploads_dir],
        ["New Media Base URL", config.target.media_base_url or "(none)"],
        ["Allowed Kinds", ", ".join(config.target.allowed_kinds)],
        ["Tenant Filename Prefix", config.target.tenant_filename_prefix],
        ["Entry Chunk Size", config.performance.chunk_size],
        ["Download Timeout (s)", config.performance.download_timeout],
        ["Report Directory", config.report_dir],
    ]

    print_table("Configuration Summary", ["Setting", "Value"], rows)


def _validate_paths(config: MigrationConfig) -> None:
    for label, raw in (("uploads", config.target.uploads_dir), ("report", config.report_dir)):
        path = Path(raw)
        if path.exists() and not path.is_dir():
            echo_error(f"{label.title()} path is not a directory: {path}")
            raise click.ClickException(f"Invalid {label} directory: {path}")
        if path.exists():
            echo_success(f"{label.title()} directory exists: {path}")
        else:
            echo_warning(f"{label.title()} directory will be created: {path}")

    echo_success("All paths are valid")


def _validate_vault(config: MigrationConfig) -> None:
    """Raises ConfigError when neither key material nor a key file is usable."""
    config.vault.load_key_bytes()
    echo_success("Vault key available")


@config.command(name="show")
@pass_context
@handle_errors
def show(ctx: MigrationContext) -> None:
    """Display current configuration.

    Shows the loaded configuration with sensitive values masked.

    Examples:

        wp-bridge config show --config config.yaml
    """
    config = ctx.config

    _display_config_summary(config)

    if config.source is not None:
        click.echo("\nSource Configuration:")
        click.echo(f"  Host: {config.source.host}")
        click.echo(f"  Database: {config.source.database}")
        click.echo(f"  User: {config.source.user}")
        click.echo(f"  Password: {'*' * 20} (masked)")
        click.echo(f"  Table Prefix: {config.source.table_prefix}")
        click.echo(f"  Multi-tenant: {config.source.is_multi_tenant}")

    click.echo("\nTaxonomies:")
    for kind, taxonomies in config.target.taxonomies.items():
        click.echo(f"  {kind}: {', '.join(taxonomies) or '(none)'}")

    click.echo("\nLogging Configuration:")
    click.echo(f"  Level: {config.logging.level}")
    click.echo(f"  Format: {config.logging.format}")
    click.echo(f"  File: {config.logging.file}")


@config.command(name="export")
@click.argument("output", type=click.Path(path_type=Path))
@click.option("--force", is_flag=True, help="Overwrite an existing file")
@pass_context
@handle_errors
def export(ctx: MigrationContext, output: Path, force: bool) -> None:
    """Write the effective configuration to a YAML file.

    The vault key is never written; passwords are masked.

    Examples:

        wp-bridge config export config.yaml

        WP_BRIDGE_TARGET__UPLOADS_DIR=/srv/uploads wp-bridge config export config.yaml --force
    """
    if output.exists() and not force:
        raise click.ClickException(f"{output} exists; use --force to overwrite")

    save_config_to_yaml(ctx.config, output)
    echo_success(f"Configuration written to {output}")
