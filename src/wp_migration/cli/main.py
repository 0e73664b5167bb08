"""
Main CLI entry point for WP Bridge.

This module provides the command-line interface for importing content
from a remote WordPress-style database into the local content store.
"""

from pathlib import Path

import click
from dotenv import load_dotenv

from wp_migration import __version__
from wp_migration.cli.commands import config as config_commands
from wp_migration.cli.commands import credentials as credentials_commands
from wp_migration.cli.commands import imports as import_commands
from wp_migration.cli.context import MigrationContext
from wp_migration.utils.logging import configure_logging, get_logger

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)

DEFAULT_LOG_FILE = "logs/wp-bridge.log"


@click.group()
@click.version_option(version=__version__, prog_name="wp-bridge")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
    envvar="WP_BRIDGE_CONFIG",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Set console logging level (file logging stays at DEBUG)",
    envvar="WP_BRIDGE_LOG_LEVEL",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    help=f"Log file (default: {DEFAULT_LOG_FILE})",
    envvar="WP_BRIDGE_LOG_FILE",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    log_level: str,
    log_file: Path | None,
) -> None:
    """WP Bridge - Import content from a remote WordPress database.

    Entries, terms, users and attachments are imported into the local
    store idempotently: re-running an import updates what was imported
    before instead of duplicating it.

    Examples:

        # Store the remote credentials (encrypted)
        wp-bridge credentials set --host db.example.com --database wp --user reader

        # Preview an import
        wp-bridge run-import --kind post --dry-run

        # Import tenant 3 of a multisite installation
        wp-bridge run-import --tenant 3 --kind post,page --status any
    """
    effective_log_file = str(log_file) if log_file else DEFAULT_LOG_FILE
    configure_logging(level=log_level, log_file=effective_log_file)

    ctx.obj = MigrationContext(
        config_path=config,
        log_level=log_level,
        log_file=log_file,
    )

    logger.debug(
        "cli_initialized",
        config=str(config) if config else None,
        log_level=log_level,
    )


# Register command groups
cli.add_command(config_commands.config)
cli.add_command(credentials_commands.credentials)

# Register standalone commands
cli.add_command(import_commands.run_import)
cli.add_command(import_commands.import_terms)
cli.add_command(import_commands.import_users)
cli.add_command(import_commands.import_attachments)
cli.add_command(import_commands.list_remote_posts)


def main() -> int:
    """Main entry point for CLI."""
    try:
        cli(standalone_mode=False)
        return 0
    except click.exceptions.Exit as e:
        return e.exit_code
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        return 130
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except Exception as e:
        logger.error("unexpected_error", error=str(e), exc_info=True)
        click.echo(f"Error: {e}", err=True)
        return 1
