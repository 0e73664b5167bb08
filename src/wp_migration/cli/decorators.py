"""
Decorators for CLI commands.

This module provides decorators for context passing and for mapping
engine errors to exit codes.
"""

import functools
from collections.abc import Callable

import click

from wp_migration.cli.context import MigrationContext
from wp_migration.client.exceptions import (
    ConfigError,
    ConnectionError,
    QueryError,
    RunCancelled,
    StateError,
    VaultError,
)
from wp_migration.utils.logging import get_logger

logger = get_logger(__name__)


def pass_context(f: Callable) -> Callable:
    """
    Decorator to pass MigrationContext to command function.

    Usage:
        @click.command()
        @pass_context
        def my_command(ctx: MigrationContext):
            print(ctx.config)
    """

    @click.pass_context
    @functools.wraps(f)
    def wrapper(click_ctx: click.Context, *args, **kwargs):
        migration_ctx: MigrationContext = click_ctx.obj
        return f(migration_ctx, *args, **kwargs)

    return wrapper


def handle_errors(f: Callable) -> Callable:
    """
    Decorator to handle engine errors in CLI commands.

    Exit codes:
        0: Success
        1: Unexpected error
        2: Configuration error
        3: Connection error
        4: Query error
        5: State or vault error
        130: Aborted
    """

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)

        except (click.exceptions.Exit, click.ClickException):
            raise

        except ConfigError as e:
            logger.error("configuration_error", error=str(e))
            click.echo(f"Configuration Error: {e}", err=True)
            raise click.exceptions.Exit(2) from e

        except ConnectionError as e:
            logger.error("connection_error", error=str(e))
            click.echo(f"Connection Error: {e}", err=True)
            click.echo(
                "\nPlease verify the stored credentials with 'wp-bridge credentials test'.",
                err=True,
            )
            raise click.exceptions.Exit(3) from e

        except QueryError as e:
            logger.error("query_error", error=str(e), sql=e.sql)
            click.echo(f"Query Error: {e}", err=True)
            raise click.exceptions.Exit(4) from e

        except (StateError, VaultError) as e:
            logger.error("state_error", error=str(e))
            click.echo(f"State Error: {e}", err=True)
            raise click.exceptions.Exit(5) from e

        except (KeyboardInterrupt, RunCancelled) as e:
            click.echo("\nAborted.", err=True)
            raise click.exceptions.Exit(130) from e

        except Exception as e:
            logger.error("unexpected_error", error=str(e), exc_info=True)
            click.echo(f"Unexpected Error: {e}", err=True)
            click.echo(
                "\nAn unexpected error occurred. Please check the logs for details.",
                err=True,
            )
            raise click.exceptions.Exit(1) from e

    return wrapper


def with_cleanup(f: Callable) -> Callable:
    """Release the context's engines and clients when the command returns."""

    @functools.wraps(f)
    def wrapper(ctx: MigrationContext, *args, **kwargs):
        try:
            return f(ctx, *args, **kwargs)
        finally:
            ctx.cleanup()

    return wrapper
