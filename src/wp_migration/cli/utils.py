"""
Utility functions for CLI commands.

This module provides output helpers and parsers for the compact option
syntaxes used by the import commands.
"""

import json
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from wp_migration.migration.query import TaxClause

console = Console()


def echo_success(message: str) -> None:
    """Print success message in green."""
    click.secho(f"✓ {message}", fg="green")


def echo_error(message: str) -> None:
    """Print error message in red."""
    click.secho(f"✗ {message}", fg="red", err=True)


def echo_warning(message: str) -> None:
    """Print warning message in yellow."""
    click.secho(f"⚠ {message}", fg="yellow")


def echo_info(message: str) -> None:
    """Print info message in blue."""
    click.secho(f"ℹ {message}", fg="blue")


def format_count(count: int) -> str:
    return f"{count:,}"


def print_table(
    title: str,
    columns: list[str],
    rows: list[list[Any]],
    show_header: bool = True,
) -> None:
    """
    Print a formatted table using rich.

    Args:
        title: Table title
        columns: Column headers
        rows: List of row data
        show_header: Whether to show header row
    """
    table = Table(title=title, show_header=show_header)

    for col in columns:
        table.add_column(col)

    for row in rows:
        table.add_row(*["" if cell is None else str(cell) for cell in row])

    console.print(table)


def print_stats(stats: dict[str, Any], title: str = "Statistics") -> None:
    """Print the integer counters of a summary as a two-column table."""
    rows = [
        [key.replace("_", " ").title(), format_count(value)]
        for key, value in stats.items()
        if isinstance(value, int) and not isinstance(value, bool)
    ]
    print_table(title, ["Metric", "Value"], rows)


def print_summary(summary: dict[str, Any], title: str, as_json: bool = False) -> None:
    """Print a summary as counters plus its errors and warnings, or as JSON."""
    if as_json:
        click.echo(json.dumps(summary, indent=2, default=str))
        return

    stats = dict(summary)
    stats.update(
        {f"attachments_{k}": v for k, v in (summary.get("attachments") or {}).items()}
    )
    print_stats(stats, title)

    errors = summary.get("errors") or []
    if isinstance(errors, dict):
        errors = [
            {"source_id": source_id, "stage": None, "message": message}
            for source_id, messages in errors.items()
            for message in messages
        ]
    for error in errors[:20]:
        echo_error(f"[{error.get('source_id')}] {error.get('stage') or ''} {error.get('message')}")
    if len(errors) > 20:
        echo_error(f"... and {len(errors) - 20} more errors")

    for warning in (summary.get("warnings") or [])[:20]:
        echo_warning(warning)


def parse_id_list(value: str | None) -> list[int]:
    """``"1,2, 3"`` -> ``[1, 2, 3]``.

    Raises:
        click.BadParameter: On a non-numeric id
    """
    if not value:
        return []
    ids = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        if not part.lstrip("-").isdigit():
            raise click.BadParameter(f"Not an id: {part}")
        ids.append(int(part))
    return ids


def parse_tax_query(value: str | None, operator: str = "IN") -> list[TaxClause]:
    """``"category:news,events;post_tag:x"`` -> one clause per taxonomy.

    A taxonomy may carry a field, ``category.term_id:3,4``.
    """
    clauses = []
    for chunk in (value or "").split(";"):
        chunk = chunk.strip()
        if not chunk:
            continue
        if ":" not in chunk:
            raise click.BadParameter(f"Expected taxonomy:term[,term] in '{chunk}'")
        taxonomy, terms = chunk.split(":", 1)
        field = "slug"
        if "." in taxonomy:
            taxonomy, field = taxonomy.split(".", 1)
        clauses.append(
            TaxClause(
                taxonomy=taxonomy.strip(),
                field=field.strip(),
                terms=[t.strip() for t in terms.split(",") if t.strip()],
                operator=operator,
            )
        )
    return clauses


def parse_term_ops(values: tuple[str, ...]) -> dict[str, list[str]]:
    """``("category:news,events", "post_tag:x")`` -> ``{taxonomy: [terms]}``."""
    ops: dict[str, list[str]] = {}
    for value in values:
        if ":" not in value:
            raise click.BadParameter(f"Expected taxonomy:term[,term] in '{value}'")
        taxonomy, terms = value.split(":", 1)
        ops.setdefault(taxonomy.strip(), []).extend(
            t.strip() for t in terms.split(",") if t.strip()
        )
    return ops


def parse_meta_ops(values: tuple[str, ...]) -> dict[str, Any]:
    """``KEY=VALUE`` pairs; ``KEY=`` (empty value) deletes the key.

    Values that parse as JSON are stored decoded.
    """
    ops: dict[str, Any] = {}
    for value in values:
        if "=" not in value:
            raise click.BadParameter(f"Expected KEY=VALUE in '{value}'")
        key, raw = value.split("=", 1)
        key = key.strip()
        if not key:
            raise click.BadParameter(f"Empty meta key in '{value}'")
        if raw == "":
            ops[key] = None
            continue
        try:
            ops[key] = json.loads(raw)
        except json.JSONDecodeError:
            ops[key] = raw
    return ops
