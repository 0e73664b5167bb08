"""
Import commands.

This module provides the commands that read from the remote installation:
entry runs, term, user and attachment imports, and remote listings.
"""

import json
from pathlib import Path

import click
from pydantic import ValidationError

from wp_migration.cli.context import MigrationContext
from wp_migration.cli.decorators import handle_errors, pass_context, with_cleanup
from wp_migration.cli.utils import (
    echo_info,
    echo_success,
    echo_warning,
    format_count,
    parse_id_list,
    parse_meta_ops,
    parse_tax_query,
    parse_term_ops,
    print_summary,
    print_table,
)
from wp_migration.client.exceptions import ConfigError
from wp_migration.migration.attachments import AttachmentImportOptions
from wp_migration.migration.hooks import POST, PRE, resolve_hook
from wp_migration.migration.importer import WRITE_MODES, RunOptions
from wp_migration.migration.query import FetchFilter
from wp_migration.migration.terms import TermImportOptions
from wp_migration.migration.users import UserImportOptions
from wp_migration.reporting import generate_run_report
from wp_migration.utils.logging import get_logger

logger = get_logger(__name__)

tenant_option = click.option(
    "--tenant", type=int, default=1, show_default=True, help="Remote tenant (site) id"
)
dry_run_option = click.option(
    "--dry-run", is_flag=True, help="Compute the outcome without writing anything"
)
force_base_option = click.option(
    "--force-base-prefix",
    is_flag=True,
    help="Read tenant 1 tables even when another tenant is selected",
)
json_option = click.option("--json", "as_json", is_flag=True, help="Print the summary as JSON")
report_option = click.option(
    "--report",
    "report_formats",
    type=click.Choice(["json", "markdown"]),
    multiple=True,
    help="Write a run report to the report directory (repeatable)",
)


def _filter_options(f):
    """Options shared by run-import and list-remote-posts."""
    options = [
        click.option("--kind", default="post", show_default=True, help="Comma-separated kinds"),
        click.option(
            "--status", default="publish", show_default=True, help="Comma-separated statuses or 'any'"
        ),
        click.option("--include", help="Comma-separated remote ids to import"),
        click.option("--exclude", help="Comma-separated remote ids to skip"),
        click.option("--modified-after", help="Only entries modified after (unix time or date)"),
        click.option("--modified-before", help="Only entries modified before (unix time or date)"),
        click.option("--search", default="", help="Substring of the title or body"),
        click.option("--tax-query", help="taxonomy:term[,term][;taxonomy:term] (slugs)"),
        click.option(
            "--tax-operator",
            type=click.Choice(["IN", "NOT IN"], case_sensitive=False),
            default="IN",
            show_default=True,
            help="Operator of every --tax-query clause",
        ),
        click.option(
            "--relation",
            type=click.Choice(["AND", "OR"], case_sensitive=False),
            default="AND",
            show_default=True,
            help="How --tax-query clauses combine",
        ),
        click.option("--order-by", help="ID, post_date, post_modified_gmt or post_title"),
        click.option("--order", type=click.Choice(["ASC", "DESC"], case_sensitive=False)),
        click.option("--limit", type=int, help="Maximum number of entries"),
        click.option("--offset", type=int, default=0, help="Entries to skip"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _timestamp(value: str | None) -> int | str | None:
    """Unix time given as digits stays numeric; anything else is parsed as a date."""
    if value and value.isdigit():
        return int(value)
    return value or None


def _build_filter(
    kind: str,
    status: str,
    include: str | None,
    exclude: str | None,
    modified_after: str | None,
    modified_before: str | None,
    search: str,
    tax_query: str | None,
    tax_operator: str,
    relation: str,
    order_by: str | None,
    order: str | None,
    limit: int | None,
    offset: int,
) -> FetchFilter:
    try:
        return FetchFilter(
            kinds=kind,
            statuses=status,
            include=parse_id_list(include) if include is not None else None,
            exclude=parse_id_list(exclude),
            modified_after=_timestamp(modified_after),
            modified_before=_timestamp(modified_before),
            search=search,
            tax_query=parse_tax_query(tax_query, tax_operator.upper()),
            tax_relation=relation,
            order_by=order_by,
            order=order,
            limit=limit,
            offset=offset,
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid filter: {e}") from e


def _finish(
    ctx: MigrationContext,
    summary: dict,
    operation: str,
    title: str,
    as_json: bool,
    report_formats: tuple[str, ...],
) -> None:
    print_summary(summary, title, as_json=as_json)

    if report_formats:
        files = generate_run_report(
            summary,
            operation=operation,
            output_dir=ctx.config.report_dir,
            formats=list(report_formats),
        )
        for fmt, path in files.items():
            echo_info(f"{fmt} report: {path}")

    if summary.get("cancelled"):
        echo_warning("Cancelled before completion; re-run to finish")
    elif summary.get("errors"):
        echo_warning(f"Completed with {format_count(len(summary['errors']))} failed item(s)")
    elif not as_json:
        echo_success("Dry run complete" if summary.get("dry_run") else "Import complete")


@click.command(name="run-import")
@tenant_option
@_filter_options
@click.option(
    "--write-mode",
    type=click.Choice(WRITE_MODES),
    default="upsert",
    show_default=True,
    help="insert: new only, update: existing only, upsert: both",
)
@dry_run_option
@click.option("--no-media", is_flag=True, help="Do not resolve attachments or rewrite URLs")
@click.option("--no-download", is_flag=True, help="Never download missing files")
@click.option("--no-terms", is_flag=True, help="Do not assign terms")
@click.option("--no-users", is_flag=True, help="Do not map authors")
@click.option("--meta", "meta", multiple=True, help="KEY=VALUE to set, KEY= to delete (repeatable)")
@click.option("--add", "term_add", multiple=True, help="taxonomy:term[,term] to append (repeatable)")
@click.option("--set", "term_set", multiple=True, help="taxonomy:term[,term] to replace with")
@click.option("--rm", "term_remove", multiple=True, help="taxonomy:term[,term] to remove")
@click.option("--target-kind", help="Store every imported entry as this kind")
@click.option("--pre-hook", "pre_hooks", multiple=True, help="Built-in pre-hook name[:arg]")
@click.option("--post-hook", "post_hooks", multiple=True, help="Built-in post-hook name[:arg]")
@click.option("--old-media-base-url", default="", help="Legacy uploads base URL")
@click.option("--run-id", type=int, help="Reuse a run id instead of allocating one")
@force_base_option
@json_option
@report_option
@pass_context
@handle_errors
@with_cleanup
def run_import(
    ctx: MigrationContext,
    tenant: int,
    kind: str,
    status: str,
    include: str | None,
    exclude: str | None,
    modified_after: str | None,
    modified_before: str | None,
    search: str,
    tax_query: str | None,
    tax_operator: str,
    relation: str,
    order_by: str | None,
    order: str | None,
    limit: int | None,
    offset: int,
    write_mode: str,
    dry_run: bool,
    no_media: bool,
    no_download: bool,
    no_terms: bool,
    no_users: bool,
    meta: tuple[str, ...],
    term_add: tuple[str, ...],
    term_set: tuple[str, ...],
    term_remove: tuple[str, ...],
    target_kind: str | None,
    pre_hooks: tuple[str, ...],
    post_hooks: tuple[str, ...],
    old_media_base_url: str,
    run_id: int | None,
    force_base_prefix: bool,
    as_json: bool,
    report_formats: tuple[str, ...],
) -> None:
    """Import remote entries into the local store.

    Entries already imported are updated in place. Each entry is processed
    on its own: a failing entry is reported and the run continues.

    Examples:

        # Preview what would be imported
        wp-bridge run-import --kind post,page --status any --dry-run

        # Import news posts of tenant 3, tagging them on the way
        wp-bridge run-import --tenant 3 --tax-query category:news --add post_tag:imported

        # Only refresh entries that were imported before
        wp-bridge run-import --write-mode update --modified-after 2024-01-01
    """
    flt = _build_filter(
        kind, status, include, exclude, modified_after, modified_before, search,
        tax_query, tax_operator, relation, order_by, order, limit, offset,
    )
    options = RunOptions(
        tenant=tenant,
        fetch=flt,
        write_mode=write_mode,
        dry_run=dry_run,
        with_media=not no_media,
        assign_terms=not no_terms,
        map_users=not no_users,
        meta_ops=parse_meta_ops(meta),
        term_add=parse_term_ops(term_add),
        term_set=parse_term_ops(term_set),
        term_remove=parse_term_ops(term_remove),
        pre_hooks=[resolve_hook(spec, PRE) for spec in pre_hooks],
        post_hooks=[resolve_hook(spec, POST) for spec in post_hooks],
        old_media_base_url=old_media_base_url,
        run_id=run_id,
        target_kind=target_kind,
        force_base_prefix=force_base_prefix,
    )

    if not as_json:
        echo_info(f"Importing tenant {tenant} ({'dry run' if dry_run else write_mode})")

    importer = ctx.entry_importer(old_base=old_media_base_url, download=not no_download)
    summary = importer.run_import(options, ctx.cancel)

    _finish(ctx, summary.to_dict(), "run-import", "Import Summary", as_json, report_formats)


@click.command(name="import-terms")
@tenant_option
@click.option("--taxonomy", "taxonomies", help="Comma-separated taxonomies (default: all)")
@click.option("--include", help="Comma-separated remote term ids")
@click.option("--exclude", help="Comma-separated remote term ids to skip")
@dry_run_option
@force_base_option
@json_option
@report_option
@pass_context
@handle_errors
@with_cleanup
def import_terms(
    ctx: MigrationContext,
    tenant: int,
    taxonomies: str | None,
    include: str | None,
    exclude: str | None,
    dry_run: bool,
    force_base_prefix: bool,
    as_json: bool,
    report_formats: tuple[str, ...],
) -> None:
    """Import remote terms, parents before children.

    Examples:

        wp-bridge import-terms --taxonomy category,post_tag

        wp-bridge import-terms --tenant 2 --include 10,11 --dry-run
    """
    options = TermImportOptions(
        tenant=tenant,
        taxonomies=[t.strip() for t in (taxonomies or "").split(",") if t.strip()],
        include_ids=parse_id_list(include),
        exclude_ids=parse_id_list(exclude),
        chunk_size=ctx.config.performance.term_chunk_size,
        dry_run=dry_run,
        force_base_prefix=force_base_prefix,
    )
    summary = ctx.term_importer().import_terms(options, ctx.cancel)

    _finish(ctx, summary.to_dict(), "import-terms", "Term Import Summary", as_json, report_formats)


@click.command(name="import-users")
@tenant_option
@click.option("--include", help="Comma-separated remote user ids")
@click.option("--exclude", help="Comma-separated remote user ids to skip")
@click.option("--skip-login", "skip_logins", multiple=True, help="Login never imported (repeatable)")
@dry_run_option
@json_option
@report_option
@pass_context
@handle_errors
@with_cleanup
def import_users(
    ctx: MigrationContext,
    tenant: int,
    include: str | None,
    exclude: str | None,
    skip_logins: tuple[str, ...],
    dry_run: bool,
    as_json: bool,
    report_formats: tuple[str, ...],
) -> None:
    """Import remote users with their tenant metadata.

    Examples:

        wp-bridge import-users --tenant 3

        wp-bridge import-users --include 5,7 --skip-login admin --dry-run
    """
    options = UserImportOptions(
        tenant=tenant,
        include_ids=parse_id_list(include),
        exclude_ids=parse_id_list(exclude),
        chunk_size=ctx.config.performance.user_chunk_size,
        dry_run=dry_run,
        skip_logins=list(skip_logins),
    )
    summary = ctx.user_importer().import_users(options, ctx.cancel)

    _finish(ctx, summary.to_dict(), "import-users", "User Import Summary", as_json, report_formats)


@click.command(name="import-attachments")
@tenant_option
@click.option("--kind", help="Comma-separated local kinds to process (default: all)")
@click.option("--old-media-base-url", default="", help="Legacy uploads base URL")
@click.option("--no-download", is_flag=True, help="Never download missing files")
@dry_run_option
@force_base_option
@json_option
@report_option
@pass_context
@handle_errors
@with_cleanup
def import_attachments(
    ctx: MigrationContext,
    tenant: int,
    kind: str | None,
    old_media_base_url: str,
    no_download: bool,
    dry_run: bool,
    force_base_prefix: bool,
    as_json: bool,
    report_formats: tuple[str, ...],
) -> None:
    """Attach featured resources to entries imported earlier.

    Examples:

        wp-bridge import-attachments --tenant 3

        wp-bridge import-attachments --old-media-base-url https://old.example/uploads
    """
    options = AttachmentImportOptions(
        tenant=tenant,
        kinds=[k.strip() for k in (kind or "").split(",") if k.strip()],
        dry_run=dry_run,
        force_base_prefix=force_base_prefix,
    )
    resolver = ctx.attachment_resolver(old_base=old_media_base_url, download=not no_download)
    summary = resolver.import_attachments(options, ctx.cancel)

    _finish(
        ctx, summary.to_dict(), "import-attachments", "Attachment Summary", as_json, report_formats
    )


@click.command(name="list-remote-posts")
@tenant_option
@_filter_options
@force_base_option
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    help="Write the listing as JSON instead of printing a table",
)
@pass_context
@handle_errors
@with_cleanup
def list_remote_posts(
    ctx: MigrationContext,
    tenant: int,
    kind: str,
    status: str,
    include: str | None,
    exclude: str | None,
    modified_after: str | None,
    modified_before: str | None,
    search: str,
    tax_query: str | None,
    tax_operator: str,
    relation: str,
    order_by: str | None,
    order: str | None,
    limit: int | None,
    offset: int,
    force_base_prefix: bool,
    output: Path | None,
) -> None:
    """List remote entries with their local id, if imported.

    Examples:

        wp-bridge list-remote-posts --kind page --status any --limit 20

        wp-bridge list-remote-posts --search hello -o hello.json
    """
    flt = _build_filter(
        kind, status, include, exclude, modified_after, modified_before, search,
        tax_query, tax_operator, relation, order_by, order, limit, offset,
    )
    entries = ctx.entry_importer(download=False).list_remote_entries(flt, tenant, force_base_prefix)

    if output:
        output.write_text(json.dumps(entries, indent=2, default=str))
        echo_success(f"Wrote {format_count(len(entries))} entries to {output}")
        return

    print_table(
        f"Remote entries (tenant {tenant})",
        ["ID", "Kind", "Status", "Title", "Modified (GMT)", "Local ID"],
        [
            [e["id"], e["kind"], e["status"], e["title"], e["modified_gmt"], e["local_id"]]
            for e in entries
        ],
    )
    echo_info(f"{format_count(len(entries))} entries")
