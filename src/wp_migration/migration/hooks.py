"""Typed entry hooks and the built-in hooks exposed to the command line.

A pre-hook receives the mutable :class:`EntryDraft` before the write
decision and may change any of its fields. A post-hook runs after the entry
is written (or, in dry-run, after it would have been) and receives a
:class:`PostHookContext`. Hook failures are recorded against the row and
never abort the run.
"""

import csv
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from wp_migration.client.exceptions import ConfigError
from wp_migration.migration.query import SourceRow
from wp_migration.migration.store import ContentStore
from wp_migration.migration.terms import ensure_term, slugify
from wp_migration.migration.users import UserImporter
from wp_migration.utils.logging import get_logger

if TYPE_CHECKING:
    from wp_migration.migration.importer import RunOptions

logger = get_logger(__name__)

PRE = "pre"
POST = "post"


@dataclass
class EntryDraft:
    """Local entity fields about to be written for one source row."""

    source_id: int
    tenant: int
    kind: str
    status: str
    title: str
    slug: str
    body: str = ""
    excerpt: str = ""
    author_id: int | None = None
    parent_id: int | None = None
    created_at: str = ""
    created_at_gmt: str = ""
    modified_at: str = ""
    modified_at_gmt: str = ""
    meta: dict[str, Any] = field(default_factory=dict)
    terms: dict[str, list[str]] = field(default_factory=dict)

    def to_fields(self, run_id: int | None = None) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "kind": self.kind,
            "status": self.status,
            "title": self.title,
            "slug": self.slug,
            "body": self.body,
            "excerpt": self.excerpt,
            "author_id": self.author_id,
            "parent_id": self.parent_id,
            "created_at": self.created_at,
            "created_at_gmt": self.created_at_gmt,
            "modified_at": self.modified_at,
            "modified_at_gmt": self.modified_at_gmt,
        }
        if run_id is not None:
            fields["run_id"] = run_id
        return fields


@dataclass
class PostHookContext:
    """What a post-hook sees of a processed row."""

    local_id: int
    row: SourceRow
    is_update: bool
    dry_run: bool
    store: ContentStore
    users: UserImporter | None = None


PreHook = Callable[[EntryDraft, "RunOptions"], None]
PostHook = Callable[[PostHookContext, "RunOptions"], None]


def map_remote_author(ctx: PostHookContext, options: "RunOptions") -> None:
    """Set the entry's author to the local copy of its remote author.

    The remote user is imported when it has no local counterpart yet.
    """
    if ctx.dry_run or ctx.users is None or not ctx.local_id:
        return

    remote_author = ctx.row.author_source_id
    if remote_author <= 0:
        return

    local_author = ctx.users.import_user(remote_author, ctx.row.tenant)
    if not local_author:
        logger.warning("remote_author_unresolved", source_id=ctx.row.source_id, author=remote_author)
        return

    entity = ctx.store.get_entity(ctx.local_id)
    if entity is not None and entity["author_id"] != local_author:
        ctx.store.update_entity(ctx.local_id, {"author_id": local_author})


def force_kind(kind: str) -> PreHook:
    """Pre-hook factory: import every entry as ``kind``."""
    if not kind:
        raise ConfigError("force_kind requires a kind")

    def hook(draft: EntryDraft, options: "RunOptions") -> None:
        draft.kind = kind

    hook.__name__ = f"force_kind_{kind}"
    return hook


def add_term(taxonomy: str, name: str) -> PostHook:
    """Post-hook factory: add the term ``name`` of ``taxonomy`` to every entry."""
    if not taxonomy or not name:
        raise ConfigError("add_term requires a taxonomy and a term name")

    def hook(ctx: PostHookContext, options: "RunOptions") -> None:
        if ctx.dry_run or not ctx.local_id:
            return
        term_id = ensure_term(ctx.store, taxonomy, name)
        ctx.store.set_entity_terms(ctx.local_id, taxonomy, [term_id], append=True)

    hook.__name__ = f"add_term_{taxonomy}"
    return hook


@dataclass(frozen=True)
class TermRemapRule:
    """One source/target rule pair, joined on the control number."""

    control: int
    source_kind: str
    source_taxonomy: str
    source_term: str
    target_kind: str
    assignments: tuple[tuple[str, str], ...] = ()


def _sanitize_key(value: str) -> str:
    return re.sub(r"[^a-z0-9_\-]", "", value.strip().lower())


def _read_csv(path: Path) -> list[list[str]]:
    try:
        with path.open(newline="", encoding="utf-8-sig") as f:
            return [[cell.strip() for cell in row] for row in csv.reader(f)]
    except OSError as e:
        raise ConfigError(f"Cannot read rules file {path}: {e}") from e


def _control(row: list[str]) -> int:
    try:
        return int(row[0]) if row else 0
    except ValueError:
        return 0


def load_remap_rules(source_csv: str | Path, target_csv: str | Path) -> list[TermRemapRule]:
    """Join the source and target rule files on their control column.

    The source file has the columns ``control, kind, taxonomy, term``; the
    target file ``control, kind`` followed by any number of ``taxonomy, term``
    pairs. The first row of each file is a header. Target rows whose control
    has no source row are ignored, and pairs with an empty taxonomy or term
    assign nothing.

    Raises:
        ConfigError: A file cannot be read
    """
    source_rows = _read_csv(Path(source_csv))[1:]
    target_rows = _read_csv(Path(target_csv))[1:]

    sources: dict[int, tuple[str, str, str]] = {}
    for row in source_rows:
        control = _control(row)
        if control <= 0:
            continue
        row = row + [""] * (4 - len(row))
        sources[control] = (_sanitize_key(row[1]), _sanitize_key(row[2]), slugify(row[3]))

    rules = []
    for row in target_rows:
        control = _control(row)
        if control <= 0 or control not in sources:
            continue
        row = row + [""] * (2 - len(row))
        pairs = [
            (_sanitize_key(taxonomy), term.strip())
            for taxonomy, term in zip(row[2::2], row[3::2])
        ]
        source_kind, source_taxonomy, source_term = sources[control]
        rules.append(
            TermRemapRule(
                control=control,
                source_kind=source_kind,
                source_taxonomy=source_taxonomy,
                source_term=source_term,
                target_kind=_sanitize_key(row[1]),
                assignments=tuple((tax, term) for tax, term in pairs if tax and term),
            )
        )

    rules.sort(key=lambda rule: rule.control)
    return rules


def remap_terms(source_csv: str, target_csv: str) -> PostHook:
    """Post-hook factory: apply CSV remapping rules to every imported entry.

    A rule matches when its kind (if set) equals the remote kind and, when it
    names a taxonomy and term, the entry carries that term. A matching rule
    changes the entry's kind (if set) and appends its term assignments.
    """
    rules = load_remap_rules(source_csv, target_csv)
    if not rules:
        logger.warning("remap_rules_empty", source_csv=source_csv, target_csv=target_csv)

    def hook(ctx: PostHookContext, options: "RunOptions") -> None:
        if ctx.dry_run or not ctx.local_id:
            return

        remote_kind = _sanitize_key(ctx.row.kind)
        for rule in rules:
            if rule.source_kind and rule.source_kind != remote_kind:
                continue
            if rule.source_taxonomy and rule.source_term:
                term_id = ctx.store.find_term(rule.source_taxonomy, slug=rule.source_term)
                if term_id is None or term_id not in ctx.store.get_entity_terms(
                    ctx.local_id, rule.source_taxonomy
                ):
                    continue

            if rule.target_kind:
                ctx.store.update_entity(ctx.local_id, {"kind": rule.target_kind})
            for taxonomy, name in rule.assignments:
                term_id = ensure_term(ctx.store, taxonomy, name)
                ctx.store.set_entity_terms(ctx.local_id, taxonomy, [term_id], append=True)
            logger.debug("remap_rule_applied", control=rule.control, local_id=ctx.local_id)

    hook.__name__ = "remap_terms"
    return hook


# name -> (phase, factory, number of arguments)
BUILTIN_HOOKS: dict[str, tuple[str, Callable[..., Any], int]] = {
    "map_remote_author": (POST, lambda: map_remote_author, 0),
    "force_kind": (PRE, force_kind, 1),
    "add_term": (POST, add_term, 2),
    "remap_terms": (POST, remap_terms, 2),
}


def resolve_hook(spec: str, phase: str) -> Callable[..., None]:
    """Build a built-in hook from ``name[:arg[:arg]]``.

    Args:
        spec: Hook name and colon-separated arguments (``add_term:category:News``)
        phase: ``pre`` or ``post``; the hook must belong to it

    Raises:
        ConfigError: Unknown hook, wrong phase or wrong number of arguments
    """
    name, *args = spec.split(":")
    name = name.strip()
    if name not in BUILTIN_HOOKS:
        raise ConfigError(
            f"Unknown hook '{name}'", details={"available": ", ".join(sorted(BUILTIN_HOOKS))}
        )

    hook_phase, factory, arity = BUILTIN_HOOKS[name]
    if hook_phase != phase:
        raise ConfigError(f"Hook '{name}' is a {hook_phase}-hook, not a {phase}-hook")
    if len(args) != arity:
        raise ConfigError(f"Hook '{name}' takes {arity} argument(s), got {len(args)}")

    return factory(*(arg.strip() for arg in args))
