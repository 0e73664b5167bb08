"""Run report generation.

Renders the summary of an import run (entries, terms, users or attachments)
as JSON or Markdown, with itemized errors, missing resources, warnings and
recommendations. Dry-run summaries produce a report of the same shape.
"""

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from wp_migration.utils.logging import get_logger

logger = get_logger(__name__)

MAX_ITEMS = 20


class RunReport:
    """Generates the report of one run.

    Args:
        summary: ``to_dict()`` of a run, term, user or attachment summary
        operation: What was run (``run-import``, ``import-terms``, ...)
    """

    def __init__(self, summary: dict[str, Any], operation: str = "run-import"):
        self.summary = summary
        self.operation = operation
        self.generated_at = datetime.now(UTC)

    def generate_json(self, output_path: str | None = None) -> str:
        """Generate JSON report.

        Args:
            output_path: Optional path to save report

        Returns:
            JSON report as string
        """
        report = {
            "report_version": "1.0",
            "generated_at": self.generated_at.isoformat(),
            "operation": self.operation,
            "summary": self.summary,
            "statistics": self._generate_statistics(),
            "errors": self._errors(),
            "missing": self._missing(),
            "warnings": self.summary.get("warnings", []),
            "recommendations": self._generate_recommendations(),
        }

        json_str = json.dumps(report, indent=2, default=str)

        if output_path:
            Path(output_path).write_text(json_str)
            logger.info("json_report_saved", path=output_path)

        return json_str

    def generate_markdown(self, output_path: str | None = None) -> str:
        """Generate Markdown report.

        Args:
            output_path: Optional path to save report

        Returns:
            Markdown report as string
        """
        stats = self._generate_statistics()
        lines = [
            "# WP Bridge Run Report",
            "",
            f"**Operation:** `{self.operation}`  ",
            f"**Run ID:** {self.summary.get('run_id') or 'N/A'}  ",
            f"**Tenant:** {self.summary.get('tenant', 1)}  ",
            f"**Generated:** {self.generated_at.strftime('%Y-%m-%d %H:%M:%S UTC')}  ",
            f"**Dry Run:** {'Yes' if self.summary.get('dry_run') else 'No'}  ",
            f"**Cancelled:** {'Yes' if self.summary.get('cancelled') else 'No'}  ",
            f"**Duration:** {self._format_duration(self.summary.get('duration_seconds'))}",
            "",
            "## Counts",
            "",
            "| Metric | Count |",
            "|--------|------:|",
        ]
        for key, value in stats.items():
            lines.append(f"| {key.replace('_', ' ').title()} | {value:,} |")
        lines.append("")

        errors = self._errors()
        if errors:
            lines.extend(["## Errors", "", f"Total errors: {len(errors)}", ""])
            for error in errors[:MAX_ITEMS]:
                source = error.get("source_id")
                stage = error.get("stage") or "unknown"
                label = f"`{source}` " if source is not None else ""
                lines.append(f"- {label}({stage}): {error.get('message', '')}")
            if len(errors) > MAX_ITEMS:
                lines.append(f"- *... and {len(errors) - MAX_ITEMS} more errors*")
            lines.append("")

        missing = self._missing()
        if missing:
            lines.extend(["## Missing Resources", ""])
            for reference, reason in list(missing.items())[:MAX_ITEMS]:
                lines.append(f"- `{reference}`: {reason}")
            if len(missing) > MAX_ITEMS:
                lines.append(f"- *... and {len(missing) - MAX_ITEMS} more*")
            lines.append("")

        warnings = self.summary.get("warnings", [])
        if warnings:
            lines.extend(["## Warnings", ""])
            lines.extend(f"- {warning}" for warning in warnings[:MAX_ITEMS])
            lines.append("")

        recommendations = self._generate_recommendations()
        if recommendations:
            lines.extend(["## Recommendations", ""])
            lines.extend(f"- {rec}" for rec in recommendations)
            lines.append("")

        markdown = "\n".join(lines)

        if output_path:
            Path(output_path).write_text(markdown)
            logger.info("markdown_report_saved", path=output_path)

        return markdown

    def _errors(self) -> list[dict[str, Any]]:
        """Errors as a flat list, whichever shape the summary stores them in."""
        errors = self.summary.get("errors", [])
        if isinstance(errors, dict):
            return [
                {"source_id": source_id, "stage": None, "message": message}
                for source_id, messages in errors.items()
                for message in messages
            ]
        return list(errors)

    def _missing(self) -> dict[str, str]:
        attachments = self.summary.get("attachments") or {}
        missing = attachments.get("missing", {})
        return missing if isinstance(missing, dict) else {}

    def _generate_statistics(self) -> dict[str, int]:
        """Integer counters of the summary, attachment counters included."""
        stats = {
            key: value
            for key, value in self.summary.items()
            if isinstance(value, int) and not isinstance(value, bool) and key not in ("tenant", "run_id")
        }
        for key, value in (self.summary.get("attachments") or {}).items():
            if isinstance(value, int) and not isinstance(value, bool):
                stats[f"attachments_{key}"] = value
        stats["errors"] = len(self._errors())
        return stats

    def _generate_recommendations(self) -> list[str]:
        recommendations = []

        errors = self._errors()
        if errors:
            recommendations.append(
                f"{len(errors)} item(s) failed. Fix the causes and re-run; "
                "already imported items are updated, not duplicated."
            )

        missing = self._missing()
        if missing:
            recommendations.append(
                f"{len(missing)} attachment(s) are missing. Copy the uploads directory or "
                "set the old media base URL so files can be downloaded, then run "
                "import-attachments."
            )

        if any("term_parent_unresolved" in w for w in self.summary.get("warnings", [])):
            recommendations.append(
                "Some terms were imported without their parent. Import the parent terms "
                "and run import-terms again to restore the hierarchy."
            )

        if self.summary.get("cancelled"):
            recommendations.append(
                "The run was cancelled. Committed rows are consistent; re-run to finish."
            )

        if self.summary.get("dry_run"):
            recommendations.append(
                "This was a dry run. Nothing was written; run without --dry-run to import."
            )

        if not recommendations:
            recommendations.append("Run completed without errors.")

        return recommendations

    def _format_duration(self, seconds: float | None) -> str:
        if seconds is None:
            return "N/A"

        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = seconds % 60

        if hours > 0:
            return f"{hours}h {minutes}m {int(secs)}s"
        elif minutes > 0:
            return f"{minutes}m {int(secs)}s"
        else:
            return f"{secs:.1f}s"


def generate_run_report(
    summary: dict[str, Any],
    operation: str = "run-import",
    output_dir: str = "./reports",
    formats: list[str] | None = None,
) -> dict[str, str]:
    """Write the run report in the requested formats.

    Args:
        summary: ``to_dict()`` of the run summary
        operation: What was run
        output_dir: Directory to save reports
        formats: json and/or markdown. Default: both

    Returns:
        Dictionary mapping format to file path
    """
    if formats is None:
        formats = ["json", "markdown"]

    report = RunReport(summary, operation)
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_label = summary.get("run_id") or ("dry" if summary.get("dry_run") else "na")
    base_filename = f"{operation}_{run_label}_{timestamp}"

    generated_files = {}

    if "json" in formats:
        json_path = output_path / f"{base_filename}.json"
        report.generate_json(str(json_path))
        generated_files["json"] = str(json_path)

    if "markdown" in formats:
        md_path = output_path / f"{base_filename}.md"
        report.generate_markdown(str(md_path))
        generated_files["markdown"] = str(md_path)

    logger.info("run_reports_generated", operation=operation, files=generated_files)

    return generated_files
