"""Tests for run report generation."""

import json
from pathlib import Path

from wp_migration.reporting import RunReport, generate_run_report


def _summary(**overrides):
    summary = {
        "tenant": 3,
        "run_id": 4,
        "dry_run": False,
        "write_mode": "upsert",
        "found": 3,
        "imported": 2,
        "updated": 1,
        "skipped": 0,
        "errors": [{"source_id": 12, "stage": "terms", "message": "Unknown taxonomy"}],
        "warnings": [],
        "attachments": {"registered": 1, "reused": 2, "missing": {"55": "gone"}},
        "cancelled": False,
        "duration_seconds": 75.0,
    }
    summary.update(overrides)
    return summary


class TestRunReport:
    def test_json_report(self):
        report = json.loads(RunReport(_summary()).generate_json())

        assert report["operation"] == "run-import"
        assert report["statistics"]["imported"] == 2
        assert report["statistics"]["attachments_reused"] == 2
        assert report["statistics"]["errors"] == 1
        assert "tenant" not in report["statistics"]
        assert report["missing"] == {"55": "gone"}
        assert len(report["recommendations"]) == 2

    def test_markdown_report(self):
        markdown = RunReport(_summary()).generate_markdown()

        assert markdown.startswith("# WP Bridge Run Report")
        assert "**Run ID:** 4" in markdown
        assert "**Duration:** 1m 15s" in markdown
        assert "- `12` (terms): Unknown taxonomy" in markdown
        assert "## Missing Resources" in markdown

    def test_term_errors_keyed_by_source_id(self):
        summary = {"errors": {7: ["parent loop", "bad slug"]}, "warnings": []}

        report = json.loads(RunReport(summary, "import-terms").generate_json())

        assert [e["message"] for e in report["errors"]] == ["parent loop", "bad slug"]

    def test_dry_run_recommendation(self):
        report = RunReport(_summary(dry_run=True, errors=[], attachments={}))

        assert report._generate_recommendations() == [
            "This was a dry run. Nothing was written; run without --dry-run to import."
        ]

    def test_clean_run(self):
        report = RunReport(_summary(errors=[], attachments={}))

        assert report._generate_recommendations() == ["Run completed without errors."]


def test_generate_run_report_writes_files(tmp_path: Path):
    files = generate_run_report(_summary(), "run-import", str(tmp_path / "reports"))

    assert set(files) == {"json", "markdown"}
    assert Path(files["json"]).name.startswith("run-import_4_")
    assert json.loads(Path(files["json"]).read_text())["summary"]["run_id"] == 4
    assert Path(files["markdown"]).read_text().startswith("# WP Bridge Run Report")


def test_generate_dry_run_report_name(tmp_path: Path):
    files = generate_run_report(
        _summary(run_id=None, dry_run=True), "run-import", str(tmp_path), formats=["json"]
    )

    assert list(files) == ["json"]
    assert Path(files["json"]).name.startswith("run-import_dry_")
