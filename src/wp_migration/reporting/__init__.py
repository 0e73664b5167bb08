"""Run report generation."""

from wp_migration.reporting.report import RunReport, generate_run_report

__all__ = ["RunReport", "generate_run_report"]
