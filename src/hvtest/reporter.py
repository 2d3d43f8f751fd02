"""Result aggregation and reporting.

Finished run records stream into a ResultAggregator (from worker threads in
parallel mode). Once all targets are done the aggregate Report decides the
process exit status and is persisted as report.md (for humans) and
report.json (for tooling).

Exit status:
    0  no failures and no degraded skips
    1  at least one target failed
    2  nothing failed, but targets were skipped (e.g. no hardware reachable)
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from rich.table import Table

from hvtest.output import get_console
from hvtest.runner import EXCLUDED_REASON, RunRecord, Verdict

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DEGRADED = 2

REPORT_MD = "report.md"
REPORT_JSON = "report.json"

_VERDICT_LABELS = {
    Verdict.PASSED: "✅ passed",
    Verdict.FAILED: "❌ failed",
    Verdict.SKIPPED: "⏭️ skipped",
}
_VERDICT_STYLES = {
    Verdict.PASSED: "green",
    Verdict.FAILED: "red",
    Verdict.SKIPPED: "yellow",
}


@dataclass
class Report:
    """Aggregated outcome of one invocation.

    Attributes:
        records: Run records in selection order
        passed: Number of passed targets
        failed: Number of failed targets
        skipped: Number of skipped targets
        component: Component name shown in the report header
        config_source: Configuration file used, or None for built-in targets
        generated_at: Report creation time
    """

    records: List[RunRecord] = field(default_factory=list)
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    component: str = ""
    config_source: Optional[Path] = None
    generated_at: datetime = field(default_factory=datetime.now)

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.skipped

    @property
    def exit_status(self) -> int:
        if self.failed:
            return EXIT_FAILED
        # Skips the caller asked for do not degrade the run.
        if any(r.verdict is Verdict.SKIPPED and r.reason != EXCLUDED_REASON for r in self.records):
            return EXIT_DEGRADED
        return EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "component": self.component,
            "config": str(self.config_source) if self.config_source else None,
            "generated_at": self.generated_at.isoformat(timespec="seconds"),
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "total": self.total,
            "exit_status": self.exit_status,
            "targets": [record.to_dict() for record in self.records],
        }


class ResultAggregator:
    """Thread-safe collector of finished run records."""

    def __init__(self, component: str = "", config_source: Optional[Path] = None) -> None:
        self.component = component
        self.config_source = config_source
        self._records: List[RunRecord] = []
        self._lock = threading.Lock()

    def add(self, record: RunRecord) -> None:
        with self._lock:
            self._records.append(record)

    def aggregate(self, order: Optional[List[str]] = None) -> Report:
        """Build the report.

        Args:
            order: Target names in selection order; records are sorted to match

        Returns:
            Report with counts that always sum to the number of records
        """
        with self._lock:
            records = list(self._records)
        if order is not None:
            position = {name: i for i, name in enumerate(order)}
            records.sort(key=lambda r: position.get(r.target_name, len(position)))

        report = Report(records=records, component=self.component, config_source=self.config_source)
        for record in records:
            if record.verdict is Verdict.PASSED:
                report.passed += 1
            elif record.verdict is Verdict.SKIPPED:
                report.skipped += 1
            else:
                report.failed += 1
        return report


def render_markdown(report: Report) -> str:
    """Render the report as a markdown document."""
    lines = [
        "# Test Report",
        "",
        f"**Component**: {report.component}  ",
        f"**Time**: {report.generated_at:%Y-%m-%d %H:%M:%S}  ",
        f"**Config**: {report.config_source or 'built-in targets'}",
        "",
        "## Summary",
        "",
        "| Status | Count |",
        "|--------|-------|",
        f"| ✅ Passed | {report.passed} |",
        f"| ❌ Failed | {report.failed} |",
        f"| ⏭️ Skipped | {report.skipped} |",
        "",
        "## Targets",
        "",
    ]
    for record in report.records:
        label = _VERDICT_LABELS.get(record.verdict, "❌ failed") if record.verdict else "❌ failed"
        line = f"- {record.target_name}: {label}"
        if record.reason:
            line += f" ({record.reason})"
        lines.append(line)
    lines.append("")
    return "\n".join(lines)


def write_report(report: Report, output_dir: Path) -> Path:
    """Write report.md and report.json.

    Args:
        report: Aggregated report
        output_dir: Output directory

    Returns:
        Path of report.md
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    md_path = output_dir / REPORT_MD
    md_path.write_text(render_markdown(report), encoding="utf-8")
    with open(output_dir / REPORT_JSON, "w", encoding="utf-8") as f:
        json.dump(report.to_dict(), f, indent=2)
    logger.debug(f"Report written to {md_path}")
    return md_path


def render_summary(report: Report) -> None:
    """Print a per-target summary table and the totals."""
    table = Table(title="Test Results", show_lines=False, expand=False)
    table.add_column("Target", style="bold", no_wrap=True)
    table.add_column("Result", no_wrap=True)
    table.add_column("Time", justify="right", no_wrap=True)
    table.add_column("Reason")

    for record in report.records:
        verdict = record.verdict or Verdict.FAILED
        style = _VERDICT_STYLES[verdict]
        table.add_row(
            record.target_name,
            f"[{style}]{verdict.value}[/{style}]",
            f"{record.elapsed:.1f}s",
            record.reason,
        )

    console = get_console()
    console.print(table)
    console.print(f"Passed: {report.passed}  Failed: {report.failed}  Skipped: {report.skipped}  Total: {report.total}")
