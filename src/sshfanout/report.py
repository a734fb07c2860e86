"""Export collected command results as JSON, CSV or plain text."""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Iterable
from enum import StrEnum
from pathlib import Path

from sshfanout.models import CommandResult

__all__ = [
    "ReportFormat",
    "render_report",
    "write_report",
]


class ReportFormat(StrEnum):
    JSON = "json"
    CSV = "csv"
    TXT = "txt"

    @classmethod
    def from_path(cls, path: Path) -> ReportFormat:
        """Guess the format from a file suffix, defaulting to JSON."""
        try:
            return cls(path.suffix.lstrip(".").lower())
        except ValueError:
            return cls.JSON


CSV_COLUMNS = ["address", "host_id", "command", "exit_code", "success", "duration_ms", "timestamp", "stdout", "stderr"]


def render_report(
    results: Iterable[CommandResult],
    fmt: ReportFormat,
    include_errors: bool = True,
    include_timestamp: bool = True,
) -> str:
    """Render results in the requested format.

    Args:
        results: Results to export
        fmt: Output format
        include_errors: Keep results with a non-zero exit code
        include_timestamp: Include the completion timestamp column/line
    """
    selected = [r for r in results if include_errors or r.success]
    if fmt is ReportFormat.JSON:
        rows = [r.to_dict() for r in selected]
        if not include_timestamp:
            for row in rows:
                row.pop("timestamp")
        return json.dumps(rows, indent=2, ensure_ascii=False) + "\n"
    if fmt is ReportFormat.CSV:
        return _render_csv(selected, include_timestamp)
    return _render_text(selected, include_timestamp)


def write_report(
    results: Iterable[CommandResult],
    path: Path,
    fmt: ReportFormat | None = None,
    include_errors: bool = True,
    include_timestamp: bool = True,
) -> Path:
    """Write results to path. The format defaults to the one implied by the suffix."""
    fmt = fmt or ReportFormat.from_path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    # BOM marks CSV exports as UTF-8 for spreadsheet applications
    encoding = "utf-8-sig" if fmt is ReportFormat.CSV else "utf-8"
    path.write_text(render_report(results, fmt, include_errors, include_timestamp), encoding=encoding)
    return path


def _render_csv(results: list[CommandResult], include_timestamp: bool) -> str:
    columns = [c for c in CSV_COLUMNS if include_timestamp or c != "timestamp"]
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction="ignore")
    writer.writeheader()
    for result in results:
        writer.writerow(result.to_dict())
    return buffer.getvalue()


def _render_text(results: list[CommandResult], include_timestamp: bool) -> str:
    blocks = []
    for r in results:
        lines = [
            f"=== {r.address} ===",
            f"Command: {r.command}",
            f"Status: {'success' if r.success else 'failed'} (exit code {r.exit_code})",
            f"Duration: {r.duration_ms}ms",
        ]
        if include_timestamp:
            lines.append(f"Finished: {r.timestamp.isoformat()}")
        lines += ["", "STDOUT:", r.stdout or "(empty)", "", "STDERR:", r.stderr or "(empty)", "", "---", ""]
        blocks.append("\n".join(lines))
    return "\n".join(blocks)
