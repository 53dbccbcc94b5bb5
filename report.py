from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence, Tuple

from jinja2 import Environment, select_autoescape

from checker import LinkRecord, LinkStatus, normalize_url
from utils import atomic_write_text, log_event, utc_now_iso

if TYPE_CHECKING:
    from db import SQLiteStore
    from jobs import CheckRun


logger = logging.getLogger("linkcheck.report")

REPORT_PREFIX = "report_"

HTML_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>Link check {{ report.run_id }}</title>
<style>
body { font-family: sans-serif; margin: 2rem; color: #222; }
table { border-collapse: collapse; width: 100%; margin-bottom: 2rem; }
th, td { border: 1px solid #ccc; padding: 0.3rem 0.6rem; text-align: left; font-size: 0.9rem; }
th { background: #f0f0f0; }
.partial { color: #a60; }
.broken h2 { color: #b00; }
</style>
</head>
<body>
<h1>Link check results</h1>
<p>Run <code>{{ report.run_id }}</code> ({{ report.run_status }}), generated {{ report.generated_at }}.</p>
{% if report.partial %}<p class="partial">The run was still in progress; this report is incomplete.</p>{% endif %}
<ul>
<li>Total: {{ report.summary.total }}</li>
<li>Valid: {{ report.summary.valid }}</li>
<li>Broken: {{ report.summary.broken }}</li>
<li>Skipped: {{ report.summary.skipped }}</li>
<li>Changed since earlier runs: {{ report.changes|length }}</li>
</ul>
<section class="changed">
<h2>Changed pages ({{ report.changes|length }})</h2>
{% if report.changes %}
<table>
<tr><th>Page</th><th>Hash now</th><th>Usual hash</th><th>Agreement</th><th>Compressed size now</th><th>Usual size</th></tr>
{% for change in report.changes %}
<tr><td>{{ change.target_url }}</td><td><code>{{ change.content_hash[:12] }}</code></td><td><code>{{ change.expected_hash[:12] }}</code></td><td>{{ change.confidence }}% of {{ change.samples }}</td><td>{{ change.compressed_length }}</td><td>{{ change.expected_length if change.expected_length is not none else "" }}</td></tr>
{% endfor %}
</table>
{% else %}
<p>None.</p>
{% endif %}
</section>
{% for section in sections %}
<section class="{{ section.css }}">
<h2>{{ section.title }} ({{ section.rows|length }})</h2>
{% if section.rows %}
<table>
<tr><th>Link</th><th>Found on</th><th>Detail</th><th>Attempts</th><th>Checked at</th></tr>
{% for row in section.rows %}
<tr><td>{{ row.target_url }}</td><td>{{ row.source_location }}</td><td>{{ row.detail or "" }}</td><td>{{ row.attempt_count }}</td><td>{{ row.checked_at }}</td></tr>
{% endfor %}
</table>
{% else %}
<p>None.</p>
{% endif %}
</section>
{% endfor %}
</body>
</html>
"""

_SECTIONS = (
    ("Broken", "broken", LinkStatus.BROKEN),
    ("Skipped", "skipped", LinkStatus.SKIPPED),
    ("Redirected", "redirected", LinkStatus.REDIRECTED),
    ("Valid", "valid", LinkStatus.VALID),
)

_env = Environment(autoescape=select_autoescape(default=True, default_for_string=True))


@dataclass(frozen=True)
class ReportSummary:
    total: int = 0
    valid: int = 0
    broken: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"total": self.total, "valid": self.valid, "broken": self.broken, "skipped": self.skipped}


@dataclass(frozen=True)
class PageChange:
    target_url: str
    content_hash: str
    expected_hash: str
    confidence: int
    samples: int
    compressed_length: Optional[int] = None
    expected_length: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_url": self.target_url,
            "content_hash": self.content_hash,
            "expected_hash": self.expected_hash,
            "confidence": self.confidence,
            "samples": self.samples,
            "compressed_length": self.compressed_length,
            "expected_length": self.expected_length,
        }


@dataclass(frozen=True)
class Report:
    generated_at: str
    run_id: str
    run_status: str
    partial: bool
    summary: ReportSummary
    entries: Tuple[LinkRecord, ...]
    changes: Tuple[PageChange, ...] = ()


def mode(values: Sequence[Any]) -> Tuple[Optional[Any], Optional[int]]:
    """Most common value and its share in percent; ties go to the most recent value."""
    if not values:
        return None, None
    value, count = Counter(reversed(list(values))).most_common(1)[0]
    return value, count * 100 // len(values)


def detect_changes(
    entries: Sequence[LinkRecord],
    baseline: Mapping[str, Sequence[Mapping[str, Any]]],
) -> Tuple[PageChange, ...]:
    """Pages whose content hash differs from the most common hash of their earlier states."""
    changes: List[PageChange] = []
    for record in entries:
        if not record.content_hash:
            continue
        states = baseline.get(normalize_url(record.target_url)) or []
        expected_hash, confidence = mode([state["content_hash"] for state in states])
        if expected_hash is None or expected_hash == record.content_hash:
            continue
        expected_length, _ = mode([state["compressed_length"] for state in states])
        changes.append(
            PageChange(
                target_url=record.target_url,
                content_hash=record.content_hash,
                expected_hash=expected_hash,
                confidence=confidence or 0,
                samples=len(states),
                compressed_length=record.compressed_length,
                expected_length=expected_length,
            )
        )
    return tuple(changes)


def generate(
    run: "CheckRun",
    baseline: Optional[Mapping[str, Sequence[Mapping[str, Any]]]] = None,
) -> Report:
    """Build a report from the run's records as they stand right now.

    Works on a running check too; the result is then flagged ``partial``.
    Redirected links count as valid in the summary. With a ``baseline`` of
    earlier page states, pages whose content drifted are listed as changes.
    """
    # Status before records: a run finishing in between must stay labelled partial.
    status = run.status.value
    entries = run.records
    valid = broken = skipped = 0
    for record in entries:
        if record.status in (LinkStatus.VALID, LinkStatus.REDIRECTED):
            valid += 1
        elif record.status is LinkStatus.BROKEN:
            broken += 1
        elif record.status is LinkStatus.SKIPPED:
            skipped += 1

    return Report(
        generated_at=utc_now_iso(),
        run_id=run.run_id,
        run_status=status,
        partial=status == "running",
        summary=ReportSummary(total=len(entries), valid=valid, broken=broken, skipped=skipped),
        entries=entries,
        changes=detect_changes(entries, baseline or {}),
    )


def report_to_dict(report: Report) -> Dict[str, Any]:
    return {
        "generated_at": report.generated_at,
        "run_id": report.run_id,
        "run_status": report.run_status,
        "partial": report.partial,
        "summary": report.summary.to_dict(),
        "entries": [record.to_dict() for record in report.entries],
        "changes": [change.to_dict() for change in report.changes],
    }


def render_html(report: Report) -> str:
    sections = [
        {
            "title": title,
            "css": css,
            "rows": [record for record in report.entries if record.status is status],
        }
        for title, css, status in _SECTIONS
    ]
    return _env.from_string(HTML_TEMPLATE).render(report=report, sections=sections)


class ReportWriter:
    """Writes reports as self-contained JSON documents with an HTML companion."""

    def __init__(self, report_dir: Path, keep: int = 10, history: Optional["SQLiteStore"] = None) -> None:
        self.report_dir = Path(report_dir)
        self.keep = max(1, int(keep))
        self.history = history

    def write(self, report: Report) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        json_path = self.report_dir / f"{REPORT_PREFIX}{stamp}_{report.run_id}.json"
        payload = report_to_dict(report)
        atomic_write_text(json_path, json.dumps(payload, indent=2) + "\n")
        atomic_write_text(json_path.with_suffix(".html"), render_html(report))
        log_event(
            logger,
            logging.INFO,
            "report_written",
            run_id=report.run_id,
            path=json_path,
            partial=report.partial,
            changes=len(report.changes),
            **report.summary.to_dict(),
        )

        if self.history is not None:
            self.history.add_report(report.run_id, str(json_path), report.partial, report.summary.to_dict())
        self.prune()
        return json_path

    def list_paths(self) -> List[Path]:
        if not self.report_dir.is_dir():
            return []
        return sorted(self.report_dir.glob(f"{REPORT_PREFIX}*.json"))

    def prune(self) -> List[Path]:
        paths = self.list_paths()
        stale = paths[: max(0, len(paths) - self.keep)]
        for path in stale:
            for candidate in (path, path.with_suffix(".html")):
                try:
                    candidate.unlink()
                except FileNotFoundError:
                    continue
            if self.history is not None:
                self.history.delete_report(str(path))
            log_event(logger, logging.INFO, "report_pruned", path=path)
        return stale

    @staticmethod
    def load(path: Path) -> Dict[str, Any]:
        return json.loads(Path(path).read_text(encoding="utf-8"))


def resolve_report_dir(report_dir: str, data_dir: Path) -> Path:
    path = Path(report_dir).expanduser()
    return path if path.is_absolute() else Path(data_dir) / path


def page_states(records: Sequence[LinkRecord]) -> List[Dict[str, Any]]:
    return [
        {
            "url_key": normalize_url(record.target_url),
            "content_hash": record.content_hash,
            "compressed_length": record.compressed_length or 0,
            "checked_at": record.checked_at,
        }
        for record in records
        if record.content_hash
    ]


def load_baseline(run: "CheckRun", history: "SQLiteStore") -> Dict[str, List[Dict[str, Any]]]:
    """Earlier stored states for the pages this run fingerprinted, excluding the run itself."""
    keys = [state["url_key"] for state in page_states(run.records)]
    return history.page_history(keys, exclude_run_id=run.run_id)


def publish_run(run: "CheckRun", history: "SQLiteStore", data_dir: Path) -> Optional[Path]:
    """Record a finished run in the history and, when enabled, write its report.

    The report compares page content against earlier runs before this run's
    own page states are added to the history.
    """
    summary = dict(run.progress)
    summary["records"] = len(run.records)
    history.add_run_history(
        run.run_id,
        run.status.value,
        run.started_at,
        finished_at=run.finished_at,
        reason=run.reason,
        entry_points=list(run.config.entry_points),
        summary=summary,
    )
    path: Optional[Path] = None
    if run.config.gen_report:
        writer = ReportWriter(resolve_report_dir(run.config.report_dir, data_dir), run.config.keep_reports, history)
        path = writer.write(generate(run, load_baseline(run, history)))
    if run.config.track_changes:
        stored = history.add_page_states(run.run_id, page_states(run.records), keep=run.config.page_history_size)
        if stored:
            log_event(logger, logging.INFO, "page_states_stored", run_id=run.run_id, pages=stored)
    return path
