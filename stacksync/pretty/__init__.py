"""Pretty formatting utilities for CLI output."""

import json
import shutil
import sys
from typing import IO, Dict, List, Optional

from ..engine import EntryReport, LandReport, StatusReport, SyncReport

def get_term_width() -> int:
    """Get terminal width, default to 80 if can't detect."""
    try:
        return shutil.get_terminal_size().columns
    except (OSError, ValueError):
        return 80


def header(text: str, use_emoji: bool = True) -> str:
    """Create a boxed header with optional emoji."""
    width = max(get_term_width(), len(text) + 8)
    h_line = "─" * (width - 2)
    v_line = "│"
    emoji = "🎯 " if use_emoji else ""
    padding = width - len(text) - len(emoji) - 3
    return "\n".join([
        f"┌{h_line}┐",
        f"{v_line} {emoji}{text}{' ' * padding}{v_line}",
        f"└{h_line}┘",
    ])


def pretty_json(data: object, prefix: str = "") -> str:
    """Format JSON data with optional prefix."""
    raw = json.dumps(data, indent=2)
    if prefix:
        lines = raw.split("\n")
        return "\n".join(f"{prefix}{line}" for line in lines)
    return raw


def print_json(data: object, prefix: str = "", file: Optional[IO[str]] = None) -> None:
    """Print JSON data to file (default stdout)."""
    if file is None:
        file = sys.stdout
    print(pretty_json(data, prefix), file=file)


def print_header(text: str, use_emoji: bool = True, file: Optional[IO[str]] = None) -> None:
    """Print a header to file (default stdout)."""
    if file is None:
        file = sys.stdout
    print(header(text, use_emoji), file=file)


OUTCOME_ICONS = {
    "updated": "✅",
    "would update": "📝",
    "Skip": "✔️ ",
    "failed": "❌",
    "skipped": "⏭️ ",
    "cancelled": "⛔",
    "blocked": "🚧",
    "RemoteDiverged": "🔀",
}


def format_entry(report: EntryReport) -> str:
    """One line per stack entry: icon, PR, commit, title, outcome."""
    icon = OUTCOME_ICONS.get(report.outcome, "•")
    pr = f"#{report.pr_number}" if report.pr_number else "new"
    line = f"{icon} {pr:>6} {report.commit_hash[:8]} {report.title} [{report.change.value}] {report.outcome}"
    if report.detail:
        line += f": {report.detail}"
    return line


def format_sync_report(report: SyncReport) -> List[str]:
    """Entries top of the stack first, like the PR stack lists."""
    lines = [format_entry(r) for r in reversed(report.entry_reports())]
    if not lines:
        lines.append("Stack is empty")
    if report.aborted is not None:
        lines.append(f"Aborted: {report.aborted.cause}")
    return lines


def print_sync_report(report: SyncReport, file: Optional[IO[str]] = None) -> None:
    if file is None:
        file = sys.stdout
    for line in format_sync_report(report):
        print(line, file=file)


def format_land_report(report: LandReport) -> List[str]:
    lines: List[str] = []
    for outcome in report.outcomes:
        lines.append(str(outcome.status))
        if outcome.error is not None:
            lines.append(f"  {outcome.error}")
        if isinstance(outcome.resync, SyncReport):
            lines.extend(f"  {line}" for line in format_sync_report(outcome.resync))
    lines.append(f"Landed {report.landed} pull request(s)")
    return lines


def print_land_report(report: LandReport, file: Optional[IO[str]] = None) -> None:
    if file is None:
        file = sys.stdout
    for line in format_land_report(report):
        print(line, file=file)


def status_data(report: StatusReport) -> List[Dict[str, object]]:
    """Status of each entry as plain data, top of the stack first."""
    data: List[Dict[str, object]] = []
    for entry, change, land in zip(report.entries, report.changes, report.land):
        pr = report.remote.get(entry.pr_number) if entry.pr_number is not None else None
        data.append({
            "position": entry.position,
            "commit": entry.commit_hash,
            "title": entry.title,
            "change": change.value,
            "pr": entry.pr_number,
            "pr_state": None if pr is None else ("MISSING" if pr.missing else pr.state),
            "base": None if pr is None or pr.missing else pr.base_ref,
            "checks": None if pr is None else pr.checks,
            "review": None if pr is None else pr.review_decision,
            "draft": pr is not None and pr.draft,
            "pending_operations": [op.kind.value for op in report.plan.for_position(entry.position)],
            "diverged": report.plan.diverged.get(entry.position),
            "foreign_head": report.plan.foreign_heads.get(entry.position),
            "land": land.state.value,
            "land_reason": land.reason or None,
        })
    data.reverse()
    return data


def format_status_report(report: StatusReport) -> List[str]:
    lines: List[str] = []
    for item in status_data(report):
        pr = f"#{item['pr']}" if item['pr'] else "new"
        ops = ", ".join(item['pending_operations']) or "in sync"  # type: ignore[arg-type]
        state = item['pr_state'] or "-"
        line = f"{pr:>6} {str(item['commit'])[:8]} {item['title']} [{item['change']}] {state}: {ops}"
        if item['diverged']:
            line += f" (diverged: {item['diverged']})"
        if item['foreign_head']:
            line += f" ({item['foreign_head']})"
        if item['position'] == 0:
            reason = f" ({item['land_reason']})" if item['land_reason'] else ""
            line += f" | land: {item['land']}{reason}"
        lines.append(line)
    if not lines:
        lines.append("Stack is empty")
    return lines


def print_status_report(report: StatusReport, file: Optional[IO[str]] = None) -> None:
    if file is None:
        file = sys.stdout
    for line in format_status_report(report):
        print(line, file=file)
