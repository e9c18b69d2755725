"""Output formatters for plans, apply summaries and drift reports."""

import io
import json
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.text import Text
from rich.tree import Tree

from stackapply.drift import DriftReport
from stackapply.models import (
    ChangeAction,
    ChangeSet,
    ChangeStatus,
    ExecutionSummary,
    PropertyDiff,
    ResourceStatus,
)

ACTION_SYMBOLS = {
    ChangeAction.CREATE: "+",
    ChangeAction.UPDATE: "~",
    ChangeAction.REPLACE: "-/+",
    ChangeAction.DELETE: "-",
    ChangeAction.NOOP: " ",
}

ACTION_COLORS = {
    ChangeAction.CREATE: "green",
    ChangeAction.UPDATE: "yellow",
    ChangeAction.REPLACE: "bold red",
    ChangeAction.DELETE: "red",
    ChangeAction.NOOP: "dim",
}

STATUS_COLORS = {
    ChangeStatus.SUCCEEDED: "green",
    ChangeStatus.FAILED: "bold red",
    ChangeStatus.BLOCKED: "yellow",
    ChangeStatus.NOOP: "dim",
}

REDACTED = "[REDACTED]"


def _escape_md_cell(value: str) -> str:
    """Escape characters that break markdown table cells."""
    return value.replace("|", "\\|").replace("\n", " ")


def _render(value: Any, redact: bool) -> str:
    if redact:
        return REDACTED
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


def _plan_headline(change_set: ChangeSet) -> str:
    counts = change_set.counts()
    return (
        f"Plan: {counts[ChangeAction.CREATE]} to create, "
        f"{counts[ChangeAction.UPDATE]} to update, "
        f"{counts[ChangeAction.REPLACE]} to replace, "
        f"{counts[ChangeAction.DELETE]} to delete"
    )


def _diff_json(pd: PropertyDiff, redact: bool) -> dict[str, Any]:
    return {
        "path": pd.path,
        "before": REDACTED if redact else pd.before,
        "after": REDACTED if redact else pd.after,
        "requires_replace": pd.requires_replace,
    }


def format_plan_json(change_set: ChangeSet, *, redact: bool = False) -> str:
    """Format a plan as JSON."""
    return json.dumps(
        {
            "summary": {action.value: count for action, count in change_set.counts().items()},
            "changes": [
                {
                    "logical_id": c.logical_id,
                    "kind": c.kind,
                    "action": c.action.value,
                    "physical_id": c.physical_id,
                    "strategy": c.strategy.value if c.strategy else None,
                    "reason": c.reason,
                    "depends_on": list(c.depends_on),
                    "property_diffs": [_diff_json(pd, redact) for pd in c.property_diffs],
                }
                for c in change_set
            ],
        },
        indent=2,
    )


def format_plan_markdown(change_set: ChangeSet, *, redact: bool = False) -> str:
    """Format a plan as Markdown."""
    if not change_set.has_changes:
        return "No changes. Infrastructure matches the desired state."

    lines = [f"## {_plan_headline(change_set)}", ""]
    lines.append("| Action | Resource | Kind | Property | Before | After |")
    lines.append("|--------|----------|------|----------|--------|-------|")
    for c in change_set:
        if c.action == ChangeAction.NOOP:
            continue
        logical_id = _escape_md_cell(c.logical_id)
        kind = _escape_md_cell(c.kind)
        if c.property_diffs and c.action != ChangeAction.DELETE:
            for pd in c.property_diffs:
                marker = " (forces replacement)" if pd.requires_replace else ""
                before = _escape_md_cell(_render(pd.before, redact))
                after = _escape_md_cell(_render(pd.after, redact))
                lines.append(
                    f"| {c.action.value} | {logical_id} | {kind} "
                    f"| `{_escape_md_cell(pd.path)}`{marker} | `{before}` | `{after}` |"
                )
        else:
            lines.append(f"| {c.action.value} | {logical_id} | {kind} | — | — | — |")
    lines.append("")
    return "\n".join(lines)


def format_plan_table(change_set: ChangeSet, *, redact: bool = False) -> str:
    """Format a plan as a Rich tree view, returned as a string."""
    if not change_set.has_changes:
        return "No changes. Infrastructure matches the desired state."

    console = Console(record=True, width=120, file=io.StringIO())
    tree = Tree(f"[bold]{_plan_headline(change_set)}[/bold]")

    for c in change_set:
        if c.action == ChangeAction.NOOP:
            continue
        color = ACTION_COLORS[c.action]
        label = (
            f"[{color}]{escape(ACTION_SYMBOLS[c.action])} {escape(c.logical_id)}[/{color}]"
            f" ({escape(c.kind)}) — {c.action.value}"
        )
        if c.reason:
            label += f" [dim]({escape(c.reason)})[/dim]"
        branch = tree.add(Text.from_markup(label))
        if c.action == ChangeAction.DELETE:
            continue
        for pd in c.property_diffs:
            before = escape(_render(pd.before, redact)) if pd.before is not None else "null"
            after = escape(_render(pd.after, redact)) if pd.after is not None else "null"
            marker = " [red]# forces replacement[/red]" if pd.requires_replace else ""
            branch.add(
                Text.from_markup(f"{escape(pd.path)}: [red]{before}[/red] → [green]{after}[/green]{marker}")
            )

    console.print(tree)
    return console.export_text()


def format_summary_json(summary: ExecutionSummary) -> str:
    """Format an apply summary as JSON."""
    return json.dumps(
        {
            "summary": {status.value: count for status, count in summary.counts().items()},
            "cancelled": summary.cancelled,
            "results": [
                {
                    "logical_id": r.logical_id,
                    "action": r.action.value,
                    "status": r.status.value,
                    "attempts": r.attempts,
                    "physical_id": r.physical_id,
                    "error": r.error,
                }
                for r in summary.results
            ],
        },
        indent=2,
    )


def format_summary_markdown(summary: ExecutionSummary) -> str:
    """Format an apply summary as Markdown."""
    counts = summary.counts()
    headline = ", ".join(f"{count} {status.value}" for status, count in counts.items())
    lines = [f"## Apply {'cancelled' if summary.cancelled else 'complete'} — {headline}", ""]
    lines.append("| Resource | Action | Status | Physical ID | Error |")
    lines.append("|----------|--------|--------|-------------|-------|")
    for r in summary.results:
        lines.append(
            f"| {_escape_md_cell(r.logical_id)} | {r.action.value} | {r.status.value} "
            f"| {_escape_md_cell(r.physical_id or '—')} | {_escape_md_cell(r.error or '—')} |"
        )
    lines.append("")
    return "\n".join(lines)


def format_summary_table(summary: ExecutionSummary) -> str:
    """Format an apply summary as a Rich tree view, returned as a string."""
    console = Console(record=True, width=120, file=io.StringIO())
    counts = summary.counts()
    headline = ", ".join(f"{count} {status.value}" for status, count in counts.items())
    tree = Tree(f"[bold]Apply {'cancelled' if summary.cancelled else 'complete'}[/bold] — {headline}")
    for r in summary.results:
        if r.status == ChangeStatus.NOOP:
            continue
        color = STATUS_COLORS.get(r.status, "dim")
        branch = tree.add(
            Text.from_markup(
                f"[{color}]{escape(r.logical_id)}[/{color}] {r.action.value} — {r.status.value}"
                + (f" ({escape(r.physical_id)})" if r.physical_id else "")
            )
        )
        if r.error:
            branch.add(Text(r.error, style="red"))
    console.print(tree)
    return console.export_text()


def format_drift_json(report: DriftReport, *, redact: bool = False) -> str:
    """Format drift results as JSON."""
    return json.dumps(
        {
            "summary": {
                "total_resources": len(report.drifts),
                "drifted_resources": len(report.drifted),
                "failed_resources": report.failed_resources,
            },
            "resources": [
                {
                    "logical_id": d.logical_id,
                    "physical_id": d.physical_id,
                    "kind": d.kind,
                    "status": d.status.value,
                    "property_diffs": [
                        {
                            "path": pd.path,
                            "expected": REDACTED if redact else pd.before,
                            "actual": REDACTED if redact else pd.after,
                        }
                        for pd in d.property_diffs
                    ],
                }
                for d in report.drifts
                if d.status != ResourceStatus.IN_SYNC
            ],
        },
        indent=2,
    )


def format_drift_markdown(report: DriftReport, *, redact: bool = False) -> str:
    """Format drift results as Markdown."""
    if not report.drifted:
        return "No drift detected."

    lines = [f"## Drift Report — {len(report.drifted)}/{len(report.drifts)} resources drifted", ""]
    lines.append("| Resource | Kind | Status | Property | Expected | Actual |")
    lines.append("|----------|------|--------|----------|----------|--------|")
    for d in report.drifted:
        logical_id = _escape_md_cell(d.logical_id)
        if d.property_diffs:
            for pd in d.property_diffs:
                expected = _escape_md_cell(_render(pd.before, redact))
                actual = _escape_md_cell(_render(pd.after, redact))
                lines.append(
                    f"| {logical_id} | {d.kind} | {d.status.value} "
                    f"| `{_escape_md_cell(pd.path)}` | `{expected}` | `{actual}` |"
                )
        else:
            lines.append(f"| {logical_id} | {d.kind} | {d.status.value} | — | — | — |")
    lines.append("")
    return "\n".join(lines)


def format_drift_table(report: DriftReport, *, redact: bool = False) -> str:
    """Format drift results as a Rich tree view, returned as a string."""
    if not report.drifted:
        return "No drift detected."

    console = Console(record=True, width=120, file=io.StringIO())
    tree = Tree("[bold]Drift Report[/bold]")
    for d in report.drifted:
        branch = tree.add(
            Text.from_markup(
                f"[red]{escape(d.logical_id)}[/red] ({escape(d.kind)}, {escape(d.physical_id)})"
                f" — {d.status.value}"
            )
        )
        for pd in d.property_diffs:
            expected = escape(_render(pd.before, redact))
            actual = escape(_render(pd.after, redact))
            branch.add(
                Text.from_markup(f"{escape(pd.path)}: [green]{expected}[/green] → [red]{actual}[/red]")
            )
    console.print(tree)
    return console.export_text()
