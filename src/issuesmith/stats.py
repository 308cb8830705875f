"""Usage reporting over stored issue records."""

from __future__ import annotations

import csv
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from issuesmith.models import IssueRecord

CSV_HEADER = [
    "Owner",
    "Repository",
    "Issue Number",
    "Status",
    "PR Number",
    "Input Tokens",
    "Output Tokens",
    "Total Tokens",
    "Cost",
    "Created At",
    "Updated At",
    "Completed At",
]

_RULE = "-" * 84


@dataclass
class UsageSummary:
    total_issues: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def avg_cost_per_issue(self) -> float:
        return self.cost_usd / self.total_issues if self.total_issues else 0.0


def summarize(records: list[IssueRecord]) -> UsageSummary:
    return UsageSummary(
        total_issues=len(records),
        input_tokens=sum(r.input_tokens for r in records),
        output_tokens=sum(r.output_tokens for r in records),
        cost_usd=sum(r.cost_usd for r in records),
    )


def render_table(records: list[IssueRecord]) -> str:
    summary = summarize(records)
    lines = [
        "",
        "Token Usage Statistics",
        "",
        f"{'Issue':<30} {'Input Tokens':>12} {'Output Tokens':>13} {'Cost':>10}  Status",
        _RULE,
    ]
    for r in records:
        lines.append(
            f"{r.issue_ref:<30} {r.input_tokens:>12} {r.output_tokens:>13} "
            f"${r.cost_usd:>9.4f}  {r.status.value}"
        )
    lines += [
        _RULE,
        f"{'TOTAL':<30} {summary.input_tokens:>12} {summary.output_tokens:>13} "
        f"${summary.cost_usd:>9.4f}",
        "",
        "Summary:",
        f"  Total Issues: {summary.total_issues}",
        f"  Total Tokens: {summary.input_tokens} (input) + {summary.output_tokens} (output)"
        f" = {summary.total_tokens} total",
        f"  Total Cost: ${summary.cost_usd:.4f}",
        f"  Average Cost per Issue: ${summary.avg_cost_per_issue:.4f}",
        "",
    ]
    return "\n".join(lines)


def _ts(value: datetime | None) -> str:
    return value.isoformat() if value else ""


def export_csv(records: list[IssueRecord], path: Path | str) -> Path:
    path = Path(path)
    with path.open("w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_HEADER)
        for r in records:
            writer.writerow(
                [
                    r.owner,
                    r.repo,
                    r.issue_number,
                    r.status.value,
                    r.pr_number if r.pr_number is not None else "",
                    r.input_tokens,
                    r.output_tokens,
                    r.total_tokens,
                    f"{r.cost_usd:.6f}",
                    _ts(r.created_at),
                    _ts(r.updated_at),
                    _ts(r.completed_at),
                ]
            )
    return path
