"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich table output (default) and machine-parseable
JSON output (--json flag). All formatting goes through these functions
so the CLI commands stay clean.
"""

import json
from decimal import Decimal

from rich.console import Console
from rich.table import Table

from caseassist.db.models import BatchJobRun
from caseassist.services.cost_ledger import CostBreakdown, UsageSummary

console = Console()

STATUS_COLORS = {
    "Running": "blue",
    "Completed": "green",
    "Failed": "red",
}


def format_eur(amount: Decimal | None) -> str:
    """Format a EUR amount, e.g. "€12.50"; sub-cent amounts keep 6 places."""
    if amount is None:
        return "—"
    if amount != 0 and abs(amount) < Decimal("0.01"):
        return f"€{amount:.6f}"
    return f"€{amount:,.2f}"


def _render(table: Table) -> str:
    with console.capture() as capture:
        console.print(table)
    return capture.get()


def _job_dict(job: BatchJobRun) -> dict:
    return {
        "id": job.id,
        "firm_id": job.firm_id,
        "feature": job.feature,
        "status": job.status,
        "items_submitted": job.items_submitted,
        "items_processed": job.items_processed,
        "items_failed": job.items_failed,
        "total_tokens": job.total_tokens,
        "total_cost_eur": str(job.total_cost_eur),
        "error_message": job.error_message,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
    }


def format_job_table(jobs: list[BatchJobRun], as_json: bool = False) -> str:
    """Format batch jobs as a Rich table or JSON.

    Args:
        jobs: Job runs to display.
        as_json: If True, return JSON string instead of Rich table.

    Returns:
        Formatted string output.
    """
    if as_json:
        return json.dumps([_job_dict(j) for j in jobs], indent=2)

    if not jobs:
        return "No batch jobs found."

    table = Table(title="Batch jobs", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Firm")
    table.add_column("Feature", style="white")
    table.add_column("Status")
    table.add_column("OK", justify="right", style="green")
    table.add_column("Fail", justify="right", style="red")
    table.add_column("Cost", justify="right")
    table.add_column("Started")

    for job in jobs:
        status_color = STATUS_COLORS.get(job.status, "white")
        table.add_row(
            job.id[:12],
            job.firm_id,
            job.feature,
            f"[{status_color}]{job.status}[/{status_color}]",
            str(job.items_processed),
            str(job.items_failed),
            format_eur(job.total_cost_eur),
            job.started_at[:19],
        )
    return _render(table)


def format_usage_summary(
    summary: UsageSummary,
    by_feature: list[CostBreakdown],
    as_json: bool = False,
) -> str:
    """Format a firm usage summary with its per-feature breakdown."""
    if as_json:
        return json.dumps(
            {
                "firm_id": summary.firm_id,
                "start": summary.start,
                "end": summary.end,
                "total_cost_eur": str(summary.total_cost_eur),
                "total_tokens": summary.total_tokens,
                "calls": summary.calls,
                "failed_calls": summary.failed_calls,
                "average_latency_ms": summary.average_latency_ms,
                "average_daily_cost_eur": str(summary.average_daily_cost_eur),
                "projected_month_end_eur": str(summary.projected_month_end_eur),
                "by_feature": [
                    {
                        "feature": row.key,
                        "cost_eur": str(row.cost_eur),
                        "tokens": row.tokens,
                        "calls": row.calls,
                        "percent_of_total": row.percent_of_total,
                    }
                    for row in by_feature
                ],
            },
            indent=2,
        )

    table = Table(title=f"AI usage for {summary.firm_id}")
    table.add_column("Feature", style="white")
    table.add_column("Calls", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Share", justify="right")
    for row in by_feature:
        table.add_row(
            row.key,
            str(row.calls),
            f"{row.tokens:,}",
            format_eur(row.cost_eur),
            f"{row.percent_of_total:.1f}%",
        )

    header = "\n".join([
        f"Period:     {summary.start[:10]} .. {summary.end[:10]} (exclusive)",
        f"Total:      {format_eur(summary.total_cost_eur)} over {summary.calls} calls "
        f"({summary.failed_calls} failed)",
        f"Tokens:     {summary.total_tokens:,}",
        f"Daily avg:  {format_eur(summary.average_daily_cost_eur)}",
        f"Month-end:  {format_eur(summary.projected_month_end_eur)} (projected)",
    ])
    return header + "\n" + _render(table)
