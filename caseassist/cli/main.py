"""CaseAssist operator CLI.

Usage:
    caseassist init-db                       Create missing tables
    caseassist serve                         Run the HTTP API
    caseassist reap                          Expire idle conversations
    caseassist jobs list --firm F            List batch job runs
    caseassist usage summary --firm F        Report AI spend
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Optional

import typer
from rich.console import Console

from caseassist.cli.output import format_job_table, format_usage_summary
from caseassist.config import load_config
from caseassist.db.connection import get_db_context, init_db
from caseassist.db.models import BatchJobStatus
from caseassist.services import BatchJobTracker, ConversationEngine, CostLedger
from caseassist.services.actions import build_default_registry

app = typer.Typer(
    name="caseassist",
    help="CaseAssist operator tools",
    no_args_is_help=True,
)
jobs_app = typer.Typer(help="Inspect batch job runs")
usage_app = typer.Typer(help="AI usage and cost reports")

app.add_typer(jobs_app, name="jobs")
app.add_typer(usage_app, name="usage")

console = Console()

# --- Global state ---
_config_path: str | None = None


def _emit(output: str, as_json: bool) -> None:
    """Print command output; JSON bypasses Rich so it is never wrapped."""
    if as_json:
        typer.echo(output)
    else:
        console.print(output)


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to caseassist.yaml config file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at INFO level"),
):
    """CaseAssist operator tools."""
    global _config_path
    _config_path = config
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s:%(name)s:%(message)s",
    )


@app.command("init-db")
def init_db_cmd():
    """Create database tables (existing tables are left alone)."""
    init_db()
    console.print("[green]Database initialized.[/green]")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", help="Bind port"),
    log_level: str = typer.Option("info", "--log-level", help="uvicorn log level"),
):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    uvicorn.run("caseassist.api.main:app", host=host, port=port, log_level=log_level)


@app.command()
def reap(
    window_hours: Optional[float] = typer.Option(
        None, "--window-hours", help="Override the inactivity window"
    ),
):
    """Expire conversations idle past the inactivity window."""
    cfg = load_config(config_path=_config_path)
    if window_hours is not None:
        if window_hours <= 0:
            console.print("[red]--window-hours must be positive[/red]")
            raise typer.Exit(1)
        cfg.conversation.inactivity_window_hours = window_hours

    with get_db_context() as db:
        engine = ConversationEngine(db, build_default_registry(), None, config=cfg)
        count = engine.expire_stale_conversations()
    console.print(f"Expired {count} conversation(s).")


@jobs_app.command("list")
def jobs_list(
    firm: Optional[str] = typer.Option(None, "--firm", help="Filter by firm"),
    feature: Optional[str] = typer.Option(None, "--feature", help="Filter by feature"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
    limit: int = typer.Option(50, "--limit", min=1, max=500),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List batch job runs, newest first."""
    try:
        status_filter = BatchJobStatus(status) if status else None
    except ValueError:
        valid = ", ".join(s.value for s in BatchJobStatus)
        console.print(f"[red]Unknown status {status!r}; expected one of: {valid}[/red]")
        raise typer.Exit(1)

    with get_db_context() as db:
        jobs = BatchJobTracker(db).list_jobs(
            firm_id=firm, feature=feature, status=status_filter, limit=limit
        )
        output = format_job_table(jobs, as_json=json_output)
    _emit(output, json_output)


@usage_app.command("summary")
def usage_summary(
    firm: str = typer.Option(..., "--firm", help="Firm to report on"),
    days: int = typer.Option(30, "--days", min=1, max=366, help="Days back from today"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Report a firm's AI spend over the last N days."""
    today = datetime.now(UTC).date()
    end = today + timedelta(days=1)
    start = end - timedelta(days=days)
    with get_db_context() as db:
        ledger = CostLedger(db)
        summary = ledger.summarize_firm(firm, start, end)
        by_feature = ledger.costs_by_feature(firm, start, end)
    _emit(format_usage_summary(summary, by_feature, as_json=json_output), json_output)


if __name__ == "__main__":
    app()
