"""
CLI interface for callguard.

Provides command-line access to record processing, billing and job
scheduling.
"""

import logging
import sqlite3
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

import typer
import yaml
from openai import OpenAIError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from callguard.config.loader import PipelineConfig, load_pipeline_config
from callguard.core.billing import (
    AlreadyFinalized,
    BillingAggregator,
    BillingMonthNotFound,
    parse_month,
)
from callguard.core.orchestrator import ProcessingOrchestrator, RetryExhausted
from callguard.core.pipeline import CallPipeline
from callguard.core.redaction import KeywordRedactionPolicy, NoRedactionPolicy
from callguard.core.status import InvalidTransition, StatusStateMachine
from callguard.core.transcription import TranscriptionAnalysisClient
from callguard.sdk import OpenAITranscriptionClient
from callguard.storage.db import DEFAULT_DB_PATH
from callguard.storage.models import BillingMonth, IngestPayload, RecordKind, RecordStatus
from callguard.storage.repository import (
    DuplicateRecordError,
    RecordNotFound,
    SqliteRecordStore,
    initialize_schema,
)
from callguard.utils.logger import configure_logging

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

HANDLED_ERRORS = (
    AlreadyFinalized,
    BillingMonthNotFound,
    DuplicateRecordError,
    FileNotFoundError,
    InvalidTransition,
    OpenAIError,
    RecordNotFound,
    RetryExhausted,
    ValueError,
    yaml.YAMLError,
)


@contextmanager
def _handle_errors():
    """Turn expected failures into a red error line and exit code 1."""
    try:
        yield
    except HANDLED_ERRORS as e:
        console.print(f"[red]Error:[/] {escape(str(e))}")
        sys.exit(EXIT_CODE_FAIL)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("[red]Error:[/] database is not initialized. Run `callguard init` first.")
            sys.exit(EXIT_CODE_FAIL)
        raise


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the YAML configuration"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """callguard CLI."""
    configure_logging(logging.DEBUG if verbose else None)
    ctx.obj = {"db": db, "config": config}
    if ctx.invoked_subcommand is None:
        console.print("callguard - Use --help to see available commands")


def _load_config(ctx: typer.Context) -> PipelineConfig:
    path = ctx.obj["config"]
    return load_pipeline_config(path) if path else PipelineConfig()


def _build_pipeline(ctx: typer.Context, with_client: bool = False) -> CallPipeline:
    """Wire the pipeline from the global options.

    The OpenAI client is only created for commands that transcribe, so the
    rest of the CLI works without an API key.
    """
    config = _load_config(ctx)
    store = SqliteRecordStore(ctx.obj["db"])

    client: Optional[TranscriptionAnalysisClient] = None
    if with_client:
        settings = config.processing
        client = OpenAITranscriptionClient(
            transcription_model=settings.transcription_model,
            analysis_model=settings.analysis_model,
            analysis_prompt=settings.analysis_prompt,
            timeout=settings.request_timeout_seconds,
        )

    if config.redaction.enabled:
        redaction = KeywordRedactionPolicy(padding_seconds=config.redaction.padding_seconds)
    else:
        redaction = NoRedactionPolicy()

    orchestrator = ProcessingOrchestrator(
        StatusStateMachine(store),
        client,
        redaction_policy=redaction,
        max_retries=config.processing.max_retries,
    )
    return CallPipeline(store, orchestrator, BillingAggregator(store), config=config)


def _parse_timestamp(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(f"Invalid timestamp: {value!r} (expected ISO 8601)")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_currency(amount) -> str:
    return f"${amount:,.2f}"


def _status_style(status: RecordStatus) -> str:
    return {
        RecordStatus.PENDING: "yellow",
        RecordStatus.PROCESSING: "cyan",
        RecordStatus.COMPLETED: "green",
        RecordStatus.FAILED: "red",
    }[status]


@app.command()
def init(ctx: typer.Context):
    """Initialize the callguard database."""
    try:
        initialize_schema(ctx.obj["db"])
        console.print(f"[green]✓[/] Database initialized at {escape(ctx.obj['db'])}")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {escape(str(e))}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(
    ctx: typer.Context,
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Only count this tenant's records"),
):
    """Show record counts by status."""
    with _handle_errors():
        counts = SqliteRecordStore(ctx.obj["db"]).count_by_status(tenant)

    table = Table(title="Records")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for record_status in RecordStatus:
        table.add_row(
            f"[{_status_style(record_status)}]{record_status.value}[/]",
            str(counts.get(record_status.value, 0)),
        )
    console.print(table)


@app.command()
def ingest(
    ctx: typer.Context,
    tenant_id: str = typer.Argument(..., help="Tenant the record belongs to"),
    source_type: str = typer.Argument(..., help="Upstream source, e.g. twilio_call"),
    external_id: Optional[str] = typer.Option(None, "--external-id", "-e", help="Upstream event id"),
    kind: RecordKind = typer.Option(RecordKind.CALL, "--kind", "-k", help="call or voicemail"),
    provider_ref: Optional[str] = typer.Option(None, "--provider-ref", help="Provider reference (unique)"),
    caller_number: Optional[str] = typer.Option(None, "--caller-number"),
    caller_name: Optional[str] = typer.Option(None, "--caller-name"),
    audio: Optional[str] = typer.Option(None, "--audio", "-a", help="Recording URL or file path"),
    duration: Optional[int] = typer.Option(None, "--duration", "-d", min=0, help="Duration in seconds"),
    occurred_at: Optional[str] = typer.Option(None, "--occurred-at", help="ISO 8601 timestamp of the call"),
):
    """Register an upstream call or voicemail event."""
    with _handle_errors():
        payload = IngestPayload(
            kind=kind,
            provider_ref=provider_ref,
            caller_number=caller_number,
            caller_name=caller_name,
            audio_locator=audio,
            duration_seconds=duration,
            occurred_at=_parse_timestamp(occurred_at) if occurred_at else None,
        )
        record = _build_pipeline(ctx).ingest(tenant_id, source_type, external_id, payload)

    console.print(f"[green]✓[/] Record {record.id} ({record.status.value})")


@app.command()
def process(
    ctx: typer.Context,
    record_id: Optional[str] = typer.Argument(None, help="Record to process"),
    backlog: bool = typer.Option(False, "--backlog", "-b", help="Process pending records instead"),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Limit the backlog to one tenant"),
    limit: int = typer.Option(50, "--limit", "-n", min=1, help="Maximum backlog records"),
):
    """Transcribe and analyze a record, or the pending backlog."""
    if not record_id and not backlog:
        console.print("[red]Error:[/] give a record id or --backlog")
        sys.exit(EXIT_CODE_FAIL)

    with _handle_errors():
        pipeline = _build_pipeline(ctx, with_client=True)
        if backlog:
            attempted = pipeline.process_backlog(tenant_id=tenant, limit=limit)
            completed = sum(1 for r in attempted if r.status == RecordStatus.COMPLETED)
            console.print(f"Attempted {len(attempted)} record(s), {completed} completed")
            sys.exit(EXIT_CODE_FAIL if completed < len(attempted) else EXIT_CODE_PASS)
        record = pipeline.process(record_id)

    _print_outcome(record)


@app.command()
def retry(
    ctx: typer.Context,
    record_id: str = typer.Argument(..., help="Failed record to retry"),
):
    """Retry a failed record within its retry budget."""
    with _handle_errors():
        record = _build_pipeline(ctx, with_client=True).retry(record_id)

    _print_outcome(record)


def _print_outcome(record) -> None:
    style = _status_style(record.status)
    console.print(f"Record {record.id}: [{style}]{record.status.value}[/]")
    if record.status == RecordStatus.FAILED:
        console.print(f"[red]Last error:[/] {escape(record.last_error or '')}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def show(
    ctx: typer.Context,
    record_id: str = typer.Argument(..., help="Record to display"),
):
    """Show a record."""
    with _handle_errors():
        record = _build_pipeline(ctx).get_record(record_id)

    table = Table(title=f"Record {record.id}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Tenant", escape(record.tenant_id))
    table.add_row("Source", escape(f"{record.source_type}:{record.external_id or '-'}"))
    table.add_row("Kind", record.kind.value)
    table.add_row("Status", f"[{_status_style(record.status)}]{record.status.value}[/]")
    table.add_row("Attempts", str(record.retry_count))
    table.add_row("Duration", f"{record.duration_seconds}s" if record.duration_seconds is not None else "-")
    table.add_row("Audio", escape(record.audio_locator or "-"))
    if record.last_error:
        table.add_row("Last error", escape(record.last_error))
    if record.status == RecordStatus.COMPLETED:
        table.add_row("Model", escape(record.analysis_model or "-"))
        table.add_row("Tokens", f"{record.input_tokens} in / {record.output_tokens} out")
        table.add_row("Redaction", record.redaction_status.value)
        for segment in record.redacted_segments:
            table.add_row("", f"{segment.start_sec:.2f}s-{segment.end_sec:.2f}s {escape(segment.reason)}")
    console.print(table)

    if record.transcript:
        console.print("\n[bold]Transcript[/bold]")
        console.print(escape(record.transcript))
    if record.analysis:
        console.print("\n[bold]Analysis[/bold]")
        console.print(escape(record.analysis))


def _print_billing_month(snapshot: BillingMonth) -> None:
    state = "[green]finalized[/]" if snapshot.is_finalized else "[yellow]open[/]"
    table = Table(title=f"Billing {snapshot.tenant_id} {snapshot.month:%Y-%m}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("State", state)
    table.add_row("Base charge", _format_currency(snapshot.base_plan_monthly_charge_usd))
    table.add_row("Included hours", str(snapshot.base_plan_included_audio_hours))
    table.add_row("Overage rate/min", _format_currency(snapshot.overage_rate_per_minute_usd))
    table.add_row("Audio minutes", str(snapshot.audio_minutes))
    table.add_row("Overage minutes", str(snapshot.overage_minutes))
    table.add_row("Overage charge", _format_currency(snapshot.overage_charge_usd))
    table.add_row("Total", _format_currency(snapshot.total_charge_usd))
    console.print(table)


@app.command("billing-show")
def billing_show(
    ctx: typer.Context,
    tenant_id: str = typer.Argument(...),
    month: str = typer.Argument(..., help="Month as YYYY-MM"),
):
    """Show the stored billing snapshot for a month."""
    with _handle_errors():
        snapshot = _build_pipeline(ctx).get_billing_month(tenant_id, parse_month(month))

    if snapshot is None:
        console.print(f"[yellow]No billing data for {escape(tenant_id)} {escape(month)}[/]")
        sys.exit(EXIT_CODE_FAIL)
    _print_billing_month(snapshot)


@app.command("billing-recompute")
def billing_recompute(
    ctx: typer.Context,
    tenant_id: str = typer.Argument(...),
    month: str = typer.Argument(..., help="Month as YYYY-MM"),
):
    """Rebuild a billing month from completed records."""
    with _handle_errors():
        snapshot = _build_pipeline(ctx).recompute_billing_month(tenant_id, parse_month(month))

    _print_billing_month(snapshot)


@app.command("billing-finalize")
def billing_finalize(
    ctx: typer.Context,
    tenant_id: str = typer.Argument(...),
    month: str = typer.Argument(..., help="Month as YYYY-MM"),
):
    """Lock a billing month so it can no longer change."""
    with _handle_errors():
        snapshot = _build_pipeline(ctx).finalize_billing_month(tenant_id, parse_month(month))

    console.print(f"[green]✓[/] Billing {escape(tenant_id)} {snapshot.month:%Y-%m} finalized")
    _print_billing_month(snapshot)


@app.command("billing-history")
def billing_history(
    ctx: typer.Context,
    tenant_id: str = typer.Argument(...),
    months: int = typer.Option(12, "--months", "-m", min=1, help="Number of months"),
):
    """Show monthly charges, closing past months that are still open."""
    with _handle_errors():
        history = _build_pipeline(ctx).billing_history(tenant_id, months=months)

    table = Table(title=f"Billing history for {escape(tenant_id)}")
    table.add_column("Month")
    table.add_column("Audio min", justify="right")
    table.add_column("Overage min", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("State")
    for snapshot in history:
        table.add_row(
            f"{snapshot.month:%Y-%m}",
            str(snapshot.audio_minutes),
            str(snapshot.overage_minutes),
            _format_currency(snapshot.total_charge_usd),
            "finalized" if snapshot.is_finalized else "open",
        )
    console.print(table)


@app.command("next-run")
def next_run(
    ctx: typer.Context,
    tenant_id: str = typer.Argument(...),
    job_type: str = typer.Argument(..., help="Recurring job, e.g. retention"),
):
    """Print the next scheduled run of a job in UTC."""
    with _handle_errors():
        when = _build_pipeline(ctx).next_run_utc(tenant_id, job_type)

    console.print(when.isoformat())


@app.command()
def due(
    ctx: typer.Context,
    tenant_id: str = typer.Argument(...),
    job_type: str = typer.Argument(..., help="Recurring job, e.g. retention"),
):
    """Report whether a job is due now."""
    with _handle_errors():
        is_due_now = _build_pipeline(ctx).due_now(tenant_id, job_type)

    console.print("due" if is_due_now else "not due")


if __name__ == "__main__":
    app()
