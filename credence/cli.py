"""
Credence CLI

Operator commands: database setup, API server, expiry sweep, offline
extraction and matching, and the manual-review queue.
"""
import json
import sys
from contextlib import contextmanager
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from credence import __version__
from credence.config import get_config
from credence.errors import CredenceError
from credence.extraction import extract_identity, extractor_session
from credence.identity import from_user_claims, parse_claims
from credence.matching import MatchingEngine
from credence.utils import get_logger, setup_logging
from credence.verification import (
    DecisionPolicy,
    ExpirySweeper,
    VerificationService,
    VerificationStore,
)
from credence.verification.state_machine import VerificationStateMachine

console = Console()
logger = get_logger(__name__)

_STATUS_STYLE = {
    "APPROVED": "green",
    "REJECTED": "red",
    "MANUAL_REVIEW": "yellow",
    "OCR_FAILED": "red",
    "EXPIRED": "dim",
}


def _fail(exc: CredenceError) -> None:
    console.print(f"\n[red]✗ {exc.error_code}: {exc.safe_message}[/red]")
    sys.exit(1)


def _open_store(cfg) -> VerificationStore:
    store = VerificationStore(cfg.database_url)
    store.init_schema()
    return store


@contextmanager
def _service(cfg):
    store = _open_store(cfg)
    service = VerificationService.from_config(cfg, store, max_workers=1)
    try:
        yield service
    finally:
        service.shutdown()
        store.dispose()


def _identity_table(title: str, record, claimed=None) -> Table:
    table = Table(title=title)
    table.add_column("Field", style="cyan")
    if claimed is not None:
        table.add_column("Claimed", style="white")
    table.add_column("Extracted", style="magenta")
    table.add_column("Confidence", justify="right")
    for name, field in record.items():
        value = "-" if field.value is None else str(field.value)
        row = [name]
        if claimed is not None:
            row.append(str(claimed.get(name).value))
        row += [value, str(field.confidence)]
        table.add_row(*row)
    return table


# ═══════════════════════════════════════════════════════════════════
# MAIN CLI GROUP
# ═══════════════════════════════════════════════════════════════════

@click.group()
@click.version_option(version=__version__)
def main():
    """
    Credence - credential verification engine

    Extracts identity fields from academic documents, matches them against
    subject claims and manages the verification lifecycle.
    """
    cfg = get_config()
    setup_logging(cfg.log_level, cfg.log_file)


# ═══════════════════════════════════════════════════════════════════
# OPERATIONS
# ═══════════════════════════════════════════════════════════════════

@main.command("init-db")
def init_db():
    """Create the verification tables"""
    cfg = get_config()
    with console.status("[bold green]Creating schema..."):
        store = _open_store(cfg)
        store.dispose()
    console.print(f"[green]✓ Schema ready[/green] ({cfg.database_url})")


@main.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", default=None, type=int, help="Port (default from config)")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host, port, reload):
    """Run the HTTP API"""
    import uvicorn

    cfg = get_config()
    uvicorn.run(
        "credence.api.main:app",
        host=host or cfg.api_host,
        port=port or cfg.api_port,
        reload=reload,
        log_level=cfg.log_level.lower(),
    )


@main.command()
def sweep():
    """Deactivate expired grants and close out stalled requests"""
    cfg = get_config()
    store = _open_store(cfg)
    try:
        sweeper = ExpirySweeper(
            store,
            state_machine=VerificationStateMachine(grant_validity_days=cfg.grant_validity_days),
            reverification_window_days=cfg.reverification_window_days,
            stalled_after_seconds=cfg.stalled_request_timeout_seconds,
        )
        recovered = sweeper.recover_stalled()
        count = sweeper.sweep()
    finally:
        store.dispose()
    if recovered:
        console.print(f"[yellow]Closed out {recovered} stalled request(s)[/yellow]")
    console.print(f"[green]✓ Deactivated {count} expired grant(s)[/green]")


# ═══════════════════════════════════════════════════════════════════
# OFFLINE EXTRACTION AND MATCHING
# ═══════════════════════════════════════════════════════════════════

@main.command()
@click.argument("document_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", type=click.Path(), help="Write the extracted fields as JSON")
def extract(document_path, output):
    """Extract identity fields from a document"""
    cfg = get_config()
    console.print(f"\n[bold blue]Extracting from:[/bold blue] {document_path}")

    try:
        with extractor_session(cfg) as extractor:
            with console.status("[bold green]Reading document..."):
                result = extract_identity(Path(document_path), extractor)
    except CredenceError as exc:
        _fail(exc)

    console.print(
        f"Document type: [cyan]{result.document_type.value}[/cyan] "
        f"(confidence {result.type_confidence:.2f}, {result.text_length} chars)"
    )
    console.print(_identity_table("Extracted Fields", result.record))

    if output:
        output_path = Path(output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump({
                "document_type": result.document_type.value,
                "type_confidence": result.type_confidence,
                "fields": {name: field.to_dict() for name, field in result.record.items()},
            }, f, indent=2)
        console.print(f"\n[green]✓ Saved to {output}[/green]")


@main.command()
@click.argument("document_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--name", "full_name", required=True, help="Claimed full name")
@click.option("--institution", required=True, help="Claimed institution")
@click.option("--program", required=True, help="Claimed program")
@click.option("--start-year", required=True, type=int, help="Claimed start year")
@click.option("--end-year", required=True, type=int, help="Claimed end year")
def verify(document_path, full_name, institution, program, start_year, end_year):
    """Match a document against claims and show the decision (nothing is stored)"""
    cfg = get_config()
    try:
        claims = parse_claims({
            "full_name": full_name,
            "institution": institution,
            "program": program,
            "start_year": start_year,
            "end_year": end_year,
        })
        with extractor_session(cfg) as extractor:
            with console.status("[bold green]Reading document..."):
                result = extract_identity(Path(document_path), extractor)
        claimed = from_user_claims(claims)
        match = MatchingEngine.from_config(cfg).match(claimed, result.record)
    except CredenceError as exc:
        _fail(exc)

    decision = DecisionPolicy.from_config(cfg).decide(match.score, match.mismatches, total_attempts=1)

    console.print(_identity_table("Claims vs Document", result.record, claimed=claimed))
    if match.mismatches:
        console.print("\n[bold yellow]Mismatches:[/bold yellow]")
        for m in match.mismatches:
            console.print(f"  • {m.field}: {m.reason.value} (similarity {m.similarity:.2f})")

    style = _STATUS_STYLE.get(decision.status.value, "white")
    console.print(f"\n[bold cyan]Match score:[/bold cyan] {match.score}")
    console.print(f"[bold cyan]Decision:[/bold cyan] [{style}]{decision.status.value}[/{style}] ({decision.reason})")


# ═══════════════════════════════════════════════════════════════════
# MANUAL REVIEW
# ═══════════════════════════════════════════════════════════════════

@main.command()
@click.option("--limit", default=50, show_default=True, help="Maximum requests to list")
def queue(limit):
    """List requests awaiting manual review"""
    cfg = get_config()
    with _service(cfg) as service:
        pending = service.list_pending_manual_review(limit=limit)

    if not pending:
        console.print("[green]✓ Review queue is empty[/green]")
        return

    table = Table(title=f"Manual Review Queue ({len(pending)})")
    table.add_column("Request", style="cyan")
    table.add_column("Subject")
    table.add_column("Institution")
    table.add_column("Score", justify="right")
    table.add_column("Mismatched")
    table.add_column("Waiting since")
    for item in pending:
        table.add_row(
            item.request_id,
            item.subject_id,
            item.institution,
            "-" if item.match_score is None else str(item.match_score),
            ", ".join(m["field"] for m in item.mismatches) or "-",
            item.updated_at.isoformat(timespec="seconds") if item.updated_at else "-",
        )
    console.print(table)


@main.command()
@click.argument("request_id")
@click.option("--decision", type=click.Choice(["APPROVED", "REJECTED"], case_sensitive=False), required=True)
@click.option("--reviewer", "reviewer_id", required=True, help="Reviewer identifier")
@click.option("--notes", default="", help="Review notes")
def review(request_id, decision, reviewer_id, notes):
    """Approve or reject a request in manual review"""
    cfg = get_config()
    try:
        with _service(cfg) as service:
            view = service.review(request_id, decision, reviewer_id, notes)
    except CredenceError as exc:
        _fail(exc)

    style = _STATUS_STYLE.get(view.status.value, "white")
    console.print(f"[green]✓ Request {view.request_id}[/green] -> [{style}]{view.status.value}[/{style}]")
    if view.expires_at is not None:
        console.print(f"  Verified until {view.expires_at.date().isoformat()}")


if __name__ == "__main__":
    main()
