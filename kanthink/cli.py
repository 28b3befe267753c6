"""
KANTHINK CLI — The Interface

Works against a board file (YAML or JSON) holding boards, cards,
rules and their runs:

  kanthink generate board.yaml --column Ideas -n 3   (ad-hoc cards)
  kanthink run board.yaml <rule-id>                  (run a saved rule)
  kanthink runs board.yaml <rule-id>                 (list its runs)
  kanthink undo board.yaml <run-id>                  (reverse a run)
  kanthink serve board.yaml                          (HTTP surface)

Plus:
  - kanthink status   (check config + API keys)
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from kanthink.agents.generator import GenerationRequest
from kanthink.audit_log import AuditLog
from kanthink.config_loader import KanthinkConfig, load_config, validate_api_keys
from kanthink.engine import InstructionRuleEngine
from kanthink.event_bus import EventBus
from kanthink.identity import BANNER, __codename__, __tagline__, __version__
from kanthink.ledger import RunLedger, RunNotFoundError
from kanthink.pipeline import GenerationPipeline
from kanthink.resolver import ColumnResolver
from kanthink.router import Router
from kanthink.store import InMemoryBoardRepository, read_board_file

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".kanthink" / ".env")

app = typer.Typer(
    name="kanthink",
    help=f"{__codename__} — {__tagline__}\nBoard automation and AI card generation.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner + workspace helpers
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


def _load_workspace(board_file: Path, config: KanthinkConfig) -> tuple[InMemoryBoardRepository, RunLedger]:
    if not board_file.exists():
        console.print(f"[red]Board file not found: {board_file}[/]")
        raise typer.Exit(1)
    data = read_board_file(board_file)
    repo = InMemoryBoardRepository.from_dict(data)
    ledger = RunLedger.from_dict(data, config.limits.max_runs_per_instruction)
    return repo, ledger


def _save_workspace(board_file: Path, repo: InMemoryBoardRepository, ledger: RunLedger) -> None:
    repo.dump(board_file, extra=ledger.to_dict())
    console.print(f"[dim]Saved {board_file}[/]")


def _pick_board(repo: InMemoryBoardRepository, board_id: Optional[str]) -> str:
    ids = repo.board_ids
    if board_id:
        if board_id not in ids:
            console.print(f"[red]Unknown board: {board_id}[/]")
            raise typer.Exit(1)
        return board_id
    if not ids:
        console.print("[red]Board file has no boards[/]")
        raise typer.Exit(1)
    return ids[0]


def _engine(
    board_file: Path,
    repo: InMemoryBoardRepository,
    ledger: RunLedger,
    config: KanthinkConfig,
    model: Optional[str],
) -> InstructionRuleEngine:
    bus = EventBus()
    AuditLog(board_file.parent / ".kanthink" / "audit.jsonl", bus)
    router = Router(config, model_override=model)
    return InstructionRuleEngine(repo, router, ledger, config, bus=bus)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def generate(
    board_file: Path = typer.Argument(..., help="Board file (YAML or JSON)"),
    column: Optional[str] = typer.Option(None, "--column", "-c", help="Target column id or name"),
    count: Optional[int] = typer.Option(None, "--count", "-n", min=1, max=20, help="Number of cards (default from config)"),
    instructions: Optional[str] = typer.Option(None, "--instructions", "-i", help="Extra guidance for this batch"),
    board_id: Optional[str] = typer.Option(None, "--board", "-b", help="Board id (defaults to the first)"),
    apply: bool = typer.Option(False, "--apply", "-a", help="Insert the drafts into the board file"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Override the model for every role"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Generate card drafts for a column."""
    _print_banner()
    _configure_logging(verbose)

    config = load_config(board_file.resolve().parent)
    repo, ledger = _load_workspace(board_file, config)
    bid = _pick_board(repo, board_id)
    board = repo.get_board(bid)

    if board.columns:
        resolution = ColumnResolver(board).resolve(column)
        if column and resolution.fell_back:
            console.print(f"[yellow]No column matches '{column}', using {board.columns[0].name}[/]")
        target_id = resolution.column_id
    else:
        target_id = None

    request = GenerationRequest.for_board(
        board,
        repo.cards_by_id(bid),
        target_id,
        count or config.limits.default_card_count,
        instructions=instructions,
        excerpt_chars=config.limits.excerpt_chars,
    )
    result = GenerationPipeline(Router(config, model_override=model), config).generate(request, board_id=bid)

    table = Table(title="Generated Cards", border_style="cyan")
    table.add_column("#", style="dim")
    table.add_column("Title")
    table.add_column("Fallback")
    for i, draft in enumerate(result.drafts, 1):
        table.add_row(str(i), draft.title, "[yellow]yes[/]" if draft.is_fallback else "")
    console.print(table)

    if result.is_fallback:
        console.print("[yellow]AI generation failed; showing stub ideas.[/]")
        return

    if apply and target_id:
        for draft in result.drafts:
            repo.create_card(bid, target_id, draft.title, draft.html_body, source="ai")
        _save_workspace(board_file, repo, ledger)


@app.command()
def run(
    board_file: Path = typer.Argument(..., help="Board file (YAML or JSON)"),
    instruction_id: str = typer.Argument(..., help="Rule to run"),
    automatic: bool = typer.Option(False, "--automatic", help="Run as an automatic trigger (safeguards apply)"),
    card: Optional[str] = typer.Option(None, "--card", help="Triggering card id"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Override the model for every role"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run a saved rule and write the board back."""
    _print_banner()
    _configure_logging(verbose)

    config = load_config(board_file.resolve().parent)
    repo, ledger = _load_workspace(board_file, config)
    engine = _engine(board_file, repo, ledger, config, model)

    result = engine.run(
        instruction_id,
        trigger="automatic" if automatic else "manual",
        triggering_card_id=card,
    )
    if result.status == "failed" and result.run is None:
        console.print(f"[red]Cannot run {instruction_id}: {result.reason}[/]")
        raise typer.Exit(1)

    status_color = {"completed": "green", "skipped": "yellow"}.get(result.status, "red")
    console.print(f"\n[bold {status_color}]Status: {result.status}[/]")
    if result.reason:
        console.print(f"  [dim]{result.safeguard.details if result.safeguard else result.reason}[/]")

    for target in result.targets:
        if target.fell_back:
            console.print(f"  [yellow]Target '{target.query}' fell back to {target.column_id}[/]")

    if result.run is not None:
        console.print(f"  Run:     {result.run.id}")
        console.print(f"  Changes: {len(result.changes)}")
        for error in result.errors:
            console.print(f"  [red]✗ {error.card_id or '-'}: {error.message}[/]")
        if result.is_fallback:
            console.print("  [yellow]Generation fell back to stub ideas[/]")
        _save_workspace(board_file, repo, ledger)


@app.command()
def undo(
    board_file: Path = typer.Argument(..., help="Board file (YAML or JSON)"),
    run_id: str = typer.Argument(..., help="Run to reverse"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Reverse a rule run."""
    _print_banner()
    _configure_logging(verbose)

    config = load_config(board_file.resolve().parent)
    repo, ledger = _load_workspace(board_file, config)
    engine = _engine(board_file, repo, ledger, config, None)

    try:
        report = engine.undo(run_id)
    except RunNotFoundError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    if report.status == "already_undone":
        console.print("[yellow]Run was already undone; nothing changed.[/]")
        return

    console.print(f"[green]Reverted {len(report.reverted)} change(s)[/]")
    for conflict in report.conflicts:
        console.print(f"  [yellow]⚠ {conflict.card_id}: {conflict.reason}[/]")
    for card_id in report.missing:
        console.print(f"  [dim]✗ {card_id} no longer exists[/]")
    _save_workspace(board_file, repo, ledger)


@app.command()
def runs(
    board_file: Path = typer.Argument(..., help="Board file (YAML or JSON)"),
    instruction_id: str = typer.Argument(..., help="Rule whose runs to list"),
):
    """List the recent runs of a rule, newest first."""
    config = load_config(board_file.resolve().parent)
    _, ledger = _load_workspace(board_file, config)

    entries = ledger.runs_for(instruction_id)
    if not entries:
        console.print("[dim]No runs yet.[/]")
        return

    table = Table(title=f"Runs of {instruction_id}", border_style="cyan")
    table.add_column("Time", style="dim")
    table.add_column("Run")
    table.add_column("Trigger")
    table.add_column("Changes")
    table.add_column("Errors")
    table.add_column("Undone")

    for entry in entries:
        table.add_row(
            entry.timestamp[:19],
            entry.id,
            entry.trigger,
            str(len(entry.changes)),
            str(len(entry.errors)),
            "[yellow]yes[/]" if entry.undone else "",
        )
    console.print(table)


@app.command()
def status(
    workdir: Optional[Path] = typer.Option(None, "--workdir", "-w", help="Directory holding .kanthink/config.yaml"),
):
    """Check KANTHINK configuration and readiness."""
    _print_banner()

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")

    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)

    console.print(key_table)

    config = load_config(workdir.resolve() if workdir else None)
    console.print("\n[bold]Routing:[/]")
    console.print(f"  Generator:    {config.routing.generator}")
    console.print(f"  Editor:       {config.routing.editor}")
    console.print(f"  Mover:        {config.routing.mover}")
    console.print(f"  Configurator: {config.routing.configurator}")
    console.print(f"  Web search:   {config.routing.web_search or '[dim]disabled[/]'}")

    console.print("\n[bold]Limits:[/]")
    console.print(f"  Max tokens/run:  {config.limits.max_tokens_per_run:,}")
    console.print(f"  Max $/run:       ${config.limits.max_dollars_per_run}")
    console.print(f"  Retry:           {config.retry.attempts} attempt(s), {config.retry.delay_seconds}s apart")
    console.print(
        f"  Safeguards:      {config.safeguards.cooldown_minutes} min cooldown, "
        f"{config.safeguards.daily_cap}/day"
    )


@app.command()
def serve(
    board_file: Path = typer.Argument(..., help="Board file (YAML or JSON)"),
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Serve the HTTP API over a board file (state is kept in memory)."""
    import uvicorn

    from kanthink.api import create_app

    _print_banner()
    _configure_logging(verbose)

    config = load_config(board_file.resolve().parent)
    repo, ledger = _load_workspace(board_file, config)
    bus = EventBus()
    AuditLog(board_file.parent / ".kanthink" / "audit.jsonl", bus)

    api = create_app(repo, config, ledger=ledger, bus=bus)
    uvicorn.run(api, host=host or config.server.host, port=port or config.server.port)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg).rstrip())}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg).rstrip())}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
