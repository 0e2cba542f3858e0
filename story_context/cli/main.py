"""
CLI interface for story_context.

Provides command-line access to the ledger, cost replay, context preview
and an interactive play loop.
"""

import asyncio
import json
import sqlite3
import sys
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from story_context.config.loader import EngineConfig, load_engine_config
from story_context.core.accounting import compare_models
from story_context.core.assembler import assemble_context
from story_context.core.errors import ProviderTransportError, SessionExpired
from story_context.core.history import ContextMode
from story_context.core.knowledge import SYSTEM_PROMPT_FILE, SYSTEM_PROMPT_PATH, build_knowledge_base_text, load_knowledge_dir
from story_context.core.locales import get_locale
from story_context.core.pricing import PRICING_TABLE
from story_context.core.token_counter import estimate_contents_tokens, estimate_tokens
from story_context.logger import init_logging
from story_context.storage import repository as keys
from story_context.storage.db import DEFAULT_DB_PATH
from story_context.storage.models import SessionSave
from story_context.storage.repository import SqliteKeyValueStore, get_usage_summary, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _load_session(path: str) -> SessionSave:
    """Read a session save file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file is not a valid session
    """
    session_path = Path(path)
    if not session_path.exists():
        raise FileNotFoundError(f"Session file not found: {path}")
    try:
        data = json.loads(session_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid session file {path}: {e}")
    if not isinstance(data, dict):
        raise ValueError(f"Invalid session file {path}: expected an object")
    return SessionSave.from_dict(data)


def _format_currency(amount: float) -> str:
    """Format currency with enough precision for per-turn costs."""
    return f"${amount:,.6f}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """story_context CLI."""
    init_logging()
    if ctx.invoked_subcommand is None:
        console.print("story_context - Use --help to see available commands")


@app.command()
def init(db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path")):
    """Initialize the story_context database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except (OSError, sqlite3.Error) as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
    session: Optional[str] = typer.Option(None, "--session", "-s", help="Restrict usage totals to one session id"),
):
    """Show the persisted cache record and ledger totals."""
    try:
        store = SqliteKeyValueStore(db)
        summary = get_usage_summary(session, db)
    except (OSError, sqlite3.Error) as e:
        console.print(f"[red]Error reading database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Knowledge base context")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("Cache", str(store.load(keys.KB_CACHE_NAME) or "-"))
    table.add_row("Cache tokens", str(store.load(keys.KB_CACHE_TOKENS, 0) or 0))
    table.add_row("Cache expires", str(store.load(keys.KB_CACHE_EXPIRE) or "-"))
    table.add_row("File", str(store.load(keys.KB_FILE_URI) or "-"))
    storage = float(store.load(keys.STORAGE_COST_ACC, 0.0) or 0.0)
    history = float(store.load(keys.HISTORY_STORAGE_COST_ACC, 0.0) or 0.0)
    table.add_row("Storage cost", _format_currency(storage + history))
    console.print(table)

    console.print(f"\n[bold]Requests:[/bold] {summary['total_requests']}")
    console.print(
        f"Tokens: prompt {summary['prompt_tokens']:,} | cached {summary['cached_tokens']:,} "
        f"| output {summary['completion_tokens']:,}"
    )
    console.print(f"Transaction cost: {_format_currency(summary['total_cost'])}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def replay(
    session_file: str = typer.Argument(..., help="Session save file (JSON)"),
    model: Optional[List[str]] = typer.Option(None, "--model", "-m", help="Model id to price against (repeatable)"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Engine config with pricing overrides"),
):
    """Replay a session's token usage against other models' prices."""
    try:
        save = _load_session(session_file)
        table_source = load_engine_config(config).pricing if config else PRICING_TABLE
        model_ids = model or list(table_source.models())
        costs = compare_models(save.turns, save.sunk_usage_history, model_ids, table_source)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Replay of {save.name or save.id or session_file}")
    table.add_column("Model")
    table.add_column("Cost", justify="right")
    table.add_column("vs. recorded", justify="right")
    for model_id, cost in sorted(costs.items(), key=lambda item: item[1]):
        if save.estimated_cost:
            change = (cost - save.estimated_cost) / save.estimated_cost * 100
            delta = f"{'+' if change >= 0 else ''}{change:,.1f}%"
        else:
            delta = "N/A"
        table.add_row(model_id, _format_currency(cost), delta)
    console.print(table)
    console.print(f"Recorded: {_format_currency(save.estimated_cost)} over {len(save.turns)} turns")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def preview(
    session_file: str = typer.Argument(..., help="Session save file (JSON)"),
    mode: str = typer.Option("smart", "--mode", help="Context mode: full, smart or summarized"),
    kb: Optional[str] = typer.Option(None, "--kb", help="Knowledge base directory"),
    language: str = typer.Option("en", "--language", "-l", help="Output language"),
):
    """Show how a session's history would be assembled for the next turn."""
    try:
        save = _load_session(session_file)
        context_mode = ContextMode(mode.lower())
        locale = get_locale(language)
        kb_text = build_knowledge_base_text(load_knowledge_dir(kb)) if kb else ""
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    context = assemble_context(save.turns, locale.act_header, mode=context_mode)

    table = Table(title=f"Context preview ({context_mode.value})")
    table.add_column("Section")
    table.add_column("Count", justify="right")
    table.add_row("Sealed summary blocks", str(context.sealed_count))
    table.add_row("Leftover summaries", str(context.leftover_count))
    table.add_row("Archived turns", str(context.archived_count))
    table.add_row("Recent turns", str(context.recent_count))
    table.add_row("Messages sent", str(len(context.contents)))
    table.add_row("Knowledge base chars", f"{len(kb_text):,}")
    table.add_row("Estimated tokens", f"{estimate_contents_tokens(context.contents) + estimate_tokens(kb_text):,}")
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


async def _play(engine_config: EngineConfig, kb: Optional[str], db: str, save_dir: str) -> None:
    from story_context.core.engine import TurnEngine
    from story_context.sdk import OpenAIProvider
    from story_context.storage.autosave import AutoSaveQueue, file_writer

    files = load_knowledge_dir(kb) if kb else {}
    system_instruction = files.get(SYSTEM_PROMPT_PATH) or files.get(SYSTEM_PROMPT_FILE) or ""
    engine = TurnEngine(
        OpenAIProvider(table=engine_config.pricing),
        engine_config,
        SqliteKeyValueStore(db),
        kb_files=files,
        system_instruction=system_instruction,
        ledger_db=db,
    )
    engine.autosave = AutoSaveQueue(engine.session.export_session, file_writer(save_dir))
    await engine.start()
    try:
        while True:
            text = typer.prompt(">", default="", show_default=False)
            if text.strip() in ("", "/quit", "/exit"):
                break
            try:
                turn = await engine.send_turn(text)
            except ProviderTransportError as e:
                console.print(f"[red]Request failed:[/] {str(e)}")
                continue
            console.print(turn.content)
            console.print(
                f"[dim]cost {_format_currency(engine.accountant.last_turn_cost)} | "
                f"session {_format_currency(engine.accountant.estimated_cost + engine.meter.total)}[/]"
            )
    finally:
        await engine.shutdown()


@app.command()
def play(
    config: str = typer.Option(..., "--config", "-c", help="Engine config file (YAML)"),
    kb: Optional[str] = typer.Option(None, "--kb", help="Knowledge base directory"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
    save_dir: str = typer.Option("saves", "--save-dir", help="Directory for auto-saves"),
):
    """Play interactively against OpenAI."""
    try:
        engine_config = load_engine_config(config)
        asyncio.run(_play(engine_config, kb, db, save_dir))
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except SessionExpired as e:
        console.print(f"[red]{str(e)}[/] - reload the knowledge base")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
