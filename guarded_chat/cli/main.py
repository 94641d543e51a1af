"""
CLI interface for Guarded Chat.

Provides command-line access to the ledger and the API server.
"""

import os
import sys
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from guarded_chat.config.loader import Settings, load_settings
from guarded_chat.storage.repository import UsageRepository, initialize_schema
from guarded_chat.utils.logger import configure_logging

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_ENV_VAR = "GUARDED_CHAT_CONFIG"

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help=f"Path to YAML config (defaults to ${CONFIG_ENV_VAR})",
)


def _load(config: Optional[str]) -> Settings:
    path = config or os.getenv(CONFIG_ENV_VAR)
    return load_settings(path) if path else Settings.default()


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Guarded Chat CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Guarded Chat - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = ConfigOption):
    """Initialize the usage ledger database."""
    try:
        settings = _load(config)
        initialize_schema(settings.db_path)
        console.print(f"[green]✓[/] Database initialized at {settings.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def serve(
    config: Optional[str] = ConfigOption,
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to listen on"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level (defaults to $LOG_LEVEL)"),
):
    """Run the chat API server."""
    from guarded_chat.api.server import create_app

    configure_logging(log_level)
    try:
        settings = _load(config)
    except Exception as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)


@app.command()
def usage(
    config: Optional[str] = ConfigOption,
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Filter by hashed user id"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Filter by model id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum records to show"),
):
    """Show recent usage records."""
    try:
        settings = _load(config)
        records = UsageRepository(settings.db_path).recent(user_id=user, model=model, limit=limit)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not records:
        console.print("\n[bold yellow]No usage recorded yet[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Recent Usage")
    table.add_column("Time")
    table.add_column("User")
    table.add_column("Model")
    table.add_column("Prompt", justify="right")
    table.add_column("Completion", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Partial")

    for record in records:
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.user_id[:12],
            record.model,
            f"{record.prompt_tokens:,}",
            f"{record.completion_tokens:,}",
            f"{record.total_tokens:,}",
            "yes" if record.partial else "",
        )

    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
