import asyncio
import logging
import sys

import click
import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from mindship.config.config import config
from mindship.config.logging_config import setup_logging
from mindship.config.settings import settings
from mindship.services.database import DatabaseManager
from mindship.services.display import TerminalDisplay
from mindship.services.metrics import MetricsCollector

# Set up logging
logger = logging.getLogger(__name__)

# Initialize console
console = Console()

@click.group()
@click.option('--debug', is_flag=True, help='Enable debug output')
def cli(debug):
    """Mindship focus monitor"""
    # Set up logging before anything else
    setup_logging(debug=debug)

@cli.command()
@click.option('--host', default=settings.WEB_HOST, help='Host to bind to')
@click.option('--port', default=settings.WEB_PORT, help='Port to bind to')
@click.option('--reload', is_flag=True, help='Enable auto-reload')
def serve(host: str, port: int, reload: bool):
    """Start the focus monitor API"""
    from mindship.main import check_environment
    check_environment()

    timings = Table(title="Drift detection timings")
    timings.add_column("Setting", style="cyan")
    timings.add_column("Seconds", justify="right", style="green")
    for name, value in config.describe().items():
        timings.add_row(name, f"{value:g}")
    console.print(timings)

    console.print(f"[yellow]Starting Mindship on http://{host}:{port}[/yellow]")
    uvicorn.run(
        "mindship.web.app:app",
        host=host,
        port=port,
        reload=reload
    )

@cli.command()
@click.option('--limit', default=20, help='Number of sessions to show')
def sessions(limit: int):
    """List recent focus sessions"""
    try:
        db = DatabaseManager()
        TerminalDisplay(console).show_sessions(db.get_recent_sessions(limit=limit))
    except Exception as e:
        logger.error(f"Failed to list sessions: {e}")
        console.print(f"[red]Error listing sessions: {e}[/red]")
        sys.exit(1)

@cli.command()
@click.argument('session_id')
def summary(session_id: str):
    """Show the summary of one session"""
    try:
        metrics = MetricsCollector(DatabaseManager())
        result = metrics.get_session_summary(session_id)
    except Exception as e:
        logger.error(f"Failed to summarize session: {e}")
        console.print(f"[red]Error summarizing session: {e}[/red]")
        sys.exit(1)

    if result is None:
        console.print(f"[yellow]No session {session_id}[/yellow]")
        sys.exit(1)
    TerminalDisplay(console).show_summary(result)

@cli.command()
@click.argument('session_id')
def events(session_id: str):
    """List the distraction events of one session"""
    try:
        db = DatabaseManager()
        TerminalDisplay(console).show_events(db.get_distraction_events(session_id))
    except Exception as e:
        logger.error(f"Failed to list events: {e}")
        console.print(f"[red]Error listing events: {e}[/red]")
        sys.exit(1)

@cli.command()
@click.option('--days', type=int, help='Days of data to retain')
def cleanup(days: int):
    """Clean up old data from the database"""
    try:
        db = DatabaseManager()
        deleted, reclaimed = asyncio.run(db.cleanup_old_data(days))

        console.print(Panel(
            f"[green]Cleaned up {deleted} sessions[/green]\n"
            f"[blue]Reclaimed {reclaimed/1024/1024:.1f}MB of space[/blue]",
            title="Database Cleanup"
        ))
    except Exception as e:
        logger.error(f"Cleanup failed: {e}")
        console.print(f"[red]Cleanup failed: {e}[/red]")
        sys.exit(1)
