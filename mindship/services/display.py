from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

CAUSE_LABELS = {
    "tab_switch": "🗂  Tab switch",
    "blacklisted_content": "🚫 Blacklisted content",
    "irrelevant_context": "🧭 Off-task context",
    "multimodal": "📷 Heartbeat check",
    "idle": "💤 Idle",
}

def format_duration(seconds: Optional[float]) -> str:
    seconds = int(seconds or 0)
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"

class TerminalDisplay:
    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def show_sessions(self, sessions: List[Dict[str, Any]]):
        """Recent sessions, newest first"""
        if not sessions:
            self.console.print("\n[yellow]No focus sessions recorded[/yellow]")
            return

        table = Table(title="⛵ Recent Focus Sessions")
        table.add_column("Session", style="dim")
        table.add_column("Task", style="cyan")
        table.add_column("Started")
        table.add_column("Duration", justify="right")
        table.add_column("Focus", justify="right", style="green")
        table.add_column("Drifts", justify="right", style="yellow")

        for session in sessions:
            focused = session.get("focused_seconds") or 0.0
            drifted = session.get("drifted_seconds") or 0.0
            total = focused + drifted
            focus = f"{round(focused / total * 100)}%" if total > 0 else "-"
            start = session.get("start_time")
            table.add_row(
                session["id"][:8],
                session.get("task_name") or "",
                start.strftime("%Y-%m-%d %H:%M") if start else "",
                format_duration(total),
                focus,
                str(session.get("drift_count") or 0),
            )
        self.console.print(table)

    def show_summary(self, summary: Dict[str, Any]):
        header = Text()
        header.append(f"⛵ {summary.get('task_name') or 'Focus session'}\n", style="bold cyan")
        if summary.get("goal_text"):
            header.append(f"Goal: {summary['goal_text']}\n", style="dim")
        header.append(f"\nTime: {format_duration(summary['total_seconds'])}\n")
        header.append(f"Focused: {format_duration(summary['focused_seconds'])}\n", style="green")
        header.append(f"Drifted: {format_duration(summary['drifted_seconds'])}\n", style="yellow")
        header.append(f"Drifts: {summary['drift_count']}\n")
        header.append(f"Focus Score: {summary['focus_percentage']}%", style="bold green")
        self.console.print(Panel(header, expand=False))

        causes = summary.get("causes") or {}
        if causes:
            table = Table(title="Distraction causes")
            table.add_column("Cause")
            table.add_column("Count", justify="right")
            table.add_column("Time", justify="right")
            for cause, entry in sorted(causes.items(), key=lambda item: -item[1]["total_seconds"]):
                table.add_row(
                    CAUSE_LABELS.get(cause, cause),
                    str(entry["count"]),
                    format_duration(entry["total_seconds"]),
                )
            self.console.print(table)

    def show_events(self, events: List[Dict[str, Any]]):
        if not events:
            self.console.print("\n[yellow]No distraction events recorded[/yellow]")
            return

        table = Table(title="Distraction events")
        table.add_column("Started")
        table.add_column("Cause")
        table.add_column("Duration", justify="right")
        table.add_column("Detail", style="dim")
        for event in events:
            started_at = event.get("started_at")
            table.add_row(
                started_at.strftime("%H:%M:%S") if started_at else "",
                CAUSE_LABELS.get(event["cause"], event["cause"]),
                format_duration(event.get("duration_seconds")),
                event.get("detail") or "",
            )
        self.console.print(table)
