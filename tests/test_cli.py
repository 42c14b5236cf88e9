import pytest
from datetime import datetime
from unittest.mock import AsyncMock, patch

from click.testing import CliRunner
from rich.console import Console

from mindship.cli.service import cli
from mindship.models.drift import DistractionEvent, DriftCause
from mindship.models.focus_session import FocusSession, FocusTask, SessionState
from mindship.services.display import TerminalDisplay, format_duration

@pytest.fixture
def stored_session(db):
    session = FocusSession(
        task=FocusTask(task_name="Grade exams", goal_text="Finish section B"),
        start_time=datetime(2024, 3, 4, 14, 0),
    )
    session.state = SessionState.ENDED
    session.focused_seconds = 2700
    session.drifted_seconds = 900
    session.drift_count = 2
    db.record_session(session)
    db.record_distraction(DistractionEvent(
        session_id=session.id,
        cause=DriftCause.IDLE,
        started_at=datetime(2024, 3, 4, 14, 30),
        duration_seconds=600,
        detail="no input",
    ))
    return session

@pytest.fixture
def runner(db):
    with patch("mindship.cli.service.DatabaseManager", return_value=db), \
            patch("mindship.cli.service.setup_logging"):
        yield CliRunner()

def test_sessions_command(runner, stored_session):
    result = runner.invoke(cli, ["sessions", "--limit", "5"])

    assert result.exit_code == 0
    assert "Grade exams" in result.output
    assert "75%" in result.output

def test_summary_command(runner, stored_session):
    result = runner.invoke(cli, ["summary", stored_session.id])

    assert result.exit_code == 0
    assert "Finish section B" in result.output
    assert "Focus Score: 75%" in result.output
    assert "Idle" in result.output

def test_summary_unknown_session(runner):
    result = runner.invoke(cli, ["summary", "missing"])

    assert result.exit_code == 1
    assert "No session missing" in result.output

def test_events_command(runner, stored_session):
    result = runner.invoke(cli, ["events", stored_session.id])

    assert result.exit_code == 0
    assert "no input" in result.output
    assert "10m 00s" in result.output

def test_cleanup_command(runner, db):
    with patch.object(db, "cleanup_old_data", AsyncMock(return_value=(3, 2 * 1024 * 1024))):
        result = runner.invoke(cli, ["cleanup", "--days", "30"])

    assert result.exit_code == 0
    assert "Cleaned up 3 sessions" in result.output
    assert "2.0MB" in result.output

def test_cleanup_failure(runner, db):
    with patch.object(db, "cleanup_old_data", AsyncMock(side_effect=RuntimeError("locked"))):
        result = runner.invoke(cli, ["cleanup"])

    assert result.exit_code == 1
    assert "Cleanup failed" in result.output

@pytest.mark.parametrize("seconds,expected", [
    (None, "0s"),
    (42, "42s"),
    (125, "2m 05s"),
    (3725, "1h 02m"),
])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected

def test_empty_tables():
    console = Console(record=True, width=100)
    display = TerminalDisplay(console)

    display.show_sessions([])
    display.show_events([])

    output = console.export_text()
    assert "No focus sessions recorded" in output
    assert "No distraction events recorded" in output
