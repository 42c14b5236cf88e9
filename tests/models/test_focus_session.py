import pytest
from datetime import datetime, timedelta
from pydantic import ValidationError

from mindship.models.dialogue import DialogueSession, DialogueState, DriftContext, TurnRole
from mindship.models.drift import CandidateSignal, DriftCandidate, DriftCause, SignalKind
from mindship.models.focus_session import FocusSession, FocusTask, SessionState

def test_focus_session_initialization():
    """Test basic FocusSession initialization"""
    start_time = datetime.now()
    session = FocusSession(task=FocusTask(task_name="Review PRs"), start_time=start_time)

    assert session.state == SessionState.SAILING
    assert session.last_transition == start_time
    assert session.focused_seconds == 0.0
    assert session.drift_count == 0
    assert session.focus_percentage == 0
    assert session.is_active

def test_accrue_books_time_into_current_state():
    start_time = datetime(2024, 1, 1, 9, 0, 0)
    session = FocusSession(task=FocusTask(task_name="Review PRs"), start_time=start_time)

    session.accrue(start_time + timedelta(minutes=30))
    session.state = SessionState.DRIFTING
    session.accrue(start_time + timedelta(minutes=40))

    assert session.focused_seconds == 1800
    assert session.drifted_seconds == 600
    assert session.focus_percentage == 75

def test_accrue_ignores_ended_and_backwards_time():
    start_time = datetime(2024, 1, 1, 9, 0, 0)
    session = FocusSession(task=FocusTask(task_name="Review PRs"), start_time=start_time)

    session.accrue(start_time - timedelta(seconds=10))
    assert session.total_seconds == 0

    session.state = SessionState.ENDED
    session.accrue(start_time + timedelta(hours=1))
    assert session.total_seconds == 0

def test_session_ids_are_unique():
    task = FocusTask(task_name="Review PRs")
    now = datetime.now()

    assert FocusSession(task=task, start_time=now).id != FocusSession(task=task, start_time=now).id

def test_candidate_validation():
    """Confidence is bounded"""
    with pytest.raises(ValidationError):
        DriftCandidate(
            source=SignalKind.IDLE,
            signal=CandidateSignal.DISTRACTED,
            cause=DriftCause.IDLE,
            detected_at=datetime.now(),
            confidence=1.5,
        )

def test_dialogue_session_turns_share_counter():
    dialogue = DialogueSession(
        session_id="session-1",
        drift_context=DriftContext(cause=None, drift_minutes=0.0),
    )
    opening = dialogue.add_turn(TurnRole.ASSISTANT, "Hi", datetime.now())
    dialogue.turn_number = 1
    reply = dialogue.add_turn(TurnRole.ASSISTANT, "Welcome back", datetime.now())

    assert (opening.turn_number, reply.turn_number) == (0, 1)
    assert dialogue.state == DialogueState.IDLE
    assert dialogue.is_active
