import asyncio
import pytest
from unittest.mock import AsyncMock, Mock

from mindship.config.config import DialogueConfig, HeartbeatConfig, MonitorConfig, SessionConfig, SignalConfig
from mindship.main import FocusHost
from mindship.models.dialogue import DialogueReply, DialogueState, Transcription
from mindship.models.drift import ClassificationResult
from mindship.models.focus_session import FocusTask, SessionState
from mindship.services.capture import CaptureKind, CaptureManager
from mindship.services.clock import AsyncioClock

class Microphone:
    def open(self):
        return object()

    def close(self, resource):
        pass

    async def stream(self, resource):
        yield b"pcm"

class Screen:
    def open(self):
        return object()

    def close(self, resource):
        pass

    async def capture_frame(self, resource):
        return b"jpeg"

class Player:
    def __init__(self):
        self.played = []

    async def play(self, audio):
        self.played.append(audio)

    def stop(self):
        pass

async def wait_until(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)

@pytest.fixture
def task():
    return FocusTask(
        task_name="Write thesis chapter",
        goal_text="Finish the related-work section",
        related_apps=["overleaf.com"],
    )

@pytest.fixture
def fast_config():
    return MonitorConfig(
        signals=SignalConfig(visibility_grace_seconds=0.02, idle_timeout_seconds=60),
        heartbeat=HeartbeatConfig(interval_seconds=0.02, retry_backoff_seconds=0),
        session=SessionConfig(sustained_drift_seconds=0.05),
        dialogue=DialogueConfig(
            settle_delay_seconds=0.01,
            inactivity_timeout_seconds=1.0,
            error_restart_delay_seconds=0.01,
            auto_restart=False,
        ),
    )

@pytest.fixture
def voice():
    transcriber = Mock()
    transcriber.submit_chunk = AsyncMock()
    transcriber.transcribe = AsyncMock(return_value=Transcription(text="I was on reddit"))
    dialogue_service = Mock()
    dialogue_service.converse = AsyncMock(return_value=DialogueReply(assistant_text="Back to the thesis?"))
    synthesizer = Mock()
    synthesizer.synthesize = AsyncMock(return_value=b"mp3")
    return {
        "transcriber": transcriber,
        "dialogue_service": dialogue_service,
        "synthesizer": synthesizer,
        "player": Player(),
    }

@pytest.mark.asyncio
async def test_sustained_drift_to_voice_intervention(db, task, fast_config, voice):
    """Test the full flow from a blacklisted tab to a stored conversation"""
    host = FocusHost(
        clock=AsyncioClock(),
        capture=CaptureManager({CaptureKind.MIC: Microphone()}),
        recorder=db,
        monitor_config=fast_config,
        **voice,
    )
    try:
        session = await host.start_session(task)
        host.context_changed("https://www.reddit.com/r/all")
        await host.drain()
        assert session.state == SessionState.DRIFTING

        await wait_until(lambda: host.dialogue.session is not None)
        dialogue = host.dialogue.session
        assert dialogue.drift_context.goal_text == task.goal_text
        assert dialogue.drift_context.cause.value == "blacklisted_content"

        assert host.dialogue.begin_recording()
        await wait_until(lambda: len(dialogue.turns) == 3 and dialogue.state == DialogueState.AWAITING_USER)
        assert voice["player"].played == [b"mp3"]

        host.context_changed("https://www.overleaf.com/project/1")
        await host.drain()
        assert session.state == SessionState.SAILING

        ended = await host.end_session()
    finally:
        await host.stop()

    assert ended.drift_count == 1
    assert dialogue.state == DialogueState.ENDED
    assert dialogue.end_reason == "session ended"

    stored = db.get_session(session.id)
    assert stored["state"] == "ended"
    assert stored["drift_count"] == 1
    events = db.get_distraction_events(session.id)
    assert [e["cause"] for e in events] == ["blacklisted_content"]
    turns = db.get_conversation_turns(session.id, dialogue.conversation_id)
    assert [(t["turn_number"], t["role"]) for t in turns] == [(0, "assistant"), (1, "user"), (1, "assistant")]
    assert turns[1]["content"] == "I was on reddit"

@pytest.mark.asyncio
async def test_heartbeat_drift_is_flushed_on_end(db, task, fast_config):
    classifier = Mock()
    classifier.classify = AsyncMock(return_value=ClassificationResult(content_relevant=False))
    host = FocusHost(
        clock=AsyncioClock(),
        capture=CaptureManager({CaptureKind.SCREEN: Screen()}),
        classifier=classifier,
        recorder=db,
        monitor_config=fast_config,
    )
    try:
        session = await host.start_session(task)
        await wait_until(lambda: host.aggregator.is_distracted)

        snapshot = host.snapshot()
        assert snapshot["drift"]["dominant_cause"] == "multimodal"
        assert snapshot["heartbeat"]["running"] is True
        assert snapshot["dialogue"] is None

        await host.end_session()
    finally:
        await host.stop()

    goal, related = classifier.classify.await_args.args[2:]
    assert goal == task.goal_text
    assert related == ["overleaf.com"]
    assert session.drift_count == 1
    assert [e["cause"] for e in db.get_distraction_events(session.id)] == ["multimodal"]

@pytest.mark.asyncio
async def test_brief_tab_switch_and_overlap(db, task, fast_config):
    host = FocusHost(clock=AsyncioClock(), recorder=db, monitor_config=fast_config)
    try:
        session = await host.start_session(task)

        # Back before the grace period: nothing recorded
        host.visibility_changed(True)
        host.visibility_changed(False)
        await asyncio.sleep(0.05)
        await host.drain()
        assert not host.aggregator.is_distracted

        host.visibility_changed(True)
        await asyncio.sleep(0.05)
        await host.drain()
        host.context_changed("https://some-random-blog.example/post")
        host.visibility_changed(False)
        await host.drain()

        assert host.aggregator.state.active_causes[0].value == "irrelevant_context"
        assert session.drift_count == 1

        await host.end_session()
    finally:
        await host.stop()

    causes = sorted(e["cause"] for e in db.get_distraction_events(session.id))
    assert causes == ["irrelevant_context", "tab_switch"]
