import asyncio
import logging
import platform
import sys
from functools import partial
from typing import Any, Dict, Optional

from mindship.config.config import MonitorConfig, config as default_config
from mindship.config.settings import settings
from mindship.models.drift import DriftCandidate, SignalKind
from mindship.models.focus_session import FocusSession, FocusTask, SessionState
from mindship.services.aggregator import DriftStateAggregator
from mindship.services.capture import CaptureKind, CaptureManager, ScreenCapture
from mindship.services.clock import AsyncioClock, Clock
from mindship.services.dialogue import InterventionDialogueController
from mindship.services.errors import SessionError
from mindship.services.heartbeat import HeartbeatScheduler
from mindship.services.interfaces import (
    AudioPlayer, Classifier, DialogueService, EventRecorder, SpeechSynthesizer, Transcriber
)
from mindship.services.session import SessionLifecycleController
from mindship.services.signals import (
    ContextClassifier, IdleActivityMonitor, PeriodicMultimodalSignal, VisibilityClassifier
)

logger = logging.getLogger(__name__)

def check_environment():
    """Check if the environment meets requirements"""
    if sys.version_info < (3, 10):
        print("Python 3.10 or higher is required")
        sys.exit(1)

    if platform.system() not in ['Darwin', 'Linux', 'Windows']:
        print(f"Unsupported operating system: {platform.system()}")
        sys.exit(1)

class FocusHost:
    """Wires signal sources, aggregator, session and dialogue together

    Sources publish candidates to one queue; a single consumer task applies
    them to the aggregator in arrival order.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        capture: Optional[CaptureManager] = None,
        classifier: Optional[Classifier] = None,
        transcriber: Optional[Transcriber] = None,
        dialogue_service: Optional[DialogueService] = None,
        synthesizer: Optional[SpeechSynthesizer] = None,
        player: Optional[AudioPlayer] = None,
        recorder: Optional[EventRecorder] = None,
        monitor_config: Optional[MonitorConfig] = None,
    ):
        cfg = monitor_config or default_config
        self.config = cfg
        self.clock = clock or AsyncioClock()
        self.capture = capture or CaptureManager()
        self.recorder = recorder
        self.queue: "asyncio.Queue[DriftCandidate]" = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None

        self.aggregator = DriftStateAggregator(self.clock, recorder)
        self.visibility = VisibilityClassifier(self.clock, self.publish, cfg.signals)
        self.context = ContextClassifier(self.clock, self.publish, cfg.signals)
        self.idle = IdleActivityMonitor(
            self.clock,
            self.publish,
            cfg.signals,
            other_distraction_active=lambda: self.aggregator.others_active(SignalKind.IDLE),
        )
        self.multimodal = PeriodicMultimodalSignal(self.clock, self.publish)

        self.heartbeat: Optional[HeartbeatScheduler] = None
        if classifier is not None:
            self.heartbeat = HeartbeatScheduler(
                self.clock,
                self.capture,
                classifier,
                self.multimodal,
                cfg.heartbeat,
                task_context=self._task_context,
            )

        self.dialogue: Optional[InterventionDialogueController] = None
        if None not in (transcriber, dialogue_service, synthesizer, player):
            self.dialogue = InterventionDialogueController(
                self.clock,
                self.capture,
                transcriber,
                dialogue_service,
                synthesizer,
                player,
                cfg.dialogue,
                recorder,
            )

        self.sessions = SessionLifecycleController(
            self.clock, self.aggregator, self.dialogue, cfg.session, recorder
        )
        logger.info(f"FocusHost ready: {cfg.describe()}")

    # Candidate channel

    def publish(self, candidate: DriftCandidate) -> None:
        self.queue.put_nowait(candidate)

    async def start(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self.aggregator.consume(self.queue))

    async def drain(self) -> None:
        """Wait until every published candidate has been applied"""
        await self.start()
        await self.queue.join()

    async def stop(self) -> None:
        """Shut down, ending any active session"""
        if self.sessions.is_active:
            await self.end_session()
        if self.dialogue is not None:
            await self.dialogue.shutdown()
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        self.capture.release_all()
        logger.info("FocusHost stopped")

    # Session host operations

    async def start_session(self, task: FocusTask) -> FocusSession:
        if self.sessions.is_active:
            await self.end_session()
        await self.start()

        session = self.sessions.start(task)
        self.context.set_related_apps(task.related_apps)
        for source in (self.visibility, self.context, self.idle):
            source.start()
        if self.heartbeat is not None:
            self.heartbeat.start()
        return session

    async def end_session(self) -> FocusSession:
        """Stop the session's sources, apply pending candidates and finalize

        Raises:
            SessionError: If no session is active
        """
        if not self.sessions.is_active:
            raise SessionError("No active session to end")

        for source in (self.visibility, self.context, self.idle):
            source.stop()
        if self.heartbeat is not None:
            await self.heartbeat.stop()
        await self.drain()
        return self.sessions.end()

    def visibility_changed(self, hidden: bool) -> None:
        self.visibility.visibility_changed(hidden)

    def context_changed(self, context: str) -> None:
        self.context.context_changed(context)

    def user_input(self, kind: str = "input") -> None:
        self.idle.record_input(kind)

    def start_intervention(self):
        return self.sessions.start_intervention()

    def stop_and_send(self) -> bool:
        return self._require_dialogue().stop_and_send()

    def end_dialogue(self) -> bool:
        return self._require_dialogue().end()

    def set_auto_restart(self, enabled: bool) -> None:
        self._require_dialogue().set_auto_restart(enabled)

    def _require_dialogue(self) -> InterventionDialogueController:
        if self.dialogue is None:
            raise SessionError("Voice intervention is not configured")
        return self.dialogue

    def _task_context(self):
        session = self.sessions.session
        if session is None:
            return "", []
        return session.task.goal_text, list(session.task.related_apps)

    # Reporting

    def snapshot(self) -> Dict[str, Any]:
        """Current session, drift and dialogue state as plain data"""
        now = self.clock.now()
        session = self.sessions.session
        session_data = None
        if session is not None:
            focused, drifted = session.focused_seconds, session.drifted_seconds
            if session.is_active and session.last_transition is not None:
                elapsed = max(0.0, (now - session.last_transition).total_seconds())
                if session.state == SessionState.DRIFTING:
                    drifted += elapsed
                else:
                    focused += elapsed
            total = focused + drifted
            session_data = {
                "id": session.id,
                "task_name": session.task.task_name,
                "goal_text": session.task.goal_text,
                "state": session.state.value,
                "start_time": session.start_time.isoformat(),
                "end_time": session.end_time.isoformat() if session.end_time else None,
                "focused_seconds": focused,
                "drifted_seconds": drifted,
                "drift_count": session.drift_count,
                "focus_percentage": round(focused / total * 100) if total > 0 else 0,
            }

        state = self.aggregator.state
        drift_data = {
            "is_distracted": state.is_distracted,
            "dominant_cause": state.dominant_cause.value if state.dominant_cause else None,
            "active_causes": [cause.value for cause in state.active_causes],
            "started_at": state.started_at.isoformat() if state.started_at else None,
            "distracted_seconds": self.aggregator.distracted_for(now),
        }

        dialogue_data = None
        if self.dialogue is not None and self.dialogue.session is not None:
            dialogue_session = self.dialogue.session
            dialogue_data = {
                "conversation_id": dialogue_session.conversation_id,
                "state": dialogue_session.state.value,
                "turn_number": dialogue_session.turn_number,
                "auto_restart": dialogue_session.auto_restart,
                "end_reason": dialogue_session.end_reason,
                "turns": [
                    {
                        "turn_number": turn.turn_number,
                        "role": turn.role.value,
                        "content": turn.content,
                        "timestamp": turn.timestamp.isoformat(),
                    }
                    for turn in dialogue_session.turns
                ],
            }

        heartbeat_data = None
        if self.heartbeat is not None:
            heartbeat_data = {
                "running": self.heartbeat.running,
                "ticks": self.heartbeat.tick_count,
                "failed_ticks": self.heartbeat.failed_ticks,
                "disabled": {kind.value: reason for kind, reason in self.heartbeat.disabled_kinds.items()},
            }

        return {
            "session": session_data,
            "drift": drift_data,
            "dialogue": dialogue_data,
            "heartbeat": heartbeat_data,
            "events": [event.model_dump(mode="json") for event in self.aggregator.events],
        }

def build_host(recorder: Optional[EventRecorder] = None) -> FocusHost:
    """Host with the Gemini services and, when enabled, local voice"""
    from mindship.services.analyzer import GeminiClassifier, GeminiDialogue, GeminiTranscriber

    devices = {CaptureKind.SCREEN: ScreenCapture()}
    voice: Dict[str, Any] = {}
    if settings.VOICE_ENABLED:
        from mindship.services.audio import build_voice_backends, pcm_to_wav

        microphone, synthesizer, player = build_voice_backends()
        devices[CaptureKind.MIC] = microphone
        voice = {
            "transcriber": GeminiTranscriber(
                encoder=partial(pcm_to_wav, sample_rate=microphone.sample_rate)
            ),
            "dialogue_service": GeminiDialogue(),
            "synthesizer": synthesizer,
            "player": player,
        }
    else:
        logger.info("Voice disabled, interventions will not start")

    return FocusHost(
        capture=CaptureManager(devices),
        classifier=GeminiClassifier(),
        recorder=recorder,
        **voice,
    )
