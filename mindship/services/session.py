import logging
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from mindship.config.config import SessionConfig
from mindship.models.dialogue import DriftContext
from mindship.models.drift import DistractionEvent, DriftState
from mindship.models.focus_session import FocusSession, FocusTask, SessionState
from mindship.services.aggregator import DriftStateAggregator
from mindship.services.clock import Clock, Timer, cancel_timer
from mindship.services.dialogue import InterventionDialogueController
from mindship.services.errors import SessionError
from mindship.services.interfaces import EventRecorder, fire_and_forget

logger = logging.getLogger(__name__)

class SessionEvent(str, Enum):
    DRIFT_STARTED = "drift_started"
    DRIFT_CLEARED = "drift_cleared"
    END = "end"

SessionListener = Callable[[FocusSession, SessionState, SessionState], None]

class SessionLifecycleController:
    """Owns the active FocusSession

    Every mutation of the session goes through `handle`. Drift state
    changes arrive from the aggregator; sustained drift opens a voice
    intervention.
    """

    def __init__(
        self,
        clock: Clock,
        aggregator: DriftStateAggregator,
        dialogue: Optional[InterventionDialogueController],
        config: SessionConfig,
        recorder: Optional[EventRecorder] = None,
    ):
        self.clock = clock
        self.aggregator = aggregator
        self.dialogue = dialogue
        self.config = config
        self.recorder = recorder
        self.session: Optional[FocusSession] = None
        self.interventions = 0
        self._sustained_timer: Optional[Timer] = None
        self._listeners: List[SessionListener] = []
        aggregator.subscribe(self._on_drift_state)

    def subscribe(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    @property
    def is_active(self) -> bool:
        return self.session is not None and self.session.is_active

    def start(self, task: FocusTask) -> FocusSession:
        """Begin a new session, ending any active one first"""
        if self.is_active:
            logger.info(f"Ending session {self.session.id} before starting a new one")
            self.end()

        self.session = FocusSession(task=task, start_time=self.clock.now())
        self.interventions = 0
        self.aggregator.reset(self.session.id)
        if self.recorder is not None:
            fire_and_forget("focus session", self.recorder.record_session, self.session)
        logger.info(f"Session {self.session.id} started: {task.task_name}")
        return self.session

    def end(self) -> FocusSession:
        """End the active session and flush its open drifts

        Raises:
            SessionError: If no session is active
        """
        if not self.is_active:
            raise SessionError("No active session to end")
        session = self.session
        self.handle(SessionEvent.END)
        return session

    def handle(self, event: SessionEvent) -> bool:
        """Single transition entry point for the session state"""
        session = self.session
        if session is None or not session.is_active:
            logger.debug(f"Ignoring {event.value}: no active session")
            return False

        now = self.clock.now()
        old_state = session.state

        if event == SessionEvent.DRIFT_STARTED and old_state == SessionState.SAILING:
            session.accrue(now)
            session.state = SessionState.DRIFTING
            session.drift_count += 1
            self._arm_sustained_timer()
        elif event == SessionEvent.DRIFT_CLEARED and old_state == SessionState.DRIFTING:
            session.accrue(now)
            session.state = SessionState.SAILING
            self._cancel_sustained_timer()
        elif event == SessionEvent.END:
            self._finish(session, now)
        else:
            logger.debug(f"Ignoring {event.value} while {old_state.value}")
            return False

        logger.info(f"Session {old_state.value} -> {session.state.value} on {event.value}")
        for listener in self._listeners:
            try:
                listener(session, old_state, session.state)
            except Exception as e:
                logger.error(f"Session listener failed: {e}", exc_info=True)
        return True

    def _finish(self, session: FocusSession, now: datetime) -> None:
        self._cancel_sustained_timer()
        session.accrue(now)
        session.state = SessionState.ENDED
        session.end_time = now

        if self.dialogue is not None and self.dialogue.is_active:
            self.dialogue.end("session ended")

        # Flush open causes after the sources are stopped
        flushed = self.aggregator.finalize(now)
        self.aggregator.session_id = None

        if self.recorder is not None:
            fire_and_forget("focus session", self.recorder.record_session, session)

        logger.info(
            f"Session {session.id} ended: {session.focus_percentage}% focused, "
            f"{session.drift_count} drifts, {len(flushed)} open drifts flushed"
        )

    def _on_drift_state(self, previous: DriftState, current: DriftState) -> None:
        if current.is_distracted and not previous.is_distracted:
            self.handle(SessionEvent.DRIFT_STARTED)
        elif previous.is_distracted and not current.is_distracted:
            self.handle(SessionEvent.DRIFT_CLEARED)

    # Sustained drift

    def _arm_sustained_timer(self) -> None:
        self._cancel_sustained_timer()
        self._sustained_timer = self.clock.call_later(
            self.config.sustained_drift_seconds,
            self._sustained_drift,
            self.session,
        )

    def _cancel_sustained_timer(self) -> None:
        cancel_timer(self._sustained_timer)
        self._sustained_timer = None

    def _sustained_drift(self, session: FocusSession) -> None:
        if self.session is not session or session.state != SessionState.DRIFTING:
            return
        # Keep watching while the drift persists
        self._arm_sustained_timer()

        if self.dialogue is None:
            return
        if self.dialogue.is_active:
            logger.debug("Sustained drift while an intervention is running, not starting another")
            return
        self.start_intervention()

    def start_intervention(self, opening_message: Optional[str] = None):
        """Open a voice intervention for the active session

        Raises:
            SessionError: If no session is active or no dialogue is configured
        """
        if not self.is_active:
            raise SessionError("No active session")
        if self.dialogue is None:
            raise SessionError("Voice intervention is not configured")

        self.interventions += 1
        logger.info(f"Starting intervention #{self.interventions} for session {self.session.id}")
        return self.dialogue.start(self.session.id, self.drift_context(), opening_message)

    def drift_context(self) -> DriftContext:
        session = self.session
        state = self.aggregator.state
        return DriftContext(
            cause=state.dominant_cause,
            drift_minutes=self.aggregator.distracted_for(self.clock.now()) / 60.0,
            goal_text=session.task.goal_text if session else "",
            task_name=session.task.task_name if session else "",
        )

    @property
    def events(self) -> List[DistractionEvent]:
        return list(self.aggregator.events)
