"""Merge independent drift candidates into one Focused/Distracted state"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from mindship.models.drift import (
    SIGNAL_PRECEDENCE, DistractionEvent, DriftCandidate, DriftCause, DriftState, SignalKind
)
from mindship.services.clock import Clock
from mindship.services.interfaces import EventRecorder, fire_and_forget

logger = logging.getLogger(__name__)

StateListener = Callable[[DriftState, DriftState], None]

@dataclass
class ActiveDrift:
    """Open drift period for one signal kind"""
    cause: DriftCause
    started_at: datetime
    confidence: float
    last_check: datetime
    detail: Optional[str] = None

class DriftStateAggregator:
    """Reduces the candidate stream into one DriftState per session

    Each signal kind holds at most one open drift. The user counts as
    distracted while any kind is open, and focused only once every kind
    has cleared. The first cause recorded for a kind wins until it clears.
    """

    def __init__(self, clock: Clock, recorder: Optional[EventRecorder] = None):
        self.clock = clock
        self.recorder = recorder
        self.session_id: Optional[str] = None
        self.active: Dict[SignalKind, ActiveDrift] = {}
        self.events: List[DistractionEvent] = []
        self.state = DriftState()
        self._listeners: List[StateListener] = []

    def subscribe(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def reset(self, session_id: Optional[str]) -> None:
        """Start aggregating for a new session"""
        self.session_id = session_id
        self.active.clear()
        self.events = []
        self.state = DriftState()

    @property
    def is_distracted(self) -> bool:
        return self.state.is_distracted

    def is_active(self, kind: SignalKind) -> bool:
        return kind in self.active

    def others_active(self, kind: SignalKind) -> bool:
        return any(k != kind for k in self.active)

    def distracted_for(self, now: Optional[datetime] = None) -> float:
        """Seconds since the current distraction began"""
        if not self.state.is_distracted or self.state.started_at is None:
            return 0.0
        now = now or self.clock.now()
        return max(0.0, (now - self.state.started_at).total_seconds())

    def handle(self, candidate: DriftCandidate) -> Optional[DistractionEvent]:
        """Apply one candidate; returns the finalized event if it closed a drift"""
        if self.session_id is None:
            logger.warning(f"Ignoring {candidate.source.value} candidate with no active session")
            return None
        if candidate.is_distraction:
            self._open(candidate)
            return None
        return self._close(candidate)

    def _open(self, candidate: DriftCandidate) -> None:
        if candidate.cause is None:
            logger.warning(f"Ignoring {candidate.source.value} distraction without a cause")
            return

        existing = self.active.get(candidate.source)
        if existing is not None:
            existing.last_check = candidate.detected_at
            existing.confidence = candidate.confidence
            self._publish(last_check=candidate.detected_at, confidence=candidate.confidence)
            return

        started_at = candidate.started_at or candidate.detected_at
        self.active[candidate.source] = ActiveDrift(
            cause=candidate.cause,
            started_at=started_at,
            confidence=candidate.confidence,
            last_check=candidate.detected_at,
            detail=candidate.detail,
        )
        logger.info(f"Drift opened: {candidate.cause.value} since {started_at.isoformat()}")
        self._publish(last_check=candidate.detected_at, confidence=candidate.confidence)

    def _close(self, candidate: DriftCandidate) -> Optional[DistractionEvent]:
        drift = self.active.get(candidate.source)
        if drift is None:
            logger.warning(
                f"Clearing signal from {candidate.source.value} for a drift that was never recorded"
            )
            return None
        if candidate.cause is not None and candidate.cause != drift.cause:
            logger.warning(
                f"Clearing signal for {candidate.cause.value} does not match recorded {drift.cause.value}"
            )
            return None

        del self.active[candidate.source]
        if candidate.duration_seconds is not None:
            duration = candidate.duration_seconds
        else:
            duration = (candidate.detected_at - drift.started_at).total_seconds()
        event = self._finalize(drift, max(0.0, duration))
        self._publish(last_check=candidate.detected_at, confidence=candidate.confidence)
        return event

    def finalize(self, now: Optional[datetime] = None) -> List[DistractionEvent]:
        """Close every open drift, e.g. when the session ends"""
        now = now or self.clock.now()
        closed = []
        for kind in list(self.active):
            drift = self.active.pop(kind)
            closed.append(self._finalize(drift, max(0.0, (now - drift.started_at).total_seconds())))
        if closed:
            self._publish(last_check=now, confidence=0.0)
        return closed

    def _finalize(self, drift: ActiveDrift, duration: float) -> DistractionEvent:
        event = DistractionEvent(
            session_id=self.session_id,
            cause=drift.cause,
            started_at=drift.started_at,
            duration_seconds=duration,
            detail=drift.detail,
            confidence=drift.confidence,
        )
        self.events.append(event)
        logger.info(f"Drift closed: {drift.cause.value} after {duration:.1f}s")
        if self.recorder is not None:
            fire_and_forget("distraction event", self.recorder.record_distraction, event)
        return event

    def _dominant(self) -> Optional[ActiveDrift]:
        for kind in SIGNAL_PRECEDENCE:
            if kind in self.active:
                return self.active[kind]
        return None

    def _publish(self, last_check: datetime, confidence: float) -> None:
        previous = self.state
        dominant = self._dominant()
        if dominant is None:
            new_state = DriftState(last_check=last_check, confidence=confidence)
        else:
            started_at = previous.started_at if previous.is_distracted else None
            if started_at is None:
                started_at = min(d.started_at for d in self.active.values())
            new_state = DriftState(
                is_distracted=True,
                dominant_cause=dominant.cause,
                started_at=started_at,
                active_causes=[self.active[k].cause for k in SIGNAL_PRECEDENCE if k in self.active],
                confidence=confidence,
                last_check=last_check,
            )
        self.state = new_state

        if previous.is_distracted != new_state.is_distracted:
            logger.info(
                f"Drift state -> {'DISTRACTED' if new_state.is_distracted else 'FOCUSED'}"
                f"{f' ({new_state.dominant_cause.value})' if new_state.dominant_cause else ''}"
            )
        if (previous.is_distracted, previous.dominant_cause, previous.active_causes) == (
            new_state.is_distracted, new_state.dominant_cause, new_state.active_causes
        ):
            return
        for listener in self._listeners:
            try:
                listener(previous, new_state)
            except Exception as e:
                logger.error(f"Drift state listener failed: {e}", exc_info=True)

    async def consume(self, queue: "asyncio.Queue[DriftCandidate]") -> None:
        """Feed candidates from the shared channel in arrival order"""
        while True:
            candidate = await queue.get()
            try:
                self.handle(candidate)
            except Exception as e:
                logger.error(f"Failed to apply candidate {candidate}: {e}", exc_info=True)
            finally:
                queue.task_done()
