"""Independent attention signal sources

Each source watches one attention dimension and publishes DriftCandidate
values to a sink. Sources never touch each other's state.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional
from urllib.parse import urlparse

from mindship.config.config import SignalConfig
from mindship.models.drift import (
    CandidateSignal, ClassificationResult, DriftCandidate, DriftCause, SignalKind
)
from mindship.services.clock import Clock, Timer, cancel_timer

logger = logging.getLogger(__name__)

CandidateSink = Callable[[DriftCandidate], None]

def domain_matches(context: str, domain: str) -> bool:
    """Match a host (and optional path prefix) against a URL or bare host"""
    host, _, path = domain.lower().partition("/")
    lowered = context.strip().lower()
    try:
        parsed = urlparse(lowered if "//" in lowered else f"//{lowered}")
        hostname = parsed.hostname or ""
    except ValueError:
        return False
    if hostname != host and not hostname.endswith("." + host):
        return False
    return not path or parsed.path.lstrip("/").startswith(path)

class SignalSource:
    """Base class: lifecycle gating and candidate publishing"""

    kind: SignalKind

    def __init__(self, clock: Clock, sink: CandidateSink):
        self.clock = clock
        self.sink = sink
        self.running = False
        self.disabled = False

    def start(self) -> None:
        if self.disabled:
            logger.warning(f"{self.kind.value} signal is disabled, not starting")
            return
        self.running = True
        logger.info(f"{self.kind.value} signal started")

    def stop(self) -> None:
        self.running = False
        self._cancel_timers()
        logger.info(f"{self.kind.value} signal stopped")

    def disable(self, reason: str) -> None:
        """Switch the source off for the rest of the session after a non-recoverable signal error"""
        logger.warning(f"Disabling {self.kind.value} signal: {reason}")
        self.disabled = True
        self.stop()

    def enable(self) -> None:
        if self.disabled:
            logger.info(f"Re-enabling {self.kind.value} signal")
        self.disabled = False

    def _cancel_timers(self) -> None:
        pass

    def _emit(
        self,
        signal: CandidateSignal,
        cause: Optional[DriftCause] = None,
        started_at: Optional[datetime] = None,
        confidence: float = 1.0,
        duration_seconds: Optional[float] = None,
        detail: Optional[str] = None,
    ) -> DriftCandidate:
        candidate = DriftCandidate(
            source=self.kind,
            signal=signal,
            cause=cause,
            detected_at=self.clock.now(),
            started_at=started_at,
            confidence=confidence,
            duration_seconds=duration_seconds,
            detail=detail,
        )
        logger.info(
            f"[{self.kind.value.upper()}] {signal.value}"
            f"{f' ({cause.value})' if cause else ''}{f': {detail}' if detail else ''}"
        )
        self.sink(candidate)
        return candidate

class VisibilityClassifier(SignalSource):
    """Tab-switch detection from work-surface visibility transitions"""

    kind = SignalKind.VISIBILITY

    def __init__(self, clock: Clock, sink: CandidateSink, config: SignalConfig):
        super().__init__(clock, sink)
        self.grace_seconds = config.visibility_grace_seconds
        self.hidden_at: Optional[datetime] = None
        self.distracted = False
        self._grace_timer: Optional[Timer] = None

    @property
    def is_hidden(self) -> bool:
        return self.hidden_at is not None

    def visibility_changed(self, hidden: bool) -> None:
        if not self.running:
            return
        if hidden:
            self._on_hidden()
        else:
            self._on_visible()

    def _on_hidden(self) -> None:
        if self.is_hidden:
            return
        self.hidden_at = self.clock.now()
        logger.debug("Work surface hidden, starting grace timer")
        self._grace_timer = self.clock.call_later(self.grace_seconds, self._grace_expired)

    def _grace_expired(self) -> None:
        if not self.running or not self.is_hidden or self.distracted:
            return
        self.distracted = True
        self._emit(
            CandidateSignal.DISTRACTED,
            cause=DriftCause.TAB_SWITCH,
            started_at=self.hidden_at,
        )

    def _on_visible(self) -> None:
        if not self.is_hidden:
            return
        cancel_timer(self._grace_timer)
        self._grace_timer = None
        hidden_at = self.hidden_at
        self.hidden_at = None

        if not self.distracted:
            # Quick glance away
            logger.debug("Work surface visible again within grace period")
            return

        self.distracted = False
        duration = (self.clock.now() - hidden_at).total_seconds()
        self._emit(
            CandidateSignal.RESTORED,
            cause=DriftCause.TAB_SWITCH,
            started_at=hidden_at,
            duration_seconds=max(0.0, duration),
        )

    def _cancel_timers(self) -> None:
        cancel_timer(self._grace_timer)
        self._grace_timer = None
        self.hidden_at = None
        self.distracted = False

class ContextClassifier(SignalSource):
    """Classifies navigation / active-application changes against the task"""

    kind = SignalKind.CONTEXT

    def __init__(
        self,
        clock: Clock,
        sink: CandidateSink,
        config: SignalConfig,
        related_apps: Optional[List[str]] = None,
    ):
        super().__init__(clock, sink)
        self.distraction_domains = {k.lower(): v for k, v in config.distraction_domains.items()}
        self.blacklist = [item.lower() for item in config.blacklist]
        self.productivity_whitelist = [item.lower() for item in config.productivity_whitelist]
        self.related_apps = [app.lower() for app in (related_apps or []) if app]
        self.current_context: Optional[str] = None
        self.distracted = False

    def set_related_apps(self, related_apps: List[str]) -> None:
        self.related_apps = [app.lower() for app in related_apps if app]

    def classify(self, context: str) -> Optional[DriftCause]:
        """Return the drift cause for a context, or None if it is acceptable"""
        if self.blacklist_category(context):
            return DriftCause.BLACKLISTED_CONTENT
        if self.is_task_relevant(context):
            return None
        lowered = context.lower()
        if any(item in lowered for item in self.productivity_whitelist):
            return None
        return DriftCause.IRRELEVANT_CONTEXT

    def blacklist_category(self, context: str) -> Optional[str]:
        lowered = context.lower()
        for domain, category in self.distraction_domains.items():
            if domain_matches(context, domain):
                return category
        if any(item in lowered for item in self.blacklist):
            return "other"
        return None

    def is_task_relevant(self, context: str) -> bool:
        lowered = context.lower()
        return any(app in lowered for app in self.related_apps)

    def context_changed(self, context: str) -> None:
        if not self.running or not context:
            return
        if context == self.current_context:
            return
        logger.debug(f"Context changed: {self.current_context} -> {context}")
        self.current_context = context

        cause = self.classify(context)
        if cause is not None:
            detail = self.blacklist_category(context) if cause == DriftCause.BLACKLISTED_CONTENT else context
            self.distracted = True
            self._emit(CandidateSignal.DISTRACTED, cause=cause, detail=detail)
        elif self.is_task_relevant(context) and self.distracted:
            self.distracted = False
            self._emit(CandidateSignal.RESTORED, detail=context)

    def _cancel_timers(self) -> None:
        self.current_context = None
        self.distracted = False

class IdleActivityMonitor(SignalSource):
    """Idle detection from the timestamp of the last user input"""

    kind = SignalKind.IDLE

    def __init__(
        self,
        clock: Clock,
        sink: CandidateSink,
        config: SignalConfig,
        other_distraction_active: Optional[Callable[[], bool]] = None,
    ):
        super().__init__(clock, sink)
        self.timeout_seconds = config.idle_timeout_seconds
        self.other_distraction_active = other_distraction_active or (lambda: False)
        self.last_activity: Optional[datetime] = None
        self.idle = False
        self._idle_timer: Optional[Timer] = None

    def start(self) -> None:
        super().start()
        if self.running:
            self.last_activity = self.clock.now()
            self._arm(self.timeout_seconds)

    def record_input(self, kind: str = "input") -> None:
        if not self.running:
            return
        self.last_activity = self.clock.now()
        if self.idle:
            self.idle = False
            self._emit(CandidateSignal.RESTORED, cause=DriftCause.IDLE, detail=kind)
        self._arm(self.timeout_seconds)

    def _arm(self, delay: float) -> None:
        cancel_timer(self._idle_timer)
        self._idle_timer = self.clock.call_later(delay, self._idle_expired)

    def _idle_expired(self) -> None:
        if not self.running or self.idle or self.last_activity is None:
            return
        if self.other_distraction_active():
            # Already accounted for by another cause; look again after another period
            logger.debug("Idle timer fired during another distraction, re-arming")
            self._arm(self.timeout_seconds)
            return
        self.idle = True
        self._emit(
            CandidateSignal.DISTRACTED,
            cause=DriftCause.IDLE,
            started_at=self.last_activity,
        )

    def _cancel_timers(self) -> None:
        cancel_timer(self._idle_timer)
        self._idle_timer = None
        self.idle = False

class PeriodicMultimodalSignal(SignalSource):
    """Turns heartbeat classification results into candidates"""

    kind = SignalKind.MULTIMODAL

    def __init__(self, clock: Clock, sink: CandidateSink):
        super().__init__(clock, sink)
        self.distracted = False
        self.last_result: Optional[ClassificationResult] = None

    @staticmethod
    def is_drifting(result: ClassificationResult, camera_supplied: bool) -> bool:
        if not result.content_relevant:
            return True
        camera = result.camera_analysis
        if camera_supplied and camera is not None:
            return not camera.person_present or not camera.appears_focused
        return False

    def report(self, result: ClassificationResult, camera_supplied: bool = False) -> Optional[DriftCandidate]:
        if not self.running:
            return None
        self.last_result = result
        if self.is_drifting(result, camera_supplied):
            self.distracted = True
            return self._emit(
                CandidateSignal.DISTRACTED,
                cause=DriftCause.MULTIMODAL,
                confidence=result.confidence_level,
                detail=result.reason,
            )
        if self.distracted:
            self.distracted = False
            return self._emit(
                CandidateSignal.RESTORED,
                cause=DriftCause.MULTIMODAL,
                confidence=result.confidence_level,
                detail=result.reason,
            )
        return None

    def _cancel_timers(self) -> None:
        self.distracted = False
