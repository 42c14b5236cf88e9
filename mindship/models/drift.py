from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field

class SignalKind(str, Enum):
    """Attention dimension watched by one signal source"""
    VISIBILITY = "visibility"
    CONTEXT = "context"
    MULTIMODAL = "multimodal"
    IDLE = "idle"

class DriftCause(str, Enum):
    TAB_SWITCH = "tab_switch"
    BLACKLISTED_CONTENT = "blacklisted_content"
    IRRELEVANT_CONTEXT = "irrelevant_context"
    MULTIMODAL = "multimodal"
    IDLE = "idle"

class CandidateSignal(str, Enum):
    DISTRACTED = "distracted"
    RESTORED = "restored"

# Dominant-cause precedence, highest first
SIGNAL_PRECEDENCE: List[SignalKind] = [
    SignalKind.VISIBILITY,
    SignalKind.CONTEXT,
    SignalKind.MULTIMODAL,
    SignalKind.IDLE,
]

class DriftCandidate(BaseModel):
    """One observation emitted by a signal source"""
    source: SignalKind = Field(description="Signal source that produced the candidate")
    signal: CandidateSignal = Field(description="Whether the source saw drift start or end")
    cause: Optional[DriftCause] = Field(
        default=None,
        description="Drift cause; required for distraction candidates"
    )
    detected_at: datetime = Field(description="When the source made the observation")
    started_at: Optional[datetime] = Field(
        default=None,
        description="When the drift actually began, if earlier than detection"
    )
    confidence: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Confidence of the observation"
    )
    duration_seconds: Optional[float] = Field(
        default=None,
        ge=0.0,
        description="Measured drift duration, reported by completion candidates"
    )
    detail: Optional[str] = Field(
        default=None,
        description="Source-specific detail (blacklist category, URL, reason)"
    )

    @property
    def is_distraction(self) -> bool:
        return self.signal == CandidateSignal.DISTRACTED

class DriftState(BaseModel):
    """Canonical Focused/Distracted state for the active session"""
    is_distracted: bool = False
    dominant_cause: Optional[DriftCause] = None
    started_at: Optional[datetime] = None
    active_causes: List[DriftCause] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    last_check: Optional[datetime] = None

class DistractionEvent(BaseModel):
    """Finalized drift period, written once its duration is known"""
    session_id: str
    cause: DriftCause
    started_at: datetime
    duration_seconds: float = Field(ge=0.0)
    detail: Optional[str] = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)

class CameraAnalysis(BaseModel):
    person_present: bool = True
    appears_focused: bool = True

class ClassificationResult(BaseModel):
    """Response of the multimodal classification service"""
    content_relevant: bool = Field(description="Whether the screen content matches the goal")
    camera_analysis: Optional[CameraAnalysis] = Field(
        default=None,
        description="Camera assessment, present only when a frame was supplied"
    )
    confidence_level: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Confidence score for the assessment"
    )
    reason: Optional[str] = None
