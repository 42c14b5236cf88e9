from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional
import uuid

from mindship.models.drift import DriftCause

class DialogueState(str, Enum):
    IDLE = "idle"
    AWAITING_USER = "awaiting_user"
    RECORDING = "recording"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ENDED = "ended"

class DialogueEvent(str, Enum):
    """Messages accepted by the dialogue transition function"""
    START = "start"
    RECORD = "record"
    CAPTURE_FINISHED = "capture_finished"
    REPLY_READY = "reply_ready"
    RECOVERABLE_ERROR = "recoverable_error"
    PLAYBACK_FINISHED = "playback_finished"
    INACTIVITY_TIMEOUT = "inactivity_timeout"
    FATAL_ERROR = "fatal_error"
    END = "end"

class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"

@dataclass
class ConversationTurn:
    turn_number: int
    role: TurnRole
    content: str
    timestamp: datetime
    audio_ref: Optional[str] = None

@dataclass
class DriftContext:
    """What the dialogue service needs to know about the drift"""
    cause: Optional[DriftCause]
    drift_minutes: float
    goal_text: str = ""
    task_name: str = ""

@dataclass
class DialogueReply:
    assistant_text: str
    conversation_id: Optional[str] = None

@dataclass
class Transcription:
    text: str
    confidence: float = 1.0

@dataclass
class DialogueSession:
    session_id: str
    drift_context: DriftContext
    conversation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    remote_conversation_id: Optional[str] = None
    turns: List[ConversationTurn] = field(default_factory=list)
    state: DialogueState = DialogueState.IDLE
    turn_number: int = 0
    auto_restart: bool = True
    end_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.state != DialogueState.ENDED

    def add_turn(self, role: TurnRole, content: str, timestamp: datetime) -> ConversationTurn:
        turn = ConversationTurn(
            turn_number=self.turn_number,
            role=role,
            content=content,
            timestamp=timestamp
        )
        self.turns.append(turn)
        return turn
