"""Contracts for the external collaborators of the drift monitor"""
import logging
from typing import Any, Callable, List, Optional, Protocol

from mindship.models.dialogue import (
    ConversationTurn, DialogueReply, DriftContext, Transcription
)
from mindship.models.drift import ClassificationResult, DistractionEvent
from mindship.models.focus_session import FocusSession

logger = logging.getLogger(__name__)

class Classifier(Protocol):
    async def classify(
        self,
        screenshot: Optional[bytes],
        camera_frame: Optional[bytes],
        goal_text: str,
        related_context: List[str],
    ) -> ClassificationResult:
        ...

class Transcriber(Protocol):
    async def submit_chunk(self, chunk: bytes) -> None:
        """Interim chunk; acknowledgement only"""
        ...

    async def transcribe(self, audio: bytes) -> Transcription:
        ...

class DialogueService(Protocol):
    async def converse(
        self,
        history: List[ConversationTurn],
        user_text: str,
        drift_context: DriftContext,
        conversation_id: Optional[str] = None,
    ) -> DialogueReply:
        ...

class SpeechSynthesizer(Protocol):
    async def synthesize(self, text: str) -> bytes:
        ...

class AudioPlayer(Protocol):
    async def play(self, audio: bytes) -> None:
        ...

    def stop(self) -> None:
        ...

class EventRecorder(Protocol):
    def record_distraction(self, event: DistractionEvent) -> Any:
        ...

    def record_turn(self, session_id: str, conversation_id: str, turn: ConversationTurn) -> Any:
        ...

    def record_session(self, session: FocusSession) -> Any:
        ...

def fire_and_forget(description: str, write: Callable[..., Any], *args: Any) -> None:
    """Run a persistence write whose failure must not affect in-memory state"""
    try:
        write(*args)
    except Exception as e:
        logger.error(f"Dropped {description}: {e}")
