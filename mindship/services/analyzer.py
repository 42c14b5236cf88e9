import logging
import json
import asyncio
from typing import Callable, List, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from pydantic import ValidationError

from mindship.config.settings import settings
from mindship.models.dialogue import (
    ConversationTurn, DialogueReply, DriftContext, Transcription, TurnRole
)
from mindship.models.drift import ClassificationResult
from mindship.services.errors import (
    ClassificationError, FatalDialogueError, NoSpeechDetectedError, RecoverableDialogueError
)

logger = logging.getLogger(__name__)

# Configure Gemini
genai.configure(api_key=settings.GEMINI_API_KEY)

FATAL_API_ERRORS = (
    google_exceptions.PermissionDenied,
    google_exceptions.Unauthenticated,
    google_exceptions.InvalidArgument,
    google_exceptions.NotFound,
)

CLASSIFICATION_PROMPT = """
You are a focus coach checking whether a user is still working on their goal.
The user's goal: {goal}
Applications and sites related to the current task: {related}

You are given {inputs}.
1. Decide whether the screen content is relevant to the goal.
2. If a camera image is present, decide whether a person is present and whether they appear focused on their work.

Respond only with JSON in the following format:
{{
    "content_relevant": true|false,
    "camera_analysis": {{"person_present": true|false, "appears_focused": true|false}} or null,
    "confidence_level": 0.0-1.0,
    "reason": "<one sentence>"
}}
"""

DIALOGUE_PROMPT = """
You are a warm, brief voice coach (the ship's seagull) helping a user get back on course.
The user's goal: {goal}
The task they set out to do: {task}
They have been drifting for about {minutes:.0f} minutes (cause: {cause}).
Reply in at most three short spoken sentences. Do not use markdown.

Conversation so far:
{history}
User: {user_text}
Coach:"""

TRANSCRIPTION_PROMPT = (
    "Transcribe the speech in this audio verbatim. "
    "If there is no intelligible speech, respond with an empty string."
)

def clean_json_text(response_text: str) -> str:
    """Strip markdown fences around a JSON response"""
    text = response_text.strip()
    if text.startswith('```'):
        text = text.split('```')[1]
    if text.startswith('json'):
        text = text[4:]
    return text.strip()

def _generation_config(max_output_tokens: int = 1024, temperature: float = 0.1):
    return genai.types.GenerationConfig(
        temperature=temperature,
        max_output_tokens=max_output_tokens,
        candidate_count=1
    )

class GeminiClassifier:
    """Multimodal focus classification with Gemini Vision"""

    def __init__(self, model_name=settings.GEMINI_MODEL_NAME):
        self.model = genai.GenerativeModel(
            model_name=model_name,
            generation_config=_generation_config()
        )

    async def classify(
        self,
        screenshot: Optional[bytes],
        camera_frame: Optional[bytes],
        goal_text: str,
        related_context: List[str],
    ) -> ClassificationResult:
        """Judge screen relevance and camera presence against the goal

        Raises:
            ClassificationError: If the call fails or the response is unusable
        """
        if screenshot is None and camera_frame is None:
            raise ClassificationError("At least one image (camera or screen) is required")

        inputs = []
        parts = []
        if screenshot is not None:
            inputs.append("a screenshot")
            parts.append({"mime_type": "image/jpeg", "data": screenshot})
        if camera_frame is not None:
            inputs.append("a camera image")
            parts.append({"mime_type": "image/jpeg", "data": camera_frame})

        prompt = CLASSIFICATION_PROMPT.format(
            goal=goal_text or "Focus on work",
            related=", ".join(related_context) or "none listed",
            inputs=" and ".join(inputs),
        )

        try:
            response = await asyncio.to_thread(
                self.model.generate_content,
                contents=[prompt] + parts,
                stream=False
            )
            response_text = response.text
        except Exception as e:
            raise ClassificationError(f"Classification request failed: {e}")

        if not response_text:
            raise ClassificationError("Empty response from Gemini")

        result = self._parse_response(response_text)
        if camera_frame is None:
            result.camera_analysis = None
        return result

    def _parse_response(self, response_text: str) -> ClassificationResult:
        try:
            return ClassificationResult(**json.loads(clean_json_text(response_text)))
        except json.JSONDecodeError as e:
            raise ClassificationError(f"Failed to parse JSON response: {e}")
        except (TypeError, ValidationError) as e:
            raise ClassificationError(f"Invalid classification response: {e}")

class GeminiTranscriber:
    """Speech-to-text using Gemini audio input"""

    def __init__(
        self,
        model_name=settings.GEMINI_MODEL_NAME,
        mime_type: str = "audio/wav",
        encoder: Optional[Callable[[bytes], bytes]] = None,
    ):
        self.mime_type = mime_type
        self.encoder = encoder
        self.chunks_received = 0
        self.model = genai.GenerativeModel(
            model_name=model_name,
            generation_config=_generation_config(max_output_tokens=512, temperature=0.0)
        )

    async def submit_chunk(self, chunk: bytes) -> None:
        self.chunks_received += 1
        logger.debug(f"Audio chunk {self.chunks_received} acknowledged ({len(chunk)} bytes)")

    async def transcribe(self, audio: bytes) -> Transcription:
        if not audio:
            raise NoSpeechDetectedError("No audio captured")

        try:
            if self.encoder is not None:
                audio = self.encoder(audio)
            response = await asyncio.to_thread(
                self.model.generate_content,
                contents=[TRANSCRIPTION_PROMPT, {"mime_type": self.mime_type, "data": audio}],
                stream=False
            )
            text = (response.text or "").strip().strip('"')
        except FATAL_API_ERRORS as e:
            raise FatalDialogueError(f"Transcription service refused the request: {e}")
        except Exception as e:
            raise RecoverableDialogueError(f"Transcription failed: {e}")
        finally:
            self.chunks_received = 0

        if not text:
            raise NoSpeechDetectedError("No speech detected")
        return Transcription(text=text, confidence=1.0)

class GeminiDialogue:
    """Coaching replies for a drift intervention"""

    def __init__(self, model_name=settings.GEMINI_MODEL_NAME):
        self.model = genai.GenerativeModel(
            model_name=model_name,
            generation_config=_generation_config(max_output_tokens=256, temperature=0.7)
        )

    async def converse(
        self,
        history: List[ConversationTurn],
        user_text: str,
        drift_context: DriftContext,
        conversation_id: Optional[str] = None,
    ) -> DialogueReply:
        prompt = DIALOGUE_PROMPT.format(
            goal=drift_context.goal_text or "Focus on work",
            task=drift_context.task_name or "Focus task",
            minutes=drift_context.drift_minutes,
            cause=drift_context.cause.value if drift_context.cause else "unknown",
            history=self._format_history(history),
            user_text=user_text,
        )

        try:
            response = await asyncio.to_thread(
                self.model.generate_content,
                contents=[prompt],
                stream=False
            )
            text = (response.text or "").strip()
        except FATAL_API_ERRORS as e:
            raise FatalDialogueError(f"Dialogue service refused the request: {e}")
        except Exception as e:
            raise RecoverableDialogueError(f"Dialogue request failed: {e}")

        if not text:
            raise RecoverableDialogueError("Empty response from Gemini")
        return DialogueReply(assistant_text=text, conversation_id=conversation_id)

    @staticmethod
    def _format_history(history: List[ConversationTurn]) -> str:
        lines = []
        for turn in history:
            speaker = "Coach" if turn.role == TurnRole.ASSISTANT else "User"
            lines.append(f"{speaker}: {turn.content}")
        return "\n".join(lines)
