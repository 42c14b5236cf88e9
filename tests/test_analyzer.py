import pytest
from unittest.mock import patch, Mock
import json

from google.api_core import exceptions as google_exceptions

from mindship.models.dialogue import ConversationTurn, DriftContext, TurnRole
from mindship.models.drift import ClassificationResult, DriftCause
from mindship.services.analyzer import (
    GeminiClassifier, GeminiDialogue, GeminiTranscriber, clean_json_text
)
from mindship.services.errors import (
    ClassificationError, FatalDialogueError, NoSpeechDetectedError, RecoverableDialogueError
)

@pytest.fixture
def mock_model():
    with patch('google.generativeai.GenerativeModel') as mock_model:
        yield mock_model

def respond(mock_model, text):
    mock_response = Mock()
    mock_response.text = text
    mock_model.return_value.generate_content.return_value = mock_response

@pytest.fixture
def mock_successful_response():
    """Mock successful API response with all required fields"""
    return {
        "content_relevant": False,
        "camera_analysis": {"person_present": True, "appears_focused": False},
        "confidence_level": 0.8,
        "reason": "Video site open instead of the editor"
    }

@pytest.mark.asyncio
async def test_successful_classification(mock_model, mock_successful_response):
    """Test successful screen and camera classification"""
    respond(mock_model, json.dumps(mock_successful_response))
    classifier = GeminiClassifier()

    result = await classifier.classify(b"screen", b"camera", "Write the report", ["docs.google.com"])

    assert isinstance(result, ClassificationResult)
    assert result.content_relevant is False
    assert result.camera_analysis.appears_focused is False
    contents = mock_model.return_value.generate_content.call_args.kwargs["contents"]
    assert "Write the report" in contents[0]
    assert "docs.google.com" in contents[0]
    assert [part["data"] for part in contents[1:]] == [b"screen", b"camera"]

@pytest.mark.asyncio
async def test_camera_analysis_dropped_without_camera_frame(mock_model, mock_successful_response):
    respond(mock_model, json.dumps(mock_successful_response))
    classifier = GeminiClassifier()

    result = await classifier.classify(b"screen", None, "Write the report", [])

    assert result.camera_analysis is None
    contents = mock_model.return_value.generate_content.call_args.kwargs["contents"]
    assert len(contents) == 2

@pytest.mark.asyncio
async def test_fenced_json_response(mock_model):
    respond(mock_model, '```json\n{"content_relevant": true, "confidence_level": 0.9}\n```')
    classifier = GeminiClassifier()

    result = await classifier.classify(b"screen", None, "", [])

    assert result.content_relevant is True

@pytest.mark.asyncio
async def test_malformed_json_response(mock_model):
    """Test handling of malformed JSON response"""
    respond(mock_model, "Invalid JSON response")
    classifier = GeminiClassifier()

    with pytest.raises(ClassificationError, match="Failed to parse JSON response"):
        await classifier.classify(b"screen", None, "", [])

@pytest.mark.asyncio
async def test_empty_response(mock_model):
    """Test handling of empty API response"""
    respond(mock_model, "")
    classifier = GeminiClassifier()

    with pytest.raises(ClassificationError, match="Empty response"):
        await classifier.classify(b"screen", None, "", [])

@pytest.mark.asyncio
async def test_classification_api_error(mock_model):
    mock_model.return_value.generate_content.side_effect = Exception("API Error")
    classifier = GeminiClassifier()

    with pytest.raises(ClassificationError, match="API Error"):
        await classifier.classify(b"screen", None, "", [])

@pytest.mark.asyncio
async def test_classification_requires_an_image(mock_model):
    classifier = GeminiClassifier()

    with pytest.raises(ClassificationError):
        await classifier.classify(None, None, "", [])
    mock_model.return_value.generate_content.assert_not_called()

def test_clean_json_text():
    assert clean_json_text('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert clean_json_text('  {"a": 1} ') == '{"a": 1}'

@pytest.mark.asyncio
async def test_transcription(mock_model):
    respond(mock_model, ' "I was reading the news" ')
    transcriber = GeminiTranscriber(encoder=lambda pcm: b"RIFF" + pcm)

    await transcriber.submit_chunk(b"abc")
    result = await transcriber.transcribe(b"abc")

    assert result.text == "I was reading the news"
    assert transcriber.chunks_received == 0
    contents = mock_model.return_value.generate_content.call_args.kwargs["contents"]
    assert contents[1] == {"mime_type": "audio/wav", "data": b"RIFFabc"}

@pytest.mark.asyncio
async def test_transcription_without_speech(mock_model):
    respond(mock_model, "")
    transcriber = GeminiTranscriber()

    with pytest.raises(NoSpeechDetectedError):
        await transcriber.transcribe(b"abc")
    with pytest.raises(NoSpeechDetectedError):
        await transcriber.transcribe(b"")

@pytest.mark.asyncio
async def test_transcription_errors(mock_model):
    transcriber = GeminiTranscriber()

    mock_model.return_value.generate_content.side_effect = google_exceptions.PermissionDenied("bad key")
    with pytest.raises(FatalDialogueError):
        await transcriber.transcribe(b"abc")

    mock_model.return_value.generate_content.side_effect = TimeoutError("slow")
    with pytest.raises(RecoverableDialogueError):
        await transcriber.transcribe(b"abc")

@pytest.mark.asyncio
async def test_dialogue_reply(mock_model):
    respond(mock_model, "Let's get back to the report.")
    dialogue = GeminiDialogue()
    history = [ConversationTurn(0, TurnRole.ASSISTANT, "You drifted, what happened?", None)]
    context = DriftContext(
        cause=DriftCause.TAB_SWITCH, drift_minutes=5.0, goal_text="Write the report", task_name="Report"
    )

    reply = await dialogue.converse(history, "I checked email", context, "conv-1")

    assert reply.assistant_text == "Let's get back to the report."
    assert reply.conversation_id == "conv-1"
    prompt = mock_model.return_value.generate_content.call_args.kwargs["contents"][0]
    assert "Coach: You drifted, what happened?" in prompt
    assert "User: I checked email" in prompt
    assert "tab_switch" in prompt

@pytest.mark.asyncio
async def test_dialogue_errors(mock_model):
    dialogue = GeminiDialogue()
    context = DriftContext(cause=None, drift_minutes=1.0)

    respond(mock_model, "   ")
    with pytest.raises(RecoverableDialogueError):
        await dialogue.converse([], "hi", context)

    mock_model.return_value.generate_content.side_effect = google_exceptions.Unauthenticated("no key")
    with pytest.raises(FatalDialogueError):
        await dialogue.converse([], "hi", context)
