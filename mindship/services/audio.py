"""Local voice backends (install with the `voice` extra)"""
import asyncio
import io
import logging
from typing import Any, AsyncIterator, Optional

import numpy as np
import sounddevice as sd
from gtts import gTTS
from pydub import AudioSegment

from mindship.config.settings import settings
from mindship.services.errors import CaptureUnavailableError, SynthesisError

logger = logging.getLogger(__name__)

class SoundDeviceMicrophone:
    """Microphone capture device yielding 16-bit mono PCM chunks

    The stream ends on its own once speech is followed by silence, or when
    nothing is said within `no_speech_timeout` seconds.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        chunk_seconds: float = 0.1,
        vad_threshold: float = 0.01,
        silence_seconds: float = 1.2,
        no_speech_timeout: float = 8.0,
        max_seconds: float = 30.0,
    ):
        self.sample_rate = sample_rate
        self.chunk_frames = int(sample_rate * chunk_seconds)
        self.chunk_seconds = chunk_seconds
        self.vad_threshold = vad_threshold
        self.silence_seconds = silence_seconds
        self.no_speech_timeout = no_speech_timeout
        self.max_seconds = max_seconds

    def open(self) -> Any:
        try:
            stream = sd.InputStream(samplerate=self.sample_rate, channels=1, dtype="int16")
            stream.start()
            return stream
        except Exception as e:
            raise CaptureUnavailableError(f"Microphone unavailable: {e}")

    def close(self, resource: Any) -> None:
        try:
            resource.stop()
            resource.close()
        except Exception as e:
            logger.error(f"Error closing microphone stream: {e}")

    @staticmethod
    def rms(data: np.ndarray) -> float:
        return float(np.sqrt(np.mean(data.astype(np.float32) ** 2)) / 32768.0)

    async def stream(self, resource: Any) -> AsyncIterator[bytes]:
        elapsed = 0.0
        silence = 0.0
        heard_speech = False
        while elapsed < self.max_seconds:
            data, overflowed = await asyncio.to_thread(resource.read, self.chunk_frames)
            if overflowed:
                logger.debug("Microphone input overflowed")
            elapsed += self.chunk_seconds
            yield data.tobytes()

            if self.rms(data) >= self.vad_threshold:
                heard_speech = True
                silence = 0.0
            else:
                silence += self.chunk_seconds

            if heard_speech and silence >= self.silence_seconds:
                logger.debug(f"End of speech after {elapsed:.1f}s")
                return
            if not heard_speech and elapsed >= self.no_speech_timeout:
                logger.debug("No speech heard, closing recording")
                return

class GTTSSynthesizer:
    """Text-to-speech via gTTS, returning MP3 bytes"""

    def __init__(self, language: str = settings.TTS_LANGUAGE, slow: bool = False):
        self.language = language
        self.slow = slow

    async def synthesize(self, text: str) -> bytes:
        if not text.strip():
            raise SynthesisError("Nothing to synthesize")
        try:
            return await asyncio.to_thread(self._synthesize, text)
        except Exception as e:
            raise SynthesisError(f"Speech synthesis failed: {e}")

    def _synthesize(self, text: str) -> bytes:
        buffer = io.BytesIO()
        gTTS(text=text, lang=self.language, slow=self.slow).write_to_fp(buffer)
        return buffer.getvalue()

class PydubPlayer:
    """Decodes audio with pydub and plays it through sounddevice"""

    def __init__(self, audio_format: str = "mp3"):
        self.audio_format = audio_format
        self.playing = False

    async def play(self, audio: bytes) -> None:
        segment = await asyncio.to_thread(
            AudioSegment.from_file, io.BytesIO(audio), format=self.audio_format
        )
        samples = np.array(segment.get_array_of_samples())
        if segment.channels > 1:
            samples = samples.reshape((-1, segment.channels))

        self.playing = True
        sd.play(samples, segment.frame_rate)
        try:
            await asyncio.sleep(len(segment) / 1000.0)
        finally:
            if self.playing:
                sd.stop()
            self.playing = False

    def stop(self) -> None:
        if self.playing:
            sd.stop()
            self.playing = False

def pcm_to_wav(pcm: bytes, sample_rate: int, channels: int = 1) -> bytes:
    """Wrap raw 16-bit PCM in a WAV container"""
    segment = AudioSegment(data=pcm, sample_width=2, frame_rate=sample_rate, channels=channels)
    buffer = io.BytesIO()
    segment.export(buffer, format="wav")
    return buffer.getvalue()

def build_voice_backends(sample_rate: int = 16000, language: Optional[str] = None):
    """Microphone, synthesizer and player for a local voice setup"""
    return (
        SoundDeviceMicrophone(sample_rate=sample_rate),
        GTTSSynthesizer(language=language or settings.TTS_LANGUAGE),
        PydubPlayer(),
    )
