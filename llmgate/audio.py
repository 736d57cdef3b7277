"""
Audio transcription and speech synthesis over the OpenAI audio endpoints,
plus bounded-concurrency batch helpers.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .batch import DEFAULT_CONCURRENCY, run_batch
from .cancellation import CancellationToken
from .errors import (
    InvalidInputError, SpeechFailedError, TranscriptionFailedError, UnsupportedOperationError,
)
from .providers.base import BaseLLMProvider
from .streaming import Emit
from .types import Done, ModelCapabilities, ModelInfo, ProviderRequest, Vendor

logger = logging.getLogger(__name__)

MAX_SPEECH_CHARACTERS = 4096


class AudioFormat(str, Enum):
    WAV = "wav"
    MP3 = "mp3"
    FLAC = "flac"
    OPUS = "opus"
    M4A = "m4a"
    AAC = "aac"
    PCM = "pcm"
    OGG = "ogg"

    @property
    def mime_type(self) -> str:
        return _MIME_TYPES[self]


_MIME_TYPES = {
    AudioFormat.WAV: "audio/wav",
    AudioFormat.MP3: "audio/mpeg",
    AudioFormat.FLAC: "audio/flac",
    AudioFormat.OPUS: "audio/opus",
    AudioFormat.M4A: "audio/mp4",
    AudioFormat.AAC: "audio/aac",
    AudioFormat.PCM: "audio/pcm",
    AudioFormat.OGG: "audio/ogg",
}


class TranscriptionFormat(str, Enum):
    JSON = "json"
    TEXT = "text"
    SRT = "srt"
    VERBOSE_JSON = "verbose_json"
    VTT = "vtt"


@dataclass(frozen=True)
class AudioData:
    data: bytes
    format: AudioFormat = AudioFormat.WAV

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "AudioData":
        """
        Read an audio file, taking the format from its extension.

        Raises:
            FileNotFoundError: If the file does not exist.
            InvalidInputError: If the extension is not a supported format.
        """
        path = Path(path)
        try:
            audio_format = AudioFormat(path.suffix.lower().lstrip("."))
        except ValueError:
            raise InvalidInputError(f"Unsupported audio format: {path.suffix}") from None
        return cls(path.read_bytes(), audio_format)


@dataclass(frozen=True)
class TranscriptionRequest:
    audio: AudioData
    language: Optional[str] = None
    prompt: Optional[str] = None
    response_format: TranscriptionFormat = TranscriptionFormat.JSON
    timestamp_granularities: Tuple[str, ...] = ()
    cancellation: Optional[CancellationToken] = None


@dataclass(frozen=True)
class TranscriptionSegment:
    start: float
    end: float
    text: str


@dataclass(frozen=True)
class TranscriptionWord:
    word: str
    start: float
    end: float


@dataclass(frozen=True)
class TranscriptionResult:
    text: str
    language: Optional[str] = None
    duration: Optional[float] = None
    segments: Tuple[TranscriptionSegment, ...] = ()
    words: Tuple[TranscriptionWord, ...] = ()


@dataclass(frozen=True)
class SpeechRequest:
    text: str
    voice: str = "alloy"
    format: AudioFormat = AudioFormat.MP3
    speed: float = 1.0
    instructions: Optional[str] = None
    cancellation: Optional[CancellationToken] = None


@dataclass(frozen=True)
class SpeechResult:
    audio: AudioData
    characters: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


class OpenAIAudioProvider(BaseLLMProvider):
    """
    OpenAI transcription (``/audio/transcriptions``) and speech
    (``/audio/speech``) adapter.

    Text generation is not offered by this adapter; use ``OpenAIProvider``.

    Args:
        model (str): ``whisper-1``, ``gpt-4o-transcribe``, ``tts-1``, ``gpt-4o-mini-tts``, ...
    """

    vendor = Vendor.OPENAI
    label = "OpenAI Audio"
    default_base_url = "https://api.openai.com/v1"

    def __init__(self, model: Union[str, ModelInfo] = "whisper-1", configuration=None, **kwargs):
        if isinstance(model, str):
            model = ModelInfo(Vendor.OPENAI, model, ModelCapabilities(tools=False, streaming=False))
        super().__init__(model, configuration, **kwargs)

    async def _produce_stream(self, request: ProviderRequest, emit: Emit) -> Done:
        raise UnsupportedOperationError(f"{self.model.name} does not generate text")

    # ==========================================================================
    # Transcription
    # ==========================================================================

    async def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        """
        Transcribe audio to text.

        Args:
            request (TranscriptionRequest): Audio and transcription options.

        Returns:
            TranscriptionResult: Transcript, plus language, duration, segments
            and words when the response format carries them.

        Raises:
            TranscriptionFailedError: If the response carries no transcript.
        """
        audio = request.audio
        data: Dict[str, Any] = {
            "model": self.model.name,
            "response_format": request.response_format.value,
        }
        if request.language:
            data["language"] = request.language
        if request.prompt:
            data["prompt"] = request.prompt
        if request.timestamp_granularities:
            data["timestamp_granularities[]"] = list(request.timestamp_granularities)

        files = {"file": (f"audio.{audio.format.value}", audio.data, audio.format.mime_type)}
        response = await self._send(
            "POST",
            self.build_url("/audio/transcriptions"),
            headers=self._headers(json_body=False),
            cancellation=request.cancellation,
            data=data,
            files=files,
        )

        if request.response_format in (TranscriptionFormat.TEXT, TranscriptionFormat.SRT, TranscriptionFormat.VTT):
            text = response.text
            if not text.strip():
                raise TranscriptionFailedError("Transcription response was empty")
            return TranscriptionResult(text=text)

        payload = self._decode_json(response)
        if not isinstance(payload, dict) or not isinstance(payload.get("text"), str):
            raise TranscriptionFailedError("Transcription response has no text")
        return TranscriptionResult(
            text=payload["text"],
            language=payload.get("language"),
            duration=payload.get("duration"),
            segments=tuple(
                TranscriptionSegment(s.get("start", 0.0), s.get("end", 0.0), s.get("text", ""))
                for s in payload.get("segments") or []
            ),
            words=tuple(
                TranscriptionWord(w.get("word", ""), w.get("start", 0.0), w.get("end", 0.0))
                for w in payload.get("words") or []
            ),
        )

    # ==========================================================================
    # Speech
    # ==========================================================================

    async def generate_speech(self, request: SpeechRequest) -> SpeechResult:
        """
        Synthesize speech from text.

        Raises:
            InvalidInputError: On empty or over-long text, or speed outside 0.25-4.0.
            SpeechFailedError: If the response body holds no audio.
        """
        if not request.text.strip():
            raise InvalidInputError("Speech text must not be empty")
        if len(request.text) > MAX_SPEECH_CHARACTERS:
            raise InvalidInputError(
                f"Text too long: {len(request.text)} characters (max: {MAX_SPEECH_CHARACTERS})"
            )
        if not 0.25 <= request.speed <= 4.0:
            raise InvalidInputError("Speed must be between 0.25 and 4.0")

        body: Dict[str, Any] = {
            "model": self.model.name,
            "input": request.text,
            "voice": request.voice,
        }
        if request.format is not AudioFormat.MP3:
            body["response_format"] = request.format.value
        if request.speed != 1.0:
            body["speed"] = request.speed
        if request.instructions:
            body["instructions"] = request.instructions

        response = await self._send(
            "POST",
            self.build_url("/audio/speech"),
            headers={**self._headers(), "Accept": request.format.mime_type},
            cancellation=request.cancellation,
            json=body,
        )
        if not response.content:
            raise SpeechFailedError("Speech response contained no audio")
        return SpeechResult(
            audio=AudioData(response.content, request.format),
            characters=len(request.text),
            metadata={"model": self.model.name, "voice": request.voice},
        )


async def transcribe_batch(
    provider: OpenAIAudioProvider,
    requests: Sequence[TranscriptionRequest],
    concurrency: int = DEFAULT_CONCURRENCY,
) -> List[TranscriptionResult]:
    """Transcribe many files with bounded concurrency; results follow input order."""
    return await run_batch(requests, provider.transcribe, concurrency)


async def generate_speech_batch(
    provider: OpenAIAudioProvider,
    requests: Sequence[SpeechRequest],
    concurrency: int = DEFAULT_CONCURRENCY,
) -> List[SpeechResult]:
    """Synthesize many utterances with bounded concurrency; results follow input order."""
    return await run_batch(requests, provider.generate_speech, concurrency)
