import httpx
import pytest

from helpers import Recorder, json_response
from llmgate.audio import (
    AudioData, AudioFormat, OpenAIAudioProvider, SpeechRequest, TranscriptionFormat,
    TranscriptionRequest, generate_speech_batch, transcribe_batch,
)
from llmgate.errors import (
    APIError, InvalidInputError, SpeechFailedError, TranscriptionFailedError,
    UnsupportedOperationError,
)
from llmgate.types import Message, ProviderRequest

WAV = AudioData(b"RIFF....WAVEfmt ", AudioFormat.WAV)


class TestTranscription:

    @pytest.mark.asyncio
    async def test_json_transcript(self, config):
        recorder = Recorder(json_response({
            "text": "Hello there.",
            "language": "english",
            "duration": 1.5,
            "segments": [{"start": 0.0, "end": 1.5, "text": "Hello there."}],
        }))
        provider = OpenAIAudioProvider("whisper-1", config, transport=recorder.transport)

        result = await provider.transcribe(TranscriptionRequest(
            WAV, language="en", response_format=TranscriptionFormat.VERBOSE_JSON
        ))

        assert result.text == "Hello there."
        assert result.language == "english"
        assert result.duration == 1.5
        assert result.segments[0].end == 1.5

        request = recorder.last
        assert str(request.url) == "https://api.openai.com/v1/audio/transcriptions"
        assert request.headers["authorization"] == "Bearer sk-test-openai"
        assert request.headers["content-type"].startswith("multipart/form-data")
        content = request.content
        assert b'name="model"' in content
        assert b"whisper-1" in content
        assert b'filename="audio.wav"' in content
        assert b"verbose_json" in content

    @pytest.mark.asyncio
    async def test_text_format(self, config):
        recorder = Recorder(httpx.Response(200, text="plain transcript\n"))
        provider = OpenAIAudioProvider("whisper-1", config, transport=recorder.transport)
        result = await provider.transcribe(TranscriptionRequest(WAV, response_format=TranscriptionFormat.TEXT))
        assert result.text == "plain transcript\n"
        assert result.segments == ()

    @pytest.mark.asyncio
    async def test_missing_text(self, config):
        recorder = Recorder(json_response({"language": "en"}))
        provider = OpenAIAudioProvider("whisper-1", config, transport=recorder.transport)
        with pytest.raises(TranscriptionFailedError):
            await provider.transcribe(TranscriptionRequest(WAV))

    @pytest.mark.asyncio
    async def test_http_error(self, config):
        recorder = Recorder(json_response({"error": {"message": "Invalid file format."}}, 400))
        provider = OpenAIAudioProvider("whisper-1", config, transport=recorder.transport)
        with pytest.raises(APIError, match="Invalid file format"):
            await provider.transcribe(TranscriptionRequest(WAV))

    @pytest.mark.asyncio
    async def test_batch_keeps_input_order(self, config):
        def handler(request: httpx.Request) -> httpx.Response:
            for marker in (b"first", b"second", b"third"):
                if marker in request.content:
                    return json_response({"text": marker.decode()})
            return json_response({"text": ""}, 400)

        provider = OpenAIAudioProvider("whisper-1", config, transport=httpx.MockTransport(handler))
        requests = [
            TranscriptionRequest(AudioData(marker, AudioFormat.MP3))
            for marker in (b"first", b"second", b"third")
        ]

        results = await transcribe_batch(provider, requests, concurrency=2)

        assert [r.text for r in results] == ["first", "second", "third"]


class TestSpeech:

    @pytest.mark.asyncio
    async def test_speech_bytes(self, config):
        recorder = Recorder(httpx.Response(200, content=b"ID3audio"))
        provider = OpenAIAudioProvider("tts-1", config, transport=recorder.transport)

        result = await provider.generate_speech(SpeechRequest("Hello", voice="nova", format=AudioFormat.OPUS, speed=1.25))

        assert result.audio == AudioData(b"ID3audio", AudioFormat.OPUS)
        assert result.characters == 5
        assert result.metadata == {"model": "tts-1", "voice": "nova"}
        assert recorder.last.headers["accept"] == "audio/opus"
        assert recorder.body() == {
            "model": "tts-1",
            "input": "Hello",
            "voice": "nova",
            "response_format": "opus",
            "speed": 1.25,
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("request_", [
        SpeechRequest(""),
        SpeechRequest("   "),
        SpeechRequest("x" * 4097),
        SpeechRequest("hi", speed=0.1),
        SpeechRequest("hi", speed=4.5),
    ])
    async def test_validation_happens_before_sending(self, config, request_):
        recorder = Recorder()
        provider = OpenAIAudioProvider("tts-1", config, transport=recorder.transport)
        with pytest.raises(InvalidInputError):
            await provider.generate_speech(request_)
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_empty_audio(self, config):
        recorder = Recorder(httpx.Response(200, content=b""))
        provider = OpenAIAudioProvider("tts-1", config, transport=recorder.transport)
        with pytest.raises(SpeechFailedError):
            await provider.generate_speech(SpeechRequest("Hello"))

    @pytest.mark.asyncio
    async def test_speech_batch(self, config):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=request.content)

        provider = OpenAIAudioProvider("tts-1", config, transport=httpx.MockTransport(handler))
        results = await generate_speech_batch(provider, [SpeechRequest("one"), SpeechRequest("two")])
        assert [r.characters for r in results] == [3, 3]
        assert b"one" in results[0].audio.data
        assert b"two" in results[1].audio.data


class TestAudioProvider:

    def test_from_file(self, tmp_path):
        path = tmp_path / "clip.FLAC"
        path.write_bytes(b"fLaC")
        audio = AudioData.from_file(path)
        assert audio.format is AudioFormat.FLAC
        assert audio.data == b"fLaC"

    def test_from_file_rejects_unknown_extension(self, tmp_path):
        path = tmp_path / "clip.xyz"
        path.write_bytes(b"??")
        with pytest.raises(InvalidInputError):
            AudioData.from_file(path)

    def test_mime_types(self):
        assert AudioFormat.MP3.mime_type == "audio/mpeg"
        assert AudioFormat.M4A.mime_type == "audio/mp4"

    @pytest.mark.asyncio
    async def test_text_generation_is_unsupported(self, config):
        provider = OpenAIAudioProvider("whisper-1", config, transport=Recorder().transport)
        with pytest.raises(UnsupportedOperationError):
            await provider.generate_text(ProviderRequest([Message.user("hi")]))
