"""Tests for the transcription and vision adapters."""

import base64
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError
from pydantic_ai import BinaryContent

from clip_sense.capabilities.schemas import ActorIdentification, ScreenText
from clip_sense.clients import OpenAITranscriber, VisionClient
from clip_sense.clients.vision import image_data_url, image_media_type
from clip_sense.governor import RateLimiterRegistry

PNG = b"\x89PNG\r\n\x1a\nrest"
WEBP = b"RIFF\x00\x00\x00\x00WEBPrest"


def chat_client(content: str | None) -> MagicMock:
    client = MagicMock()
    message = MagicMock(content=content)
    client.chat.completions.create = AsyncMock(
        return_value=MagicMock(choices=[MagicMock(message=message)])
    )
    return client


class TestImageDataUrl:
    def test_png(self) -> None:
        assert image_data_url(PNG).startswith("data:image/png;base64,")

    def test_webp(self) -> None:
        assert image_data_url(WEBP).startswith("data:image/webp;base64,")

    def test_defaults_to_jpeg(self) -> None:
        url = image_data_url(b"\xff\xd8jpeg")
        assert url == "data:image/jpeg;base64," + base64.b64encode(b"\xff\xd8jpeg").decode()

    def test_media_type(self) -> None:
        assert image_media_type(PNG) == "image/png"
        assert image_media_type(WEBP) == "image/webp"
        assert image_media_type(b"RIFF\x00\x00\x00\x00WAVE") == "image/jpeg"


def frame_agent(output: ScreenText | ActorIdentification) -> MagicMock:
    agent = MagicMock()
    agent.run = AsyncMock(return_value=MagicMock(output=output))
    return agent


class TestVisionClient:
    def test_init_creates_agents(self) -> None:
        vision = VisionClient(chat_client(""))
        assert vision._screen_text_agent is not None
        assert vision._actor_agent is not None

    async def test_describe(self) -> None:
        client = chat_client("  A man in a trench coat.  ")
        limiters = RateLimiterRegistry.from_settings()
        vision = VisionClient(client, rate_limiters=limiters)

        assert await vision.describe(PNG) == "A man in a trench coat."

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["max_tokens"] == 150
        image_part = kwargs["messages"][0]["content"][1]
        assert image_part["image_url"]["url"].startswith("data:image/png")
        assert limiters.usage()["vision"].current == 1

    async def test_describe_empty_response(self) -> None:
        assert await VisionClient(chat_client(None)).describe(b"frame") == ""

    async def test_read_screen_text(self) -> None:
        screen = ScreenText(text="HEAT", title="Heat", credits=["Michael Mann"])
        agent = frame_agent(screen)
        limiters = RateLimiterRegistry.from_settings()
        vision = VisionClient(chat_client(""), screen_text_agent=agent, rate_limiters=limiters)

        assert await vision.read(PNG) is screen

        prompt, frame = agent.run.call_args.args[0]
        assert "text" in prompt
        assert isinstance(frame, BinaryContent)
        assert frame.data == PNG
        assert frame.media_type == "image/png"
        assert limiters.usage()["vision"].current == 1

    async def test_identify_actors(self) -> None:
        actors = ActorIdentification(names=["Al Pacino", "Robert De Niro"], confidence=0.85)
        agent = frame_agent(actors)
        vision = VisionClient(chat_client(""), actor_agent=agent)

        result = await vision.identify(b"\xff\xd8jpeg")

        assert result.names == ["Al Pacino", "Robert De Niro"]
        frame = agent.run.call_args.args[0][1]
        assert frame.media_type == "image/jpeg"

    def test_out_of_range_confidence_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ActorIdentification.model_validate_json('{"names": ["Al Pacino"], "confidence": 1.2}')


class TestOpenAITranscriber:
    async def test_transcribe(self) -> None:
        client = MagicMock()
        client.audio.transcriptions.create = AsyncMock(
            return_value=MagicMock(text=" Why so serious? ")
        )
        limiters = RateLimiterRegistry.from_settings()
        transcriber = OpenAITranscriber(client, rate_limiters=limiters)

        text = await transcriber.transcribe(b"audio", filename="joker.mp3")

        assert text == "Why so serious?"
        kwargs = client.audio.transcriptions.create.call_args.kwargs
        assert kwargs["file"] == ("joker.mp3", b"audio")
        assert kwargs["language"] == "en"
        assert limiters.usage()["transcription"].current == 1

    async def test_default_filename(self) -> None:
        client = MagicMock()
        client.audio.transcriptions.create = AsyncMock(return_value=MagicMock(text=""))
        await OpenAITranscriber(client).transcribe(b"audio")
        assert client.audio.transcriptions.create.call_args.kwargs["file"][0] == "clip.wav"
