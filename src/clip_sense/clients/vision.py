"""OpenAI adapters for transcription and frame analysis.

``OpenAITranscriber`` wraps the audio transcription endpoint. ``VisionClient``
implements the three frame capabilities. Scene description is a plain vision
chat completion. On-screen text and actor identification run as pydantic-ai
agents with ``NativeOutput``, so a malformed or out-of-range reply is sent back
to the model and retried instead of dropping the frame.
"""

from __future__ import annotations

import base64
import logging
import time
from typing import TypeVar

from openai import AsyncOpenAI
from pydantic_ai import Agent, BinaryContent, NativeOutput
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider

from clip_sense.capabilities.schemas import ActorIdentification, ScreenText
from clip_sense.config import settings
from clip_sense.governor import CapabilityKind, RateLimiterRegistry

logger = logging.getLogger(__name__)

OutputT = TypeVar("OutputT", ScreenText, ActorIdentification)


SCENE_PROMPT = (
    "Describe this movie or TV scene briefly: setting, characters, action and mood. "
    "Two or three sentences at most."
)

SCREEN_TEXT_SYSTEM_PROMPT = """\
You read text in single frames from movie or TV clips.

- Transcribe all legible text verbatim.
- Set the title only when a movie or show title is actually displayed \
(title card, poster, opening credits). Otherwise leave it null.
- List person names shown as credits ("starring", "directed by").
- Ignore social media watermarks, usernames and platform logos (TikTok, Instagram, \
YouTube): they show where the clip was shared, not where it came from.
"""

ACTOR_SYSTEM_PROMPT = """\
You identify recognizable actors in single frames from professional movie or TV productions.

- Give full names, most prominent person first.
- Confidence is the probability the identification is right, between 0 and 1.
- If nobody is recognizable, return an empty list with confidence 0.
"""

SCREEN_TEXT_PROMPT = "Read the text in this frame."
ACTOR_PROMPT = "Identify the actors in this frame."


def image_media_type(image: bytes) -> str:
    """Sniff PNG and WebP from magic bytes, else assume JPEG."""
    if image.startswith(b"\x89PNG"):
        return "image/png"
    if image[:4] == b"RIFF" and image[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


def image_data_url(image: bytes) -> str:
    """Encode frame bytes as a data URL."""
    return f"data:{image_media_type(image)};base64,{base64.b64encode(image).decode('utf-8')}"


def _client_from_settings() -> AsyncOpenAI:
    return AsyncOpenAI(base_url=settings.llm_base_url, api_key=settings.llm_api_key)


def create_screen_text_agent(model_name: str | None = None) -> Agent[None, ScreenText]:
    """Create the on-screen text agent."""
    return _frame_agent(ScreenText, SCREEN_TEXT_SYSTEM_PROMPT, model_name)


def create_actor_agent(model_name: str | None = None) -> Agent[None, ActorIdentification]:
    """Create the actor identification agent."""
    return _frame_agent(ActorIdentification, ACTOR_SYSTEM_PROMPT, model_name)


def _frame_agent(
    output: type[OutputT], system_prompt: str, model_name: str | None
) -> Agent[None, OutputT]:
    model = OpenAIChatModel(
        model_name or settings.model_vision,
        provider=OpenAIProvider(
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
        ),
    )
    return Agent(
        model,
        # NativeOutput uses response_format rather than tool calling
        output_type=NativeOutput(output),
        system_prompt=system_prompt,
        retries=3,
    )


class OpenAITranscriber:
    """Speech-to-text through the transcription endpoint."""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        *,
        rate_limiters: RateLimiterRegistry | None = None,
    ) -> None:
        self._client = client or _client_from_settings()
        self._limiters = rate_limiters or RateLimiterRegistry.from_settings()

    async def transcribe(self, audio: bytes, *, filename: str | None = None) -> str:
        await self._limiters.acquire(CapabilityKind.TRANSCRIPTION)
        start_time = time.time()
        response = await self._client.audio.transcriptions.create(
            model=settings.model_transcription,
            file=(filename or "clip.wav", audio),
            language="en",
        )
        if settings.log_api_calls:
            logger.info(
                "[TRANSCRIBE] %s (%d bytes) → %d chars (%.0fms)",
                settings.model_transcription,
                len(audio),
                len(response.text),
                (time.time() - start_time) * 1000,
            )
        return response.text.strip()


class VisionClient:
    """Frame analysis via a vision-capable model.

    Usage:
        vision = VisionClient()
        screen = await vision.read(frame)
        actors = await vision.identify(frame)
    """

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        *,
        model: str | None = None,
        screen_text_agent: Agent[None, ScreenText] | None = None,
        actor_agent: Agent[None, ActorIdentification] | None = None,
        rate_limiters: RateLimiterRegistry | None = None,
    ) -> None:
        self._client = client or _client_from_settings()
        self._model = model or settings.model_vision
        self._screen_text_agent = screen_text_agent or create_screen_text_agent(self._model)
        self._actor_agent = actor_agent or create_actor_agent(self._model)
        self._limiters = rate_limiters or RateLimiterRegistry.from_settings()

    async def describe(self, image: bytes) -> str:
        await self._limiters.acquire(CapabilityKind.VISION)
        start_time = time.time()
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": SCENE_PROMPT},
                        {"type": "image_url", "image_url": {"url": image_data_url(image)}},
                    ],
                }
            ],
            max_tokens=150,
        )
        content = (response.choices[0].message.content or "").strip()
        self._log("DESCRIBE", image, start_time, f"{len(content)} chars")
        return content

    async def read(self, image: bytes) -> ScreenText:
        await self._limiters.acquire(CapabilityKind.VISION)
        start_time = time.time()
        result = await self._screen_text_agent.run([SCREEN_TEXT_PROMPT, _frame(image)])
        screen = result.output
        self._log("READ", image, start_time, f"title={screen.title!r}")
        return screen

    async def identify(self, image: bytes) -> ActorIdentification:
        await self._limiters.acquire(CapabilityKind.VISION)
        start_time = time.time()
        result = await self._actor_agent.run([ACTOR_PROMPT, _frame(image)])
        actors = result.output
        self._log("IDENTIFY", image, start_time, f"{len(actors.names)} actors")
        return actors

    def _log(self, label: str, image: bytes, start_time: float, summary: str) -> None:
        if settings.log_api_calls:
            logger.info(
                "[%s] %s (%d bytes) → %s (%.0fms)",
                label,
                self._model,
                len(image),
                summary,
                (time.time() - start_time) * 1000,
            )


def _frame(image: bytes) -> BinaryContent:
    return BinaryContent(data=image, media_type=image_media_type(image))
