"""Title aggregation agent using pydantic-ai.

The agent receives everything gathered for a clip (transcript, scene
descriptions, on-screen text, recognized actors, local candidate titles and an
optional hint from another strategy) and returns a ``TitleGuess``. The cascade
uses it both to name a title when the corpus has nothing and as the generative
half of the second-opinion strategy.
"""

from __future__ import annotations

import logging
import time

from pydantic_ai import Agent, NativeOutput
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider

from clip_sense.capabilities.schemas import EvidenceBundle, TitleGuess
from clip_sense.config import settings
from clip_sense.governor import CapabilityKind, RateLimiterRegistry

logger = logging.getLogger(__name__)


TITLE_AGGREGATION_SYSTEM_PROMPT = """\
You are an expert movie and TV show identifier. You receive signals extracted \
from a short video clip and decide which movie or TV series it comes from.

## Signals

- **Transcript**: speech recognized from the audio track. Quotes are strong evidence.
- **Scene descriptions**: what the frames show (setting, characters, action, mood).
- **On-screen text**: text read from frames. A visible title card is strong evidence.
- **Actors**: people recognized in the frames, by name.
- **Candidate titles**: titles our own database matched against the clip.
- **Hint**: a title suggested by another strategy; confirm or refute it on the evidence.

## Rules

1. **Ignore social media watermarks**: TikTok, Instagram or YouTube handles show \
where the clip was shared, not its source.
2. **All actors must fit**: if several actors are recognized, the title must star \
all of them. Prefer a title that contains every named actor over one that contains only some.
3. **Prefer candidates with support**: a candidate title that agrees with the \
transcript or the scenes beats an unsupported guess.
4. **Be calibrated**: confidence is the probability you are right. Use low values \
when guessing from weak evidence. If you cannot tell, return a null title with confidence 0.

## Output

- title and year of the most likely work (original release year)
- confidence in [0, 1]
- reasoning: one or two sentences naming the decisive evidence
- matched_signals: which of dialogue, visual, text, actors support the answer
- alternatives: up to three other plausible titles with their own confidence
"""


def create_title_aggregation_agent(model_name: str | None = None) -> Agent[None, TitleGuess]:
    """Create the title aggregation agent."""
    model = OpenAIChatModel(
        model_name or settings.model_chat,
        provider=OpenAIProvider(
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
        ),
    )

    return Agent(
        model,
        # NativeOutput uses response_format rather than tool calling
        output_type=NativeOutput(TitleGuess),
        system_prompt=TITLE_AGGREGATION_SYSTEM_PROMPT,
        retries=5,
    )


def build_prompt(bundle: EvidenceBundle) -> str:
    """Render an evidence bundle as the agent's user prompt."""
    parts = ["Identify the movie or TV show this clip comes from.\n"]

    parts.append("\n## Transcript\n")
    parts.append(f"{bundle.transcript.strip() or '(none available)'}\n")

    parts.append("\n## Scene descriptions\n")
    if bundle.scene_descriptions:
        for i, description in enumerate(bundle.scene_descriptions, start=1):
            parts.append(f"- Frame {i}: {description}\n")
    else:
        parts.append("(none available)\n")

    parts.append("\n## On-screen text\n")
    if bundle.on_screen_title:
        parts.append(f"TITLE VISIBLE: {bundle.on_screen_title!r}\n")
    if bundle.screen_text:
        parts.append(f"{', '.join(bundle.screen_text)}\n")
    elif not bundle.on_screen_title:
        parts.append("(none found)\n")

    parts.append("\n## Actors\n")
    parts.append(f"{', '.join(bundle.actors) if bundle.actors else '(none identified)'}\n")

    if bundle.candidate_titles:
        parts.append("\n## Candidate titles from our database\n")
        for title in bundle.candidate_titles:
            parts.append(f"- {title}\n")

    if bundle.hint:
        parts.append(f"\n## Hint\nAnother strategy suggests: {bundle.hint}\n")

    return "".join(parts)


class TitleAggregatorAgent:
    """High-level interface for title aggregation.

    Wraps the pydantic-ai agent and charges each run to the ``chat`` rate limiter.

    Usage:
        aggregator = TitleAggregatorAgent()
        guess = await aggregator.aggregate(bundle)
    """

    def __init__(
        self,
        agent: Agent[None, TitleGuess] | None = None,
        *,
        rate_limiters: RateLimiterRegistry | None = None,
    ) -> None:
        self._agent = agent or create_title_aggregation_agent()
        self._limiters = rate_limiters or RateLimiterRegistry.from_settings()

    async def aggregate(self, bundle: EvidenceBundle) -> TitleGuess:
        await self._limiters.acquire(CapabilityKind.CHAT)
        start_time = time.time()
        result = await self._agent.run(build_prompt(bundle))
        guess = result.output
        if settings.log_api_calls:
            logger.info(
                "[AGGREGATE] %s → %r @ %.2f (%.0fms)",
                settings.model_chat, guess.title, guess.confidence,
                (time.time() - start_time) * 1000
            )
        return guess
