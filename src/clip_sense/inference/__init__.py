"""LLM inference for title aggregation."""

from clip_sense.inference.title_aggregator import (
    TitleAggregatorAgent,
    build_prompt,
    create_title_aggregation_agent,
)

__all__ = ["TitleAggregatorAgent", "build_prompt", "create_title_aggregation_agent"]
