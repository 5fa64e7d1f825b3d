"""Tests for settings loading."""

import pytest

from clip_sense.config import Settings


class TestSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("GOVERNOR_MAX_CONCURRENT", raising=False)
        config = Settings(_env_file=None)  # type: ignore[call-arg]

        assert config.governor_max_concurrent == 3
        assert config.governor_max_queue_size == 50
        assert config.request_deadline_seconds == 90.0
        assert config.generative_guess_cap == 0.6
        assert config.admin_secret == ""

    def test_environment_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GOVERNOR_MAX_CONCURRENT", "8")
        monkeypatch.setenv("TMDB_API_KEY", "abc123")
        monkeypatch.setenv("STRENGTH_DIALOGUE_TEXT", "3.5")

        config = Settings(_env_file=None)  # type: ignore[call-arg]

        assert config.governor_max_concurrent == 8
        assert config.tmdb_api_key == "abc123"
        assert config.strength_dialogue_text == 3.5
