"""Tests for config.py -- settings parsing from environment values."""

import pytest

from config import Settings


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings(_env_file=None)
        assert settings.default_agents == ["claude", "chatgpt"]
        assert settings.conversation_cost_limit == 5.0
        assert settings.max_ai_responses_per_turn == 3
        assert settings.moderator_topic_drift_threshold == 0.6

    def test_agent_models_from_pairs(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AGENT_MODELS", "claude=anthropic/claude-x, grok=xai/grok-3")
        settings = Settings(_env_file=None)
        assert settings.agent_models == {"claude": "anthropic/claude-x", "grok": "xai/grok-3"}

    def test_agent_models_from_json(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AGENT_MODELS", '{"chatgpt": "openai/gpt-4o"}')
        assert Settings(_env_file=None).agent_models == {"chatgpt": "openai/gpt-4o"}

    @pytest.mark.parametrize(
        "raw",
        ['["claude", "grok"]', "claude, grok", "claude,grok"],
    )
    def test_default_agents_formats(self, monkeypatch: pytest.MonkeyPatch, raw: str) -> None:
        monkeypatch.setenv("DEFAULT_AGENTS", raw)
        assert Settings(_env_file=None).default_agents == ["claude", "grok"]

    def test_empty_cors_falls_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CORS_ORIGINS", "")
        assert Settings(_env_file=None).cors_origins == ["http://localhost:3000"]

    def test_image_defaults(self) -> None:
        settings = Settings(_env_file=None)
        assert settings.image_models == {"dall-e-3": "dall-e-3"}
        assert settings.default_image_agents == ["dall-e-3"]
        assert settings.image_cost_limit == 2.0
        assert settings.coding_agents == []

    def test_image_models_from_pairs(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("IMAGE_MODELS", "dalle=dall-e-3, flux=replicate/flux")
        assert Settings(_env_file=None).image_models == {
            "dalle": "dall-e-3",
            "flux": "replicate/flux",
        }

    def test_preset_agents_from_list(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CODING_AGENTS", "claude, grok")
        monkeypatch.setenv("ARCHITECTURE_AGENTS", '["chatgpt"]')
        settings = Settings(_env_file=None)
        assert settings.coding_agents == ["claude", "grok"]
        assert settings.architecture_agents == ["chatgpt"]
