"""
Tests for llm.py - JSON extraction and retrying generation.

The provider call (`_complete`) is replaced per test; nothing hits the network.
"""
import asyncio

import openai
import pytest

from letterfacts.core.config import get_settings
from letterfacts.schemas.analysis import CategorizedFacts
from letterfacts.services.llm import (
    RETRY_SUFFIX,
    ExtractionError,
    LLMClient,
    extract_json_from_response,
    get_llm_client,
)


def scripted_client(monkeypatch, replies):
    client = LLMClient(model="test-model", temperature=0.0)
    prompts = []
    replies = list(replies)

    async def fake_complete(prompt, temperature, json_mode):
        prompts.append(prompt)
        reply = replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    monkeypatch.setattr(client, "_complete", fake_complete)
    return client, prompts


class TestExtractJson:
    @pytest.mark.parametrize(
        "raw",
        [
            '{"a": 1}',
            '```json\n{"a": 1}\n```',
            'はい、結果です。\n{"a": 1}\n以上です。',
            '```JSON\n{"a": 1}```',
        ],
    )
    def test_extracts_object(self, raw):
        assert extract_json_from_response(raw) == '{"a": 1}'

    def test_keeps_nested_braces(self):
        raw = 'x {"a": {"b": [1, 2]}} y'
        assert extract_json_from_response(raw) == '{"a": {"b": [1, 2]}}'

    @pytest.mark.parametrize("raw", ["", "no json here", "} {"])
    def test_no_object(self, raw):
        with pytest.raises(ValueError):
            extract_json_from_response(raw)


class TestGenerateJson:
    """Parse/validation failures are retried once with a stricter suffix."""

    def test_first_attempt(self, monkeypatch):
        client, prompts = scripted_client(monkeypatch, ['{"numbers": ["従業員1,500名"]}'])
        facts = asyncio.run(client.generate_json("prompt", CategorizedFacts))

        assert facts.numbers == ["従業員1,500名"]
        assert prompts == ["prompt"]

    def test_retry_after_bad_json(self, monkeypatch):
        client, prompts = scripted_client(
            monkeypatch,
            ["申し訳ありません", '```json\n{"recentMoves": ["2024年に業務提携"]}\n```'],
        )
        facts = asyncio.run(client.generate_json("prompt", CategorizedFacts, max_retries=1))

        assert facts.recent_moves == ["2024年に業務提携"]
        assert prompts == ["prompt", "prompt" + RETRY_SUFFIX]

    def test_retry_after_schema_mismatch(self, monkeypatch):
        client, prompts = scripted_client(monkeypatch, ['{"numbers": 5}', '{"numbers": []}'])
        facts = asyncio.run(client.generate_json("prompt", CategorizedFacts))

        assert facts.total_count() == 0
        assert len(prompts) == 2

    def test_gives_up(self, monkeypatch):
        client, prompts = scripted_client(monkeypatch, ["nope", "still nope"])
        with pytest.raises(ExtractionError):
            asyncio.run(client.generate_json("prompt", CategorizedFacts, max_retries=1))
        assert len(prompts) == 2

    def test_provider_error_is_wrapped(self, monkeypatch):
        client, _ = scripted_client(
            monkeypatch, [openai.OpenAIError("rate limited"), openai.OpenAIError("rate limited")]
        )
        with pytest.raises(ExtractionError):
            asyncio.run(client.generate_json("prompt", CategorizedFacts))


class TestGenerateText:
    def test_returns_text(self, monkeypatch):
        client, _ = scripted_client(monkeypatch, ["・新工場を発表"])
        assert asyncio.run(client.generate_text("prompt")) == "・新工場を発表"

    def test_provider_error_is_wrapped(self, monkeypatch):
        client, _ = scripted_client(monkeypatch, [openai.OpenAIError("down")])
        with pytest.raises(ExtractionError):
            asyncio.run(client.generate_text("prompt"))


class TestClientFactory:
    def test_requires_a_key(self, monkeypatch):
        settings = get_settings()
        monkeypatch.setattr(settings, "OPENROUTER_API_KEY", None)
        monkeypatch.setattr(settings, "OPENAI_API_KEY", None)
        get_llm_client.cache_clear()
        try:
            with pytest.raises(RuntimeError):
                get_llm_client()
        finally:
            get_llm_client.cache_clear()
