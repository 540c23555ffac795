"""Tests for backend/narrative.py and backend/ai_client.py

Generated text is optional: every helper here must degrade to the computed
fallback when the generator is missing, fails, or returns junk.
"""

import math
from types import SimpleNamespace

import httpx
import pytest
from openai import APIConnectionError

import ai_client
from ai_client import AIClient, get_enhancer, reset_ai_client, retry_on_error
from config import AIConfig
from models import RiskLevel
from narrative import (
    NullEnhancer, extract_json_object, overlay_fields, safe_generate, strip_reasoning,
    valid_choice, valid_percentage, valid_text, valid_text_list,
)
from conftest import ScriptedEnhancer

MESSAGES = [{"role": "user", "content": "hi"}]


# ─────────────────────────────────────────────────────────────────────────────
# Parsing
# ─────────────────────────────────────────────────────────────────────────────


class TestParsing:
    """Tests for reasoning stripping and JSON extraction."""

    def test_strip_reasoning(self):
        assert strip_reasoning("<think>a\nb</think>\n Answer ") == "Answer"
        assert strip_reasoning("  plain ") == "plain"

    def test_fenced_json(self):
        assert extract_json_object('```json\n{"a": 1}\n```') == {"a": 1}

    def test_json_with_chatter(self):
        assert extract_json_object('Sure! {"a": {"b": 2}} Hope that helps.') == {"a": {"b": 2}}

    @pytest.mark.parametrize("raw", ["", "no json here", "[1, 2]", '{"a": ', "{'a': 1}"])
    def test_unusable(self, raw):
        assert extract_json_object(raw) is None


# ─────────────────────────────────────────────────────────────────────────────
# Field validators
# ─────────────────────────────────────────────────────────────────────────────


class TestValidators:
    """Tests for per-field acceptance rules."""

    @pytest.mark.parametrize("value,expected", [
        (0, 0), (100, 100), (72.4, 72), (99.6, 100),
        (101, None), (-1, None), (True, None), ("50", None), (None, None), (math.nan, None),
    ])
    def test_percentage(self, value, expected):
        assert valid_percentage(value) == expected

    def test_choice_is_case_insensitive(self):
        check = valid_choice(RiskLevel)

        assert check(" High ") == RiskLevel.HIGH
        assert check("extreme") is None
        assert check(3) is None

    def test_text(self):
        check = valid_text(5)

        assert check("  abcdefgh ") == "abcde"
        assert check("   ") is None
        assert check(["a"]) is None

    def test_text_list(self):
        check = valid_text_list(3, min_items=1)

        assert check(["a", "b", "c", "d"]) == ["a", "b", "c"]
        assert check([]) is None
        assert check(["a", ""]) is None
        assert check(["a", 2]) is None
        assert check("a") is None


class TestOverlayFields:
    """Tests for field-by-field overrides."""

    RULES = {
        "summary": ("summary", valid_text(100)),
        "score": ("scoreValue", valid_percentage),
    }

    def test_each_field_independent(self):
        merged = overlay_fields(
            {"summary": "computed", "score": 40},
            {"summary": "generated", "scoreValue": 250},
            self.RULES,
        )

        assert merged == {"summary": "generated", "score": 40}

    def test_missing_keys_keep_fallback(self):
        fallback = {"summary": "computed", "score": 40}

        assert overlay_fields(fallback, {"other": 1}, self.RULES) == fallback
        assert overlay_fields(fallback, None, self.RULES) == fallback

    def test_fallback_not_mutated(self):
        fallback = {"summary": "computed", "score": 40}

        overlay_fields(fallback, {"scoreValue": 90}, self.RULES)

        assert fallback["score"] == 40


# ─────────────────────────────────────────────────────────────────────────────
# Safe generation
# ─────────────────────────────────────────────────────────────────────────────


class TestSafeGenerate:
    """Tests for the never-raising generator call."""

    @pytest.mark.asyncio
    async def test_no_enhancer(self):
        assert await safe_generate(None, MESSAGES) == ""

    @pytest.mark.asyncio
    async def test_null_enhancer(self):
        assert await safe_generate(NullEnhancer(), MESSAGES) == ""

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self):
        assert await safe_generate(ScriptedEnhancer(ConnectionError("down")), MESSAGES) == ""

    @pytest.mark.asyncio
    async def test_non_string_output(self):
        assert await safe_generate(ScriptedEnhancer({"a": 1}), MESSAGES) == ""

    @pytest.mark.asyncio
    async def test_reasoning_stripped(self):
        assert await safe_generate(ScriptedEnhancer("<think>x</think>ok"), MESSAGES) == "ok"


# ─────────────────────────────────────────────────────────────────────────────
# OpenAI-compatible client
# ─────────────────────────────────────────────────────────────────────────────


def completion(content):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason="stop")],
        usage=SimpleNamespace(prompt_tokens=3, completion_tokens=5, total_tokens=8),
    )


class FakeCompletions:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.kwargs = []

    async def create(self, **kwargs):
        self.kwargs.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def client_with(*outcomes):
    client = AIClient(config=AIConfig(api_key="sk-test-0123456789", model_name="test-model"))
    completions = FakeCompletions(*outcomes)
    client._client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return client, completions


def connection_error():
    return APIConnectionError(request=httpx.Request("POST", "http://localhost/v1/chat/completions"))


class TestAIClient:
    """Tests for the OpenAI-compatible enhancer."""

    @pytest.mark.asyncio
    async def test_generate_strips_reasoning(self):
        client, completions = client_with(completion("<think>plan</think>Study early."))

        text = await client.generate(MESSAGES, max_tokens=50, temperature=0.1)

        assert text == "Study early."
        assert completions.kwargs[0]["model"] == "test-model"
        assert completions.kwargs[0]["max_tokens"] == 50
        assert completions.kwargs[0]["temperature"] == 0.1

    @pytest.mark.asyncio
    async def test_empty_content(self):
        client, _ = client_with(completion(None))

        assert await client.generate(MESSAGES) == ""

    @pytest.mark.asyncio
    async def test_retry_gives_up_after_max(self):
        calls = []

        @retry_on_error(max_retries=2, delay=0)
        async def flaky():
            calls.append(1)
            raise connection_error()

        with pytest.raises(APIConnectionError):
            await flaky()
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_retry_recovers(self):
        attempts = []

        @retry_on_error(max_retries=3, delay=0)
        async def flaky():
            attempts.append(1)
            if len(attempts) < 2:
                raise connection_error()
            return "ok"

        assert await flaky() == "ok"
        assert len(attempts) == 2


class TestGetEnhancer:
    """Tests for the enhancer singleton."""

    def test_disabled_ai_uses_null_enhancer(self, monkeypatch):
        reset_ai_client()
        monkeypatch.setattr(ai_client, "get_ai_config", lambda: AIConfig(enabled=False, api_key="sk-test-0123456789"))

        enhancer = get_enhancer()

        assert isinstance(enhancer, NullEnhancer)
        assert get_enhancer() is enhancer
        reset_ai_client()

    def test_configured_key_uses_client(self, monkeypatch):
        reset_ai_client()
        monkeypatch.setattr(ai_client, "get_ai_config", lambda: AIConfig(enabled=True, api_key="sk-test-0123456789"))

        assert isinstance(get_enhancer(), AIClient)
        reset_ai_client()
