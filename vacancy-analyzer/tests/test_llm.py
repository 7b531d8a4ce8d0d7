"""Tests for the completion clients using mocked HTTP responses."""

import json

import pytest
import requests
import responses

from src.config import LLMConfig
from src.errors import (
    ConfigError,
    PermanentClassificationError,
    TransientClassificationError,
)
from src.llm import AnthropicClient, OpenAIClient, create_client

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
OPENAI_URL = "https://api.openai.com/v1/chat/completions"


@pytest.fixture
def anthropic():
    return AnthropicClient(LLMConfig(model="test-model"), api_key="sk-test")


@pytest.fixture
def openai():
    return OpenAIClient(LLMConfig(provider="openai", model="gpt-test"), api_key="sk-test")


# --- Anthropic ---

@responses.activate
def test_anthropic_returns_joined_text(anthropic):
    responses.add(
        responses.POST,
        ANTHROPIC_URL,
        json={
            "content": [
                {"type": "text", "text": '{"Category": '},
                {"type": "text", "text": '"Backend"}'},
            ]
        },
        status=200,
    )

    assert anthropic.complete("system", "user") == '{"Category": "Backend"}'

    request = responses.calls[0].request
    assert request.headers["x-api-key"] == "sk-test"
    assert request.headers["anthropic-version"] == "2023-06-01"
    body = json.loads(request.body)
    assert body["model"] == "test-model"
    assert body["system"] == "system"
    assert body["messages"] == [{"role": "user", "content": "user"}]


@responses.activate
def test_anthropic_custom_base_url():
    client = AnthropicClient(LLMConfig(base_url="https://proxy.local/"), api_key="k")
    responses.add(
        responses.POST,
        "https://proxy.local/v1/messages",
        json={"content": [{"type": "text", "text": "ok"}]},
    )
    assert client.complete("s", "u") == "ok"


@pytest.mark.parametrize("status", [429, 500, 502, 529])
@responses.activate
def test_anthropic_transient_statuses(anthropic, status):
    responses.add(responses.POST, ANTHROPIC_URL, json={"error": {}}, status=status)
    with pytest.raises(TransientClassificationError):
        anthropic.complete("s", "u")


@responses.activate
def test_anthropic_overloaded_body_is_transient(anthropic):
    responses.add(
        responses.POST,
        ANTHROPIC_URL,
        json={"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        status=400,
    )
    with pytest.raises(TransientClassificationError):
        anthropic.complete("s", "u")


@responses.activate
def test_anthropic_overloaded_inside_ok_envelope(anthropic):
    responses.add(
        responses.POST,
        ANTHROPIC_URL,
        json={"error": {"type": "overloaded_error", "message": "busy"}},
        status=200,
    )
    with pytest.raises(TransientClassificationError):
        anthropic.complete("s", "u")


@pytest.mark.parametrize("status", [400, 401, 403, 404])
@responses.activate
def test_anthropic_client_errors_are_permanent(anthropic, status):
    responses.add(
        responses.POST,
        ANTHROPIC_URL,
        json={"error": {"type": "authentication_error"}},
        status=status,
    )
    with pytest.raises(PermanentClassificationError):
        anthropic.complete("s", "u")


@responses.activate
def test_anthropic_envelope_without_text_is_permanent(anthropic):
    responses.add(
        responses.POST,
        ANTHROPIC_URL,
        json={"content": [{"type": "tool_use", "id": "x"}]},
    )
    with pytest.raises(PermanentClassificationError):
        anthropic.complete("s", "u")


@responses.activate
def test_non_json_body_is_permanent(anthropic):
    responses.add(responses.POST, ANTHROPIC_URL, body="<html>gateway</html>", status=200)
    with pytest.raises(PermanentClassificationError):
        anthropic.complete("s", "u")


@responses.activate
def test_connection_error_is_transient(anthropic):
    responses.add(
        responses.POST, ANTHROPIC_URL, body=requests.ConnectionError("connection reset")
    )
    with pytest.raises(TransientClassificationError):
        anthropic.complete("s", "u")


@responses.activate
def test_timeout_is_transient(anthropic):
    responses.add(responses.POST, ANTHROPIC_URL, body=requests.Timeout("read timed out"))
    with pytest.raises(TransientClassificationError):
        anthropic.complete("s", "u")


# --- OpenAI ---

@responses.activate
def test_openai_returns_message_content(openai):
    responses.add(
        responses.POST,
        OPENAI_URL,
        json={"choices": [{"message": {"role": "assistant", "content": "{}"}}]},
    )

    assert openai.complete("system", "user") == "{}"

    request = responses.calls[0].request
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.body)
    assert body["messages"][0] == {"role": "system", "content": "system"}
    assert body["messages"][1] == {"role": "user", "content": "user"}


@responses.activate
def test_openai_empty_choices_is_permanent(openai):
    responses.add(responses.POST, OPENAI_URL, json={"choices": []})
    with pytest.raises(PermanentClassificationError):
        openai.complete("s", "u")


@responses.activate
def test_openai_rate_limit_is_transient(openai):
    responses.add(responses.POST, OPENAI_URL, json={"error": {"message": "slow down"}}, status=429)
    with pytest.raises(TransientClassificationError):
        openai.complete("s", "u")


# --- Factory ---

class TestCreateClient:

    def test_reads_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("TEST_LLM_KEY", "sk-env")
        client = create_client(LLMConfig(provider="openai", api_key_env="TEST_LLM_KEY"))
        assert isinstance(client, OpenAIClient)
        assert client.api_key == "sk-env"

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("TEST_LLM_KEY", raising=False)
        with pytest.raises(ConfigError, match="TEST_LLM_KEY"):
            create_client(LLMConfig(api_key_env="TEST_LLM_KEY"))

    def test_blank_key(self, monkeypatch):
        monkeypatch.setenv("TEST_LLM_KEY", "   ")
        with pytest.raises(ConfigError):
            create_client(LLMConfig(api_key_env="TEST_LLM_KEY"))

    def test_unknown_provider(self, monkeypatch):
        monkeypatch.setenv("TEST_LLM_KEY", "sk")
        with pytest.raises(ConfigError, match="provider"):
            create_client(LLMConfig(provider="gemini", api_key_env="TEST_LLM_KEY"))
