"""Chat completion clients used by the classifier.

Both clients expose a single blocking call:

    complete(system_prompt, user_prompt) -> str

and sort every failure into one of two buckets so the classifier can
decide whether to retry:

- TransientClassificationError: HTTP 429, any 5xx (including Anthropic's
  529), an "overloaded_error" body, connection errors and timeouts
- PermanentClassificationError: everything else (bad key, bad request,
  a response envelope without text)

The clients never retry on their own; retry policy lives in the classifier.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod

import requests

from src.config import LLMConfig
from src.errors import (
    ConfigError,
    PermanentClassificationError,
    TransientClassificationError,
)

logger = logging.getLogger(__name__)

ANTHROPIC_API_BASE = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
OPENAI_API_BASE = "https://api.openai.com"

TRANSIENT_STATUS_CODES = {408, 409, 425, 429, 529}


class BaseCompletionClient(ABC):
    """Shared HTTP plumbing for chat completion providers."""

    provider = ""

    def __init__(self, config: LLMConfig, api_key: str, session: requests.Session | None = None):
        self.config = config
        self.api_key = api_key
        self.session = session or requests.Session()

    @abstractmethod
    def complete(self, system_prompt: str, user_prompt: str) -> str:
        ...

    def _post_json(self, url: str, headers: dict, payload: dict) -> dict:
        """POST a JSON payload and return the decoded body, classifying failures."""
        try:
            resp = self.session.post(
                url, headers=headers, json=payload, timeout=self.config.timeout_seconds
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientClassificationError(f"{self.provider} request failed: {exc}") from exc
        except requests.RequestException as exc:
            raise PermanentClassificationError(f"{self.provider} request failed: {exc}") from exc

        if resp.status_code >= 400:
            body = resp.text[:500]
            message = f"{self.provider} API returned HTTP {resp.status_code}: {body}"
            if (
                resp.status_code in TRANSIENT_STATUS_CODES
                or resp.status_code >= 500
                or "overloaded_error" in body
            ):
                logger.warning("Transient completion failure: %s", message)
                raise TransientClassificationError(message)
            logger.error("Permanent completion failure: %s", message)
            raise PermanentClassificationError(message)

        try:
            data = resp.json()
        except ValueError as exc:
            raise PermanentClassificationError(
                f"{self.provider} API returned a non-JSON body"
            ) from exc

        # Some gateways report overload inside a 200 envelope
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            error = data["error"]
            message = f"{self.provider} API error: {error.get('message') or error}"
            if error.get("type") == "overloaded_error":
                raise TransientClassificationError(message)
            raise PermanentClassificationError(message)

        if not isinstance(data, dict):
            raise PermanentClassificationError(f"{self.provider} API returned an unexpected envelope")
        return data


class AnthropicClient(BaseCompletionClient):
    """Anthropic Messages API."""

    provider = "anthropic"

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        base = (self.config.base_url or ANTHROPIC_API_BASE).rstrip("/")
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        payload = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
        }

        data = self._post_json(f"{base}/v1/messages", headers, payload)

        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise PermanentClassificationError("anthropic response has no content blocks")
        texts = [
            block.get("text", "")
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        if not texts:
            raise PermanentClassificationError("anthropic response has no text block")
        return "".join(texts)


class OpenAIClient(BaseCompletionClient):
    """OpenAI-compatible Chat Completions API."""

    provider = "openai"

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        base = (self.config.base_url or OPENAI_API_BASE).rstrip("/")
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }

        data = self._post_json(f"{base}/v1/chat/completions", headers, payload)

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise PermanentClassificationError("openai response has no message content") from exc
        if not isinstance(content, str):
            raise PermanentClassificationError("openai message content is not text")
        return content


CLIENT_REGISTRY: dict[str, type[BaseCompletionClient]] = {
    "anthropic": AnthropicClient,
    "openai": OpenAIClient,
}


def create_client(config: LLMConfig, session: requests.Session | None = None) -> BaseCompletionClient:
    """Build the configured client, reading its key from the environment."""
    client_cls = CLIENT_REGISTRY.get(config.provider)
    if client_cls is None:
        raise ConfigError(f"Unknown llm.provider {config.provider!r}")

    api_key = os.environ.get(config.api_key_env, "").strip()
    if not api_key:
        raise ConfigError(
            f"Environment variable {config.api_key_env} is not set; "
            f"it must hold the {config.provider} API key"
        )

    logger.info("Using %s completion client (model=%s)", config.provider, config.model)
    return client_cls(config, api_key, session=session)
