"""Structured text generation capability.

One async client wraps Anthropic and OpenAI-compatible providers and offers two
modes:

- :meth:`LLMClient.complete` returns free text.
- :meth:`LLMClient.call_tool` forces the model to call one named function and
  returns that function's arguments, which conform to the caller's JSON schema.

Provider failures are raised as :class:`~evalroom.errors.UpstreamGenerationError`
with a ``category`` so callers can special-case rate limits and over-length
output.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any

from evalroom.errors import UpstreamGenerationError

log = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "LLM rate limit exceeded. Please try again shortly."
TOO_LONG_MESSAGE = (
    "Response too long. The text may be too large to process in one request. "
    "Try with shorter text."
)


@dataclass
class ToolSpec:
    """A function the model must call; ``parameters`` is a JSON schema."""
    name: str
    description: str
    parameters: dict[str, Any]


def _error_from_exception(exc: Exception) -> UpstreamGenerationError:
    status = getattr(exc, "status_code", None)
    text = str(exc)
    lowered = text.lower()
    if status == 429 or "rate limit" in lowered:
        return UpstreamGenerationError(RATE_LIMIT_MESSAGE, category="rate_limit")
    if status in (401, 403):
        return UpstreamGenerationError(
            "LLM API key invalid or insufficient permissions", retryable=False,
        )
    if "too long" in lowered or "maximum context" in lowered or "too many tokens" in lowered:
        return UpstreamGenerationError(TOO_LONG_MESSAGE, category="too_long", retryable=False)
    return UpstreamGenerationError(f"LLM API call failed: {text}")


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(
        self, system: str, user: str, *, max_tokens: int = 3000, temperature: float = 0.7,
    ) -> str:
        """Send system+user message, return the model's text."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                truncated = response.stop_reason == "max_tokens"
                text = "".join(
                    block.text for block in response.content if getattr(block, "type", "") == "text"
                )
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                choice = response.choices[0]
                truncated = choice.finish_reason == "length"
                text = choice.message.content or ""
        except UpstreamGenerationError:
            raise
        except Exception as exc:
            raise _error_from_exception(exc) from exc

        if truncated:
            log.error("LLM response truncated at max_tokens=%d", max_tokens)
            raise UpstreamGenerationError(TOO_LONG_MESSAGE, category="too_long", retryable=False)
        text = text.strip()
        if not text:
            raise UpstreamGenerationError(
                "Empty response from LLM", category="invalid_response",
            )
        return text

    async def call_tool(
        self, system: str, user: str, tool: ToolSpec, *,
        max_tokens: int = 4096, temperature: float = 0.3,
    ) -> dict[str, Any]:
        """Force a call to *tool* and return its arguments."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                    tools=[{
                        "name": tool.name,
                        "description": tool.description,
                        "input_schema": tool.parameters,
                    }],
                    tool_choice={"type": "tool", "name": tool.name},
                )
                truncated = response.stop_reason == "max_tokens"
                args = next(
                    (block.input for block in response.content
                     if getattr(block, "type", "") == "tool_use" and block.name == tool.name),
                    None,
                )
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                    tools=[{
                        "type": "function",
                        "function": {
                            "name": tool.name,
                            "description": tool.description,
                            "parameters": tool.parameters,
                        },
                    }],
                    tool_choice={"type": "function", "function": {"name": tool.name}},
                )
                choice = response.choices[0]
                truncated = choice.finish_reason == "length"
                calls = choice.message.tool_calls or []
                raw = next((c.function.arguments for c in calls if c.function.name == tool.name), None)
                args = json.loads(raw) if raw else None
        except UpstreamGenerationError:
            raise
        except json.JSONDecodeError as exc:
            raise UpstreamGenerationError(
                f"LLM returned invalid function arguments: {exc}", category="invalid_response",
            ) from exc
        except Exception as exc:
            raise _error_from_exception(exc) from exc

        if truncated:
            raise UpstreamGenerationError(TOO_LONG_MESSAGE, category="too_long", retryable=False)
        if not isinstance(args, dict):
            raise UpstreamGenerationError(
                f"LLM did not call {tool.name}", category="invalid_response",
            )
        return args
