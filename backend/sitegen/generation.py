"""
Generation client: sends the conversation to the text-generation service and
returns the raw generated text.

Backends (picked by configuration, same retry/tiering contract for all):
  openai  OpenAI-compatible chat completions over HTTP (DeepSeek by default)
  ollama  local single-prompt /api/generate endpoint
  anthropic  Anthropic Messages API via the SDK

Transient failures (transport errors, timeouts, bad status, malformed response
shape) are retried with a fixed backoff. Configuration problems abort before
any request is made.
"""

import asyncio

import anthropic
import httpx
from pydantic import BaseModel

from sitegen.complexity import ComplexityTier, token_limit_for, timeout_for
from sitegen.models import Message, Role


BACKENDS = ("openai", "ollama", "anthropic")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class GenerationError(Exception):
    """Generation failed. `cause` holds the underlying error, if any."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class ConfigurationError(GenerationError):
    """Missing or malformed credentials/endpoint. Never retried."""


class TransientGenerationError(GenerationError):
    """One attempt failed in a way that may succeed on retry."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class GenerationConfig(BaseModel):
    backend: str = "openai"
    api_key: str = ""
    base_url: str = "https://api.deepseek.com/v1/chat/completions"
    model: str = "deepseek-chat"
    ollama_url: str = "http://localhost:11434/api/generate"
    ollama_model: str = "deepseek-coder"
    anthropic_model: str = "claude-sonnet-4-5-20250929"
    temperature: float = 0.8
    top_p: float = 0.95
    max_attempts: int = 2
    retry_backoff: float = 2.0

    @classmethod
    def from_settings(cls, settings) -> "GenerationConfig":
        return cls(
            backend=settings.generation_backend,
            api_key=settings.generation_api_key,
            base_url=settings.generation_base_url,
            model=settings.generation_model,
            ollama_url=settings.ollama_url,
            ollama_model=settings.ollama_model,
            anthropic_model=settings.anthropic_model,
            temperature=settings.temperature,
            top_p=settings.top_p,
            max_attempts=settings.max_attempts,
            retry_backoff=settings.retry_backoff,
        )


def validate_config(config: GenerationConfig):
    """Raise ConfigurationError if the config can never produce a request."""
    if config.backend not in BACKENDS:
        raise ConfigurationError(f"Unknown generation backend: {config.backend!r}")

    if config.backend == "ollama":
        if not config.ollama_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"Invalid Ollama URL: {config.ollama_url!r}")
        return

    key = config.api_key or ""
    if not key or key != key.strip() or " " in key:
        raise ConfigurationError("Generation API key is missing or malformed")

    if config.backend == "openai":
        if not key.startswith("sk-"):
            raise ConfigurationError("Generation API key appears to be invalid (expected 'sk-' prefix)")
        if not config.base_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"Invalid generation URL: {config.base_url!r}")
    elif config.backend == "anthropic" and not key.startswith("sk-ant-"):
        raise ConfigurationError("Anthropic API key appears to be invalid (expected 'sk-ant-' prefix)")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _coerce_messages(messages) -> list[Message]:
    return [m if isinstance(m, Message) else Message.model_validate(m) for m in messages]


def _budget(messages: list[Message], tier: ComplexityTier | None) -> int:
    """Token ceiling: from the tier, or classified from the last user message."""
    last = messages[-1] if messages else None
    last_user_text = last.content if last and last.role == Role.USER else ""
    if tier is None and not last_user_text:
        tier = ComplexityTier.MULTI_SECTION
    return token_limit_for(last_user_text, tier)


def flatten_for_single_prompt(messages: list[Message]) -> str:
    """Collapse a chat history into one prompt for single-prompt backends."""
    system = "\n\n".join(m.content for m in messages if m.role == Role.SYSTEM)
    turns = "\n\n".join(
        f"{'User' if m.role == Role.USER else 'Assistant'}: {m.content}"
        for m in messages
        if m.role != Role.SYSTEM
    )
    prompt = f"{system}\n\nPrevious conversation:\n{turns}\n\nAssistant:"
    return prompt.lstrip()


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class GenerationClient:
    def __init__(
        self,
        config: GenerationConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        anthropic_client=None,
        sleep=asyncio.sleep,
    ):
        self.config = config
        self._transport = transport
        self._anthropic_client = anthropic_client
        self._sleep = sleep

    def check(self):
        """Raise ConfigurationError now rather than on the first request."""
        validate_config(self.config)

    async def generate(
        self,
        messages,
        tier: ComplexityTier | None = None,
        max_attempts: int | None = None,
        backoff: float | None = None,
    ) -> str:
        """
        Send the full message history and return the generated text unchanged.

        Raises ConfigurationError immediately on invalid configuration, or
        GenerationError once every attempt has failed.
        """
        validate_config(self.config)

        messages = _coerce_messages(messages)
        if not messages:
            raise ValueError("messages must not be empty")

        max_attempts = self.config.max_attempts if max_attempts is None else max_attempts
        backoff = self.config.retry_backoff if backoff is None else backoff
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        max_tokens = _budget(messages, tier)
        timeout = timeout_for(max_tokens)

        print(f"  [generate] backend={self.config.backend} max_tokens={max_tokens} "
              f"timeout={timeout:.0f}s messages={len(messages)} "
              f"key_set={bool(self.config.api_key)}")

        last_error = None
        for attempt in range(1, max_attempts + 1):
            try:
                text = await self._attempt(messages, max_tokens, timeout)
                print(f"  [generate] Attempt {attempt}/{max_attempts} succeeded ({len(text)} chars)")
                return text
            except ConfigurationError:
                raise
            except TransientGenerationError as e:
                last_error = e
                print(f"  [generate] Attempt {attempt}/{max_attempts} failed: {e}")
                if attempt < max_attempts:
                    await self._sleep(backoff)

        raise GenerationError(
            f"All {max_attempts} generation attempts failed: {last_error}",
            cause=last_error,
        )

    async def _attempt(self, messages: list[Message], max_tokens: int, timeout: float) -> str:
        if self.config.backend == "ollama":
            return await self._call_ollama(messages, timeout)
        if self.config.backend == "anthropic":
            return await self._call_anthropic(messages, max_tokens, timeout)
        return await self._call_chat_completions(messages, max_tokens, timeout)

    async def _post_json(self, url: str, body: dict, timeout: float, headers: dict | None = None) -> dict:
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                resp = await client.post(url, headers=headers or {}, json=body)
        except httpx.HTTPError as e:
            raise TransientGenerationError(f"Request failed: {e.__class__.__name__}: {e}", cause=e)

        if resp.status_code in (401, 403):
            raise ConfigurationError(f"Generation service rejected credentials (HTTP {resp.status_code})")
        if resp.status_code != 200:
            raise TransientGenerationError(
                f"Generation service error (HTTP {resp.status_code}): {resp.text[:300]}"
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise TransientGenerationError(f"Non-JSON response: {resp.text[:300]}", cause=e)
        if not isinstance(data, dict):
            raise TransientGenerationError("Invalid response structure from generation service")
        return data

    async def _call_chat_completions(self, messages: list[Message], max_tokens: int, timeout: float) -> str:
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        body = {
            "model": self.config.model,
            "messages": [{"role": m.role.value, "content": m.content} for m in messages],
            "max_tokens": max_tokens,
            "temperature": self.config.temperature,
            "top_p": self.config.top_p,
        }
        data = await self._post_json(self.config.base_url, body, timeout, headers)

        choices = data.get("choices")
        if not choices or not isinstance(choices, list):
            raise TransientGenerationError("Invalid response structure: no choices")
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise TransientGenerationError("Invalid response structure: missing message content")
        return content

    async def _call_ollama(self, messages: list[Message], timeout: float) -> str:
        body = {
            "model": self.config.ollama_model,
            "prompt": flatten_for_single_prompt(messages),
            "stream": False,
        }
        data = await self._post_json(self.config.ollama_url, body, timeout)

        text = data.get("response")
        if not isinstance(text, str):
            raise TransientGenerationError("Invalid response structure: missing 'response'")
        return text

    def _get_anthropic_client(self, timeout: float):
        if self._anthropic_client is not None:
            return self._anthropic_client
        # Retries are ours, not the SDK's
        return anthropic.AsyncAnthropic(api_key=self.config.api_key, timeout=timeout, max_retries=0)

    async def _call_anthropic(self, messages: list[Message], max_tokens: int, timeout: float) -> str:
        client = self._get_anthropic_client(timeout)
        system = "\n\n".join(m.content for m in messages if m.role == Role.SYSTEM)
        chat = [{"role": m.role.value, "content": m.content} for m in messages if m.role != Role.SYSTEM]

        kwargs = {
            "model": self.config.anthropic_model,
            "max_tokens": max_tokens,
            "messages": chat,
            "temperature": self.config.temperature,
        }
        if system:
            kwargs["system"] = system

        try:
            response = await client.messages.create(**kwargs)
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as e:
            raise ConfigurationError(f"Anthropic rejected credentials: {e}", cause=e)
        except anthropic.APIError as e:
            raise TransientGenerationError(f"Anthropic API error: {e}", cause=e)

        blocks = getattr(response, "content", None) or []
        text = "".join(getattr(b, "text", "") for b in blocks if getattr(b, "type", "") == "text")
        if not text:
            raise TransientGenerationError("Invalid response structure: no text content")
        return text
