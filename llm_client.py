"""
Cached OpenAI-compatible client factory plus the two calls the service makes:
a streamed chat completion with cooperative cancellation, and a JSON-mode
completion. Gemini is reached through its OpenAI-compatible endpoint.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterator, Optional

import openai
from dotenv import load_dotenv
from openai import OpenAI

load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env")

logger = logging.getLogger(__name__)

PERF_LOG = os.getenv("PERF_LOG") == "1"

PROVIDERS = {
    "gemini": {
        "base_url": "https://generativelanguage.googleapis.com/v1beta/openai",
        "api_key_env": "GEMINI_API_KEY",
        "default_model": "gemini-2.0-flash",
    },
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "api_key_env": "OPENAI_API_KEY",
        "default_model": "gpt-4o-mini",
    },
}
DEFAULT_PROVIDER = "gemini"
DEFAULT_TIMEOUT_SECONDS = 30.0
JSON_MAX_TOKENS = 8192

NETWORK_ERROR_MESSAGE = "网络连接失败 (无法连接模型服务，请检查网络或代理)"


class LLMError(RuntimeError):
    """Base class for failures talking to the model provider."""


class MissingApiKey(LLMError):
    pass


class InvalidApiKey(LLMError):
    pass


class UnknownProvider(LLMError):
    pass


class NetworkError(LLMError):
    """No response was received (DNS, connect, timeout)."""

    def __init__(self, message: str = NETWORK_ERROR_MESSAGE):
        super().__init__(message)


class ProviderError(LLMError):
    """The provider answered with a non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


class AnalysisCancelled(Exception):
    """The caller stopped the request. Not a failure."""


@dataclass(frozen=True)
class ProviderConfig:
    provider: str
    api_key: str
    base_url: str
    model: str

    def __repr__(self) -> str:
        return f"ProviderConfig(provider={self.provider!r}, base_url={self.base_url!r}, model={self.model!r})"


def _request_timeout() -> float:
    value = os.getenv("LLM_TIMEOUT")
    if not value:
        return DEFAULT_TIMEOUT_SECONDS
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring invalid LLM_TIMEOUT=%r", value)
        return DEFAULT_TIMEOUT_SECONDS


@lru_cache(maxsize=8)
def get_llm_client(api_key: str, base_url: str) -> OpenAI:
    """Return a cached OpenAI client for a given key/base URL pair."""
    return OpenAI(api_key=api_key, base_url=base_url, timeout=_request_timeout(), max_retries=0)


def get_active_api_key(user_key: Optional[str], provider: str = DEFAULT_PROVIDER) -> Optional[str]:
    """A key the user supplied wins over the one configured in the environment."""
    if user_key and user_key.strip():
        return user_key.strip()
    preset = PROVIDERS.get(provider, PROVIDERS[DEFAULT_PROVIDER])
    env_key = os.getenv(preset["api_key_env"], "").strip()
    return env_key or None


def validate_api_key(api_key: Optional[str]) -> str:
    key = (api_key or "").strip()
    if not key or key == "replace_me":
        raise MissingApiKey("请先在设置中配置 API Key")
    if not key.isascii():
        raise InvalidApiKey("API Key 包含非法字符（如中文或全角符号），请检查输入是否正确。")
    return key


def resolve_provider_config(
    provider: Optional[str] = None,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
) -> ProviderConfig:
    """Merge explicit arguments, environment and provider defaults."""
    name = (provider or os.getenv("LLM_PROVIDER") or DEFAULT_PROVIDER).strip().lower()
    if name not in PROVIDERS:
        raise UnknownProvider(f"不支持的模型服务：{name}")
    preset = PROVIDERS[name]
    key = validate_api_key(get_active_api_key(api_key, name))
    if not base_url and name == "openai":
        base_url = os.getenv("OPENAI_BASE_URL")
    return ProviderConfig(
        provider=name,
        api_key=key,
        base_url=base_url or preset["base_url"],
        model=model or os.getenv("LLM_MODEL") or preset["default_model"],
    )


def _provider_message(exc: openai.APIStatusError) -> str:
    body = exc.body
    if isinstance(body, list) and body:
        body = body[0]
    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return exc.message or f"HTTP {exc.status_code}"


def translate_error(exc: Exception) -> LLMError:
    """Map openai exceptions onto network vs provider failures."""
    if isinstance(exc, openai.APIConnectionError):
        return NetworkError()
    if isinstance(exc, openai.APIStatusError):
        return ProviderError(_provider_message(exc), status_code=exc.status_code)
    return ProviderError(str(exc))


def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise AnalysisCancelled()


def stream_chat(
    messages: list,
    config: ProviderConfig,
    temperature: float = 0.7,
    cancel_event: Optional[threading.Event] = None,
    client: Optional[OpenAI] = None,
) -> Iterator[str]:
    """
    Stream a chat completion, yielding text chunks.

    The cancel event is checked between chunks; once set, the HTTP stream is
    closed and AnalysisCancelled is raised. No retries are attempted.
    """
    _check_cancelled(cancel_event)
    client = client or get_llm_client(config.api_key, config.base_url)
    start_time = time.monotonic()
    first_chunk_time = None

    try:
        stream = client.chat.completions.create(
            model=config.model,
            messages=messages,
            temperature=temperature,
            stream=True,
        )
    except openai.APIError as exc:
        logger.warning("LLM request failed model=%s: %s", config.model, exc)
        raise translate_error(exc) from exc

    try:
        for chunk in stream:
            _check_cancelled(cancel_event)
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content
            if content:
                if first_chunk_time is None:
                    first_chunk_time = time.monotonic()
                yield content
    except openai.APIError as exc:
        logger.warning("LLM stream failed model=%s: %s", config.model, exc)
        raise translate_error(exc) from exc
    finally:
        close = getattr(stream, "close", None)
        if callable(close):
            close()
        if PERF_LOG:
            logger.info(
                "[PERF] stream model=%s first_chunk_ms=%s total_ms=%d",
                config.model,
                int((first_chunk_time - start_time) * 1000) if first_chunk_time else "NA",
                int((time.monotonic() - start_time) * 1000),
            )


def complete_json(
    messages: list,
    config: ProviderConfig,
    temperature: float = 0.7,
    cancel_event: Optional[threading.Event] = None,
    client: Optional[OpenAI] = None,
) -> str:
    """Single JSON-mode completion; returns the raw reply text."""
    _check_cancelled(cancel_event)
    client = client or get_llm_client(config.api_key, config.base_url)
    start_time = time.monotonic()
    try:
        response = client.chat.completions.create(
            model=config.model,
            messages=messages,
            temperature=temperature,
            max_tokens=JSON_MAX_TOKENS,
            response_format={"type": "json_object"},
        )
    except openai.APIError as exc:
        logger.warning("LLM JSON request failed model=%s: %s", config.model, exc)
        raise translate_error(exc) from exc
    finally:
        if PERF_LOG:
            logger.info(
                "[PERF] json model=%s total_ms=%d",
                config.model,
                int((time.monotonic() - start_time) * 1000),
            )
    _check_cancelled(cancel_event)
    if not response.choices:
        return ""
    return response.choices[0].message.content or ""
