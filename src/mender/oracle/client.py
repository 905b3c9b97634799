"""OpenAI-compatible httpx client with tenacity retry.

Sync HTTP client for chat-completion APIs that speak the OpenAI
tool-calling format. Reads configuration from constructor arguments or
environment variables.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx
import tenacity
from tenacity.wait import wait_base

from mender.exceptions import (
    OracleAuthError,
    OracleConfigError,
    OracleRateLimitError,
    OracleResponseError,
)

logger = logging.getLogger(__name__)

API_KEY_ENV = "MENDER_OPENAI_API_KEY"
BASE_URL_ENV = "MENDER_OPENAI_BASE_URL"
DEFAULT_BASE_URL = "https://api.openai.com/v1"

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_AUTH_ERROR_STATUS_CODES = {401, 403}
_MAX_RETRY_AFTER = 60.0


class wait_retry_after(wait_base):
    """Wait as long as a 429's Retry-After asks, else defer to *fallback*.

    The server's value is capped at ``max_wait`` seconds.
    """

    def __init__(self, fallback: wait_base, max_wait: float = _MAX_RETRY_AFTER):
        self.fallback = fallback
        self.max_wait = max_wait

    def __call__(self, retry_state: tenacity.RetryCallState) -> float:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None and outcome.failed else None
        if isinstance(exc, OracleRateLimitError) and exc.retry_after is not None:
            return max(0.0, min(exc.retry_after, self.max_wait))
        return self.fallback(retry_state)


def _is_retryable(exc: BaseException) -> bool:
    """Check if an exception is retryable.

    Retryable: 429, 500, 502, 503, 504, connection errors.
    Not retryable: 401, 403, 400, other client errors.
    """
    if isinstance(exc, OracleAuthError):
        return False
    if isinstance(exc, OracleRateLimitError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in _RETRYABLE_STATUS_CODES
    return isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout))


class OpenAIClient:
    """Sync httpx client for OpenAI-compatible chat completions.

    Retries transient errors (429, 5xx, connection failures) with
    exponential backoff. Fails immediately on authentication errors.

    Usage::

        with OpenAIClient(api_key="sk-...") as client:
            response = client.chat([{"role": "user", "content": "Hello"}])
            text = OpenAIClient.extract_content(response)
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        default_model: str = "gpt-4o-mini",
        timeout: float = 120.0,
        max_retries: int = 3,
    ) -> None:
        """Initialize the client.

        Args:
            api_key: API key. Falls back to MENDER_OPENAI_API_KEY.
            base_url: API base URL. Falls back to MENDER_OPENAI_BASE_URL,
                then to https://api.openai.com/v1.
            default_model: Default model for chat requests.
            timeout: Request timeout in seconds.
            max_retries: Maximum number of attempts for retryable errors.

        Raises:
            OracleConfigError: If no API key is provided or found in environment.
        """
        self._api_key = api_key or os.environ.get(API_KEY_ENV, "")
        if not self._api_key:
            raise OracleConfigError(
                f"No API key provided. Pass api_key= or set {API_KEY_ENV} "
                "environment variable."
            )
        self._base_url = (base_url or os.environ.get(BASE_URL_ENV, DEFAULT_BASE_URL)).rstrip("/")
        self._default_model = default_model
        self._timeout = timeout
        self._max_retries = max_retries
        self._client = httpx.Client(
            timeout=timeout,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
            },
        )

    @property
    def default_model(self) -> str:
        return self._default_model

    def chat(
        self,
        messages: list[dict],
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        tools: list[dict] | None = None,
        **kwargs: Any,
    ) -> dict:
        """Send a chat completion request with retry.

        Args:
            messages: Conversation in OpenAI message format.
            model: Model to use. Falls back to default_model.
            temperature: Sampling temperature.
            max_tokens: Maximum tokens to generate.
            tools: Tool definitions in OpenAI function format.
            **kwargs: Additional payload parameters forwarded to the API.

        Returns:
            Full response dict with 'choices', 'usage', 'model', etc.

        Raises:
            OracleAuthError: On 401/403 (no retry).
            OracleRateLimitError: On 429 after all retries exhausted.
            OracleResponseError: On unexpected response format.
            httpx.HTTPError: On other HTTP or transport errors.
        """
        retryer = tenacity.Retrying(
            retry=tenacity.retry_if_exception(_is_retryable),
            wait=wait_retry_after(
                tenacity.wait_exponential(multiplier=1, min=1, max=30)
                + tenacity.wait_random(0, 2)
            ),
            stop=tenacity.stop_after_attempt(self._max_retries),
            before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retryer(
            self._do_chat,
            messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            tools=tools,
            **kwargs,
        )

    def _do_chat(
        self,
        messages: list[dict],
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        tools: list[dict] | None = None,
        **kwargs: Any,
    ) -> dict:
        """Execute a single chat completion request (no retry)."""
        payload: dict[str, Any] = {
            "model": model or self._default_model,
            "messages": messages,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if tools:
            payload["tools"] = tools
        payload.update(kwargs)

        response = self._client.post(
            f"{self._base_url}/chat/completions",
            json=payload,
        )

        if response.status_code in _AUTH_ERROR_STATUS_CODES:
            raise OracleAuthError(
                f"Authentication failed: HTTP {response.status_code} - "
                f"{response.text}"
            )

        if response.status_code == 429:
            retry_after_raw = response.headers.get("Retry-After")
            retry_after: float | None = None
            if retry_after_raw is not None:
                try:
                    retry_after = float(retry_after_raw)
                except (ValueError, TypeError):
                    pass
            raise OracleRateLimitError(
                f"Rate limited: HTTP 429 - {response.text}",
                retry_after=retry_after,
            )

        response.raise_for_status()

        try:
            data = response.json()
        except ValueError as exc:
            raise OracleResponseError(f"Response is not JSON: {response.text[:200]}") from exc
        if not isinstance(data, dict) or "choices" not in data:
            raise OracleResponseError(
                f"Unexpected response format: missing 'choices' key. "
                f"Response: {data}"
            )
        return data

    def close(self) -> None:
        """Close the underlying httpx client."""
        self._client.close()

    def __enter__(self) -> OpenAIClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @staticmethod
    def extract_message(response: dict) -> dict:
        """Return the first choice's message dict.

        Raises:
            OracleResponseError: If the response format is unexpected.
        """
        try:
            message = response["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as exc:
            raise OracleResponseError(
                f"Cannot extract message from response: {exc}. "
                f"Response: {response}"
            ) from exc
        if not isinstance(message, dict):
            raise OracleResponseError(f"Message is not an object: {message!r}")
        return message

    @staticmethod
    def extract_content(response: dict) -> str:
        """Extract the assistant's message content from a response dict."""
        return OpenAIClient.extract_message(response).get("content") or ""

    @staticmethod
    def extract_usage(response: dict) -> dict | None:
        """Extract usage information, or None if not present."""
        return response.get("usage")
