from __future__ import annotations

import json
import logging
import socket
import time
import urllib.error
import urllib.request
from typing import Any, Callable, Protocol, Sequence

logger = logging.getLogger(__name__)

ChatMessage = dict[str, str]


class CompletionError(RuntimeError):
    """Raised when the text-completion backend fails or returns no text."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class CompletionClient(Protocol):
    def complete(self, messages: Sequence[ChatMessage]) -> str: ...


class StubCompletionClient:
    """Offline completion backend for local runs and tests."""

    def __init__(self, *, reply: str | None = None) -> None:
        self._reply = reply
        self.calls: list[list[ChatMessage]] = []

    def complete(self, messages: Sequence[ChatMessage]) -> str:
        self.calls.append(list(messages))
        last = messages[-1]["content"] if messages else ""
        if "fail-completion" in last.lower():
            raise CompletionError("stub_failure", "Stub completion forced failure")
        if self._reply is not None:
            return self._reply
        return "Merci pour votre message! Comment puis-je vous aider avec votre commande aujourd'hui?"


class HttpCompletionClient:
    """OpenAI-compatible ``/chat/completions`` client."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        timeout_seconds: int = 30,
        temperature: float = 0.7,
        max_tokens: int = 800,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._model = model
        self._timeout_seconds = timeout_seconds
        self._temperature = temperature
        self._max_tokens = max_tokens

    def complete(self, messages: Sequence[ChatMessage]) -> str:
        response_data = self._post(
            {
                "model": self._model,
                "messages": list(messages),
                "temperature": self._temperature,
                "max_tokens": self._max_tokens,
            }
        )
        try:
            content = response_data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise CompletionError("invalid_response", "Completion response has no message content") from exc
        if not isinstance(content, str) or not content.strip():
            raise CompletionError("empty_response", "Completion response was empty")
        return content.strip()

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        request = urllib.request.Request(
            f"{self._base_url}/chat/completions",
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise CompletionError(f"http_{exc.code}", f"HTTP {exc.code}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise CompletionError("connection_error", f"Connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise CompletionError("timeout", f"Request timed out after {self._timeout_seconds}s") from exc
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise CompletionError("invalid_response", f"Invalid JSON response: {exc}") from exc


def backoff_delay(attempt: int, *, base_delay: float, max_delay: float) -> float:
    return min(base_delay * (2**attempt), max_delay)


def ask_with_retry(
    client: CompletionClient,
    messages: Sequence[ChatMessage],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Call the completion backend, backing off between failed attempts.

    The last ``CompletionError`` is re-raised once ``attempts`` are used up.
    """
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return client.complete(messages)
        except CompletionError as exc:
            if attempt == attempts - 1:
                raise
            delay = backoff_delay(attempt, base_delay=base_delay, max_delay=max_delay)
            logger.warning(
                "completion attempt %d/%d failed (%s); retrying in %.1fs",
                attempt + 1,
                attempts,
                exc.error_code,
                delay,
            )
            sleep(delay)
    raise CompletionError("no_attempts", "No completion attempt was made")


def create_completion_client(
    *,
    backend: str,
    base_url: str,
    api_key: str,
    model: str,
    timeout_seconds: int,
) -> CompletionClient:
    if backend == "http":
        return HttpCompletionClient(
            base_url=base_url,
            api_key=api_key,
            model=model,
            timeout_seconds=timeout_seconds,
        )
    return StubCompletionClient()
