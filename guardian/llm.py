"""LLM client: streaming connection to an OpenAI-compatible chat backend.

The orchestrator injects a streaming LLM matching the protocol:

    async def stream(self, history: list[Message], user_message: str) -> AsyncIterator[str]: ...

`stream()` returns once the upstream has accepted the request; the returned
iterator yields text deltas as they arrive and must be closed with
`aclose()` (or `contextlib.aclosing`) when the caller stops early.

Two implementations are provided:

    HttpStreamLLM - real HTTP client for /chat/completions with stream=true.
                    Retries connection errors and HTTP 5xx, never 4xx.
    EchoLLM       - streams the user message back word by word. Useful for
                    smoke-testing the orchestrator without a running model.

Tests use httpx.MockTransport against HttpStreamLLM, or StubLLM (defined in
the test helpers) for the orchestrator.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol

import httpx

from guardian.models import Message

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


# ---------------------------------------------------------------------------
# Protocol: every streaming LLM implementation must match this signature
# ---------------------------------------------------------------------------

class StreamingLLM(Protocol):
    async def stream(self, history: list[Message], user_message: str) -> AsyncIterator[str]: ...


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""


class UpstreamStatusError(LLMError):
    """The backend answered with a non-200 status."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        super().__init__(f"LLM backend returned HTTP {status_code}: {detail[:200]}")
        self.status_code = status_code
        self.detail = detail

    @property
    def is_transient(self) -> bool:
        return self.status_code >= 500


class RetryExhausted(LLMError):
    """Every attempt failed with a transient error. `last_error` holds the final cause."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"LLM backend failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class StreamReadError(LLMError):
    """The connection broke after the response had started streaming."""


# ---------------------------------------------------------------------------
# Frame parsing
# ---------------------------------------------------------------------------

def parse_frame(line: str) -> tuple[list[str], bool] | None:
    """Parse one line of the event stream.

    Returns (fragments, finished), or None when the line carries nothing:
    blank lines, non-data lines and unparsable JSON are all skipped.
    """
    if not line.startswith(DATA_PREFIX):
        return None
    data = line[len(DATA_PREFIX):].strip()
    if data == DONE_SENTINEL:
        return [], True

    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        payload = None
    choices = payload.get("choices", []) if isinstance(payload, dict) else None
    if not isinstance(choices, list):
        logger.debug("skipping malformed frame: %r", line[:200])
        return None

    fragments: list[str] = []
    for choice in choices:
        if not isinstance(choice, dict):
            continue
        delta = choice.get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        if isinstance(content, str) and content:
            fragments.append(content)
        if choice.get("finish_reason") is not None:
            return fragments, True
    return fragments, False


# ---------------------------------------------------------------------------
# DeltaStream: queue-backed, cancellable iterator over a live response
# ---------------------------------------------------------------------------

_END = object()


class _Failure:
    def __init__(self, error: BaseException) -> None:
        self.error = error


class DeltaStream:
    """Async iterator fed by a background reader task through a bounded queue.

    Not restartable. `aclose()` cancels the reader, which closes the HTTP
    response and client before returning.
    """

    def __init__(self, response: httpx.Response, client: httpx.AsyncClient, queue_size: int) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._response = response
        self._client = client
        self._finished = False
        self._task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        try:
            async for line in self._response.aiter_lines():
                parsed = parse_frame(line)
                if parsed is None:
                    continue
                fragments, finished = parsed
                for fragment in fragments:
                    await self._queue.put(fragment)
                if finished:
                    break
            await self._queue.put(_END)
        except httpx.HTTPError as e:
            await self._queue.put(_Failure(StreamReadError(f"Lost connection to LLM backend: {e}")))
        except Exception as e:
            logger.exception("unexpected error reading LLM stream")
            await self._queue.put(_Failure(StreamReadError(f"Error reading LLM stream: {e!r}")))
        finally:
            await self._response.aclose()
            await self._client.aclose()

    def __aiter__(self) -> DeltaStream:
        return self

    async def __anext__(self) -> str:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._finished = True
            raise item.error
        return item

    async def aclose(self) -> None:
        self._finished = True
        if not self._task.done():
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    @property
    def closed(self) -> bool:
        return self._task.done()


# ---------------------------------------------------------------------------
# HttpStreamLLM: connects to a real backend
# ---------------------------------------------------------------------------

class HttpStreamLLM:
    """Async streaming client for OpenAI-compatible chat backends.

    POST {api_url} {"model", "messages", "stream": true, "temperature", "max_tokens"}
    Response: `data: {"choices": [{"delta": {"content": ...}, "finish_reason": ...}]}`
    lines, terminated by `data: [DONE]`.

    Args:
        api_url:       Full chat completions URL.
        api_key:       Bearer token, or empty string if not required.
        model:         Model identifier.
        system_prompt: Sent first in every request.
        temperature:   Sampling temperature. Defaults to 0.7.
        max_tokens:    Completion limit. Defaults to 2000.
        timeout:       Per-attempt HTTP timeout in seconds. Defaults to 120.
        max_attempts:  Total attempts for transient failures. Defaults to 3.
        retry_delay:   Fixed pause between attempts in seconds. Defaults to 0.5.
        queue_size:    Capacity of the reader → consumer queue. Defaults to 100.
        transport:     Optional httpx transport (tests pass MockTransport).
    """

    def __init__(
        self,
        api_url: str,
        api_key: str = "",
        model: str = "",
        system_prompt: str = "",
        temperature: float = 0.7,
        max_tokens: int = 2000,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
        queue_size: int = 100,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = api_url
        self._api_key = api_key
        self._model = model
        self._system_prompt = system_prompt
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay
        self._queue_size = queue_size
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def build_messages(self, history: list[Message], user_message: str) -> list[dict[str, str]]:
        """System prompt first, then history in order, then the new user message."""
        messages = [{"role": "system", "content": self._system_prompt}]
        messages.extend({"role": m.role, "content": m.content} for m in history)
        messages.append({"role": "user", "content": user_message})
        return messages

    def _build_body(self, history: list[Message], user_message: str) -> dict:
        return {
            "model": self._model,
            "messages": self.build_messages(history, user_message),
            "stream": True,
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        }

    async def _open(self, body: dict) -> tuple[httpx.AsyncClient, httpx.Response]:
        """Send the request, retrying transient failures. Returns an open 200 response."""
        last_error: BaseException | None = None

        for attempt in range(1, self._max_attempts + 1):
            client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
            try:
                request = client.build_request("POST", self._url, json=body, headers=self._headers())
                resp = await client.send(request, stream=True)
            except httpx.TransportError as e:
                await client.aclose()
                last_error = e
                logger.warning(
                    "llm request failed (attempt %d/%d): %s", attempt, self._max_attempts, e
                )
            else:
                if resp.status_code == 200:
                    return client, resp

                detail = (await resp.aread()).decode("utf-8", errors="replace")
                await resp.aclose()
                await client.aclose()
                error = UpstreamStatusError(resp.status_code, detail)
                if not error.is_transient:
                    raise error
                last_error = error
                logger.warning(
                    "llm backend returned %d (attempt %d/%d)",
                    resp.status_code, attempt, self._max_attempts,
                )

            if attempt < self._max_attempts:
                await asyncio.sleep(self._retry_delay)

        assert last_error is not None
        raise RetryExhausted(self._max_attempts, last_error) from last_error

    async def stream(self, history: list[Message], user_message: str) -> DeltaStream:
        body = self._build_body(history, user_message)
        logger.debug(
            "llm stream url=%s history=%d message_len=%d", self._url, len(history), len(user_message)
        )
        client, resp = await self._open(body)
        return DeltaStream(resp, client, self._queue_size)


# ---------------------------------------------------------------------------
# EchoLLM: streams the user message back; useful for smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Streams the user message back one word at a time. No network calls."""

    async def stream(self, history: list[Message], user_message: str) -> AsyncIterator[str]:
        logger.debug("EchoLLM history=%d message_len=%d", len(history), len(user_message))
        return self._words(user_message)

    async def _words(self, text: str) -> AsyncIterator[str]:
        for i, word in enumerate(text.split(" ")):
            yield word if i == 0 else f" {word}"
