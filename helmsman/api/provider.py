"""OpenAI-compatible streaming chat provider.

Speaks the chat-completions wire format over httpx:

- POST {base_url}/chat/completions with ``stream: true`` and
  ``stream_options.include_usage``; every message carries ``content``
  (even when empty) because some local servers reject messages without it.
- Reads ``data: {json}`` SSE lines until ``data: [DONE]`` or a
  ``finish_reason``; after the latter only a briefly awaited usage frame
  is read.
- Splits ``<think>...</think>`` reasoning out of the content stream, even
  when a tag is cut across two frames.
- Accumulates tool-call fragments by ``index`` and hands them out on the
  final chunk.
- Re-issues a request once without tools when the model says it cannot
  use them.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import AsyncIterator
from typing import Any, Protocol, runtime_checkable

import httpx

from helmsman.api.errors import (
    ProviderError,
    provider_error_from_exception,
    provider_error_from_response,
)
from helmsman.api.models import Message, StreamChunk, ToolCall, Usage
from helmsman.config import Settings

logger = logging.getLogger(__name__)

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

_TOOLS_UNSUPPORTED_RE = re.compile(
    r"does not support (tools|functions)|tool use is not supported",
    re.IGNORECASE,
)

# Rough words-to-tokens ratio used when the server reports no usage
_TOKENS_PER_WORD = 1.3

# How long to wait for the usage-only frame once finish_reason has arrived
USAGE_TRAILER_TIMEOUT = 0.5


@runtime_checkable
class Provider(Protocol):
    """A streaming chat back-end.

    ``chat`` raises ProviderError before streaming starts (bad status,
    unreachable host). Failures after that arrive as a chunk with
    ``error`` set and ``done=True``.
    """

    name: str
    model: str

    async def chat(
        self, messages: list[Message], tool_defs: list[dict[str, Any]]
    ) -> AsyncIterator[StreamChunk]: ...

    async def models(self) -> list[str]: ...


# ---------------------------------------------------------------------------
# Stream parsing helpers
# ---------------------------------------------------------------------------


def _partial_tag_length(text: str, tag: str) -> int:
    """Length of the longest suffix of text that is a proper prefix of tag."""
    for size in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:size]):
            return size
    return 0


class ThinkTagSplitter:
    """Routes streamed content into delta or thinking chunks.

    Characters that might be the start of the next tag are held back until
    the following fragment decides the matter.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._thinking = False

    @property
    def thinking(self) -> bool:
        return self._thinking

    def _chunk(self, text: str) -> StreamChunk:
        if self._thinking:
            return StreamChunk(thinking=text)
        return StreamChunk(delta=text)

    def feed(self, text: str) -> list[StreamChunk]:
        self._buffer += text
        chunks: list[StreamChunk] = []
        while True:
            tag = THINK_CLOSE if self._thinking else THINK_OPEN
            idx = self._buffer.find(tag)
            if idx >= 0:
                if idx:
                    chunks.append(self._chunk(self._buffer[:idx]))
                self._buffer = self._buffer[idx + len(tag):]
                self._thinking = not self._thinking
                continue

            held = _partial_tag_length(self._buffer, tag)
            ready = self._buffer[: len(self._buffer) - held]
            if ready:
                chunks.append(self._chunk(ready))
            self._buffer = self._buffer[len(ready):]
            return chunks

    def flush(self) -> list[StreamChunk]:
        if not self._buffer:
            return []
        chunk = self._chunk(self._buffer)
        self._buffer = ""
        return [chunk]


class ToolCallAccumulator:
    """Assembles streamed tool-call fragments keyed by their index."""

    def __init__(self) -> None:
        self._calls: dict[int, dict[str, str]] = {}

    def add(self, fragment: dict[str, Any]) -> None:
        index = fragment.get("index") or 0
        function = fragment.get("function") or {}
        slot = self._calls.get(index)
        if slot is None:
            slot = {"id": "", "name": "", "arguments": ""}
            self._calls[index] = slot
        # id and name are fixed by the first fragment that carries them
        if fragment.get("id") and not slot["id"]:
            slot["id"] = fragment["id"]
        if function.get("name") and not slot["name"]:
            slot["name"] = function["name"]
        if function.get("arguments"):
            slot["arguments"] += function["arguments"]

    def calls(self) -> list[ToolCall]:
        return [
            ToolCall(id=slot["id"] or f"call_{index}", name=slot["name"], arguments=slot["arguments"])
            for index, slot in sorted(self._calls.items())
        ]


def parse_usage(data: dict[str, Any]) -> Usage:
    prompt = int(data.get("prompt_tokens") or 0)
    completion = int(data.get("completion_tokens") or 0)
    total = int(data.get("total_tokens") or prompt + completion)
    return Usage(input_tokens=prompt, output_tokens=completion, total_tokens=total)


def estimate_usage(text: str) -> Usage:
    output = round(len(text.split()) * _TOKENS_PER_WORD)
    return Usage(output_tokens=output, total_tokens=output, estimated=True)


def serialize_message(message: Message) -> dict[str, Any]:
    data: dict[str, Any] = {"role": message.role, "content": message.content or ""}
    if message.tool_calls:
        data["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {"name": tc.name, "arguments": tc.arguments or "{}"},
            }
            for tc in message.tool_calls
        ]
    if message.tool_call_id:
        data["tool_call_id"] = message.tool_call_id
    return data


def serialize_tool(definition: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": definition["name"],
            "description": definition.get("description", ""),
            "parameters": definition.get("parameters") or {"type": "object", "properties": {}},
        },
    }


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class OpenAIChatProvider:
    """Chat-completions provider over an httpx.AsyncClient.

    Call start() before use (or pass ``http_client``), close() when done.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        model: str,
        api_key: str = "",
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_connect: float = 10,
        timeout_read: float = 120,
        local_num_ctx: int = 32768,
        usage_trailer_timeout: float = USAGE_TRAILER_TIMEOUT,
    ) -> None:
        self.name = name
        self.model = model
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._http = http_client
        self._owns_client = http_client is None
        self._timeout_connect = timeout_connect
        self._timeout_read = timeout_read
        self._local_num_ctx = local_num_ctx
        self.usage_trailer_timeout = usage_trailer_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> OpenAIChatProvider:
        return cls(
            settings.provider_name,
            settings.api_base_url,
            settings.model,
            settings.api_key,
            timeout_connect=settings.api_timeout_connect,
            timeout_read=settings.api_timeout_read,
            local_num_ctx=settings.local_num_ctx,
        )

    async def start(self) -> None:
        """Initialize the httpx client with timeout and connection limits."""
        if self._http is not None:
            return
        timeout = httpx.Timeout(
            connect=self._timeout_connect,
            read=self._timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(timeout=timeout, limits=limits)
        self._owns_client = True
        if not self._api_key and not self.is_local:
            logger.warning("No API key configured for provider %s -- requests may be rejected", self.name)
        logger.info("httpx client initialized for provider %s (%s)", self.name, self._base_url)

    async def close(self) -> None:
        if self._http and self._owns_client:
            await self._http.aclose()
        self._http = None

    @property
    def is_local(self) -> bool:
        return "11434" in self._base_url or "localhost" in self._base_url

    def _headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json", "accept": "text/event-stream"}
        if self._api_key:
            headers["authorization"] = f"Bearer {self._api_key}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    def build_payload(self, messages: list[Message], tool_defs: list[dict[str, Any]]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [serialize_message(m) for m in messages],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tool_defs:
            payload["tools"] = [serialize_tool(d) for d in tool_defs]
        if self.is_local:
            payload["options"] = {"num_ctx": self._local_num_ctx}
        return payload

    async def _open_stream(self, payload: dict[str, Any]) -> httpx.Response:
        client = self._client()
        request = client.build_request(
            "POST",
            f"{self._base_url}/chat/completions",
            json=payload,
            headers=self._headers(),
        )
        try:
            return await client.send(request, stream=True)
        except httpx.TransportError as e:
            raise provider_error_from_exception(self.name, e) from e

    async def chat(
        self, messages: list[Message], tool_defs: list[dict[str, Any]]
    ) -> AsyncIterator[StreamChunk]:
        """Open a streaming completion and return its chunk iterator."""
        response = await self._open_stream(self.build_payload(messages, tool_defs))

        if response.status_code != 200:
            body = await response.aread()
            await response.aclose()
            body_text = body.decode("utf-8", errors="replace")
            if not (tool_defs and _TOOLS_UNSUPPORTED_RE.search(body_text)):
                raise provider_error_from_response(self.name, response.status_code, body)

            logger.warning(
                "Model %s does not support tools, retrying without them (%s)",
                self.model,
                body_text[:200],
            )
            response = await self._open_stream(self.build_payload(messages, []))
            if response.status_code != 200:
                body = await response.aread()
                await response.aclose()
                raise provider_error_from_response(self.name, response.status_code, body)

        return self._iter_chunks(response)

    async def _iter_chunks(self, response: httpx.Response) -> AsyncIterator[StreamChunk]:
        splitter = ThinkTagSplitter()
        tool_calls = ToolCallAccumulator()
        text_parts: list[str] = []
        usage: Usage | None = None
        finished = False
        trailer_deadline = 0.0

        lines = response.aiter_lines()
        try:
            try:
                while True:
                    try:
                        if finished:
                            # finish_reason is terminal; the usage trailer gets a short grace period
                            remaining = trailer_deadline - asyncio.get_running_loop().time()
                            if remaining <= 0:
                                raise TimeoutError
                            line = await asyncio.wait_for(anext(lines), remaining)
                        else:
                            line = await anext(lines)
                    except StopAsyncIteration:
                        break
                    except TimeoutError:
                        logger.debug("No usage frame within %.1fs of finish_reason", self.usage_trailer_timeout)
                        break
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        break
                    try:
                        frame = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed SSE frame: %s", data[:200])
                        continue
                    if not isinstance(frame, dict):
                        continue

                    if frame.get("usage"):
                        usage = parse_usage(frame["usage"])

                    choices = frame.get("choices") or []
                    if not choices:
                        # usage-only trailer after finish_reason
                        if finished and usage is not None:
                            break
                        continue

                    if finished:
                        break
                    choice = choices[0]
                    delta = choice.get("delta") or {}
                    content = delta.get("content")
                    if content:
                        text_parts.append(content)
                        for chunk in splitter.feed(content):
                            yield chunk
                    for fragment in delta.get("tool_calls") or []:
                        tool_calls.add(fragment)

                    if choice.get("finish_reason") is not None:
                        if usage is not None:
                            break
                        finished = True
                        trailer_deadline = asyncio.get_running_loop().time() + self.usage_trailer_timeout
            except httpx.HTTPError as e:
                err = provider_error_from_exception(self.name, e)
                logger.warning("Stream interrupted: %s", err)
                yield StreamChunk(error=str(err), done=True)
                return

            for chunk in splitter.flush():
                yield chunk
            if usage is None:
                usage = estimate_usage("".join(text_parts))
            yield StreamChunk(done=True, tool_calls=tool_calls.calls(), usage=usage)
        finally:
            await response.aclose()

    async def models(self) -> list[str]:
        """List model ids offered by the back-end."""
        client = self._client()
        try:
            response = await client.get(f"{self._base_url}/models", headers=self._headers())
        except httpx.TransportError as e:
            raise provider_error_from_exception(self.name, e) from e
        if response.status_code != 200:
            raise provider_error_from_response(self.name, response.status_code, response.content)
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"provider {self.name}: malformed model list") from e
        return [str(item["id"]) for item in data.get("data", []) if isinstance(item, dict) and "id" in item]
