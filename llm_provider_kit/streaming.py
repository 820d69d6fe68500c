"""Server-sent event stream reading."""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable

import httpx
from pydantic import ValidationError

from .exceptions import MalformedResponse, NetworkError
from .logging import get_logger
from .models import ChatResponse, StreamChunk, Usage

if TYPE_CHECKING:
    from .codecs.base import StreamDecoder

DONE_MARKER = "[DONE]"


class ChatCompletionStream(ABC):
    """A sequence of normalized stream chunks."""

    @abstractmethod
    async def next(self) -> StreamChunk | None:
        """Return the next chunk, or ``None`` once the stream is exhausted."""

    @abstractmethod
    async def aclose(self) -> None:
        """Release the underlying resources. Safe to call more than once."""

    async def read_all(self) -> list[StreamChunk]:
        """Drain the stream."""
        chunks = []
        try:
            while (chunk := await self.next()) is not None:
                chunks.append(chunk)
        finally:
            await self.aclose()
        return chunks

    def __aiter__(self) -> "ChatCompletionStream":
        return self

    async def __anext__(self) -> StreamChunk:
        chunk = await self.next()
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    async def __aenter__(self) -> "ChatCompletionStream":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


class SSEStreamReader(ChatCompletionStream):
    """
    Decode ``data:`` frames of an SSE response into stream chunks.

    Rules:
    - Blank lines, comments and ``event:`` lines are skipped.
    - ``[DONE]`` ends the stream; a terminal empty chunk is emitted first
      when the codec has not produced a ``done`` chunk yet.
    - A frame that is not valid JSON, or that the decoder cannot map, is
      dropped, unless it is the last frame of a stream that never finished,
      which raises ``MalformedResponse``.
    - The response is closed at end of stream, on error, or on ``aclose``.
    """

    def __init__(
        self,
        response: httpx.Response,
        decoder: "StreamDecoder",
        provider: str | None = None,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self.response = response
        self.decoder = decoder
        self.provider = provider
        self.on_close = on_close
        self.logger = get_logger()
        self.usage: Usage | None = None
        self._lines = response.aiter_lines()
        self._lock = asyncio.Lock()
        self._closed = False
        self._eof = False
        self._done_seen = False
        self._last_frame_malformed = False
        self._last_id = ""
        self._last_model = ""

    @property
    def closed(self) -> bool:
        return self._closed

    async def next(self) -> StreamChunk | None:
        async with self._lock:
            if self._eof or self._closed:
                return None
            try:
                return await self._read_chunk()
            except BaseException:
                await self._finish()
                raise

    async def _read_chunk(self) -> StreamChunk | None:
        while True:
            try:
                line = await self._lines.__anext__()
            except StopAsyncIteration:
                await self._finish()
                if self._last_frame_malformed and not self._done_seen:
                    raise MalformedResponse(
                        "Stream ended on a malformed frame", self.provider
                    ) from None
                return None
            except httpx.TimeoutException as e:
                raise NetworkError(f"Stream read timed out: {e}", self.provider) from e
            except httpx.HTTPError as e:
                raise NetworkError(f"Stream read failed: {e}", self.provider) from e

            line = line.strip()
            if not line.startswith("data:"):
                continue
            payload = line[len("data:"):].strip()
            if not payload:
                continue

            if payload == DONE_MARKER:
                await self._finish()
                if self._done_seen:
                    return None
                self._done_seen = True
                return StreamChunk(id=self._last_id, model=self._last_model, done=True)

            try:
                data = json.loads(payload)
            except json.JSONDecodeError:
                self._last_frame_malformed = True
                self.logger.logger.debug(
                    f"Provider {self.provider}: dropping malformed stream frame: {payload[:100]}"
                )
                continue
            try:
                chunk = self.decoder.decode(data)
            except (AttributeError, TypeError, ValueError, ValidationError) as e:
                # Valid JSON in a shape the decoder cannot map
                self._last_frame_malformed = True
                self.logger.logger.debug(
                    f"Provider {self.provider}: dropping unexpected stream frame ({e}): {payload[:100]}"
                )
                continue
            self._last_frame_malformed = False

            if chunk is None:
                continue
            self._last_id = chunk.id or self._last_id
            self._last_model = chunk.model or self._last_model
            if chunk.usage is not None:
                self.usage = chunk.usage
            if chunk.done:
                self._done_seen = True
            return chunk

    async def _finish(self) -> None:
        self._eof = True
        await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._eof = True
        try:
            await self.response.aclose()
        finally:
            if self.on_close is not None:
                self.on_close()


class SingleChunkStream(ChatCompletionStream):
    """A complete response presented as a one-chunk stream."""

    def __init__(self, response: ChatResponse) -> None:
        self.response = response
        self.usage: Usage | None = response.usage
        self._consumed = False

    async def next(self) -> StreamChunk | None:
        if self._consumed:
            return None
        self._consumed = True
        return StreamChunk.from_response(self.response)

    async def aclose(self) -> None:
        self._consumed = True
