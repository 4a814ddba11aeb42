"""Backend chunk stream -> server-sent event translation.

Each backend chunk becomes exactly one ``data:`` event, in arrival order.
A normal end of stream emits a single ``data: [DONE]`` sentinel. A
serialization or transport failure emits a single in-band error event and
stops without the sentinel, since the HTTP status has already been sent.
"""

import json
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Optional

import anyio
from pydantic import BaseModel

from maple_proxy.errors import ErrorKind, StreamError, error_document
from maple_proxy.telemetry import logger

DONE_SENTINEL = "[DONE]"


class StreamState(str, Enum):
    STREAMING = "streaming"
    TERMINATED_ERROR = "terminated_error"
    TERMINATED_DONE = "terminated_done"


def sse_event(data: str) -> str:
    """Format one SSE event; multi-line payloads span several data lines."""
    lines = data.splitlines() or [""]
    return "".join("data: {}\n".format(line) for line in lines) + "\n"


def serialize_chunk(chunk: Any) -> str:
    """Serialize one backend chunk to compact JSON.

    Raises:
        TypeError, ValueError: If the chunk is not JSON-serializable.
    """
    if isinstance(chunk, BaseModel):
        return chunk.model_dump_json()
    return json.dumps(chunk, separators=(",", ":"), allow_nan=False)


def error_event(exc: StreamError) -> str:
    body = error_document(exc.detail, exc.error_type, code=exc.code)
    return sse_event(body.model_dump_json())


class StreamTranslator:
    """Single-use translator from a backend chunk stream to SSE frames.

    ``on_close`` is awaited exactly once after the backend iterator has been
    closed, whether the stream finished, failed or was abandoned by the
    client.
    """

    def __init__(
        self,
        chunks: AsyncIterable[Any],
        *,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self._chunks = chunks
        self._on_close = on_close
        self._consumed = False
        self.state = StreamState.STREAMING
        self.chunk_count = 0
        self.error: Optional[StreamError] = None

    def __aiter__(self) -> AsyncIterator[str]:
        return self.events()

    async def events(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("Event stream has already been consumed")
        self._consumed = True

        iterator = self._chunks.__aiter__()
        try:
            while True:
                try:
                    chunk = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                except Exception as exc:
                    if isinstance(exc, StreamError):
                        err = exc
                    else:
                        err = StreamError(
                            ErrorKind.STREAM_TRANSPORT, "Stream error: {}".format(exc)
                        )
                    yield self._fail(err)
                    return

                try:
                    payload = serialize_chunk(chunk)
                except (TypeError, ValueError) as exc:
                    yield self._fail(
                        StreamError(
                            ErrorKind.STREAM_SERIALIZATION,
                            "Failed to serialize chunk: {}".format(exc),
                        )
                    )
                    return

                self.chunk_count += 1
                yield sse_event(payload)

            self.state = StreamState.TERMINATED_DONE
            yield sse_event(DONE_SENTINEL)
        finally:
            await self._close(iterator)

    def _fail(self, err: StreamError) -> str:
        logger.error("%s (after %d chunks)", err.detail, self.chunk_count)
        self.state = StreamState.TERMINATED_ERROR
        self.error = err
        return error_event(err)

    async def _close(self, iterator: AsyncIterator[Any]) -> None:
        # A client disconnect cancels the response task; cleanup must still run.
        with anyio.CancelScope(shield=True):
            try:
                aclose = getattr(iterator, "aclose", None)
                if aclose is not None:
                    await aclose()
            finally:
                if self._on_close is not None:
                    await self._on_close()


def translate_stream(
    chunks: AsyncIterable[Any],
    *,
    on_close: Optional[Callable[[], Awaitable[None]]] = None,
) -> AsyncIterator[str]:
    """Return the SSE frame sequence for a backend chunk stream."""
    return StreamTranslator(chunks, on_close=on_close).events()
