from __future__ import annotations

import asyncio
import codecs
import json
import logging
from typing import Any, AsyncIterator, Callable, List, Literal, Optional, Sequence, Tuple

import httpx

from chatstream.core.errors import MalformedChunk, StreamAlreadyClaimed, TransportFailure
from chatstream.core.metrics import MALFORMED_CHUNKS
from chatstream.streaming.abort import AbortHandle

log = logging.getLogger("chatstream.stream")

Framing = Literal["raw", "ndjson"]
DeltaCallback = Callable[[str], None]

DEFAULT_NDJSON_FIELD: Tuple[str, ...] = ("message", "content")


class ByteStream:
    """A response body that only one reader may consume at a time.

    Wraps an async byte iterator (``httpx.Response.aiter_bytes()`` in practice) and adds
    the claim/release discipline the iterator itself does not have.
    """

    def __init__(self, chunks: AsyncIterator[bytes], closer: Optional[Callable[[], Any]] = None) -> None:
        self._chunks = chunks
        self._closer = closer
        self._claimed = False
        self.release_count = 0

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ByteStream":
        return cls(response.aiter_bytes(), closer=response.aclose)

    @property
    def locked(self) -> bool:
        return self._claimed

    def claim(self) -> AsyncIterator[bytes]:
        if self._claimed:
            raise StreamAlreadyClaimed()
        self._claimed = True
        return self._chunks

    def release(self) -> None:
        if not self._claimed:
            return
        self._claimed = False
        self.release_count += 1

    async def aclose(self) -> None:
        if self._closer is not None:
            result = self._closer()
            if asyncio.iscoroutine(result):
                await result


def _extract(obj: Any, field: Sequence[str]) -> str:
    cur = obj
    for key in field:
        if not isinstance(cur, dict):
            raise KeyError(key)
        cur = cur[key]
    if cur is None:
        return ""
    if not isinstance(cur, str):
        raise TypeError(f"expected text at {'.'.join(field)}, got {type(cur).__name__}")
    return cur


class NdjsonDecoder:
    """Folds newline-delimited JSON records into text, one call per network chunk.

    Lines ending in ``\\n`` are complete. An unterminated tail is emitted right away
    when it already parses, otherwise it is kept and joined with the next chunk. If the
    joined line still does not parse, the tail alone is dropped as malformed.
    """

    def __init__(self, field: Sequence[str] = DEFAULT_NDJSON_FIELD) -> None:
        self.field = tuple(field)
        self._tail = ""
        self.dropped = 0

    def feed(self, text: str) -> str:
        lines = text.split("\n")
        out: List[str] = []
        if self._tail:
            tail, self._tail = self._tail, ""
            if len(lines) == 1:
                lines[0] = tail + lines[0]
            else:
                joined = self._decode(tail + lines[0])
                if joined is None:
                    # The carried tail was garbage, not the start of a record.
                    self._parse(tail)
                else:
                    out.append(joined)
                    lines[0] = ""
        last = lines.pop()
        out.extend(self._parse(line) for line in lines)
        if last.strip():
            value = self._decode(last)
            if value is None:
                self._tail = last
            else:
                out.append(value)
        return "".join(out)

    def flush(self) -> str:
        tail, self._tail = self._tail, ""
        return self._parse(tail)

    def _decode(self, line: str) -> Optional[str]:
        line = line.strip()
        if not line:
            return ""
        try:
            return _extract(json.loads(line), self.field)
        except (ValueError, KeyError, TypeError):
            return None

    def _parse(self, line: str) -> str:
        line = line.strip()
        if not line:
            return ""
        try:
            return _extract(json.loads(line), self.field)
        except (ValueError, KeyError, TypeError) as e:
            self.dropped += 1
            MALFORMED_CHUNKS.inc()
            err = MalformedChunk(line, type(e).__name__)
            log.warning({"event": "stream.malformed_line", "error": str(err)})
            return ""


class StreamReader:
    """Drives one read loop over a claimed ByteStream, delivering deltas in arrival order."""

    def __init__(
        self,
        source: ByteStream,
        on_delta: DeltaCallback,
        abort_handle: AbortHandle,
        framing: Framing = "raw",
        field: Sequence[str] = DEFAULT_NDJSON_FIELD,
    ) -> None:
        if framing not in ("raw", "ndjson"):
            raise ValueError(f"unknown framing mode: {framing}")
        self.source = source
        self.on_delta = on_delta
        self.abort_handle = abort_handle
        self.framing = framing
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._ndjson = NdjsonDecoder(field) if framing == "ndjson" else None
        self._pending: Optional[asyncio.Task] = None
        self._released = False
        self.parts: List[str] = []

    def _emit(self, text: str) -> None:
        if not text:
            return
        self.parts.append(text)
        self.on_delta(text)

    def _decode(self, chunk: bytes, final: bool = False) -> str:
        text = self._decoder.decode(chunk, final=final)
        if self._ndjson is None:
            return text
        out = self._ndjson.feed(text)
        if final:
            out += self._ndjson.flush()
        return out

    def _cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        self.source.release()

    async def run(self) -> str:
        chunks = self.source.claim()
        observer = self.abort_handle.add_observer(self._cancel_pending)
        try:
            while not self.abort_handle.aborted:
                self._pending = asyncio.ensure_future(_next_chunk(chunks))
                try:
                    chunk = await self._pending
                finally:
                    self._pending = None
                if chunk is None:
                    self._emit(self._decode(b"", final=True))
                    break
                if self.abort_handle.aborted:
                    break
                if chunk:
                    self._emit(self._decode(chunk))
        except asyncio.CancelledError:
            if not self.abort_handle.aborted:
                raise
            log.info({"event": "stream.aborted", "chat_id": self.abort_handle.chat_id, "parts": len(self.parts)})
        except (httpx.HTTPError, OSError) as e:
            if self.abort_handle.aborted:
                log.info({"event": "stream.aborted", "chat_id": self.abort_handle.chat_id, "detail": str(e)})
            else:
                log.error({"event": "stream.transport_failure", "error": str(e)})
                raise TransportFailure(str(e)) from e
        finally:
            self.abort_handle.remove_observer(observer)
            self._release()
        return "".join(self.parts)


async def _next_chunk(chunks: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


async def consume_stream(
    source: ByteStream,
    on_delta: DeltaCallback,
    abort_handle: AbortHandle,
    framing: Framing = "raw",
    field: Sequence[str] = DEFAULT_NDJSON_FIELD,
) -> str:
    """Read ``source`` to the end (or until aborted) and return the concatenated text.

    A source that is already claimed raises StreamAlreadyClaimed before anything is read.
    """
    if source.locked:
        log.error({"event": "stream.already_claimed", "chat_id": abort_handle.chat_id})
        raise StreamAlreadyClaimed()
    reader = StreamReader(source, on_delta, abort_handle, framing=framing, field=field)
    return await reader.run()
