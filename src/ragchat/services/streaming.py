"""Delivery of streamed answers over SSE and the real-time channel."""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections import defaultdict
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from fastapi import WebSocketDisconnect

from ragchat.metrics.observability import PipelineMetrics, get_logger
from ragchat.models import StreamChunk, utcnow
from ragchat.services.generation import ChunkCallback

GENERIC_STREAM_ERROR = "Failed to process message"

_DONE = object()


def _timestamp() -> str:
    return utcnow().isoformat()


class StreamOutcome(Protocol):
    answer: str
    source: str


Producer = Callable[[ChunkCallback], Awaitable[StreamOutcome]]


async def relay_chunks(produce: Producer) -> AsyncIterator[Any]:
    """Run ``produce`` as a task and yield its chunks, then its return value.

    Closing the iterator cancels the producer, so a client that goes away
    stops generation instead of leaving it running in the background.
    """

    queue: asyncio.Queue = asyncio.Queue()

    async def on_chunk(chunk: StreamChunk) -> None:
        queue.put_nowait(chunk)

    async def run() -> None:
        try:
            queue.put_nowait(await produce(on_chunk))
        finally:
            queue.put_nowait(_DONE)

    task = asyncio.create_task(run())
    try:
        while True:
            item = await queue.get()
            if item is _DONE:
                break
            yield item
        await task
    finally:
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


def sse_event(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


def _sse_error(message: str, session_id: str | None) -> str:
    return sse_event({"type": "error", "message": message, "sessionId": session_id, "timestamp": _timestamp()})


async def sse_stream(produce: Producer, *, session_id: str | None = None) -> AsyncIterator[str]:
    """Encode a streamed answer as ``start``, ``chunk`` events and one terminal event."""

    logger = get_logger("streaming")
    yield sse_event(
        {"type": "start", "message": "Processing your query...", "sessionId": session_id, "timestamp": _timestamp()}
    )
    terminal_sent = False
    try:
        async for item in relay_chunks(produce):
            if terminal_sent:
                continue
            if isinstance(item, StreamChunk):
                if item.error:
                    terminal_sent = True
                    yield _sse_error(item.chunk, session_id)
                elif not item.is_complete:
                    PipelineMetrics.streamed_chunks.labels(transport="sse").inc()
                    yield sse_event(
                        {
                            "type": "chunk",
                            "content": item.chunk,
                            "fullText": item.full_text,
                            "index": item.index,
                            "timestamp": _timestamp(),
                        }
                    )
                continue
            terminal_sent = True
            yield sse_event(
                {
                    "type": "end",
                    "fullResponse": item.answer,
                    "source": item.source,
                    "sessionId": session_id,
                    "timestamp": _timestamp(),
                }
            )
    except Exception as exc:
        logger.error("sse.failed", error=str(exc), error_type=type(exc).__name__)
        if not terminal_sent:
            terminal_sent = True
            yield _sse_error(GENERIC_STREAM_ERROR, session_id)
    if not terminal_sent:
        yield _sse_error(GENERIC_STREAM_ERROR, session_id)


class ChannelSocket(Protocol):
    async def send_text(self, data: str) -> None:
        """Send one text frame."""


class ChannelHub:
    """Room membership and event delivery for the duplex channel.

    Rooms are keyed by session id. Events are JSON frames of the form
    ``{"event": name, "data": payload}``.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, set[ChannelSocket]] = defaultdict(set)
        self._logger = get_logger("channel")

    def join(self, session_id: str, socket: ChannelSocket) -> None:
        self._rooms[session_id].add(socket)
        self._logger.info("channel.joined", session_id=session_id, members=len(self._rooms[session_id]))

    def leave(self, socket: ChannelSocket) -> None:
        for session_id in [room for room, members in self._rooms.items() if socket in members]:
            self._rooms[session_id].discard(socket)
            if not self._rooms[session_id]:
                del self._rooms[session_id]

    def members(self, session_id: str) -> int:
        return len(self._rooms.get(session_id, ()))

    async def send(self, socket: ChannelSocket, event: str, data: Any) -> bool:
        try:
            await socket.send_text(json.dumps({"event": event, "data": data}, default=str))
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            self._logger.warning("channel.send_failed", channel_event=event, error=str(exc))
            self.leave(socket)
            return False
        return True

    async def broadcast(self, session_id: str, event: str, data: Any, *, exclude: ChannelSocket | None = None) -> None:
        for socket in list(self._rooms.get(session_id, ())):
            if socket is not exclude:
                await self.send(socket, event, data)

    async def deliver(self, socket: ChannelSocket, session_id: str, produce: Producer) -> Any:
        """Stream one reply to ``socket``.

        Emits ``typing`` true, ``message_chunk`` events in index order,
        ``typing`` false and then exactly one of ``message_complete`` or
        ``error``. Other room members see the typing indicator.
        """

        await self.send(socket, "typing", True)
        await self.broadcast(session_id, "typing", True, exclude=socket)
        failure: StreamChunk | None = None

        async def on_chunk(chunk: StreamChunk) -> None:
            nonlocal failure
            if chunk.error:
                failure = chunk
                return
            PipelineMetrics.streamed_chunks.labels(transport="channel").inc()
            await self.send(
                socket,
                "message_chunk",
                {
                    "sessionId": session_id,
                    "chunk": chunk.chunk,
                    "fullText": chunk.full_text,
                    "index": chunk.index,
                    "isComplete": chunk.is_complete,
                    "timestamp": _timestamp(),
                },
            )

        try:
            outcome = await produce(on_chunk)
        except Exception as exc:
            self._logger.error("channel.message_failed", session_id=session_id, error=str(exc))
            await self._finish_with_error(socket, session_id, GENERIC_STREAM_ERROR)
            return None

        if failure is not None:
            await self._finish_with_error(socket, session_id, failure.chunk)
            return outcome
        await self.send(socket, "typing", False)
        await self.broadcast(session_id, "typing", False, exclude=socket)
        await self.send(
            socket,
            "message_complete",
            {
                "sessionId": session_id,
                "fullResponse": outcome.answer,
                "source": outcome.source,
                "timestamp": _timestamp(),
            },
        )
        return outcome

    async def _finish_with_error(self, socket: ChannelSocket, session_id: str, message: str) -> None:
        await self.send(socket, "typing", False)
        await self.broadcast(session_id, "typing", False, exclude=socket)
        await self.send(socket, "error", {"sessionId": session_id, "message": message, "timestamp": _timestamp()})
