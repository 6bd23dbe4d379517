"""
Message delivery — polls established channels and hands each new message to
the reasoning handler exactly once per process lifetime.

Depends on: config, errors, models, protocol, state, network/stream
"""

import asyncio
import sys
import time
from typing import Awaitable, Callable, Optional

from logmesh.config import (
    DELIVERY_BATCH_SIZE,
    DELIVERY_POLL_INTERVAL,
    ERROR_REPLY_TEXT,
    HANDLER_TIMEOUT,
    OP_MESSAGE,
    REPLAY_LOOKBACK,
)
from logmesh.errors import HandoffTimeout
from logmesh.models import Connection, StreamMessage
from logmesh.network.stream import StreamAccessor
from logmesh.protocol import is_large_payload_reference, unwrap_payload
from logmesh.state import ConnectionStore

# (text, message, connection) -> reply text or None
MessageHandler = Callable[[str, StreamMessage, Connection], Awaitable[Optional[str]]]
# (connection, text, memo) -> sequence number
ReplySender = Callable[[Connection, str, Optional[str]], Awaitable[int]]


class MessageDeliveryLoop:
    """Dedup and hand-off bookkeeping for every established channel.

    The dedup and replay watermarks live in the store; the processed and
    in-flight sets are per-instance, keyed by stream id.
    """

    def __init__(self, store: ConnectionStore, streams: StreamAccessor, handler: MessageHandler,
                 sender: Optional[ReplySender] = None,
                 batch_size: int = DELIVERY_BATCH_SIZE,
                 handler_timeout: float = HANDLER_TIMEOUT,
                 replay_lookback: float = REPLAY_LOOKBACK,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.streams = streams
        self.handler = handler
        self.sender = sender
        self.batch_size = batch_size
        self.handler_timeout = handler_timeout
        self.replay_lookback = replay_lookback
        self._clock = clock
        self._processed: dict[str, set[int]] = {}
        self._in_flight: dict[str, set[int]] = {}
        self.delivered_count = 0
        self.failed_count = 0

    def reset(self) -> None:
        """Drop all per-stream bookkeeping (after an identity switch)."""
        self._processed.clear()
        self._in_flight.clear()

    def processed(self, stream_id: str) -> set[int]:
        return set(self._processed.get(stream_id, set()))

    def in_flight(self, stream_id: str) -> set[int]:
        return set(self._in_flight.get(stream_id, set()))

    # -- selection ------------------------------------------------------------

    def _seed(self, stream_id: str, records: list[StreamMessage], local_agent_id: str) -> None:
        """First sight of a stream: skip our own history and anything older than the lookback."""
        processed = self._processed.setdefault(stream_id, set())
        own = [r for r in records if r.author_id == local_agent_id]
        processed.update(r.sequence_number for r in own)
        if self.store.replay.seen(stream_id):
            return
        if own:
            start = max(r.timestamp for r in own)
        else:
            start = self._clock() - self.replay_lookback
        self.store.replay.set_if_newer(stream_id, start)

    def select_new(self, stream_id: str, records: list[StreamMessage],
                   local_agent_id: str) -> list[StreamMessage]:
        """Messages not yet handed off, ascending by sequence number."""
        replay_mark = self.store.replay.get(stream_id, 0)
        dedup_mark = self.store.get_watermark(stream_id)
        processed = self._processed.get(stream_id, set())
        in_flight = self._in_flight.get(stream_id, set())
        fresh = [
            m for m in records
            if m.op == OP_MESSAGE
            and m.timestamp > replay_mark
            and m.sequence_number > dedup_mark
            and m.author_id != local_agent_id
            and m.sequence_number not in processed
            and m.sequence_number not in in_flight
        ]
        return sorted(fresh, key=lambda m: m.sequence_number)

    # -- hand-off -------------------------------------------------------------

    async def _resolve_text(self, msg: StreamMessage) -> str:
        data = msg.payload
        if is_large_payload_reference(data):
            data = await self.streams.resolve_large_payload(data)
        return unwrap_payload(data)

    async def _reply(self, conn: Connection, text: str, memo: str) -> None:
        if self.sender is None:
            return
        try:
            await self.sender(conn, text, memo)
        except Exception as e:
            print(f"[LogMesh] Reply on {conn.stream_id} failed: {e}", file=sys.stderr)

    async def deliver(self, conn: Connection, msg: StreamMessage) -> bool:
        """Hand one message to the handler. Marked processed whatever the outcome."""
        stream_id = conn.stream_id
        seq = msg.sequence_number
        processed = self._processed.setdefault(stream_id, set())
        in_flight = self._in_flight.setdefault(stream_id, set())
        if seq in processed or seq in in_flight:
            return False

        in_flight.add(seq)
        try:
            text = await self._resolve_text(msg)
            try:
                reply = await asyncio.wait_for(self.handler(text, msg, conn), timeout=self.handler_timeout)
            except asyncio.TimeoutError as e:
                raise HandoffTimeout(stream_id, seq, self.handler_timeout) from e
            self.delivered_count += 1
            print(f"[LogMesh] Delivered message #{seq} from {msg.author_id} on {stream_id}", file=sys.stderr)
            if reply:
                await self._reply(conn, f"[Reply to #{seq}] {reply}", f"Reply to message #{seq}")
            return True
        except Exception as e:
            self.failed_count += 1
            print(f"[LogMesh] Handling message #{seq} on {stream_id} failed: {e}", file=sys.stderr)
            await self._reply(conn, f"[Error Reply to #{seq}] {ERROR_REPLY_TEXT}", f"Error reply to message #{seq}")
            return False
        finally:
            processed.add(seq)
            self.store.set_watermark_if_newer(stream_id, seq)
            self.store.replay.set_if_newer(stream_id, msg.timestamp)
            in_flight.discard(seq)

    # -- polling --------------------------------------------------------------

    async def tick(self) -> int:
        """One pass over established channels. Returns the number of messages handed off."""
        agent = self.store.current_agent
        if agent is None:
            return 0

        budget = self.batch_size
        handled = 0
        for conn in self.store.list():
            if budget <= 0:
                break
            if not conn.is_established:
                continue
            try:
                records = await self.streams.read_all(conn.stream_id)
            except Exception as e:
                print(f"[LogMesh] Could not read channel {conn.stream_id}: {e}", file=sys.stderr)
                continue
            if conn.stream_id not in self._processed:
                self._seed(conn.stream_id, records, agent.agent_id)

            for msg in self.select_new(conn.stream_id, records, agent.agent_id)[:budget]:
                await self.deliver(conn, msg)
                handled += 1
                budget -= 1
        return handled

    async def run(self, interval: float = DELIVERY_POLL_INTERVAL) -> None:
        """Background task: tick every interval seconds."""
        while True:
            try:
                await asyncio.sleep(interval)
                await self.tick()
            except asyncio.CancelledError:
                return
            except Exception as e:
                print(f"[LogMesh] Delivery loop error: {e}", file=sys.stderr)
