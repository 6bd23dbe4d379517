"""
In-process log service — streams, profiles and channel creation held in
memory. Backs the HTTP gateway and the test suite.

Depends on: config, errors, models, protocol, network/stream
"""

import asyncio
import copy
import time
import uuid
from typing import Callable, Optional

from logmesh.config import LARGE_PAYLOAD_SCHEME
from logmesh.errors import NotFound, RemoteUnavailable
from logmesh.models import FeeSchedule, ProfileInfo, RegisteredAgent, StreamMessage
from logmesh.network.stream import LogService
from logmesh.protocol import build_confirmation, parse_record


class MemoryLogService(LogService):
    """All three collaborators over plain dicts.

    Records are kept in the stored wire shape ({sequence_number,
    consensus_timestamp, payer_account_id, message}) so the HTTP gateway can
    serve them verbatim.
    """

    def __init__(self, clock: Callable[[], float] = time.time, first_account: int = 1000) -> None:
        self._clock = clock
        self._last_ts = 0.0
        self._next_account = first_account
        self._streams: dict[str, list[dict]] = {}
        self._stream_meta: dict[str, dict] = {}
        self._payloads: dict[str, str] = {}
        self._profiles: dict[str, ProfileInfo] = {}
        self._agents_by_inbound: dict[str, RegisteredAgent] = {}
        self._lock = asyncio.Lock()
        # Fault injection for tests: stream ids whose reads fail
        self.failing_streams: set[str] = set()
        self.failing_profiles: set[str] = set()
        self.accept_calls: list[tuple[str, str, int]] = []

    # -- ids and time ---------------------------------------------------------

    def _new_id(self) -> str:
        self._next_account += 1
        return f"0.0.{self._next_account}"

    def _now(self) -> float:
        ts = self._clock()
        if ts <= self._last_ts:
            ts = self._last_ts + 0.000001
        self._last_ts = ts
        return ts

    # -- streams --------------------------------------------------------------

    def create_stream(self, memo: str = "", fee_schedule: Optional[FeeSchedule] = None) -> str:
        stream_id = self._new_id()
        self._streams[stream_id] = []
        self._stream_meta[stream_id] = {"memo": memo, "fee_schedule": copy.deepcopy(fee_schedule)}
        return stream_id

    def stream_metadata(self, stream_id: str) -> dict:
        if stream_id not in self._stream_meta:
            raise NotFound("stream", stream_id)
        return copy.deepcopy(self._stream_meta[stream_id])

    def raw_records(self, stream_id: str) -> list[dict]:
        if stream_id in self.failing_streams:
            raise RemoteUnavailable("read", stream_id, "injected failure")
        if stream_id not in self._streams:
            raise NotFound("stream", stream_id)
        return copy.deepcopy(self._streams[stream_id])

    def append_raw(self, stream_id: str, payload: str, memo: Optional[str] = None,
                   payer: str = "", timestamp: Optional[float] = None) -> int:
        if stream_id not in self._streams:
            raise NotFound("stream", stream_id)
        records = self._streams[stream_id]
        seq = len(records) + 1
        records.append({
            "sequence_number": seq,
            "consensus_timestamp": timestamp if timestamp is not None else self._now(),
            "payer_account_id": payer,
            "memo": memo or "",
            "message": payload,
        })
        return seq

    async def append(self, stream_id: str, payload: str, memo: Optional[str] = None) -> int:
        return await self.append_as(stream_id, payload, memo)

    async def append_as(self, stream_id: str, payload: str, memo: Optional[str] = None,
                        payer: str = "") -> int:
        """append() with an explicit payer account."""
        async with self._lock:
            return self.append_raw(stream_id, payload, memo, payer=payer)

    async def read_all(self, stream_id: str) -> list[StreamMessage]:
        return [parse_record(r) for r in self.raw_records(stream_id)]

    async def offload_payload(self, content: str) -> str:
        reference = f"{LARGE_PAYLOAD_SCHEME}{uuid.uuid4().hex}"
        self._payloads[reference] = content
        return reference

    async def resolve_large_payload(self, reference: str) -> str:
        if reference not in self._payloads:
            raise NotFound("payload", reference)
        return self._payloads[reference]

    # -- profiles -------------------------------------------------------------

    def publish_profile(self, agent_id: str, profile: ProfileInfo) -> None:
        self._profiles[agent_id] = copy.deepcopy(profile)

    async def get_profile(self, agent_id: str) -> ProfileInfo:
        if agent_id in self.failing_profiles:
            raise RemoteUnavailable("profile fetch", agent_id, "injected failure")
        if agent_id not in self._profiles:
            raise NotFound("profile", agent_id)
        return copy.deepcopy(self._profiles[agent_id])

    async def register_agent(self, agent: RegisteredAgent, profile: Optional[ProfileInfo] = None) -> RegisteredAgent:
        """Create inbound/outbound streams (when missing) and publish a profile."""
        agent = copy.deepcopy(agent)
        if not agent.agent_id:
            agent.agent_id = self._new_id()
        if not agent.inbound_stream_id:
            agent.inbound_stream_id = self.create_stream(f"inbound:{agent.agent_id}")
        if not agent.outbound_stream_id:
            agent.outbound_stream_id = self.create_stream(f"outbound:{agent.agent_id}")
        profile = copy.deepcopy(profile) if profile else ProfileInfo(display_name=agent.name)
        profile.inbound_stream_id = agent.inbound_stream_id
        self.publish_profile(agent.agent_id, profile)
        self._agents_by_inbound[agent.inbound_stream_id] = agent
        return agent

    # -- acceptance -----------------------------------------------------------

    async def accept_request(self, local_inbound_stream_id: str, remote_agent_id: str,
                             request_id: int, fee_schedule: Optional[FeeSchedule] = None) -> str:
        agent = self._agents_by_inbound.get(local_inbound_stream_id)
        if agent is None:
            raise NotFound("agent for inbound stream", local_inbound_stream_id)
        self.accept_calls.append((local_inbound_stream_id, remote_agent_id, request_id))
        async with self._lock:
            channel = self.create_stream(f"channel:{agent.agent_id}:{remote_agent_id}", fee_schedule)
            record = build_confirmation(agent, remote_agent_id, request_id, channel)
            self.append_raw(local_inbound_stream_id, record, payer=agent.agent_id)
            if agent.outbound_stream_id:
                self.append_raw(agent.outbound_stream_id, record, payer=agent.agent_id)
        return channel
