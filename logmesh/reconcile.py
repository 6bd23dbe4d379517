"""
Reconciliation — rebuild connection lifecycle state from the local outbound
and inbound logs, falling back to the remote party's inbound log when no
local confirmation exists yet.

The matching itself (build_connection_map, plan_connections) is pure and
works on snapshots of log contents; ReconciliationEngine does the I/O around it.

Depends on: config, errors, models, state, network/stream
"""

import asyncio
import sys
from dataclasses import dataclass, field
from typing import Optional

from logmesh.config import (
    OP_CONNECTION_CREATED,
    OP_CONNECTION_REQUEST,
    RECONCILE_RETRIES,
    RECONCILE_RETRY_DELAY,
)
from logmesh.errors import ConfigurationError
from logmesh.models import (
    Connection,
    LifecycleState,
    ProfileInfo,
    RegisteredAgent,
    StreamMessage,
    utc_iso,
)
from logmesh.network.stream import ProfileDirectory, StreamAccessor
from logmesh.state import ConnectionStore


# =============================================================================
# Connection map (pure)
# =============================================================================

@dataclass
class ConnectionMap:
    """Requests and confirmations partitioned out of the two local logs."""
    outbound_requests: dict[tuple[str, int], StreamMessage] = field(default_factory=dict)   # (party, key)
    outbound_confirmations: dict[int, list[StreamMessage]] = field(default_factory=dict)
    inbound_requests: dict[int, StreamMessage] = field(default_factory=dict)
    inbound_confirmations: dict[int, list[StreamMessage]] = field(default_factory=dict)


def outbound_request_key(msg: StreamMessage) -> int:
    """Correlation key of a request recorded in our own outbound log.

    The record carries the request's sequence number in the target's inbound
    stream when known; otherwise its own sequence number is the key.
    """
    return msg.correlation_id if msg.correlation_id is not None else msg.sequence_number


def index_confirmations(messages: list[StreamMessage]) -> dict[int, list[StreamMessage]]:
    """Group confirmation records by the request id they refer to."""
    index: dict[int, list[StreamMessage]] = {}
    for msg in messages:
        if msg.op == OP_CONNECTION_CREATED and msg.correlation_id is not None and msg.connection_stream_id:
            index.setdefault(msg.correlation_id, []).append(msg)
    return index


def find_confirmation(index: dict[int, list[StreamMessage]], key: int,
                      counterparty_id: Optional[str] = None,
                      author_id: Optional[str] = None) -> Optional[StreamMessage]:
    """First confirmation for key whose counterparty/author match (when the record names them)."""
    for msg in index.get(key, []):
        if counterparty_id and msg.counterparty_id and msg.counterparty_id != counterparty_id:
            continue
        if author_id and msg.author_id and msg.author_id != author_id:
            continue
        return msg
    return None


def build_connection_map(outbound: list[StreamMessage], inbound: list[StreamMessage]) -> ConnectionMap:
    conn_map = ConnectionMap()
    for msg in outbound:
        if msg.op == OP_CONNECTION_REQUEST:
            party = msg.counterparty_id or ""
            conn_map.outbound_requests.setdefault((party, outbound_request_key(msg)), msg)
    conn_map.outbound_confirmations = index_confirmations(outbound)
    for msg in inbound:
        if msg.op == OP_CONNECTION_REQUEST:
            conn_map.inbound_requests.setdefault(msg.sequence_number, msg)
    conn_map.inbound_confirmations = index_confirmations(inbound)
    return conn_map


def pending_stream_id(party: str, request_id: int) -> str:
    return f"pending:{party}:{request_id}"


def inbound_placeholder_id(party: str, request_id: int) -> str:
    return f"inbound:{party}:{request_id}"


def local_outbound_confirmation(conn_map: ConnectionMap, key: int,
                                party: Optional[str]) -> Optional[StreamMessage]:
    return find_confirmation(conn_map.outbound_confirmations, key, counterparty_id=party)


def local_inbound_confirmation(conn_map: ConnectionMap, key: int,
                               party: Optional[str]) -> Optional[StreamMessage]:
    return (find_confirmation(conn_map.inbound_confirmations, key, counterparty_id=party)
            or find_confirmation(conn_map.outbound_confirmations, key, counterparty_id=party))


def unconfirmed_outbound(conn_map: ConnectionMap) -> dict[tuple[str, int], StreamMessage]:
    """Outbound requests that no local confirmation covers yet."""
    return {
        (party, key): req for (party, key), req in conn_map.outbound_requests.items()
        if party and local_outbound_confirmation(conn_map, key, party) is None
    }


def answered_placeholders(conn_map: ConnectionMap,
                          remote_confirmations: Optional[dict[tuple[str, int], StreamMessage]] = None) -> list[str]:
    """Placeholder stream ids whose request has a confirmation, local or remote.

    These must go even when the one-per-party rule drops the established
    candidate the confirmation would have produced.
    """
    remote_confirmations = remote_confirmations or {}
    answered: list[str] = []
    for party, key in sorted(conn_map.outbound_requests):
        if not party:
            continue
        if local_outbound_confirmation(conn_map, key, party) is not None or (party, key) in remote_confirmations:
            answered.append(pending_stream_id(party, key))
    for key in sorted(conn_map.inbound_requests):
        party = conn_map.inbound_requests[key].author_id
        if party and local_inbound_confirmation(conn_map, key, party) is not None:
            answered.append(inbound_placeholder_id(party, key))
    return answered


def plan_connections(conn_map: ConnectionMap,
                     remote_confirmations: Optional[dict[tuple[str, int], StreamMessage]] = None,
                     existing_established: Optional[dict[str, str]] = None) -> list[Connection]:
    """Materialize connections from a connection map.

    remote_confirmations: (party, key) -> confirmation found in the remote party's
    inbound log, for outbound requests without a local confirmation.
    existing_established: remote party -> stream id already established in
    the store. Those streams win over any other candidate for the party.
    """
    remote_confirmations = remote_confirmations or {}
    existing_established = existing_established or {}
    candidates: list[Connection] = []
    pending: list[Connection] = []
    needs: list[Connection] = []

    for party, key in sorted(conn_map.outbound_requests):
        req = conn_map.outbound_requests[(party, key)]
        if not party:
            continue
        conf = local_outbound_confirmation(conn_map, key, party) or remote_confirmations.get((party, key))
        if conf is not None:
            candidates.append(Connection(
                stream_id=conf.connection_stream_id,
                remote_party_id=party,
                lifecycle_state=LifecycleState.ESTABLISHED,
                remote_inbound_stream_id=req.counterparty_inbound_stream_id,
                request_id=key,
                created_at=utc_iso(conf.timestamp),
                memo=req.memo,
            ))
        else:
            pending.append(Connection(
                stream_id=pending_stream_id(party, key),
                remote_party_id=party,
                lifecycle_state=LifecycleState.PENDING_OUTBOUND,
                remote_inbound_stream_id=req.counterparty_inbound_stream_id,
                request_id=key,
                created_at=utc_iso(req.timestamp),
                memo=req.memo,
            ))

    for key in sorted(conn_map.inbound_requests):
        req = conn_map.inbound_requests[key]
        party = req.author_id
        if not party:
            continue
        conf = local_inbound_confirmation(conn_map, key, party)
        if conf is not None:
            candidates.append(Connection(
                stream_id=conf.connection_stream_id,
                remote_party_id=party,
                lifecycle_state=LifecycleState.ESTABLISHED,
                remote_inbound_stream_id=req.author_inbound_stream_id,
                request_id=key,
                created_at=utc_iso(conf.timestamp),
                memo=req.memo,
            ))
        else:
            needs.append(Connection(
                stream_id=inbound_placeholder_id(party, key),
                remote_party_id=party,
                lifecycle_state=LifecycleState.NEEDS_CONFIRMATION,
                remote_inbound_stream_id=req.author_inbound_stream_id,
                request_id=key,
                created_at=utc_iso(req.timestamp),
                memo=req.memo,
            ))

    # One established connection per party: the stored stream, else the oldest request
    chosen: dict[str, Connection] = {}
    for conn in sorted(candidates, key=lambda c: c.request_id):
        party = conn.remote_party_id
        stored = existing_established.get(party)
        if stored is not None and conn.stream_id != stored:
            continue
        if party not in chosen:
            chosen[party] = conn

    established_parties = set(chosen) | set(existing_established)
    needs = [c for c in needs if c.remote_party_id not in established_parties]

    return list(chosen.values()) + pending + needs


# =============================================================================
# Engine
# =============================================================================

class ReconciliationEngine:
    """Reads the logs, plans connections and writes them into the store."""

    def __init__(self, store: ConnectionStore, streams: StreamAccessor, profiles: ProfileDirectory,
                 retries: int = RECONCILE_RETRIES, retry_delay: float = RECONCILE_RETRY_DELAY):
        self.store = store
        self.streams = streams
        self.profiles = profiles
        self.retries = max(1, retries)
        self.retry_delay = retry_delay
        self._lock = asyncio.Lock()

    def local_agent(self) -> RegisteredAgent:
        agent = self.store.current_agent
        if agent is None:
            raise ConfigurationError("No active agent identity. Register or load an agent first.")
        if not agent.inbound_stream_id or not agent.outbound_stream_id:
            raise ConfigurationError(
                f"Agent {agent.agent_id} has no inbound/outbound stream ids configured"
            )
        return agent

    async def _read_log(self, stream_id: str, label: str) -> list[StreamMessage]:
        try:
            return await self.streams.read_all(stream_id)
        except Exception as e:
            print(f"[LogMesh] Could not read {label} log {stream_id}: {e}", file=sys.stderr)
            return []

    async def fetch_connection_map(self) -> ConnectionMap:
        agent = self.local_agent()
        outbound = await self._read_log(agent.outbound_stream_id, "outbound")
        inbound = await self._read_log(agent.inbound_stream_id, "inbound")
        return build_connection_map(outbound, inbound)

    async def _search_remote(self, agent: RegisteredAgent, key: int,
                             req: StreamMessage) -> Optional[StreamMessage]:
        """Look for the remote party's confirmation of our request in its inbound log."""
        party = req.counterparty_id
        inbound = req.counterparty_inbound_stream_id
        last_error: Optional[Exception] = None
        for attempt in range(self.retries):
            try:
                if not inbound:
                    inbound = await self.profiles.get_inbound_stream_id(party)
                records = await self.streams.read_all(inbound)
                conf = find_confirmation(index_confirmations(records), key,
                                         counterparty_id=agent.agent_id, author_id=party)
                if conf is not None:
                    return conf
                last_error = None
            except Exception as e:
                last_error = e
            if attempt < self.retries - 1:
                await asyncio.sleep(self.retry_delay)
        if last_error is not None:
            print(f"[LogMesh] Remote lookup for request #{key} to {party} failed: {last_error}",
                  file=sys.stderr)
        return None

    async def _fetch_profiles(self, party_ids: list[str]) -> dict[str, ProfileInfo]:
        unique = list(dict.fromkeys(p for p in party_ids if p))
        results = await asyncio.gather(
            *(self.profiles.get_profile(p) for p in unique), return_exceptions=True
        )
        profiles: dict[str, ProfileInfo] = {}
        for party, result in zip(unique, results):
            if isinstance(result, BaseException):
                print(f"[LogMesh] Profile fetch failed for {party}: {result}", file=sys.stderr)
                continue
            profiles[party] = result
        return profiles

    async def _last_activity(self, stream_id: str) -> Optional[str]:
        try:
            records = await self.streams.read_all(stream_id)
        except Exception as e:
            print(f"[LogMesh] Could not read channel {stream_id}: {e}", file=sys.stderr)
            return None
        if not records:
            return None
        return utc_iso(max(r.timestamp for r in records))

    async def reconcile(self, include_details: bool = True) -> list[Connection]:
        """Run one pass and return the store snapshot.

        Raises ConfigurationError when the active identity is missing or lacks
        its own stream ids; every other failure only degrades the affected item.
        """
        async with self._lock:
            agent = self.local_agent()
            conn_map = await self.fetch_connection_map()

            remote: dict[tuple[str, int], StreamMessage] = {}
            for (party, key), req in unconfirmed_outbound(conn_map).items():
                conf = await self._search_remote(agent, key, req)
                if conf is not None:
                    remote[(party, key)] = conf

            existing = {c.remote_party_id: c.stream_id for c in self.store.list() if c.is_established}
            planned = plan_connections(conn_map, remote, existing)

            if include_details and planned:
                profiles = await self._fetch_profiles([c.remote_party_id for c in planned])
                for conn in planned:
                    profile = profiles.get(conn.remote_party_id)
                    if profile is None:
                        continue
                    conn.profile_info = profile
                    conn.remote_display_name = profile.display_name or None
                    if not conn.remote_inbound_stream_id:
                        conn.remote_inbound_stream_id = profile.inbound_stream_id
                for conn in planned:
                    if conn.is_established:
                        conn.last_activity_at = await self._last_activity(conn.stream_id)

            for conn in planned:
                self.store.upsert(conn)
            for stream_id in answered_placeholders(conn_map, remote):
                self.store.remove(stream_id)
            return self.store.list()


async def reconcile_loop(engine: ReconciliationEngine, interval: float) -> None:
    """Background task: keep the store in step with the logs."""
    while True:
        try:
            await asyncio.sleep(interval)
            await engine.reconcile(include_details=True)
        except asyncio.CancelledError:
            return
        except Exception as e:
            print(f"[LogMesh] Reconcile loop error: {e}", file=sys.stderr)
