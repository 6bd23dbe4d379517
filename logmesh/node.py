"""
AgentNode — one agent identity wired to its store, engine, monitor and
delivery loop, plus the operations offered to the reasoning side.

Depends on: config, errors, fees, identity, models, protocol, reconcile,
            monitor, delivery, state, network/stream
"""

import asyncio
import sys
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from logmesh.config import (
    CONFIRMATION_POLL_INTERVAL,
    CONFIRMATION_WAIT_SECONDS,
    DELIVERY_BATCH_SIZE,
    HANDLER_TIMEOUT,
    LARGE_PAYLOAD_THRESHOLD,
    MONITOR_POLL_INTERVAL,
    OP_MESSAGE,
    PENDING_REFRESH_THROTTLE,
    RECONCILE_RETRIES,
    RECONCILE_RETRY_DELAY,
    WELCOME_MESSAGE,
)
from logmesh.delivery import MessageDeliveryLoop, MessageHandler
from logmesh.errors import ConfigurationError, ConflictIgnored, LogMeshError, NotFound
from logmesh.fees import build_fee_schedule
from logmesh.identity import validate_agent_id
from logmesh.models import (
    Connection,
    ConnectionRequestInfo,
    LifecycleState,
    ProfileInfo,
    RegisteredAgent,
    StreamMessage,
    parse_iso,
    utc_iso,
)
from logmesh.monitor import AcceptanceMonitor
from logmesh.network.stream import (
    ConnectionAcceptor,
    LogService,
    ProfileDirectory,
    StreamAccessor,
)
from logmesh.protocol import (
    build_chat_message,
    build_confirmation,
    build_connection_request,
    build_outbound_request,
    is_large_payload_reference,
    unwrap_payload,
)
from logmesh.reconcile import (
    ReconciliationEngine,
    find_confirmation,
    index_confirmations,
    pending_stream_id,
)
from logmesh.state import ConnectionStore, WatermarkTracker

SORT_OPTIONS = ("time_asc", "time_desc", "name_asc", "name_desc")


# =============================================================================
# Message digest
# =============================================================================

@dataclass
class MessageDigest:
    """Messages read from one channel by check_new_messages."""
    connection: Connection
    latest_only: bool
    messages: list[tuple[StreamMessage, str]] = field(default_factory=list)

    def render(self) -> str:
        name = self.connection.remote_display_name or self.connection.remote_party_id
        if not self.messages:
            if self.latest_only:
                return f"No messages found for connection with {name}."
            return f"No new messages found for connection with {name} since last check."
        header = f"Latest message(s) from {name}:" if self.latest_only else f"New messages from {name}:"
        lines = [header]
        for msg, text in self.messages:
            lines.append(f"[{msg.author_id}]: {text} (Seq: {msg.sequence_number}, {utc_iso(msg.timestamp)})")
        return "\n".join(lines)


# =============================================================================
# Node
# =============================================================================

class AgentNode:
    """Everything one agent identity needs, owned by one object."""

    def __init__(self, streams: StreamAccessor, profiles: ProfileDirectory,
                 acceptor: ConnectionAcceptor, agent: Optional[RegisteredAgent] = None,
                 handler: Optional[MessageHandler] = None,
                 retries: int = RECONCILE_RETRIES,
                 retry_delay: float = RECONCILE_RETRY_DELAY,
                 poll_interval: float = MONITOR_POLL_INTERVAL,
                 batch_size: int = DELIVERY_BATCH_SIZE,
                 handler_timeout: float = HANDLER_TIMEOUT,
                 welcome_message: str = WELCOME_MESSAGE,
                 registrar: Optional[LogService] = None):
        self.streams = streams
        self.profiles = profiles
        self.acceptor = acceptor
        self.registrar = registrar
        self.store = ConnectionStore(agent)
        self.engine = ReconciliationEngine(self.store, streams, profiles, retries, retry_delay)
        self.monitor = AcceptanceMonitor(self.store, self.engine, streams, acceptor, profiles,
                                         poll_interval=poll_interval, welcome_message=welcome_message)
        self.delivery: Optional[MessageDeliveryLoop] = None
        if handler is not None:
            self.delivery = MessageDeliveryLoop(
                self.store, streams, handler, sender=self.send_to_connection,
                batch_size=batch_size, handler_timeout=handler_timeout,
            )
        self.checked = WatermarkTracker()    # per-stream "since last check" position
        self._last_pending_refresh = 0.0

    @classmethod
    def from_service(cls, service: LogService, agent: Optional[RegisteredAgent] = None,
                     **kwargs) -> "AgentNode":
        """Build a node whose three collaborators are one backend."""
        kwargs.setdefault("registrar", service)
        return cls(service, service, service, agent, **kwargs)

    @property
    def agent(self) -> Optional[RegisteredAgent]:
        return self.store.current_agent

    def switch_agent(self, agent: Optional[RegisteredAgent]) -> None:
        """Change identity. Clears every connection, watermark and bookkeeping set."""
        self.store.set_current_agent(agent)
        if isinstance(self.streams, LogService):
            self.streams.use_identity(agent.agent_id if agent else "")
        self.monitor.reset()
        if self.delivery is not None:
            self.delivery.reset()
        self.checked.clear()
        self._last_pending_refresh = 0.0

    async def register_agent(self, name: str, profile: Optional[ProfileInfo] = None,
                             switch: bool = True) -> RegisteredAgent:
        """Provision a new identity with the log service and optionally act as it."""
        if self.registrar is None:
            raise ConfigurationError("This node has no log service that can register agents.")
        if not name.strip():
            raise ConfigurationError("Agent name is empty.")
        agent = await self.registrar.register_agent(RegisteredAgent(name=name.strip(), agent_id=""), profile)
        print(f"[LogMesh] Registered agent {agent.agent_id} ({agent.name})", file=sys.stderr)
        if switch:
            self.switch_agent(agent)
        return agent

    async def retrieve_profile(self, agent_id: str) -> ProfileInfo:
        err = validate_agent_id(agent_id)
        if err:
            raise ConfigurationError(err)
        return await self.profiles.get_profile(agent_id)

    # -- connections ----------------------------------------------------------

    async def list_connections(self, include_details: bool = True) -> list[Connection]:
        return await self.engine.reconcile(include_details=include_details)

    def get_connection(self, token: str) -> Connection:
        conn = self.store.get_by_identifier(token)
        if conn is None:
            raise NotFound(
                "connection", token,
                f'Could not find an active connection matching identifier "{token}". '
                f"Use logmesh_list_connections to see available connections.",
            )
        return conn

    def _established(self, token: str) -> Connection:
        conn = self.get_connection(token)
        if not conn.is_established:
            name = conn.remote_display_name or conn.remote_party_id
            raise NotFound(
                "established connection", token,
                f"Connection with {name} is {conn.lifecycle_state.value}; it has no message stream yet.",
            )
        return conn

    # -- messages -------------------------------------------------------------

    async def _message_text(self, msg: StreamMessage) -> str:
        data = msg.payload
        if is_large_payload_reference(data):
            try:
                data = await self.streams.resolve_large_payload(data)
            except Exception as e:
                print(f"[LogMesh] Could not resolve payload {data}: {e}", file=sys.stderr)
                return f"[unresolved payload {data}]"
        return unwrap_payload(data)

    async def check_new_messages(self, token: str, latest_only: bool = False,
                                 count: int = 1) -> MessageDigest:
        """Messages newer than the last check, or the latest `count` when latest_only."""
        conn = self._established(token)
        records = await self.streams.read_all(conn.stream_id)
        chat = sorted((r for r in records if r.op == OP_MESSAGE), key=lambda r: r.sequence_number)

        if latest_only:
            selected = chat[-max(1, count):]
        else:
            mark = self.checked.get(conn.stream_id, 0)
            selected = [r for r in chat if r.sequence_number > mark]

        digest = MessageDigest(connection=conn, latest_only=latest_only)
        for msg in selected:
            digest.messages.append((msg, await self._message_text(msg)))

        if not latest_only and selected:
            self.checked.set_if_newer(conn.stream_id, selected[-1].sequence_number)
        return digest

    async def send_to_connection(self, conn: Connection, text: str, memo: Optional[str] = None) -> int:
        """Append a chat message to an established channel. Large texts are offloaded."""
        agent = self.engine.local_agent()
        data = text
        if len(text.encode("utf-8")) > LARGE_PAYLOAD_THRESHOLD:
            data = await self.streams.offload_payload(text)
        return await self.streams.append(conn.stream_id, build_chat_message(agent, data, memo), memo)

    async def send_message(self, token: str, text: str, memo: Optional[str] = None) -> tuple[Connection, int]:
        agent = self.engine.local_agent()
        conn = self._established(token)
        seq = await self.send_to_connection(conn, text, memo or f"Agent message from {agent.name}")
        return conn, seq

    # -- requests -------------------------------------------------------------

    async def _wait_for_confirmation(self, agent: RegisteredAgent, target_id: str,
                                     target_inbound: str, request_id: int,
                                     wait_seconds: float, poll_interval: float) -> Optional[StreamMessage]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_seconds
        while True:
            try:
                records = await self.streams.read_all(target_inbound)
                conf = find_confirmation(index_confirmations(records), request_id,
                                         counterparty_id=agent.agent_id, author_id=target_id)
                if conf is not None:
                    return conf
            except LogMeshError as e:
                print(f"[LogMesh] Waiting for confirmation from {target_id}: {e}", file=sys.stderr)
            if loop.time() + poll_interval > deadline:
                return None
            await asyncio.sleep(poll_interval)

    async def initiate_connection(self, target_id: str, memo: Optional[str] = None,
                                  wait_seconds: float = CONFIRMATION_WAIT_SECONDS,
                                  poll_interval: float = CONFIRMATION_POLL_INTERVAL) -> Connection:
        """Send a connection request and optionally wait for the target to confirm it."""
        agent = self.engine.local_agent()
        err = validate_agent_id(target_id)
        if err:
            raise ConfigurationError(err)
        if target_id == agent.agent_id:
            raise ConfigurationError("Cannot connect to yourself.")
        existing = self.store.established_for(target_id)
        if existing is not None:
            return existing

        profile = await self.profiles.get_profile(target_id)
        target_inbound = profile.inbound_stream_id or await self.profiles.get_inbound_stream_id(target_id)
        request_id = await self.streams.append(target_inbound, build_connection_request(agent, memo), memo)
        await self.streams.append(
            agent.outbound_stream_id,
            build_outbound_request(agent, target_id, target_inbound, request_id, memo),
        )
        placeholder = self.store.upsert(Connection(
            stream_id=pending_stream_id(target_id, request_id),
            remote_party_id=target_id,
            lifecycle_state=LifecycleState.PENDING_OUTBOUND,
            remote_display_name=profile.display_name,
            remote_inbound_stream_id=target_inbound,
            request_id=request_id,
            created_at=utc_iso(),
            profile_info=profile,
            memo=memo,
        ))
        print(f"[LogMesh] Sent connection request #{request_id} to {target_id}", file=sys.stderr)
        if wait_seconds <= 0:
            return placeholder

        conf = await self._wait_for_confirmation(agent, target_id, target_inbound, request_id,
                                                 wait_seconds, poll_interval)
        if conf is None:
            return placeholder

        await self.streams.append(
            agent.outbound_stream_id,
            build_confirmation(agent, target_id, request_id, conf.connection_stream_id),
        )
        return self.store.upsert(Connection(
            stream_id=conf.connection_stream_id,
            remote_party_id=target_id,
            lifecycle_state=LifecycleState.ESTABLISHED,
            remote_display_name=profile.display_name,
            remote_inbound_stream_id=target_inbound,
            request_id=request_id,
            created_at=utc_iso(conf.timestamp),
            profile_info=profile,
            memo=memo,
        ))

    async def list_pending_requests(self, sort_by: str = "time_desc",
                                    limit: Optional[int] = None) -> list[ConnectionRequestInfo]:
        """Unanswered requests in both directions, refreshed at most every PENDING_REFRESH_THROTTLE seconds."""
        if sort_by not in SORT_OPTIONS:
            raise ConfigurationError(f"sort_by must be one of {', '.join(SORT_OPTIONS)}")
        now = time.monotonic()
        if not self._last_pending_refresh or now - self._last_pending_refresh > PENDING_REFRESH_THROTTLE:
            await self.engine.reconcile(include_details=True)
            self._last_pending_refresh = now

        established = self.store.established_parties()
        pending = []
        for conn in self.store.list():
            if not conn.is_placeholder or conn.remote_party_id in established:
                continue
            incoming = conn.lifecycle_state == LifecycleState.NEEDS_CONFIRMATION
            if incoming and self.store.is_request_processed(self.store.request_key(conn.request_id)):
                continue
            pending.append(ConnectionRequestInfo(
                request_id=conn.request_id,
                requester_id=conn.remote_party_id,
                requester_name=conn.remote_display_name or f"Agent {conn.remote_party_id}",
                timestamp=parse_iso(conn.created_at) or 0.0,
                direction="incoming" if incoming else "outgoing",
                memo=conn.memo,
                profile=conn.profile_info,
            ))

        if sort_by.startswith("time"):
            pending.sort(key=lambda r: r.timestamp, reverse=sort_by == "time_desc")
        else:
            pending.sort(key=lambda r: r.requester_name.lower(), reverse=sort_by == "name_desc")
        return pending[:limit] if limit else pending

    def _incoming_placeholder(self, request_id: int) -> Optional[Connection]:
        for conn in self.store.list():
            if conn.lifecycle_state == LifecycleState.NEEDS_CONFIRMATION and conn.request_id == request_id:
                return conn
        return None

    async def accept_request(self, request_id: int, native_fee: Optional[float] = None,
                             exempt_ids: Iterable[str] = (),
                             default_collector: Optional[str] = None,
                             native_fees: Iterable[dict] = (),
                             token_fees: Iterable[dict] = ()) -> Connection:
        """Accept one pending incoming request by id.

        native_fee is shorthand for a single native fee collected by
        default_collector. native_fees and token_fees take the full item
        shape of build_fee_schedule.
        """
        agent = self.engine.local_agent()
        key = self.store.request_key(request_id)
        if self.store.is_request_processed(key):
            raise ConflictIgnored(key)
        placeholder = self._incoming_placeholder(request_id)
        if placeholder is None:
            await self.engine.reconcile(include_details=False)
            placeholder = self._incoming_placeholder(request_id)
        if placeholder is None:
            raise NotFound("connection request", str(request_id))

        native = list(native_fees)
        if native_fee:
            native.append({"amount": native_fee})
        fees = build_fee_schedule(
            native_fees=native,
            token_fees=token_fees,
            exempt_ids=exempt_ids,
            requester_id=placeholder.remote_party_id,
            default_collector=default_collector,
            local_agent_id=agent.agent_id,
        )
        request = StreamMessage(
            sequence_number=request_id,
            timestamp=parse_iso(placeholder.created_at) or 0.0,
            op="connection_request",
            author_id=placeholder.remote_party_id,
            author_inbound_stream_id=placeholder.remote_inbound_stream_id,
            memo=placeholder.memo,
        )
        return await self.monitor.accept(request, fees)

    def reject_request(self, request_id: int) -> Connection:
        """Mark an incoming request handled without accepting it."""
        placeholder = self._incoming_placeholder(request_id)
        if placeholder is None:
            raise NotFound("connection request", str(request_id))
        self.store.mark_request_processed(self.store.request_key(request_id))
        print(f"[LogMesh] Rejected connection request #{request_id} from {placeholder.remote_party_id}",
              file=sys.stderr)
        return placeholder


# =============================================================================
# Global accessor
# =============================================================================

_node: Optional[AgentNode] = None


def get_node() -> AgentNode:
    """Return the node bound by the composition root."""
    if _node is None:
        raise ConfigurationError("LogMesh node is not initialised.")
    return _node


def set_node(node: Optional[AgentNode]) -> None:
    global _node
    _node = node
