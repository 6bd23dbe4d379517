"""
Acceptance monitor — polls the local inbound log for connection requests and
optionally accepts them with fee terms attached.

Depends on: config, errors, fees, models, protocol, reconcile, state, network/stream
"""

import asyncio
import sys
from dataclasses import dataclass, field
from typing import Optional

from logmesh.config import (
    MONITOR_POLL_INTERVAL,
    OP_CONNECTION_REQUEST,
    WELCOME_MESSAGE,
)
from logmesh.errors import ConfigurationError, ConflictIgnored, RemoteUnavailable
from logmesh.fees import format_fee_summary, with_exemption
from logmesh.models import (
    Connection,
    ConnectionRequestInfo,
    FeeSchedule,
    LifecycleState,
    ProfileInfo,
    StreamMessage,
    utc_iso,
)
from logmesh.network.stream import ConnectionAcceptor, ProfileDirectory, StreamAccessor
from logmesh.protocol import build_chat_message
from logmesh.reconcile import ReconciliationEngine
from logmesh.state import ConnectionStore


# =============================================================================
# Report
# =============================================================================

@dataclass
class MonitorReport:
    """What one monitoring run saw and did."""
    duration: float
    accept_all: bool = False
    found: int = 0
    accepted: int = 0
    skipped: int = 0
    errors: int = 0
    discovered: list[ConnectionRequestInfo] = field(default_factory=list)
    accepted_connections: list[Connection] = field(default_factory=list)
    fee_schedule: Optional[FeeSchedule] = None
    already_running: bool = False

    def summary(self) -> str:
        seconds = int(self.duration)
        if self.already_running:
            return "Already monitoring for connection requests. Wait for the current run to finish."
        if self.found == 0:
            return f"No connection requests received during the {seconds} second monitoring period."
        text = (
            f"Monitored for {seconds} seconds. Found {self.found} connection requests, "
            f"accepted {self.accepted} connections, skipped {self.skipped} existing connections"
            f"{format_fee_summary(self.fee_schedule) if self.accepted else ''}."
        )
        if not self.accept_all and self.discovered:
            text += (
                f" {len(self.discovered)} request(s) are waiting. "
                "To accept them, call this tool again with accept_all=true."
            )
        return text


# =============================================================================
# Monitor
# =============================================================================

class AcceptanceMonitor:
    """Owns the inbound high-water mark and the 'already monitoring' flag."""

    def __init__(self, store: ConnectionStore, engine: ReconciliationEngine,
                 streams: StreamAccessor, acceptor: ConnectionAcceptor,
                 profiles: ProfileDirectory, poll_interval: float = MONITOR_POLL_INTERVAL,
                 welcome_message: str = WELCOME_MESSAGE):
        self.store = store
        self.engine = engine
        self.streams = streams
        self.acceptor = acceptor
        self.profiles = profiles
        self.poll_interval = poll_interval
        self.welcome_message = welcome_message
        self.last_sequence_number = 0
        self._running = False
        self._stop = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """End a running run() at the next tick boundary."""
        self._stop.set()

    def reset(self) -> None:
        """Forget the inbound high-water mark (after an identity switch)."""
        self.last_sequence_number = 0

    # -- per-request ----------------------------------------------------------

    def _claim(self, msg: StreamMessage) -> str:
        key = self.store.request_key(msg.sequence_number)
        if self.store.is_request_processed(key):
            raise ConflictIgnored(key)
        return key

    async def _profile(self, agent_id: str) -> Optional[ProfileInfo]:
        try:
            return await self.profiles.get_profile(agent_id)
        except Exception as e:
            print(f"[LogMesh] Profile fetch failed for {agent_id}: {e}", file=sys.stderr)
            return None

    async def accept(self, msg: StreamMessage, fee_schedule: Optional[FeeSchedule] = None) -> Connection:
        """Accept one request and record the established connection.

        The request is claimed before the acceptor is called and released if
        the call fails. Raises ConflictIgnored when it is already claimed.
        """
        agent = self.engine.local_agent()
        key = self.store.request_key(msg.sequence_number)
        if not self.store.claim_request(key):
            raise ConflictIgnored(key)
        requester = msg.author_id
        fees = with_exemption(fee_schedule, requester)
        try:
            stream_id = await self.acceptor.accept_request(
                agent.inbound_stream_id, requester, msg.sequence_number, fees
            )
            if not stream_id:
                raise RemoteUnavailable("accept", requester, "no channel stream id returned")
        except Exception:
            self.store.release_request(key)
            raise

        profile = await self._profile(requester)
        conn = self.store.upsert(Connection(
            stream_id=stream_id,
            remote_party_id=requester,
            lifecycle_state=LifecycleState.ESTABLISHED,
            remote_display_name=profile.display_name if profile else None,
            remote_inbound_stream_id=msg.author_inbound_stream_id
            or (profile.inbound_stream_id if profile else None),
            request_id=msg.sequence_number,
            created_at=utc_iso(),
            profile_info=profile,
            fee_schedule=fees,
            memo=msg.memo,
        ))
        print(f"[LogMesh] Accepted connection request #{msg.sequence_number} from {requester} "
              f"-> {stream_id}{format_fee_summary(fees)}", file=sys.stderr)
        if self.welcome_message:
            await self._send_welcome(conn)
        return conn

    async def _send_welcome(self, conn: Connection) -> None:
        """Greet a new channel, but only while it has no history."""
        agent = self.store.current_agent
        try:
            history = await self.streams.read_all(conn.stream_id)
            if history:
                return
            text = self.welcome_message.format(name=agent.name, remote=conn.remote_display_name)
            await self.streams.append(
                conn.stream_id, build_chat_message(agent, text), memo="Welcome message"
            )
        except Exception as e:
            print(f"[LogMesh] Welcome message to {conn.stream_id} failed: {e}", file=sys.stderr)

    # -- ticks ----------------------------------------------------------------

    async def tick(self, accept_all: bool = False, target_party_id: Optional[str] = None,
                   fee_schedule: Optional[FeeSchedule] = None,
                   report: Optional[MonitorReport] = None) -> MonitorReport:
        """One polling pass over new inbound records."""
        report = report or MonitorReport(duration=0, accept_all=accept_all, fee_schedule=fee_schedule)
        agent = self.engine.local_agent()

        try:
            await self.engine.reconcile(include_details=False)
        except ConfigurationError:
            raise
        except Exception as e:
            print(f"[LogMesh] Connection refresh failed: {e}", file=sys.stderr)

        try:
            records = await self.streams.read_all(agent.inbound_stream_id)
        except Exception as e:
            print(f"[LogMesh] Could not read inbound log {agent.inbound_stream_id}: {e}", file=sys.stderr)
            report.errors += 1
            return report

        new = [m for m in records if m.sequence_number > self.last_sequence_number]
        if new:
            self.last_sequence_number = max(m.sequence_number for m in new)

        for msg in sorted(new, key=lambda m: m.sequence_number):
            if msg.op != OP_CONNECTION_REQUEST:
                continue
            report.found += 1
            try:
                key = self._claim(msg)
            except ConflictIgnored:
                report.skipped += 1
                continue

            requester = msg.author_id
            if not requester:
                self.store.mark_request_processed(key)
                continue
            if target_party_id and requester != target_party_id:
                continue
            if requester in self.store.established_parties():
                self.store.mark_request_processed(key)
                report.skipped += 1
                continue

            if not accept_all:
                report.discovered.append(ConnectionRequestInfo(
                    request_id=msg.sequence_number,
                    requester_id=requester,
                    requester_name=f"Agent {requester}",
                    timestamp=msg.timestamp,
                    memo=msg.memo,
                ))
                print(f"[LogMesh] Connection request #{msg.sequence_number} from {requester} "
                      f"awaiting a decision", file=sys.stderr)
                continue

            try:
                conn = await self.accept(msg, fee_schedule)
            except ConflictIgnored:
                report.skipped += 1
                continue
            except Exception as e:
                print(f"[LogMesh] Failed to accept request #{msg.sequence_number} from {requester}: {e}",
                      file=sys.stderr)
                report.errors += 1
                continue
            report.accepted += 1
            report.accepted_connections.append(conn)

        return report

    async def run(self, duration: float, accept_all: bool = False,
                  target_party_id: Optional[str] = None,
                  fee_schedule: Optional[FeeSchedule] = None) -> MonitorReport:
        """Poll every poll_interval seconds until duration elapses or stop() is called."""
        if self._running:
            return MonitorReport(duration=duration, already_running=True)
        self.engine.local_agent()

        self._running = True
        self._stop.clear()
        report = MonitorReport(duration=duration, accept_all=accept_all, fee_schedule=fee_schedule)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration
        try:
            while not self._stop.is_set():
                try:
                    await self.tick(accept_all, target_party_id, fee_schedule, report)
                except ConfigurationError:
                    raise
                except Exception as e:
                    print(f"[LogMesh] Monitor tick error: {e}", file=sys.stderr)
                    report.errors += 1
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=min(self.poll_interval, remaining))
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
        return report


async def acceptance_loop(monitor: AcceptanceMonitor, accept_all: bool = True,
                          fee_schedule: Optional[FeeSchedule] = None) -> None:
    """Background task: keep monitoring for the life of the process."""
    while True:
        try:
            await asyncio.sleep(monitor.poll_interval)
            report = await monitor.tick(accept_all=accept_all, fee_schedule=fee_schedule)
            if report.accepted:
                print(f"[LogMesh] Auto-accepted {report.accepted} connection(s)", file=sys.stderr)
        except asyncio.CancelledError:
            return
        except Exception as e:
            print(f"[LogMesh] Acceptance loop error: {e}", file=sys.stderr)
