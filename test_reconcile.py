#!/usr/bin/env python3
"""
Tests for LogMesh connection reconciliation.

Standalone async script — every log lives in an in-process MemoryLogService.

Usage:
    python3 test_reconcile.py
"""

import asyncio
import sys

from logmesh.errors import ConfigurationError
from logmesh.models import Connection, LifecycleState, ProfileInfo, RegisteredAgent, StreamMessage
from logmesh.network.memory import MemoryLogService
from logmesh.node import AgentNode
from logmesh.protocol import build_confirmation, build_connection_request, build_outbound_request
from logmesh.reconcile import build_connection_map, plan_connections
from logmesh.state import connection_to_dict

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

GREEN = "\033[92m"
RED = "\033[91m"
BOLD = "\033[1m"
RESET = "\033[0m"

results: list[tuple[str, bool, str]] = []


def report(name: str, passed: bool, detail: str = "") -> None:
    mark = f"{GREEN}✓{RESET}" if passed else f"{RED}✗{RESET}"
    print(f"  {mark} {name}")
    if detail and not passed:
        print(f"      {detail}")
    results.append((name, passed, detail))
    if not passed:
        raise AssertionError(f"{name}: {detail}")


async def register(service: MemoryLogService, name: str) -> RegisteredAgent:
    return await service.register_agent(
        RegisteredAgent(name=name, agent_id=""),
        ProfileInfo(display_name=name, bio=f"{name} test agent"),
    )


def make_node(service: MemoryLogService, agent: RegisteredAgent) -> AgentNode:
    return AgentNode.from_service(service, agent, retry_delay=0)


def by_state(connections: list[Connection], state: LifecycleState) -> list[Connection]:
    return [c for c in connections if c.lifecycle_state == state]


def describe(connections: list[Connection]) -> str:
    return ", ".join(f"{c.stream_id}[{c.lifecycle_state.value}]" for c in connections)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

async def test_pending_and_locally_confirmed() -> None:
    """An unconfirmed request stays pending; a locally confirmed one is established."""
    service = MemoryLogService()
    alice = await register(service, "Alice")
    bob = await register(service, "Bob")
    carol = await register(service, "Carol")
    node = make_node(service, alice)

    await node.initiate_connection(bob.agent_id, wait_seconds=0)
    to_carol = await node.initiate_connection(carol.agent_id, wait_seconds=0)
    channel = service.create_stream("channel")
    service.append_raw(alice.outbound_stream_id,
                       build_confirmation(alice, carol.agent_id, to_carol.request_id, channel))

    connections = await node.list_connections()
    pending = by_state(connections, LifecycleState.PENDING_OUTBOUND)
    established = by_state(connections, LifecycleState.ESTABLISHED)

    report("two connections", len(connections) == 2, describe(connections))
    report("bob is pending-outbound", len(pending) == 1 and pending[0].remote_party_id == bob.agent_id,
           describe(pending))
    report("carol is established on the channel",
           len(established) == 1 and established[0].stream_id == channel
           and established[0].remote_party_id == carol.agent_id, describe(established))
    report("profile attached", established[0].remote_display_name == "Carol", established[0].remote_display_name)
    report("pending placeholder id", pending[0].stream_id == f"pending:{bob.agent_id}:{pending[0].request_id}",
           pending[0].stream_id)


async def test_inbound_needs_confirmation() -> None:
    """An unanswered inbound request from an unknown party needs confirmation."""
    service = MemoryLogService()
    alice = await register(service, "Alice")
    quinn = await register(service, "Quinn")
    node = make_node(service, alice)

    for i in range(4):
        service.append_raw(alice.inbound_stream_id, f"noise {i}")
    seq = await service.append(alice.inbound_stream_id, build_connection_request(quinn, "hi"))

    connections = await node.list_connections()
    report("request landed at #5", seq == 5, str(seq))
    report("one connection", len(connections) == 1, describe(connections))
    conn = connections[0]
    report("needs-confirmation", conn.lifecycle_state == LifecycleState.NEEDS_CONFIRMATION)
    report("request id 5", conn.request_id == 5, str(conn.request_id))
    report("party is quinn", conn.remote_party_id == quinn.agent_id)
    report("remote inbound from operator id", conn.remote_inbound_stream_id == quinn.inbound_stream_id)
    report("memo carried", conn.memo == "hi")


async def test_remote_lookup() -> None:
    """Without a local confirmation the remote inbound log is searched, with retries."""
    service = MemoryLogService()
    alice = await register(service, "Alice")
    carol = await register(service, "Carol")
    node = make_node(service, alice)

    pending = await node.initiate_connection(carol.agent_id, wait_seconds=0)
    channel = await service.accept_request(carol.inbound_stream_id, alice.agent_id, pending.request_id)

    service.failing_streams.add(carol.inbound_stream_id)
    connections = await node.list_connections(include_details=False)
    report("unreadable remote log leaves it pending",
           by_state(connections, LifecycleState.PENDING_OUTBOUND) != [], describe(connections))

    service.failing_streams.discard(carol.inbound_stream_id)
    connections = await node.list_connections(include_details=False)
    established = by_state(connections, LifecycleState.ESTABLISHED)
    report("remote confirmation establishes", len(established) == 1 and established[0].stream_id == channel,
           describe(connections))
    report("pending placeholder collapsed", not by_state(connections, LifecycleState.PENDING_OUTBOUND),
           describe(connections))


async def test_correlation_by_counterparty() -> None:
    """A confirmation for the same request id but another party confirms nothing."""
    service = MemoryLogService()
    alice = await register(service, "Alice")
    bob = await register(service, "Bob")
    carol = await register(service, "Carol")
    node = make_node(service, alice)

    to_bob = await node.initiate_connection(bob.agent_id, wait_seconds=0)
    to_carol = await node.initiate_connection(carol.agent_id, wait_seconds=0)
    report("both requests share id 1", to_bob.request_id == to_carol.request_id == 1,
           f"{to_bob.request_id}, {to_carol.request_id}")

    channel = await service.accept_request(carol.inbound_stream_id, alice.agent_id, to_carol.request_id)
    # A confirmation naming carol in alice's own log must not confirm the bob request
    service.append_raw(alice.outbound_stream_id,
                       build_confirmation(alice, carol.agent_id, to_carol.request_id, channel))

    connections = await node.list_connections(include_details=False)
    bob_conn = [c for c in connections if c.remote_party_id == bob.agent_id]
    carol_conn = [c for c in connections if c.remote_party_id == carol.agent_id]
    report("bob still pending", len(bob_conn) == 1 and bob_conn[0].lifecycle_state == LifecycleState.PENDING_OUTBOUND,
           describe(bob_conn))
    report("carol established", len(carol_conn) == 1 and carol_conn[0].is_established, describe(carol_conn))


async def test_idempotent() -> None:
    """Two passes without new log entries give identical snapshots."""
    service = MemoryLogService()
    alice = await register(service, "Alice")
    bob = await register(service, "Bob")
    carol = await register(service, "Carol")
    quinn = await register(service, "Quinn")
    node = make_node(service, alice)

    await node.initiate_connection(bob.agent_id, wait_seconds=0)
    to_carol = await node.initiate_connection(carol.agent_id, wait_seconds=0)
    await service.accept_request(carol.inbound_stream_id, alice.agent_id, to_carol.request_id)
    await service.append(alice.inbound_stream_id, build_connection_request(quinn))

    first = [connection_to_dict(c) for c in await node.list_connections()]
    second = [connection_to_dict(c) for c in await node.list_connections()]
    report("three connections", len(first) == 3, str(first))
    report("snapshots identical", first == second)


async def test_single_established_per_party() -> None:
    """Two confirmed requests to one party yield one established connection."""
    service = MemoryLogService()
    alice = await register(service, "Alice")
    bob = await register(service, "Bob")
    node = make_node(service, alice)

    first = await node.initiate_connection(bob.agent_id, wait_seconds=0)
    first_channel = await service.accept_request(bob.inbound_stream_id, alice.agent_id, first.request_id)
    # Second request appended behind the store's back
    second_seq = await service.append(bob.inbound_stream_id, build_connection_request(alice))
    await service.append(alice.outbound_stream_id,
                         build_outbound_request(alice, bob.agent_id, bob.inbound_stream_id, second_seq))
    second_channel = await service.accept_request(bob.inbound_stream_id, alice.agent_id, second_seq)

    connections = await node.list_connections(include_details=False)
    established = by_state(connections, LifecycleState.ESTABLISHED)
    report("one established", len(established) == 1, describe(connections))
    report("lowest request id wins", established[0].stream_id == first_channel, describe(established))

    # A stream already established in the store keeps winning
    fresh = make_node(service, alice)
    fresh.store.upsert(Connection(stream_id=second_channel, remote_party_id=bob.agent_id,
                                  lifecycle_state=LifecycleState.ESTABLISHED, request_id=second_seq))
    connections = await fresh.list_connections(include_details=False)
    established = by_state(connections, LifecycleState.ESTABLISHED)
    report("stored stream wins", len(established) == 1 and established[0].stream_id == second_channel,
           describe(connections))


async def test_crossed_requests() -> None:
    """Two agents that request and accept each other keep no stale pending request."""
    service = MemoryLogService()
    alice = await register(service, "Alice")
    bob = await register(service, "Bob")
    na = make_node(service, alice)
    nb = make_node(service, bob)
    service.append_raw(bob.inbound_stream_id, "noise")
    service.append_raw(bob.inbound_stream_id, "noise")

    to_bob = await na.initiate_connection(bob.agent_id, wait_seconds=0)
    to_alice = await nb.initiate_connection(alice.agent_id, wait_seconds=0)
    report("distinct request ids", (to_bob.request_id, to_alice.request_id) == (3, 1),
           f"{to_bob.request_id}, {to_alice.request_id}")

    await na.accept_request(to_alice.request_id)
    await nb.accept_request(to_bob.request_id)

    for node, other in ((na, bob), (nb, alice)):
        conns = await node.list_connections()
        name = node.agent.name
        report(f"{name}: no pending request left", not by_state(conns, LifecycleState.PENDING_OUTBOUND),
               describe(conns))
        established = [c for c in by_state(conns, LifecycleState.ESTABLISHED) if c.remote_party_id == other.agent_id]
        report(f"{name}: one established connection", len(established) == 1 and len(conns) == 1, describe(conns))


async def test_needs_confirmation_suppressed_when_established() -> None:
    """A duplicate inbound request from an established party is not offered again."""
    service = MemoryLogService()
    alice = await register(service, "Alice")
    bob = await register(service, "Bob")
    node = make_node(service, alice)

    seq = await service.append(alice.inbound_stream_id, build_connection_request(bob))
    await service.accept_request(alice.inbound_stream_id, bob.agent_id, seq)
    await service.append(alice.inbound_stream_id, build_connection_request(bob))

    connections = await node.list_connections(include_details=False)
    report("only the established connection", len(connections) == 1 and connections[0].is_established,
           describe(connections))


async def test_degraded_reads() -> None:
    """Profile and log failures degrade items instead of aborting the pass."""
    service = MemoryLogService()
    alice = await register(service, "Alice")
    bob = await register(service, "Bob")
    quinn = await register(service, "Quinn")
    node = make_node(service, alice)

    await node.initiate_connection(bob.agent_id, wait_seconds=0)
    await service.append(alice.inbound_stream_id, build_connection_request(quinn))

    service.failing_profiles.add(quinn.agent_id)
    connections = await node.list_connections()
    quinn_conn = [c for c in connections if c.remote_party_id == quinn.agent_id][0]
    report("profile failure falls back to placeholder name",
           quinn_conn.remote_display_name == f"Agent {quinn.agent_id}", quinn_conn.remote_display_name)

    service.failing_streams.add(alice.outbound_stream_id)
    connections = await node.list_connections()
    report("outbound read failure keeps inbound results",
           any(c.remote_party_id == quinn.agent_id for c in connections), describe(connections))


async def test_structural_errors() -> None:
    """Missing identity or missing stream ids abort with ConfigurationError."""
    service = MemoryLogService()
    node = AgentNode.from_service(service, None)
    try:
        await node.list_connections()
        report("no identity raises", False, "no exception")
    except ConfigurationError:
        report("no identity raises", True)

    node.switch_agent(RegisteredAgent(name="Broken", agent_id="0.0.42", inbound_stream_id="0.0.43"))
    try:
        await node.list_connections()
        report("missing outbound stream raises", False, "no exception")
    except ConfigurationError:
        report("missing outbound stream raises", True)


async def test_pure_planning() -> None:
    """The matcher works on plain snapshots without any log service."""
    def msg(seq, op, **kw):
        return StreamMessage(sequence_number=seq, timestamp=1000.0 + seq, op=op, **kw)

    outbound = [
        msg(1, "connection_request", author_id="0.0.1", correlation_id=4, counterparty_id="0.0.7"),
        msg(2, "connection_request", author_id="0.0.1", counterparty_id="0.0.8"),
        msg(3, "connection_created", author_id="0.0.1", correlation_id=4,
            counterparty_id="0.0.7", connection_stream_id="0.0.70"),
    ]
    inbound = [msg(9, "connection_request", author_id="0.0.9")]
    conn_map = build_connection_map(outbound, inbound)
    report("request keyed by party and correlation id",
           set(conn_map.outbound_requests) == {("0.0.7", 4), ("0.0.8", 2)},
           str(sorted(conn_map.outbound_requests)))

    remote = {("0.0.8", 2): msg(5, "connection_created", author_id="0.0.8", correlation_id=2,
                     counterparty_id="0.0.1", connection_stream_id="0.0.80")}
    planned = plan_connections(conn_map, remote)
    states = {c.remote_party_id: (c.lifecycle_state, c.stream_id) for c in planned}
    report("local confirmation", states["0.0.7"] == (LifecycleState.ESTABLISHED, "0.0.70"), str(states))
    report("remote confirmation", states["0.0.8"] == (LifecycleState.ESTABLISHED, "0.0.80"), str(states))
    report("inbound needs confirmation",
           states["0.0.9"] == (LifecycleState.NEEDS_CONFIRMATION, "inbound:0.0.9:9"), str(states))
    report("created_at from the confirmation record",
           [c for c in planned if c.remote_party_id == "0.0.7"][0].created_at.startswith("1970-01-01T00:16:43"))


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

async def main() -> None:
    print(f"\n{BOLD}LogMesh Reconciliation Tests{RESET}\n")

    tests = [
        ("1. Pending and locally confirmed requests", test_pending_and_locally_confirmed),
        ("2. Inbound request needs confirmation", test_inbound_needs_confirmation),
        ("3. Remote confirmation lookup", test_remote_lookup),
        ("4. Correlation by counterparty", test_correlation_by_counterparty),
        ("5. Idempotence", test_idempotent),
        ("6. One established connection per party", test_single_established_per_party),
        ("7. Duplicate inbound request suppressed", test_needs_confirmation_suppressed_when_established),
        ("8. Degraded reads", test_degraded_reads),
        ("9. Structural errors", test_structural_errors),
        ("10. Pure planning", test_pure_planning),
        ("11. Crossed requests", test_crossed_requests),
    ]

    for label, test_fn in tests:
        print(f"\n{BOLD}{label}{RESET}")
        try:
            await test_fn()
        except AssertionError:
            pass
        except Exception as e:
            print(f"  {RED}✗{RESET} {label}\n      EXCEPTION: {e}")
            results.append((label, False, f"EXCEPTION: {e}"))

    # Summary
    passed = sum(1 for _, ok, _ in results if ok)
    total = len(results)
    print(f"\n{'─' * 40}")
    if passed == total:
        print(f"{GREEN}{BOLD}All {total} checks passed.{RESET}")
    else:
        failed = total - passed
        print(f"{RED}{BOLD}{failed}/{total} checks failed.{RESET}")

    sys.exit(0 if passed == total else 1)


if __name__ == "__main__":
    asyncio.run(main())
