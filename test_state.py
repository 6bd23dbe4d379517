#!/usr/bin/env python3
"""
Tests for the LogMesh connection store, watermarks, snapshots and identity env.

Standalone async script — no network, no real ports.

Usage:
    python3 test_state.py
"""

import asyncio
import os
import sys
import tempfile

from logmesh.errors import NotFound
from logmesh.identity import load_agent_from_env, persist_agent_env, validate_agent_id
from logmesh.models import (
    Connection,
    FeeRule,
    FeeSchedule,
    LifecycleState,
    ProfileInfo,
    RegisteredAgent,
)
from logmesh.network.memory import MemoryLogService
from logmesh.node import AgentNode
from logmesh.state import ConnectionStore, WatermarkTracker, load_state, save_state

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


def make_agent(agent_id: str = "0.0.500", name: str = "Alice") -> RegisteredAgent:
    return RegisteredAgent(
        name=name,
        agent_id=agent_id,
        inbound_stream_id="0.0.501",
        outbound_stream_id="0.0.502",
    )


def make_temp_path(suffix: str = ".json") -> str:
    """Return a path to a fresh temp file that does not exist yet."""
    fd, path = tempfile.mkstemp(suffix=suffix, prefix="lm_test_")
    os.close(fd)
    os.unlink(path)
    return path


def established(stream_id: str, party: str, request_id: int = 1, **kw) -> Connection:
    return Connection(
        stream_id=stream_id,
        remote_party_id=party,
        lifecycle_state=LifecycleState.ESTABLISHED,
        request_id=request_id,
        **kw,
    )


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

async def test_upsert_merges_fields() -> None:
    """Fields present in an update win; absent (None) fields are preserved."""
    store = ConnectionStore(make_agent())
    store.upsert(established("0.0.900", "0.0.600", remote_display_name="Bob", memo="hello"))
    merged = store.upsert(Connection(stream_id="0.0.900", remote_party_id="0.0.600",
                                     last_activity_at="2026-01-01T00:00:00+00:00"))

    report("display name preserved", merged.remote_display_name == "Bob", merged.remote_display_name)
    report("memo preserved", merged.memo == "hello")
    report("new field applied", merged.last_activity_at == "2026-01-01T00:00:00+00:00")
    report("unknown state does not downgrade", merged.lifecycle_state == LifecycleState.ESTABLISHED,
           str(merged.lifecycle_state))
    report("still one record", len(store) == 1, str(len(store)))

    unnamed = store.upsert(established("0.0.901", "0.0.601"))
    report("missing name falls back to 'Agent <id>'", unnamed.remote_display_name == "Agent 0.0.601",
           unnamed.remote_display_name)


async def test_list_is_a_snapshot() -> None:
    """Mutating what list()/get() return never touches the store."""
    store = ConnectionStore(make_agent())
    store.upsert(established("0.0.900", "0.0.600", profile_info=ProfileInfo(display_name="Bob")))

    snap = store.list()
    snap[0].remote_party_id = "tampered"
    snap[0].profile_info.display_name = "tampered"
    fetched = store.get("0.0.900")
    fetched.lifecycle_state = LifecycleState.UNKNOWN

    stored = store.get("0.0.900")
    report("party id untouched", stored.remote_party_id == "0.0.600")
    report("nested profile untouched", stored.profile_info.display_name == "Bob")
    report("state untouched", stored.is_established)


async def test_identifier_precedence() -> None:
    """Index first, then remote party id, then stream id."""
    store = ConnectionStore(make_agent())
    # Party id "2" collides with the index of the second entry
    store.upsert(established("0.0.900", "2"))
    store.upsert(established("0.0.901", "0.0.601"))
    store.upsert(established("0.0.902", "0.0.900"))

    report("'2' resolves as index", store.get_by_identifier("2").stream_id == "0.0.901")
    report("party id lookup", store.get_by_identifier("0.0.601").stream_id == "0.0.901")
    report("party id beats stream id", store.get_by_identifier("0.0.900").stream_id == "0.0.902")
    report("stream id lookup", store.get_by_identifier("0.0.901").remote_party_id == "0.0.601")
    report("out-of-range index falls through to party", store.get_by_identifier("9") is None)
    report("empty token", store.get_by_identifier("  ") is None)

    node = AgentNode.from_service(MemoryLogService(), make_agent())
    try:
        node.get_connection("nobody")
        report("unknown token raises NotFound", False, "no exception")
    except NotFound as e:
        report("unknown token raises NotFound", "logmesh_list_connections" in str(e), str(e))


async def test_placeholder_collapse() -> None:
    """An established upsert removes matching placeholders for the same party."""
    store = ConnectionStore(make_agent())
    store.upsert(Connection(stream_id="pending:0.0.600:3", remote_party_id="0.0.600",
                            lifecycle_state=LifecycleState.PENDING_OUTBOUND, request_id=3))
    store.upsert(Connection(stream_id="inbound:0.0.600:7", remote_party_id="0.0.600",
                            lifecycle_state=LifecycleState.NEEDS_CONFIRMATION, request_id=7))
    store.upsert(Connection(stream_id="pending:0.0.601:3", remote_party_id="0.0.601",
                            lifecycle_state=LifecycleState.PENDING_OUTBOUND, request_id=3))

    store.upsert(established("0.0.900", "0.0.600", request_id=3))
    ids = {c.stream_id for c in store.list()}

    report("pending placeholder collapsed", "pending:0.0.600:3" not in ids, str(ids))
    report("needs-confirmation from same party collapsed", "inbound:0.0.600:7" not in ids, str(ids))
    report("other party untouched", "pending:0.0.601:3" in ids, str(ids))
    report("established present", "0.0.900" in ids)
    report("established_parties", store.established_parties() == {"0.0.600"})


async def test_watermark_monotonic() -> None:
    """Watermarks only move strictly forward."""
    tracker = WatermarkTracker()
    report("unseen key", not tracker.seen("s") and tracker.get("s") == 0)
    report("first set moves", tracker.set_if_newer("s", 5))
    report("lower value ignored", not tracker.set_if_newer("s", 3) and tracker.get("s") == 5)
    report("equal value ignored", not tracker.set_if_newer("s", 5))
    report("higher value moves", tracker.set_if_newer("s", 8) and tracker.get("s") == 8)

    store = ConnectionStore(make_agent())
    store.set_watermark_if_newer("0.0.900", 4)
    store.set_watermark_if_newer("0.0.900", 2)
    report("store dedup watermark", store.get_watermark("0.0.900") == 4, str(store.get_watermark("0.0.900")))


async def test_identity_switch_clears() -> None:
    """Switching identity drops connections, both watermarks and processed ids."""
    store = ConnectionStore(make_agent())
    store.upsert(established("0.0.900", "0.0.600"))
    store.set_watermark_if_newer("0.0.900", 4)
    store.replay.set_if_newer("0.0.900", 1000.0)
    store.mark_request_processed(store.request_key(7))
    report("request key namespaced by agent", store.request_key(7) == "0.0.500:7", store.request_key(7))

    store.set_current_agent(make_agent("0.0.700", "Carol"))
    report("connections cleared", len(store) == 0)
    report("dedup cleared", store.get_watermark("0.0.900") == 0)
    report("replay cleared", not store.replay.seen("0.0.900"))
    report("processed cleared", not store.processed_requests)
    report("new identity active", store.current_agent.agent_id == "0.0.700")


async def test_snapshot_roundtrip() -> None:
    """save_state/load_state restore connections and bookkeeping for the same agent only."""
    path = make_temp_path()
    try:
        store = ConnectionStore(make_agent())
        store.upsert(established(
            "0.0.900", "0.0.600", request_id=3,
            profile_info=ProfileInfo(display_name="Bob", bio="helper"),
            fee_schedule=FeeSchedule(rules=[FeeRule(amount=0.5, collector_id="0.0.500")],
                                     exempt_ids=["0.0.600"]),
        ))
        store.set_watermark_if_newer("0.0.900", 6)
        store.replay.set_if_newer("0.0.900", 1234.5)
        store.mark_request_processed(store.request_key(3))
        save_state(store, path)

        restored = ConnectionStore(make_agent())
        report("load returns True", load_state(restored, path))
        conn = restored.get("0.0.900")
        report("connection restored", conn is not None and conn.is_established)
        report("profile restored", conn.profile_info.display_name == "Bob")
        report("fee schedule restored", conn.fee_schedule.rules[0].amount == 0.5
               and conn.fee_schedule.is_exempt("0.0.600"))
        report("dedup restored", restored.get_watermark("0.0.900") == 6)
        report("replay restored", restored.replay.get("0.0.900") == 1234.5)
        report("processed restored", restored.is_request_processed("0.0.500:3"))

        other = ConnectionStore(make_agent("0.0.700", "Carol"))
        report("other identity ignores snapshot", not load_state(other, path) and len(other) == 0)

        report("missing file", not load_state(ConnectionStore(make_agent()), path + ".missing"))
    finally:
        if os.path.exists(path):
            os.unlink(path)


async def test_identity_env() -> None:
    """Identity loads from <PREFIX>_* variables and persists back to an env file."""
    env = {
        "TESTAGENT_ACCOUNT_ID": "0.0.800",
        "TESTAGENT_INBOUND_STREAM_ID": "0.0.801",
        "TESTAGENT_OUTBOUND_STREAM_ID": "0.0.802",
        "TESTAGENT_PRIVATE_KEY": "secret",
    }
    agent = load_agent_from_env("TESTAGENT", env)
    report("agent loaded", agent is not None and agent.agent_id == "0.0.800")
    report("default name", agent.name == "Agent 0.0.800", agent.name)
    report("private key loaded", agent.private_key == "secret")

    partial = dict(env)
    del partial["TESTAGENT_OUTBOUND_STREAM_ID"]
    report("missing stream id -> None", load_agent_from_env("TESTAGENT", partial) is None)
    report("malformed id rejected", validate_agent_id("alice") is not None)
    report("valid id accepted", validate_agent_id("0.0.1234") is None)

    path = make_temp_path(".env")
    try:
        with open(path, "w") as f:
            f.write("# comment\nOTHER=1\nTESTAGENT_ACCOUNT_ID=0.0.1\n")
        persist_agent_env(agent, path, prefix="TESTAGENT")
        with open(path) as f:
            text = f.read()
        report("existing line updated", "TESTAGENT_ACCOUNT_ID=0.0.800" in text and "0.0.1\n" not in text, text)
        report("other lines kept", "OTHER=1" in text and "# comment" in text)
        report("new keys appended", "TESTAGENT_INBOUND_STREAM_ID=0.0.801" in text)
        report("private key not written by default", "secret" not in text)

        reloaded = load_agent_from_env("TESTAGENT", dict(
            line.split("=", 1) for line in text.splitlines() if "=" in line and not line.startswith("#")
        ))
        report("persisted env loads back", reloaded.outbound_stream_id == "0.0.802")
    finally:
        if os.path.exists(path):
            os.unlink(path)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

async def main() -> None:
    print(f"\n{BOLD}LogMesh State Tests{RESET}\n")

    tests = [
        ("1. Upsert merge", test_upsert_merges_fields),
        ("2. Snapshot copies", test_list_is_a_snapshot),
        ("3. Identifier precedence", test_identifier_precedence),
        ("4. Placeholder collapse", test_placeholder_collapse),
        ("5. Watermark monotonicity", test_watermark_monotonic),
        ("6. Identity switch reset", test_identity_switch_clears),
        ("7. Snapshot save/load", test_snapshot_roundtrip),
        ("8. Identity env file", test_identity_env),
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
