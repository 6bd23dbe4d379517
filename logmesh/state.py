"""
Connection state store and watermark tracking, plus optional JSON snapshots.

One ConnectionStore per agent identity. Nothing here is a process-wide
singleton: the composition root owns the instance and hands it to the
engine, the monitor and the delivery loop.

Depends on: models, protocol
"""

import copy
import fcntl
import json
import os
import sys
import threading
from dataclasses import fields
from typing import Optional

from logmesh.models import Connection, LifecycleState, RegisteredAgent
from logmesh.protocol import (
    fee_schedule_from_dict,
    fee_schedule_to_dict,
    profile_from_dict,
    profile_to_dict,
)


# =============================================================================
# Watermarks
# =============================================================================

class WatermarkTracker:
    """Per-key monotonic counters. Values only ever move forward."""

    def __init__(self) -> None:
        self._marks: dict[str, float] = {}

    def get(self, key: str, default: float = 0) -> float:
        return self._marks.get(key, default)

    def seen(self, key: str) -> bool:
        return key in self._marks

    def set_if_newer(self, key: str, value: float) -> bool:
        """Store value if strictly greater than the current one. Returns True if it moved."""
        current = self._marks.get(key)
        if current is not None and value <= current:
            return False
        self._marks[key] = value
        return True

    def clear(self) -> None:
        self._marks.clear()

    def as_dict(self) -> dict[str, float]:
        return dict(self._marks)


# =============================================================================
# Connection Store
# =============================================================================

class ConnectionStore:
    """Authoritative set of known connections for the active agent identity."""

    def __init__(self, agent: Optional[RegisteredAgent] = None) -> None:
        self._agent: Optional[RegisteredAgent] = None
        self._connections: dict[str, Connection] = {}
        self.dedup = WatermarkTracker()      # highest sequence number handed to delivery
        self.replay = WatermarkTracker()     # newest message timestamp handed to delivery
        self._processed_requests: set[str] = set()
        if agent is not None:
            self.set_current_agent(agent)

    # -- identity -------------------------------------------------------------

    @property
    def current_agent(self) -> Optional[RegisteredAgent]:
        return self._agent

    def set_current_agent(self, agent: Optional[RegisteredAgent]) -> None:
        """Switch identity. Drops every connection, watermark and processed id."""
        self._agent = agent
        self._connections.clear()
        self.dedup.clear()
        self.replay.clear()
        self._processed_requests.clear()

    # -- connections ----------------------------------------------------------

    def upsert(self, connection: Connection) -> Connection:
        """Merge by stream_id. Fields set to None in the update keep their stored value."""
        existing = self._connections.get(connection.stream_id)
        if existing is None:
            merged = copy.deepcopy(connection)
        else:
            merged = copy.deepcopy(existing)
            for f in fields(Connection):
                value = getattr(connection, f.name)
                if value is not None:
                    setattr(merged, f.name, copy.deepcopy(value))
            if (connection.lifecycle_state == LifecycleState.UNKNOWN
                    and existing.lifecycle_state != LifecycleState.UNKNOWN):
                merged.lifecycle_state = existing.lifecycle_state

        if not merged.remote_display_name:
            merged.remote_display_name = f"Agent {merged.remote_party_id}"

        self._connections[merged.stream_id] = merged
        if merged.is_established:
            self._collapse_placeholders(merged)
        return copy.deepcopy(merged)

    def _collapse_placeholders(self, established: Connection) -> None:
        # Same request id, or any unanswered inbound request from the same party
        for stream_id, conn in list(self._connections.items()):
            if not conn.is_placeholder or conn.remote_party_id != established.remote_party_id:
                continue
            if (conn.request_id == established.request_id
                    or conn.lifecycle_state == LifecycleState.NEEDS_CONFIRMATION):
                del self._connections[stream_id]

    def remove(self, stream_id: str) -> Optional[Connection]:
        return self._connections.pop(stream_id, None)

    def get(self, stream_id: str) -> Optional[Connection]:
        conn = self._connections.get(stream_id)
        return copy.deepcopy(conn) if conn is not None else None

    def list(self) -> list[Connection]:
        """Snapshot copy in insertion order."""
        return [copy.deepcopy(c) for c in self._connections.values()]

    def __len__(self) -> int:
        return len(self._connections)

    def get_by_identifier(self, token: str) -> Optional[Connection]:
        """Look up by 1-based index, then remote party id, then stream id."""
        token = (token or "").strip()
        if not token:
            return None
        conns = list(self._connections.values())
        if token.isdigit():
            index = int(token) - 1
            if 0 <= index < len(conns):
                return copy.deepcopy(conns[index])
        for conn in conns:
            if conn.remote_party_id == token:
                return copy.deepcopy(conn)
        for conn in conns:
            if conn.stream_id == token:
                return copy.deepcopy(conn)
        return None

    def established_parties(self) -> set[str]:
        return {c.remote_party_id for c in self._connections.values() if c.is_established}

    def established_for(self, remote_party_id: str) -> Optional[Connection]:
        for conn in self._connections.values():
            if conn.is_established and conn.remote_party_id == remote_party_id:
                return copy.deepcopy(conn)
        return None

    # -- dedup watermark ------------------------------------------------------

    def get_watermark(self, stream_id: str) -> int:
        return int(self.dedup.get(stream_id, 0))

    def set_watermark_if_newer(self, stream_id: str, value: int) -> bool:
        return self.dedup.set_if_newer(stream_id, value)

    # -- acceptance bookkeeping -----------------------------------------------

    def request_key(self, request_id: int) -> str:
        agent_id = self._agent.agent_id if self._agent else ""
        return f"{agent_id}:{request_id}"

    def mark_request_processed(self, key: str) -> None:
        self._processed_requests.add(key)

    def claim_request(self, key: str) -> bool:
        """Mark key processed unless it already is. Returns False when another caller holds it."""
        if key in self._processed_requests:
            return False
        self._processed_requests.add(key)
        return True

    def release_request(self, key: str) -> None:
        """Undo a claim after a failed accept."""
        self._processed_requests.discard(key)

    def is_request_processed(self, key: str) -> bool:
        return key in self._processed_requests

    @property
    def processed_requests(self) -> set[str]:
        return set(self._processed_requests)


# =============================================================================
# State File Path
# =============================================================================

_state_write_lock = threading.Lock()


def state_file_path(agent_id: str) -> str:
    """Return the snapshot path, keyed by agent id."""
    override = os.environ.get("LOGMESH_STATE_FILE")
    if override:
        os.makedirs(os.path.dirname(override) or ".", exist_ok=True)
        return override
    state_dir = os.path.join(os.path.expanduser("~"), ".logmesh", "state")
    os.makedirs(state_dir, exist_ok=True)
    safe_id = agent_id.replace("/", "_")
    return os.path.join(state_dir, f"{safe_id}.json")


# =============================================================================
# Serialization Helpers
# =============================================================================

def connection_to_dict(conn: Connection) -> dict:
    """Serialize a Connection to a JSON-safe dict."""
    return {
        "stream_id": conn.stream_id,
        "remote_party_id": conn.remote_party_id,
        "lifecycle_state": conn.lifecycle_state.value,
        "remote_display_name": conn.remote_display_name,
        "remote_inbound_stream_id": conn.remote_inbound_stream_id,
        "request_id": conn.request_id,
        "created_at": conn.created_at,
        "last_activity_at": conn.last_activity_at,
        "profile_info": profile_to_dict(conn.profile_info) if conn.profile_info else None,
        "fee_schedule": fee_schedule_to_dict(conn.fee_schedule),
        "memo": conn.memo,
    }


def connection_from_dict(d: dict) -> Connection:
    """Deserialize a Connection from a dict."""
    return Connection(
        stream_id=d["stream_id"],
        remote_party_id=d["remote_party_id"],
        lifecycle_state=LifecycleState(d.get("lifecycle_state", LifecycleState.UNKNOWN.value)),
        remote_display_name=d.get("remote_display_name"),
        remote_inbound_stream_id=d.get("remote_inbound_stream_id"),
        request_id=d.get("request_id"),
        created_at=d.get("created_at"),
        last_activity_at=d.get("last_activity_at"),
        profile_info=profile_from_dict(d["profile_info"]) if d.get("profile_info") else None,
        fee_schedule=fee_schedule_from_dict(d.get("fee_schedule")),
        memo=d.get("memo"),
    )


# =============================================================================
# Save / Load
# =============================================================================

def save_state(store: ConnectionStore, path: Optional[str] = None) -> None:
    """Persist connections, watermarks and processed request ids to disk."""
    agent = store.current_agent
    if agent is None:
        return

    data = {
        "agent_id": agent.agent_id,
        "connections": [connection_to_dict(c) for c in store.list()],
        "dedup_watermarks": store.dedup.as_dict(),
        "replay_watermarks": store.replay.as_dict(),
        "processed_requests": sorted(store.processed_requests),
    }

    path = path or state_file_path(agent.agent_id)
    tmp = path + ".tmp"
    with _state_write_lock:
        with open(tmp, "w") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        os.replace(tmp, path)


def load_state(store: ConnectionStore, path: Optional[str] = None) -> bool:
    """Restore a snapshot into store. Returns False if missing, unreadable or for another identity."""
    agent = store.current_agent
    if agent is None:
        return False
    path = path or state_file_path(agent.agent_id)
    if not os.path.exists(path):
        return False

    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        print(f"[LogMesh] Warning: could not load state file {path}: {e}", file=sys.stderr)
        return False

    if data.get("agent_id") != agent.agent_id:
        print(f"[LogMesh] Ignoring state file {path}: belongs to {data.get('agent_id')}", file=sys.stderr)
        return False

    for cd in data.get("connections", []):
        try:
            store.upsert(connection_from_dict(cd))
        except (KeyError, ValueError, TypeError) as e:
            print(f"[LogMesh] Skipping malformed connection in state file: {e}", file=sys.stderr)
    for stream_id, value in data.get("dedup_watermarks", {}).items():
        store.dedup.set_if_newer(stream_id, value)
    for stream_id, value in data.get("replay_watermarks", {}).items():
        store.replay.set_if_newer(stream_id, value)
    for key in data.get("processed_requests", []):
        store.mark_request_processed(key)
    return True
