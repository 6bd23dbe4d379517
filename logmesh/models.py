"""
Data models — pure data classes with no business logic.

This is a leaf module with no internal dependencies.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utc_iso(ts: Optional[float] = None) -> str:
    """ISO-8601 UTC string for an epoch timestamp (now if omitted)."""
    if ts is None:
        return datetime.now(timezone.utc).isoformat()
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


def parse_iso(value: Optional[str]) -> Optional[float]:
    """Epoch seconds for an ISO-8601 string, or None if unparseable."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value).timestamp()
    except ValueError:
        return None


# =============================================================================
# Enums
# =============================================================================

class LifecycleState(str, Enum):
    PENDING_OUTBOUND = "pending-outbound"      # we asked, no confirmation seen
    NEEDS_CONFIRMATION = "needs-confirmation"  # they asked, we have not replied
    ESTABLISHED = "established"
    UNKNOWN = "unknown"


class AgentType(str, Enum):
    AI_AGENT = "ai_agent"
    PERSONAL = "personal"


PLACEHOLDER_STATES = (LifecycleState.PENDING_OUTBOUND, LifecycleState.NEEDS_CONFIRMATION)


# =============================================================================
# Identity & Profiles
# =============================================================================

@dataclass
class RegisteredAgent:
    """The local agent identity the node acts as."""
    name: str
    agent_id: str
    inbound_stream_id: Optional[str] = None
    outbound_stream_id: Optional[str] = None
    profile_stream_id: Optional[str] = None
    private_key: Optional[str] = None


@dataclass
class ProfileInfo:
    """Cached public metadata of a remote agent."""
    display_name: Optional[str] = None
    bio: Optional[str] = None
    avatar: Optional[str] = None
    agent_type: AgentType = AgentType.AI_AGENT
    inbound_stream_id: Optional[str] = None

    @property
    def type_label(self) -> str:
        return "AI Agent" if self.agent_type == AgentType.AI_AGENT else "Personal"


# =============================================================================
# Fees
# =============================================================================

@dataclass
class FeeRule:
    """A flat per-message fee. token_id=None means the native unit."""
    amount: float
    collector_id: str
    token_id: Optional[str] = None


@dataclass
class FeeSchedule:
    """Fee terms attached to an accepted connection."""
    rules: list[FeeRule] = field(default_factory=list)
    exempt_ids: list[str] = field(default_factory=list)

    def is_exempt(self, agent_id: str) -> bool:
        return agent_id in self.exempt_ids


# =============================================================================
# Log Records
# =============================================================================

@dataclass
class StreamMessage:
    """One record read from an append-only stream."""
    sequence_number: int
    timestamp: float                 # epoch seconds (consensus time)
    op: str
    author_id: str = ""
    author_inbound_stream_id: Optional[str] = None
    payload: str = ""
    correlation_id: Optional[int] = None        # request seq this record refers to
    connection_stream_id: Optional[str] = None  # channel created by a confirmation
    counterparty_id: Optional[str] = None       # the other agent named by the record
    counterparty_inbound_stream_id: Optional[str] = None
    memo: Optional[str] = None


# =============================================================================
# Connections
# =============================================================================

@dataclass
class Connection:
    """One negotiated or negotiating channel with a remote agent."""
    stream_id: str
    remote_party_id: str
    lifecycle_state: LifecycleState = LifecycleState.UNKNOWN
    remote_display_name: Optional[str] = None
    remote_inbound_stream_id: Optional[str] = None
    request_id: Optional[int] = None
    created_at: Optional[str] = None
    last_activity_at: Optional[str] = None
    profile_info: Optional[ProfileInfo] = None
    fee_schedule: Optional[FeeSchedule] = None
    memo: Optional[str] = None

    @property
    def is_placeholder(self) -> bool:
        return self.lifecycle_state in PLACEHOLDER_STATES

    @property
    def is_established(self) -> bool:
        return self.lifecycle_state == LifecycleState.ESTABLISHED


@dataclass
class ConnectionRequestInfo:
    """A connection request awaiting a decision from the local agent."""
    request_id: int
    requester_id: str
    requester_name: str
    timestamp: float
    direction: str = "incoming"      # "incoming" | "outgoing"
    memo: Optional[str] = None
    profile: Optional[ProfileInfo] = None
