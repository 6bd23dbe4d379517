"""
Pydantic input models for MCP tools.

Depends on: config, models
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict

from logmesh.config import (
    CONFIRMATION_WAIT_SECONDS,
    MAX_AGENT_ID_LENGTH,
    MAX_CONTENT_LENGTH,
    MONITOR_DEFAULT_DURATION,
    MONITOR_MAX_DURATION,
)
from logmesh.models import AgentType


class SortOrder(str, Enum):
    TIME_ASC = "time_asc"
    TIME_DESC = "time_desc"
    NAME_ASC = "name_asc"
    NAME_DESC = "name_desc"


class ListConnectionsInput(BaseModel):
    """List connections, refreshed from the logs."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    include_details: bool = Field(default=True, description="Fetch profiles and last activity for each connection")


class ConnectionIdentifierInput(BaseModel):
    """Look up one connection."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    identifier: str = Field(..., description="1-based list number, remote agent id, or channel stream id", min_length=1)


class CheckMessagesInput(BaseModel):
    """Read messages on an established connection."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    identifier: str = Field(..., description="1-based list number, remote agent id, or channel stream id", min_length=1)
    latest_only: bool = Field(default=False, description="Show the latest message(s) instead of only new ones")
    count: int = Field(default=1, ge=1, le=50, description="How many latest messages to show (latest_only only)")


class SendMessageInput(BaseModel):
    """Send a chat message on an established connection."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    identifier: str = Field(..., description="1-based list number, remote agent id, or channel stream id", min_length=1)
    message: str = Field(..., description="Message text", min_length=1, max_length=MAX_CONTENT_LENGTH)
    memo: Optional[str] = Field(default=None, description="Optional record memo", max_length=100)


class NativeFeeInput(BaseModel):
    """A flat fee in the native unit."""
    model_config = ConfigDict(extra="forbid")
    amount: float = Field(..., ge=0, description="Fee amount")
    collector_id: Optional[str] = Field(default=None, max_length=MAX_AGENT_ID_LENGTH,
                                        description="Account that collects the fee")


class TokenFeeInput(NativeFeeInput):
    """A flat fee in a token."""
    token_id: str = Field(..., min_length=1, max_length=MAX_AGENT_ID_LENGTH, description="Token id, e.g. 0.0.5678")


class MonitorInput(BaseModel):
    """Watch the inbound log for connection requests."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    duration: int = Field(default=MONITOR_DEFAULT_DURATION, ge=1, le=MONITOR_MAX_DURATION,
                          description="Seconds to monitor")
    accept_all: bool = Field(default=False, description="Accept every request seen")
    target_agent_id: Optional[str] = Field(default=None, description="Only consider requests from this agent",
                                           max_length=MAX_AGENT_ID_LENGTH)
    native_fee: Optional[float] = Field(default=None, ge=0, description="Connection fee in the native unit")
    native_fees: list[NativeFeeInput] = Field(default_factory=list, description="Further native fees")
    token_fees: list[TokenFeeInput] = Field(default_factory=list, description="Fees charged in a token")
    default_collector_id: Optional[str] = Field(default=None, max_length=MAX_AGENT_ID_LENGTH,
                                                description="Collector for fees that name none (default: this agent)")
    exempt_agent_ids: list[str] = Field(default_factory=list, description="Agents exempt from fees")


class InitiateConnectionInput(BaseModel):
    """Ask another agent to connect."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    target_agent_id: str = Field(..., description="Agent id, e.g. 0.0.1234", min_length=1, max_length=MAX_AGENT_ID_LENGTH)
    memo: Optional[str] = Field(default=None, description="Optional memo attached to the request", max_length=100)
    wait_seconds: int = Field(default=CONFIRMATION_WAIT_SECONDS, ge=0, le=MONITOR_MAX_DURATION,
                              description="How long to wait for confirmation (0 returns immediately)")


class ListPendingInput(BaseModel):
    """List unanswered connection requests."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    sort_by: SortOrder = Field(default=SortOrder.TIME_DESC, description="time_asc, time_desc, name_asc or name_desc")
    limit: Optional[int] = Field(default=None, ge=1, le=100, description="Maximum number of requests to show")


class AcceptRequestInput(BaseModel):
    """Accept a pending connection request."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    request_id: int = Field(..., ge=1, description="Request id from logmesh_list_pending_requests")
    native_fee: Optional[float] = Field(default=None, ge=0, description="Connection fee in the native unit")
    native_fees: list[NativeFeeInput] = Field(default_factory=list, description="Further native fees")
    token_fees: list[TokenFeeInput] = Field(default_factory=list, description="Fees charged in a token")
    default_collector_id: Optional[str] = Field(default=None, max_length=MAX_AGENT_ID_LENGTH,
                                                description="Collector for fees that name none (default: this agent)")
    exempt_agent_ids: list[str] = Field(default_factory=list, description="Agents exempt from fees")


class RejectRequestInput(BaseModel):
    """Reject a pending connection request."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    request_id: int = Field(..., ge=1, description="Request id from logmesh_list_pending_requests")


class RegisterAgentInput(BaseModel):
    """Provision a new agent identity with the log service."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    name: str = Field(..., description="Display name", min_length=1, max_length=100)
    bio: Optional[str] = Field(default=None, description="Public profile bio", max_length=1000)
    agent_type: AgentType = Field(default=AgentType.AI_AGENT, description="ai_agent or personal")
    switch: bool = Field(default=True, description="Act as the new agent straight away")
    env_file: Optional[str] = Field(default=None, description="Env file to write the new identity to")


class SwitchAgentInput(BaseModel):
    """Act as another, already provisioned identity."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    agent_id: str = Field(..., description="Agent id, e.g. 0.0.1234", min_length=1, max_length=MAX_AGENT_ID_LENGTH)
    inbound_stream_id: str = Field(..., description="The agent's inbound stream", min_length=1,
                                   max_length=MAX_AGENT_ID_LENGTH)
    outbound_stream_id: str = Field(..., description="The agent's outbound stream", min_length=1,
                                    max_length=MAX_AGENT_ID_LENGTH)
    name: Optional[str] = Field(default=None, description="Display name", max_length=100)
    env_file: Optional[str] = Field(default=None, description="Env file to write the identity to")


class RetrieveProfileInput(BaseModel):
    """Fetch another agent's public profile."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    agent_id: str = Field(..., description="Agent id, e.g. 0.0.1234", min_length=1, max_length=MAX_AGENT_ID_LENGTH)
