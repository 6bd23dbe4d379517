"""
Wire format of log records — build and parse the JSON envelopes appended
to inbound, outbound and channel streams.

Depends on: config, models
"""

import json
from typing import Optional

from logmesh.config import (
    LARGE_PAYLOAD_SCHEME,
    OP_CONNECTION_CREATED,
    OP_CONNECTION_REQUEST,
    OP_MESSAGE,
    PROTOCOL_ID,
)
from logmesh.models import (
    AgentType,
    FeeRule,
    FeeSchedule,
    ProfileInfo,
    RegisteredAgent,
    StreamMessage,
)


# =============================================================================
# Operator ids
# =============================================================================

def operator_id(agent: RegisteredAgent) -> str:
    """Return the '<inbound_stream>@<agent_id>' author tag for an agent."""
    return f"{agent.inbound_stream_id or ''}@{agent.agent_id}"


def parse_operator_id(value: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Split an operator id into (inbound_stream_id, agent_id)."""
    if not value:
        return None, None
    if "@" not in value:
        return None, value
    inbound, agent_id = value.rsplit("@", 1)
    return inbound or None, agent_id or None


# =============================================================================
# Builders
# =============================================================================

def _envelope(op: str, agent: RegisteredAgent, **extra) -> dict:
    record = {"p": PROTOCOL_ID, "op": op, "operator_id": operator_id(agent)}
    record.update({k: v for k, v in extra.items() if v is not None})
    return record


def build_connection_request(agent: RegisteredAgent, memo: Optional[str] = None) -> str:
    """Record appended to the target's inbound stream."""
    return json.dumps(_envelope(OP_CONNECTION_REQUEST, agent, m=memo))


def build_outbound_request(agent: RegisteredAgent, target_id: str,
                           target_inbound_stream_id: Optional[str],
                           request_id: int, memo: Optional[str] = None) -> str:
    """Record appended to our own outbound stream after a request was sent.

    request_id is the request's sequence number in the target's inbound stream.
    """
    return json.dumps(_envelope(
        OP_CONNECTION_REQUEST, agent,
        connection_request_id=request_id,
        connected_account_id=target_id,
        connected_inbound_topic_id=target_inbound_stream_id,
        m=memo,
    ))


def build_confirmation(agent: RegisteredAgent, counterparty_id: str, request_id: int,
                       connection_stream_id: str, memo: Optional[str] = None) -> str:
    """Record announcing that the channel for request_id now exists."""
    return json.dumps(_envelope(
        OP_CONNECTION_CREATED, agent,
        connection_request_id=request_id,
        connected_account_id=counterparty_id,
        connection_topic_id=connection_stream_id,
        m=memo,
    ))


def build_chat_message(agent: RegisteredAgent, data: str, memo: Optional[str] = None) -> str:
    """Application message appended to a channel stream."""
    return json.dumps(_envelope(OP_MESSAGE, agent, data=data, m=memo))


# =============================================================================
# Parsing
# =============================================================================

def _as_int(value) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_timestamp(value) -> float:
    """Accept epoch floats or '<seconds>.<nanos>' consensus strings."""
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value))
    except ValueError:
        return 0.0


def parse_record(raw: dict) -> StreamMessage:
    """Turn a stored record {sequence_number, consensus_timestamp, message} into a StreamMessage.

    Non-JSON bodies are kept as opaque payloads with op ''. A memo inside the
    envelope wins over the record-level memo.
    """
    body = raw.get("message", "")
    envelope: dict = {}
    if isinstance(body, dict):
        envelope = body
    elif isinstance(body, str):
        try:
            decoded = json.loads(body)
            if isinstance(decoded, dict):
                envelope = decoded
        except json.JSONDecodeError:
            envelope = {}

    inbound, author = parse_operator_id(envelope.get("operator_id"))
    correlation = _as_int(envelope.get("connection_request_id"))
    if correlation is None:
        correlation = _as_int(envelope.get("connection_id"))

    data = envelope.get("data")
    if data is None and not envelope:
        data = body if isinstance(body, str) else ""
    elif data is not None and not isinstance(data, str):
        data = json.dumps(data)

    return StreamMessage(
        sequence_number=int(raw.get("sequence_number", 0)),
        timestamp=parse_timestamp(raw.get("consensus_timestamp", 0)),
        op=envelope.get("op", ""),
        author_id=author or raw.get("payer_account_id", "") or "",
        author_inbound_stream_id=inbound,
        payload=data or "",
        correlation_id=correlation,
        connection_stream_id=envelope.get("connection_topic_id"),
        counterparty_id=envelope.get("connected_account_id"),
        counterparty_inbound_stream_id=envelope.get("connected_inbound_topic_id"),
        memo=envelope.get("m") or raw.get("memo") or None,
    )


# =============================================================================
# Payload helpers
# =============================================================================

def is_large_payload_reference(data: str) -> bool:
    return isinstance(data, str) and data.startswith(LARGE_PAYLOAD_SCHEME)


def unwrap_payload(data: str) -> str:
    """Unwrap a nested message envelope, returning the inner text.

    Some clients double-encode: the data field itself holds a full envelope.
    Plain JSON objects are pretty-printed; anything else is returned unchanged.
    """
    try:
        decoded = json.loads(data)
    except (json.JSONDecodeError, TypeError):
        return data
    if isinstance(decoded, dict):
        if decoded.get("p") == PROTOCOL_ID and decoded.get("op") == OP_MESSAGE:
            inner = decoded.get("data", "")
            return inner if isinstance(inner, str) else json.dumps(inner)
        return json.dumps(decoded, indent=2)
    return data


# =============================================================================
# Profiles & fee schedules (JSON shapes shared by the gateway and snapshots)
# =============================================================================

def profile_to_dict(profile: ProfileInfo) -> dict:
    return {
        "display_name": profile.display_name,
        "bio": profile.bio,
        "avatar": profile.avatar,
        "type": profile.agent_type.value,
        "inbound_stream_id": profile.inbound_stream_id,
    }


def profile_from_dict(d: dict) -> ProfileInfo:
    """Deserialize a profile. Accepts the alias/display_name and numeric type variants."""
    raw_type = d.get("type", d.get("agent_type", AgentType.AI_AGENT.value))
    if raw_type in (1, "1", AgentType.AI_AGENT.value):
        agent_type = AgentType.AI_AGENT
    else:
        agent_type = AgentType.PERSONAL
    return ProfileInfo(
        display_name=d.get("display_name") or d.get("alias"),
        bio=d.get("bio"),
        avatar=d.get("avatar") or d.get("profile_image"),
        agent_type=agent_type,
        inbound_stream_id=d.get("inbound_stream_id"),
    )


def fee_schedule_to_dict(schedule: Optional[FeeSchedule]) -> Optional[dict]:
    if schedule is None:
        return None
    return {
        "rules": [
            {"amount": r.amount, "collector_id": r.collector_id, "token_id": r.token_id}
            for r in schedule.rules
        ],
        "exempt_ids": list(schedule.exempt_ids),
    }


def fee_schedule_from_dict(d: Optional[dict]) -> Optional[FeeSchedule]:
    if not d:
        return None
    return FeeSchedule(
        rules=[
            FeeRule(amount=float(r["amount"]), collector_id=r["collector_id"], token_id=r.get("token_id"))
            for r in d.get("rules", [])
        ],
        exempt_ids=list(d.get("exempt_ids", [])),
    )


def agent_to_dict(agent: RegisteredAgent) -> dict:
    """Public fields only; the private key never leaves the process."""
    return {
        "name": agent.name,
        "agent_id": agent.agent_id,
        "inbound_stream_id": agent.inbound_stream_id,
        "outbound_stream_id": agent.outbound_stream_id,
        "profile_stream_id": agent.profile_stream_id,
    }


def agent_from_dict(d: dict) -> RegisteredAgent:
    return RegisteredAgent(
        name=d.get("name", ""),
        agent_id=d.get("agent_id", ""),
        inbound_stream_id=d.get("inbound_stream_id"),
        outbound_stream_id=d.get("outbound_stream_id"),
        profile_stream_id=d.get("profile_stream_id"),
    )
