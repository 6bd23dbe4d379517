"""
All MCP tool definitions for LogMesh.

Every tool returns a JSON string; failures come back as
{"success": false, "error": ...} instead of raising.

Depends on: mcp/__init__, mcp/schemas, config, errors, fees, identity, models,
            node, protocol, state
"""

import json
from datetime import datetime, timezone
from typing import Optional

from mcp.server.fastmcp import Context

from logmesh.config import ENV_PREFIX, MAX_BIO_PREVIEW, NATIVE_FEE_UNIT
from logmesh.errors import ConflictIgnored, LogMeshError
from logmesh.fees import build_fee_schedule, format_fee_summary
from logmesh.identity import persist_agent_env, validate_agent_id
from logmesh.mcp import mcp
from logmesh.mcp.schemas import (
    AcceptRequestInput,
    CheckMessagesInput,
    ConnectionIdentifierInput,
    InitiateConnectionInput,
    ListConnectionsInput,
    ListPendingInput,
    MonitorInput,
    RegisterAgentInput,
    RejectRequestInput,
    RetrieveProfileInput,
    SendMessageInput,
    SwitchAgentInput,
)
from logmesh.models import Connection, ConnectionRequestInfo, ProfileInfo, RegisteredAgent
from logmesh.node import get_node
from logmesh.protocol import agent_to_dict, profile_to_dict
from logmesh.state import connection_to_dict


# =============================================================================
# Helper functions used only by MCP tools
# =============================================================================

def _error(e: Exception) -> str:
    return json.dumps({"success": False, "error": str(e)})


def _connection_json(conn: Connection, index: Optional[int] = None) -> dict:
    d = connection_to_dict(conn)
    if index is not None:
        d["index"] = index
    profile = conn.profile_info
    if profile is not None:
        d["profile_info"]["bio"] = (profile.bio or "")[:MAX_BIO_PREVIEW]
        d["type"] = profile.type_label
    return d


def _request_json(req: ConnectionRequestInfo) -> dict:
    return {
        "request_id": req.request_id,
        "direction": req.direction,
        "requester_id": req.requester_id,
        "requester_name": req.requester_name,
        "received_at": datetime.fromtimestamp(req.timestamp, tz=timezone.utc).isoformat() if req.timestamp else None,
        "memo": req.memo,
        "bio": (req.profile.bio or "")[:MAX_BIO_PREVIEW] if req.profile else None,
    }


def _fee_items(params) -> tuple[list[dict], list[dict]]:
    """Native and token fee dicts from a tool input; native_fee joins the native list."""
    native = [f.model_dump() for f in params.native_fees]
    if params.native_fee:
        native.append({"amount": params.native_fee})
    return native, [f.model_dump() for f in params.token_fees]


def _identity_json(agent: RegisteredAgent, env_file: Optional[str]) -> dict:
    if env_file:
        persist_agent_env(agent, env_file, ENV_PREFIX)
    return {"success": True, "agent": agent_to_dict(agent), "saved_to": env_file}


# =============================================================================
# Identity
# =============================================================================

@mcp.tool(
    name="logmesh_register_agent",
    annotations={
        "title": "Register Agent",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    }
)
async def register_agent(params: RegisterAgentInput, ctx: Context) -> str:
    """Provision a new identity (inbound and outbound streams plus a public profile).

    With switch=true (the default) this node acts as the new agent right away,
    dropping every connection of the previous identity. With env_file set,
    the LOGMESH_* variables are written there so a restart keeps the identity.
    """
    try:
        node = get_node()
        profile = ProfileInfo(display_name=params.name, bio=params.bio, agent_type=params.agent_type)
        agent = await node.register_agent(params.name, profile, switch=params.switch)
        return json.dumps({**_identity_json(agent, params.env_file), "active": params.switch})
    except (LogMeshError, OSError) as e:
        return _error(e)


@mcp.tool(
    name="logmesh_switch_agent",
    annotations={
        "title": "Switch Agent",
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
        "openWorldHint": False,
    }
)
async def switch_agent(params: SwitchAgentInput, ctx: Context) -> str:
    """Act as another provisioned identity. Connections of the current one are dropped."""
    err = validate_agent_id(params.agent_id)
    if err:
        return json.dumps({"success": False, "error": err})
    agent = RegisteredAgent(
        name=params.name or f"Agent {params.agent_id}",
        agent_id=params.agent_id,
        inbound_stream_id=params.inbound_stream_id,
        outbound_stream_id=params.outbound_stream_id,
    )
    try:
        get_node().switch_agent(agent)
        return json.dumps(_identity_json(agent, params.env_file))
    except (LogMeshError, OSError) as e:
        return _error(e)


@mcp.tool(
    name="logmesh_retrieve_profile",
    annotations={
        "title": "Retrieve Profile",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    }
)
async def retrieve_profile(params: RetrieveProfileInput, ctx: Context) -> str:
    """Fetch the public profile of any agent, connected or not."""
    try:
        profile = await get_node().retrieve_profile(params.agent_id)
    except LogMeshError as e:
        return _error(e)
    return json.dumps({
        "success": True,
        "agent_id": params.agent_id,
        "profile": profile_to_dict(profile),
        "type": profile.type_label,
    })


# =============================================================================
# Connections
# =============================================================================

@mcp.tool(
    name="logmesh_list_connections",
    annotations={
        "title": "List Connections",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    }
)
async def list_connections(params: ListConnectionsInput, ctx: Context) -> str:
    """List established and pending connections, refreshed from the logs.

    The `index` of each entry can be used as the identifier in other tools.
    """
    try:
        node = get_node()
        connections = await node.list_connections(include_details=params.include_details)
    except LogMeshError as e:
        return _error(e)
    return json.dumps({
        "success": True,
        "agent_id": node.agent.agent_id if node.agent else None,
        "count": len(connections),
        "connections": [_connection_json(c, i) for i, c in enumerate(connections, 1)],
    })


@mcp.tool(
    name="logmesh_get_connection",
    annotations={
        "title": "Get Connection",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    }
)
async def get_connection(params: ConnectionIdentifierInput, ctx: Context) -> str:
    """Look up one connection by list number, remote agent id or stream id."""
    try:
        conn = get_node().get_connection(params.identifier)
    except LogMeshError as e:
        return _error(e)
    return json.dumps({"success": True, "connection": _connection_json(conn)})


@mcp.tool(
    name="logmesh_initiate_connection",
    annotations={
        "title": "Initiate Connection",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    }
)
async def initiate_connection(params: InitiateConnectionInput, ctx: Context) -> str:
    """Send a connection request to another agent and wait for its confirmation.

    Returns status "connected" with the channel stream id once confirmed, or
    "pending" when the wait ran out (the request stays open).
    """
    try:
        conn = await get_node().initiate_connection(
            params.target_agent_id, memo=params.memo, wait_seconds=params.wait_seconds,
        )
    except LogMeshError as e:
        return _error(e)
    return json.dumps({
        "success": True,
        "status": "connected" if conn.is_established else "pending",
        "connection": _connection_json(conn),
    })


# =============================================================================
# Messages
# =============================================================================

@mcp.tool(
    name="logmesh_check_messages",
    annotations={
        "title": "Check Messages",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    }
)
async def check_messages(params: CheckMessagesInput, ctx: Context) -> str:
    """Show messages received on a connection since the last check.

    With latest_only=true, shows the most recent `count` messages instead.
    """
    try:
        digest = await get_node().check_new_messages(
            params.identifier, latest_only=params.latest_only, count=params.count,
        )
    except LogMeshError as e:
        return _error(e)
    return json.dumps({
        "success": True,
        "stream_id": digest.connection.stream_id,
        "count": len(digest.messages),
        "text": digest.render(),
    })


@mcp.tool(
    name="logmesh_send_message",
    annotations={
        "title": "Send Message",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    }
)
async def send_message(params: SendMessageInput, ctx: Context) -> str:
    """Send a message on an established connection."""
    try:
        conn, seq = await get_node().send_message(params.identifier, params.message, memo=params.memo)
    except LogMeshError as e:
        return _error(e)
    name = conn.remote_display_name or conn.remote_party_id
    return json.dumps({
        "success": True,
        "stream_id": conn.stream_id,
        "sequence_number": seq,
        "text": f"Message sent to {name} (Seq: {seq}).",
    })


# =============================================================================
# Requests
# =============================================================================

@mcp.tool(
    name="logmesh_monitor_connections",
    annotations={
        "title": "Monitor Connection Requests",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    }
)
async def monitor_connections(params: MonitorInput, ctx: Context) -> str:
    """Watch the inbound log for connection requests for `duration` seconds.

    With accept_all=true every new request is accepted, optionally with
    native and token fees. The requester itself is always exempt.
    """
    try:
        node = get_node()
        agent = node.engine.local_agent()
        native, tokens = _fee_items(params)
        fees = build_fee_schedule(
            native_fees=native,
            token_fees=tokens,
            exempt_ids=params.exempt_agent_ids,
            default_collector=params.default_collector_id,
            local_agent_id=agent.agent_id,
        )
        report = await node.monitor.run(
            params.duration,
            accept_all=params.accept_all,
            target_party_id=params.target_agent_id,
            fee_schedule=fees,
        )
    except LogMeshError as e:
        return _error(e)
    return json.dumps({
        "success": not report.already_running,
        "found": report.found,
        "accepted": report.accepted,
        "skipped": report.skipped,
        "errors": report.errors,
        "accepted_connections": [_connection_json(c) for c in report.accepted_connections],
        "waiting_requests": [_request_json(r) for r in report.discovered],
        "text": report.summary(),
    })


@mcp.tool(
    name="logmesh_stop_monitoring",
    annotations={
        "title": "Stop Monitoring",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    }
)
async def stop_monitoring(ctx: Context) -> str:
    """Stop a running logmesh_monitor_connections call at its next tick."""
    try:
        monitor = get_node().monitor
    except LogMeshError as e:
        return _error(e)
    was_running = monitor.is_running
    monitor.stop()
    return json.dumps({"success": True, "was_running": was_running})


@mcp.tool(
    name="logmesh_list_pending_requests",
    annotations={
        "title": "List Pending Requests",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    }
)
async def list_pending_requests(params: ListPendingInput, ctx: Context) -> str:
    """List unanswered connection requests, incoming and outgoing."""
    try:
        requests = await get_node().list_pending_requests(sort_by=params.sort_by.value, limit=params.limit)
    except LogMeshError as e:
        return _error(e)
    return json.dumps({
        "success": True,
        "count": len(requests),
        "requests": [_request_json(r) for r in requests],
    })


@mcp.tool(
    name="logmesh_accept_request",
    annotations={
        "title": "Accept Connection Request",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    }
)
async def accept_request(params: AcceptRequestInput, ctx: Context) -> str:
    """Accept one incoming connection request, optionally charging native and token fees."""
    native, tokens = _fee_items(params)
    try:
        conn = await get_node().accept_request(
            params.request_id,
            exempt_ids=params.exempt_agent_ids,
            default_collector=params.default_collector_id,
            native_fees=native,
            token_fees=tokens,
        )
    except ConflictIgnored:
        return json.dumps({"success": False, "error": f"Request #{params.request_id} was already handled."})
    except LogMeshError as e:
        return _error(e)
    name = conn.remote_display_name or conn.remote_party_id
    return json.dumps({
        "success": True,
        "connection": _connection_json(conn),
        "text": f"Connected to {name} on {conn.stream_id}{format_fee_summary(conn.fee_schedule)}.",
        "fee_unit": NATIVE_FEE_UNIT,
    })


@mcp.tool(
    name="logmesh_reject_request",
    annotations={
        "title": "Reject Connection Request",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    }
)
async def reject_request(params: RejectRequestInput, ctx: Context) -> str:
    """Reject an incoming connection request. Nothing is written to the logs."""
    try:
        conn = get_node().reject_request(params.request_id)
    except LogMeshError as e:
        return _error(e)
    return json.dumps({
        "success": True,
        "request_id": params.request_id,
        "requester_id": conn.remote_party_id,
    })
