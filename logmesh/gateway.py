"""
Reference log gateway — serves a MemoryLogService over HTTP so several
LogMesh nodes can share one set of streams. HttpLogClient is its client.

Depends on: config, errors, models, network/memory, protocol
"""

import os
import sys
from typing import Optional

import uvicorn
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, Router

from logmesh.config import DEFAULT_GATEWAY_PORT, MAX_CONTENT_LENGTH
from logmesh.errors import LogMeshError, NotFound
from logmesh.network.memory import MemoryLogService
from logmesh.protocol import (
    agent_from_dict,
    agent_to_dict,
    fee_schedule_from_dict,
    profile_from_dict,
    profile_to_dict,
)

_service: Optional[MemoryLogService] = None


def get_service() -> Optional[MemoryLogService]:
    return _service


def set_service(service: Optional[MemoryLogService]) -> None:
    global _service
    _service = service


async def _json_body(request: Request) -> Optional[dict]:
    try:
        data = await request.json()
    except Exception:
        return None
    return data if isinstance(data, dict) else None


def _not_found(e: NotFound) -> JSONResponse:
    return JSONResponse({"error": str(e)}, status_code=404)


# =============================================================================
# Streams
# =============================================================================

async def handle_read_messages(request: Request) -> JSONResponse:
    """Return every record of a stream, ascending by sequence number."""
    stream_id = request.path_params["stream_id"]
    try:
        records = get_service().raw_records(stream_id)
    except NotFound as e:
        return _not_found(e)
    except LogMeshError as e:
        return JSONResponse({"error": str(e)}, status_code=503)
    return JSONResponse({"stream_id": stream_id, "messages": records})


async def handle_append_message(request: Request) -> JSONResponse:
    """Append one record to a stream."""
    stream_id = request.path_params["stream_id"]
    data = await _json_body(request)
    if data is None:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    payload = data.get("payload")
    if not isinstance(payload, str) or not payload:
        return JSONResponse({"error": "Missing 'payload'"}, status_code=400)
    if len(payload) > MAX_CONTENT_LENGTH:
        return JSONResponse({"error": f"Payload exceeds {MAX_CONTENT_LENGTH} bytes"}, status_code=413)

    service = get_service()
    try:
        seq = await service.append_as(stream_id, payload, memo=data.get("memo"), payer=data.get("payer") or "")
    except NotFound as e:
        return _not_found(e)
    return JSONResponse({"stream_id": stream_id, "sequence_number": seq})


async def handle_create_stream(request: Request) -> JSONResponse:
    data = await _json_body(request) or {}
    stream_id = get_service().create_stream(
        memo=data.get("memo") or "",
        fee_schedule=fee_schedule_from_dict(data.get("fee_schedule")),
    )
    print(f"[LogMesh] Gateway: created stream {stream_id}", file=sys.stderr)
    return JSONResponse({"stream_id": stream_id}, status_code=201)


async def handle_accept(request: Request) -> JSONResponse:
    """Create the channel for an accepted request and record the confirmation."""
    inbound_stream_id = request.path_params["stream_id"]
    data = await _json_body(request)
    if data is None:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    remote_agent_id = data.get("remote_agent_id")
    request_id = data.get("request_id")
    if not remote_agent_id or not isinstance(request_id, int):
        return JSONResponse({"error": "Need 'remote_agent_id' and integer 'request_id'"}, status_code=400)

    try:
        channel = await get_service().accept_request(
            inbound_stream_id, remote_agent_id, request_id,
            fee_schedule_from_dict(data.get("fee_schedule")),
        )
    except NotFound as e:
        return _not_found(e)
    print(f"[LogMesh] Gateway: accepted #{request_id} on {inbound_stream_id} -> {channel}", file=sys.stderr)
    return JSONResponse({"stream_id": channel})


# =============================================================================
# Payloads
# =============================================================================

async def handle_get_payload(request: Request) -> JSONResponse:
    reference = request.query_params.get("ref", "")
    if not reference:
        return JSONResponse({"error": "Missing 'ref'"}, status_code=400)
    try:
        content = await get_service().resolve_large_payload(reference)
    except NotFound as e:
        return _not_found(e)
    return JSONResponse({"reference": reference, "content": content})


async def handle_put_payload(request: Request) -> JSONResponse:
    data = await _json_body(request)
    if data is None or not isinstance(data.get("content"), str):
        return JSONResponse({"error": "Missing 'content'"}, status_code=400)
    reference = await get_service().offload_payload(data["content"])
    return JSONResponse({"reference": reference}, status_code=201)


# =============================================================================
# Profiles & agents
# =============================================================================

async def handle_get_profile(request: Request) -> JSONResponse:
    agent_id = request.path_params["agent_id"]
    try:
        profile = await get_service().get_profile(agent_id)
    except NotFound as e:
        return _not_found(e)
    except LogMeshError as e:
        return JSONResponse({"error": str(e)}, status_code=503)
    return JSONResponse(profile_to_dict(profile))


async def handle_put_profile(request: Request) -> JSONResponse:
    agent_id = request.path_params["agent_id"]
    data = await _json_body(request)
    if data is None:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    get_service().publish_profile(agent_id, profile_from_dict(data))
    return JSONResponse({"agent_id": agent_id})


async def handle_register_agent(request: Request) -> JSONResponse:
    """Provision streams and a profile for a new or partially set-up agent."""
    data = await _json_body(request)
    if data is None or not isinstance(data.get("agent"), dict):
        return JSONResponse({"error": "Missing 'agent'"}, status_code=400)
    profile = profile_from_dict(data["profile"]) if isinstance(data.get("profile"), dict) else None
    agent = await get_service().register_agent(agent_from_dict(data["agent"]), profile)
    print(f"[LogMesh] Gateway: registered agent {agent.agent_id} "
          f"(inbound {agent.inbound_stream_id}, outbound {agent.outbound_stream_id})", file=sys.stderr)
    return JSONResponse(agent_to_dict(agent), status_code=201)


# =============================================================================
# App factory
# =============================================================================

def create_gateway_app(service: Optional[MemoryLogService] = None) -> Router:
    """Create the gateway ASGI app over service (a fresh MemoryLogService by default)."""
    set_service(service or MemoryLogService())
    return Router(
        routes=[
            Route("/streams", handle_create_stream, methods=["POST"]),
            Route("/streams/{stream_id}/messages", handle_read_messages, methods=["GET"]),
            Route("/streams/{stream_id}/messages", handle_append_message, methods=["POST"]),
            Route("/streams/{stream_id}/accept", handle_accept, methods=["POST"]),
            Route("/payloads", handle_get_payload, methods=["GET"]),
            Route("/payloads", handle_put_payload, methods=["POST"]),
            Route("/profiles/{agent_id}", handle_get_profile, methods=["GET"]),
            Route("/profiles/{agent_id}", handle_put_profile, methods=["PUT"]),
            Route("/agents", handle_register_agent, methods=["POST"]),
        ],
        redirect_slashes=False,
    )


def main() -> None:
    """Entry point for the standalone gateway."""
    port = int(os.environ.get("LOGMESH_GATEWAY_PORT", str(DEFAULT_GATEWAY_PORT)))
    host = os.environ.get("LOGMESH_GATEWAY_HOST", "127.0.0.1")
    app = create_gateway_app()
    print(f"[LogMesh] Log gateway listening on http://{host}:{port}", file=sys.stderr)
    uvicorn.run(app, host=host, port=port, log_level="warning")


if __name__ == "__main__":
    main()
