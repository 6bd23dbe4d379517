"""
HTTP binding for the log service — talks to a LogMesh gateway with httpx.

Depends on: config, errors, models, protocol, network/stream
"""

from typing import Optional

import httpx

from logmesh.config import GATEWAY_TIMEOUT, GATEWAY_URL
from logmesh.errors import NotFound, RemoteUnavailable
from logmesh.models import FeeSchedule, ProfileInfo, RegisteredAgent, StreamMessage
from logmesh.network.stream import LogService
from logmesh.protocol import (
    agent_from_dict,
    agent_to_dict,
    fee_schedule_to_dict,
    parse_record,
    profile_from_dict,
    profile_to_dict,
)


def strip_base_url(url: str) -> str:
    """Strip a trailing slash or /api suffix from a gateway URL."""
    base = url.rstrip("/")
    if base.endswith("/api"):
        return base[:-len("/api")]
    return base


class HttpLogClient(LogService):
    """All three collaborators over the gateway's REST routes.

    A 404 becomes NotFound; any other HTTP or transport failure becomes
    RemoteUnavailable.
    """

    def __init__(self, base_url: str = GATEWAY_URL, timeout: float = GATEWAY_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 payer_id: str = ""):
        self.base_url = strip_base_url(base_url)
        self._timeout = timeout
        self._transport = transport
        self.payer_id = payer_id

    def use_identity(self, agent_id: str) -> None:
        self.payer_id = agent_id

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self._timeout, transport=self._transport)

    async def _request(self, method: str, path: str, kind: str, target: str,
                       json: Optional[dict] = None, params: Optional[dict] = None) -> dict:
        try:
            async with self._client() as client:
                resp = await client.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            raise RemoteUnavailable(f"{method} {path}", target, str(e)) from e
        if resp.status_code == 404:
            raise NotFound(kind, target)
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("error", resp.text)
            except ValueError:
                detail = resp.text
            raise RemoteUnavailable(f"{method} {path}", target, f"HTTP {resp.status_code}: {detail}")
        try:
            return resp.json()
        except ValueError as e:
            raise RemoteUnavailable(f"{method} {path}", target, "invalid JSON response") from e

    # -- streams --------------------------------------------------------------

    async def append(self, stream_id: str, payload: str, memo: Optional[str] = None) -> int:
        result = await self._request(
            "POST", f"/streams/{stream_id}/messages", "stream", stream_id,
            json={"payload": payload, "memo": memo, "payer": self.payer_id},
        )
        return int(result["sequence_number"])

    async def read_all(self, stream_id: str) -> list[StreamMessage]:
        result = await self._request("GET", f"/streams/{stream_id}/messages", "stream", stream_id)
        try:
            records = [parse_record(r) for r in result.get("messages", [])]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise RemoteUnavailable("read", stream_id, f"malformed record: {e}") from e
        records.sort(key=lambda m: m.sequence_number)
        return records

    async def offload_payload(self, content: str) -> str:
        result = await self._request("POST", "/payloads", "payload", "new", json={"content": content})
        return result["reference"]

    async def resolve_large_payload(self, reference: str) -> str:
        result = await self._request("GET", "/payloads", "payload", reference, params={"ref": reference})
        return result["content"]

    # -- profiles -------------------------------------------------------------

    async def get_profile(self, agent_id: str) -> ProfileInfo:
        result = await self._request("GET", f"/profiles/{agent_id}", "profile", agent_id)
        return profile_from_dict(result)

    async def register_agent(self, agent: RegisteredAgent, profile: Optional[ProfileInfo] = None) -> RegisteredAgent:
        body = {"agent": agent_to_dict(agent)}
        if profile is not None:
            body["profile"] = profile_to_dict(profile)
        result = await self._request("POST", "/agents", "agent", agent.agent_id or agent.name, json=body)
        registered = agent_from_dict(result)
        registered.private_key = agent.private_key
        return registered

    # -- acceptance -----------------------------------------------------------

    async def accept_request(self, local_inbound_stream_id: str, remote_agent_id: str,
                             request_id: int, fee_schedule: Optional[FeeSchedule] = None) -> str:
        result = await self._request(
            "POST", f"/streams/{local_inbound_stream_id}/accept", "stream", local_inbound_stream_id,
            json={
                "remote_agent_id": remote_agent_id,
                "request_id": request_id,
                "fee_schedule": fee_schedule_to_dict(fee_schedule),
            },
        )
        return result["stream_id"]
