"""
Collaborator interfaces — ABCs for the log service, the profile directory
and connection acceptance.

Depends on: errors, models
"""

from abc import ABC, abstractmethod
from typing import Optional

from logmesh.errors import NotFound
from logmesh.models import FeeSchedule, ProfileInfo, RegisteredAgent, StreamMessage


class StreamAccessor(ABC):
    """Append-only, sequence-numbered streams.

    Ordering is guaranteed within one stream only.
    """

    @abstractmethod
    async def append(self, stream_id: str, payload: str, memo: Optional[str] = None) -> int:
        """Append payload to stream_id and return its sequence number."""
        ...

    @abstractmethod
    async def read_all(self, stream_id: str) -> list[StreamMessage]:
        """Return every record of stream_id since genesis, ascending by sequence number."""
        ...

    @abstractmethod
    async def resolve_large_payload(self, reference: str) -> str:
        """Fetch the raw content behind an offloaded-payload reference."""
        ...

    @abstractmethod
    async def offload_payload(self, content: str) -> str:
        """Store content out of band and return a reference usable in a record."""
        ...


class ProfileDirectory(ABC):
    """Public agent profiles."""

    @abstractmethod
    async def get_profile(self, agent_id: str) -> ProfileInfo:
        """Return the profile of agent_id. Raises NotFound if it has none."""
        ...

    async def get_inbound_stream_id(self, agent_id: str) -> str:
        """Return the public inbound stream of agent_id. Raises NotFound if it has no profile."""
        profile = await self.get_profile(agent_id)
        if not profile.inbound_stream_id:
            raise NotFound("inbound stream", agent_id, f"Profile of {agent_id} lists no inbound stream")
        return profile.inbound_stream_id


class ConnectionAcceptor(ABC):
    """Creates the dedicated channel when a request is accepted."""

    @abstractmethod
    async def accept_request(self, local_inbound_stream_id: str, remote_agent_id: str,
                             request_id: int, fee_schedule: Optional[FeeSchedule] = None) -> str:
        """Accept request_id from remote_agent_id and return the new channel stream id."""
        ...


class LogService(StreamAccessor, ProfileDirectory, ConnectionAcceptor):
    """Base for backends that implement all three collaborators and can
    provision new identities."""

    @abstractmethod
    async def register_agent(self, agent: RegisteredAgent, profile: Optional[ProfileInfo] = None) -> RegisteredAgent:
        """Provision inbound/outbound streams and publish a profile for agent."""
        ...

    def use_identity(self, agent_id: str) -> None:
        """Attribute later appends to agent_id. Backends without a payer ignore it."""
