"""
Log service collaborators — interfaces and the in-process / HTTP backends.

Depends on: network/stream, network/memory, network/transports
"""

from logmesh.network.memory import MemoryLogService
from logmesh.network.stream import (
    ConnectionAcceptor,
    LogService,
    ProfileDirectory,
    StreamAccessor,
)
from logmesh.network.transports.http import HttpLogClient

__all__ = [
    "ConnectionAcceptor",
    "HttpLogClient",
    "LogService",
    "MemoryLogService",
    "ProfileDirectory",
    "StreamAccessor",
]
