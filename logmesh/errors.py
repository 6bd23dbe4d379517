"""
Exception hierarchy for LogMesh.

This is a leaf module with no internal dependencies.
"""

from typing import Optional


class LogMeshError(Exception):
    """Base exception for all LogMesh errors."""

    pass


class NotFound(LogMeshError):
    """Raised for an unknown connection token or request id."""

    def __init__(self, kind: str, identifier: str, message: Optional[str] = None):
        self.kind = kind
        self.identifier = identifier
        super().__init__(message or f"No {kind} matching '{identifier}'")


class RemoteUnavailable(LogMeshError):
    """Raised when a stream read, profile fetch or accept call fails.

    Always recoverable: callers degrade the affected item and move on.
    """

    def __init__(self, operation: str, target: str, reason: str = ""):
        self.operation = operation
        self.target = target
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"{operation} failed for {target}{detail}")


class HandoffTimeout(LogMeshError):
    """Raised when the reasoning hand-off exceeds its time budget."""

    def __init__(self, stream_id: str, sequence_number: int, timeout: float):
        self.stream_id = stream_id
        self.sequence_number = sequence_number
        self.timeout = timeout
        super().__init__(
            f"Handler timed out after {timeout:.0f}s on message #{sequence_number} ({stream_id})"
        )


class ConfigurationError(LogMeshError):
    """Raised for a missing identity or a malformed fee schedule. Never retried."""

    pass


class ConflictIgnored(LogMeshError):
    """Raised internally for a request that was already handled.

    Callers treat it as a skip, not a failure.
    """

    def __init__(self, request_key: str):
        self.request_key = request_key
        super().__init__(f"Request {request_key} already processed")
