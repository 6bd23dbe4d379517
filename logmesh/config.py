"""
Configuration constants, environment variables, and feature flags.

This is a leaf module with no internal dependencies.
"""

import os

# =============================================================================
# Protocol
# =============================================================================

PROTOCOL_ID = "hcs-10"
DEFAULT_PORT = 8200
DEFAULT_GATEWAY_PORT = 8250

OP_CONNECTION_REQUEST = "connection_request"
OP_CONNECTION_CREATED = "connection_created"
OP_MESSAGE = "message"

LARGE_PAYLOAD_SCHEME = "lm://"

# =============================================================================
# Limits
# =============================================================================

MAX_CONTENT_LENGTH = 65536   # 64 KB
LARGE_PAYLOAD_THRESHOLD = 1024   # inline payloads above this are offloaded
MAX_BIO_PREVIEW = 100
MAX_AGENT_ID_LENGTH = 128

# =============================================================================
# Reconciliation
# =============================================================================

RECONCILE_RETRIES = int(os.environ.get("LOGMESH_RECONCILE_RETRIES", "3"))
RECONCILE_RETRY_DELAY = float(os.environ.get("LOGMESH_RECONCILE_RETRY_DELAY", "0.5"))
RECONCILE_INTERVAL = 30          # seconds between background refreshes
PENDING_REFRESH_THROTTLE = 30    # seconds before list_pending_requests re-reconciles

# =============================================================================
# Acceptance Monitor
# =============================================================================

MONITOR_POLL_INTERVAL = float(os.environ.get("LOGMESH_MONITOR_POLL_INTERVAL", "3.0"))
MONITOR_DEFAULT_DURATION = int(os.environ.get("LOGMESH_MONITOR_DURATION", "60"))
MONITOR_MAX_DURATION = 600
AUTO_ACCEPT = os.environ.get("LOGMESH_AUTO_ACCEPT", "false").lower() == "true"
WELCOME_MESSAGE = os.environ.get("LOGMESH_WELCOME_MESSAGE", "")
NATIVE_FEE_UNIT = os.environ.get("LOGMESH_NATIVE_FEE_UNIT", "HBAR")

# =============================================================================
# Message Delivery
# =============================================================================

DELIVERY_POLL_INTERVAL = float(os.environ.get("LOGMESH_DELIVERY_POLL_INTERVAL", "5.0"))
DELIVERY_BATCH_SIZE = int(os.environ.get("LOGMESH_DELIVERY_BATCH_SIZE", "5"))
HANDLER_TIMEOUT = float(os.environ.get("LOGMESH_HANDLER_TIMEOUT", "120"))
REPLAY_LOOKBACK = 24 * 60 * 60   # seconds replayed on a cold start
DELIVERY_ENABLED = os.environ.get("LOGMESH_DELIVERY_ENABLED", "true").lower() == "true"

ERROR_REPLY_TEXT = (
    "Sorry, I encountered an error while processing your message. Please try again."
)

# =============================================================================
# Connection initiation
# =============================================================================

CONFIRMATION_WAIT_SECONDS = 60
CONFIRMATION_POLL_INTERVAL = 2.0

# =============================================================================
# Reasoning hand-off (subprocess agent)
# =============================================================================

AGENT_ENABLED = os.environ.get("LOGMESH_AGENT_ENABLED", "true").lower() == "true"
AGENT_COMMAND = os.environ.get("LOGMESH_AGENT_COMMAND", "claude")
AGENT_ARGS: list[str] = [
    a.strip() for a in os.environ.get(
        "LOGMESH_AGENT_ARGS", "-p"
    ).split(",") if a.strip()
]
AGENT_ENV_CLEANUP: list[str] = [
    v.strip() for v in os.environ.get(
        "LOGMESH_AGENT_ENV_CLEANUP", "CLAUDECODE,CLAUDE_CODE_ENTRYPOINT"
    ).split(",") if v.strip()
]

# =============================================================================
# Identity / Gateway
# =============================================================================

ENV_PREFIX = os.environ.get("LOGMESH_ENV_PREFIX", "LOGMESH_AGENT")
GATEWAY_URL = os.environ.get("LOGMESH_GATEWAY_URL", f"http://127.0.0.1:{DEFAULT_GATEWAY_PORT}").rstrip("/")
GATEWAY_TIMEOUT = 10.0
