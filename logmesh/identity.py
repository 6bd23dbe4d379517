"""
Agent identity — load the active agent from the environment, validate ids,
and write registered identities back to an env file.

Depends on: config, models
"""

import os
import re
import sys
from typing import Mapping, Optional

from logmesh.config import ENV_PREFIX, MAX_AGENT_ID_LENGTH
from logmesh.models import RegisteredAgent

AGENT_ID_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")

# env suffix -> RegisteredAgent attribute
_ENV_FIELDS = (
    ("_ACCOUNT_ID", "agent_id"),
    ("_INBOUND_STREAM_ID", "inbound_stream_id"),
    ("_OUTBOUND_STREAM_ID", "outbound_stream_id"),
    ("_PROFILE_STREAM_ID", "profile_stream_id"),
    ("_NAME", "name"),
)


# =============================================================================
# Validation
# =============================================================================

def validate_agent_id(agent_id: str) -> Optional[str]:
    """Validate a '<shard>.<realm>.<num>' id. Returns error string or None."""
    if not agent_id:
        return "Agent id is empty."
    if len(agent_id) > MAX_AGENT_ID_LENGTH:
        return f"Agent id exceeds maximum length ({MAX_AGENT_ID_LENGTH} chars)."
    if not AGENT_ID_PATTERN.match(agent_id):
        return f"Agent id must look like 0.0.1234, got '{agent_id}'."
    return None


# =============================================================================
# Environment
# =============================================================================

def load_agent_from_env(prefix: str = ENV_PREFIX,
                        environ: Optional[Mapping[str, str]] = None) -> Optional[RegisteredAgent]:
    """Build the active identity from <PREFIX>_* variables.

    Returns None when the account id or either stream id is missing.
    """
    env = os.environ if environ is None else environ
    values = {attr: env.get(prefix + suffix, "").strip() for suffix, attr in _ENV_FIELDS}
    if not values["agent_id"] or not values["inbound_stream_id"] or not values["outbound_stream_id"]:
        return None
    err = validate_agent_id(values["agent_id"])
    if err:
        print(f"[LogMesh] Ignoring {prefix}_ACCOUNT_ID: {err}", file=sys.stderr)
        return None
    return RegisteredAgent(
        name=values["name"] or f"Agent {values['agent_id']}",
        agent_id=values["agent_id"],
        inbound_stream_id=values["inbound_stream_id"],
        outbound_stream_id=values["outbound_stream_id"],
        profile_stream_id=values["profile_stream_id"] or None,
        private_key=env.get(prefix + "_PRIVATE_KEY", "").strip() or None,
    )


def agent_env_values(agent: RegisteredAgent, prefix: str = ENV_PREFIX,
                     include_private_key: bool = False) -> dict[str, str]:
    values = {}
    for suffix, attr in _ENV_FIELDS:
        value = getattr(agent, attr)
        if value:
            values[prefix + suffix] = value
    if include_private_key and agent.private_key:
        values[prefix + "_PRIVATE_KEY"] = agent.private_key
    return values


def persist_agent_env(agent: RegisteredAgent, path: str = ".env", prefix: str = ENV_PREFIX,
                      include_private_key: bool = False) -> None:
    """Update (or append) the agent's <PREFIX>_* lines in an env file, keeping other lines."""
    updates = agent_env_values(agent, prefix, include_private_key)
    lines: list[str] = []
    if os.path.exists(path):
        with open(path, "r") as f:
            lines = f.read().splitlines()

    written = set()
    out = []
    for line in lines:
        key = line.split("=", 1)[0].strip() if "=" in line and not line.lstrip().startswith("#") else None
        if key in updates:
            out.append(f"{key}={updates[key]}")
            written.add(key)
        else:
            out.append(line)
    for key, value in updates.items():
        if key not in written:
            out.append(f"{key}={value}")

    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        f.write("\n".join(out) + "\n")
    if include_private_key:
        os.chmod(tmp, 0o600)
    os.replace(tmp, path)
    print(f"[LogMesh] Saved identity {agent.agent_id} to {path}", file=sys.stderr)
