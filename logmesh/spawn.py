"""
Reasoning hand-off — run an agent command per incoming message and use its
stdout as the reply.

Depends on: config, errors, models
"""

import asyncio
import os
import sys
from typing import Optional

from logmesh.config import AGENT_ARGS, AGENT_COMMAND, AGENT_ENV_CLEANUP
from logmesh.errors import ConfigurationError, RemoteUnavailable
from logmesh.models import Connection, StreamMessage


# =============================================================================
# Prompt Building
# =============================================================================

def build_agent_prompt(text: str, message: StreamMessage, conn: Connection) -> str:
    """Build the prompt for a spawned agent."""
    sender = conn.remote_display_name or conn.remote_party_id
    return f"""\
LOGMESH: You have received a message from {sender} ({conn.remote_party_id}) on connection {conn.stream_id}.

Message #{message.sequence_number}:
{text}

Answer with the reply text only. It will be posted back on the same connection.
Use logmesh_check_messages with identifier "{conn.remote_party_id}" if you need earlier context.
"""


# =============================================================================
# Subprocess handler
# =============================================================================

def kill_process(process: asyncio.subprocess.Process) -> None:
    """Terminate a child process that is still running."""
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass


class SubprocessHandler:
    """MessageHandler that runs AGENT_COMMAND with the prompt as its last argument."""

    def __init__(self, command: str = AGENT_COMMAND, args: Optional[list[str]] = None,
                 env_cleanup: Optional[list[str]] = None, cwd: Optional[str] = None):
        self.command = command
        self.args = list(AGENT_ARGS if args is None else args)
        self.env_cleanup = list(AGENT_ENV_CLEANUP if env_cleanup is None else env_cleanup)
        self.cwd = cwd or os.getcwd()

    def _env(self) -> dict:
        env = os.environ.copy()
        # The child must not start its own delivery loop
        env["LOGMESH_AGENT_ENABLED"] = "false"
        env["LOGMESH_DELIVERY_ENABLED"] = "false"
        for var in self.env_cleanup:
            env.pop(var, None)
        return env

    async def __call__(self, text: str, message: StreamMessage, conn: Connection) -> Optional[str]:
        prompt = build_agent_prompt(text, message, conn)
        try:
            process = await asyncio.create_subprocess_exec(
                self.command, *self.args, prompt,
                env=self._env(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
            )
        except FileNotFoundError as e:
            raise ConfigurationError(
                f"Agent command '{self.command}' not found. "
                f"Set LOGMESH_AGENT_COMMAND to the correct path."
            ) from e

        print(f"[LogMesh] Spawned agent PID {process.pid} for message #{message.sequence_number} "
              f"from {conn.remote_party_id}", file=sys.stderr)
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            kill_process(process)
            raise

        if process.returncode != 0:
            detail = stderr.decode(errors="replace").strip()[-200:]
            raise RemoteUnavailable("agent command", self.command,
                                    f"exit code {process.returncode}: {detail}")
        return stdout.decode(errors="replace").strip() or None
