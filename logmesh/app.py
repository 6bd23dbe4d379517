"""
Application composition root — init_node(), create_app(), main entry point.

Depends on: config, fees, identity, monitor, node, reconcile, spawn, state,
            network/transports/http, mcp
"""

import asyncio
import contextlib
import os
import sys
from typing import Optional

import anyio
import uvicorn
from starlette.routing import Route, Router

from logmesh.config import (
    AGENT_COMMAND,
    AGENT_ENABLED,
    AUTO_ACCEPT,
    DEFAULT_PORT,
    DELIVERY_ENABLED,
    DELIVERY_POLL_INTERVAL,
    ENV_PREFIX,
    GATEWAY_URL,
    RECONCILE_INTERVAL,
)
from logmesh.errors import ConfigurationError
from logmesh.fees import build_fee_schedule
from logmesh.identity import load_agent_from_env
from logmesh.mcp import mcp
from logmesh.monitor import acceptance_loop
from logmesh.network.transports.http import HttpLogClient
from logmesh.node import AgentNode, get_node, set_node
from logmesh.reconcile import reconcile_loop
from logmesh.spawn import SubprocessHandler
from logmesh.state import load_state, save_state

import logmesh.mcp.tools  # noqa: F401  (registers the tools)


# =============================================================================
# Node initialization
# =============================================================================

def init_node() -> AgentNode:
    """Build the process-wide node from the environment and bind it."""
    agent = load_agent_from_env(ENV_PREFIX)
    client = HttpLogClient(GATEWAY_URL, payer_id=agent.agent_id if agent else "")

    handler = None
    if AGENT_ENABLED and DELIVERY_ENABLED:
        handler = SubprocessHandler()

    node = AgentNode.from_service(client, agent, handler=handler)
    if agent is None:
        print(f"[LogMesh] No identity configured. Set {ENV_PREFIX}_ACCOUNT_ID, "
              f"{ENV_PREFIX}_INBOUND_STREAM_ID and {ENV_PREFIX}_OUTBOUND_STREAM_ID.", file=sys.stderr)
    elif load_state(node.store):
        print(f"[LogMesh] Restored {len(node.store)} connection(s) from snapshot", file=sys.stderr)

    set_node(node)
    return node


def _auto_accept_fees(node: AgentNode):
    native_fee = float(os.environ.get("LOGMESH_AUTO_ACCEPT_FEE", "0") or 0)
    exempt = [a.strip() for a in os.environ.get("LOGMESH_FEE_EXEMPT_IDS", "").split(",") if a.strip()]
    return build_fee_schedule(
        native_fees=[{"amount": native_fee}] if native_fee else [],
        exempt_ids=exempt,
        local_agent_id=node.agent.agent_id,
    )


def start_background_tasks(node: AgentNode) -> list[asyncio.Task]:
    """Start the long-running loops for an identified node."""
    tasks: list[asyncio.Task] = []
    if node.agent is None:
        return tasks

    tasks.append(asyncio.create_task(reconcile_loop(node.engine, RECONCILE_INTERVAL)))
    print(f"[LogMesh] Connection refresh: ENABLED ({RECONCILE_INTERVAL}s interval)", file=sys.stderr)

    if node.delivery is not None:
        tasks.append(asyncio.create_task(node.delivery.run(DELIVERY_POLL_INTERVAL)))
        print(f"[LogMesh] Message delivery: ENABLED (command: {AGENT_COMMAND}, "
              f"{node.delivery.batch_size} per {DELIVERY_POLL_INTERVAL:g}s)", file=sys.stderr)
    else:
        print("[LogMesh] Message delivery: disabled", file=sys.stderr)

    if AUTO_ACCEPT:
        try:
            fees = _auto_accept_fees(node)
        except (ConfigurationError, ValueError) as e:
            print(f"[LogMesh] Auto-accept: DISABLED, fee config invalid ({e})", file=sys.stderr)
        else:
            tasks.append(asyncio.create_task(acceptance_loop(node.monitor, accept_all=True, fee_schedule=fees)))
            print("[LogMesh] Auto-accept: ENABLED", file=sys.stderr)
    return tasks


async def stop_background_tasks(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task


def snapshot(node: AgentNode) -> None:
    if node.agent is None:
        return
    try:
        save_state(node.store)
    except OSError as e:
        print(f"[LogMesh] Could not save state: {e}", file=sys.stderr)


# =============================================================================
# App factory
# =============================================================================

def create_app() -> Router:
    """Create the Starlette app serving MCP over streamable HTTP.

    Returns:
        The ASGI app (a Starlette Router).
    """
    node = init_node()

    mcp_starlette = mcp.streamable_http_app()
    mcp_handler = mcp_starlette.routes[0].app
    session_manager = mcp_handler.session_manager

    @contextlib.asynccontextmanager
    async def lifespan(app):
        async with session_manager.run():
            tasks = start_background_tasks(node)
            try:
                yield
            finally:
                await stop_background_tasks(tasks)
                snapshot(node)

    # redirect_slashes=False so POST /mcp is not redirected to /mcp/
    return Router(
        routes=[Route("/mcp", mcp_handler)],
        redirect_slashes=False,
        lifespan=lifespan,
    )


def print_startup_banner(port: Optional[int], transport: str) -> None:
    node = get_node()
    agent = node.agent
    print("[LogMesh] ==========================================", file=sys.stderr)
    print(f"[LogMesh] Agent:     {agent.name + ' (' + agent.agent_id + ')' if agent else 'not configured'}",
          file=sys.stderr)
    print(f"[LogMesh] Gateway:   {GATEWAY_URL}", file=sys.stderr)
    print(f"[LogMesh] Transport: {transport}", file=sys.stderr)
    if port:
        print(f"[LogMesh] MCP URL:   http://127.0.0.1:{port}/mcp", file=sys.stderr)
    print("[LogMesh] ==========================================", file=sys.stderr)


# =============================================================================
# stdio transport
# =============================================================================

async def run_stdio() -> None:
    """Run MCP over stdio with the background loops alongside."""
    from mcp.server.stdio import stdio_server

    node = init_node()
    print_startup_banner(None, "stdio")
    tasks = start_background_tasks(node)
    try:
        async with stdio_server() as (read_stream, write_stream):
            await mcp._mcp_server.run(
                read_stream,
                write_stream,
                mcp._mcp_server.create_initialization_options(),
            )
    finally:
        await stop_background_tasks(tasks)
        snapshot(node)


# =============================================================================
# Main entry point
# =============================================================================

def main() -> None:
    """Entry point — detect transport mode and run."""
    port = int(os.environ.get("LOGMESH_PORT", str(DEFAULT_PORT)))
    transport = os.environ.get("LOGMESH_TRANSPORT", "auto")

    # Auto-detect: if stdin is not a TTY, we're being launched by an MCP client
    use_stdio = transport == "stdio" or (transport == "auto" and not sys.stdin.isatty())

    if use_stdio:
        anyio.run(run_stdio)
    else:
        app = create_app()
        print_startup_banner(port, "streamable-http")
        host = os.environ.get("LOGMESH_HOST", "127.0.0.1")
        uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
