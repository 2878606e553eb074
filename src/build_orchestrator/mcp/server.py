"""MCP server exposing the builder tools."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from build_orchestrator.config import Config, get_config
from build_orchestrator.core.errors import OrchestratorError
from build_orchestrator.core.manager import BuildManager
from build_orchestrator.core.notifications import LogSink
from build_orchestrator.db.engine import init_db
from build_orchestrator.integrations.slack import SlackSink


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    manager: BuildManager


def make_sink(config: Config):
    """Slack when a token and channel are configured, otherwise the log."""
    if config.slack_bot_token and config.slack_channel:
        return SlackSink(config.slack_bot_token, config.slack_channel)
    return LogSink()


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Start the build manager on startup, kill its children on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    manager = BuildManager(config, db, sink=make_sink(config))
    await manager.start()

    try:
        yield AppContext(db=db, config=config, manager=manager)
    finally:
        await manager.shutdown()
        db.close()


mcp = FastMCP("build-orchestrator", lifespan=app_lifespan)


def _manager(ctx: Context) -> BuildManager:
    return ctx.request_context.lifespan_context.manager


# ── Build Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
async def build_create(
    ctx: Context,
    name: str,
    description: str,
    tech_stack: str | None = None,
) -> dict:
    """Start building a new software project from scratch.

    Spawns an autonomous coding agent that scaffolds, codes and tests the
    project. Progress updates and questions arrive as chat messages.
    """
    try:
        return await _manager(ctx).create(name, description, tech_stack)
    except OrchestratorError as e:
        return {"error": str(e)}


@mcp.tool()
async def build_open(ctx: Context, project_id: str, task: str) -> dict:
    """Resume an existing project with a new task (fix a bug, add a feature).
    Replaces any agent already working on the project."""
    try:
        return await _manager(ctx).open(project_id, task)
    except OrchestratorError as e:
        return {"error": str(e)}


@mcp.tool()
async def build_reply(ctx: Context, project_id: str, message: str) -> dict:
    """Reply to a builder agent that asked a clarifying question."""
    try:
        return await _manager(ctx).reply(project_id, message)
    except OrchestratorError as e:
        return {"error": str(e)}


@mcp.tool()
async def build_stop(ctx: Context, project_id: str) -> dict:
    """Stop a project's agent and preview server."""
    return await _manager(ctx).stop(project_id)


@mcp.tool()
async def build_serve(ctx: Context, project_id: str, command: str | None = None) -> dict:
    """Start a preview dev server for a project and return its URL.
    The run command is detected from the project files unless given."""
    try:
        return await _manager(ctx).serve(project_id, command)
    except OrchestratorError as e:
        return {"error": str(e)}


@mcp.tool()
def build_status(ctx: Context, project_id: str | None = None) -> list[dict]:
    """Detailed status of one project, or of all projects."""
    return _manager(ctx).get_status(project_id)


@mcp.tool()
def build_list(ctx: Context) -> list[dict]:
    """List all builder projects."""
    return _manager(ctx).list_all()


@mcp.tool()
def build_files(ctx: Context, project_id: str) -> dict:
    """List the files of a project, skipping dependency and build directories."""
    try:
        return {"files": _manager(ctx).list_project_files(project_id)}
    except OrchestratorError as e:
        return {"error": str(e)}
