"""CLI entry point for the build orchestrator."""

import json
import logging
import sys

import click

from build_orchestrator.config import get_config
from build_orchestrator.core import store as store_mod
from build_orchestrator.core.manager import project_summary, project_to_dict
from build_orchestrator.core.workspace import list_files
from build_orchestrator.db.engine import get_db


def _get_db():
    config = get_config()
    return get_db(config.db_path)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """bo - Build Orchestrator CLI"""
    config = get_config()
    # stdout carries the MCP stdio transport, so logs go to stderr.
    logging.basicConfig(
        level=logging.DEBUG if verbose else config.log_level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


STATUS_ICONS = {
    "creating": "○",
    "building": "●",
    "waiting_for_input": "?",
    "serving": "▶",
    "completed": "✓",
    "failed": "✗",
    "stopped": "■",
}


@main.command("list")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def project_list(json_output):
    """List stored projects."""
    with _get_db() as db:
        projects = store_mod.list_projects(db)

        if json_output:
            click.echo(json.dumps([project_summary(p) for p in projects], indent=2))
            return

        if not projects:
            click.echo("No projects found.")
            return

        for p in projects:
            icon = STATUS_ICONS.get(p.status, "?")
            stack = f" [{p.tech_stack}]" if p.tech_stack else ""
            click.echo(f"  {icon} {p.id}: {p.name} ({p.status}){stack}")


@main.command("status")
@click.argument("project_id", required=False)
def project_status(project_id):
    """Show stored project details as JSON."""
    with _get_db() as db:
        if project_id:
            project = store_mod.get_project(db, project_id)
            if not project:
                click.echo(f"Project not found: {project_id}", err=True)
                sys.exit(1)
            projects = [project]
        else:
            projects = store_mod.list_projects(db)
        click.echo(json.dumps([project_to_dict(p) for p in projects], indent=2))


@main.command("files")
@click.argument("project_id")
def project_files(project_id):
    """List a project's files."""
    with _get_db() as db:
        project = store_mod.get_project(db, project_id)
        if not project:
            click.echo(f"Project not found: {project_id}", err=True)
            sys.exit(1)
        files = list_files(project.directory)
        if not files:
            click.echo("No files yet.")
            return
        for path in files:
            click.echo(f"  {path}")


# ── Web API Command ──────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def ui_command(host, port):
    """Serve the read-only project API."""
    from build_orchestrator.web.app import run_server

    click.echo(f"Starting project API at http://{host}:{port}/api/projects")
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from build_orchestrator.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
