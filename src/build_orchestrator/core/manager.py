"""Build manager: the public operations and background sweeps over all projects."""

import asyncio
import logging
import sqlite3
import time
import uuid
from datetime import datetime
from pathlib import Path

from build_orchestrator.config import Config
from build_orchestrator.core.errors import (
    CapacityExceededError,
    NoLiveAgentError,
    ProjectBusyError,
    ProjectNotFoundError,
    ServeStartupError,
    SpawnError,
)
from build_orchestrator.core.notifications import LogSink, NotificationRouter, Sink
from build_orchestrator.core.ports import PortAllocator
from build_orchestrator.core.prompts import (
    build_create_prompt,
    build_resume_prompt,
    load_system_prompt,
)
from build_orchestrator.core.protocol import (
    annotations_in,
    decode_record,
    is_turn_result,
    reassemble,
    session_id_of,
)
from build_orchestrator.core.states import (
    IN_FLIGHT,
    TERMINAL,
    apply_agent_exit,
    apply_annotation,
    apply_reply,
    clear_serving,
    is_in_flight,
    mark_building,
    mark_failed,
    mark_serving,
    mark_stalled,
    mark_stopped,
    utcnow,
)
from build_orchestrator.core.store import load_projects, save_project
from build_orchestrator.core.supervisor import (
    AGENT,
    PREVIEW,
    ProcessHandle,
    ProcessSupervisor,
    user_message,
)
from build_orchestrator.core.workspace import detect_serve_command, find_project_root, list_files
from build_orchestrator.db.models import CREATING, WAITING_FOR_INPUT, Project

logger = logging.getLogger(__name__)

SHUTDOWN_FLUSH_TIMEOUT = 5.0


def new_project_id() -> str:
    return f"proj_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def project_to_dict(p: Project) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "tech_stack": p.tech_stack,
        "status": p.status,
        "directory": p.directory,
        "serving_port": p.serving_port,
        "session_id": p.session_id,
        "created_at": p.created_at.isoformat() if p.created_at else None,
        "updated_at": p.updated_at.isoformat() if p.updated_at else None,
        "waiting_since": p.waiting_since.isoformat() if p.waiting_since else None,
        "last_notification": p.last_notification.to_dict() if p.last_notification else None,
    }


def project_summary(p: Project) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "status": p.status,
        "tech_stack": p.tech_stack,
        "created_at": p.created_at.isoformat() if p.created_at else None,
        "updated_at": p.updated_at.isoformat() if p.updated_at else None,
    }


class BuildManager:
    """Owns every project record, process table, reserved port and sweep timer.

    All mutation happens on the event loop thread: in public operations, in
    the supervisor's output and exit callbacks, and in the sweeps.
    """

    def __init__(self, config: Config, db: sqlite3.Connection, sink: Sink | None = None):
        self.config = config
        self.db = db
        self.projects_dir = Path(config.projects_dir)
        self.projects: dict[str, Project] = {}
        self.supervisor = ProcessSupervisor(
            agent_command=config.agent_command,
            settle_delay=config.spawn_settle_delay,
        )
        self.ports = PortAllocator(config.port_range_start, config.port_range_end)
        self.router = NotificationRouter(sink or LogSink())
        self.system_prompt = load_system_prompt(config.system_prompt_path)
        self._sweeps: list[asyncio.Task] = []

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self):
        """Load persisted projects, then start the notifier and sweep timers."""
        self.projects_dir.mkdir(parents=True, exist_ok=True)
        for project in load_projects(self.db):
            self.projects[project.id] = project

        self.router.start()
        self._sweeps = [
            asyncio.create_task(
                self._every("reminder", self.config.reminder_interval, self.run_reminder_sweep)
            ),
            asyncio.create_task(
                self._every("cleanup", self.config.cleanup_interval, self.run_cleanup_sweep)
            ),
            asyncio.create_task(
                self._every("stall", self.config.stall_check_interval, self.run_stall_sweep)
            ),
        ]
        logger.info(
            "Build manager initialized. %d existing project(s). Dir: %s",
            len(self.projects), self.projects_dir,
        )

    async def shutdown(self):
        """Cancel sweeps, kill every child process and release all ports."""
        for task in self._sweeps:
            task.cancel()
        await asyncio.gather(*self._sweeps, return_exceptions=True)
        self._sweeps = []

        await self.supervisor.close()
        self.ports.release_all()

        try:
            await asyncio.wait_for(self.router.join(), timeout=SHUTDOWN_FLUSH_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Dropping undelivered notifications on shutdown")
        await self.router.close()
        logger.info("Build manager stopped")

    # ── Public operations ─────────────────────────────────────────────────

    async def create(self, name: str, description: str, tech_stack: str | None = None) -> dict:
        """Create a project directory and record, and start an agent building it."""
        self._check_capacity()

        project_id = new_project_id()
        directory = self.projects_dir / project_id
        directory.mkdir(parents=True, exist_ok=True)

        now = utcnow()
        project = Project(
            id=project_id,
            name=name,
            description=description,
            directory=str(directory),
            tech_stack=tech_stack or None,
            status=CREATING,
            created_at=now,
            updated_at=now,
        )
        self.projects[project_id] = project
        self._save(project)
        logger.info("Creating project %s: %s", project_id, name)

        await self._spawn_agent(project, build_create_prompt(name, description, tech_stack))
        return {"project_id": project_id, "status": project.status}

    async def open(self, project_id: str, task: str) -> dict:
        """Resume a project with a new task, replacing any agent it already has."""
        project = self._get(project_id)
        self._check_capacity(exclude=project_id)

        self.supervisor.terminate(project_id, AGENT)
        if self._kill_preview(project):
            clear_serving(project)

        mark_building(project)
        self._save(project)
        logger.info("Opening project %s: %s", project_id, task[:100])

        prompt = build_resume_prompt(project.name, project.description, task, project.tech_stack)
        await self._spawn_agent(project, prompt)
        return {"status": project.status}

    async def reply(self, project_id: str, message: str) -> dict:
        """Forward a message to the project's running agent."""
        project = self._get(project_id)
        handle = self.supervisor.get(project_id, AGENT)
        if handle is None or not handle.is_alive:
            raise NoLiveAgentError(project_id)

        logger.info(">>> Project %s: %s", project_id, message[:100])
        try:
            await handle.write(user_message(message))
        except (BrokenPipeError, ConnectionResetError) as e:
            raise NoLiveAgentError(project_id) from e

        apply_reply(project)
        self._save(project)
        return {"status": project.status}

    async def stop(self, project_id: str) -> dict:
        """Kill the project's agent and preview server and mark it stopped."""
        project = self.projects.get(project_id)
        if project is None:
            return {"stopped": False}

        self.supervisor.terminate(project_id, AGENT)
        self._kill_preview(project)
        mark_stopped(project)
        self._save(project)
        logger.info("Stopped project %s", project_id)
        return {"stopped": True}

    async def serve(self, project_id: str, command: str | None = None) -> dict:
        """Start (or restart) the project's preview server on a free port."""
        project = self._get(project_id)
        if self._agent_active(project):
            raise ProjectBusyError(project_id, project.status)

        if self._kill_preview(project):
            clear_serving(project)
            self._save(project)

        port = self.ports.allocate()
        serve_dir = find_project_root(project.directory)
        cmd = command or detect_serve_command(serve_dir, bind_all=bool(self.config.public_host))
        logger.info("Serving project %s on port %s in %s: %s", project_id, port, serve_dir, cmd)

        try:
            handle = await self.supervisor.spawn_preview(
                project_id, str(serve_dir), cmd, port, on_exit=self._on_preview_exit,
            )
        except SpawnError:
            self.ports.release(port)
            raise

        # Most broken dev servers die at once (e.g. exit 127, command not found).
        try:
            exit_code = await asyncio.wait_for(
                handle.wait(), timeout=self.config.serve_grace_period
            )
        except asyncio.TimeoutError:
            exit_code = None

        if exit_code is not None:
            if self.supervisor.get(project_id, PREVIEW) is handle:
                self.supervisor.terminate(project_id, PREVIEW)
            handle.terminated = True
            self.ports.release(port)
            raise ServeStartupError(exit_code, cmd, str(serve_dir))

        mark_serving(project, port)
        self._save(project)

        if self.config.public_host:
            url = f"https://{self.config.public_host}:{port}"
        else:
            url = f"http://localhost:{port}"
        return {"port": port, "url": url}

    def list_all(self) -> list[dict]:
        return [project_summary(p) for p in self.projects.values()]

    def get_status(self, project_id: str | None = None) -> list[dict]:
        """Sanitized project views; process handles never leave the manager."""
        if project_id:
            project = self.projects.get(project_id)
            return [self._view(project)] if project else []
        return [self._view(p) for p in self.projects.values()]

    def list_project_files(self, project_id: str) -> list[str]:
        project = self._get(project_id)
        return list_files(project.directory)

    def running_count(self, exclude: str | None = None) -> int:
        return sum(
            1 for p in self.projects.values()
            if p.status in IN_FLIGHT and p.id != exclude
        )

    # ── Sweeps ────────────────────────────────────────────────────────────

    def run_reminder_sweep(self) -> list[str]:
        """Send one batched reminder for every project waiting on a reply."""
        waiting = [p for p in self.projects.values() if p.status == WAITING_FOR_INPUT]
        self.router.remind(waiting)
        return [p.id for p in waiting]

    def run_stall_sweep(self, now: datetime | None = None) -> list[str]:
        """Fail in-flight projects whose agent has run longer than the stall timeout."""
        now = now or utcnow()
        stalled = []
        for project in list(self.projects.values()):
            if not is_in_flight(project):
                continue
            handle = self.supervisor.get(project.id, AGENT)
            if handle is None or not handle.is_alive:
                continue
            runtime = (now - handle.started_at).total_seconds()
            if runtime <= self.config.stall_timeout:
                continue

            logger.warning(
                "Agent for %s stalled (%d min), killing", project.id, round(runtime / 60)
            )
            self.supervisor.terminate(project.id, AGENT)
            notification = mark_stalled(project, self.config.stall_timeout)
            self._save(project)
            self.router.publish(project, project.id, notification)
            stalled.append(project.id)
        return stalled

    def run_cleanup_sweep(self, now: datetime | None = None) -> list[str]:
        """Reclaim leftovers of terminal projects idle longer than the cleanup age.

        Records are never evicted; only lingering processes, ports and the
        decode buffer are released.
        """
        now = now or utcnow()
        swept = []
        for project in list(self.projects.values()):
            if project.status not in TERMINAL or project.updated_at is None:
                continue
            if (now - project.updated_at).total_seconds() <= self.config.cleanup_age:
                continue
            if self.supervisor.terminate(project.id, AGENT):
                logger.info("Reclaimed idle agent of %s project %s", project.status, project.id)
            if self._kill_preview(project):
                self._save(project)
            project.output_buffer = ""
            swept.append(project.id)
        logger.debug("Cleanup sweep visited %d stale project(s)", len(swept))
        return swept

    async def _every(self, name: str, interval: float, sweep):
        while True:
            await asyncio.sleep(interval)
            try:
                sweep()
            except Exception:
                logger.exception("Error in %s sweep", name)

    # ── Agent plumbing ────────────────────────────────────────────────────

    async def _spawn_agent(self, project: Project, prompt: str):
        project.output_buffer = ""
        logger.info(">>> Project %s: %s", project.id, prompt[:100])
        try:
            handle = await self.supervisor.spawn_agent(
                project.id,
                project.directory,
                prompt,
                system_prompt=self.system_prompt,
                on_output=self._on_agent_output,
                on_exit=self._on_agent_exit,
            )
        except SpawnError:
            mark_failed(project)
            self._save(project)
            raise

        # The agent may have finished, failed or been stopped during the settle delay.
        if handle.terminated or not handle.is_alive:
            return
        if project.status in IN_FLIGHT:
            mark_building(project)
            self._save(project)

    def _on_agent_output(self, handle: ProcessHandle, text: str):
        project = self.projects.get(handle.project_id)
        if project is None or handle.terminated:
            return
        lines, project.output_buffer = reassemble(project.output_buffer, text)
        for line in lines:
            self._feed_line(handle, project, line)

    def _feed_line(self, handle: ProcessHandle, project: Project, line: str):
        # One bad record is dropped on its own; the stream keeps being read.
        try:
            self._handle_line(handle, project, line)
        except Exception:
            logger.exception("Dropping unreadable agent record for %s", project.id)

    def _handle_line(self, handle: ProcessHandle, project: Project, line: str):
        record = decode_record(line)
        if record is None:
            return

        session_id = session_id_of(record)
        if session_id and handle.session_id is None:
            handle.session_id = session_id
            project.session_id = session_id
            self._save(project)

        for notification in annotations_in(record):
            apply_annotation(project, notification)
            self._save(project)
            self.router.publish(project, project.id, notification)

        if is_turn_result(record):
            logger.debug("Agent turn finished for %s", project.id)

    def _on_agent_exit(self, handle: ProcessHandle, exit_code: int):
        project = self.projects.get(handle.project_id)
        if project is None or handle.terminated:
            return

        if project.output_buffer.strip():
            self._feed_line(handle, project, project.output_buffer)
        project.output_buffer = ""

        if apply_agent_exit(project, exit_code):
            self._save(project)

    # ── Preview plumbing ──────────────────────────────────────────────────

    def _kill_preview(self, project: Project) -> ProcessHandle | None:
        handle = self.supervisor.terminate(project.id, PREVIEW)
        if handle:
            self.ports.release(handle.port)
        self.ports.release(project.serving_port)
        project.serving_port = None
        return handle

    def _on_preview_exit(self, handle: ProcessHandle, exit_code: int):
        # Deliberate kills release their port at the kill site; the number may
        # already belong to a replacement server.
        if handle.terminated:
            return
        self.ports.release(handle.port)
        project = self.projects.get(handle.project_id)
        if project is None:
            return
        clear_serving(project)
        self._save(project)

    # ── Helpers ───────────────────────────────────────────────────────────

    def _get(self, project_id: str) -> Project:
        project = self.projects.get(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    def _agent_active(self, project: Project) -> bool:
        if is_in_flight(project):
            return True
        # A finished agent may linger on stdin; only a pending question keeps it busy.
        handle = self.supervisor.get(project.id, AGENT)
        return project.status == WAITING_FOR_INPUT and handle is not None and handle.is_alive

    def _check_capacity(self, exclude: str | None = None):
        if self.running_count(exclude) >= self.config.max_concurrent_builds:
            raise CapacityExceededError(self.config.max_concurrent_builds)

    def _view(self, project: Project) -> dict:
        view = project_to_dict(project)
        view["has_agent"] = self.supervisor.get(project.id, AGENT) is not None
        view["has_preview"] = self.supervisor.get(project.id, PREVIEW) is not None
        return view

    def _save(self, project: Project):
        try:
            save_project(self.db, project)
        except sqlite3.Error:
            logger.exception("Failed to save project %s", project.id)
