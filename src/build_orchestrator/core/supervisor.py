"""Spawning, tracking and terminating agent and preview-server processes.

Both process classes share one handle shape. Exactly one handle per role is
kept per project; spawning a new one for the same role terminates the old
handle first. Process exit is observed by a watcher task which hands the exit
code to the owner's callback.
"""

import asyncio
import codecs
import json
import logging
import os
import shlex
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from build_orchestrator.core.errors import SpawnError

logger = logging.getLogger(__name__)

AGENT = "agent"
PREVIEW = "preview"

AGENT_ARGS = [
    "-p",
    "--verbose",
    "--dangerously-skip-permissions",
    "--input-format", "stream-json",
    "--output-format", "stream-json",
]

READ_CHUNK_SIZE = 64 * 1024
STREAM_DRAIN_TIMEOUT = 5.0
PREVIEW_LOG_WIDTH = 500


@dataclass(eq=False)
class ProcessHandle:
    """A supervised child process."""

    project_id: str
    role: str
    process: asyncio.subprocess.Process
    command: str
    cwd: str
    port: int | None = None
    session_id: str | None = None
    terminated: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    tasks: list[asyncio.Task] = field(default_factory=list, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_alive(self) -> bool:
        return self.process.returncode is None

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.process.stderr

    async def write(self, text: str):
        """Write text to the child's stdin and wait for the pipe to drain."""
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing():
            raise BrokenPipeError(f"stdin of {self.role} {self.pid} is closed")
        stdin.write(text.encode())
        await stdin.drain()

    async def wait(self) -> int:
        return await self.process.wait()

    def kill(self):
        """Send SIGTERM to the child's process group. Already-exited children are ignored."""
        self.terminated = True
        if not self.is_alive:
            return
        try:
            os.killpg(self.process.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass  # Already exited
        except PermissionError:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass


def user_message(content: str) -> str:
    """Frame one user turn for the agent's stream-json stdin."""
    return json.dumps({"type": "user", "message": {"role": "user", "content": content}}) + "\n"


OutputCallback = Callable[[ProcessHandle, str], None]
ExitCallback = Callable[[ProcessHandle, int], Awaitable[None] | None]


class ProcessSupervisor:
    """Owns the agent and preview process tables, keyed by project id."""

    def __init__(self, agent_command: str = "claude", settle_delay: float = 2.0):
        self.agent_command = agent_command
        self.settle_delay = settle_delay
        self.agents: dict[str, ProcessHandle] = {}
        self.previews: dict[str, ProcessHandle] = {}
        self._watchers: set[asyncio.Task] = set()

    def _table(self, role: str) -> dict[str, ProcessHandle]:
        return self.agents if role == AGENT else self.previews

    # ── Agent processes ───────────────────────────────────────────────────

    def build_agent_command(self, system_prompt: str | None = None) -> list[str]:
        cmd = shlex.split(self.agent_command) + AGENT_ARGS
        if system_prompt:
            cmd += ["--system-prompt", system_prompt]
        return cmd

    async def spawn_agent(
        self,
        project_id: str,
        cwd: str,
        initial_prompt: str,
        system_prompt: str | None = None,
        on_output: OutputCallback | None = None,
        on_exit: ExitCallback | None = None,
    ) -> ProcessHandle:
        """Start an agent in cwd and send it the first user turn after the settle delay."""
        self.terminate(project_id, AGENT)

        cmd = self.build_agent_command(system_prompt)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=cwd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(self.agent_command, str(e)) from e

        handle = ProcessHandle(
            project_id=project_id,
            role=AGENT,
            process=process,
            command=self.agent_command,
            cwd=cwd,
        )
        self.agents[project_id] = handle
        logger.info("Spawned agent for %s (PID %s) in %s", project_id, process.pid, cwd)

        readers = [
            asyncio.create_task(self._pump(handle, process.stdout, on_output)),
            asyncio.create_task(self._log_stderr(handle)),
        ]
        handle.tasks = readers + [self._start_watcher(handle, readers, on_exit)]

        await asyncio.sleep(self.settle_delay)

        try:
            await handle.write(user_message(initial_prompt))
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("Agent for %s exited before the first prompt was sent", project_id)
        return handle

    # ── Preview servers ───────────────────────────────────────────────────

    async def spawn_preview(
        self,
        project_id: str,
        cwd: str,
        command: str,
        port: int,
        env: dict[str, str] | None = None,
        on_exit: ExitCallback | None = None,
    ) -> ProcessHandle:
        """Run a shell command in cwd with PORT injected into its environment."""
        self.terminate(project_id, PREVIEW)

        child_env = {**os.environ, **(env or {}), "PORT": str(port)}
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=cwd,
                env=child_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(command, str(e)) from e

        handle = ProcessHandle(
            project_id=project_id,
            role=PREVIEW,
            process=process,
            command=command,
            cwd=cwd,
            port=port,
        )
        self.previews[project_id] = handle
        logger.info("Started preview for %s on port %s (PID %s): %s", project_id, port, process.pid, command)

        readers = [
            asyncio.create_task(self._log_lines(handle, process.stdout, "stdout")),
            asyncio.create_task(self._log_lines(handle, process.stderr, "stderr")),
        ]
        handle.tasks = readers + [self._start_watcher(handle, readers, on_exit)]
        return handle

    # ── Termination ───────────────────────────────────────────────────────

    def terminate(self, project_id: str, role: str) -> ProcessHandle | None:
        """Kill and forget the project's process of the given role, if any."""
        handle = self._table(role).pop(project_id, None)
        if handle is None:
            return None
        handle.kill()
        logger.info("Terminated %s for %s (PID %s)", role, project_id, handle.pid)
        return handle

    def terminate_all(self):
        for role in (AGENT, PREVIEW):
            for project_id in list(self._table(role)):
                self.terminate(project_id, role)

    async def close(self, timeout: float = STREAM_DRAIN_TIMEOUT):
        """Terminate everything and wait for the exit watchers to finish."""
        self.terminate_all()
        if self._watchers:
            await asyncio.wait(set(self._watchers), timeout=timeout)

    def get(self, project_id: str, role: str) -> ProcessHandle | None:
        return self._table(role).get(project_id)

    # ── Stream pumps and exit watcher ─────────────────────────────────────

    async def _pump(
        self,
        handle: ProcessHandle,
        stream: asyncio.StreamReader,
        on_output: OutputCallback | None,
    ):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while chunk := await stream.read(READ_CHUNK_SIZE):
                text = decoder.decode(chunk)
                if text and on_output:
                    on_output(handle, text)
            tail = decoder.decode(b"", final=True)
            if tail and on_output:
                on_output(handle, tail)
        except Exception:
            logger.exception("Error reading %s %s stdout", handle.role, handle.project_id)

    async def _log_stderr(self, handle: ProcessHandle):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while chunk := await handle.stderr.read(READ_CHUNK_SIZE):
                trimmed = decoder.decode(chunk).strip()
                if trimmed and not trimmed.startswith("Debugger"):
                    logger.info("[agent-stderr %s] %s", handle.project_id, trimmed[:200])
        except Exception:
            logger.exception("Error reading agent %s stderr", handle.project_id)

    async def _log_lines(self, handle: ProcessHandle, stream: asyncio.StreamReader, name: str):
        # Chunked reads: dev servers print lines far longer than the StreamReader limit.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        try:
            while chunk := await stream.read(READ_CHUNK_SIZE):
                *lines, pending = (pending + decoder.decode(chunk)).split("\n")
                if len(pending) > READ_CHUNK_SIZE:
                    lines.append(pending)
                    pending = ""
                for line in lines:
                    self._log_preview_line(handle, name, line)
            pending += decoder.decode(b"", final=True)
            if pending:
                self._log_preview_line(handle, name, pending)
        except Exception:
            logger.exception("Error reading preview %s %s", handle.project_id, name)

    def _log_preview_line(self, handle: ProcessHandle, name: str, line: str):
        line = line.rstrip()
        if line:
            logger.debug("[preview-%s %s] %s", name, handle.project_id, line[:PREVIEW_LOG_WIDTH])

    def _start_watcher(
        self,
        handle: ProcessHandle,
        readers: list[asyncio.Task],
        on_exit: ExitCallback | None,
    ) -> asyncio.Task:
        watcher = asyncio.create_task(self._watch(handle, readers, on_exit))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)
        return watcher

    async def _watch(
        self,
        handle: ProcessHandle,
        readers: list[asyncio.Task],
        on_exit: ExitCallback | None,
    ):
        exit_code = await handle.process.wait()
        # Let buffered output reach the callbacks before reporting the exit.
        await asyncio.wait(readers, timeout=STREAM_DRAIN_TIMEOUT)

        table = self._table(handle.role)
        if table.get(handle.project_id) is handle:
            del table[handle.project_id]

        logger.info(
            "%s for %s exited with code %s",
            handle.role.capitalize(), handle.project_id, exit_code,
        )
        if on_exit is None:
            return
        try:
            result = on_exit(handle, exit_code)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Exit callback failed for %s %s", handle.role, handle.project_id)
