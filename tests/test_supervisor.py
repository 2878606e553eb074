"""Tests for child process supervision."""

import json
import shlex
import sys

import pytest
import pytest_asyncio

from build_orchestrator.core import supervisor as supervisor_mod
from build_orchestrator.core.errors import SpawnError
from helpers import wait_until


@pytest_asyncio.fixture
async def supervisor(config):
    sup = supervisor_mod.ProcessSupervisor(
        agent_command=config.agent_command,
        settle_delay=config.spawn_settle_delay,
    )
    yield sup
    await sup.close()


class Recorder:
    """Collects output chunks and exit codes handed to supervisor callbacks."""

    def __init__(self):
        self.output = ""
        self.exits = []

    def on_output(self, handle, text):
        self.output += text

    def on_exit(self, handle, code):
        self.exits.append((handle, code))


def test_user_message_frame():
    line = supervisor_mod.user_message("hello")
    assert line.endswith("\n")
    assert json.loads(line) == {
        "type": "user",
        "message": {"role": "user", "content": "hello"},
    }


def test_agent_command_line():
    sup = supervisor_mod.ProcessSupervisor(agent_command="claude --model x")
    cmd = sup.build_agent_command()
    assert cmd[:3] == ["claude", "--model", "x"]
    assert "--input-format" in cmd and "--output-format" in cmd
    assert "--system-prompt" not in cmd

    cmd = sup.build_agent_command("Be brief.")
    assert cmd[-2:] == ["--system-prompt", "Be brief."]


class TestAgents:
    @pytest.mark.asyncio
    async def test_first_prompt_and_reply(self, supervisor, tmp_path):
        rec = Recorder()
        handle = await supervisor.spawn_agent(
            "p1", str(tmp_path), "CLARIFY", on_output=rec.on_output, on_exit=rec.on_exit,
        )
        assert supervisor.get("p1", supervisor_mod.AGENT) is handle
        assert handle.is_alive

        await wait_until(lambda: "Which database?" in rec.output)
        assert '"session_id": "sess-fake-1"' in rec.output

        await handle.write(supervisor_mod.user_message("EXIT:3"))
        await wait_until(lambda: rec.exits)
        assert rec.exits == [(handle, 3)]
        assert supervisor.get("p1", supervisor_mod.AGENT) is None

    @pytest.mark.asyncio
    async def test_respawn_replaces_handle(self, supervisor, tmp_path):
        rec = Recorder()
        first = await supervisor.spawn_agent("p1", str(tmp_path), "HANG", on_exit=rec.on_exit)
        second = await supervisor.spawn_agent("p1", str(tmp_path), "HANG", on_exit=rec.on_exit)

        assert first.terminated
        assert not second.terminated
        await wait_until(lambda: rec.exits)
        assert rec.exits[0][0] is first
        # The exit of the replaced process leaves the new handle registered.
        assert supervisor.get("p1", supervisor_mod.AGENT) is second

    @pytest.mark.asyncio
    async def test_terminate(self, supervisor, tmp_path):
        handle = await supervisor.spawn_agent("p1", str(tmp_path), "HANG")
        assert supervisor.terminate("p1", supervisor_mod.AGENT) is handle
        assert supervisor.terminate("p1", supervisor_mod.AGENT) is None
        await handle.wait()
        assert not handle.is_alive

        # Killing an exited process is harmless.
        handle.kill()

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        sup = supervisor_mod.ProcessSupervisor(agent_command="/nonexistent/agent-cli")
        with pytest.raises(SpawnError, match="agent-cli"):
            await sup.spawn_agent("p1", str(tmp_path), "hi")
        assert sup.get("p1", supervisor_mod.AGENT) is None


class TestPreviews:
    @pytest.mark.asyncio
    async def test_port_injected(self, supervisor, tmp_path):
        handle = await supervisor.spawn_preview(
            "p1", str(tmp_path), 'echo "$PORT:$EXTRA" > env.txt; sleep 30', 45123,
            env={"EXTRA": "yes"},
        )
        out = tmp_path / "env.txt"
        await wait_until(lambda: out.exists() and out.read_text().strip())
        assert out.read_text().strip() == "45123:yes"
        assert handle.port == 45123
        assert supervisor.get("p1", supervisor_mod.PREVIEW) is handle

    @pytest.mark.asyncio
    async def test_exit_reported(self, supervisor, tmp_path):
        rec = Recorder()
        handle = await supervisor.spawn_preview(
            "p1", str(tmp_path), "exit 3", 45124, on_exit=rec.on_exit,
        )
        await wait_until(lambda: rec.exits)
        assert rec.exits == [(handle, 3)]
        assert supervisor.get("p1", supervisor_mod.PREVIEW) is None

    @pytest.mark.asyncio
    async def test_async_exit_callback_failure_is_logged(self, supervisor, tmp_path, caplog):
        async def explode(handle, code):
            raise RuntimeError("boom")

        handle = await supervisor.spawn_preview(
            "p1", str(tmp_path), "exit 0", 45125, on_exit=explode,
        )
        await handle.wait()
        await wait_until(lambda: "Exit callback failed" in caplog.text)

    @pytest.mark.asyncio
    async def test_close_kills_everything(self, config, tmp_path):
        sup = supervisor_mod.ProcessSupervisor(
            agent_command=config.agent_command, settle_delay=config.spawn_settle_delay,
        )
        agent = await sup.spawn_agent("p1", str(tmp_path), "HANG")
        preview = await sup.spawn_preview("p2", str(tmp_path), "sleep 30", 45126)

        await sup.close()

        assert not agent.is_alive
        assert not preview.is_alive
        assert sup.agents == {} and sup.previews == {}


NOISY_SERVER = """\
import sys
sys.stdout.write("x" * 200000 + "\\n")
sys.stderr.write("e" * 200000 + "\\n")
for i in range(40000):
    sys.stdout.write(f"request {i} served in 3ms\\n")
sys.stdout.write("no trailing newline")
"""


class TestNoisyPreviews:
    @pytest.mark.asyncio
    async def test_long_lines_keep_output_draining(self, supervisor, tmp_path, caplog):
        caplog.set_level("DEBUG", logger="build_orchestrator.core.supervisor")
        (tmp_path / "noisy.py").write_text(NOISY_SERVER)
        rec = Recorder()

        await supervisor.spawn_preview(
            "p1", str(tmp_path), f"{shlex.quote(sys.executable)} noisy.py", 45127,
            on_exit=rec.on_exit,
        )

        await wait_until(lambda: rec.exits, timeout=20)
        assert rec.exits[0][1] == 0
        assert "request 39999 served" in caplog.text
        assert "no trailing newline" in caplog.text
        assert "Error reading preview" not in caplog.text
