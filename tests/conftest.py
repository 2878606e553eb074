import shlex
import sys
from pathlib import Path

import pytest
import pytest_asyncio

from build_orchestrator.config import Config
from build_orchestrator.core.manager import BuildManager
from build_orchestrator.db.engine import init_db
from helpers import RecordingSink

FAKE_AGENT = Path(__file__).parent / "fake_agent.py"


@pytest.fixture
def config(tmp_path):
    return Config(
        db_path=tmp_path / "test.db",
        projects_dir=tmp_path / "projects",
        port_range_start=45100,
        port_range_end=45199,
        max_concurrent_builds=2,
        agent_command=f"{shlex.quote(sys.executable)} {shlex.quote(str(FAKE_AGENT))}",
        spawn_settle_delay=0.05,
        serve_grace_period=0.5,
    )


@pytest.fixture
def db(config):
    conn = init_db(config.db_path)
    yield conn
    conn.close()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest_asyncio.fixture
async def manager(config, db, sink):
    mgr = BuildManager(config, db, sink=sink)
    await mgr.start()
    yield mgr
    await mgr.shutdown()
