"""Shared test helpers."""

import asyncio
from datetime import timedelta

from build_orchestrator.core.states import utcnow
from build_orchestrator.db.models import Project


class RecordingSink:
    """Chat sink that remembers every message it was given."""

    def __init__(self):
        self.messages: list[str] = []

    async def __call__(self, text: str):
        self.messages.append(text)


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


def add_project(manager, project_id: str, status: str, age_seconds: float = 0, **kwargs) -> Project:
    """Register a project directly with the manager, bypassing the agent."""
    directory = manager.projects_dir / project_id
    directory.mkdir(parents=True, exist_ok=True)
    stamp = utcnow() - timedelta(seconds=age_seconds)
    project = Project(
        id=project_id,
        name=kwargs.pop("name", project_id.title()),
        description=kwargs.pop("description", "test project"),
        directory=str(directory),
        status=status,
        created_at=stamp,
        updated_at=stamp,
        **kwargs,
    )
    manager.projects[project_id] = project
    return project
