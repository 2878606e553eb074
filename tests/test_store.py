"""Tests for project persistence."""

from datetime import timedelta

import pytest

from build_orchestrator.core import store as store_mod
from build_orchestrator.core.states import utcnow
from build_orchestrator.db.engine import get_db, init_db
from build_orchestrator.db.models import Notification, Project


@pytest.fixture
def db(tmp_path):
    conn = init_db(tmp_path / "test.db")
    yield conn
    conn.close()


def _project(project_id="proj_1", status="building", **kwargs):
    now = utcnow()
    return Project(
        id=project_id,
        name="Todo App",
        description="A todo list",
        directory=f"/tmp/{project_id}",
        status=status,
        created_at=kwargs.pop("created_at", now),
        updated_at=now,
        **kwargs,
    )


class TestSaveAndGet:
    def test_round_trip(self, db):
        project = _project(
            status="waiting_for_input",
            tech_stack="React",
            session_id="sess-1",
            waiting_since=utcnow(),
            last_notification=Notification("clarify", "Which DB?", "design"),
        )
        project.output_buffer = '{"partial'
        store_mod.save_project(db, project)

        loaded = store_mod.get_project(db, "proj_1")
        assert loaded == project
        assert loaded.output_buffer == ""
        assert loaded.last_notification.phase == "design"

    def test_upsert_replaces(self, db):
        project = _project()
        store_mod.save_project(db, project)
        project.status = "completed"
        project.serving_port = None
        store_mod.save_project(db, project)

        assert store_mod.get_project(db, "proj_1").status == "completed"
        assert len(store_mod.list_projects(db)) == 1

    def test_get_missing(self, db):
        assert store_mod.get_project(db, "nope") is None

    def test_list_oldest_first(self, db):
        now = utcnow()
        store_mod.save_project(db, _project("proj_b", created_at=now))
        store_mod.save_project(db, _project("proj_a", created_at=now - timedelta(minutes=5)))
        assert [p.id for p in store_mod.list_projects(db)] == ["proj_a", "proj_b"]

    def test_bad_notification_json_is_dropped(self, db):
        store_mod.save_project(db, _project())
        db.execute("UPDATE projects SET last_notification_json = '{oops' WHERE id = 'proj_1'")
        db.commit()
        assert store_mod.get_project(db, "proj_1").last_notification is None


class TestLoadProjects:
    def test_in_flight_records_come_back_stopped(self, db):
        store_mod.save_project(db, _project("proj_1", status="building"))
        store_mod.save_project(db, _project("proj_2", status="creating"))
        store_mod.save_project(db, _project("proj_3", status="waiting_for_input"))
        store_mod.save_project(db, _project("proj_4", status="completed"))

        loaded = {p.id: p.status for p in store_mod.load_projects(db)}
        assert loaded == {
            "proj_1": "stopped",
            "proj_2": "stopped",
            "proj_3": "waiting_for_input",
            "proj_4": "completed",
        }
        # The store is updated to match
        assert store_mod.get_project(db, "proj_1").status == "stopped"


class TestEngine:
    def test_reopen_is_idempotent(self, tmp_path):
        path = tmp_path / "nested" / "bo.db"
        with get_db(path) as conn:
            store_mod.save_project(conn, _project())
        with get_db(path) as conn:
            assert store_mod.get_project(conn, "proj_1") is not None
