"""Tests for project status transitions."""

from build_orchestrator.core import states as states_mod
from build_orchestrator.db.models import Notification, Project


def _project(status="building"):
    return Project(id="p1", name="P1", description="d", directory="/tmp/p1", status=status)


class TestAnnotations:
    def test_progress_keeps_status(self):
        p = _project()
        states_mod.apply_annotation(p, Notification("progress", "half way", "build"))
        assert p.status == "building"
        assert p.last_notification.content == "half way"
        assert p.updated_at is not None

    def test_clarify_then_reply(self):
        p = _project()
        states_mod.apply_annotation(p, Notification("clarify", "Which DB?"))
        assert p.status == "waiting_for_input"
        assert p.waiting_since is not None

        states_mod.apply_reply(p)
        assert p.status == "building"
        assert p.waiting_since is None

    def test_success_and_failed_clear_waiting(self):
        p = _project("waiting_for_input")
        p.waiting_since = states_mod.utcnow()
        states_mod.apply_annotation(p, Notification("success", "done"))
        assert p.status == "completed"
        assert p.waiting_since is None

        p = _project()
        states_mod.apply_annotation(p, Notification("failed", "broke"))
        assert p.status == "failed"

    def test_serving_and_stopped_are_not_moved(self):
        for status in ("serving", "stopped"):
            p = _project(status)
            states_mod.apply_annotation(p, Notification("failed", "late message"))
            assert p.status == status
            assert p.last_notification.content == "late message"


class TestAgentExit:
    def test_exit_zero_completes(self):
        p = _project()
        assert states_mod.apply_agent_exit(p, 0)
        assert p.status == "completed"

    def test_nonzero_exit_fails(self):
        p = _project("creating")
        assert states_mod.apply_agent_exit(p, 7)
        assert p.status == "failed"

    def test_exit_outside_flight_is_ignored(self):
        for status in ("waiting_for_input", "completed", "stopped", "serving"):
            p = _project(status)
            assert not states_mod.apply_agent_exit(p, 1)
            assert p.status == status


class TestOtherTransitions:
    def test_stalled(self):
        p = _project()
        n = states_mod.mark_stalled(p, 3600)
        assert p.status == "failed"
        assert n.status == "failed"
        assert "60 minute" in n.content
        assert p.last_notification is n

    def test_serving_cycle(self):
        p = _project("completed")
        states_mod.mark_serving(p, 4001)
        assert (p.status, p.serving_port) == ("serving", 4001)
        states_mod.clear_serving(p)
        assert (p.status, p.serving_port) == ("completed", None)

    def test_stopped_clears_port(self):
        p = _project("serving")
        p.serving_port = 4001
        states_mod.mark_stopped(p)
        assert (p.status, p.serving_port) == ("stopped", None)

    def test_normalize_loaded(self):
        for status, expected in [
            ("building", "stopped"),
            ("creating", "stopped"),
            ("waiting_for_input", "waiting_for_input"),
            ("completed", "completed"),
            ("failed", "failed"),
        ]:
            assert states_mod.normalize_loaded(_project(status)).status == expected
