"""Project status transitions.

Every function mutates the project in place and bumps ``updated_at``. The
caller owns persistence and process bookkeeping.
"""

from datetime import datetime, timezone

from build_orchestrator.db.models import (
    BUILDING,
    CLARIFY,
    COMPLETED,
    CREATING,
    FAILED,
    SERVING,
    STOPPED,
    SUCCESS,
    WAITING_FOR_INPUT,
    Notification,
    Project,
)

IN_FLIGHT = (CREATING, BUILDING)
TERMINAL = (COMPLETED, FAILED, STOPPED)

# Statuses an annotation is not allowed to move a project out of.
_ANNOTATION_LOCKED = (SERVING, STOPPED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _touch(project: Project, now: datetime | None = None):
    project.updated_at = now or utcnow()


def is_in_flight(project: Project) -> bool:
    return project.status in IN_FLIGHT


def mark_building(project: Project):
    """Agent spawned (or respawned) and its first prompt handed over."""
    project.status = BUILDING
    project.waiting_since = None
    _touch(project)


def apply_annotation(project: Project, notification: Notification):
    """Record an agent annotation and move the status it implies."""
    now = utcnow()
    project.last_notification = notification
    _touch(project, now)

    if project.status in _ANNOTATION_LOCKED:
        return

    if notification.status == SUCCESS:
        project.status = COMPLETED
        project.waiting_since = None
    elif notification.status == FAILED:
        project.status = FAILED
        project.waiting_since = None
    elif notification.status == CLARIFY:
        project.status = WAITING_FOR_INPUT
        project.waiting_since = now


def apply_reply(project: Project):
    mark_building(project)


def apply_agent_exit(project: Project, exit_code: int) -> bool:
    """Settle an in-flight project after its agent exits. Returns True if status changed."""
    if not is_in_flight(project):
        return False
    project.status = COMPLETED if exit_code == 0 else FAILED
    project.waiting_since = None
    _touch(project)
    return True


def mark_stalled(project: Project, timeout_seconds: float) -> Notification:
    """Fail a project whose agent ran past the stall timeout."""
    minutes = round(timeout_seconds / 60)
    notification = Notification(
        status=FAILED,
        content=f"Agent timed out after {minutes} minute(s)",
    )
    project.status = FAILED
    project.waiting_since = None
    project.last_notification = notification
    _touch(project)
    return notification


def mark_serving(project: Project, port: int):
    project.status = SERVING
    project.serving_port = port
    _touch(project)


def clear_serving(project: Project):
    """The preview server is gone; a serving project drops back to completed."""
    if project.status == SERVING:
        project.status = COMPLETED
    project.serving_port = None
    _touch(project)


def mark_stopped(project: Project):
    project.status = STOPPED
    project.waiting_since = None
    project.serving_port = None
    _touch(project)


def mark_failed(project: Project):
    project.status = FAILED
    project.waiting_since = None
    _touch(project)


def normalize_loaded(project: Project) -> Project:
    """No process survives a restart: in-flight records come back stopped."""
    if is_in_flight(project):
        project.status = STOPPED
    return project
