"""Durable project records."""

import json
import sqlite3
from datetime import datetime

from build_orchestrator.core.states import normalize_loaded
from build_orchestrator.db.models import Notification, Project


def save_project(db: sqlite3.Connection, project: Project):
    """Upsert every persisted attribute of a project."""
    db.execute(
        """INSERT OR REPLACE INTO projects
           (id, name, description, tech_stack, status, directory, serving_port,
            session_id, created_at, updated_at, waiting_since, last_notification_json)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            project.id,
            project.name,
            project.description,
            project.tech_stack,
            project.status,
            project.directory,
            project.serving_port,
            project.session_id,
            _fmt_dt(project.created_at),
            _fmt_dt(project.updated_at),
            _fmt_dt(project.waiting_since),
            json.dumps(project.last_notification.to_dict())
            if project.last_notification else None,
        ),
    )
    db.commit()


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project record by ID, as stored."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List project records, as stored, oldest first."""
    rows = db.execute("SELECT * FROM projects ORDER BY created_at ASC").fetchall()
    return [_row_to_project(r) for r in rows]


def load_projects(db: sqlite3.Connection) -> list[Project]:
    """Load all records for a fresh manager; in-flight ones come back stopped."""
    projects = []
    for project in list_projects(db):
        status = project.status
        normalize_loaded(project)
        if project.status != status:
            save_project(db, project)
        projects.append(project)
    return projects


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        tech_stack=row["tech_stack"] or None,
        status=row["status"],
        directory=row["directory"],
        serving_port=row["serving_port"] or None,
        session_id=row["session_id"] or None,
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        waiting_since=_parse_dt(row["waiting_since"]),
        last_notification=_parse_notification(row["last_notification_json"]),
    )


def _parse_notification(val: str | None) -> Notification | None:
    if not val:
        return None
    try:
        return Notification.from_dict(json.loads(val))
    except (ValueError, KeyError, TypeError):
        return None


def _fmt_dt(val: datetime | None) -> str | None:
    if val is None:
        return None
    return val.isoformat()


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
