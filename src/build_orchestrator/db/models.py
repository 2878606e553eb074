"""Data models for the build orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime

# Project statuses
CREATING = "creating"
BUILDING = "building"
WAITING_FOR_INPUT = "waiting_for_input"
SERVING = "serving"
COMPLETED = "completed"
FAILED = "failed"
STOPPED = "stopped"

PROJECT_STATUSES = (CREATING, BUILDING, WAITING_FOR_INPUT, SERVING, COMPLETED, FAILED, STOPPED)

# Notification kinds
PROGRESS = "progress"
CLARIFY = "clarify"
SUCCESS = "success"

NOTIFICATION_KINDS = (PROGRESS, CLARIFY, SUCCESS, FAILED)


@dataclass
class Notification:
    status: str
    content: str
    phase: str | None = None

    def to_dict(self) -> dict:
        d = {"status": self.status, "content": self.content}
        if self.phase:
            d["phase"] = self.phase
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "Notification":
        return cls(
            status=data["status"],
            content=data.get("content", ""),
            phase=data.get("phase") or None,
        )


@dataclass
class Project:
    id: str
    name: str
    description: str
    directory: str
    tech_stack: str | None = None
    status: str = CREATING
    created_at: datetime | None = None
    updated_at: datetime | None = None
    waiting_since: datetime | None = None
    last_notification: Notification | None = None
    serving_port: int | None = None
    session_id: str | None = None
    # Partial NDJSON line carried between stdout chunks; never persisted.
    output_buffer: str = field(default="", repr=False, compare=False)
