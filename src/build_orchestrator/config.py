"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".build_orchestrator" / "bo.db")
    projects_dir: Path = field(default_factory=lambda: Path.cwd() / "projects")
    port_range_start: int = 4000
    port_range_end: int = 4999
    max_concurrent_builds: int = 3
    public_host: str | None = None
    agent_command: str = "claude"
    system_prompt_path: Path | None = None
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    spawn_settle_delay: float = 2.0
    serve_grace_period: float = 3.0
    reminder_interval: float = 10 * 60
    cleanup_interval: float = 30 * 60
    cleanup_age: float = 30 * 60
    stall_check_interval: float = 5 * 60
    stall_timeout: float = 60 * 60
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("BO_DB_PATH"):
            config.db_path = Path(db)

        if projects := os.environ.get("BO_PROJECTS_DIR"):
            config.projects_dir = Path(projects).resolve()

        if start := os.environ.get("BO_PORT_RANGE_START"):
            config.port_range_start = int(start)

        if end := os.environ.get("BO_PORT_RANGE_END"):
            config.port_range_end = int(end)

        if max_builds := os.environ.get("BO_MAX_CONCURRENT_BUILDS"):
            config.max_concurrent_builds = int(max_builds)

        config.public_host = os.environ.get("BO_PUBLIC_HOST") or None

        if agent := os.environ.get("BO_AGENT_COMMAND"):
            config.agent_command = agent

        if prompt_path := os.environ.get("BO_SYSTEM_PROMPT_PATH"):
            config.system_prompt_path = Path(prompt_path)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("BO_SLACK_CHANNEL")

        if settle := os.environ.get("BO_SPAWN_SETTLE_DELAY"):
            config.spawn_settle_delay = float(settle)

        if grace := os.environ.get("BO_SERVE_GRACE_PERIOD"):
            config.serve_grace_period = float(grace)

        if reminder := os.environ.get("BO_REMINDER_INTERVAL"):
            config.reminder_interval = float(reminder)

        if cleanup := os.environ.get("BO_CLEANUP_INTERVAL"):
            config.cleanup_interval = float(cleanup)

        if cleanup_age := os.environ.get("BO_CLEANUP_AGE"):
            config.cleanup_age = float(cleanup_age)

        if stall_check := os.environ.get("BO_STALL_CHECK_INTERVAL"):
            config.stall_check_interval = float(stall_check)

        if stall := os.environ.get("BO_STALL_TIMEOUT"):
            config.stall_timeout = float(stall)

        if level := os.environ.get("BO_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
