"""Errors raised by the public build-manager operations."""


class OrchestratorError(Exception):
    """Base class for failures surfaced to callers of BuildManager."""


class ProjectNotFoundError(OrchestratorError):
    def __init__(self, project_id: str):
        super().__init__(f"Project {project_id} not found")
        self.project_id = project_id


class CapacityExceededError(OrchestratorError):
    def __init__(self, limit: int):
        super().__init__(
            f"Max concurrent builds reached ({limit}). Stop a running project first."
        )
        self.limit = limit


class NoLiveAgentError(OrchestratorError):
    def __init__(self, project_id: str):
        super().__init__(f"Project {project_id} agent not running")
        self.project_id = project_id


class SpawnError(OrchestratorError):
    """Raised when the agent executable cannot be started."""

    def __init__(self, command: str, reason: str):
        super().__init__(f"Could not start {command!r}: {reason}")
        self.command = command


class NoPortsAvailableError(OrchestratorError):
    def __init__(self, start: int, end: int):
        super().__init__(f"No available ports in range {start}-{end}")
        self.start = start
        self.end = end


class ServeStartupError(OrchestratorError):
    """Raised when a preview server exits inside the startup grace window."""

    def __init__(self, exit_code: int, command: str, directory: str):
        super().__init__(
            f'Dev server exited immediately with code {exit_code}. '
            f'Command: "{command}" in {directory}'
        )
        self.exit_code = exit_code
        self.command = command
        self.directory = directory


class ProjectBusyError(OrchestratorError):
    """Raised when a preview is requested while the project's agent is still at work."""

    def __init__(self, project_id: str, status: str):
        super().__init__(
            f"Project {project_id} is {status}. Stop it or wait for it to finish before serving."
        )
        self.project_id = project_id
        self.status = status
