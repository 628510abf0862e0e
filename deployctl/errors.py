"""Exception taxonomy for deployment runs."""

from typing import Any, Dict, Optional


class DeployError(Exception):
    """Base exception for deployctl.

    ``phase`` is filled in by the engine when the error crosses a phase
    boundary, so the operator sees where the run stopped.
    """

    fatal = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, phase: Optional[str] = None):
        self.message = message
        self.details = details or {}
        self.phase = phase
        super().__init__(message)

    @property
    def kind(self) -> str:
        return self.__class__.__name__

    def __str__(self) -> str:
        if self.phase:
            return f"[{self.phase}] {self.kind}: {self.message}"
        return f"{self.kind}: {self.message}"


class ToolMissing(DeployError):
    """A required local or remote tool is not installed."""

    def __init__(self, tool: str, where: str = "local"):
        super().__init__(
            f"{tool} not found on {where} host",
            {"tool": tool, "where": where},
        )
        self.tool = tool


class ArtifactMissing(DeployError):
    """The release binary or a declared config file is missing."""

    def __init__(self, path: str, reason: str = "not found"):
        super().__init__(f"{path}: {reason}", {"path": path})
        self.path = path


class Unreachable(DeployError):
    """The target host could not be reached."""

    def __init__(self, host: str, reason: str = ""):
        message = f"Cannot connect to target host: {host}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, {"host": host})
        self.host = host


class TargetDirMissing(DeployError):
    """Deploy path is absent. Recoverable: preflight creates it."""

    fatal = False

    def __init__(self, path: str):
        super().__init__(f"Target directory does not exist: {path}", {"path": path})
        self.path = path


class TransferError(DeployError):
    """Copying a file to or on the target failed."""

    def __init__(self, source: str, destination: str, reason: str = ""):
        super().__init__(
            f"Failed to transfer {source} -> {destination}" + (f": {reason}" if reason else ""),
            {"source": source, "destination": destination},
        )


class ServiceStartFailed(DeployError):
    """The service did not report active after start."""

    def __init__(self, service: str, status_output: str = ""):
        super().__init__(
            f"Service {service} failed to start",
            {"service": service, "status": status_output},
        )


class HealthCheckFailed(DeployError):
    """Health polling exhausted its attempts."""

    def __init__(self, url: str, attempts: int, results=None, reason: str = ""):
        message = f"Health check failed after {attempts} attempts: {url}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, {"url": url, "attempts": attempts})
        self.results = list(results or [])


class NoBackupAvailable(DeployError):
    """Nothing to roll back to."""

    def __init__(self, path: str, reason: str = "no backup found"):
        super().__init__(f"{reason} under {path}", {"path": path})


class RestoreFailed(DeployError):
    """Restoring a backup or restarting on it failed."""

    def __init__(self, backup_id: str, reason: str):
        super().__init__(f"Restore of backup {backup_id} failed: {reason}", {"backup_id": backup_id})
        self.backup_id = backup_id


class NotificationFailed(DeployError):
    """Best-effort notification could not be delivered. Never fatal."""

    fatal = False


class AlreadyDeploying(DeployError):
    """Another run holds the deployment lock for this target."""

    def __init__(self, path: str, owner: Optional[Dict[str, Any]] = None):
        holder = ""
        if owner:
            holder = f" (held by run {owner.get('run_id', '?')} from {owner.get('user', '?')}@{owner.get('host', '?')})"
        super().__init__(f"Another deployment is in progress on {path}{holder}", {"path": path, "owner": owner or {}})
