"""
Data models for artifacts, backups, health results and deployment runs.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .ids import new_run_id


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class PhaseStatus(Enum):
    """Lifecycle of a single phase."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunOutcome(Enum):
    """Terminal outcome of a deployment run."""
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class RunKind(Enum):
    DEPLOY = "deploy"
    DEPLOY_ONLY = "deploy-only"
    BACKUP_ONLY = "backup-only"
    HEALTH_CHECK = "health-check"
    ROLLBACK = "rollback"


@dataclass(frozen=True)
class Artifact:
    """Build output shipped to the target. Read-only."""
    binary: str
    config_files: List[str] = field(default_factory=list)
    docs_dir: Optional[str] = None

    @property
    def binary_name(self) -> str:
        return self.binary.replace("\\", "/").rsplit("/", 1)[-1]


@dataclass(frozen=True)
class BackupRecord:
    """Snapshot of the previously active release on a target."""
    id: str
    host: str
    path: str
    contents: Dict[str, bool]
    created_at: datetime

    @property
    def location(self) -> str:
        return f"{self.path}/backups/{self.id}"

    @property
    def has_binary(self) -> bool:
        return bool(self.contents.get("binary"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "host": self.host,
            "path": self.path,
            "contents": dict(self.contents),
            "created_at": isoformat(self.created_at),
        }


@dataclass
class HealthCheckResult:
    """Outcome of one HTTP probe."""
    attempt: int
    timestamp: datetime
    success: bool
    latency: float
    url: str = ""
    status_code: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = isoformat(self.timestamp)
        data["latency"] = round(self.latency, 4)
        return data


@dataclass
class PhaseRecord:
    name: str
    status: PhaseStatus = PhaseStatus.PENDING
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.ended_at:
            return (self.ended_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "started_at": isoformat(self.started_at),
            "ended_at": isoformat(self.ended_at),
            "duration": self.duration,
            "error": self.error,
        }


class RunFinishedError(RuntimeError):
    """Raised when a finished run is mutated."""


@dataclass
class DeploymentRun:
    """
    Record of one engine invocation.

    Mutated phase by phase and frozen once ``finish`` assigns an outcome.
    """
    kind: RunKind
    target: Any
    id: str = field(default_factory=new_run_id)
    started_at: datetime = field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    phases: List[PhaseRecord] = field(default_factory=list)
    outcome: Optional[RunOutcome] = None
    health_results: List[HealthCheckResult] = field(default_factory=list)
    metrics_result: Optional[HealthCheckResult] = None
    backup_id: Optional[str] = None
    notes: List[str] = field(default_factory=list)

    @classmethod
    def plan(cls, kind: RunKind, target: Any, phase_names: List[str]) -> "DeploymentRun":
        run = cls(kind=kind, target=target)
        run.phases = [PhaseRecord(name=name) for name in phase_names]
        return run

    @property
    def finished(self) -> bool:
        return self.outcome is not None

    def _check_mutable(self) -> None:
        if self.finished:
            raise RunFinishedError(f"Run {self.id} already finished with outcome {self.outcome.value}")

    def phase(self, name: str) -> PhaseRecord:
        for record in self.phases:
            if record.name == name:
                return record
        raise KeyError(name)

    @property
    def running_phase(self) -> Optional[PhaseRecord]:
        for record in self.phases:
            if record.status == PhaseStatus.RUNNING:
                return record
        return None

    @property
    def failed_phase(self) -> Optional[PhaseRecord]:
        for record in self.phases:
            if record.status == PhaseStatus.FAILED:
                return record
        return None

    def add_phase(self, name: str) -> PhaseRecord:
        self._check_mutable()
        record = PhaseRecord(name=name)
        self.phases.append(record)
        return record

    def start_phase(self, name: str) -> PhaseRecord:
        self._check_mutable()
        current = self.running_phase
        if current is not None:
            raise RuntimeError(f"Phase {current.name} is still running")
        record = self.phase(name)
        record.status = PhaseStatus.RUNNING
        record.started_at = utc_now()
        return record

    def succeed_phase(self, name: str) -> PhaseRecord:
        self._check_mutable()
        record = self.phase(name)
        record.status = PhaseStatus.SUCCEEDED
        record.ended_at = utc_now()
        return record

    def fail_phase(self, name: str, error: str) -> PhaseRecord:
        self._check_mutable()
        record = self.phase(name)
        record.status = PhaseStatus.FAILED
        record.ended_at = utc_now()
        record.error = error
        return record

    def skip_phase(self, name: str) -> PhaseRecord:
        self._check_mutable()
        record = self.phase(name)
        record.status = PhaseStatus.SKIPPED
        return record

    def add_health_results(self, results: List[HealthCheckResult]) -> None:
        self._check_mutable()
        self.health_results.extend(results)

    def note(self, message: str) -> None:
        self._check_mutable()
        self.notes.append(message)

    def finish(self, outcome: RunOutcome) -> None:
        self._check_mutable()
        self.outcome = outcome
        self.ended_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        target = self.target.to_dict() if hasattr(self.target, "to_dict") else self.target
        return {
            "id": self.id,
            "kind": self.kind.value,
            "target": target,
            "started_at": isoformat(self.started_at),
            "ended_at": isoformat(self.ended_at),
            "outcome": self.outcome.value if self.outcome else None,
            "backup_id": self.backup_id,
            "phases": [p.to_dict() for p in self.phases],
            "health_results": [r.to_dict() for r in self.health_results],
            "metrics_result": self.metrics_result.to_dict() if self.metrics_result else None,
            "notes": list(self.notes),
        }
