"""
Rollback to the most recent backup.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .backup import BackupManager
from .errors import DeployError, HealthCheckFailed, NoBackupAvailable, RestoreFailed
from .health import HealthVerifier
from .models import BackupRecord, HealthCheckResult
from .service import ServiceManager

logger = logging.getLogger(__name__)


@dataclass
class RollbackResult:
    backup: BackupRecord
    health_results: List[HealthCheckResult] = field(default_factory=list)


class RollbackController:
    """
    Stop the service, restore the latest backup's binary and start again.

    The backup is resolved before the service is touched, so a target without
    a usable backup is left running as it is.
    """

    def __init__(
        self,
        backups: BackupManager,
        service: ServiceManager,
        start_wait: float = 5.0,
        verifier: Optional[HealthVerifier] = None,
        health_url: Optional[str] = None,
        health_max_attempts: int = 30,
        health_interval: float = 2.0,
    ):
        self.backups = backups
        self.service = service
        self.start_wait = start_wait
        self.verifier = verifier
        self.health_url = health_url
        self.health_max_attempts = health_max_attempts
        self.health_interval = health_interval

    def rollback(self, verify_health: bool = False) -> RollbackResult:
        """
        Roll the target back.

        Args:
            verify_health: Poll the health endpoint after restart

        Returns:
            RollbackResult

        Raises:
            NoBackupAvailable: No backup, or the latest one has no binary
            RestoreFailed: Copy or restart failed
        """
        logger.info("Rolling back deployment...")
        record = self.backups.latest()
        if record is None:
            raise NoBackupAvailable(self.backups.backups_dir)
        if not record.has_binary:
            raise NoBackupAvailable(self.backups.backups_dir, f"latest backup {record.id} has no binary")

        self.service.stop()

        # Once stopped, every failure surfaces as RestoreFailed
        try:
            self.backups.restore(record)
        except DeployError as e:
            logger.error(f"Restore failed, restarting {self.service.name} on the binary in place")
            self._restart_quietly()
            if isinstance(e, RestoreFailed):
                raise
            raise RestoreFailed(record.id, str(e))

        try:
            self.service.start()
            active = self.service.wait_active(self.start_wait)
        except DeployError as e:
            raise RestoreFailed(record.id, str(e))

        if not active:
            raise RestoreFailed(record.id, f"service {self.service.name} not active after restore")

        result = RollbackResult(backup=record)
        if verify_health:
            if not (self.verifier and self.health_url):
                raise ValueError("Post-rollback health check needs a verifier and health URL")
            try:
                result.health_results = self.verifier.verify(
                    self.health_url, self.health_max_attempts, self.health_interval
                )
            except HealthCheckFailed as e:
                raise RestoreFailed(record.id, e.message)

        logger.info(f"Rollback completed: restored backup {record.id}")
        return result

    def _restart_quietly(self) -> None:
        try:
            self.service.start()
        except DeployError as e:
            logger.error(f"Restart after failed restore also failed: {e}")
