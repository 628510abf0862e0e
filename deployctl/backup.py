"""
Backup management for the active release on a target.

Layout under the deploy path::

    backups/<id>/<binary>
    backups/<id>/config/
    backups/<id>/logs/
    backups/<id>/manifest.json
"""

import json
import logging
from datetime import datetime, timezone
from typing import List, Optional, Union

from .config import DeploymentTarget
from .errors import NoBackupAvailable, RestoreFailed, TransferError
from .ids import new_backup_id, parse_backup_id, is_valid_backup_id
from .models import BackupRecord, isoformat, utc_now
from .session import Session

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
COMPONENTS = ("binary", "config", "logs")


class BackupManager:
    """Snapshot, list, prune and restore backups on one target."""

    def __init__(self, session: Session, target: DeploymentTarget, binary_name: str):
        self.session = session
        self.target = target
        self.binary_name = binary_name

    @property
    def backups_dir(self) -> str:
        return f"{self.target.path}/backups"

    def _active_paths(self) -> dict:
        root = self.target.path
        return {
            "binary": f"{root}/bin/{self.binary_name}",
            "config": f"{root}/config",
            "logs": f"{root}/logs",
        }

    def _backup_paths(self, backup_dir: str) -> dict:
        return {
            "binary": f"{backup_dir}/{self.binary_name}",
            "config": f"{backup_dir}/config",
            "logs": f"{backup_dir}/logs",
        }

    def snapshot(self) -> BackupRecord:
        """
        Copy the current binary, config and logs into a new backup.

        Missing components are recorded as absent; a first-ever deploy yields
        an empty backup.

        Returns:
            BackupRecord for the new backup

        Raises:
            TransferError: If a copy fails
        """
        existing = self._backup_ids()
        backup_id = new_backup_id(existing)
        backup_dir = f"{self.backups_dir}/{backup_id}"

        self.session.makedirs(backup_dir)

        contents = {}
        sources = self._active_paths()
        destinations = self._backup_paths(backup_dir)
        for component in COMPONENTS:
            source = sources[component]
            if self.session.exists(source):
                self.session.copy_path(source, destinations[component])
                contents[component] = True
                logger.info(f"Backed up existing {component}")
            else:
                contents[component] = False

        record = BackupRecord(
            id=backup_id,
            host=self.target.host,
            path=self.target.path,
            contents=contents,
            created_at=utc_now(),
        )
        self.session.write_text(f"{backup_dir}/{MANIFEST_NAME}", json.dumps(record.to_dict(), indent=2))
        logger.info(f"Backup completed: {backup_dir}")
        return record

    def _backup_ids(self) -> List[str]:
        names = self.session.list_dir(self.backups_dir)
        return sorted(name for name in names if is_valid_backup_id(name))

    def _load_record(self, backup_id: str) -> BackupRecord:
        backup_dir = f"{self.backups_dir}/{backup_id}"
        manifest = self.session.read_text(f"{backup_dir}/{MANIFEST_NAME}")
        if manifest:
            try:
                data = json.loads(manifest)
                created_at = datetime.strptime(data["created_at"], "%Y-%m-%dT%H:%M:%SZ")
                return BackupRecord(
                    id=backup_id,
                    host=data.get("host", self.target.host),
                    path=data.get("path", self.target.path),
                    contents={c: bool(data.get("contents", {}).get(c)) for c in COMPONENTS},
                    created_at=created_at.replace(tzinfo=timezone.utc),
                )
            except (json.JSONDecodeError, KeyError, ValueError):
                logger.warning(f"Ignoring unreadable manifest in {backup_dir}")

        # Backups made by the shell scripts have no manifest
        paths = self._backup_paths(backup_dir)
        contents = {c: self.session.exists(paths[c]) for c in COMPONENTS}
        return BackupRecord(
            id=backup_id,
            host=self.target.host,
            path=self.target.path,
            contents=contents,
            created_at=parse_backup_id(backup_id),
        )

    def list_backups(self) -> List[BackupRecord]:
        """All backups, oldest first."""
        return [self._load_record(backup_id) for backup_id in self._backup_ids()]

    def latest(self) -> Optional[BackupRecord]:
        ids = self._backup_ids()
        if not ids:
            return None
        return self._load_record(ids[-1])

    def prune(self, keep_last: int = 5) -> List[str]:
        """
        Delete all but the newest ``keep_last`` backups.

        Returns:
            IDs of removed backups, oldest first
        """
        if keep_last < 0:
            raise ValueError("keep_last must be >= 0")

        ids = self._backup_ids()
        doomed = ids[:-keep_last] if keep_last else ids
        for backup_id in doomed:
            self.session.remove(f"{self.backups_dir}/{backup_id}")
            logger.info(f"Removed old backup {backup_id}")
        return doomed

    def resolve(self, backup: Union[BackupRecord, str] = "latest") -> BackupRecord:
        """
        Resolve a backup reference.

        Raises:
            NoBackupAvailable: If nothing matches
        """
        if isinstance(backup, BackupRecord):
            return backup
        if backup == "latest":
            record = self.latest()
            if record is None:
                raise NoBackupAvailable(self.backups_dir)
            return record
        if backup not in self._backup_ids():
            raise NoBackupAvailable(self.backups_dir, f"backup {backup} not found")
        return self._load_record(backup)

    def restore(
        self,
        backup: Union[BackupRecord, str] = "latest",
        include_config: bool = False,
        include_logs: bool = False,
    ) -> BackupRecord:
        """
        Copy a backup's binary (and optionally config/logs) back into place.

        Args:
            backup: Record, backup ID, or "latest"
            include_config: Also restore config/
            include_logs: Also restore logs/

        Returns:
            The restored BackupRecord

        Raises:
            NoBackupAvailable: If there is no backup or it has no binary
            RestoreFailed: If copying fails
        """
        record = self.resolve(backup)
        if not record.has_binary:
            raise NoBackupAvailable(self.backups_dir, f"backup {record.id} has no binary")

        sources = self._backup_paths(record.location)
        destinations = self._active_paths()
        components = ["binary"]
        if include_config and record.contents.get("config"):
            components.append("config")
        if include_logs and record.contents.get("logs"):
            components.append("logs")

        try:
            self.session.makedirs(f"{self.target.path}/bin")
            for component in components:
                if component != "binary":
                    self.session.remove(destinations[component])
                self.session.copy_path(sources[component], destinations[component])
                logger.info(f"Restored {component} from backup {record.id}")
            self.session.chmod_executable(destinations["binary"])
        except TransferError as e:
            raise RestoreFailed(record.id, str(e))

        return record


def describe(record: BackupRecord) -> str:
    present = ", ".join(c for c in COMPONENTS if record.contents.get(c)) or "empty"
    return f"{record.id}  {isoformat(record.created_at)}  [{present}]"
