"""
Per-target deployment lock.

The lock is a directory created with a plain ``mkdir`` (atomic on POSIX
filesystems) under the deploy path, holding an owner file.
"""

import getpass
import json
import logging
import os
import socket
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .errors import AlreadyDeploying, TransferError
from .session import Session

logger = logging.getLogger(__name__)

LOCK_DIR_NAME = ".deploy.lock"


class DeploymentLock:
    """Exclusive ownership of a target's deploy path for one run."""

    def __init__(self, session: Session, path: str, run_id: str):
        self.session = session
        self.path = path
        self.run_id = run_id
        self.held = False

    @property
    def lock_dir(self) -> str:
        return f"{self.path}/{LOCK_DIR_NAME}"

    @property
    def owner_file(self) -> str:
        return f"{self.lock_dir}/owner.json"

    def owner(self) -> Optional[Dict[str, Any]]:
        content = self.session.read_text(self.owner_file)
        if not content:
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            return None

    def acquire(self) -> None:
        """
        Take the lock.

        Raises:
            AlreadyDeploying: If another run holds it
        """
        if self.held:
            return

        if not self.session.mkdir_exclusive(self.lock_dir):
            if self.session.is_dir(self.lock_dir):
                raise AlreadyDeploying(self.path, self.owner())
            raise TransferError("mkdir", self.lock_dir, "cannot create deployment lock")

        self.held = True
        owner = {
            "run_id": self.run_id,
            "user": getpass.getuser(),
            "host": socket.gethostname(),
            "pid": os.getpid(),
            "acquired_at": datetime.now(timezone.utc).isoformat(),
        }
        self.session.write_text(self.owner_file, json.dumps(owner, indent=2))
        logger.debug(f"Acquired deployment lock {self.lock_dir}")

    def release(self) -> None:
        if not self.held:
            return
        try:
            self.session.remove(self.lock_dir)
            logger.debug(f"Released deployment lock {self.lock_dir}")
        finally:
            self.held = False


def force_unlock(session: Session, path: str) -> Optional[Dict[str, Any]]:
    """Remove a stale lock. Returns the previous owner info, if any."""
    lock = DeploymentLock(session, path, run_id="")
    owner = lock.owner()
    if session.exists(lock.lock_dir):
        session.remove(lock.lock_dir)
        logger.warning(f"Removed deployment lock {lock.lock_dir} (owner: {owner})")
    return owner
