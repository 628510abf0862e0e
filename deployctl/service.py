from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

from .errors import ServiceStartFailed, TransferError
from .session import Session

logger = logging.getLogger(__name__)

UNIT_DIR = "/etc/systemd/system"


def _environment_line(key: str, value: str) -> str:
    # systemd splits unquoted assignments on whitespace
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'Environment="{key}={escaped}"'


def generate_systemd_unit(
    service: str,
    exec_start: str,
    working_directory: str,
    user: str,
    environment: Optional[Dict[str, str]] = None,
) -> str:
    env_lines = "\n".join(_environment_line(key, value) for key, value in (environment or {}).items())
    return f"""
[Unit]
Description={service} Service
After=network.target

[Service]
Type=simple
User={user}
WorkingDirectory={working_directory}
ExecStart={exec_start}
Restart=always
RestartSec=5
{env_lines}

[Install]
WantedBy=multi-user.target
""".strip() + "\n"


class ServiceManager:
    """systemd operations for one service, issued through a session."""

    def __init__(self, session: Session, name: str, unit_dir: str = UNIT_DIR,
                 sleep: Callable[[float], None] = time.sleep):
        self.session = session
        self.name = name
        self.unit_dir = unit_dir
        self.sleep = sleep

    @property
    def unit_path(self) -> str:
        return f"{self.unit_dir}/{self.name}.service"

    def _systemctl(self, *args: str):
        return self.session.run(["systemctl", *args], sudo=True)

    def install_unit(self, content: str) -> None:
        """Write the unit file and reload the service manager."""
        staging = f"/tmp/{self.name}.service"
        self.session.write_text(staging, content)
        result = self.session.run(["mv", staging, self.unit_path], sudo=True)
        if not result.ok:
            raise TransferError(staging, self.unit_path, result.stderr.strip())
        self.reload()

    def reload(self) -> None:
        result = self._systemctl("daemon-reload")
        if not result.ok:
            raise TransferError(self.unit_path, "(daemon-reload)", result.stderr.strip())

    def is_active(self) -> bool:
        return self._systemctl("is-active", "--quiet", self.name).ok

    def start(self) -> None:
        result = self._systemctl("start", self.name)
        if not result.ok:
            raise ServiceStartFailed(self.name, result.stderr.strip())

    def stop(self) -> None:
        result = self._systemctl("stop", self.name)
        if not result.ok:
            logger.warning(f"Stopping {self.name} returned {result.exit_code}: {result.stderr.strip()}")

    def enable(self) -> None:
        result = self._systemctl("enable", self.name)
        if not result.ok:
            logger.warning(f"Enabling {self.name} failed: {result.stderr.strip()}")

    def status(self) -> str:
        result = self._systemctl("status", "--no-pager", self.name)
        return (result.stdout or result.stderr).strip()

    def wait_active(self, wait: float) -> bool:
        """Wait a fixed time, then report whether the service is active."""
        if wait > 0:
            logger.info(f"Waiting {wait:g}s for {self.name} to start...")
            self.sleep(wait)
        return self.is_active()
