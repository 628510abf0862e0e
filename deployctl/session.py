"""
Remote sessions: run commands and move files on a target host.

Commands are argument vectors. ``SSHSession`` quotes them with ``shlex`` for
the remote shell; ``LocalSession`` runs them directly and uses the local
filesystem for file helpers.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import stat
import subprocess
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, NamedTuple, Optional, Sequence

from .config import DeploymentTarget
from .errors import TransferError, Unreachable

logger = logging.getLogger(__name__)

SSH_UNREACHABLE_EXIT = 255
DEFAULT_COMMAND_TIMEOUT = 600.0


class CommandResult(NamedTuple):
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class Session(ABC):
    """Command and file operations against one target."""

    def __init__(self, target: DeploymentTarget, timeout: float = 10.0,
                 command_timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.target = target
        self.timeout = timeout
        self.command_timeout = command_timeout

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @abstractmethod
    def run(self, argv: Sequence[str], sudo: bool = False, timeout: Optional[float] = None) -> CommandResult:
        """Run a command on the target and return its result."""

    @abstractmethod
    def copy(self, local_path: str, remote_path: str) -> None:
        """Copy a local file to the target. Raises TransferError."""

    @abstractmethod
    def sync_dir(self, local_dir: str, remote_dir: str) -> None:
        """Mirror a local directory to the target. Raises TransferError."""

    @abstractmethod
    def write_text(self, remote_path: str, content: str) -> None:
        """Write a text file on the target. Raises TransferError."""

    def open(self) -> None:
        """Probe connectivity. Raises Unreachable."""
        result = self.run(["echo", "Connection successful"], timeout=self.timeout)
        if not result.ok:
            raise Unreachable(self.target.host, result.stderr.strip())

    def close(self) -> None:
        pass

    def exists(self, path: str) -> bool:
        return self.run(["test", "-e", path]).ok

    def is_file(self, path: str) -> bool:
        return self.run(["test", "-f", path]).ok

    def is_dir(self, path: str) -> bool:
        return self.run(["test", "-d", path]).ok

    def makedirs(self, *paths: str) -> None:
        result = self.run(["mkdir", "-p", *paths])
        if not result.ok:
            raise TransferError("mkdir", " ".join(paths), result.stderr.strip())

    def mkdir_exclusive(self, path: str) -> bool:
        """Create a single directory; False if it already exists or cannot be made."""
        return self.run(["mkdir", path]).ok

    def ensure_dir(self, path: str, owner: Optional[str] = None) -> bool:
        """
        Create a directory if it is missing.

        Falls back to sudo with an ownership fix when the user cannot create
        it directly.

        Returns:
            bool: True if the directory was created
        """
        if self.is_dir(path):
            return False

        if self.run(["mkdir", "-p", path]).ok:
            return True

        result = self.run(["mkdir", "-p", path], sudo=True)
        if not result.ok:
            raise TransferError("mkdir", path, result.stderr.strip())
        if owner:
            result = self.run(["chown", f"{owner}:{owner}", path], sudo=True)
            if not result.ok:
                raise TransferError("chown", path, result.stderr.strip())
        return True

    def list_dir(self, path: str) -> List[str]:
        result = self.run(["ls", "-1A", path])
        if not result.ok:
            return []
        return sorted(line for line in result.stdout.splitlines() if line.strip())

    def copy_path(self, source: str, destination: str) -> None:
        """Copy a file or directory tree within the target."""
        result = self.run(["cp", "-a", source, destination])
        if not result.ok:
            raise TransferError(source, destination, result.stderr.strip())

    def remove(self, path: str) -> None:
        result = self.run(["rm", "-rf", "--", path])
        if not result.ok:
            raise TransferError(path, "(delete)", result.stderr.strip())

    def read_text(self, path: str) -> Optional[str]:
        result = self.run(["cat", path])
        return result.stdout if result.ok else None

    def chmod_executable(self, path: str) -> None:
        result = self.run(["chmod", "+x", path])
        if not result.ok:
            raise TransferError(path, "(chmod +x)", result.stderr.strip())

    def has_tool(self, tool: str) -> bool:
        return self.run(["sh", "-c", 'command -v "$1" >/dev/null 2>&1', "sh", tool]).ok

    def disk_free_mb(self, path: str) -> Optional[int]:
        result = self.run(["df", "-Pk", path])
        if not result.ok:
            return None
        lines = result.stdout.strip().splitlines()
        if len(lines) < 2:
            return None
        columns = lines[-1].split()
        try:
            return int(columns[3]) // 1024
        except (IndexError, ValueError):
            return None

    def memory_info(self) -> str:
        result = self.run(["free", "-h"])
        return result.stdout.strip() if result.ok else ""


class SSHSession(Session):
    """Session over ssh/scp with a multiplexed master connection."""

    def __init__(self, target: DeploymentTarget, timeout: float = 10.0,
                 command_timeout: float = DEFAULT_COMMAND_TIMEOUT):
        super().__init__(target, timeout, command_timeout)
        self.control_path = os.path.join(tempfile.gettempdir(), "deployctl-%C")

    def _ssh_options(self) -> List[str]:
        return [
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={int(self.timeout)}",
            "-o", "ControlMaster=auto",
            "-o", f"ControlPath={self.control_path}",
            "-o", "ControlPersist=60",
            *self.target.ssh_options,
        ]

    def run(self, argv: Sequence[str], sudo: bool = False, timeout: Optional[float] = None) -> CommandResult:
        command = list(argv)
        if sudo:
            command = ["sudo", "-n", *command]
        cmd = ["ssh", *self._ssh_options(), self.target.address, shlex.join(command)]
        logger.debug(f"ssh {self.target.address}: {shlex.join(command)}")
        if timeout is None:
            timeout = self.command_timeout

        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            return CommandResult(124, "", f"Command timed out after {timeout}s: {command[0]}")
        except FileNotFoundError as e:
            return CommandResult(127, "", str(e))

        if proc.returncode == SSH_UNREACHABLE_EXIT:
            raise Unreachable(self.target.host, proc.stderr.strip())
        return CommandResult(proc.returncode, proc.stdout, proc.stderr)

    def copy(self, local_path: str, remote_path: str) -> None:
        cmd = ["scp", "-q", *self._ssh_options(), local_path, f"{self.target.address}:{remote_path}"]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.command_timeout)
        except subprocess.TimeoutExpired:
            raise TransferError(local_path, remote_path, f"timed out after {self.command_timeout}s")
        except FileNotFoundError as e:
            raise TransferError(local_path, remote_path, str(e))
        if proc.returncode != 0:
            raise TransferError(local_path, remote_path, proc.stderr.strip())

    def sync_dir(self, local_dir: str, remote_dir: str) -> None:
        remote_shell = shlex.join(["ssh", *self._ssh_options()])
        cmd = [
            "rsync", "-az", "--delete",
            "-e", remote_shell,
            f"{local_dir.rstrip('/')}/",
            f"{self.target.address}:{remote_dir.rstrip('/')}/",
        ]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.command_timeout)
        except subprocess.TimeoutExpired:
            raise TransferError(local_dir, remote_dir, f"timed out after {self.command_timeout}s")
        except FileNotFoundError as e:
            raise TransferError(local_dir, remote_dir, str(e))
        if proc.returncode != 0:
            raise TransferError(local_dir, remote_dir, proc.stderr.strip())

    def write_text(self, remote_path: str, content: str) -> None:
        with tempfile.NamedTemporaryFile("w", delete=False, suffix=".tmp") as f:
            f.write(content)
            local_tmp = f.name
        try:
            self.copy(local_tmp, remote_path)
        finally:
            os.unlink(local_tmp)

    def close(self) -> None:
        cmd = ["ssh", *self._ssh_options(), "-O", "exit", self.target.address]
        try:
            subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except (subprocess.TimeoutExpired, FileNotFoundError) as e:
            logger.debug(f"Closing ssh master connection failed: {e}")


class LocalSession(Session):
    """Session against the local machine; file helpers use the filesystem."""

    def run(self, argv: Sequence[str], sudo: bool = False, timeout: Optional[float] = None) -> CommandResult:
        command = list(argv)
        if sudo and os.geteuid() != 0:
            command = ["sudo", "-n", *command]
        logger.debug(f"local: {shlex.join(command)}")
        if timeout is None:
            timeout = self.command_timeout

        try:
            proc = subprocess.run(command, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            return CommandResult(124, "", f"Command timed out after {timeout}s: {command[0]}")
        except FileNotFoundError as e:
            return CommandResult(127, "", str(e))
        return CommandResult(proc.returncode, proc.stdout, proc.stderr)

    def open(self) -> None:
        pass

    def copy(self, local_path: str, remote_path: str) -> None:
        try:
            shutil.copy2(local_path, remote_path)
        except OSError as e:
            raise TransferError(local_path, remote_path, str(e))

    def sync_dir(self, local_dir: str, remote_dir: str) -> None:
        try:
            if Path(remote_dir).exists():
                shutil.rmtree(remote_dir)
            shutil.copytree(local_dir, remote_dir)
        except OSError as e:
            raise TransferError(local_dir, remote_dir, str(e))

    def write_text(self, remote_path: str, content: str) -> None:
        try:
            Path(remote_path).write_text(content)
        except OSError as e:
            raise TransferError("(content)", remote_path, str(e))

    def exists(self, path: str) -> bool:
        return Path(path).exists()

    def is_file(self, path: str) -> bool:
        return Path(path).is_file()

    def is_dir(self, path: str) -> bool:
        return Path(path).is_dir()

    def makedirs(self, *paths: str) -> None:
        for path in paths:
            try:
                Path(path).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise TransferError("mkdir", path, str(e))

    def mkdir_exclusive(self, path: str) -> bool:
        try:
            os.mkdir(path)
        except OSError:
            return False
        return True

    def ensure_dir(self, path: str, owner: Optional[str] = None) -> bool:
        if Path(path).is_dir():
            return False
        self.makedirs(path)
        return True

    def list_dir(self, path: str) -> List[str]:
        directory = Path(path)
        if not directory.is_dir():
            return []
        return sorted(item.name for item in directory.iterdir())

    def copy_path(self, source: str, destination: str) -> None:
        try:
            if Path(source).is_dir():
                shutil.copytree(source, destination, symlinks=True)
            else:
                shutil.copy2(source, destination)
        except OSError as e:
            raise TransferError(source, destination, str(e))

    def remove(self, path: str) -> None:
        target = Path(path)
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            elif target.exists() or target.is_symlink():
                target.unlink()
        except OSError as e:
            raise TransferError(path, "(delete)", str(e))

    def read_text(self, path: str) -> Optional[str]:
        try:
            return Path(path).read_text()
        except OSError:
            return None

    def chmod_executable(self, path: str) -> None:
        try:
            mode = os.stat(path).st_mode
            os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        except OSError as e:
            raise TransferError(path, "(chmod +x)", str(e))

    def has_tool(self, tool: str) -> bool:
        return shutil.which(tool) is not None

    def disk_free_mb(self, path: str) -> Optional[int]:
        try:
            return shutil.disk_usage(path).free // (1024 * 1024)
        except OSError:
            return None


def connect(target: DeploymentTarget, timeout: float = 10.0,
            command_timeout: float = DEFAULT_COMMAND_TIMEOUT) -> Session:
    """
    Open a session to a target.

    Connection attempts are not retried; a failure here is environmental and
    ends the run.

    Args:
        target: Deployment target
        timeout: Connect timeout in seconds
        command_timeout: Default limit for each command and transfer

    Returns:
        Connected session

    Raises:
        Unreachable: If the host cannot be reached
    """
    if target.is_local:
        session: Session = LocalSession(target, timeout, command_timeout)
    elif target.transport == "ssh":
        session = SSHSession(target, timeout, command_timeout)
    else:
        raise ValueError(f"Unknown transport: {target.transport}")

    logger.info(f"Connecting to {target.address} via {target.transport}")
    session.open()
    return session
