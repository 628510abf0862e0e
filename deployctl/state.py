"""
Local state for deployment runs.
"""

import json
import os
from pathlib import Path
from typing import Dict, Any, Optional

from .ids import is_valid_run_id


def get_deployctl_home(override: Optional[str] = None) -> Path:
    """
    Get the deployctl home directory.

    Args:
        override: Explicit directory, takes precedence over DEPLOYCTL_HOME

    Returns:
        Path: deployctl home directory
    """
    home = override or os.environ.get("DEPLOYCTL_HOME", ".deployctl")
    return Path(home).resolve()


def get_run_dir(run_id: str, home: Optional[str] = None) -> Path:
    """
    Get the directory for a specific run.

    Args:
        run_id: Run ID
        home: Optional home override

    Returns:
        Path: Run directory

    Raises:
        ValueError: If run ID is invalid
    """
    if not is_valid_run_id(run_id):
        raise ValueError(f"Invalid run ID: {run_id}")

    return get_deployctl_home(home) / run_id


def create_run_dir(run_id: str, home: Optional[str] = None) -> Path:
    """
    Create run directory and return its path.
    """
    run_dir = get_run_dir(run_id, home)
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def write_run_json(run_id: str, data: Dict[str, Any], home: Optional[str] = None) -> Path:
    """
    Write the serialized run to run.json.

    Returns:
        Path: Written file
    """
    run_file = create_run_dir(run_id, home) / "run.json"
    with open(run_file, "w") as f:
        json.dump(data, f, indent=2)
    return run_file


def read_run_json(run_id: str, home: Optional[str] = None) -> Dict[str, Any]:
    """
    Read a serialized run.

    Raises:
        FileNotFoundError: If run.json doesn't exist
    """
    run_file = get_run_dir(run_id, home) / "run.json"

    if not run_file.exists():
        raise FileNotFoundError(f"Run {run_id} not found")

    with open(run_file, "r") as f:
        return json.load(f)


def list_runs(home: Optional[str] = None) -> list[str]:
    """
    List all run IDs, most recent first.
    """
    root = get_deployctl_home(home)

    if not root.exists():
        return []

    runs = []
    for item in root.iterdir():
        if item.is_dir() and is_valid_run_id(item.name):
            runs.append(item.name)

    return sorted(runs, reverse=True)
