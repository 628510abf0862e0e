"""
Event logging utilities for NDJSON format.
"""

import json
from datetime import datetime
from typing import Any, Dict, Optional

from .state import get_run_dir


def emit_event(run_id: str, event_type: str, data: Dict[str, Any], home: Optional[str] = None) -> None:
    """
    Emit an event to the run's logs.ndjson file.

    Args:
        run_id: Run ID
        event_type: Event type (e.g., "PHASE_START", "ERROR")
        data: Event data
        home: Optional deployctl home override
    """
    run_dir = get_run_dir(run_id, home)
    run_dir.mkdir(parents=True, exist_ok=True)
    logs_file = run_dir / "logs.ndjson"

    event = {
        "ts": datetime.now().isoformat(),
        "type": event_type,
        "data": data
    }

    with open(logs_file, "a") as f:
        f.write(json.dumps(event, default=str) + "\n")
        f.flush()


def read_events(run_id: str, home: Optional[str] = None) -> list[Dict[str, Any]]:
    """
    Read all events from a run's logs.ndjson file.
    """
    logs_file = get_run_dir(run_id, home) / "logs.ndjson"

    if not logs_file.exists():
        return []

    events = []
    with open(logs_file, "r") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue  # Skip malformed lines

    return events


def get_last_event(run_id: str, home: Optional[str] = None) -> Optional[Dict[str, Any]]:
    events = read_events(run_id, home)
    return events[-1] if events else None


def get_status_from_events(run_id: str, home: Optional[str] = None) -> str:
    """
    Determine run status from its events.

    Returns:
        Status string
    """
    events = read_events(run_id, home)
    if not events:
        return "unknown"

    last_event = events[-1]
    event_type = last_event.get("type", "")

    if event_type == EventTypes.RUN_DONE:
        return last_event.get("data", {}).get("outcome", "unknown")

    status_map = {
        EventTypes.RUN_START: "queued",
        EventTypes.PHASE_START: "running",
        EventTypes.PHASE_OK: "running",
        EventTypes.PHASE_SKIP: "running",
        EventTypes.HEALTH_ATTEMPT: "verifying",
        EventTypes.LOAD_CHECK: "verifying",
        EventTypes.BACKUP_CREATED: "running",
        EventTypes.BACKUP_PRUNED: "running",
        EventTypes.PHASE_FAIL: "failing",
        EventTypes.ROLLBACK_START: "rolling_back",
        EventTypes.ROLLBACK_DONE: "rolling_back",
        EventTypes.NOTIFY_FAIL: "running",
    }

    return status_map.get(event_type, "unknown")


# Predefined event types for consistency
class EventTypes:
    RUN_START = "RUN_START"
    PHASE_START = "PHASE_START"
    PHASE_OK = "PHASE_OK"
    PHASE_FAIL = "PHASE_FAIL"
    PHASE_SKIP = "PHASE_SKIP"
    HEALTH_ATTEMPT = "HEALTH_ATTEMPT"
    LOAD_CHECK = "LOAD_CHECK"
    BACKUP_CREATED = "BACKUP_CREATED"
    BACKUP_PRUNED = "BACKUP_PRUNED"
    ROLLBACK_START = "ROLLBACK_START"
    ROLLBACK_DONE = "ROLLBACK_DONE"
    NOTIFY_FAIL = "NOTIFY_FAIL"
    RUN_DONE = "RUN_DONE"
