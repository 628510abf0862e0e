"""
Run and backup ID generation utilities.
"""

import random
import string
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

BACKUP_ID_FORMAT = "%Y%m%d_%H%M%S_%f"
# Directory names written by the original shell deploy scripts
LEGACY_BACKUP_ID_FORMAT = "%Y%m%d_%H%M%S"


def new_run_id() -> str:
    """
    Generate a new run ID in format: r-YYYYMMDD-hhmmss-XXXX

    Returns:
        str: Unique run ID
    """
    now = datetime.now()
    date_str = now.strftime("%Y%m%d")
    time_str = now.strftime("%H%M%S")

    # Generate 4 random alphanumeric characters
    random_suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=4))

    return f"r-{date_str}-{time_str}-{random_suffix}"


def is_valid_run_id(run_id: str) -> bool:
    """
    Validate run ID format.

    Args:
        run_id: ID to validate

    Returns:
        bool: True if valid format
    """
    if not run_id.startswith("r-"):
        return False

    parts = run_id.split("-")
    if len(parts) != 4:
        return False

    # Check date format (YYYYMMDD)
    if len(parts[1]) != 8 or not parts[1].isdigit():
        return False

    # Check time format (HHMMSS)
    if len(parts[2]) != 6 or not parts[2].isdigit():
        return False

    # Check random suffix (4 alphanumeric)
    if len(parts[3]) != 4 or not parts[3].isalnum():
        return False

    return True


def parse_backup_id(backup_id: str) -> Optional[datetime]:
    """Return the UTC creation time encoded in a backup ID, or None."""
    for fmt in (BACKUP_ID_FORMAT, LEGACY_BACKUP_ID_FORMAT):
        try:
            return datetime.strptime(backup_id, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def is_valid_backup_id(backup_id: str) -> bool:
    return parse_backup_id(backup_id) is not None


def new_backup_id(existing: Iterable[str] = (), now: Optional[datetime] = None) -> str:
    """
    Generate a backup ID from the current UTC time.

    IDs sort lexicographically in creation order. If the clock has not moved
    past the newest existing ID (same microsecond, or clock skew), the new ID
    is one microsecond after it.

    Args:
        existing: Backup IDs already present for the target
        now: Override for the current time

    Returns:
        str: Backup ID in format YYYYMMDD_HHMMSS_ffffff
    """
    now = now or datetime.now(timezone.utc)
    candidate = now.strftime(BACKUP_ID_FORMAT)

    valid = [b for b in existing if is_valid_backup_id(b)]
    if valid:
        newest = max(valid)
        if candidate <= newest:
            newest_time = parse_backup_id(newest)
            candidate = (newest_time + timedelta(microseconds=1)).strftime(BACKUP_ID_FORMAT)

    return candidate
