"""Free-space queries and fill budgets."""
import shutil
from typing import Optional

from .errors import CapacityUnavailable
from .logs import structured_log

MB = 1024 * 1024
GB = 1024 * 1024 * 1024
SAFETY_BUFFER_MB = 2048


def available_bytes(path: str) -> int:
    try:
        return int(shutil.disk_usage(path).free)
    except (OSError, ValueError) as e:
        raise CapacityUnavailable(path, str(e))


def writable_budget_mb(path: str, leave_safety_buffer: bool, buffer_mb: int = SAFETY_BUFFER_MB) -> Optional[int]:
    """Megabytes that may be filled on ``path``.

    None means no explicit target: the fill runs until the device is full.
    That is the case when no safety buffer is requested, and also when the
    free capacity can't be determined.
    """
    if not leave_safety_buffer:
        return None
    try:
        avail_mb = available_bytes(path) // MB
    except CapacityUnavailable as e:
        structured_log("capacity_unavailable", path=path, error=str(e))
        return None
    return max(avail_mb - buffer_mb, 1)


def free_space_gb(path: str) -> str:
    try:
        return f"{available_bytes(path) / GB:.1f} GB"
    except CapacityUnavailable as e:
        structured_log("capacity_unavailable", path=path, error=str(e))
        return "Unknown"
