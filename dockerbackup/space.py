"""
Space preflight: a single point-in-time estimate of required vs. available bytes.
"""
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from dockerbackup.errors import InsufficientSpace
from dockerbackup.utils import get_logger, format_bytes

logger = get_logger(__name__)


@dataclass
class SpaceEstimate:
    source_size: int
    required: int
    available: int
    destination: str

    @property
    def sufficient(self):
        return self.available >= self.required


def directory_size(path):
    """Return the size of ``path`` in bytes (``du -sb``, falling back to a walk)."""
    try:
        result = subprocess.run(['du', '-sb', str(path)], capture_output=True, text=True, timeout=3600)
        if result.returncode == 0 and result.stdout.strip():
            return int(result.stdout.split()[0])
    except (OSError, subprocess.TimeoutExpired, ValueError):
        pass

    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.lstat(os.path.join(root, name)).st_size
            except OSError:
                continue
    return total


def available_bytes(destination):
    """Free bytes on the filesystem holding ``destination`` (or its nearest existing parent)."""
    path = Path(destination)
    while not path.exists() and path != path.parent:
        path = path.parent
    return shutil.disk_usage(str(path)).free


def estimate(source_size, destination, overhead_pct=10, min_free=0):
    """Build a SpaceEstimate: source size plus overhead (and any minimum reserve)."""
    source_size = int(source_size or 0)
    required = source_size + source_size * overhead_pct // 100 + int(min_free or 0)
    return SpaceEstimate(
        source_size=source_size,
        required=required,
        available=available_bytes(destination),
        destination=str(destination),
    )


def check(source_size, destination, overhead_pct=10, min_free=0, force=False, log=None):
    """Check capacity at ``destination`` before committing to an operation.

    Args:
        source_size: Estimated source size in bytes
        destination: Path whose filesystem receives the data
        overhead_pct: Extra percentage for staging/extraction
        min_free: Bytes that must remain free in addition to the estimate
        force: Downgrade an insufficient-space result to a warning
        log: Optional ``log(level, message)`` callback

    Returns:
        SpaceEstimate

    Raises:
        InsufficientSpace: when space is short and ``force`` is not set.
    """
    log = log or (lambda level, message: logger.info(message))
    result = estimate(source_size, destination, overhead_pct=overhead_pct, min_free=min_free)
    log('INFO', f"Space check at {result.destination}: required {format_bytes(result.required)}, "
                f"available {format_bytes(result.available)}")

    if result.sufficient:
        return result
    if force:
        log('WARNING', f"Insufficient space at {result.destination}, continuing because force is set")
        return result
    raise InsufficientSpace(result.required, result.available, result.destination)
