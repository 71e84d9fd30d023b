# mcfleet/services/backups.py
"""World archiving and backup retention for an instance root."""

import logging
import subprocess
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from mcfleet.core.config import BACKUP_RETENTION_DAYS, BACKUP_TIMEOUT_SECONDS
from mcfleet.core.errors import OperationTimeout, ProcessFailure

logger = logging.getLogger(__name__)

WORLD_DIRS = ("world", "world_nether", "world_the_end")
BACKUP_PATTERNS = ("world_backup_*.tar.gz", "world_backup_*.zip")


def backup_world(root: Path, timeout: float = BACKUP_TIMEOUT_SECONDS, now: Optional[datetime] = None) -> Path:
    """Archive the world directories into backups/ with tar; returns the archive path."""
    root = Path(root)
    worlds = [name for name in WORLD_DIRS if (root / name).is_dir()]
    if not worlds:
        raise ProcessFailure(f"No world directories found in {root}")

    backups_dir = root / "backups"
    backups_dir.mkdir(parents=True, exist_ok=True)
    stamp = (now or datetime.now()).strftime("%Y-%m-%d_%H-%M-%S")
    archive = backups_dir / f"world_backup_{stamp}.tar.gz"

    cmd = ["tar", "-czf", str(archive), "-C", str(root), *worlds]
    logger.info("[Backup] Creating %s", archive)
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        archive.unlink(missing_ok=True)
        raise OperationTimeout(f"Backup timed out after {timeout:.0f}s") from e
    except OSError as e:
        raise ProcessFailure(f"Could not run tar: {e}") from e

    if result.returncode != 0:
        archive.unlink(missing_ok=True)
        raise ProcessFailure(
            f"Backup failed with exit code {result.returncode}: {result.stderr.strip()}",
            exit_code=result.returncode,
        )
    return archive


def prune_backups(root: Path, retention_days: int = BACKUP_RETENTION_DAYS, now: Optional[float] = None) -> int:
    """Delete world backups older than the retention window; returns how many."""
    backups_dir = Path(root) / "backups"
    if not backups_dir.is_dir():
        return 0
    cutoff = (now or time.time()) - retention_days * 86400
    removed = 0
    for pattern in BACKUP_PATTERNS:
        for archive in backups_dir.glob(pattern):
            try:
                if archive.stat().st_mtime < cutoff:
                    archive.unlink()
                    removed += 1
                    logger.info("[Backup] Deleted old backup %s", archive.name)
            except OSError as e:
                logger.warning("[Backup] Could not delete %s: %s", archive, e)
    return removed
