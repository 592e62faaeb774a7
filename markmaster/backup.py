from datetime import datetime
import logging
from pathlib import Path
import shutil

from markmaster.errors import BackupError


logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"


def timestamped_path(source: Path | str, target_dir: Path | str, label: str, *, now: datetime | None = None) -> Path:
    """Build ``<stem>_<label>_<timestamp><suffix>`` inside ``target_dir``.

    The timestamp sorts chronologically; a counter is appended if the name is
    already taken.
    """
    source = Path(source)
    stamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    base = f"{source.stem}_{label}_{stamp}"
    candidate = Path(target_dir) / f"{base}{source.suffix}"
    counter = 1
    while candidate.exists():
        candidate = Path(target_dir) / f"{base}_{counter}{source.suffix}"
        counter += 1
    return candidate


def copy_with_timestamp(source: Path | str, target_dir: Path | str, label: str) -> Path:
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    target = timestamped_path(source, target_dir, label)
    shutil.copy2(source, target)
    return target


def snapshot(destination: Path | str, backup_dir: Path | str) -> Path:
    """Byte-copy the destination workbook before it is mutated."""
    try:
        backup_path = copy_with_timestamp(destination, backup_dir, "backup")
    except OSError as exc:
        raise BackupError(f"failed to back up {destination} into {backup_dir}: {exc}") from exc

    logger.info("backup created", extra={"original_path": str(destination), "backup_path": str(backup_path)})
    return backup_path
