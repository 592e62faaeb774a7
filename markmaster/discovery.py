from dataclasses import dataclass, field
import logging
import os
from pathlib import Path


logger = logging.getLogger(__name__)

SPREADSHEET_EXTENSIONS = (".xlsx", ".xls")


@dataclass
class DiscoveryResult:
    paths: list[Path] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def is_spreadsheet(path: Path | str) -> bool:
    return Path(path).suffix.lower() in SPREADSHEET_EXTENSIONS


def discover(root: Path | str) -> DiscoveryResult:
    """Collect every spreadsheet under ``root``, at any depth.

    Directories that cannot be listed are recorded in ``errors`` and skipped.
    """
    result = DiscoveryResult()

    def on_error(exc: OSError) -> None:
        # Keep walking the rest of the tree.
        logger.warning("cannot read directory", extra={"path": exc.filename, "error": str(exc)})
        result.errors.append(f"Directory {exc.filename}: {exc.strerror or exc}")

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        dirnames.sort()
        for name in sorted(filenames):
            if is_spreadsheet(name):
                result.paths.append(Path(dirpath) / name)

    logger.debug("discovery finished", extra={"root": str(root), "files": len(result.paths)})
    return result
