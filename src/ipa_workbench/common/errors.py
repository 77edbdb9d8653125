"""Base error definitions for ipa_workbench."""

import logging
import shutil
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)


class WorkbenchError(Exception):
    """Base exception for all ipa_workbench errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context


class FileAccessError(WorkbenchError):
    """A file or directory could not be read, copied or created."""
    pass


def remove_path_quietly(path: Path) -> bool:
    """Remove a file or directory tree, logging instead of raising.

    Used for cleanup paths (unselected assets, discarded staging folders,
    scratch directories) where a failed deletion must not mask the result
    of the primary operation.

    Args:
        path: File or directory to remove

    Returns:
        True if the path is gone afterwards, False if removal failed
    """
    path = Path(path)
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()
        return True
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")
        return False
