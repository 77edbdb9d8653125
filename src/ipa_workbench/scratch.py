"""Scratch storage owned by archive jobs.

A scratch directory is created for every archive that has to be unpacked or
assembled. It is reference counted: whoever reads from it holds a reference,
and the directory is deleted when the last reference is released. This keeps
an unpacked bundle alive until every consumer (dylib scan, icon scan,
staging copy) has finished with it.
"""

import logging
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .common import FileAccessError, remove_path_quietly

logger = logging.getLogger(__name__)


class ScratchDirectory:
    """A uniquely named temporary directory with deterministic release.

    The creator holds the first reference. ``retain()`` hands out another one,
    ``release()`` gives one back. Using the object as a context manager
    releases the creator's reference on exit, whatever the exit path.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._refs = 1
        self._lock = threading.Lock()
        self._removed = False

    @classmethod
    def create(cls, prefix: str = "ipa_workbench_", parent: Optional[Path] = None) -> "ScratchDirectory":
        """Allocate a fresh scratch directory.

        Args:
            prefix: Directory name prefix
            parent: Directory to create it in (default: system temp)

        Returns:
            New ScratchDirectory holding one reference

        Raises:
            FileAccessError: If the directory cannot be created
        """
        try:
            if parent is not None:
                Path(parent).mkdir(parents=True, exist_ok=True)
            path = Path(tempfile.mkdtemp(prefix=prefix, dir=str(parent) if parent else None))
        except OSError as e:
            raise FileAccessError(
                f"Cannot create scratch directory: {e}", parent=str(parent) if parent else None
            ) from e
        logger.debug(f"Allocated scratch directory {path}")
        return cls(path)

    @property
    def removed(self) -> bool:
        return self._removed

    @property
    def ref_count(self) -> int:
        return self._refs

    def retain(self) -> "ScratchDirectory":
        """Take an additional reference.

        Raises:
            RuntimeError: If the directory has already been removed
        """
        with self._lock:
            if self._removed:
                raise RuntimeError(f"Scratch directory already released: {self.path}")
            self._refs += 1
        return self

    def release(self) -> None:
        """Drop one reference, removing the directory when none remain."""
        with self._lock:
            if self._removed:
                return
            self._refs -= 1
            if self._refs > 0:
                return
            self._removed = True
        logger.debug(f"Removing scratch directory {self.path}")
        remove_path_quietly(self.path)

    def __enter__(self) -> "ScratchDirectory":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"ScratchDirectory({str(self.path)!r}, refs={self._refs})"


@dataclass
class ArchiveJob:
    """One unpack or packaging run and the scratch space it owns."""
    source: Path
    destination: Optional[Path]
    scratch: ScratchDirectory

    def close(self) -> None:
        self.scratch.release()

    def __enter__(self) -> "ArchiveJob":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
