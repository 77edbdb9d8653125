"""Repackaging an application bundle into a distributable archive."""

import logging
import os
import shutil
import zipfile
import zlib
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from .archive import PAYLOAD_DIR_NAME
from .common import FileAccessError, remove_path_quietly
from .config import ExtractionConfig, PackagingConfig
from .errors import DestinationConflictError, PackagingError
from .scratch import ArchiveJob, ScratchDirectory

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class ProgressReporter:
    """Turns byte counts into throttled, non-decreasing fraction reports."""
    
    def __init__(self, callback: Optional[ProgressCallback], total_bytes: int, step: float = 0.01):
        self.callback = callback
        self.total_bytes = total_bytes
        self.step = step
        self.processed_bytes = 0
        self.last_reported = -1.0
    
    def advance(self, byte_count: int) -> None:
        self.processed_bytes += byte_count
        if self.total_bytes:
            self.report(min(self.processed_bytes / self.total_bytes, 1.0))
    
    def report(self, fraction: float) -> None:
        if self.callback is None or fraction <= self.last_reported:
            return
        if fraction < 1.0 and fraction - self.last_reported < self.step:
            return
        self.last_reported = fraction
        self.callback(fraction)


def _set_compress_level(zinfo: zipfile.ZipInfo, level: int) -> None:
    # ZipInfo.compress_level is public from Python 3.13 on. Before that,
    # ZipFile.open(zinfo, 'w') only reads the private _compresslevel.
    if hasattr(zinfo, "compress_level"):
        zinfo.compress_level = level
    else:
        zinfo._compresslevel = level


class PackagingEngine:
    """Builds a Payload folder from a bundle and compresses it into an archive."""
    
    def __init__(
        self,
        scratch_parent: Optional[Path] = None,
        scratch_prefix: str = "ipa_workbench_",
        compression_level: int = 6,
        chunk_size: int = 65536,
        progress_step: float = 0.01
    ):
        """Initialize packaging engine.
        
        Args:
            scratch_parent: Directory where scratch folders are created (default: system temp)
            scratch_prefix: Name prefix for scratch folders
            compression_level: Deflate level, 0 stores members uncompressed
            chunk_size: Bytes read per write while compressing
            progress_step: Minimum fraction delta between progress reports
        """
        self.scratch_parent = Path(scratch_parent) if scratch_parent else None
        self.scratch_prefix = scratch_prefix
        self.compression_level = compression_level
        self.chunk_size = chunk_size
        self.progress_step = progress_step
    
    @classmethod
    def from_config(cls, extraction: ExtractionConfig, packaging: PackagingConfig) -> "PackagingEngine":
        return cls(
            scratch_parent=Path(extraction.scratch_dir) if extraction.scratch_dir else None,
            scratch_prefix=extraction.scratch_prefix,
            compression_level=packaging.compression_level,
            chunk_size=packaging.chunk_size,
            progress_step=packaging.progress_step,
        )
    
    def package(
        self,
        bundle_path: Path,
        destination_path: Path,
        on_progress: Optional[ProgressCallback] = None
    ) -> Path:
        """Package a bundle as ``Payload/<bundle>`` inside a zip archive.
        
        The destination must not exist; clearing it is the caller's decision.
        All intermediate files live in a scratch directory that is removed on
        every exit path.
        
        Args:
            bundle_path: Application bundle directory
            destination_path: Where the archive is placed
            on_progress: Optional callback(fraction) while compressing
            
        Returns:
            Path of the created archive
            
        Raises:
            DestinationConflictError: If the destination already exists
            PackagingError: If copying, compressing or placing the archive fails
        """
        bundle_path = Path(bundle_path)
        destination = Path(destination_path)
        
        if destination.exists() or destination.is_symlink():
            raise DestinationConflictError(
                f"Destination already exists: {destination}", destination=str(destination)
            )
        if not bundle_path.is_dir():
            raise PackagingError(f"Bundle not found: {bundle_path}", bundle=str(bundle_path))
        
        logger.info(f"Packaging {bundle_path.name} -> {destination}")
        
        try:
            scratch = ScratchDirectory.create(prefix=self.scratch_prefix, parent=self.scratch_parent)
        except FileAccessError as e:
            raise PackagingError(e.message, bundle=str(bundle_path)) from e
        
        with ArchiveJob(source=bundle_path, destination=destination, scratch=scratch) as job:
            try:
                payload_dir = self._build_payload(bundle_path, job.scratch.path)
                temp_archive = job.scratch.path / destination.name
                self._compress(payload_dir, temp_archive, on_progress)
                destination.parent.mkdir(parents=True, exist_ok=True)
                self._place_archive(temp_archive, destination)
            except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error) as e:
                raise PackagingError(
                    f"Failed to package {bundle_path.name}: {e}",
                    bundle=str(bundle_path),
                    destination=str(destination)
                ) from e
        
        logger.info(f"Packaged {bundle_path.name} ({destination.stat().st_size} bytes)")
        return destination
    
    def _build_payload(self, bundle_path: Path, scratch_path: Path) -> Path:
        payload_dir = scratch_path / PAYLOAD_DIR_NAME
        payload_dir.mkdir()
        shutil.copytree(bundle_path, payload_dir / bundle_path.name, ignore_dangling_symlinks=True)
        logger.debug(f"Copied {bundle_path.name} into {payload_dir}")
        return payload_dir
    
    def _collect_entries(self, payload_dir: Path) -> Iterator[Tuple[Path, str]]:
        """Yield (path, archive name) for the payload tree, directories included."""
        root = payload_dir.parent
        for dirpath, dirnames, filenames in os.walk(payload_dir):
            dirnames.sort()
            current = Path(dirpath)
            yield current, current.relative_to(root).as_posix() + "/"
            for filename in sorted(filenames):
                file_path = current / filename
                yield file_path, file_path.relative_to(root).as_posix()
    
    def _compress(self, payload_dir: Path, archive_path: Path, on_progress: Optional[ProgressCallback]) -> None:
        entries: List[Tuple[Path, str]] = list(self._collect_entries(payload_dir))
        total_bytes = sum(path.stat().st_size for path, name in entries if not name.endswith("/"))
        reporter = ProgressReporter(on_progress, total_bytes, self.progress_step)
        reporter.report(0.0)
        
        compression = zipfile.ZIP_DEFLATED if self.compression_level > 0 else zipfile.ZIP_STORED
        logger.debug(f"Compressing {len(entries)} entries ({total_bytes} bytes) into {archive_path.name}")
        
        with zipfile.ZipFile(archive_path, 'w', compression=compression, allowZip64=True) as zip_ref:
            for path, arcname in entries:
                if arcname.endswith("/"):
                    zip_ref.write(path, arcname)
                    continue
                
                zinfo = zipfile.ZipInfo.from_file(path, arcname, strict_timestamps=False)
                zinfo.compress_type = compression
                if compression == zipfile.ZIP_DEFLATED:
                    _set_compress_level(zinfo, self.compression_level)
                
                with open(path, 'rb') as source, zip_ref.open(zinfo, 'w') as target:
                    while chunk := source.read(self.chunk_size):
                        target.write(chunk)
                        reporter.advance(len(chunk))
        
        reporter.report(1.0)
    
    def _place_archive(self, temp_archive: Path, destination: Path) -> None:
        """Move the finished archive into place without overwriting.
        
        If something recreated the destination after the preflight check,
        it is removed and the move is retried once.
        """
        try:
            self._move_no_clobber(temp_archive, destination)
        except FileExistsError:
            logger.warning(f"{destination} appeared while packaging, replacing it")
            if not remove_path_quietly(destination):
                raise
            self._move_no_clobber(temp_archive, destination)
    
    def _move_no_clobber(self, source: Path, destination: Path) -> None:
        if destination.exists() or destination.is_symlink():
            raise FileExistsError(f"Destination exists: {destination}")
        shutil.move(str(source), str(destination))
