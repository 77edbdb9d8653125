"""Opening application archives and locating the bundle inside them."""

import logging
import os
import shutil
import stat
import zipfile
import zlib
from pathlib import Path
from typing import Callable, Iterable, Optional

from .common import FileAccessError, compute_crc32
from .config import ExtractionConfig
from .errors import DestinationConflictError, ExtractionError, InvalidArchiveError, MissingPayloadError
from .scratch import ArchiveJob, ScratchDirectory

logger = logging.getLogger(__name__)

PAYLOAD_DIR_NAME = "Payload"

ProgressCallback = Callable[[float], None]


class OpenedBundle:
    """A bundle ready to be read, plus the scratch space it may live in.

    Bundles opened from an archive live inside a scratch directory; this
    handle holds one reference to it. Close the handle (or leave its ``with``
    block) once reading is done. Use ``retain()`` to hand a second consumer
    its own handle; the scratch directory survives until every handle is
    closed.
    """

    def __init__(self, bundle_path: Path, source: Path, scratch: Optional[ScratchDirectory] = None):
        self.bundle_path = Path(bundle_path)
        self.source = Path(source)
        self.scratch = scratch
        self._closed = False

    @property
    def from_archive(self) -> bool:
        return self.scratch is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def retain(self) -> "OpenedBundle":
        """Return another handle to the same bundle."""
        if self._closed:
            raise RuntimeError(f"Bundle handle already closed: {self.bundle_path}")
        if self.scratch is not None:
            self.scratch.retain()
        return OpenedBundle(self.bundle_path, self.source, self.scratch)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.scratch is not None:
            self.scratch.release()

    def __enter__(self) -> "OpenedBundle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"OpenedBundle({str(self.bundle_path)!r}, from_archive={self.from_archive})"


class ArchiveAccessor:
    """Opens archives or unpacked bundles and returns the bundle path."""
    
    def __init__(
        self,
        scratch_parent: Optional[Path] = None,
        scratch_prefix: str = "ipa_workbench_",
        bundle_extension: str = ".app",
        archive_extensions: Iterable[str] = (".ipa", ".zip"),
        verify_integrity: bool = True,
        chunk_size: int = 65536
    ):
        """Initialize archive accessor.
        
        Args:
            scratch_parent: Directory where scratch folders are created (default: system temp)
            scratch_prefix: Name prefix for scratch folders
            bundle_extension: Extension identifying an application bundle directory
            archive_extensions: Extensions accepted as distributable archives
            verify_integrity: Whether to verify CRC32 of extracted members
            chunk_size: Buffer size for streaming members to disk
        """
        self.scratch_parent = Path(scratch_parent) if scratch_parent else None
        self.scratch_prefix = scratch_prefix
        self.bundle_extension = bundle_extension
        self.archive_extensions = tuple(e.lower() for e in archive_extensions)
        self.verify_integrity = verify_integrity
        self.chunk_size = chunk_size
    
    @classmethod
    def from_config(cls, config: ExtractionConfig) -> "ArchiveAccessor":
        return cls(
            scratch_parent=Path(config.scratch_dir) if config.scratch_dir else None,
            scratch_prefix=config.scratch_prefix,
            bundle_extension=config.bundle_extension,
            archive_extensions=config.archive_extensions,
            verify_integrity=config.verify_integrity,
            chunk_size=config.chunk_size,
        )
    
    def is_archive(self, path: Path) -> bool:
        return Path(path).suffix.lower() in self.archive_extensions
    
    def is_bundle(self, path: Path) -> bool:
        path = Path(path)
        return path.is_dir() and path.name.endswith(self.bundle_extension)
    
    def allocate_job(self, source: Path, destination: Optional[Path] = None) -> ArchiveJob:
        """Create an ArchiveJob with a fresh scratch directory."""
        scratch = ScratchDirectory.create(prefix=self.scratch_prefix, parent=self.scratch_parent)
        return ArchiveJob(source=Path(source), destination=destination, scratch=scratch)
    
    def open_bundle(
        self,
        source: Path,
        progress_callback: Optional[ProgressCallback] = None
    ) -> OpenedBundle:
        """Open an archive or an unpacked bundle for reading.
        
        Args:
            source: Archive file or bundle directory
            progress_callback: Optional callback(fraction) during decompression
            
        Returns:
            Handle whose ``bundle_path`` points at the application bundle
            
        Raises:
            FileAccessError: If the source does not exist
            InvalidArchiveError: If the source is neither a bundle nor a readable archive
            MissingPayloadError: If the archive has no Payload folder or bundle
            ExtractionError: If decompression fails part way
        """
        source = Path(source)
        
        if not source.exists():
            raise FileAccessError(f"Source not found: {source}", path=str(source))
        
        if source.is_dir():
            if not self.is_bundle(source):
                raise InvalidArchiveError(
                    f"Directory is not an application bundle: {source}", path=str(source)
                )
            logger.debug(f"Using unpacked bundle {source}")
            return OpenedBundle(source, source)
        
        if not self.is_archive(source):
            raise InvalidArchiveError(
                f"Unsupported source type: {source.name}", path=str(source)
            )
        
        logger.info(f"Opening archive {source.name}")
        job = self.allocate_job(source)
        try:
            self.extract_archive(source, job.scratch.path, progress_callback)
            bundle_path = self.locate_bundle(job.scratch.path)
        except BaseException:
            job.close()
            raise
        
        logger.info(f"Located bundle {bundle_path.name} in {source.name}")
        return OpenedBundle(bundle_path, source, job.scratch)
    
    def locate_bundle(self, root: Path) -> Path:
        """Find the single application bundle under ``root/Payload``.
        
        Raises:
            MissingPayloadError: If Payload or the bundle is missing
            InvalidArchiveError: If Payload holds more than one bundle
        """
        payload_dir = Path(root) / PAYLOAD_DIR_NAME
        if not payload_dir.is_dir():
            raise MissingPayloadError(
                f"No {PAYLOAD_DIR_NAME} folder found", root=str(root)
            )
        
        bundles = sorted(
            p for p in payload_dir.iterdir()
            if p.is_dir() and p.name.endswith(self.bundle_extension)
        )
        if not bundles:
            raise MissingPayloadError(
                f"No {self.bundle_extension} bundle inside {PAYLOAD_DIR_NAME}", root=str(root)
            )
        if len(bundles) > 1:
            raise InvalidArchiveError(
                f"{PAYLOAD_DIR_NAME} holds {len(bundles)} bundles, expected one",
                bundles=[b.name for b in bundles]
            )
        return bundles[0]
    
    def extract_archive(
        self,
        archive_path: Path,
        extract_to: Path,
        progress_callback: Optional[ProgressCallback] = None
    ) -> int:
        """Decompress a zip archive into a directory.
        
        Args:
            archive_path: Path to the archive
            extract_to: Directory to extract into (created if missing)
            progress_callback: Optional callback(fraction), fraction of bytes written
            
        Returns:
            Number of files written
            
        Raises:
            InvalidArchiveError: If the archive cannot be opened or has unsafe member names
            ExtractionError: If a member cannot be decompressed or written
        """
        archive_path = Path(archive_path)
        extract_to = Path(extract_to)
        
        try:
            zip_ref = zipfile.ZipFile(archive_path, 'r')
        except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError) as e:
            raise InvalidArchiveError(
                f"Cannot open archive {archive_path.name}: {e}", path=str(archive_path)
            ) from e
        
        with zip_ref:
            members = zip_ref.infolist()
            total_bytes = sum(info.file_size for info in members if not info.is_dir())
            logger.debug(f"Extracting {len(members)} entries ({total_bytes} bytes) from {archive_path.name}")
            
            extract_to.mkdir(parents=True, exist_ok=True)
            written_bytes = 0
            files_written = 0
            
            for index, info in enumerate(members, start=1):
                target_path = self._safe_target(extract_to, info.filename)
                
                if info.is_dir():
                    target_path.mkdir(parents=True, exist_ok=True)
                    continue
                
                try:
                    target_path.parent.mkdir(parents=True, exist_ok=True)
                    with zip_ref.open(info) as source, open(target_path, 'wb') as target:
                        while chunk := source.read(self.chunk_size):
                            target.write(chunk)
                            written_bytes += len(chunk)
                            if progress_callback and total_bytes:
                                progress_callback(written_bytes / total_bytes)
                except (OSError, zipfile.BadZipFile, zlib.error, RuntimeError, NotImplementedError) as e:
                    raise ExtractionError(
                        f"Failed to extract {info.filename}: {e}",
                        archive=str(archive_path),
                        member=info.filename
                    ) from e
                
                self._restore_mode(target_path, info)
                
                if self.verify_integrity:
                    self._verify_member(target_path, info, archive_path)
                
                files_written += 1
                if not total_bytes and progress_callback:
                    progress_callback(index / len(members))
            
            if progress_callback:
                progress_callback(1.0)
        
        logger.debug(f"Extracted {files_written} files from {archive_path.name}")
        return files_written
    
    def unpack_to(
        self,
        archive_path: Path,
        destination: Path,
        progress_callback: Optional[ProgressCallback] = None
    ) -> Path:
        """Decompress an archive into ``destination`` as a whole.
        
        Contents land in scratch space first and are moved into place only
        after extraction succeeded, so a failure never leaves a half-filled
        destination. The destination must not exist, neither when the call
        starts nor when the contents are moved into place.

        Raises:
            DestinationConflictError: If the destination already exists
            FileAccessError: If the source is missing or the move fails
            InvalidArchiveError, ExtractionError: As for extract_archive
        """
        archive_path = Path(archive_path)
        destination = Path(destination)
        if not archive_path.is_file():
            raise FileAccessError(f"Archive not found: {archive_path}", path=str(archive_path))
        self._check_destination_free(destination)

        with self.allocate_job(archive_path, destination) as job:
            staging_root = job.scratch.path / "contents"
            self.extract_archive(archive_path, staging_root, progress_callback)
            try:
                destination.parent.mkdir(parents=True, exist_ok=True)
                # shutil.move would nest the tree inside an existing directory
                self._check_destination_free(destination)
                shutil.move(str(staging_root), str(destination))
            except OSError as e:
                raise FileAccessError(
                    f"Cannot move extracted contents to {destination}: {e}",
                    destination=str(destination)
                ) from e
        
        logger.info(f"Unpacked {archive_path.name} to {destination}")
        return destination
    
    def _check_destination_free(self, destination: Path) -> None:
        if destination.exists() or destination.is_symlink():
            raise DestinationConflictError(
                f"Destination already exists: {destination}", destination=str(destination)
            )

    def _safe_target(self, base_dir: Path, member_name: str) -> Path:
        """Resolve a member name inside ``base_dir``, rejecting path traversal."""
        target_path = (base_dir / member_name).resolve()
        base_resolved = base_dir.resolve()
        if target_path != base_resolved and base_resolved not in target_path.parents:
            raise InvalidArchiveError(
                f"Archive member escapes extraction directory: {member_name}",
                member=member_name
            )
        return target_path
    
    def _restore_mode(self, target_path: Path, info: zipfile.ZipInfo) -> None:
        """Apply unix permission bits stored in the archive, if any."""
        mode = (info.external_attr >> 16) & 0o7777
        if info.create_system != 3 or not mode:
            return
        try:
            os.chmod(target_path, mode | stat.S_IRUSR | stat.S_IWUSR)
        except OSError as e:
            logger.debug(f"Could not restore mode of {info.filename}: {e}")
    
    def _verify_member(self, target_path: Path, info: zipfile.ZipInfo, archive_path: Path) -> None:
        try:
            actual_size = target_path.stat().st_size
            actual_crc32 = compute_crc32(target_path)
        except OSError as e:
            raise ExtractionError(
                f"Cannot verify {info.filename}: {e}",
                archive=str(archive_path),
                member=info.filename
            ) from e
        if actual_size != info.file_size:
            raise ExtractionError(
                f"Size mismatch for {info.filename}: expected {info.file_size}, got {actual_size}",
                archive=str(archive_path),
                member=info.filename
            )
        if actual_crc32 != info.CRC:
            raise ExtractionError(
                f"CRC32 mismatch for {info.filename}: "
                f"expected {info.CRC:08X}, got {actual_crc32:08X}",
                archive=str(archive_path),
                member=info.filename
            )
