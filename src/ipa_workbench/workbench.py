"""Operation surface used by the application layer.

Coordinates the extraction path (archive accessor -> scanner -> staging ->
curation session) and the repackaging path (bundle -> packaging engine ->
archive), reporting both through the progress coordinator.

Threading:
- Public operations are blocking and may run on any thread
- ``*_async`` variants run the destination-conflict preflight on the calling
  thread, then hand the heavy I/O to a thread pool
- Progress reaches observers only through the coordinator's dispatcher thread
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

from .archive import ArchiveAccessor
from .common import (
    FileAccessError,
    LogContext,
    WorkbenchError,
    remove_path_quietly,
    sanitize_app_name,
)
from .config import WorkbenchConfig, load_config
from .curation import CurationSession
from .errors import DestinationConflictError, InvalidArchiveError, NoAssetsFoundError
from .packaging import PackagingEngine
from .progress import ProgressCoordinator, get_progress_coordinator
from .scanner import DYLIB_SUFFIX, AssetKind, BundleScanner, ClassifiedEntry
from .staging import AssetRecord, StagingStore
from .storage import StorageLayout

logger = logging.getLogger(__name__)

# Called with the conflicting path; True means "remove it and continue"
ConfirmOverwrite = Callable[[Path], bool]

# Share of an extraction's progress bar spent decompressing
DECOMPRESS_SHARE = 0.9

_KIND_LABELS = {
    AssetKind.DYLIB: "Dylibs",
    AssetKind.ICON: "Icons",
}


@dataclass(frozen=True)
class Application:
    """An application to work on.

    Attributes:
        name: Display name, used for staging folders and archive names
        source: Bundle directory or distributable archive
    """
    name: str
    source: Path

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "Application":
        path = Path(path)
        return cls(name=path.stem, source=path)


AppLike = Union[Application, str, Path]


class Workbench:
    """Extracts, curates and repackages application bundles."""

    def __init__(
        self,
        config: Optional[WorkbenchConfig] = None,
        progress: Optional[ProgressCoordinator] = None
    ):
        """Initialize workbench.

        Args:
            config: Workbench configuration (defaults if omitted)
            progress: Progress coordinator (process-wide instance if omitted)
        """
        self.config = config or WorkbenchConfig()
        self.layout = StorageLayout.from_config(self.config.storage)
        self.accessor = ArchiveAccessor.from_config(self.config.extraction)
        self.scanner = BundleScanner(self.config.icons)
        self.staging = StagingStore(self.layout)
        self.engine = PackagingEngine.from_config(self.config.extraction, self.config.packaging)
        self.progress = progress or get_progress_coordinator(self.config.progress.hide_delay)

        self.io_workers = self.config.extraction.io_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()
        self._sessions: Dict[Tuple[str, AssetKind], CurationSession] = {}
        self._sessions_lock = threading.Lock()

        logger.debug(
            f"Initialized Workbench: {{'root': {str(self.layout.root)!r}, 'io_workers': {self.io_workers}}}"
        )

    @classmethod
    def from_config_files(
        cls,
        defaults_path: Optional[Path] = None,
        progress: Optional[ProgressCoordinator] = None
    ) -> "Workbench":
        """Create a workbench from defaults.toml, config files and environment."""
        return cls(load_config(defaults_path), progress)

    # Extraction path

    def extract_dylibs(self, app: AppLike) -> CurationSession:
        """Stage the dynamic libraries of an application for curation.

        Raises:
            FileAccessError, InvalidArchiveError, MissingPayloadError, ExtractionError:
                If the application cannot be opened or staged
            NoAssetsFoundError: If the bundle holds no dynamic libraries
        """
        return self._extract(app, AssetKind.DYLIB)

    def extract_icons(self, app: AppLike) -> CurationSession:
        """Stage the icons of an application for curation, largest first.

        Raises:
            FileAccessError, InvalidArchiveError, MissingPayloadError, ExtractionError:
                If the application cannot be opened or staged
            NoAssetsFoundError: If no icon image was found
        """
        return self._extract(app, AssetKind.ICON)

    def finalize_selection(self, session: CurationSession, kept_ids) -> List[AssetRecord]:
        """Keep the given records and delete the other staged files.

        Returns:
            The kept records
        """
        if session.is_open:
            session.keep_only(kept_ids)
        kept = session.finalize()
        self._forget_session(session)
        return kept

    def cancel_selection(self, session: CurationSession) -> None:
        """Discard a session's staging folder."""
        session.cancel()
        self._forget_session(session)

    def list_staged(self, kind: AssetKind, app_name: Optional[str] = None) -> List[AssetRecord]:
        return self.staging.list_staged(kind, app_name)

    # Repackaging path

    def package_as_archive(
        self,
        app: AppLike,
        destination: Optional[Path] = None,
        confirm_overwrite: Optional[ConfirmOverwrite] = None
    ) -> Path:
        """Package an application bundle into a distributable archive.

        Args:
            app: Application, bundle directory or archive
            destination: Archive path (default: Files/<AppName>.ipa)
            confirm_overwrite: Asked before an existing destination is removed

        Returns:
            Path of the created archive

        Raises:
            DestinationConflictError: If the destination exists and overwriting was not confirmed
            PackagingError: If packaging fails
        """
        app = self._resolve_app(app)
        destination = self._package_destination(app, destination)
        self._check_not_source(app, destination)
        self._preflight(destination, confirm_overwrite)
        return self._package(app, destination)

    def package_as_archive_async(
        self,
        app: AppLike,
        destination: Optional[Path] = None,
        confirm_overwrite: Optional[ConfirmOverwrite] = None
    ) -> "Future[Path]":
        """Like package_as_archive, but compresses on a worker thread.

        The destination check and the overwrite confirmation happen before
        this method returns; conflicts raise here instead of in the future.
        """
        app = self._resolve_app(app)
        destination = self._package_destination(app, destination)
        self._check_not_source(app, destination)
        self._preflight(destination, confirm_overwrite)
        return self.submit(self._package, app, destination)

    def unpack_archive(
        self,
        source: Path,
        destination: Optional[Path] = None,
        confirm_overwrite: Optional[ConfirmOverwrite] = None
    ) -> Path:
        """Decompress an archive into a folder (default: Files/<ArchiveStem>).

        Raises:
            DestinationConflictError: If the destination exists and overwriting was not confirmed
            FileAccessError, InvalidArchiveError, ExtractionError: If unpacking fails
        """
        source, destination = self._unpack_paths(source, destination)
        self._preflight(destination, confirm_overwrite)
        return self._unpack(source, destination)

    def unpack_archive_async(
        self,
        source: Path,
        destination: Optional[Path] = None,
        confirm_overwrite: Optional[ConfirmOverwrite] = None
    ) -> "Future[Path]":
        source, destination = self._unpack_paths(source, destination)
        self._preflight(destination, confirm_overwrite)
        return self.submit(self._unpack, source, destination)

    # Background work

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        """Run ``fn`` on the workbench's I/O thread pool."""
        return self._get_executor().submit(fn, *args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the thread pool. The shared progress coordinator keeps running."""
        with self._executor_lock:
            executor = self._executor
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=wait)
            logger.debug("Workbench thread pool stopped")

    def __enter__(self) -> "Workbench":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    # Internals

    def _extract(self, app: AppLike, kind: AssetKind) -> CurationSession:
        app = self._resolve_app(app)
        label = _KIND_LABELS[kind]

        with LogContext(logger, app_name=app.name, operation=f"extract_{kind.value}"):
            logger.info(f"Extracting {label.lower()} from {app.source}")
            self._supersede_session(app.name, kind)

            handle = self.progress.begin(f"Extracting {label}")
            try:
                with self.accessor.open_bundle(app.source, lambda f: handle.update(f * DECOMPRESS_SHARE)) as opened:
                    entries = self._entries_to_stage(opened.bundle_path, kind)
                    records = self.staging.stage(entries, app.name, kind, bundle_name=opened.bundle_path.name)
            except WorkbenchError as e:
                logger.error(f"Failed to extract {label.lower()} from {app.name}: {e.message}")
                raise
            finally:
                handle.complete()

            staging_dir = self.staging.staging_dir(app.name, kind)
            if not records:
                remove_path_quietly(staging_dir)
                logger.warning(f"No {label.lower()} found in {app.name}")
                raise NoAssetsFoundError(
                    f"No {label.lower()} found in {app.name}",
                    app_name=app.name,
                    kind=kind.value
                )

            session = CurationSession(app.name, kind, staging_dir, records)
            with self._sessions_lock:
                self._sessions[self._session_key(app.name, kind)] = session
            return session

    def _entries_to_stage(self, bundle_path: Path, kind: AssetKind) -> Iterator[ClassifiedEntry]:
        if kind is AssetKind.ICON:
            yield from self.scanner.classify_icons(bundle_path)
            return

        for entry in self.scanner.classify_dylibs(bundle_path):
            if not self.config.extraction.keep_framework_binaries and not entry.name.lower().endswith(DYLIB_SUFFIX):
                logger.debug(f"Not staging framework binary {entry.relative_path}")
                continue
            yield entry

    def _package(self, app: Application, destination: Path) -> Path:
        with LogContext(logger, app_name=app.name, operation="package"):
            handle = self.progress.begin(f"Packaging {destination.name}")
            try:
                with self.accessor.open_bundle(app.source) as opened:
                    return self.engine.package(opened.bundle_path, destination, handle.update)
            except WorkbenchError as e:
                logger.error(f"Failed to package {app.name}: {e.message}")
                raise
            finally:
                handle.complete()

    def _unpack(self, source: Path, destination: Path) -> Path:
        with LogContext(logger, archive=source.name, operation="unpack"):
            handle = self.progress.begin(f"Unzipping {source.name}")
            try:
                return self.accessor.unpack_to(source, destination, handle.update)
            except WorkbenchError as e:
                logger.error(f"Failed to unpack {source.name}: {e.message}")
                raise
            finally:
                handle.complete()

    def _package_destination(self, app: Application, destination: Optional[Path]) -> Path:
        if destination is not None:
            return Path(destination)
        return self.layout.archive_path(app.name, self.config.packaging.archive_extension)

    def _unpack_paths(self, source: Path, destination: Optional[Path]) -> Tuple[Path, Path]:
        source = Path(source)
        if not self.accessor.is_archive(source):
            raise InvalidArchiveError(f"Not an archive: {source.name}", path=str(source))
        if destination is None:
            destination = self.layout.files_dir / sanitize_app_name(source.stem)
        return source, Path(destination)

    def _check_not_source(self, app: Application, destination: Path) -> None:
        """Refuse to package an application over its own source archive."""
        if destination.resolve() != app.source.resolve():
            return
        logger.info(f"Not overwriting {destination}: it is the source of {app.name}")
        raise DestinationConflictError(
            f"Destination is the application source: {destination}",
            destination=str(destination),
            source=str(app.source)
        )

    def _preflight(self, destination: Path, confirm_overwrite: Optional[ConfirmOverwrite]) -> None:
        """Resolve a destination conflict before any work starts.

        Raises:
            DestinationConflictError: If the destination exists and was not confirmed
            FileAccessError: If the confirmed destination cannot be removed
        """
        if not (destination.exists() or destination.is_symlink()):
            return

        if confirm_overwrite is None or not confirm_overwrite(destination):
            logger.info(f"Not overwriting existing {destination}")
            raise DestinationConflictError(
                f"Destination already exists: {destination}", destination=str(destination)
            )

        logger.info(f"Overwriting existing {destination}")
        if not remove_path_quietly(destination):
            raise FileAccessError(
                f"Cannot remove existing destination {destination}", destination=str(destination)
            )

    def _resolve_app(self, app: AppLike) -> Application:
        if isinstance(app, Application):
            return app
        return Application.from_path(app)

    def _session_key(self, app_name: str, kind: AssetKind) -> Tuple[str, AssetKind]:
        return sanitize_app_name(app_name), kind

    def _supersede_session(self, app_name: str, kind: AssetKind) -> None:
        with self._sessions_lock:
            previous = self._sessions.pop(self._session_key(app_name, kind), None)
        if previous is not None:
            previous.supersede()

    def _forget_session(self, session: CurationSession) -> None:
        key = self._session_key(session.app_name, session.kind)
        with self._sessions_lock:
            if self._sessions.get(key) is session:
                del self._sessions[key]

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.io_workers,
                    thread_name_prefix="ipa-workbench-io"
                )
            return self._executor
