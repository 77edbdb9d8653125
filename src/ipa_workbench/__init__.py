"""Archive extraction, asset staging and repackaging for iOS application bundles."""

__version__ = "0.1.0"

from .archive import ArchiveAccessor, OpenedBundle
from .config import WorkbenchConfig, load_config
from .curation import CurationSession, SessionState
from .errors import (
    ArchiveError,
    DestinationConflictError,
    ExtractionError,
    FileAccessError,
    InvalidArchiveError,
    MissingPayloadError,
    NoAssetsFoundError,
    PackagingError,
    WorkbenchError,
)
from .packaging import PackagingEngine
from .progress import ProgressCoordinator, ProgressHandle, ProgressState, get_progress_coordinator
from .scanner import AssetKind, BundleScanner, ClassifiedEntry
from .staging import AssetRecord, StagingStore
from .storage import StorageLayout
from .workbench import Application, Workbench

__all__ = [
    "ArchiveAccessor",
    "OpenedBundle",
    "WorkbenchConfig",
    "load_config",
    "CurationSession",
    "SessionState",
    "ArchiveError",
    "DestinationConflictError",
    "ExtractionError",
    "FileAccessError",
    "InvalidArchiveError",
    "MissingPayloadError",
    "NoAssetsFoundError",
    "PackagingError",
    "WorkbenchError",
    "PackagingEngine",
    "ProgressCoordinator",
    "ProgressHandle",
    "ProgressState",
    "get_progress_coordinator",
    "AssetKind",
    "BundleScanner",
    "ClassifiedEntry",
    "AssetRecord",
    "StagingStore",
    "StorageLayout",
    "Application",
    "Workbench",
]
