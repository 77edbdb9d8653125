"""Copying classified assets into per-application staging folders."""

import logging
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Set

from PIL import Image

from .common import FileAccessError, remove_path_quietly, sanitize_app_name
from .scanner import AssetKind, ClassifiedEntry
from .storage import StorageLayout

logger = logging.getLogger(__name__)


def format_size(size_bytes: int) -> str:
    """Format a byte count for display (decimal units, like file browsers).

    Examples:
        >>> format_size(512)
        '512 bytes'
        >>> format_size(30_500)
        '30.5 KB'
    """
    if size_bytes < 1000:
        return f"{size_bytes} bytes"
    size = float(size_bytes)
    for unit in ("KB", "MB", "GB"):
        size /= 1000
        if size < 1000:
            return f"{size:.1f} {unit}"
    return f"{size / 1000:.1f} TB"


@dataclass
class AssetRecord:
    """A staged copy of one bundle asset.
    
    Attributes:
        name: File name inside the staging folder
        original_relative_path: Where the asset lived, relative to the bundle's parent
        size_bytes: Size of the staged copy, measured after copying
        staged_location: Absolute path of the staged copy
        kind: Asset kind
        image: Decoded image for icons (None for dylibs or undecodable icons)
        id: Unique identifier used by curation selections
    """
    name: str
    original_relative_path: str
    size_bytes: int
    staged_location: Path
    kind: AssetKind
    image: Optional[Image.Image] = field(default=None, repr=False, compare=False)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def formatted_size(self) -> str:
        return format_size(self.size_bytes)


class StagingStore:
    """Creates staging folders and fills them with copies of bundle assets."""
    
    def __init__(self, layout: StorageLayout):
        self.layout = layout
    
    def staging_dir(self, app_name: str, kind: AssetKind) -> Path:
        return self.layout.staging_dir(app_name, kind)
    
    def prepare(self, app_name: str, kind: AssetKind) -> Path:
        """Create an empty staging folder for (app_name, kind).
        
        Any content left from an earlier extraction for the same key is
        discarded first.
        
        Raises:
            FileAccessError: If stale content cannot be removed or the folder cannot be created
        """
        staging_dir = self.staging_dir(app_name, kind)
        if staging_dir.exists() and not remove_path_quietly(staging_dir):
            raise FileAccessError(
                f"Cannot clear previous staging folder {staging_dir}",
                staging_dir=str(staging_dir)
            )
        try:
            staging_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileAccessError(
                f"Cannot create staging folder {staging_dir}: {e}",
                staging_dir=str(staging_dir)
            ) from e
        return staging_dir
    
    def stage(
        self,
        entries: Iterable[ClassifiedEntry],
        app_name: str,
        kind: AssetKind,
        bundle_name: Optional[str] = None
    ) -> List[AssetRecord]:
        """Copy classified entries into the staging folder.
        
        Args:
            entries: Classified entries; entries of another kind are ignored
            app_name: Application name (sanitized into a folder name)
            kind: Kind being staged
            bundle_name: Bundle folder name prefixed to recorded original paths
            
        Returns:
            One AssetRecord per staged file, in entry order. May be empty.
            
        Raises:
            FileAccessError: If a copy fails; the staging folder is discarded
        """
        staging_dir = self.prepare(app_name, kind)
        records: List[AssetRecord] = []
        staged_names: Set[str] = set()
        
        try:
            for entry in entries:
                if entry.kind is not kind:
                    continue
                
                name = entry.name
                if name in staged_names:
                    logger.warning(
                        f"Skipping {entry.relative_path}: {name} already staged from another location"
                    )
                    continue
                
                staged_path = staging_dir / name
                if staged_path.exists():
                    staged_path.unlink()
                shutil.copy2(entry.source_path, staged_path)
                size_bytes = staged_path.stat().st_size
                
                image = self._load_image(staged_path) if kind is AssetKind.ICON else None
                original_path = f"{bundle_name}/{entry.relative_path}" if bundle_name else entry.relative_path
                
                records.append(AssetRecord(
                    name=name,
                    original_relative_path=original_path,
                    size_bytes=size_bytes,
                    staged_location=staged_path,
                    kind=kind,
                    image=image,
                ))
                staged_names.add(name)
                logger.debug(f"Staged {original_path} -> {staged_path} ({size_bytes} bytes)")
        except OSError as e:
            remove_path_quietly(staging_dir)
            raise FileAccessError(
                f"Failed to stage {kind.value} assets for {app_name}: {e}",
                staging_dir=str(staging_dir)
            ) from e
        
        logger.info(f"Staged {len(records)} {kind.value} asset(s) for {app_name} in {staging_dir}")
        return records
    
    def list_staged(self, kind: AssetKind, app_name: Optional[str] = None) -> List[AssetRecord]:
        """List files currently kept in staging folders.
        
        Args:
            kind: Kind of staging folder to look at
            app_name: Restrict to one application (default: all applications)
            
        Returns:
            Records for the files on disk, sorted by path
        """
        kind_root = self.layout.kind_root(kind)
        if app_name is not None:
            folders = [kind_root / sanitize_app_name(app_name)]
        elif kind_root.is_dir():
            folders = sorted(p for p in kind_root.iterdir() if p.is_dir())
        else:
            folders = []
        
        records = []
        for folder in folders:
            if not folder.is_dir():
                continue
            for path in sorted(folder.iterdir()):
                if not path.is_file():
                    continue
                records.append(AssetRecord(
                    name=path.name,
                    original_relative_path=path.name,
                    size_bytes=path.stat().st_size,
                    staged_location=path,
                    kind=kind,
                    image=self._load_image(path) if kind is AssetKind.ICON else None,
                ))
        return records
    
    def _load_image(self, path: Path) -> Optional[Image.Image]:
        try:
            with Image.open(path) as img:
                img.load()
                return img.copy()
        except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
            logger.debug(f"Could not decode {path.name}: {e}")
            return None
