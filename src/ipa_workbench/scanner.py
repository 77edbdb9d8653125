"""Bundle classification.

Walks an application bundle and decides which files are dynamic-library
modules and which are icon images. Classification only reads the bundle;
copying the results anywhere is the staging store's job. Every call to a
``classify*`` method starts a fresh walk, so results can be recomputed at
will and are identical for an unmodified bundle.
"""

import logging
import os
import plistlib
import stat
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple
from xml.parsers.expat import ExpatError

from PIL import Image

from .common import normalize_path
from .config import IconConfig

logger = logging.getLogger(__name__)

DYLIB_SUFFIX = ".dylib"
FRAMEWORK_SUFFIX = ".framework"
INFO_PLIST_NAME = "Info.plist"

# Info.plist keys
LEGACY_ICON_FILES_KEY = "CFBundleIconFiles"
PRIMARY_ICON_KEY = "CFBundlePrimaryIcon"
ICON_NAME_KEY = "CFBundleIconName"

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


class AssetKind(Enum):
    """Kinds of assets that can be pulled out of a bundle."""
    DYLIB = "dylib"
    ICON = "icon"


@dataclass(frozen=True)
class BundleFile:
    """A regular file found while walking a bundle."""
    relative_path: str  # Forward slashes, relative to the bundle root
    path: Path
    size_bytes: int


@dataclass(frozen=True)
class ClassifiedEntry:
    """A bundle file together with the kind it was classified as."""
    relative_path: str
    kind: AssetKind
    size_bytes: int
    source_path: Path

    @property
    def name(self) -> str:
        return PurePosixPath(self.relative_path).name


def is_dylib_path(relative_path: str) -> bool:
    """Decide from the path alone whether a file is a dynamic-library module.

    A file qualifies if it carries the .dylib extension, or if it is the
    principal binary of the nearest enclosing .framework folder: its name
    without extension equals the framework name.

    Examples:
        >>> is_dylib_path("Frameworks/libswiftCore.dylib")
        True
        >>> is_dylib_path("Frameworks/Alamofire.framework/Alamofire")
        True
        >>> is_dylib_path("Frameworks/Alamofire.framework/Info.plist")
        False
    """
    parts = PurePosixPath(relative_path).parts
    if not parts:
        return False
    
    filename = PurePosixPath(parts[-1])
    if filename.suffix.lower() == DYLIB_SUFFIX:
        return True
    
    for segment in reversed(parts[:-1]):
        if segment.endswith(FRAMEWORK_SUFFIX):
            framework_name = segment[:-len(FRAMEWORK_SUFFIX)]
            return bool(framework_name) and filename.stem == framework_name
    
    return False


def icon_candidates(info: Mapping[str, Any], dictionary_keys: Iterable[str] = ("CFBundleIcons",)) -> List[str]:
    """Collect icon base names named by a bundle's Info.plist.

    Order: the legacy icon file list, then the primary icon file list of each
    icon dictionary, then the single icon name. Duplicates are kept; the
    caller skips names it has already tried.
    """
    names: List[str] = []
    names.extend(_string_list(info.get(LEGACY_ICON_FILES_KEY)))
    
    for key in dictionary_keys:
        icons = info.get(key)
        if not isinstance(icons, dict):
            continue
        primary = icons.get(PRIMARY_ICON_KEY)
        if isinstance(primary, dict):
            names.extend(_string_list(primary.get(LEGACY_ICON_FILES_KEY)))
    
    icon_name = info.get(ICON_NAME_KEY)
    if isinstance(icon_name, str) and icon_name:
        names.append(icon_name)
    
    return names


def _string_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [v for v in value if isinstance(v, str) and v]
    return []


def read_info_plist(bundle_path: Path) -> Dict[str, Any]:
    """Load the bundle's Info.plist (XML or binary).

    Returns an empty dict when the document is missing or unreadable; icon
    discovery then falls back to scanning the bundle root.
    """
    plist_path = Path(bundle_path) / INFO_PLIST_NAME
    try:
        with open(plist_path, 'rb') as f:
            data = plistlib.load(f)
    except FileNotFoundError:
        logger.warning(f"No {INFO_PLIST_NAME} in {Path(bundle_path).name}")
        return {}
    except (OSError, plistlib.InvalidFileException, ExpatError, ValueError) as e:
        logger.warning(f"Could not read {plist_path}: {e}")
        return {}
    
    if not isinstance(data, dict):
        logger.warning(f"{plist_path} is not a dictionary")
        return {}
    return data


def is_image_file(path: Path) -> bool:
    """True if Pillow can identify the file as an image.

    Apple-optimized PNGs (CgBI) are not readable by Pillow; a valid PNG
    signature is accepted for those.
    """
    try:
        with Image.open(path) as img:
            img.verify()
        return True
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError):
        pass
    
    try:
        with open(path, 'rb') as f:
            return f.read(len(PNG_SIGNATURE)) == PNG_SIGNATURE
    except OSError:
        return False


def _is_within(path: Path, root: Path) -> bool:
    resolved = path.resolve()
    root_resolved = root.resolve()
    return resolved != root_resolved and root_resolved in resolved.parents


class BundleScanner:
    """Classifies the contents of an application bundle."""
    
    def __init__(self, icon_config: Optional[IconConfig] = None):
        """Initialize bundle scanner.
        
        Args:
            icon_config: Icon discovery heuristics (defaults if omitted)
        """
        self.icon_config = icon_config or IconConfig()
    
    def walk(self, bundle_path: Path) -> Iterator[BundleFile]:
        """Depth-first walk over the regular files of a bundle.
        
        Entries are visited in sorted order so repeated walks of the same
        tree yield the same sequence. Symlinked directories are not followed.
        """
        bundle_path = Path(bundle_path)
        
        def on_error(error: OSError) -> None:
            logger.warning(f"Cannot read {error.filename}: {error.strerror}")
        
        for dirpath, dirnames, filenames in os.walk(bundle_path, onerror=on_error):
            dirnames.sort()
            for filename in sorted(filenames):
                file_path = Path(dirpath) / filename
                try:
                    st = file_path.stat()
                except OSError as e:
                    logger.debug(f"Skipping unreadable entry {file_path}: {e}")
                    continue
                if not stat.S_ISREG(st.st_mode):
                    continue
                yield BundleFile(
                    relative_path=normalize_path(file_path.relative_to(bundle_path)),
                    path=file_path,
                    size_bytes=st.st_size,
                )
    
    def classify(
        self,
        bundle_path: Path,
        kinds: Iterable[AssetKind] = (AssetKind.DYLIB, AssetKind.ICON)
    ) -> Iterator[ClassifiedEntry]:
        """Classify a bundle's files.
        
        Args:
            bundle_path: Path to the application bundle
            kinds: Kinds to report, in the order given
            
        Yields:
            ClassifiedEntry for every matching file
        """
        for kind in kinds:
            if kind is AssetKind.DYLIB:
                yield from self.classify_dylibs(bundle_path)
            elif kind is AssetKind.ICON:
                yield from self.classify_icons(bundle_path)
    
    def classify_dylibs(self, bundle_path: Path) -> Iterator[ClassifiedEntry]:
        """Lazily yield dynamic-library modules found anywhere in the bundle."""
        for bundle_file in self.walk(bundle_path):
            if is_dylib_path(bundle_file.relative_path):
                logger.debug(f"Classified dylib: {bundle_file.relative_path}")
                yield ClassifiedEntry(
                    relative_path=bundle_file.relative_path,
                    kind=AssetKind.DYLIB,
                    size_bytes=bundle_file.size_bytes,
                    source_path=bundle_file.path,
                )
    
    def classify_icons(self, bundle_path: Path) -> List[ClassifiedEntry]:
        """Find the bundle's icon images, largest file first.
        
        Candidates come from Info.plist, then from the configured common
        names. Each candidate is tried with every scale suffix (highest
        first) and every extension. If nothing matches, image files at the
        bundle root are collected instead. File size stands in for
        resolution; ties keep discovery order.
        """
        bundle_path = Path(bundle_path)
        info = read_info_plist(bundle_path)
        
        candidates = icon_candidates(info, self.icon_config.icon_dictionary_keys)
        candidates.extend(self.icon_config.common_names)
        logger.debug(f"Icon candidates for {bundle_path.name}: {candidates}")
        
        found: List[ClassifiedEntry] = []
        attempted: Set[str] = set()
        seen_files: Set[Tuple[int, int]] = set()
        
        for base_name in candidates:
            if base_name in attempted:
                continue
            attempted.add(base_name)
            
            for scale in self.icon_config.scale_suffixes:
                for extension in self.icon_config.extensions:
                    filename = f"{base_name}{scale}{extension}"
                    entry = self._icon_entry(bundle_path, filename, seen_files)
                    if entry:
                        found.append(entry)
        
        if not found:
            logger.info(f"No named icons in {bundle_path.name}, scanning bundle root for images")
            found = self._fallback_icons(bundle_path, seen_files)
        
        # sorted() is stable: equal sizes keep discovery order
        return sorted(found, key=lambda e: e.size_bytes, reverse=True)
    
    def _icon_entry(
        self,
        bundle_path: Path,
        relative_name: str,
        seen_files: Set[Tuple[int, int]]
    ) -> Optional[ClassifiedEntry]:
        icon_path = bundle_path / relative_name
        if not _is_within(icon_path, bundle_path):
            logger.warning(f"Skipping icon candidate outside the bundle: {relative_name}")
            return None
        try:
            st = icon_path.stat()
        except OSError:
            return None
        if not stat.S_ISREG(st.st_mode):
            return None
        
        # Case-insensitive filesystems resolve "Icon" and "icon" to one file
        file_id = (st.st_dev, st.st_ino)
        if file_id in seen_files:
            return None
        
        if not is_image_file(icon_path):
            logger.debug(f"Skipping {relative_name}: not an image")
            return None
        
        seen_files.add(file_id)
        logger.debug(f"Classified icon: {relative_name} ({st.st_size} bytes)")
        return ClassifiedEntry(
            relative_path=normalize_path(relative_name),
            kind=AssetKind.ICON,
            size_bytes=st.st_size,
            source_path=icon_path,
        )
    
    def _fallback_icons(self, bundle_path: Path, seen_files: Set[Tuple[int, int]]) -> List[ClassifiedEntry]:
        extensions = {e.lower() for e in self.icon_config.fallback_extensions}
        try:
            names = sorted(p.name for p in bundle_path.iterdir())
        except OSError as e:
            logger.warning(f"Cannot list {bundle_path}: {e}")
            return []
        
        found = []
        for name in names:
            if Path(name).suffix.lower() not in extensions:
                continue
            entry = self._icon_entry(bundle_path, name, seen_files)
            if entry:
                found.append(entry)
        return found
