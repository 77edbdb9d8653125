"""Path utilities for consistent path handling."""

import unicodedata
from pathlib import Path


def normalize_path(path: Path | str) -> str:
    """
    Normalize a relative path for storage and comparison.
    
    Applies:
    - Unicode NFC normalization (canonical composition)
    - Forward slash conversion, matching the separator used inside zip archives
    
    Bundles produced on macOS often carry NFD-decomposed file names; normalizing
    keeps classification results comparable between a bundle on disk and the
    same bundle read back from an archive.
    
    Args:
        path: Path object or string to normalize
        
    Returns:
        Normalized path string with forward slashes and NFC Unicode normalization
        
    Examples:
        >>> normalize_path(Path("Frameworks/Café.framework/Café"))
        'Frameworks/Café.framework/Café'
        >>> normalize_path(r"Frameworks\\libfoo.dylib")
        'Frameworks/libfoo.dylib'
    """
    path_str = str(path)
    normalized = unicodedata.normalize('NFC', path_str)
    normalized = normalized.replace('\\', '/')
    return normalized


def sanitize_app_name(name: str | None, default: str = "Unknown") -> str:
    """Turn an application display name into a single folder name.

    Path separators are replaced with '-' and surrounding whitespace is
    dropped. Empty names fall back to ``default``.

    Args:
        name: Application display name (may be None)
        default: Name used when ``name`` is empty

    Returns:
        Name that is safe to use as one path component
    """
    if not name or not name.strip():
        return default
    cleaned = name.strip().replace('/', '-').replace('\\', '-')
    if cleaned in ('.', '..'):
        return default
    return cleaned
