"""Common utilities shared by the ipa_workbench components."""

from .config import ConfigLoader
from .logging import setup_logging, setup_logging_from_config, LogContext
from .logging_config import LoggingConfig
from .errors import WorkbenchError, FileAccessError, remove_path_quietly
from .path_utils import normalize_path, sanitize_app_name
from .checksums import compute_crc32

__all__ = [
    'ConfigLoader',
    'LoggingConfig',
    'setup_logging',
    'setup_logging_from_config',
    'LogContext',
    'WorkbenchError',
    'FileAccessError',
    'remove_path_quietly',
    'normalize_path',
    'sanitize_app_name',
    'compute_crc32',
]
