"""Typed failures raised by the extraction, staging and packaging paths."""

from .common import WorkbenchError, FileAccessError


class ArchiveError(WorkbenchError):
    """Opening or decompressing an archive failed."""
    pass


class InvalidArchiveError(ArchiveError):
    """Source is not a readable archive or bundle (bad format or corruption)."""
    pass


class MissingPayloadError(ArchiveError):
    """Archive lacks a Payload folder or the application bundle inside it."""
    pass


class ExtractionError(ArchiveError):
    """Decompression started but could not be completed."""
    pass


class NoAssetsFoundError(WorkbenchError):
    """Classification matched nothing of the requested kind."""
    pass


class PackagingError(WorkbenchError):
    """Building or placing the output archive failed."""
    pass


class DestinationConflictError(WorkbenchError):
    """Output path already exists and was not cleared by the caller."""
    pass


__all__ = [
    'WorkbenchError',
    'FileAccessError',
    'ArchiveError',
    'InvalidArchiveError',
    'MissingPayloadError',
    'ExtractionError',
    'NoAssetsFoundError',
    'PackagingError',
    'DestinationConflictError',
]
