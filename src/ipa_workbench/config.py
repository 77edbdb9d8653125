"""Configuration schema for the workbench."""

from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator

from .common import ConfigLoader, LoggingConfig
from .common.config_utils import auto_detect_io_workers

APP_NAME = "ipa-workbench"


class StorageConfig(BaseModel):
    """Where staged assets and packaged archives are kept."""
    
    model_config = ConfigDict(extra='forbid')
    
    root_dir: str = Field(
        default="${USER_DATA}",
        description="Per-application private storage root (supports ${VAR} expansion)"
    )
    dylibs_dir_name: str = Field(
        default="ExtractedDylibs",
        description="Folder under root_dir holding staged dynamic libraries"
    )
    icons_dir_name: str = Field(
        default="ExtractedIcons",
        description="Folder under root_dir holding staged icons"
    )
    files_dir_name: str = Field(
        default="Files",
        description="Folder under root_dir receiving packaged archives"
    )


class ExtractionConfig(BaseModel):
    """Configuration for opening archives and bundles."""
    
    model_config = ConfigDict(extra='forbid')
    
    scratch_dir: Optional[str] = Field(
        default=None,
        description="Parent directory for scratch folders (default: system temp)"
    )
    scratch_prefix: str = Field(
        default="ipa_workbench_",
        description="Name prefix for scratch folders"
    )
    bundle_extension: str = Field(
        default=".app",
        description="Extension of an application bundle directory"
    )
    archive_extensions: List[str] = Field(
        default_factory=lambda: [".ipa", ".zip"],
        description="Extensions accepted as distributable archives"
    )
    verify_integrity: bool = Field(
        default=True,
        description="Verify CRC32 of every extracted member against the archive"
    )
    keep_framework_binaries: bool = Field(
        default=False,
        description="Offer framework principal binaries for curation, not only .dylib files"
    )
    io_workers: int = Field(
        default_factory=auto_detect_io_workers,
        ge=1,
        description="Background worker threads for heavy I/O"
    )
    chunk_size: int = Field(
        default=65536,
        ge=1024,
        description="Buffer size used when streaming archive members"
    )

    @field_validator('bundle_extension', mode='before')
    @classmethod
    def normalize_bundle_extension(cls, v: str) -> str:
        if isinstance(v, str) and not v.startswith('.'):
            return f".{v}"
        return v

    @field_validator('archive_extensions', mode='before')
    @classmethod
    def normalize_archive_extensions(cls, v: List[str]) -> List[str]:
        if isinstance(v, str):
            v = [v]
        if isinstance(v, list):
            return [e.lower() if e.startswith('.') else f".{e.lower()}" for e in v]
        return v


class IconConfig(BaseModel):
    """Icon discovery heuristics."""
    
    model_config = ConfigDict(extra='forbid')
    
    scale_suffixes: List[str] = Field(
        default_factory=lambda: ["@3x", "@2x", ""],
        description="Resolution suffixes tried for each candidate, highest first"
    )
    extensions: List[str] = Field(
        default_factory=lambda: [".png", ""],
        description="Extensions tried for each candidate and scale"
    )
    common_names: List[str] = Field(
        default_factory=lambda: ["AppIcon", "Icon", "icon"],
        description="Base names tried after the metadata candidates"
    )
    fallback_extensions: List[str] = Field(
        default_factory=lambda: [".png"],
        description="Image extensions collected from the bundle root when nothing else matched"
    )
    icon_dictionary_keys: List[str] = Field(
        default_factory=lambda: ["CFBundleIcons", "CFBundleIcons~ipad"],
        description="Info.plist dictionaries holding a primary icon entry"
    )


class PackagingConfig(BaseModel):
    """Configuration for repackaging bundles."""
    
    model_config = ConfigDict(extra='forbid')
    
    compression_level: int = Field(
        default=6,
        ge=0,
        le=9,
        description="Deflate compression level (0 stores members uncompressed)"
    )
    chunk_size: int = Field(
        default=65536,
        ge=1024,
        description="Bytes read per write when compressing"
    )
    progress_step: float = Field(
        default=0.01,
        gt=0,
        le=1,
        description="Minimum fraction delta between progress reports"
    )
    archive_extension: str = Field(
        default=".ipa",
        description="Extension given to packaged archives"
    )


class ProgressConfig(BaseModel):
    """Progress indicator behaviour."""
    
    model_config = ConfigDict(extra='forbid')
    
    hide_delay: float = Field(
        default=0.6,
        ge=0,
        description="Seconds the full bar stays visible after complete()"
    )


class WorkbenchConfig(BaseModel):
    """Root configuration for the workbench."""
    
    model_config = ConfigDict(extra='forbid')
    
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    icons: IconConfig = Field(default_factory=IconConfig)
    packaging: PackagingConfig = Field(default_factory=PackagingConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)


def load_config(defaults_path: Optional[Path] = None) -> WorkbenchConfig:
    """Load the workbench configuration from defaults, config files and environment.
    
    Args:
        defaults_path: Optional path to a defaults.toml file
        
    Returns:
        Validated WorkbenchConfig
    """
    loader = ConfigLoader(app_name=APP_NAME, config_class=WorkbenchConfig)
    return loader.load(defaults_path)
