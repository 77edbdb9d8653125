"""On-disk layout of the per-application private storage."""

from pathlib import Path

from .common import sanitize_app_name
from .common.config_utils import expand_path_variables
from .config import APP_NAME, StorageConfig
from .scanner import AssetKind


class StorageLayout:
    """Resolves the folders used for staged assets and packaged archives.

    <root>/ExtractedDylibs/<AppName>/   staged dynamic libraries
    <root>/ExtractedIcons/<AppName>/    staged icons
    <root>/Files/<AppName>.ipa          packaged archives
    """

    def __init__(
        self,
        root: Path,
        dylibs_dir_name: str = "ExtractedDylibs",
        icons_dir_name: str = "ExtractedIcons",
        files_dir_name: str = "Files"
    ):
        self.root = Path(root)
        self.dylibs_dir_name = dylibs_dir_name
        self.icons_dir_name = icons_dir_name
        self.files_dir_name = files_dir_name

    @classmethod
    def from_config(cls, config: StorageConfig) -> "StorageLayout":
        root = Path(expand_path_variables(config.root_dir, APP_NAME)).expanduser()
        return cls(
            root=root,
            dylibs_dir_name=config.dylibs_dir_name,
            icons_dir_name=config.icons_dir_name,
            files_dir_name=config.files_dir_name,
        )

    def kind_root(self, kind: AssetKind) -> Path:
        if kind is AssetKind.DYLIB:
            return self.root / self.dylibs_dir_name
        return self.root / self.icons_dir_name

    def staging_dir(self, app_name: str, kind: AssetKind) -> Path:
        return self.kind_root(kind) / sanitize_app_name(app_name)

    @property
    def files_dir(self) -> Path:
        return self.root / self.files_dir_name

    def archive_path(self, app_name: str, extension: str = ".ipa") -> Path:
        return self.files_dir / f"{sanitize_app_name(app_name)}{extension}"
