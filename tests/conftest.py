"""Shared fixtures: sample bundles, IPA archives and isolated configuration."""

import os
import plistlib
import zipfile
from pathlib import Path

import pytest
from PIL import Image

from ipa_workbench.config import ExtractionConfig, StorageConfig, WorkbenchConfig
from ipa_workbench.progress import ProgressCoordinator


def write_noise_png(path: Path, size: int) -> Path:
    """Write a random-noise PNG; noise does not compress, so bigger images mean bigger files."""
    path.parent.mkdir(parents=True, exist_ok=True)
    image = Image.frombytes("RGB", (size, size), os.urandom(size * size * 3))
    image.save(path, format="PNG")
    return path


def write_plist(path: Path, data: dict) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        plistlib.dump(data, f)
    return path


def zip_directory(root: Path, archive_path: Path, arc_prefix: str = "") -> Path:
    """Zip every file and folder under ``root``, storing names under ``arc_prefix``."""
    with zipfile.ZipFile(archive_path, "w", zipfile.ZIP_DEFLATED) as zf:
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for name in dirnames:
                full = Path(dirpath) / name
                zf.write(full, f"{arc_prefix}{full.relative_to(root).as_posix()}/")
            for name in sorted(filenames):
                full = Path(dirpath) / name
                zf.write(full, f"{arc_prefix}{full.relative_to(root).as_posix()}")
    return archive_path


def read_tree(root: Path) -> dict:
    """Map relative file paths under ``root`` to their bytes."""
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


@pytest.fixture
def sample_bundle(tmp_path):
    """Create Demo.app with an executable, three icon scales, dylibs and a framework."""
    bundle = tmp_path / "apps" / "Demo.app"
    bundle.mkdir(parents=True)
    
    write_plist(bundle / "Info.plist", {
        "CFBundleName": "Demo",
        "CFBundleExecutable": "Demo",
        "CFBundleIcons": {
            "CFBundlePrimaryIcon": {"CFBundleIconFiles": ["AppIcon"]},
        },
    })
    
    executable = bundle / "Demo"
    executable.write_bytes(b"\xcf\xfa\xed\xfe" + os.urandom(2048))
    executable.chmod(0o755)
    
    write_noise_png(bundle / "AppIcon.png", 32)
    write_noise_png(bundle / "AppIcon@2x.png", 64)
    write_noise_png(bundle / "AppIcon@3x.png", 96)
    
    frameworks = bundle / "Frameworks"
    frameworks.mkdir()
    (frameworks / "libswiftCore.dylib").write_bytes(os.urandom(4096))
    (frameworks / "libswiftFoundation.dylib").write_bytes(os.urandom(1024))
    
    framework = frameworks / "Alamofire.framework"
    framework.mkdir()
    (framework / "Alamofire").write_bytes(os.urandom(3000))
    write_plist(framework / "Info.plist", {"CFBundleName": "Alamofire"})
    
    (bundle / "Base.lproj").mkdir()
    (bundle / "Base.lproj" / "Main.strings").write_text('"title" = "Demo";', encoding="utf-8")
    
    return bundle


@pytest.fixture
def sample_ipa(tmp_path, sample_bundle):
    """Zip the sample bundle as Payload/Demo.app inside Demo.ipa."""
    ipa_dir = tmp_path / "ipas"
    ipa_dir.mkdir()
    return zip_directory(sample_bundle.parent, ipa_dir / "Demo.ipa", arc_prefix="Payload/")


@pytest.fixture
def workbench_config(tmp_path):
    """Configuration keeping storage and scratch space inside tmp_path."""
    return WorkbenchConfig(
        storage=StorageConfig(root_dir=str(tmp_path / "storage")),
        extraction=ExtractionConfig(scratch_dir=str(tmp_path / "scratch"), io_workers=2),
    )


@pytest.fixture
def scratch_parent(tmp_path):
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def coordinator():
    """Private progress coordinator with no hide delay."""
    progress = ProgressCoordinator(hide_delay=0.0)
    yield progress
    progress.stop(timeout=5)
