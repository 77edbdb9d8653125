"""Tests for copying classified assets into staging folders."""

from unittest import mock

import pytest
from PIL import Image

from ipa_workbench.common import FileAccessError
from ipa_workbench.scanner import AssetKind, BundleScanner, ClassifiedEntry
from ipa_workbench.staging import StagingStore, format_size
from ipa_workbench.storage import StorageLayout


@pytest.fixture
def store(tmp_path):
    return StagingStore(StorageLayout(tmp_path / "storage"))


@pytest.fixture
def scanner():
    return BundleScanner()


class TestFormatSize:
    @pytest.mark.parametrize("size,expected", [
        (0, "0 bytes"),
        (999, "999 bytes"),
        (1000, "1.0 KB"),
        (30_500, "30.5 KB"),
        (2_500_000, "2.5 MB"),
        (3_000_000_000, "3.0 GB"),
    ])
    def test_format(self, size, expected):
        assert format_size(size) == expected


class TestStage:
    """Test StagingStore.stage."""
    
    def test_dylibs_copied(self, store, scanner, sample_bundle):
        """Test that records describe copies, not the originals."""
        records = store.stage(scanner.classify_dylibs(sample_bundle), "Demo", AssetKind.DYLIB, "Demo.app")
        staging_dir = store.staging_dir("Demo", AssetKind.DYLIB)
        
        assert [r.name for r in records] == ["libswiftCore.dylib", "libswiftFoundation.dylib", "Alamofire"]
        for record in records:
            assert record.staged_location.parent == staging_dir
            assert record.staged_location.is_file()
            assert record.kind is AssetKind.DYLIB
            assert record.image is None
        assert records[0].original_relative_path == "Demo.app/Frameworks/libswiftCore.dylib"
        assert records[0].staged_location.read_bytes() == (sample_bundle / "Frameworks" / "libswiftCore.dylib").read_bytes()
        assert (sample_bundle / "Frameworks" / "libswiftCore.dylib").exists()
    
    def test_size_measured_after_copy(self, store, tmp_path):
        """Test that the record size comes from the staged file."""
        source = tmp_path / "libreal.dylib"
        source.write_bytes(b"x" * 100)
        entry = ClassifiedEntry("libreal.dylib", AssetKind.DYLIB, size_bytes=1, source_path=source)
        
        records = store.stage([entry], "Demo", AssetKind.DYLIB)
        
        assert records[0].size_bytes == 100
        assert records[0].formatted_size == "100 bytes"
    
    def test_ids_unique(self, store, scanner, sample_bundle):
        records = store.stage(scanner.classify_dylibs(sample_bundle), "Demo", AssetKind.DYLIB)
        
        assert len({r.id for r in records}) == len(records)
    
    def test_icons_carry_images(self, store, scanner, sample_bundle):
        """Test decoded image handles on icon records."""
        records = store.stage(scanner.classify_icons(sample_bundle), "Demo", AssetKind.ICON)
        
        assert [r.name for r in records] == ["AppIcon@3x.png", "AppIcon@2x.png", "AppIcon.png"]
        assert isinstance(records[0].image, Image.Image)
        assert records[0].image.size == (96, 96)
    
    def test_other_kinds_ignored(self, store, scanner, sample_bundle):
        records = store.stage(scanner.classify(sample_bundle), "Demo", AssetKind.ICON)
        
        assert {r.kind for r in records} == {AssetKind.ICON}
    
    def test_stale_content_discarded(self, store, scanner, sample_bundle):
        """Test that a new extraction never merges with old staged files."""
        staging_dir = store.staging_dir("Demo", AssetKind.DYLIB)
        staging_dir.mkdir(parents=True)
        (staging_dir / "libstale.dylib").write_bytes(b"old")
        (staging_dir / "libswiftCore.dylib").write_bytes(b"old")
        
        store.stage(scanner.classify_dylibs(sample_bundle), "Demo", AssetKind.DYLIB)
        
        assert not (staging_dir / "libstale.dylib").exists()
        assert (staging_dir / "libswiftCore.dylib").stat().st_size == 4096
    
    def test_duplicate_names_staged_once(self, store, tmp_path):
        """Test that a staging folder never holds two records with one filename."""
        first = tmp_path / "a" / "libdup.dylib"
        second = tmp_path / "b" / "libdup.dylib"
        for path, data in ((first, b"first"), (second, b"second!")):
            path.parent.mkdir()
            path.write_bytes(data)
        entries = [
            ClassifiedEntry("a/libdup.dylib", AssetKind.DYLIB, 5, first),
            ClassifiedEntry("b/libdup.dylib", AssetKind.DYLIB, 7, second),
        ]
        
        records = store.stage(entries, "Demo", AssetKind.DYLIB)
        
        assert len(records) == 1
        assert records[0].staged_location.read_bytes() == b"first"
    
    def test_zero_entries_leaves_empty_folder(self, store):
        records = store.stage([], "Demo", AssetKind.ICON)
        
        assert records == []
        assert list(store.staging_dir("Demo", AssetKind.ICON).iterdir()) == []
    
    def test_copy_failure_cleans_up(self, store, scanner, sample_bundle):
        """Test that a failed copy leaves no staging folder behind."""
        with mock.patch("ipa_workbench.staging.shutil.copy2", side_effect=OSError("disk full")):
            with pytest.raises(FileAccessError):
                store.stage(scanner.classify_dylibs(sample_bundle), "Demo", AssetKind.DYLIB)
        
        assert not store.staging_dir("Demo", AssetKind.DYLIB).exists()
    
    def test_app_name_with_slash(self, store, scanner, sample_bundle, tmp_path):
        store.stage(scanner.classify_icons(sample_bundle), "AC/DC", AssetKind.ICON)
        
        assert (tmp_path / "storage" / "ExtractedIcons" / "AC-DC").is_dir()


class TestListStaged:
    """Test enumeration of previously staged files."""
    
    def test_lists_one_app(self, store, scanner, sample_bundle):
        store.stage(scanner.classify_dylibs(sample_bundle), "Demo", AssetKind.DYLIB)
        
        names = [r.name for r in store.list_staged(AssetKind.DYLIB, "Demo")]
        
        assert names == ["Alamofire", "libswiftCore.dylib", "libswiftFoundation.dylib"]
    
    def test_lists_all_apps(self, store, scanner, sample_bundle):
        store.stage(scanner.classify_icons(sample_bundle), "Demo", AssetKind.ICON)
        store.stage(scanner.classify_icons(sample_bundle), "Other", AssetKind.ICON)
        
        records = store.list_staged(AssetKind.ICON)
        
        assert len(records) == 6
        assert {r.staged_location.parent.name for r in records} == {"Demo", "Other"}
    
    def test_nothing_staged(self, store):
        assert store.list_staged(AssetKind.DYLIB) == []
        assert store.list_staged(AssetKind.DYLIB, "Nope") == []
