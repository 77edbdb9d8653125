"""Tests for opening archives and bundles."""

import stat
import sys
import zipfile
from unittest import mock

import pytest

from conftest import read_tree
from ipa_workbench.archive import ArchiveAccessor, OpenedBundle
from ipa_workbench.common import FileAccessError
from ipa_workbench.errors import (
    DestinationConflictError,
    ExtractionError,
    InvalidArchiveError,
    MissingPayloadError,
)


@pytest.fixture
def accessor(scratch_parent):
    return ArchiveAccessor(scratch_parent=scratch_parent)


class TestOpenBundle:
    """Test open_bundle on archives and directories."""
    
    def test_archive_returns_bundle_path(self, accessor, sample_ipa):
        """Test that Payload/X.app is located inside the archive."""
        with accessor.open_bundle(sample_ipa) as opened:
            assert opened.from_archive
            assert opened.bundle_path.name == "Demo.app"
            assert opened.bundle_path.parent.name == "Payload"
            assert (opened.bundle_path / "Info.plist").is_file()
    
    def test_extracted_contents_match_bundle(self, accessor, sample_bundle, sample_ipa):
        """Test byte-for-byte extraction."""
        with accessor.open_bundle(sample_ipa) as opened:
            assert read_tree(opened.bundle_path) == read_tree(sample_bundle)
    
    def test_scratch_removed_on_close(self, accessor, sample_ipa, scratch_parent):
        """Test that closing the handle removes the scratch directory."""
        opened = accessor.open_bundle(sample_ipa)
        scratch_path = opened.scratch.path
        
        opened.close()
        
        assert opened.closed
        assert not scratch_path.exists()
        assert list(scratch_parent.iterdir()) == []
    
    def test_retained_handle_keeps_bundle_readable(self, accessor, sample_ipa):
        """Test that a second consumer can keep reading after the first closes."""
        first = accessor.open_bundle(sample_ipa)
        second = first.retain()
        
        first.close()
        assert (second.bundle_path / "Info.plist").is_file()
        
        second.close()
        assert not second.bundle_path.exists()
    
    def test_retain_closed_handle_fails(self, accessor, sample_ipa):
        opened = accessor.open_bundle(sample_ipa)
        opened.close()
        
        with pytest.raises(RuntimeError):
            opened.retain()
    
    def test_unpacked_bundle_used_in_place(self, accessor, sample_bundle, scratch_parent):
        """Test that a bundle directory needs no scratch space."""
        with accessor.open_bundle(sample_bundle) as opened:
            assert opened.bundle_path == sample_bundle
            assert not opened.from_archive
        
        assert sample_bundle.is_dir()
        assert list(scratch_parent.iterdir()) == []
    
    def test_missing_payload(self, accessor, tmp_path, scratch_parent):
        """Test that an archive without Payload/ fails with MissingPayloadError."""
        archive = tmp_path / "NoPayload.ipa"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("Demo.app/Info.plist", b"")
        
        with pytest.raises(MissingPayloadError):
            accessor.open_bundle(archive)
        
        assert list(scratch_parent.iterdir()) == []
    
    def test_payload_without_bundle(self, accessor, tmp_path):
        archive = tmp_path / "Empty.ipa"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("Payload/readme.txt", b"nothing here")
        
        with pytest.raises(MissingPayloadError):
            accessor.open_bundle(archive)
    
    def test_two_bundles_rejected(self, accessor, tmp_path):
        """Test that Payload must hold exactly one bundle."""
        archive = tmp_path / "Two.ipa"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("Payload/A.app/Info.plist", b"")
            zf.writestr("Payload/B.app/Info.plist", b"")
        
        with pytest.raises(InvalidArchiveError) as exc_info:
            accessor.open_bundle(archive)
        assert exc_info.value.context["bundles"] == ["A.app", "B.app"]
    
    def test_corrupt_archive(self, accessor, tmp_path, scratch_parent):
        """Test that a non-zip file fails with InvalidArchiveError."""
        archive = tmp_path / "Broken.ipa"
        archive.write_bytes(b"this is not a zip file")
        
        with pytest.raises(InvalidArchiveError):
            accessor.open_bundle(archive)
        
        assert list(scratch_parent.iterdir()) == []
    
    def test_missing_source(self, accessor, tmp_path):
        with pytest.raises(FileAccessError):
            accessor.open_bundle(tmp_path / "Missing.ipa")
    
    def test_unsupported_extension(self, accessor, tmp_path):
        source = tmp_path / "notes.txt"
        source.write_text("x", encoding="utf-8")
        
        with pytest.raises(InvalidArchiveError):
            accessor.open_bundle(source)
    
    def test_plain_directory_rejected(self, accessor, tmp_path):
        """Test that a folder without the bundle extension is not a bundle."""
        folder = tmp_path / "Demo"
        folder.mkdir()
        
        with pytest.raises(InvalidArchiveError):
            accessor.open_bundle(folder)
    
    def test_progress_reaches_one(self, accessor, sample_ipa):
        """Test that decompression progress is non-decreasing and ends at 1."""
        fractions = []
        
        with accessor.open_bundle(sample_ipa, fractions.append):
            pass
        
        assert fractions
        assert fractions == sorted(fractions)
        assert fractions[-1] == 1.0
        assert all(0.0 <= f <= 1.0 for f in fractions)


class TestExtractArchive:
    """Test member extraction details."""
    
    def test_path_traversal_rejected(self, accessor, tmp_path):
        """Test that members escaping the target directory are refused."""
        archive = tmp_path / "evil.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("../../escaped.txt", b"gotcha")
        target = tmp_path / "out" / "inner"
        
        with pytest.raises(InvalidArchiveError):
            accessor.extract_archive(archive, target)
        
        assert not (tmp_path / "escaped.txt").exists()
    
    @pytest.mark.skipif(sys.platform == "win32", reason="unix permission bits")
    def test_executable_mode_restored(self, accessor, sample_ipa):
        """Test that permission bits stored in the archive survive extraction."""
        with accessor.open_bundle(sample_ipa) as opened:
            mode = (opened.bundle_path / "Demo").stat().st_mode
        
        assert mode & stat.S_IXUSR
    
    def test_crc_mismatch_detected(self, accessor, tmp_path):
        """Test integrity verification against the central directory."""
        archive = tmp_path / "data.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("file.bin", b"payload bytes")
        
        with mock.patch("ipa_workbench.archive.compute_crc32", return_value=0):
            with pytest.raises(ExtractionError):
                accessor.extract_archive(archive, tmp_path / "out")
    
    def test_verification_can_be_disabled(self, scratch_parent, tmp_path):
        accessor = ArchiveAccessor(scratch_parent=scratch_parent, verify_integrity=False)
        archive = tmp_path / "data.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("file.bin", b"payload bytes")
        
        with mock.patch("ipa_workbench.archive.compute_crc32", return_value=0):
            assert accessor.extract_archive(archive, tmp_path / "out") == 1
    
    def test_returns_file_count(self, accessor, tmp_path):
        archive = tmp_path / "data.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("a/", b"")
            zf.writestr("a/one.txt", b"1")
            zf.writestr("two.txt", b"2")
        
        assert accessor.extract_archive(archive, tmp_path / "out") == 2
        assert (tmp_path / "out" / "a" / "one.txt").read_bytes() == b"1"


class TestUnpackTo:
    """Test unpacking a whole archive into a folder."""
    
    def test_unpack_to_destination(self, accessor, sample_bundle, sample_ipa, tmp_path, scratch_parent):
        destination = tmp_path / "Files" / "Demo"
        
        result = accessor.unpack_to(sample_ipa, destination)
        
        assert result == destination
        assert read_tree(destination / "Payload" / "Demo.app") == read_tree(sample_bundle)
        assert list(scratch_parent.iterdir()) == []
    
    def test_failed_unpack_leaves_no_destination(self, accessor, tmp_path):
        archive = tmp_path / "Broken.ipa"
        archive.write_bytes(b"garbage")
        destination = tmp_path / "Files" / "Broken"
        
        with pytest.raises(InvalidArchiveError):
            accessor.unpack_to(archive, destination)
        
        assert not destination.exists()

    def test_existing_destination_conflicts(self, accessor, sample_ipa, tmp_path, scratch_parent):
        """Test that unpacking twice never nests the second copy in the first."""
        destination = tmp_path / "Files" / "Demo"
        accessor.unpack_to(sample_ipa, destination)
    
        with pytest.raises(DestinationConflictError):
            accessor.unpack_to(sample_ipa, destination)
    
        assert sorted(p.name for p in destination.iterdir()) == ["Payload"]
        assert list(scratch_parent.iterdir()) == []

    def test_destination_created_during_extraction(self, accessor, sample_ipa, tmp_path, scratch_parent):
        """Test that a folder appearing before the move is left alone."""
        destination = tmp_path / "Files" / "Demo"
        original_extract = ArchiveAccessor.extract_archive
    
        def extract_then_race(self, archive_path, extract_to, progress_callback=None):
            count = original_extract(self, archive_path, extract_to, progress_callback)
            destination.mkdir(parents=True)
            return count
    
        with mock.patch.object(ArchiveAccessor, "extract_archive", extract_then_race):
            with pytest.raises(DestinationConflictError):
                accessor.unpack_to(sample_ipa, destination)
    
        assert list(destination.iterdir()) == []
        assert list(scratch_parent.iterdir()) == []


class TestOpenedBundle:
    def test_close_is_idempotent(self, tmp_path):
        opened = OpenedBundle(tmp_path, tmp_path)
        opened.close()
        opened.close()
        assert opened.closed
