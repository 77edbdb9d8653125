"""Tests for the error taxonomy and quiet cleanup."""

from unittest import mock

import pytest

from ipa_workbench.common import FileAccessError, WorkbenchError, remove_path_quietly
from ipa_workbench.errors import (
    ArchiveError,
    DestinationConflictError,
    ExtractionError,
    InvalidArchiveError,
    MissingPayloadError,
    NoAssetsFoundError,
    PackagingError,
)


class TestWorkbenchError:
    """Test base error behaviour."""
    
    def test_message_and_context(self):
        """Test that message and structured context are kept."""
        error = WorkbenchError("Something failed", path="/tmp/x.ipa", member="Payload/")
        
        assert str(error) == "Something failed"
        assert error.message == "Something failed"
        assert error.context == {"path": "/tmp/x.ipa", "member": "Payload/"}
    
    def test_context_defaults_to_empty(self):
        """Test error without context."""
        assert WorkbenchError("plain").context == {}
    
    @pytest.mark.parametrize("error_class", [
        InvalidArchiveError, MissingPayloadError, ExtractionError,
    ])
    def test_archive_errors_share_parent(self, error_class):
        """Test that archive-opening failures can be caught together."""
        error = error_class("bad archive")
        assert isinstance(error, ArchiveError)
        assert isinstance(error, WorkbenchError)
    
    @pytest.mark.parametrize("error_class", [
        NoAssetsFoundError, PackagingError, DestinationConflictError, FileAccessError,
    ])
    def test_other_errors_are_workbench_errors(self, error_class):
        """Test that every typed failure derives from WorkbenchError."""
        error = error_class("failed")
        assert isinstance(error, WorkbenchError)
        assert not isinstance(error, ArchiveError)


class TestRemovePathQuietly:
    """Test best-effort removal used on cleanup paths."""
    
    def test_removes_file(self, tmp_path):
        """Test removing a single file."""
        target = tmp_path / "a.dylib"
        target.write_bytes(b"x")
        
        assert remove_path_quietly(target) is True
        assert not target.exists()
    
    def test_removes_directory_tree(self, tmp_path):
        """Test removing a populated directory."""
        target = tmp_path / "staging"
        (target / "nested").mkdir(parents=True)
        (target / "nested" / "file.png").write_bytes(b"x")
        
        assert remove_path_quietly(target) is True
        assert not target.exists()
    
    def test_missing_path_counts_as_removed(self, tmp_path):
        """Test that a path that is already gone is not an error."""
        assert remove_path_quietly(tmp_path / "missing") is True
    
    def test_failure_is_logged_not_raised(self, tmp_path, caplog):
        """Test that OSError is swallowed and reported as a warning."""
        target = tmp_path / "staging"
        target.mkdir()
        
        with mock.patch("ipa_workbench.common.errors.shutil.rmtree", side_effect=PermissionError("denied")):
            assert remove_path_quietly(target) is False
        
        assert target.exists()
        assert any("Failed to remove" in r.message for r in caplog.records)
