"""
Unit Tests for file storage
"""
from datetime import datetime, timezone

import pytest

from exceptions import InvalidInputError
from storage import resource_upload_path


class TestUploadPath:
    def test_keeps_extension(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)

        assert resource_upload_path("node1", "Chapter Notes.PDF", now) == "node1/1704067200000.pdf"

    def test_no_extension(self):
        assert resource_upload_path("node1", "README").endswith(".bin")


class TestFileStorage:
    def test_upload_and_remove(self, files):
        path = files.upload("node1/1.pdf", b"hello")

        assert (files.bucket_dir / "node1" / "1.pdf").read_bytes() == b"hello"
        assert files.public_url(path) == "http://testserver/files/resources/node1/1.pdf"
        assert files.remove(path) is True
        assert files.remove(path) is False

    @pytest.mark.parametrize("path", ["", "/etc/passwd", "../outside.txt", "node1/../../x"])
    def test_rejects_escaping_paths(self, files, path):
        with pytest.raises(InvalidInputError):
            files.upload(path, b"x")
