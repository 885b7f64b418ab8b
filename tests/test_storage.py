"""Unit tests for the processed-image storage backends."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from common.storage import AzureImageStorage, GCSImageStorage, LocalImageStorage, get_image_storage


class TestLocalImageStorage:
    def test_save_fetch(self, tmp_path: Path):
        src = tmp_path / "in.png"
        src.write_bytes(b"png bytes")
        s = LocalImageStorage(tmp_path / "store")

        s.save(src, "out.png")

        assert s.exists("out.png")
        assert s.fetch("out.png").read_bytes() == b"png bytes"
        assert src.exists()

    def test_fetch_missing(self, tmp_path: Path):
        s = LocalImageStorage(tmp_path / "store")
        assert not s.exists("nope.png")
        with pytest.raises(FileNotFoundError):
            s.fetch("nope.png")


class TestGCSImageStorage:
    def test_save_uses_output_prefix(self, tmp_path: Path):
        client = MagicMock()
        s = GCSImageStorage("bucket", client=client)

        s.save(tmp_path / "in.png", "out.png")

        client.bucket.assert_called_with("bucket")
        client.bucket.return_value.blob.assert_called_with("processed_images/out.png")
        client.bucket.return_value.blob.return_value.upload_from_filename.assert_called_once_with(
            str(tmp_path / "in.png")
        )

    def test_fetch_missing_blob(self):
        client = MagicMock()
        client.bucket.return_value.blob.return_value.exists.return_value = False

        with pytest.raises(FileNotFoundError):
            GCSImageStorage("bucket", client=client).fetch("out.png")

    def test_requires_bucket(self):
        with pytest.raises(ValueError):
            GCSImageStorage(None)


class TestAzureImageStorage:
    def test_save_creates_container_once(self, tmp_path: Path):
        src = tmp_path / "in.png"
        src.write_bytes(b"data")
        client = MagicMock()
        container = client.get_container_client.return_value
        container.exists.return_value = False
        s = AzureImageStorage("images", client=client)

        s.save(src, "a.png")
        s.save(src, "b.png")

        container.create_container.assert_called_once()
        container.get_blob_client.assert_called_with("processed_images/b.png")
        assert container.get_blob_client.return_value.upload_blob.call_count == 2

    def test_requires_container(self):
        with pytest.raises(ValueError):
            AzureImageStorage(None)


def test_unknown_backend():
    with pytest.raises(RuntimeError):
        get_image_storage("ftp")
