import logging
import shutil
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

# Import configuration variables.
# STORAGE_BACKEND determines which backend (local/gcp/azure) holds processed images.
from common.config import (
    AZURE_CONTAINER,
    AZURE_STORAGE_CONNECTION_STRING,
    GCS_BUCKET,
    IMAGE_STORAGE_PATH,
    STORAGE_BACKEND,
)

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------------------
# CONSTANTS
# Folder for processed images inside buckets/containers.
# ------------------------------------------------------------------------------
OUTPUT_PREFIX = "processed_images/"


class ImageStorage(ABC):
    """Where the worker puts processed images and the image service reads them."""

    # True when fetch() downloads into a temp file the caller must delete
    fetch_is_temporary = False

    @abstractmethod
    def save(self, local_path: Path, name: str) -> None:
        """Store the file at ``local_path`` under ``name``."""

    @abstractmethod
    def exists(self, name: str) -> bool:
        ...

    @abstractmethod
    def fetch(self, name: str) -> Path:
        """Return a local path holding the stored file (downloaded if remote)."""


# ------------------------------------------------------------------------------
# LOCAL FILESYSTEM
# Used when STORAGE_BACKEND="local".
# ------------------------------------------------------------------------------

class LocalImageStorage(ImageStorage):
    def __init__(self, directory: Path = IMAGE_STORAGE_PATH):
        self.directory = Path(directory)

    def save(self, local_path: Path, name: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, self.directory / name)

    def exists(self, name: str) -> bool:
        return (self.directory / name).is_file()

    def fetch(self, name: str) -> Path:
        # Local backend just points to the file on disk directly
        path = self.directory / name
        if not path.is_file():
            raise FileNotFoundError(str(path))
        return path


# ------------------------------------------------------------------------------
# GOOGLE CLOUD STORAGE (GCS)
# Used when STORAGE_BACKEND="gcp".
# ------------------------------------------------------------------------------

def _get_gcs_client():
    """Returns an authenticated GCS client."""
    try:
        from google.cloud import storage as gcs
    except ImportError as exc:
        raise RuntimeError("google-cloud-storage library is not installed (pip install '.[gcp]').") from exc
    return gcs.Client()


class GCSImageStorage(ImageStorage):
    fetch_is_temporary = True

    def __init__(self, bucket_name: Optional[str] = GCS_BUCKET, client=None):
        if not bucket_name:
            raise ValueError("GCS_BUCKET is required for GCP backend")
        self.bucket_name = bucket_name
        self._client = client

    def _bucket(self):
        if self._client is None:
            self._client = _get_gcs_client()
        return self._client.bucket(self.bucket_name)

    def save(self, local_path: Path, name: str) -> None:
        blob = self._bucket().blob(f"{OUTPUT_PREFIX}{name}")
        blob.upload_from_filename(str(local_path))

    def exists(self, name: str) -> bool:
        return self._bucket().blob(f"{OUTPUT_PREFIX}{name}").exists()

    def fetch(self, name: str) -> Path:
        blob = self._bucket().blob(f"{OUTPUT_PREFIX}{name}")
        if not blob.exists():
            raise FileNotFoundError(f"gs://{self.bucket_name}/{OUTPUT_PREFIX}{name}")
        tmp = tempfile.NamedTemporaryFile(delete=False, suffix=Path(name).suffix)
        tmp.close()
        blob.download_to_filename(tmp.name)
        return Path(tmp.name)


# ------------------------------------------------------------------------------
# AZURE BLOB STORAGE
# Used when STORAGE_BACKEND="azure".
# ------------------------------------------------------------------------------

def _get_azure_client(connection_string: Optional[str]):
    """Creates a BlobServiceClient using the connection string."""
    try:
        from azure.storage.blob import BlobServiceClient
    except ImportError as exc:
        raise RuntimeError("azure-storage-blob library is not installed (pip install '.[azure]').") from exc
    if not connection_string:
        raise ValueError("AZURE_STORAGE_CONNECTION_STRING env var is missing.")
    return BlobServiceClient.from_connection_string(connection_string)


class AzureImageStorage(ImageStorage):
    fetch_is_temporary = True

    def __init__(
        self,
        container_name: Optional[str] = AZURE_CONTAINER,
        connection_string: Optional[str] = AZURE_STORAGE_CONNECTION_STRING,
        client=None,
    ):
        if not container_name:
            raise ValueError("AZURE_CONTAINER env var is required for Azure backend")
        self.container_name = container_name
        self._connection_string = connection_string
        self._client = client
        self._container_checked = False

    def _container(self):
        if self._client is None:
            self._client = _get_azure_client(self._connection_string)
        container_client = self._client.get_container_client(self.container_name)
        if not self._container_checked:
            if not container_client.exists():
                container_client.create_container()
            self._container_checked = True
        return container_client

    def save(self, local_path: Path, name: str) -> None:
        blob_client = self._container().get_blob_client(f"{OUTPUT_PREFIX}{name}")
        with open(local_path, "rb") as data:
            blob_client.upload_blob(data, overwrite=True)

    def exists(self, name: str) -> bool:
        return self._container().get_blob_client(f"{OUTPUT_PREFIX}{name}").exists()

    def fetch(self, name: str) -> Path:
        blob_client = self._container().get_blob_client(f"{OUTPUT_PREFIX}{name}")
        if not blob_client.exists():
            raise FileNotFoundError(f"az://{self.container_name}/{OUTPUT_PREFIX}{name}")
        tmp = tempfile.NamedTemporaryFile(delete=False, suffix=Path(name).suffix)
        with tmp:
            blob_client.download_blob().readinto(tmp)
        return Path(tmp.name)


def get_image_storage(backend: str = STORAGE_BACKEND) -> ImageStorage:
    """Build the processed-image storage selected by STORAGE_BACKEND."""
    if backend == "local":
        return LocalImageStorage()
    elif backend == "gcp":
        return GCSImageStorage()
    elif backend == "azure":
        return AzureImageStorage()
    else:
        raise RuntimeError(f"Unsupported STORAGE_BACKEND: {backend}")
