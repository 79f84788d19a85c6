"""Blob storage supporting multiple backends.

Supports: local filesystem, S3, MinIO, and other S3-compatible storage.
Objects are addressed by (bucket, key); the service uses separate logical
buckets for raw uploads, HLS artifacts and thumbnails.
"""

import asyncio
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import boto3
from boto3.exceptions import Boto3Error
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from hls_transcoder.core.config import settings


class StorageError(Exception):
    """Base exception for blob storage errors."""
    pass


class ObjectNotFoundError(StorageError):
    """Raised when the requested object does not exist."""
    pass


class DownloadError(StorageError):
    """Raised when an object cannot be downloaded."""
    pass


class UploadError(StorageError):
    """Raised when an object cannot be uploaded."""
    pass


@dataclass
class StorageResult:
    """Result of a successful upload."""
    bucket: str
    key: str
    content_type: str
    file_size: int = 0
    etag: Optional[str] = None


@dataclass
class StorageConfig:
    """Storage configuration."""
    backend: str  # local, s3, minio
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    use_ssl: bool = True
    local_path: str = "./storage"


class StorageBackend(ABC):
    """Abstract base class for storage backends.

    Backends are synchronous; BlobStore moves calls off the event loop.
    """

    @abstractmethod
    def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Write an object, replacing any existing one."""
        pass

    @abstractmethod
    def download(self, bucket: str, key: str) -> bytes:
        """Read an object's bytes."""
        pass

    @abstractmethod
    def download_file(self, bucket: str, key: str, dest_path: str) -> int:
        """Stream an object to a local file and return its size."""
        pass

    @abstractmethod
    def exists(self, bucket: str, key: str) -> bool:
        """Check if an object exists."""
        pass


class LocalStorage(StorageBackend):
    """Local filesystem storage backend.

    Buckets are directories under the base path.
    """

    def __init__(self, config: StorageConfig):
        self.base_path = Path(config.local_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, bucket: str, key: str) -> Path:
        """Get full path for a key, refusing keys that escape the bucket."""
        bucket_root = (self.base_path / bucket).resolve()
        path = (bucket_root / key).resolve()
        if bucket_root != path and bucket_root not in path.parents:
            raise StorageError(f"Key escapes bucket: {key}")
        return path

    def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        try:
            dest_path = self._get_full_path(bucket, key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            # Write then rename so readers never observe a partial object
            fd, tmp_name = tempfile.mkstemp(dir=dest_path.parent, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, dest_path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except (OSError, StorageError) as e:
            raise UploadError(f"Failed to upload {bucket}/{key}: {e}") from e

        return StorageResult(
            bucket=bucket,
            key=key,
            content_type=content_type,
            file_size=len(data),
        )

    def download(self, bucket: str, key: str) -> bytes:
        try:
            src_path = self._get_full_path(bucket, key)
        except StorageError as e:
            raise DownloadError(str(e)) from e

        if not src_path.is_file():
            raise ObjectNotFoundError(f"Object not found: {bucket}/{key}")
        try:
            return src_path.read_bytes()
        except OSError as e:
            raise DownloadError(f"Failed to download {bucket}/{key}: {e}") from e

    def download_file(self, bucket: str, key: str, dest_path: str) -> int:
        try:
            src_path = self._get_full_path(bucket, key)
        except StorageError as e:
            raise DownloadError(str(e)) from e

        if not src_path.is_file():
            raise ObjectNotFoundError(f"Object not found: {bucket}/{key}")
        try:
            shutil.copyfile(src_path, dest_path)
            return os.path.getsize(dest_path)
        except OSError as e:
            raise DownloadError(f"Failed to download {bucket}/{key}: {e}") from e

    def exists(self, bucket: str, key: str) -> bool:
        try:
            return self._get_full_path(bucket, key).is_file()
        except StorageError:
            return False


class S3Storage(StorageBackend):
    """S3/MinIO compatible storage backend."""

    NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound", "NoSuchBucket"})

    def __init__(self, config: StorageConfig):
        self.config = config
        self._client = None

    def _get_client(self):
        """Get or create S3 client."""
        if self._client is None:
            client_kwargs = {
                "service_name": "s3",
                "region_name": self.config.region or "us-east-1",
            }

            if self.config.access_key and self.config.secret_key:
                client_kwargs["aws_access_key_id"] = self.config.access_key
                client_kwargs["aws_secret_access_key"] = self.config.secret_key

            # For MinIO or other S3-compatible storage
            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url
                client_kwargs["config"] = BotoConfig(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                )
                if not self.config.use_ssl:
                    client_kwargs["use_ssl"] = False

            self._client = boto3.client(**client_kwargs)

        return self._client

    def _is_not_found(self, error) -> bool:
        code = str(error.response.get("Error", {}).get("Code", ""))
        return code in self.NOT_FOUND_CODES

    def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        try:
            response = self._get_client().put_object(
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            raise UploadError(f"Failed to upload {bucket}/{key}: {e}") from e

        return StorageResult(
            bucket=bucket,
            key=key,
            content_type=content_type,
            file_size=len(data),
            etag=response.get("ETag", "").strip('"'),
        )

    def download(self, bucket: str, key: str) -> bytes:
        try:
            response = self._get_client().get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            if self._is_not_found(e):
                raise ObjectNotFoundError(f"Object not found: {bucket}/{key}") from e
            raise DownloadError(f"Failed to download {bucket}/{key}: {e}") from e
        except BotoCoreError as e:
            raise DownloadError(f"Failed to download {bucket}/{key}: {e}") from e

    def download_file(self, bucket: str, key: str, dest_path: str) -> int:
        try:
            self._get_client().download_file(bucket, key, dest_path)
        except ClientError as e:
            if self._is_not_found(e):
                raise ObjectNotFoundError(f"Object not found: {bucket}/{key}") from e
            raise DownloadError(f"Failed to download {bucket}/{key}: {e}") from e
        except (BotoCoreError, Boto3Error, OSError) as e:
            raise DownloadError(f"Failed to download {bucket}/{key}: {e}") from e
        return os.path.getsize(dest_path)

    def exists(self, bucket: str, key: str) -> bool:
        try:
            self._get_client().head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as e:
            if self._is_not_found(e):
                return False
            raise StorageError(f"Failed to stat {bucket}/{key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to stat {bucket}/{key}: {e}") from e


def create_backend(config: StorageConfig) -> StorageBackend:
    """Create appropriate storage backend."""
    backend_type = config.backend.lower()

    if backend_type == "local":
        return LocalStorage(config)
    elif backend_type in ("s3", "minio", "aws"):
        return S3Storage(config)
    else:
        raise ValueError(f"Unsupported storage backend: {backend_type}")


class BlobStore:
    """Async blob store used by the pipeline.

    Blocking backend calls run in a worker thread so one job's transfer
    never stalls the event loop.
    """

    _instance: Optional["BlobStore"] = None

    def __init__(self, backend: StorageBackend):
        self._backend = backend

    @classmethod
    def from_config(cls, config: Optional[StorageConfig] = None) -> "BlobStore":
        """Build a blob store from configuration (uses settings if not provided)."""
        if config is None:
            config = StorageConfig(
                backend=settings.STORAGE_BACKEND,
                region=settings.STORAGE_REGION,
                access_key=settings.STORAGE_ACCESS_KEY,
                secret_key=settings.STORAGE_SECRET_KEY,
                endpoint_url=settings.STORAGE_ENDPOINT_URL,
                use_ssl=settings.STORAGE_USE_SSL,
                local_path=settings.LOCAL_STORAGE_PATH,
            )
        return cls(create_backend(config))

    @classmethod
    def get_instance(cls) -> "BlobStore":
        """Get the process-wide blob store."""
        if cls._instance is None:
            cls._instance = cls.from_config()
        return cls._instance

    async def download(self, bucket: str, key: str) -> bytes:
        """Download an object.

        Raises:
            ObjectNotFoundError: The key does not exist
            DownloadError: Any other failure
        """
        return await asyncio.to_thread(self._backend.download, bucket, key)

    async def download_to_file(self, bucket: str, key: str, dest_path: str) -> int:
        """Download an object straight to a local file.

        Returns:
            Size of the written file in bytes

        Raises:
            ObjectNotFoundError: The key does not exist
            DownloadError: Any other failure
        """
        return await asyncio.to_thread(
            self._backend.download_file, bucket, key, str(dest_path)
        )

    async def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        overwrite: bool = True,
    ) -> StorageResult:
        """Upload an object.

        Uploads replace existing objects unless overwrite is False, in which
        case an existing key is an error.

        Raises:
            UploadError: The object could not be written
        """
        if not overwrite:
            try:
                present = await self.exists(bucket, key)
            except StorageError as e:
                raise UploadError(str(e)) from e
            if present:
                raise UploadError(f"Object already exists: {bucket}/{key}")
        return await asyncio.to_thread(
            self._backend.upload, bucket, key, data, content_type
        )

    async def exists(self, bucket: str, key: str) -> bool:
        """Check if an object exists."""
        return await asyncio.to_thread(self._backend.exists, bucket, key)


def get_blob_store() -> BlobStore:
    """Get the default blob store instance."""
    return BlobStore.get_instance()
