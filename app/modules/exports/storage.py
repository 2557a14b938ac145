"""
Artifact storage for export files

ArtifactStore is the capability the export engine writes through; the
MinIO implementation keeps everything in one bucket and hands out
presigned download URLs.
"""

import io
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from minio import Minio
from minio.error import S3Error

from app.core.config import settings
from app.modules.exports.errors import StorageFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredObject:
    path: str
    size: int
    last_modified: datetime


class ArtifactStore(ABC):
    """Object storage used for rendered exports, archives and batch control files"""

    @abstractmethod
    def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> int:
        """Store ``data`` at ``path`` and return the stored size in bytes."""

    @abstractmethod
    def get(self, path: str) -> bytes:
        """Return the content stored at ``path``."""

    @abstractmethod
    def list(self, prefix: str) -> List[StoredObject]:
        """Return every object below ``prefix``, recursively."""

    @abstractmethod
    def delete(self, path: str) -> None:
        pass

    @abstractmethod
    def exists(self, path: str) -> bool:
        pass

    def url(self, path: str, expires: Optional[timedelta] = None) -> Optional[str]:
        """Download URL for ``path``; stores without public access return None"""
        return None


class MinIOArtifactStore(ArtifactStore):
    """MinIO-backed artifact store"""

    def __init__(self, client: Optional[Minio] = None, bucket_name: Optional[str] = None):
        self.client = client or Minio(
            settings.minio_endpoint,
            access_key=settings.MINIO_ACCESS_KEY,
            secret_key=settings.MINIO_SECRET_KEY,
            secure=settings.MINIO_USE_SSL
        )
        self.bucket_name = bucket_name or settings.MINIO_BUCKET_NAME
        self.url_expiry = timedelta(minutes=settings.EXPORT_DOWNLOAD_URL_EXPIRE_MINUTES)
        self._ensure_bucket_exists()

    def _ensure_bucket_exists(self):
        """Ensure the bucket exists, create if it doesn't"""
        try:
            if not self.client.bucket_exists(self.bucket_name):
                self.client.make_bucket(self.bucket_name)
                logger.info(f"Created MinIO bucket: {self.bucket_name}")
        except S3Error as e:
            logger.error(f"MinIO bucket setup error: {e}")
            raise StorageFailure(f"Export storage unavailable: {e}") from e

    def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> int:
        try:
            self.client.put_object(
                bucket_name=self.bucket_name,
                object_name=path,
                data=io.BytesIO(data),
                length=len(data),
                content_type=content_type
            )
            return len(data)
        except S3Error as e:
            logger.error(f"MinIO upload error for {path}: {e}")
            raise StorageFailure(f"Could not store {path}: {e}") from e

    def get(self, path: str) -> bytes:
        response = None
        try:
            response = self.client.get_object(bucket_name=self.bucket_name, object_name=path)
            return response.read()
        except S3Error as e:
            logger.error(f"MinIO download error for {path}: {e}")
            raise StorageFailure(f"Could not read {path}: {e}") from e
        finally:
            if response is not None:
                response.close()
                response.release_conn()

    def list(self, prefix: str) -> List[StoredObject]:
        try:
            return [
                StoredObject(path=obj.object_name, size=obj.size or 0, last_modified=obj.last_modified)
                for obj in self.client.list_objects(
                    bucket_name=self.bucket_name,
                    prefix=prefix.rstrip("/") + "/",
                    recursive=True
                )
                if not obj.is_dir
            ]
        except S3Error as e:
            logger.error(f"MinIO listing error for {prefix}: {e}")
            raise StorageFailure(f"Could not list {prefix}: {e}") from e

    def delete(self, path: str) -> None:
        try:
            self.client.remove_object(bucket_name=self.bucket_name, object_name=path)
        except S3Error as e:
            logger.error(f"MinIO file deletion error: {e}")
            raise StorageFailure(f"Could not delete {path}: {e}") from e

    def exists(self, path: str) -> bool:
        try:
            self.client.stat_object(bucket_name=self.bucket_name, object_name=path)
            return True
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchObject", "ResourceNotFound"):
                return False
            raise StorageFailure(f"Could not stat {path}: {e}") from e

    def url(self, path: str, expires: Optional[timedelta] = None) -> Optional[str]:
        try:
            return self.client.presigned_get_object(
                bucket_name=self.bucket_name,
                object_name=path,
                expires=expires or self.url_expiry
            )
        except S3Error as e:
            logger.error(f"MinIO download URL generation error: {e}")
            raise StorageFailure(f"Could not generate download URL for {path}: {e}") from e
