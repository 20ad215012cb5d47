"""
Storage Service
Handles durable artifact storage - supports Google Cloud Storage, S3, and local filesystem.

Every backend returns the same kind of reference, an API proxy path
(``/files/<key>``), so callers never need to know which backend is in use.
"""

import asyncio
import io
import logging
import os
import tempfile
from pathlib import Path
from typing import BinaryIO

from app.core.config import settings

logger = logging.getLogger(__name__)

FILES_PREFIX = "/files/"


class StorageService:
    """Service for file storage operations."""

    def __init__(self):
        # Priority: GCS > Local > S3
        self.use_gcs = settings.USE_GCS
        self.use_local = settings.USE_LOCAL_STORAGE and not self.use_gcs

        if self.use_gcs:
            # Google Cloud Storage
            from google.cloud import storage
            self.gcs_client = storage.Client(project=settings.GCP_PROJECT_ID)
            self.bucket_uploads = self.gcs_client.bucket(settings.GCS_BUCKET_UPLOADS)
            self.bucket_outputs = self.gcs_client.bucket(settings.GCS_BUCKET_OUTPUTS)
            logger.info(f"[Storage] Using Google Cloud Storage: {settings.GCS_BUCKET_UPLOADS}, {settings.GCS_BUCKET_OUTPUTS}")

        elif self.use_local:
            self.base_path = Path(settings.LOCAL_STORAGE_PATH)
            self.base_path.mkdir(parents=True, exist_ok=True)
            logger.info(f"[Storage] Using local storage: {self.base_path}")

        else:
            # S3 fallback
            import boto3
            from botocore.config import Config
            self.s3 = boto3.client(
                "s3",
                endpoint_url=settings.S3_ENDPOINT or None,
                aws_access_key_id=settings.S3_ACCESS_KEY,
                aws_secret_access_key=settings.S3_SECRET_KEY,
                region_name=settings.S3_REGION,
                config=Config(signature_version="s3v4")
            )
            self.bucket = settings.S3_BUCKET
            logger.info(f"[Storage] Using S3: {self.bucket}")

    @property
    def backend(self) -> str:
        if self.use_gcs:
            return "gcs"
        if self.use_local:
            return "local"
        return "s3"

    async def upload_bytes(self, data: bytes, path: str, content_type: str = "application/octet-stream") -> str:
        """Upload bytes under ``path`` and return a durable reference."""
        if self.use_gcs:
            await asyncio.to_thread(self._upload_gcs, data, path, content_type)
        elif self.use_local:
            await asyncio.to_thread(self._upload_local, data, path)
        else:
            await asyncio.to_thread(self._upload_s3, data, path, content_type)
        return self.get_public_url(path)

    def _gcs_bucket(self, path: str):
        # Determine bucket based on path
        if path.startswith("uploads/"):
            return self.bucket_uploads
        return self.bucket_outputs

    def _upload_gcs(self, data: bytes, path: str, content_type: str):
        """Upload to Google Cloud Storage. Single-request uploads replace the object atomically."""
        blob = self._gcs_bucket(path).blob(path)
        blob.upload_from_string(data, content_type=content_type)

    def _upload_local(self, data: bytes, path: str):
        """Save file to local filesystem via a temp file, so readers never see a partial write."""
        file_path = self._local_path(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=file_path.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, file_path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _upload_s3(self, data: bytes, path: str, content_type: str):
        """Upload to S3."""
        self.s3.put_object(
            Bucket=self.bucket,
            Key=path,
            Body=data,
            ContentType=content_type
        )

    def _local_path(self, path: str) -> Path:
        file_path = (self.base_path / path).resolve()
        if self.base_path.resolve() not in file_path.parents:
            raise ValueError(f"Path escapes storage root: {path}")
        return file_path

    async def get_file(self, path: str) -> bytes:
        """Get file contents."""
        if self.use_gcs:
            blob = self._gcs_bucket(path).blob(path)
            return await asyncio.to_thread(blob.download_as_bytes)
        elif self.use_local:
            return await asyncio.to_thread(self._local_path(path).read_bytes)
        else:
            response = await asyncio.to_thread(self.s3.get_object, Bucket=self.bucket, Key=path)
            return response["Body"].read()

    async def read(self, ref: str) -> BinaryIO:
        """Open a stored object by the reference ``upload_bytes`` returned."""
        path = ref[len(FILES_PREFIX):] if ref.startswith(FILES_PREFIX) else ref
        return io.BytesIO(await self.get_file(path))

    def get_public_url(self, path: str) -> str:
        """Get public URL for file."""
        # Return API proxy URL for all storage backends
        # This allows consistent access through the API endpoint
        return f"{FILES_PREFIX}{path}"
