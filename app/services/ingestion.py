"""
Artifact Ingestion Service
Turns a short-lived provider URL into a durably stored object.

The artifact is downloaded completely (bounded by MAX_ARTIFACT_BYTES) before
anything is written, so a failed or truncated fetch never touches the
destination key.
"""

import logging
import mimetypes
from typing import Callable, Optional

import httpx

from app.core.config import settings
from app.core.errors import ArtifactTooLarge, IngestionFailed

logger = logging.getLogger(__name__)

# Upstream statuses worth retrying; any other 4xx is permanent
RETRYABLE_STATUS_CODES = {408, 425, 429}


def guess_content_type(url: str, default: str = "application/octet-stream") -> str:
    content_type, _ = mimetypes.guess_type(url.split("?", 1)[0])
    return content_type or default


def guess_extension(url: str, default: str = "") -> str:
    name = url.split("?", 1)[0].rsplit("/", 1)[-1]
    if "." in name:
        ext = "." + name.rsplit(".", 1)[-1].lower()
        if 1 < len(ext) <= 6 and ext[1:].isalnum():
            return ext
    return default


class ArtifactIngestor:
    """Fetches remote artifacts and persists them through the storage service."""

    def __init__(
        self,
        storage,
        max_bytes: Optional[int] = None,
        timeout: Optional[float] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ):
        self.storage = storage
        self.max_bytes = max_bytes if max_bytes is not None else settings.MAX_ARTIFACT_BYTES
        self.timeout = timeout if timeout is not None else settings.ARTIFACT_FETCH_TIMEOUT
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        )

    async def ingest(self, source_url: str, destination_key: str) -> str:
        """
        Fetch ``source_url`` and store it under ``destination_key``.

        Returns:
            Durable reference from the storage service

        Raises:
            ArtifactTooLarge: payload exceeds the size limit (permanent)
            IngestionFailed: fetch or upload failed; ``retryable`` tells which kind
        """
        data, content_type = await self._fetch(source_url)

        try:
            ref = await self.storage.upload_bytes(data, destination_key, content_type)
        except Exception as e:
            logger.error(f"[Ingestion] Upload of {destination_key} failed: {e}")
            raise IngestionFailed(
                f"Storage upload failed for {destination_key}: {e}",
                retryable=True,
                details={"destination_key": destination_key},
            ) from e

        logger.info(f"[Ingestion] Stored {len(data)} bytes from {source_url} as {ref}")
        return ref

    async def _fetch(self, source_url: str):
        details = {"source_url": source_url}

        try:
            async with self._client_factory() as client:
                async with client.stream("GET", source_url) as response:
                    if response.status_code >= 400:
                        retryable = response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES
                        raise IngestionFailed(
                            f"Fetching {source_url} returned HTTP {response.status_code}",
                            retryable=retryable,
                            details={**details, "status_code": response.status_code},
                        )

                    declared = response.headers.get("content-length")
                    if declared and declared.isdigit() and int(declared) > self.max_bytes:
                        raise ArtifactTooLarge(source_url, self.max_bytes)

                    buffer = bytearray()
                    async for chunk in response.aiter_bytes():
                        buffer.extend(chunk)
                        if len(buffer) > self.max_bytes:
                            raise ArtifactTooLarge(source_url, self.max_bytes)

                    content_type = response.headers.get("content-type", "").split(";", 1)[0].strip()

        except httpx.TimeoutException as e:
            raise IngestionFailed(f"Timed out fetching {source_url}", retryable=True, details=details) from e
        except httpx.HTTPError as e:
            raise IngestionFailed(f"Network error fetching {source_url}: {e}", retryable=True, details=details) from e

        if not buffer:
            raise IngestionFailed(f"Empty artifact at {source_url}", retryable=True, details=details)

        if not content_type or content_type == "application/octet-stream":
            content_type = guess_content_type(source_url)

        return bytes(buffer), content_type
