"""
MUX Video Service
Creates streamable (HLS) assets from stored videos and reports their status.
"""

import logging
from typing import Any, Callable, Dict, Optional

import httpx

from app.core.config import settings
from app.core.errors import TranscodeProviderError
from app.workers.base import with_retry

logger = logging.getLogger(__name__)


def get_hls_url(playback_id: str) -> str:
    """Get HLS streaming URL from playback ID."""
    return f"https://stream.mux.com/{playback_id}.m3u8"


def normalize_video_url(video_url: str) -> str:
    """Make a stored artifact reference absolute so MUX can fetch it."""
    if video_url.startswith(("http://", "https://")):
        return video_url
    if not settings.PUBLIC_BASE_URL:
        raise TranscodeProviderError(
            f"Cannot build a public URL for {video_url}: PUBLIC_BASE_URL is not set",
            retryable=False,
        )
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/{video_url.lstrip('/')}"


class MuxVideoService:
    """Client for the MUX Video assets API."""

    def __init__(
        self,
        token_id: Optional[str] = None,
        token_secret: Optional[str] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ):
        self.token_id = token_id if token_id is not None else settings.MUX_TOKEN_ID
        self.token_secret = token_secret if token_secret is not None else settings.MUX_TOKEN_SECRET
        self._client_factory = client_factory or self._default_client

    def _default_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=settings.MUX_API_BASE,
            auth=(self.token_id, self.token_secret),
            timeout=30.0,
        )

    @property
    def is_configured(self) -> bool:
        """Check if MUX is configured."""
        return bool(self.token_id and self.token_secret)

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            async with self._client_factory() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise TranscodeProviderError(f"MUX unreachable: {e}", retryable=True) from e

        if response.status_code >= 400:
            raise TranscodeProviderError(
                f"MUX API error: {response.status_code} {response.text[:300]}",
                retryable=response.status_code >= 500 or response.status_code == 429,
            )
        return (response.json() or {}).get("data") or {}

    async def create_asset(self, video_url: str) -> Dict[str, Any]:
        """
        Create a new MUX asset from a video URL.

        Returns:
            Dict with asset_id, playback_id and status (preparing/ready/errored)
        """
        full_url = normalize_video_url(video_url)
        logger.info(f"[MUX] Creating asset from URL: {full_url}")

        asset = await self._request("POST", "/video/v1/assets", json={
            "inputs": [{"url": full_url}],
            "playback_policies": ["public"],
            "video_quality": "basic",
            "normalize_audio": True,
        })

        playback_ids = asset.get("playback_ids") or []
        return {
            "asset_id": asset.get("id"),
            "playback_id": playback_ids[0].get("id") if playback_ids else None,
            "status": asset.get("status"),
        }

    @with_retry(max_retries=1, retry_delay=1.0)
    async def get_asset_status(self, asset_id: str) -> Dict[str, Any]:
        """Check the processing status of a MUX asset."""
        asset = await self._request("GET", f"/video/v1/assets/{asset_id}")

        playback_ids = asset.get("playback_ids") or []
        playback_id = playback_ids[0].get("id") if playback_ids else None
        return {
            "asset_id": asset.get("id"),
            "status": asset.get("status"),
            "playback_id": playback_id,
            "hls_url": get_hls_url(playback_id) if playback_id else None,
            "duration": asset.get("duration"),
            "errors": (asset.get("errors") or {}).get("messages", []),
        }
