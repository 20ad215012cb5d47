"""
KIE.ai Music Service
Submits music generation tasks and reads their status.

Both the status endpoint and the webhook callback are normalized into the
same ``RemoteStatus`` so the reconciler never sees provider-specific shapes.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from app.core.config import settings
from app.core.errors import StatusCheckError, SubmissionError
from app.schemas.callback import CallbackPayload, RemoteOutcome, RemoteStatus, ResultDescriptor
from app.workers.base import with_retry

logger = logging.getLogger(__name__)


IN_PROGRESS_STATUSES = {"PENDING", "TEXT_SUCCESS", "FIRST_SUCCESS"}
SUCCESS_STATUSES = {"SUCCESS"}
FAILURE_STATUSES = {
    "CREATE_TASK_FAILED",
    "GENERATE_AUDIO_FAILED",
    "CALLBACK_EXCEPTION",
    "SENSITIVE_WORD_ERROR",
}


def build_prompt_from_tags(tags: str, lyrics: Optional[str] = None, title: Optional[str] = None) -> Dict[str, str]:
    """
    Split a request into the provider's prompt/style/title fields.

    Lyrics become the prompt; without lyrics the provider is asked for a song in
    the tag style. The title defaults to the first lyric line (minus any
    leading ``[Verse]``-style marker), else "<tags> Song".
    """
    style = tags
    lyrics = (lyrics or "").strip()
    prompt = lyrics if lyrics else f"Create a song in {tags} style"

    if not title:
        if lyrics:
            first_line = lyrics.split("\n")[0]
            if first_line.startswith("["):
                first_line = first_line.split("]", 1)[-1]
            title = first_line.strip() or f"{tags} Song"
        else:
            title = f"{tags} Song"

    return {"prompt": prompt, "style": style, "title": title}


def map_status(status: str) -> RemoteOutcome:
    """Map a provider task status onto the normalized outcome."""
    status = (status or "").upper()
    if status in SUCCESS_STATUSES:
        return RemoteOutcome.SUCCESS
    if status in FAILURE_STATUSES or status.endswith("_FAILED") or status.endswith("_ERROR"):
        return RemoteOutcome.FAILURE
    return RemoteOutcome.IN_PROGRESS


def _first(item: Dict[str, Any], *keys: str):
    for key in keys:
        value = item.get(key)
        if value:
            return value
    return None


def parse_tracks(items: List[Dict[str, Any]]) -> List[ResultDescriptor]:
    """Convert provider track entries (camelCase or snake_case) into result descriptors."""
    results = []
    for item in items or []:
        url = _first(item, "audioUrl", "audio_url", "sourceAudioUrl", "source_audio_url")
        if not url:
            continue
        duration = item.get("duration")
        results.append(ResultDescriptor(
            url=url,
            preview_url=_first(item, "imageUrl", "image_url", "sourceImageUrl", "source_image_url"),
            title=item.get("title"),
            duration_seconds=float(duration) if duration is not None else None,
            remote_id=item.get("id"),
        ))
    return results


def parse_callback(payload: Dict[str, Any]) -> Tuple[str, RemoteStatus]:
    """
    Normalize an inbound webhook body.

    Accepts either the already-normalized ``{taskId, outcome, results}`` shape
    or the provider's native callback (``{code, msg, data: {callbackType,
    task_id, data: [...]}}``).

    Raises:
        ValueError: no task id could be found
    """
    if "outcome" in payload and ("taskId" in payload or "task_id" in payload):
        normalized = CallbackPayload.model_validate(payload)
        return normalized.task_id, RemoteStatus(
            outcome=normalized.outcome,
            results=normalized.results,
            error=normalized.error,
        )

    data = payload.get("data") or {}
    task_id = data.get("task_id") or data.get("taskId")
    if not task_id:
        raise ValueError("Callback payload carries no task id")

    callback_type = (data.get("callbackType") or "").lower()
    code = payload.get("code", 200)

    if code != 200 or callback_type == "error":
        return task_id, RemoteStatus(outcome=RemoteOutcome.FAILURE, error=payload.get("msg"))

    if callback_type == "complete":
        return task_id, RemoteStatus(outcome=RemoteOutcome.SUCCESS, results=parse_tracks(data.get("data")))

    # "text" and "first" callbacks arrive before all takes are rendered
    return task_id, RemoteStatus(outcome=RemoteOutcome.IN_PROGRESS)


class KieMusicService:
    """Client for the KIE.ai music generation API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ):
        self.api_key = (api_key if api_key is not None else settings.KIE_API_KEY).strip()
        self.base_url = (base_url or settings.KIE_API_BASE).rstrip("/")
        self.model = settings.KIE_MODEL
        self._client_factory = client_factory or self._default_client

    def _default_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.KIE_REQUEST_TIMEOUT,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def build_request_body(self, params: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """Return the endpoint path and JSON body for a normalized parameter dict."""
        fields = build_prompt_from_tags(params["tags"], params.get("lyrics"), params.get("title"))
        body = {
            **fields,
            "customMode": True,
            "instrumental": bool(params.get("instrumental", False)),
            "model": self.model,
            "negativeTags": params.get("negative_tags") or "",
            "vocalGender": params.get("vocal_gender") or "",
        }
        if settings.callback_url:
            body["callBackUrl"] = settings.callback_url

        if params.get("input_audio_url"):
            body["uploadUrl"] = params["input_audio_url"]
            return "/generate/upload-cover", body
        return "/generate", body

    async def submit(self, params: Dict[str, Any]) -> str:
        """
        Start a generation task.

        Returns:
            Remote task id

        Raises:
            SubmissionError: request rejected or provider unreachable
        """
        if not self.is_configured:
            raise SubmissionError("KIE_API_KEY is not configured", retryable=False)

        path, body = self.build_request_body(params)
        logger.info(f"[KIE] Submitting {path} (style={body['style'][:60]!r}, title={body['title']!r})")

        try:
            async with self._client_factory() as client:
                response = await client.post(path, json=body)
        except httpx.HTTPError as e:
            raise SubmissionError(f"KIE.ai unreachable: {e}", retryable=True) from e

        if response.status_code >= 400:
            raise SubmissionError(
                f"KIE.ai API error: {response.status_code} {response.text[:300]}",
                retryable=response.status_code >= 500,
            )

        result = response.json()
        task_id = ((result or {}).get("data") or {}).get("taskId")
        if result.get("code", 200) != 200 or not task_id:
            raise SubmissionError(f"Invalid KIE.ai response: {result}", retryable=False)

        logger.info(f"[KIE] Generation started, task {task_id}")
        return task_id

    @with_retry(max_retries=2, retry_delay=0.5)
    async def get_status(self, task_id: str) -> RemoteStatus:
        """
        Read a task's current status.

        Raises:
            StatusCheckError: provider unreachable or returned an error
        """
        try:
            async with self._client_factory() as client:
                response = await client.get("/generate/record-info", params={"taskId": task_id})
        except httpx.HTTPError as e:
            raise StatusCheckError(f"KIE.ai status check failed for {task_id}: {e}", retryable=True) from e

        if response.status_code >= 400:
            raise StatusCheckError(
                f"KIE.ai status check error: {response.status_code} {response.text[:300]}",
                retryable=response.status_code >= 500 or response.status_code == 429,
            )

        result = response.json() or {}
        if result.get("code", 200) != 200:
            raise StatusCheckError(f"KIE.ai status check rejected: {result.get('msg')}", retryable=False)

        data = result.get("data") or {}
        outcome = map_status(data.get("status", ""))
        tracks = ((data.get("response") or {}).get("sunoData")) or []

        logger.debug(f"[KIE] Task {task_id}: {data.get('status')} -> {outcome.value} ({len(tracks)} tracks)")

        if outcome == RemoteOutcome.FAILURE:
            return RemoteStatus(outcome=outcome, error=data.get("errorMessage") or data.get("status"))
        if outcome == RemoteOutcome.SUCCESS:
            return RemoteStatus(outcome=outcome, results=parse_tracks(tracks))
        return RemoteStatus(outcome=outcome)
