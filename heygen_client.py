# heygen_client.py
import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import httpx

from settings import Settings

logger = logging.getLogger(__name__)

# The upload endpoint has answered with different key names across API versions;
# keys are tried in order and the first non-empty value wins.
IMAGE_HANDLE_KEYS = ("image_key", "asset_id")
AUDIO_HANDLE_KEYS = ("asset_id", "id")

PORTRAIT = "portrait"
LANDSCAPE = "landscape"
DIMENSIONS = {
    PORTRAIT: {"width": 1080, "height": 1920},
    LANDSCAPE: {"width": 1920, "height": 1080},
}


class HeyGenError(Exception):
    """Provider call failed or answered with an unexpected shape."""

    def __init__(self, message: str, details: Any = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.details = details
        self.status_code = status_code


class UploadFailed(HeyGenError):
    pass


class SubmissionFailed(HeyGenError):
    pass


class ProviderTimeout(HeyGenError):
    pass


class VideoNotFound(HeyGenError):
    pass


@dataclass
class VideoStatus:
    status: str
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error: Optional[str] = None


def first_present(payload: Any, keys: Iterable[str]) -> Optional[str]:
    """Return the first non-empty string found under `keys` in `payload`."""
    if not isinstance(payload, dict):
        return None
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def normalize_orientation(value: Optional[str]) -> str:
    candidate = (value or "").strip().lower()
    return candidate if candidate in DIMENSIONS else PORTRAIT


def dimension_for(orientation: Optional[str]) -> dict:
    return dict(DIMENSIONS[normalize_orientation(orientation)])


def _error_message(raw: Any) -> Optional[str]:
    if not raw:
        return None
    if isinstance(raw, dict):
        return str(raw.get("message") or raw.get("detail") or raw.get("code") or raw)
    return str(raw)


def _keys(body: Any) -> Any:
    return list(body) if isinstance(body, dict) else type(body).__name__


def _body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


class HeyGenClient:
    """Thin async wrapper over the HeyGen asset, generation and status endpoints."""

    def __init__(self, config: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._settings = config
        self._transport = transport

    def _headers(self, content_type: Optional[str] = None) -> dict:
        headers = {
            "X-API-KEY": self._settings.heygen_api_key,
            "Accept": "application/json",
        }
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self._settings.provider_timeout_sec),
            transport=self._transport,
        )

    async def _send(self, method: str, url: str, error_cls: type, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"HeyGen request timed out: {url}") from exc
        except httpx.HTTPError as exc:
            raise error_cls(f"HeyGen request failed: {exc}") from exc

    async def upload_asset(self, data: bytes, content_type: str, keys: Iterable[str]) -> str:
        """
        POST raw bytes to the asset endpoint and return the provider's handle.
        Raises UploadFailed when the call fails or no known handle key is present.
        """
        logger.info("Uploading %d bytes (%s) to %s", len(data), content_type, self._settings.heygen_upload_url)
        r = await self._send(
            "POST",
            self._settings.heygen_upload_url,
            UploadFailed,
            content=data,
            headers=self._headers(content_type),
        )
        payload = _body(r)
        logger.info("HeyGen upload response %s keys: %s", r.status_code, _keys(payload))
        if r.status_code >= 300:
            raise UploadFailed(f"upload failed: {r.status_code}", details=payload, status_code=r.status_code)
        handle = first_present(payload.get("data") if isinstance(payload, dict) else None, keys)
        if not handle:
            raise UploadFailed("upload response carried no asset handle", details=payload, status_code=r.status_code)
        return handle

    async def upload_image(self, data: bytes, content_type: str) -> str:
        return await self.upload_asset(data, content_type, IMAGE_HANDLE_KEYS)

    async def upload_audio(self, data: bytes, content_type: str) -> str:
        return await self.upload_asset(data, content_type, AUDIO_HANDLE_KEYS)

    def build_generation_payload(self, image_key: str, audio_asset_id: str, orientation: Optional[str]) -> dict:
        payload = {
            "image_key": image_key,
            "video_title": f"Video_{int(time.time() * 1000)}",
            "audio_asset_id": audio_asset_id,
            "dimension": dimension_for(orientation),
            "fit": "cover",
        }
        if self._settings.heygen_callback_url:
            payload["callback_url"] = self._settings.heygen_callback_url
        return payload

    async def create_video(self, image_key: str, audio_asset_id: str, orientation: Optional[str] = None) -> str:
        """Request generation and return the provider-assigned video id."""
        if not image_key or not audio_asset_id:
            raise SubmissionFailed("both an image handle and an audio handle are required")
        payload = self.build_generation_payload(image_key, audio_asset_id, orientation)
        logger.info("Creating video with image_key=%s audio_asset_id=%s dimension=%s",
                    image_key, audio_asset_id, payload["dimension"])
        r = await self._send(
            "POST",
            self._settings.heygen_generate_url,
            SubmissionFailed,
            json=payload,
            headers=self._headers("application/json"),
        )
        body = _body(r)
        logger.info("HeyGen generate response %s keys: %s", r.status_code, _keys(body))
        if r.status_code >= 300:
            raise SubmissionFailed(f"generate failed: {r.status_code}", details=body, status_code=r.status_code)
        video_id = first_present(body.get("data") if isinstance(body, dict) else None, ("video_id",))
        if not video_id:
            raise SubmissionFailed("generate response carried no video_id", details=body, status_code=r.status_code)
        return video_id

    async def get_video_status(self, video_id: str) -> VideoStatus:
        r = await self._send(
            "GET",
            self._settings.heygen_status_url,
            HeyGenError,
            params={"video_id": video_id},
            headers=self._headers(),
        )
        body = _body(r)
        logger.info("HeyGen status response %s keys: %s", r.status_code, _keys(body))
        if r.status_code == 404:
            raise VideoNotFound(f"video {video_id} not found", details=body, status_code=404)
        if r.status_code >= 300:
            raise HeyGenError(f"status failed: {r.status_code}", details=body, status_code=r.status_code)
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise HeyGenError("invalid status response from HeyGen", details=body, status_code=r.status_code)
        logger.info("HeyGen status for %s: %s", video_id, data.get("status"))
        return VideoStatus(
            status=str(data.get("status") or ""),
            video_url=data.get("video_url") or None,
            thumbnail_url=data.get("thumbnail_url") or None,
            error=_error_message(data.get("error")),
        )
