# generation.py
import logging
from dataclasses import dataclass
from typing import Optional

from heygen_client import HeyGenClient, normalize_orientation
from job_store import JobStore

logger = logging.getLogger(__name__)


class ValidationError(Exception):
    pass


class PayloadTooLarge(ValidationError):
    pass


@dataclass
class UploadedFile:
    data: bytes
    content_type: str
    filename: str = ""


def _check_file(field: str, upload: Optional[UploadedFile], max_bytes: int) -> UploadedFile:
    if upload is None or not upload.data:
        raise ValidationError(f"missing {field} file")
    if len(upload.data) > max_bytes:
        raise PayloadTooLarge(f"{field} exceeds {max_bytes} bytes")
    return upload


async def generate_video(
    client: HeyGenClient,
    store: JobStore,
    image: Optional[UploadedFile],
    audio: Optional[UploadedFile],
    orientation: Optional[str] = None,
    *,
    max_bytes: int,
) -> str:
    """
    Upload both assets, request the avatar video and record the job.
    The job row is written only after the provider has returned a video id.
    """
    image = _check_file("image", image, max_bytes)
    audio = _check_file("audio", audio, max_bytes)
    orientation = normalize_orientation(orientation)

    logger.info("Uploading image %s (%s)", image.filename, image.content_type)
    image_key = await client.upload_image(image.data, image.content_type)
    logger.info("Uploading audio %s (%s)", audio.filename, audio.content_type)
    audio_asset_id = await client.upload_audio(audio.data, audio.content_type)

    video_id = await client.create_video(image_key, audio_asset_id, orientation)
    store.insert(video_id)
    logger.info("Created %s job %s", orientation, video_id)
    return video_id
