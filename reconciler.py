# reconciler.py
# ------------------------------------------------------------------------------------
#  Status reconciliation for video jobs. Two paths feed one state machine:
#    * pull: GET the provider's status endpoint for a known video id
#    * push: provider webhook (avatar_video.success | avatar_video.fail)
#  Transitions: processing -> completed | failed. Terminal rows are never touched.
# ------------------------------------------------------------------------------------

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from heygen_client import HeyGenClient, VideoNotFound
from job_store import JobStatus, JobStore, UpdateOutcome, VideoJob

logger = logging.getLogger(__name__)

PROVIDER_STATUS_MAP = {
    "waiting": JobStatus.PROCESSING,
    "pending": JobStatus.PROCESSING,
    "processing": JobStatus.PROCESSING,
    "completed": JobStatus.COMPLETED,
    "failed": JobStatus.FAILED,
}

WEBHOOK_EVENTS = {
    "avatar_video.success": JobStatus.COMPLETED,
    "avatar_video.fail": JobStatus.FAILED,
}

DEFAULT_ERROR_MESSAGE = "Unknown error"

Listener = Callable[[VideoJob], None]


def map_provider_status(raw: Optional[str]) -> JobStatus:
    status = PROVIDER_STATUS_MAP.get((raw or "").strip().lower())
    if status is None:
        # Unknown values stay in flight; new provider states need a mapping entry.
        logger.warning("Unrecognized provider status %r, treating as processing", raw)
        return JobStatus.PROCESSING
    return status


class WebhookEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    video_id: Optional[str] = None
    url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    msg: Optional[str] = None


class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    event_type: str
    event_data: WebhookEventData = Field(default_factory=WebhookEventData)


@dataclass
class PollResult:
    status: str
    url: Optional[str] = None


class StatusReconciler:
    def __init__(self, store: JobStore, listeners: Optional[Iterable[Listener]] = None):
        self._store = store
        self._listeners: List[Listener] = list(listeners or [])

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def reconcile(
        self,
        external_id: str,
        status: JobStatus,
        result_url: Optional[str] = None,
        thumbnail_url: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> UpdateOutcome:
        status = JobStatus(status)
        if status is JobStatus.COMPLETED and not result_url:
            logger.info("Job %s reported completed without a URL, keeping it processing", external_id)
            status = JobStatus.PROCESSING
        if status is JobStatus.FAILED and not error_message:
            error_message = DEFAULT_ERROR_MESSAGE

        fields = {"thumbnail_url": thumbnail_url}
        if status is JobStatus.COMPLETED:
            fields["result_url"] = result_url
        elif status is JobStatus.FAILED:
            fields["error_message"] = error_message

        outcome = self._store.apply_update(external_id, status.value, **fields)
        if outcome is UpdateOutcome.MISSING:
            logger.info("Dropping %s update for unknown job %s", status.value, external_id)
        elif outcome is UpdateOutcome.TERMINAL:
            logger.info("Ignoring %s update for finished job %s", status.value, external_id)
        elif outcome is UpdateOutcome.UNCHANGED:
            logger.debug("Job %s already %s, nothing to apply", external_id, status.value)
        else:
            logger.info("Job %s -> %s", external_id, status.value)
            self._notify(external_id)
        return outcome

    def _notify(self, external_id: str) -> None:
        if not self._listeners:
            return
        job = self._store.find_by_external_id(external_id)
        if job is None:
            return
        for listener in self._listeners:
            try:
                listener(job)
            except Exception:
                logger.exception("Reconcile listener failed for job %s", external_id)

    async def poll(self, client: HeyGenClient, external_id: str) -> PollResult:
        """
        Pull path: ask the provider, reconcile, then report what the store holds.
        A provider 404 counts as still processing.
        """
        try:
            remote = await client.get_video_status(external_id)
        except VideoNotFound:
            logger.info("Provider does not know video %s yet", external_id)
            mapped, remote = JobStatus.PROCESSING, None
        else:
            mapped = map_provider_status(remote.status)
            self.reconcile(
                external_id,
                mapped,
                result_url=remote.video_url,
                thumbnail_url=remote.thumbnail_url,
                error_message=remote.error,
            )

        job = self._store.find_by_external_id(external_id)
        if job is not None:
            return PollResult(status=job.status, url=job.result_url)
        return PollResult(status=mapped.value, url=remote.video_url if remote else None)

    def handle_webhook(self, payload: Any) -> Optional[UpdateOutcome]:
        """Push path. Returns None when the event is not one we act on."""
        event = WebhookEvent.model_validate(payload)
        status = WEBHOOK_EVENTS.get(event.event_type)
        data = event.event_data
        if status is None:
            logger.info("Ignoring webhook event %s", event.event_type)
            return None
        if not data.video_id:
            logger.warning("Webhook %s carried no video_id", event.event_type)
            return None
        return self.reconcile(
            data.video_id,
            status,
            result_url=data.url,
            thumbnail_url=data.thumbnail_url,
            error_message=data.msg,
        )
