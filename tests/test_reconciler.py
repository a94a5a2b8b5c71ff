from __future__ import annotations

import asyncio

import httpx
import pytest
from pydantic import ValidationError

from job_store import JobStatus, UpdateOutcome
from reconciler import StatusReconciler, map_provider_status


def _run(coro):  # noqa: ANN001
    return asyncio.run(coro)


def _snapshot(store, external_id):
    job = store.find_by_external_id(external_id)
    return job.model_dump(exclude={"created_at"})


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("waiting", JobStatus.PROCESSING),
        ("pending", JobStatus.PROCESSING),
        ("processing", JobStatus.PROCESSING),
        ("completed", JobStatus.COMPLETED),
        ("failed", JobStatus.FAILED),
        ("queued", JobStatus.PROCESSING),
        (None, JobStatus.PROCESSING),
    ],
)
def test_map_provider_status(raw, expected):
    assert map_provider_status(raw) is expected


def test_unrecognized_provider_status_is_logged(caplog):
    with caplog.at_level("WARNING"):
        map_provider_status("queued")
    assert "queued" in caplog.text


def test_terminal_status_is_never_changed(store, reconciler):
    store.insert("v_1")
    reconciler.reconcile("v_1", JobStatus.FAILED, error_message="render error")

    for status in (JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED):
        outcome = reconciler.reconcile("v_1", status, result_url="https://x/v.mp4", error_message="other")
        assert outcome is UpdateOutcome.TERMINAL

    job = store.find_by_external_id("v_1")
    assert job.status == "failed"
    assert job.error_message == "render error"
    assert job.result_url is None


def test_reconcile_completed_is_idempotent(store, reconciler):
    store.insert("v_1")
    reconciler.reconcile("v_1", JobStatus.COMPLETED, result_url="https://x/v.mp4")
    once = _snapshot(store, "v_1")

    reconciler.reconcile("v_1", JobStatus.COMPLETED, result_url="https://x/v.mp4")

    assert _snapshot(store, "v_1") == once


@pytest.mark.parametrize("push_first", [True, False])
def test_terminal_update_wins_regardless_of_order(store, reconciler, push_first):
    store.insert("v_1")
    pull = lambda: reconciler.reconcile("v_1", JobStatus.PROCESSING)  # noqa: E731
    push = lambda: reconciler.reconcile("v_1", JobStatus.COMPLETED, result_url="https://x/v.mp4")  # noqa: E731

    for update in ((push, pull) if push_first else (pull, push)):
        update()

    job = store.find_by_external_id("v_1")
    assert job.status == "completed"
    assert job.result_url == "https://x/v.mp4"


def test_unknown_job_is_dropped(store, reconciler):
    outcome = reconciler.reconcile("ghost", JobStatus.COMPLETED, result_url="https://x/v.mp4")

    assert outcome is UpdateOutcome.MISSING
    assert store.find_by_external_id("ghost") is None


def test_completed_without_url_stays_processing(store, reconciler):
    store.insert("v_1")

    reconciler.reconcile("v_1", JobStatus.COMPLETED, thumbnail_url="https://x/t.jpg")

    job = store.find_by_external_id("v_1")
    assert job.status == "processing"
    assert job.thumbnail_url == "https://x/t.jpg"
    assert job.result_url is None


def test_fields_are_scoped_to_their_status(store, reconciler):
    store.insert("v_1")
    store.insert("v_2")

    reconciler.reconcile("v_1", JobStatus.PROCESSING, result_url="https://x/early.mp4", error_message="noise")
    reconciler.reconcile("v_2", JobStatus.FAILED, result_url="https://x/v.mp4")

    first = store.find_by_external_id("v_1")
    assert (first.status, first.result_url, first.error_message) == ("processing", None, None)
    second = store.find_by_external_id("v_2")
    assert (second.status, second.result_url, second.error_message) == ("failed", None, "Unknown error")


def test_listeners_see_applied_updates_only(store):
    seen = []
    reconciler = StatusReconciler(store, listeners=[lambda job: seen.append((job.external_id, job.status))])
    store.insert("v_1")

    reconciler.reconcile("v_1", JobStatus.COMPLETED, result_url="https://x/v.mp4")
    reconciler.reconcile("v_1", JobStatus.FAILED, error_message="late")
    reconciler.reconcile("ghost", JobStatus.FAILED)

    assert seen == [("v_1", "completed")]


def test_repeated_processing_update_is_a_no_op(store, reconciler):
    seen = []
    reconciler.add_listener(lambda job: seen.append((job.status, job.thumbnail_url)))
    store.insert("v_1")

    first = reconciler.reconcile("v_1", JobStatus.PROCESSING)
    second = reconciler.reconcile("v_1", JobStatus.PROCESSING)

    assert (first, second) == (UpdateOutcome.UNCHANGED, UpdateOutcome.UNCHANGED)
    assert seen == []

    assert reconciler.reconcile("v_1", JobStatus.PROCESSING, thumbnail_url="https://x/t.jpg") is UpdateOutcome.APPLIED
    assert reconciler.reconcile("v_1", JobStatus.PROCESSING, thumbnail_url="https://x/t.jpg") is UpdateOutcome.UNCHANGED
    assert seen == [("processing", "https://x/t.jpg")]


def test_failing_listener_does_not_break_reconcile(store):
    def boom(job):  # noqa: ANN001
        raise RuntimeError("listener down")

    reconciler = StatusReconciler(store, listeners=[boom])
    store.insert("v_1")

    assert reconciler.reconcile("v_1", JobStatus.FAILED, error_message="x") is UpdateOutcome.APPLIED
    assert store.find_by_external_id("v_1").status == "failed"


def test_webhook_success_and_fail(store, reconciler):
    store.insert("v_ok")
    store.insert("v_bad")

    reconciler.handle_webhook(
        {"event_type": "avatar_video.success",
         "event_data": {"video_id": "v_ok", "url": "https://x/v.mp4", "callback_id": None}}
    )
    reconciler.handle_webhook({"event_type": "avatar_video.fail", "event_data": {"video_id": "v_bad", "msg": "render error"}})

    ok = store.find_by_external_id("v_ok")
    assert (ok.status, ok.result_url) == ("completed", "https://x/v.mp4")
    bad = store.find_by_external_id("v_bad")
    assert (bad.status, bad.error_message) == ("failed", "render error")


def test_webhook_ignores_other_events(store, reconciler):
    store.insert("v_1")

    assert reconciler.handle_webhook({"event_type": "avatar_video_gif.success", "event_data": {"video_id": "v_1"}}) is None
    assert reconciler.handle_webhook({"event_type": "avatar_video.success", "event_data": {}}) is None
    assert store.find_by_external_id("v_1").status == "processing"


def test_webhook_rejects_malformed_payload(reconciler):
    with pytest.raises(ValidationError):
        reconciler.handle_webhook({"event_data": {"video_id": "v_1"}})


def test_poll_scenario(store, reconciler, heygen, fake_heygen):
    store.insert("v_123")
    fake_heygen.set_status("completed", video_url="https://x/v.mp4")

    result = _run(reconciler.poll(heygen, "v_123"))

    assert (result.status, result.url) == ("completed", "https://x/v.mp4")

    fake_heygen.set_status("processing")
    stale = _run(reconciler.poll(heygen, "v_123"))

    assert (stale.status, stale.url) == ("completed", "https://x/v.mp4")
    job = store.find_by_external_id("v_123")
    assert (job.status, job.result_url) == ("completed", "https://x/v.mp4")


def test_poll_sets_thumbnail_while_processing(store, reconciler, heygen, fake_heygen):
    store.insert("v_1")
    fake_heygen.set_status("processing", thumbnail_url="https://x/t.jpg")

    _run(reconciler.poll(heygen, "v_1"))

    assert store.find_by_external_id("v_1").thumbnail_url == "https://x/t.jpg"


def test_poll_treats_provider_404_as_processing(store, reconciler, heygen, fake_heygen):
    store.insert("v_1")
    fake_heygen.status = httpx.Response(404, json={"message": "not found"})

    result = _run(reconciler.poll(heygen, "v_1"))

    assert result.status == "processing"
    assert store.find_by_external_id("v_1").status == "processing"


def test_poll_unknown_job_reports_provider_status(store, reconciler, heygen, fake_heygen):
    fake_heygen.set_status("completed", video_url="https://x/v.mp4")

    result = _run(reconciler.poll(heygen, "elsewhere"))

    assert (result.status, result.url) == ("completed", "https://x/v.mp4")
    assert store.find_by_external_id("elsewhere") is None
