from __future__ import annotations

import json
from typing import Any, Callable, Union

import httpx
import pytest
from fastapi.testclient import TestClient

import main
from heygen_client import HeyGenClient
from job_store import JobStore, init_db, make_engine
from reconciler import StatusReconciler
from settings import Settings

Reply = Union[httpx.Response, Exception, Callable[[httpx.Request], httpx.Response]]


class FakeHeyGen:
    """Routes requests to canned replies by endpoint and records what was sent."""

    def __init__(self) -> None:
        self.uploads: list[Reply] = []
        self.generate: Reply = httpx.Response(200, json={"error": None, "data": {"video_id": "v_123"}})
        self.status: Reply = httpx.Response(200, json={"code": 100, "data": {"status": "processing"}})
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "upload.heygen.com":
            reply = self.uploads.pop(0)
        elif request.url.path.endswith("/generate"):
            reply = self.generate
        elif request.url.path.endswith("/video_status.get"):
            reply = self.status
        else:
            return httpx.Response(404, json={"error": "no route"})
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(request)
        # fresh copy so a canned reply can be served more than once
        return httpx.Response(reply.status_code, headers=reply.headers, content=reply.content)

    def requests_to(self, suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]

    def generate_payload(self) -> dict[str, Any]:
        return json.loads(self.requests_to("/generate")[-1].content)

    def set_status(self, status: str, **extra: Any) -> None:
        self.status = httpx.Response(200, json={"code": 100, "data": {"status": status, **extra}})


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        heygen_api_key="test-key",
        heygen_callback_url="https://hooks.example.com/heygen/callback",
        max_upload_mb=1,
        page_size=10,
        provider_timeout_sec=5,
    )


@pytest.fixture
def store() -> JobStore:
    engine = make_engine("sqlite://")
    init_db(engine)
    return JobStore(engine)


@pytest.fixture
def reconciler(store: JobStore) -> StatusReconciler:
    return StatusReconciler(store)


@pytest.fixture
def fake_heygen() -> FakeHeyGen:
    return FakeHeyGen()


@pytest.fixture
def heygen(test_settings: Settings, fake_heygen: FakeHeyGen) -> HeyGenClient:
    return HeyGenClient(test_settings, transport=fake_heygen.transport)


@pytest.fixture
def client(test_settings, store, reconciler, heygen):
    main.app.dependency_overrides.update(
        {
            main.get_settings: lambda: test_settings,
            main.get_store: lambda: store,
            main.get_heygen: lambda: heygen,
            main.get_reconciler: lambda: reconciler,
        }
    )
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()
