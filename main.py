# main.py
# ------------------------------------------------------------------------------------
#  FastAPI service for HeyGen avatar videos:
#  - POST /api/generate       -> upload image + audio, start an Avatar IV render
#  - GET  /api/status         -> pull-path status refresh (?videoId=)
#  - POST {WEBHOOK_PATH}      -> push-path callback from HeyGen (always 200 OK)
#  - GET  /api/videos         -> most recent jobs, newest first
#  - GET  /debug/config       -> runtime config, key masked (DEBUG only)
#  Persistence:
#    * SQLModel + SQLite (avatar_videos.db) by default, DATABASE_URL to override
# ------------------------------------------------------------------------------------

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from pydantic import ValidationError as PayloadValidationError

from generation import PayloadTooLarge, UploadedFile, ValidationError, generate_video
from heygen_client import HeyGenClient, HeyGenError, ProviderTimeout
from job_store import JobStore, StoreError, VideoJob, init_db, make_engine
from reconciler import StatusReconciler
from settings import Settings, settings

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

# ---------------- Wiring ----------------
engine = make_engine(settings.database_url)
store = JobStore(engine)
heygen = HeyGenClient(settings)


def _log_reconciled(job: VideoJob) -> None:
    logger.info("Video %s is now %s (url=%s)", job.external_id, job.status, job.result_url)


reconciler = StatusReconciler(store)
reconciler.add_listener(_log_reconciled)


def get_settings() -> Settings:
    return settings


def get_store() -> JobStore:
    return store


def get_heygen() -> HeyGenClient:
    return heygen


def get_reconciler() -> StatusReconciler:
    return reconciler


# ------------- FastAPI app --------------
app = FastAPI(title="Avatar Video API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def _on_startup():
    # Missing key or malformed URLs stop the process here.
    settings.check()
    init_db(engine)
    logger.info("HeyGen callback %s", settings.heygen_callback_url or "disabled (polling only)")


# ---------- Errors ----------
def _error(status_code: int, message: str, details=None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "details": details})


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError):
    return _error(413 if isinstance(exc, PayloadTooLarge) else 400, str(exc))


@app.exception_handler(HeyGenError)
async def _provider_error(request: Request, exc: HeyGenError):
    logger.error("HeyGen error: %s details=%s", exc, exc.details)
    return _error(504 if isinstance(exc, ProviderTimeout) else 502, str(exc), exc.details)


@app.exception_handler(StoreError)
async def _store_error(request: Request, exc: StoreError):
    logger.error("Store error: %s", exc)
    return _error(500, "job store failure", str(exc))


# ---------- Schemas ----------
class GenerateResponse(BaseModel):
    success: bool = True
    videoId: str


class StatusResponse(BaseModel):
    success: bool = True
    status: str
    url: Optional[str] = None


class VideoOut(BaseModel):
    external_id: str
    status: str
    result_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime


# ---------- Health ----------
@app.get("/health")
def health():
    return {"ok": True}


# ---------- Jobs ----------
async def _read_upload(field: str, upload: Optional[UploadFile], max_bytes: int) -> Optional[UploadedFile]:
    """Read one form part, refusing it before the bytes reach memory when over the cap."""
    if upload is None:
        return None
    if upload.size is not None and upload.size > max_bytes:
        raise PayloadTooLarge(f"{field} exceeds {max_bytes} bytes")
    # size can be unknown; never pull more than one byte past the cap
    data = await upload.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise PayloadTooLarge(f"{field} exceeds {max_bytes} bytes")
    return UploadedFile(
        data=data,
        content_type=upload.content_type or "application/octet-stream",
        filename=upload.filename or "",
    )


@app.post("/api/generate", response_model=GenerateResponse)
async def create_video(
    image: Optional[UploadFile] = File(None),
    audio: Optional[UploadFile] = File(None),
    aspectRatio: Optional[str] = Form(None),
    cfg: Settings = Depends(get_settings),
    client: HeyGenClient = Depends(get_heygen),
    job_store: JobStore = Depends(get_store),
):
    video_id = await generate_video(
        client,
        job_store,
        await _read_upload("image", image, cfg.max_upload_bytes),
        await _read_upload("audio", audio, cfg.max_upload_bytes),
        aspectRatio,
        max_bytes=cfg.max_upload_bytes,
    )
    return GenerateResponse(videoId=video_id)


@app.get("/api/status", response_model=StatusResponse)
async def check_status(
    videoId: Optional[str] = Query(None),
    client: HeyGenClient = Depends(get_heygen),
    status_reconciler: StatusReconciler = Depends(get_reconciler),
):
    if not videoId:
        return _error(400, "missing videoId")
    result = await status_reconciler.poll(client, videoId)
    return StatusResponse(status=result.status, url=result.url)


@app.get("/api/videos", response_model=List[VideoOut])
def list_videos(
    limit: Optional[int] = Query(None, ge=1),
    cfg: Settings = Depends(get_settings),
    job_store: JobStore = Depends(get_store),
):
    page = min(limit or cfg.page_size, cfg.page_size)
    return [VideoOut(**job.model_dump(exclude={"id"})) for job in job_store.list_recent(page)]


@app.get("/api/videos/{video_id}", response_model=VideoOut)
def get_video(video_id: str, job_store: JobStore = Depends(get_store)):
    job = job_store.find_by_external_id(video_id)
    if not job:
        raise HTTPException(status_code=404, detail="video not found")
    return VideoOut(**job.model_dump(exclude={"id"}))


# ---------- Webhook ----------
@app.post(settings.webhook_path)
async def heygen_callback(request: Request, status_reconciler: StatusReconciler = Depends(get_reconciler)):
    # HeyGen retries anything but a 200, so every branch acknowledges.
    try:
        body = await request.json()
    except ValueError:
        logger.warning("Webhook body is not JSON, ignoring")
        return PlainTextResponse("OK")

    logger.info("Received webhook: %s", body.get("event_type") if isinstance(body, dict) else body)
    try:
        status_reconciler.handle_webhook(body)
    except PayloadValidationError as exc:
        logger.warning("Malformed webhook payload: %s", exc)
    except StoreError:
        logger.exception("Could not apply webhook update")
    return PlainTextResponse("OK")


# ---------- Index ----------
@app.get("/")
def index():
    return {"service": "avatar-video-api", "webhook_path": settings.webhook_path}


# ---------- Debug (hide in prod) ----------
if settings.debug:
    @app.get("/debug/config")
    def debug_config():
        masked = "***" + settings.heygen_api_key[-4:] if settings.heygen_api_key else ""
        return {
            **settings.model_dump(exclude={"heygen_api_key"}),
            "heygen_api_key": masked,
        }
