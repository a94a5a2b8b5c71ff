# job_store.py
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Field, Session, col, create_engine, select

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


class UpdateOutcome(str, Enum):
    APPLIED = "applied"
    TERMINAL = "terminal"
    MISSING = "missing"
    UNCHANGED = "unchanged"


class StoreError(Exception):
    pass


class VideoJob(SQLModel, table=True):
    __tablename__ = "videos"

    id: Optional[int] = Field(default=None, primary_key=True)
    external_id: str = Field(index=True, unique=True)
    status: str = JobStatus.PROCESSING.value  # processing|completed|failed
    result_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def make_engine(url: str):
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url)


def init_db(engine) -> None:
    SQLModel.metadata.create_all(engine)


class JobStore:
    """One VideoJob row per provider video id."""

    def __init__(self, engine):
        self._engine = engine

    def insert(self, external_id: str) -> VideoJob:
        """Create the record in `processing`; an existing record is returned as-is."""
        try:
            with Session(self._engine) as session:
                existing = self._find(session, external_id)
                if existing:
                    return existing
                job = VideoJob(external_id=external_id)
                session.add(job)
                session.commit()
                session.refresh(job)
                return job
        except IntegrityError:
            logger.info("Concurrent insert for job %s, reusing existing row", external_id)
            found = self.find_by_external_id(external_id)
            if found:
                return found
            raise StoreError(f"could not insert job {external_id}")
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc

    def find_by_external_id(self, external_id: str) -> Optional[VideoJob]:
        try:
            with Session(self._engine) as session:
                return self._find(session, external_id)
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc

    def patch(self, external_id: str, **fields) -> Optional[VideoJob]:
        """Unconditional field patch; None values are omitted, not nulled out."""
        values = {k: v for k, v in fields.items() if v is not None}
        try:
            with Session(self._engine) as session:
                job = self._find(session, external_id)
                if not job:
                    return None
                for k, v in values.items():
                    setattr(job, k, v)
                session.add(job)
                session.commit()
                session.refresh(job)
                return job
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc

    def apply_update(self, external_id: str, status: str, **fields) -> UpdateOutcome:
        """
        Patch `status` plus any non-None fields, but only while the record is
        not terminal and something actually differs. The check and the write
        are a single UPDATE statement, so concurrent callers cannot overwrite a
        terminal record between them.
        """
        values = {k: v for k, v in fields.items() if v is not None}
        values["status"] = status
        changed = or_(*[col(getattr(VideoJob, k)).is_distinct_from(v) for k, v in values.items()])
        stmt = (
            update(VideoJob)
            .where(VideoJob.external_id == external_id)
            .where(col(VideoJob.status).not_in(TERMINAL_STATUSES))
            .where(changed)
            .values(**values)
        )
        try:
            with Session(self._engine) as session:
                result = session.connection().execute(stmt)
                session.commit()
                if result.rowcount:
                    return UpdateOutcome.APPLIED
                existing = self._find(session, external_id)
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc
        if existing is None:
            return UpdateOutcome.MISSING
        return UpdateOutcome.TERMINAL if existing.is_terminal else UpdateOutcome.UNCHANGED

    def list_recent(self, limit: int = 10) -> List[VideoJob]:
        stmt = (
            select(VideoJob)
            .order_by(col(VideoJob.created_at).desc(), col(VideoJob.id).desc())
            .limit(limit)
        )
        try:
            with Session(self._engine) as session:
                return list(session.exec(stmt).all())
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc

    @staticmethod
    def _find(session: Session, external_id: str) -> Optional[VideoJob]:
        return session.exec(select(VideoJob).where(VideoJob.external_id == external_id)).first()
