# archive.py
from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .model import WorkflowRunSnapshot

logger = logging.getLogger(__name__)

DEFAULT_ARCHIVE_URL = "sqlite:///.relayci/runs.db"


class Base(DeclarativeBase):
    pass


class ArchivedRun(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    snapshot_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False)


class RunArchive:
    """
    Keeps the final snapshot of finished runs.

    A WorkflowRun is discarded once terminal; this is where it goes if the
    caller wants to look at it later. Subscribe with
    `scheduler.subscribe_runs(archive.save)`.
    """

    def __init__(self, url: str = DEFAULT_ARCHIVE_URL):
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every thread sees its own empty db
            self.engine = sa.create_engine(
                url, connect_args={"check_same_thread": False}, poolclass=StaticPool
            )
        else:
            if url.startswith("sqlite:///"):
                Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
            self.engine = sa.create_engine(url)
        self._session = sessionmaker(self.engine, class_=Session, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    def save(self, snapshot: WorkflowRunSnapshot) -> None:
        data = snapshot.to_dict()
        with self._session() as s, s.begin():
            row = s.get(ArchivedRun, snapshot.id)
            if row is None:
                row = ArchivedRun(id=snapshot.id)
                s.add(row)
            row.workflow = snapshot.workflow
            row.status = snapshot.status
            row.created_at = snapshot.created_at
            row.finished_at = snapshot.finished_at
            row.snapshot_json = data
        logger.info("archived run %s (%s)", snapshot.id, snapshot.status)

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._session() as s:
            row = s.get(ArchivedRun, run_id)
            return dict(row.snapshot_json) if row is not None else None

    def recent(self, workflow: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        q = sa.select(ArchivedRun).order_by(ArchivedRun.created_at.desc()).limit(limit)
        if workflow is not None:
            q = q.where(ArchivedRun.workflow == workflow)
        with self._session() as s:
            return [
                {
                    "id": row.id,
                    "workflow": row.workflow,
                    "status": row.status,
                    "created_at": row.created_at.isoformat(),
                    "finished_at": row.finished_at.isoformat() if row.finished_at else None,
                }
                for row in s.scalars(q)
            ]
