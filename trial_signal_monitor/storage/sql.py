"""
SQL Trial Repository
====================
SQLAlchemy ORM adapter for the trial repository port.

Tables:
- trials, sites, domain_sources (reference data)
- signal_detections, tasks (detection output)
- domain_records (raw per-source records read by the live monitor)

Blocking session work runs in the default executor so the event loop is never
held by database I/O.
"""

import asyncio
import dataclasses
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from trial_signal_monitor.core.error_handling import PersistenceError
from trial_signal_monitor.models.data_models import (
    DomainSource,
    SignalDetection,
    Site,
    Task,
    TaskStatus,
    Trial,
)
from trial_signal_monitor.storage.base import TrialRepository

logger = logging.getLogger(__name__)

T = TypeVar('T')


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class TrialRow(Base):
    __tablename__ = "trials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    protocol_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    phase: Mapped[str] = mapped_column(String(20), default="")
    status: Mapped[str] = mapped_column(String(30), default="active")
    therapeutic_area: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    indication: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)


class SiteRow(Base):
    __tablename__ = "sites"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    site_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), default="")
    trial_id: Mapped[Optional[int]] = mapped_column(ForeignKey("trials.id"), nullable=True)


class DomainSourceRow(Base):
    __tablename__ = "domain_sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trial_id: Mapped[int] = mapped_column(ForeignKey("trials.id"), nullable=False, index=True)
    domain: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)


class SignalDetectionRow(Base):
    __tablename__ = "signal_detections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    detection_id: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    signal_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    detection_type: Mapped[str] = mapped_column(String(30), nullable=False)
    trial_id: Mapped[int] = mapped_column(ForeignKey("trials.id"), nullable=False, index=True)
    site_id: Mapped[Optional[int]] = mapped_column(ForeignKey("sites.id"), nullable=True)
    data_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    observation: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    detection_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notified_persons: Mapped[list] = mapped_column(JSON, default=list)
    assigned_to: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    recommendation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class TaskRow(Base):
    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    priority: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    trial_id: Mapped[int] = mapped_column(ForeignKey("trials.id"), nullable=False, index=True)
    site_id: Mapped[Optional[int]] = mapped_column(ForeignKey("sites.id"), nullable=True)
    detection_id: Mapped[Optional[int]] = mapped_column(ForeignKey("signal_detections.id"), nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    assigned_to: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    domain: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    record_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    source: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    source_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    source_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    data_context: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class DomainRecordRow(Base):
    __tablename__ = "domain_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trial_id: Mapped[int] = mapped_column(ForeignKey("trials.id"), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)


def _to_entity(row, entity_cls):
    return entity_cls(**{f.name: getattr(row, f.name) for f in dataclasses.fields(entity_cls)})


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class SQLTrialRepository(TrialRepository):
    """
    Repository backed by any SQLAlchemy-supported database.

    Args:
        database_url: SQLAlchemy URL, e.g. ``sqlite:///./trial_signals.db``
        echo: Log emitted SQL
    """

    def __init__(self, database_url: str, echo: bool = False):
        engine_kwargs: Dict[str, Any] = {'echo': echo}
        if database_url.startswith("sqlite"):
            engine_kwargs['connect_args'] = {'check_same_thread': False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs['poolclass'] = StaticPool

        self._engine = create_engine(database_url, **engine_kwargs)
        self._session_factory = sessionmaker(bind=self._engine, autocommit=False, autoflush=False)
        Base.metadata.create_all(self._engine)
        logger.info(f"SQL repository ready: {self._engine.url.render_as_string(hide_password=True)}")

    async def _run(self, work: Callable[[Session], T], entity: str) -> T:
        def _in_session() -> T:
            with self._session_factory() as session:
                try:
                    result = work(session)
                    session.commit()
                    return result
                except (SQLAlchemyError, TypeError) as e:
                    session.rollback()
                    raise PersistenceError(f"Database error on {entity}: {e}", entity=entity) from e

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _in_session)

    def _insert(self, row_cls, entity_cls, fields: Dict[str, Any], entity: str):
        def work(session: Session):
            row = row_cls(**{key: _plain(value) for key, value in fields.items()})
            session.add(row)
            session.flush()
            return _to_entity(row, entity_cls)
        return self._run(work, entity)

    # Trials and sites

    async def get_trial(self, trial_id: int) -> Optional[Trial]:
        def work(session: Session):
            row = session.get(TrialRow, trial_id)
            return _to_entity(row, Trial) if row else None
        return await self._run(work, 'trial')

    async def create_trial(self, **fields: Any) -> Trial:
        return await self._insert(TrialRow, Trial, fields, 'trial')

    async def get_site_by_site_id(self, site_id: str) -> Optional[Site]:
        def work(session: Session):
            row = session.scalars(select(SiteRow).where(SiteRow.site_id == site_id)).first()
            return _to_entity(row, Site) if row else None
        return await self._run(work, 'site')

    async def create_site(self, **fields: Any) -> Site:
        return await self._insert(SiteRow, Site, fields, 'site')

    async def get_domain_sources_by_trial_id(self, trial_id: int) -> List[DomainSource]:
        def work(session: Session):
            rows = session.scalars(select(DomainSourceRow).where(DomainSourceRow.trial_id == trial_id)).all()
            return [_to_entity(row, DomainSource) for row in rows]
        return await self._run(work, 'domain_source')

    async def create_domain_source(self, **fields: Any) -> DomainSource:
        return await self._insert(DomainSourceRow, DomainSource, fields, 'domain_source')

    # Detection output

    async def create_signal_detection(self, **fields: Any) -> SignalDetection:
        if not fields.get('title'):
            fields['title'] = f"Signal Detection {fields.get('detection_id')}"
        if fields.get('detection_date') is None:
            fields['detection_date'] = datetime.now()
        fields.setdefault('notified_persons', [])
        return await self._insert(SignalDetectionRow, SignalDetection, fields, 'signal_detection')

    async def create_task(self, **fields: Any) -> Task:
        now = datetime.now()
        fields.setdefault('created_at', now)
        fields.setdefault('updated_at', now)
        fields.setdefault('data_context', {})
        if _plain(fields.get('status')) in (TaskStatus.COMPLETED.value, TaskStatus.CLOSED.value):
            fields.setdefault('completed_at', now)
        else:
            fields['completed_at'] = None
        return await self._insert(TaskRow, Task, fields, 'task')

    async def list_signal_detections(self, trial_id: Optional[int] = None) -> List[SignalDetection]:
        def work(session: Session):
            query = select(SignalDetectionRow).order_by(SignalDetectionRow.id)
            if trial_id is not None:
                query = query.where(SignalDetectionRow.trial_id == trial_id)
            return [_to_entity(row, SignalDetection) for row in session.scalars(query).all()]
        return await self._run(work, 'signal_detection')

    async def list_tasks(self, trial_id: Optional[int] = None) -> List[Task]:
        def work(session: Session):
            query = select(TaskRow).order_by(TaskRow.id)
            if trial_id is not None:
                query = query.where(TaskRow.trial_id == trial_id)
            return [_to_entity(row, Task) for row in session.scalars(query).all()]
        return await self._run(work, 'task')

    # Raw records

    async def add_domain_records(self, trial_id: int, source: str, records: List[Dict[str, Any]]) -> int:
        def work(session: Session):
            session.add_all([DomainRecordRow(trial_id=trial_id, source=source, payload=record) for record in records])
            return len(records)
        return await self._run(work, 'domain_record')

    async def get_domain_records(self, trial_id: int, source: str) -> List[Dict[str, Any]]:
        def work(session: Session):
            rows = session.scalars(
                select(DomainRecordRow)
                .where(DomainRecordRow.trial_id == trial_id, DomainRecordRow.source == source)
                .order_by(DomainRecordRow.id)
            ).all()
            return [dict(row.payload) for row in rows]
        return await self._run(work, 'domain_record')

    async def close(self) -> None:
        self._engine.dispose()
