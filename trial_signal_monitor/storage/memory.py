"""
In-Memory Trial Repository
Arena-style storage keyed by integer ids, used by tests and the default app
"""

import asyncio
import copy
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

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

_FINISHED_STATUSES = (TaskStatus.COMPLETED.value, TaskStatus.CLOSED.value)


class InMemoryTrialRepository(TrialRepository):
    """Dict arenas with one incrementing counter per table"""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._trials: Dict[int, Trial] = {}
        self._sites: Dict[int, Site] = {}
        self._domain_sources: Dict[int, DomainSource] = {}
        self._signals: Dict[int, SignalDetection] = {}
        self._tasks: Dict[int, Task] = {}
        self._records: Dict[Tuple[int, str], List[Dict[str, Any]]] = defaultdict(list)

    def _next_id(self, table: str) -> int:
        self._counters[table] += 1
        return self._counters[table]

    def _build(self, entity_cls, table: str, fields: Dict[str, Any]):
        try:
            return entity_cls(id=self._next_id(table), **fields)
        except TypeError as e:
            raise PersistenceError(f"Cannot create {table} record: {e}", entity=table) from e

    # Trials and sites

    async def get_trial(self, trial_id: int) -> Optional[Trial]:
        return self._trials.get(trial_id)

    async def create_trial(self, **fields: Any) -> Trial:
        async with self._lock:
            trial = self._build(Trial, 'trial', fields)
            self._trials[trial.id] = trial
            return trial

    async def get_site_by_site_id(self, site_id: str) -> Optional[Site]:
        for site in self._sites.values():
            if site.site_id == site_id:
                return site
        return None

    async def create_site(self, **fields: Any) -> Site:
        async with self._lock:
            site = self._build(Site, 'site', fields)
            self._sites[site.id] = site
            return site

    async def get_domain_sources_by_trial_id(self, trial_id: int) -> List[DomainSource]:
        return [ds for ds in self._domain_sources.values() if ds.trial_id == trial_id]

    async def create_domain_source(self, **fields: Any) -> DomainSource:
        async with self._lock:
            domain_source = self._build(DomainSource, 'domain_source', fields)
            self._domain_sources[domain_source.id] = domain_source
            return domain_source

    # Detection output

    async def create_signal_detection(self, **fields: Any) -> SignalDetection:
        async with self._lock:
            detection_id = fields.get('detection_id')
            if any(s.detection_id == detection_id for s in self._signals.values()):
                raise PersistenceError(f"Duplicate detection id {detection_id}", entity='signal_detection')
            if not fields.get('title'):
                fields['title'] = f"Signal Detection {detection_id}"
            if fields.get('detection_date') is None:
                fields['detection_date'] = datetime.now()
            signal = self._build(SignalDetection, 'signal_detection', fields)
            self._signals[signal.id] = signal
            return signal

    async def create_task(self, **fields: Any) -> Task:
        async with self._lock:
            task_id = fields.get('task_id')
            if any(t.task_id == task_id for t in self._tasks.values()):
                raise PersistenceError(f"Duplicate task id {task_id}", entity='task')
            now = datetime.now()
            fields.setdefault('created_at', now)
            fields.setdefault('updated_at', now)
            if fields.get('status') in _FINISHED_STATUSES:
                fields.setdefault('completed_at', now)
            else:
                fields['completed_at'] = None
            task = self._build(Task, 'task', fields)
            self._tasks[task.id] = task
            return task

    async def list_signal_detections(self, trial_id: Optional[int] = None) -> List[SignalDetection]:
        return [s for s in self._signals.values() if trial_id is None or s.trial_id == trial_id]

    async def list_tasks(self, trial_id: Optional[int] = None) -> List[Task]:
        return [t for t in self._tasks.values() if trial_id is None or t.trial_id == trial_id]

    # Raw records

    async def add_domain_records(self, trial_id: int, source: str, records: List[Dict[str, Any]]) -> int:
        async with self._lock:
            self._records[(trial_id, source)].extend(copy.deepcopy(records))
            return len(records)

    async def get_domain_records(self, trial_id: int, source: str) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._records.get((trial_id, source), []))
