"""
Trial Repository Interface
Persistence port consumed by the detection engine and the live monitor
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from trial_signal_monitor.models.data_models import DomainSource, SignalDetection, Site, Task, Trial


class TrialRepository(ABC):
    """
    Async get/create operations for trials, sites, signals and tasks.

    Implementations must serialize their own writes; callers share one
    repository across requests and monitoring sessions.
    """

    # Trials and sites

    @abstractmethod
    async def get_trial(self, trial_id: int) -> Optional[Trial]:
        ...

    @abstractmethod
    async def create_trial(self, **fields: Any) -> Trial:
        ...

    @abstractmethod
    async def get_site_by_site_id(self, site_id: str) -> Optional[Site]:
        ...

    @abstractmethod
    async def create_site(self, **fields: Any) -> Site:
        ...

    @abstractmethod
    async def get_domain_sources_by_trial_id(self, trial_id: int) -> List[DomainSource]:
        ...

    @abstractmethod
    async def create_domain_source(self, **fields: Any) -> DomainSource:
        ...

    # Detection output

    @abstractmethod
    async def create_signal_detection(self, **fields: Any) -> SignalDetection:
        """Assigns ``id``; ``detection_date`` defaults to now and ``title`` to
        ``Signal Detection {detection_id}``"""

    @abstractmethod
    async def create_task(self, **fields: Any) -> Task:
        """Assigns ``id`` and timestamps; ``completed_at`` is only set for
        tasks created already completed"""

    @abstractmethod
    async def list_signal_detections(self, trial_id: Optional[int] = None) -> List[SignalDetection]:
        ...

    @abstractmethod
    async def list_tasks(self, trial_id: Optional[int] = None) -> List[Task]:
        ...

    # Raw records feeding the live monitor

    @abstractmethod
    async def add_domain_records(self, trial_id: int, source: str, records: List[Dict[str, Any]]) -> int:
        ...

    @abstractmethod
    async def get_domain_records(self, trial_id: int, source: str) -> List[Dict[str, Any]]:
        ...

    async def close(self) -> None:
        """Release any held resources"""
        return None
