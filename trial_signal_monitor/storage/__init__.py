"""
Storage Package
Repository port and its in-memory and SQL adapters
"""

from trial_signal_monitor.storage.base import TrialRepository
from trial_signal_monitor.storage.memory import InMemoryTrialRepository


def create_repository(backend: str = "memory", database_url: str = None) -> TrialRepository:
    """Build the repository selected by configuration"""
    if backend == "memory":
        return InMemoryTrialRepository()
    if backend == "sql":
        from trial_signal_monitor.storage.sql import SQLTrialRepository
        return SQLTrialRepository(database_url)
    raise ValueError(f"Unknown storage backend: {backend}")


__all__ = ['TrialRepository', 'InMemoryTrialRepository', 'create_repository']
