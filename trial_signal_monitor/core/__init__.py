# Trial Signal Monitor - Core Processing
"""
Package initialization for core module

Only the exception hierarchy is re-exported here; the domain models import
it, so detection modules are imported from their own submodules.
"""

from .error_handling import (
    ClinicalDataError,
    DataValidationError,
    TrialNotFoundError,
    LLMServiceError,
    PersistenceError,
    MonitoringError,
    FallbackResult,
    run_with_fallback
)

__all__ = [
    'ClinicalDataError',
    'DataValidationError',
    'TrialNotFoundError',
    'LLMServiceError',
    'PersistenceError',
    'MonitoringError',
    'FallbackResult',
    'run_with_fallback'
]
