"""
Error Handling for the Signal Detection Engine
==============================================

Provides the exception hierarchy and graceful degradation helpers used by
the detection engine, the materializer and the live monitoring channel.

Features:
- Custom exception hierarchy for clinical data errors
- Fallback execution with explicit fallback indication
"""

import logging
from typing import Dict, Any, Optional, Callable, Awaitable, TypeVar, Generic
from dataclasses import dataclass
from datetime import datetime

logger = logging.getLogger(__name__)

T = TypeVar('T')


# =============================================================================
# Custom Exception Hierarchy
# =============================================================================

class ClinicalDataError(Exception):
    """Base exception for all clinical data errors"""

    def __init__(
        self,
        message: str,
        error_code: str = "CDM000",
        details: Dict = None,
        recoverable: bool = True
    ):
        super().__init__(message)
        self.error_code = error_code
        self.details = details or {}
        self.recoverable = recoverable
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict:
        return {
            'error_type': self.__class__.__name__,
            'error_code': self.error_code,
            'message': str(self),
            'details': self.details,
            'recoverable': self.recoverable,
            'timestamp': self.timestamp.isoformat()
        }


class DataValidationError(ClinicalDataError):
    """Malformed request payloads or domain records"""

    def __init__(self, message: str, field: str = None, value: Any = None, details: Dict = None):
        super().__init__(
            message,
            error_code="CDM200",
            details={'field': field, 'invalid_value': str(value), **(details or {})},
            recoverable=True
        )


class TrialNotFoundError(ClinicalDataError):
    """Requested trial does not exist"""

    def __init__(self, trial_id: Any, details: Dict = None):
        super().__init__(
            f"Trial with ID {trial_id} not found",
            error_code="CDM210",
            details={'trial_id': trial_id, **(details or {})},
            recoverable=True
        )
        self.trial_id = trial_id


class LLMServiceError(ClinicalDataError):
    """Transport or parse failures from the language-model detector"""

    def __init__(self, message: str, provider: str = None, details: Dict = None):
        super().__init__(
            message,
            error_code="CDM500",
            details={'provider': provider, **(details or {})},
            recoverable=True
        )


class PersistenceError(ClinicalDataError):
    """Repository write failures"""

    def __init__(self, message: str, entity: str = None, details: Dict = None):
        super().__init__(
            message,
            error_code="CDM700",
            details={'entity': entity, **(details or {})},
            recoverable=True
        )


class MonitoringError(ClinicalDataError):
    """Live monitoring session command failures"""

    def __init__(self, message: str, command: str = None, details: Dict = None):
        super().__init__(
            message,
            error_code="CDM800",
            details={'command': command, **(details or {})},
            recoverable=True
        )


# =============================================================================
# Graceful Degradation
# =============================================================================

@dataclass
class FallbackResult(Generic[T]):
    """Result with fallback indication"""
    value: T
    is_fallback: bool
    original_error: Optional[Exception] = None
    fallback_source: str = ""


async def run_with_fallback(
    primary: Callable[[], Awaitable[T]],
    fallback: Callable[[], T],
    label: str = "operation"
) -> FallbackResult[T]:
    """
    Await ``primary``; on any failure log it and return ``fallback()`` instead.

    The fallback is a plain callable so that a failing primary never leaves
    the caller without a result. Errors raised by the fallback propagate.
    """
    try:
        value = await primary()
        return FallbackResult(value=value, is_fallback=False)
    except Exception as e:
        logger.warning(f"{label} failed, using fallback: {e}")
        return FallbackResult(
            value=fallback(),
            is_fallback=True,
            original_error=e,
            fallback_source=label
        )
