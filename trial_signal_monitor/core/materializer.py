"""
Signal and Task Materializer
============================

Turns Findings into persisted SignalDetection records and the Task linked to
each one. Every Finding is materialized independently: a failure on one is
logged and the rest of the batch still goes through.

Two paths share this module:
- ``materialize``: per-source rule findings and detector findings
- ``materialize_data_quality``: cross-source consistency findings
"""

import itertools
import logging
import re
import threading
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from trial_signal_monitor.core.cross_source import domain_from_inconsistency, source_from_inconsistency
from trial_signal_monitor.core.error_handling import DataValidationError
from trial_signal_monitor.models.data_models import (
    DataSourceType,
    DetectionSource,
    DetectionType,
    Finding,
    Priority,
    SignalDetection,
    SignalStatus,
    TaskStatus,
    Trial,
    normalize_detection_source,
)
from trial_signal_monitor.storage.base import TrialRepository

logger = logging.getLogger(__name__)


# =============================================================================
# Due dates
# =============================================================================

RULE_BASED_DUE_DAYS: Dict[Priority, int] = {
    Priority.CRITICAL: 3,
    Priority.HIGH: 7,
    Priority.MEDIUM: 14,
    Priority.LOW: 30,
}

AI_DUE_DAYS: Dict[Priority, int] = {
    Priority.CRITICAL: 2,
    Priority.HIGH: 4,
    Priority.MEDIUM: 7,
    Priority.LOW: 14,
}

MONITORING_DUE_DAYS: Dict[Priority, int] = {
    Priority.CRITICAL: 1,
    Priority.HIGH: 3,
    Priority.MEDIUM: 7,
    Priority.LOW: 14,
}

DEFAULT_DUE_DAYS = 7


def calculate_due_date(
    priority,
    table: Dict[Priority, int] = RULE_BASED_DUE_DAYS,
    now: Optional[datetime] = None
) -> datetime:
    """``now`` plus the table's day offset for ``priority`` (7 days if unknown)"""
    now = now or datetime.now()
    try:
        days = table.get(Priority.parse(priority), DEFAULT_DUE_DAYS)
    except DataValidationError:
        days = DEFAULT_DUE_DAYS
    return now + timedelta(days=days)


# =============================================================================
# Identifiers
# =============================================================================

DETECTION_ID_PREFIXES: Dict[str, str] = {
    DetectionSource.SCREEN_FAILURE.value: 'SF',
    DetectionSource.LAB_RESULTS.value: 'LAB',
    DetectionSource.ADVERSE_EVENTS.value: 'AE',
    DetectionSource.ENROLLMENT.value: 'ENR',
    DetectionSource.PROTOCOL_DEVIATIONS.value: 'PD',
    DetectionSource.DATA_QUALITY.value: 'DQ',
    DetectionSource.SITE_METRICS.value: 'SM',
}
DEFAULT_DETECTION_PREFIX = 'SIG'

_id_lock = threading.Lock()
_last_millis = 0
_task_sequence = itertools.count(1)
_monitoring_task_sequence = itertools.count(1)


def _unique_millis() -> int:
    """Epoch milliseconds, bumped so that no two calls return the same value"""
    global _last_millis
    with _id_lock:
        millis = int(time.time() * 1000)
        if millis <= _last_millis:
            millis = _last_millis + 1
        _last_millis = millis
        return millis


def generate_detection_id(source: str) -> str:
    prefix = DETECTION_ID_PREFIXES.get(normalize_detection_source(source), DEFAULT_DETECTION_PREFIX)
    return f"{prefix}_{_unique_millis()}"


def protocol_suffix(protocol_id: str) -> str:
    return re.sub(r'^PRO0*', '', protocol_id or '')


def generate_task_id(prefix: str, protocol_id: str) -> str:
    """``{prefix}_{protocolSuffix}_{NNN}`` with a process-wide counter"""
    with _id_lock:
        sequence = next(_task_sequence)
    return f"{prefix}_{protocol_suffix(protocol_id)}_{sequence:03d}"


def generate_monitoring_task_id() -> str:
    with _id_lock:
        sequence = next(_monitoring_task_sequence)
    return f"DQ_TASK_{sequence:06d}"


# =============================================================================
# Attribution tables
# =============================================================================

SIGNAL_TYPES: Dict[str, str] = {
    DetectionSource.SCREEN_FAILURE.value: 'Enrollment Risk',
    DetectionSource.LAB_RESULTS.value: 'LAB Testing Risk',
    DetectionSource.ADVERSE_EVENTS.value: 'AE Risk',
    DetectionSource.PROTOCOL_DEVIATIONS.value: 'PD Risk',
    DetectionSource.ENROLLMENT.value: 'Enrollment Risk',
    DetectionSource.DATA_QUALITY.value: 'Site Risk',
    DetectionSource.SITE_METRICS.value: 'Site Risk',
}
DEFAULT_SIGNAL_TYPE = 'Site Risk'

NOTIFIED_ROLES: Dict[str, List[str]] = {
    DetectionSource.SCREEN_FAILURE.value: ["Trial Manager", "Enrollment Coordinator"],
    DetectionSource.LAB_RESULTS.value: ["Lab Manager", "Data Manager", "CRA"],
    DetectionSource.ADVERSE_EVENTS.value: ["Safety Officer", "Medical Monitor"],
    DetectionSource.PROTOCOL_DEVIATIONS.value: ["CRA", "Protocol Manager"],
    DetectionSource.ENROLLMENT.value: ["Study Manager", "Enrollment Coordinator"],
    DetectionSource.DATA_QUALITY.value: ["Data Manager", "Trial Manager"],
}

DATA_QUALITY_SIGNAL_TYPE = 'Data Quality Risk'
DATA_MANAGEMENT_AGENT = 'Data Management Agent'
DATA_QUALITY_NOTIFIED = ["Data Manager", "Trial Manager", "Data Quality Lead"]

DEFAULT_TRIAL_SOURCES = [
    DataSourceType.EDC.value,
    DataSourceType.CTMS.value,
    DataSourceType.LAB_RESULTS.value,
    DataSourceType.ADVERSE_EVENTS.value,
]
FALLBACK_TRIAL_SOURCES = [
    DataSourceType.EDC.value,
    DataSourceType.CTMS.value,
    DataSourceType.LAB_RESULTS.value,
]


def determine_signal_type(source: str) -> str:
    return SIGNAL_TYPES.get(normalize_detection_source(source), DEFAULT_SIGNAL_TYPE)


def determine_notified_persons(source: str, priority) -> List[str]:
    roles = NOTIFIED_ROLES.get(normalize_detection_source(source))
    if roles is not None:
        return list(roles)
    if Priority.parse(priority).is_high_severity:
        return ["Trial Manager", "Medical Monitor"]
    return ["CRA", "Data Manager"]


def _created_by(detection_type: str) -> str:
    if detection_type == DetectionType.MANUAL.value:
        return "User"
    if detection_type == DetectionType.AI_POWERED.value:
        return "AI Assistant"
    return "Rule-based Detection"


# =============================================================================
# Materializer
# =============================================================================

class SignalTaskMaterializer:
    """
    Persists a Signal and its linked Task for each Finding.

    Only the repository is touched; notifications are left to callers.
    """

    def __init__(self, repository: TrialRepository):
        self.repository = repository

    async def _resolve_site(self, finding: Finding) -> Optional[int]:
        if not finding.site_id:
            return None
        try:
            site = await self.repository.get_site_by_site_id(finding.site_id)
        except Exception as e:
            logger.warning(f"Site lookup failed for '{finding.site_id}': {e}")
            return None
        if site is None:
            logger.warning(f"Site '{finding.site_id}' not found, signal left without site")
            return None
        return site.id

    async def materialize(
        self,
        findings: Sequence[Finding],
        trial: Trial,
        data_source: str,
        detection_type: str = DetectionType.RULE_BASED.value
    ) -> List[SignalDetection]:
        """Rule and detector path; returns the signals that were created"""
        detection_type = getattr(detection_type, 'value', detection_type)
        due_table = AI_DUE_DAYS if detection_type == DetectionType.AI_POWERED.value else RULE_BASED_DUE_DAYS
        created_by = _created_by(detection_type)
        signal_type = determine_signal_type(data_source)
        created: List[SignalDetection] = []

        for finding in findings:
            try:
                site_id = await self._resolve_site(finding)
                priority = finding.priority.value
                detection = await self.repository.create_signal_detection(
                    detection_id=generate_detection_id(data_source),
                    title=finding.title,
                    signal_type=signal_type,
                    detection_type=detection_type,
                    trial_id=trial.id,
                    site_id=site_id,
                    data_reference=data_source,
                    observation=finding.observation,
                    priority=priority,
                    status=SignalStatus.INITIATED.value,
                    detection_date=datetime.now(),
                    created_by=created_by,
                    notified_persons=determine_notified_persons(data_source, finding.priority),
                    recommendation=finding.recommendation
                )
                created.append(detection)

                await self.repository.create_task(
                    task_id=generate_task_id('TSK', trial.protocol_id),
                    title=f"Investigate: {finding.title}",
                    description=f"{finding.observation}\n\nRecommendation: {finding.recommendation}",
                    priority=priority,
                    status=TaskStatus.NOT_STARTED.value,
                    trial_id=trial.id,
                    site_id=site_id,
                    detection_id=detection.id,
                    created_by=created_by,
                    due_date=calculate_due_date(finding.priority, due_table),
                    domain=finding.domain or signal_type,
                    record_id=finding.record_id or f"SIG_{detection.detection_id}",
                    source=data_source,
                    data_context={
                        'detectionType': detection_type,
                        'signalTitle': finding.title,
                        'recommendation': finding.recommendation,
                        'priority': priority,
                        'sourceData': finding.source_data,
                    }
                )
            except Exception as e:
                logger.error(f"Error creating signal/task for '{finding.title}': {e}")

        logger.info(f"Materialized {len(created)}/{len(findings)} findings for trial {trial.protocol_id}")
        return created

    async def get_data_sources_for_trial(self, trial_id: int) -> List[str]:
        """Unique connected source names, or the default source list"""
        try:
            domain_sources = await self.repository.get_domain_sources_by_trial_id(trial_id)
        except Exception as e:
            logger.error(f"Error getting data sources for trial {trial_id}: {e}")
            return list(FALLBACK_TRIAL_SOURCES)

        sources = list(dict.fromkeys(ds.source for ds in domain_sources))
        return sources or list(DEFAULT_TRIAL_SOURCES)

    async def materialize_data_quality(self, findings: Sequence[Finding], trial: Trial) -> List[SignalDetection]:
        """Cross-source path; signals are attributed to the data management agent"""
        sources = await self.get_data_sources_for_trial(trial.id)
        created: List[SignalDetection] = []

        for finding in findings:
            try:
                site_id = await self._resolve_site(finding)
                priority = finding.priority.value
                detection = await self.repository.create_signal_detection(
                    detection_id=generate_detection_id('dataManagement'),
                    title=finding.title,
                    signal_type=DATA_QUALITY_SIGNAL_TYPE,
                    detection_type=DetectionType.RULE_BASED.value,
                    trial_id=trial.id,
                    site_id=site_id,
                    data_reference=DATA_MANAGEMENT_AGENT,
                    observation=finding.observation,
                    priority=priority,
                    status=SignalStatus.INITIATED.value,
                    detection_date=datetime.now(),
                    created_by=DATA_MANAGEMENT_AGENT,
                    notified_persons=list(DATA_QUALITY_NOTIFIED),
                    recommendation=finding.recommendation
                )
                created.append(detection)

                await self.repository.create_task(
                    task_id=generate_task_id('DM', trial.protocol_id),
                    title=f"Data Management: {finding.title}",
                    description=f"{finding.observation}\n\nRecommendation: {finding.recommendation}",
                    priority=priority,
                    status=TaskStatus.NOT_STARTED.value,
                    trial_id=trial.id,
                    site_id=site_id,
                    detection_id=detection.id,
                    created_by=DATA_MANAGEMENT_AGENT,
                    due_date=calculate_due_date(finding.priority, RULE_BASED_DUE_DAYS),
                    domain=domain_from_inconsistency(finding),
                    record_id=finding.record_id or f"DQ_{detection.detection_id}",
                    source=source_from_inconsistency(finding, sources),
                    data_context={
                        'detectionType': 'Data Quality Check',
                        'dataSources': sources,
                        'recommendation': finding.recommendation,
                        'priority': priority,
                        'inconsistencyTitle': finding.title,
                    }
                )
            except Exception as e:
                logger.error(f"Error creating data quality signal/task for '{finding.title}': {e}")

        logger.info(
            f"Materialized {len(created)}/{len(findings)} data quality findings for trial {trial.protocol_id}"
        )
        return created
