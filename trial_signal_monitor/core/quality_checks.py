"""
Incremental Data Quality Checks
Checkers run by the live monitor against the records of each connected source
"""

import logging
from collections import Counter
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from trial_signal_monitor.models.data_models import DataSourceType, Priority

logger = logging.getLogger(__name__)


@dataclass
class DataQualityIssue:
    """One issue reported by a checker"""
    type: str
    title: str
    description: str
    source: str
    severity: Priority
    recommendation: str

    def to_dict(self) -> Dict:
        result = asdict(self)
        result['severity'] = self.severity.value
        return result


class MonitoringOptions(BaseModel):
    """Which check categories a monitoring session runs"""
    model_config = ConfigDict(populate_by_name=True)

    check_consistency: bool = Field(default=True, alias="checkConsistency")
    check_completeness: bool = Field(default=True, alias="checkCompleteness")
    check_accuracy: bool = Field(default=True, alias="checkAccuracy")
    check_timeliness: bool = Field(default=True, alias="checkTimeliness")

    def to_dict(self) -> Dict[str, bool]:
        return self.model_dump(by_alias=True)


def check_data_consistency(data: Dict[str, List[Dict[str, Any]]], sources: Sequence[str]) -> List[DataQualityIssue]:
    """EDC vs CTMS visit dates, matched on subject"""
    issues = []
    edc, ctms = DataSourceType.EDC.value, DataSourceType.CTMS.value
    if edc not in sources or ctms not in sources:
        return issues

    ctms_records = data.get(ctms, [])
    for edc_record in data.get(edc, []):
        match = next((c for c in ctms_records if c.get('subjectId') == edc_record.get('subjectId')), None)
        if match is not None and edc_record.get('visitDate') != match.get('visitDate'):
            issues.append(DataQualityIssue(
                type='inconsistent_data',
                title='Visit date inconsistency',
                description=(
                    f"Visit date in EDC ({edc_record.get('visitDate')}) does not match "
                    f"CTMS ({match.get('visitDate')}) for subject {edc_record.get('subjectId')}"
                ),
                source='EDC/CTMS',
                severity=Priority.MEDIUM,
                recommendation='Review both data sources and reconcile the discrepancy'
            ))
    return issues


def check_data_completeness(records: List[Dict[str, Any]], source: str) -> List[DataQualityIssue]:
    """Missing ``value`` in EDC records"""
    if source != DataSourceType.EDC.value:
        return []

    missing = [record for record in records if record.get('value') is None]
    if not missing:
        return []
    return [DataQualityIssue(
        type='missing_data',
        title='Missing data in EDC',
        description=f"{len(missing)} records have missing values in the EDC system",
        source='EDC',
        severity=Priority.HIGH,
        recommendation='Review subjects with missing data and ensure values are collected'
    )]


def _parse_reference_range(reference_range: Any) -> Optional[tuple]:
    if not isinstance(reference_range, str) or '-' not in reference_range:
        return None
    low, _, high = reference_range.partition('-')
    try:
        return float(low), float(high)
    except ValueError:
        return None


def check_data_accuracy(records: List[Dict[str, Any]], source: str) -> List[DataQualityIssue]:
    """Lab values outside their ``min-max`` reference range"""
    if source != DataSourceType.LAB_RESULTS.value:
        return []

    out_of_range = 0
    for record in records:
        bounds = _parse_reference_range(record.get('referenceRange'))
        value = record.get('value')
        if bounds is None or value is None or isinstance(value, bool):
            continue
        try:
            value = float(value)
        except (TypeError, ValueError):
            continue
        if value < bounds[0] or value > bounds[1]:
            out_of_range += 1

    if not out_of_range:
        return []
    return [DataQualityIssue(
        type='out_of_range',
        title='Lab values out of range',
        description=f"{out_of_range} lab values are outside the normal reference range",
        source='Lab Results',
        severity=Priority.CRITICAL,
        recommendation='Review out-of-range lab values and consider clinical significance'
    )]


def check_data_timeliness(records: List[Dict[str, Any]], source: str) -> List[DataQualityIssue]:
    """Duplicate adverse events keyed by subject, event and report date"""
    if source != DataSourceType.ADVERSE_EVENTS.value:
        return []

    counts = Counter(
        f"{record.get('subjectId')}-{record.get('event')}-{record.get('reportDate')}" for record in records
    )
    duplicates = [key for key, count in counts.items() if count > 1]
    if not duplicates:
        return []
    return [DataQualityIssue(
        type='duplicate',
        title='Duplicate adverse event records',
        description=f"{len(duplicates)} duplicate adverse event records found",
        source='Adverse Events',
        severity=Priority.MEDIUM,
        recommendation='Review and deduplicate adverse event records'
    )]


def run_quality_checks(
    data: Dict[str, List[Dict[str, Any]]],
    sources: Sequence[str],
    options: MonitoringOptions
) -> List[DataQualityIssue]:
    """All enabled checkers; consistency needs at least two sources"""
    issues: List[DataQualityIssue] = []
    if options.check_consistency and len(sources) >= 2:
        issues.extend(check_data_consistency(data, sources))
    if options.check_completeness:
        for source in sources:
            issues.extend(check_data_completeness(data.get(source, []), source))
    if options.check_accuracy:
        for source in sources:
            issues.extend(check_data_accuracy(data.get(source, []), source))
    if options.check_timeliness:
        for source in sources:
            issues.extend(check_data_timeliness(data.get(source, []), source))
    return issues


_HIGH_SEVERITY_ASSIGNEES = {
    DataSourceType.LAB_RESULTS.value: 'Data Quality Manager',
    DataSourceType.EDC.value: 'Clinical Data Manager',
    DataSourceType.ADVERSE_EVENTS.value: 'Safety Specialist',
    DataSourceType.CTMS.value: 'Clinical Trial Manager',
}


def determine_task_assignee(severity, source: str) -> str:
    if Priority.parse(severity).is_high_severity:
        return _HIGH_SEVERITY_ASSIGNEES.get(source, 'Clinical Data Manager')
    return 'Data Management Team'
