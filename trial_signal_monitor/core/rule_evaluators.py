"""
Rule-Based Signal Evaluators
============================

Source-specific heuristics that turn a batch of validated domain records plus
the trial context into candidate Findings. Every evaluator is a pure function:
no I/O, no persistence, deterministic for a given input.

Thresholds:
- Screen failures: > 5 per site (High > 10, Critical > 15), plus a trial-wide
  rising 7-day trend
- Lab results: > 3 abnormal per site (High > 5, Critical > 10), plus
  > 30% abnormal per parameter (Critical > 50%)
- Adverse events: > 3 per (type, site) pair (High > 5, Critical > 8)
- Protocol deviations: > 5 per deviation type (High > 10, Critical > 15)
- Enrollment: < 3 per site while the trial is active
"""

import math
import logging
from typing import Callable, Dict, List, Optional, Sequence

import pandas as pd

from trial_signal_monitor.models.data_models import (
    DetectionSource,
    DomainRecord,
    Finding,
    LabResultRecord,
    Priority,
    Trial,
    normalize_detection_source,
)

logger = logging.getLogger(__name__)

TREND_WINDOW_DAYS = 7
TREND_INCREASE_RATIO = 0.7


def _tiered_priority(count: float, critical_above: float, high_above: float) -> Priority:
    if count > critical_above:
        return Priority.CRITICAL
    if count > high_above:
        return Priority.HIGH
    return Priority.MEDIUM


def _records_frame(records: Sequence[DomainRecord]) -> pd.DataFrame:
    return pd.DataFrame([record.to_dict() for record in records])


def _count_by(df: pd.DataFrame, columns: List[str]) -> pd.Series:
    """Group sizes keyed by ``columns``; rows missing any key are ignored"""
    if df.empty or any(column not in df.columns for column in columns):
        return pd.Series(dtype="int64")
    return df.dropna(subset=columns).groupby(columns, sort=False).size()


# =============================================================================
# Time bucketing
# =============================================================================

def group_by_time_window(
    records: Sequence[DomainRecord],
    date_field: str,
    window_size_days: int = TREND_WINDOW_DAYS
) -> List[int]:
    """
    Count records per consecutive ``window_size_days`` window.

    Windows are anchored at the earliest parseable date and run to the latest;
    windows with no records count as 0. Unparseable or missing dates are
    skipped.
    """
    dates = pd.to_datetime(
        pd.Series([record.to_dict().get(date_field) for record in records], dtype="object"),
        errors="coerce",
        utc=True
    ).dropna()
    if dates.empty:
        return []

    offsets = (dates - dates.min()).dt.days // window_size_days
    counts = offsets.value_counts().reindex(range(int(offsets.max()) + 1), fill_value=0)
    return [int(count) for count in counts.sort_index().tolist()]


def is_increasing_trend(values: Sequence[int]) -> bool:
    """True when at least 70% (floored) of consecutive steps increase"""
    if len(values) < 3:
        return False
    increases = sum(1 for previous, current in zip(values, values[1:]) if current > previous)
    return increases >= math.floor(len(values) * TREND_INCREASE_RATIO)


# =============================================================================
# Per-source evaluators
# =============================================================================

def evaluate_screen_failures(records: Sequence[DomainRecord], trial: Trial) -> List[Finding]:
    findings = []
    for site_id, count in _count_by(_records_frame(records), ['siteId']).items():
        if count > 5:
            findings.append(Finding(
                title=f"Screen Failure Pattern at {site_id}",
                observation=f"Site has {count} screen failures with similar pattern",
                priority=_tiered_priority(count, 15, 10),
                site_id=site_id,
                recommendation=f"Review screening procedures at {site_id} and investigate potential protocol issues"
            ))

    windows = group_by_time_window(records, 'screeningDate', TREND_WINDOW_DAYS)
    if is_increasing_trend(windows):
        findings.append(Finding(
            title="Increasing Screen Failure Rate",
            observation=f"Screen failure rate has increased consistently over the last {len(windows)} weeks",
            priority=Priority.HIGH,
            site_id=None,
            recommendation="Evaluate inclusion/exclusion criteria and review recruitment strategies"
        ))
    return findings


def _is_abnormal(record: DomainRecord) -> bool:
    return isinstance(record, LabResultRecord) and record.is_abnormal


def find_abnormal_lab_parameter_patterns(records: Sequence[DomainRecord]) -> List[Finding]:
    """Per lab parameter, flag abnormal percentages above 30%"""
    df = pd.DataFrame([
        {'parameter': record.to_dict().get('parameter'), 'abnormal': _is_abnormal(record)}
        for record in records
    ])
    if df.empty:
        return []

    findings = []
    summary = df.dropna(subset=['parameter']).groupby('parameter', sort=False)['abnormal'].agg(['sum', 'size'])
    for parameter, row in summary.iterrows():
        abnormal_percent = row['sum'] * 100 / row['size']
        if abnormal_percent > 30:
            findings.append(Finding(
                title=f"High Abnormality Rate: {parameter}",
                observation=f"{abnormal_percent:.1f}% of {parameter} values are outside normal ranges",
                priority=Priority.CRITICAL if abnormal_percent > 50 else Priority.HIGH,
                site_id=None,
                recommendation=f"Investigate lab collection methods for {parameter} and review patient eligibility criteria"
            ))
    return findings


def evaluate_lab_results(records: Sequence[DomainRecord], trial: Trial) -> List[Finding]:
    findings = []
    abnormal = _records_frame([record for record in records if _is_abnormal(record)])
    for site_id, count in _count_by(abnormal, ['siteId']).items():
        if count > 3:
            findings.append(Finding(
                title=f"Abnormal Lab Values at {site_id}",
                observation=f"{count} patients with abnormal lab values at {site_id}",
                priority=_tiered_priority(count, 10, 5),
                site_id=site_id,
                recommendation="Review lab collection procedures and investigate potential protocol deviations"
            ))

    findings.extend(find_abnormal_lab_parameter_patterns(records))
    return findings


def evaluate_adverse_events(records: Sequence[DomainRecord], trial: Trial) -> List[Finding]:
    findings = []
    for (ae_type, site_id), count in _count_by(_records_frame(records), ['type', 'siteId']).items():
        if count > 3:
            findings.append(Finding(
                title=f"{ae_type} Adverse Event Cluster",
                observation=f"{count} reports of {ae_type} at {site_id}",
                priority=_tiered_priority(count, 8, 5),
                site_id=site_id,
                recommendation=f"Medical review of {ae_type} events at {site_id} and comparison to other sites"
            ))
    return findings


def evaluate_protocol_deviations(records: Sequence[DomainRecord], trial: Trial) -> List[Finding]:
    findings = []
    for deviation_type, count in _count_by(_records_frame(records), ['deviationType']).items():
        if count > 5:
            findings.append(Finding(
                title=f"{deviation_type} Protocol Deviation Pattern",
                observation=f"{count} instances of {deviation_type} deviations across sites",
                priority=_tiered_priority(count, 15, 10),
                site_id=None,
                recommendation=(
                    f"Conduct targeted training on {deviation_type} procedures "
                    f"and update protocol clarification memos"
                )
            ))
    return findings


def evaluate_enrollment(records: Sequence[DomainRecord], trial: Trial) -> List[Finding]:
    if trial.status != 'active':
        return []

    findings = []
    for site_id, count in _count_by(_records_frame(records), ['siteId']).items():
        if count < 3:
            findings.append(Finding(
                title=f"Slow Enrollment at {site_id}",
                observation=f"{site_id} has only enrolled {count} patients since activation",
                priority=Priority.MEDIUM,
                site_id=site_id,
                recommendation="Review site readiness and consider additional site support or training"
            ))
    return findings


EVALUATORS: Dict[str, Callable[[Sequence[DomainRecord], Trial], List[Finding]]] = {
    DetectionSource.SCREEN_FAILURE.value: evaluate_screen_failures,
    DetectionSource.LAB_RESULTS.value: evaluate_lab_results,
    DetectionSource.ADVERSE_EVENTS.value: evaluate_adverse_events,
    DetectionSource.PROTOCOL_DEVIATIONS.value: evaluate_protocol_deviations,
    DetectionSource.ENROLLMENT.value: evaluate_enrollment,
}


def process_with_rules(source: str, records: Sequence[DomainRecord], trial: Trial) -> List[Finding]:
    """
    Run the evaluator registered for ``source``.

    Sources without a rule set (data quality, site metrics, unknown keys)
    yield no Findings.
    """
    evaluator: Optional[Callable] = EVALUATORS.get(normalize_detection_source(source))
    if evaluator is None:
        logger.info(f"No rule set for source '{source}', no findings produced")
        return []

    findings = evaluator(records, trial)
    logger.info(f"Rule evaluation for '{source}' on trial {trial.id}: {len(findings)} findings")
    return findings
