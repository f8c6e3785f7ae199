"""
Tests for the rule-based signal evaluators
"""

import pytest

from trial_signal_monitor.core.error_handling import DataValidationError
from trial_signal_monitor.core.rule_evaluators import (
    evaluate_adverse_events,
    evaluate_enrollment,
    evaluate_lab_results,
    evaluate_protocol_deviations,
    evaluate_screen_failures,
    find_abnormal_lab_parameter_patterns,
    group_by_time_window,
    is_increasing_trend,
    process_with_rules,
)
from trial_signal_monitor.models.data_models import Priority, Trial, parse_domain_records


def _rows(count, **fields):
    return [dict(fields, subjectId=f"SUBJ-{i:03d}") for i in range(count)]


class TestTrendHelpers:
    """Tests for time bucketing and trend detection"""

    def test_windows_are_anchored_at_earliest_date(self, records):
        rows = [
            {'screeningDate': '2024-01-01'},
            {'screeningDate': '2024-01-02'},
            {'screeningDate': '2024-01-20'},
        ]
        assert group_by_time_window(records('screenFailure', rows), 'screeningDate') == [2, 0, 1]

    def test_unparseable_dates_are_skipped(self, records):
        rows = [{'screeningDate': 'not a date'}, {}, {'screeningDate': '2024-03-01'}]
        assert group_by_time_window(records('screenFailure', rows), 'screeningDate') == [1]

    def test_no_dates_gives_no_windows(self, records):
        assert group_by_time_window(records('screenFailure', [{}]), 'screeningDate') == []

    @pytest.mark.parametrize("values,expected", [
        ([1, 2, 3], True),
        ([1, 1, 2, 3, 4], True),
        ([3, 2, 1], False),
        ([1, 2, 1, 2, 1], False),
        ([1, 2], False),
        ([], False),
    ])
    def test_increasing_trend(self, values, expected):
        assert is_increasing_trend(values) == expected


class TestScreenFailures:
    """Tests for the screen failure evaluator"""

    @pytest.mark.parametrize("count,priority", [
        (6, Priority.MEDIUM),
        (10, Priority.MEDIUM),
        (11, Priority.HIGH),
        (15, Priority.HIGH),
        (16, Priority.CRITICAL),
    ])
    def test_site_pattern_priority_tiers(self, records, trial, count, priority):
        findings = evaluate_screen_failures(records('screenFailure', _rows(count, siteId='Site 123')), trial)

        assert len(findings) == 1
        assert findings[0].title == "Screen Failure Pattern at Site 123"
        assert findings[0].observation == f"Site has {count} screen failures with similar pattern"
        assert findings[0].priority == priority
        assert findings[0].site_id == "Site 123"

    def test_threshold_is_exclusive(self, records, trial):
        assert evaluate_screen_failures(records('screenFailure', _rows(5, siteId='Site 123')), trial) == []

    def test_rows_without_site_are_ignored(self, records, trial):
        assert evaluate_screen_failures(records('screenFailure', _rows(8)), trial) == []

    def test_increasing_weekly_trend(self, records, trial):
        rows = []
        for week, count in enumerate([1, 2, 3, 4]):
            rows.extend({'screeningDate': f"2024-01-{1 + 7 * week:02d}"} for _ in range(count))

        findings = evaluate_screen_failures(records('screenFailure', rows), trial)

        assert len(findings) == 1
        assert findings[0].title == "Increasing Screen Failure Rate"
        assert findings[0].observation == (
            "Screen failure rate has increased consistently over the last 4 weeks"
        )
        assert findings[0].priority == Priority.HIGH
        assert findings[0].site_id is None


class TestLabResults:
    """Tests for the lab result evaluator"""

    def test_abnormal_values_per_site_and_parameter(self, records, trial):
        rows = _rows(4, siteId='Site 123', parameter='ALT', value=80, upperLimit=40)
        rows += _rows(6, siteId='Site 456', parameter='ALT', value=20, upperLimit=40)

        findings = evaluate_lab_results(records('labResults', rows), trial)
        titles = {f.title: f for f in findings}

        site_finding = titles["Abnormal Lab Values at Site 123"]
        assert site_finding.observation == "4 patients with abnormal lab values at Site 123"
        assert site_finding.priority == Priority.MEDIUM

        pattern = titles["High Abnormality Rate: ALT"]
        assert pattern.observation == "40.0% of ALT values are outside normal ranges"
        assert pattern.priority == Priority.HIGH
        assert pattern.site_id is None

    def test_below_lower_limit_is_abnormal(self, records):
        rows = _rows(3, parameter='HGB', value=9, lowerLimit=12)
        findings = find_abnormal_lab_parameter_patterns(records('labResults', rows))

        assert len(findings) == 1
        assert findings[0].priority == Priority.CRITICAL
        assert findings[0].observation.startswith("100.0% of HGB")

    @pytest.mark.parametrize("abnormal,priority", [
        (3, None),
        (4, Priority.HIGH),
        (5, Priority.HIGH),
        (6, Priority.CRITICAL),
    ])
    def test_parameter_percentage_boundaries(self, records, abnormal, priority):
        rows = _rows(abnormal, parameter='ALT', value=80, upperLimit=40)
        rows += _rows(10 - abnormal, parameter='ALT', value=20, upperLimit=40)

        findings = find_abnormal_lab_parameter_patterns(records('labResults', rows))

        assert [f.priority for f in findings] == ([priority] if priority else [])

    @pytest.mark.parametrize("count,priority", [
        (3, None),
        (4, Priority.MEDIUM),
        (5, Priority.MEDIUM),
        (6, Priority.HIGH),
        (10, Priority.HIGH),
        (11, Priority.CRITICAL),
    ])
    def test_site_count_boundaries(self, records, trial, count, priority):
        rows = _rows(count, siteId='Site 123', parameter='ALT', value=80, upperLimit=40)

        findings = evaluate_lab_results(records('labResults', rows), trial)
        site_findings = [f for f in findings if f.title == "Abnormal Lab Values at Site 123"]

        assert [f.priority for f in site_findings] == ([priority] if priority else [])

    def test_normal_values_produce_nothing(self, records, trial):
        rows = _rows(10, siteId='Site 123', parameter='ALT', value=20, upperLimit=40, lowerLimit=5)
        assert evaluate_lab_results(records('labResults', rows), trial) == []


class TestOtherEvaluators:
    """Tests for adverse event, deviation and enrollment evaluators"""

    @pytest.mark.parametrize("count,priority", [
        (4, Priority.MEDIUM),
        (6, Priority.HIGH),
        (9, Priority.CRITICAL),
    ])
    def test_adverse_event_cluster(self, records, trial, count, priority):
        rows = _rows(count, siteId='Site 123', type='Nausea', severity='Mild')
        findings = evaluate_adverse_events(records('adverseEvents', rows), trial)

        assert len(findings) == 1
        assert findings[0].title == "Nausea Adverse Event Cluster"
        assert findings[0].observation == f"{count} reports of Nausea at Site 123"
        assert findings[0].priority == priority

    def test_adverse_events_are_counted_per_site(self, records, trial):
        rows = _rows(3, siteId='Site 123', type='Nausea') + _rows(3, siteId='Site 456', type='Nausea')
        assert evaluate_adverse_events(records('adverseEvents', rows), trial) == []

    def test_protocol_deviation_pattern(self, records, trial):
        rows = _rows(6, siteId='Site 123', deviationType='Informed Consent')
        findings = evaluate_protocol_deviations(records('protocolDeviations', rows), trial)

        assert len(findings) == 1
        assert findings[0].title == "Informed Consent Protocol Deviation Pattern"
        assert findings[0].priority == Priority.MEDIUM
        assert findings[0].site_id is None

    def test_slow_enrollment(self, records, trial):
        rows = _rows(2, siteId='Site 123') + _rows(3, siteId='Site 456')
        findings = evaluate_enrollment(records('enrollment', rows), trial)

        assert [f.title for f in findings] == ["Slow Enrollment at Site 123"]
        assert findings[0].observation == "Site 123 has only enrolled 2 patients since activation"

    def test_enrollment_ignored_for_inactive_trial(self, records):
        closed = Trial(id=2, protocol_id="PRO002", title="Closed Study", status="completed")
        assert evaluate_enrollment(records('enrollment', _rows(1, siteId='Site 123')), closed) == []


class TestProcessWithRules:
    """Tests for evaluator dispatch"""

    def test_display_names_are_normalized(self, records, trial):
        rows = _rows(6, siteId='Site 123', deviationType='Dosing')
        findings = process_with_rules('Protocol Deviations', records('protocolDeviations', rows), trial)
        assert len(findings) == 1

    @pytest.mark.parametrize("source", ["dataQuality", "siteMetrics", "somethingElse"])
    def test_sources_without_rules_yield_nothing(self, records, trial, source):
        assert process_with_rules(source, records(source, _rows(10, siteId='Site 123')), trial) == []

    def test_empty_batch(self, trial):
        assert process_with_rules('screenFailure', [], trial) == []


class TestRecordParsing:
    """Tests for validation at the ingestion boundary"""

    def test_numeric_site_ids_are_coerced(self):
        parsed = parse_domain_records('screenFailure', [{'siteId': 123, 'reason': 'Age'}])
        assert parsed[0].site_id == "123"
        assert parsed[0].to_dict() == {'siteId': '123', 'reason': 'Age'}

    def test_invalid_row_reports_its_index(self):
        with pytest.raises(DataValidationError) as exc_info:
            parse_domain_records('labResults', [{'value': 1.0}, {'value': 'high'}])
        assert exc_info.value.details['field'] == 'dataPoints[1]'

    def test_unknown_fields_are_kept(self):
        parsed = parse_domain_records('labResults', [{'parameter': 'ALT', 'visit': 'V2'}])
        assert parsed[0].to_dict()['visit'] == 'V2'
