"""
Tests for signal/task materialization, due dates and identifiers
"""

import re
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from trial_signal_monitor.core.error_handling import PersistenceError
from trial_signal_monitor.core.materializer import (
    AI_DUE_DAYS,
    DEFAULT_TRIAL_SOURCES,
    FALLBACK_TRIAL_SOURCES,
    MONITORING_DUE_DAYS,
    RULE_BASED_DUE_DAYS,
    SignalTaskMaterializer,
    calculate_due_date,
    determine_notified_persons,
    determine_signal_type,
    generate_detection_id,
    generate_monitoring_task_id,
    generate_task_id,
    protocol_suffix,
)
from trial_signal_monitor.models.data_models import Finding, Priority
from trial_signal_monitor.storage.memory import InMemoryTrialRepository

NOW = datetime(2024, 6, 1, 12, 0, 0)


def _finding(title="Screen Failure Pattern at Site 123", priority="High", site_id="Site 123"):
    return Finding(
        title=title,
        observation="Site has 12 screen failures with similar pattern",
        priority=priority,
        site_id=site_id,
        recommendation="Review screening procedures"
    )


class FlakyRepository(InMemoryTrialRepository):
    """Fails signal creation for one title"""

    def __init__(self, failing_title):
        super().__init__()
        self.failing_title = failing_title

    async def create_signal_detection(self, **fields):
        if fields.get('title') == self.failing_title:
            raise PersistenceError("disk full", entity='signal_detection')
        return await super().create_signal_detection(**fields)


class TestDueDates:
    """Tests for priority based due dates"""

    @pytest.mark.parametrize("table", [RULE_BASED_DUE_DAYS, AI_DUE_DAYS, MONITORING_DUE_DAYS])
    def test_more_urgent_priorities_are_never_due_later(self, table):
        ordered = [Priority.CRITICAL, Priority.HIGH, Priority.MEDIUM, Priority.LOW]
        dates = [calculate_due_date(p, table, now=NOW) for p in ordered]
        assert dates == sorted(dates)

    def test_rule_based_offsets(self):
        assert calculate_due_date("Critical", now=NOW) == NOW + timedelta(days=3)
        assert calculate_due_date("low", now=NOW) == NOW + timedelta(days=30)

    def test_unknown_priority_defaults_to_a_week(self):
        assert calculate_due_date("Urgent", now=NOW) == NOW + timedelta(days=7)


class TestIdentifiers:
    """Tests for detection and task identifiers"""

    def test_detection_ids_are_unique_and_prefixed(self):
        ids = [generate_detection_id('labResults') for _ in range(200)]
        assert len(set(ids)) == 200
        assert all(re.fullmatch(r"LAB_\d+", i) for i in ids)

    def test_display_names_and_unknown_sources(self):
        assert generate_detection_id('Adverse Events').startswith("AE_")
        assert generate_detection_id('dataManagement').startswith("SIG_")

    @pytest.mark.parametrize("protocol_id,suffix", [
        ("PRO001", "1"),
        ("PRO0120", "120"),
        ("CARD-7", "CARD-7"),
        ("", ""),
    ])
    def test_protocol_suffix(self, protocol_id, suffix):
        assert protocol_suffix(protocol_id) == suffix

    def test_task_ids(self):
        first, second = generate_task_id('TSK', 'PRO001'), generate_task_id('TSK', 'PRO001')
        assert re.fullmatch(r"TSK_1_\d{3,}", first)
        assert first != second
        assert re.fullmatch(r"DQ_TASK_\d{6}", generate_monitoring_task_id())


class TestAttributionTables:
    """Tests for signal type and notified role lookups"""

    def test_signal_types(self):
        assert determine_signal_type('screenFailure') == 'Enrollment Risk'
        assert determine_signal_type('Lab Results') == 'LAB Testing Risk'
        assert determine_signal_type('unknown') == 'Site Risk'

    def test_notified_persons(self):
        assert determine_notified_persons('adverseEvents', 'Low') == ["Safety Officer", "Medical Monitor"]
        assert determine_notified_persons('siteMetrics', 'Critical') == ["Trial Manager", "Medical Monitor"]
        assert determine_notified_persons('siteMetrics', 'Medium') == ["CRA", "Data Manager"]


class TestSignalTaskMaterializer:
    """Tests for the rule and detector materialization path"""

    @pytest.mark.asyncio
    async def test_each_finding_creates_a_linked_signal_and_task(self, repository, seeded_trial):
        materializer = SignalTaskMaterializer(repository)
        findings = [_finding(), _finding(title="Increasing Screen Failure Rate", site_id=None)]

        signals = await materializer.materialize(findings, seeded_trial, 'screenFailure')
        tasks = await repository.list_tasks(seeded_trial.id)

        assert len(signals) == 2
        assert len(tasks) == 2
        assert sorted(t.detection_id for t in tasks) == sorted(s.id for s in signals)

        signal = signals[0]
        assert signal.detection_id.startswith("SF_")
        assert signal.signal_type == 'Enrollment Risk'
        assert signal.created_by == 'Rule-based Detection'
        assert signal.status == 'initiated'
        assert signal.site_id == 1
        assert signal.notified_persons == ["Trial Manager", "Enrollment Coordinator"]
        assert signal.recommendation == "Review screening procedures"
        assert signals[1].site_id is None

        task = next(t for t in tasks if t.detection_id == signal.id)
        assert task.title == "Investigate: Screen Failure Pattern at Site 123"
        assert task.task_id.startswith("TSK_1_")
        assert task.status == 'not_started'
        assert task.record_id == f"SIG_{signal.detection_id}"
        assert task.data_context['detectionType'] == 'Rule-based'
        assert task.data_context['signalTitle'] == signal.title
        assert task.completed_at is None

    @pytest.mark.asyncio
    async def test_ai_findings_use_the_shorter_due_dates(self, repository, seeded_trial):
        materializer = SignalTaskMaterializer(repository)
        before = datetime.now()

        signals = await materializer.materialize([_finding()], seeded_trial, 'screenFailure', 'AI-powered')
        task = (await repository.list_tasks())[0]

        assert signals[0].created_by == 'AI Assistant'
        assert before + timedelta(days=4) <= task.due_date <= datetime.now() + timedelta(days=4)

    @pytest.mark.asyncio
    async def test_unknown_site_leaves_signal_without_site(self, repository, seeded_trial):
        materializer = SignalTaskMaterializer(repository)
        signals = await materializer.materialize([_finding(site_id="Site 999")], seeded_trial, 'enrollment')
        assert signals[0].site_id is None

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(self, seeded_trial):
        repository = FlakyRepository(failing_title="Broken")
        materializer = SignalTaskMaterializer(repository)
        findings = [_finding(title="First"), _finding(title="Broken"), _finding(title="Third")]

        signals = await materializer.materialize(findings, seeded_trial, 'adverseEvents')

        assert [s.title for s in signals] == ["First", "Third"]
        assert len(await repository.list_tasks()) == 2

    @pytest.mark.asyncio
    async def test_empty_batch(self, repository, seeded_trial):
        assert await SignalTaskMaterializer(repository).materialize([], seeded_trial, 'labResults') == []


class TestDataQualityMaterialization:
    """Tests for the cross-source materialization path"""

    @pytest.mark.asyncio
    async def test_data_management_signals_and_tasks(self, repository, seeded_trial):
        materializer = SignalTaskMaterializer(repository)
        finding = Finding(
            title="Lab Results Discrepancy",
            observation="20% of lab results in LIMS do not match values entered in EDC",
            priority="High"
        )

        signals = await materializer.materialize_data_quality([finding], seeded_trial)
        task = (await repository.list_tasks())[0]

        assert signals[0].signal_type == 'Data Quality Risk'
        assert signals[0].data_reference == 'Data Management Agent'
        assert signals[0].notified_persons == ["Data Manager", "Trial Manager", "Data Quality Lead"]
        assert task.task_id.startswith("DM_1_")
        assert task.title == "Data Management: Lab Results Discrepancy"
        assert task.domain == "LB"
        assert task.source == "EDC"
        assert task.data_context['dataSources'] == ["EDC", "Lab Results", "CTMS"]

    @pytest.mark.asyncio
    async def test_trial_without_sources_uses_defaults(self):
        repository = InMemoryTrialRepository()
        trial = await repository.create_trial(protocol_id="PRO009", title="Empty")
        assert await SignalTaskMaterializer(repository).get_data_sources_for_trial(trial.id) == DEFAULT_TRIAL_SOURCES

    @pytest.mark.asyncio
    async def test_source_lookup_failure_uses_fallback_list(self):
        repository = InMemoryTrialRepository()
        repository.get_domain_sources_by_trial_id = AsyncMock(side_effect=PersistenceError("down"))
        sources = await SignalTaskMaterializer(repository).get_data_sources_for_trial(1)
        assert sources == FALLBACK_TRIAL_SOURCES
