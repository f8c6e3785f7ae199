"""
Tests for the live data quality monitor and per-connection sessions
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from trial_signal_monitor.api.services.notification_service import NotificationService
from trial_signal_monitor.api.services.realtime_service import (
    ConnectionManager,
    DataQualityMonitor,
    MonitoringSession,
    MonitoringState,
    RepositoryDataProvider,
)
from trial_signal_monitor.core.error_handling import TrialNotFoundError
from trial_signal_monitor.core.quality_checks import MonitoringOptions

NO_ISSUES = {'issues': [], 'signals': [], 'tasks': []}


def _start(trial_id=1, sources=("EDC",), **options):
    data = {'trialId': trial_id, 'sources': list(sources)}
    if options:
        data['options'] = options
    return json.dumps({'type': 'START_MONITORING', 'data': data})


class Outbox:
    """Collects outbound messages"""

    def __init__(self):
        self.messages = []

    async def __call__(self, message):
        self.messages.append(message)

    def of_type(self, message_type):
        return [m for m in self.messages if m['type'] == message_type]


@pytest.fixture
def notifications():
    return NotificationService()


@pytest.fixture
def monitor(repository, notifications):
    return DataQualityMonitor(repository, RepositoryDataProvider(repository), notifications)


@pytest.fixture
def outbox():
    return Outbox()


@pytest.fixture
async def session(outbox, monitor):
    session = MonitoringSession(outbox, monitor, interval_seconds=3600)
    yield session
    session.close()


class TestDataQualityMonitor:
    """Tests for one monitoring check"""

    @pytest.mark.asyncio
    async def test_high_severity_issue_creates_signal_task_and_notification(self, repository, monitor, notifications):
        await repository.add_domain_records(1, 'EDC', [{'subjectId': 'S1', 'value': None}])

        results = await monitor.process(1, ['EDC'], MonitoringOptions())

        assert len(results['issues']) == 1
        signal, task = results['signals'][0], results['tasks'][0]
        assert signal.detection_id.startswith("DQ_")
        assert signal.detection_type == 'Automated'
        assert signal.status == 'detected'
        assert signal.created_by == 'Data Quality Agent'
        assert signal.assigned_to == 'Data Manager'
        assert task.task_id.startswith("DQ_TASK_")
        assert task.title == "Resolve Missing data in EDC"
        assert task.detection_id == signal.id
        assert task.source_id == str(signal.id)
        assert task.source_type == 'signal_detection'
        assert task.assigned_to == 'Clinical Data Manager'

        sent = await notifications.get_notifications()
        assert len(sent) == 1
        assert sent[0]['recipients'] == ['Clinical Data Manager', 'Principal Investigator', 'Admin']
        assert sent[0]['payload']['trialId'] == 'PRO001'

    @pytest.mark.asyncio
    async def test_medium_issue_creates_signal_only(self, repository, monitor, notifications):
        event = {'subjectId': 'S1', 'event': 'Headache', 'reportDate': '2024-02-01'}
        await repository.add_domain_records(1, 'Adverse Events', [event, event])

        results = await monitor.process(1, ['Adverse Events'], MonitoringOptions())

        assert len(results['signals']) == 1
        assert results['tasks'] == []
        assert await notifications.get_notifications() == []
        assert await repository.list_tasks(1) == []

    @pytest.mark.asyncio
    async def test_unknown_trial(self, monitor):
        with pytest.raises(TrialNotFoundError):
            await monitor.process(99, ['EDC'], MonitoringOptions())


class TestMonitoringSession:
    """Tests for the per-connection command state machine"""

    @pytest.mark.asyncio
    async def test_connected_greeting(self, session, outbox):
        await session.send_connected()
        assert outbox.messages[0]['type'] == 'STATUS'
        assert outbox.messages[0]['data']['status'] == 'connected'
        assert 'timestamp' in outbox.messages[0]

    @pytest.mark.asyncio
    async def test_start_without_sources_is_rejected(self, session, outbox):
        await session.handle_message(_start(sources=()))

        assert outbox.messages[-1]['type'] == 'ERROR'
        assert outbox.messages[-1]['data']['message'] == 'Missing required data: trialId and sources are required'
        assert session.state == MonitoringState.IDLE
        assert session._timer is None

    @pytest.mark.asyncio
    async def test_stop_while_idle_is_harmless(self, session, outbox):
        await session.handle_message(json.dumps({'type': 'STOP_MONITORING'}))

        assert outbox.messages[-1]['data']['message'] == 'Real-time monitoring stopped'
        assert session.state == MonitoringState.IDLE

    @pytest.mark.asyncio
    async def test_unknown_and_malformed_messages(self, session, outbox):
        await session.handle_message(json.dumps({'type': 'PING'}))
        await session.handle_message("{not json")

        errors = outbox.of_type('ERROR')
        assert errors[0]['data']['message'] == 'Unknown message type: PING'
        assert errors[1]['data']['message'] == 'Error processing message'

    @pytest.mark.asyncio
    async def test_start_runs_initial_check_and_arms_timer(self, session, outbox, repository):
        await repository.add_domain_records(1, 'EDC', [{'subjectId': 'S1', 'value': None}])

        await session.handle_message(_start(sources=['EDC'], checkAccuracy=False))

        result = outbox.of_type('DATA_QUALITY_RESULT')[0]['data']
        assert len(result['signals']) == 1
        assert len(result['tasks']) == 1
        statuses = [m['data'] for m in outbox.of_type('STATUS')]
        assert statuses[0]['taskCount'] == 1
        assert statuses[-1]['message'] == 'Real-time monitoring started'
        assert statuses[-1]['settings']['options']['checkAccuracy'] is False
        assert session.is_monitoring
        assert session._timer is not None

        session.stop()
        assert session.state == MonitoringState.IDLE
        assert session._timer is None

    @pytest.mark.asyncio
    async def test_failed_initial_check_still_starts(self, session, outbox):
        await session.handle_message(_start(trial_id=42))

        assert outbox.of_type('ERROR')[0]['data']['message'] == 'Error in initial data quality check'
        assert outbox.messages[-1]['data']['message'] == 'Real-time monitoring started'
        assert session.is_monitoring

    @pytest.mark.asyncio
    async def test_tick_without_issues_reports_status(self, session, outbox):
        await session.handle_message(_start())
        outbox.messages.clear()

        await session.tick()

        assert outbox.messages[-1]['data']['message'] == 'Monitoring active, no new issues detected'
        assert 'lastCheck' in outbox.messages[-1]['data']

    @pytest.mark.asyncio
    async def test_tick_is_skipped_while_a_check_runs(self, outbox):
        monitor = AsyncMock()
        monitor.process.return_value = NO_ISSUES
        session = MonitoringSession(outbox, monitor, interval_seconds=3600)
        await session.start({'trialId': 1, 'sources': ['EDC']})
        calls = monitor.process.await_count
        outbox.messages.clear()

        async with session._check_lock:
            await session.tick()

        assert monitor.process.await_count == calls
        assert outbox.messages == []
        session.close()

    @pytest.mark.asyncio
    async def test_timer_repeats_checks(self, outbox):
        monitor = AsyncMock()
        monitor.process.return_value = NO_ISSUES
        session = MonitoringSession(outbox, monitor, interval_seconds=0.01)

        await session.start({'trialId': 1, 'sources': ['EDC']})
        await asyncio.sleep(0.1)
        session.stop()
        calls = monitor.process.await_count
        await asyncio.sleep(0.05)

        assert calls >= 2
        assert monitor.process.await_count == calls

    @pytest.mark.asyncio
    async def test_stop_lets_a_running_check_finish(self, outbox, repository, monitor, notifications):
        """A stop during a scheduled check must not leave a signal without its task"""
        await repository.add_domain_records(1, 'EDC', [{'subjectId': 'S1', 'value': None}])
        create_task = repository.create_task

        async def slow_create_task(**fields):
            await asyncio.sleep(0.2)
            return await create_task(**fields)

        repository.create_task = slow_create_task
        session = MonitoringSession(outbox, monitor, interval_seconds=0.01)

        await session.start({'trialId': 1, 'sources': ['EDC']})
        await asyncio.sleep(0.1)
        assert session._check_lock.locked()
        session.stop()
        await asyncio.sleep(0.4)

        signals = await repository.list_signal_detections(1)
        tasks = await repository.list_tasks(1)
        assert len(signals) == 2
        assert len(tasks) == len(signals)
        assert len(await notifications.get_notifications()) == len(tasks)
        assert not session._check_lock.locked()
        assert session.state == MonitoringState.IDLE

    @pytest.mark.asyncio
    async def test_restart_leaves_a_single_timer(self, outbox):
        monitor = AsyncMock()
        monitor.process.return_value = NO_ISSUES
        session = MonitoringSession(outbox, monitor, interval_seconds=0.01)

        await session.start({'trialId': 1, 'sources': ['EDC']})
        first_timer = session._timer
        await session.start({'trialId': 1, 'sources': ['EDC']})
        await asyncio.sleep(0.05)

        assert first_timer.done()
        assert not session._timer.done()
        session.close()

    @pytest.mark.asyncio
    async def test_invalid_options_keep_the_running_session(self, session, outbox):
        await session.handle_message(_start())
        timer = session._timer
        outbox.messages.clear()

        await session.handle_message(_start(trial_id=2, checkAccuracy='maybe'))

        assert outbox.messages[-1]['type'] == 'ERROR'
        assert outbox.messages[-1]['data']['message'] == 'Invalid monitoring options'
        assert session.state == MonitoringState.MONITORING
        assert session.trial_id == 1
        assert session._timer is timer
        assert not timer.done()

    @pytest.mark.asyncio
    async def test_restart_merges_only_given_options(self, session, outbox):
        await session.handle_message(_start(checkAccuracy=False))
        await session.handle_message(_start(checkTimeliness=False))

        options = outbox.messages[-1]['data']['settings']['options']
        assert options['checkAccuracy'] is False
        assert options['checkTimeliness'] is False
        assert options['checkCompleteness'] is True

    @pytest.mark.asyncio
    async def test_scheduled_check_error_is_reported(self, outbox):
        monitor = AsyncMock()
        monitor.process.side_effect = [NO_ISSUES, RuntimeError("repository down")]
        session = MonitoringSession(outbox, monitor, interval_seconds=3600)
        await session.start({'trialId': 1, 'sources': ['EDC']})

        await session.tick()

        assert outbox.messages[-1]['type'] == 'ERROR'
        assert outbox.messages[-1]['data']['message'] == 'Error in scheduled data quality check'
        assert session.is_monitoring
        session.close()


class TestConnectionManager:
    """Tests for WebSocket connection bookkeeping"""

    @pytest.mark.asyncio
    async def test_connections_beyond_limit_are_refused(self):
        manager = ConnectionManager(max_connections=1)
        first, second = AsyncMock(), AsyncMock()

        assert await manager.connect(first) is True
        assert await manager.connect(second) is False
        second.close.assert_awaited_once_with(code=1013)

        manager.disconnect(first)
        assert manager.active_connections == []

    @pytest.mark.asyncio
    async def test_disconnect_all(self):
        manager = ConnectionManager()
        sockets = [AsyncMock(), AsyncMock()]
        for websocket in sockets:
            await manager.connect(websocket)

        await manager.disconnect_all()

        assert manager.active_connections == []
        for websocket in sockets:
            websocket.close.assert_awaited_once()
