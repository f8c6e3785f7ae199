"""
Real-time Service
Manages WebSocket connections and per-connection data quality monitoring
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional
from datetime import datetime
from enum import Enum
import asyncio
import json
import logging

from fastapi import WebSocket
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from trial_signal_monitor.api.services.notification_service import NotificationService, TaskNotificationData
from trial_signal_monitor.core.error_handling import MonitoringError, TrialNotFoundError
from trial_signal_monitor.core.materializer import (
    MONITORING_DUE_DAYS,
    calculate_due_date,
    generate_detection_id,
    generate_monitoring_task_id,
)
from trial_signal_monitor.core.quality_checks import MonitoringOptions, determine_task_assignee, run_quality_checks
from trial_signal_monitor.models.data_models import (
    DetectionSource,
    DetectionType,
    SignalDetection,
    SignalStatus,
    Task,
    TaskStatus,
)
from trial_signal_monitor.storage.base import TrialRepository

logger = logging.getLogger(__name__)

DATA_QUALITY_AGENT = 'Data Quality Agent'
DEFAULT_RECOMMENDATION = 'Review and investigate the data quality issue'


class MessageType(str, Enum):
    START_MONITORING = "START_MONITORING"
    STOP_MONITORING = "STOP_MONITORING"
    STATUS = "STATUS"
    DATA_QUALITY_RESULT = "DATA_QUALITY_RESULT"
    ERROR = "ERROR"


class MonitoringState(str, Enum):
    IDLE = "idle"
    MONITORING = "monitoring"


def create_message(message_type: MessageType, data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'type': message_type.value,
        'data': data,
        'timestamp': datetime.now().isoformat()
    }


class ConnectionManager:
    """Manages WebSocket connections"""

    def __init__(self, max_connections: int = 100):
        self.active_connections: List[WebSocket] = []
        self.max_connections = max_connections
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> bool:
        """Accept and store WebSocket connection; refuses beyond the limit"""
        await websocket.accept()
        async with self._lock:
            if len(self.active_connections) >= self.max_connections:
                logger.warning("WebSocket connection limit reached, closing new connection")
                await websocket.close(code=1013)
                return False
            self.active_connections.append(websocket)
        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")
        return True

    def disconnect(self, websocket: WebSocket):
        """Remove WebSocket connection"""
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def disconnect_all(self):
        """Disconnect all WebSocket connections"""
        async with self._lock:
            for connection in self.active_connections:
                try:
                    await connection.close()
                except Exception as e:
                    logger.debug(f"Error closing WebSocket: {e}")
            self.active_connections.clear()


class RepositoryDataProvider:
    """Supplies the records the checkers run against, read from the repository"""

    def __init__(self, repository: TrialRepository):
        self.repository = repository

    async def get_records(self, trial_id: int, source: str) -> List[Dict[str, Any]]:
        return await self.repository.get_domain_records(trial_id, source)


class DataQualityMonitor:
    """
    One monitoring check: collect records, run the enabled checkers, then
    create a signal per issue and a task plus notification for every
    Critical or High issue.
    """

    def __init__(
        self,
        repository: TrialRepository,
        data_provider: RepositoryDataProvider,
        notification_service: NotificationService
    ):
        self.repository = repository
        self.data_provider = data_provider
        self.notification_service = notification_service

    async def process(self, trial_id: int, sources: List[str], options: MonitoringOptions) -> Dict[str, list]:
        trial = await self.repository.get_trial(trial_id)
        if trial is None:
            raise TrialNotFoundError(trial_id)

        data = {source: await self.data_provider.get_records(trial_id, source) for source in sources}
        issues = run_quality_checks(data, sources, options)

        signals: List[SignalDetection] = []
        tasks: List[Task] = []
        for issue in issues:
            try:
                signal = await self.repository.create_signal_detection(
                    detection_id=generate_detection_id(DetectionSource.DATA_QUALITY.value),
                    title=issue.title,
                    detection_type=DetectionType.AUTOMATED.value,
                    trial_id=trial.id,
                    data_reference=issue.source,
                    observation=issue.description,
                    priority=issue.severity.value,
                    status=SignalStatus.DETECTED.value,
                    detection_date=datetime.now(),
                    created_by=DATA_QUALITY_AGENT,
                    assigned_to='Data Manager',
                    due_date=calculate_due_date(issue.severity, MONITORING_DUE_DAYS),
                    recommendation=issue.recommendation or DEFAULT_RECOMMENDATION
                )
                signals.append(signal)

                if not issue.severity.is_high_severity:
                    continue

                task = await self.repository.create_task(
                    task_id=generate_monitoring_task_id(),
                    title=f"Resolve {issue.title}",
                    description=f"{issue.description}\n\nRecommendation: {issue.recommendation}",
                    priority=issue.severity.value,
                    status=TaskStatus.NOT_STARTED.value,
                    trial_id=trial.id,
                    detection_id=signal.id,
                    assigned_to=determine_task_assignee(issue.severity, issue.source),
                    due_date=calculate_due_date(issue.severity, MONITORING_DUE_DAYS),
                    source=issue.source,
                    source_id=str(signal.id),
                    source_type='signal_detection',
                    created_by=DATA_QUALITY_AGENT,
                    data_context={'issueType': issue.type, 'detectionId': signal.detection_id}
                )
                tasks.append(task)

                await self.notification_service.send_task_notification(TaskNotificationData(
                    task_id=task.task_id,
                    task_title=task.title,
                    due_date=task.due_date.isoformat(),
                    priority=issue.severity.value,
                    assigned_role=task.assigned_to or 'Data Quality Manager',
                    description=task.description,
                    trial_id=trial.protocol_id
                ))
            except Exception as e:
                logger.error(f"Error creating signal or task for '{issue.title}': {e}")

        if tasks:
            logger.info(f"Created {len(tasks)} tasks for high severity data quality issues")
        return {'issues': issues, 'signals': signals, 'tasks': tasks}


class StartMonitoringCommand(BaseModel):
    """Payload of START_MONITORING"""
    model_config = ConfigDict(populate_by_name=True)

    trial_id: int = Field(alias="trialId", gt=0)
    sources: List[str] = Field(min_length=1)
    options: Optional[MonitoringOptions] = None


def _serialize_results(results: Dict[str, list]) -> Dict[str, list]:
    return {key: [item.to_dict() for item in items] for key, items in results.items()}


class MonitoringSession:
    """
    Per-connection monitoring state machine (idle / monitoring).

    Checks never overlap: a timer tick that finds a check in progress is
    skipped. ``stop`` is synchronous and safe to call in any state.
    """

    def __init__(
        self,
        send: Callable[[Dict[str, Any]], Awaitable[None]],
        monitor: DataQualityMonitor,
        interval_seconds: float = 60
    ):
        self._send = send
        self.monitor = monitor
        self.interval_seconds = interval_seconds
        self.state = MonitoringState.IDLE
        self.trial_id: Optional[int] = None
        self.sources: List[str] = []
        self.options = MonitoringOptions()
        self._timer: Optional[asyncio.Task] = None
        self._check_lock = asyncio.Lock()
        self._generation = 0

    @property
    def is_monitoring(self) -> bool:
        return self.state == MonitoringState.MONITORING

    async def send(self, message_type: MessageType, data: Dict[str, Any]):
        await self._send(create_message(message_type, data))

    async def send_connected(self):
        await self.send(MessageType.STATUS, {
            'message': 'Connected to real-time data quality monitoring service',
            'status': 'connected'
        })

    async def handle_message(self, raw: str):
        """Dispatch one inbound text frame"""
        try:
            message = json.loads(raw)
            if not isinstance(message, dict):
                raise MonitoringError("Message must be a JSON object")
            message_type = message.get('type')
            data = message.get('data') or {}

            if message_type == MessageType.START_MONITORING.value:
                await self.start(data)
            elif message_type == MessageType.STOP_MONITORING.value:
                self.stop()
                await self.send(MessageType.STATUS, {'message': 'Real-time monitoring stopped'})
            else:
                await self.send(MessageType.ERROR, {'message': f"Unknown message type: {message_type}"})
        except Exception as e:
            logger.error(f"Error processing WebSocket message: {e}")
            await self.send(MessageType.ERROR, {'message': 'Error processing message', 'error': str(e)})

    async def start(self, data: Dict[str, Any]):
        try:
            command = StartMonitoringCommand.model_validate(data)
        except ValidationError as e:
            if any(error['loc'][:1] == ('options',) for error in e.errors()):
                message = 'Invalid monitoring options'
            else:
                message = 'Missing required data: trialId and sources are required'
            await self.send(MessageType.ERROR, {'message': message})
            return

        self.stop()
        self.trial_id = command.trial_id
        self.sources = list(command.sources)
        if command.options is not None:
            self.options = self.options.model_copy(update=command.options.model_dump(exclude_unset=True))
        self.state = MonitoringState.MONITORING

        try:
            async with self._check_lock:
                results = await self.monitor.process(self.trial_id, self.sources, self.options)
            await self._send_results(results)
        except Exception as e:
            logger.error(f"Error in initial data quality check: {e}")
            await self.send(MessageType.ERROR, {'message': 'Error in initial data quality check', 'error': str(e)})

        if self.is_monitoring:
            self._timer = asyncio.create_task(self._run_timer(self._generation))
            await self.send(MessageType.STATUS, {
                'message': 'Real-time monitoring started',
                'settings': {
                    'trialId': self.trial_id,
                    'sources': self.sources,
                    'options': self.options.to_dict()
                }
            })

    def stop(self):
        """
        End the repeating timer; no-op when already idle.

        A check that is already running is left to finish so each signal is
        persisted with its task and notification; the timer loop exits
        on its own once that check returns.
        """
        self._generation += 1
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done() and not self._check_lock.locked():
            timer.cancel()
        if self.is_monitoring:
            logger.info(f"Monitoring stopped for trial {self.trial_id}")
        self.state = MonitoringState.IDLE

    def _timer_active(self, generation: int) -> bool:
        return self.is_monitoring and self._generation == generation

    async def _run_timer(self, generation: int):
        while self._timer_active(generation):
            await asyncio.sleep(self.interval_seconds)
            if not self._timer_active(generation):
                break
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Monitoring timer for trial {self.trial_id} failed: {e}")

    async def tick(self):
        """One scheduled check"""
        if not self.is_monitoring:
            return
        if self._check_lock.locked():
            logger.info(f"Previous check for trial {self.trial_id} still running, skipping tick")
            return

        try:
            async with self._check_lock:
                results = await self.monitor.process(self.trial_id, self.sources, self.options)
            if results['issues']:
                await self._send_results(results)
            else:
                await self.send(MessageType.STATUS, {
                    'message': 'Monitoring active, no new issues detected',
                    'lastCheck': datetime.now().isoformat()
                })
        except Exception as e:
            logger.error(f"Error in scheduled data quality check: {e}")
            await self.send(MessageType.ERROR, {'message': 'Error in scheduled data quality check', 'error': str(e)})

    async def _send_results(self, results: Dict[str, list]):
        await self.send(MessageType.DATA_QUALITY_RESULT, _serialize_results(results))
        task_count = len(results['tasks'])
        if task_count:
            await self.send(MessageType.STATUS, {
                'message': (
                    f"Created {task_count} tasks for high severity issues. "
                    f"These tasks have been assigned to the appropriate team members."
                ),
                'taskCount': task_count
            })

    def close(self):
        """Connection closed"""
        self.stop()
