"""
API Services Package
"""

from trial_signal_monitor.api.services.detection_service import DetectionService
from trial_signal_monitor.api.services.ingestion_service import IngestionService
from trial_signal_monitor.api.services.notification_service import NotificationService, TaskNotificationData
from trial_signal_monitor.api.services.realtime_service import (
    ConnectionManager,
    DataQualityMonitor,
    MonitoringSession,
    RepositoryDataProvider,
)

__all__ = [
    'DetectionService',
    'IngestionService',
    'NotificationService',
    'TaskNotificationData',
    'ConnectionManager',
    'DataQualityMonitor',
    'MonitoringSession',
    'RepositoryDataProvider'
]
