"""
Notification Service
In-app task notifications for roles assigned to monitoring tasks
"""

from typing import Dict, List, Optional
from datetime import datetime
import asyncio
import logging

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

ALWAYS_NOTIFIED_ROLES = ['Principal Investigator', 'Admin']


class TaskNotificationData(BaseModel):
    """Payload of a task notification"""
    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(alias="taskId")
    task_title: str = Field(alias="taskTitle")
    due_date: str = Field(alias="dueDate")
    priority: str
    assigned_role: str = Field(alias="assignedRole")
    description: str = ""
    trial_id: str = Field(alias="trialId")


class NotificationService:
    """
    Service for recording task notifications.

    Sending never raises: a failure is logged and reported as ``False``.
    """

    def __init__(self):
        self.notifications: Dict[str, Dict] = {}
        self._notification_counter = 0
        self._lock = asyncio.Lock()

    async def send_task_notification(self, data: TaskNotificationData) -> bool:
        """Record one notification per recipient role"""
        try:
            recipients = list(dict.fromkeys([data.assigned_role, *ALWAYS_NOTIFIED_ROLES]))
            async with self._lock:
                self._notification_counter += 1
                notification_id = f'NTF{self._notification_counter:05d}'
                self.notifications[notification_id] = {
                    'notification_id': notification_id,
                    'type': 'task_assigned',
                    'title': f"New task: {data.task_title}",
                    'message': data.description,
                    'priority': data.priority,
                    'recipients': recipients,
                    'payload': data.model_dump(by_alias=True),
                    'created_at': datetime.now().isoformat(),
                    'read': False
                }
            logger.info(f"Task notification sent to {data.assigned_role} for task {data.task_id}")
            return True
        except Exception as e:
            logger.error(f"Error sending task notification for {data.task_id}: {e}")
            return False

    async def get_notifications(self, role: Optional[str] = None) -> List[Dict]:
        """Notifications, optionally only those addressed to ``role``"""
        notifications = list(self.notifications.values())
        if role:
            notifications = [n for n in notifications if role in n['recipients']]
        return notifications
