"""
Signals API Router
Read-side endpoints for persisted signal detections and tasks
"""

from fastapi import APIRouter, HTTPException, Query, Depends
from typing import Optional
import logging

from trial_signal_monitor.api.config import get_service

logger = logging.getLogger(__name__)

router = APIRouter()


def get_detection_service():
    """Dependency to get the singleton DetectionService"""
    return get_service("detection_service")


@router.get("/signals")
async def list_signals(
    trial_id: Optional[int] = Query(None, description="Filter by trial"),
    service=Depends(get_detection_service)
):
    """List signal detections"""
    try:
        signals = await service.list_signals(trial_id)
        return {'signals': signals, 'total': len(signals)}
    except Exception as e:
        logger.error(f"Error listing signals: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/tasks")
async def list_tasks(
    trial_id: Optional[int] = Query(None, description="Filter by trial"),
    service=Depends(get_detection_service)
):
    """List tasks generated from signals"""
    try:
        tasks = await service.list_tasks(trial_id)
        return {'tasks': tasks, 'total': len(tasks)}
    except Exception as e:
        logger.error(f"Error listing tasks: {e}")
        raise HTTPException(status_code=500, detail=str(e))
