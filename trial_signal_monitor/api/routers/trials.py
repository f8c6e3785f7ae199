"""
Trials API Router
Registration of trials, sites and connected sources, and source record ingestion
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from typing import List, Dict, Any
from pydantic import BaseModel
import logging

from trial_signal_monitor.api.config import get_service
from trial_signal_monitor.api.services.ingestion_service import SiteCreate, TrialCreate
from trial_signal_monitor.core.error_handling import ClinicalDataError

logger = logging.getLogger(__name__)

router = APIRouter()


def get_ingestion_service():
    """Dependency to get the singleton IngestionService"""
    return get_service("ingestion_service")


class RecordsRequest(BaseModel):
    records: List[Dict[str, Any]]


def _server_error(message: str, e: Exception) -> JSONResponse:
    logger.error(f"{message}: {e}")
    return JSONResponse(status_code=500, content={'error': message, 'message': str(e)})


@router.post("/trials", status_code=201)
async def create_trial(request: TrialCreate, service=Depends(get_ingestion_service)):
    """Register a trial with its sites and connected data sources"""
    try:
        return await service.create_trial(request)
    except ClinicalDataError:
        raise
    except Exception as e:
        return _server_error('Error creating trial', e)


@router.get("/trials/{trial_id}")
async def get_trial(trial_id: int, service=Depends(get_ingestion_service)):
    """Trial details with its connected data sources"""
    return await service.get_trial(trial_id)


@router.post("/trials/{trial_id}/sites", status_code=201)
async def add_site(trial_id: int, request: SiteCreate, service=Depends(get_ingestion_service)):
    """Register a site under a trial"""
    try:
        site = await service.add_site(trial_id, request)
        return site.to_dict()
    except ClinicalDataError:
        raise
    except Exception as e:
        return _server_error('Error creating site', e)


@router.post("/trials/{trial_id}/records/{source}", status_code=201)
async def add_records(
    trial_id: int,
    source: str,
    request: RecordsRequest,
    service=Depends(get_ingestion_service)
):
    """Append raw records for one source of a trial"""
    try:
        return await service.add_records(trial_id, source, request.records)
    except ClinicalDataError:
        raise
    except Exception as e:
        return _server_error('Error storing records', e)
