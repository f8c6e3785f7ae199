"""
Detection API Router
Endpoints for signal detection and cross-source data review
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field
import logging

from trial_signal_monitor.api.config import get_service
from trial_signal_monitor.core.error_handling import ClinicalDataError
from trial_signal_monitor.core.quality_checks import MonitoringOptions
from trial_signal_monitor.models.data_models import DetectionType

logger = logging.getLogger(__name__)

router = APIRouter()


def get_detection_service():
    """Dependency to get the singleton DetectionService"""
    return get_service("detection_service")


# ============== Pydantic Models ==============

class DetectionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    trial_id: int = Field(alias="trialId")
    data_source: str = Field(alias="dataSource", min_length=1)
    data_points: List[Dict[str, Any]] = Field(alias="dataPoints")
    detection_type: DetectionType = Field(default=DetectionType.RULE_BASED, alias="detectionType")
    use_ai: bool = Field(default=False, alias="useAI")


class DataReviewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    trial_id: int = Field(alias="trialId")
    sources: List[str] = Field(default_factory=list)
    options: Optional[MonitoringOptions] = None


class DetectionResponse(BaseModel):
    success: bool
    detections: List[Dict[str, Any]]
    method: str
    message: str


class DataReviewResponse(DetectionResponse):
    reviewedSources: List[str]
    options: Dict[str, bool]


# ============== Endpoints ==============

@router.post("/detectsignals", response_model=DetectionResponse)
async def detect_signals(request: DetectionRequest, service=Depends(get_detection_service)):
    """Run rule-based (or AI-assisted) detection on a batch of source records"""
    try:
        return await service.detect_signals(
            request.trial_id,
            request.data_source,
            request.data_points,
            detection_type=request.detection_type.value,
            use_ai=request.use_ai
        )
    except ClinicalDataError:
        raise
    except Exception as e:
        logger.error(f"Error in signal detection: {e}")
        return JSONResponse(
            status_code=500,
            content={'error': 'Error processing detection request', 'message': str(e)}
        )


@router.post("/reviewdata", response_model=DataReviewResponse)
async def review_data(request: DataReviewRequest, service=Depends(get_detection_service)):
    """Review a trial's connected data sources for known inconsistency patterns"""
    try:
        return await service.review_data_across_sources(
            request.trial_id,
            sources=request.sources,
            options=request.options
        )
    except ClinicalDataError:
        raise
    except Exception as e:
        logger.error(f"Error in data review: {e}")
        return JSONResponse(
            status_code=500,
            content={'error': 'Error processing data review request', 'message': str(e)}
        )
