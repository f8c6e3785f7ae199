"""
FastAPI Main Application
Signal detection and real-time data quality monitoring API server
"""

from datetime import datetime
from typing import Dict
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.middleware.gzip import GZipMiddleware
import uvicorn

from trial_signal_monitor.api.config import get_settings, get_service, cleanup_services
from trial_signal_monitor.api.routers import detection, signals, trials
from trial_signal_monitor.api.services.realtime_service import MonitoringSession
from trial_signal_monitor.core.error_handling import ClinicalDataError, DataValidationError, TrialNotFoundError

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.app_name}...")
    try:
        # Build the repository eagerly so storage errors surface at startup
        get_service("repository")
        if settings.seed_data_path:
            await get_service("ingestion_service").seed_if_empty(settings.seed_data_path)
        logger.info(
            f"Storage backend: {settings.storage_backend}; "
            f"LLM detection {'enabled' if settings.llm_available else 'disabled'}"
        )
        yield
    except asyncio.CancelledError:
        logger.info("Received shutdown signal...")
    finally:
        try:
            logger.info("Shutting down API server...")
            await cleanup_services()
            logger.info("API server shutdown complete")
        except asyncio.CancelledError:
            logger.info("Cleanup interrupted, forcing shutdown...")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")


# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Clinical trial signal detection, task generation and live data quality monitoring",
    version=settings.app_version,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    lifespan=lifespan
)

# ============== Middleware ==============
app.add_middleware(GZipMiddleware, minimum_size=500)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    max_age=600,
)


# ============== Error Handlers ==============

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={'error': 'Invalid request data', 'details': jsonable_encoder(exc.errors())}
    )


@app.exception_handler(DataValidationError)
async def data_validation_handler(request: Request, exc: DataValidationError):
    details = exc.details.get('errors') or [exc.to_dict()]
    return JSONResponse(
        status_code=400,
        content={'error': 'Invalid request data', 'message': str(exc), 'details': jsonable_encoder(details)}
    )


@app.exception_handler(TrialNotFoundError)
async def trial_not_found_handler(request: Request, exc: TrialNotFoundError):
    return JSONResponse(status_code=404, content={'error': 'Trial not found'})


@app.exception_handler(ClinicalDataError)
async def clinical_data_error_handler(request: Request, exc: ClinicalDataError):
    logger.error(f"Unhandled {exc.error_code} on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={'error': 'Error processing request', 'message': str(exc)}
    )


# ============== Routers ==============
app.include_router(detection.router, prefix="/api/ai", tags=["Signal Detection"])
app.include_router(signals.router, prefix="/api", tags=["Signals & Tasks"])
app.include_router(trials.router, prefix="/api", tags=["Trials & Ingestion"])


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    services: Dict[str, str]


@app.get("/api/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now().isoformat(),
        version=settings.app_version,
        services={
            "storage": settings.storage_backend,
            "llm_detector": "active" if settings.llm_available else "disabled",
            "websocket": "active"
        }
    )


@app.websocket("/ws/data-quality")
async def websocket_data_quality(websocket: WebSocket):
    """
    Real-time data quality monitoring.

    Inbound START_MONITORING / STOP_MONITORING commands drive one
    monitoring session per connection.
    """
    connection_manager = get_service("connection_manager")
    if not await connection_manager.connect(websocket):
        return

    session = MonitoringSession(
        websocket.send_json,
        get_service("data_quality_monitor"),
        interval_seconds=settings.monitoring_interval_seconds
    )
    try:
        await session.send_connected()
        while True:
            data = await websocket.receive_text()
            await session.handle_message(data)
    except WebSocketDisconnect:
        logger.info("Client disconnected from data quality WebSocket")
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        session.close()
        connection_manager.disconnect(websocket)


# ============== Main Entry Point ==============

if __name__ == "__main__":
    uvicorn.run(
        "trial_signal_monitor.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
