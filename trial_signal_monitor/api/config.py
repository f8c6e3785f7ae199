"""
API Configuration
Centralized settings using Pydantic BaseSettings for environment-based configuration
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Optional
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",
        extra="ignore"
    )

    # Application
    app_name: str = "Trial Signal Monitor API"
    app_version: str = "1.0.0"
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Server
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")

    # CORS
    cors_allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173",
        description="Comma-separated list of allowed CORS origins"
    )

    # Storage
    storage_backend: str = Field(default="memory", description="Repository backend: memory or sql")
    database_url: str = Field(default="sqlite:///./trial_signals.db", description="SQLAlchemy database URL")

    # OpenAI/LLM settings
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    openai_model: str = Field(default="gpt-4o", description="OpenAI model to use")
    llm_enabled: bool = Field(default=True, description="Enable LLM features")
    llm_temperature: float = Field(default=0.1, description="Sampling temperature for detection prompts")
    llm_timeout_seconds: int = Field(default=60, description="OpenAI request timeout in seconds")

    # Monitoring / WebSocket settings
    monitoring_interval_seconds: float = Field(default=60, description="Live monitoring check interval in seconds")
    ws_max_connections: int = Field(default=100, description="Maximum WebSocket connections")

    # Data loading
    seed_data_path: Optional[str] = Field(default=None, description="JSON file of trials and records loaded at startup")

    @property
    def cors_origins_list(self) -> List[str]:
        """Get CORS origins as a list"""
        return [origin.strip() for origin in self.cors_allowed_origins.split(",") if origin.strip()]

    @property
    def llm_available(self) -> bool:
        """Check if LLM is available (API key set and enabled)"""
        return self.llm_enabled and bool(self.openai_api_key)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance (singleton pattern)"""
    return Settings()


# Service singletons
_services = {}


def get_service(service_name: str):
    """Get or create a singleton service instance"""
    global _services

    if service_name not in _services:
        settings = get_settings()
        if service_name == "repository":
            from trial_signal_monitor.storage import create_repository
            _services[service_name] = create_repository(settings.storage_backend, settings.database_url)
        elif service_name == "notification_service":
            from trial_signal_monitor.api.services.notification_service import NotificationService
            _services[service_name] = NotificationService()
        elif service_name == "signal_detector":
            from trial_signal_monitor.core.llm_detector import LLMConfig, LLMSignalDetector
            # Only built with a key; otherwise detection stays rule-based
            _services[service_name] = (
                LLMSignalDetector(LLMConfig.from_settings(settings)) if settings.llm_available else None
            )
        elif service_name == "detection_service":
            from trial_signal_monitor.api.services.detection_service import DetectionService
            _services[service_name] = DetectionService(
                get_service("repository"),
                detector=get_service("signal_detector")
            )
        elif service_name == "data_quality_monitor":
            from trial_signal_monitor.api.services.realtime_service import DataQualityMonitor, RepositoryDataProvider
            repository = get_service("repository")
            _services[service_name] = DataQualityMonitor(
                repository,
                RepositoryDataProvider(repository),
                get_service("notification_service")
            )
        elif service_name == "ingestion_service":
            from trial_signal_monitor.api.services.ingestion_service import IngestionService
            _services[service_name] = IngestionService(get_service("repository"))
        elif service_name == "connection_manager":
            from trial_signal_monitor.api.services.realtime_service import ConnectionManager
            _services[service_name] = ConnectionManager(max_connections=settings.ws_max_connections)
        else:
            raise ValueError(f"Unknown service: {service_name}")

    return _services[service_name]


async def cleanup_services():
    """Cleanup services during shutdown"""
    global _services
    connection_manager = _services.get("connection_manager")
    if connection_manager is not None:
        await connection_manager.disconnect_all()
    repository = _services.get("repository")
    if repository is not None:
        await repository.close()
    _services.clear()
