"""
Ingestion Service
Registers trials, their sites and connected sources, and stores the source
records the live monitor checks
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import json
import logging

from pydantic import BaseModel, ConfigDict, Field

from trial_signal_monitor.core.error_handling import DataValidationError, TrialNotFoundError
from trial_signal_monitor.models.data_models import Site, Trial
from trial_signal_monitor.storage.base import TrialRepository

logger = logging.getLogger(__name__)


# ============== Pydantic Models ==============

class SiteCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    site_id: str = Field(alias="siteId", min_length=1)
    name: str = ""


class DomainSourceCreate(BaseModel):
    domain: str = Field(min_length=1)
    source: str = Field(min_length=1)


class TrialCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    protocol_id: str = Field(alias="protocolId", min_length=1)
    title: str = Field(min_length=1)
    phase: str = ""
    status: str = "active"
    therapeutic_area: Optional[str] = Field(default=None, alias="therapeuticArea")
    indication: Optional[str] = None
    sites: List[SiteCreate] = Field(default_factory=list)
    sources: List[DomainSourceCreate] = Field(default_factory=list)


class SeedTrial(TrialCreate):
    """A trial in a seed file, with records keyed by source name"""
    records: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)


class SeedData(BaseModel):
    trials: List[SeedTrial] = Field(default_factory=list)


class IngestionService:
    """
    Write-side counterpart of the detection service: everything a fresh
    deployment needs before detection and monitoring can find a trial.
    """

    def __init__(self, repository: TrialRepository):
        self.repository = repository

    async def _get_trial(self, trial_id: int) -> Trial:
        trial = await self.repository.get_trial(trial_id)
        if trial is None:
            raise TrialNotFoundError(trial_id)
        return trial

    async def create_trial(self, request: TrialCreate) -> Dict[str, Any]:
        """Create a trial together with its sites and connected sources"""
        trial = await self.repository.create_trial(
            protocol_id=request.protocol_id,
            title=request.title,
            phase=request.phase,
            status=request.status,
            therapeutic_area=request.therapeutic_area,
            indication=request.indication
        )
        for site in request.sites:
            await self.add_site(trial.id, site)
        for domain_source in request.sources:
            await self.repository.create_domain_source(
                trial_id=trial.id,
                domain=domain_source.domain,
                source=domain_source.source
            )
        logger.info(f"Registered trial {trial.protocol_id} with id {trial.id}")
        return await self.get_trial(trial.id)

    async def get_trial(self, trial_id: int) -> Dict[str, Any]:
        trial = await self._get_trial(trial_id)
        sources = await self.repository.get_domain_sources_by_trial_id(trial_id)
        return dict(trial.to_dict(), sources=[source.to_dict() for source in sources])

    async def add_site(self, trial_id: int, request: SiteCreate) -> Site:
        await self._get_trial(trial_id)
        return await self.repository.create_site(site_id=request.site_id, name=request.name, trial_id=trial_id)

    async def add_records(self, trial_id: int, source: str, records: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Append raw records for one source, as read by the live monitor"""
        await self._get_trial(trial_id)
        added = await self.repository.add_domain_records(trial_id, source, records)
        logger.info(f"Stored {added} {source} records for trial {trial_id}")
        return {'trialId': trial_id, 'source': source, 'added': added}

    async def load_seed_file(self, path: Union[str, Path]) -> List[Trial]:
        """
        Load trials from a JSON seed file of the form
        ``{"trials": [{"protocolId": ..., "sites": [...], "sources": [...], "records": {"EDC": [...]}}]}``.
        """
        path = Path(path)
        try:
            seed = SeedData.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError) as e:
            # pydantic ValidationError subclasses ValueError
            raise DataValidationError(f"Cannot load seed file {path}: {e}", field="seed_data_path") from e

        trials = []
        for seed_trial in seed.trials:
            created = await self.create_trial(seed_trial)
            for source, records in seed_trial.records.items():
                await self.add_records(created['id'], source, records)
            trials.append(await self._get_trial(created['id']))
        logger.info(f"Seeded {len(trials)} trials from {path}")
        return trials

    async def seed_if_empty(self, path: Union[str, Path]) -> List[Trial]:
        """Startup seeding; skipped when a persistent store already holds trials"""
        # Ids start at 1 in both repository backends
        if await self.repository.get_trial(1) is not None:
            logger.info(f"Repository already holds trials, not loading {path}")
            return []
        return await self.load_seed_file(path)
