"""
Shared fixtures for the Trial Signal Monitor test suite
"""

import pytest

from trial_signal_monitor.models.data_models import Trial, parse_domain_records
from trial_signal_monitor.storage.memory import InMemoryTrialRepository


@pytest.fixture
def trial():
    """Active phase 2 trial used by the pure evaluator tests"""
    return Trial(id=1, protocol_id="PRO001", title="Cardio Outcomes Study", phase="2", status="active")


@pytest.fixture
def records():
    """Factory validating raw rows for a detection source"""
    def _build(source, rows):
        return parse_domain_records(source, rows)
    return _build


@pytest.fixture
async def repository():
    """In-memory repository seeded with one trial, two sites and three connected sources"""
    repo = InMemoryTrialRepository()
    await repo.create_trial(
        protocol_id="PRO001",
        title="Cardio Outcomes Study",
        phase="2",
        status="active",
        indication="Heart Failure"
    )
    await repo.create_site(site_id="Site 123", name="Boston General", trial_id=1)
    await repo.create_site(site_id="Site 456", name="Lakeside Clinic", trial_id=1)
    for domain, source in (("LB", "EDC"), ("LB", "Lab Results"), ("SV", "CTMS")):
        await repo.create_domain_source(trial_id=1, domain=domain, source=source)
    yield repo
    await repo.close()


@pytest.fixture
async def seeded_trial(repository):
    return await repository.get_trial(1)
