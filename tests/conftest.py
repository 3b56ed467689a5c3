"""
Shared fixtures for the A/B experiment engine test suite.

Everything runs against an in-memory MongoDB (mongomock-motor) with a
seeded random source; the scheduler and the campaign queue only record
what they were handed, so tests drive the deferred steps explicitly.
"""
import random
from typing import Dict, Iterable, List

import pytest
from mongomock_motor import AsyncMongoMockClient

from ab_engine import (
    AudienceStore,
    BackgroundScheduler,
    CampaignQueue,
    Contact,
    ExperimentController,
    QueuedCampaign,
    RolloutExecutor,
)


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------

class RecordingScheduler(BackgroundScheduler):
    def __init__(self):
        self.assignments: List[str] = []
        self.recomputes: List[str] = []

    def schedule_assignment(self, experiment_id: str) -> None:
        self.assignments.append(experiment_id)

    def schedule_recompute(self, experiment_id: str) -> None:
        self.recomputes.append(experiment_id)


class FakeAudienceStore(AudienceStore):
    def __init__(self, contacts: Iterable[Contact]):
        self.contacts = list(contacts)

    async def list_active_contacts(self, owner_id: str) -> List[Contact]:
        return list(self.contacts)

    async def lookup_by_address(self, addresses: Iterable[str]) -> List[Contact]:
        wanted = set(addresses)
        return [contact for contact in self.contacts if contact.address in wanted]


class FakeCampaignQueue(CampaignQueue):
    def __init__(self):
        self.handoffs = []

    async def create_rollout_campaign(self, experiment, plan) -> QueuedCampaign:
        self.handoffs.append((experiment, plan))
        return QueuedCampaign(
            campaign_id=f"campaign-{len(self.handoffs)}",
            batch_id=f"batch-{len(self.handoffs)}",
            queued=len(plan.recipients),
        )


# ---------------------------------------------------------------------------
# Data builders
# ---------------------------------------------------------------------------

def make_contacts(count: int, tags=None, company=None, start: int = 0) -> List[Contact]:
    return [
        Contact(
            address=f"user{index}@example.com",
            tags=list(tags or ["newsletter"]),
            company=company,
            total_sent=10,
            total_opened=5,
            total_clicked=1,
        )
        for index in range(start, start + count)
    ]


def experiment_payload(owner_id: str = "owner-1", test_percentage: float = 100,
                       primary: str = "open_rate", confidence: int = 95,
                       automatic_winner: bool = False, segment_filters: Dict = None,
                       test_duration: Dict = None, criteria: Dict = None,
                       conversion_value: float = None) -> Dict:
    return {
        "owner_id": owner_id,
        "name": "Subject line test",
        "description": "Short vs long subject",
        "type": "subject_line",
        "test_configuration": {
            "audience_settings": {
                "total_audience": 0,
                "test_percentage": test_percentage,
                "segment_filters": segment_filters,
            },
            "success_metrics": {
                "primary": primary,
                "secondary": [],
                "conversion_goal": {"url": None, "value": conversion_value} if conversion_value else None,
            },
            "statistical_settings": {
                "confidence_level": confidence,
                "minimum_detectable_effect": 10,
                "test_duration": test_duration or {"type": "sequential", "max_days": None, "min_sample_size": None},
                "automatic_winner": automatic_winner,
                "winner_selection_criteria": criteria,
            },
        },
    }


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db():
    return AsyncMongoMockClient()["ab_engine_test"]


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def contacts():
    return make_contacts(400)


@pytest.fixture
def audience(contacts):
    return FakeAudienceStore(contacts)


@pytest.fixture
def campaign_queue():
    return FakeCampaignQueue()


@pytest.fixture
def controller(db, scheduler, audience):
    return ExperimentController(
        db, scheduler, audience, rng=random.Random(42),
        min_sample_size=30, default_confidence=95, tie_break="highest_metric", statistical_power=0.8,
    )


@pytest.fixture
def rollout(db, audience, campaign_queue):
    return RolloutExecutor(db, audience, campaign_queue)


@pytest.fixture
def build_experiment(controller):
    """Async builder: a draft experiment with variants A (control), B, ..."""

    async def build(allocations=(50, 50), **payload):
        experiment = await controller.create_experiment(experiment_payload(**payload))
        variants = []
        for index, allocation in enumerate(allocations):
            letter = chr(ord("A") + index)
            variants.append(await controller.add_variant(experiment["_id"], {
                "name": f"Variant {letter}",
                "is_control": index == 0,
                "traffic_allocation": allocation,
                "campaign_config": {
                    "subject": f"Subject {letter}",
                    "custom_content": f"<p>Body {letter}</p>",
                    "from_name": f"Sender {letter}",
                    "from_email": "team@example.com",
                },
            }))
        return experiment, variants

    return build


@pytest.fixture
def running_experiment(build_experiment, controller):
    """Async builder: started and assigned experiment"""

    async def build(allocations=(50, 50), **payload):
        experiment, variants = await build_experiment(allocations, **payload)
        await controller.start_experiment(experiment["_id"])
        await controller.assign_recipients(experiment["_id"])
        return experiment, variants

    return build


async def set_counters(controller, variant, **counters):
    """Bump a variant's Result counters as if the events had been ingested"""
    return await controller.ledger.apply_increments(variant["_id"], counters)
