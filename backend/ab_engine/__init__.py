# backend/ab_engine/__init__.py
"""
A/B experiment engine: audience sampling, variant allocation, the
assignment ledger, significance testing, lifecycle and winner rollout.
"""
from .collaborators import (
    AudienceStore,
    BackgroundScheduler,
    CampaignQueue,
    MongoAudienceStore,
    MongoCampaignQueue,
    QueuedCampaign,
    RolloutPlan,
)
from .errors import ABTestError, ExperimentNotFoundError, ExperimentValidationError
from .lifecycle import ExperimentController
from .rollout import RolloutExecutor
from .sampler import Contact

__all__ = [
    'ABTestError',
    'ExperimentNotFoundError',
    'ExperimentValidationError',
    'AudienceStore',
    'BackgroundScheduler',
    'CampaignQueue',
    'MongoAudienceStore',
    'MongoCampaignQueue',
    'QueuedCampaign',
    'RolloutPlan',
    'Contact',
    'ExperimentController',
    'RolloutExecutor',
]
