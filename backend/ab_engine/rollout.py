"""Rollout executor: send the winning variant to the untested remainder."""
import logging
import math
from datetime import datetime
from typing import Any, Dict, Union

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from core.config import settings
from models.ab_test import InsightType, TestStatus
from .collaborators import AudienceStore, CampaignQueue, RolloutPlan
from .errors import ExperimentNotFoundError, ExperimentValidationError
from .insights import record_insight
from .ledger import AssignmentLedger
from .lifecycle import to_object_id
from .sampler import filter_eligible

logger = logging.getLogger(__name__)


class RolloutExecutor:
    def __init__(self, db: AsyncIOMotorDatabase, audience: AudienceStore, campaign_queue: CampaignQueue):
        self.db = db
        self.audience = audience
        self.campaign_queue = campaign_queue
        self.ledger = AssignmentLedger(db)

    async def _winning_experiment(self, experiment_id: Union[str, ObjectId]) -> Dict[str, Any]:
        oid = to_object_id(experiment_id)
        experiment = await self.db.ab_tests.find_one({"_id": oid})
        if not experiment:
            raise ExperimentNotFoundError("Experiment", experiment_id)

        if experiment.get("status") != TestStatus.COMPLETED.value or not experiment.get("winning_variant_id"):
            raise ExperimentValidationError("Test must be completed with a winner before rollout")
        return experiment

    async def materialize_rollout(self, experiment_id: Union[str, ObjectId],
                                  rollout_percentage: float = 100) -> RolloutPlan:
        """Recipients and content for a rollout, without side effects.

        The audience is re-derived from the tag and company filters only;
        the engagement range is not reapplied. Every address already in the
        ledger is excluded before the percentage cap.
        """
        if not 0 < rollout_percentage <= 100:
            raise ExperimentValidationError("Rollout percentage must be between 0 and 100")

        experiment = await self._winning_experiment(experiment_id)

        variant = await self.db.ab_test_variants.find_one({"_id": experiment["winning_variant_id"]})
        if not variant:
            raise ExperimentNotFoundError("Variant", experiment["winning_variant_id"])

        segment_filters = (
            (experiment.get("test_configuration") or {}).get("audience_settings") or {}
        ).get("segment_filters")

        contacts = await self.audience.list_active_contacts(experiment["owner_id"])
        eligible = filter_eligible(contacts, segment_filters, apply_engagement=False)
        tested = await self.ledger.tested_addresses(experiment["_id"])

        remaining = [contact.address for contact in eligible if contact.address not in tested]

        recipients = remaining[:math.floor(len(remaining) * (rollout_percentage / 100))]
        campaign_config = variant.get("campaign_config") or {}

        return RolloutPlan(
            experiment_id=str(experiment["_id"]),
            variant_id=str(variant["_id"]),
            recipients=recipients,
            subject=campaign_config.get("subject", ""),
            body={
                "template_id": campaign_config.get("template_id"),
                "custom_content": campaign_config.get("custom_content"),
            },
            sender={
                "name": campaign_config.get("from_name") or settings.DEFAULT_SENDER_NAME,
                "email": campaign_config.get("from_email") or settings.DEFAULT_SENDER_EMAIL,
            },
            rollout_percentage=rollout_percentage,
            eligible_count=len(eligible),
            excluded_count=len(eligible) - len(remaining),
        )

    async def execute_rollout(self, experiment_id: Union[str, ObjectId],
                              rollout_percentage: float = 100) -> Dict[str, Any]:
        """Hand the rollout to the campaign queue; at most once per experiment"""
        plan = await self.materialize_rollout(experiment_id, rollout_percentage)
        if not plan.recipients:
            raise ExperimentValidationError("No remaining recipients to roll out to")

        oid = ObjectId(plan.experiment_id)
        claimed = await self.db.ab_tests.find_one_and_update(
            {"_id": oid, "status": TestStatus.COMPLETED.value, "rollout": {"$exists": False}},
            {"$set": {"rollout": {
                "status": "in_progress",
                "rollout_percentage": rollout_percentage,
                "started_at": datetime.utcnow(),
            }}},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            raise ExperimentValidationError("Rollout already executed for this test")

        try:
            queued = await self.campaign_queue.create_rollout_campaign(claimed, plan)
        except Exception:
            # release the claim so the rollout can be retried
            await self.db.ab_tests.update_one({"_id": oid}, {"$unset": {"rollout": ""}})
            raise

        rollout = {
            "status": "queued",
            "campaign_id": queued.campaign_id,
            "batch_id": queued.batch_id,
            "recipient_count": len(plan.recipients),
            "rollout_percentage": rollout_percentage,
            "started_at": claimed["rollout"]["started_at"],
            "queued_at": datetime.utcnow(),
        }
        await self.db.ab_tests.update_one({"_id": oid}, {"$set": {"rollout": rollout}})

        await record_insight(
            self.db, oid, InsightType.WINNER_DECLARED,
            "Winner Rolled Out",
            f"Winning variant rolled out to {len(plan.recipients)} recipients "
            f"({rollout_percentage}% of remaining audience)",
            data={
                "campaign_id": queued.campaign_id,
                "winner_variant_id": plan.variant_id,
                "recipient_count": len(plan.recipients),
                "rollout_percentage": rollout_percentage,
            },
        )

        logger.info(f"🚀 A/B test {oid} rolled out to {len(plan.recipients)} recipients via campaign {queued.campaign_id}")
        return {
            "experiment_id": plan.experiment_id,
            "campaign_id": queued.campaign_id,
            "batch_id": queued.batch_id,
            "recipient_count": len(plan.recipients),
            "rollout_percentage": rollout_percentage,
        }
