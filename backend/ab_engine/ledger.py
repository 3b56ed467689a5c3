"""Assignment ledger and materialized Result records.

The ab_test_segments collection is the source of truth for who was assigned
to which variant and what happened to them afterwards. Result documents and
the variants' assigned_recipients lists are derived from it.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from models.ab_test import TestStatus
from .metrics import calculate_rates, empty_metrics, fold_events
from .sampler import Contact

logger = logging.getLogger(__name__)

INSERT_BATCH_SIZE = 1000


def _event(event_type: str, metadata: Optional[Dict[str, Any]] = None,
           timestamp: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "type": event_type,
        "timestamp": timestamp or datetime.utcnow(),
        "metadata": metadata or {},
    }


class AssignmentLedger:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.segments = db.ab_test_segments
        self.results = db.ab_test_results
        self.variants = db.ab_test_variants
        self.experiments = db.ab_tests

    # ============================================
    # ASSIGNMENT
    # ============================================

    async def record_assignments(self, experiment_id: ObjectId,
                                 allocations: Sequence[Tuple[Dict[str, Any], List[Contact]]]) -> Dict[str, int]:
        """Write one assignment record per recipient and a zeroed Result per variant"""
        now = datetime.utcnow()
        counts = {}

        for variant, contacts in allocations:
            variant_id = variant["_id"]

            records = [
                {
                    "experiment_id": experiment_id,
                    "variant_id": variant_id,
                    "recipient_email": contact.address,
                    "assigned_at": now,
                    "events": [_event("assigned", timestamp=now)],
                }
                for contact in contacts
            ]
            for start in range(0, len(records), INSERT_BATCH_SIZE):
                await self.segments.insert_many(records[start:start + INSERT_BATCH_SIZE], ordered=False)

            await self.results.update_one(
                {"variant_id": variant_id},
                {
                    "$set": {
                        "experiment_id": experiment_id,
                        "metrics": empty_metrics(),
                        "rates": calculate_rates({}),
                        "statistical_analysis": {"sample_size": len(contacts)},
                        "updated_at": now,
                    }
                },
                upsert=True,
            )
            counts[str(variant_id)] = len(contacts)

        await self.rebuild_recipient_cache(experiment_id)
        return counts

    async def clear_assignments(self, experiment_id: ObjectId) -> None:
        """Drop partial assignment records, Results and recipient caches"""
        deleted = await self.segments.delete_many({"experiment_id": experiment_id})
        await self.results.delete_many({"experiment_id": experiment_id})
        await self.variants.update_many(
            {"experiment_id": experiment_id},
            {"$set": {"assigned_recipients": []}}
        )
        logger.info(f"Cleared {deleted.deleted_count} assignment records for A/B test {experiment_id}")

    async def rebuild_recipient_cache(self, experiment_id: ObjectId) -> None:
        """Recompute every variant's assigned_recipients from the ledger"""
        async for variant in self.variants.find({"experiment_id": experiment_id}, {"_id": 1}):
            addresses = await self.segments.distinct(
                "recipient_email", {"variant_id": variant["_id"]}
            )
            await self.variants.update_one(
                {"_id": variant["_id"]},
                {"$set": {"assigned_recipients": sorted(addresses)}}
            )

    # ============================================
    # EVENTS
    # ============================================

    async def assignments_for_recipient(self, recipient_email: str,
                                        status: str = TestStatus.ACTIVE.value) -> List[Tuple[Dict[str, Any], Dict[str, Any]]]:
        """(experiment, assignment) pairs for a recipient, limited to experiments in `status`"""
        assignments = await self.segments.find(
            {"recipient_email": recipient_email},
            {"experiment_id": 1, "variant_id": 1}
        ).to_list(None)

        if not assignments:
            return []

        experiments = {}
        cursor = self.experiments.find({
            "_id": {"$in": [assignment["experiment_id"] for assignment in assignments]},
            "status": status,
        })
        async for experiment in cursor:
            experiments[experiment["_id"]] = experiment

        return [
            (experiments[assignment["experiment_id"]], assignment)
            for assignment in assignments
            if assignment["experiment_id"] in experiments
        ]

    async def append_event(self, assignment_id: ObjectId, event_type: str,
                           metadata: Optional[Dict[str, Any]] = None) -> bool:
        result = await self.segments.update_one(
            {"_id": assignment_id},
            {"$push": {"events": _event(event_type, metadata)}}
        )
        return result.matched_count == 1

    async def apply_increments(self, variant_id: ObjectId,
                               increments: Dict[str, float]) -> Optional[Dict[str, Any]]:
        """Bump the Result counters and patch the derived rates.

        Returns the updated Result, or None when the variant has no Result.
        """
        if not increments:
            return await self.results.find_one({"variant_id": variant_id})

        result = await self.results.find_one_and_update(
            {"variant_id": variant_id},
            {
                "$inc": {f"metrics.{name}": amount for name, amount in increments.items()},
                "$set": {"updated_at": datetime.utcnow()},
            },
            return_document=ReturnDocument.AFTER,
        )
        if result is None:
            return None

        rates = calculate_rates(result["metrics"])

        # only stick if no other writer moved the counters since our $inc
        guard = {"_id": result["_id"]}
        guard.update({f"metrics.{name}": value for name, value in result["metrics"].items()})
        await self.results.update_one(guard, {"$set": {"rates": rates}})

        result["rates"] = rates
        return result

    # ============================================
    # READS
    # ============================================

    async def results_for(self, experiment_id: ObjectId) -> List[Dict[str, Any]]:
        return await self.results.find({"experiment_id": experiment_id}).to_list(None)

    async def tested_addresses(self, experiment_id: ObjectId) -> Set[str]:
        """Every address holding an assignment record in the experiment"""
        addresses = await self.segments.distinct("recipient_email", {"experiment_id": experiment_id})
        return set(addresses)

    async def participant_count(self, experiment_ids: Sequence[ObjectId]) -> int:
        if not experiment_ids:
            return 0
        return await self.segments.count_documents({"experiment_id": {"$in": list(experiment_ids)}})

    # ============================================
    # ANALYSIS / REPAIR
    # ============================================

    async def write_analysis(self, variant_id: ObjectId, analysis: Dict[str, Any]) -> None:
        """Overwrite analysis fields; sample_size and anything not given stay put"""
        fields = {f"statistical_analysis.{key}": value for key, value in analysis.items()}
        fields["updated_at"] = datetime.utcnow()
        await self.results.update_one({"variant_id": variant_id}, {"$set": fields})

    async def rebuild_metrics(self, experiment_id: ObjectId,
                              default_conversion_value: Optional[float] = None) -> Dict[str, Dict[str, float]]:
        """Refold every variant's counters from the ledger and overwrite its Result"""
        rebuilt = {}

        async for variant in self.variants.find({"experiment_id": experiment_id}, {"_id": 1}):
            metrics = empty_metrics()
            participants = 0

            async for assignment in self.segments.find({"variant_id": variant["_id"]}, {"events": 1}):
                fold_events(assignment.get("events", []), default_conversion_value, into=metrics)
                participants += 1

            await self.results.update_one(
                {"variant_id": variant["_id"]},
                {
                    "$set": {
                        "experiment_id": experiment_id,
                        "metrics": metrics,
                        "rates": calculate_rates(metrics),
                        "statistical_analysis.sample_size": participants,
                        "updated_at": datetime.utcnow(),
                    }
                },
                upsert=True,
            )
            rebuilt[str(variant["_id"])] = metrics

        logger.info(f"Rebuilt metrics for {len(rebuilt)} variants of experiment {experiment_id}")
        return rebuilt
