"""Experiment lifecycle controller: draft -> active -> paused/completed.

Every transition is a conditional update on the current status, so two
callers racing on the same experiment cannot both succeed. Validation runs
before the first write; a rejected call leaves the store untouched.
"""
import logging
import random
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from core.config import settings
from models.ab_test import DurationType, InsightSeverity, InsightType, TestStatus
from .allocator import allocate, validate_new_variant, validate_variants
from .collaborators import AudienceStore, BackgroundScheduler
from .errors import ExperimentNotFoundError, ExperimentValidationError
from .insights import list_insights, record_insight
from .ledger import AssignmentLedger
from .metrics import EVENT_COUNTERS, counter_increments, metric_rate
from .sampler import draw_test_audience, filter_eligible
from .significance import calculate_significance, required_sample_size, select_winner

logger = logging.getLogger(__name__)

# configuration fields a draft update may touch
UPDATABLE_FIELDS = ("name", "description", "test_configuration")


def to_object_id(value: Union[str, ObjectId], kind: str = "Experiment") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not ObjectId.is_valid(value):
        raise ExperimentNotFoundError(kind, value)
    return ObjectId(value)


def _config(experiment: Dict[str, Any], *path: str, default=None):
    node = experiment.get("test_configuration") or {}
    for key in path:
        if not isinstance(node, dict) or node.get(key) is None:
            return default
        node = node[key]
    return node


class ExperimentController:
    def __init__(self, db: AsyncIOMotorDatabase, scheduler: BackgroundScheduler,
                 audience: Optional[AudienceStore] = None, rng: Optional[random.Random] = None,
                 min_sample_size: Optional[int] = None, default_confidence: Optional[int] = None,
                 tie_break: Optional[str] = None, statistical_power: Optional[float] = None):
        self.db = db
        self.scheduler = scheduler
        self.audience = audience
        self.rng = rng
        self.ledger = AssignmentLedger(db)

        self.min_sample_size = min_sample_size or settings.AB_TEST_MIN_SAMPLE_SIZE
        self.default_confidence = default_confidence or settings.AB_TEST_DEFAULT_CONFIDENCE
        self.tie_break = tie_break or settings.AB_TEST_WINNER_TIE_BREAK
        self.statistical_power = statistical_power or settings.AB_TEST_STATISTICAL_POWER

    # ============================================
    # LOOKUPS
    # ============================================

    async def get_experiment(self, experiment_id: Union[str, ObjectId]) -> Dict[str, Any]:
        oid = to_object_id(experiment_id)
        experiment = await self.db.ab_tests.find_one({"_id": oid})
        if not experiment:
            raise ExperimentNotFoundError("Experiment", experiment_id)
        return experiment

    async def get_variants(self, experiment_id: ObjectId) -> List[Dict[str, Any]]:
        """Variants in declared order"""
        return await self.db.ab_test_variants.find(
            {"experiment_id": experiment_id}
        ).sort([("created_at", 1), ("_id", 1)]).to_list(None)

    def _require_status(self, experiment: Dict[str, Any], allowed: List[TestStatus], message: str):
        if experiment.get("status") not in [status.value for status in allowed]:
            raise ExperimentValidationError(message)

    # ============================================
    # CRUD
    # ============================================

    async def create_experiment(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = datetime.utcnow()
        experiment = {
            "owner_id": data["owner_id"],
            "name": data["name"],
            "description": data.get("description"),
            "type": data["type"],
            "status": TestStatus.DRAFT.value,
            "test_configuration": data["test_configuration"],
            "winning_variant_id": None,
            "created_at": now,
            "updated_at": now,
        }
        result = await self.db.ab_tests.insert_one(experiment)
        experiment["_id"] = result.inserted_id

        logger.info(f"A/B test created: {result.inserted_id} ({data['name']})")
        return experiment

    async def add_variant(self, experiment_id: Union[str, ObjectId], data: Dict[str, Any]) -> Dict[str, Any]:
        experiment = await self.get_experiment(experiment_id)
        self._require_status(experiment, [TestStatus.DRAFT], "Variants can only be added to draft tests")

        existing = await self.get_variants(experiment["_id"])
        validate_new_variant(existing, data["traffic_allocation"])

        variant = {
            "experiment_id": experiment["_id"],
            "name": data["name"],
            "is_control": bool(data.get("is_control", False)),
            "traffic_allocation": data["traffic_allocation"],
            "campaign_config": data.get("campaign_config") or {},
            "assigned_recipients": [],
            "created_at": datetime.utcnow(),
        }
        result = await self.db.ab_test_variants.insert_one(variant)
        variant["_id"] = result.inserted_id

        logger.info(f"Variant {result.inserted_id} added to A/B test {experiment['_id']}")
        return variant

    async def update_experiment(self, experiment_id: Union[str, ObjectId],
                                changes: Dict[str, Any]) -> Dict[str, Any]:
        experiment = await self.get_experiment(experiment_id)
        self._require_status(experiment, [TestStatus.DRAFT], "Only draft tests can be updated")

        updates = {key: value for key, value in changes.items() if key in UPDATABLE_FIELDS and value is not None}
        if not updates:
            return experiment

        updates["updated_at"] = datetime.utcnow()
        updated = await self.db.ab_tests.find_one_and_update(
            {"_id": experiment["_id"], "status": TestStatus.DRAFT.value},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ExperimentValidationError("Only draft tests can be updated")

        logger.info(f"A/B test updated: {experiment['_id']}")
        return updated

    async def delete_experiment(self, experiment_id: Union[str, ObjectId]) -> None:
        experiment = await self.get_experiment(experiment_id)
        self._require_status(experiment, [TestStatus.DRAFT], "Only draft tests can be deleted")

        result = await self.db.ab_tests.delete_one({"_id": experiment["_id"], "status": TestStatus.DRAFT.value})
        if result.deleted_count == 0:
            raise ExperimentValidationError("Only draft tests can be deleted")

        await self.db.ab_test_variants.delete_many({"experiment_id": experiment["_id"]})
        logger.info(f"A/B test deleted: {experiment['_id']}")

    async def get_experiment_details(self, experiment_id: Union[str, ObjectId]) -> Dict[str, Any]:
        experiment = await self.get_experiment(experiment_id)
        return {
            "experiment": experiment,
            "variants": await self.get_variants(experiment["_id"]),
            "results": await self.ledger.results_for(experiment["_id"]),
            "insights": await list_insights(self.db, experiment["_id"]),
        }

    async def list_experiments(self, owner_id: str) -> List[Dict[str, Any]]:
        return await self.db.ab_tests.find(
            {"owner_id": owner_id}
        ).sort([("created_at", -1), ("_id", -1)]).to_list(None)

    # ============================================
    # START + ASSIGNMENT
    # ============================================

    async def start_experiment(self, experiment_id: Union[str, ObjectId]) -> Dict[str, Any]:
        """Activate a draft; recipient assignment is deferred to the scheduler"""
        experiment = await self.get_experiment(experiment_id)
        self._require_status(experiment, [TestStatus.DRAFT], "Test must be in draft status to start")

        variants = await self.get_variants(experiment["_id"])
        validate_variants(variants)

        now = datetime.utcnow()
        result = await self.db.ab_tests.update_one(
            {"_id": experiment["_id"], "status": TestStatus.DRAFT.value},
            {"$set": {"status": TestStatus.ACTIVE.value, "started_at": now, "updated_at": now}}
        )
        if result.modified_count == 0:
            raise ExperimentValidationError("Test must be in draft status to start")

        self.scheduler.schedule_assignment(str(experiment["_id"]))

        logger.info(f"A/B test started: {experiment['_id']} with {len(variants)} variants")
        return {
            "experiment_id": str(experiment["_id"]),
            "status": TestStatus.ACTIVE.value,
            "started_at": now,
        }

    async def assign_recipients(self, experiment_id: Union[str, ObjectId]) -> Optional[Dict[str, Any]]:
        """Sample the audience and split it across variants (runs once per experiment)"""
        oid = to_object_id(experiment_id)
        if self.audience is None:
            raise ExperimentValidationError("No audience store configured")

        experiment = await self.db.ab_tests.find_one_and_update(
            {
                "_id": oid,
                "status": {"$in": [TestStatus.ACTIVE.value, TestStatus.PAUSED.value]},
                "assignment_started_at": {"$exists": False},
            },
            {"$set": {"assignment_started_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if experiment is None:
            logger.warning(f"⚠️ Skipping assignment for {experiment_id}: missing, not started or already assigned")
            return None

        try:
            audience_settings = _config(experiment, "audience_settings", default={})
            contacts = await self.audience.list_active_contacts(experiment["owner_id"])
            eligible = filter_eligible(contacts, audience_settings.get("segment_filters"))
            test_audience = draw_test_audience(eligible, audience_settings.get("test_percentage", 0), self.rng)

            variants = await self.get_variants(oid)
            allocations = allocate(test_audience, variants)
            counts = await self.ledger.record_assignments(oid, allocations)

            await self.db.ab_tests.update_one(
                {"_id": oid},
                {"$set": {
                    "assigned_at": datetime.utcnow(),
                    "eligible_count": len(eligible),
                    "test_audience_size": len(test_audience),
                }}
            )
        except Exception as e:
            logger.error(f"❌ Assignment failed for A/B test {oid}, releasing claim: {e}")
            await self.ledger.clear_assignments(oid)
            await self.db.ab_tests.update_one({"_id": oid}, {"$unset": {"assignment_started_at": ""}})
            raise

        logger.info(
            f"✅ A/B test {oid} assigned {sum(counts.values())} of {len(test_audience)} sampled "
            f"recipients ({len(eligible)} eligible) across {len(variants)} variants"
        )
        return {
            "experiment_id": str(oid),
            "eligible_count": len(eligible),
            "test_audience_size": len(test_audience),
            "variants": counts,
        }

    # ============================================
    # EVENT INGESTION
    # ============================================

    async def ingest_event(self, recipient_email: str, event_type: str,
                           metadata: Optional[Dict[str, Any]] = None) -> List[str]:
        """Fan an inbound event out to every active experiment holding the recipient"""
        if event_type not in EVENT_COUNTERS:
            raise ExperimentValidationError(f"Unsupported event type: {event_type}")

        touched = []
        for experiment, assignment in await self.ledger.assignments_for_recipient(recipient_email):
            await self.ledger.append_event(assignment["_id"], event_type, metadata)

            increments = counter_increments(
                event_type, metadata, _config(experiment, "success_metrics", "conversion_goal", "value")
            )
            result = await self.ledger.apply_increments(assignment["variant_id"], increments)
            if result is None:
                logger.warning(f"⚠️ No result record for variant {assignment['variant_id']}, counters not updated")

            logger.debug(f"Event {event_type} for {recipient_email} recorded on A/B test {experiment['_id']}")

            self._schedule_recompute(experiment["_id"])
            touched.append(str(experiment["_id"]))

        return touched

    def _schedule_recompute(self, experiment_id: ObjectId) -> None:
        # the event is already committed; the next event re-triggers a failed schedule
        try:
            self.scheduler.schedule_recompute(str(experiment_id))
        except Exception as e:
            logger.error(f"❌ Failed to schedule recompute for A/B test {experiment_id}: {e}")

    # ============================================
    # SIGNIFICANCE
    # ============================================

    async def _analyze(self, experiment: Dict[str, Any], variants: List[Dict[str, Any]],
                       results: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Recompute and persist every challenger's analysis against control"""
        control_variant = next((variant for variant in variants if variant.get("is_control")), None)
        results_by_variant = {result["variant_id"]: result for result in results}
        control_result = results_by_variant.get(control_variant["_id"]) if control_variant else None

        if control_result is None:
            raise ExperimentNotFoundError("Result", f"control of {experiment['_id']}")

        metric = _config(experiment, "success_metrics", "primary", default="open_rate")
        confidence_level = _config(experiment, "statistical_settings", "confidence_level",
                                   default=self.default_confidence)
        mde = _config(experiment, "statistical_settings", "minimum_detectable_effect")
        names = {variant["_id"]: variant.get("name", "Unknown") for variant in variants}

        await self.ledger.write_analysis(control_result["variant_id"], {"is_control": True})

        analysis = []
        for variant in variants:
            result = results_by_variant.get(variant["_id"])
            if result is None:
                continue

            entry = {
                "variant_id": str(variant["_id"]),
                "variant_name": names[variant["_id"]],
                "is_control": result is control_result,
                "sample_size": (result.get("statistical_analysis") or {}).get("sample_size", 0),
                "metric_value": metric_rate(result, metric),
                "significance": None,
            }

            if result is not control_result:
                significance = calculate_significance(
                    control_result, result, metric, confidence_level,
                    min_sample_size=self.min_sample_size,
                    default_confidence_level=self.default_confidence,
                )
                await self.ledger.write_analysis(result["variant_id"], {**significance, "is_control": False})
                entry["significance"] = significance
                if mde:
                    entry["recommended_sample_size"] = required_sample_size(
                        metric_rate(control_result, metric), mde, confidence_level,
                        power=self.statistical_power, default_confidence_level=self.default_confidence,
                    )

            analysis.append(entry)

        significant = [
            entry for entry in analysis
            if entry["significance"]
            and entry["significance"]["statistical_significance"]
            and entry["significance"]["lift"] > 0
        ]

        return {
            "experiment_id": str(experiment["_id"]),
            "metric": metric,
            "analysis": analysis,
            "significant": significant,
            "winner": select_winner(self._eligible_winners(experiment, analysis, significant), self.tie_break),
        }

    def _eligible_winners(self, experiment: Dict[str, Any], analysis: List[Dict[str, Any]],
                          significant: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Significant challengers that also pass the configured selection gates"""
        duration = _config(experiment, "statistical_settings", "test_duration", default={})
        if duration.get("type") == DurationType.SEQUENTIAL.value and duration.get("min_sample_size"):
            if any(entry["sample_size"] < duration["min_sample_size"] for entry in analysis):
                return []

        criteria = _config(experiment, "statistical_settings", "winner_selection_criteria", default={})
        threshold = criteria.get("significance_threshold")
        minimum_improvement = criteria.get("minimum_improvement")

        return [
            entry for entry in significant
            if (threshold is None or entry["significance"]["p_value"] <= threshold)
            and (minimum_improvement is None or entry["significance"]["lift"] >= minimum_improvement)
        ]

    async def recompute_significance(self, experiment_id: Union[str, ObjectId]) -> Optional[Dict[str, Any]]:
        """Background recompute; a no-op unless the experiment is active and assigned"""
        oid = to_object_id(experiment_id)
        experiment = await self.db.ab_tests.find_one({"_id": oid})
        if not experiment or experiment.get("status") != TestStatus.ACTIVE.value:
            logger.warning(f"⚠️ Skipping recompute for {experiment_id}: missing or not active")
            return None

        variants = await self.get_variants(oid)
        results = await self.ledger.results_for(oid)
        if len(results) < 2:
            logger.debug(f"A/B test {oid} has no results yet, nothing to recompute")
            return None

        outcome = await self._analyze(experiment, variants, results)

        if outcome["winner"] and _config(experiment, "statistical_settings", "automatic_winner", default=False):
            await self._declare_automatic_winner(experiment, outcome["winner"])

        return outcome

    async def analyze_significance(self, experiment_id: Union[str, ObjectId]) -> Dict[str, Any]:
        """User-triggered recompute returning the per-variant analysis and a recommendation"""
        experiment = await self.get_experiment(experiment_id)
        self._require_status(experiment, [TestStatus.ACTIVE], "Test must be active to analyze significance")

        variants = await self.get_variants(experiment["_id"])
        results = await self.ledger.results_for(experiment["_id"])
        if len(results) < 2:
            raise ExperimentValidationError("Need at least 2 variants to analyze significance")

        outcome = await self._analyze(experiment, variants, results)

        winner_declared = False
        if outcome["winner"] and _config(experiment, "statistical_settings", "automatic_winner", default=False):
            winner_declared = await self._declare_automatic_winner(experiment, outcome["winner"])

        return {
            "experiment_id": outcome["experiment_id"],
            "analysis": outcome["analysis"],
            "has_significant_results": bool(outcome["significant"]),
            "recommended_action": "declare_winner" if outcome["significant"] else "continue_test",
            "winner_declared": winner_declared,
        }

    # ============================================
    # WINNER DECLARATION
    # ============================================

    async def _complete(self, experiment_id: ObjectId, from_statuses: List[TestStatus],
                        winning_variant_id: Optional[ObjectId]) -> Optional[Dict[str, Any]]:
        now = datetime.utcnow()
        fields = {
            "status": TestStatus.COMPLETED.value,
            "completed_at": now,
            "updated_at": now,
        }
        if winning_variant_id is not None:
            fields["winning_variant_id"] = winning_variant_id
            fields["winner_declared_at"] = now

        return await self.db.ab_tests.find_one_and_update(
            {"_id": experiment_id, "status": {"$in": [status.value for status in from_statuses]}},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )

    async def _declare_automatic_winner(self, experiment: Dict[str, Any], winner: Dict[str, Any]) -> bool:
        completed = await self._complete(experiment["_id"], [TestStatus.ACTIVE], ObjectId(winner["variant_id"]))
        if completed is None:
            # another recompute got there first
            return False

        significance = winner["significance"]
        await record_insight(
            self.db, experiment["_id"], InsightType.WINNER_DECLARED,
            "Test Winner Declared",
            "Statistical significance achieved - winner selected automatically",
            data={"winner_variant_id": winner["variant_id"]},
        )
        await record_insight(
            self.db, experiment["_id"], InsightType.STATISTICAL_SIGNIFICANCE,
            "Statistical Significance Achieved",
            f"{winner['variant_name']} achieved {significance['lift']:.1f}% improvement "
            f"with {100 - significance['p_value'] * 100:.1f}% confidence",
            data={
                "winner_variant_id": winner["variant_id"],
                "lift": significance["lift"],
                "p_value": significance["p_value"],
            },
        )

        logger.info(f"🏆 A/B test {experiment['_id']} winner declared automatically: {winner['variant_id']}")
        return True

    async def declare_winner(self, experiment_id: Union[str, ObjectId],
                             variant_id: Union[str, ObjectId]) -> Dict[str, Any]:
        """Manual declaration from active or paused"""
        experiment = await self.get_experiment(experiment_id)
        if experiment.get("status") == TestStatus.COMPLETED.value:
            raise ExperimentValidationError("Test is already completed")
        self._require_status(experiment, [TestStatus.ACTIVE, TestStatus.PAUSED],
                             "Test must be active or paused to declare a winner")

        variant_oid = to_object_id(variant_id, "Variant")
        variant = await self.db.ab_test_variants.find_one({"_id": variant_oid, "experiment_id": experiment["_id"]})
        if not variant:
            raise ExperimentNotFoundError("Variant", variant_id)

        completed = await self._complete(experiment["_id"], [TestStatus.ACTIVE, TestStatus.PAUSED], variant_oid)
        if completed is None:
            raise ExperimentValidationError("Test is already completed")

        await record_insight(
            self.db, experiment["_id"], InsightType.WINNER_DECLARED,
            "Test Winner Declared",
            f"{variant.get('name', 'Variant')} selected as winner manually",
            data={"winner_variant_id": str(variant_oid), "manual": True},
        )

        logger.info(f"🏆 A/B test {experiment['_id']} winner declared manually: {variant_oid}")
        return completed

    # ============================================
    # PAUSE / RESUME
    # ============================================

    async def _transition(self, experiment_id: Union[str, ObjectId], from_status: TestStatus,
                          to_status: TestStatus, message: str) -> Dict[str, Any]:
        experiment = await self.get_experiment(experiment_id)
        self._require_status(experiment, [from_status], message)

        updated = await self.db.ab_tests.find_one_and_update(
            {"_id": experiment["_id"], "status": from_status.value},
            {"$set": {"status": to_status.value, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ExperimentValidationError(message)

        logger.info(f"A/B test {experiment['_id']}: {from_status.value} -> {to_status.value}")
        return updated

    async def pause_experiment(self, experiment_id: Union[str, ObjectId]) -> Dict[str, Any]:
        return await self._transition(experiment_id, TestStatus.ACTIVE, TestStatus.PAUSED,
                                      "Only active tests can be paused")

    async def resume_experiment(self, experiment_id: Union[str, ObjectId]) -> Dict[str, Any]:
        return await self._transition(experiment_id, TestStatus.PAUSED, TestStatus.ACTIVE,
                                      "Only paused tests can be resumed")

    # ============================================
    # DURATION POLICY
    # ============================================

    async def expire_overdue(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Complete fixed-duration tests past max_days, declaring a winner when one qualifies"""
        now = now or datetime.utcnow()
        expired = []

        candidates = await self.db.ab_tests.find({
            "status": TestStatus.ACTIVE.value,
            "test_configuration.statistical_settings.test_duration.type": DurationType.FIXED.value,
        }).to_list(None)
        for experiment in candidates:
            max_days = _config(experiment, "statistical_settings", "test_duration", "max_days")
            started_at = experiment.get("started_at")
            if not max_days or not started_at or started_at + timedelta(days=max_days) > now:
                continue

            winner = None
            results = await self.ledger.results_for(experiment["_id"])
            if len(results) >= 2:
                try:
                    outcome = await self._analyze(experiment, await self.get_variants(experiment["_id"]), results)
                    winner = outcome["winner"]
                except ExperimentNotFoundError as e:
                    logger.warning(f"⚠️ Expiring A/B test {experiment['_id']} without analysis: {e}")

            if winner and await self._declare_automatic_winner(experiment, winner):
                expired.append({"experiment_id": str(experiment["_id"]), "winner": winner["variant_id"]})
                continue

            completed = await self._complete(experiment["_id"], [TestStatus.ACTIVE], None)
            if completed is None:
                continue

            await record_insight(
                self.db, experiment["_id"], InsightType.RECOMMENDATION,
                "Test Ended Without a Winner",
                f"The test reached its {max_days}-day limit without a statistically significant improvement",
                data={"max_days": max_days},
                severity=InsightSeverity.WARNING,
                action_required=True,
            )
            expired.append({"experiment_id": str(experiment["_id"]), "winner": None})

        if expired:
            logger.info(f"⏱️ Expired {len(expired)} fixed-duration A/B tests")
        return expired

    # ============================================
    # REPAIR + REPORTING
    # ============================================

    async def rebuild_metrics(self, experiment_id: Union[str, ObjectId]) -> Dict[str, Dict[str, float]]:
        experiment = await self.get_experiment(experiment_id)
        rebuilt = await self.ledger.rebuild_metrics(
            experiment["_id"], _config(experiment, "success_metrics", "conversion_goal", "value")
        )
        if experiment.get("status") == TestStatus.ACTIVE.value:
            self._schedule_recompute(experiment["_id"])
        return rebuilt

    async def performance_summary(self, owner_id: str, days: int = 30) -> Dict[str, Any]:
        cutoff = datetime.utcnow() - timedelta(days=days)
        tests = await self.db.ab_tests.find({"owner_id": owner_id, "created_at": {"$gte": cutoff}}).to_list(None)

        completed = [test for test in tests if test.get("status") == TestStatus.COMPLETED.value]
        durations = [
            (test["completed_at"] - test["started_at"]).total_seconds() / 86400
            for test in completed
            if test.get("completed_at") and test.get("started_at")
        ]

        top_performing = []
        for test in completed:
            metric = _config(test, "success_metrics", "primary", default="open_rate")
            results = await self.ledger.results_for(test["_id"])
            best_rate = max((metric_rate(result, metric) for result in results), default=0)
            top_performing.append({
                "experiment_id": str(test["_id"]),
                "name": test.get("name"),
                "metric": metric,
                "best_metric_value": best_rate,
                "participants": await self.ledger.participant_count([test["_id"]]),
            })
        top_performing.sort(key=lambda entry: entry["best_metric_value"], reverse=True)

        return {
            "total_tests": len(tests),
            "completed_tests": len(completed),
            "active_tests": len([test for test in tests if test.get("status") == TestStatus.ACTIVE.value]),
            "average_test_duration_days": sum(durations) / len(durations) if durations else 0,
            "total_participants": await self.ledger.participant_count([test["_id"] for test in tests]),
            "tests_with_winners": len([test for test in tests if test.get("winning_variant_id")]),
            "top_performing_tests": top_performing[:5],
        }
