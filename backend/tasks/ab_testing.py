import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import redis
from motor.motor_asyncio import AsyncIOMotorDatabase

from ab_engine import BackgroundScheduler, ExperimentController, MongoAudienceStore
from celery_app import celery_app
from core.config import settings, get_redis_key
from database import create_client

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> redis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(settings.REDIS_URL)
    return _redis_client


def recompute_pending_key(experiment_id: str) -> str:
    return get_redis_key("ab_recompute", experiment_id)


class CeleryScheduler(BackgroundScheduler):
    """Queues the deferred lifecycle steps on the ab_tests queue.

    Recompute triggers are coalesced: while one run is queued and not yet
    started, further triggers for the same experiment are dropped.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self._redis = redis_client

    def schedule_assignment(self, experiment_id: str) -> None:
        task = assign_ab_test_recipients.apply_async(args=[experiment_id], countdown=0)
        logger.info(f"Assignment queued for A/B test {experiment_id}, Task: {task.id}")

    def schedule_recompute(self, experiment_id: str) -> None:
        try:
            client = self._redis or get_redis_client()
            first = client.set(
                recompute_pending_key(experiment_id), "1",
                nx=True, ex=settings.AB_TEST_RECOMPUTE_COALESCE_SECONDS
            )
            if not first:
                logger.debug(f"Recompute already pending for A/B test {experiment_id}")
                return
        except redis.RedisError as e:
            logger.warning(f"⚠️ Recompute coalescing unavailable for {experiment_id}, scheduling anyway: {e}")

        recompute_ab_test_significance.apply_async(args=[experiment_id], countdown=0)


def run_with_engine(operation: Callable[[ExperimentController], Awaitable[Any]]) -> Any:
    """Run one engine operation on a task-scoped motor client and event loop"""

    async def runner():
        client = create_client("ab_engine_worker")
        try:
            db: AsyncIOMotorDatabase = client[settings.MONGODB_DATABASE]
            controller = ExperimentController(db, CeleryScheduler(), MongoAudienceStore(db))
            return await operation(controller)
        finally:
            client.close()

    return asyncio.run(runner())


@celery_app.task(bind=True, queue="ab_tests", name="tasks.assign_ab_test_recipients")
def assign_ab_test_recipients(self, experiment_id: str):
    """Sample and allocate the test audience after start"""
    try:
        assignment = run_with_engine(lambda controller: controller.assign_recipients(experiment_id))
        if assignment is None:
            return {"success": False, "experiment_id": experiment_id, "skipped": True}
        return {"success": True, **assignment}
    except Exception:
        logger.exception(f"❌ A/B test assignment failed: {experiment_id}")
        raise


@celery_app.task(bind=True, queue="ab_tests", name="tasks.recompute_ab_test_significance")
def recompute_ab_test_significance(self, experiment_id: str):
    """Recompute significance and run the automatic winner check"""
    try:
        get_redis_client().delete(recompute_pending_key(experiment_id))
    except redis.RedisError as e:
        logger.warning(f"⚠️ Could not clear recompute flag for {experiment_id}: {e}")

    try:
        outcome = run_with_engine(lambda controller: controller.recompute_significance(experiment_id))
    except Exception:
        logger.exception(f"❌ A/B test recompute failed: {experiment_id}")
        raise

    if outcome is None:
        return {"success": False, "experiment_id": experiment_id, "skipped": True}

    winner = outcome.get("winner")
    return {
        "success": True,
        "experiment_id": experiment_id,
        "significant_variants": [entry["variant_id"] for entry in outcome["significant"]],
        "winner_candidate": winner["variant_id"] if winner else None,
    }


@celery_app.task(bind=True, queue="ab_tests", name="tasks.ingest_ab_test_event")
def ingest_ab_test_event(self, recipient_email: str, event_type: str, metadata: Optional[Dict[str, Any]] = None):
    """Broker entry point for delivery/engagement events"""
    try:
        touched = run_with_engine(
            lambda controller: controller.ingest_event(recipient_email, event_type, metadata)
        )
        return {"success": True, "experiments": touched}
    except Exception:
        logger.exception(f"❌ A/B test event ingestion failed: {event_type} for {recipient_email}")
        raise


@celery_app.task(bind=True, queue="ab_tests", name="tasks.check_ab_test_durations")
def check_ab_test_durations(self):
    """Beat task: complete fixed-duration tests that ran past max_days"""
    try:
        expired = run_with_engine(lambda controller: controller.expire_overdue())
        return {"success": True, "expired": expired}
    except Exception:
        logger.exception("❌ A/B test duration check failed")
        raise


@celery_app.task(bind=True, queue="ab_tests", name="tasks.rebuild_ab_test_metrics")
def rebuild_ab_test_metrics(self, experiment_id: str):
    """Repair: refold every Result of the experiment from the ledger"""
    try:
        rebuilt = run_with_engine(lambda controller: controller.rebuild_metrics(experiment_id))
        logger.info(f"✅ Metrics rebuilt for A/B test {experiment_id}")
        return {"success": True, "experiment_id": experiment_id, "variants": rebuilt}
    except Exception:
        logger.exception(f"❌ A/B test metric rebuild failed: {experiment_id}")
        raise
