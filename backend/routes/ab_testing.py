from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional
from bson import ObjectId
import logging

from ab_engine import (
    ABTestError,
    ExperimentController,
    ExperimentNotFoundError,
    MongoAudienceStore,
    MongoCampaignQueue,
    RolloutExecutor,
)
from core.config import settings
from database import get_async_database
from models.ab_test import (
    ABTestCreate,
    ABTestUpdate,
    EventIngest,
    RolloutRequest,
    VariantCreate,
    WinnerDeclaration,
)
from tasks.ab_testing import CeleryScheduler

logger = logging.getLogger(__name__)
router = APIRouter()


# ===== DEPENDENCIES =====
class ABEngine:
    """Controller plus rollout executor sharing one database handle"""

    def __init__(self, controller: ExperimentController, rollout: RolloutExecutor):
        self.controller = controller
        self.rollout = rollout


def get_ab_engine() -> ABEngine:
    if not settings.ENABLE_AB_TESTING:
        raise HTTPException(status_code=503, detail="A/B testing is disabled")

    db = get_async_database()
    audience = MongoAudienceStore(db)
    return ABEngine(
        controller=ExperimentController(db, CeleryScheduler(), audience),
        rollout=RolloutExecutor(db, audience, MongoCampaignQueue(db)),
    )


# ===== HELPER FUNCTIONS =====
def convert_objectid_to_str(document):
    if isinstance(document, list):
        return [convert_objectid_to_str(item) for item in document]
    elif isinstance(document, dict):
        return {key: convert_objectid_to_str(value) for key, value in document.items()}
    elif isinstance(document, ObjectId):
        return str(document)
    else:
        return document


def validate_test_id(test_id: str):
    if not ObjectId.is_valid(test_id):
        raise HTTPException(status_code=400, detail="Invalid test ID")


def http_error(error: ABTestError) -> HTTPException:
    if isinstance(error, ExperimentNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


# ===== API ROUTES =====
@router.get("/ab-tests")
async def list_ab_tests(owner_id: str = Query(...), engine: ABEngine = Depends(get_ab_engine)):
    try:
        tests = await engine.controller.list_experiments(owner_id)
        logger.info(f"Retrieved {len(tests)} A/B tests")
        return {
            "tests": convert_objectid_to_str(tests),
            "total": len(tests)
        }
    except Exception as e:
        logger.error(f"Failed to list A/B tests: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve A/B tests")


@router.post("/ab-tests")
async def create_ab_test(test: ABTestCreate, engine: ABEngine = Depends(get_ab_engine)):
    try:
        experiment = await engine.controller.create_experiment(test.model_dump(mode="json"))
        return {
            "message": "A/B test created successfully",
            "test_id": str(experiment["_id"]),
            "test": convert_objectid_to_str(experiment)
        }
    except ABTestError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to create A/B test: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to create A/B test: {str(e)}")


@router.get("/ab-tests/summary")
async def get_ab_test_summary(owner_id: str = Query(...), days: int = Query(30, gt=0),
                              engine: ABEngine = Depends(get_ab_engine)):
    try:
        return await engine.controller.performance_summary(owner_id, days)
    except Exception as e:
        logger.error(f"Failed to build A/B test summary: {e}")
        raise HTTPException(status_code=500, detail="Failed to build A/B test summary")


@router.post("/ab-tests/events")
async def ingest_ab_test_event(event: EventIngest, engine: ABEngine = Depends(get_ab_engine)):
    try:
        touched = await engine.controller.ingest_event(
            event.recipient_email, event.event_type.value, event.metadata
        )
        return {"recorded": len(touched), "test_ids": touched}
    except ABTestError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to ingest A/B test event: {e}")
        raise HTTPException(status_code=500, detail="Failed to ingest event")


@router.get("/ab-tests/{test_id}")
async def get_ab_test(test_id: str, engine: ABEngine = Depends(get_ab_engine)):
    try:
        validate_test_id(test_id)
        details = await engine.controller.get_experiment_details(test_id)
        logger.info(f"Retrieved A/B test: {test_id}")
        return convert_objectid_to_str(details)
    except HTTPException:
        raise
    except ABTestError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to get A/B test {test_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to retrieve A/B test: {str(e)}")


@router.patch("/ab-tests/{test_id}")
async def update_ab_test(test_id: str, changes: ABTestUpdate, engine: ABEngine = Depends(get_ab_engine)):
    try:
        validate_test_id(test_id)
        experiment = await engine.controller.update_experiment(
            test_id, changes.model_dump(mode="json", exclude_none=True)
        )
        return {
            "message": "A/B test updated successfully",
            "test": convert_objectid_to_str(experiment)
        }
    except HTTPException:
        raise
    except ABTestError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to update A/B test {test_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to update A/B test")


@router.delete("/ab-tests/{test_id}")
async def delete_ab_test(test_id: str, engine: ABEngine = Depends(get_ab_engine)):
    try:
        validate_test_id(test_id)
        await engine.controller.delete_experiment(test_id)
        return {
            "message": "A/B test deleted successfully",
            "deleted_test_id": test_id
        }
    except HTTPException:
        raise
    except ABTestError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to delete A/B test: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete A/B test")


@router.post("/ab-tests/{test_id}/variants")
async def add_ab_test_variant(test_id: str, variant: VariantCreate, engine: ABEngine = Depends(get_ab_engine)):
    try:
        validate_test_id(test_id)
        created = await engine.controller.add_variant(test_id, variant.model_dump(mode="json"))
        return {
            "message": "Variant added successfully",
            "variant_id": str(created["_id"]),
            "variant": convert_objectid_to_str(created)
        }
    except HTTPException:
        raise
    except ABTestError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to add variant to A/B test {test_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to add variant")


@router.post("/ab-tests/{test_id}/start", status_code=202)
async def start_ab_test(test_id: str, engine: ABEngine = Depends(get_ab_engine)):
    try:
        validate_test_id(test_id)
        started = await engine.controller.start_experiment(test_id)
        return {
            "message": "A/B test started; recipient assignment is in progress",
            **started
        }
    except HTTPException:
        raise
    except ABTestError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to start A/B test: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to start A/B test: {str(e)}")


@router.post("/ab-tests/{test_id}/pause")
async def pause_ab_test(test_id: str, engine: ABEngine = Depends(get_ab_engine)):
    try:
        validate_test_id(test_id)
        experiment = await engine.controller.pause_experiment(test_id)
        return {"message": "A/B test paused", "test_id": test_id, "status": experiment["status"]}
    except HTTPException:
        raise
    except ABTestError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to pause A/B test: {e}")
        raise HTTPException(status_code=500, detail="Failed to pause A/B test")


@router.post("/ab-tests/{test_id}/resume")
async def resume_ab_test(test_id: str, engine: ABEngine = Depends(get_ab_engine)):
    try:
        validate_test_id(test_id)
        experiment = await engine.controller.resume_experiment(test_id)
        return {"message": "A/B test resumed", "test_id": test_id, "status": experiment["status"]}
    except HTTPException:
        raise
    except ABTestError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to resume A/B test: {e}")
        raise HTTPException(status_code=500, detail="Failed to resume A/B test")


@router.post("/ab-tests/{test_id}/analyze")
async def analyze_ab_test(test_id: str, engine: ABEngine = Depends(get_ab_engine)):
    try:
        validate_test_id(test_id)
        return await engine.controller.analyze_significance(test_id)
    except HTTPException:
        raise
    except ABTestError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to analyze A/B test {test_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to analyze A/B test: {str(e)}")


@router.post("/ab-tests/{test_id}/winner")
async def declare_ab_test_winner(test_id: str, declaration: WinnerDeclaration,
                                 engine: ABEngine = Depends(get_ab_engine)):
    try:
        validate_test_id(test_id)
        experiment = await engine.controller.declare_winner(test_id, declaration.variant_id)
        return {
            "message": "Winner declared successfully",
            "test": convert_objectid_to_str(experiment)
        }
    except HTTPException:
        raise
    except ABTestError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to declare winner for A/B test {test_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to declare winner")


@router.post("/ab-tests/{test_id}/rollout")
async def rollout_ab_test_winner(test_id: str, request: Optional[RolloutRequest] = None,
                                 engine: ABEngine = Depends(get_ab_engine)):
    try:
        validate_test_id(test_id)
        percentage = request.rollout_percentage if request else 100
        rollout = await engine.rollout.execute_rollout(test_id, percentage)
        return {"message": "Winner rollout queued", **rollout}
    except HTTPException:
        raise
    except ABTestError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to roll out A/B test {test_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to roll out winner: {str(e)}")


@router.get("/ab-tests/{test_id}/rollout/preview")
async def preview_ab_test_rollout(test_id: str, rollout_percentage: float = Query(100, gt=0, le=100),
                                  engine: ABEngine = Depends(get_ab_engine)):
    try:
        validate_test_id(test_id)
        plan = await engine.rollout.materialize_rollout(test_id, rollout_percentage)
        return {
            "test_id": plan.experiment_id,
            "variant_id": plan.variant_id,
            "recipient_count": len(plan.recipients),
            "recipients": plan.recipients,
            "subject": plan.subject,
            "body": plan.body,
            "sender": plan.sender,
            "eligible_count": plan.eligible_count,
            "excluded_count": plan.excluded_count,
        }
    except HTTPException:
        raise
    except ABTestError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to preview rollout for A/B test {test_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to preview rollout")
