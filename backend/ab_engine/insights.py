"""Insight records: immutable notifications about experiment decisions."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from models.ab_test import InsightSeverity, InsightType

logger = logging.getLogger(__name__)


async def record_insight(db: AsyncIOMotorDatabase, experiment_id: ObjectId, insight_type: InsightType,
                         title: str, description: str, data: Optional[Dict[str, Any]] = None,
                         severity: InsightSeverity = InsightSeverity.INFO,
                         action_required: bool = False) -> ObjectId:
    insight = {
        "experiment_id": experiment_id,
        "insight_type": insight_type.value,
        "title": title,
        "description": description,
        "severity": severity.value,
        "data": data or {},
        "action_required": action_required,
        "created_at": datetime.utcnow(),
    }
    result = await db.ab_test_insights.insert_one(insight)
    logger.debug(f"Insight {insight_type.value} recorded for experiment {experiment_id}")
    return result.inserted_id


async def list_insights(db: AsyncIOMotorDatabase, experiment_id: ObjectId) -> List[Dict[str, Any]]:
    """Newest first"""
    return await db.ab_test_insights.find(
        {"experiment_id": experiment_id}
    ).sort([("created_at", -1), ("_id", -1)]).to_list(None)
