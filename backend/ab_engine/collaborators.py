# backend/ab_engine/collaborators.py
"""Host-system services the engine consumes: the audience store, the
campaign/email-queue system and the background scheduler."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from core.config import settings
from .sampler import Contact

logger = logging.getLogger(__name__)


@dataclass
class RolloutPlan:
    """Materialized rollout: who gets the winning content, and what it is"""
    experiment_id: str
    variant_id: str
    recipients: List[str]
    subject: str
    body: Dict[str, Any]
    sender: Dict[str, Optional[str]]
    rollout_percentage: float = 100
    eligible_count: int = 0
    excluded_count: int = 0


@dataclass
class QueuedCampaign:
    campaign_id: str
    batch_id: Optional[str] = None
    queued: int = 0


class AudienceStore:
    async def list_active_contacts(self, owner_id: str) -> List[Contact]:
        raise NotImplementedError("list_active_contacts must be implemented by subclasses")

    async def lookup_by_address(self, addresses: Iterable[str]) -> List[Contact]:
        raise NotImplementedError("lookup_by_address must be implemented by subclasses")


class CampaignQueue:
    async def create_rollout_campaign(self, experiment: Dict[str, Any], plan: RolloutPlan) -> QueuedCampaign:
        raise NotImplementedError("create_rollout_campaign must be implemented by subclasses")


class BackgroundScheduler:
    """Deferred steps of the lifecycle; implementations must not run them inline"""

    def schedule_assignment(self, experiment_id: str) -> None:
        raise NotImplementedError("schedule_assignment must be implemented by subclasses")

    def schedule_recompute(self, experiment_id: str) -> None:
        raise NotImplementedError("schedule_recompute must be implemented by subclasses")


# ============================================
# MONGODB IMPLEMENTATIONS
# ============================================

def subscriber_to_contact(doc: Dict[str, Any]) -> Contact:
    """Map a host subscriber document onto the sampler's Contact"""
    standard_fields = doc.get("standard_fields") or {}
    custom_fields = doc.get("custom_fields") or {}
    stats = doc.get("email_stats") or {}

    tags = list(doc.get("tags") or [])
    lists = doc.get("lists") or ([doc["list"]] if doc.get("list") else [])
    for name in list(lists) + list(custom_fields.get("tags") or []):
        if name not in tags:
            tags.append(name)

    return Contact(
        address=doc["email"],
        tags=tags,
        company=standard_fields.get("company") or custom_fields.get("company"),
        total_sent=stats.get("total_sent", 0),
        total_opened=stats.get("total_opened", 0),
        total_clicked=stats.get("total_clicked", 0),
        is_active=doc.get("status", "active") == "active",
    )


class MongoAudienceStore(AudienceStore):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.subscribers = db.subscribers

    async def list_active_contacts(self, owner_id: str) -> List[Contact]:
        # single-tenant installs keep subscribers without an owner
        query = {
            "status": "active",
            "$or": [{"owner_id": owner_id}, {"owner_id": {"$exists": False}}],
        }
        contacts = []
        async for doc in self.subscribers.find(query):
            contacts.append(subscriber_to_contact(doc))
        return contacts

    async def lookup_by_address(self, addresses: Iterable[str]) -> List[Contact]:
        contacts = []
        async for doc in self.subscribers.find({"email": {"$in": list(addresses)}}):
            contacts.append(subscriber_to_contact(doc))
        return contacts


class MongoCampaignQueue(CampaignQueue):
    """Hands a rollout to the host's campaigns / email_queue / email_batches collections"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.campaigns = db.campaigns
        self.email_queue = db.email_queue
        self.email_batches = db.email_batches

    async def create_rollout_campaign(self, experiment: Dict[str, Any], plan: RolloutPlan) -> QueuedCampaign:
        now = datetime.utcnow()

        campaign_doc = {
            "title": f"{experiment['name']} - Winner Rollout",
            "owner_id": experiment.get("owner_id"),
            "subject": plan.subject,
            "sender_name": plan.sender.get("name"),
            "sender_email": plan.sender.get("email"),
            "template_id": plan.body.get("template_id"),
            "custom_content": plan.body.get("custom_content"),
            "status": "sending",
            "ab_test_id": ObjectId(plan.experiment_id),
            "ab_test_variant_id": ObjectId(plan.variant_id),
            "target_list_count": len(plan.recipients),
            "created_at": now,
            "updated_at": now,
        }
        result = await self.campaigns.insert_one(campaign_doc)
        campaign_id = result.inserted_id

        queue_entries = [
            {
                "campaign_id": campaign_id,
                "recipient_email": address,
                "subject": plan.subject,
                "sender_name": plan.sender.get("name"),
                "sender_email": plan.sender.get("email"),
                "template_id": plan.body.get("template_id"),
                "custom_content": plan.body.get("custom_content"),
                "status": "queued",
                "priority": 5,
                "attempts": 0,
                "max_attempts": 3,
                "created_at": now,
            }
            for address in plan.recipients
        ]
        batch_size = settings.AB_TEST_ROLLOUT_BATCH_SIZE
        queue_ids = []
        for start in range(0, len(queue_entries), batch_size):
            inserted = await self.email_queue.insert_many(queue_entries[start:start + batch_size])
            queue_ids.extend(inserted.inserted_ids)

        batch = await self.email_batches.insert_one({
            "campaign_id": campaign_id,
            "name": f"Winner Rollout: {experiment['name']}",
            "total_emails": len(plan.recipients),
            "email_queue_ids": queue_ids,
            "batch_size": batch_size,
            "delay_between_batches": settings.AB_TEST_ROLLOUT_BATCH_DELAY_MS,
            "status": "queued",
            "processed": 0,
            "created_at": now,
        })

        logger.info(f"Rollout campaign {campaign_id} queued with {len(plan.recipients)} emails")

        return QueuedCampaign(
            campaign_id=str(campaign_id),
            batch_id=str(batch.inserted_id),
            queued=len(queue_entries),
        )
