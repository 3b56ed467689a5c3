"""Audience sampler: eligibility filtering and the random test-sample draw."""
import logging
import math
import random
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class Contact:
    address: str
    tags: List[str] = field(default_factory=list)
    company: Optional[str] = None
    total_sent: int = 0
    total_opened: int = 0
    total_clicked: int = 0
    is_active: bool = True


def engagement_score(contact: Contact) -> float:
    """0-100 score from the contact's lifetime open and click fractions"""
    if contact.total_sent <= 0:
        return 0.0

    open_rate = contact.total_opened / contact.total_sent
    click_rate = contact.total_clicked / contact.total_sent

    return min(100.0, open_rate * 50 + click_rate * 50)


def matches_filters(contact: Contact, segment_filters: Optional[Dict[str, Any]],
                    apply_engagement: bool = True) -> bool:
    """Conjunction of the tag, company and engagement filters.

    Tags match when the contact carries any listed tag. A missing engagement
    bound counts as 0 (min) or 100 (max).
    """
    if not segment_filters:
        return True

    tags = segment_filters.get("tags") or []
    if tags and not any(tag in contact.tags for tag in tags):
        return False

    companies = segment_filters.get("companies") or []
    if companies and (not contact.company or contact.company not in companies):
        return False

    engagement_range = segment_filters.get("engagement_range")
    if apply_engagement and engagement_range:
        low = engagement_range.get("min")
        high = engagement_range.get("max")
        low = 0 if low is None else low
        high = 100 if high is None else high
        score = engagement_score(contact)
        if score < low or score > high:
            return False

    return True


def filter_eligible(contacts: Iterable[Contact], segment_filters: Optional[Dict[str, Any]],
                    apply_engagement: bool = True) -> List[Contact]:
    """Active contacts passing the filters, one per address (first occurrence wins)"""
    eligible = []
    seen = set()
    for contact in contacts:
        if contact.address in seen:
            continue
        if contact.is_active and matches_filters(contact, segment_filters, apply_engagement):
            seen.add(contact.address)
            eligible.append(contact)
    return eligible


def test_audience_size(eligible_count: int, test_percentage: float) -> int:
    size = math.floor(eligible_count * (test_percentage / 100))
    return max(0, min(size, eligible_count))


def draw_test_audience(eligible: List[Contact], test_percentage: float,
                       rng: Optional[random.Random] = None) -> List[Contact]:
    """Uniform draw without replacement; the result order is already shuffled"""
    rng = rng or random.Random()
    size = test_audience_size(len(eligible), test_percentage)

    if size == 0:
        logger.info(f"Empty test audience ({len(eligible)} eligible, {test_percentage}%)")
        return []

    return rng.sample(eligible, size)


def sample_audience(contacts: Iterable[Contact], audience_settings: Dict[str, Any],
                    rng: Optional[random.Random] = None) -> List[Contact]:
    """Filter the population and draw the test audience in one step"""
    eligible = filter_eligible(contacts, audience_settings.get("segment_filters"))
    return draw_test_audience(eligible, audience_settings.get("test_percentage", 0), rng)
