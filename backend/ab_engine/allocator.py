"""Variant allocator: activation checks and traffic-split partitioning."""
import math
from typing import Any, Dict, List, Sequence, Tuple

from .errors import ExperimentValidationError
from .sampler import Contact

ALLOCATION_TOLERANCE = 0.01
MIN_VARIANTS = 2


def total_allocation(variants: Sequence[Dict[str, Any]]) -> float:
    return sum(variant.get("traffic_allocation", 0) for variant in variants)


def validate_new_variant(existing: Sequence[Dict[str, Any]], traffic_allocation: float) -> None:
    """Running sum check applied when a draft variant is added"""
    if traffic_allocation < 0 or traffic_allocation > 100:
        raise ExperimentValidationError("Traffic allocation must be between 0 and 100")

    if total_allocation(existing) + traffic_allocation > 100 + ALLOCATION_TOLERANCE:
        raise ExperimentValidationError("Total traffic allocation cannot exceed 100%")


def validate_variants(variants: Sequence[Dict[str, Any]]) -> None:
    """Preconditions for activation; raises on the first violation"""
    if len(variants) < MIN_VARIANTS:
        raise ExperimentValidationError(f"Test must have at least {MIN_VARIANTS} variants")

    if abs(total_allocation(variants) - 100) > ALLOCATION_TOLERANCE:
        raise ExperimentValidationError("Total traffic allocation must equal 100%")

    controls = [variant for variant in variants if variant.get("is_control")]
    if len(controls) != 1:
        raise ExperimentValidationError("Test must have exactly one control variant")


def allocate(audience: Sequence[Contact],
             variants: Sequence[Dict[str, Any]]) -> List[Tuple[Dict[str, Any], List[Contact]]]:
    """Contiguous, disjoint slices of the shuffled audience in declared order.

    Each slice is floor(size * allocation / 100); the rounding remainder is
    left unassigned.
    """
    audience_size = len(audience)
    allocations = []
    cursor = 0

    for variant in variants:
        variant_size = math.floor(audience_size * (variant.get("traffic_allocation", 0) / 100))
        allocations.append((variant, list(audience[cursor:cursor + variant_size])))
        cursor += variant_size

    return allocations
