"""Metrics aggregator: event folding, derived rates and metric lookup."""
from typing import Any, Dict, Iterable, Optional

EVENT_TYPES = (
    "assigned", "sent", "delivered", "opened", "clicked",
    "converted", "unsubscribed", "bounced", "complained",
)

# inbound event type -> result counter; "assigned" has no counter
EVENT_COUNTERS = {
    "sent": "sent",
    "delivered": "delivered",
    "opened": "opened",
    "clicked": "clicked",
    "converted": "conversions",
    "unsubscribed": "unsubscribes",
    "bounced": "bounces",
    "complained": "complaints",
}

COUNTER_FIELDS = (
    "sent", "delivered", "opened", "clicked", "conversions",
    "revenue", "unsubscribes", "bounces", "complaints",
)

# primary/secondary metric name -> rates field
METRIC_RATE_FIELDS = {
    "open_rate": "open_rate",
    "click_rate": "click_rate",
    "conversion_rate": "conversion_rate",
    "unsubscribe_rate": "unsubscribe_rate",
}


def empty_metrics() -> Dict[str, float]:
    return {name: 0 for name in COUNTER_FIELDS}


def _ratio(numerator: float, denominator: float) -> float:
    return (numerator / denominator) * 100 if denominator > 0 else 0


def calculate_rates(metrics: Dict[str, float]) -> Dict[str, float]:
    """Percentages; delivery and bounce against sent, the rest against delivered"""
    sent = metrics.get("sent", 0)
    delivered = metrics.get("delivered", 0)

    return {
        "delivery_rate": _ratio(metrics.get("delivered", 0), sent),
        "open_rate": _ratio(metrics.get("opened", 0), delivered),
        "click_rate": _ratio(metrics.get("clicked", 0), delivered),
        "conversion_rate": _ratio(metrics.get("conversions", 0), delivered),
        "unsubscribe_rate": _ratio(metrics.get("unsubscribes", 0), delivered),
        "bounce_rate": _ratio(metrics.get("bounces", 0), sent),
    }


def conversion_value(metadata: Optional[Dict[str, Any]], default_value: Optional[float] = None) -> float:
    """Revenue attributed to one conversion event"""
    value = (metadata or {}).get("value")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return default_value or 0


def counter_increments(event_type: str, metadata: Optional[Dict[str, Any]] = None,
                       default_conversion_value: Optional[float] = None) -> Dict[str, float]:
    """The $inc document for a single event (empty for untracked types)"""
    counter = EVENT_COUNTERS.get(event_type)
    if counter is None:
        return {}

    increments = {counter: 1}
    if event_type == "converted":
        revenue = conversion_value(metadata, default_conversion_value)
        if revenue:
            increments["revenue"] = revenue
    return increments


def fold_events(events: Iterable[Dict[str, Any]], default_conversion_value: Optional[float] = None,
                into: Optional[Dict[str, float]] = None) -> Dict[str, float]:
    """Counters from an event list; repeated events each count once"""
    metrics = into if into is not None else empty_metrics()

    for event in events:
        for name, amount in counter_increments(
            event.get("type"), event.get("metadata"), default_conversion_value
        ).items():
            metrics[name] = metrics.get(name, 0) + amount

    return metrics


def metric_rate(result: Optional[Dict[str, Any]], metric: str) -> float:
    """Stored 0-100 rate for a proportion metric; 0 for non-proportion metrics"""
    if not result or not result.get("rates"):
        return 0

    field_name = METRIC_RATE_FIELDS.get(metric)
    if field_name is None:
        return 0
    return result["rates"].get(field_name, 0)
