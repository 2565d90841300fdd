"""Attribution Calculator.

WHAT:
    Splits a conversion's value across its journey's touchpoints under five
    models, and scores how trustworthy the journey is.

MODELS:
    first_click     100% to the earliest touchpoint
    last_click      100% to the latest touchpoint
    linear          value / N to each touchpoint
    time_decay      weight 2^(-hours_before_conversion / half_life), normalized
    position_based  N=1: 100 | N=2: 50/50 | N>=3: 40 first, 40 last, 20 split
                    across the middle

INVARIANTS:
    - Credits of every model sum to the conversion value (0 included)
    - Time-decay is measured against the conversion's own timestamp, so
      recomputing an old journey gives the same numbers
    - A journey without touchpoints credits a synthetic "direct" touchpoint

This module does no I/O.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from journeyx.services.records import DIRECT, SESSION_MATCH, Touchpoint, format_timestamp

ATTRIBUTION_MODELS = ("first_click", "last_click", "linear", "time_decay", "position_based")

DEFAULT_HALF_LIFE_HOURS = 168.0


def _entry(tp: Touchpoint, position: int, credit: float, percentage: float, **extra: Any) -> Dict[str, Any]:
    entry = {
        "source": tp.source,
        "campaign": tp.utm_campaign,
        "medium": tp.utm_medium,
        "landing_page": tp.landing_page,
        "timestamp": format_timestamp(tp.timestamp),
        "touchpoint_position": position,
        "credit": credit,
        "credit_percentage": percentage,
    }
    entry.update(extra)
    return entry


def _direct_entry(conversion_value: float, conversion_timestamp: datetime) -> Dict[str, Any]:
    return {
        "source": DIRECT,
        "campaign": None,
        "medium": None,
        "landing_page": None,
        "timestamp": format_timestamp(conversion_timestamp),
        "touchpoint_position": 0,
        "credit": conversion_value,
        "credit_percentage": 100.0,
        "synthetic": True,
    }


def hours_before(tp: Touchpoint, conversion_timestamp: datetime) -> float:
    return max(0.0, (conversion_timestamp - tp.timestamp).total_seconds() / 3600.0)


# =============================================================================
# MODELS
# =============================================================================

def first_click(touchpoints: Sequence[Touchpoint], conversion_value: float) -> List[Dict[str, Any]]:
    return [_entry(touchpoints[0], 1, conversion_value, 100.0)]


def last_click(touchpoints: Sequence[Touchpoint], conversion_value: float) -> List[Dict[str, Any]]:
    n = len(touchpoints)
    return [_entry(touchpoints[-1], n, conversion_value, 100.0)]


def linear(touchpoints: Sequence[Touchpoint], conversion_value: float) -> List[Dict[str, Any]]:
    n = len(touchpoints)
    return [_entry(tp, i, conversion_value / n, 100.0 / n) for i, tp in enumerate(touchpoints, start=1)]


def time_decay(
    touchpoints: Sequence[Touchpoint],
    conversion_value: float,
    conversion_timestamp: datetime,
    half_life_hours: float = DEFAULT_HALF_LIFE_HOURS,
) -> List[Dict[str, Any]]:
    if half_life_hours <= 0:
        raise ValueError("half_life_hours must be positive")

    hours = [hours_before(tp, conversion_timestamp) for tp in touchpoints]
    # Shifting by the most recent touchpoint keeps weights from underflowing
    # to zero on very old journeys; normalization cancels the shift.
    nearest = min(hours)
    raw = [math.pow(2.0, -(h - nearest) / half_life_hours) for h in hours]
    total = sum(raw)

    entries = []
    for i, (tp, h, w) in enumerate(zip(touchpoints, hours, raw), start=1):
        share = w / total
        entries.append(_entry(
            tp, i, share * conversion_value, share * 100.0,
            decay_weight=share,
            hours_before_conversion=round(h, 3),
        ))
    return entries


def position_based(touchpoints: Sequence[Touchpoint], conversion_value: float) -> List[Dict[str, Any]]:
    n = len(touchpoints)
    if n == 1:
        return [_entry(touchpoints[0], 1, conversion_value, 100.0, position_role="only")]
    if n == 2:
        return [
            _entry(touchpoints[0], 1, conversion_value * 0.5, 50.0, position_role="first"),
            _entry(touchpoints[1], 2, conversion_value * 0.5, 50.0, position_role="last"),
        ]

    middle_pct = 20.0 / (n - 2)
    entries = [_entry(touchpoints[0], 1, conversion_value * 0.4, 40.0, position_role="first")]
    for i, tp in enumerate(touchpoints[1:-1], start=2):
        entries.append(_entry(tp, i, conversion_value * middle_pct / 100.0, middle_pct, position_role="middle"))
    entries.append(_entry(touchpoints[-1], n, conversion_value * 0.4, 40.0, position_role="last"))
    return entries


def calculate(
    touchpoints: Sequence[Touchpoint],
    conversion_value: float,
    conversion_timestamp: datetime,
    half_life_hours: float = DEFAULT_HALF_LIFE_HOURS,
) -> Dict[str, List[Dict[str, Any]]]:
    """Credit splits for all five models.

    Args:
        touchpoints: Non-conversion touchpoints, oldest first
        conversion_value: Order total (may be 0)
        conversion_timestamp: Reference instant for time-decay
        half_life_hours: Time-decay half-life, must be > 0
    """
    if half_life_hours <= 0:
        raise ValueError("half_life_hours must be positive")

    if not touchpoints:
        return {model: [_direct_entry(conversion_value, conversion_timestamp)] for model in ATTRIBUTION_MODELS}

    return {
        "first_click": first_click(touchpoints, conversion_value),
        "last_click": last_click(touchpoints, conversion_value),
        "linear": linear(touchpoints, conversion_value),
        "time_decay": time_decay(touchpoints, conversion_value, conversion_timestamp, half_life_hours),
        "position_based": position_based(touchpoints, conversion_value),
    }


def total_credit(entries: Sequence[Dict[str, Any]]) -> float:
    return sum(float(e.get("credit") or 0.0) for e in entries)


# =============================================================================
# CONFIDENCE
# =============================================================================

def calculate_confidence(
    touchpoints: Sequence[Touchpoint],
    methods_used: Sequence[str],
    conversion_timestamp: datetime,
    primary_ip: Optional[str] = None,
    conversion_ip: Optional[str] = None,
) -> Dict[str, Any]:
    """Additive 0-100 trust score for a reconstructed journey."""
    score = 0
    factors: Dict[str, Any] = {}

    session_available = SESSION_MATCH in methods_used
    factors["session_id_available"] = session_available
    if session_available:
        score += 40

    # An IP recorded on only one side still counts as a change of network
    cross_device = (primary_ip or None) != (conversion_ip or None)
    factors["cross_device_detected"] = cross_device
    if cross_device:
        score += 20

    n = len(touchpoints)
    if n >= 5:
        factors["journey_completeness"] = "high"
        score += 20
    elif n >= 2:
        factors["journey_completeness"] = "medium"
        score += 10
    else:
        factors["journey_completeness"] = "low"

    distinct_methods = list(dict.fromkeys(methods_used))
    factors["multiple_attribution_methods"] = len(distinct_methods) >= 2
    if len(distinct_methods) >= 2:
        score += 15

    gap_hours = hours_before(touchpoints[-1], conversion_timestamp) if touchpoints else None
    if gap_hours is not None and gap_hours <= 24:
        factors["temporal_accuracy"] = "excellent"
        score += 5
    elif gap_hours is not None and gap_hours <= 168:
        factors["temporal_accuracy"] = "good"
        score += 3
    else:
        factors["temporal_accuracy"] = "fair"

    factors["hours_since_last_touch"] = round(gap_hours, 3) if gap_hours is not None else None
    factors["attribution_methods"] = distinct_methods
    factors["touchpoint_count"] = n
    return {"score": min(100, score), "factors": factors}


# =============================================================================
# SUMMARY & INSIGHTS
# =============================================================================

def summarize_journey(touchpoints: Sequence[Touchpoint], conversion_timestamp: datetime) -> Dict[str, Any]:
    if not touchpoints:
        return {
            "total_touchpoints": 0,
            "unique_sessions": 0,
            "unique_sources": 0,
            "unique_campaigns": 0,
            "journey_duration_days": 0,
            "first_touch": None,
            "last_touch": None,
        }
    first, last = touchpoints[0], touchpoints[-1]
    span_days = (conversion_timestamp - first.timestamp).total_seconds() / 86400.0
    return {
        "total_touchpoints": len(touchpoints),
        "unique_sessions": len({tp.session_id for tp in touchpoints if tp.session_id}),
        "unique_sources": len({tp.source for tp in touchpoints}),
        "unique_campaigns": len({tp.utm_campaign for tp in touchpoints if tp.utm_campaign}),
        "journey_duration_days": max(0, math.ceil(span_days)),
        "first_touch": {"source": first.source, "timestamp": format_timestamp(first.timestamp)},
        "last_touch": {"source": last.source, "timestamp": format_timestamp(last.timestamp)},
    }


def journey_insights(
    touchpoints: Sequence[Touchpoint],
    conversion_timestamp: datetime,
    models: Dict[str, List[Dict[str, Any]]],
) -> List[str]:
    n = len(touchpoints)
    if n == 0:
        return ["Conversion-only journey - no tracked touchpoints before conversion, credited to direct"]

    insights = []
    if n == 1:
        insights.append("Single-touchpoint journey - all models attribute to same source")
    else:
        insights.append(f"Multi-touchpoint journey with {n} touchpoints")

    span_hours = hours_before(touchpoints[0], conversion_timestamp)
    if span_hours < 1:
        insights.append("Quick conversion (< 1 hour) - time decay has minimal impact")
    elif span_hours > 168:
        insights.append("Extended journey (> 1 week) - first-click and time decay differ significantly")

    if len({tp.session_id for tp in touchpoints if tp.session_id}) > 1:
        insights.append("Cross-session journey - indicates considered purchase decision")

    first_source = models["first_click"][0]["source"]
    last_source = models["last_click"][0]["source"]
    if first_source != last_source:
        insights.append("First-click and last-click sources differ - multi-touch attribution provides different insights")
    return insights
