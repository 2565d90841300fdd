"""Bulk analysis over stored attribution results.

WHAT:
    Reads stored multi-touch results and aggregates them: totals, credit per
    model, and how each source fares under each model.

WHY:
    The single-conversion endpoint answers "where did this sale come from".
    Marketing decisions need the same question across every journey in a
    window, including which sources a model choice flatters.

HOW:
    1. Bounded SCAN over multi_touch_attribution:* (page cap)
    2. Fetch with bounded fan-out, keep results whose conversion falls in the
       window; zero-value conversions are kept
    3. summarize_attributions() aggregates (pure)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from journeyx.exceptions import RecordParseError
from journeyx.services.attribution_calculator import ATTRIBUTION_MODELS
from journeyx.services.batch_progress import ResumeToken
from journeyx.services.event_scanner import EventScanner, fetch_records
from journeyx.services.key_schema import ATTRIBUTION_RESULT_PREFIX
from journeyx.services.kv_client import KVClient
from journeyx.services.records import parse_timestamp

logger = logging.getLogger(__name__)

RESULT_PATTERN = f"{ATTRIBUTION_RESULT_PREFIX}*"
MAX_INDIVIDUAL_RESULTS = 50


def _is_result_key(key: str) -> bool:
    return key.startswith(ATTRIBUTION_RESULT_PREFIX)


def _parse_result(data: Any, key: str) -> Dict[str, Any]:
    if not isinstance(data, dict) or not isinstance(data.get("conversion"), dict):
        raise RecordParseError("Not an attribution result", key=key)
    data["storage_key"] = key
    return data


def _is_conversion_only(result: Dict[str, Any]) -> bool:
    journey = result.get("journey") or {}
    if "conversion_only" in journey:
        return bool(journey["conversion_only"])
    return not journey.get("touchpoints")


def _order_total(result: Dict[str, Any]) -> float:
    try:
        return float(result["conversion"].get("order_total") or 0.0)
    except (TypeError, ValueError):
        return 0.0


def summarize_attributions(
    results: Sequence[Dict[str, Any]],
    source_comparison: bool = True,
) -> Dict[str, Any]:
    """Aggregate stored results. No I/O."""
    total_value = sum(_order_total(r) for r in results)
    free_trials = sum(1 for r in results if _order_total(r) == 0)

    model_totals = {model: 0.0 for model in ATTRIBUTION_MODELS}
    by_source: Dict[str, Dict[str, float]] = {}
    for result in results:
        models = result.get("models") or {}
        for model in ATTRIBUTION_MODELS:
            for entry in models.get(model) or []:
                credit = float(entry.get("credit") or 0.0)
                model_totals[model] += credit
                source = entry.get("source") or "direct"
                by_source.setdefault(source, {m: 0.0 for m in ATTRIBUTION_MODELS})[model] += credit

    max_total = max(model_totals.values()) if model_totals else 0.0
    model_comparison = [
        {
            "model_name": model,
            "total_attributed_value": round(value, 2),
            "percentage_of_max": round(value / max_total * 100.0, 2) if max_total else 0.0,
        }
        for model, value in model_totals.items()
    ]

    count = len(results)
    summary: Dict[str, Any] = {
        "total_journeys": count,
        "total_conversion_value": round(total_value, 2),
        "average_conversion_value": round(total_value / count, 2) if count else 0.0,
        "attribution_summary": {model: round(value, 2) for model, value in model_totals.items()},
        "model_comparison": model_comparison,
        "journey_value_breakdown": {
            "free_trials": free_trials,
            "paid_conversions": count - free_trials,
            "total_journeys": count,
        },
    }

    if source_comparison:
        summary["source_attribution_comparison"] = compare_sources(by_source, model_totals)

    if count <= MAX_INDIVIDUAL_RESULTS:
        summary["results"] = list(results)
    return summary


def compare_sources(
    by_source: Dict[str, Dict[str, float]],
    model_totals: Dict[str, float],
) -> List[Dict[str, Any]]:
    """Per-source credit under each model, highest linear credit first."""
    rows = []
    for source, credits in by_source.items():
        attribution_by_model = {
            model: {
                "credited_value": round(credit, 2),
                "percentage_of_total": round(credit / model_totals[model] * 100.0, 2) if model_totals[model] else 0.0,
            }
            for model, credit in credits.items()
        }
        most = max(credits, key=lambda m: credits[m])
        least = min(credits, key=lambda m: credits[m])
        rows.append({
            "source": source,
            "attribution_by_model": attribution_by_model,
            "attribution_variance": round(credits[most] - credits[least], 2),
            "most_favorable_model": most,
            "least_favorable_model": least,
        })
    rows.sort(key=lambda row: (-row["attribution_by_model"]["linear"]["credited_value"], row["source"]))
    return rows


async def analyze_stored_attributions(
    kv: KVClient,
    date_range_days: int = 30,
    limit: int = 1000,
    include_conversion_only: bool = True,
    source_comparison: bool = True,
    scan_count: int = 100,
    max_pages: int = 200,
    fetch_concurrency: int = 50,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Scan stored results and aggregate the ones inside the window.

    Args:
        date_range_days: keep conversions from the last N days
        limit: maximum number of results aggregated
        include_conversion_only: keep journeys without touchpoints
        source_comparison: add the per-source model comparison
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=date_range_days)

    scanner = EventScanner(kv, [], [], count=scan_count, max_pages=max_pages)
    scan = await scanner.scan_patterns([RESULT_PATTERN], ResumeToken.scan_start(), _is_result_key)
    fetched = await fetch_records(kv, scan.keys, _parse_result, concurrency=fetch_concurrency)

    selected = []
    for result in sorted(fetched.records, key=lambda r: r["storage_key"]):
        ts = parse_timestamp(result["conversion"].get("timestamp"))
        if ts is None or ts < cutoff or ts > now:
            continue
        if not include_conversion_only and _is_conversion_only(result):
            continue
        selected.append(result)
        if len(selected) >= limit:
            break

    summary = summarize_attributions(selected, source_comparison=source_comparison)
    summary["scan"] = {
        "keys_found": len(scan.keys),
        "complete": scan.complete,
        "pages": scan.pages,
        "unreadable": fetched.failed,
    }
    summary["date_range_days"] = date_range_days
    logger.info(
        "[ATTRIBUTION] Analysis: %d journeys, value=%.2f (scanned %d keys, complete=%s)",
        summary["total_journeys"], summary["total_conversion_value"], len(scan.keys), scan.complete,
    )
    return summary
