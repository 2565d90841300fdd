"""
Attribution Calculator Tests (Unit)
===================================

WHAT: Unit tests for the five credit models, confidence scoring and the
      journey summary.
WHY: Reports compare models side by side; any model whose credits do not add
     up to the order total makes that comparison meaningless.

REFERENCES:
- backend/journeyx/services/attribution_calculator.py
"""

from datetime import datetime, timedelta, timezone

import pytest

from journeyx.services import attribution_calculator as calc
from journeyx.services.records import (
    CONVERSION_IP_MATCH,
    PRIMARY_IP_MATCH,
    SESSION_MATCH,
    Touchpoint,
)

CONVERTED_AT = datetime(2025, 6, 17, 12, 0, tzinfo=timezone.utc)


def _journey(hours_before, sources=None, sessions=None):
    """Touchpoints at the given hours before conversion, oldest first."""
    touchpoints = []
    for i, hours in enumerate(sorted(hours_before, reverse=True)):
        touchpoints.append(Touchpoint(
            timestamp=CONVERTED_AT - timedelta(hours=hours),
            session_id=(sessions[i] if sessions else "s1"),
            source=(sources[i] if sources else f"source_{i}"),
            landing_page=f"/page/{i}",
        ))
    return touchpoints


class TestCreditConservation:
    @pytest.mark.parametrize("count", [1, 2, 3, 7])
    @pytest.mark.parametrize("value", [0.0, 49.0, 1234.56])
    def test_every_model_sums_to_value(self, count, value) -> None:
        models = calc.calculate(_journey(range(1, count + 1)), value, CONVERTED_AT)
        assert set(models) == set(calc.ATTRIBUTION_MODELS)
        for model, entries in models.items():
            assert calc.total_credit(entries) == pytest.approx(value), model

    def test_percentages_sum_to_100(self) -> None:
        models = calc.calculate(_journey([1, 5, 30, 200]), 80.0, CONVERTED_AT)
        for entries in models.values():
            assert sum(e["credit_percentage"] for e in entries) == pytest.approx(100.0)

    def test_zero_value_keeps_shares(self) -> None:
        models = calc.calculate(_journey([1, 2]), 0.0, CONVERTED_AT)
        assert [e["credit"] for e in models["linear"]] == [0.0, 0.0]
        assert [e["credit_percentage"] for e in models["linear"]] == [50.0, 50.0]


class TestSingleTouchModels:
    def test_first_and_last_click(self) -> None:
        touchpoints = _journey([48, 10, 2], sources=["google", "email", "facebook"])
        models = calc.calculate(touchpoints, 100.0, CONVERTED_AT)

        assert len(models["first_click"]) == 1
        assert models["first_click"][0]["source"] == "google"
        assert models["first_click"][0]["touchpoint_position"] == 1
        assert models["last_click"][0]["source"] == "facebook"
        assert models["last_click"][0]["touchpoint_position"] == 3

    def test_linear_even_split(self) -> None:
        models = calc.calculate(_journey([3, 2, 1, 0.5]), 100.0, CONVERTED_AT)
        assert [e["credit"] for e in models["linear"]] == [25.0] * 4
        assert [e["touchpoint_position"] for e in models["linear"]] == [1, 2, 3, 4]


class TestPositionBased:
    def test_one_touchpoint_gets_everything(self) -> None:
        entries = calc.position_based(_journey([1]), 60.0)
        assert [(e["credit"], e["position_role"]) for e in entries] == [(60.0, "only")]

    def test_two_touchpoints_split_evenly(self) -> None:
        entries = calc.position_based(_journey([2, 1]), 60.0)
        assert [e["credit_percentage"] for e in entries] == [50.0, 50.0]

    def test_three_touchpoints_40_20_40(self) -> None:
        entries = calc.position_based(_journey([3, 2, 1]), 100.0)
        assert [e["credit"] for e in entries] == pytest.approx([40.0, 20.0, 40.0])
        assert [e["position_role"] for e in entries] == ["first", "middle", "last"]

    def test_middle_share_divided(self) -> None:
        entries = calc.position_based(_journey([6, 5, 4, 3, 2, 1]), 100.0)
        middle = [e["credit"] for e in entries[1:-1]]
        assert middle == pytest.approx([5.0, 5.0, 5.0, 5.0])


class TestTimeDecay:
    def test_half_life_halves_weight(self) -> None:
        entries = calc.time_decay(_journey([168, 0]), 100.0, CONVERTED_AT, half_life_hours=168)
        old, recent = entries
        assert recent["credit"] == pytest.approx(2 * old["credit"])
        assert recent["credit"] + old["credit"] == pytest.approx(100.0)

    def test_monotonic_in_recency(self) -> None:
        entries = calc.time_decay(_journey([500, 100, 24, 3, 1]), 100.0, CONVERTED_AT)
        credits = [e["credit"] for e in entries]
        assert credits == sorted(credits)

    def test_measured_against_conversion_time(self) -> None:
        """Recomputing later gives identical credits."""
        touchpoints = _journey([30, 10])
        first = calc.time_decay(touchpoints, 90.0, CONVERTED_AT)
        again = calc.time_decay(touchpoints, 90.0, CONVERTED_AT)
        assert [e["credit"] for e in first] == [e["credit"] for e in again]
        assert first[0]["hours_before_conversion"] == 30.0

    def test_very_old_journey_does_not_underflow(self) -> None:
        entries = calc.time_decay(_journey([24 * 365 * 30, 24 * 365 * 29]), 10.0, CONVERTED_AT, half_life_hours=1)
        assert calc.total_credit(entries) == pytest.approx(10.0)

    def test_rejects_non_positive_half_life(self) -> None:
        with pytest.raises(ValueError):
            calc.calculate(_journey([1]), 10.0, CONVERTED_AT, half_life_hours=0)


class TestConversionOnlyJourney:
    def test_direct_entry_for_every_model(self) -> None:
        models = calc.calculate([], 25.0, CONVERTED_AT)
        for entries in models.values():
            assert len(entries) == 1
            entry = entries[0]
            assert entry["source"] == "direct"
            assert entry["credit"] == 25.0
            assert entry["touchpoint_position"] == 0
            assert entry["synthetic"] is True

    def test_summary_and_insights(self) -> None:
        models = calc.calculate([], 0.0, CONVERTED_AT)
        summary = calc.summarize_journey([], CONVERTED_AT)
        assert summary["total_touchpoints"] == 0
        assert summary["first_touch"] is None
        assert calc.journey_insights([], CONVERTED_AT, models)[0].startswith("Conversion-only journey")


class TestConfidence:
    def test_all_factors(self) -> None:
        touchpoints = _journey([10, 8, 6, 4, 2])
        confidence = calc.calculate_confidence(
            touchpoints,
            [SESSION_MATCH, PRIMARY_IP_MATCH, CONVERSION_IP_MATCH],
            CONVERTED_AT,
            primary_ip="203.0.113.7",
            conversion_ip="198.51.100.2",
        )
        # 40 session + 20 cross-device + 20 five touchpoints + 15 methods + 5 recent
        assert confidence["score"] == 100
        assert confidence["factors"]["temporal_accuracy"] == "excellent"
        assert confidence["factors"]["cross_device_detected"] is True

    def test_ip_only_week_old(self) -> None:
        confidence = calc.calculate_confidence(
            _journey([100, 72]), [PRIMARY_IP_MATCH], CONVERTED_AT, primary_ip="203.0.113.7", conversion_ip="203.0.113.7",
        )
        assert confidence["score"] == 10 + 3
        assert confidence["factors"]["journey_completeness"] == "medium"
        assert confidence["factors"]["temporal_accuracy"] == "good"

    def test_primary_ip_without_conversion_ip_is_cross_device(self) -> None:
        confidence = calc.calculate_confidence(
            _journey([2]), [SESSION_MATCH], CONVERTED_AT, primary_ip="203.0.113.7", conversion_ip=None,
        )
        # 40 session + 20 cross-device + 0 one touchpoint + 0 one method + 5 recent
        assert confidence["factors"]["cross_device_detected"] is True
        assert confidence["score"] == 65

    def test_no_ips_is_not_cross_device(self) -> None:
        confidence = calc.calculate_confidence(_journey([2]), [SESSION_MATCH], CONVERTED_AT)
        assert confidence["factors"]["cross_device_detected"] is False
        assert confidence["score"] == 45

    def test_no_touchpoints_is_fair(self) -> None:
        confidence = calc.calculate_confidence([], [], CONVERTED_AT)
        assert confidence["score"] == 0
        assert confidence["factors"]["temporal_accuracy"] == "fair"
        assert confidence["factors"]["hours_since_last_touch"] is None


class TestSummary:
    def test_counts_and_duration(self) -> None:
        touchpoints = _journey([50, 30, 2], sources=["google", "google", "email"], sessions=["s1", "s2", "s2"])
        summary = calc.summarize_journey(touchpoints, CONVERTED_AT)
        assert summary["total_touchpoints"] == 3
        assert summary["unique_sessions"] == 2
        assert summary["unique_sources"] == 2
        assert summary["journey_duration_days"] == 3
        assert summary["first_touch"]["source"] == "google"
        assert summary["last_touch"]["source"] == "email"

    def test_insights_flag_cross_session_and_source_change(self) -> None:
        touchpoints = _journey([200, 2], sources=["google", "email"], sessions=["s1", "s2"])
        models = calc.calculate(touchpoints, 10.0, CONVERTED_AT)
        insights = calc.journey_insights(touchpoints, CONVERTED_AT, models)
        assert "Multi-touchpoint journey with 2 touchpoints" in insights
        assert any(i.startswith("Extended journey") for i in insights)
        assert any(i.startswith("Cross-session journey") for i in insights)
        assert any(i.startswith("First-click and last-click sources differ") for i in insights)
