"""
Unit tests for the forecast calculator.
"""
from datetime import date

import pytest

from forecast_engine.exceptions import ParameterValidationError
from forecast_engine.services.forecast_calculator import (
    HistoricalPoint,
    calculate_line_forecast,
    derive_ratio,
    linear_trend,
    resolve_start_period,
    seasonal_average,
)


def series(start_year: int, start_month: int, amounts):
    points = []
    year, month = start_year, start_month
    for amount in amounts:
        points.append(HistoricalPoint(period=f"{year:04d}-{month:02d}", amount=amount))
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return points


SPRING = series(2024, 4, [12000, 11500, 11800])


class TestAverages:
    """Tests for average-based methods."""

    def test_straight_line(self):
        result = calculate_line_forecast("straight_line", {"lookbackMonths": 3}, SPRING, months=3)

        assert [p.period for p in result.points] == ["2024-07", "2024-08", "2024-09"]
        assert result.points[0].value == pytest.approx(11766.667, rel=1e-6)
        assert all(p.value == result.points[0].value for p in result.points)

    def test_run_rate_uses_recent_months(self):
        history = series(2024, 1, [100, 100, 100, 400, 500, 600])
        result = calculate_line_forecast("run_rate", {"lookbackMonths": 3}, history, months=1)

        assert result.points[0].value == pytest.approx(500)

    def test_history_order_does_not_matter(self):
        result = calculate_line_forecast("straight_line", {"lookbackMonths": 3}, list(reversed(SPRING)), months=1)

        assert result.points[0].period == "2024-07"
        assert result.points[0].value == pytest.approx(11766.667, rel=1e-6)

    def test_moving_average_rolls_forward(self):
        history = series(2024, 1, [100, 200, 300])
        result = calculate_line_forecast("moving_average", {"window": 3}, history, months=2)

        assert result.points[0].value == pytest.approx(200)
        # Second window is 200, 300 and the first projection
        assert result.points[1].value == pytest.approx((200 + 300 + 200) / 3)


class TestTrendAndGrowth:
    """Tests for trend and growth methods."""

    def test_linear_trend_extends_line(self):
        history = series(2023, 1, [100 + 10 * i for i in range(12)])
        result = calculate_line_forecast("linear_trend", {"lookbackMonths": 12}, history, months=2)

        assert result.points[0].value == pytest.approx(220)
        assert result.points[1].value == pytest.approx(230)

    def test_linear_trend_helper(self):
        trend = linear_trend(series(2024, 1, [5, 5, 5]), lookback=6)

        assert trend.slope == 0
        assert trend.intercept == pytest.approx(5)
        assert trend.last_index == 2

    def test_growth_rate_monthly_compounding(self):
        result = calculate_line_forecast(
            "growth_rate", {"annualRate": 12, "compounding": "monthly"}, SPRING, months=12
        )

        assert result.points[0].value == pytest.approx(11800 * 1.12 ** (1 / 12))
        assert result.points[11].value == pytest.approx(11800 * 1.12)

    def test_growth_rate_annual_compounding(self):
        result = calculate_line_forecast(
            "growth_rate", {"annualRate": 12, "compounding": "annual"}, SPRING, months=2
        )

        assert result.points[0].value == pytest.approx(11800 * 1.01)
        assert result.points[1].value == pytest.approx(11800 * 1.01 ** 2)


class TestSeasonal:
    """Tests for the seasonal method."""

    def test_uses_same_month_of_prior_years(self):
        history = series(2022, 1, [100 + (50 if i % 12 == 0 else 0) + i for i in range(24)])
        result = calculate_line_forecast(
            "seasonal", {"seasonalityYears": 2, "seasonalGrowth": 10}, history, months=1
        )

        # Januaries were 150 and 162
        assert result.points[0].period == "2024-01"
        assert result.points[0].value == pytest.approx((150 + 162) / 2 * 1.1)

    def test_seasonal_average_missing_month(self):
        assert seasonal_average(series(2024, 1, [1, 2]), target_month=7, years=3) is None


class TestPercentOfRevenue:
    """Tests for the percent-of-revenue method."""

    EXPENSES = series(2024, 1, [5000, 5200, 5100, 5300])
    REVENUE = series(2024, 1, [50000, 52000, 51000, 53000])

    def test_auto_derived_ratio(self):
        result = calculate_line_forecast(
            "percent_of_revenue",
            {},
            self.EXPENSES,
            months=1,
            driver_history=self.REVENUE,
            driver_forecast=[54000],
        )

        assert result.points[0].value == pytest.approx(5400, rel=1e-3)
        assert any(note.startswith("Auto-derived ratio 10.0%") for note in result.notes)

    def test_explicit_percentage(self):
        result = calculate_line_forecast(
            "percent_of_revenue",
            {"percentage": 25},
            self.EXPENSES,
            months=2,
            driver_history=self.REVENUE,
            driver_forecast=[40000, None],
        )

        assert result.points[0].value == pytest.approx(10000)
        # Missing driver projection falls back to the last driver actual
        assert result.points[1].value == pytest.approx(53000 * 0.25)

    def test_no_driver_data(self):
        result = calculate_line_forecast("percent_of_revenue", {}, self.EXPENSES, months=1)

        assert result.points[0].value == 0
        assert any("Could not derive ratio" in note for note in result.notes)

    def test_derive_ratio_skips_zero_driver_periods(self):
        ratio = derive_ratio(series(2024, 1, [10, 20]), series(2024, 1, [0, 100]))

        assert ratio == pytest.approx(20)


class TestOtherMethods:
    """Tests for driver-based and manual methods."""

    def test_driver_based(self):
        result = calculate_line_forecast(
            "driver_based", {"baseUnits": 10, "unitGrowth": 10, "ratePerUnit": 100}, [], months=2,
            today=date(2024, 1, 15),
        )

        assert result.points[0].period == "2024-02"
        assert result.points[0].value == pytest.approx(10 * 1.1 * 100)
        assert result.points[1].value == pytest.approx(10 * 1.1 ** 2 * 100)

    def test_manual_value_and_notes(self):
        result = calculate_line_forecast(
            "manual", {"monthlyValue": 2500, "notes": "Signed lease"}, SPRING, months=2
        )

        assert [p.value for p in result.points] == [2500, 2500]
        assert "Signed lease" in result.notes

    def test_overrides_win_for_any_method(self):
        result = calculate_line_forecast(
            "growth_rate", {"annualRate": 12}, SPRING, months=3, manual_overrides={"2024-08": 1.0}
        )

        assert result.points[1].value == 1.0
        assert result.points[0].value != 1.0

    def test_moving_average_uses_override_as_history(self):
        history = series(2024, 1, [100, 100, 100])
        result = calculate_line_forecast(
            "moving_average", {"window": 3}, history, months=2, manual_overrides={"2024-04": 400}
        )

        assert result.points[1].value == pytest.approx(200)


class TestEdgeCases:
    """Tests for empty history and parameter handling."""

    def test_no_history_defaults_to_zero(self):
        result = calculate_line_forecast("run_rate", {}, [], months=2, today=date(2024, 5, 20))

        assert [p.period for p in result.points] == ["2024-06", "2024-07"]
        assert [p.value for p in result.points] == [0, 0]
        assert "No history available; forecast defaults to 0" in result.notes

    def test_explicit_start_period(self):
        assert resolve_start_period(SPRING, start_period="2025-01") == "2025-01"
        assert resolve_start_period(SPRING) == "2024-07"

    def test_invalid_parameters_raise(self):
        with pytest.raises(ParameterValidationError):
            calculate_line_forecast("moving_average", {"window": 1}, SPRING)

    def test_summary_note(self):
        result = calculate_line_forecast("run_rate", {"lookbackMonths": 2}, SPRING, months=1)

        assert result.notes[-1] == "Run-Rate (Last N Months) using Recent Months: 2"

    def test_summary_note_auto_percentage(self):
        result = calculate_line_forecast("percent_of_revenue", {}, [], months=1)

        assert "Percentage of Revenue: auto" in result.notes[-1]
