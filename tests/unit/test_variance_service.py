"""
Unit tests for the variance cache.
"""
import uuid
from datetime import datetime

import pytest

from forecast_engine.exceptions import InvalidPeriodError
from forecast_engine.models.financial_data import ActualAmount
from forecast_engine.models.methodology import ForecastMethodology
from forecast_engine.models.projection import ForecastProjection
from forecast_engine.models.variance import VarianceRecord
from forecast_engine.services.variance_service import (
    ActualValue,
    VarianceService,
    compute_variance_records,
    summarize_variance,
)


@pytest.fixture
def seed_projection(db_session, company_id):
    def seed(item, period, amount, version):
        year, month = (int(part) for part in period.split("-"))
        db_session.add(ForecastProjection(
            company_id=company_id,
            line_item_id=item.id,
            period_year=year,
            period_month=month,
            forecast_amount=amount,
            methodology_used=ForecastMethodology.MANUAL,
            forecast_version=version,
        ))
        db_session.commit()

    return seed


@pytest.fixture
def revenue(line_items, seed_amounts, seed_projection):
    """Revenue with two forecast versions and actuals for Jan/Feb 2024 and Feb 2023."""
    rev = line_items("REV_TOTAL")["REV_TOTAL"]
    seed_projection(rev, "2024-01", 100, version=1)
    seed_projection(rev, "2024-02", 200, version=1)
    seed_projection(rev, "2024-02", 250, version=2)
    seed_amounts(rev, {"2024-01": 90, "2024-02": 300, "2023-02": 240}, model=ActualAmount)
    return rev


class TestRefresh:
    """Tests for reading variance through the cache."""

    def test_figures(self, db_session, company_id, revenue):
        report = VarianceService(db_session, company_id).refresh("2024-02")

        assert report.period == "2024-02"
        row = report.rows[0]
        assert row.line_code == "REV_TOTAL"
        assert row.forecast_amount == 250
        assert row.actual_amount == 300
        assert row.variance_amount == 50
        assert row.variance_percent == pytest.approx(20.0)
        assert row.ytd_forecast == 350
        assert row.ytd_actual == 390
        assert row.ytd_variance == 40
        assert row.ytd_variance_percent == pytest.approx(11.4286)
        assert row.prior_year_actual == 240
        assert row.prior_year_variance == 60
        assert row.prior_year_variance_percent == pytest.approx(25.0)
        assert row.is_restated is False

    def test_missing_actual(self, db_session, company_id, revenue):
        report = VarianceService(db_session, company_id).refresh("2024-03")

        row = report.rows[0]
        assert row.forecast_amount == 0
        assert row.actual_amount is None
        assert row.variance_amount is None
        assert row.variance_percent is None
        assert row.ytd_actual == 390
        assert row.prior_year_actual is None

    def test_refresh_is_deterministic(self, db_session, company_id, revenue):
        service = VarianceService(db_session, company_id)

        first = [row.to_dict() for row in service.refresh("2024-02").rows]
        second = [row.to_dict() for row in service.refresh("2024-02").rows]

        assert first == second
        assert db_session.query(VarianceRecord).count() == 1

    def test_cache_is_reused_until_invalidated(self, db_session, company_id, revenue, seed_projection):
        service = VarianceService(db_session, company_id)
        service.refresh("2024-02")

        seed_projection(revenue, "2024-02", 300, version=3)
        assert service.refresh("2024-02").rows[0].forecast_amount == 250

        assert service.invalidate([2024]) == 1
        assert service.refresh("2024-02").rows[0].forecast_amount == 300

    def test_rebuild_overwrites(self, db_session, company_id, revenue, seed_projection):
        service = VarianceService(db_session, company_id)
        service.refresh("2024-02")
        seed_projection(revenue, "2024-02", 280, version=3)

        service.rebuild("2024-02")

        assert db_session.query(VarianceRecord).count() == 1
        assert service.refresh("2024-02").rows[0].variance_amount == 20

    def test_new_line_triggers_rebuild(self, db_session, company_id, revenue, line_items, seed_amounts):
        service = VarianceService(db_session, company_id)
        assert [row.line_code for row in service.refresh("2024-02").rows] == ["REV_TOTAL"]

        cost = line_items("COST")["COST"]
        seed_amounts(cost, {"2024-02": 75}, model=ActualAmount)
        report = service.refresh("2024-02")

        assert [row.line_code for row in report.rows] == ["REV_TOTAL", "COST"]
        assert report.rows[1].actual_amount == 75
        assert report.rows[1].forecast_amount == 0
        assert db_session.query(VarianceRecord).count() == 2

    def test_summary(self, db_session, company_id, revenue):
        summary = VarianceService(db_session, company_id).refresh("2024-02").summary

        assert summary.line_count == 1
        assert summary.forecast_total == 250
        assert summary.variance_percent == pytest.approx(20.0)
        assert summary.ytd_variance_total == 40

    def test_invalid_period(self, db_session, company_id):
        with pytest.raises(InvalidPeriodError):
            VarianceService(db_session, company_id).refresh("Feb 2024")

    def test_invalidate_other_year_keeps_rows(self, db_session, company_id, revenue):
        service = VarianceService(db_session, company_id)
        service.refresh("2024-02")

        assert service.invalidate([2023]) == 0
        assert service.invalidate([]) == 0
        assert service.invalidate() == 1


class TestComputeVarianceRecords:
    """Tests for the pure variance computation."""

    NOW = datetime(2024, 3, 1)

    def test_missing_forecast_counts_as_zero(self):
        line = uuid.uuid4()
        records = compute_variance_records(
            [line], 2024, 1, forecasts={}, actuals={(line, 2024, 1): ActualValue(50)}, calculated_at=self.NOW
        )

        assert records[0].forecast_amount == 0
        assert records[0].variance_amount == 50
        # Division by a zero forecast is undefined
        assert records[0].variance_percent is None

    def test_restated_flag_and_order(self):
        first, second = uuid.uuid4(), uuid.uuid4()
        records = compute_variance_records(
            [second, first],
            2024,
            1,
            forecasts={(first, 2024, 1): 10.0, (second, 2024, 1): 20.0},
            actuals={(second, 2024, 1): ActualValue(25, is_restated=True)},
            calculated_at=self.NOW,
        )

        assert [r.line_item_id for r in records] == [second, first]
        assert records[0].is_restated is True
        assert records[1].is_restated is False
        assert records[1].ytd_actual is None
        assert records[1].ytd_variance is None

    def test_summarize(self):
        first, second = uuid.uuid4(), uuid.uuid4()
        records = compute_variance_records(
            [first, second],
            2024,
            1,
            forecasts={(first, 2024, 1): 100.0, (second, 2024, 1): 100.0},
            actuals={(first, 2024, 1): ActualValue(110), (second, 2024, 1): ActualValue(70, is_restated=True)},
            calculated_at=self.NOW,
        )

        summary = summarize_variance(records)

        assert summary.forecast_total == 200
        assert summary.actual_total == 180
        assert summary.variance_total == -20
        assert summary.variance_percent == pytest.approx(-10.0)
        assert summary.restated_count == 1
