"""
Unit tests for the forecast run orchestrator.
"""
import uuid
from datetime import date

import pytest

from forecast_engine.exceptions import ForecastVersionNotFoundError, StorageError, ValidationError
from forecast_engine.models.financial_data import ActualAmount
from forecast_engine.models.projection import ForecastProjection
from forecast_engine.models.variance import VarianceRecord
from forecast_engine.services.forecast_service import ForecastService, split_cyclic, stable_topological_order
from forecast_engine.services.methodology_service import MethodologyService
from forecast_engine.services.variance_service import VarianceService

TODAY = date(2024, 5, 10)
HISTORY_PERIODS = ["2024-01", "2024-02", "2024-03", "2024-04"]


def history(*amounts):
    return dict(zip(HISTORY_PERIODS, amounts))


class TestTopologicalOrder:
    """Tests for driver ordering."""

    def test_drivers_come_first(self):
        a, b, c = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        ordered, cyclic = stable_topological_order([a, b, c], {a: c})

        assert ordered == [b, c, a]
        assert cyclic == []

    def test_independent_nodes_keep_order(self):
        nodes = [uuid.uuid4() for _ in range(4)]
        ordered, cyclic = stable_topological_order(nodes, {})

        assert ordered == nodes

    def test_cycle_detected(self):
        a, b, c = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        ordered, cyclic = stable_topological_order([a, b, c], {a: b, b: a})

        assert ordered == [c]
        assert cyclic == [a, b]

    def test_split_cycle_members_from_dependents(self):
        a, b, c, d = (uuid.uuid4() for _ in range(4))
        edges = {a: b, b: a, c: d, d: a}
        ordered, cyclic = stable_topological_order([c, a, b, d], edges)

        members, dependents = split_cyclic(cyclic, edges)

        assert ordered == []
        assert members == [a, b]
        assert dependents == [d, c]


class TestRunForecast:
    """Tests for run_forecast."""

    def test_run_projects_every_active_line(self, db_session, company_id, line_items, seed_amounts):
        items = line_items("REV", "RENT")
        seed_amounts(items["REV"], history(100, 200, 300, 400))
        seed_amounts(items["RENT"], history(50, 50, 50, 50))

        result = ForecastService(db_session, company_id).run_forecast(months=3, today=TODAY)

        assert list(result.results) == [items["REV"].id, items["RENT"].id]
        rev_points = result.results[items["REV"].id]
        assert [p.period for p in rev_points] == ["2024-05", "2024-06", "2024-07"]
        # Default run-rate over the last 3 months
        assert rev_points[0].value == pytest.approx(300)
        assert result.summary.persisted is True
        assert result.summary.rows_written == 6
        assert db_session.query(ForecastProjection).count() == 6

    def test_actuals_override_history(self, db_session, company_id, line_items, seed_amounts):
        rev = line_items("REV")["REV"]
        seed_amounts(rev, history(100, 100, 100, 100))
        seed_amounts(rev, {"2024-04": 400}, model=ActualAmount)

        series = ForecastService(db_session, company_id).get_series_for_line(rev.id)

        assert [p.amount for p in series] == [100, 100, 100, 400]

    def test_driver_projected_before_dependent(self, db_session, company_id, line_items, seed_amounts):
        items = line_items("COMMISSIONS", "REV_TOTAL")
        seed_amounts(items["REV_TOTAL"], history(1000, 2000, 3000, 4000))
        seed_amounts(items["COMMISSIONS"], history(100, 200, 300, 400))
        MethodologyService(db_session, company_id).save_config(items["COMMISSIONS"].id, "percent_of_revenue", {})

        result = ForecastService(db_session, company_id).run_forecast(months=2, persist=False, today=TODAY)

        assert result.summary.processing_order == [items["REV_TOTAL"].id, items["COMMISSIONS"].id]
        revenue = result.results[items["REV_TOTAL"].id][0].value
        commissions = result.results[items["COMMISSIONS"].id][0].value
        assert revenue == pytest.approx(3000)
        assert commissions == pytest.approx(300)
        assert any("Auto-derived ratio 10.0%" in n for n in result.notes[items["COMMISSIONS"].id])
        assert result.summary.persisted is False
        assert db_session.query(ForecastProjection).count() == 0

    def test_driver_lookup_is_case_insensitive(self, db_session, company_id, line_items, seed_amounts):
        items = line_items("FEES", "Rev_Total")
        seed_amounts(items["Rev_Total"], history(100, 100, 100, 100))
        MethodologyService(db_session, company_id).save_config(
            items["FEES"].id, "percent_of_revenue", {"percentage": 50}
        )

        result = ForecastService(db_session, company_id).run_forecast(months=1, persist=False, today=TODAY)

        assert result.results[items["FEES"].id][0].value == pytest.approx(50)

    def test_missing_driver_falls_back_to_zero(self, db_session, company_id, line_items, seed_amounts):
        fees = line_items("FEES")["FEES"]
        seed_amounts(fees, history(10, 10, 10, 10))
        MethodologyService(db_session, company_id).save_config(
            fees.id, "percent_of_revenue", {"percentage": 10, "revenueLineCode": "NOPE"}
        )

        result = ForecastService(db_session, company_id).run_forecast(months=1, persist=False, today=TODAY)

        assert result.results[fees.id][0].value == 0
        assert result.summary.missing_drivers == [fees.id]
        assert any("'NOPE' not found" in n for n in result.notes[fees.id])

    def test_cycle_uses_last_driver_actual(self, db_session, company_id, line_items, seed_amounts):
        items = line_items("A", "B")
        seed_amounts(items["A"], history(10, 10, 10, 100))
        seed_amounts(items["B"], history(20, 20, 20, 200))
        service = MethodologyService(db_session, company_id)
        service.save_config(items["A"].id, "percent_of_revenue", {"percentage": 10, "revenueLineCode": "B"})
        service.save_config(items["B"].id, "percent_of_revenue", {"percentage": 50, "revenueLineCode": "A"})

        result = ForecastService(db_session, company_id).run_forecast(months=1, persist=False, today=TODAY)

        assert result.summary.cyclic_lines == [items["A"].id, items["B"].id]
        assert result.results[items["A"].id][0].value == pytest.approx(20)
        assert result.results[items["B"].id][0].value == pytest.approx(50)
        assert any("Circular driver reference" in n for n in result.notes[items["A"].id])

    def test_line_driven_by_cycle_uses_driver_projection(self, db_session, company_id, line_items, seed_amounts):
        items = line_items("C", "A", "B")
        seed_amounts(items["A"], history(10, 10, 10, 100))
        seed_amounts(items["B"], history(20, 20, 20, 200))
        seed_amounts(items["C"], history(1, 1, 1, 1))
        service = MethodologyService(db_session, company_id)
        service.save_config(items["A"].id, "percent_of_revenue", {"percentage": 10, "revenueLineCode": "B"})
        service.save_config(items["B"].id, "percent_of_revenue", {"percentage": 50, "revenueLineCode": "A"})
        service.save_config(items["C"].id, "percent_of_revenue", {"percentage": 50, "revenueLineCode": "A"})

        result = ForecastService(db_session, company_id).run_forecast(months=1, persist=False, today=TODAY)

        assert result.summary.cyclic_lines == [items["A"].id, items["B"].id]
        assert result.summary.cycle_dependents == [items["C"].id]
        assert result.summary.processing_order == [items["A"].id, items["B"].id, items["C"].id]
        # Half of A's fallback projection of 20
        assert result.results[items["C"].id][0].value == pytest.approx(10)
        notes = result.notes[items["C"].id]
        assert any("'A' is in or downstream of a driver cycle" in n for n in notes)
        assert not any("Circular driver reference" in n for n in notes)

    def test_driver_outside_run(self, db_session, company_id, line_items, seed_amounts):
        items = line_items("FEES", "REV_TOTAL")
        seed_amounts(items["REV_TOTAL"], history(100, 100, 100, 1000))
        MethodologyService(db_session, company_id).save_config(
            items["FEES"].id, "percent_of_revenue", {"percentage": 10}
        )

        result = ForecastService(db_session, company_id).run_forecast(
            line_items=[items["FEES"]], months=1, persist=False, today=TODAY
        )

        assert list(result.results) == [items["FEES"].id]
        assert result.results[items["FEES"].id][0].value == pytest.approx(100)
        assert any("not part of this run" in n for n in result.notes[items["FEES"].id])

    def test_chunked_persist(self, db_session, company_id, line_items, seed_amounts):
        rev = line_items("REV")["REV"]
        seed_amounts(rev, history(1, 2, 3, 4))
        service = ForecastService(db_session, company_id)
        service.settings = service.settings.model_copy(update={"write_chunk_size": 5})

        result = service.run_forecast(months=12, today=TODAY)

        assert result.summary.chunks_written == 3
        assert result.summary.rows_written == 12

    def test_failed_chunk_keeps_committed_chunks(self, db_session, company_id, line_items, seed_amounts, fail_commit):
        rev = line_items("REV")["REV"]
        seed_amounts(rev, history(1, 2, 3, 4))
        variance = VarianceService(db_session, company_id)
        assert variance.refresh("2024-05").rows[0].forecast_amount == 0
        service = ForecastService(db_session, company_id)
        service.settings = service.settings.model_copy(update={"write_chunk_size": 5})
        fail_commit(ForecastProjection, write=2)

        with pytest.raises(StorageError) as exc_info:
            service.run_forecast(months=12, today=TODAY)

        assert exc_info.value.details["chunks_committed"] == 1
        assert exc_info.value.details["rows_committed"] == 5
        assert exc_info.value.details["operation"] == "persist_projections"
        assert db_session.query(ForecastProjection).count() == 5
        # The committed chunk is already the current forecast for May
        assert variance.refresh("2024-05").rows[0].forecast_amount == 3

    def test_persisted_run_refreshes_variance(self, db_session, company_id, line_items, seed_amounts):
        rev = line_items("REV")["REV"]
        seed_amounts(rev, history(100, 100, 100, 100))
        service = ForecastService(db_session, company_id)
        variance = VarianceService(db_session, company_id)

        service.run_forecast(months=1, today=TODAY)
        assert variance.refresh("2024-05").rows[0].forecast_amount == 100

        MethodologyService(db_session, company_id).save_config(rev.id, "manual", {"monthlyValue": 999})
        service.run_forecast(months=1, today=TODAY)

        assert variance.refresh("2024-05").rows[0].forecast_amount == 999

    def test_unpersisted_run_keeps_variance_cache(self, db_session, company_id, line_items, seed_amounts):
        rev = line_items("REV")["REV"]
        seed_amounts(rev, history(100, 100, 100, 100))
        variance = VarianceService(db_session, company_id)
        variance.refresh("2024-05")

        ForecastService(db_session, company_id).run_forecast(months=1, persist=False, today=TODAY)

        assert db_session.query(VarianceRecord).count() == 1

    @pytest.mark.parametrize("months", [0, 121])
    def test_horizon_bounds(self, db_session, company_id, months):
        with pytest.raises(ValidationError):
            ForecastService(db_session, company_id).run_forecast(months=months)


class TestVersions:
    """Tests for versioned projections."""

    def test_versions_are_immutable(self, db_session, company_id, line_items, seed_amounts):
        rev = line_items("REV")["REV"]
        seed_amounts(rev, history(100, 100, 100, 100))
        service = ForecastService(db_session, company_id)

        first = service.run_forecast(months=2, today=TODAY)
        MethodologyService(db_session, company_id).save_config(rev.id, "manual", {"monthlyValue": 999})
        second = service.run_forecast(months=2, today=TODAY)

        assert second.version > first.version
        original = service.get_projections(version=first.version)
        assert [row.forecast_amount for row in original] == [100, 100]
        assert [info.version for info in service.list_versions()] == [second.version, first.version]

    def test_current_projection_is_max_version(self, db_session, company_id, line_items, seed_amounts):
        rev = line_items("REV")["REV"]
        seed_amounts(rev, history(100, 100, 100, 100))
        service = ForecastService(db_session, company_id)

        service.run_forecast(months=3, today=TODAY)
        MethodologyService(db_session, company_id).save_config(rev.id, "manual", {"monthlyValue": 5})
        service.run_forecast(months=1, today=TODAY)

        current = {row.period: row.forecast_amount for row in service.get_projections()}
        assert current == {"2024-05": 5, "2024-06": 100, "2024-07": 100}
        assert service.latest_projections_for_year(2024)[(rev.id, 5)] == 5

    def test_unknown_version(self, db_session, company_id):
        with pytest.raises(ForecastVersionNotFoundError):
            ForecastService(db_session, company_id).get_projections(version=12345)
