"""
Unit Tests - Margin API
"""
import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from margin_engine.core.weeks import IsoWeek
from margin_engine.main import app
from margin_engine.recalculation import RecalculationRequest
from margin_engine.serving.worker import dispatch_recalculation


@pytest.fixture
def client():
    """Test client with the application lifespan running"""
    with TestClient(app) as test_client:
        yield test_client


class TestHealth:
    """Tests for health endpoints"""

    def test_health(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["queue"]["size"] == 0
        assert body["checks"]["queue"]["worker"] == "running"

    def test_liveness(self, client):
        assert client.get("/api/v1/health/live").json() == {"status": "alive"}

    def test_security_headers(self, client):
        response = client.get("/api/v1/health/live")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "X-Request-ID" in response.headers

    def test_metrics_exposed(self, client):
        client.post("/api/v1/margin/evaluate", json={"week": "2025-W47", "row": {"nm_id": "1"}})
        response = client.get("/metrics/")
        assert response.status_code == 200
        assert "margin_evaluations_total" in response.text


class TestEvaluate:
    """Tests for margin evaluation endpoints"""

    def test_evaluate_ok(self, client, sample_row_data):
        response = client.post(
            "/api/v1/margin/evaluate",
            json={"week": "2025-W47", "row": sample_row_data},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["kind"] == "ok"
        assert body["nm_id"] == "12345678"
        assert body["margin_pct"] == pytest.approx(35.0)
        assert body["applicable_cogs"]["is_same_as_current"] is True

    def test_evaluate_with_prior_weeks(self, client, dormant_row_data):
        response = client.post(
            "/api/v1/margin/evaluate",
            json={
                "week": "2025-W47",
                "row": dormant_row_data,
                "prior_weeks": [
                    {"week": "2025-W46", "qty": 0},
                    {"week": "2025-W44", "qty": 4, "revenue_net": 8000, "margin_pct": 92.32},
                ],
            },
        )

        body = response.json()
        assert body["kind"] == "missing"
        assert body["reason"] == "NO_SALES_IN_PERIOD"
        assert body["historical"]["last_sales_week"] == "2025-W44"
        assert body["historical"]["weeks_since_last_sale"] == 3

    def test_inverted_cogs_window_rejected(self, client, sample_row_data):
        row = {**sample_row_data, "cogs_valid_from": "2025-06-01", "cogs_valid_to": "2025-01-01"}
        response = client.post("/api/v1/margin/evaluate", json={"week": "2025-W47", "row": row})
        assert response.status_code == 422

    def test_inverted_cogs_record_rejected(self, client, sample_row_data):
        row = {
            **sample_row_data,
            "cogs_records": [{"unit_cost": 1200, "valid_from": "2025-06-01", "valid_to": "2025-01-01"}],
        }
        response = client.post(
            "/api/v1/margin/evaluate/batch",
            json={"week": "2025-W47", "rows": [row]},
        )
        assert response.status_code == 422

    def test_invalid_week_rejected(self, client, sample_row_data):
        response = client.post(
            "/api/v1/margin/evaluate",
            json={"week": "2025-47", "row": sample_row_data},
        )
        assert response.status_code == 422

    def test_batch_with_rollup(self, client, sample_row_data, dormant_row_data):
        rows = [
            sample_row_data,
            {**dormant_row_data, "nm_id": "33333333"},
            {**sample_row_data, "nm_id": "22222222", "operating_profit": 1000},
        ]
        response = client.post(
            "/api/v1/margin/evaluate/batch",
            json={"week": "2025-W47", "rows": rows, "include_brand_rollup": True, "sort_by": "margin_pct"},
        )

        assert response.status_code == 200
        body = response.json()
        assert [item["nm_id"] for item in body["results"]] == ["12345678", "22222222", "33333333"]
        assert body["results"][2]["reason"] == "NO_SALES_DATA"
        assert body["brands"][0]["brand"] == "Acme"
        assert body["brands"][0]["products"] == 3

    def test_batch_rejects_unknown_sort(self, client, sample_row_data):
        response = client.post(
            "/api/v1/margin/evaluate/batch",
            json={"week": "2025-W47", "rows": [sample_row_data], "sort_by": "nm_id"},
        )
        assert response.status_code == 422


class TestRecalculate:
    """Tests for recalculation endpoints"""

    def test_missing_role_forbidden(self, client):
        response = client.post("/api/v1/margin/recalculate", json={"nm_id": "12345678"})
        assert response.status_code == 403

    def test_analyst_forbidden(self, client):
        response = client.post(
            "/api/v1/margin/recalculate",
            json={"nm_id": "12345678"},
            headers={"X-User-Role": "Analyst"},
        )
        assert response.status_code == 403
        assert client.get("/api/v1/margin/recalculate/12345678").json()["state"] == "not_pending"

    def test_owner_enqueues_once(self, client):
        headers = {"X-User-Role": "Owner"}
        payload = {"nm_id": "12345678", "weeks": ["2025-W47"]}

        first = client.post("/api/v1/margin/recalculate", json=payload, headers=headers)
        second = client.post("/api/v1/margin/recalculate", json=payload, headers=headers)

        assert first.status_code == 202
        assert first.json()["enqueued"] is True
        assert first.json()["state"] == "pending"
        assert second.status_code == 202
        assert second.json()["enqueued"] is False
        assert second.json()["generation"] == first.json()["generation"]

    def test_recalculation_state(self, client):
        client.post(
            "/api/v1/margin/recalculate",
            json={"nm_id": "12345678", "weeks": ["2025-W47"]},
            headers={"X-User-Role": "Service"},
        )

        body = client.get(
            "/api/v1/margin/recalculate/12345678",
            headers={"X-User-Role": "Owner"},
        ).json()

        assert body["state"] == "pending"
        assert body["weeks"] == ["2025-W47"]
        assert body["can_retry"] is False

    def test_status_callback_resolves(self, client):
        requested = client.post(
            "/api/v1/margin/recalculate",
            json={"nm_id": "12345678", "weeks": ["2025-W47"]},
            headers={"X-User-Role": "Manager"},
        )

        response = client.post(
            "/api/v1/margin/recalculate/12345678/status",
            json={"margin_pct": 21.5, "status": "completed", "generation": requested.json()["generation"]},
        )

        body = response.json()
        assert body["changed"] is True
        assert body["state"] == "resolved"
        assert body["margin_pct"] == 21.5

    def test_cogs_changed_marks_pending(self, client):
        response = client.post(
            "/api/v1/margin/cogs-changed",
            json={"nm_id": "12345678", "valid_from": "2025-01-01"},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["state"] == "pending"
        assert body["affected_weeks"][0] == "2025-W01"
        assert body["polling"]["interval_seconds"] == 5

    def test_cogs_changed_in_future_affects_nothing(self, client):
        response = client.post(
            "/api/v1/margin/cogs-changed",
            json={"nm_id": "12345678", "valid_from": "2099-01-01"},
        )

        body = response.json()
        assert body["affected_weeks"] == []
        assert body["state"] == "not_pending"

    def test_status_without_generation_rejected(self, client):
        client.post(
            "/api/v1/margin/cogs-changed",
            json={"nm_id": "12345678", "valid_from": "2025-01-01"},
        )

        response = client.post(
            "/api/v1/margin/recalculate/12345678/status",
            json={"margin_pct": 21.5, "status": "completed"},
        )

        assert response.status_code == 422
        assert client.get("/api/v1/margin/recalculate/12345678").json()["state"] == "pending"

    def test_late_status_for_previous_change_ignored(self, client):
        first = client.post(
            "/api/v1/margin/cogs-changed",
            json={"nm_id": "12345678", "valid_from": "2025-01-01"},
        ).json()
        second = client.post(
            "/api/v1/margin/cogs-changed",
            json={"nm_id": "12345678", "valid_from": "2025-03-01"},
        ).json()
        assert second["generation"] == first["generation"] + 1

        response = client.post(
            "/api/v1/margin/recalculate/12345678/status",
            json={"margin_pct": 9.0, "status": "completed", "generation": first["generation"]},
        )

        body = response.json()
        assert body["changed"] is False
        assert body["state"] == "pending"
        assert body["margin_pct"] is None


class TestWorker:
    """Tests for the recalculation worker"""

    @pytest.mark.asyncio
    async def test_dispatch_counted(self):
        before = REGISTRY.get_sample_value("margin_recalculations_dispatched_total") or 0.0

        await dispatch_recalculation(
            RecalculationRequest(nm_id="12345678", weeks=(IsoWeek(2025, 47),), generation=2)
        )

        assert REGISTRY.get_sample_value("margin_recalculations_dispatched_total") == before + 1

    def test_worker_stopped_on_shutdown(self):
        with TestClient(app):
            worker = app.state.worker
            assert not worker.done()

        assert worker.cancelled()
