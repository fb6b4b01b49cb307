"""
Test Suite Configuration
"""
from datetime import date, datetime, timezone
from typing import Any, Dict, List

import pytest

from margin_engine.config import Settings
from margin_engine.core.models import CogsRecord, MarginFact
from margin_engine.core.schemas import AnalyticsRow
from margin_engine.core.weeks import IsoWeek
from margin_engine.recalculation.controller import RecalculationController
from margin_engine.recalculation.scheduler import VirtualScheduler


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(
        app_env="testing",
        debug=True,
    )


@pytest.fixture
def target_week() -> IsoWeek:
    """2025-W47: Monday 2025-11-17, Thursday 2025-11-20"""
    return IsoWeek(2025, 47)


@pytest.fixture
def open_cogs() -> CogsRecord:
    """Open-ended cost basis effective well before the target week"""
    return CogsRecord(unit_cost=1200.0, valid_from=date(2025, 1, 1), record_id="c-1")


@pytest.fixture
def sample_row_data() -> Dict[str, Any]:
    """Analytics row with sales and an applicable cost basis"""
    return {
        "nm_id": "12345678",
        "vendor_code": "SKU-001",
        "name": "Cotton T-shirt",
        "brand": "Acme",
        "revenue_net": 10000,
        "qty": 5,
        "operating_profit": 3500,
        "cogs": 6000,
        "cogs_unit_cost": 1200,
        "cogs_valid_from": "2025-01-01",
    }


@pytest.fixture
def sample_row(sample_row_data) -> AnalyticsRow:
    return AnalyticsRow(**sample_row_data)


@pytest.fixture
def dormant_row_data(sample_row_data) -> Dict[str, Any]:
    """Same product with no sales in the target week"""
    data = dict(sample_row_data)
    data.update(revenue_net=0, qty=0, operating_profit=None, cogs=None)
    return data


def make_fact(week: str, qty: int = 0, revenue: float = 0.0, profit=None, margin=None) -> MarginFact:
    return MarginFact(
        week=IsoWeek.parse(week),
        revenue_net=revenue,
        qty=qty,
        operating_profit=profit,
        margin_pct=margin,
    )


@pytest.fixture
def fact_factory():
    """Build MarginFact instances from week strings"""
    return make_fact


@pytest.fixture
def quiet_weeks(target_week) -> List[MarginFact]:
    """Twelve prior weeks without any sales"""
    return [
        MarginFact(week=target_week.shift(-n), revenue_net=0.0, qty=0)
        for n in range(1, 13)
    ]


@pytest.fixture
def start_time() -> datetime:
    """Wednesday 2025-11-26 10:00 UTC"""
    return datetime(2025, 11, 26, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def scheduler(start_time) -> VirtualScheduler:
    return VirtualScheduler(start_time)


@pytest.fixture
def enqueued() -> List:
    """Requests handed to the controller's enqueue callback"""
    return []


@pytest.fixture
def controller(scheduler, enqueued) -> RecalculationController:
    async def enqueue(request):
        enqueued.append(request)

    return RecalculationController(
        scheduler,
        enqueue=enqueue,
        stale_after_seconds=300,
        poll_interval_seconds=2.5,
        reporting_timezone="Europe/Moscow",
    )
