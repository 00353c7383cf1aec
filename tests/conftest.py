"""
Pytest fixtures for the harvest simulation test suite.

Provides:
- Structured logging configuration and log capture
- A deterministic clock
- Content tables, engine catalog and simulation configs
- SimulationService wired to the in-memory server transport
- An in-memory SQLite database for the SQL-backed store
"""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from harvest_config import get_default_provider
from harvest_kernel.db.engine import (
    create_tables,
    drop_tables,
    init_engine_from_url,
    reset_engine,
)
from harvest_kernel.domain.clock import DeterministicClock
from harvest_kernel.domain.simulation import start_new_year
from harvest_kernel.domain.state import SimulationConfig
from harvest_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from harvest_services import EngineCatalog, SimulationService, SqlSimulationStore
from harvest_sync import InMemoryServerTransport, ReplayEngine

TEST_OWNER_ID = "farmer-test"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture harvest_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, service):
            service.start_new_year(config)
            logs = captured_logs()
            assert any(r["message"] == "simulation_started" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("harvest_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture(scope="session")
def provider():
    return get_default_provider()


@pytest.fixture
def engines(provider):
    return EngineCatalog(provider)


@pytest.fixture
def wheat_engine(engines):
    """Engine for wheat in Punjab (harvest in month 4, income 60000)."""
    return engines("wheat", "punjab")


@pytest.fixture
def make_config():
    """Factory for SimulationConfig with Punjab wheat defaults."""

    def _make(
        simulation_id: str | None = None,
        crop: str = "wheat",
        region: str = "punjab",
        seed: int = 42,
        opening_capital: Decimal | str | None = "10000",
        owner_id: str = TEST_OWNER_ID,
        **kwargs,
    ) -> SimulationConfig:
        return SimulationConfig(
            simulation_id=simulation_id or f"sim-{uuid4()}",
            owner_id=owner_id,
            crop=crop,
            region=region,
            seed=seed,
            opening_capital=Decimal(opening_capital) if opening_capital is not None else None,
            **kwargs,
        )

    return _make


@pytest.fixture
def opening_state(wheat_engine, make_config):
    """Fresh Punjab wheat state with 10000 of opening capital."""
    return start_new_year(make_config(), wheat_engine.profile, wheat_engine.economics)


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def transport(engines, clock):
    return InMemoryServerTransport(ReplayEngine(engines), clock)


@pytest.fixture
def service(engines, transport, clock):
    """SimulationService whose worker sleeps by advancing the test clock."""
    svc = SimulationService(engines, transport=transport, clock=clock, sleep=clock.advance)
    yield svc
    svc.close()


@pytest.fixture
def offline_service(engines, clock):
    """SimulationService without a transport (pure device mode)."""
    svc = SimulationService(engines, clock=clock)
    yield svc
    svc.close()


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def sql_database():
    """In-memory SQLite with all tables created."""
    init_engine_from_url("sqlite://")
    create_tables()
    yield
    drop_tables()
    reset_engine()


@pytest.fixture
def sql_service(sql_database, engines, transport, clock):
    svc = SimulationService(
        engines,
        store=SqlSimulationStore(),
        transport=transport,
        clock=clock,
        sleep=clock.advance,
    )
    yield svc
    svc.close()
