"""
Pytest fixtures for the contract-bundle test suite.

Provides:
- Structured logging configured once per session, with a JSON capture fixture
- A file-backed SQLite database per test (WAL, so worker threads can write)
- A DeterministicClock shared by every service under test
- Fake collaborators and a fully wired BundleServices container

Databases are files under ``tmp_path`` rather than ``:memory:`` because
fan-out workers, dispatchers and concurrency tests open connections from
several threads.
"""

import json
import logging
from io import StringIO
from typing import Callable

import pytest
from sqlalchemy.orm import sessionmaker

from bundle_config.schema import BundleSettings, RetrySettings
from bundle_kernel.db.engine import build_engine, create_tables
from bundle_kernel.domain.clock import DeterministicClock
from bundle_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from bundle_kernel.services.continuation import ContinuationManager
from bundle_kernel.services.state_store import BundleStateStore

from bundle_batch.container import BundleServices

from tests.support.fakes import fake_collaborators


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
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
    Capture bundle_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, store):
            store.create_header_if_absent("b-1")
            assert any(r["message"] == "bundle_header_created" for r in captured_logs())
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("bundle_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'bundles.db'}"


@pytest.fixture
def engine(database_url):
    engine = build_engine(database_url, busy_timeout_seconds=30.0)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def store(session_factory, clock):
    return BundleStateStore(session_factory, clock=clock)


@pytest.fixture
def continuation(store, clock):
    return ContinuationManager(store, clock=clock, wait_seconds=3600)


@pytest.fixture
def collaborators():
    return fake_collaborators()


@pytest.fixture
def settings(database_url):
    return BundleSettings(
        database_url=database_url,
        render_concurrency=4,
        delivery_concurrency=2,
        max_concurrent_bundles=2,
        retry=RetrySettings(max_attempts=3, backoff_base=0.01, backoff_max=0.05, jitter=0.0),
        signing_wait_seconds=3600.0,
        sweep_interval_seconds=0.05,
        stall_after_seconds=300.0,
    )


@pytest.fixture
def make_services(session_factory, collaborators, settings, clock):
    """Factory for a wired container; inline dispatch unless asked otherwise."""
    created: list[BundleServices] = []

    def _make(inline: bool = True, **overrides) -> BundleServices:
        services = BundleServices(
            session_factory=session_factory,
            collaborators=overrides.pop("collaborators", collaborators),
            settings=overrides.pop("settings", settings),
            clock=clock,
            inline=inline,
            sleep=lambda seconds: None,
        )
        created.append(services)
        return services

    yield _make

    for services in created:
        services.close()


@pytest.fixture
def services(make_services) -> BundleServices:
    return make_services()


@pytest.fixture
def seed_bundle(store) -> Callable[..., str]:
    """Write a header and vehicles directly through the store."""

    def _seed(
        bundle_id: str,
        contracts: list[tuple[str, int]],
        start: bool = True,
    ) -> str:
        store.create_header_if_absent(bundle_id)
        for contract_id, sequence_no in contracts:
            store.create_vehicle_if_absent(bundle_id, contract_id, sequence_no)
        if start:
            store.try_lock_start(bundle_id)
        return bundle_id

    return _seed
