import contextlib
from dataclasses import dataclass

import pytest

from alerts import AlertStore
from config import Settings
from db import Database, TimeseriesStore
from ingest import IngestService
from rules import RuleRepository, RulesEngine
from telemetry import Telemetry


@dataclass
class Pipeline:
    database: Database
    telemetry: Telemetry
    timeseries: TimeseriesStore
    alerts: AlertStore
    rules: RuleRepository
    engine: RulesEngine
    ingest: IngestService


@contextlib.asynccontextmanager
async def open_pipeline(url: str):
    """Wire the real stores against a database, disposing of it afterwards."""
    telemetry = Telemetry()
    database = Database(url)
    await database.connect()
    timeseries = TimeseriesStore(database, telemetry)
    alerts = AlertStore(database, telemetry)
    rules = RuleRepository(database)
    engine = RulesEngine(rules, alerts, telemetry)
    try:
        yield Pipeline(
            database=database,
            telemetry=telemetry,
            timeseries=timeseries,
            alerts=alerts,
            rules=rules,
            engine=engine,
            ingest=IngestService(timeseries, engine, telemetry),
        )
    finally:
        await database.dispose()


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'metrics.db'}"


@pytest.fixture
def pipeline(database_url):
    """Factory for an async context manager yielding a wired Pipeline."""
    return lambda: open_pipeline(database_url)


@pytest.fixture
def settings(database_url):
    return Settings(
        database_url=database_url,
        pubsub_enabled=False,
        ingest_api_key="test-key",
    )
