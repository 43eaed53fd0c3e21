import logging
import os
import time
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from sqlalchemy import insert, select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from errors import StorageError
from models import Base, Reading, ReadingDB, ensure_utc
from telemetry import Telemetry

logger = logging.getLogger("metrics-hub.db")


def to_db_time(value: datetime) -> datetime:
    """Aware datetime -> naive UTC, the form every timestamp column holds."""
    return ensure_utc(value).replace(tzinfo=None)


def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


class Database:
    """Owns the async engine, and with it the connection pool.

    Created at application startup with connect() and released with
    dispose(); stores receive it by injection and open one session per call.
    """

    def __init__(self, url: str, pool_size: int = 10):
        self.url = url
        self.pool_size = pool_size
        self.engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker] = None

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    async def connect(self):
        kwargs = {}
        if self.is_sqlite:
            # Create directories if needed (for sqlite file)
            path = make_url(self.url).database
            if path and path != ":memory:":
                dirpath = os.path.dirname(path)
                if dirpath and not os.path.exists(dirpath):
                    os.makedirs(dirpath, exist_ok=True)
        else:
            kwargs["pool_size"] = self.pool_size

        self.engine = create_async_engine(self.url, **kwargs)
        self._sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database ready url=%s", make_url(self.url).render_as_string(hide_password=True))

    async def dispose(self):
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("Database connection pool released")
        self.engine = None
        self._sessionmaker = None

    def session(self) -> AsyncSession:
        if self._sessionmaker is None:
            raise RuntimeError("Database.connect() must be awaited before opening sessions")
        return self._sessionmaker()


class TimeseriesStore:
    def __init__(self, database: Database, telemetry: Telemetry):
        self._database = database
        self._telemetry = telemetry

    async def append(self, readings: Sequence[Reading]):
        """Insert all readings with a single multi-row INSERT."""
        if not readings:
            return

        rows = [
            {
                "device_id": r.device_id,
                "metric_name": r.metric_name,
                "ts": to_db_time(r.timestamp),
                "value": r.value,
            }
            for r in readings
        ]

        started = time.perf_counter()
        try:
            async with self._database.session() as session:
                await session.execute(insert(ReadingDB), rows)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to insert {len(rows)} readings: {exc}") from exc
        self._telemetry.observe_db_write_latency("insert_readings", elapsed_ms(started))

    async def query(self, device_id: str, metric_name: str, start: datetime, end: datetime) -> List[Reading]:
        """Readings for one device + metric in [start, end], oldest first."""
        stmt = (
            select(ReadingDB)
            .where(
                ReadingDB.device_id == device_id,
                ReadingDB.metric_name == metric_name,
                ReadingDB.ts >= to_db_time(start),
                ReadingDB.ts <= to_db_time(end),
            )
            .order_by(ReadingDB.ts.asc(), ReadingDB.id.asc())
        )
        try:
            async with self._database.session() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to query readings: {exc}") from exc

        return [
            Reading(
                device_id=row.device_id,
                metric_name=row.metric_name,
                timestamp=from_db_time(row.ts),
                value=row.value,
            )
            for row in rows
        ]
