import logging
import time
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from db import Database, elapsed_ms, to_db_time
from errors import StorageError
from models import Alert, AlertDB, AlertStatus, utcnow
from telemetry import Telemetry

logger = logging.getLogger("metrics-hub.alerts")


class AlertStore:
    """Create, resolve and query alert records.

    There is no uniqueness constraint on (device, metric, rule): every
    create() inserts a new ACTIVE row even if an ACTIVE alert for the same
    rule already exists.
    """

    def __init__(self, database: Database, telemetry: Telemetry):
        self._database = database
        self._telemetry = telemetry

    async def create(self, device_id: str, metric_name: str, rule_id: str, value: float) -> Alert:
        row = AlertDB(
            id=str(uuid.uuid4()),
            device_id=device_id,
            metric_name=metric_name,
            rule_id=rule_id,
            value=value,
            status=AlertStatus.ACTIVE,
            triggered_at=to_db_time(utcnow()),
            resolved_at=None,
        )
        started = time.perf_counter()
        try:
            async with self._database.session() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to create alert for rule {rule_id}: {exc}") from exc
        self._telemetry.observe_db_write_latency("insert_alert", elapsed_ms(started))
        return Alert.model_validate(row)

    async def get(self, alert_id: str) -> Optional[Alert]:
        try:
            async with self._database.session() as session:
                row = await session.get(AlertDB, alert_id)
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to load alert {alert_id}: {exc}") from exc
        return Alert.model_validate(row) if row is not None else None

    async def resolve(self, alert_id: str, at: Optional[datetime] = None) -> Optional[Alert]:
        """Mark an alert RESOLVED. Returns None when no alert has that id.

        An already RESOLVED alert is resolved again and gets the new resolved_at.
        """
        resolved_at = to_db_time(at if at is not None else utcnow())
        started = time.perf_counter()
        try:
            async with self._database.session() as session:
                row = await session.get(AlertDB, alert_id)
                if row is None:
                    return None
                row.status = AlertStatus.RESOLVED
                row.resolved_at = resolved_at
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to resolve alert {alert_id}: {exc}") from exc
        self._telemetry.observe_db_write_latency("resolve_alert", elapsed_ms(started))
        logger.info("Alert resolved alert_id=%s resolved_at=%s", alert_id, resolved_at.isoformat())
        return Alert.model_validate(row)

    async def query(
        self,
        status: Optional[AlertStatus] = None,
        device_id: Optional[str] = None,
        metric_name: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Alert]:
        """All filters optional and ANDed; start/end bound triggered_at inclusively. Newest first."""
        stmt = select(AlertDB)
        if status is not None:
            stmt = stmt.where(AlertDB.status == status)
        if device_id is not None:
            stmt = stmt.where(AlertDB.device_id == device_id)
        if metric_name is not None:
            stmt = stmt.where(AlertDB.metric_name == metric_name)
        if start is not None:
            stmt = stmt.where(AlertDB.triggered_at >= to_db_time(start))
        if end is not None:
            stmt = stmt.where(AlertDB.triggered_at <= to_db_time(end))
        stmt = stmt.order_by(AlertDB.triggered_at.desc())

        try:
            async with self._database.session() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to query alerts: {exc}") from exc
        return [Alert.model_validate(row) for row in rows]
