import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from alerts import AlertStore
from db import Database, elapsed_ms, to_db_time
from errors import StorageError
from models import Alert, Reading, Rule, RuleDB, RuleType, utcnow
from telemetry import Telemetry

logger = logging.getLogger("metrics-hub.rules")


def should_trigger(rule: Rule, value: float) -> bool:
    """Decide whether a rule fires for a value.

    MAX fires strictly above max_value, MIN strictly below min_value, RANGE
    strictly outside [min_value, max_value]. A rule missing the bound(s) its
    type needs never fires.
    """
    if rule.rule_type == RuleType.MAX:
        if rule.max_value is None:
            return False
        return value > rule.max_value

    if rule.rule_type == RuleType.MIN:
        if rule.min_value is None:
            return False
        return value < rule.min_value

    if rule.rule_type == RuleType.RANGE:
        if rule.min_value is None or rule.max_value is None:
            return False
        return value < rule.min_value or value > rule.max_value

    return False


class RuleRepository:
    """Read access to threshold rules.

    Rule lifecycle belongs to the operator tooling; create() exists for
    seeding and tests.
    """

    def __init__(self, database: Database):
        self._database = database

    async def find_enabled(self, device_id: str, metric_name: str) -> List[Rule]:
        stmt = (
            select(RuleDB)
            .where(
                RuleDB.device_id == device_id,
                RuleDB.metric_name == metric_name,
                RuleDB.enabled.is_(True),
            )
            .order_by(RuleDB.created_at.asc())
        )
        return await self._fetch(stmt)

    async def find_by_device(self, device_id: str) -> List[Rule]:
        stmt = select(RuleDB).where(RuleDB.device_id == device_id).order_by(RuleDB.created_at.asc())
        return await self._fetch(stmt)

    async def create(
        self,
        device_id: str,
        metric_name: str,
        rule_type: RuleType,
        min_value: Optional[float] = None,
        max_value: Optional[float] = None,
        enabled: bool = True,
        created_at: Optional[datetime] = None,
    ) -> Rule:
        row = RuleDB(
            id=str(uuid.uuid4()),
            device_id=device_id,
            metric_name=metric_name.lower(),
            rule_type=RuleType(rule_type),
            min_value=min_value,
            max_value=max_value,
            enabled=enabled,
            created_at=to_db_time(created_at if created_at is not None else utcnow()),
        )
        try:
            async with self._database.session() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to create rule: {exc}") from exc
        return Rule.model_validate(row)

    async def _fetch(self, stmt) -> List[Rule]:
        try:
            async with self._database.session() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to load rules: {exc}") from exc
        return [Rule.model_validate(row) for row in rows]


class RulesEngine:
    def __init__(self, rules: RuleRepository, alerts: AlertStore, telemetry: Telemetry):
        self._rules = rules
        self._alerts = alerts
        self._telemetry = telemetry

    async def evaluate_reading(self, reading: Reading) -> List[Alert]:
        """Run every enabled rule for the reading's device + metric.

        Called once per reading after it has been stored. One alert is
        created per triggering rule; creations run concurrently and a failed
        one is logged without affecting the others. Returns the alerts that
        were created.
        """
        started = time.perf_counter()

        rules = await self._rules.find_enabled(reading.device_id, reading.metric_name)
        triggered = [rule for rule in rules if should_trigger(rule, reading.value)]

        created: List[Alert] = []
        if triggered:
            results = await asyncio.gather(
                *(self._create_alert(rule, reading) for rule in triggered)
            )
            created = [alert for alert in results if alert is not None]

        self._telemetry.observe_processing_latency("rule_evaluation", elapsed_ms(started))
        return created

    async def _create_alert(self, rule: Rule, reading: Reading) -> Optional[Alert]:
        try:
            alert = await self._alerts.create(
                device_id=reading.device_id,
                metric_name=reading.metric_name,
                rule_id=rule.id,
                value=reading.value,
            )
        except Exception:
            logger.exception(
                "Failed to create alert for triggered rule device_id=%s metric=%s rule_id=%s rule_type=%s value=%s",
                reading.device_id, reading.metric_name, rule.id, rule.rule_type.value, reading.value,
            )
            return None

        self._telemetry.record_alert_triggered(reading.device_id, reading.metric_name, rule.rule_type)
        logger.warning(
            "Rule triggered, alert created device_id=%s metric=%s rule_id=%s alert_id=%s value=%s rule_type=%s",
            reading.device_id, reading.metric_name, rule.id, alert.id, reading.value, rule.rule_type.value,
        )
        return alert
