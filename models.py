import enum
import math
from datetime import datetime, timezone
from typing import List, Optional, Union

from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, StrictStr, field_validator
from sqlalchemy import Boolean, Column, DateTime, Enum, Float, Index, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(raw: str) -> datetime:
    """Parse an ISO-8601 string into an aware UTC datetime.

    Raises ValueError for anything dateutil cannot read.
    """
    return ensure_utc(date_parser.isoparse(raw))


class RuleType(str, enum.Enum):
    MAX = "MAX"
    MIN = "MIN"
    RANGE = "RANGE"


class AlertStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    RESOLVED = "RESOLVED"


# Timestamps are stored as naive UTC so SQLite and Postgres compare them the same way.

class ReadingDB(Base):
    __tablename__ = "metric_readings"
    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String, nullable=False)
    metric_name = Column(String, nullable=False)
    ts = Column(DateTime, nullable=False)
    value = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_readings_device_metric_ts", "device_id", "metric_name", "ts"),
    )


class RuleDB(Base):
    __tablename__ = "rules"
    id = Column(String, primary_key=True)
    device_id = Column(String, nullable=False)
    metric_name = Column(String, nullable=False)
    rule_type = Column(Enum(RuleType, native_enum=False, length=16), nullable=False)
    min_value = Column(Float, nullable=True)
    max_value = Column(Float, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_rules_device_metric", "device_id", "metric_name", "enabled"),
    )


class AlertDB(Base):
    __tablename__ = "alerts"
    id = Column(String, primary_key=True)
    device_id = Column(String, nullable=False, index=True)
    metric_name = Column(String, nullable=False)
    rule_id = Column(String, nullable=False)
    value = Column(Float, nullable=False)
    status = Column(Enum(AlertStatus, native_enum=False, length=16), nullable=False, index=True)
    triggered_at = Column(DateTime, nullable=False, index=True)
    resolved_at = Column(DateTime, nullable=True)


class MetricIn(BaseModel):
    name: StrictStr
    value: Union[StrictInt, StrictFloat]
    ts: Optional[datetime] = None

    @field_validator("value")
    @classmethod
    def check_finite(cls, v):
        try:
            finite = math.isfinite(v)
        except OverflowError:
            # ints too large for a float
            finite = False
        if not finite:
            raise ValueError("value must be a finite number")
        return v

    @field_validator("ts", mode="before")
    @classmethod
    def parse_ts(cls, v):
        if v is None:
            return None
        if not isinstance(v, str):
            raise ValueError("ts must be an ISO-8601 string")
        try:
            return parse_timestamp(v)
        except (ValueError, OverflowError) as exc:
            raise ValueError(f"ts is not a valid ISO-8601 timestamp: {v!r}") from exc


class IngestRequest(BaseModel):
    device_id: StrictStr = Field(min_length=1)
    metrics: List[MetricIn] = Field(min_length=1)


class MetricsPayload(BaseModel):
    """Body of a pub/sub message; the device id comes from the topic."""
    metrics: List[MetricIn] = Field(min_length=1)


class IngestResponse(BaseModel):
    status: str = "ok"
    stored: int


class Reading(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str
    metric_name: str
    timestamp: datetime
    value: float


class Rule(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    device_id: str
    metric_name: str
    rule_type: RuleType
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    enabled: bool = True
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def as_utc(cls, v):
        return ensure_utc(v)


class Alert(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    device_id: str
    metric_name: str
    rule_id: str
    value: float
    status: AlertStatus
    triggered_at: datetime
    resolved_at: Optional[datetime] = None

    @field_validator("triggered_at", "resolved_at")
    @classmethod
    def as_utc(cls, v):
        return ensure_utc(v)


class MetricPoint(BaseModel):
    ts: datetime
    value: float


class MetricSeries(BaseModel):
    device_id: str
    metric_name: str
    points: List[MetricPoint]
