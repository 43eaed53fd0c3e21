import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse

from alerts import AlertStore
from auth import ApiKeyValidator, StaticApiKeyValidator, authenticate_device
from config import Settings
from consumer import KafkaConsumerService
from db import Database, TimeseriesStore
from errors import AuthenticationError, StorageError, ValidationError
from ingest import CHANNEL_HTTP, IngestService
from models import (
    Alert,
    AlertStatus,
    IngestRequest,
    IngestResponse,
    MetricPoint,
    MetricSeries,
    parse_timestamp,
    utcnow,
)
from rules import RuleRepository, RulesEngine
from telemetry import Telemetry

logger = logging.getLogger("metrics-hub")

SERVICE_NAME = "iot-metrics-hub"


def _parse_bound(name: str, raw: Optional[str]) -> Optional[datetime]:
    if raw is None:
        return None
    try:
        return parse_timestamp(raw)
    except (ValueError, OverflowError) as exc:
        raise ValidationError(f"'{name}' must be a valid ISO-8601 timestamp") from exc


def _blank_to_none(raw: Optional[str]) -> Optional[str]:
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def get_ingest_service(request: Request) -> IngestService:
    return request.app.state.ingest_service


def get_alert_store(request: Request) -> AlertStore:
    return request.app.state.alerts


def get_timeseries(request: Request) -> TimeseriesStore:
    return request.app.state.timeseries


def get_validator(request: Request) -> ApiKeyValidator:
    return request.app.state.api_key_validator


def create_app(settings: Optional[Settings] = None, api_key_validator: Optional[ApiKeyValidator] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    telemetry = Telemetry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Initializing DB")
        database = Database(settings.database_url, pool_size=settings.db_pool_size)
        await database.connect()

        timeseries = TimeseriesStore(database, telemetry)
        alerts = AlertStore(database, telemetry)
        rules = RuleRepository(database)
        engine = RulesEngine(rules, alerts, telemetry)
        ingest_service = IngestService(timeseries, engine, telemetry)
        consumer = KafkaConsumerService(ingest_service, telemetry, settings)

        app.state.database = database
        app.state.timeseries = timeseries
        app.state.alerts = alerts
        app.state.rules = rules
        app.state.ingest_service = ingest_service
        app.state.consumer = consumer

        if settings.pubsub_enabled:
            try:
                await consumer.start()
            except Exception:
                logger.exception("Kafka consumer failed to start; serving HTTP ingest only")
        try:
            yield
        finally:
            if consumer.running:
                try:
                    await consumer.stop()
                except Exception:
                    logger.exception("Error stopping kafka consumer")
            await database.dispose()

    app = FastAPI(title="IoT Metrics Hub", lifespan=lifespan)
    app.state.settings = settings
    app.state.telemetry = telemetry
    app.state.api_key_validator = api_key_validator or StaticApiKeyValidator(settings.ingest_api_key)

    @app.middleware("http")
    async def count_requests(request: Request, call_next):
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            path = getattr(route, "path", None) or request.url.path
            telemetry.record_http_request(request.method, path, status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        if request.url.path == "/ingest":
            telemetry.record_ingest(CHANNEL_HTTP, "error")
        return JSONResponse(status_code=400, content={"detail": jsonable_errors(exc)})

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(AuthenticationError)
    async def authentication_handler(request: Request, exc: AuthenticationError):
        if request.url.path == "/ingest":
            telemetry.record_ingest(CHANNEL_HTTP, "error")
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    @app.exception_handler(StorageError)
    async def storage_handler(request: Request, exc: StorageError):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "storage failure"})

    @app.get("/")
    async def root():
        return SERVICE_NAME

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": SERVICE_NAME, "timestamp": utcnow().isoformat()}

    @app.post("/ingest", response_model=IngestResponse)
    async def ingest(
        payload: IngestRequest,
        authorization: Optional[str] = Header(None),
        validator: ApiKeyValidator = Depends(get_validator),
        service: IngestService = Depends(get_ingest_service),
    ):
        """Store a batch of metrics for one device, then evaluate its rules."""
        device_id = await authenticate_device(validator, authorization, payload.device_id)
        logger.info(
            "http_ingest received device_id=%s metrics_count=%d", device_id, len(payload.metrics)
        )
        stored = await service.ingest(device_id, payload.metrics, channel=CHANNEL_HTTP)
        return IngestResponse(status="ok", stored=stored)

    @app.get("/alerts", response_model=List[Alert])
    async def list_alerts(
        status: Optional[AlertStatus] = Query(None),
        device_id: Optional[str] = Query(None),
        metric_name: Optional[str] = Query(None),
        from_: Optional[str] = Query(None, alias="from"),
        to: Optional[str] = Query(None),
        store: AlertStore = Depends(get_alert_store),
    ):
        """
        List alerts, newest first.
        - from / to are ISO8601 strings bounding triggered_at (inclusive)
        """
        start = _parse_bound("from", from_)
        end = _parse_bound("to", to)
        if start and end and start > end:
            raise ValidationError('"from" must be earlier than or equal to "to".')

        return await store.query(
            status=status,
            device_id=_blank_to_none(device_id),
            metric_name=_blank_to_none(metric_name),
            start=start,
            end=end,
        )

    @app.patch("/alerts/{alert_id}/resolve", response_model=Alert)
    async def resolve_alert(alert_id: str = Path(...), store: AlertStore = Depends(get_alert_store)):
        updated = await store.resolve(alert_id)
        if updated is None:
            raise HTTPException(status_code=404, detail=f"Alert with id {alert_id} not found")
        return updated

    @app.get("/metrics/{device_id}/{metric_name}", response_model=MetricSeries)
    async def metric_series(
        device_id: str,
        metric_name: str,
        from_: Optional[str] = Query(None, alias="from"),
        to: Optional[str] = Query(None),
        store: TimeseriesStore = Depends(get_timeseries),
    ):
        if not from_ or not to:
            raise ValidationError("Query parameters 'from' and 'to' are required")
        start = _parse_bound("from", from_)
        end = _parse_bound("to", to)
        if start > end:
            raise ValidationError("'from' timestamp must be earlier than or equal to 'to' timestamp")

        readings = await store.query(device_id, metric_name.lower(), start, end)
        return MetricSeries(
            device_id=device_id,
            metric_name=metric_name,
            points=[MetricPoint(ts=r.timestamp, value=r.value) for r in readings],
        )

    @app.get("/metrics", response_class=PlainTextResponse)
    async def scrape():
        return PlainTextResponse(telemetry.render(), media_type=telemetry.content_type)

    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


def configure_logging(level: str = "INFO"):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
