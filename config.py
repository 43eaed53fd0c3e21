import os
from dataclasses import dataclass


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    database_url: str = "sqlite+aiosqlite:///./data/metrics.db"
    db_pool_size: int = 10
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_group_id: str = "metrics-hub-ingest"
    # Kafka topic names cannot contain "/", so devices/{id}/metrics travels as devices.{id}.metrics
    kafka_topic_pattern: str = r"^devices\.[^.]+\.metrics$"
    pubsub_enabled: bool = True
    ingest_api_key: str = "dev-api-key-change-me"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ.get("DATABASE_URL", cls.database_url),
            db_pool_size=int(os.environ.get("DB_POOL_SIZE", str(cls.db_pool_size))),
            kafka_bootstrap_servers=os.environ.get("KAFKA_BOOTSTRAP_SERVERS", cls.kafka_bootstrap_servers),
            kafka_group_id=os.environ.get("KAFKA_GROUP_ID", cls.kafka_group_id),
            kafka_topic_pattern=os.environ.get("KAFKA_TOPIC_PATTERN", cls.kafka_topic_pattern),
            pubsub_enabled=_env_flag("PUBSUB_ENABLED", "true"),
            ingest_api_key=os.environ.get("INGEST_API_KEY", cls.ingest_api_key),
            log_level=os.environ.get("LOG_LEVEL", cls.log_level),
        )
