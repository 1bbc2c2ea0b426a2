from __future__ import annotations

from typing import Any, Literal
from urllib.parse import quote

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_PASSWORD_MASK = "***"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=False)

    rabbitmq_host: str = Field(default="localhost", alias="RABBITMQ_HOST")
    rabbitmq_port: int = Field(default=5672, alias="RABBITMQ_PORT")
    rabbitmq_user: str = Field(default="guest", alias="RABBITMQ_USER")
    rabbitmq_password: str = Field(default="guest", alias="RABBITMQ_PASSWORD")
    rabbitmq_vhost: str = Field(default="/", alias="RABBITMQ_VHOST")
    rabbitmq_queue: str = Field(default="solr.sync.v1", alias="RABBITMQ_QUEUE")
    rabbitmq_prefetch: int = Field(default=10, alias="RABBITMQ_PREFETCH")
    rabbitmq_retry_exchange: str = Field(default="solr.sync.retry", alias="RABBITMQ_RETRY_EXCHANGE")
    rabbitmq_retry_routing_key: str = Field(default="", alias="RABBITMQ_RETRY_ROUTING_KEY")

    solr_updater_base_url: str = Field(
        default="http://localhost:8080",
        alias="SOLR_UPDATER_BASE_URL",
    )
    solr_updater_timeout_ms: int = Field(default=30000, alias="SOLR_UPDATER_TIMEOUT")

    retry_limit: int = Field(default=5, alias="RETRY_LIMIT")

    source_database: str = Field(default="solr_sync", alias="SOURCE_DATABASE")
    supported_tables: str = Field(default="books,electronics", alias="SUPPORTED_TABLES")

    shutdown_grace_s: float = Field(default=5.0, alias="SHUTDOWN_GRACE_S")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: Literal["text", "json"] = Field(default="text", alias="LOG_FORMAT")

    @field_validator("rabbitmq_prefetch")
    @classmethod
    def _validate_prefetch(cls, value: int) -> int:
        if value < 1:
            raise ValueError("RABBITMQ_PREFETCH must be >= 1")
        return value

    @field_validator("rabbitmq_port")
    @classmethod
    def _validate_port(cls, value: int) -> int:
        if value < 1 or value > 65535:
            raise ValueError("RABBITMQ_PORT must be between 1 and 65535")
        return value

    @field_validator("rabbitmq_queue")
    @classmethod
    def _validate_queue(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("RABBITMQ_QUEUE must not be empty")
        return value

    @field_validator("solr_updater_base_url")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("SOLR_UPDATER_BASE_URL must be an http(s) URL")
        return value.rstrip("/")

    @field_validator("solr_updater_timeout_ms")
    @classmethod
    def _validate_timeout(cls, value: int) -> int:
        if value < 1:
            raise ValueError("SOLR_UPDATER_TIMEOUT must be > 0")
        return value

    @field_validator("retry_limit")
    @classmethod
    def _validate_retry_limit(cls, value: int) -> int:
        if value < 0:
            raise ValueError("RETRY_LIMIT must be >= 0")
        return value

    @field_validator("supported_tables")
    @classmethod
    def _validate_supported_tables(cls, value: str) -> str:
        if not _split_csv(value):
            raise ValueError("SUPPORTED_TABLES must name at least one table")
        return value

    @field_validator("shutdown_grace_s")
    @classmethod
    def _validate_shutdown_grace(cls, value: float) -> float:
        if value < 0:
            raise ValueError("SHUTDOWN_GRACE_S must be >= 0")
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @field_validator("log_format", mode="before")
    @classmethod
    def _normalize_log_format(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def supported_table_set(self) -> frozenset[str]:
        return frozenset(_split_csv(self.supported_tables))

    @property
    def solr_updater_timeout_s(self) -> float:
        return self.solr_updater_timeout_ms / 1000.0

    @property
    def amqp_url(self) -> str:
        # The vhost is a path segment, so "/" itself has to be percent-encoded.
        return (
            f"amqp://{quote(self.rabbitmq_user, safe='')}:{quote(self.rabbitmq_password, safe='')}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/{quote(self.rabbitmq_vhost, safe='')}"
        )

    def log_safe_summary(self) -> dict[str, Any]:
        summary = self.model_dump()
        summary["rabbitmq_password"] = _PASSWORD_MASK
        return summary


def _split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]
