from __future__ import annotations

from typing import Annotated, Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class StorageSettings(BaseSettings):
    """Configuration for the upstream S3 storage."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    endpoint: str | None = Field(
        default=None,
        validation_alias="S3_PRISM_ENDPOINT",
    )
    access_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3_PRISM_ACCESS_KEY_ID",
            "AWS_ACCESS_KEY_ID",
        ),
    )
    secret_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3_PRISM_SECRET_ACCESS_KEY",
            "AWS_SECRET_ACCESS_KEY",
        ),
    )
    session_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3_PRISM_SESSION_TOKEN",
            "AWS_SESSION_TOKEN",
        ),
    )
    region: str = Field(
        default="us-east-1",
        validation_alias=AliasChoices(
            "S3_PRISM_REGION",
            "AWS_REGION",
        ),
    )
    addressing_style: Literal["auto", "virtual", "path"] = Field(
        default="auto",
        validation_alias="S3_PRISM_ADDRESSING_STYLE",
    )
    connect_timeout: float = Field(
        default=10.0,
        validation_alias="S3_PRISM_CONNECT_TIMEOUT",
    )
    read_timeout: float = Field(
        default=300.0,
        validation_alias="S3_PRISM_READ_TIMEOUT",
    )


class ServerSettings(BaseSettings):
    """Configuration for the HTTP surface."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    # Comma-separated in the environment, e.g. "media,reports".
    allowed_buckets: Annotated[frozenset[str] | None, NoDecode] = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3_PRISM_ALLOWED_BUCKETS",
            "ALLOWED_BUCKETS",
        ),
    )
    cors_origin: str = Field(
        default="http://localhost:8080",
        validation_alias=AliasChoices(
            "S3_PRISM_CORS_ORIGIN",
            "CORS_ORIGIN",
        ),
    )
    api_prefix: str = Field(
        default="/api/s3",
        validation_alias="S3_PRISM_API_PREFIX",
    )
    stream_chunk_size: int = Field(
        default=64 * 1024,
        gt=0,
        validation_alias="S3_PRISM_STREAM_CHUNK_SIZE",
    )
    cache_max_age: int = Field(
        default=3600,
        ge=0,
        validation_alias="S3_PRISM_CACHE_MAX_AGE",
    )
    log_level: str = Field(
        default="INFO",
        validation_alias="S3_PRISM_LOG_LEVEL",
    )

    @field_validator("allowed_buckets", mode="before")
    @classmethod
    def _parse_allowed_buckets(cls, value: object) -> frozenset[str] | None:
        if value is None:
            return None
        if isinstance(value, str):
            names = {name.strip() for name in value.split(",")}
        elif isinstance(value, (list, tuple, set, frozenset)):
            names = {str(name).strip() for name in value}
        else:
            msg = "Invalid allowed buckets format"
            raise ValueError(msg)
        names.discard("")
        return frozenset(names) or None

    @field_validator("api_prefix", mode="after")
    @classmethod
    def _normalise_api_prefix(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if value and not value.startswith("/"):
            value = f"/{value}"
        return value

    @field_validator("log_level", mode="after")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.strip().upper()


def load_storage_settings_from_env() -> StorageSettings:
    """Load upstream storage settings from environment variables.

    Returns:
        StorageSettings instance populated from environment variables.
    """
    return StorageSettings()


def load_server_settings_from_env() -> ServerSettings:
    """Load HTTP surface settings from environment variables.

    Returns:
        ServerSettings instance populated from environment variables.
    """
    return ServerSettings()
