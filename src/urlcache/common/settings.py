"""Application configuration for the caching proxy."""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/142.0.0.0 Safari/537.36"
)

WritePolicy = Literal["confirmed", "background"]
RedirectPolicy = Literal["failure", "success", "passthrough"]


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class ProxySettings(BaseSettings):
    """Configuration for the caching proxy service."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    api_token: SecretStr = env_field(..., "URLCACHE_API_TOKEN")
    fallback_url: str = env_field(..., "URLCACHE_FALLBACK_URL")
    storage_path: Path = env_field(Path("./cache"), "URLCACHE_STORAGE_PATH")
    s3_endpoint_url: Optional[str] = env_field(None, "URLCACHE_S3_ENDPOINT")
    s3_bucket: Optional[str] = env_field(None, "URLCACHE_S3_BUCKET")
    s3_region: Optional[str] = env_field(None, "URLCACHE_S3_REGION")
    s3_spool_bytes: int = env_field(8 * 1024 * 1024, "URLCACHE_S3_SPOOL_BYTES")
    write_policy: WritePolicy = env_field("confirmed", "URLCACHE_WRITE_POLICY")
    redirect_policy: RedirectPolicy = env_field("failure", "URLCACHE_REDIRECT_POLICY")
    coalesce_requests: bool = env_field(False, "URLCACHE_COALESCE_REQUESTS")
    follow_redirects: bool = env_field(True, "URLCACHE_FOLLOW_REDIRECTS")
    origin_timeout_seconds: Optional[float] = env_field(None, "URLCACHE_ORIGIN_TIMEOUT")
    default_user_agent: str = env_field(DEFAULT_USER_AGENT, "URLCACHE_DEFAULT_USER_AGENT")
    metrics_token: Optional[SecretStr] = env_field(None, "URLCACHE_METRICS_TOKEN")
    log_level: str = env_field("INFO", "URLCACHE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "URLCACHE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "URLCACHE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "URLCACHE_OTEL_SAMPLER_RATIO")
    bind_host: str = env_field("0.0.0.0", "URLCACHE_BIND_HOST")
    port: int = env_field(8080, "URLCACHE_PORT")

    @field_validator("write_policy", "redirect_policy", mode="before")
    @classmethod
    def _normalize_policy(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("fallback_url")
    @classmethod
    def _require_absolute_fallback(cls, value: str) -> str:
        if "://" not in value:
            raise ValueError("fallback URL must be absolute")
        return value
