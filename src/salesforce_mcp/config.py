"""
Environment-driven configuration for the Salesforce MCP Server.

Two credential shapes are recognized:
- OAuth2 refresh token: SF_CLIENT_ID, SF_CLIENT_SECRET, SF_REFRESH_TOKEN, SF_INSTANCE_URL
- Username/password: SF_USERNAME, SF_PASSWORD, SF_SECURITY_TOKEN, SF_LOGIN_URL

The remaining SF_* variables tune timeouts, size limits and transport routing.
"""

import os
from typing import Mapping, Optional

from pydantic import BaseModel

DEFAULT_API_VERSION = "61.0"
DEFAULT_LOGIN_URL = "https://login.salesforce.com"


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return int(str(raw).strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return float(str(raw).strip())
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


class Settings(BaseModel):
    """Resolved server settings."""

    # OAuth2 refresh-token shape
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    instance_url: Optional[str] = None

    # Username/password shape
    username: Optional[str] = None
    password: Optional[str] = None
    security_token: str = ""
    login_url: str = DEFAULT_LOGIN_URL

    api_version: str = DEFAULT_API_VERSION
    timeout_ms: int = 120000
    max_request_size: int = 10 * 1024 * 1024
    bulk_query_threshold: int = 2000
    bulk_dml_threshold: int = 200
    deploy_batch_threshold: int = 10
    max_concurrency: int = 4
    session_ttl: int = 7200
    poll_initial_interval: float = 1.0
    poll_max_interval: float = 15.0
    log_level: str = "INFO"

    @property
    def uses_oauth(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token and self.instance_url)

    @property
    def uses_password(self) -> bool:
        return bool(self.username and self.password)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables (or an explicit mapping)."""
        if env is None:
            env = os.environ

        return cls(
            client_id=env.get("SF_CLIENT_ID") or None,
            client_secret=env.get("SF_CLIENT_SECRET") or None,
            refresh_token=env.get("SF_REFRESH_TOKEN") or None,
            instance_url=(env.get("SF_INSTANCE_URL") or "").rstrip("/") or None,
            username=env.get("SF_USERNAME") or None,
            password=env.get("SF_PASSWORD") or None,
            security_token=env.get("SF_SECURITY_TOKEN", ""),
            login_url=(env.get("SF_LOGIN_URL") or DEFAULT_LOGIN_URL).rstrip("/"),
            api_version=env.get("SF_API_VERSION") or DEFAULT_API_VERSION,
            timeout_ms=_int_env(env, "SF_TIMEOUT", 120000),
            max_request_size=_int_env(env, "SF_MAX_REQUEST_SIZE", 10 * 1024 * 1024),
            bulk_query_threshold=_int_env(env, "SF_BULK_QUERY_THRESHOLD", 2000),
            bulk_dml_threshold=_int_env(env, "SF_BULK_DML_THRESHOLD", 200),
            deploy_batch_threshold=_int_env(env, "SF_DEPLOY_BATCH_THRESHOLD", 10),
            max_concurrency=max(1, _int_env(env, "SF_MAX_CONCURRENCY", 4)),
            session_ttl=_int_env(env, "SF_SESSION_TTL", 7200),
            poll_initial_interval=_float_env(env, "SF_POLL_INITIAL_INTERVAL", 1.0),
            poll_max_interval=_float_env(env, "SF_POLL_MAX_INTERVAL", 15.0),
            log_level=(env.get("SF_LOG_LEVEL") or "INFO").upper(),
        )


__all__ = ["Settings", "DEFAULT_API_VERSION", "DEFAULT_LOGIN_URL"]
