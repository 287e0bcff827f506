from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from dotenv import load_dotenv

from .cache import DEFAULT_TTL_SECONDS
from .retry import RetryPolicy

if TYPE_CHECKING:  # pragma: no cover
    from .client import TargetProcessClient


@dataclass(frozen=True)
class TargetProcessSettings:
    domain: Optional[str] = None
    base_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    access_token: Optional[str] = None
    timeout_seconds: float = 10.0
    max_retries: int = 3
    entity_cache_ttl_seconds: float = DEFAULT_TTL_SECONDS
    log_level: str = "INFO"

    def missing(self) -> List[str]:
        missing: List[str] = []
        if not self.domain and not self.base_url:
            missing.append("TP_DOMAIN (or TP_BASE_URL)")
        if not self.access_token and not (self.username and self.password):
            missing.append("TP_USERNAME/TP_PASSWORD (or TP_ACCESS_TOKEN)")
        return missing

    def client_kwargs(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "base_url": self.base_url,
            "username": self.username,
            "password": self.password,
            "access_token": self.access_token,
            "timeout_seconds": self.timeout_seconds,
            "retry": RetryPolicy(max_attempts=self.max_retries),
            "entity_type_ttl_seconds": self.entity_cache_ttl_seconds,
        }


def _env(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


def _env_number(name: str, default: float, cast=float):
    raw = _env(name)
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def load_env_config(*, use_dotenv: bool = True) -> TargetProcessSettings:
    """Load TargetProcess connection settings from environment (optional .env)."""
    if use_dotenv:
        load_dotenv()
    return TargetProcessSettings(
        domain=_env("TP_DOMAIN"),
        base_url=_env("TP_BASE_URL"),
        username=_env("TP_USERNAME"),
        # passwords may legitimately carry surrounding spaces
        password=os.getenv("TP_PASSWORD") or None,
        access_token=_env("TP_ACCESS_TOKEN"),
        timeout_seconds=_env_number("TP_TIMEOUT_SECONDS", 10.0),
        max_retries=_env_number("TP_MAX_RETRIES", 3, int),
        entity_cache_ttl_seconds=_env_number(
            "TP_ENTITY_CACHE_TTL_SECONDS", DEFAULT_TTL_SECONDS
        ),
        log_level=_env("LOG_LEVEL") or "INFO",
    )


def create_client_from_env(*, use_dotenv: bool = True, **kwargs) -> "TargetProcessClient":
    """Create a TargetProcessClient from environment variables."""
    from .client import TargetProcessClient

    settings = load_env_config(use_dotenv=use_dotenv)
    missing = settings.missing()
    if missing:
        raise ValueError(f"Missing {' and '.join(missing)} in environment.")
    return TargetProcessClient(**{**settings.client_kwargs(), **kwargs})


__all__ = ["TargetProcessSettings", "load_env_config", "create_client_from_env"]
