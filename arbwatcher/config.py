"""Runtime settings assembled from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Tuple, TypeVar

from .analysis import DEFAULT_FX_RATES
from .fetch import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAYS, ZYTE_ENDPOINT
from .models import CURRENCY_DKK

DEFAULT_DATABASE_URL = "sqlite:///arbwatcher.db"

T = TypeVar("T")


@dataclass(frozen=True)
class Settings:
    """Explicit configuration handed to the orchestrator at startup."""

    database_url: str = DEFAULT_DATABASE_URL
    zyte_api_key: str = ""
    zyte_endpoint: str = ZYTE_ENDPOINT
    fetch_timeout_seconds: float = 120.0
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delays_seconds: Tuple[float, ...] = DEFAULT_RETRY_DELAYS
    max_pages: int = 5
    heartbeat_interval_seconds: float = 30.0
    heartbeat_timeout_seconds: float = 600.0
    max_runtime_seconds: float = 7200.0
    poll_interval_seconds: float = 60.0
    due_job_limit: int = 5
    fx_rates: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_FX_RATES))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = cls()

        def read(name: str, parse: Callable[[str], T], default: T) -> T:
            raw = env.get(name, "").strip()
            if not raw:
                return default
            try:
                value = parse(raw)
            except ValueError as exc:
                raise ValueError(f"Invalid value for {name}: {raw!r}") from exc
            return value

        fx_rates: Dict[str, float] = dict(defaults.fx_rates)
        fx_rates[CURRENCY_DKK] = read("ARB_DKK_EUR_RATE", _positive_float, fx_rates[CURRENCY_DKK])

        return cls(
            database_url=env.get("DATABASE_URL") or DEFAULT_DATABASE_URL,
            zyte_api_key=env.get("ZYTE_API_KEY", ""),
            zyte_endpoint=env.get("ZYTE_ENDPOINT") or ZYTE_ENDPOINT,
            fetch_timeout_seconds=read(
                "ARB_FETCH_TIMEOUT", _positive_float, defaults.fetch_timeout_seconds
            ),
            max_retries=read("ARB_MAX_RETRIES", _non_negative_int, defaults.max_retries),
            retry_delays_seconds=read(
                "ARB_RETRY_DELAYS", _delays, defaults.retry_delays_seconds
            ),
            max_pages=read("ARB_MAX_PAGES", _positive_int, defaults.max_pages),
            heartbeat_interval_seconds=read(
                "ARB_HEARTBEAT_INTERVAL", _positive_float, defaults.heartbeat_interval_seconds
            ),
            heartbeat_timeout_seconds=read(
                "ARB_HEARTBEAT_TIMEOUT", _positive_float, defaults.heartbeat_timeout_seconds
            ),
            max_runtime_seconds=read(
                "ARB_MAX_RUNTIME", _positive_float, defaults.max_runtime_seconds
            ),
            poll_interval_seconds=read(
                "ARB_POLL_INTERVAL", _positive_float, defaults.poll_interval_seconds
            ),
            due_job_limit=read("ARB_DUE_JOB_LIMIT", _positive_int, defaults.due_job_limit),
            fx_rates=fx_rates,
        )


def _positive_float(raw: str) -> float:
    value = float(raw)
    if value <= 0:
        raise ValueError("must be positive")
    return value


def _positive_int(raw: str) -> int:
    value = int(raw)
    if value <= 0:
        raise ValueError("must be positive")
    return value


def _non_negative_int(raw: str) -> int:
    value = int(raw)
    if value < 0:
        raise ValueError("must not be negative")
    return value


def _delays(raw: str) -> Tuple[float, ...]:
    delays = tuple(float(part) for part in raw.split(",") if part.strip())
    if not delays or any(delay < 0 for delay in delays):
        raise ValueError("delays must be non-negative seconds")
    return delays
