"""Runtime configuration loaded from YAML with environment overrides."""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml


@dataclass(frozen=True)
class CacheConfig:
    ttl_seconds: float = 300.0


@dataclass(frozen=True)
class IngestConfig:
    max_clock_skew_seconds: float = 300.0


@dataclass(frozen=True)
class RetryConfig:
    """Bounded exponential backoff for transient repository failures."""

    max_attempts: int = 3
    initial_backoff_seconds: float = 0.1
    max_backoff_seconds: float = 2.0


@dataclass(frozen=True)
class StoreConfig:
    dsn: str = "sqlite:///./eventmet.db"


@dataclass(frozen=True)
class AppConfig:
    environment: str = "development"
    log_level: str = "INFO"
    default_period_days: int = 7
    cache: CacheConfig = field(default_factory=CacheConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    store: StoreConfig = field(default_factory=StoreConfig)


def load_config(
    path: Union[str, Path, None] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """
    Build an :class:`AppConfig` from an optional YAML file.

    A missing path or file yields the defaults. ``EVENTMET_ENV``,
    ``EVENTMET_LOG_LEVEL``, ``EVENTMET_DSN`` and ``EVENTMET_CACHE_TTL`` override
    whatever the file says.
    """
    raw: Dict[str, Any] = {}
    if path is not None and Path(path).exists():
        with Path(path).open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}

    cache_raw = raw.get("cache", {})
    ingest_raw = raw.get("ingest", {})
    retry_raw = raw.get("retry", {})
    store_raw = raw.get("store", {})

    config = AppConfig(
        environment=str(raw.get("environment", "development")),
        log_level=str(raw.get("log_level", "INFO")).upper(),
        default_period_days=int(raw.get("default_period_days", 7)),
        cache=CacheConfig(ttl_seconds=float(cache_raw.get("ttl_seconds", 300.0))),
        ingest=IngestConfig(
            max_clock_skew_seconds=float(ingest_raw.get("max_clock_skew_seconds", 300.0)),
        ),
        retry=RetryConfig(
            max_attempts=int(retry_raw.get("max_attempts", 3)),
            initial_backoff_seconds=float(retry_raw.get("initial_backoff_seconds", 0.1)),
            max_backoff_seconds=float(retry_raw.get("max_backoff_seconds", 2.0)),
        ),
        store=StoreConfig(dsn=str(store_raw.get("dsn", "sqlite:///./eventmet.db"))),
    )
    return _apply_env(config, os.environ if environ is None else environ)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _apply_env(config: AppConfig, environ: Mapping[str, str]) -> AppConfig:
    if "EVENTMET_ENV" in environ:
        config = replace(config, environment=environ["EVENTMET_ENV"])
    if "EVENTMET_LOG_LEVEL" in environ:
        config = replace(config, log_level=environ["EVENTMET_LOG_LEVEL"].upper())
    if "EVENTMET_DSN" in environ:
        config = replace(config, store=StoreConfig(dsn=environ["EVENTMET_DSN"]))
    if "EVENTMET_CACHE_TTL" in environ:
        config = replace(config, cache=CacheConfig(ttl_seconds=float(environ["EVENTMET_CACHE_TTL"])))
    return config
