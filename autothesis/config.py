"""Runtime configuration loaded from environment variables."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass

from dotenv import load_dotenv


class ConfigError(ValueError):
    """Raised when an environment variable holds an unusable value."""


_UNSIGNED = re.compile(r"\+?[0-9]+")
_SIGNED = re.compile(r"[+-]?[0-9]+")


def _parse_unsigned(raw: str, bits: int, message: str) -> int:
    if not _UNSIGNED.fullmatch(raw):
        raise ConfigError(message)
    value = int(raw)
    if value >= 1 << bits:
        raise ConfigError(message)
    return value


def _parse_signed(raw: str, bits: int, message: str) -> int:
    if not _SIGNED.fullmatch(raw):
        raise ConfigError(message)
    value = int(raw)
    limit = 1 << (bits - 1)
    if not -limit <= value < limit:
        raise ConfigError(message)
    return value


def _parse_bool(raw: str, message: str) -> bool:
    if raw == "true":
        return True
    if raw == "false":
        return False
    raise ConfigError(message)


@dataclass(frozen=True)
class Config:
    """Settings for the server, providers, research loop and scheduler."""

    host: str = "127.0.0.1"
    port: int = 3000
    database_url: str = "sqlite://autothesis.db"
    openai_api_key: str = ""
    openai_model: str = "gpt-4.1-mini"
    openai_base_url: str = "https://api.openai.com/v1"
    search_api_key: str = ""
    search_provider: str = "tavily"
    max_iterations: int = 3
    max_sources_per_iteration: int = 8
    max_concurrent_runs: int = 5
    scheduler_enabled: bool = True
    scheduler_check_interval_secs: int = 60
    scheduler_max_concurrent_runs: int = 3
    scheduler_min_ticker_age_hours: int = 24

    def address(self) -> str:
        """Return the ``host:port`` string the server binds to."""
        return f"{self.host}:{self.port}"


def load_config(environ: Mapping[str, str] | None = None) -> Config:
    """Build a :class:`Config` from ``environ``.

    When ``environ`` is omitted, a ``.env`` file is loaded (if present) and
    the process environment is used.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    def get(key: str, default: str) -> str:
        return environ.get(key, default)

    port = _parse_unsigned(get("APP_PORT", "3000"), 16, "APP_PORT must be a valid u16")
    max_iterations = _parse_unsigned(
        get("MAX_ITERATIONS", "3"), 32, "MAX_ITERATIONS must be a valid u32"
    )
    max_sources = _parse_unsigned(
        get("MAX_SOURCES_PER_ITERATION", "8"),
        64,
        "MAX_SOURCES_PER_ITERATION must be a valid usize",
    )
    max_concurrent_runs = _parse_unsigned(
        get("MAX_CONCURRENT_RUNS", "5"), 64, "MAX_CONCURRENT_RUNS must be a valid usize"
    )
    scheduler_enabled = _parse_bool(
        get("SCHEDULER_ENABLED", "true"), "SCHEDULER_ENABLED must be a valid boolean"
    )
    check_interval = _parse_unsigned(
        get("SCHEDULER_CHECK_INTERVAL_SECS", "60"),
        64,
        "SCHEDULER_CHECK_INTERVAL_SECS must be a valid u64",
    )
    scheduler_max_runs = _parse_unsigned(
        get("SCHEDULER_MAX_CONCURRENT_RUNS", "3"),
        64,
        "SCHEDULER_MAX_CONCURRENT_RUNS must be a valid usize",
    )
    min_ticker_age = _parse_signed(
        get("SCHEDULER_MIN_TICKER_AGE_HOURS", "24"),
        64,
        "SCHEDULER_MIN_TICKER_AGE_HOURS must be a valid i64",
    )

    for value, name in (
        (max_iterations, "MAX_ITERATIONS"),
        (max_sources, "MAX_SOURCES_PER_ITERATION"),
        (max_concurrent_runs, "MAX_CONCURRENT_RUNS"),
        (check_interval, "SCHEDULER_CHECK_INTERVAL_SECS"),
        (scheduler_max_runs, "SCHEDULER_MAX_CONCURRENT_RUNS"),
    ):
        if value == 0:
            raise ConfigError(f"{name} must be at least 1")

    return Config(
        host=get("APP_HOST", "127.0.0.1"),
        port=port,
        database_url=get("DATABASE_URL", "sqlite://autothesis.db"),
        openai_api_key=get("OPENAI_API_KEY", ""),
        openai_model=get("OPENAI_MODEL", "gpt-4.1-mini"),
        openai_base_url=get("OPENAI_BASE_URL", "https://api.openai.com/v1"),
        search_api_key=get("SEARCH_API_KEY", ""),
        search_provider=get("SEARCH_PROVIDER", "tavily"),
        max_iterations=max_iterations,
        max_sources_per_iteration=max_sources,
        max_concurrent_runs=max_concurrent_runs,
        scheduler_enabled=scheduler_enabled,
        scheduler_check_interval_secs=check_interval,
        scheduler_max_concurrent_runs=scheduler_max_runs,
        scheduler_min_ticker_age_hours=min_ticker_age,
    )


def default_question_for_ticker(ticker: str) -> str:
    """Return the research question used when none is supplied."""
    return (
        f"What is the current bull and bear case for {ticker}, and what would "
        "need to be true for the valuation to make sense?"
    )