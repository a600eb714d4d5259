"""Engine configuration loading and validation.

Reads ``chatsync.toml``, resolves ``${VAR}`` references against the
environment and returns a validated :class:`SyncConfig` dataclass.  Every
section is optional; a missing file is only an error when a path is given
explicitly.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from chatsync.errors import ChatSyncError

DEFAULT_CONFIG_FILENAME = "chatsync.toml"

# Matches ${VAR_NAME} with alphanumeric + underscore names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(ChatSyncError):
    """Raised when engine configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Backend connection target from the [database] section.

    ``url`` takes precedence; when unset the connection parameters come from
    ``DATABASE_URL`` or the individual ``POSTGRES_*`` variables.
    """

    name: str = "chatsync"
    url: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class TransactionConfig:
    """Transaction timeout ceilings from the [transactions] section."""

    default_timeout_s: float = 10.0
    bulk_timeout_s: float = 30.0
    max_wait_s: float = 10.0


@dataclass
class RetryConfig:
    """Transient-failure retry policy from the [retry] section."""

    max_attempts: int = 3
    base_delay_s: float = 0.1
    jitter_s: float = 0.1


@dataclass(frozen=True)
class BatchTier:
    """One volume tier: applies when the item count exceeds ``min_items``."""

    min_items: int
    batch_size: int
    max_concurrent: int
    timeout_s: float


DEFAULT_BATCH_TIERS: tuple[BatchTier, ...] = (
    BatchTier(min_items=10_000, batch_size=10, max_concurrent=2, timeout_s=45.0),
    BatchTier(min_items=5_000, batch_size=15, max_concurrent=2, timeout_s=30.0),
    BatchTier(min_items=1_000, batch_size=25, max_concurrent=3, timeout_s=25.0),
    BatchTier(min_items=0, batch_size=50, max_concurrent=4, timeout_s=20.0),
)


@dataclass
class BatchingConfig:
    """Bulk write sizing from the [batching] section.

    Tiers are kept sorted by ``min_items`` descending; the first tier whose
    threshold the item count exceeds wins, and the last tier is the fallback.
    """

    tiers: tuple[BatchTier, ...] = DEFAULT_BATCH_TIERS
    progress_every: int = 10
    chat_chunk_size: int = 100
    max_parallel_upserts: int = 8


@dataclass
class SyncConfig:
    """Parsed and validated engine configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    transactions: TransactionConfig = field(default_factory=TransactionConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    batching: BatchingConfig = field(default_factory=BatchingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return section


def _positive_int(section: dict[str, Any], path: str, key: str, default: int) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be an integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _positive_float(section: dict[str, Any], path: str, key: str, default: float) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a number.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be positive.")
    return value


def _parse_tier(entry: Any, index: int) -> BatchTier:
    """Parse and validate one ``[[batching.tiers]]`` entry."""
    entry_path = f"batching.tiers[{index}]"
    if not isinstance(entry, dict):
        raise ConfigError(f"{entry_path} must be a TOML table")

    raw_min = entry.get("min_items", 0)
    if isinstance(raw_min, bool) or not isinstance(raw_min, int) or raw_min < 0:
        raise ConfigError(f"{entry_path}.min_items must be a non-negative integer")

    return BatchTier(
        min_items=raw_min,
        batch_size=_positive_int(entry, entry_path, "batch_size", 50),
        max_concurrent=_positive_int(entry, entry_path, "max_concurrent", 1),
        timeout_s=_positive_float(entry, entry_path, "timeout_s", 20.0),
    )


def parse_batch_tiers(raw: Any) -> tuple[BatchTier, ...]:
    """Parse a tier table and check it shrinks monotonically with volume.

    Returns the tiers sorted by ``min_items`` descending.
    """
    if not isinstance(raw, list) or not raw:
        raise ConfigError("batching.tiers must be a non-empty array of tables")

    tiers = sorted(
        (_parse_tier(entry, i) for i, entry in enumerate(raw)),
        key=lambda tier: tier.min_items,
        reverse=True,
    )

    thresholds = [tier.min_items for tier in tiers]
    if len(set(thresholds)) != len(thresholds):
        raise ConfigError("batching.tiers must not repeat a min_items threshold")

    for larger, smaller in zip(tiers, tiers[1:], strict=False):
        if larger.batch_size > smaller.batch_size or larger.max_concurrent > smaller.max_concurrent:
            raise ConfigError(
                "batching.tiers must not grow batch_size or max_concurrent as volume grows "
                f"(tier min_items={larger.min_items} vs min_items={smaller.min_items})"
            )
    return tuple(tiers)


def parse_config(data: dict[str, Any]) -> SyncConfig:
    """Validate an already-parsed TOML document into a :class:`SyncConfig`."""
    data = resolve_env_vars(data)

    # --- [database] ---
    db_section = _section(data, "database")
    db_name = str(db_section.get("name", "chatsync")).strip()
    if not db_name:
        raise ConfigError("database.name must be a non-empty string")
    db_url = db_section.get("url")
    if db_url is not None and (not isinstance(db_url, str) or not db_url.strip()):
        raise ConfigError("database.url must be a non-empty string when set")
    min_pool = _positive_int(db_section, "database", "min_pool_size", 2)
    max_pool = _positive_int(db_section, "database", "max_pool_size", 10)
    if min_pool > max_pool:
        raise ConfigError("database.min_pool_size must not exceed database.max_pool_size")
    database = DatabaseConfig(
        name=db_name,
        url=db_url.strip() if db_url else None,
        min_pool_size=min_pool,
        max_pool_size=max_pool,
    )

    # --- [transactions] ---
    tx_section = _section(data, "transactions")
    transactions = TransactionConfig(
        default_timeout_s=_positive_float(tx_section, "transactions", "default_timeout_s", 10.0),
        bulk_timeout_s=_positive_float(tx_section, "transactions", "bulk_timeout_s", 30.0),
        max_wait_s=_positive_float(tx_section, "transactions", "max_wait_s", 10.0),
    )

    # --- [retry] ---
    retry_section = _section(data, "retry")
    jitter_raw = retry_section.get("jitter_s", 0.1)
    try:
        jitter_s = float(jitter_raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid retry.jitter_s: {jitter_raw!r}. Must be a number.") from exc
    if jitter_s < 0:
        raise ConfigError("retry.jitter_s must not be negative")
    retry = RetryConfig(
        max_attempts=_positive_int(retry_section, "retry", "max_attempts", 3),
        base_delay_s=_positive_float(retry_section, "retry", "base_delay_s", 0.1),
        jitter_s=jitter_s,
    )

    # --- [batching] ---
    batching_section = _section(data, "batching")
    raw_tiers = batching_section.get("tiers")
    batching = BatchingConfig(
        tiers=parse_batch_tiers(raw_tiers) if raw_tiers is not None else DEFAULT_BATCH_TIERS,
        progress_every=_positive_int(batching_section, "batching", "progress_every", 10),
        chat_chunk_size=_positive_int(batching_section, "batching", "chat_chunk_size", 100),
        max_parallel_upserts=_positive_int(
            batching_section, "batching", "max_parallel_upserts", 8
        ),
    )

    # --- [logging] ---
    logging_section = _section(data, "logging")
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    logging_config = LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=logging_section.get("log_root"),
    )

    return SyncConfig(
        database=database,
        transactions=transactions,
        retry=retry,
        batching=batching,
        logging=logging_config,
    )


def load_config(path: Path | None = None) -> SyncConfig:
    """Load and validate ``chatsync.toml``.

    Parameters
    ----------
    path:
        Config file, or a directory containing ``chatsync.toml``.  When
        ``None`` the ``CHATSYNC_CONFIG`` environment variable is consulted,
        and defaults are returned if neither points at a file.

    Raises
    ------
    ConfigError
        If an explicit file is missing, contains invalid TOML, or fails
        validation.
    """
    if path is None:
        env_path = os.environ.get("CHATSYNC_CONFIG")
        if not env_path:
            return SyncConfig()
        path = Path(env_path)

    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
