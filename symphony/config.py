# symphony/config.py
"""
Process configuration.

``Settings`` reads the environment (and ``.env``) once. ``load_config``
turns it into a ``DispatcherConfig``: one immutable value built at
startup and handed to the router, deduplicator, dispatcher and worker.
Only numeric knobs differ between environments; the profile table below
fills the knobs the operator did not set explicitly.
"""
from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Literal, Mapping

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from symphony.core.envelope import MAX_PRIORITY, MIN_PRIORITY, validate_name
from symphony.core.errors import ConfigurationError, MessageValidationError
from symphony.core.retry import DEFAULT_STRATEGY_NAME, RetryStrategyConfig, RetryStrategyResolver
from symphony.core.router import PriorityRoute, TransportConfig, TransportKind

Environment = Literal["development", "staging", "production", "test"]

_ENV_ALIASES = {
    "dev": "development",
    "develop": "development",
    "prod": "production",
    "stage": "staging",
}

# Transports that exist unless disabled: inline execution and the Postgres-backed queue.
BUILTIN_TRANSPORTS: dict[str, TransportKind] = {
    "sync": TransportKind.SYNC,
    "supabase": TransportKind.QUEUED,
}

_TRANSPORT_VAR_RE = re.compile(
    r"^SYMPHONY_TRANSPORT_([A-Z0-9_]+?)_(ENABLED|QUEUE|PRIORITY|KIND)$",
    re.IGNORECASE,
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Environment = "development"
    log_level: str = "INFO"
    log_json: bool = False  # JSON lines for log aggregation; console format otherwise

    # Database
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 30000
    pg_idle_in_tx_timeout_ms: int = 30000

    # Dispatcher defaults
    symphony_default_transport: str = "supabase"
    symphony_default_queue: str = "default"
    symphony_default_priority: int = 5
    symphony_routing: str | None = None           # JSON: {"message_type": "transport"}
    symphony_priority_routing: str | None = None  # JSON: [{"transport": ..., "minPriority": ..., ...}]

    # Batching / deduplication
    symphony_batch_max_size: int = 100
    symphony_deduplication_window_ms: int = 86_400_000  # 24h
    symphony_deduplication_reject: bool = False          # raise instead of returning the original id
    symphony_deduplication_track_attempts: bool = True

    # Default retry strategy (milliseconds)
    symphony_retry_max_retries: int = 3
    symphony_retry_delay: int = 1000
    symphony_retry_multiplier: float = 2.0
    symphony_retry_max_delay: int = 30000
    symphony_retry_configs: str | None = None  # JSON: {"message_type": {"maxRetries": ..., ...}}

    # Worker
    symphony_worker_poll_interval: float = 1.0     # Seconds between polls when idle
    symphony_worker_batch_size: int = 10           # Envelopes claimed per poll cycle
    symphony_worker_lock_seconds: int = 300        # Claim lease; expired leases are released
    symphony_worker_handler_timeout: float = 300.0
    symphony_worker_message_limit: int | None = None
    symphony_worker_time_limit: float | None = None  # seconds
    symphony_worker_failure_limit: int | None = None
    symphony_worker_stale_check_every: int = 30    # poll cycles between expired-lock sweeps
    symphony_completed_ttl_days: int = 7           # `python -m symphony cleanup` retention

    # Scheduler
    symphony_scheduler_batch_size: int = 100       # due schedules fired per pass
    symphony_scheduler_lease_seconds: int = 60
    symphony_scheduler_poll_interval: float = 60.0  # seconds between passes with --loop

    # Handlers: comma-separated modules exposing register(registry)
    symphony_handler_modules: str = ""

    @field_validator("app_env", mode="before")
    @classmethod
    def _normalize_env(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            return _ENV_ALIASES.get(value, value)
        return value

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"host={self.pghost} port={self.pgport} "
            f"dbname={self.pgdatabase} user={self.pguser} "
            f"password={self.pgpassword} "
            f"connect_timeout={self.pg_connect_timeout} "
            f"options='-c statement_timeout={self.pg_statement_timeout_ms} "
            f"-c idle_in_transaction_session_timeout={self.pg_idle_in_tx_timeout_ms}'"
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process settings, read from the environment on first use."""
    try:
        return Settings()
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid settings: {exc}") from exc


# ---------------------------------------------------------------------------
# Immutable dispatcher configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EnvironmentProfile:
    default_priority: int
    retry_overrides: Mapping[str, Any] = field(default_factory=dict)


ENVIRONMENT_PROFILES: Mapping[str, EnvironmentProfile] = MappingProxyType({
    "production": EnvironmentProfile(7, {"max_retries": 5, "max_delay": 60000}),
    "staging": EnvironmentProfile(5),
    "development": EnvironmentProfile(3, {"max_retries": 2, "delay": 500}),
    "test": EnvironmentProfile(3, {"max_retries": 2, "delay": 500}),
})

# Retry knob -> the Settings field that sets it explicitly.
_RETRY_FIELDS = {
    "max_retries": "symphony_retry_max_retries",
    "delay": "symphony_retry_delay",
    "multiplier": "symphony_retry_multiplier",
    "max_delay": "symphony_retry_max_delay",
}


@dataclass(frozen=True)
class DispatcherConfig:
    environment: str
    default_transport: str
    default_queue: str
    default_priority: int
    transports: Mapping[str, TransportConfig]
    routing: Mapping[str, str]
    priority_routing: tuple[PriorityRoute, ...]
    retry: Mapping[str, RetryStrategyConfig]
    batch_max_size: int = 100
    dedup_window_ms: int = 86_400_000
    dedup_reject_duplicates: bool = False
    dedup_track_attempts: bool = True

    @property
    def default_retry(self) -> RetryStrategyConfig:
        return self.retry[DEFAULT_STRATEGY_NAME]

    def retry_resolver(self) -> RetryStrategyResolver:
        return RetryStrategyResolver(self.retry)

    def to_dict(self) -> dict[str, Any]:
        """Plain representation for `python -m symphony config`."""
        return {
            "environment": self.environment,
            "default_transport": self.default_transport,
            "default_queue": self.default_queue,
            "default_priority": self.default_priority,
            "transports": {
                name: {
                    "kind": t.kind.value,
                    "queue": t.queue,
                    "priority": t.priority,
                    "enabled": t.enabled,
                }
                for name, t in self.transports.items()
            },
            "routing": dict(self.routing),
            "priority_routing": [
                {
                    "transport": r.transport,
                    "min_priority": r.min_priority,
                    "max_priority": r.max_priority,
                    "message_types": list(r.message_types),
                }
                for r in self.priority_routing
            ],
            "retry": {name: s.model_dump() for name, s in self.retry.items()},
            "batch_max_size": self.batch_max_size,
            "dedup_window_ms": self.dedup_window_ms,
            "dedup_reject_duplicates": self.dedup_reject_duplicates,
            "dedup_track_attempts": self.dedup_track_attempts,
        }


def _parse_json(raw: str | None, var_name: str) -> Any:
    if raw is None or not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(
            f"Failed to parse {var_name}: {exc}",
            {"variable": var_name},
        ) from exc


def _parse_bool(raw: str, var_name: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{var_name} must be a boolean, got {raw!r}", {"variable": var_name})


def _check_priority(value: Any, var_name: str) -> int:
    try:
        priority = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{var_name} must be an integer, got {value!r}") from exc
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ConfigurationError(
            f"{var_name} must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {priority}"
        )
    return priority


def _load_transports(environ: Mapping[str, str], default_priority: int) -> dict[str, TransportConfig]:
    raw: dict[str, dict[str, str]] = {name: {} for name in BUILTIN_TRANSPORTS}
    for key, value in environ.items():
        match = _TRANSPORT_VAR_RE.match(key)
        if match:
            name, attr = match.group(1).lower(), match.group(2).upper()
            raw.setdefault(name, {})[attr] = value

    transports: dict[str, TransportConfig] = {}
    for name, attrs in raw.items():
        prefix = f"SYMPHONY_TRANSPORT_{name.upper()}"
        try:
            validate_name(name)
            queue = validate_name(attrs.get("QUEUE", "default"), "queue")
        except MessageValidationError as exc:
            raise ConfigurationError(exc.message, {"transport": name}) from exc

        kind_raw = attrs.get("KIND")
        if kind_raw is None:
            kind = BUILTIN_TRANSPORTS.get(name, TransportKind.QUEUED)
        else:
            try:
                kind = TransportKind(kind_raw.strip().lower())
            except ValueError as exc:
                raise ConfigurationError(
                    f"{prefix}_KIND must be one of sync, queued; got {kind_raw!r}"
                ) from exc

        priority = default_priority
        if "PRIORITY" in attrs:
            priority = _check_priority(attrs["PRIORITY"], f"{prefix}_PRIORITY")

        enabled = True
        if "ENABLED" in attrs:
            enabled = _parse_bool(attrs["ENABLED"], f"{prefix}_ENABLED")

        transports[name] = TransportConfig(
            name=name,
            kind=kind,
            queue=queue,
            priority=priority,
            enabled=enabled,
        )
    return transports


def _load_routing(raw: str | None) -> dict[str, str]:
    data = _parse_json(raw, "SYMPHONY_ROUTING")
    if data is None:
        return {}
    if not isinstance(data, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in data.items()
    ):
        raise ConfigurationError("SYMPHONY_ROUTING must be a JSON object of message type -> transport")
    return dict(data)


def _load_priority_routing(raw: str | None) -> tuple[PriorityRoute, ...]:
    data = _parse_json(raw, "SYMPHONY_PRIORITY_ROUTING")
    if data is None:
        return ()
    if not isinstance(data, list):
        raise ConfigurationError("SYMPHONY_PRIORITY_ROUTING must be a JSON array of rules")

    rules: list[PriorityRoute] = []
    for i, item in enumerate(data):
        if not isinstance(item, dict) or not isinstance(item.get("transport"), str):
            raise ConfigurationError(f"SYMPHONY_PRIORITY_ROUTING[{i}] needs a 'transport' string")
        min_priority = item.get("minPriority", item.get("min_priority", MIN_PRIORITY))
        max_priority = item.get("maxPriority", item.get("max_priority"))
        message_types = item.get("messageTypes", item.get("message_types", []))
        if not isinstance(message_types, list):
            raise ConfigurationError(f"SYMPHONY_PRIORITY_ROUTING[{i}].messageTypes must be a list")
        rules.append(PriorityRoute(
            transport=item["transport"],
            min_priority=_check_priority(min_priority, f"SYMPHONY_PRIORITY_ROUTING[{i}].minPriority"),
            max_priority=(
                None if max_priority is None
                else _check_priority(max_priority, f"SYMPHONY_PRIORITY_ROUTING[{i}].maxPriority")
            ),
            message_types=tuple(str(t) for t in message_types),
        ))
    return tuple(rules)


def _load_retry(settings: Settings, profile: EnvironmentProfile) -> dict[str, RetryStrategyConfig]:
    explicit = settings.model_fields_set
    values: dict[str, Any] = {
        knob: getattr(settings, field_name) for knob, field_name in _RETRY_FIELDS.items()
    }
    for knob, value in profile.retry_overrides.items():
        if _RETRY_FIELDS[knob] not in explicit:
            values[knob] = value

    try:
        retry = {DEFAULT_STRATEGY_NAME: RetryStrategyConfig(**values)}
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid default retry strategy: {exc}") from exc

    overrides = _parse_json(settings.symphony_retry_configs, "SYMPHONY_RETRY_CONFIGS")
    if overrides is None:
        return retry
    if not isinstance(overrides, dict):
        raise ConfigurationError("SYMPHONY_RETRY_CONFIGS must be a JSON object of message type -> strategy")

    for message_type, data in overrides.items():
        if not isinstance(data, dict):
            raise ConfigurationError(f"SYMPHONY_RETRY_CONFIGS[{message_type!r}] must be an object")
        try:
            retry[message_type] = RetryStrategyConfig.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid retry strategy for {message_type!r}: {exc}",
                {"message_type": message_type},
            ) from exc
    return retry


def load_config(settings: Settings | None = None, environ: Mapping[str, str] | None = None) -> DispatcherConfig:
    """
    Build the immutable dispatcher configuration.

    Args:
        settings: defaults to the process settings
        environ: where per-transport SYMPHONY_TRANSPORT_<NAME>_* variables
            are read from; defaults to ``os.environ``

    Raises:
        ConfigurationError: malformed JSON or out-of-range values
    """
    if settings is None:
        settings = get_settings()
    environ = os.environ if environ is None else environ
    profile = ENVIRONMENT_PROFILES[settings.app_env]
    explicit = settings.model_fields_set

    if "symphony_default_priority" in explicit:
        default_priority = _check_priority(settings.symphony_default_priority, "SYMPHONY_DEFAULT_PRIORITY")
    else:
        default_priority = profile.default_priority

    if settings.symphony_batch_max_size <= 0:
        raise ConfigurationError("SYMPHONY_BATCH_MAX_SIZE must be positive")
    if settings.symphony_deduplication_window_ms <= 0:
        raise ConfigurationError("SYMPHONY_DEDUPLICATION_WINDOW_MS must be positive")

    try:
        default_queue = validate_name(settings.symphony_default_queue, "queue")
    except MessageValidationError as exc:
        raise ConfigurationError(exc.message) from exc

    return DispatcherConfig(
        environment=settings.app_env,
        default_transport=settings.symphony_default_transport,
        default_queue=default_queue,
        default_priority=default_priority,
        transports=MappingProxyType(_load_transports(environ, default_priority)),
        routing=MappingProxyType(_load_routing(settings.symphony_routing)),
        priority_routing=_load_priority_routing(settings.symphony_priority_routing),
        retry=MappingProxyType(_load_retry(settings, profile)),
        batch_max_size=settings.symphony_batch_max_size,
        dedup_window_ms=settings.symphony_deduplication_window_ms,
        dedup_reject_duplicates=settings.symphony_deduplication_reject,
        dedup_track_attempts=settings.symphony_deduplication_track_attempts,
    )


def warn_on_risky_config(config: DispatcherConfig) -> list[str]:
    warnings: list[str] = []

    default = config.transports.get(config.default_transport)
    if default is None:
        warnings.append(
            f"default transport '{config.default_transport}' is not configured "
            "(unrouted messages will be rejected)."
        )
    elif not default.enabled:
        warnings.append(f"default transport '{config.default_transport}' is disabled.")

    for message_type, transport in config.routing.items():
        if transport not in config.transports:
            warnings.append(f"routing: '{message_type}' -> unknown transport '{transport}'.")

    for rule in config.priority_routing:
        if rule.transport not in config.transports:
            warnings.append(f"priority routing: unknown transport '{rule.transport}'.")

    for name, strategy in config.retry.items():
        if strategy.max_retries == 0:
            warnings.append(f"retry '{name}': max_retries=0 (failures go straight to the failed ledger).")

    if config.environment == "production" and config.dedup_window_ms < 60_000:
        warnings.append("prod: dedup window under one minute (retried producers may enqueue duplicates).")

    return warnings
