"""TOML config loading and profiles."""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any

# Default config search path (project root or cwd)
_CONFIG_DIR = Path(__file__).resolve().parent.parent.parent.parent / "config"
_CWD_CONFIG = Path.cwd() / "config"


def _load_toml(path: Path) -> dict[str, Any]:
    with open(path, "rb") as f:
        return tomllib.load(f)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base. Override values take precedence."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _find_config_dir() -> Path:
    if _CWD_CONFIG.exists():
        return _CWD_CONFIG
    return _CONFIG_DIR


def _normalize_address(value: Any) -> str:
    return str(value or "").strip().lower()


def load_config(profile: str | None = None, config_dir: Path | None = None) -> dict[str, Any]:
    """Load merged config from default.toml and optional profile overlay."""
    config_dir = Path(config_dir) if config_dir else _find_config_dir()
    default_path = config_dir / "default.toml"
    if not default_path.exists():
        return {}
    base = _load_toml(default_path)
    if profile:
        profile_path = config_dir / f"{profile}.toml"
        if profile_path.exists():
            overlay = _load_toml(profile_path)
            base = _deep_merge(base, overlay)
    return base


def get_settings(profile: str | None = None, config_dir: Path | None = None) -> Settings:
    """Return Settings instance from merged config."""
    raw = load_config(profile, config_dir)
    return Settings.from_dict(raw)


class Settings:
    """Application settings from TOML config."""

    def __init__(
        self,
        *,
        storage: dict[str, Any] | None = None,
        ingestion: dict[str, Any] | None = None,
        contracts: dict[str, Any] | None = None,
        resolver: dict[str, Any] | None = None,
        logging: dict[str, Any] | None = None,
    ):
        self.storage = storage or {}
        self.ingestion = ingestion or {}
        self.contracts = contracts or {}
        self.resolver = resolver or {}
        self.logging = logging or {}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Settings:
        return cls(
            storage=raw.get("storage"),
            ingestion=raw.get("ingestion"),
            contracts=raw.get("contracts"),
            resolver=raw.get("resolver"),
            logging=raw.get("logging"),
        )

    # Convenience accessors with defaults
    @property
    def db_path(self) -> str:
        return self.storage.get("db_path", "data/predindex.duckdb")

    @property
    def event_batch_size(self) -> int:
        return int(self.ingestion.get("event_batch_size", 500))

    @property
    def resolve_workers(self) -> int:
        return max(1, int(self.ingestion.get("resolve_workers", 1)))

    @property
    def conditional_tokens(self) -> list[str]:
        return [_normalize_address(a) for a in self.contracts.get("conditional_tokens") or []]

    @property
    def negrisk_adapters(self) -> list[str]:
        return [_normalize_address(a) for a in self.contracts.get("negrisk_adapters") or []]

    @property
    def collateral_by_oracle(self) -> dict[str, str]:
        raw = self.contracts.get("collateral_by_oracle") or {}
        return {_normalize_address(k): _normalize_address(v) for k, v in raw.items()}

    @property
    def pending_timeout_blocks(self) -> int:
        return int(self.resolver.get("pending_timeout_blocks", 0))

    @property
    def outcome_labeler(self) -> str:
        return str(self.resolver.get("outcome_labeler", "none")).lower()

    @property
    def logging_level(self) -> str:
        return self.logging.get("level", "INFO").upper()

    @property
    def logging_format(self) -> str:
        return self.logging.get("format", "console")

    @property
    def logging_level_num(self) -> int:
        return getattr(logging, self.logging_level, logging.INFO)


def configure_logging(settings: Settings) -> None:
    """Configure structlog with settings. Call once at application entry."""
    import structlog

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.logging_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(settings.logging_level_num),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
