"""
config/settings.py — PocketClaw Runtime Settings

Merges config.yaml (defaults/structure) with .env (secrets).
Pydantic-powered — all fields are validated and typed.

  - AgentConfig carries the kill conditions every AgentLoop enforces
  - PoolConfig bounds TaskPool concurrency and the shutdown grace period
  - validate_all() performs full startup validation and raises ConfigError
    with a clear, human-readable message listing every problem found
  - load_settings() respects POCKETCLAW_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_SECURITY_LEVELS = {1, 2, 3, 4, 5}
_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_KNOWN_PROVIDERS = {"anthropic", "openai", "gemini", "deepseek", "ollama"}

# Providers that run locally and need no API key
_KEYLESS_PROVIDERS = {"ollama"}


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class AgentConfig(BaseModel):
    user_name: str = "User"
    security_level: int = 3

    # Kill conditions
    max_round_trips: int = 20
    max_tokens_per_task: int = 50_000
    max_duration_ms: int = 300_000
    max_consecutive_errors: int = 3
    task_budget_usd: float = 0.50

    @field_validator("security_level")
    @classmethod
    def _valid_security_level(cls, v: int) -> int:
        if v not in _VALID_SECURITY_LEVELS:
            raise ValueError(
                f"agent.security_level must be one of "
                f"{sorted(_VALID_SECURITY_LEVELS)}, got {v}"
            )
        return v

    @field_validator(
        "max_round_trips", "max_tokens_per_task", "max_duration_ms", "max_consecutive_errors",
    )
    @classmethod
    def _positive_limit(cls, v: int, info) -> int:
        if v < 1:
            raise ValueError(f"agent.{info.field_name} must be >= 1")
        return v

    @field_validator("task_budget_usd")
    @classmethod
    def _non_negative_budget(cls, v: float) -> float:
        if v < 0:
            raise ValueError("agent.task_budget_usd must be >= 0")
        return v


class BudgetConfig(BaseModel):
    monthly_budget_usd: float = 20.0
    warning_threshold: float = 0.8

    @field_validator("monthly_budget_usd")
    @classmethod
    def _non_negative_monthly(cls, v: float) -> float:
        if v < 0:
            raise ValueError("budget.monthly_budget_usd must be >= 0")
        return v

    @field_validator("warning_threshold")
    @classmethod
    def _valid_threshold(cls, v: float) -> float:
        if not (0.0 < v <= 1.0):
            raise ValueError("budget.warning_threshold must be in (0.0, 1.0]")
        return v


class LLMConfig(BaseModel):
    default_provider: str = "anthropic"
    enabled_providers: List[str] = Field(default_factory=list)

    @field_validator("default_provider")
    @classmethod
    def _known_provider(cls, v: str) -> str:
        if v not in _KNOWN_PROVIDERS:
            raise ValueError(
                f"llm.default_provider '{v}' is not supported. "
                f"Supported: {sorted(_KNOWN_PROVIDERS)}"
            )
        return v

    @field_validator("enabled_providers")
    @classmethod
    def _known_enabled(cls, v: list[str]) -> list[str]:
        bad = [p for p in v if p not in _KNOWN_PROVIDERS]
        if bad:
            raise ValueError(
                f"llm.enabled_providers has unknown providers: {bad}. "
                f"Supported: {sorted(_KNOWN_PROVIDERS)}"
            )
        return v

    @property
    def providers(self) -> list[str]:
        """Enabled providers, falling back to the default provider alone."""
        return list(self.enabled_providers) or [self.default_provider]


class PoolConfig(BaseModel):
    max_concurrent: Optional[int] = None      # None → min(cpu_count, 4)
    shutdown_timeout_seconds: float = 30.0

    @field_validator("max_concurrent")
    @classmethod
    def _positive_concurrency(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("pool.max_concurrent must be >= 1")
        return v

    @field_validator("shutdown_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("pool.shutdown_timeout_seconds must be > 0")
        return v


class ContextConfig(BaseModel):
    history_max_chars: int = 20_000
    summarization_threshold_tokens: int = 4_000


class PersistenceConfig(BaseModel):
    backend: str = "sqlite"
    sqlite_path: str = "./data/sqlite/pocketclaw.db"

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, v: str) -> str:
        if v not in {"memory", "sqlite"}:
            raise ValueError("persistence.backend must be 'memory' or 'sqlite'")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    PocketClaw runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets from .env ---------------------------------------------------
    anthropic_api_key: Optional[str] = Field(default=None, alias="ANTHROPIC_API_KEY")
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    gemini_api_key: Optional[str] = Field(default=None, alias="GEMINI_API_KEY")
    deepseek_api_key: Optional[str] = Field(default=None, alias="DEEPSEEK_API_KEY")

    # -- Structured config (from config.yaml) --------------------------------
    agent: AgentConfig = Field(default_factory=AgentConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("agent", mode="before")
    @classmethod
    def _coerce_agent(cls, v: Any) -> Any:
        return AgentConfig(**v) if isinstance(v, dict) else v

    @field_validator("budget", mode="before")
    @classmethod
    def _coerce_budget(cls, v: Any) -> Any:
        return BudgetConfig(**v) if isinstance(v, dict) else v

    @field_validator("llm", mode="before")
    @classmethod
    def _coerce_llm(cls, v: Any) -> Any:
        return LLMConfig(**v) if isinstance(v, dict) else v

    @field_validator("pool", mode="before")
    @classmethod
    def _coerce_pool(cls, v: Any) -> Any:
        return PoolConfig(**v) if isinstance(v, dict) else v

    @field_validator("context", mode="before")
    @classmethod
    def _coerce_context(cls, v: Any) -> Any:
        return ContextConfig(**v) if isinstance(v, dict) else v

    @field_validator("persistence", mode="before")
    @classmethod
    def _coerce_persistence(cls, v: Any) -> Any:
        return PersistenceConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def enabled_providers(self) -> list[str]:
        return self.llm.providers

    @property
    def monthly_budget_usd(self) -> float:
        return self.budget.monthly_budget_usd

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    def _api_key_for(self, provider: str) -> Optional[str]:
        return {
            "anthropic": self.anthropic_api_key,
            "openai":    self.openai_api_key,
            "gemini":    self.gemini_api_key,
            "deepseek":  self.deepseek_api_key,
        }.get(provider)

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches cross-field problems Pydantic can't see (API key
        presence for every enabled provider, a task budget larger than the
        whole monthly budget).
        """
        errors: list[str] = []

        # ── Every enabled provider needs its key ─────────────────────────────
        for provider in self.enabled_providers:
            if provider in _KEYLESS_PROVIDERS:
                continue
            if not self._api_key_for(provider):
                env_name = f"{provider.upper()}_API_KEY"
                errors.append(
                    f"Provider '{provider}' is enabled but {env_name} is not set. "
                    f"Add it to .env or remove '{provider}' from llm.enabled_providers."
                )

        # ── Task budget must fit inside the monthly budget ───────────────────
        if self.agent.task_budget_usd > self.budget.monthly_budget_usd:
            errors.append(
                f"agent.task_budget_usd ({self.agent.task_budget_usd}) is larger than "
                f"budget.monthly_budget_usd ({self.budget.monthly_budget_usd})."
            )

        # ── SQLite backend needs a path ──────────────────────────────────────
        if self.persistence.backend == "sqlite" and not self.persistence.sqlite_path.strip():
            errors.append("persistence.sqlite_path must not be empty for the sqlite backend.")

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nPocketClaw startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {
    "agent", "budget", "llm", "pool", "context", "persistence", "logging",
}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument
      2. POCKETCLAW_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("POCKETCLAW_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def _build_settings(config_path: str | Path | None) -> Settings:
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}
    return Settings(**init_kwargs)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """
    Load settings by merging config.yaml with environment variables and
    install the result as the global singleton.
    """
    global _singleton
    instance = _build_settings(config_path)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton.
    If load_settings() has been called already, returns that instance.
    Otherwise loads from the default config path.
    """
    global _singleton
    if _singleton is not None:
        return _singleton  # fast path: no lock needed once set
    with _singleton_lock:
        # Re-check inside the lock in case another thread just initialised it
        if _singleton is None:
            _singleton = _build_settings(None)
        return _singleton
