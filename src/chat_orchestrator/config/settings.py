"""
Configuration management for Chat Orchestrator.

This module implements hierarchical configuration loading with validation,
following the pattern: CLI args > env vars > user config > defaults.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDER_TYPES = {"openai", "gemini"}


class ProviderConfig(BaseModel):
    """Configuration for a single LLM backend."""

    type: str = Field(default="openai", description="Client implementation (openai, gemini)")
    enabled: bool = Field(default=True, description="Whether this provider may be used")
    api_key: str | None = Field(default=None, description="Provider API key", repr=False)
    base_url: str = Field(default="", description="Base URL of the provider API")
    default_model: str = Field(default="", description="Model used when none is requested")
    max_context_tokens: int = Field(
        default=4096, ge=256, description="Maximum tokens in the context window"
    )
    max_output_tokens: int = Field(
        default=2048, ge=1, description="Maximum tokens the model may generate"
    )

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        v = v.lower().strip()
        if v not in SUPPORTED_PROVIDER_TYPES:
            raise ValueError(f"Provider type must be one of {SUPPORTED_PROVIDER_TYPES}")
        return v


def _default_providers() -> dict[str, ProviderConfig]:
    return {
        "openai": ProviderConfig(
            type="openai",
            base_url="https://api.openai.com/v1",
            default_model="gpt-4o-mini",
            max_context_tokens=128000,
        ),
        "grok": ProviderConfig(
            type="openai",
            base_url="https://api.x.ai/v1",
            default_model="grok-3-mini",
            max_context_tokens=131072,
        ),
        "gemini": ProviderConfig(
            type="gemini",
            base_url="https://generativelanguage.googleapis.com/v1beta",
            default_model="gemini-2.0-flash",
            max_context_tokens=1048576,
        ),
    }


class LLMConfig(BaseModel):
    """Provider routing configuration."""

    default_provider: str = Field(default="openai", description="Global default provider")
    fallback_enabled: bool = Field(
        default=True, description="Try other providers when the first one fails"
    )
    fallback_order: list[str] = Field(
        default_factory=lambda: ["openai", "grok", "gemini"],
        description="Ordered list of providers tried as fallbacks",
    )
    global_system_message: str = Field(
        default="You are a helpful AI assistant.",
        description="Base persona prepended to every request",
    )
    temperature: float = Field(default=0.6, ge=0.0, le=2.0, description="Sampling temperature")
    request_timeout: float = Field(
        default=60.0, ge=1.0, le=300.0, description="Per-attempt timeout in seconds"
    )
    max_retries: int = Field(
        default=2, ge=0, le=10, description="Retries of transient errors per provider"
    )
    base_delay: float = Field(default=1.0, ge=0.0, description="Initial backoff delay")
    max_delay: float = Field(default=30.0, ge=0.0, description="Maximum backoff delay")
    providers: dict[str, ProviderConfig] = Field(default_factory=_default_providers)

    @field_validator("default_provider")
    @classmethod
    def normalize_default(cls, v):
        if not v or not v.strip():
            raise ValueError("Default provider cannot be empty")
        return v.strip().lower()

    @field_validator("fallback_order")
    @classmethod
    def normalize_order(cls, v):
        seen: list[str] = []
        for name in v:
            name = name.strip().lower()
            if name and name not in seen:
                seen.append(name)
        return seen

    @field_validator("providers")
    @classmethod
    def normalize_provider_names(cls, v):
        return {name.strip().lower(): config for name, config in v.items()}


class ChatConfig(BaseModel):
    """Conversation budget and history optimization configuration."""

    optimization_trigger_fraction: float = Field(
        default=0.80,
        gt=0.0,
        le=1.0,
        description="Fraction of the provider context window that triggers optimization",
    )
    keep_recent_messages: int = Field(
        default=10, ge=1, description="Messages kept verbatim by the optimizer"
    )
    summary_token_limit: int = Field(
        default=400, ge=16, le=4000, description="Output limit for summarization calls"
    )
    consolidation_char_threshold: int = Field(
        default=2000, ge=100, description="Context length that triggers consolidation"
    )
    default_token_limit: int = Field(
        default=1200, ge=1, le=32000, description="Output limit for conversation turns"
    )
    message_fetch_count: int = Field(
        default=50, ge=1, description="Messages loaded from the durable tier on cache miss"
    )
    fast_cache_max_sessions: int = Field(
        default=1000, ge=1, description="Sessions kept in the in-memory tier"
    )
    failure_message: str = Field(
        default="I'm sorry, I encountered an error processing your message. Please try again.",
        description="Reply shown to users when every provider failed",
    )


class ConcurrencyConfig(BaseModel):
    """Per-scope locking and background work configuration."""

    lock_idle_seconds: float = Field(
        default=300.0, ge=1.0, description="Idle time before a scope lock is evicted"
    )
    cleanup_interval: float = Field(
        default=300.0, ge=1.0, description="Interval between idle lock sweeps"
    )
    optimizer_lock_timeout: float = Field(
        default=5.0, ge=0.0, le=60.0, description="How long the optimizer waits for a scope"
    )
    optimization_queue_size: int = Field(
        default=100, ge=1, le=10000, description="Pending optimization passes"
    )


class DatabaseConfig(BaseModel):
    """Database configuration."""

    url: str | None = Field(
        default=None, description="SQLAlchemy URL (defaults to SQLite in data_dir)"
    )
    encryption_enabled: bool = Field(
        default=True, description="Encrypt message content at rest"
    )
    echo: bool = Field(default=False, description="Log emitted SQL")


class AppSettings(BaseSettings):
    """Main application settings using environment variables."""

    # Application info
    app_name: str = Field(default="Chat Orchestrator", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: str = Field(
        default="development",
        description="Environment (development/staging/production)",
    )

    # API Keys
    openai_api_key: str | None = Field(default=None, description="OpenAI API key", repr=False)
    grok_api_key: str | None = Field(default=None, description="xAI Grok API key", repr=False)
    gemini_api_key: str | None = Field(default=None, description="Google Gemini API key", repr=False)

    # Security
    database_encryption_key: str | None = Field(
        default=None, description="Database encryption master key", repr=False
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    # Directories
    data_dir: str = Field(default="./data", description="Data directory")

    # Configuration sections
    llm: LLMConfig = Field(default_factory=LLMConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="forbid",
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        valid_environments = {"development", "staging", "production"}
        if v not in valid_environments:
            raise ValueError(f"Environment must be one of {valid_environments}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @model_validator(mode="after")
    def validate_routing(self):
        """Validate that routing refers to configured providers."""
        known = set(self.llm.providers)
        if self.llm.default_provider not in known:
            raise ValueError(
                f"Default provider '{self.llm.default_provider}' is not configured"
            )
        unknown = [name for name in self.llm.fallback_order if name not in known]
        if unknown:
            raise ValueError(f"Fallback order references unknown providers: {unknown}")
        return self

    @model_validator(mode="after")
    def validate_encryption_keys(self):
        """Validate encryption keys are present when encryption is enabled."""
        if (
            self.database.encryption_enabled
            and not self.database_encryption_key
            and self.environment == "production"
        ):
            raise ValueError(
                "Database encryption key is required when encryption is enabled in production"
            )

        return self

    def get_api_key(self, provider: str) -> str | None:
        """Get API key for a specific provider (section value wins over top-level key)."""
        provider = provider.lower()
        config = self.llm.providers.get(provider)
        if config and config.api_key:
            return config.api_key
        return {
            "openai": self.openai_api_key,
            "grok": self.grok_api_key,
            "gemini": self.gemini_api_key,
        }.get(provider)

    def has_api_key(self, provider: str) -> bool:
        """Check if API key is configured for provider."""
        return self.get_api_key(provider) is not None

    def get_data_path(self, filename: str) -> Path:
        """Get full path for a data file."""
        return Path(self.data_dir) / filename

    def get_database_url(self) -> str:
        """Get the async SQLAlchemy URL for the durable store."""
        if self.database.url:
            return self.database.url
        return f"sqlite+aiosqlite:///{self.get_data_path('conversations.db')}"


class ConfigurationManager:
    """Manages hierarchical configuration loading and validation."""

    def __init__(self):
        self._settings: AppSettings | None = None
        self._user_config: dict[str, Any] = {}

    def load_configuration(
        self,
        config_path: Path | None = None,
        override_env: dict[str, str] | None = None,
    ) -> AppSettings:
        """
        Load configuration with hierarchy: CLI/override > env vars > user config > defaults.

        Args:
            config_path: Path to user configuration file
            override_env: Environment variable overrides (simulating CLI args)

        Returns:
            Validated AppSettings instance
        """
        # Load user configuration from YAML file
        if config_path and config_path.exists():
            self._user_config = self._load_yaml_config(config_path)

        # Override environment if provided (for CLI args)
        if override_env:
            for key, value in override_env.items():
                os.environ[key] = value

        # Init kwargs outrank env vars in pydantic-settings, so YAML keys
        # that the environment also sets are dropped before construction
        init_kwargs = self._drop_env_overridden(copy.deepcopy(self._user_config))

        self._settings = AppSettings(**init_kwargs)

        self._validate_configuration()

        return self._settings

    def _load_yaml_config(self, config_path: Path) -> dict[str, Any]:
        """Load configuration from YAML file."""
        try:
            with open(config_path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
                return config or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML configuration: {e}") from e
        except FileNotFoundError:
            return {}
        except Exception as e:
            raise ValueError(f"Failed to load configuration: {e}") from e

    def _drop_env_overridden(self, config: dict[str, Any]) -> dict[str, Any]:
        """Remove YAML values for keys set through environment variables."""
        fields = set(AppSettings.model_fields)
        for env_key in os.environ:
            path = env_key.lower().split("__")
            if path[0] not in fields:
                continue
            node: Any = config
            for part in path[:-1]:
                node = node.get(part) if isinstance(node, dict) else None
                if node is None:
                    break
            if isinstance(node, dict):
                node.pop(path[-1], None)
        return config

    def _validate_configuration(self):
        """Perform additional configuration validation."""
        if not self._settings:
            raise ValueError("Configuration not loaded")

        self._ensure_directory(self._settings.data_dir)

        for name in self._settings.llm.providers:
            if not self._settings.has_api_key(name):
                logger.info(f"No API key configured for provider '{name}'")

    def _ensure_directory(self, dir_path: str):
        """Ensure directory exists, create if necessary."""
        path = Path(dir_path)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise ValueError(f"Cannot create directory {dir_path}: {e}") from e

    @property
    def settings(self) -> AppSettings:
        """Get current settings (load default if not loaded)."""
        if self._settings is None:
            self._settings = self.load_configuration()
        return self._settings

    def reset(self):
        """Reset the configuration manager (useful for testing)."""
        self._settings = None
        self._user_config = {}

    def update_setting(self, path: str, value: Any):
        """Update a specific setting using dot notation (e.g., 'chat.keep_recent_messages')."""
        if not self._settings:
            raise ValueError("Configuration not loaded")

        parts = path.split(".")
        obj = self._settings

        for part in parts[:-1]:
            obj = getattr(obj, part)

        setattr(obj, parts[-1], value)

    def export_config_template(self, output_path: Path):
        """Export a configuration template file."""
        template = {
            "environment": "development",
            "log_level": "INFO",
            "llm": {
                "default_provider": "openai",
                "fallback_enabled": True,
                "fallback_order": ["openai", "grok", "gemini"],
                "request_timeout": 60,
                "max_retries": 2,
            },
            "chat": {
                "optimization_trigger_fraction": 0.8,
                "keep_recent_messages": 10,
                "summary_token_limit": 400,
                "consolidation_char_threshold": 2000,
            },
            "concurrency": {
                "lock_idle_seconds": 300,
                "optimizer_lock_timeout": 5.0,
            },
            "database": {"encryption_enabled": True},
        }

        with open(output_path, "w", encoding="utf-8") as f:
            yaml.dump(template, f, default_flow_style=False, indent=2)


# Global configuration manager instance
config_manager = ConfigurationManager()


def get_settings() -> AppSettings:
    """Get the current application settings."""
    return config_manager.settings


def load_config(config_path: Path | None = None) -> AppSettings:
    """Load configuration from file and environment."""
    return config_manager.load_configuration(config_path)
