"""Configuration management for the chat completion core.

This module provides Pydantic-based settings classes for the streaming
client, the session store, default completion parameters and logging,
with support for environment variables, ``.env`` files and YAML config files.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError
from .models import ChatCompletionConfig


class LLMSettings(BaseSettings):
    """Configuration for the streaming client.

    Attributes:
        backend: Client implementation ("openai" or "langchain")
        api_key: API key for the provider (loaded from environment)
        base_url: Optional override of the provider endpoint
        request_timeout: HTTP timeout for the streaming request in seconds
    """

    model_config = SettingsConfigDict(
        env_prefix="CHATSTREAM_LLM_",
        extra="ignore"
    )

    backend: str = Field(default="openai", description="Streaming client backend")
    api_key: Optional[str] = Field(default=None, description="API key")
    base_url: Optional[str] = Field(default=None, description="Provider base URL")
    request_timeout: float = Field(default=60.0, gt=0, description="Request timeout")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate that the backend is supported."""
        supported = ["openai", "langchain"]
        if v.lower() not in supported:
            raise ValueError(f"Backend must be one of: {supported}")
        return v.lower()


class StoreSettings(BaseSettings):
    """Configuration for session persistence.

    Attributes:
        backend: Store implementation ("memory" or "file")
        storage_dir: Directory for JSON session files (file backend only)
    """

    model_config = SettingsConfigDict(
        env_prefix="CHATSTREAM_STORE_",
        extra="ignore"
    )

    backend: str = Field(default="file", description="Session store backend")
    storage_dir: str = Field(default="data/chats", description="Session storage directory")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate that the backend is supported."""
        supported = ["memory", "file"]
        if v.lower() not in supported:
            raise ValueError(f"Backend must be one of: {supported}")
        return v.lower()


class CompletionDefaults(BaseSettings):
    """Default parameters for newly created conversations."""

    model_config = SettingsConfigDict(
        env_prefix="CHATSTREAM_DEFAULTS_",
        extra="ignore",
        protected_namespaces=()
    )

    model: str = Field(default="gpt-4o-mini", description="Model name")
    model_max_tokens: int = Field(default=128000, gt=0, description="Model context capacity")
    temperature: float = Field(default=0.1, description="Sampling temperature")
    top_p: float = Field(default=1.0, description="Nucleus sampling")
    n: int = Field(default=1, description="Number of choices")
    stop: List[str] = Field(default_factory=list, description="Stop sequences")
    max_tokens: int = Field(default=1024, description="Tokens reserved for the answer")
    presence_penalty: float = Field(default=0.0, description="Presence penalty")
    frequency_penalty: float = Field(default=0.0, description="Frequency penalty")
    initial_system_message: str = Field(
        default="You are a helpful assistant.",
        description="System message seeding every new conversation"
    )

    def to_config(self) -> ChatCompletionConfig:
        """Build the per-request config from these defaults."""
        return ChatCompletionConfig(
            model=self.model,
            model_max_tokens=self.model_max_tokens,
            temperature=self.temperature,
            top_p=self.top_p,
            n=self.n,
            stop=list(self.stop),
            max_tokens=self.max_tokens,
            presence_penalty=self.presence_penalty,
            frequency_penalty=self.frequency_penalty,
            initial_system_message=self.initial_system_message,
        )


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="CHATSTREAM_LOGGING_",
        extra="ignore"
    )

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format"
    )
    file_path: Optional[str] = Field(default=None, description="Log file path")
    max_file_size: int = Field(default=10485760, description="Max log file size (10MB)")
    backup_count: int = Field(default=5, description="Number of backup log files")
    use_json: bool = Field(default=False, description="JSON formatting for file output")


class ChatSettings(BaseSettings):
    """Main configuration for the chat completion core.

    Attributes:
        environment: Deployment environment name
        openai_api_key: OpenAI API key
        llm: Streaming client configuration
        store: Session store configuration
        defaults: Default completion parameters
        logging: Logging configuration
        timeout_seconds: Per-call timeout for ``execute`` (None disables it)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    environment: str = Field(default="development", description="Environment name")

    # API Keys (from environment)
    openai_api_key: Optional[str] = Field(
        default=None,
        description="OpenAI API key"
    )

    # Component configurations
    llm: LLMSettings = Field(default_factory=LLMSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    defaults: CompletionDefaults = Field(default_factory=CompletionDefaults)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Per-call timeout in seconds"
    )

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() in ("development", "dev", "local")

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment.lower() in ("production", "prod")

    def get_api_key(self) -> str:
        """Get the provider API key, raising error if not configured.

        Raises:
            ConfigurationError: If API key is not configured
        """
        if self.llm.api_key:
            return self.llm.api_key

        if self.openai_api_key:
            return self.openai_api_key

        env_key = os.environ.get("OPENAI_API_KEY")
        if env_key:
            return env_key

        raise ConfigurationError(
            "OpenAI API key is required but not configured",
            missing_keys=["OPENAI_API_KEY"]
        )


# Global settings instance (lazy loaded)
_settings: Optional[ChatSettings] = None


def get_settings() -> ChatSettings:
    """Get the settings instance."""
    global _settings
    if _settings is None:
        _settings = ChatSettings()
    return _settings


def load_config_from_yaml(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file

    Returns:
        Dictionary containing configuration values

    Raises:
        ConfigurationError: If file cannot be loaded or parsed
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {config_path}",
            error_code="CONFIG_FILE_NOT_FOUND",
            details={"path": str(path.absolute())}
        )

    try:
        with open(path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)
            return config if config else {}
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Failed to parse YAML configuration: {e}",
            error_code="CONFIG_PARSE_ERROR",
            details={"path": str(path.absolute()), "error": str(e)}
        )
    except IOError as e:
        raise ConfigurationError(
            f"Failed to read configuration file: {e}",
            error_code="CONFIG_READ_ERROR",
            details={"path": str(path.absolute()), "error": str(e)}
        )


def create_settings_from_yaml(config_path: Optional[str] = None) -> ChatSettings:
    """Create ChatSettings from a YAML configuration file.

    Sections ``llm``, ``store``, ``defaults`` and ``logging`` map onto the
    nested settings classes; a missing file yields environment defaults.

    Args:
        config_path: Path to YAML config file. If None, uses default path.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    if config_path is None:
        config_path = "config/chatstream.yaml"

    yaml_config: Dict[str, Any] = {}
    if Path(config_path).exists():
        yaml_config = load_config_from_yaml(config_path)

    try:
        settings_kwargs: Dict[str, Any] = {
            "llm": LLMSettings(**yaml_config.get("llm", {})),
            "store": StoreSettings(**yaml_config.get("store", {})),
            "defaults": CompletionDefaults(**yaml_config.get("defaults", {})),
            "logging": LoggingSettings(**yaml_config.get("logging", {})),
        }

        for key in ["environment", "timeout_seconds", "openai_api_key"]:
            if key in yaml_config:
                settings_kwargs[key] = yaml_config[key]

        return ChatSettings(**settings_kwargs)
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid configuration in {config_path}: {e}",
            error_code="CONFIG_INVALID",
            details={"path": config_path, "error": str(e)}
        ) from e
