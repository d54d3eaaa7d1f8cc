"""
Configuration models for the operator console.

Uses Pydantic for validation and type safety. Every field has a default, so
the console runs without a config file; YAML values are overridden by
PERP_CONSOLE_* environment variables (nested with "__").
"""
from typing import Annotated, List, Literal, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
import yaml
from pathlib import Path
import os
import re

from perpconsole import constants

ENV_PREFIX = "PERP_CONSOLE_"
DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def split_csv(v):
    """Accept "a,b,c" from the environment as well as a list from YAML."""
    if isinstance(v, str):
        return [s.strip() for s in v.split(",") if s.strip()]
    return v


class GatewayConfig(BaseSettings):
    """Outbound call budget and retry policy."""
    model_config = SettingsConfigDict(extra="ignore", env_prefix=f"{ENV_PREFIX}GATEWAY__")

    concurrency_limit: int = Field(default=constants.DEFAULT_CONCURRENCY_LIMIT, ge=1, le=64)
    retry_attempts: int = Field(default=constants.DEFAULT_RETRY_ATTEMPTS, ge=1, le=50)
    retry_base_delay_ms: int = Field(default=constants.DEFAULT_RETRY_BASE_DELAY_MS, ge=0)
    retry_max_delay_ms: int = Field(default=constants.DEFAULT_RETRY_MAX_DELAY_MS, ge=0)
    probe_before_retry: bool = Field(default=True, description="Issue one readiness probe before each backoff sleep")
    probe_timeout_seconds: float = Field(default=constants.DEFAULT_PROBE_TIMEOUT_SECONDS, gt=0)
    health_timeout_seconds: float = Field(default=constants.DEFAULT_HEALTH_TIMEOUT_SECONDS, gt=0)
    health_interval_seconds: float = Field(default=constants.DEFAULT_HEALTH_INTERVAL_SECONDS, gt=0)

    @model_validator(mode="after")
    def _cap_not_below_base(self) -> "GatewayConfig":
        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            raise ValueError("retry_max_delay_ms must be >= retry_base_delay_ms")
        return self


class PauseConfig(BaseSettings):
    """Post-trade pauses so the operator can read the outcome."""
    model_config = SettingsConfigDict(extra="ignore", env_prefix=f"{ENV_PREFIX}PAUSES__")

    success_pause_ms: int = Field(default=constants.DEFAULT_SUCCESS_PAUSE_MS, ge=0)
    error_pause_ms: int = Field(default=constants.DEFAULT_ERROR_PAUSE_MS, ge=0)


class RemoteConfig(BaseSettings):
    """Remote contract system endpoint."""
    model_config = SettingsConfigDict(extra="ignore", env_prefix=f"{ENV_PREFIX}REMOTE__")

    rpc_url: str = "http://127.0.0.1:8545"
    request_timeout_seconds: float = Field(default=15.0, gt=0)
    method_prefix: str = "perp_"
    default_market_id: Optional[str] = None


class ActorsConfig(BaseSettings):
    """Account identities. Index 0 is the deployer, U<n> is users[n-1]."""
    model_config = SettingsConfigDict(extra="ignore", env_prefix=f"{ENV_PREFIX}ACTORS__")

    deployer: Optional[str] = None
    users: Annotated[List[str], NoDecode] = Field(default_factory=list)
    default_actor: Optional[str] = Field(default=None, description="Selector used when a command omits one, e.g. 'U1'")

    @field_validator("users", mode="before")
    @classmethod
    def _split_csv(cls, v):
        return split_csv(v)


class DiagnosticsConfig(BaseSettings):
    """Read-only event tracing attached during batch runs."""
    model_config = SettingsConfigDict(extra="ignore", env_prefix=f"{ENV_PREFIX}DIAGNOSTICS__")

    enabled: bool = True
    events: Annotated[List[str], NoDecode] = Field(default_factory=lambda: list(constants.DEFAULT_DIAGNOSTIC_EVENTS))
    poll_interval_seconds: float = Field(default=constants.DEFAULT_DIAGNOSTIC_POLL_SECONDS, gt=0)

    @field_validator("events", mode="before")
    @classmethod
    def _split_csv(cls, v):
        return split_csv(v)


class ReconciliationConfig(BaseSettings):
    """Cross-source validation thresholds."""
    model_config = SettingsConfigDict(extra="ignore", env_prefix=f"{ENV_PREFIX}RECONCILIATION__")

    unrealized_tolerance_bps: int = Field(
        default=constants.DEFAULT_UNREALIZED_TOLERANCE_BPS, ge=0, le=10_000,
        description="Allowed drift between live and summary unrealized PnL before flagging",
    )


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore", env_prefix=f"{ENV_PREFIX}MONITORING__")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "text"
    log_file: Optional[str] = None


class ConsoleConfig(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        extra="ignore",
    )

    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    pauses: PauseConfig = Field(default_factory=PauseConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    actors: ActorsConfig = Field(default_factory=ActorsConfig)
    diagnostics: DiagnosticsConfig = Field(default_factory=DiagnosticsConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment wins over values passed in from YAML
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "ConsoleConfig":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")
        
        with open(yaml_path, "r") as f:
            raw_content = f.read()
        
        # Regex to find ${VAR} or $VAR
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')
        
        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Return original if not found
        
        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}
        if not isinstance(config_dict, dict):
            raise ValueError(f"Configuration file must contain a mapping: {yaml_path}")
        
        return cls(**config_dict)


def load_config(config_path: str | Path | None = None) -> ConsoleConfig:
    """
    Load and validate configuration.
    
    Args:
        config_path: Path to a YAML file. If None, uses perpconsole/config/config.yaml
            when present and plain defaults otherwise.
    
    Returns:
        Validated ConsoleConfig object
    
    Raises:
        FileNotFoundError: If an explicit config file is missing
        pydantic.ValidationError: If configuration validation fails
    """
    if config_path is None:
        if DEFAULT_CONFIG_PATH.exists():
            return ConsoleConfig.from_yaml(DEFAULT_CONFIG_PATH)
        return ConsoleConfig()
    
    return ConsoleConfig.from_yaml(config_path)
