"""
AIWG Workspace Configuration.

Settings are layered (highest priority first):
- Explicit keyword arguments
- TOML file (`aiwg_workspace.toml`, or the path in AIWG_CONFIG_FILE)
- Environment variables (AIWG_ prefix, `__` for nested keys)

Components never read settings implicitly; callers pass values in.
"""
import os
from pathlib import Path
from typing import Callable, List, Tuple, Type

from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    EnvSettingsSource,
    InitSettingsSource,
    SecretsSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

CONFIG_ENV_VAR = "AIWG_CONFIG_FILE"
DEFAULT_CONFIG_NAME = "aiwg_workspace.toml"


def config_path() -> Path:
    """Location of the TOML settings file for this process."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override)
    return Path.cwd() / DEFAULT_CONFIG_NAME


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_to_file: bool = False
    log_file: str = "aiwg_workspace.log"
    rotation_size_mb: int = 10
    rotation_backup_count: int = 5
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class WorkspaceConfig(BaseModel):
    root: Path = Path(".aiwg")
    shared_dir: str = "shared"


class RegistryConfig(BaseModel):
    lock_retries: int = Field(default=3, ge=1)
    lock_retry_delay_ms: int = Field(default=100, ge=0)


class MigrationConfig(BaseModel):
    """
    Legacy layout migration settings.

    Payloads above `incremental_threshold_bytes` are moved in batches
    of `batch_size` directories.
    """

    default_framework_id: str = "sdlc-complete"
    default_project_id: str = "default-project"
    incremental_threshold_bytes: int = 1024 * 1024 * 1024
    batch_size: int = Field(default=50, ge=1)
    reference_patterns: List[str] = ["*.md", "*.markdown", "*.txt"]
    show_progress: bool = False


class CacheConfig(BaseModel):
    ttl_seconds: float = 300.0


class HealthConfig(BaseModel):
    disk_usage_warning_mb: int = 500
    max_workers: int = Field(default=4, ge=1)


class AppSettings(BaseSettings):
    """
    Main settings class that loads configuration from various sources.
    Uses defaults if the file or keys are missing.
    """

    logging: LoggingConfig = LoggingConfig()
    workspace: WorkspaceConfig = WorkspaceConfig()
    registry: RegistryConfig = RegistryConfig()
    migration: MigrationConfig = MigrationConfig()
    cache: CacheConfig = CacheConfig()
    health: HealthConfig = HealthConfig()

    model_config = SettingsConfigDict(
        extra="forbid",
        env_prefix="AIWG_",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: InitSettingsSource,
        env_settings: EnvSettingsSource,
        dotenv_settings: DotEnvSettingsSource,
        file_secret_settings: SecretsSettingsSource,
    ) -> Tuple[Callable, ...]:
        """
        Define the priority order for loading settings sources.
        The TOML file is inserted with high priority.
        """
        return (
            init_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=config_path()),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )


def load_settings(**overrides) -> AppSettings:
    """Build a fresh settings object from all configured sources."""
    return AppSettings(**overrides)
