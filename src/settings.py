"""Application configuration loaded from a sectioned TOML file.

Lookup order for the config path: explicit argument, SKETCHMAP_CONFIG
environment variable, configs/sketchmap.toml. A missing file means
defaults for every section.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import tomlkit
from pydantic import BaseModel, Field, model_validator

from shared.constants import (
    CLEANUP_BATCH_SIZE,
    CLEANUP_INTERVAL_S,
    CLEANUP_RETENTION_DAYS,
    CLEANUP_SAFETY_LIMIT,
    CLEANUP_STALE_LOCK_MINUTES,
    CONFIG_ENV_VAR,
    CONFIG_PATH_DEFAULT,
    DOWNLOAD_CONCURRENCY,
    HTTP_BACKOFF_FACTOR,
    HTTP_BACKOFF_INITIAL_S,
    HTTP_RETRIES_DEFAULT,
    HTTP_TIMEOUT_DEFAULT,
    MAX_TILE_BYTES,
    SAVE_DEBOUNCE_S,
    SERVER_HOST_DEFAULT,
    SERVER_PORT_DEFAULT,
    TILE_CACHE_MAX_ENTRIES,
    TILE_QUALITY_FLOOR,
    TILE_QUALITY_INITIAL,
    TILE_QUALITY_STEP,
    Environment,
)
from storage.blobs import FileSystemBlobStore
from storage.database import Database

if TYPE_CHECKING:
    from storage.blobs import BlobStore

logger = logging.getLogger(__name__)


class ServerConfig(BaseModel):
    environment: Environment = Environment.DEVELOPMENT
    host: str = SERVER_HOST_DEFAULT
    port: int = Field(default=SERVER_PORT_DEFAULT, ge=1, le=65535)


class StorageConfig(BaseModel):
    database_path: str = 'data/sketchmap.db'
    blob_root: str = 'data/blobs'


class CleanupConfig(BaseModel):
    enabled: bool = True
    retention_days: int = Field(default=CLEANUP_RETENTION_DAYS, ge=1)
    batch_size: int = Field(default=CLEANUP_BATCH_SIZE, ge=1)
    safety_limit: int = Field(default=CLEANUP_SAFETY_LIMIT, ge=1)
    stale_lock_minutes: int = Field(default=CLEANUP_STALE_LOCK_MINUTES, ge=1)
    interval_s: float = Field(default=CLEANUP_INTERVAL_S, gt=0)
    run_on_start: bool = False


class EncoderConfig(BaseModel):
    initial_quality: float = Field(default=TILE_QUALITY_INITIAL, gt=0, le=1)
    quality_step: float = Field(default=TILE_QUALITY_STEP, gt=0, le=1)
    quality_floor: float = Field(default=TILE_QUALITY_FLOOR, gt=0, le=1)
    max_bytes: int = Field(default=MAX_TILE_BYTES, gt=0)
    strict: bool = False

    @model_validator(mode='after')
    def _floor_below_initial(self) -> EncoderConfig:
        if self.quality_floor > self.initial_quality:
            msg = 'quality_floor не может превышать initial_quality'
            raise ValueError(msg)
        return self


class ClientConfig(BaseModel):
    base_url: str = f'http://{SERVER_HOST_DEFAULT}:{SERVER_PORT_DEFAULT}'
    timeout_s: float = Field(default=HTTP_TIMEOUT_DEFAULT, gt=0)
    cache_size: int = Field(default=TILE_CACHE_MAX_ENTRIES, ge=1)
    debounce_s: float = Field(default=SAVE_DEBOUNCE_S, ge=0)
    download_concurrency: int = Field(default=DOWNLOAD_CONCURRENCY, ge=1)
    retry_attempts: int = Field(default=HTTP_RETRIES_DEFAULT, ge=1)
    retry_backoff_s: float = Field(default=HTTP_BACKOFF_INITIAL_S, ge=0)
    retry_factor: float = Field(default=HTTP_BACKOFF_FACTOR, ge=1)


class AppConfig(BaseModel):
    """Validated configuration, one model per TOML section."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)

    @property
    def is_production(self) -> bool:
        return self.server.environment == Environment.PRODUCTION


def resolve_config_path(path: str | Path | None = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    return Path(CONFIG_PATH_DEFAULT)


def load_config(path: str | Path | None = None) -> AppConfig:
    """
    Load and validate the TOML config.

    Raises:
        pydantic.ValidationError: Invalid values in the file.
        tomlkit.exceptions.ParseError: Malformed TOML.
    """
    config_path = resolve_config_path(path)
    if not config_path.exists():
        logger.info('Config %s not found, using defaults', config_path)
        return AppConfig()
    text = config_path.read_text(encoding='utf-8')
    data = tomlkit.parse(text).unwrap()
    config = AppConfig.model_validate(data)
    logger.info(
        'Config loaded from %s (environment=%s)',
        config_path,
        config.server.environment.value,
    )
    return config


def save_config(config: AppConfig, path: str | Path) -> Path:
    """Write config as sectioned TOML."""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    text = tomlkit.dumps(config.model_dump(mode='json'))
    out.write_text(text, encoding='utf-8')
    return out


@dataclass
class ServiceEnv:
    """Everything a service needs: metadata DB, blob store and config."""

    db: Database
    blobs: BlobStore
    config: AppConfig

    @classmethod
    def from_config(cls, config: AppConfig) -> ServiceEnv:
        return cls(
            db=Database(config.storage.database_path),
            blobs=FileSystemBlobStore(config.storage.blob_root),
            config=config,
        )

    def close(self) -> None:
        self.db.close()
