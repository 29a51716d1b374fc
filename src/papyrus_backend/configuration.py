from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

# Load environment variables from .env file before any ${oc.env:...} is resolved
load_dotenv()

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).resolve().parent / "default_config.yaml"


class ConfigurationError(ValueError):
    pass


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():  # pragma: no cover - broken installation
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def load_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the runtime configuration.

    Defaults come from ``default_config.yaml`` (environment variables are read
    through ``oc.env``); ``overrides`` is merged on top. Struct mode is kept on
    so a typo in an override key fails loudly instead of being ignored.
    """
    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    OmegaConf.set_struct(base, True)

    merged = DictConfig(OmegaConf.merge(base, OmegaConf.create(overrides or {})))
    OmegaConf.resolve(merged)
    validate_config(merged)
    return merged


def validate_config(config: DictConfig) -> None:
    errors: List[str] = []

    if float(config.rate_limit.window_seconds) <= 0:
        errors.append("rate_limit.window_seconds must be > 0")
    if int(config.rate_limit.default) < 1:
        errors.append("rate_limit.default must be >= 1")
    if int(config.pool.max_resources) < 1:
        errors.append("pool.max_resources must be >= 1")
    if int(config.queue.retry.max_attempts) < 1:
        errors.append("queue.retry.max_attempts must be >= 1")
    if config.backend not in ("sqlite", "redis"):
        errors.append(f"backend must be 'sqlite' or 'redis', got '{config.backend}'")
    if config.storage.backend not in ("s3", "local"):
        errors.append(f"storage.backend must be 's3' or 'local', got '{config.storage.backend}'")
    if config.storage.backend == "s3" and not config.storage.bucket:
        errors.append("storage.bucket (S3_BUCKET_NAME) is required for the s3 storage backend")

    if float(config.render.timeout) < 5:
        logger.warning("render.timeout is very low; at least 5 seconds is recommended")
    if config.server.env == "production":
        if "*" in list(config.server.cors_origins):
            logger.warning("CORS is open (*) in production")
        if not config.admin.master_key:
            logger.warning("PAPYRUS_MASTER_KEY is not set; admin endpoints are disabled")

    if errors:
        raise ConfigurationError(f"Invalid configuration: {', '.join(errors)}")
