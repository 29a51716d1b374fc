"""
Wiring of the shared stores from a configuration object.

The API process and every worker process call ``build_services`` once at
start-up. All SQLite-backed components share the file at ``database.path``;
with ``backend: redis`` the quota counters and idempotency tokens move to
Redis so several API instances enforce the same limits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from omegaconf import DictConfig
from redis import Redis

from .admission import AdmissionController, RedisQuotaCounter, SQLiteQuotaCounter
from .configuration import load_config
from .database import JobStatusStore
from .idempotency import IdempotencyCache, RedisTokenBackend, SQLiteTokenBackend
from .job_queue import PipelineQueue, RetryPolicy
from .key_manager import KeyManager
from .storage import LocalObjectStore, S3ObjectStore

logger = logging.getLogger(__name__)

ObjectStoreImpl = Union[S3ObjectStore, LocalObjectStore]


@dataclass
class Services:
    config: DictConfig
    store: JobStatusStore
    queue: PipelineQueue
    keys: KeyManager
    admission: AdmissionController
    idempotency: IdempotencyCache
    objects: ObjectStoreImpl
    retry_policy: RetryPolicy
    counter: Union[SQLiteQuotaCounter, RedisQuotaCounter]
    tokens: Union[SQLiteTokenBackend, RedisTokenBackend]
    redis: Optional[Redis] = None

    def close(self) -> None:
        if self.redis is not None:
            self.redis.close()


def build_object_store(config: DictConfig) -> ObjectStoreImpl:
    storage = config.storage
    if storage.backend == "s3":
        logger.info(f"Using S3 object storage (bucket {storage.bucket})")
        return S3ObjectStore(
            bucket=storage.bucket,
            endpoint_url=storage.endpoint_url or None,
            region=storage.region or None,
            prefixes=int(storage.prefixes),
        )
    logger.info(f"Using local object storage under {storage.local_root}")
    return LocalObjectStore(Path(storage.local_root), prefixes=int(storage.prefixes))


def build_services(config: Optional[DictConfig] = None) -> Services:
    config = config if config is not None else load_config()
    db_path = Path(config.database.path)

    redis_client: Optional[Redis] = None
    if config.backend == "redis":
        redis_client = Redis.from_url(config.redis.url, max_connections=int(config.redis.max_connections))
        counter = RedisQuotaCounter(redis_client)
        tokens = RedisTokenBackend(redis_client)
        logger.info("Quota counters and idempotency tokens on Redis")
    else:
        counter = SQLiteQuotaCounter(db_path)
        tokens = SQLiteTokenBackend(db_path)

    admission = AdmissionController(
        counter,
        default_limit=int(config.rate_limit.default),
        window_seconds=float(config.rate_limit.window_seconds),
        exempt_routes=list(config.rate_limit.exempt_routes),
        exempt_methods=list(config.rate_limit.exempt_methods),
    )

    return Services(
        config=config,
        store=JobStatusStore(db_path),
        queue=PipelineQueue(db_path),
        keys=KeyManager(db_path),
        admission=admission,
        idempotency=IdempotencyCache(tokens, ttl_seconds=float(config.idempotency.ttl_seconds)),
        objects=build_object_store(config),
        retry_policy=RetryPolicy.from_config(config.queue.retry),
        counter=counter,
        tokens=tokens,
        redis=redis_client,
    )
