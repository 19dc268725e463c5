"""Application bootstrap utilities: dependency container and lazily built core services."""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional

from submitflow.application.config import AsyncExecutionConfig
from submitflow.application.dispatcher import Dispatcher
from submitflow.application.retry import RetryWorker
from submitflow.infrastructure.identity import hasher
from submitflow.infrastructure.repositories import db, dynamodb, memory
from submitflow.infrastructure.schedulers import celery as celery_scheduler
from submitflow.infrastructure.schedulers import local as local_scheduler
from submitflow.infrastructure.upstream import http_unit
from submitflow.interfaces.providers.registry import Container

logger = logging.getLogger(__name__)

container = Container()
container.stores.register("database", db.from_env)
container.stores.register("dynamodb", dynamodb.from_env)
container.stores.register("memory", memory.from_env)
container.schedulers.register("celery", celery_scheduler.from_env)
container.schedulers.register("local", local_scheduler.from_settings)
container.hashers.register("hmac", hasher.from_env)
container.units.register("http", http_unit.from_payload)

_lock = threading.RLock()
_dispatcher: Optional[Dispatcher] = None
_worker: Optional[RetryWorker] = None


def _settings() -> Any:
    from django.conf import settings

    return settings


def _resolve_store_key() -> Optional[str]:
    settings = _settings()
    backend = (getattr(settings, "ASYNC_REQUEST_STORE", "database") or "").strip().lower()
    if not backend:
        return None
    if backend == "dynamodb" and not getattr(settings, "ASYNC_REQUESTS_TABLE_NAME", ""):
        logger.warning("ASYNC_REQUESTS_TABLE_NAME not set; running without a request store")
        return None
    return backend


def get_hasher():
    instance = container.resolve_hasher()
    instance.initialize()
    return instance


def get_worker() -> Optional[RetryWorker]:
    """The retry worker, or None when running without a request store."""
    global _worker
    with _lock:
        if _worker is not None:
            return _worker
        store_key = _resolve_store_key()
        if store_key is None:
            return None
        scheduler = container.resolve_scheduler()
        _worker = RetryWorker(
            store=container.resolve_store(store_key),
            scheduler=scheduler,
            config=AsyncExecutionConfig.from_settings(_settings()),
        )
        if hasattr(scheduler, "attach"):
            scheduler.attach(_worker)
        return _worker


def get_dispatcher() -> Dispatcher:
    global _dispatcher
    with _lock:
        if _dispatcher is None:
            worker = get_worker()
            _dispatcher = Dispatcher(
                store=worker.store if worker else None,
                hasher=get_hasher(),
                config=AsyncExecutionConfig.from_settings(_settings()),
                worker=worker,
            )
            logger.info(
                "Dispatcher ready",
                extra={"persistent": _dispatcher.persistent},
            )
        return _dispatcher


def install(dispatcher: Optional[Dispatcher]) -> None:
    """Replace the process-wide Dispatcher (and its worker); None clears both."""
    global _dispatcher, _worker
    with _lock:
        _dispatcher = dispatcher
        _worker = dispatcher.worker if dispatcher is not None else None
