"""Simple dependency injection container with provider registry support."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

from submitflow.domain.models.unit import ExecutionUnit

T = TypeVar("T")


@dataclass
class ProviderRegistry(Generic[T]):
    """Maps provider keys (e.g., store backends) to lazily constructed instances."""

    factory_map: Dict[str, Callable[[], T]] = field(default_factory=dict)
    _cache: Dict[str, T] = field(default_factory=dict, init=False, repr=False)

    def register(self, key: str, factory: Callable[[], T]) -> None:
        if key in self.factory_map:
            raise ValueError(f"Provider '{key}' already registered")
        self.factory_map[key] = factory
        self._cache.pop(key, None)

    def resolve(self, key: str) -> T:
        if key in self._cache:
            return self._cache[key]
        try:
            factory = self.factory_map[key]
        except KeyError as exc:
            raise KeyError(f"Provider '{key}' not found") from exc
        instance = factory()
        self._cache[key] = instance
        return instance

    def __contains__(self, key: object) -> bool:
        return key in self.factory_map


@dataclass
class UnitRegistry:
    """Rebuilds execution units from (kind, payload) on the worker side of the broker."""

    builders: Dict[str, Callable[[Dict[str, Any]], ExecutionUnit]] = field(default_factory=dict)

    def register(self, kind: str, builder: Callable[[Dict[str, Any]], ExecutionUnit]) -> None:
        if kind in self.builders:
            raise ValueError(f"Unit kind '{kind}' already registered")
        self.builders[kind] = builder

    def build(self, kind: str, payload: Dict[str, Any]) -> ExecutionUnit:
        try:
            builder = self.builders[kind]
        except KeyError as exc:
            raise KeyError(f"Unit kind '{kind}' not registered") from exc
        return builder(payload)


@dataclass
class Container:
    """Minimal DI container orchestrating provider registries."""

    stores: ProviderRegistry[Any] = field(default_factory=ProviderRegistry)
    schedulers: ProviderRegistry[Any] = field(default_factory=ProviderRegistry)
    hashers: ProviderRegistry[Any] = field(default_factory=ProviderRegistry)
    units: UnitRegistry = field(default_factory=UnitRegistry)

    def resolve_store(self, key: Optional[str] = None) -> Any:
        target = key if key is not None else self._default("ASYNC_REQUEST_STORE", "database")
        return self.stores.resolve(target)

    def resolve_scheduler(self, key: Optional[str] = None) -> Any:
        target = key or self._default("ASYNC_RETRY_SCHEDULER", "celery")
        return self.schedulers.resolve(target)

    def resolve_hasher(self, key: Optional[str] = None) -> Any:
        target = key or self._default("IDENTITY_HASHER", "hmac")
        return self.hashers.resolve(target)

    def _default(self, attr: str, fallback: str) -> str:
        try:
            from django.conf import settings
            from django.core.exceptions import ImproperlyConfigured
        except Exception:  # pragma: no cover - settings not ready
            return fallback
        try:
            return getattr(settings, attr, fallback)
        except ImproperlyConfigured:
            return fallback
