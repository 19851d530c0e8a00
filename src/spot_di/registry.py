from __future__ import annotations

import logging
import threading
from typing import TypeVar, overload

from .container import AsyncCreator, Creator, Initializer, ServiceContainer

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

_ROOT: ServiceContainer | None = None
_ROOT_LOCK = threading.Lock()


def root_container() -> ServiceContainer:
    """
    Return the process-wide root container, creating it if necessary.

    The root has no parent and lives for the whole process; `dispose_all()`
    empties it but never replaces it. Applications that prefer explicit wiring
    can construct their own `ServiceContainer` and ignore this module.
    """
    global _ROOT
    root = _ROOT
    if root is not None:
        return root

    with _ROOT_LOCK:
        if _ROOT is None:
            _ROOT = ServiceContainer()
            logger.debug("Created process-wide root service container")
        return _ROOT


def register_factory(
    service_type: object,
    creator: Creator,
    *,
    name: str | None = None,
    target_type: object | None = None,
) -> None:
    root_container().register_factory(
        service_type, creator, name=name, target_type=target_type
    )


def register_singleton(
    service_type: object,
    creator: Creator,
    *,
    name: str | None = None,
    target_type: object | None = None,
) -> None:
    root_container().register_singleton(
        service_type, creator, name=name, target_type=target_type
    )


def register_async_singleton(
    service_type: object,
    async_creator: AsyncCreator,
    *,
    name: str | None = None,
    target_type: object | None = None,
) -> None:
    root_container().register_async_singleton(
        service_type, async_creator, name=name, target_type=target_type
    )


def configure(initializer: Initializer) -> None:
    root_container().configure(initializer)


@overload
def spot(service_type: type[_T], name: str | None = None) -> _T:
    ...


@overload
def spot(service_type: object, name: str | None = None) -> object:
    ...


def spot(service_type: object, name: str | None = None) -> object:
    """Resolve from the root container."""
    return root_container().resolve(service_type, name)


@overload
async def spot_async(service_type: type[_T], name: str | None = None) -> _T:
    ...


@overload
async def spot_async(service_type: object, name: str | None = None) -> object:
    ...


async def spot_async(service_type: object, name: str | None = None) -> object:
    """Resolve from the root container, awaiting async singletons."""
    return await root_container().aresolve(service_type, name)


def is_registered(service_type: object, name: str | None = None) -> bool:
    return root_container().is_registered(service_type, name)


def is_empty() -> bool:
    return root_container().is_empty


def dispose(service_type: object, name: str | None = None) -> None:
    root_container().dispose(service_type, name)


def dispose_all() -> None:
    """Dispose every root registration; this is the only reset of the root."""
    root_container().dispose_all()


def create_scope() -> ServiceContainer:
    """Create a child scope that falls back to the root container."""
    return root_container().create_child()


def print_registry() -> None:
    root_container().print_registry()


__all__ = [
    "configure",
    "create_scope",
    "dispose",
    "dispose_all",
    "is_empty",
    "is_registered",
    "print_registry",
    "register_async_singleton",
    "register_factory",
    "register_singleton",
    "root_container",
    "spot",
    "spot_async",
]
