from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Protocol, cast

from fastapi import FastAPI
from fastapi.params import Depends
from starlette.requests import HTTPConnection

from .container import ServiceContainer
from .key import ServiceKey
from .registry import root_container

logger = logging.getLogger(__name__)

EagerService = object | tuple[object, str | None] | ServiceKey


class _CallableWithSignature(Protocol):
    __signature__: inspect.Signature


@dataclass(frozen=True)
class DISettings:
    eager_services: tuple[ServiceKey, ...] = ()
    eager_init_timeout_sec: float | None = None
    dispose_on_shutdown: bool = True
    state_attr: str = "spot_container"


def _normalize_eager_services(services: Sequence[EagerService]) -> tuple[ServiceKey, ...]:
    normalized: list[ServiceKey] = []
    for item in services:
        if isinstance(item, ServiceKey):
            normalized.append(item)
        elif isinstance(item, tuple):
            if len(item) != 2:
                raise ValueError(
                    f"Eager service {item!r} must be a (type, name) pair."
                )
            service_type, name = item
            normalized.append(ServiceKey(service_type, name))
        else:
            normalized.append(ServiceKey(item))
    return tuple(normalized)


def resolve_container(app_state: object, state_attr: str = "spot_container") -> ServiceContainer | None:
    """
    Return the container installed on a FastAPI app state, if any.
    """
    if app_state is None:
        return None
    container = getattr(app_state, state_attr, None)
    if isinstance(container, ServiceContainer):
        return container
    return None


def install_spot(
    app: FastAPI,
    *,
    container: ServiceContainer | None = None,
    eager_services: Sequence[EagerService] = (),
    eager_init_timeout_sec: float | None = None,
    dispose_on_shutdown: bool = True,
    state_attr: str = "spot_container",
) -> DISettings:
    """
    Install a service container into a FastAPI app's lifespan.

    On startup the container (default: the process-wide root) is published on
    `app.state` and every key in `eager_services` is resolved asynchronously,
    bounded by `eager_init_timeout_sec` when given. On shutdown the container's
    registrations are disposed unless `dispose_on_shutdown` is False.
    """
    if eager_init_timeout_sec is not None and eager_init_timeout_sec <= 0:
        raise ValueError("eager_init_timeout_sec must be > 0 when provided.")
    if isinstance(getattr(app.state, "spot_settings", None), DISettings):
        raise RuntimeError("install_spot() has already been called for this FastAPI app.")

    settings = DISettings(
        eager_services=_normalize_eager_services(eager_services),
        eager_init_timeout_sec=eager_init_timeout_sec,
        dispose_on_shutdown=dispose_on_shutdown,
        state_attr=state_attr,
    )
    previous_lifespan = app.router.lifespan_context

    @asynccontextmanager
    async def _combined_lifespan(inner_app: FastAPI) -> AsyncIterator[None]:
        services = container if container is not None else root_container()
        setattr(inner_app.state, settings.state_attr, services)
        try:
            for key in settings.eager_services:
                resolution = services.aresolve(key.service_type, key.name)
                if settings.eager_init_timeout_sec is not None:
                    await asyncio.wait_for(
                        resolution,
                        timeout=settings.eager_init_timeout_sec,
                    )
                else:
                    await resolution
                logger.debug("[LIFESPAN] Eagerly resolved %s", key)

            async with previous_lifespan(inner_app):
                yield
        finally:
            if settings.dispose_on_shutdown:
                await services.adispose_all()
            setattr(inner_app.state, settings.state_attr, None)

    app.router.lifespan_context = _combined_lifespan
    app.state.spot_settings = settings
    setattr(app.state, settings.state_attr, None)
    return settings


def Inject(
        service_type: object,
        name: str | None = None,
) -> Depends:
    """
    Create a FastAPI dependency marker for a registered service.

    In endpoints you can write:

        @router.get("/items")
        async def endpoint(db: Database = Inject(Database)):
            ...

    Resolution goes through `aresolve()`, so async singletons are supported.
    """
    params = [
        inspect.Parameter(
            "request",
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
            annotation=HTTPConnection,
        )
    ]
    sig = inspect.Signature(params)

    async def _dependency_callable(request: HTTPConnection) -> object:
        app_state = getattr(request.app, "state", None)
        settings = getattr(app_state, "spot_settings", None)
        state_attr = settings.state_attr if isinstance(settings, DISettings) else "spot_container"
        services = resolve_container(app_state, state_attr)
        if services is None:
            msg = "Service container not installed on FastAPI app state; call install_spot()."
            logger.error(msg)
            raise RuntimeError(msg)
        return await services.aresolve(service_type, name)

    key_label = str(ServiceKey(service_type, name))
    safe_suffix = "".join(ch if ch.isalnum() else "_" for ch in key_label).strip("_") or "service"
    _dependency_callable.__name__ = f"inject_{safe_suffix}"
    _dependency_callable.__qualname__ = _dependency_callable.__name__
    dependency_callable_with_signature = cast(
        _CallableWithSignature, _dependency_callable
    )
    dependency_callable_with_signature.__signature__ = sig

    return Depends(_dependency_callable)


__all__ = ["DISettings", "Inject", "install_spot", "resolve_container"]
