from .base import AsyncDisposable, Disposable
from .container import (
    AsyncCreator,
    Creator,
    Resolver,
    ServiceContainer,
    ServiceLifetime,
)
from .errors import (
    CircularDependencyError,
    DuplicateRegistrationError,
    NotRegisteredError,
    NullResolutionError,
    ReentrantInitializationError,
    ResolutionFailedError,
    SpotError,
    SynchronousResolutionError,
)
from .install import DISettings, Inject, install_spot, resolve_container
from .key import ServiceKey
from .registry import (
    configure,
    create_scope,
    dispose,
    dispose_all,
    is_empty,
    is_registered,
    print_registry,
    register_async_singleton,
    register_factory,
    register_singleton,
    root_container,
    spot,
    spot_async,
)

__all__ = [
    "AsyncCreator",
    "AsyncDisposable",
    "CircularDependencyError",
    "Creator",
    "DISettings",
    "Disposable",
    "DuplicateRegistrationError",
    "Inject",
    "NotRegisteredError",
    "NullResolutionError",
    "ReentrantInitializationError",
    "ResolutionFailedError",
    "Resolver",
    "ServiceContainer",
    "ServiceKey",
    "ServiceLifetime",
    "SpotError",
    "SynchronousResolutionError",
    "configure",
    "create_scope",
    "dispose",
    "dispose_all",
    "install_spot",
    "is_empty",
    "is_registered",
    "print_registry",
    "register_async_singleton",
    "register_factory",
    "register_singleton",
    "resolve_container",
    "root_container",
    "spot",
    "spot_async",
]
