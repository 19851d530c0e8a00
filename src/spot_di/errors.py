from __future__ import annotations

from collections.abc import Sequence

from .key import ServiceKey


class SpotError(RuntimeError):
    """Base class for every error raised by the service registry."""


class NotRegisteredError(SpotError):
    def __init__(
        self,
        key: ServiceKey,
        local_keys: Sequence[ServiceKey] = (),
        all_keys: Sequence[ServiceKey] = (),
    ) -> None:
        self.key = key
        self.registered = tuple(all_keys)
        local = ", ".join(str(k) for k in local_keys) or "(none)"
        known = ", ".join(str(k) for k in all_keys) or "(none)"
        super().__init__(
            f"Type {key} is not registered in this scope or any parent scope.\n"
            f"Registered in this scope: {local}\n"
            f"All registered types: {known}"
        )


class CircularDependencyError(SpotError):
    def __init__(self, chain: Sequence[ServiceKey]) -> None:
        self.chain = tuple(chain)
        rendered = " -> ".join(str(k) for k in self.chain)
        super().__init__(
            f"Circular dependency detected: {rendered}\n"
            f"Cannot resolve {self.chain[-1]} because it depends on itself "
            "(directly or indirectly)."
        )


class ReentrantInitializationError(SpotError):
    def __init__(self, key: ServiceKey) -> None:
        self.key = key
        super().__init__(
            f"Re-entrant initialization detected for {key}. "
            "This usually indicates a circular dependency."
        )


class SynchronousResolutionError(SpotError):
    def __init__(self, key: ServiceKey, detail: str | None = None) -> None:
        self.key = key
        super().__init__(
            detail
            or (
                f"Cannot synchronously resolve async singleton {key}. "
                "Use `await aresolve()` instead."
            )
        )


class NullResolutionError(SpotError):
    def __init__(self, key: ServiceKey) -> None:
        self.key = key
        super().__init__(f"Service {key} resolved to None.")


class ResolutionFailedError(SpotError):
    def __init__(self, key: ServiceKey, cause: BaseException) -> None:
        self.key = key
        self.cause = cause
        super().__init__(
            f"Failed to resolve {key}: {type(cause).__name__}: {cause}"
        )


class DuplicateRegistrationError(SpotError):
    def __init__(self, key: ServiceKey) -> None:
        self.key = key
        super().__init__(
            f"Duplicate service registration for {key}. "
            "Overrides are disabled for this container (allow_override=False)."
        )


__all__ = [
    "CircularDependencyError",
    "DuplicateRegistrationError",
    "NotRegisteredError",
    "NullResolutionError",
    "ReentrantInitializationError",
    "ResolutionFailedError",
    "SpotError",
    "SynchronousResolutionError",
]
