from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


def _has_callable(cls: type, name: str) -> bool:
    for klass in cls.__mro__:
        attr = klass.__dict__.get(name)
        if attr is not None:
            return callable(attr)
    return False


class Disposable(ABC):
    """
    Capability for services that hold resources.

    When a singleton implementing this interface is disposed through
    ``ServiceContainer.dispose()`` / ``dispose_all()``, its ``dispose()`` hook
    is invoked before the instance is dropped from the container.

    Classes may subclass ``Disposable`` explicitly, be registered as virtual
    subclasses, or simply define a callable ``dispose`` attribute.
    """

    @abstractmethod
    def dispose(self) -> Any:
        """Release resources held by this object."""
        raise NotImplementedError

    @classmethod
    def __subclasshook__(cls, subclass: type) -> bool:
        if cls is Disposable:
            return _has_callable(subclass, "dispose") or NotImplemented
        return NotImplemented


class AsyncDisposable(ABC):
    """
    Capability for services whose teardown must be awaited.

    Only honoured by ``adispose()`` / ``adispose_all()``; the synchronous
    disposal path logs a warning and drops the instance without awaiting.
    """

    @abstractmethod
    async def adispose(self) -> None:
        """Release resources held by this object."""
        raise NotImplementedError

    @classmethod
    def __subclasshook__(cls, subclass: type) -> bool:
        if cls is AsyncDisposable:
            return _has_callable(subclass, "adispose") or NotImplemented
        return NotImplemented


__all__ = ["AsyncDisposable", "Disposable"]
