from __future__ import annotations

import asyncio
import contextvars
import inspect
import threading
import types
import typing
from collections.abc import Awaitable, Callable
from collections.abc import Awaitable as AwaitableABC
from collections.abc import Coroutine as CoroutineABC
from enum import IntEnum
from typing import (
    Annotated,
    Protocol,
    TypeVar,
    cast,
    get_args,
    get_origin,
    get_type_hints,
    overload,
)

from loguru import logger

from .base import AsyncDisposable, Disposable
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
from .key import ServiceKey

T = TypeVar("T")


class Resolver(Protocol):
    """Capability handed to creators for resolving their own dependencies."""

    def resolve(self, service_type: type[T], name: str | None = None) -> T:
        ...

    async def aresolve(self, service_type: type[T], name: str | None = None) -> T:
        ...


# Creator (ctor) receives the resolving scope and returns the instance.
# Transient creators may also return an awaitable, honoured by `aresolve()` only.
Creator = Callable[[Resolver], object]

# Async creator: awaited exactly once per async singleton lifetime.
AsyncCreator = Callable[[Resolver], Awaitable[object]]

Initializer = Callable[
    [Callable[..., None], Callable[..., None]],
    None,
]


class ServiceLifetime(IntEnum):
    """
    Lifetime of a registered service.

    SINGLETON:
        A single instance is created on first resolution and reused afterwards.
    TRANSIENT:
        A new instance is created for each resolution.
    ASYNC_SINGLETON:
        Like SINGLETON, but the creator must be awaited; only `aresolve()`
        can produce it.
    """

    SINGLETON = 0
    TRANSIENT = 1
    ASYNC_SINGLETON = 2

    @property
    def label(self) -> str:
        return _LIFETIME_LABELS[self]


_LIFETIME_LABELS = {
    ServiceLifetime.SINGLETON: "singleton",
    ServiceLifetime.TRANSIENT: "factory",
    ServiceLifetime.ASYNC_SINGLETON: "async singleton",
}


class ServiceContainer:
    """
    Runtime service registry with optional parent fallback.

    A container maps a `ServiceKey` (type + optional name) to a registration.
    Containers form a hierarchy: a child created with `create_child()` resolves
    its own registrations first and falls back to its parent chain for
    everything else. Disposal is always local to one container.

    Concurrency model
    -----------------
    * Registration/disposal and the singleton cache are guarded by a per-container
      `threading.RLock`; user creators never run while that lock is held.
    * Synchronous singletons use double-checked creation under a per-entry
      `threading.RLock`, so concurrent threads share one instance. A thread that
      would wait on an entry whose creator is (transitively) waiting on it gets
      `CircularDependencyError` instead of deadlocking.
    * Async singletons share one in-flight task: concurrent `aresolve()` calls
      await the same creation instead of racing. The task stores the result
      itself, so a cancelled caller never forces a second creation. A result
      that arrives after the entry was disposed is released immediately.
    * The resolution stack used for cycle detection is context-local
      (`contextvars`), so each thread and each asyncio task only sees its own
      call chain.
    """

    class ServiceEntry:
        """
        Internal representation of one registration and its materialized state.
        """

        __slots__ = (
            "key",
            "lifetime",
            "creator",
            "async_creator",
            "target_type",
            "instance",
            "initializing",
            "pending",
            "disposed",
            "_lock",
            "_owner",
        )

        def __init__(
                self,
                key: ServiceKey,
                lifetime: ServiceLifetime,
                creator: Creator | None = None,
                async_creator: AsyncCreator | None = None,
                target_type: object | None = None,
        ) -> None:
            if lifetime == ServiceLifetime.ASYNC_SINGLETON:
                if async_creator is None or creator is not None:
                    raise TypeError(
                        f"Async singleton {key} requires exactly one async creator."
                    )
            elif creator is None or async_creator is not None:
                raise TypeError(
                    f"{lifetime.label.capitalize()} {key} requires exactly one creator."
                )

            self.key: ServiceKey = key
            self.lifetime: ServiceLifetime = lifetime
            self.creator: Creator | None = creator
            self.async_creator: AsyncCreator | None = async_creator
            self.target_type: object | None = target_type

            self.instance: object | None = None
            self.initializing: bool = False
            self.pending: asyncio.Future[object] | None = None
            self.disposed: bool = False

            self._lock = threading.RLock()
            # Thread currently running the singleton creator, if any.
            self._owner: int | None = None

        @property
        def is_cacheable(self) -> bool:
            return self.lifetime != ServiceLifetime.TRANSIENT

        @property
        def target_label(self) -> str:
            return _type_label(self.target_type)

        def _ensure_sync(self, result: object) -> object:
            if inspect.isawaitable(result):
                if inspect.iscoroutine(result):
                    result.close()
                raise SynchronousResolutionError(
                    self.key,
                    f"Creator for {self.key} returned an awaitable. "
                    "Resolve transient factories with `await aresolve()` and "
                    "register async singletons with `register_async_singleton()`.",
                )
            return result

        def locate(self, resolver: Resolver) -> object:
            """
            Produce the instance synchronously.

            Async singletons cannot be produced without suspension and fail fast.
            """
            if self.lifetime == ServiceLifetime.ASYNC_SINGLETON:
                raise SynchronousResolutionError(self.key)

            creator = cast(Creator, self.creator)
            if self.lifetime == ServiceLifetime.TRANSIENT:
                return self._ensure_sync(creator(resolver))

            if self.instance is not None:
                return self.instance

            self._acquire()
            try:
                if self.instance is not None:
                    return self.instance
                # Same thread re-entering its own creator.
                if self.initializing:
                    raise ReentrantInitializationError(self.key)

                self.initializing = True
                with _WAIT_LOCK:
                    self._owner = threading.get_ident()
                try:
                    self.instance = self._ensure_sync(creator(resolver))
                    logger.debug(f"Singleton service created: {self.key}")
                    return self.instance
                finally:
                    with _WAIT_LOCK:
                        self._owner = None
                    self.initializing = False
            finally:
                self._lock.release()

        def _acquire(self) -> None:
            """
            Take the entry lock, failing fast when waiting would close a cycle
            across threads (this thread holds an entry the owner waits on).
            """
            if self._lock.acquire(blocking=False):
                return

            me = threading.get_ident()
            with _WAIT_LOCK:
                chain = _cross_thread_cycle(self, me)
                if chain is not None:
                    error = CircularDependencyError(chain)
                    logger.error(str(error))
                    raise error
                _WAITING[me] = self
            try:
                self._lock.acquire()
            finally:
                with _WAIT_LOCK:
                    _WAITING.pop(me, None)

        async def alocate(self, resolver: Resolver) -> object:
            """
            Produce the instance, awaiting async creators where needed.

            For async singletons the creation runs as a single task; callers that
            arrive while it is in flight await the same task.
            """
            if self.lifetime == ServiceLifetime.TRANSIENT:
                result = cast(Creator, self.creator)(resolver)
                if inspect.isawaitable(result):
                    result = await result
                return result

            if self.lifetime == ServiceLifetime.SINGLETON:
                return self.locate(resolver)

            if self.instance is not None:
                return self.instance

            if self.initializing:
                if self.pending is None:
                    raise ReentrantInitializationError(self.key)
                logger.trace(f"Awaiting in-flight initialization of {self.key}")
                return await asyncio.shield(self.pending)

            self.initializing = True
            try:
                self.pending = asyncio.ensure_future(self._create_async(resolver))
            except BaseException:
                self.initializing = False
                raise
            # Every caller, including this one, only awaits the task; the task
            # owns the entry state, so cancelling a caller never resets it.
            return await asyncio.shield(self.pending)

        async def _create_async(self, resolver: Resolver) -> object:
            try:
                result = cast(AsyncCreator, self.async_creator)(resolver)
                if inspect.isawaitable(result):
                    result = await result
                if self.disposed:
                    logger.warning(
                        f"Async singleton {self.key} was disposed during initialization; "
                        "releasing the late instance."
                    )
                    await self._release(result)
                    return result
                self.instance = result
                logger.debug(f"Async singleton service created: {self.key}")
                return result
            finally:
                self.pending = None
                self.initializing = False

        async def _release(self, instance: object) -> None:
            try:
                if isinstance(instance, AsyncDisposable):
                    await instance.adispose()
                elif isinstance(instance, Disposable):
                    result = instance.dispose()
                    if inspect.isawaitable(result):
                        await result
            except Exception:
                logger.exception(f"Error disposing service: {self.key}")

        def dispose(self) -> None:
            """
            Run the instance's cleanup hook (if any) and drop the instance.

            Hook failures are logged and never propagate.
            """
            instance = self.instance
            self.disposed = True
            try:
                if isinstance(instance, Disposable):
                    result = instance.dispose()
                    if inspect.isawaitable(result):
                        if inspect.iscoroutine(result):
                            result.close()
                        logger.warning(
                            f"dispose() of {self.key} returned an awaitable; "
                            "use adispose()/adispose_all() to await it."
                        )
                elif isinstance(instance, AsyncDisposable):
                    logger.warning(
                        f"Service {self.key} requires asynchronous disposal; "
                        "instance released without cleanup. Use adispose()/adispose_all()."
                    )
            except Exception:
                logger.exception(f"Error disposing service: {self.key}")
            finally:
                self.instance = None
                self.pending = None

        async def adispose(self) -> None:
            instance = self.instance
            self.disposed = True
            try:
                await self._release(instance)
            finally:
                self.instance = None
                self.pending = None

    def __init__(
            self,
            parent: ServiceContainer | None = None,
            *,
            allow_override: bool | None = None,
    ) -> None:
        self._parent = parent
        if allow_override is None:
            allow_override = parent.allow_override if parent is not None else True
        self.allow_override: bool = allow_override

        self._entries: dict[ServiceKey, ServiceContainer.ServiceEntry] = {}
        # Accelerator only: always mirrors `entries[key].instance`.
        self._singletons: dict[ServiceKey, object] = {}
        self._lock = threading.RLock()
        self._resolution_stack: contextvars.ContextVar[tuple[ServiceKey, ...]] = (
            contextvars.ContextVar(f"_spot_resolution_stack_{id(self)}", default=())
        )

    # --------------------------------------------------------------------- #
    # Registration                                                          #
    # --------------------------------------------------------------------- #

    def register(
            self,
            service_type: object,
            creator: Creator | AsyncCreator,
            *,
            lifetime: ServiceLifetime,
            name: str | None = None,
            target_type: object | None = None,
    ) -> None:
        """
        Register a creator for `service_type` (optionally qualified by `name`).

        The creator is never invoked here. Re-registering an existing key
        replaces the previous entry and its cached instance (last write wins)
        unless the container was created with `allow_override=False`.
        """
        if not isinstance(lifetime, ServiceLifetime):
            raise TypeError(
                f"Invalid lifetime for {service_type!r}: "
                f"expected ServiceLifetime, got {lifetime!r} ({type(lifetime)!r})."
            )
        if not callable(creator):
            raise TypeError(
                f"Invalid creator for {service_type!r}: expected a callable, "
                f"got {type(creator)!r}."
            )

        key = ServiceKey(service_type, name)
        if target_type is None:
            target_type = _infer_target_type(creator)
        if target_type is None:
            target_type = service_type

        if lifetime == ServiceLifetime.ASYNC_SINGLETON:
            entry = ServiceContainer.ServiceEntry(
                key,
                lifetime,
                async_creator=cast(AsyncCreator, creator),
                target_type=target_type,
            )
        else:
            entry = ServiceContainer.ServiceEntry(
                key,
                lifetime,
                creator=cast(Creator, creator),
                target_type=target_type,
            )

        with self._lock:
            if key in self._entries:
                if not self.allow_override:
                    error = DuplicateRegistrationError(key)
                    logger.error(str(error))
                    raise error
                logger.warning(
                    f"Overriding {lifetime.label}: {key} with {entry.target_label}"
                )
                del self._entries[key]
            self._singletons.pop(key, None)
            self._entries[key] = entry

        logger.trace(f"Registered {lifetime.label} {key} -> {entry.target_label}")

    def register_factory(
            self,
            service_type: object,
            creator: Creator,
            *,
            name: str | None = None,
            target_type: object | None = None,
    ) -> None:
        self.register(
            service_type,
            creator,
            lifetime=ServiceLifetime.TRANSIENT,
            name=name,
            target_type=target_type,
        )

    def register_singleton(
            self,
            service_type: object,
            creator: Creator,
            *,
            name: str | None = None,
            target_type: object | None = None,
    ) -> None:
        self.register(
            service_type,
            creator,
            lifetime=ServiceLifetime.SINGLETON,
            name=name,
            target_type=target_type,
        )

    def register_async_singleton(
            self,
            service_type: object,
            async_creator: AsyncCreator,
            *,
            name: str | None = None,
            target_type: object | None = None,
    ) -> None:
        self.register(
            service_type,
            async_creator,
            lifetime=ServiceLifetime.ASYNC_SINGLETON,
            name=name,
            target_type=target_type,
        )

    def configure(self, initializer: Initializer) -> None:
        """
        Bulk registration helper.

        `initializer` receives `(register_factory, register_singleton)` bound
        to this container:

            container.configure(lambda factory, single: (
                single(Logger, lambda get: ConsoleLogger()),
                factory(Request, lambda get: Request(get.resolve(Logger))),
            ))
        """
        initializer(self.register_factory, self.register_singleton)

    # --------------------------------------------------------------------- #
    # Resolution                                                            #
    # --------------------------------------------------------------------- #

    @overload
    def resolve(self, service_type: type[T], name: str | None = None) -> T: ...

    @overload
    def resolve(self, service_type: object, name: str | None = None) -> object: ...

    def resolve(self, service_type: object, name: str | None = None) -> object:
        """
        Resolve an instance synchronously.

        Falls back to the parent chain when the key is not registered locally.
        """
        key = ServiceKey(service_type, name)
        owner = self._find_owner(key)
        return owner._resolve_local(key)

    @overload
    async def aresolve(self, service_type: type[T], name: str | None = None) -> T: ...

    @overload
    async def aresolve(self, service_type: object, name: str | None = None) -> object: ...

    async def aresolve(self, service_type: object, name: str | None = None) -> object:
        """
        Resolve an instance, awaiting async creators where needed.

        Concurrent calls for the same async singleton share one creation.
        """
        key = ServiceKey(service_type, name)
        owner = self._find_owner(key)
        return await owner._aresolve_local(key)

    def _find_owner(self, key: ServiceKey) -> ServiceContainer:
        scope: ServiceContainer | None = self
        while scope is not None:
            with scope._lock:
                owned = key in scope._entries
            if owned:
                if scope is not self:
                    logger.trace(f"Falling back to parent scope for {key}")
                return scope
            scope = scope._parent
        raise self._not_registered(key)

    def _cached(self, key: ServiceKey) -> tuple[bool, object | None, ServiceEntry | None]:
        with self._lock:
            if key in self._singletons:
                return True, self._singletons[key], None
            return False, None, self._entries.get(key)

    def _resolve_local(self, key: ServiceKey) -> object:
        hit, cached, entry = self._cached(key)
        if hit:
            logger.trace(f"Cache hit for {key}")
            return cached
        if entry is None:
            # Disposed between lookup and resolution.
            raise self._not_registered(key)

        token = self._push(key)
        try:
            logger.trace(f"Resolving {key} -> {entry.target_label}")
            instance = entry.locate(self)
            return self._finish(key, entry, instance)
        except SpotError:
            raise
        except Exception as exc:
            raise self._failed(key, exc) from exc
        finally:
            self._resolution_stack.reset(token)

    async def _aresolve_local(self, key: ServiceKey) -> object:
        hit, cached, entry = self._cached(key)
        if hit:
            logger.trace(f"Cache hit for async {key}")
            return cached
        if entry is None:
            raise self._not_registered(key)

        token = self._push(key)
        try:
            logger.trace(f"Async resolving {key} -> {entry.target_label}")
            instance = await entry.alocate(self)
            return self._finish(key, entry, instance)
        except SpotError:
            raise
        except Exception as exc:
            raise self._failed(key, exc) from exc
        finally:
            self._resolution_stack.reset(token)

    def _push(self, key: ServiceKey) -> contextvars.Token[tuple[ServiceKey, ...]]:
        stack = self._resolution_stack.get()
        if key in stack:
            error = CircularDependencyError((*stack, key))
            logger.error(str(error))
            raise error
        return self._resolution_stack.set((*stack, key))

    def _finish(self, key: ServiceKey, entry: ServiceEntry, instance: object) -> object:
        if instance is None:
            error = NullResolutionError(key)
            logger.error(str(error))
            raise error

        if entry.is_cacheable and entry.instance is not None:
            with self._lock:
                # Skip if the entry was disposed or replaced mid-flight.
                if self._entries.get(key) is entry:
                    self._singletons[key] = entry.instance
                    logger.trace(f"Cached {entry.lifetime.label} {key}")
        return instance

    def _failed(self, key: ServiceKey, exc: Exception) -> ResolutionFailedError:
        logger.opt(exception=exc).error(f"Failed to resolve {key}")
        return ResolutionFailedError(key, exc)

    def _not_registered(self, key: ServiceKey) -> NotRegisteredError:
        error = NotRegisteredError(
            key,
            local_keys=self.registered_keys(),
            all_keys=self.registered_keys(include_parents=True),
        )
        logger.error(str(error))
        return error

    # --------------------------------------------------------------------- #
    # Introspection                                                         #
    # --------------------------------------------------------------------- #

    @property
    def parent(self) -> ServiceContainer | None:
        return self._parent

    @property
    def is_empty(self) -> bool:
        with self._lock:
            return not self._entries

    def is_registered(self, service_type: object, name: str | None = None) -> bool:
        key = ServiceKey(service_type, name)
        scope: ServiceContainer | None = self
        while scope is not None:
            with scope._lock:
                if key in scope._entries:
                    return True
            scope = scope._parent
        return False

    def registered_keys(self, *, include_parents: bool = False) -> list[ServiceKey]:
        with self._lock:
            keys = list(self._entries)
        if include_parents and self._parent is not None:
            keys.extend(self._parent.registered_keys(include_parents=True))
        return keys

    def print_registry(self) -> None:
        """Log a human-readable dump of local registrations."""
        with self._lock:
            items = list(self._entries.items())
        logger.info(f"=== Spot Registry ({len(items)} types) ===")
        for key, entry in items:
            initialized = " (initialized)" if entry.instance is not None else ""
            logger.info(
                f"  {key} -> {entry.target_label} [{entry.lifetime.label}]{initialized}"
            )
        logger.info("=" * 50)

    # --------------------------------------------------------------------- #
    # Scopes & disposal                                                     #
    # --------------------------------------------------------------------- #

    def create_child(self) -> ServiceContainer:
        """Create a scope that prefers its own registrations, falling back to this one."""
        return ServiceContainer(self)

    def _pop(self, key: ServiceKey) -> ServiceEntry | None:
        with self._lock:
            self._singletons.pop(key, None)
            return self._entries.pop(key, None)

    def _drain(self) -> list[tuple[ServiceKey, ServiceEntry]]:
        with self._lock:
            items = list(self._entries.items())
            self._entries.clear()
            self._singletons.clear()
        return items

    def dispose(self, service_type: object, name: str | None = None) -> None:
        """
        Dispose one local registration. Disposing an absent key is a no-op.
        """
        key = ServiceKey(service_type, name)
        entry = self._pop(key)
        if entry is None:
            return
        entry.dispose()
        logger.debug(f"Disposed {key}")

    async def adispose(self, service_type: object, name: str | None = None) -> None:
        key = ServiceKey(service_type, name)
        entry = self._pop(key)
        if entry is None:
            return
        await entry.adispose()
        logger.debug(f"Disposed {key}")

    def dispose_all(self) -> None:
        """
        Dispose every local registration in reverse registration order.

        Parent and child scopes are left untouched.
        """
        items = self._drain()
        logger.debug(f"Disposing all registered services ({len(items)} total)...")
        for key, entry in reversed(items):
            try:
                entry.dispose()
            except Exception:
                logger.exception(f"Error disposing {key}")
        logger.debug("All services disposed")

    async def adispose_all(self) -> None:
        items = self._drain()
        logger.debug(f"Disposing all registered services ({len(items)} total)...")
        for key, entry in reversed(items):
            try:
                await entry.adispose()
            except Exception:
                logger.exception(f"Error disposing {key}")
        logger.debug("All services disposed")

    def __enter__(self) -> ServiceContainer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose_all()

    async def __aenter__(self) -> ServiceContainer:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.adispose_all()


# Cross-thread wait-for graph for singleton creation: thread id -> entry it is
# blocked on. Read and written only under _WAIT_LOCK.
_WAIT_LOCK = threading.Lock()
_WAITING: dict[int, ServiceContainer.ServiceEntry] = {}


def _cross_thread_cycle(
        entry: ServiceContainer.ServiceEntry,
        me: int,
) -> tuple[ServiceKey, ...] | None:
    """
    Follow owner -> awaited entry links from `entry`.

    Returns the key chain when the walk leads back to thread `me`, i.e. when
    blocking on `entry` would never return.
    """
    visited = [entry]
    owner = entry._owner
    while owner is not None and len(visited) <= len(_WAITING) + 1:
        if owner == me:
            return (visited[-1].key, *(e.key for e in visited))
        nxt = _WAITING.get(owner)
        if nxt is None:
            return None
        visited.append(nxt)
        owner = nxt._owner
    return None


def _type_label(tp: object) -> str:
    return getattr(tp, "__name__", None) or repr(tp)


def _infer_target_type(creator: Callable[..., object]) -> object | None:
    """
    Infer the concrete implementation type from the creator's return annotation.

    Used for diagnostics only:
        - lambda get: Foo()            -> None (no annotation)
        - def make(get) -> Foo         -> Foo
        - async def make(get) -> Foo   -> Foo
        - def make(get) -> Awaitable[Foo] / Coroutine[..., Foo] -> Foo
        - a class passed as creator    -> the class itself
    """
    if inspect.isclass(creator):
        return creator

    try:
        sig = inspect.signature(creator)
    except (TypeError, ValueError):
        return None

    ann = sig.return_annotation
    if ann is inspect.Signature.empty:
        return None

    try:
        try:
            localns = inspect.getclosurevars(creator).nonlocals
        except Exception:
            localns = None
        ann = get_type_hints(creator, include_extras=True, localns=localns).get("return", ann)
    except Exception:
        # Type hints are best-effort only; never break registration on failures.
        pass

    if isinstance(ann, str):
        return None

    if get_origin(ann) is Annotated:
        ann = get_args(ann)[0]

    origin = get_origin(ann)
    if origin is types.UnionType or origin is typing.Union:
        u_args = [a for a in get_args(ann) if a is not type(None)]
        if len(u_args) == 1:
            ann = u_args[0]
            origin = get_origin(ann)

    args = get_args(ann)
    if origin is AwaitableABC and args:
        ann = args[0]
    elif origin is CoroutineABC and len(args) == 3:
        ann = args[2]

    if isinstance(ann, str):
        return None
    return cast(object, ann)


__all__ = [
    "AsyncCreator",
    "Creator",
    "Resolver",
    "ServiceContainer",
    "ServiceLifetime",
]
