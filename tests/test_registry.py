from __future__ import annotations

import asyncio

import pytest

import spot_di
from spot_di import (
    Disposable,
    NotRegisteredError,
    ServiceContainer,
    SynchronousResolutionError,
)


class Logger:
    pass


class ConsoleLogger(Logger):
    pass


class MockLogger(Logger):
    pass


class Database(Disposable):
    def __init__(self) -> None:
        self.closed = False

    def dispose(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _clean_root():
    spot_di.dispose_all()
    yield
    spot_di.dispose_all()


def test_root_container_is_a_process_wide_singleton():
    root = spot_di.root_container()

    assert isinstance(root, ServiceContainer)
    assert root.parent is None
    assert spot_di.root_container() is root


def test_global_wrappers_resolve_against_root():
    spot_di.register_singleton(Logger, lambda get: ConsoleLogger())
    spot_di.register_factory(Logger, lambda get: MockLogger(), name="mock")

    assert spot_di.is_registered(Logger)
    assert spot_di.is_registered(Logger, "mock")
    assert spot_di.spot(Logger) is spot_di.spot(Logger)
    assert spot_di.spot(Logger, "mock") is not spot_di.spot(Logger, "mock")
    assert spot_di.root_container().resolve(Logger) is spot_di.spot(Logger)


def test_dispose_all_resets_root_but_keeps_identity():
    root = spot_di.root_container()
    spot_di.register_singleton(Database, lambda get: Database())
    database = spot_di.spot(Database)
    assert not spot_di.is_empty()

    spot_di.dispose_all()

    assert spot_di.is_empty()
    assert database.closed is True
    assert spot_di.root_container() is root
    with pytest.raises(NotRegisteredError):
        spot_di.spot(Database)


def test_dispose_single_key():
    spot_di.register_singleton(Database, lambda get: Database())
    spot_di.register_singleton(Logger, lambda get: ConsoleLogger())
    database = spot_di.spot(Database)

    spot_di.dispose(Database)

    assert database.closed is True
    assert not spot_di.is_registered(Database)
    assert spot_di.is_registered(Logger)


def test_configure_binds_to_root():
    spot_di.configure(
        lambda factory, single: (
            single(Logger, lambda get: ConsoleLogger()),
            factory(Logger, lambda get: MockLogger(), name="mock"),
        )
    )

    assert isinstance(spot_di.spot(Logger), ConsoleLogger)
    assert isinstance(spot_di.spot(Logger, "mock"), MockLogger)


def test_create_scope_falls_back_to_root():
    spot_di.register_singleton(Logger, lambda get: ConsoleLogger())
    scope = spot_di.create_scope()

    assert scope.parent is spot_di.root_container()
    assert scope.resolve(Logger) is spot_di.spot(Logger)

    scope.register_singleton(Logger, lambda get: MockLogger())
    assert isinstance(scope.resolve(Logger), MockLogger)
    assert isinstance(spot_di.spot(Logger), ConsoleLogger)

    scope.dispose_all()
    assert spot_di.is_registered(Logger)
    assert isinstance(spot_di.spot(Logger), ConsoleLogger)


@pytest.mark.asyncio
async def test_spot_async_shares_one_creation():
    calls = 0

    async def create(get) -> Database:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.02)
        return Database()

    spot_di.register_async_singleton(Database, create)

    first, second = await asyncio.gather(
        spot_di.spot_async(Database),
        spot_di.spot_async(Database),
    )

    assert first is second
    assert calls == 1


def test_spot_rejects_async_singleton():
    async def create(get) -> Database:
        return Database()

    spot_di.register_async_singleton(Database, create)

    with pytest.raises(SynchronousResolutionError):
        spot_di.spot(Database)


def test_print_registry_on_root_does_not_fail():
    spot_di.register_singleton(Logger, lambda get: ConsoleLogger())
    spot_di.print_registry()
