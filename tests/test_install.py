from __future__ import annotations

import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from spot_di import (
    AsyncDisposable,
    Inject,
    ServiceContainer,
    ServiceKey,
    install_spot,
    resolve_container,
)


class Database(AsyncDisposable):
    def __init__(self, url: str) -> None:
        self.url = url
        self.closed = False

    async def adispose(self) -> None:
        self.closed = True


class Greeting:
    def __init__(self, database: Database) -> None:
        self.database = database


def _container(created: list[Database]) -> ServiceContainer:
    container = ServiceContainer()

    async def create_db(get) -> Database:
        await asyncio.sleep(0)
        database = Database("sqlite://")
        created.append(database)
        return database

    async def create_greeting(get) -> Greeting:
        return Greeting(await get.aresolve(Database))

    container.register_async_singleton(Database, create_db)
    container.register_factory(Greeting, create_greeting)
    container.register_async_singleton(Database, create_db, name="replica")
    return container


def test_install_spot_wires_injection_and_disposes_on_shutdown() -> None:
    created: list[Database] = []
    container = _container(created)
    app = FastAPI()
    install_spot(app, container=container)

    @app.get("/db")
    async def db_endpoint(database: Database = Inject(Database)):
        return {"url": database.url, "id": id(database)}

    @app.get("/greeting")
    async def greeting_endpoint(greeting: Greeting = Inject(Greeting)):
        return {"same": greeting.database is created[0]}

    with TestClient(app) as client:
        assert resolve_container(app.state) is container

        first = client.get("/db")
        second = client.get("/db")
        assert first.status_code == 200
        assert first.json() == second.json()
        assert first.json()["url"] == "sqlite://"

        greeting = client.get("/greeting")
        assert greeting.json() == {"same": True}

    assert len(created) == 1
    assert created[0].closed is True
    assert container.is_empty
    assert resolve_container(app.state) is None


def test_install_spot_eager_services_resolve_on_startup() -> None:
    created: list[Database] = []
    container = _container(created)
    app = FastAPI()
    install_spot(
        app,
        container=container,
        eager_services=[Database, (Database, "replica")],
        eager_init_timeout_sec=5,
    )

    with TestClient(app):
        assert len(created) == 2
        assert container.registered_keys()[0] == ServiceKey(Database)


def test_install_spot_keeps_registrations_when_disposal_disabled() -> None:
    created: list[Database] = []
    container = _container(created)
    app = FastAPI()
    install_spot(
        app,
        container=container,
        eager_services=[ServiceKey(Database)],
        dispose_on_shutdown=False,
    )

    with TestClient(app):
        pass

    assert created[0].closed is False
    assert container.is_registered(Database)


def test_install_spot_named_injection() -> None:
    created: list[Database] = []
    container = _container(created)
    app = FastAPI()
    install_spot(app, container=container)

    @app.get("/replica")
    async def replica_endpoint(
        primary: Database = Inject(Database),
        replica: Database = Inject(Database, "replica"),
    ):
        return {"distinct": primary is not replica}

    with TestClient(app) as client:
        response = client.get("/replica")
        assert response.json() == {"distinct": True}


def test_install_spot_rejects_double_install() -> None:
    app = FastAPI()
    install_spot(app, container=ServiceContainer())

    with pytest.raises(RuntimeError, match="already been called"):
        install_spot(app, container=ServiceContainer())


def test_install_spot_rejects_non_positive_timeout() -> None:
    app = FastAPI()

    with pytest.raises(ValueError, match="eager_init_timeout_sec"):
        install_spot(app, eager_init_timeout_sec=0)


def test_install_spot_rejects_malformed_eager_service() -> None:
    app = FastAPI()

    with pytest.raises(ValueError, match="pair"):
        install_spot(app, eager_services=[(Database, "a", "b")])


def test_inject_without_install_fails() -> None:
    app = FastAPI()

    @app.get("/db")
    async def db_endpoint(database: Database = Inject(Database)):
        return {"ok": True}

    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/db")
        assert response.status_code == 500


def test_eager_timeout_aborts_startup() -> None:
    container = ServiceContainer()

    async def never_ready(get) -> Database:
        await asyncio.sleep(10)
        return Database("late://")

    container.register_async_singleton(Database, never_ready)
    app = FastAPI()
    install_spot(
        app,
        container=container,
        eager_services=[Database],
        eager_init_timeout_sec=0.05,
    )

    with pytest.raises((asyncio.TimeoutError, TimeoutError)):
        with TestClient(app):
            pass
