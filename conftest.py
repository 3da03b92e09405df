import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import MemoryMedium
from store import EntityStore


@pytest.fixture
def medium():
    return MemoryMedium()


@pytest.fixture
def store(medium):
    return EntityStore(medium).open()


@pytest.fixture
def settings():
    return Settings(run_startup_seed=False, demo_password="password")


@pytest.fixture
def client(settings, medium):
    import main

    app = main.create_app(settings, medium=medium)
    with TestClient(app, base_url="http://localhost") as c:
        yield c


@pytest.fixture
def admin_client(client):
    resp = client.post("/login", json={
        "email": "chris.m@smack.schub.com",
        "password": "password",
        "portal": "admin",
    })
    assert resp.status_code == 200
    return client
