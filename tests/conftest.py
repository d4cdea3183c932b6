import pytest
from fastapi.testclient import TestClient

from shorty.database import Database
from shorty.main import create_app


@pytest.fixture
def database():
    database = Database("sqlite://")
    yield database
    database.close()


@pytest.fixture
def db(database):
    assert database.init(attempts=1, backoff=0)
    session = database.session()
    yield session
    session.close()


@pytest.fixture
def client(database):
    app = create_app(database, init_attempts=1, init_backoff=0)
    with TestClient(app) as c:
        yield c
