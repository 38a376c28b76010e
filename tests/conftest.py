import os

# the module-level engine in db.py is never used by tests
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from db import create_db_and_tables, get_session, make_engine
from main import app
from models import (
    ROLE_ADMIN,
    ROLE_DIVISION_CHIEF,
    ROLE_FOCAL_PERSON,
    Division,
    Item,
    User,
)
from routers.auth import create_session_token, hash_password
from workflow import RequestWorkflow


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'workflow.db'}")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def division(session):
    division = Division(name="Finance Division")
    session.add(division)
    session.commit()
    session.refresh(division)
    return division


@pytest.fixture
def make_user(session, division):
    counter = {"n": 0}

    def _make(role=ROLE_FOCAL_PERSON, name=None, division_id="default", password="secret123"):
        counter["n"] += 1
        user = User(
            email=f"user{counter['n']}@example.gov",
            name=name or f"{role} {counter['n']}",
            password_hash=hash_password(password),
            user_role=role,
            division_id=division.id if division_id == "default" else division_id,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        return user

    return _make


@pytest.fixture
def requester(make_user):
    return make_user(ROLE_FOCAL_PERSON, name="Maria Santos")


@pytest.fixture
def chief(make_user):
    return make_user(ROLE_DIVISION_CHIEF, name="Chief Reyes")


@pytest.fixture
def admin(make_user):
    return make_user(ROLE_ADMIN, name="Admin Cruz", division_id=None)


@pytest.fixture
def make_item(session):
    def _make(name, quantity, reorder_level=None):
        item = Item(item_name=name, quantity_on_hand=quantity, reorder_level=reorder_level)
        session.add(item)
        session.commit()
        session.refresh(item)
        return item

    return _make


@pytest.fixture
def workflow(session):
    return RequestWorkflow(session)


@pytest.fixture
def client_for(engine):
    def _override_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = _override_session
    clients = []

    def _make(user=None):
        client = TestClient(app)
        if user is not None:
            client.cookies.set("session", create_session_token(user.id, user.user_role))
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()
    app.dependency_overrides.clear()
