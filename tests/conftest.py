"""
Shared pytest fixtures for the clinical tracker test suite.
Each test gets a freshly created sqlite schema with reference data seeded
by the app's own startup hook. Factory helpers live in tests/factories.py.
"""
import os
import sys

_tests_dir = os.path.dirname(__file__)
if _tests_dir not in sys.path:
    sys.path.insert(0, _tests_dir)

import factories  # noqa: F401  (configures the environment before app.main loads)

import pytest
from fastapi.testclient import TestClient

from factories import login, make_user

from app.main import Base, SessionLocal, app, engine

ROLES = ("superadmin", "admin", "lead_instructor", "instructor", "guest")


@pytest.fixture
def client():
    Base.metadata.drop_all(engine)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db(client):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def users(db):
    return {role: make_user(db, role) for role in ROLES}


@pytest.fixture
def tokens(client, users):
    return {role: login(client, user.email) for role, user in users.items()}
