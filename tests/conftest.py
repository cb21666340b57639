"""
Shared fixtures: every test gets a fresh in-memory library with the default administrator
"""

from datetime import date, timedelta

import pytest

from main import create_app
from db_single import get_session, get_config
from models import User, RoleEnum
from library_access import CallerContext
from library_helpers import create_book
from user_helpers import create_user

STAFF_EMAIL = "staff@library.local"
STAFF_PASSWORD = "frontdesk1"


@pytest.fixture
def app():
    return create_app("testing")


@pytest.fixture
def fetch(app):
    """Load one row in a short-lived session (the shared test connection must not stay in a transaction)"""
    def _fetch(model, ident):
        session = get_session()
        try:
            return session.get(model, ident)
        finally:
            session.close()
    return _fetch


@pytest.fixture
def count_rows(app):
    def _count(model, **filters):
        session = get_session()
        try:
            return session.query(model).filter_by(**filters).count()
        finally:
            session.close()
    return _count


@pytest.fixture
def admin_caller(app):
    session = get_session()
    try:
        admin = session.query(User).filter_by(email=get_config().ADMIN_EMAIL.lower()).one()
        return CallerContext(user_id=admin.id, role=admin.role)
    finally:
        session.close()


@pytest.fixture
def staff_caller(admin_caller):
    result = create_user(admin_caller, {
        "name": "Front Desk",
        "email": STAFF_EMAIL,
        "password": STAFF_PASSWORD,
        "role": "USER",
    })
    assert result["success"], result
    return CallerContext(user_id=result["data"]["id"], role=RoleEnum.USER)


@pytest.fixture
def make_book(admin_caller):
    def _make(**overrides):
        data = {"title": "Cien años de soledad", "author": "Gabriel García Márquez", "total_copies": 1}
        data.update(overrides)
        result = create_book(admin_caller, data)
        assert result["success"], result
        return result["data"]
    return _make


@pytest.fixture
def loan_payload():
    def _payload(book_id, borrower_id="12345678", **overrides):
        data = {
            "book_id": book_id,
            "borrower_name": "Ana Torres",
            "borrower_id_number": borrower_id,
            "due_date": (date.today() + timedelta(days=14)).isoformat(),
        }
        data.update(overrides)
        return data
    return _payload


@pytest.fixture
def client(app, admin_caller):
    """Test client signed in as the default administrator"""
    client = app.test_client()
    response = client.post("/api/auth/login", json={
        "email": get_config().ADMIN_EMAIL,
        "password": get_config().ADMIN_PASSWORD,
    })
    assert response.status_code == 200, response.get_json()
    return client
