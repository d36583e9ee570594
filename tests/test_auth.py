from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from database import get_db
from models.log import Log
from models.users import User
from utils.tokenJWT import issue_token


@pytest.fixture
def client(session_factory):
    """Client that authenticates through real bearer tokens."""
    from main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _register(client, email="Shopper@Example.com", password="correct horse"):
    return client.post("/register", json={"email": email, "password": password, "full_name": "Lan"})


def test_register_creates_a_customer(db, client):
    resp = _register(client)
    assert resp.status_code == 201
    body = resp.json()
    assert (body["email"], body["role"], body["full_name"]) == ("shopper@example.com", "CUSTOMER", "Lan")

    stored = db.query(User).one()
    assert stored.password_hash != "correct horse"
    assert db.query(Log).filter(Log.action == "REGISTER", Log.status == "SUCCESS").count() == 1


def test_register_rejects_taken_email(client):
    _register(client)
    resp = _register(client, email="SHOPPER@example.com")
    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "EMAIL_TAKEN"


def test_register_rejects_short_password(client):
    assert _register(client, password="short").status_code == 422


def test_login_and_me(client):
    _register(client)
    resp = client.post("/login", json={"email": "shopper@example.com", "password": "correct horse"})
    assert resp.status_code == 200
    token = resp.json()
    assert (token["token_type"], token["role"]) == ("bearer", "CUSTOMER")

    me = client.get("/me", headers={"Authorization": f"Bearer {token['access_token']}"})
    assert me.status_code == 200
    assert me.json()["email"] == "shopper@example.com"


@pytest.mark.parametrize("email, password", [
    ("shopper@example.com", "wrong password"),
    ("nobody@example.com", "correct horse"),
])
def test_bad_credentials(db, client, email, password):
    _register(client)
    resp = client.post("/login", json={"email": email, "password": password})
    assert resp.status_code == 401
    assert db.query(Log).filter(Log.action == "LOGIN", Log.status == "FAIL").count() == 1


def test_expired_or_forged_tokens_are_rejected(db, client, make_user):
    user = make_user()
    expired = issue_token(user, lifetime=timedelta(seconds=-1))
    assert client.get("/me", headers={"Authorization": f"Bearer {expired}"}).status_code == 401
    assert client.get("/me", headers={"Authorization": "Bearer not-a-token"}).status_code == 401


def test_role_comes_from_the_database(db, client, make_user):
    user = make_user(role="ADMIN")
    token = issue_token(user)
    user.role = "CUSTOMER"
    db.commit()

    resp = client.get("/inventory/alerts", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 403
