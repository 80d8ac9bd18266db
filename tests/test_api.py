import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings
from database import Base, get_db
from main import app

PASSWORD = "Secret-pass1"


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    engine.dispose()


def csrf_headers(client: TestClient) -> dict[str, str]:
    token = client.cookies.get(get_settings().csrf_cookie_name)
    if token is None:
        client.get("/api/health")
        token = client.cookies.get(get_settings().csrf_cookie_name)
    return {"x-csrf-token": token}


def signup(client: TestClient, username: str = "alice"):
    return client.post(
        "/api/auth/register",
        json={
            "username": username,
            "display_name": username.title(),
            "password": PASSWORD,
            "email": f"{username}@example.com",
        },
        headers=csrf_headers(client),
    )


def test_safe_request_issues_csrf_cookie(client) -> None:
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "data": {"status": "ok"}}
    assert client.cookies.get(get_settings().csrf_cookie_name)


def test_mutating_api_request_without_csrf_header_is_rejected(client) -> None:
    client.get("/api/health")
    resp = client.post(
        "/api/auth/login", json={"username": "alice", "password": PASSWORD}
    )
    assert resp.status_code == 403
    assert resp.json() == {"success": False, "error": "Invalid CSRF token"}


def test_mismatched_csrf_header_is_rejected(client) -> None:
    client.get("/api/health")
    resp = client.post(
        "/api/auth/login",
        json={"username": "alice", "password": PASSWORD},
        headers={"x-csrf-token": "0" * 64},
    )
    assert resp.status_code == 403


def test_non_api_paths_skip_csrf(client) -> None:
    resp = client.post("/not-api")
    assert resp.status_code == 404


def test_register_sets_session_cookie_and_me(client) -> None:
    resp = signup(client)
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["username"] == "alice"
    assert client.cookies.get(get_settings().cookie_name)

    me = client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.json()["data"]["display_name"] == "Alice"


def test_duplicate_register_is_conflict(client) -> None:
    signup(client)
    resp = signup(client)
    assert resp.status_code == 409
    assert resp.json()["error"] == "Username already taken"


def test_login_failure_is_generic(client) -> None:
    signup(client)
    resp = client.post(
        "/api/auth/login",
        json={"username": "alice", "password": "Wrong-pass1"},
        headers=csrf_headers(client),
    )
    assert resp.status_code == 401
    assert resp.json()["error"] == "Invalid username or password"


def test_logout_ends_session(client) -> None:
    signup(client)
    stale = client.cookies.get(get_settings().cookie_name)

    resp = client.post("/api/auth/logout", headers=csrf_headers(client))
    assert resp.status_code == 200

    resp = client.get(
        "/api/auth/me", headers={"Cookie": f"{get_settings().cookie_name}={stale}"}
    )
    assert resp.status_code == 401


def test_me_requires_session(client) -> None:
    resp = client.get("/api/auth/me")
    assert resp.status_code == 401
    assert resp.json()["success"] is False


def test_forgot_password_hides_unknown_user(client) -> None:
    resp = client.post(
        "/api/auth/forgot-password",
        json={"username": "ghost"},
        headers=csrf_headers(client),
    )
    assert resp.status_code == 200
    assert resp.json() == {"success": True}


def test_reset_password_with_bad_token(client) -> None:
    resp = client.post(
        "/api/auth/reset-password",
        json={"token": "f" * 64, "new_password": "Brand-new-pass2"},
        headers=csrf_headers(client),
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid or expired reset token"


def test_email_endpoints(client) -> None:
    signup(client)
    assert client.get("/api/user/me/email").json()["data"] == {
        "masked_email": "a***@example.com"
    }

    resp = client.put(
        "/api/user/email",
        json={"current_password": PASSWORD, "new_email": "new@example.com"},
        headers=csrf_headers(client),
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["masked_email"] == "n***@example.com"


def test_user_search(client) -> None:
    signup(client, "bob")
    signup(client, "alice")

    found = client.get("/api/users/search", params={"username": "bob"})
    assert found.status_code == 200
    assert found.json()["data"]["display_name"] == "Bob"
    assert "email" not in found.json()["data"]

    missing = client.get("/api/users/search", params={"username": "carol"})
    assert missing.status_code == 404


def test_workspace_item_flow(client) -> None:
    signup(client)
    headers = csrf_headers(client)

    salary = client.post(
        "/api/items",
        json={"type": "INCOME", "label": "Salary", "amount_cents": 5000, "day_of_month": 25},
        headers=headers,
    )
    assert salary.status_code == 200
    card = client.post(
        "/api/items",
        json={"type": "CREDIT_CARD", "label": "Card", "amount_cents": 1000, "day_of_month": 15},
        headers=headers,
    )
    card_id = card.json()["data"]["id"]

    toggled = client.patch(f"/api/items/{card_id}/toggle-paid", headers=headers)
    assert toggled.json()["data"]["is_paid"] is True

    client.put("/api/workspace/balance", json={"balance_cents": 100}, headers=headers)

    workspace = client.get("/api/workspace").json()["data"]
    assert workspace["cycle_start_day"] == 25
    assert workspace["cycle_end_day"] == 16
    assert workspace["permission"] == "OWNER"
    assert workspace["balance_cards"]["expected_balance"] == 100 + 5000
    assert workspace["balance_cards"]["deficit_excess"] == 4000
    assert {item["label"] for item in workspace["items"]} == {"Salary", "Card"}

    history = client.get(f"/api/workspace/{workspace['id']}/cycles")
    assert history.status_code == 200

    deleted = client.delete(f"/api/items/{card_id}", headers=headers)
    assert deleted.status_code == 200
    missing = client.put(
        f"/api/items/{card_id}", json={"label": "Gone"}, headers=headers
    )
    assert missing.status_code == 404


def test_invalid_item_body_is_rejected(client) -> None:
    signup(client)
    resp = client.post(
        "/api/items",
        json={"type": "INCOME", "label": "Salary", "amount_cents": 5000, "day_of_month": 40},
        headers=csrf_headers(client),
    )
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "Invalid request body"}


def test_workspace_sharing_flow(client) -> None:
    bob_id = signup(client, "bob").json()["data"]["id"]
    signup(client, "alice")
    headers = csrf_headers(client)
    workspace_id = client.get("/api/workspace").json()["data"]["id"]

    added = client.post(
        f"/api/workspace/{workspace_id}/members",
        json={"userId": bob_id, "permission": "VIEWER"},
        headers=headers,
    )
    assert added.status_code == 200
    assert added.json()["data"]["permission"] == "VIEWER"

    again = client.post(
        f"/api/workspace/{workspace_id}/members",
        json={"user_id": bob_id},
        headers=headers,
    )
    assert again.status_code == 409

    members = client.get(f"/api/workspace/{workspace_id}/members").json()["data"]
    assert [(m["username"], m["permission"]) for m in members] == [
        ("alice", "OWNER"),
        ("bob", "VIEWER"),
    ]

    client.post(
        "/api/auth/login",
        json={"username": "bob", "password": PASSWORD},
        headers=csrf_headers(client),
    )
    shared = client.get("/api/workspaces/shared").json()["data"]
    assert len(shared) == 1
    assert shared[0]["id"] == workspace_id
    assert shared[0]["permission"] == "VIEWER"
    owner = shared[0]["owner"]
    assert (owner["username"], owner["display_name"]) == ("alice", "Alice")

    denied = client.delete(
        f"/api/workspace/{workspace_id}/members/{owner['id']}",
        headers=csrf_headers(client),
    )
    assert denied.status_code == 403

    left = client.delete(
        f"/api/workspace/{workspace_id}/members/{bob_id}", headers=csrf_headers(client)
    )
    assert left.status_code == 200
    assert client.get("/api/workspaces/shared").json()["data"] == []
