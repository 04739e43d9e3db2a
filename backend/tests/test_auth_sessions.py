from fastapi.testclient import TestClient
import pytest

from conftest import make_settings
from zenchat.main import create_app
from zenchat.models.auth import RefreshSession
from zenchat.models.user import User
from zenchat.services.hashing import CredentialHasher


def _cookie_value(response, cookie_name: str) -> str:
    for header in response.headers.get_list("set-cookie"):
        token_part = header.split(";", 1)[0]
        name, value = token_part.split("=", 1)
        if name == cookie_name:
            return value.strip('"')
    raise AssertionError(f"{cookie_name} cookie not set")


def _build_test_client(session_factory, **overrides):
    app = create_app(make_settings(**overrides), session_factory)
    return TestClient(app)


def _signup(client: TestClient, username: str, email: str):
    response = client.post(
        "/auth/signup",
        json={"username": username, "email": email, "password": "TestPass123!"},
    )
    assert response.status_code == 201
    return response


def _login(client: TestClient, identifier: str, password: str = "TestPass123!"):
    return client.post("/auth/login", json={"identifier": identifier, "password": password})


def test_signup_returns_public_user_and_token_pair(session_factory):
    client = _build_test_client(session_factory)

    data = _signup(client, "alpha", "alpha@example.com").json()

    assert data["success"] is True
    assert data["user"]["username"] == "alpha"
    assert data["user"]["role"] == "USER"
    assert data["user"]["avatar_url"].endswith("avatar01.avif")
    assert "password_hash" not in data["user"]
    assert "password" not in data["user"]
    assert data["tokens"]["access_token"]
    assert data["tokens"]["refresh_token"]


def test_default_avatars_cycle_through_the_pool(session_factory):
    client = _build_test_client(session_factory, avatar_pool_size=2)

    avatars = [
        _signup(client, f"user{i}", f"user{i}@example.com").json()["user"]["avatar_url"]
        for i in range(3)
    ]

    assert [a.rsplit("/", 1)[1] for a in avatars] == ["avatar01.avif", "avatar02.avif", "avatar01.avif"]


@pytest.mark.parametrize(
    "username,email,message",
    [
        ("other", "alpha@example.com", "Email already exists"),
        ("alpha", "other@example.com", "Username already exists"),
    ],
)
def test_duplicate_identity_is_rejected_without_creating_user(session_factory, username, email, message):
    client = _build_test_client(session_factory)
    _signup(client, "alpha", "alpha@example.com")

    response = client.post(
        "/auth/signup",
        json={"username": username, "email": email, "password": "TestPass123!"},
    )

    assert response.status_code == 409
    assert response.json() == {"success": False, "kind": "duplicate_identity", "message": message}
    db = session_factory()
    try:
        assert db.query(User).count() == 1
    finally:
        db.close()


def test_login_sets_httponly_session_cookies(session_factory):
    client = _build_test_client(session_factory)
    _signup(client, "beta", "beta@example.com")

    response = _login(client, "beta@example.com")
    set_cookies = response.headers.get_list("set-cookie")

    assert response.status_code == 200
    assert response.json()["user"]["email"] == "beta@example.com"
    assert any(c.startswith("accessToken=") for c in set_cookies)
    assert any(c.startswith("refreshToken=") for c in set_cookies)
    assert all("HttpOnly" in c for c in set_cookies)
    # Not production, so cookies are not marked Secure
    assert not any("Secure" in c for c in set_cookies)


def test_production_cookies_are_secure(session_factory):
    client = _build_test_client(session_factory, environment="production")
    _signup(client, "prod", "prod@example.com")

    response = _login(client, "prod")

    assert all("Secure" in c for c in response.headers.get_list("set-cookie"))


def test_wrong_password_and_unknown_identifier_are_indistinguishable(session_factory):
    client = _build_test_client(session_factory)
    _signup(client, "gamma", "gamma@example.com")

    wrong_password = _login(client, "gamma", "WrongPass123!")
    unknown_user = _login(client, "nobody@example.com", "WrongPass123!")

    assert wrong_password.status_code == unknown_user.status_code == 401
    assert wrong_password.content == unknown_user.content
    assert wrong_password.json()["kind"] == "invalid_credentials"


def test_login_without_password_is_missing_credentials(session_factory):
    client = _build_test_client(session_factory)
    _signup(client, "delta", "delta@example.com")

    response = client.post("/auth/login", json={"identifier": "delta"})

    assert response.status_code == 400
    assert response.json()["kind"] == "missing_credentials"


def test_refresh_rotates_session_and_rejects_replay(session_factory):
    client = _build_test_client(session_factory)
    _signup(client, "epsilon", "epsilon@example.com")
    old_refresh = _cookie_value(_login(client, "epsilon"), "refreshToken")

    refresh_response = client.post("/auth/refresh", json={"refresh_token": old_refresh})
    assert refresh_response.status_code == 200
    new_refresh = refresh_response.json()["refresh_token"]
    assert new_refresh != old_refresh

    replay_response = client.post("/auth/refresh", json={"refresh_token": old_refresh})
    assert replay_response.status_code == 401
    assert replay_response.json()["kind"] == "token_reused"

    successor_response = client.post("/auth/refresh", json={"refresh_token": new_refresh})
    assert successor_response.status_code == 401
    assert successor_response.json()["kind"] == "token_reused"


def test_logout_is_idempotent_and_revokes_lineage(session_factory):
    client = _build_test_client(session_factory)
    _signup(client, "zeta", "zeta@example.com")
    refresh_token = _cookie_value(_login(client, "zeta"), "refreshToken")

    first = client.post("/auth/logout", json={"refresh_token": refresh_token})
    second = client.post("/auth/logout", json={"refresh_token": refresh_token})
    bare = client.post("/auth/logout")

    for response in (first, second, bare):
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Logout successful"}
        cleared = response.headers.get_list("set-cookie")
        assert any(c.startswith("accessToken=") and "Max-Age=0" in c for c in cleared)
        assert any(c.startswith("refreshToken=") and "Max-Age=0" in c for c in cleared)

    assert client.post("/auth/refresh", json={"refresh_token": refresh_token}).status_code == 401

    db = session_factory()
    try:
        active = db.query(RefreshSession).filter(RefreshSession.revoked_at.is_(None)).count()
        # Only the signup lineage is still active
        assert active == 1
    finally:
        db.close()


def test_me_requires_valid_access_token(session_factory):
    client = _build_test_client(session_factory)
    access_token = _signup(client, "eta", "eta@example.com").json()["tokens"]["access_token"]

    client.cookies.clear()
    anonymous = client.get("/auth/me")
    authorized = client.get("/auth/me", headers={"Authorization": f"Bearer {access_token}"})

    assert anonymous.status_code == 401
    assert anonymous.json()["kind"] == "auth_failure"
    assert authorized.status_code == 200
    assert authorized.json()["username"] == "eta"


@pytest.mark.parametrize("password", ["short", "x" * 73, "é" * 40])
def test_signup_rejects_unusable_passwords(session_factory, password):
    client = _build_test_client(session_factory)

    response = client.post(
        "/auth/signup",
        json={"username": "theta", "email": "theta@example.com", "password": password},
    )

    assert response.status_code == 422
    assert response.json()["kind"] == "invalid_request"
    assert response.json()["errors"][0]["loc"] == ["body", "password"]


def test_username_cannot_contain_at_sign(session_factory):
    client = _build_test_client(session_factory)

    response = client.post(
        "/auth/signup",
        json={"username": "iota@example.com", "email": "iota@example.com", "password": "TestPass123!"},
    )

    assert response.status_code == 422
    assert response.json()["errors"][0]["loc"] == ["body", "username"]


def test_login_with_email_never_matches_another_users_username(session_factory):
    client = _build_test_client(session_factory)
    _signup(client, "kappa", "kappa@example.com")
    db = session_factory()
    try:
        # Username shaped like kappa's email, as stored before "@" was reserved
        db.add(
            User(
                username="kappa@example.com",
                email="lambda@example.com",
                password_hash=CredentialHasher(rounds=4).hash("OtherPass123!"),
            )
        )
        db.commit()
    finally:
        db.close()

    owner = _login(client, "kappa@example.com")
    impostor = _login(client, "kappa@example.com", "OtherPass123!")

    assert owner.status_code == 200
    assert owner.json()["user"]["username"] == "kappa"
    assert impostor.status_code == 401
