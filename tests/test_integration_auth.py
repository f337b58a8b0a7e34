"""End-to-end tests for account, login and profile endpoints."""

from dataclasses import replace

from fastapi.testclient import TestClient

from kioskapi import app as app_module
from kioskapi.service.runtime import get_runtime

client = TestClient(app_module.app)

PASSWORD = "password123"


def _register(phone="1234567890", country_code="+1", firstname="Ada", password=PASSWORD):
    return client.post(
        "/api/users",
        json={
            "firstname": firstname,
            "lastname": "Lovelace",
            "countryCode": country_code,
            "phone": phone,
            "password": password,
        },
    )


def _login(phone="1234567890", country_code="+1", password=PASSWORD):
    return client.post(
        "/api/users/login",
        json={"countryCode": country_code, "phone": phone, "password": password},
    )


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _session(phone="1234567890", firstname="Ada"):
    user_id = _register(phone=phone, firstname=firstname).json()["userId"]
    token = _login(phone=phone).json()["token"]
    return user_id, token


class TestRegisterAndLogin:
    def test_register_returns_user_id(self):
        resp = _register()

        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] == "account created!"
        assert isinstance(body["userId"], int)

    def test_duplicate_registration_conflicts(self):
        assert _register().status_code == 201

        resp = _register(firstname="Imposter")

        assert resp.status_code == 409
        assert resp.json()["error"] == "An account with this phone number already exists"

    def test_register_validation_errors(self):
        resp = client.post(
            "/api/users",
            json={
                "firstname": " ",
                "lastname": "L",
                "countryCode": "1",
                "phone": "12ab",
                "password": "123",
            },
        )

        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "Validation failed"
        fields = {e["field"] for e in body["errors"]}
        assert {"firstname", "countryCode", "phone", "password"} <= fields

    def test_login_success(self):
        user_id = _register().json()["userId"]

        resp = _login()

        assert resp.status_code == 200
        body = resp.json()
        assert body["message"] == "Auth success"
        assert body["userId"] == user_id
        assert body["expiresIn"] == get_runtime().settings.access_token_ttl_seconds
        assert body["token"]

    def test_login_failures_look_the_same(self):
        _register()

        wrong_password = _login(password="wrong-password")
        unknown_account = _login(phone="9999999999")

        assert wrong_password.status_code == unknown_account.status_code == 401
        assert wrong_password.json() == unknown_account.json() == {"error": "Invalid credentials"}

    def test_login_rate_limited_after_limit(self):
        limit = get_runtime().settings.login_rate_limit_per_minute
        for _ in range(limit):
            assert _login(password="wrong-password").status_code == 401

        resp = _login(password="wrong-password")

        assert resp.status_code == 429
        assert resp.json()["error"] == "Too many login attempts, please try again later."

    def test_login_requires_fields(self):
        resp = client.post("/api/users/login", json={"phone": "1234567890"})

        assert resp.status_code == 400
        fields = {e["field"] for e in resp.json()["errors"]}
        assert {"countryCode", "password"} <= fields


class TestTokenLifecycle:
    def test_full_session(self):
        user_id, token = _session()

        me = client.get("/api/users/me", headers=_auth(token))
        assert me.status_code == 200
        assert me.json()["id"] == user_id
        assert "password" not in me.json()
        assert "passwordHash" not in me.json()

        logout = client.post("/api/users/logout", headers=_auth(token))
        assert logout.status_code == 200
        assert logout.json() == {"success": "Logged out"}

        after = client.get("/api/users/me", headers=_auth(token))
        assert after.status_code == 401
        assert after.json() == {"error": "Invalid or expired token"}

    def test_missing_token(self):
        resp = client.get("/api/users/me")

        assert resp.status_code == 401
        assert resp.json() == {"error": "No token provided"}

    def test_expired_token_rejected(self):
        _, token = _session()
        store = get_runtime().store
        # age the token past its ttl
        store.tokens[token] = replace(store.tokens[token], ttl=0)

        resp = client.get("/api/users/me", headers=_auth(token))

        assert resp.status_code == 401
        assert token not in store.tokens

    def test_logout_without_token(self):
        resp = client.post("/api/users/logout")

        assert resp.status_code == 400
        assert resp.json() == {"error": "No token provided"}

    def test_logout_unknown_token_succeeds(self):
        resp = client.post("/api/users/logout", headers=_auth("not-a-real-token"))

        assert resp.status_code == 200

    def test_multiple_sessions_are_independent(self):
        _, first = _session()
        second = _login().json()["token"]

        client.post("/api/users/logout", headers=_auth(first))

        assert client.get("/api/users/me", headers=_auth(second)).status_code == 200


class TestProfile:
    def test_read_own_profile(self):
        user_id, token = _session()

        resp = client.get(f"/api/users/{user_id}", headers=_auth(token))

        assert resp.status_code == 200
        body = resp.json()
        assert body["countryCode"] == "+1"
        assert body["phone"] == "1234567890"

    def test_other_profile_forbidden(self):
        _, token = _session()
        other_id = _register(phone="5550001111").json()["userId"]

        for method in ("get", "put", "delete"):
            kwargs = {"json": {"firstname": "X"}} if method == "put" else {}
            resp = getattr(client, method)(
                f"/api/users/{other_id}", headers=_auth(token), **kwargs
            )
            assert resp.status_code == 403
            assert resp.json() == {"error": "You can only access your own profile."}

    def test_update_profile_and_password(self):
        user_id, token = _session()

        resp = client.put(
            f"/api/users/{user_id}",
            headers=_auth(token),
            json={"firstname": "Augusta", "password": "brand-new-pass"},
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] == "User updated"
        assert body["user"]["firstname"] == "Augusta"
        assert client.get(f"/api/users/{user_id}", headers=_auth(token)).status_code == 401
        assert _login().status_code == 401
        assert _login(password="brand-new-pass").status_code == 200

    def test_update_phone_to_taken_number(self):
        user_id, token = _session()
        _register(phone="5550001111")

        resp = client.put(
            f"/api/users/{user_id}", headers=_auth(token), json={"phone": "5550001111"}
        )

        assert resp.status_code == 409

    def test_delete_account_revokes_tokens(self):
        user_id, token = _session()

        resp = client.delete(f"/api/users/{user_id}", headers=_auth(token))

        assert resp.status_code == 200
        assert resp.json() == {"success": "User deleted"}
        assert client.get("/api/users/me", headers=_auth(token)).status_code == 401
        assert _login().status_code == 401

    def test_non_numeric_user_id(self):
        _, token = _session()

        resp = client.get("/api/users/abc", headers=_auth(token))

        assert resp.status_code == 400
        assert resp.json()["errors"][0]["field"] == "user_id"
