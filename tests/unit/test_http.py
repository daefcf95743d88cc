"""End-to-end tests of the HTTP surface, driven through the ASGI app."""

import base64
from urllib.parse import parse_qs, urlencode, urlparse

import fakeredis
import jwt
import pytest
from fastapi.testclient import TestClient

REDIRECT_URI = "https://app.example.com/callback"
ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}
PASSWORD = "correct horse battery"


def _basic(client_id: str, secret: str) -> dict:
    token = base64.b64encode(f"{client_id}:{secret}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


@pytest.fixture
def app(settings, clock):
    from idserver.main import create_app

    return create_app(
        settings=settings,
        redis_client=fakeredis.FakeAsyncRedis(),
        clock=clock,
        start_sweeper=False,
    )


@pytest.fixture
def http(app):
    from idserver.user.schemas import UserArgs

    with TestClient(app, base_url="https://testserver") as client:
        provider = app.state.provider
        client.portal.call(
            provider.users.create,
            UserArgs(username="alice", password=PASSWORD, email="alice@example.com"),
        )
        response = client.post(
            "/clients",
            headers=ADMIN_HEADERS,
            json={
                "client_id": "web-app",
                "client_secret": "web-app-secret",
                "name": "Data Event Records",
                "allowed_grant_types": ["authorization_code", "refresh_token"],
                "redirect_uris": [REDIRECT_URI],
                "allowed_scopes": ["openid", "profile", "email", "offline_access", "dataEventRecords"],
                "requires_pkce": False,
            },
        )
        assert response.status_code == 201
        response = client.post(
            "/clients",
            headers=ADMIN_HEADERS,
            json={
                "client_id": "tv",
                "public": True,
                "name": "Living Room TV",
                "allowed_grant_types": ["urn:ietf:params:oauth:grant-type:device_code"],
                "allowed_scopes": ["openid", "profile"],
            },
        )
        assert response.status_code == 201
        yield client


def _login(http, scope="openid profile offline_access dataEventRecords", state="st4te") -> str:
    params = {
        "response_type": "code",
        "client_id": "web-app",
        "redirect_uri": REDIRECT_URI,
        "scope": scope,
        "state": state,
        "nonce": "n0nce",
    }
    page = http.get(f"/connect/authorize?{urlencode(params)}")
    assert page.status_code == 200
    assert "Data Event Records" in page.text
    response = http.post(
        "/connect/authorize",
        data={**params, "action": "approve", "username": "alice", "password": PASSWORD},
        follow_redirects=False,
    )
    assert response.status_code == 302
    location = response.headers["location"]
    assert location.startswith(REDIRECT_URI)
    query = _query(location)
    assert query["state"] == state
    return query["code"]


def _exchange(http, code):
    return http.post(
        "/connect/token",
        data={"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT_URI},
        headers=_basic("web-app", "web-app-secret"),
    )


class TestAuthorizationCodeFlow:
    def test_full_flow(self, http):
        code = _login(http)
        response = _exchange(http, code)
        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        assert response.headers["pragma"] == "no-cache"
        tokens = response.json()
        assert tokens["token_type"] == "Bearer"
        assert tokens["expires_in"] == 3600
        assert set(tokens) == {
            "access_token",
            "token_type",
            "expires_in",
            "refresh_token",
            "id_token",
            "scope",
        }
        id_claims = jwt.decode(tokens["id_token"], options={"verify_signature": False})
        assert id_claims["nonce"] == "n0nce"
        assert id_claims["iss"] == "https://idp.example.com"

        info = http.get(
            "/connect/userinfo", headers={"Authorization": f"Bearer {tokens['access_token']}"}
        )
        assert info.status_code == 200
        assert info.json()["preferred_username"] == "alice"

        refreshed = http.post(
            "/connect/token",
            data={
                "grant_type": "refresh_token",
                "refresh_token": tokens["refresh_token"],
                "client_id": "web-app",
                "client_secret": "web-app-secret",
            },
        )
        assert refreshed.status_code == 200
        assert refreshed.json()["refresh_token"] != tokens["refresh_token"]

    def test_pkce_client_scenario(self, http):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        registered = http.post(
            "/clients",
            headers=ADMIN_HEADERS,
            json={
                "client_id": "C1",
                "name": "Client One",
                "redirect_uris": ["https://app/cb"],
                "allowed_scopes": ["openid", "dataEventRecords"],
                "requires_pkce": True,
            },
        )
        assert registered.status_code == 201
        secret = registered.json()["client_secret"]
        params = {
            "response_type": "code",
            "client_id": "C1",
            "redirect_uri": "https://app/cb",
            "scope": "openid dataEventRecords",
            "code_challenge": "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM",
            "code_challenge_method": "S256",
        }
        response = http.post(
            "/connect/authorize",
            data={**params, "action": "approve", "username": "alice", "password": PASSWORD},
            follow_redirects=False,
        )
        code = _query(response.headers["location"])["code"]
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": "https://app/cb",
            "code_verifier": verifier,
        }
        tokens = http.post("/connect/token", data=form, headers=_basic("C1", secret))
        assert tokens.status_code == 200
        claims = jwt.decode(tokens.json()["access_token"], options={"verify_signature": False})
        assert claims["aud"] == "C1"
        assert claims["scope"] == "openid dataEventRecords"

        replay = http.post("/connect/token", data=form, headers=_basic("C1", secret))
        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_grant"

    def test_code_reuse(self, http):
        code = _login(http)
        assert _exchange(http, code).status_code == 200
        response = _exchange(http, code)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    def test_bad_client_secret(self, http):
        code = _login(http)
        response = http.post(
            "/connect/token",
            data={"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT_URI},
            headers=_basic("web-app", "wrong"),
        )
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"
        assert "WWW-Authenticate" in response.headers

    def test_unsupported_grant_type(self, http):
        response = http.post(
            "/connect/token",
            data={"grant_type": "client_credentials"},
            headers=_basic("web-app", "web-app-secret"),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"

    def test_wrong_password_rerenders(self, http):
        response = http.post(
            "/connect/authorize",
            data={
                "response_type": "code",
                "client_id": "web-app",
                "redirect_uri": REDIRECT_URI,
                "scope": "openid",
                "action": "approve",
                "username": "alice",
                "password": "not the password",
            },
            follow_redirects=False,
        )
        assert response.status_code == 400
        assert "Invalid username or password" in response.text

    def test_denied(self, http):
        response = http.post(
            "/connect/authorize",
            data={
                "response_type": "code",
                "client_id": "web-app",
                "redirect_uri": REDIRECT_URI,
                "scope": "openid",
                "state": "abc",
                "action": "deny",
            },
            follow_redirects=False,
        )
        assert response.status_code == 302
        query = _query(response.headers["location"])
        assert query["error"] == "access_denied"
        assert query["state"] == "abc"

    def test_invalid_scope_redirects(self, http):
        params = {
            "response_type": "code",
            "client_id": "web-app",
            "redirect_uri": REDIRECT_URI,
            "scope": "openid roles",
            "state": "abc",
        }
        response = http.get(f"/connect/authorize?{urlencode(params)}", follow_redirects=False)
        assert response.status_code == 302
        assert _query(response.headers["location"])["error"] == "invalid_scope"

    @pytest.mark.parametrize(
        "client_id,redirect_uri",
        [
            ("ghost", REDIRECT_URI),
            ("web-app", "https://evil.example.com/callback"),
        ],
    )
    def test_client_errors_render_page(self, http, client_id, redirect_uri):
        params = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": "openid",
        }
        response = http.get(f"/connect/authorize?{urlencode(params)}", follow_redirects=False)
        assert response.status_code == 400
        assert "location" not in response.headers
        assert "text/html" in response.headers["content-type"]


class TestDeviceFlow:
    def test_device_flow(self, http, clock):
        started = http.post("/connect/device", data={"client_id": "tv", "scope": "openid profile"})
        assert started.status_code == 200
        device = started.json()
        assert device["verification_uri"] == "https://idp.example.com/connect/verify"

        poll = {"grant_type": "urn:ietf:params:oauth:grant-type:device_code", "device_code": device["device_code"], "client_id": "tv"}
        pending = http.post("/connect/token", data=poll)
        assert pending.status_code == 400
        assert pending.json()["error"] == "authorization_pending"

        page = http.get(f"/connect/verify?user_code={device['user_code']}")
        assert page.status_code == 200
        assert "Living Room TV" in page.text

        approved = http.post(
            "/connect/verify",
            data={
                "user_code": device["user_code"].lower(),
                "action": "approve",
                "username": "alice",
                "password": PASSWORD,
            },
        )
        assert approved.status_code == 200
        assert "connected" in approved.text

        clock.advance(device["interval"])
        response = http.post("/connect/token", data=poll)
        assert response.status_code == 200
        assert "access_token" in response.json()

    def test_unknown_user_code(self, http):
        page = http.get("/connect/verify?user_code=AAAA-BBBB")
        assert page.status_code == 400


class TestTokenLifecycleEndpoints:
    def test_introspect_and_revoke(self, http):
        tokens = _exchange(http, _login(http)).json()
        credentials = _basic("web-app", "web-app-secret")

        active = http.post("/connect/introspect", data={"token": tokens["access_token"]}, headers=credentials)
        assert active.status_code == 200
        assert active.json()["active"] is True

        revoked = http.post("/connect/revoke", data={"token": tokens["refresh_token"]}, headers=credentials)
        assert revoked.status_code == 200

        inactive = http.post("/connect/introspect", data={"token": tokens["refresh_token"]}, headers=credentials)
        assert inactive.json() == {"active": False}

        refreshed = http.post(
            "/connect/token",
            data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]},
            headers=credentials,
        )
        assert refreshed.status_code == 400
        assert refreshed.json()["error"] == "invalid_grant"

    def test_revoke_unknown_token(self, http):
        response = http.post(
            "/connect/revoke", data={"token": "garbage"}, headers=_basic("web-app", "web-app-secret")
        )
        assert response.status_code == 200

    def test_userinfo_without_token(self, http):
        response = http.get("/connect/userinfo")
        assert response.status_code == 401
        assert response.headers["www-authenticate"].startswith("Bearer")

    def test_userinfo_rejects_garbage(self, http):
        response = http.get("/connect/userinfo", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_token"

    def test_non_string_kid_is_invalid_token(self, http):
        token = "eyJhbGciOiJSUzI1NiIsImtpZCI6MTIzfQ.e30.c2ln"
        response = http.get("/connect/userinfo", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_token"

        credentials = _basic("web-app", "web-app-secret")
        revoked = http.post("/connect/revoke", data={"token": token}, headers=credentials)
        assert revoked.status_code == 200
        introspected = http.post("/connect/introspect", data={"token": token}, headers=credentials)
        assert introspected.json() == {"active": False}


class TestDiscovery:
    def test_openid_configuration(self, http):
        response = http.get("/.well-known/openid-configuration")
        assert response.status_code == 200
        config = response.json()
        assert config["issuer"] == "https://idp.example.com"
        assert config["token_endpoint"] == "https://idp.example.com/connect/token"
        assert "S256" in config["code_challenge_methods_supported"]
        assert "urn:ietf:params:oauth:grant-type:device_code" in config["grant_types_supported"]
        assert config["id_token_signing_alg_values_supported"] == ["RS256"]

    def test_jwks_verifies_issued_tokens(self, http):
        tokens = _exchange(http, _login(http)).json()
        keys = http.get("/.well-known/jwks.json").json()["keys"]
        kid = jwt.get_unverified_header(tokens["access_token"])["kid"]
        jwk = next(key for key in keys if key["kid"] == kid)
        public_key = jwt.PyJWK(jwk).key
        claims = jwt.decode(
            tokens["access_token"], public_key, algorithms=["RS256"],
            audience="web-app",
            options={"verify_exp": False, "verify_iat": False},
        )
        assert claims["client_id"] == "web-app"


class TestTransport:
    def test_plain_http_rejected(self, app):
        with TestClient(app, base_url="http://testserver") as plain:
            response = plain.get("/.well-known/openid-configuration")
            assert response.status_code == 400
            assert response.json()["error"] == "invalid_request"
            assert plain.get("/health").status_code == 200
            forwarded = plain.get(
                "/.well-known/openid-configuration", headers={"X-Forwarded-Proto": "https"}
            )
            assert forwarded.status_code == 200

    def test_admin_key_required(self, http):
        assert http.get("/clients").status_code == 401
        listed = http.get("/clients", headers=ADMIN_HEADERS)
        assert listed.status_code == 200
        assert {client["client_id"] for client in listed.json()} == {"web-app", "tv"}
        assert all("secret_hash" not in client for client in listed.json())

    def test_update_rejects_non_positive_lifetime(self, http):
        response = http.patch(
            "/clients/web-app", json={"access_token_lifetime": -5}, headers=ADMIN_HEADERS
        )
        assert response.status_code == 422
        fetched = http.get("/clients/web-app", headers=ADMIN_HEADERS).json()
        assert fetched["access_token_lifetime"] is None or fetched["access_token_lifetime"] > 0


    def test_metrics(self, http):
        response = http.get("/metrics")
        assert response.status_code == 200
        assert "idp_tokens_issued_total" in response.text
