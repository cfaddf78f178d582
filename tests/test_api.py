"""Integration tests for the HTTP surface.

Covers the complete flow:
- signup / signin (and the /login alias)
- token verification and logout
- generate gating (session, entitlement, bypass identity)
- admin entitlement and the payment webhook
- health and static index
"""

import asyncio
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from conftest import BYPASS_IDENTITY
from luaspark.api.routes import _stop_watcher, _watch_disconnect
from luaspark.app import create_app
from luaspark.service.errors import UpstreamFailed, UpstreamTimeout
from luaspark.service.runtime import Runtime


def _signup(client, identity="a@x.com", secret="p1"):
    response = client.post("/signup", json={"identity": identity, "secret": secret})
    assert response.status_code == 200, response.text
    return response.json()["token"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _error_code(response):
    return response.json()["error"]["code"]


class TestSignupSignin:
    def test_signup_then_verify_token(self, client):
        token = _signup(client)

        response = client.post("/verifyToken", headers=_auth(token))

        assert response.status_code == 200
        assert response.json() == {"valid": True, "identity": "a@x.com", "entitled": False}

    def test_signin_with_case_variant_identity(self, client):
        _signup(client, "a@x.com", "p1")

        response = client.post("/signin", json={"identity": "A@X.com", "secret": "p1"})

        assert response.status_code == 200
        body = response.json()
        assert body["entitled"] is False
        verify = client.post("/verifyToken", headers=_auth(body["token"]))
        assert verify.json()["identity"] == "a@x.com"

    def test_login_alias_and_legacy_field_names(self, client):
        client.post("/signup", json={"email": "legacy@x.com", "password": "p1"})

        response = client.post("/login", json={"email": "legacy@x.com", "password": "p1"})

        assert response.status_code == 200
        assert response.json()["token"]

    def test_duplicate_signup_is_conflict(self, client):
        _signup(client, "a@x.com")

        response = client.post("/signup", json={"identity": "A@X.COM", "secret": "other"})

        assert response.status_code == 409
        assert _error_code(response) == "conflict"

    @pytest.mark.parametrize(
        "payload",
        [{}, {"identity": "a@x.com"}, {"secret": "p1"}, {"identity": "  ", "secret": "p1"}],
    )
    def test_signup_requires_identity_and_secret(self, client, payload):
        response = client.post("/signup", json=payload)
        assert response.status_code == 400
        assert _error_code(response) == "validation_error"

    def test_signin_wrong_secret(self, client):
        _signup(client)
        response = client.post("/signin", json={"identity": "a@x.com", "secret": "nope"})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid credentials"

    def test_signin_unknown_identity_looks_like_wrong_secret(self, client):
        response = client.post("/signin", json={"identity": "ghost@x.com", "secret": "p1"})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid credentials"

    def test_each_signin_issues_a_new_token(self, client):
        first = _signup(client)
        second = client.post("/signin", json={"identity": "a@x.com", "secret": "p1"}).json()["token"]
        assert first != second
        assert client.post("/verifyToken", headers=_auth(first)).status_code == 200
        assert client.post("/verifyToken", headers=_auth(second)).status_code == 200


class TestVerifyAndLogout:
    def test_missing_or_unknown_token(self, client):
        assert client.post("/verifyToken").status_code == 401
        response = client.post("/verifyToken", headers=_auth("bogus"))
        assert response.status_code == 401
        assert _error_code(response) == "unauthorized"

    def test_raw_token_without_bearer_prefix(self, client):
        token = _signup(client)
        response = client.post("/verifyToken", headers={"Authorization": token})
        assert response.status_code == 200

    def test_logout_revokes_presented_token(self, client):
        token = _signup(client)
        other = client.post("/signin", json={"identity": "a@x.com", "secret": "p1"}).json()["token"]

        response = client.post("/logout", headers=_auth(token))

        assert response.json() == {"ok": True, "revoked": 1}
        assert client.post("/verifyToken", headers=_auth(token)).status_code == 401
        assert client.post("/verifyToken", headers=_auth(other)).status_code == 200

    def test_logout_all_revokes_every_token(self, client):
        token = _signup(client)
        other = client.post("/signin", json={"identity": "a@x.com", "secret": "p1"}).json()["token"]

        response = client.post("/logout", headers=_auth(token), json={"all": True})

        assert response.json()["revoked"] == 2
        assert client.post("/verifyToken", headers=_auth(other)).status_code == 401


class TestGenerate:
    def test_requires_session(self, client, fake_backend):
        response = client.post("/generate", json={"prompt": "make a part"})
        assert response.status_code == 401
        assert fake_backend.calls == []

    def test_unentitled_identity_gets_payment_required(self, client, fake_backend):
        token = _signup(client)

        response = client.post("/generate", headers=_auth(token), json={"prompt": "make a part"})

        assert response.status_code == 402
        assert _error_code(response) == "payment_required"
        assert fake_backend.calls == []

    def test_mark_entitled_unlocks_generate(self, client):
        token = _signup(client)
        assert client.post("/generate", headers=_auth(token), json={"prompt": "x"}).status_code == 402

        marked = client.post("/markEntitled", json={"identity": "A@x.com"})
        assert marked.json() == {"ok": True}

        response = client.post("/generate", headers=_auth(token), json={"prompt": "make a part"})
        assert response.status_code == 200
        assert response.json() == {"output": "print(1)", "explanation": "Prints one."}

    def test_bypass_identity_skips_entitlement(self, client):
        token = _signup(client, BYPASS_IDENTITY.upper())

        response = client.post("/generate", headers=_auth(token), json={"prompt": "make a part"})

        assert response.status_code == 200

    @pytest.mark.parametrize("body", [{"prompt": ""}, {"prompt": "   "}, {}, None])
    def test_blank_prompt_is_rejected_before_upstream(self, client, fake_backend, body):
        token = _signup(client, BYPASS_IDENTITY)

        response = client.post("/generate", headers=_auth(token), json=body)

        assert response.status_code == 400
        assert _error_code(response) == "validation_error"
        assert fake_backend.calls == []

    def test_upstream_failure_is_server_error(self, client, fake_backend):
        token = _signup(client, BYPASS_IDENTITY)
        fake_backend.error = UpstreamFailed("failed")

        response = client.post("/generate", headers=_auth(token), json={"prompt": "x"})

        assert response.status_code == 500
        assert _error_code(response) == "upstream_error"

    def test_upstream_timeout_is_gateway_timeout(self, client, fake_backend):
        token = _signup(client, BYPASS_IDENTITY)
        fake_backend.error = UpstreamTimeout("generation did not finish within 60 seconds")

        response = client.post("/generate", headers=_auth(token), json={"prompt": "x"})

        assert response.status_code == 504
        assert _error_code(response) == "upstream_timeout"

    def test_unexpected_backend_error_is_not_leaked(self, client, fake_backend):
        token = _signup(client, BYPASS_IDENTITY)
        fake_backend.error = RuntimeError("api_key=sk-abcdefghijklmnop leaked")

        response = client.post("/generate", headers=_auth(token), json={"prompt": "x"})

        assert response.status_code == 500
        assert "sk-abcdefghijklmnop" not in response.text


class TestMarkEntitled:
    def test_unknown_identity_is_not_found(self, client):
        response = client.post("/markEntitled", json={"identity": "ghost@x.com"})
        assert response.status_code == 404
        assert _error_code(response) == "not_found"

    def test_blank_identity_is_rejected(self, client):
        assert client.post("/markEntitled", json={"identity": " "}).status_code == 400

    def test_admin_key_enforced_when_configured(self, settings, fast_hasher, fake_backend):
        keyed = settings.model_copy(update={"admin_api_key": "admin-key"})
        runtime = Runtime(keyed, hasher=fast_hasher, backend=fake_backend)
        with TestClient(create_app(runtime=runtime)) as client:
            _signup(client)
            denied = client.post("/markEntitled", json={"identity": "a@x.com"})
            wrong = client.post(
                "/markEntitled", json={"identity": "a@x.com"}, headers={"X-Admin-Key": "nope"}
            )
            allowed = client.post(
                "/markEntitled",
                json={"identity": "a@x.com"},
                headers={"X-Admin-Key": "admin-key"},
            )

        assert denied.status_code == 401
        assert wrong.status_code == 401
        assert allowed.status_code == 200
        assert runtime.store.get("a@x.com").entitled is True


class TestPaymentWebhook:
    def test_completed_payment_entitles_existing_identity(self, client):
        token = _signup(client)

        response = client.post(
            "/paypal-webhook", json={"email": "A@X.com", "paymentStatus": "COMPLETED"}
        )

        assert response.json() == {"ok": True, "entitled": True}
        assert client.post("/verifyToken", headers=_auth(token)).json()["entitled"] is True

    def test_payment_before_signup_is_claimed_on_signup(self, client, runtime):
        client.post("/paypal-webhook", json={"identity": "early@x.com", "paymentStatus": "completed"})

        token = _signup(client, "Early@X.com", "p1")

        assert runtime.store.count() == 1
        response = client.post("/generate", headers=_auth(token), json={"prompt": "x"})
        assert response.status_code == 200

    def test_unpaid_record_cannot_sign_in(self, client):
        client.post("/paypal-webhook", json={"identity": "early@x.com", "paymentStatus": "COMPLETED"})
        response = client.post("/signin", json={"identity": "early@x.com", "secret": "p1"})
        assert response.status_code == 401

    def test_other_statuses_create_unentitled_record(self, client, runtime):
        response = client.post(
            "/paypal-webhook", json={"identity": "late@x.com", "paymentStatus": "PENDING"}
        )
        assert response.json() == {"ok": True, "entitled": False}
        record = runtime.store.get("late@x.com")
        assert record is not None
        assert record.entitled is False
        assert record.has_credential is False

    def test_other_statuses_keep_existing_entitlement(self, client, runtime):
        client.post("/paypal-webhook", json={"identity": "a@x.com", "paymentStatus": "COMPLETED"})
        response = client.post(
            "/paypal-webhook", json={"identity": "a@x.com", "paymentStatus": "REFUNDED"}
        )
        assert response.json()["entitled"] is True
        assert runtime.store.count() == 1

    def test_webhook_secret_enforced_when_configured(self, settings, fast_hasher, fake_backend):
        keyed = settings.model_copy(update={"webhook_secret": "hook"})
        runtime = Runtime(keyed, hasher=fast_hasher, backend=fake_backend)
        payload = {"identity": "a@x.com", "paymentStatus": "COMPLETED"}
        with TestClient(create_app(runtime=runtime)) as client:
            denied = client.post("/paypal-webhook", json=payload)
            allowed = client.post("/paypal-webhook", json=payload, headers={"X-Webhook-Secret": "hook"})

        assert denied.status_code == 401
        assert allowed.json()["entitled"] is True


class TestAppSurface:
    def test_healthz(self, client):
        _signup(client)
        body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["identities"] == 1
        assert body["sessions"] == 1
        assert body["backend"] == "fake"

    def test_request_id_is_echoed(self, client):
        response = client.post(
            "/verifyToken", headers={"X-Request-ID": "req-123", "Authorization": "Bearer bogus"}
        )
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_security_headers(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_index_missing_is_not_found(self, client):
        response = client.get("/")
        assert response.status_code == 404
        assert _error_code(response) == "not_found"

    def test_static_index_served_when_present(self, runtime, settings, tmp_path):
        public = tmp_path / "public"
        public.mkdir()
        (public / "index.html").write_text("<h1>LuaSpark</h1>")
        (public / "app.js").write_text("console.log('hi')")

        with TestClient(create_app(runtime=runtime)) as client:
            index = client.get("/")
            asset = client.get("/app.js")

        assert index.status_code == 200
        assert "LuaSpark" in index.text
        assert asset.status_code == 200
        assert asset.text == "console.log('hi')"

    def test_api_routes_win_over_public_files(self, runtime, tmp_path):
        public = tmp_path / "public"
        public.mkdir()
        (public / "healthz").write_text("not the health check")

        with TestClient(create_app(runtime=runtime)) as client:
            health = client.get("/healthz")
            missing = client.get("/nope.js")

        assert health.json()["status"] == "healthy"
        assert missing.status_code == 404
        assert _error_code(missing) == "not_found"

    def test_shutdown_flushes_store_and_closes_backend(self, runtime, fake_backend, users_path):
        with TestClient(create_app(runtime=runtime)) as client:
            _signup(client)
            runtime.store.append_memory("a@x.com", "user", "pending")
            assert runtime.store.dirty is True

        assert fake_backend.closed is True
        assert runtime.store.dirty is False
        assert "pending" in users_path.read_text()


class _SlowDisconnectCheck:
    """Request stand-in whose disconnect check absorbs cancellation like anyio does."""

    url = SimpleNamespace(path="/generate")

    def __init__(self):
        self.checks = 0

    async def is_disconnected(self):
        self.checks += 1
        try:
            await asyncio.sleep(0.05)
        except asyncio.CancelledError:
            pass
        return False


class TestDisconnectWatcher:
    async def test_stop_returns_when_cancellation_is_absorbed(self):
        request = _SlowDisconnectCheck()
        cancel_event = asyncio.Event()
        watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
        await asyncio.sleep(0.01)
        assert request.checks == 1

        await asyncio.wait_for(_stop_watcher(watcher, cancel_event), timeout=1.0)

        assert watcher.done()

    async def test_disconnect_sets_cancel_event(self):
        request = SimpleNamespace(url=SimpleNamespace(path="/generate"))

        async def _gone():
            return True

        request.is_disconnected = _gone
        cancel_event = asyncio.Event()

        await asyncio.wait_for(_watch_disconnect(request, cancel_event), timeout=1.0)

        assert cancel_event.is_set()

    def test_failed_generations_do_not_stall_the_next_request(self, client, fake_backend):
        token = _signup(client, BYPASS_IDENTITY)
        fake_backend.error = UpstreamFailed("failed")
        for _ in range(3):
            response = client.post("/generate", headers=_auth(token), json={"prompt": "x"})
            assert response.status_code == 500

        fake_backend.error = None
        response = client.post("/generate", headers=_auth(token), json={"prompt": "x"})
        assert response.status_code == 200
