"""
HTTP API test suite for the context-data endpoints
"""

import pytest
from fastapi.testclient import TestClient

from context_auth.core.app import create_app, current_user_id
from context_auth.core.config import load_settings
from context_auth.db.fingerprints import FingerprintStore
from context_auth.services.context_auth_service import ContextAuthService

from conftest import CHROME_WINDOWS_UA

USER = "user-1"


@pytest.fixture
def settings(tmp_path):
    cfg = tmp_path / "context-auth.yaml"
    cfg.write_text(
        "db:\n"
        f"  path: {tmp_path / 'api.db'}\n"
        "session:\n"
        "  secret_key: test-secret-key\n"
        "  dev_allow_insecure_cookie: true\n"
        "geolocation:\n"
        "  enabled: false\n"
        "logging:\n"
        "  level: DEBUG\n"
    )
    return load_settings(str(cfg))


@pytest.fixture
def service(settings, cipher):
    return ContextAuthService(FingerprintStore(settings.db_path, cipher), None, 3)


@pytest.fixture
def app(settings, service):
    app = create_app(settings, service=service)
    app.dependency_overrides[current_user_id] = lambda: USER
    return app


@pytest.fixture
def client(app):
    """Test client with the lifespan (DB init, sweep task) running"""
    with TestClient(app) as c:
        yield c


def seed_pending(client, service, fingerprint, attempts=0):
    """Drive the evaluator like repeated sign-ins would; returns the record id"""
    verdict = client.portal.call(service.evaluator.evaluate, USER, fingerprint)
    for _ in range(attempts):
        client.portal.call(service.evaluator.evaluate, USER, fingerprint)
    return verdict.observed.id


class TestAuthentication:

    def test_requires_session(self, app, client):
        app.dependency_overrides.clear()
        for method, path in [("get", "/auth/context-data/primary"),
                             ("get", "/auth/context-data/trusted"),
                             ("patch", "/auth/context-data/block/1"),
                             ("delete", "/auth/context-data/1")]:
            resp = getattr(client, method)(path)
            assert resp.status_code == 401
            assert resp.json()["detail"] == "User not authenticated"

    def test_health(self, client):
        assert client.get("/health").json() == {"ok": True}


class TestPrimaryContext:

    def test_missing_then_recorded(self, client):
        assert client.get("/auth/context-data/primary").status_code == 404

        resp = client.post("/auth/context-data/primary",
                           headers={"User-Agent": CHROME_WINDOWS_UA, "X-Forwarded-For": "1.2.3.4"})
        assert resp.status_code == 200
        assert resp.json() == {"message": "Email verification process was successful"}

        body = client.get("/auth/context-data/primary").json()
        assert body["ip"] == "1.2.3.4"
        assert body["browser"] == "Chrome 120.0.0.0"
        assert body["deviceType"] == "Desktop"
        assert body["country"] == "unknown"
        assert body["firstAdded"] == "just now"

    def test_second_record_keeps_first(self, client):
        client.post("/auth/context-data/primary", headers={"X-Forwarded-For": "1.2.3.4"})
        client.post("/auth/context-data/primary", headers={"X-Forwarded-For": "9.9.9.9"})
        assert client.get("/auth/context-data/primary").json()["ip"] == "1.2.3.4"

    def test_adopt_trusted_context(self, client, service, canonical_fp, paris_fp):
        client.portal.call(service.establish_canonical_context, USER, None, canonical_fp)
        record_id = seed_pending(client, service, paris_fp)

        assert client.patch(f"/auth/context-data/primary/{record_id}").status_code == 409
        client.patch(f"/auth/context-data/trust/{record_id}")
        resp = client.patch(f"/auth/context-data/primary/{record_id}")
        assert resp.status_code == 200
        assert client.get("/auth/context-data/primary").json()["city"] == "Paris"


class TestContextLists:

    def test_blocked_then_unblocked(self, client, service, canonical_fp, paris_fp):
        client.portal.call(service.establish_canonical_context, USER, None, canonical_fp)
        record_id = seed_pending(client, service, paris_fp, attempts=3)

        blocked = client.get("/auth/context-data/blocked").json()
        assert [item["_id"] for item in blocked] == [record_id]
        assert blocked[0]["city"] == "Paris"
        assert blocked[0]["time"] == "just now"
        assert client.get("/auth/context-data/trusted").json() == []

        resp = client.patch(f"/auth/context-data/unblock/{record_id}")
        assert resp.json() == {"message": "Unblocked successfully"}
        assert client.get("/auth/context-data/blocked").json() == []
        assert [item["_id"] for item in client.get("/auth/context-data/trusted").json()] == [record_id]

    def test_block_and_delete(self, client, service, canonical_fp, paris_fp):
        client.portal.call(service.establish_canonical_context, USER, None, canonical_fp)
        record_id = seed_pending(client, service, paris_fp)

        assert client.patch(f"/auth/context-data/block/{record_id}").status_code == 200
        assert len(client.get("/auth/context-data/blocked").json()) == 1

        resp = client.delete(f"/auth/context-data/{record_id}")
        assert resp.json() == {"message": "Data deleted successfully"}
        assert client.get("/auth/context-data/blocked").json() == []
        assert client.delete(f"/auth/context-data/{record_id}").status_code == 404

    def test_trust(self, client, service, canonical_fp, paris_fp):
        client.portal.call(service.establish_canonical_context, USER, None, canonical_fp)
        record_id = seed_pending(client, service, paris_fp)
        resp = client.patch(f"/auth/context-data/trust/{record_id}")
        assert resp.json() == {"message": "Login verified successfully"}
        assert len(client.get("/auth/context-data/trusted").json()) == 1

    def test_other_users_record_is_not_found(self, client, service, canonical_fp, paris_fp):
        client.portal.call(service.establish_canonical_context, "user-2", None, canonical_fp)
        verdict = client.portal.call(service.evaluator.evaluate, "user-2", paris_fp)
        record_id = verdict.observed.id

        for method, path in [("patch", f"/auth/context-data/block/{record_id}"),
                             ("patch", f"/auth/context-data/unblock/{record_id}"),
                             ("patch", f"/auth/context-data/trust/{record_id}"),
                             ("delete", f"/auth/context-data/{record_id}")]:
            assert getattr(client, method)(path).status_code == 404
        record = client.portal.call(service.store.get_pending, record_id)
        assert record.awaiting_verification


class TestSecurityLogs:

    def test_block_shows_up(self, client, service, canonical_fp, paris_fp):
        client.portal.call(service.establish_canonical_context, USER, None, canonical_fp)
        seed_pending(client, service, paris_fp, attempts=3)

        logs = client.get("/auth/security-logs").json()
        assert logs[0]["message"] == "Device blocked due to too many unverified login attempts"
        assert logs[0]["level"] == "warn"
        assert logs[0]["context"]["city"] == "Paris"


class TestSecurityHeaders:

    def test_security_headers(self, client):
        resp = client.get("/health")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["Referrer-Policy"] == "no-referrer"
        assert "default-src 'none'" in resp.headers["Content-Security-Policy"]
        assert resp.headers["X-Request-ID"]

    def test_request_id_echoed(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
