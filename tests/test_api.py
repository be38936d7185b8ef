"""End-to-end tests for the HTTP surface, run against the in-memory store."""

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import TEST_PASSWORD, FakeClock
from trustcore import app as app_module
from trustcore.api.schemas import ErrorBody
from trustcore.service import errors
from trustcore.service.runtime import reset_runtime_for_tests
from trustcore.storage.errors import StorageUnavailable
from trustcore.storage.models import Role


@pytest.fixture
def api_clock():
    return FakeClock()


@pytest.fixture
def runtime(api_clock):
    return reset_runtime_for_tests(clock=api_clock)


@pytest.fixture
def client(runtime):
    return TestClient(app_module.app)


@pytest.fixture
def org(runtime):
    return runtime.store.create_organization("Acme")


def _account(runtime, org, email, role):
    account = runtime.store.create_account(
        email, organization_id=org.id, role=role, first_name=email.split("@")[0]
    )
    runtime.store.save_password(account.id, *runtime.hasher.hash_with_algo(TEST_PASSWORD))
    return account


@pytest.fixture
def admin(runtime, org):
    return _account(runtime, org, "admin@acme.test", Role.ADMIN)


@pytest.fixture
def member(runtime, org):
    return _account(runtime, org, "member@acme.test", Role.MEMBER)


def _sign_in(client, email, password=TEST_PASSWORD, code=None):
    body = {"email": email, "password": password}
    if code is not None:
        body["code"] = code
    return client.post("/v1/service-tokens", json=body)


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_token(client, admin):
    response = _sign_in(client, admin.email)
    assert response.status_code == 200
    return response.json()["data"]["token"]


class TestEnvelope:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["store"] == "MemoryStore"

    def test_request_id_is_echoed(self, client, admin_token):
        response = client.get(
            "/v1/internal/whoami", headers={**_auth(admin_token), "X-Request-ID": "req-42"}
        )
        assert response.headers["X-Request-ID"] == "req-42"
        assert response.json()["request_id"] == "req-42"

    def test_unknown_route(self, client):
        response = client.get("/v1/nowhere")
        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"

    def test_validation_errors_do_not_echo_input(self, client):
        response = client.post("/v1/service-tokens", json={"password": "s3cret-value"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert "s3cret-value" not in response.text

    def test_unexpected_fault_is_server_error(self, runtime, admin, monkeypatch):
        def boom(_email):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(runtime.store, "get_account_by_email", boom)
        client = TestClient(app_module.app, raise_server_exceptions=False)
        response = _sign_in(client, admin.email)
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert "disk on fire" not in response.text

    def test_storage_outage_is_503(self, runtime, admin, monkeypatch):
        def down(_email):
            raise StorageUnavailable("credential store unavailable")

        monkeypatch.setattr(runtime.store, "get_account_by_email", down)
        client = TestClient(app_module.app, raise_server_exceptions=False)
        response = _sign_in(client, admin.email)
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "server_error"


@pytest.mark.parametrize(
    "error_class",
    [
        cls
        for cls in vars(errors).values()
        if isinstance(cls, type) and issubclass(cls, errors.ServiceError)
    ],
)
def test_every_service_error_code_is_renderable(error_class):
    assert ErrorBody(code=error_class.error_code, message="x").code == error_class.error_code


class TestServiceTokens:
    def test_sign_in_and_whoami(self, client, admin, org, admin_token):
        response = client.get("/v1/internal/whoami", headers=_auth(admin_token))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["account_id"] == admin.id
        assert data["role"] == "admin"
        assert data["organization_id"] == org.id
        assert data["second_factor_verified"] is False

    def test_wrong_password(self, client, admin):
        response = _sign_in(client, admin.email, password="wrong-password")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_unknown_email_looks_like_wrong_password(self, client):
        response = _sign_in(client, "ghost@acme.test")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_missing_token(self, client):
        response = client.get("/v1/internal/whoami")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_forged_token(self, client):
        response = client.get("/v1/internal/whoami", headers=_auth("a.b.c"))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_signature"

    def test_expired_token(self, client, admin_token, api_clock):
        api_clock.advance(hours=1)
        response = client.get("/v1/internal/whoami", headers=_auth(admin_token))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "expired"


def _enable_two_factor(client, runtime, token, api_clock):
    setup = client.post("/v1/auth/2fa", headers=_auth(token)).json()["data"]
    code = runtime.totp_engine.generate_code(setup["secret"], api_clock())
    response = client.put("/v1/auth/2fa", headers=_auth(token), json={"code": code})
    assert response.status_code == 200
    return setup["secret"], response.json()["data"]["backup_codes"]


class TestTwoFactor:
    def test_setup_and_enable(self, client, runtime, admin_token, api_clock):
        status = client.get("/v1/auth/2fa", headers=_auth(admin_token)).json()["data"]
        assert status == {"enabled": False, "pending": False, "backup_codes_remaining": 0}

        setup = client.post("/v1/auth/2fa", headers=_auth(admin_token))
        assert setup.status_code == 200
        assert setup.json()["data"]["otpauth_uri"].startswith("otpauth://totp/")

        _secret, codes = _enable_two_factor(client, runtime, admin_token, api_clock)
        assert len(codes) == 8
        status = client.get("/v1/auth/2fa", headers=_auth(admin_token)).json()["data"]
        assert status["enabled"] is True
        assert status["backup_codes_remaining"] == 8

    def test_enable_with_bad_code(self, client, admin_token):
        client.post("/v1/auth/2fa", headers=_auth(admin_token))
        response = client.put("/v1/auth/2fa", headers=_auth(admin_token), json={"code": "abc"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_code"

    def test_enable_without_setup(self, client, admin_token):
        response = client.put("/v1/auth/2fa", headers=_auth(admin_token), json={"code": "123456"})
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "not_initialized"

    def test_disable_requires_verified_second_factor(
        self, client, runtime, admin_token, api_clock
    ):
        _enable_two_factor(client, runtime, admin_token, api_clock)
        response = client.request(
            "DELETE", "/v1/auth/2fa", headers=_auth(admin_token), json={"password": TEST_PASSWORD}
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_step_up_then_disable(self, client, runtime, admin_token, api_clock):
        _secret, codes = _enable_two_factor(client, runtime, admin_token, api_clock)

        stepped = client.post(
            "/v1/auth/2fa/verify", headers=_auth(admin_token), json={"code": codes[0]}
        )
        assert stepped.status_code == 200
        data = stepped.json()["data"]
        assert data["method"] == "backup_code"
        assert data["remaining_backup_codes"] == 7
        mfa_token = data["token"]
        whoami = client.get("/v1/internal/whoami", headers=_auth(mfa_token)).json()["data"]
        assert whoami["second_factor_verified"] is True

        wrong = client.request(
            "DELETE", "/v1/auth/2fa", headers=_auth(mfa_token), json={"password": "nope"}
        )
        assert wrong.status_code == 401
        assert wrong.json()["error"]["code"] == "invalid_password"

        response = client.request(
            "DELETE", "/v1/auth/2fa", headers=_auth(mfa_token), json={"password": TEST_PASSWORD}
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "disabled"

    def test_verify_rejects_reused_backup_code(self, client, runtime, admin_token, api_clock):
        _secret, codes = _enable_two_factor(client, runtime, admin_token, api_clock)
        client.post("/v1/auth/2fa/verify", headers=_auth(admin_token), json={"code": codes[1]})
        again = client.post(
            "/v1/auth/2fa/verify", headers=_auth(admin_token), json={"code": codes[1]}
        )
        assert again.status_code == 401
        assert again.json()["error"]["code"] == "invalid_code"

    def test_sign_in_with_totp(self, client, runtime, admin, admin_token, api_clock):
        secret, _codes = _enable_two_factor(client, runtime, admin_token, api_clock)
        api_clock.advance(seconds=30)
        code = runtime.totp_engine.generate_code(secret, api_clock())

        response = _sign_in(client, admin.email, code=code)
        assert response.status_code == 200
        assert response.json()["data"]["second_factor_verified"] is True

        replay = _sign_in(client, admin.email, code=code)
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "invalid_code"

    def test_regenerate_backup_codes(self, client, runtime, admin, admin_token, api_clock):
        secret, old_codes = _enable_two_factor(client, runtime, admin_token, api_clock)
        api_clock.advance(seconds=30)
        code = runtime.totp_engine.generate_code(secret, api_clock())
        mfa_token = _sign_in(client, admin.email, code=code).json()["data"]["token"]

        response = client.post(
            "/v1/auth/2fa/backup-codes", headers=_auth(mfa_token), json={"password": TEST_PASSWORD}
        )
        assert response.status_code == 200
        new_codes = response.json()["data"]["backup_codes"]
        assert len(new_codes) == 8
        assert set(new_codes).isdisjoint(old_codes)

        stale = client.post(
            "/v1/auth/2fa/verify", headers=_auth(admin_token), json={"code": old_codes[0]}
        )
        assert stale.status_code == 401


class TestInvitations:
    def test_full_flow(self, client, runtime, org, admin_token):
        created = client.post(
            "/v1/invitations",
            headers=_auth(admin_token),
            json={"email": "Bob@X.com", "role": "member"},
        )
        assert created.status_code == 201
        data = created.json()["data"]
        assert data["invitation"]["email"] == "bob@x.com"
        assert data["invitation"]["status"] == "pending"
        token = data["invite_url"].rsplit("/", 1)[1]

        listed = client.get("/v1/invitations", headers=_auth(admin_token)).json()["data"]
        assert [item["email"] for item in listed["items"]] == ["bob@x.com"]

        details = client.get(f"/v1/invitations/{token}").json()["data"]
        assert details["organization_name"] == "Acme"
        assert details["existing_user"] is False

        accepted = client.post(
            f"/v1/invitations/{token}/accept",
            json={"first_name": "Bob", "password": "bob-password-1"},
        )
        assert accepted.status_code == 200
        assert accepted.json()["data"]["created"] is True

        again = client.post(
            f"/v1/invitations/{token}/accept",
            json={"first_name": "Bob", "password": "bob-password-1"},
        )
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "already_resolved"

        signed_in = _sign_in(client, "bob@x.com", password="bob-password-1")
        assert signed_in.status_code == 200

    def test_member_cannot_invite(self, client, member):
        token = _sign_in(client, member.email).json()["data"]["token"]
        response = client.post(
            "/v1/invitations", headers=_auth(token), json={"email": "bob@x.com"}
        )
        assert response.status_code == 403

    def test_duplicates(self, client, member, admin_token):
        payload = {"email": "bob@x.com", "role": "member"}
        client.post("/v1/invitations", headers=_auth(admin_token), json=payload)
        dup = client.post("/v1/invitations", headers=_auth(admin_token), json=payload)
        assert dup.status_code == 409
        assert dup.json()["error"]["code"] == "duplicate_invite"

        existing = client.post(
            "/v1/invitations", headers=_auth(admin_token), json={"email": member.email}
        )
        assert existing.json()["error"]["code"] == "duplicate_member"

    def test_invalid_role_rejected_by_schema(self, client, admin_token):
        response = client.post(
            "/v1/invitations", headers=_auth(admin_token), json={"email": "b@x.com", "role": "owner"}
        )
        assert response.status_code == 400

    def test_expired_invitation(self, client, admin_token, api_clock):
        created = client.post(
            "/v1/invitations", headers=_auth(admin_token), json={"email": "bob@x.com"}
        ).json()["data"]
        token = created["invite_url"].rsplit("/", 1)[1]
        api_clock.advance(days=7)

        response = client.get(f"/v1/invitations/{token}")
        assert response.status_code == 410
        assert response.json()["error"]["code"] == "expired"

    def test_resend_and_cancel(self, client, admin_token):
        created = client.post(
            "/v1/invitations", headers=_auth(admin_token), json={"email": "bob@x.com"}
        ).json()["data"]
        invitation_id = created["invitation"]["id"]
        old_token = created["invite_url"].rsplit("/", 1)[1]

        resent = client.post(
            f"/v1/invitations/{invitation_id}/resend", headers=_auth(admin_token)
        )
        assert resent.status_code == 200
        new_token = resent.json()["data"]["invite_url"].rsplit("/", 1)[1]
        assert new_token != old_token
        assert client.get(f"/v1/invitations/{old_token}").status_code == 404

        cancelled = client.delete(f"/v1/invitations/{invitation_id}", headers=_auth(admin_token))
        assert cancelled.status_code == 200
        assert cancelled.json()["data"]["status"] == "cancelled"
        assert client.get(f"/v1/invitations/{new_token}").status_code == 409


class TestWebhooks:
    def test_secret_shown_only_on_create_and_rotate(self, client, admin_token):
        created = client.post(
            "/v1/webhooks",
            headers=_auth(admin_token),
            json={"name": "Billing", "url": "https://hooks.acme.test/b", "events": ["invoice.paid"]},
        )
        assert created.status_code == 201
        data = created.json()["data"]
        secret = data["signing_secret"]
        assert secret.startswith("whsec_")
        webhook_id = data["webhook"]["id"]

        listed = client.get("/v1/webhooks", headers=_auth(admin_token))
        assert secret not in listed.text
        assert listed.json()["data"]["items"][0]["status"] == "active"

        fetched = client.get(f"/v1/webhooks/{webhook_id}", headers=_auth(admin_token))
        assert fetched.status_code == 200
        assert "signing_secret" not in fetched.json()["data"]

        rotated = client.post(f"/v1/webhooks/{webhook_id}/secret", headers=_auth(admin_token))
        assert rotated.status_code == 200
        assert rotated.json()["data"]["signing_secret"] != secret

    def test_plain_http_rejected(self, client, admin_token):
        response = client.post(
            "/v1/webhooks",
            headers=_auth(admin_token),
            json={"name": "Insecure", "url": "http://hooks.acme.test", "events": ["x"]},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_unknown_webhook(self, client, admin_token):
        response = client.get("/v1/webhooks/missing", headers=_auth(admin_token))
        assert response.status_code == 404

    def test_update_disable_and_delete(self, client, admin_token):
        created = client.post(
            "/v1/webhooks",
            headers=_auth(admin_token),
            json={"name": "Billing", "url": "https://hooks.acme.test/b", "events": ["a"]},
        ).json()["data"]
        webhook_id = created["webhook"]["id"]

        updated = client.put(
            f"/v1/webhooks/{webhook_id}",
            headers=_auth(admin_token),
            json={"name": "Payments", "enabled": False},
        )
        assert updated.status_code == 200
        data = updated.json()["data"]
        assert data["name"] == "Payments"
        assert data["status"] == "inactive"
        assert "signing_secret" not in data

        bad = client.put(
            f"/v1/webhooks/{webhook_id}",
            headers=_auth(admin_token),
            json={"url": "http://hooks.acme.test"},
        )
        assert bad.status_code == 400

        deleted = client.delete(f"/v1/webhooks/{webhook_id}", headers=_auth(admin_token))
        assert deleted.status_code == 200
        assert deleted.json()["data"]["status"] == "deleted"
        missing = client.get(f"/v1/webhooks/{webhook_id}", headers=_auth(admin_token))
        assert missing.status_code == 404

    def test_send_test_event(self, client, runtime, admin_token):
        received = []

        def handler(request):
            received.append(request)
            return httpx.Response(200)

        runtime.webhooks.transport = httpx.MockTransport(handler)
        created = client.post(
            "/v1/webhooks",
            headers=_auth(admin_token),
            json={"name": "Billing", "url": "https://hooks.acme.test/b", "events": ["a"]},
        ).json()["data"]
        webhook_id = created["webhook"]["id"]

        response = client.post(f"/v1/webhooks/{webhook_id}/test", headers=_auth(admin_token))

        assert response.status_code == 200
        assert response.json()["data"] == {"success": True, "status_code": 200, "error": None}
        request = received[0]
        assert runtime.webhooks.verify_signature(
            request.content, request.headers["X-Webhook-Signature"], created["signing_secret"]
        )


class TestSecondFactorGate:
    def test_password_only_token_cannot_administer(
        self, client, runtime, admin, admin_token, api_clock
    ):
        _enable_two_factor(client, runtime, admin_token, api_clock)
        password_only = _sign_in(client, admin.email)
        assert password_only.status_code == 200
        token = password_only.json()["data"]["token"]
        assert password_only.json()["data"]["second_factor_verified"] is False

        attempts = [
            client.post(
                "/v1/invitations",
                headers=_auth(token),
                json={"email": "eve@x.com", "role": "admin"},
            ),
            client.get("/v1/invitations", headers=_auth(token)),
            client.post(
                "/v1/webhooks",
                headers=_auth(token),
                json={"name": "Exfil", "url": "https://evil.test/h", "events": ["a"]},
            ),
            client.get("/v1/webhooks", headers=_auth(token)),
        ]
        for response in attempts:
            assert response.status_code == 403
            assert response.json()["error"]["code"] == "second_factor_required"
        assert runtime.store.list_webhooks(admin.organization_id) == []

    def test_stepped_up_token_can_administer(self, client, runtime, admin_token, api_clock):
        _secret, codes = _enable_two_factor(client, runtime, admin_token, api_clock)
        stepped = client.post(
            "/v1/auth/2fa/verify", headers=_auth(admin_token), json={"code": codes[0]}
        ).json()["data"]["token"]

        response = client.post(
            "/v1/invitations", headers=_auth(stepped), json={"email": "bob@x.com"}
        )
        assert response.status_code == 201

    def test_accounts_without_two_factor_are_not_gated(self, client, admin_token):
        response = client.get("/v1/webhooks", headers=_auth(admin_token))
        assert response.status_code == 200


class TestNonAsciiInput:
    def test_unicode_digit_code_is_invalid_not_a_fault(
        self, client, runtime, admin_token, api_clock
    ):
        _enable_two_factor(client, runtime, admin_token, api_clock)
        response = client.post(
            "/v1/auth/2fa/verify", headers=_auth(admin_token), json={"code": "١٢٣٤٥٦"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_code"

    def test_non_ascii_bearer_token(self, client, admin_token):
        header, payload, _signature = admin_token.split(".")
        forged = f"Bearer {header}.{payload}.é".encode("utf-8")
        response = client.get("/v1/internal/whoami", headers={"Authorization": forged})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_signature"
