"""End-to-end tests for POST /api/generate.

The runtime is rebuilt per test with the real AuthVerifier (against a mocked
JWKS endpoint), the in-memory counter store, a scripted generative service and
a fake search backend.
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN_SUBJECT
from quillgate.app import app
from quillgate.service.errors import UpstreamFailure
from quillgate.service.quota import quota_key
from quillgate.service.runtime import reset_runtime_for_tests
from quillgate.storage.models import Identity


def _body(text="Explain photosynthesis", **extra):
    body = {"conversation": [{"role": "user", "parts": [{"text": text}]}]}
    body.update(extra)
    return body


@pytest.fixture
def gateway(verifier, scripted_llm, fake_search, replies):
    """Build a client over a runtime with scripted collaborators."""

    def _build(script=None, search=None):
        llm = scripted_llm(
            script if script is not None else [replies.text("research notes"), replies.text("Final article")]
        )
        runtime = reset_runtime_for_tests(auth=verifier, llm=llm, search=search or fake_search())
        return TestClient(app), runtime, llm

    return _build


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestGenerateSuccess:
    def test_valid_request_returns_article(self, gateway, issue_token):
        client, runtime, llm = gateway()

        response = client.post("/api/generate", json=_body(), headers=_auth(issue_token()))

        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "ok"
        assert payload["error"] is None
        assert payload["data"]["text"] == "Final article"
        assert len(llm.calls) == 2
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"
        assert int(response.headers["X-RateLimit-Reset"]) > 0
        stages = [entry["stage"] for entry in payload["data"]["trace"]]
        assert stages[:3] == ["received", "authenticated", "quota_checked"]
        assert stages[-1] == "completed"

    def test_request_id_is_echoed(self, gateway, issue_token):
        client, _, _ = gateway()

        response = client.post(
            "/api/generate",
            json=_body(),
            headers={**_auth(issue_token()), "X-Request-ID": "req-123"},
        )

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_legacy_field_names_are_accepted(self, gateway, issue_token):
        client, _, llm = gateway()
        body = {
            "chatHistory": [{"role": "user", "parts": [{"text": "Write about tides"}]}],
            "systemPrompt": "Keep it short",
        }

        response = client.post("/api/generate", json=body, headers=_auth(issue_token()))

        assert response.status_code == 200
        assert "Keep it short" in llm.calls[1]["turns"][0].text

    def test_search_round_then_writer(self, gateway, issue_token, replies, fake_search):
        search = fake_search()
        client, _, llm = gateway(
            [
                replies.tools("current exchange rate"),
                replies.text("rates"),
                replies.text("Exchange rate article"),
            ],
            search=search,
        )

        response = client.post(
            "/api/generate", json=_body("Exchange rates today?"), headers=_auth(issue_token())
        )

        assert response.status_code == 200
        assert response.json()["data"]["tool_rounds"] == 1
        assert search.queries == ["current exchange rate"]
        assert len(llm.calls) == 3


class TestAuthentication:
    def test_missing_header_is_rejected_before_quota_and_pipeline(self, gateway, issue_token):
        client, runtime, llm = gateway()

        response = client.post("/api/generate", json=_body())

        assert response.status_code == 401
        payload = response.json()
        assert payload["status"] == "error"
        assert payload["error"]["code"] == "unauthorized"
        assert payload["error"]["details"]["reason"] == "missing_credential"
        assert llm.calls == []
        key = quota_key(Identity(subject="user|alice"))
        assert asyncio.run(runtime.cache.get(key)) is None

    def test_expired_token_signals_reauthentication(self, gateway, issue_token):
        client, _, llm = gateway()
        now = int(time.time())

        response = client.post(
            "/api/generate", json=_body(), headers=_auth(issue_token(iat=now - 700, exp=now - 60))
        )

        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "expired"
        assert 'error="invalid_token"' in response.headers["WWW-Authenticate"]
        assert llm.calls == []

    def test_bad_audience(self, gateway, issue_token):
        client, _, _ = gateway()

        response = client.post(
            "/api/generate", json=_body(), headers=_auth(issue_token(aud="other"))
        )

        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "invalid_claims"
        assert "WWW-Authenticate" not in response.headers

    def test_anonymous_callers_admitted_only_when_enabled(self, gateway, monkeypatch):
        monkeypatch.setenv("ALLOW_ANONYMOUS", "true")
        client, runtime, _ = gateway()

        response = client.post("/api/generate", json=_body())

        assert response.status_code == 200
        key = quota_key(Identity(subject="testclient", anonymous=True))
        assert asyncio.run(runtime.cache.get(key)) == 1


class TestQuota:
    def test_sixth_request_is_rate_limited(self, gateway, issue_token, replies):
        script = []
        for _ in range(5):
            script.extend([replies.text("notes"), replies.text("article")])
        client, _, llm = gateway(script)
        token = issue_token()

        statuses = [
            client.post("/api/generate", json=_body(), headers=_auth(token)).status_code
            for _ in range(6)
        ]

        assert statuses == [200, 200, 200, 200, 200, 429]
        assert len(llm.calls) == 10

    def test_exhausted_quota_returns_429_without_pipeline(self, gateway, issue_token):
        client, runtime, llm = gateway()
        asyncio.run(runtime.cache.set(quota_key(Identity(subject="user|alice")), 5))

        response = client.post("/api/generate", json=_body(), headers=_auth(issue_token()))

        assert response.status_code == 429
        payload = response.json()
        assert payload["error"]["code"] == "rate_limited"
        assert payload["error"]["details"]["retry_after"] > 0
        assert int(response.headers["Retry-After"]) > 0
        assert llm.calls == []

    def test_admin_bypasses_quota_without_counting(self, gateway, issue_token):
        client, runtime, llm = gateway()
        key = quota_key(Identity(subject=ADMIN_SUBJECT))
        asyncio.run(runtime.cache.set(key, 1000))

        response = client.post(
            "/api/generate", json=_body(), headers=_auth(issue_token(sub=ADMIN_SUBJECT))
        )

        assert response.status_code == 200
        assert len(llm.calls) == 2
        assert asyncio.run(runtime.cache.get(key)) == 1000
        assert "X-RateLimit-Remaining" not in response.headers

    def test_quota_is_charged_even_when_pipeline_fails(self, gateway, issue_token, replies):
        client, runtime, _ = gateway([replies.tools(f"q{i}") for i in range(4)])

        response = client.post("/api/generate", json=_body(), headers=_auth(issue_token()))

        assert response.status_code == 500
        assert asyncio.run(runtime.cache.get(quota_key(Identity(subject="user|alice")))) == 1


class TestPipelineFailures:
    def test_tool_loop_exceeded_is_upstream_error(self, gateway, issue_token, replies):
        client, _, llm = gateway([replies.tools(f"q{i}") for i in range(4)])

        response = client.post("/api/generate", json=_body(), headers=_auth(issue_token()))

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "upstream_error"
        assert error["details"] == {"reason": "tool_loop_exceeded", "stage": "researching"}
        assert len(llm.calls) == 4

    def test_upstream_failure_is_500(self, gateway, issue_token):
        client, _, _ = gateway([UpstreamFailure("generative service timed out")])

        response = client.post("/api/generate", json=_body(), headers=_auth(issue_token()))

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "upstream_error"
        assert response.json()["data"] is None

    def test_unconfigured_llm_does_not_spend_quota(self, gateway, issue_token):
        client, runtime, llm = gateway()
        llm.is_configured = False

        response = client.post("/api/generate", json=_body(), headers=_auth(issue_token()))

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert asyncio.run(runtime.cache.get(quota_key(Identity(subject="user|alice")))) is None


class TestValidation:
    """Malformed bodies are rejected with 400 before authentication runs."""

    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"conversation": []},
            {"conversation": "Explain photosynthesis"},
            {"conversation": [{"role": "model", "parts": [{"text": "hi"}]}]},
            {"conversation": [{"role": "tool", "parts": [{"text": "hi"}]}]},
            {"conversation": [{"role": "user", "parts": []}]},
            {"conversation": [{"role": "user", "parts": [{}]}]},
            {"conversation": [{"role": "user", "parts": [{"text": "   "}]}]},
            _body(isAdmin=True),
        ],
    )
    def test_malformed_body(self, gateway, jwks_endpoint, body):
        client, _, llm = gateway()

        response = client.post("/api/generate", json=body)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
        assert jwks_endpoint.fetches == 0
        assert llm.calls == []

    def test_invalid_json(self, gateway, jwks_endpoint):
        client, _, _ = gateway()

        response = client.post(
            "/api/generate",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert jwks_endpoint.fetches == 0


class TestMethodNotAllowed:
    @pytest.mark.parametrize("method", ["get", "put", "delete"])
    def test_other_verbs_are_rejected(self, gateway, method):
        client, _, llm = gateway()

        response = getattr(client, method)("/api/generate")

        assert response.status_code == 405
        assert "POST" in response.headers["Allow"]
        assert response.json()["error"]["code"] == "method_not_allowed"
        assert llm.calls == []
