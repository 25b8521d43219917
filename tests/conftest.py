import asyncio
import inspect
import json
import os
import sys
import time
from pathlib import Path

# Configure the environment before any import that might initialize the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("AUTH_DOMAIN", "issuer.test")
os.environ.setdefault("AUTH_AUDIENCE", "quillgate-api")
os.environ.setdefault("ADMIN_SUBJECT", "admin|root")
os.environ.setdefault("LLM_API_KEY", "test-llm-key")
os.environ.setdefault("QUOTA_LIMIT", "5")
os.environ.setdefault("LOG_JSON", "false")

import httpx  # noqa: E402
import jwt  # noqa: E402
from jwt.algorithms import RSAAlgorithm  # noqa: E402
import pytest  # noqa: E402
import structlog  # noqa: E402
from cryptography.hazmat.primitives import serialization  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from quillgate.service.auth import AuthVerifier, KeySetCache  # noqa: E402
from quillgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from quillgate.storage.models import Generation, ToolCall  # noqa: E402

ISSUER = "https://issuer.test/"
AUDIENCE = "quillgate-api"
ADMIN_SUBJECT = "admin|root"
KEY_ID = "test-key-1"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    structlog.contextvars.clear_contextvars()
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


# ---------------------------------------------------------------------------
# Identity provider fakes
# ---------------------------------------------------------------------------


def _private_pem(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def public_jwk(private_key, kid: str) -> dict:
    jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
    return jwk


@pytest.fixture(scope="session")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def issue_token(signing_key):
    """Build an RS256 token; keyword arguments override default claims."""

    def _issue(*, key=None, kid=KEY_ID, drop=(), **claims):
        now = int(time.time())
        payload = {
            "sub": "user|alice",
            "iss": ISSUER,
            "aud": AUDIENCE,
            "iat": now,
            "exp": now + 600,
        }
        payload.update(claims)
        for name in drop:
            payload.pop(name, None)
        headers = {"kid": kid} if kid else {}
        return jwt.encode(
            payload, _private_pem(key or signing_key), algorithm="RS256", headers=headers
        )

    return _issue


class JWKSEndpoint:
    """httpx MockTransport handler serving a mutable key set and counting fetches."""

    def __init__(self, keys):
        self.keys = list(keys)
        self.fetches = 0
        self.fail = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.fetches += 1
        if self.fail:
            return httpx.Response(503, json={"error": "unavailable"})
        return httpx.Response(200, json={"keys": self.keys})


@pytest.fixture
def jwks_endpoint(signing_key):
    return JWKSEndpoint([public_jwk(signing_key, KEY_ID)])


@pytest.fixture
def verifier(jwks_endpoint):
    client = httpx.AsyncClient(transport=httpx.MockTransport(jwks_endpoint))
    key_sets = KeySetCache(f"{ISSUER}.well-known/jwks.json", client, max_age_seconds=600)
    return AuthVerifier(
        key_sets,
        issuer=ISSUER,
        audience=AUDIENCE,
        admin_subject=ADMIN_SUBJECT,
    )


# ---------------------------------------------------------------------------
# Generative service and search fakes
# ---------------------------------------------------------------------------


class ScriptedLLM:
    """Returns queued generations (or raises queued exceptions) in order."""

    is_configured = True

    def __init__(self, replies=()):
        self.replies = list(replies)
        self.calls = []

    async def generate(self, turns, *, system_instruction=None, tools=None):
        self.calls.append(
            {
                "turns": list(turns),
                "system_instruction": system_instruction,
                "tools": list(tools) if tools else None,
            }
        )
        if not self.replies:
            raise AssertionError("ScriptedLLM ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeSearch:
    """Search stand-in recording queries and tracking concurrent calls."""

    def __init__(self, results=None, error=None, delay=0.0):
        self.results = results or {}
        self.error = error
        self.delay = delay
        self.queries = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def search(self, query):
        self.queries.append(query)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return self.results.get(query, f"1. Result for {query}")
        finally:
            self.in_flight -= 1


def text_reply(text, **usage):
    return Generation(text=text, usage=usage)


def tool_reply(*queries, name="web_search"):
    return Generation(
        tool_calls=[ToolCall(name=name, arguments={"query": query}) for query in queries]
    )


@pytest.fixture
def scripted_llm():
    return ScriptedLLM


@pytest.fixture
def fake_search():
    return FakeSearch


@pytest.fixture
def replies():
    """Helpers for building scripted generations."""

    class _Replies:
        text = staticmethod(text_reply)
        tools = staticmethod(tool_reply)

    return _Replies
