import asyncio
import base64
import inspect
import json
import os
import sys
import tempfile
from pathlib import Path
from urllib.parse import parse_qs

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="msusers_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("AZURE_CLIENT_ID", "test-client-id")
os.environ.setdefault("AZURE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("AZURE_TENANT_ID", "test-tenant")
os.environ.setdefault("AZURE_REDIRECT_URI", "https://app.example.test/auth/callback")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from msusers.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

GRAPH_ME_URL = "https://graph.microsoft.com/v1.0/me"


def make_id_token(claims: dict) -> str:
    """Unsigned JWT-shaped id token; the service never checks its signature."""

    def _seg(data: dict) -> str:
        raw = json.dumps(data, separators=(",", ":")).encode()
        return base64.urlsafe_b64encode(raw).decode().rstrip("=")

    return f"{_seg({'alg': 'RS256', 'typ': 'JWT'})}.{_seg(claims)}.signature"


class FakeAzure:
    """In-process stand-in for the Azure AD token endpoint and Graph ``/me``."""

    def __init__(self):
        self.accounts: dict[str, dict] = {}
        self.codes: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.fail_with: Exception | None = None

    def add_account(
        self,
        external_id: str,
        *,
        mail: str | None = None,
        upn: str | None = None,
        name: str | None = None,
        tenant_id: str = "azure-tenant-1",
    ) -> str:
        """Register an account and return a provider access token for it."""
        access_token = f"azure-at-{external_id}"
        self.accounts[access_token] = {
            "id": external_id,
            "mail": mail,
            "userPrincipalName": upn,
            "displayName": name,
            "_tid": tenant_id,
        }
        return access_token

    def add_code(self, code: str, access_token: str) -> None:
        account = self.accounts[access_token]
        self.codes[code] = {
            "access_token": access_token,
            "token_type": "Bearer",
            "id_token": make_id_token({"oid": account["id"], "tid": account["_tid"]}),
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        if request.url.path.endswith("/oauth2/v2.0/token"):
            form = parse_qs(request.content.decode())
            payload = self.codes.get(form.get("code", [""])[0])
            if payload is None:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json=payload)
        if str(request.url) == GRAPH_ME_URL:
            token = request.headers.get("Authorization", "").removeprefix("Bearer ")
            account = self.accounts.get(token)
            if account is None:
                return httpx.Response(401, json={"error": {"code": "InvalidAuthenticationToken"}})
            body = {k: v for k, v in account.items() if not k.startswith("_")}
            return httpx.Response(200, json=body)
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def fake_azure():
    """Route the runtime's identity bridge to a :class:`FakeAzure`."""
    fake = FakeAzure()
    get_runtime().identity._transport = fake.transport
    return fake


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
