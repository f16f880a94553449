import asyncio
import inspect
import os
import sys
import tempfile
from datetime import timezone
from email.utils import format_datetime
from pathlib import Path

# Configure the client before any civicsession import reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="civicsession_test_")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("CIVIC_CREDENTIAL_BACKEND", "memory")
os.environ.setdefault("CIVIC_CREDENTIAL_PATH", os.path.join(_test_tmp_dir, "credentials.json"))
os.environ.setdefault("CIVIC_API_BASE_URL", "http://api.test")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from civicsession.config import Settings  # noqa: E402
from civicsession.service.runtime import ClientRuntime, reset_runtime_for_tests  # noqa: E402
from civicsession.service.transport import HttpxTransport  # noqa: E402
from civicsession.storage.kv import MemoryKeyValueStore  # noqa: E402

BASE_URL = "http://api.test"


class FakeServer:
    """Route table behind ``httpx.MockTransport``.

    Handlers take the ``httpx.Request`` and return an ``httpx.Response``
    (or an awaitable of one, so tests can hold a response open).
    """

    def __init__(self) -> None:
        self.routes = {}
        self.calls = []

    def route(self, method, path, handler):
        self.routes[(method.upper(), path)] = handler

    def count(self, method, path):
        return sum(1 for m, p, _ in self.calls if m == method.upper() and p == path)

    def bearers(self, method, path):
        return [auth for m, p, auth in self.calls if m == method.upper() and p == path]

    @staticmethod
    def ok(data=None, status=200, at=None):
        headers = {}
        if at is not None:
            headers["Date"] = format_datetime(at.astimezone(timezone.utc), usegmt=True)
        if status == 204:
            return httpx.Response(204, headers=headers)
        return httpx.Response(status, json={"success": True, "data": data}, headers=headers)

    @staticmethod
    def fail(status, message="failed"):
        return httpx.Response(status, json={"success": False, "message": message})

    async def __call__(self, request):
        path = request.url.path
        self.calls.append((request.method, path, request.headers.get("Authorization")))
        handler = self.routes.get((request.method, path))
        if handler is None:
            return self.fail(404, f"no route for {request.method} {path}")
        result = handler(request)
        if inspect.isawaitable(result):
            result = await result
        return result


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def settings():
    return Settings(
        api_base_url=BASE_URL,
        credential_backend="memory",
        refresh_timeout_seconds=5,
        test_mode=True,
    )


@pytest.fixture
def runtime(server, settings):
    client = httpx.AsyncClient(transport=httpx.MockTransport(server), base_url=BASE_URL)
    transport = HttpxTransport(BASE_URL, client=client)
    return ClientRuntime(settings, transport=transport, kv=MemoryKeyValueStore())


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield


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
