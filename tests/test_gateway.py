"""Tests for the authenticated request gateway (401 -> refresh -> one retry)."""

import asyncio

import pytest

from civicsession.service.errors import (
    ApiRequestError,
    NotFoundError,
    ServerFaultError,
    SessionExpiredError,
)
from civicsession.service.gateway import Attempt, Decision, decide
from civicsession.service.transport import ApiRequest, ApiResponse
from civicsession.storage.models import Credentials


async def settle(predicate, rounds=200):
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def bearer(request):
    value = request.headers.get("Authorization", "")
    return value[len("Bearer "):] if value.startswith("Bearer ") else None


class TestDecide:
    @pytest.mark.parametrize(
        "status,retried,expected",
        [
            (200, False, Decision.RETURN),
            (500, False, Decision.RETURN),
            (403, False, Decision.RETURN),
            (401, False, Decision.REFRESH_AND_RETRY),
            (401, True, Decision.EXPIRE),
            (200, True, Decision.RETURN),
        ],
    )
    def test_decision_table(self, status, retried, expected):
        attempt = Attempt(ApiRequest("GET", "/x"), retried=retried)
        assert decide(attempt, ApiResponse(status)) is expected

    def test_retry_does_not_mutate_original_request(self):
        original = ApiRequest("GET", "/x").with_bearer("A1")
        retry = Attempt(original).retry_with("A2")

        assert original.bearer == "A1"
        assert retry.request.bearer == "A2"
        assert retry.retried is True


class TestRefreshAndRetry:
    async def test_in_flight_requests_all_complete_with_rotated_token(self, runtime, server):
        await runtime.credentials.begin_identity(Credentials("A1", "R1"))
        rejected = asyncio.Event()
        stale_arrivals = []

        async def things(request):
            if bearer(request) == "A2":
                return server.ok({"path": request.url.path})
            stale_arrivals.append(request)
            if len(stale_arrivals) == 3:
                rejected.set()
            await rejected.wait()
            return server.fail(401, "Invalid or expired token")

        server.route("GET", "/things", things)
        server.route(
            "POST",
            "/auth/refresh",
            lambda r: server.ok({"accessToken": "A2", "refreshToken": "R2"}),
        )

        responses = await asyncio.gather(
            *(runtime.gateway.request("GET", "/things") for _ in range(3))
        )

        assert [r.status_code for r in responses] == [200, 200, 200]
        assert server.count("POST", "/auth/refresh") == 1
        assert server.bearers("GET", "/things").count("Bearer A2") == 3
        assert await runtime.credentials.load() == Credentials("A2", "R2")
        assert runtime.navigation.events == []

    async def test_retry_is_attempted_at_most_once(self, runtime, server):
        await runtime.credentials.begin_identity(Credentials("A1", "R1"))
        server.route("GET", "/things", lambda r: server.fail(401))
        server.route(
            "POST",
            "/auth/refresh",
            lambda r: server.ok({"accessToken": "A2", "refreshToken": "R2"}),
        )

        with pytest.raises(SessionExpiredError):
            await runtime.gateway.request("GET", "/things")

        assert server.count("GET", "/things") == 2
        assert server.count("POST", "/auth/refresh") == 1
        assert [e.reason for e in runtime.navigation.events] == [
            "authorization_rejected_after_refresh"
        ]
        assert await runtime.credentials.load() is None

    async def test_failed_refresh_tears_down_once(self, runtime, server):
        await runtime.credentials.begin_identity(Credentials("A1", "R1"))
        server.route("GET", "/things", lambda r: server.fail(401))
        server.route("POST", "/auth/refresh", lambda r: server.fail(401))

        results = await asyncio.gather(
            *(runtime.gateway.request("GET", "/things") for _ in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, SessionExpiredError) for r in results)
        assert server.count("POST", "/auth/refresh") == 1
        assert len(runtime.navigation.events) == 1
        assert runtime.navigation.events[0].reason == "refresh_failed"

    async def test_waits_for_refresh_already_in_flight(self, runtime, server):
        await runtime.credentials.begin_identity(Credentials("A1", "R1"))
        release = asyncio.Event()

        async def refresh(request):
            await release.wait()
            return server.ok({"accessToken": "A2", "refreshToken": "R2"})

        server.route("POST", "/auth/refresh", refresh)
        server.route("GET", "/things", lambda r: server.ok({}))

        refreshing = asyncio.create_task(runtime.coordinator.ensure_fresh_token("A1"))
        await settle(lambda: runtime.coordinator.refreshing)
        pending = asyncio.create_task(runtime.gateway.request("GET", "/things"))
        for _ in range(10):
            await asyncio.sleep(0)
        assert server.count("GET", "/things") == 0

        release.set()
        await refreshing
        response = await pending

        assert response.status_code == 200
        assert server.bearers("GET", "/things") == ["Bearer A2"]


class TestPassThrough:
    @pytest.mark.parametrize(
        "status,error_type",
        [
            (500, ServerFaultError),
            (503, ServerFaultError),
            (404, NotFoundError),
            (422, ApiRequestError),
            (403, ApiRequestError),
        ],
    )
    async def test_non_401_errors_skip_refresh(self, runtime, server, status, error_type):
        await runtime.credentials.begin_identity(Credentials("A1", "R1"))
        server.route("GET", "/things", lambda r: server.fail(status, "nope"))

        with pytest.raises(error_type) as excinfo:
            await runtime.gateway.request("GET", "/things")

        assert excinfo.value.status_code == status
        assert excinfo.value.message == "nope"
        assert server.count("POST", "/auth/refresh") == 0
        assert await runtime.credentials.load() == Credentials("A1", "R1")

    async def test_success_sends_stored_bearer(self, runtime, server):
        await runtime.credentials.begin_identity(Credentials("A1", "R1"))
        server.route("GET", "/things", lambda r: server.ok({"n": 1}))

        response = await runtime.gateway.request("GET", "/things")

        assert response.body == {"success": True, "data": {"n": 1}}
        assert server.bearers("GET", "/things") == ["Bearer A1"]


class TestIdentity:
    async def test_no_credentials_means_no_network_call(self, runtime, server):
        with pytest.raises(SessionExpiredError):
            await runtime.gateway.request("GET", "/things")

        assert server.calls == []
        assert [e.reason for e in runtime.navigation.events] == ["not_authenticated"]

    async def test_response_after_logout_is_discarded(self, runtime, server):
        await runtime.credentials.begin_identity(Credentials("A1", "R1"))
        release = asyncio.Event()

        async def slow(request):
            await release.wait()
            return server.ok({"n": 1})

        server.route("GET", "/things", slow)

        pending = asyncio.create_task(runtime.gateway.request("GET", "/things"))
        await settle(lambda: server.count("GET", "/things") == 1)
        await runtime.teardown.run("logout")
        release.set()

        with pytest.raises(SessionExpiredError):
            await pending
        assert len(runtime.navigation.events) == 1
