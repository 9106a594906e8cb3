"""Unit tests for the reserve → submit → register worker lifecycle."""

import asyncio
import logging
from unittest.mock import AsyncMock

import aiohttp
import pytest
from kubernetes_asyncio.client.rest import ApiException

from groover.errors import (
    CredentialRelayError,
    StateStoreError,
    WorkerAlreadyExistsError,
    WorkerSubmissionError,
)
from groover.lifecycle import EnsureOutcome, WorkerLifecycle
from groover.state import RegistrationState, StateGuard
from groover.supervisor import WorkerSupervisor
from groover.template import WorkerTemplate


@pytest.fixture
def relay() -> AsyncMock:
    relay = AsyncMock()
    relay.fetch_session_token = AsyncMock(return_value="abc")
    return relay


@pytest.fixture
def supervisor() -> AsyncMock:
    supervisor = AsyncMock()
    supervisor.start = AsyncMock(return_value="worker-42")
    supervisor.stop = AsyncMock()
    return supervisor


@pytest.fixture
def lifecycle(state_guard: StateGuard, relay: AsyncMock, supervisor: AsyncMock) -> WorkerLifecycle:
    return WorkerLifecycle(state_guard, relay, supervisor, reservation_ttl_s=60)


async def test_started_leaves_durable_registration(
    lifecycle: WorkerLifecycle, state_guard: StateGuard, supervisor: AsyncMock
) -> None:
    outcome = await lifecycle.ensure_worker("42", "9")

    assert outcome is EnsureOutcome.STARTED
    supervisor.start.assert_awaited_once_with("42", "9", "abc")
    assert await state_guard.get_state("42") is RegistrationState.REGISTERED
    assert await state_guard.get_registered_user("42") == "9"


async def test_already_registered_guild(
    lifecycle: WorkerLifecycle, state_guard: StateGuard, relay: AsyncMock, supervisor: AsyncMock
) -> None:
    await state_guard.try_register("42", "1")

    outcome = await lifecycle.ensure_worker("42", "9")

    assert outcome is EnsureOutcome.ALREADY_RUNNING
    relay.fetch_session_token.assert_not_awaited()
    supervisor.start.assert_not_awaited()
    assert await state_guard.get_registered_user("42") == "1"


async def test_token_failure_rolls_back(
    lifecycle: WorkerLifecycle, state_guard: StateGuard, relay: AsyncMock, supervisor: AsyncMock
) -> None:
    relay.fetch_session_token.side_effect = CredentialRelayError("503")

    outcome = await lifecycle.ensure_worker("42", "9")

    assert outcome is EnsureOutcome.TOKEN_FAILED
    supervisor.start.assert_not_awaited()
    assert await state_guard.get_state("42") is RegistrationState.UNRESERVED


async def test_submission_failure_rolls_back(
    lifecycle: WorkerLifecycle, state_guard: StateGuard, supervisor: AsyncMock
) -> None:
    supervisor.start.side_effect = WorkerSubmissionError("forbidden")

    outcome = await lifecycle.ensure_worker("42", "9")

    assert outcome is EnsureOutcome.SUBMIT_FAILED
    assert await state_guard.get_state("42") is RegistrationState.UNRESERVED


async def test_orphan_worker_reported_as_running(
    lifecycle: WorkerLifecycle, state_guard: StateGuard, supervisor: AsyncMock
) -> None:
    supervisor.start.side_effect = WorkerAlreadyExistsError("worker-42 exists")

    outcome = await lifecycle.ensure_worker("42", "9")

    assert outcome is EnsureOutcome.ALREADY_RUNNING
    assert await state_guard.get_state("42") is RegistrationState.UNRESERVED


async def test_confirm_lost_removes_worker(
    lifecycle: WorkerLifecycle, state_guard: StateGuard, fake_redis, supervisor: AsyncMock
) -> None:
    async def slow_start(guild_id: str, user_id: str, token: str) -> str:
        # reservation expires and another user claims the guild mid-submission
        fake_redis.expire("groover:42")
        await state_guard.reserve("42", "10", ttl_s=60)
        return "worker-42"

    supervisor.start.side_effect = slow_start

    outcome = await lifecycle.ensure_worker("42", "9")

    assert outcome is EnsureOutcome.CONFIRM_FAILED
    supervisor.stop.assert_awaited_once_with("42")
    assert await state_guard.get_registered_user("42") == "10"


async def test_concurrent_starts_single_submission(
    lifecycle: WorkerLifecycle, supervisor: AsyncMock, relay: AsyncMock
) -> None:
    async def yielding_token(user_id: str) -> str:
        await asyncio.sleep(0)
        return "abc"

    relay.fetch_session_token.side_effect = yielding_token

    outcomes = await asyncio.gather(
        lifecycle.ensure_worker("42", "9"), lifecycle.ensure_worker("42", "10")
    )

    assert sorted(o.value for o in outcomes) == ["already_running", "started"]
    supervisor.start.assert_awaited_once()


async def test_store_failure_propagates(relay: AsyncMock, supervisor: AsyncMock) -> None:
    guard = StateGuard(redis_url="redis://localhost:6379")
    lifecycle = WorkerLifecycle(guard, relay, supervisor)

    with pytest.raises(StateStoreError):
        await lifecycle.ensure_worker("42", "9")
    supervisor.start.assert_not_awaited()


class TestSchedulerFaults:
    """Test that infrastructure faults during creation never strand a reservation."""

    @pytest.fixture
    def core_api(self) -> AsyncMock:
        api = AsyncMock()
        api.create_namespaced_pod = AsyncMock()
        api.delete_namespaced_pod = AsyncMock()
        return api

    @pytest.fixture
    def k8s_lifecycle(
        self,
        state_guard: StateGuard,
        relay: AsyncMock,
        core_api: AsyncMock,
        worker_template: WorkerTemplate,
    ) -> WorkerLifecycle:
        supervisor = WorkerSupervisor(core_api, worker_template, namespace="groover")
        return WorkerLifecycle(state_guard, relay, supervisor, reservation_ttl_s=60)

    async def test_unreachable_scheduler_releases_guild(
        self, k8s_lifecycle: WorkerLifecycle, state_guard: StateGuard, core_api: AsyncMock
    ) -> None:
        core_api.create_namespaced_pod.side_effect = aiohttp.ClientConnectionError("refused")

        outcome = await k8s_lifecycle.ensure_worker("42", "9")

        assert outcome is EnsureOutcome.SUBMIT_FAILED
        assert await state_guard.get_registered_user("42") is None

        core_api.create_namespaced_pod.side_effect = None
        assert await k8s_lifecycle.ensure_worker("42", "9") is EnsureOutcome.STARTED

    async def test_unexpected_submit_fault_rolls_back(
        self, lifecycle: WorkerLifecycle, state_guard: StateGuard, supervisor: AsyncMock
    ) -> None:
        supervisor.start.side_effect = RuntimeError("event loop closed")

        with pytest.raises(RuntimeError):
            await lifecycle.ensure_worker("42", "9")

        assert await state_guard.get_state("42") is RegistrationState.UNRESERVED

    async def test_unexpected_token_fault_rolls_back(
        self, lifecycle: WorkerLifecycle, state_guard: StateGuard, relay: AsyncMock
    ) -> None:
        relay.fetch_session_token.side_effect = ValueError("bad body")

        with pytest.raises(ValueError):
            await lifecycle.ensure_worker("42", "9")

        assert await state_guard.get_state("42") is RegistrationState.UNRESERVED

    async def test_stop_failure_after_lost_confirm(
        self, lifecycle: WorkerLifecycle, state_guard: StateGuard, fake_redis, supervisor: AsyncMock
    ) -> None:
        async def slow_start(guild_id: str, user_id: str, token: str) -> str:
            fake_redis.expire("groover:42")
            await state_guard.reserve("42", "10", ttl_s=60)
            return "worker-42"

        supervisor.start.side_effect = slow_start
        supervisor.stop.side_effect = ApiException(status=500, reason="Boom")

        outcome = await lifecycle.ensure_worker("42", "9")

        assert outcome is EnsureOutcome.CONFIRM_FAILED
        assert await state_guard.get_registered_user("42") == "10"


@pytest.mark.parametrize(
    ("ttl_s", "label"),
    [(30, "reserved"), (None, "registered")],
)
async def test_refusal_logs_holding_state(
    lifecycle: WorkerLifecycle,
    state_guard: StateGuard,
    caplog: pytest.LogCaptureFixture,
    ttl_s: int | None,
    label: str,
) -> None:
    if ttl_s is None:
        await state_guard.try_register("42", "1")
    else:
        await state_guard.reserve("42", "1", ttl_s=ttl_s)

    with caplog.at_level(logging.INFO, logger="groover.lifecycle"):
        outcome = await lifecycle.ensure_worker("42", "9")

    assert outcome is EnsureOutcome.ALREADY_RUNNING
    assert f"Guild 42 already has a worker ({label})" in caplog.text
