# ============================================================================
# tests/unit/test_dispatcher.py
# Job Dispatcher: admission order, mutual exclusion, commit semantics
# ============================================================================

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from raas.data.registry import ChainConfig
from raas.engine.dispatcher import JobDispatcher, Outcome, TransitionRequest
from raas.engine.exporter import StatusExporter
from raas.engine.state_machine import LifecycleState, Operation
from raas.errors import ErrorCode
from tests.conftest import DEPLOY_ARGS, DEPLOYER_KEY

VALID_ARGS = {
    Operation.DEPLOY: DEPLOY_ARGS,
    Operation.RESTART: {},
    Operation.UPDATE_METADATA: {"name": "NewName"},
    Operation.UPDATE_BRIDGE: {"parameters": {"gas_limit": "100"}},
}

ALLOWED = {
    (LifecycleState.UNINITIALIZED, Operation.DEPLOY),
    (LifecycleState.FAILED, Operation.DEPLOY),
    (LifecycleState.RUNNING, Operation.RESTART),
    (LifecycleState.FAILED, Operation.RESTART),
    (LifecycleState.RUNNING, Operation.UPDATE_METADATA),
    (LifecycleState.RUNNING, Operation.UPDATE_BRIDGE),
}
REJECTED = [(s, o) for s in LifecycleState for o in Operation if (s, o) not in ALLOWED]


def force_state(record, state):
    assert record.lock.try_acquire("test")
    try:
        record.commit(state)
    finally:
        record.lock.release()


def submit(dispatcher, instance_id, operation, args=None):
    if args is None:
        args = VALID_ARGS[operation]
    return dispatcher.submit(TransitionRequest.create(instance_id, operation, args))


class TestScenarios:
    @pytest.mark.asyncio
    async def test_deploy_from_uninitialized_reaches_running(self, deploy, registry):
        """Scenario A"""
        result = await deploy()
        assert result.outcome == Outcome.SUCCEEDED, result.reason
        record = registry.get("orbit-1")
        assert record.state == LifecycleState.RUNNING
        assert record.health.healthy is True
        assert record.container_ids == ("c-nitro", "c-explorer")
        assert record.deployment.contracts_deployed
        assert not record.lock.locked

    @pytest.mark.asyncio
    async def test_update_metadata_keeps_running(self, deploy, dispatcher, registry):
        """Scenario B"""
        await deploy()
        result = await submit(dispatcher, "orbit-1", Operation.UPDATE_METADATA, {"name": "NewName"})
        assert result.outcome == Outcome.SUCCEEDED
        record = registry.get("orbit-1")
        assert record.metadata["name"] == "NewName"
        assert record.state == LifecycleState.RUNNING

    @pytest.mark.asyncio
    async def test_concurrent_restart_is_busy(self, deploy, dispatcher, backend, registry):
        """Scenario C"""
        await deploy()
        backend.start_gate = asyncio.Event()
        backend.start_entered = asyncio.Event()

        first = asyncio.create_task(submit(dispatcher, "orbit-1", Operation.RESTART))
        await asyncio.wait_for(backend.start_entered.wait(), timeout=2)

        second = await submit(dispatcher, "orbit-1", Operation.RESTART)
        assert second.outcome == Outcome.REJECTED
        assert second.error_code == ErrorCode.INSTANCE_BUSY.value
        assert "restart" in second.reason

        backend.start_gate.set()
        result = await asyncio.wait_for(first, timeout=2)
        assert result.resulting_state in (LifecycleState.RUNNING, LifecycleState.FAILED)
        assert backend.max_active_starts == 1
        assert registry.get("orbit-1").state == result.resulting_state

    @pytest.mark.asyncio
    async def test_status_during_deploy_does_not_block(self, dispatcher, backend, registry):
        """Scenario D"""
        exporter = StatusExporter(registry)
        backend.start_gate = asyncio.Event()
        backend.start_entered = asyncio.Event()

        task = asyncio.create_task(submit(dispatcher, "orbit-1", Operation.DEPLOY))
        await asyncio.wait_for(backend.start_entered.wait(), timeout=2)

        snapshot = exporter.get_status("orbit-1")
        assert snapshot.state == LifecycleState.DEPLOYING
        assert snapshot.busy is True
        assert snapshot.in_flight == "deploy"
        assert exporter.get_logs("orbit-1")
        assert exporter.get_health("orbit-1").healthy is False

        backend.start_gate.set()
        result = await asyncio.wait_for(task, timeout=2)
        assert result.succeeded

    @pytest.mark.asyncio
    async def test_private_key_field_rejected_before_lookup(self, dispatcher, registry):
        """Scenario E"""
        args = dict(DEPLOY_ARGS, privateKey=DEPLOYER_KEY)
        with patch.object(registry, "ensure", wraps=registry.ensure) as ensure, \
                patch.object(registry, "get", wraps=registry.get) as get:
            result = await submit(dispatcher, "orbit-new", Operation.DEPLOY, args)
        assert result.outcome == Outcome.REJECTED
        assert result.error_code == ErrorCode.JOB_VALIDATION_FAILED.value
        assert result.resulting_state is None
        ensure.assert_not_called()
        get.assert_not_called()
        assert "orbit-new" not in registry


class TestAdmission:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("state,operation", REJECTED)
    async def test_invalid_pairs_leave_record_unchanged(self, dispatcher, registry, state, operation):
        record = registry.register("orbit-1", ChainConfig.from_mapping(DEPLOY_ARGS))
        force_state(record, state)
        before = record.snapshot().to_dict()
        logs_before = record.logs()

        result = await submit(dispatcher, "orbit-1", operation)

        assert result.outcome == Outcome.REJECTED
        assert result.error_code == ErrorCode.JOB_INVALID_TRANSITION.value
        assert result.resulting_state == state
        assert record.snapshot().to_dict() == before
        assert record.logs() == logs_before
        assert not record.lock.locked

    @pytest.mark.asyncio
    async def test_secret_arguments_never_reach_driver_or_vault(self, registry, vault):
        driver = AsyncMock()
        dispatcher = JobDispatcher(registry, driver)
        registry.register("orbit-1", ChainConfig.from_mapping(DEPLOY_ARGS))
        with patch.object(vault, "get", wraps=vault.get) as vault_get:
            for args in (
                {"description": DEPLOYER_KEY},
                {"extra": {"deployer_private_key": "x"}},
                {"name": "test test test test test test test test test test test junk"},
            ):
                result = await submit(dispatcher, "orbit-1", Operation.UPDATE_METADATA, args)
                assert result.error_code == ErrorCode.JOB_VALIDATION_FAILED.value
        driver.execute.assert_not_called()
        vault_get.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_instance(self, dispatcher):
        result = await submit(dispatcher, "missing", Operation.RESTART)
        assert result.outcome == Outcome.REJECTED
        assert result.error_code == ErrorCode.INSTANCE_NOT_FOUND.value

    @pytest.mark.asyncio
    async def test_held_lock_fails_fast(self, dispatcher, registry):
        record = registry.register("orbit-1", ChainConfig.from_mapping(DEPLOY_ARGS))
        force_state(record, LifecycleState.RUNNING)
        assert record.lock.try_acquire("update_bridge")
        try:
            before = record.snapshot().to_dict()
            result = await asyncio.wait_for(submit(dispatcher, "orbit-1", Operation.RESTART), timeout=1)
            assert result.error_code == ErrorCode.INSTANCE_BUSY.value
            assert record.snapshot().to_dict() == before
        finally:
            record.lock.release()

    @pytest.mark.asyncio
    async def test_deploy_provisions_missing_instance(self, deploy, registry):
        assert "orbit-9" not in registry
        result = await deploy("orbit-9")
        assert result.succeeded
        assert registry.get("orbit-9").chain_config.name == "Test Orbit"


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_deploy_records_progress_in_health(self, deploy, backend, registry):
        backend.healthy = False
        result = await deploy()

        assert result.outcome == Outcome.FAILED
        assert result.error_code == ErrorCode.STEP_TIMEOUT.value
        record = registry.get("orbit-1")
        assert record.state == LifecycleState.FAILED
        assert record.health.healthy is False
        assert "wait_healthy" in record.health.reason
        assert "start_containers" in record.health.reason
        # Partially running containers are kept, not rolled back
        assert record.container_ids == ("c-nitro", "c-explorer")
        assert any("deploy failed: STEP_002" in line for line in record.logs())
        assert not record.lock.locked

    @pytest.mark.asyncio
    async def test_failed_update_keeps_old_values(self, deploy, dispatcher, backend, registry):
        await deploy()
        record = registry.get("orbit-1")
        backend.failures["run_bridge_setup"] = 10

        result = await submit(
            dispatcher, "orbit-1", Operation.UPDATE_BRIDGE, {"bridge_address": "0x" + "cd" * 20}
        )
        assert result.outcome == Outcome.FAILED
        assert result.resulting_state == LifecycleState.RUNNING
        assert record.state == LifecycleState.RUNNING
        assert record.bridge is None

    @pytest.mark.asyncio
    async def test_driver_exception_becomes_failure(self, registry):
        driver = AsyncMock()
        driver.execute.side_effect = RuntimeError("driver exploded")
        dispatcher = JobDispatcher(registry, driver)
        record = registry.register("orbit-1", ChainConfig.from_mapping(DEPLOY_ARGS))
        force_state(record, LifecycleState.RUNNING)

        result = await submit(dispatcher, "orbit-1", Operation.RESTART)
        assert result.outcome == Outcome.FAILED
        assert result.error_code == ErrorCode.SYSTEM_INTERNAL_ERROR.value
        assert record.state == LifecycleState.FAILED
        assert "driver exploded" in record.health.reason
        assert not record.lock.locked

    @pytest.mark.asyncio
    async def test_retried_deploy_after_failure(self, deploy, backend, registry):
        backend.failures["compose_up"] = 3
        first = await deploy()
        assert registry.get("orbit-1").state == LifecycleState.FAILED

        second = await deploy()
        assert second.succeeded, second.reason
        assert registry.get("orbit-1").state == LifecycleState.RUNNING
        assert backend.calls.count("deploy_contracts") == 1
        assert first.error_code == ErrorCode.STEP_FAILED.value


class TestRestartIdempotence:
    @pytest.mark.asyncio
    async def test_restart_twice_from_running(self, deploy, dispatcher, registry):
        await deploy()
        for _ in range(2):
            result = await submit(dispatcher, "orbit-1", Operation.RESTART)
            assert result.succeeded
        assert registry.get("orbit-1").state == LifecycleState.RUNNING

    @pytest.mark.asyncio
    async def test_restart_twice_from_failed(self, deploy, dispatcher, backend, registry):
        backend.healthy = False
        await deploy()
        assert registry.get("orbit-1").state == LifecycleState.FAILED

        backend.healthy = True
        for _ in range(2):
            result = await submit(dispatcher, "orbit-1", Operation.RESTART)
            assert result.succeeded, result.reason
        record = registry.get("orbit-1")
        assert record.state == LifecycleState.RUNNING
        assert record.health.healthy is True
        assert backend.calls.count("deploy_contracts") == 1


class TestHistory:
    @pytest.mark.asyncio
    async def test_results_are_remembered(self, deploy, dispatcher):
        await deploy()
        await submit(dispatcher, "orbit-1", Operation.DEPLOY)
        results = dispatcher.recent_results("orbit-1")
        assert [r.outcome for r in results] == [Outcome.SUCCEEDED, Outcome.REJECTED]
        body = results[0].to_dict()
        assert body["operation"] == "deploy"
        assert body["resulting_state"] == "Running"
        assert body["steps"][0]["name"] == "render_config"

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, registry, driver):
        dispatcher = JobDispatcher(registry, driver, history_size=2)
        await submit(dispatcher, "orbit-1", Operation.DEPLOY)
        for _ in range(4):
            await submit(dispatcher, "orbit-1", Operation.DEPLOY)
        assert len(dispatcher.recent_results("orbit-1")) == 2

    @pytest.mark.asyncio
    async def test_unknown_ids_leave_no_history(self, dispatcher):
        for i in range(500):
            result = await submit(dispatcher, f"ghost-{i}", Operation.RESTART)
            assert result.error_code == ErrorCode.INSTANCE_NOT_FOUND.value
        result = await dispatcher.submit(
            TransitionRequest.create("ghost-x", Operation.DEPLOY, {"name": ""})
        )
        assert result.outcome == Outcome.REJECTED
        assert dispatcher._history == {}
        assert dispatcher.recent_results("ghost-0") == []

    def test_request_create_coerces_operation(self):
        request = TransitionRequest.create("orbit-1", "restart")
        assert request.operation == Operation.RESTART
        assert request.public_arguments == {}
