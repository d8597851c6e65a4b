"""Pytest configuration and shared fixtures for the Orbit RaaS control plane."""
import asyncio
import json
import time
from typing import Dict, List, Optional, Sequence

import pytest

from raas.base.config import DriverConfig, RaasConfig, RetryConfig, RollupConfig, ServerConfig
from raas.data.registry import HealthSnapshot, InstanceRegistry
from raas.engine.backend import CommandResult, ContainerBackend, DeploymentLayout
from raas.engine.dispatcher import JobDispatcher, TransitionRequest
from raas.engine.driver import ProcessDriver
from raas.engine.state_machine import Operation
from raas.vault.credentials import CredentialRole, Vault

# Well-known Hardhat development accounts #0-#2. Never funded outside local chains.
DEPLOYER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
DEPLOYER_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
BATCH_POSTER_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
VALIDATOR_KEY = "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a"
AVAIL_SEED = "//Alice"

TEST_CREDENTIALS = {
    CredentialRole.DEPLOYER: DEPLOYER_KEY,
    CredentialRole.BATCH_POSTER: BATCH_POSTER_KEY,
    CredentialRole.VALIDATOR: VALIDATOR_KEY,
    CredentialRole.AVAIL_SEED: AVAIL_SEED,
}

DEPLOY_ARGS = {
    "name": "Test Orbit",
    "chain_id": 412346,
    "avail_app_id": "42",
    "parent_chain_rpc": "https://sepolia-rollup.arbitrum.io/rpc",
}


async def no_sleep(_delay: float) -> None:
    """Backoff and poll sleeps in tests only yield to the loop."""
    await asyncio.sleep(0)


class FakeBackend(ContainerBackend):
    """
    In-memory ContainerBackend.

    failures[name] = n makes the next n calls of that command exit non-zero.
    start_gate, when set to an asyncio.Event, holds compose_up until released.
    tool_lines are echoed by the tools that run with credentials.
    """

    def __init__(self):
        self.calls: List[str] = []
        self.failures: Dict[str, int] = {}
        self.healthy = True
        self.container_list = ["c-nitro", "c-explorer"]
        self.generate_artifacts = True
        self.deploy_envs: List[Dict[str, str]] = []
        self.bridge_envs: List[Dict[str, str]] = []
        self.tool_lines: List[str] = []
        self.stopped: List[List[str]] = []
        self.available: Dict[str, bool] = {}
        self.start_gate: Optional[asyncio.Event] = None
        self.start_entered: Optional[asyncio.Event] = None
        self.active_starts = 0
        self.max_active_starts = 0

    def _result(self, name: str) -> CommandResult:
        self.calls.append(name)
        if self.failures.get(name, 0) > 0:
            self.failures[name] -= 1
            return CommandResult(1, [f"{name}: simulated failure"])
        return CommandResult(0, [f"{name}: ok"])

    def _echo(self, on_line):
        if on_line is not None:
            for line in self.tool_lines:
                on_line(line)

    async def pull_image(self, image, on_line=None):
        return self._result("pull_image")

    async def fetch_tooling(self, layout: DeploymentLayout, on_line=None):
        layout.rollup_dir.mkdir(parents=True, exist_ok=True)
        layout.setup_dir.mkdir(parents=True, exist_ok=True)
        return self._result("fetch_tooling")

    async def deploy_contracts(self, layout: DeploymentLayout, env, on_line=None):
        self.deploy_envs.append(dict(env))
        self._echo(on_line)
        result = self._result("deploy_contracts")
        if result.ok and self.generate_artifacts:
            layout.node_config.write_text(json.dumps({"chain": {"id": 412346}}))
            layout.setup_config.write_text(json.dumps({"chainName": "Test Orbit"}))
        return result

    async def compose_up(self, layout: DeploymentLayout, on_line=None):
        self.active_starts += 1
        self.max_active_starts = max(self.max_active_starts, self.active_starts)
        try:
            if self.start_gate is not None:
                if self.start_entered is not None:
                    self.start_entered.set()
                await self.start_gate.wait()
            return self._result("compose_up")
        finally:
            self.active_starts -= 1

    async def container_ids(self, layout: DeploymentLayout):
        self.calls.append("container_ids")
        return list(self.container_list)

    async def stop_containers(self, container_ids: Sequence[str], on_line=None):
        self.stopped.append(list(container_ids))
        return self._result("stop_containers")

    async def run_bridge_setup(self, layout: DeploymentLayout, env, on_line=None):
        self.bridge_envs.append(dict(env))
        self._echo(on_line)
        return self._result("run_bridge_setup")

    async def check_health(self, rpc_endpoint, expected_chain_id=None):
        self.calls.append("check_health")
        return HealthSnapshot(
            timestamp=time.time(),
            healthy=self.healthy,
            reason=None if self.healthy else "rpc unreachable",
        )

    async def probe(self, argv):
        return self.available.get(argv[0], True)


@pytest.fixture
def driver_config(tmp_path):
    return DriverConfig(
        base_dir=tmp_path,
        command_timeout_seconds=5.0,
        health_timeout_seconds=0.2,
        health_poll_interval=0.0,
        retry=RetryConfig(max_attempts=3, base_delay=0.0, multiplier=2.0, max_delay=0.0),
    )


@pytest.fixture
def raas_config(driver_config):
    return RaasConfig(
        server=ServerConfig(max_log_limit=100),
        driver=driver_config,
        log_tail_capacity=50,
        result_history=10,
    )


@pytest.fixture
def vault():
    return Vault(TEST_CREDENTIALS)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def registry():
    return InstanceRegistry(log_tail_capacity=50)


@pytest.fixture
def driver(backend, vault, driver_config):
    return ProcessDriver(backend, vault, vault.issue_grant(), driver_config, sleep=no_sleep)


@pytest.fixture
def dispatcher(registry, driver):
    return JobDispatcher(registry, driver, history_size=10)


@pytest.fixture
def deploy(dispatcher):
    """Submit a Deploy with valid public arguments."""

    async def _deploy(instance_id: str = "orbit-1", **overrides):
        args = dict(DEPLOY_ARGS, **overrides)
        return await dispatcher.submit(TransitionRequest.create(instance_id, Operation.DEPLOY, args))

    return _deploy


@pytest.fixture
def rollup_config():
    return RollupConfig(
        instance_id="orbit-rollup",
        name="Test Orbit",
        chain_id=412346,
        avail_app_id="42",
        parent_chain_rpc="https://sepolia-rollup.arbitrum.io/rpc",
    )
