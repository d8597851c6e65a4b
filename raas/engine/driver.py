"""Process Driver: the ordered side effects behind each lifecycle operation."""
#
# PURPOSE:
# Turns an admitted transition into concrete work against the
# ContainerBackend, one named step at a time, and reports a StepOutcome the
# Dispatcher commits to the registry.
#
# OPERATIONS:
# - deploy: render_config -> pull_image -> fetch_tooling -> deploy_contracts
#           -> start_containers -> wait_healthy -> deploy_bridge
# - restart: stop_containers -> start_containers -> wait_healthy
# - update_metadata: write_metadata (no restart)
# - update_bridge: write_bridge_config -> bridge_setup, then
#           stop/start/wait_healthy when the bridge address changed
#
# DEPLOY RETRIES:
# Every deploy carries an idempotency key derived from the instance id and its
# public chain parameters. The key and the artifacts produced so far are kept
# in <instance dir>/deployment.json. A retried Deploy with the same key reuses
# contracts (and the token bridge) that were already deployed instead of
# deploying them again. A different key starts a fresh deployment record.
#
# CREDENTIALS:
# The driver holds the only VaultGrant. Capabilities are injected into the
# environment of the child process that needs them and nowhere else.
#

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Any, Callable, Awaitable, Dict, List, Optional

from raas.base.config import DriverConfig
from raas.data.registry import ChainConfig, DeploymentArtifacts, HealthSnapshot, InstanceRecord
from raas.engine.backend import CommandResult, ContainerBackend, DeploymentLayout
from raas.engine.state_machine import Operation
from raas.engine.steps import PermanentStepError, StepOutcome, StepRunner, TransientStepError
from raas.errors import RaasError, handle_error
from raas.jobs.schemas import DeployArgs, PublicArguments, UpdateBridgeArgs, UpdateMetadataArgs
from raas.vault.credentials import CredentialRole, Vault, VaultGrant

logger = logging.getLogger(__name__)

# Variables the contract-deployment tool reads its keys from
_DEPLOY_KEY_ENV = {
    CredentialRole.DEPLOYER: "DEPLOYER_PRIVATE_KEY",
    CredentialRole.BATCH_POSTER: "BATCH_POSTER_PRIVATE_KEY",
    CredentialRole.VALIDATOR: "VALIDATOR_PRIVATE_KEY",
    CredentialRole.AVAIL_SEED: "AVAIL_ADDR_SEED",
}
_FALLBACK_S3_ENV = {
    CredentialRole.FALLBACK_S3_ACCESS_KEY: "FALLBACKS3_ACCESS_KEY",
    CredentialRole.FALLBACK_S3_SECRET_KEY: "FALLBACKS3_SECRET_KEY",
}


def deployment_key(instance_id: str, chain: ChainConfig) -> str:
    """Idempotency key for a deployment: orbit:<instance>:deploy:<digest of public params>."""
    material = json.dumps(
        {
            "instance_id": instance_id,
            "chain_id": chain.chain_id,
            "parent_chain_rpc": chain.parent_chain_rpc,
            "avail_app_id": chain.avail_app_id,
        },
        sort_keys=True,
    )
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]
    return f"orbit:{instance_id}:deploy:{digest}"


def _write_json(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True))
    os.replace(tmp, path)


def _require_ok(result: CommandResult, what: str) -> CommandResult:
    if not result.ok:
        raise TransientStepError(f"{what} exited with code {result.exit_code}: {result.tail()}")
    return result


class ProcessDriver:
    """
    Executes lifecycle operations against a ContainerBackend.

    Args:
        backend: Container and tooling boundary
        vault: Credential store
        grant: The grant minted for this driver by ``vault.issue_grant()``
        config: Paths, image, timeouts and retry policy
        sleep: Injectable for tests (backoff and health polling)
    """

    def __init__(
        self,
        backend: ContainerBackend,
        vault: Vault,
        grant: VaultGrant,
        config: DriverConfig,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.backend = backend
        self.config = config
        self._vault = vault
        self._grant = grant
        self._sleep = sleep

    def layout_for(self, instance_id: str) -> DeploymentLayout:
        return DeploymentLayout(self.config.instance_dir(instance_id))

    def load_artifacts(self, instance_id: str) -> Optional[DeploymentArtifacts]:
        path = self.layout_for(instance_id).deployment_file
        if not path.is_file():
            return None
        try:
            return DeploymentArtifacts.from_dict(json.loads(path.read_text()))
        except (ValueError, TypeError) as e:
            logger.warning(f"[Driver] Ignoring unreadable {path}: {e}")
            return None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(
        self,
        operation: Operation,
        record: InstanceRecord,
        arguments: PublicArguments,
    ) -> StepOutcome:
        operation = Operation(operation)
        runner = StepRunner(retry=self.config.retry, on_log=record.append_log, sleep=self._sleep)
        outcome = StepOutcome(operation=operation.value, succeeded=False, steps=runner.history)

        handlers = {
            Operation.DEPLOY: self._deploy,
            Operation.RESTART: self._restart,
            Operation.UPDATE_METADATA: self._update_metadata,
            Operation.UPDATE_BRIDGE: self._update_bridge,
        }
        logger.info(f"[Driver] {operation.value} starting for {record.id}")
        record.append_log(f"{operation.value} started")
        try:
            await handlers[operation](record, arguments, runner, outcome)
        except RaasError as e:
            outcome.error = e
        except (OSError, ValueError) as e:
            outcome.error = handle_error(e, context=f"{operation.value} on {record.id}")

        outcome.succeeded = outcome.error is None
        if outcome.succeeded:
            logger.info(f"[Driver] {operation.value} finished for {record.id}")
            record.append_log(f"{operation.value} succeeded")
        else:
            logger.error(f"[Driver] {operation.value} failed for {record.id}: {outcome.error.message}")
        return outcome

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def _deploy_env(self, chain: ChainConfig) -> Dict[str, str]:
        env: Dict[str, str] = {}
        for role, var in _DEPLOY_KEY_ENV.items():
            self._vault.get(role, self._grant).inject(env, var)
        if chain.fallback_s3_enable:
            for role, var in _FALLBACK_S3_ENV.items():
                if self._vault.has(role):
                    self._vault.get(role, self._grant).inject(env, var)
        return env

    def _bridge_env(self, chain: ChainConfig) -> Dict[str, str]:
        env = {
            "L2_RPC_URL": chain.parent_chain_rpc,
            "L3_RPC_URL": chain.local_rpc_endpoint,
        }
        self._vault.get(CredentialRole.DEPLOYER, self._grant).inject(env, "PRIVATE_KEY")
        return env

    def _tool_output(self, record: InstanceRecord) -> Callable[[str], None]:
        """Line sink for tools that run with credentials in their environment."""
        capabilities = [self._vault.get(role, self._grant) for role in CredentialRole if self._vault.has(role)]

        def append(line: str) -> None:
            for capability in capabilities:
                line = capability.redact(line)
            record.append_log(line)

        return append

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _start_containers(
        self, record: InstanceRecord, layout: DeploymentLayout, runner: StepRunner, outcome: StepOutcome
    ) -> List[str]:
        async def start() -> List[str]:
            for source in (layout.node_config, layout.setup_config):
                if not source.is_file():
                    raise PermanentStepError(f"missing deployment artifact {source.name}")
            layout.setup_config_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(layout.node_config, layout.setup_config_dir / layout.node_config.name)
            shutil.copy2(layout.setup_config, layout.setup_config_dir / layout.setup_config.name)
            _require_ok(await self.backend.compose_up(layout, on_line=record.append_log), "compose up")
            return await self.backend.container_ids(layout)

        container_ids = await runner.run("start_containers", start, timeout=self.config.command_timeout_seconds)
        outcome.changes["container_ids"] = container_ids
        record.append_log(f"containers running: {', '.join(container_ids) or '(none reported)'}")
        return container_ids

    async def _stop_containers(self, record: InstanceRecord, runner: StepRunner) -> None:
        container_ids = list(record.container_ids)

        async def stop() -> None:
            ids = container_ids or await self.backend.container_ids(self.layout_for(record.id))
            _require_ok(await self.backend.stop_containers(ids, on_line=record.append_log), "docker stop")

        await runner.run("stop_containers", stop, timeout=self.config.command_timeout_seconds)

    async def _wait_healthy(
        self, record: InstanceRecord, chain: ChainConfig, runner: StepRunner, outcome: StepOutcome
    ) -> HealthSnapshot:
        timeout = self.config.health_timeout_seconds

        async def poll() -> HealthSnapshot:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout
            while True:
                snapshot = await self.backend.check_health(chain.local_rpc_endpoint, chain.chain_id)
                record.update_health(snapshot)
                if snapshot.healthy:
                    return snapshot
                if loop.time() >= deadline:
                    raise asyncio.TimeoutError()
                await self._sleep(self.config.health_poll_interval)

        snapshot = await runner.run("wait_healthy", poll, timeout=timeout, max_attempts=1)
        outcome.health = snapshot
        return snapshot

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    async def _deploy(
        self, record: InstanceRecord, args: DeployArgs, runner: StepRunner, outcome: StepOutcome
    ) -> None:
        chain = args.to_chain_config()
        layout = self.layout_for(record.id)
        key = deployment_key(record.id, chain)
        outcome.changes["chain_config"] = chain

        previous = self.load_artifacts(record.id)
        if previous is not None and previous.idempotency_key == key:
            artifacts = previous
            logger.info(f"[Driver] Reusing deployment {key} (contracts_deployed={artifacts.contracts_deployed})")
            record.append_log(f"resuming deployment {key}")
        else:
            artifacts = DeploymentArtifacts(idempotency_key=key, work_dir=str(layout.work_dir))
        outcome.changes["deployment"] = artifacts

        async def render_config() -> None:
            layout.work_dir.mkdir(parents=True, exist_ok=True)
            _write_json(layout.work_dir / "chain.json", chain.to_dict())
            # Public parameters only; keys reach the tool through its environment
            lines = [
                f"CHAIN_ID={chain.chain_id}",
                f"CHAIN_NAME={chain.name}",
                f"PARENT_CHAIN_RPC={chain.parent_chain_rpc}",
                f"AVAIL_APP_ID={chain.avail_app_id}",
                f"FALLBACKS3_ENABLE={str(chain.fallback_s3_enable).lower()}",
            ]
            (layout.work_dir / "rollup.env").write_text("\n".join(lines) + "\n")
            _write_json(layout.deployment_file, artifacts.to_dict())

        async def pull_image() -> None:
            _require_ok(await self.backend.pull_image(self.config.node_image, on_line=record.append_log), "docker pull")

        async def fetch_tooling() -> None:
            _require_ok(await self.backend.fetch_tooling(layout, on_line=record.append_log), "fetch tooling")

        async def deploy_contracts() -> None:
            env = self._deploy_env(chain)
            layout.rollup_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(layout.work_dir / "rollup.env", layout.rollup_dir / ".env")
            _require_ok(await self.backend.deploy_contracts(layout, env, on_line=self._tool_output(record)), "deploy contracts")
            missing = [p.name for p in (layout.node_config, layout.setup_config) if not p.is_file()]
            if missing:
                raise PermanentStepError(f"deployment did not generate {', '.join(missing)}")

        async def deploy_bridge() -> None:
            env = self._bridge_env(chain)
            _require_ok(await self.backend.run_bridge_setup(layout, env, on_line=self._tool_output(record)), "token bridge setup")

        timeout = self.config.command_timeout_seconds
        await runner.run("render_config", render_config)
        await runner.run("pull_image", pull_image, timeout=timeout)
        await runner.run("fetch_tooling", fetch_tooling, timeout=timeout)

        if artifacts.contracts_deployed and layout.node_config.is_file() and layout.setup_config.is_file():
            record.append_log("contracts already deployed for this key, skipping deploy_contracts")
        else:
            await runner.run("deploy_contracts", deploy_contracts, timeout=timeout)
            artifacts.contracts_deployed = True
            artifacts.node_config_path = str(layout.node_config)
            artifacts.setup_config_path = str(layout.setup_config)
            _write_json(layout.deployment_file, artifacts.to_dict())

        await self._start_containers(record, layout, runner, outcome)
        await self._wait_healthy(record, chain, runner, outcome)

        if artifacts.bridge_deployed:
            record.append_log("token bridge already deployed for this key, skipping deploy_bridge")
        else:
            await runner.run("deploy_bridge", deploy_bridge, timeout=timeout)
            artifacts.bridge_deployed = True
            _write_json(layout.deployment_file, artifacts.to_dict())

    # ------------------------------------------------------------------
    # Restart
    # ------------------------------------------------------------------

    async def _restart(
        self, record: InstanceRecord, args: PublicArguments, runner: StepRunner, outcome: StepOutcome
    ) -> None:
        layout = self.layout_for(record.id)
        await self._stop_containers(record, runner)
        await self._start_containers(record, layout, runner, outcome)
        await self._wait_healthy(record, record.chain_config, runner, outcome)

    # ------------------------------------------------------------------
    # Configuration writes
    # ------------------------------------------------------------------

    async def _update_metadata(
        self, record: InstanceRecord, args: UpdateMetadataArgs, runner: StepRunner, outcome: StepOutcome
    ) -> None:
        metadata = record.metadata
        metadata.update(args.updates())
        layout = self.layout_for(record.id)

        async def write_metadata() -> None:
            _write_json(layout.metadata_file, metadata)

        await runner.run("write_metadata", write_metadata)
        outcome.changes["metadata"] = metadata

    async def _update_bridge(
        self, record: InstanceRecord, args: UpdateBridgeArgs, runner: StepRunner, outcome: StepOutcome
    ) -> None:
        layout = self.layout_for(record.id)
        chain = record.chain_config
        current = record.bridge or {}
        bridge = dict(current)
        bridge.update(args.bridge_config())
        bridge["parameters"] = {**current.get("parameters", {}), **args.parameters}
        bridge["updated_at"] = time.time()

        async def bridge_setup() -> None:
            env = args.tool_environment()
            env.update(self._bridge_env(chain))
            _require_ok(await self.backend.run_bridge_setup(layout, env, on_line=self._tool_output(record)), "token bridge setup")

        async def write_bridge_config() -> None:
            _write_json(layout.bridge_file, bridge)

        await runner.run("bridge_setup", bridge_setup, timeout=self.config.command_timeout_seconds)

        address_changed = (
            args.bridge_address is not None
            and args.bridge_address.lower() != str(current.get("bridge_address", "")).lower()
        )
        if address_changed:
            # The node reads the bridge address at startup
            record.append_log(f"bridge address changed to {args.bridge_address}, reloading node")
            await self._stop_containers(record, runner)
            await self._start_containers(record, layout, runner, outcome)
            await self._wait_healthy(record, chain, runner, outcome)

        # Only an applied bridge config reaches disk
        await runner.run("write_bridge_config", write_bridge_config)
        outcome.changes["bridge"] = bridge
