"""Service root: owns the registry and wires every component together."""
#
# PURPOSE:
# RaasService is the one place that sees both the credential vault and the
# public surfaces. It mints the vault grant, hands it to the Process Driver,
# and gives the Dispatcher and the Status Exporter the same registry.
# Nothing in the core reaches for a module-level singleton.
#
# BRING-UP:
# The configured rollup is registered in Uninitialized at construction, so
# the HTTP surface can report on it at once. bring_up() then probes the host
# tooling and submits the Deploy request through the regular dispatcher path.
#

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from raas.base.config import RaasConfig, RollupConfig
from raas.data.registry import ChainConfig, InstanceRegistry
from raas.engine.backend import ComposeBackend, ContainerBackend, check_prerequisites
from raas.engine.dispatcher import JobDispatcher, TransitionRequest, TransitionResult
from raas.engine.driver import ProcessDriver
from raas.engine.exporter import StatusExporter
from raas.engine.state_machine import Operation
from raas.jobs.router import JobRouter
from raas.vault.credentials import Vault

logger = logging.getLogger(__name__)


class RaasService:
    """
    Root object of a running control plane.

    Args:
        config: Service configuration
        vault: Loaded credential vault (its grant is consumed here)
        rollup: The rollup deployed at bring-up, also the default instance
            for the single-instance HTTP routes
        backend: Container backend (defaults to ComposeBackend)
        sleep: Injectable for tests
    """

    def __init__(
        self,
        config: RaasConfig,
        vault: Vault,
        rollup: Optional[RollupConfig] = None,
        backend: Optional[ContainerBackend] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.rollup = rollup
        self.registry = InstanceRegistry(log_tail_capacity=config.log_tail_capacity)
        self.backend = backend or ComposeBackend(config.driver)

        grant = vault.issue_grant("process-driver")
        self.driver = ProcessDriver(self.backend, vault, grant, config.driver, sleep=sleep)
        self.dispatcher = JobDispatcher(self.registry, self.driver, history_size=config.result_history)
        self.exporter = StatusExporter(self.registry, max_log_limit=config.server.max_log_limit)
        self.jobs = JobRouter(self.dispatcher)

        self.prerequisites: Dict[str, bool] = {}
        self._bring_up_task: Optional[asyncio.Task] = None

        if rollup is not None:
            chain = ChainConfig.from_mapping(rollup.as_arguments())
            self.registry.register(rollup.instance_id, chain)
            logger.info(f"[Service] Registered {rollup.instance_id} (chain {chain.chain_id}, app {chain.avail_app_id})")

    @property
    def default_instance_id(self) -> Optional[str]:
        return self.rollup.instance_id if self.rollup else None

    async def check_prerequisites(self) -> Dict[str, bool]:
        self.prerequisites = await check_prerequisites(self.backend)
        return self.prerequisites

    async def bring_up(self) -> Optional[TransitionResult]:
        """Deploy the configured rollup. Missing host tools are logged, not fatal."""
        if self.rollup is None:
            logger.info("[Service] No rollup configured, skipping bring-up deploy")
            return None

        await self.check_prerequisites()
        missing = [name for name, ok in self.prerequisites.items() if not ok]
        if missing:
            logger.warning(f"[Service] Missing prerequisites: {', '.join(missing)}; deploy will likely fail")

        result = await self.dispatcher.submit(
            TransitionRequest.create(self.rollup.instance_id, Operation.DEPLOY, self.rollup.as_arguments())
        )
        logger.info(f"[Service] Bring-up: {result.message}")
        return result

    def start_bring_up(self) -> asyncio.Task:
        """Run bring_up() in the background while the HTTP surface serves status."""
        if self._bring_up_task is None or self._bring_up_task.done():
            self._bring_up_task = asyncio.create_task(self.bring_up(), name="bring-up-deploy")
            self._bring_up_task.add_done_callback(self._log_bring_up_failure)
        return self._bring_up_task

    @staticmethod
    def _log_bring_up_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[Service] Bring-up task {task.get_name()} crashed: {exc}", exc_info=exc)

    async def handle_job(
        self,
        job_id: Union[int, str],
        args: Optional[Mapping[str, Any]] = None,
        instance_id: Optional[str] = None,
    ) -> TransitionResult:
        """Entry point for the job transport. Defaults to the bring-up instance."""
        target = instance_id or self.default_instance_id
        if target is None:
            raise ValueError("No instance id given and no default rollup configured")
        return await self.jobs.handle(job_id, target, args)

    async def shutdown(self) -> None:
        task = self._bring_up_task
        if task is not None and not task.done():
            logger.info("[Service] Waiting for in-flight bring-up to finish")
            await asyncio.wait({task})
