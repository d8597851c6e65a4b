"""Container and tooling boundary for the Process Driver."""
#
# PURPOSE:
# Everything that touches the host lives behind ContainerBackend: pulling the
# node image, fetching the Orbit SDK and setup script, running the
# contract-deployment and bridge tools, docker compose up/stop, and the RPC
# health probe. The driver treats it as a black box that returns an exit code
# plus output lines; tests substitute a fake.
#
# ComposeBackend runs real commands with asyncio.create_subprocess_exec and
# streams their merged stdout/stderr line by line into the caller's sink
# (the instance log tail).
#
# Secrets only ever reach a child process through the ``env`` mapping that
# the driver fills from a SigningCapability. They are never part of argv.
#

from __future__ import annotations

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import httpx

from raas.base.config import DriverConfig
from raas.data.registry import HealthSnapshot
from raas.engine.steps import PermanentStepError

logger = logging.getLogger(__name__)

LineSink = Callable[[str], None]

NODE_CONFIG_FILE = "nodeConfig.json"
SETUP_CONFIG_FILE = "orbitSetupScriptConfig.json"


@dataclass
class CommandResult:
    exit_code: int
    lines: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return "\n".join(self.lines)

    def tail(self, count: int = 5) -> str:
        return " | ".join(self.lines[-count:])


@dataclass(frozen=True)
class DeploymentLayout:
    """On-disk layout of one instance's deployment workspace."""

    work_dir: Path

    @property
    def sdk_dir(self) -> Path:
        return self.work_dir / "arbitrum-orbit-sdk"

    @property
    def rollup_dir(self) -> Path:
        return self.sdk_dir / "examples" / "create-avail-rollup-eth"

    @property
    def setup_dir(self) -> Path:
        return self.work_dir / "orbit-setup-script"

    @property
    def setup_config_dir(self) -> Path:
        return self.setup_dir / "config"

    @property
    def node_config(self) -> Path:
        return self.rollup_dir / NODE_CONFIG_FILE

    @property
    def setup_config(self) -> Path:
        return self.rollup_dir / SETUP_CONFIG_FILE

    @property
    def deployment_file(self) -> Path:
        return self.work_dir / "deployment.json"

    @property
    def metadata_file(self) -> Path:
        return self.work_dir / "metadata.json"

    @property
    def bridge_file(self) -> Path:
        return self.work_dir / "bridge.json"


class ContainerBackend(ABC):
    """Black-box lifecycle commands for the node and its tooling."""

    @abstractmethod
    async def pull_image(self, image: str, on_line: Optional[LineSink] = None) -> CommandResult:
        ...

    @abstractmethod
    async def fetch_tooling(self, layout: DeploymentLayout, on_line: Optional[LineSink] = None) -> CommandResult:
        ...

    @abstractmethod
    async def deploy_contracts(
        self, layout: DeploymentLayout, env: Mapping[str, str], on_line: Optional[LineSink] = None
    ) -> CommandResult:
        ...

    @abstractmethod
    async def compose_up(self, layout: DeploymentLayout, on_line: Optional[LineSink] = None) -> CommandResult:
        ...

    @abstractmethod
    async def container_ids(self, layout: DeploymentLayout) -> List[str]:
        ...

    @abstractmethod
    async def stop_containers(self, container_ids: Sequence[str], on_line: Optional[LineSink] = None) -> CommandResult:
        ...

    @abstractmethod
    async def run_bridge_setup(
        self, layout: DeploymentLayout, env: Mapping[str, str], on_line: Optional[LineSink] = None
    ) -> CommandResult:
        ...

    @abstractmethod
    async def check_health(self, rpc_endpoint: str, expected_chain_id: Optional[int] = None) -> HealthSnapshot:
        ...

    @abstractmethod
    async def probe(self, argv: Sequence[str]) -> bool:
        """True when ``argv`` runs and exits 0 (used for prerequisite checks)."""


class ComposeBackend(ContainerBackend):
    """Default backend: docker, docker compose, git, npm and yarn on the local host."""

    def __init__(self, config: DriverConfig, http_timeout: float = 5.0):
        self.config = config
        self.http_timeout = http_timeout

    async def _exec(
        self,
        argv: Sequence[str],
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        on_line: Optional[LineSink] = None,
    ) -> CommandResult:
        child_env: Optional[Dict[str, str]] = None
        if env:
            child_env = dict(os.environ)
            child_env.update(env)

        label = os.path.basename(argv[0])
        logger.info(f"[Backend] Running {' '.join(argv)}" + (f" in {cwd}" if cwd else ""))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd) if cwd else None,
                env=child_env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as exc:
            raise PermanentStepError(f"{label} is not installed or not in PATH") from exc

        lines: List[str] = []
        assert proc.stdout is not None
        try:
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="ignore").rstrip()
                if not text:
                    continue
                lines.append(text)
                if on_line is not None:
                    on_line(f"[{label}] {text}")
            exit_code = await proc.wait()
        finally:
            # Cancelled by a step timeout: do not leave the child behind
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()

        if on_line is not None:
            on_line(f"[{label}] exit code {exit_code}")
        return CommandResult(exit_code=exit_code, lines=lines)

    async def pull_image(self, image: str, on_line: Optional[LineSink] = None) -> CommandResult:
        return await self._exec(["docker", "pull", image], on_line=on_line)

    async def fetch_tooling(self, layout: DeploymentLayout, on_line: Optional[LineSink] = None) -> CommandResult:
        layout.work_dir.mkdir(parents=True, exist_ok=True)
        lines: List[str] = []

        if not (layout.sdk_dir / ".git").is_dir():
            result = await self._exec(
                ["git", "clone", self.config.orbit_sdk_repo, str(layout.sdk_dir)], on_line=on_line
            )
            lines.extend(result.lines)
            if not result.ok:
                return CommandResult(result.exit_code, lines)
        result = await self._exec(
            ["git", "checkout", self.config.orbit_sdk_branch], cwd=layout.sdk_dir, on_line=on_line
        )
        lines.extend(result.lines)
        if not result.ok:
            return CommandResult(result.exit_code, lines)

        if not (layout.setup_dir / ".git").is_dir():
            result = await self._exec(
                ["git", "clone", self.config.setup_script_repo, str(layout.setup_dir)], on_line=on_line
            )
            lines.extend(result.lines)
            if not result.ok:
                return CommandResult(result.exit_code, lines)

        return CommandResult(0, lines)

    async def deploy_contracts(
        self, layout: DeploymentLayout, env: Mapping[str, str], on_line: Optional[LineSink] = None
    ) -> CommandResult:
        return await self._exec(
            ["npm", "run", "deploy-avail-orbit-rollup"], cwd=layout.rollup_dir, env=env, on_line=on_line
        )

    async def compose_up(self, layout: DeploymentLayout, on_line: Optional[LineSink] = None) -> CommandResult:
        return await self._exec(
            [*self.config.compose_command, "up", "-d"], cwd=layout.setup_dir, on_line=on_line
        )

    async def container_ids(self, layout: DeploymentLayout) -> List[str]:
        result = await self._exec([*self.config.compose_command, "ps", "-q"], cwd=layout.setup_dir)
        if not result.ok:
            return []
        return [line.strip() for line in result.lines if line.strip()]

    async def stop_containers(self, container_ids: Sequence[str], on_line: Optional[LineSink] = None) -> CommandResult:
        if not container_ids:
            return CommandResult(0, [])
        return await self._exec(["docker", "stop", *container_ids], on_line=on_line)

    async def run_bridge_setup(
        self, layout: DeploymentLayout, env: Mapping[str, str], on_line: Optional[LineSink] = None
    ) -> CommandResult:
        return await self._exec(["yarn", "run", "setup"], cwd=layout.setup_dir, env=env, on_line=on_line)

    async def check_health(self, rpc_endpoint: str, expected_chain_id: Optional[int] = None) -> HealthSnapshot:
        payload = {"jsonrpc": "2.0", "id": 1, "method": "eth_chainId", "params": []}
        try:
            async with httpx.AsyncClient(timeout=self.http_timeout) as client:
                response = await client.post(rpc_endpoint, json=payload)
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            return HealthSnapshot(timestamp=time.time(), healthy=False, reason=f"rpc unreachable: {exc}")

        if "error" in body:
            return HealthSnapshot(timestamp=time.time(), healthy=False, reason=f"rpc error: {body['error']}")
        try:
            chain_id = int(body.get("result", ""), 16)
        except (TypeError, ValueError):
            return HealthSnapshot(timestamp=time.time(), healthy=False, reason=f"unexpected rpc result: {body!r}")
        if expected_chain_id is not None and chain_id != expected_chain_id:
            return HealthSnapshot(
                timestamp=time.time(),
                healthy=False,
                reason=f"chain id mismatch: expected {expected_chain_id}, got {chain_id}",
            )
        return HealthSnapshot(timestamp=time.time(), healthy=True)

    async def probe(self, argv: Sequence[str]) -> bool:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except (FileNotFoundError, PermissionError):
            return False
        return await proc.wait() == 0


# ============================================================================
# Prerequisite checks
# ============================================================================

PREREQUISITES: Dict[str, List[List[str]]] = {
    "docker": [["docker", "--version"]],
    "docker compose": [["docker", "compose", "version"], ["docker-compose", "--version"]],
    "npm": [["npm", "--version"]],
    "yarn": [["yarn", "--version"]],
}


async def check_prerequisites(backend: ContainerBackend) -> Dict[str, bool]:
    """Report which host tools are available. Any alternative command counts."""
    results: Dict[str, bool] = {}
    for name, candidates in PREREQUISITES.items():
        available = False
        for argv in candidates:
            if await backend.probe(argv):
                available = True
                break
        results[name] = available
        if available:
            logger.info(f"[Prerequisites] {name}: available")
        else:
            logger.warning(f"[Prerequisites] {name}: NOT available")
    return results
