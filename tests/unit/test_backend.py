"""Unit tests for the container backend boundary."""
import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from raas.engine.backend import (
    CommandResult,
    ComposeBackend,
    DeploymentLayout,
    check_prerequisites,
)
from raas.engine.steps import PermanentStepError
from tests.conftest import FakeBackend

RPC = "http://localhost:8449"


def rpc_response(body, status=200):
    return httpx.Response(status, json=body, request=httpx.Request("POST", RPC))


class TestDeploymentLayout:
    def test_paths(self):
        layout = DeploymentLayout(Path("/w"))
        assert layout.rollup_dir == Path("/w/arbitrum-orbit-sdk/examples/create-avail-rollup-eth")
        assert layout.node_config.name == "nodeConfig.json"
        assert layout.setup_config.name == "orbitSetupScriptConfig.json"
        assert layout.setup_config_dir == Path("/w/orbit-setup-script/config")
        assert layout.deployment_file == Path("/w/deployment.json")


def test_command_result_tail():
    result = CommandResult(2, [str(i) for i in range(10)])
    assert not result.ok
    assert result.tail(3) == "7 | 8 | 9"
    assert result.output.startswith("0\n1")


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_matching_chain_id_is_healthy(self, driver_config):
        backend = ComposeBackend(driver_config)
        post = AsyncMock(return_value=rpc_response({"jsonrpc": "2.0", "id": 1, "result": hex(412346)}))
        with patch("httpx.AsyncClient.post", new=post):
            snapshot = await backend.check_health(RPC, expected_chain_id=412346)
        assert snapshot.healthy is True
        assert snapshot.reason is None
        assert post.call_args.kwargs["json"]["method"] == "eth_chainId"

    @pytest.mark.asyncio
    async def test_chain_id_mismatch(self, driver_config):
        backend = ComposeBackend(driver_config)
        post = AsyncMock(return_value=rpc_response({"jsonrpc": "2.0", "id": 1, "result": "0x1"}))
        with patch("httpx.AsyncClient.post", new=post):
            snapshot = await backend.check_health(RPC, expected_chain_id=412346)
        assert snapshot.healthy is False
        assert "mismatch" in snapshot.reason

    @pytest.mark.asyncio
    async def test_rpc_error_body(self, driver_config):
        backend = ComposeBackend(driver_config)
        post = AsyncMock(return_value=rpc_response({"jsonrpc": "2.0", "id": 1, "error": {"code": -32601}}))
        with patch("httpx.AsyncClient.post", new=post):
            snapshot = await backend.check_health(RPC)
        assert snapshot.healthy is False
        assert snapshot.reason.startswith("rpc error")

    @pytest.mark.asyncio
    async def test_unreachable(self, driver_config):
        backend = ComposeBackend(driver_config)
        post = AsyncMock(side_effect=httpx.ConnectError("connection refused"))
        with patch("httpx.AsyncClient.post", new=post):
            snapshot = await backend.check_health(RPC)
        assert snapshot.healthy is False
        assert "unreachable" in snapshot.reason

    @pytest.mark.asyncio
    async def test_http_error_status(self, driver_config):
        backend = ComposeBackend(driver_config)
        post = AsyncMock(return_value=rpc_response({}, status=503))
        with patch("httpx.AsyncClient.post", new=post):
            snapshot = await backend.check_health(RPC)
        assert snapshot.healthy is False


class TestExec:
    @pytest.mark.asyncio
    async def test_streams_lines(self, driver_config):
        backend = ComposeBackend(driver_config)
        sink = []
        result = await backend._exec([sys.executable, "-c", "print('one'); print('two')"], on_line=sink.append)
        assert result.ok
        assert result.lines == ["one", "two"]
        assert sink[0].endswith("one")
        assert sink[-1].endswith("exit code 0")

    @pytest.mark.asyncio
    async def test_env_reaches_child_only(self, driver_config, monkeypatch):
        monkeypatch.delenv("RAAS_TEST_VALUE", raising=False)
        backend = ComposeBackend(driver_config)
        script = "import os; print(os.environ['RAAS_TEST_VALUE'])"
        result = await backend._exec([sys.executable, "-c", script], env={"RAAS_TEST_VALUE": "injected"})
        assert result.lines == ["injected"]
        assert "RAAS_TEST_VALUE" not in os.environ

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, driver_config):
        backend = ComposeBackend(driver_config)
        result = await backend._exec([sys.executable, "-c", "import sys; sys.exit(3)"])
        assert result.exit_code == 3

    @pytest.mark.asyncio
    async def test_missing_binary_is_permanent(self, driver_config):
        backend = ComposeBackend(driver_config)
        with pytest.raises(PermanentStepError):
            await backend._exec(["raas-no-such-binary-xyz"])

    @pytest.mark.asyncio
    async def test_probe(self, driver_config):
        backend = ComposeBackend(driver_config)
        assert await backend.probe([sys.executable, "--version"]) is True
        assert await backend.probe(["raas-no-such-binary-xyz"]) is False

    @pytest.mark.asyncio
    async def test_stop_without_containers_is_noop(self, driver_config):
        result = await ComposeBackend(driver_config).stop_containers([])
        assert result.ok
        assert result.lines == []


@pytest.mark.asyncio
async def test_prerequisites_accept_alternatives():
    backend = FakeBackend()
    backend.available = {"docker": False, "docker-compose": True, "yarn": False}
    results = await check_prerequisites(backend)
    assert results == {
        "docker": False,
        "docker compose": True,
        "npm": True,
        "yarn": False,
    }
