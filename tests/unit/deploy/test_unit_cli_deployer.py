# tests/unit/deploy/test_unit_cli_deployer.py — v1
"""Tests for deploy/cli_deployer.py — CLI invocation is always mocked."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from sorodeploy.core.cancellation import CancellationToken
from sorodeploy.core.models import ArtifactSource, BatchItem, DirectorySource
from sorodeploy.deploy.cli_deployer import (
    CliDeployer,
    extract_contract_id,
    extract_transaction_hash,
    locate_wasm,
)
from sorodeploy.deploy.process import CommandResult

CONTRACT_ID = "C" + "A" * 55
TX_HASH = "ab" * 32
RUN_COMMAND = "sorodeploy.deploy.cli_deployer.run_command"


def _result(returncode: int = 0, stdout: str = "", stderr: str = "", **kwargs) -> CommandResult:
    return CommandResult(args=[], returncode=returncode, stdout=stdout, stderr=stderr, **kwargs)


@pytest.fixture
def wasm_file(tmp_path):
    path = tmp_path / "token.wasm"
    path.write_bytes(b"\x00asm")
    return path


@pytest.fixture
def contract_dir(tmp_path):
    directory = tmp_path / "token"
    release = directory / "target" / "wasm32v1-none" / "release"
    release.mkdir(parents=True)
    (release / "token.wasm").write_bytes(b"\x00asm")
    return directory


class TestExtraction:
    def test_contract_id_labelled(self):
        assert extract_contract_id(f"Contract ID: {CONTRACT_ID}") == CONTRACT_ID

    def test_contract_id_bare_line(self):
        assert extract_contract_id(f"Simulating...\n{CONTRACT_ID}\n") == CONTRACT_ID

    def test_contract_id_absent(self):
        assert extract_contract_id("nothing here") is None

    def test_transaction_hash(self):
        assert extract_transaction_hash(f"Transaction hash: {TX_HASH}") == TX_HASH
        assert extract_transaction_hash("no hash") is None


class TestLocateWasm:
    def test_from_target_dir(self, contract_dir):
        found = locate_wasm(contract_dir)
        assert found is not None
        assert found.name == "token.wasm"

    def test_from_build_output(self, tmp_path):
        release = tmp_path / "target" / "wasm32-unknown-unknown" / "release"
        release.mkdir(parents=True)
        (release / "amm.wasm").write_bytes(b"")
        output = "Wasm File: target/wasm32-unknown-unknown/release/amm.wasm"
        assert locate_wasm(tmp_path, output) == release / "amm.wasm"

    def test_nothing_built(self, tmp_path):
        assert locate_wasm(tmp_path) is None


class TestDeployWasm:
    @pytest.mark.asyncio
    async def test_success(self, wasm_file):
        deployer = CliDeployer(cli_path="stellar", network="testnet", source="alice")
        run = AsyncMock(return_value=_result(
            stdout=f"Transaction hash: {TX_HASH}\n{CONTRACT_ID}",
        ))
        with patch(RUN_COMMAND, run):
            outcome = await deployer.deploy_wasm(str(wasm_file))
        assert outcome.success
        assert outcome.artifact_ref == CONTRACT_ID
        assert outcome.transaction_hash == TX_HASH
        args = run.await_args.args[0]
        assert args == [
            "stellar", "contract", "deploy",
            "--wasm", str(wasm_file),
            "--source", "alice",
            "--network", "testnet",
        ]

    @pytest.mark.asyncio
    async def test_explicit_rpc_url_replaces_network(self, wasm_file):
        deployer = CliDeployer(
            source="alice", rpc_url="https://rpc.example", network_passphrase="Test SDF",
        )
        run = AsyncMock(return_value=_result(stdout=CONTRACT_ID))
        with patch(RUN_COMMAND, run):
            await deployer.deploy_wasm(str(wasm_file))
        args = run.await_args.args[0]
        assert args[-4:] == [
            "--rpc-url", "https://rpc.example", "--network-passphrase", "Test SDF",
        ]
        assert "--network" not in args

    def test_rpc_url_requires_passphrase(self):
        with pytest.raises(ValueError, match="network_passphrase"):
            CliDeployer(rpc_url="https://rpc.example")

    @pytest.mark.asyncio
    async def test_missing_wasm(self, tmp_path):
        run = AsyncMock()
        with patch(RUN_COMMAND, run):
            outcome = await CliDeployer().deploy_wasm(str(tmp_path / "missing.wasm"))
        assert not outcome.success
        assert outcome.error_type == "validation"
        assert outcome.error.startswith("WASM file not found")
        run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cli_not_installed(self, wasm_file):
        run = AsyncMock(side_effect=FileNotFoundError("stellar"))
        with patch(RUN_COMMAND, run):
            outcome = await CliDeployer(cli_path="/opt/stellar").deploy_wasm(str(wasm_file))
        assert outcome.error_type == "validation"
        assert "CLI not found at '/opt/stellar'" in outcome.error

    @pytest.mark.asyncio
    async def test_network_failure_classified(self, wasm_file):
        run = AsyncMock(return_value=_result(1, stderr="error: connection refused by rpc"))
        with patch(RUN_COMMAND, run):
            outcome = await CliDeployer().deploy_wasm(str(wasm_file))
        assert outcome.error == "Deployment failed: error: connection refused by rpc"
        assert outcome.error_type == "network"

    @pytest.mark.asyncio
    async def test_validation_failure_classified(self, wasm_file):
        run = AsyncMock(return_value=_result(1, stderr="error: invalid wasm magic"))
        with patch(RUN_COMMAND, run):
            outcome = await CliDeployer().deploy_wasm(str(wasm_file))
        assert outcome.error_type == "validation"

    @pytest.mark.asyncio
    async def test_no_contract_id_in_output(self, wasm_file):
        run = AsyncMock(return_value=_result(stdout="done"))
        with patch(RUN_COMMAND, run):
            outcome = await CliDeployer().deploy_wasm(str(wasm_file))
        assert not outcome.success
        assert outcome.error == "Could not extract Contract ID from deployment output"
        assert outcome.error_type == "validation"

    @pytest.mark.asyncio
    async def test_cancelled(self, wasm_file):
        run = AsyncMock(return_value=_result(None, cancelled=True))
        with patch(RUN_COMMAND, run):
            outcome = await CliDeployer().deploy_wasm(str(wasm_file), CancellationToken())
        assert outcome.cancelled
        assert outcome.error == "Deployment cancelled by user."

    @pytest.mark.asyncio
    async def test_timed_out(self, wasm_file):
        run = AsyncMock(return_value=_result(None, timed_out=True))
        with patch(RUN_COMMAND, run):
            outcome = await CliDeployer(deploy_timeout_s=1).deploy_wasm(str(wasm_file))
        assert outcome.error == "Deployment timed out."
        assert run.await_args.kwargs["timeout_s"] == 1


class TestBuildAndDeploy:
    @pytest.mark.asyncio
    async def test_directory_item_builds_then_deploys(self, contract_dir):
        run = AsyncMock(side_effect=[
            _result(stdout="Build Complete"),
            _result(stdout=CONTRACT_ID),
        ])
        item = BatchItem(id="token", name="token", source=DirectorySource(path=str(contract_dir)))
        with patch(RUN_COMMAND, run):
            outcome = await CliDeployer()(item, CancellationToken())
        assert outcome.success
        build_call, deploy_call = run.await_args_list
        assert build_call.args[0] == ["stellar", "contract", "build"]
        assert build_call.kwargs["cwd"] == str(contract_dir)
        assert deploy_call.args[0][3:5] == ["--wasm", str(locate_wasm(contract_dir))]

    @pytest.mark.asyncio
    async def test_artifact_item_skips_build(self, wasm_file):
        run = AsyncMock(return_value=_result(stdout=CONTRACT_ID))
        item = BatchItem(id="token", name="token", source=ArtifactSource(path=str(wasm_file)))
        with patch(RUN_COMMAND, run):
            outcome = await CliDeployer()(item, CancellationToken())
        assert outcome.artifact_ref == CONTRACT_ID
        assert run.await_count == 1

    @pytest.mark.asyncio
    async def test_build_failure_stops_deploy(self, contract_dir):
        run = AsyncMock(return_value=_result(101, stderr="error[E0425]: cannot find value"))
        item = BatchItem(id="token", name="token", source=DirectorySource(path=str(contract_dir)))
        with patch(RUN_COMMAND, run):
            outcome = await CliDeployer()(item, CancellationToken())
        assert not outcome.success
        assert outcome.error == "Build failed: error[E0425]: cannot find value"
        assert outcome.error_type == "execution"
        assert run.await_count == 1

    @pytest.mark.asyncio
    async def test_prepare_turns_directory_into_artifact(self, contract_dir):
        run = AsyncMock(return_value=_result(stdout="Build Complete"))
        item = BatchItem(
            id="token", name="token", source=DirectorySource(path=str(contract_dir)),
            depends_on=frozenset({"base"}),
        )
        with patch(RUN_COMMAND, run):
            prepared = await CliDeployer().prepare(item, CancellationToken())
        assert isinstance(prepared, BatchItem)
        assert prepared.source == ArtifactSource(path=str(locate_wasm(contract_dir)))
        assert prepared.depends_on == frozenset({"base"})
        assert run.await_count == 1

    @pytest.mark.asyncio
    async def test_prepare_leaves_artifact_alone(self, wasm_file):
        run = AsyncMock()
        item = BatchItem(id="token", name="token", source=ArtifactSource(path=str(wasm_file)))
        with patch(RUN_COMMAND, run):
            assert await CliDeployer().prepare(item, CancellationToken()) is item
        run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path):
        item = BatchItem(id="x", name="x", source=DirectorySource(path=str(tmp_path / "gone")))
        outcome = await CliDeployer()(item, CancellationToken())
        assert outcome.error_type == "validation"
        assert "Contract directory not found" in outcome.error

    @pytest.mark.asyncio
    async def test_build_without_wasm(self, tmp_path):
        run = AsyncMock(return_value=_result(stdout="Build Complete"))
        with patch(RUN_COMMAND, run):
            outcome = await CliDeployer().build(str(tmp_path))
        assert outcome.error == "Build succeeded but could not locate WASM file"

    def test_from_settings(self):
        from sorodeploy.config.settings import Settings

        settings = Settings(_env_file=None, network="futurenet", cli_path="/bin/stellar")
        deployer = CliDeployer.from_settings(settings)
        assert deployer.network == "futurenet"
