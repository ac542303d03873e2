# src/deploy/cli_deployer.py — v1
"""Deploy-one implementation backed by the stellar CLI.

Directory sources are built with `contract build` and the produced wasm
is deployed; artifact sources are deployed as-is with `contract deploy`.
Every outcome is returned as a DeployOutcome; nothing here raises for a
failed deployment.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel

from sorodeploy.core.cancellation import CancellationToken
from sorodeploy.core.models import ArtifactSource, BatchItem, DeployOutcome, DirectorySource
from sorodeploy.deploy.process import CommandResult, run_command

if TYPE_CHECKING:
    from sorodeploy.config.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_BUILD_TIMEOUT_S = 120.0
DEFAULT_DEPLOY_TIMEOUT_S = 60.0

WASM_TARGET_DIRS = ("wasm32v1-none", "wasm32-unknown-unknown")

_CONTRACT_ID_RE = re.compile(r"Contract\s+ID[:\s]+(C[A-Z0-9]{55})", re.IGNORECASE)
_BARE_CONTRACT_ID_RE = re.compile(r"\b(C[A-Z0-9]{55})\b")
_TX_HASH_RE = re.compile(r"Transaction\s+hash[:\s]+([a-f0-9]{64})", re.IGNORECASE)
_WASM_PATH_RE = re.compile(r"target/wasm32[^/\s]*/release/[^\s]+\.wasm")

_NETWORK_MARKERS = (
    "network", "timeout", "timed out", "connection", "unreachable",
    "econnrefused", "econnreset", "429", "502", "503", "504", "rate limit",
)
_VALIDATION_MARKERS = (
    "invalid", "not found", "no such file", "unauthorized", "forbidden",
    "missing argument", "unexpected argument",
)


class BuildOutcome(BaseModel):
    """Result of `contract build` for one directory."""

    success: bool
    wasm_path: str | None = None
    error: str | None = None
    error_type: str | None = None
    cancelled: bool = False
    output: str = ""


class CliDeployer:
    """Build and deploy contracts by shelling out to the CLI.

    Args:
        cli_path: CLI executable name or path.
        network: Target network passed as --network.
        source: Signing identity passed as --source.
        build_timeout_s: Timeout for one build.
        deploy_timeout_s: Timeout for one deploy.
        rpc_url: Explicit RPC endpoint; replaces --network when set.
        network_passphrase: Passphrase sent with rpc_url.
    """

    def __init__(
        self,
        cli_path: str = "stellar",
        network: str = "testnet",
        source: str = "dev",
        build_timeout_s: float = DEFAULT_BUILD_TIMEOUT_S,
        deploy_timeout_s: float = DEFAULT_DEPLOY_TIMEOUT_S,
        rpc_url: str | None = None,
        network_passphrase: str | None = None,
    ) -> None:
        if rpc_url is not None and not network_passphrase:
            raise ValueError("network_passphrase is required with rpc_url")
        self._cli_path = cli_path
        self._network = network
        self._source = source
        self._build_timeout_s = build_timeout_s
        self._deploy_timeout_s = deploy_timeout_s
        self._rpc_url = rpc_url
        self._network_passphrase = network_passphrase

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        rpc_url: str | None = None,
        network_passphrase: str | None = None,
    ) -> CliDeployer:
        return cls(
            cli_path=settings.cli_path,
            network=settings.network,
            source=settings.source,
            build_timeout_s=settings.build_timeout_s,
            deploy_timeout_s=settings.deploy_timeout_s,
            rpc_url=rpc_url,
            network_passphrase=network_passphrase,
        )

    @property
    def network(self) -> str:
        return self._network

    @property
    def rpc_url(self) -> str | None:
        return self._rpc_url

    async def __call__(self, item: BatchItem, token: CancellationToken) -> DeployOutcome:
        prepared = await self.prepare(item, token)
        if isinstance(prepared, DeployOutcome):
            return prepared
        return await self.deploy_wasm(prepared.source.path, token)

    async def prepare(
        self, item: BatchItem, token: CancellationToken,
    ) -> BatchItem | DeployOutcome:
        """Build a directory item into an artifact item.

        Artifact items come back unchanged. A failed build is returned as
        the item's final DeployOutcome.
        """
        source = item.source
        if isinstance(source, ArtifactSource):
            return item
        if not isinstance(source, DirectorySource):
            return DeployOutcome(
                success=False,
                error=f"Unsupported source kind for item '{item.id}'",
                error_type="validation",
            )
        build = await self.build(source.path, token)
        if not build.success or build.wasm_path is None:
            return DeployOutcome(
                success=False,
                error=build.error,
                error_type=build.error_type,
                cancelled=build.cancelled,
                output=build.output,
            )
        return item.model_copy(update={"source": ArtifactSource(path=build.wasm_path)})

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def build(self, contract_dir: str, token: CancellationToken | None = None) -> BuildOutcome:
        """Run `contract build` in contract_dir and locate the wasm."""
        directory = Path(contract_dir)
        if not directory.is_dir():
            return BuildOutcome(
                success=False,
                error=f"Contract directory not found: {contract_dir}",
                error_type="validation",
            )

        logger.info("Building contract in %s", directory)
        try:
            result = await self._run(
                ["contract", "build"], cwd=str(directory),
                timeout_s=self._build_timeout_s, token=token,
            )
        except OSError as exc:
            return BuildOutcome(
                success=False, error=self._cli_error(exc), error_type="validation",
            )
        if result.cancelled:
            return BuildOutcome(
                success=False, error="Build cancelled.", error_type="cancelled",
                cancelled=True, output=result.output,
            )
        if result.timed_out:
            return BuildOutcome(
                success=False, error="Build timed out.", error_type="execution",
                output=result.output,
            )
        if result.returncode != 0:
            return BuildOutcome(
                success=False,
                error=f"Build failed: {_last_line(result.output)}",
                error_type=_classify_output(result.output),
                output=result.output,
            )

        wasm = locate_wasm(directory, result.output)
        if wasm is None:
            return BuildOutcome(
                success=False,
                error="Build succeeded but could not locate WASM file",
                error_type="execution",
                output=result.output,
            )
        logger.info("Built %s", wasm)
        return BuildOutcome(success=True, wasm_path=str(wasm), output=result.output)

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    async def deploy_wasm(
        self, wasm_path: str, token: CancellationToken | None = None,
    ) -> DeployOutcome:
        """Run `contract deploy` for a wasm file and extract the contract id."""
        if not Path(wasm_path).is_file():
            return DeployOutcome(
                success=False,
                error=f"WASM file not found: {wasm_path}",
                error_type="validation",
            )

        logger.info("Deploying %s to %s", wasm_path, self._rpc_url or self._network)
        try:
            result = await self._run(
                [
                    "contract", "deploy",
                    "--wasm", wasm_path,
                    "--source", self._source,
                    *self._network_args(),
                ],
                timeout_s=self._deploy_timeout_s, token=token,
            )
        except OSError as exc:
            return DeployOutcome(
                success=False, error=self._cli_error(exc), error_type="validation",
            )
        if result.cancelled:
            return DeployOutcome(
                success=False, error="Deployment cancelled by user.",
                error_type="cancelled", cancelled=True, output=result.output,
            )
        if result.timed_out:
            return DeployOutcome(
                success=False, error="Deployment timed out.", error_type="execution",
                output=result.output,
            )
        if result.returncode != 0:
            return DeployOutcome(
                success=False,
                error=f"Deployment failed: {_last_line(result.output)}",
                error_type=_classify_output(result.output),
                output=result.output,
            )

        # Exit 0 means the transaction may already be on-chain; never redeploy.
        contract_id = extract_contract_id(result.output)
        if contract_id is None:
            return DeployOutcome(
                success=False,
                error="Could not extract Contract ID from deployment output",
                error_type="validation",
                output=result.output,
            )
        tx_hash = extract_transaction_hash(result.output)
        logger.info("Deployed contract %s", contract_id)
        return DeployOutcome(
            success=True,
            artifact_ref=contract_id,
            transaction_hash=tx_hash,
            output=result.output,
        )

    # ------------------------------------------------------------------

    def _network_args(self) -> list[str]:
        if self._rpc_url is None:
            return ["--network", self._network]
        return ["--rpc-url", self._rpc_url, "--network-passphrase", self._network_passphrase]

    async def _run(
        self,
        args: list[str],
        timeout_s: float,
        token: CancellationToken | None,
        cwd: str | None = None,
    ) -> CommandResult:
        return await run_command(
            [self._cli_path, *args], cwd=cwd, timeout_s=timeout_s, token=token,
        )

    def _cli_error(self, exc: OSError) -> str:
        if isinstance(exc, FileNotFoundError):
            logger.error("CLI not found at '%s'", self._cli_path)
            return (
                f"CLI not found at '{self._cli_path}'. "
                "Install it or set SORODEPLOY_CLI_PATH."
            )
        return f"CLI at '{self._cli_path}' could not be started: {exc}"


def extract_contract_id(output: str) -> str | None:
    """Find the deployed contract id (56-char strkey starting with C)."""
    match = _CONTRACT_ID_RE.search(output) or _BARE_CONTRACT_ID_RE.search(output)
    return match.group(1) if match else None


def extract_transaction_hash(output: str) -> str | None:
    match = _TX_HASH_RE.search(output)
    return match.group(1) if match else None


def locate_wasm(contract_dir: Path, build_output: str = "") -> Path | None:
    """Find the built wasm from the build output or the target directories."""
    match = _WASM_PATH_RE.search(build_output)
    if match:
        candidate = contract_dir / match.group(0)
        if candidate.is_file():
            return candidate
    for target in WASM_TARGET_DIRS:
        release = contract_dir / "target" / target / "release"
        if release.is_dir():
            wasm_files = sorted(release.glob("*.wasm"))
            if wasm_files:
                return wasm_files[0]
    return None


def _classify_output(output: str) -> str:
    lower = output.lower()
    if any(marker in lower for marker in _NETWORK_MARKERS):
        return "network"
    if any(marker in lower for marker in _VALIDATION_MARKERS):
        return "validation"
    return "execution"


def _last_line(output: str) -> str:
    lines = [line for line in output.splitlines() if line.strip()]
    return lines[-1].strip() if lines else "no output"
