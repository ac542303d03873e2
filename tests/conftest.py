# tests/conftest.py — v1
"""Shared test fixtures for all unit and integration tests.

Provides item/manifest factories, a fake monotonic clock, a scripted
deploy-one recorder, and temp contract workspaces. No external
dependencies: the deploy tool and RPC endpoints are always faked.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable

import pytest

from sorodeploy.core.cancellation import CancellationToken
from sorodeploy.core.models import ArtifactSource, BatchItem, DeployOutcome, ManifestNode
from sorodeploy.logging.context import clear_context


# === Helpers ===


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class DeployRecorder:
    """Scripted deploy-one that records calls and peak concurrency.

    Args:
        failures: Item ids whose deployment reports failure.
        delay_s: Simulated deployment time.
        raises: Item ids whose deployment raises RuntimeError.
    """

    def __init__(
        self,
        failures: set[str] | None = None,
        delay_s: float = 0.0,
        raises: set[str] | None = None,
    ) -> None:
        self.failures = failures or set()
        self.raises = raises or set()
        self.delay_s = delay_s
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.tokens: list[CancellationToken] = []

    async def __call__(self, item: BatchItem, token: CancellationToken) -> DeployOutcome:
        self.calls.append(item.id)
        self.tokens.append(token)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            else:
                await asyncio.sleep(0)
            if item.id in self.raises:
                raise RuntimeError(f"boom in {item.id}")
            if item.id in self.failures:
                return DeployOutcome(
                    success=False, error=f"{item.id} rejected", error_type="execution",
                )
            return DeployOutcome(success=True, artifact_ref=f"C-{item.id}")
        finally:
            self.in_flight -= 1


# === FIXTURES: Factories ===


@pytest.fixture
def make_item() -> Callable[..., BatchItem]:
    """Factory: make_item("A", deps=("B",)) -> BatchItem with an artifact source."""

    def _make(item_id: str, deps: tuple[str, ...] | list[str] = ()) -> BatchItem:
        return BatchItem(
            id=item_id,
            name=item_id,
            source=ArtifactSource(path=f"/artifacts/{item_id}.wasm"),
            depends_on=frozenset(deps),
        )

    return _make


@pytest.fixture
def make_node() -> Callable[..., ManifestNode]:
    """Factory: make_node("A", deps=("B",)) -> ManifestNode with id == name."""

    def _make(name: str, deps: tuple[str, ...] | list[str] = (), node_id: str | None = None) -> ManifestNode:
        return ManifestNode(
            id=node_id or name,
            name=name,
            declared_dependency_names=frozenset(deps),
            manifest_dir=f"/contracts/{name}",
        )

    return _make


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorder() -> DeployRecorder:
    return DeployRecorder()


@pytest.fixture
def make_recorder() -> Callable[..., DeployRecorder]:
    """Factory: make_recorder(failures={"B"}, delay_s=0.01)."""
    return DeployRecorder


# === FIXTURES: Filesystem ===


def write_manifest(
    directory: Path,
    name: str,
    deps: tuple[str, ...] = (),
    build_deps: tuple[str, ...] = (),
) -> Path:
    """Write a minimal Cargo.toml and return its path."""
    directory.mkdir(parents=True, exist_ok=True)
    lines = ["[package]", f'name = "{name}"', 'version = "0.1.0"', "", "[dependencies]"]
    lines.append('soroban-sdk = "21.0.0"')
    lines.extend(f'{dep} = {{ path = "../{dep}" }}' for dep in deps)
    if build_deps:
        lines.extend(["", "[build-dependencies]"])
        lines.extend(f'{dep} = "1.0"' for dep in build_deps)
    manifest = directory / "Cargo.toml"
    manifest.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return manifest


@pytest.fixture
def manifest_writer() -> Callable[..., Path]:
    return write_manifest


@pytest.fixture
def contracts_root(tmp_path: Path) -> Path:
    """Workspace with token <- amm <- router (router needs both)."""
    root = tmp_path / "contracts"
    write_manifest(root / "token", "token")
    write_manifest(root / "amm", "amm", deps=("token",))
    write_manifest(root / "router", "router", deps=("amm", "token"))
    return root


# === FIXTURES: Isolation ===


@pytest.fixture(autouse=True)
def _reset_log_context():
    yield
    clear_context()
