# src/manifest/scanner.py — v1
"""Manifest scanner — discover Cargo.toml packages under a root directory.

Each [package] manifest becomes a ManifestNode whose declared dependency
names are the crate's [dependencies] and [build-dependencies] keys, minus
the platform SDK crates that are never deployed locally.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

from sorodeploy.core.models import ManifestNode

logger = logging.getLogger(__name__)

MANIFEST_NAME = "Cargo.toml"

SDK_CRATES = frozenset({
    "soroban-sdk",
    "stellar-xdr",
    "soroban-env-host",
    "soroban-env-common",
    "soroban-env-guest",
    "soroban-env-macros",
})

SKIPPED_DIRS = frozenset({"target", "node_modules"})


class ManifestScanner:
    """Find contract packages on disk."""

    def scan(self, root: str | Path, recursive: bool = True) -> list[ManifestNode]:
        """Scan root for Cargo.toml packages.

        Args:
            root: Directory to scan.
            recursive: If False, only root itself and its direct children.

        Returns:
            ManifestNodes in a stable (sorted path) order.

        Raises:
            ValueError: If root is not a directory.
        """
        root = Path(root)
        if not root.is_dir():
            raise ValueError(f"Scan root is not a directory: {root}")

        nodes: list[ManifestNode] = []
        for manifest in self._find_manifests(root, recursive):
            node = self.parse_manifest(manifest)
            if node is not None:
                nodes.append(node)

        logger.info(
            "Scanned %s: found %d package(s) (recursive=%s)",
            root, len(nodes), recursive,
        )
        return nodes

    def parse_manifest(self, manifest: Path) -> ManifestNode | None:
        """Parse one Cargo.toml. Returns None for workspace roots and bad files."""
        try:
            with manifest.open("rb") as fh:
                data = tomllib.load(fh)
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Skipping unreadable manifest %s: %s", manifest, exc)
            return None

        package = data.get("package")
        if not isinstance(package, dict):
            logger.debug("Skipping %s: no [package] section", manifest)
            return None

        contract_dir = manifest.parent.resolve()
        name = package.get("name")
        if not isinstance(name, str) or not name.strip():
            name = contract_dir.name
        version = package.get("version")

        return ManifestNode(
            id=str(manifest.resolve()),
            name=name,
            declared_dependency_names=frozenset(_dependency_names(data)),
            version=version if isinstance(version, str) else None,
            manifest_dir=str(contract_dir),
        )

    @staticmethod
    def _find_manifests(root: Path, recursive: bool) -> list[Path]:
        found: list[Path] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(
                d for d in dirnames if d not in SKIPPED_DIRS and not d.startswith(".")
            )
            if MANIFEST_NAME in filenames:
                found.append(Path(dirpath) / MANIFEST_NAME)
            if not recursive and Path(dirpath) != root:
                dirnames[:] = []
        return sorted(found)


def _dependency_names(data: dict[str, Any]) -> set[str]:
    names: set[str] = set()
    for section in ("dependencies", "build-dependencies"):
        table = data.get(section)
        if isinstance(table, dict):
            names.update(k for k in table if k not in SDK_CRATES)
    return names
