# src/core/models.py — v1
"""Shared domain models: ManifestNode, source descriptors, BatchItem, ItemStatus.

These records are created once per scan/run and never mutated afterwards,
so every model here is frozen.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, field_validator


class ManifestNode(BaseModel):
    """One deployable package discovered by a manifest scan."""

    model_config = {"frozen": True}

    id: str
    name: str
    declared_dependency_names: frozenset[str] = frozenset()
    version: str | None = None
    manifest_dir: str | None = None


class DirectorySource(BaseModel):
    """Local contract directory: build, then deploy the produced wasm."""

    model_config = {"frozen": True}

    kind: Literal["directory"] = "directory"
    path: str


class ArtifactSource(BaseModel):
    """Prebuilt wasm artifact: deploy directly."""

    model_config = {"frozen": True}

    kind: Literal["artifact"] = "artifact"
    path: str


SourceDescriptor = Annotated[
    Union[DirectorySource, ArtifactSource],
    Field(discriminator="kind"),
]


class BatchItem(BaseModel):
    """One unit of deployment work within a batch."""

    model_config = {"frozen": True}

    id: str
    name: str
    source: SourceDescriptor
    depends_on: frozenset[str] = frozenset()

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("BatchItem id must be non-empty")
        return v


class ItemStatus(str, Enum):
    """Lifecycle state of a single batch item."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (ItemStatus.PENDING, ItemStatus.RUNNING)


class DeployOutcome(BaseModel):
    """Result reported by a deploy-one operation."""

    success: bool
    error: str | None = None
    error_type: str | None = None
    artifact_ref: str | None = None
    transaction_hash: str | None = None
    cancelled: bool = False
    output: str = ""
