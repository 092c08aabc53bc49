"""Durable artifact storage and naming."""

from src.devpipeline.artifacts.naming import (
    design_branch_name,
    design_doc_path,
    implementation_branch_name,
    phase_branch_name,
    task_branch_name,
)
from src.devpipeline.artifacts.store import (
    ARTIFACT_TYPES,
    ArtifactStore,
    PostgresArtifactStore,
    artifact_locator,
)

__all__ = [
    "ARTIFACT_TYPES",
    "ArtifactStore",
    "PostgresArtifactStore",
    "artifact_locator",
    "design_branch_name",
    "design_doc_path",
    "implementation_branch_name",
    "phase_branch_name",
    "task_branch_name",
]
