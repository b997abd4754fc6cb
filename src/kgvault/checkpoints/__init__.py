"""Checkpoint artifacts: create, restore, list, stat, delete."""

from kgvault.checkpoints.manager import CheckpointArtifact, CheckpointManager, artifact_path

__all__ = ["CheckpointArtifact", "CheckpointManager", "artifact_path"]
