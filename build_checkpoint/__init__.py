"""Multi-volume streaming checkpoint/restore for large build trees.

Main Classes:
    - CheckpointOrchestrator: Create, restore and clean up checkpoints
    - CheckpointManifest: Ordered volume list of one checkpoint
    - CheckpointConfig: Validated configuration
"""
from .__version__ import __version__
from .config.settings import CheckpointConfig
from .manifest import CheckpointManifest
from .orchestrator import CheckpointOrchestrator

__all__ = [
    "CheckpointConfig",
    "CheckpointManifest",
    "CheckpointOrchestrator",
    "__version__",
]
