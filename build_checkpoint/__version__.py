"""Version information for build-checkpoint."""

__version__ = "1.0.0"
