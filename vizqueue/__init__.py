"""Multi-provider job queue and pipeline progress tracking."""

__version__ = "0.1.0"
