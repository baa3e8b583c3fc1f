"""Sequential runner for file-signalled CLI agent jobs."""

__version__ = "0.3.0"
