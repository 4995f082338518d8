"""Client for streaming and resuming long-running generation jobs."""

__version__ = "0.4.0"
