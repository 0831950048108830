"""Stage orchestration for multi-account AWS landing zone deployments."""

__version__ = "0.1.0"
