"""stepflow - execution core for multi-agent step pipelines."""

__version__ = "0.1.0"
