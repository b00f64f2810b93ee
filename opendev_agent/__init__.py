"""OpenDev Agent - approval-gated execution orchestrator for coding agents."""

__version__ = "0.1.0"
