"""
CLI package for Marketplace Job Orchestrator

Provides command-line interface for managing jobs, bids, change orders and
expiration sweeps.
"""

from .main import main, cli

__all__ = ["main", "cli"]
