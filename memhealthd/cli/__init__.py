"""
CLI Module for the Memory Health Daemon

Provides the memhealthctl command:
- run: start the engine until interrupted
- health: one-shot health check
- cleanup: forced garbage collection
- config: show or validate configuration

Usage:
    python -m memhealthd.cli.memhealthctl health
"""

from .memhealthctl import main as memhealthctl_main

__all__ = [
    'memhealthctl_main',
]
