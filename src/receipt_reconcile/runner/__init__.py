"""
CLI runner module.

Provides commands:
- init-config: Write a default configuration file
- status: Document and queue statistics
- process-queue: Work through precision search or mail sync jobs
- sweep-stale: Fail queue items that stopped reporting progress
- repair-categories: Migrate orphaned categories and recount
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
