"""
CLI runner module.

Provides commands:
- init: Write a default config file
- process: Run .eml files through the pipeline
- queue / queue-stats: Inspect the manual review queue
- approve / reject / escalate: Reviewer actions
- sweep: Expire and escalate review items
- status: Pipeline statistics
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
