# ============================================================================
# WORKER MODULE
# ============================================================================
# STATUS: Core - Queue workers
# PURPOSE: Claim queue jobs and dispatch them
# CREATED: 19 OCT 2026
# ============================================================================
"""
Worker Module

- consumer: Lease-based queue consumer feeding the Dispatcher
- main: Standalone worker entry point (python -m worker.main)
"""

from worker.consumer import QueueConsumer, install_signal_handlers

__all__ = [
    "QueueConsumer",
    "install_signal_handlers",
]
