"""Sync engines.

This package provides:
- The sync orchestrator that pages through a mailbox and runs post-processing
- Pipeline assembly shared by the server and the CLI
- The auto-sync scheduler
"""

from mailflow.engine.pipeline import Pipeline, build_breaker, build_pipeline
from mailflow.engine.scheduler import AutoSyncScheduler, TickResult
from mailflow.engine.sync import SyncOrchestrator, SyncResult, cursor_key

__all__ = [
    # Pipeline
    "Pipeline",
    "build_breaker",
    "build_pipeline",
    # Scheduler
    "AutoSyncScheduler",
    "TickResult",
    # Sync
    "SyncOrchestrator",
    "SyncResult",
    "cursor_key",
]
