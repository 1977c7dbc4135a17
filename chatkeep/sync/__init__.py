"""Sync orchestration: retries, pagination, provider lifecycle and polling."""

from .cancellation import CancellationToken
from .engine import SyncEngine
from .orchestrator import SyncOrchestrator
from .retry import RetryCoordinator
from .scheduler import Scheduler

__all__ = ["CancellationToken", "RetryCoordinator", "SyncOrchestrator", "SyncEngine", "Scheduler"]
