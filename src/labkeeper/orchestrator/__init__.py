"""Cleanup orchestration."""

from labkeeper.orchestrator.cleanup import (
    CleanupOrchestrator,
    CleanupPlan,
    CleanupResult,
    CleanupStatus,
    DeletionState,
    ResourceOutcome,
)

__all__ = [
    'CleanupOrchestrator',
    'CleanupPlan',
    'CleanupResult',
    'CleanupStatus',
    'DeletionState',
    'ResourceOutcome',
]
