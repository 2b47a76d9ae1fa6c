"""Sync planning, execution and reconciliation."""

from repo_expert.sync.executor import NullReporter, SyncReporter, SyncResult, sync_repo
from repo_expert.sync.plan import PassageMap, SyncPlan, compute_sync_plan
from repo_expert.sync.reconcile import (
    ReconcilePlan,
    ReconcileResult,
    clean_missing_from_map,
    compute_reconcile_plan,
    fix_reconcile_drift,
    reconcile_agent,
)

__all__ = [
    "NullReporter",
    "PassageMap",
    "ReconcilePlan",
    "ReconcileResult",
    "SyncPlan",
    "SyncReporter",
    "SyncResult",
    "clean_missing_from_map",
    "compute_reconcile_plan",
    "compute_sync_plan",
    "fix_reconcile_drift",
    "reconcile_agent",
    "sync_repo",
]
