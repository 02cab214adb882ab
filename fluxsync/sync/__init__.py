"""Polling, aggregation and change detection"""
from .aggregator import ResourceSpec, SnapshotAggregator, dashboard_resources
from .fingerprint import diff, fingerprint
from .scheduler import PollScheduler, PollState

__all__ = [
    "ResourceSpec",
    "SnapshotAggregator",
    "dashboard_resources",
    "diff",
    "fingerprint",
    "PollScheduler",
    "PollState",
]
