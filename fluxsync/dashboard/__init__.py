"""
Dashboard Module - live dashboard session and view-model
"""
from fluxsync.dashboard import viewmodel
from fluxsync.dashboard.session import DashboardSession

__all__ = [
    "viewmodel",
    "DashboardSession",
]
