"""Optimize workspace: suggestion selection, trials and commits"""
from .workflow import PendingApply, SelectionWorkflow, SuggestionPhase

__all__ = ["PendingApply", "SelectionWorkflow", "SuggestionPhase"]
