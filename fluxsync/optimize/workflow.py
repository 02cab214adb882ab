"""
SELECTION / APPLY WORKFLOW
Operator flow of the optimize workspace

Per suggestion:
    unselected -> selected -> (trialed)* -> confirming -> applied | cancelled

The selection is held apart from the suggestion list, keyed by setting name,
and is always a subset of the loaded names. Applying is a two-step action
(request_apply, then confirm_apply) and commits the frozen batch in one call.
Only one backend action runs at a time.
"""
import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set

import structlog

from config.settings import settings
from fluxsync.api.client import BackendClient
from fluxsync.core.errors import FetchError, FetchErrorKind
from fluxsync.core.models import Suggestion, TrialResult

logger = structlog.get_logger(__name__)

DECISION_ACCEPTED = "accepted"
DECISION_DISMISSED = "dismissed"


class SuggestionPhase(Enum):
    UNSELECTED = "unselected"
    SELECTED = "selected"
    TRIALED = "trialed"
    CONFIRMING = "confirming"
    APPLIED = "applied"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PendingApply:
    """Selection frozen at the moment the operator asked to apply"""
    settings: Mapping[str, Any]
    names: FrozenSet[str]
    generation: int


class SelectionWorkflow:
    """
    State owner for the optimize workspace.

    Every backend failure is surfaced through `error` and leaves the
    suggestion list, the selection and the trial exactly as they were.
    """

    def __init__(
        self,
        client: BackendClient,
        lookback_days: Optional[int] = None,
        preselect_confidence: Optional[float] = None,
    ):
        self.client = client
        self.lookback_days = lookback_days or settings.LOOKBACK_DAYS
        self.preselect_confidence = (
            settings.PRESELECT_CONFIDENCE if preselect_confidence is None else preselect_confidence
        )

        self._suggestions: Dict[str, Suggestion] = {}
        self._selected: Set[str] = set()
        self._applied: Set[str] = set()
        self._cancelled: Set[str] = set()

        self.baseline: Optional[Dict[str, Any]] = None
        self.trial: Optional[TrialResult] = None
        self.pending: Optional[PendingApply] = None
        self.error: Optional[FetchError] = None

        self._busy: Optional[str] = None
        self._loaded = False
        self._generation = 0  # bumps on any selection or list change

    # ========== READ SIDE ==========

    @property
    def suggestions(self) -> List[Suggestion]:
        return list(self._suggestions.values())

    @property
    def selection(self) -> FrozenSet[str]:
        return frozenset(self._selected)

    @property
    def busy(self) -> Optional[str]:
        return self._busy

    @property
    def is_confirming(self) -> bool:
        return self.pending is not None

    @property
    def trial_matches_selection(self) -> bool:
        """False once the selection has moved away from what the trial evaluated"""
        if self.trial is None:
            return False
        return dict(self.trial.settings) == self.selected_settings()

    def selected_settings(self) -> Dict[str, Any]:
        """Suggested values of the selection, in list order"""
        return {
            name: s.suggested_value
            for name, s in self._suggestions.items()
            if name in self._selected
        }

    def phase(self, name: str) -> Optional[SuggestionPhase]:
        if name in self._suggestions:
            if self.pending is not None and name in self.pending.names:
                return SuggestionPhase.CONFIRMING
            if name in self._selected:
                if self.trial is not None and name in self.trial.settings:
                    return SuggestionPhase.TRIALED
                return SuggestionPhase.SELECTED
            return SuggestionPhase.UNSELECTED
        if name in self._applied:
            return SuggestionPhase.APPLIED
        if name in self._cancelled:
            return SuggestionPhase.CANCELLED
        return None

    def clear_error(self) -> None:
        self.error = None

    # ========== LOADING ==========

    async def load(self, lookback_days: Optional[int] = None) -> bool:
        """
        Fetch suggestions and the baseline backtest.

        The first load, and any load for a different lookback, pre-selects
        by confidence. Other reloads keep the selection and prune names that
        are no longer offered.
        """
        if not self._begin("load"):
            return False
        try:
            return await self._load(lookback_days or self.lookback_days, preselect=None)
        finally:
            self._end()

    async def _load(self, lookback_days: int, preselect: Optional[bool]) -> bool:
        sugg_res, baseline_res = await asyncio.gather(
            self.client.get_suggested_settings(lookback_days),
            self.client.get_quick_backtest(lookback_days),
        )
        for res in (sugg_res, baseline_res):
            if not res.ok:
                self._surface("load", res.error)
                return False

        loaded: Dict[str, Suggestion] = {}
        for raw in sugg_res.payload.get("suggestions") or []:
            if not isinstance(raw, dict):
                continue
            suggestion = Suggestion.from_dict(raw)
            if suggestion is not None:
                loaded[suggestion.setting_name] = suggestion

        if preselect is None:
            preselect = not self._loaded or lookback_days != self.lookback_days

        self._suggestions = loaded
        self.baseline = baseline_res.payload
        self.lookback_days = lookback_days
        self._loaded = True

        if preselect:
            self._selected = {
                name for name, s in loaded.items()
                if s.confidence >= self.preselect_confidence
            }
        else:
            self._prune()

        self._selection_changed("reload")
        logger.info(
            "suggestions_loaded",
            count=len(loaded),
            selected=sorted(self._selected),
            lookback_days=lookback_days,
        )
        return True

    def _prune(self) -> None:
        stale = self._selected - self._suggestions.keys()
        for name in sorted(stale):
            self._validation_failure("prune", name)
        self._selected -= stale

    # ========== SELECTION ==========

    def toggle(self, name: str) -> bool:
        if not self._can_edit_selection("toggle"):
            return False
        if name not in self._suggestions:
            self._validation_failure("toggle", name)
            return False
        if name in self._selected:
            self._selected.discard(name)
        else:
            self._selected.add(name)
        self._selection_changed("toggle")
        return True

    def select_all(self) -> bool:
        if not self._can_edit_selection("select_all"):
            return False
        self._selected = set(self._suggestions)
        self._selection_changed("select_all")
        return True

    def select_none(self) -> bool:
        if not self._can_edit_selection("select_none"):
            return False
        self._selected = set()
        self._selection_changed("select_none")
        return True

    def set_selection(self, names: Iterable[str]) -> bool:
        """Replace the selection; unknown names are dropped"""
        if not self._can_edit_selection("set_selection"):
            return False
        wanted = set(names)
        for name in sorted(wanted - self._suggestions.keys()):
            self._validation_failure("set_selection", name)
        self._selected = wanted & self._suggestions.keys()
        self._selection_changed("set_selection")
        return True

    def _can_edit_selection(self, action: str) -> bool:
        # The batch being committed must stay identical to the selection
        if self._busy == "apply":
            logger.warning("selection_locked", action=action)
            return False
        return True

    def _selection_changed(self, reason: str) -> None:
        self._generation += 1
        if self.pending is not None:
            self.pending = None
            logger.info("apply_confirmation_abandoned", reason=reason)

    # ========== TRIAL ==========

    async def run_trial(self) -> bool:
        """What-if run of the current selection; never touches live settings"""
        if not self._selected:
            return False
        if not self._begin("trial"):
            return False
        try:
            settings_map = self.selected_settings()
            lookback = self.lookback_days

            res = await self.client.run_trial_backtest(settings_map, lookback, is_custom=True)
            if not res.ok:
                self._surface("trial", res.error)
                return False

            previous = replace(self.trial, previous=None) if self.trial is not None else None
            self.trial = TrialResult.from_payload(res.payload, settings_map, lookback, previous=previous)
            logger.info(
                "trial_completed",
                settings=sorted(settings_map),
                improvement=dict(self.trial.improvement),
            )
            return True
        finally:
            self._end()

    def reset_trial(self) -> None:
        self.trial = None

    # ========== APPLY ==========

    def request_apply(self) -> bool:
        """First step of apply: freeze the selection and wait for confirmation"""
        if self._busy is not None or not self._selected:
            return False
        self.pending = PendingApply(
            settings=self.selected_settings(),
            names=frozenset(self._selected),
            generation=self._generation,
        )
        logger.info("apply_requested", settings=sorted(self.pending.names))
        return True

    def cancel_apply(self) -> None:
        if self.pending is not None:
            self.pending = None
            logger.info("apply_cancelled")

    async def confirm_apply(self) -> bool:
        """
        Second step of apply: commit the frozen batch.

        All-or-nothing from our side: on failure nothing is assumed applied
        and the selection is left untouched.
        """
        pending = self.pending
        if pending is None:
            return False
        if pending.generation != self._generation:
            self.pending = None
            logger.info("apply_confirmation_abandoned", reason="selection_moved")
            return False
        if not self._begin("apply"):
            return False
        try:
            res = await self.client.apply_settings(dict(pending.settings))
            if not res.ok:
                self.pending = None
                self._surface("apply", res.error)
                return False

            applied = [self._suggestions[n] for n in pending.settings if n in self._suggestions]
            self.pending = None
            self._applied |= pending.names
            logger.info("settings_applied", settings=sorted(pending.names))

            await self._log_decisions(applied, DECISION_ACCEPTED)

            # Applied values are current now, not proposed
            self._selected = set()
            self._selection_changed("applied")
            await self._load(self.lookback_days, preselect=False)
            return True
        finally:
            self._end()

    async def _log_decisions(self, suggestions: List[Suggestion], decision: str) -> None:
        results = await asyncio.gather(
            *(
                self.client.log_suggestion_decision(
                    s.setting_name, s.current_value, s.suggested_value, decision
                )
                for s in suggestions
            )
        )
        for res in results:
            if not res.ok:
                # The commit already happened; a lost audit entry must not undo it
                logger.warning("decision_log_failed", decision=decision, error=str(res.error))

    # ========== DISMISS ==========

    async def dismiss(self, name: str) -> bool:
        """Log the dismissal, then drop the suggestion and its selection entry"""
        suggestion = self._suggestions.get(name)
        if suggestion is None:
            self._validation_failure("dismiss", name)
            return False
        if not self._begin("dismiss"):
            return False
        try:
            res = await self.client.log_suggestion_decision(
                suggestion.setting_name,
                suggestion.current_value,
                suggestion.suggested_value,
                DECISION_DISMISSED,
            )
            if not res.ok:
                self._surface("dismiss", res.error)
                return False

            self._suggestions = {k: v for k, v in self._suggestions.items() if k != name}
            self._selected.discard(name)
            self._cancelled.add(name)
            self._selection_changed("dismiss")
            logger.info("suggestion_dismissed", setting=name)
            return True
        finally:
            self._end()

    # ========== INTERNALS ==========

    def _begin(self, action: str) -> bool:
        if self._busy is not None:
            logger.info("workflow_busy", action=action, in_flight=self._busy)
            return False
        self._busy = action
        return True

    def _end(self) -> None:
        self._busy = None

    def _surface(self, action: str, error: Optional[FetchError]) -> None:
        self.error = error
        logger.warning("workflow_action_failed", action=action, error=str(error))

    def _validation_failure(self, action: str, name: str) -> None:
        err = FetchError(
            kind=FetchErrorKind.VALIDATION,
            resource="selection",
            message=f"unknown suggestion '{name}'",
        )
        logger.warning("selection_validation_failed", action=action, error=str(err))

    def to_dict(self) -> Dict[str, Any]:
        """View-model for the optimize page"""
        return {
            "lookback_days": self.lookback_days,
            "suggestions": [
                {
                    "setting_name": s.setting_name,
                    "current_value": s.current_value,
                    "suggested_value": s.suggested_value,
                    "confidence": s.confidence,
                    "reason": s.reason,
                    "impact_estimate": s.impact_estimate,
                    "selected": s.setting_name in self._selected,
                    "phase": self.phase(s.setting_name).value,
                }
                for s in self._suggestions.values()
            ],
            "baseline": self.baseline,
            "trial": {
                "settings": dict(self.trial.settings),
                "baseline": dict(self.trial.baseline),
                "trial": dict(self.trial.trial),
                "improvement": dict(self.trial.improvement),
                "delta_from_previous": self.trial.delta_from_previous(),
                "matches_selection": self.trial_matches_selection,
            } if self.trial is not None else None,
            "confirming": sorted(self.pending.names) if self.pending is not None else None,
            "busy": self._busy,
            "error": self.error.to_dict() if self.error is not None else None,
        }
