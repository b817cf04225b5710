"""
Change processor - evaluate, then act.

Write actions run only for approvable decisions outside dry-run, in the
order approve -> enable auto-merge -> update branch. Each step is reported
on its own; a later failure never undoes an earlier success.
"""

import concurrent.futures
import logging
import threading
from dataclasses import dataclass, field

from .constants import MERGE_METHODS, MERGE_SQUASH
from .deadline import Deadline
from .decision_engine import Decision, DecisionEngine
from .errors import BranchUpToDateError, EvaluationInProgress, ValidationError
from .hosting import HostingClient
from .models import ChangeRef

logger = logging.getLogger(__name__)

APPROVAL_BODY = "Auto-approved: all automated checks passed."


@dataclass(frozen=True)
class ActionResult:
    action: str  # approve | enable_auto_merge | update_branch
    ok: bool
    message: str = ""
    skipped: bool = False


@dataclass
class Outcome:
    ref: ChangeRef
    decision: Decision | None = None
    actions: list[ActionResult] = field(default_factory=list)
    dry_run: bool = False
    error: str = ""

    @property
    def approved(self) -> bool:
        return any(a.action == "approve" and a.ok and not a.skipped for a in self.actions)


class ChangeProcessor:
    """Runs the engine for one or many changes and performs the write actions."""

    def __init__(
        self,
        hosting: HostingClient,
        engine: DecisionEngine,
        dry_run: bool = False,
        auto_merge: bool = False,
        merge_method: str = MERGE_SQUASH,
        update_branch: bool = False,
        approval_body: str = APPROVAL_BODY,
    ):
        if merge_method not in MERGE_METHODS:
            raise ValidationError("merge_method", merge_method, f"must be one of {', '.join(MERGE_METHODS)}")
        self.hosting = hosting
        self.engine = engine
        self.dry_run = dry_run
        self.auto_merge = auto_merge
        self.merge_method = merge_method
        self.update_branch = update_branch
        self.approval_body = approval_body
        self._lock = threading.Lock()
        self._in_flight: set[ChangeRef] = set()

    def process(self, ref: ChangeRef, deadline: Deadline | None = None) -> Outcome:
        """Evaluate ``ref`` and act on the decision. Not re-entrant per ref."""
        with self._lock:
            if ref in self._in_flight:
                raise EvaluationInProgress(f"evaluation of {ref} already in progress")
            self._in_flight.add(ref)
        try:
            decision = self.engine.evaluate(ref, deadline)
            outcome = Outcome(ref=ref, decision=decision, dry_run=self.dry_run)
            if not decision.approvable:
                return outcome
            if self.dry_run:
                logger.info("[dry-run] %s is approvable; no action taken", ref)
                return outcome
            outcome.actions.extend(self._act(ref, decision))
            return outcome
        finally:
            with self._lock:
                self._in_flight.discard(ref)

    def _act(self, ref: ChangeRef, decision: Decision) -> list[ActionResult]:
        results = []
        if decision.is_own_change:
            results.append(ActionResult("approve", True, "cannot approve own PR", skipped=True))
        elif decision.already_approved_by_us:
            results.append(ActionResult("approve", True, "already approved", skipped=True))
        else:
            results.append(self._step("approve", lambda: self.hosting.approve(ref, self.approval_body)))

        if self.auto_merge:
            results.append(self._step(
                "enable_auto_merge", lambda: self.hosting.enable_auto_merge(ref, self.merge_method),
            ))

        if self.update_branch:
            try:
                self.hosting.update_branch(ref)
                results.append(ActionResult("update_branch", True))
            except BranchUpToDateError as exc:
                results.append(ActionResult("update_branch", True, str(exc), skipped=True))
            except Exception as exc:
                logger.error("update_branch failed for %s: %s", ref, exc)
                results.append(ActionResult("update_branch", False, str(exc)))
        return results

    @staticmethod
    def _step(action: str, fn) -> ActionResult:
        try:
            fn()
        except Exception as exc:
            logger.error("%s failed: %s", action, exc)
            return ActionResult(action, False, str(exc))
        return ActionResult(action, True)

    def process_many(
        self, refs: list[ChangeRef], max_workers: int = 4, deadline: Deadline | None = None,
    ) -> list[Outcome]:
        """Process distinct changes concurrently; results keep input order."""
        unique = list(dict.fromkeys(refs))
        outcomes: list[Outcome | None] = [None] * len(unique)
        with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
            future_to_idx = {
                executor.submit(self.process, ref, deadline): idx
                for idx, ref in enumerate(unique)
            }
            for future in concurrent.futures.as_completed(future_to_idx):
                idx = future_to_idx[future]
                try:
                    outcomes[idx] = future.result()
                except Exception as exc:
                    logger.error("Processing %s failed: %s", unique[idx], exc)
                    outcomes[idx] = Outcome(ref=unique[idx], dry_run=self.dry_run, error=str(exc))
        return outcomes
