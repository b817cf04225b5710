"""
Decision Engine - one pull request in, one decision out.

Eleven ordered gates. The first gate that fails ends the evaluation with a
reject Decision; a change is approvable only when every gate passes.

Deterministic gates run before anything that costs a model call. Anything
the engine cannot verify (a failed listing, an unreadable CI status, an
unusable model answer) is a reject, never a pass.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from .ai_defense import AIDefense
from .analyzer import FLAG_LABELS, SingleModelAnalyzer, build_analysis_prompt
from .code_validator import CodeValidator
from .config import EngineConfig
from .consensus import MultiModelConsensus
from .constants import (
    BLOCKING_REVIEW_STATES,
    BOT_USER_TYPE,
    CHECK_ERROR,
    CHECK_FAILURE,
    CHECK_PENDING,
    ELEVATED_ASSOCIATIONS,
    FIRST_TIME_ASSOCIATIONS,
    REVIEW_APPROVED,
    ROLE_RANK,
    RUN_ACTIVE_STATES,
    RUN_COMPLETED,
    RUN_PASSING_CONCLUSIONS,
)
from .deadline import Deadline
from .errors import (
    BehaviorChangeError,
    ConsensusError,
    ContentViolation,
    EvaluationCancelled,
    ValidationError,
)
from .hosting import HostingClient, validate_ref
from .models import ChangeContext, ChangeRef, ChangeRequest, CheckRun, CombinedStatus, FileDelta

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Decision:
    """The verdict for one pull request."""
    approvable: bool
    reason: str
    details: tuple[str, ...] = ()
    already_approved_by_us: bool = False
    is_own_change: bool = False


class _Rejected(Exception):
    """Raised inside a gate to end the evaluation."""

    def __init__(self, reason: str, *details: str):
        super().__init__(reason)
        self.reason = reason
        self.details = details


@dataclass
class _Evaluation:
    """Mutable per-call state; never shared between evaluations."""
    ref: ChangeRef
    deadline: Deadline
    me: str = ""
    change: ChangeRequest | None = None
    files: list[FileDelta] = field(default_factory=list)
    details: list[str] = field(default_factory=list)
    last_push: float = 0.0
    already_approved_by_us: bool = False
    is_own_change: bool = False
    resolved_by_consensus: bool = False

    def is_me(self, login: str) -> bool:
        return bool(self.me) and login.lower() == self.me.lower()

    def decision(self, approvable: bool, reason: str, *extra: str) -> Decision:
        return Decision(
            approvable=approvable,
            reason=reason,
            details=tuple(self.details) + extra,
            already_approved_by_us=self.already_approved_by_us,
            is_own_change=self.is_own_change,
        )


def format_duration(seconds: float) -> str:
    """Compact human form rounded to the minute: 45s, 12m, 3h5m, 2d4h."""
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s"
    minutes = round(seconds / 60)
    days, minutes = divmod(minutes, 1440)
    hours, minutes = divmod(minutes, 60)
    if days:
        return f"{days}d{hours}h" if hours else f"{days}d"
    if hours:
        return f"{hours}h{minutes}m" if minutes else f"{hours}h"
    return f"{minutes}m"


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class DecisionEngine:
    """Evaluate pull requests against an EngineConfig."""

    def __init__(
        self,
        hosting: HostingClient,
        config: EngineConfig | None = None,
        analyzer: SingleModelAnalyzer | None = None,
        consensus: MultiModelConsensus | None = None,
        clock: Callable[[], datetime] | None = None,
        validator: CodeValidator | None = None,
        defense: AIDefense | None = None,
    ):
        self.hosting = hosting
        self.config = (config or EngineConfig()).validate()
        self.analyzer = analyzer
        self.consensus = consensus
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.validator = validator or CodeValidator()
        self.defense = defense or AIDefense()

    def evaluate(self, ref: ChangeRef, deadline: Deadline | None = None) -> Decision:
        """
        Run every gate in order.

        Raises ValidationError for a malformed ref and EvaluationCancelled
        when the deadline expires; every other outcome is a Decision.
        """
        validate_ref(ref)
        ev = _Evaluation(ref=ref, deadline=deadline or Deadline.never())
        try:
            threat = self._run_gates(ev)
        except _Rejected as rejected:
            logger.info("%s rejected: %s", ref, rejected.reason)
            return ev.decision(False, rejected.reason, *rejected.details)
        if threat is not None:
            return threat
        logger.info("%s approvable", ref)
        return ev.decision(True, "All checks passed")

    # -- plumbing -----------------------------------------------------------

    def _fetch(self, ev: _Evaluation, stage: str, reason: str, fn: Callable):
        """Call a collaborator; any failure becomes a reject with ``reason``."""
        ev.deadline.check(stage)
        try:
            return fn()
        except (EvaluationCancelled, ValidationError):
            raise
        except Exception as exc:
            logger.warning("%s: %s failed: %s", ev.ref, stage, exc)
            raise _Rejected(reason, f"{stage}: {exc}") from exc

    def _run_gates(self, ev: _Evaluation) -> Decision | None:
        ev.change = self._fetch(
            ev, "fetch PR", "Unable to fetch PR details",
            lambda: self.hosting.get_change(ev.ref),
        )
        self._gate_state(ev)
        self._gate_identity(ev)
        self._gate_age(ev)
        self._gate_size(ev)
        self._gate_reviews(ev)
        self._gate_first_time(ev)
        ev.files = self._fetch(
            ev, "list files", "Unable to fetch PR files for analysis",
            lambda: self.hosting.list_files(ev.ref),
        )
        threat = self._gate_content(ev)
        if threat is not None:
            return threat
        self._gate_ci(ev)
        self._gate_semantic(ev)
        return None

    # -- gates 1-6: metadata ------------------------------------------------

    def _gate_state(self, ev: _Evaluation) -> None:
        change = ev.change
        if not change.is_open:
            raise _Rejected("PR is not open", f"State: {change.state}")
        if change.draft and self.config.skip_draft:
            raise _Rejected("PR is a draft")

    def _gate_identity(self, ev: _Evaluation) -> None:
        ev.deadline.check("identify evaluator")
        try:
            ev.me = self.hosting.authenticated_user() or ""
        except EvaluationCancelled:
            raise
        except Exception as exc:
            logger.warning("Could not determine authenticated user: %s", exc)
            return
        if ev.is_me(ev.change.author):
            ev.is_own_change = True
            ev.details.append(f"PR author ({ev.change.author}) is the current user")

    def _gate_age(self, ev: _Evaluation) -> None:
        last = ev.change.last_activity
        if last is None:
            raise _Rejected("Unable to determine PR age")
        elapsed = (_utc(self.clock()) - _utc(last)).total_seconds()
        minimum, maximum = self.config.min_open_time, self.config.max_open_time
        if elapsed < minimum:
            raise _Rejected(
                f"PR updated too recently (last push: {format_duration(elapsed)} ago, "
                f"required: {format_duration(minimum)})"
            )
        if maximum > 0 and elapsed > maximum:
            raise _Rejected(
                f"PR has been stale too long (last push: {format_duration(elapsed)} ago, "
                f"max: {format_duration(maximum)})"
            )
        ev.last_push = elapsed

    def _gate_size(self, ev: _Evaluation) -> None:
        change = ev.change
        if change.changed_files > self.config.max_files:
            raise _Rejected(f"Too many files changed ({change.changed_files} > {self.config.max_files})")
        if change.total_lines > self.config.max_lines:
            if not self.config.is_dependency_bot(change.author):
                raise _Rejected(f"Too many lines changed ({change.total_lines} > {self.config.max_lines})")
            ev.details.append(
                f"Line limit waived for dependency bot {change.author} ({change.total_lines} lines)"
            )
        ev.details.append(f"Author: {change.author} ({change.author_association})")
        ev.details.append(f"Last push: {format_duration(ev.last_push)} ago")

    def _gate_reviews(self, ev: _Evaluation) -> None:
        reviews = self._fetch(
            ev, "list reviews", "Unable to verify existing reviews",
            lambda: self.hosting.list_reviews(ev.ref),
        )
        for review in reviews:
            if ev.is_me(review.author):
                if review.state == REVIEW_APPROVED:
                    ev.already_approved_by_us = True
                    ev.details.append(f"Already approved by {review.author}")
                continue
            if review.state in BLOCKING_REVIEW_STATES:
                raise _Rejected("PR has existing reviews", f"{review.author}: {review.state}")

        comments = self._fetch(
            ev, "list issue comments", "Unable to verify existing comments",
            lambda: self.hosting.list_issue_comments(ev.ref),
        )
        for comment in comments:
            if comment.association in ELEVATED_ASSOCIATIONS:
                raise _Rejected(
                    "PR has comments from collaborators", f"{comment.author} ({comment.association})",
                )

        review_comments = self._fetch(
            ev, "list review comments", "Unable to verify existing comments",
            lambda: self.hosting.list_review_comments(ev.ref),
        )
        for comment in review_comments:
            if comment.association in ELEVATED_ASSOCIATIONS:
                raise _Rejected(
                    "PR has review comments from collaborators", f"{comment.author} ({comment.association})",
                )

    def _gate_first_time(self, ev: _Evaluation) -> None:
        if self.config.skip_first_time and ev.change.author_association in FIRST_TIME_ASSOCIATIONS:
            raise _Rejected("First-time contributor", f"Association: {ev.change.author_association}")

    # -- gate 8: content ----------------------------------------------------

    def _gate_content(self, ev: _Evaluation) -> Decision | None:
        context = self.defense.sanitize_context(ChangeContext.from_change(ev.change))
        sanitized = self.defense.sanitize_files(ev.files)
        if self.defense.detect_threats(context, sanitized):
            details = self.defense.collect_details(context, sanitized)
            logger.warning("%s: security threat in PR content: %s", ev.ref, details)
            return ev.decision(False, "Security threat detected in PR content", *details)

        by_path = {f.delta.path: f.delta for f in sanitized}
        for delta in sorted(ev.files, key=lambda f: f.path):
            path = delta.path
            manual = self.validator.manual_review_reason(path)
            if manual:
                raise _Rejected(manual, f"{path}: cannot be auto-approved")
            if delta.patch is None:
                raise _Rejected("Unable to inspect file content", f"{path}: no textual patch ({delta.status})")

            profile = self.validator.classify_file(path)
            label = "Code" if profile.is_code else "Config" if profile.is_config else "File"
            try:
                self.validator.validate_patch(delta.patch, path)
            except BehaviorChangeError:
                pass
            except ContentViolation as exc:
                if profile.is_code or profile.is_config:
                    raise _Rejected("Code changes contain security risks", f"{path}: {exc}") from None
                raise _Rejected("File changes contain potential security risks", f"{path}: {exc}") from None

            if self.validator.is_safe_change(delta.patch, path):
                if self.validator.is_dependency_update(delta.patch, path):
                    ev.details.append(f"{path}: dependency version update")
                continue

            if self.consensus is not None and self.config.use_consensus and self._is_trusted(ev):
                self._consensus_file(ev, context.context, by_path[path], label)
                continue

            kind = {"Code": "code", "Config": "configuration"}.get(label, profile.kind)
            raise _Rejected(
                f"{label} changes could alter program behavior",
                f"{path}: non-comment changes in {kind} file",
            )
        return None

    def _is_trusted(self, ev: _Evaluation) -> bool:
        author = ev.change.author
        if author.lower() in {u.lower() for u in self.config.trusted_users}:
            logger.info("%s is in trusted users", author)
            return True
        if not self.config.trusted_min_role:
            return False
        ev.deadline.check("permission lookup")
        try:
            permission = self.hosting.get_user_permission(ev.ref, author)
        except EvaluationCancelled:
            raise
        except Exception as exc:
            logger.warning("Could not get permission level for %s: %s", author, exc)
            return False
        trusted = ROLE_RANK.get((permission or "").lower(), 0) >= ROLE_RANK[self.config.trusted_min_role]
        logger.info("%s has %s permission (trusted: %s)", author, permission, trusted)
        return trusted

    def _consensus_file(self, ev: _Evaluation, context: ChangeContext, delta: FileDelta, label: str) -> None:
        prompt = build_analysis_prompt(context, [delta])
        try:
            verdict = self.consensus.analyze_with_consensus(prompt, ev.deadline)
        except (ConsensusError, ValidationError) as exc:
            logger.warning("%s: consensus failed for %s: %s", ev.ref, delta.path, exc)
            raise _Rejected(
                f"{label} changes could alter program behavior (AI consensus failed)",
                f"{delta.path}: {exc}",
            ) from None

        bar = self.config.consensus_min_confidence
        if verdict.agreement and verdict.approved and verdict.confidence >= bar and not verdict.vetoes:
            ev.resolved_by_consensus = True
            ev.details.append(f"{delta.path}: AI consensus approved (confidence: {verdict.confidence:.2f})")
            return

        reasons = list(verdict.vetoes)
        if not reasons:
            if verdict.approved and verdict.confidence < bar:
                reasons.append(f"confidence {verdict.confidence:.2f} below {bar:.2f}")
            else:
                reasons.append(verdict.reason)
        raise _Rejected(
            f"Multi-model AI analysis rejected: {'; '.join(reasons)}",
            f"{delta.path}: AI rejection",
            *reasons,
            *verdict.disagreements,
        )

    # -- gate 9: CI ---------------------------------------------------------

    def _gate_ci(self, ev: _Evaluation) -> None:
        if not self.config.require_passing_checks:
            return
        sha = ev.change.head_sha
        if not sha:
            raise _Rejected("Unable to verify CI status", "PR has no head commit")
        status = self._fetch(
            ev, "combined status", "Unable to verify CI status",
            lambda: self.hosting.get_combined_status(ev.ref, sha),
        )
        runs = self._fetch(
            ev, "check runs", "Unable to verify check runs",
            lambda: self.hosting.list_check_runs(ev.ref, sha),
        )
        failing, pending = self._ci_failures(ev.change, status, runs)
        if pending:
            ev.details.append(f"Pending checks: {', '.join(pending)}")
        if failing:
            raise _Rejected("CI checks not passing", *failing)

    def _ci_failures(
        self, change: ChangeRequest, status: CombinedStatus, runs: list[CheckRun],
    ) -> tuple[list[str], list[str]]:
        is_bot = change.author_type == BOT_USER_TYPE
        failures: list[tuple[str, str, str]] = []  # (name, description, label)
        pending: list[str] = []

        for s in status.statuses:
            if s.state == CHECK_PENDING:
                pending.append(s.context)
            elif s.state in (CHECK_FAILURE, CHECK_ERROR):
                label = f"{s.context} ({s.description})" if s.description else f"{s.context}: {s.state}"
                failures.append((s.context, s.description, label))

        for run in runs:
            if run.status in RUN_ACTIVE_STATES:
                pending.append(run.name)
            elif run.status == RUN_COMPLETED and run.conclusion not in RUN_PASSING_CONCLUSIONS:
                failures.append((run.name, "", f"{run.name}: {run.conclusion or 'no conclusion'}"))

        if is_bot and self.config.ignore_signing_checks:
            failures = [f for f in failures if "sign" not in f[0].lower()]

        if failures and all(self._is_review_required(name, desc) for name, desc, _ in failures):
            return [], pending
        return [label for _, _, label in failures], pending

    @staticmethod
    def _is_review_required(name: str, description: str) -> bool:
        desc = description.lower()
        return "review" in name.lower() or "review required" in desc or "awaiting review" in desc

    # -- gate 10: semantic --------------------------------------------------

    def _gate_semantic(self, ev: _Evaluation) -> None:
        if self.analyzer is None or not self.config.use_ai or ev.resolved_by_consensus:
            return
        ev.deadline.check("AI analysis")
        verdict = self.analyzer.analyze(ev.files, ChangeContext.from_change(ev.change), ev.deadline)
        if verdict.error:
            raise _Rejected("AI analysis unavailable; cannot verify changes", verdict.error)

        is_bot = self.config.is_dependency_bot(ev.change.author)
        for flag, reason in FLAG_LABELS.items():
            if flag == "non_trivial" and is_bot:
                continue
            if getattr(verdict, flag):
                raise _Rejected(reason, f"AI: {verdict.reason}")
        if not verdict.category:
            raise _Rejected("Cannot determine change category", f"AI: {verdict.reason}")
        ev.details.append(f"AI category: {verdict.category} (confidence: {verdict.confidence:.2f})")
        ev.details.append(f"AI: {verdict.reason}")


# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------

def render_decision_card(decision: Decision, change: ChangeRequest | None = None) -> str:
    """Render a Decision as markdown for the job summary."""
    if decision.approvable:
        heading = "## [>>] autoapprove: APPROVABLE - Safe to auto-approve"
    else:
        heading = "## [XX] autoapprove: MANUAL REVIEW - Cannot auto-approve"

    lines = [heading, ""]
    if change is not None:
        lines.append(
            f"**PR:** [{change.ref}]({change.url}) | **Author:** {change.author} | "
            f"**Files:** {change.changed_files} | **Lines:** +{change.additions}/-{change.deletions}"
        )
        lines.append("")
    lines.append(f"**Reason:** {decision.reason}")
    lines.append("")

    flags = []
    if decision.is_own_change:
        flags.append("own PR (approval skipped)")
    if decision.already_approved_by_us:
        flags.append("already approved by us")
    if flags:
        lines.append(f"**Notes:** {', '.join(flags)}")
        lines.append("")

    if decision.details:
        lines.append(f"<details><summary>Audit trail ({len(decision.details)} items)</summary>")
        lines.append("")
        for detail in decision.details:
            lines.append(f"- {detail}")
        lines.append("")
        lines.append("</details>")
        lines.append("")

    lines.append("---")
    lines.append("*autoapprove decision engine*")
    return "\n".join(lines)
