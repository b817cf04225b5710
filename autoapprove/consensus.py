"""
Multi-Model Consensus - the same prompt, several models, one verdict.

Models run in parallel, each with its own timeout. A model only votes when
its reported confidence meets its own threshold. A split vote never turns
into approval, and any single qualifying model can veto.
"""

import concurrent.futures
import logging
from collections import Counter
from dataclasses import dataclass, field

from .ai_defense import ResponseValidator
from .analyzer import SYSTEM_PROMPT, AnalysisVerdict, parse_verdict
from .constants import DEFAULT_MIN_MODELS, DEFAULT_MODEL_TIMEOUT
from .deadline import Deadline
from .errors import ConsensusError, EvaluationCancelled, ValidationError
from .llm import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE, LanguageModel

logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 50000
BASE_CONFIDENCE = 0.80
CONFIDENCE_STEP = 0.05

# Dimensions where one qualifying model is enough to block approval.
VETO_DIMENSIONS = {
    "possibly_malicious": "potentially malicious",
    "vandalism": "vandalism",
    "insecure_change": "security concerns",
    "major_version_bump": "major version bump",
    "risky": "high risk",
    "superfluous": "superfluous",
    "non_trivial": "non-trivial",
}

FLAG_DIMENSIONS = (
    "alters_behavior", "not_improvement", "non_trivial", "risky",
    "insecure_change", "possibly_malicious", "superfluous", "vandalism",
    "confusing", "title_desc_mismatch", "major_version_bump",
)


@dataclass(frozen=True)
class ModelConfig:
    name: str
    priority: int
    required_confidence: float


@dataclass(frozen=True)
class ConsensusMember:
    model: LanguageModel
    config: ModelConfig


def build_model_configs(names: list[str]) -> list[ModelConfig]:
    """Thresholds rise with position: 0.80, 0.85, 0.90, ..."""
    return [
        ModelConfig(
            name=name,
            priority=i + 1,
            required_confidence=round(BASE_CONFIDENCE + i * CONFIDENCE_STEP, 2),
        )
        for i, name in enumerate(names)
    ]


@dataclass(frozen=True)
class ConsensusVerdict:
    """Aggregate of several AnalysisVerdicts."""
    agreement: bool
    approved: bool
    flags: dict[str, bool]  # dimension -> any qualifying model flagged it
    category: str
    confidence: float
    models_qualified: int
    model_results: dict[str, AnalysisVerdict]
    reason: str
    vetoes: tuple[str, ...] = ()
    errors: dict[str, str] = field(default_factory=dict)
    disagreements: tuple[str, ...] = ()

    @property
    def alters_behavior(self) -> bool:
        return self.flags.get("alters_behavior", True)

    def __getattr__(self, name: str):
        # possibly_malicious, risky, ... read straight from the flag map
        if name in FLAG_DIMENSIONS:
            return self.flags.get(name, False)
        raise AttributeError(name)


class MultiModelConsensus:
    """
    Fan a prompt out to every configured model and aggregate the answers.

    Requires at least ``min_models`` members at construction and at least
    ``min_models`` successful answers per call.
    """

    def __init__(
        self,
        members: list[ConsensusMember],
        min_models: int = DEFAULT_MIN_MODELS,
        timeout: float = DEFAULT_MODEL_TIMEOUT,
        validator: ResponseValidator | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
    ):
        if len(members) < min_models:
            raise ValidationError(
                "models", len(members), f"at least {min_models} models required for consensus",
            )
        self.members = sorted(members, key=lambda m: m.config.priority)
        self.min_models = min_models
        self.timeout = timeout
        self.validator = validator or ResponseValidator()
        self.max_tokens = max_tokens
        self.temperature = temperature

    def analyze_with_consensus(self, prompt: str, deadline: Deadline | None = None) -> ConsensusVerdict:
        if not prompt or not prompt.strip():
            raise ValidationError("prompt", "", "prompt cannot be empty")
        if len(prompt) > MAX_PROMPT_LENGTH:
            raise ValidationError("prompt", len(prompt), f"prompt exceeds maximum length {MAX_PROMPT_LENGTH}")

        timeout = self.timeout
        if deadline is not None:
            deadline.check("consensus analysis")
            timeout = deadline.bound(timeout)

        results: list[AnalysisVerdict | None] = [None] * len(self.members)
        errors: dict[str, str] = {}
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=len(self.members))
        try:
            future_to_idx = {
                executor.submit(self._query, member, prompt, timeout): idx
                for idx, member in enumerate(self.members)
            }
            done, not_done = concurrent.futures.wait(future_to_idx, timeout=timeout)
            for future in not_done:
                future.cancel()
                name = self.members[future_to_idx[future]].config.name
                errors[name] = f"timed out after {timeout:.1f}s"
            for future in done:
                idx = future_to_idx[future]
                name = self.members[idx].config.name
                try:
                    results[idx] = future.result()
                except Exception as exc:
                    errors[name] = str(exc)
        finally:
            # A hung call must not hold up the verdict.
            executor.shutdown(wait=False, cancel_futures=True)

        if deadline is not None and deadline.expired:
            raise EvaluationCancelled("consensus aggregation")

        for name, err in errors.items():
            logger.warning("Consensus model %s failed: %s", name, err)

        succeeded = [(m, r) for m, r in zip(self.members, results) if r is not None]
        if len(succeeded) < self.min_models:
            raise ConsensusError(
                f"insufficient models succeeded: {len(succeeded)}/{len(self.members)} "
                f"(need {self.min_models})"
            )
        return self._aggregate(succeeded, errors)

    def _query(self, member: ConsensusMember, prompt: str, timeout: float) -> AnalysisVerdict:
        raw = member.model.complete(
            prompt,
            system=SYSTEM_PROMPT,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            timeout=timeout,
        )
        return parse_verdict(raw, self.validator)

    def _aggregate(
        self,
        succeeded: list[tuple[ConsensusMember, AnalysisVerdict]],
        errors: dict[str, str],
    ) -> ConsensusVerdict:
        model_results = {m.config.name: v for m, v in succeeded}
        confidence = sum(v.confidence for _, v in succeeded) / len(succeeded)

        qualifying = []
        for member, verdict in succeeded:
            if verdict.confidence >= member.config.required_confidence:
                qualifying.append((member, verdict))
            else:
                logger.info(
                    "Excluding %s from vote: confidence %.2f < %.2f",
                    member.config.name, verdict.confidence, member.config.required_confidence,
                )

        flags = {
            dim: any(getattr(v, dim) for _, v in qualifying)
            for dim in FLAG_DIMENSIONS
        }
        vetoes = tuple(
            f"{m.config.name}: {label}"
            for m, v in qualifying
            for dim, label in VETO_DIMENSIONS.items()
            if getattr(v, dim)
        )
        common = dict(
            category=self._plurality_category(qualifying),
            confidence=round(confidence, 4),
            models_qualified=len(qualifying),
            model_results=model_results,
            vetoes=vetoes,
            errors=dict(errors),
            disagreements=tuple(self._find_disagreements(succeeded)),
        )

        if len(qualifying) < self.min_models:
            flags["alters_behavior"] = True
            return ConsensusVerdict(
                agreement=False,
                approved=False,
                flags=flags,
                reason="Insufficient high-confidence results",
                **common,
            )

        votes = sum(1 for _, v in qualifying if v.alters_behavior)
        if votes == 0:
            agreement, alters = True, False
            reason = "All models agree: change does not alter behavior"
        elif votes == len(qualifying):
            agreement, alters = True, True
            reason = "All models agree: change alters behavior"
        else:
            agreement, alters = False, True
            reason = f"Models disagree: {votes}/{len(qualifying)} say alters behavior"
        flags["alters_behavior"] = alters

        approved = agreement and not alters and not vetoes
        if agreement and not alters and vetoes:
            reason = f"Vetoed: {', '.join(vetoes)}"

        logger.info(
            "Consensus: agreement=%s approved=%s votes=%d/%d category=%s confidence=%.2f",
            agreement, approved, votes, len(qualifying), common["category"], confidence,
        )
        return ConsensusVerdict(agreement=agreement, approved=approved, flags=flags, reason=reason, **common)

    @staticmethod
    def _plurality_category(qualifying: list[tuple[ConsensusMember, AnalysisVerdict]]) -> str:
        counts = Counter(v.category for _, v in qualifying if v.category)
        if not counts:
            return ""
        best = max(counts.values())
        # qualifying is in priority order, so ties go to the higher-priority model
        for _, verdict in qualifying:
            if counts.get(verdict.category) == best:
                return verdict.category
        return ""

    @staticmethod
    def _find_disagreements(succeeded: list[tuple[ConsensusMember, AnalysisVerdict]]) -> list[str]:
        out = []
        alters = [m.config.name for m, v in succeeded if v.alters_behavior]
        if alters and len(alters) < len(succeeded):
            out.append(f"alters_behavior disagreement - flagged by {', '.join(alters)}")
        categories = {v.category for _, v in succeeded}
        if len(categories) > 1:
            out.append(f"Category disagreement - {len(categories)} different categories")
        risky = [m.config.name for m, v in succeeded if v.risky]
        if risky and len(risky) < len(succeeded):
            out.append(f"Risk assessment disagreement - flagged by {', '.join(risky)}")
        return out
