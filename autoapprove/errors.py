"""
Error taxonomy.

Validation errors abort an evaluation. Collaborator errors (APIError) are
turned into reject decisions by the engine. Content violations are raised by
the validator and recorded as the rule that fired.
"""

from typing import Any


class AutoApproveError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(AutoApproveError, ValueError):
    """Malformed input to a gate or to the configuration."""

    def __init__(self, field: str, value: Any, message: str):
        self.field = field
        self.value = value
        self.message = message
        super().__init__(f"validation error for {field} (value: {value!r}): {message}")


class InvalidChangeRefError(ValidationError):
    """A pull request reference could not be parsed."""

    def __init__(self, value: Any, message: str = "invalid PR reference"):
        super().__init__("ref", value, message)


class APIError(AutoApproveError):
    """A non-retryable (or retry-exhausted) failure from a collaborator."""

    def __init__(self, service: str, method: str, cause: BaseException | str, status: int | None = None):
        self.service = service
        self.method = method
        self.cause = cause
        self.status = status
        super().__init__(f"{service} API error in {method}: {cause}")


class MissingTokenError(AutoApproveError):
    """No GitHub credential could be found."""


class MissingModelKeyError(AutoApproveError):
    """A model was requested for a provider that has no API key configured."""


class ChangeNotOpenError(AutoApproveError):
    """A write action was requested for a PR that is not open."""


class BranchUpToDateError(AutoApproveError):
    """update_branch was called on a branch that is already current."""


class AnalysisError(AutoApproveError):
    """AI analysis could not be performed for a PR."""

    def __init__(self, change: str, reason: str, cause: BaseException | None = None):
        self.change = change
        self.reason = reason
        self.cause = cause
        msg = f"analysis failed for {change}: {reason}"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class ContentViolation(AutoApproveError):
    """A diff line or patch broke a content rule."""

    def __init__(self, rule: str, message: str, line: int | None = None):
        self.rule = rule
        self.line = line
        self.message = message
        super().__init__(f"line {line}: {message}" if line else message)

    def at_line(self, line: int) -> "ContentViolation":
        return type(self)(self.rule, self.message, line)


class BehaviorChangeError(ContentViolation):
    """A code or config patch changes something other than comments or versions."""


class ResponseValidationError(AutoApproveError):
    """A model response failed structural validation."""


class ConsensusError(AutoApproveError):
    """Multi-model consensus could not be reached."""


class EvaluationCancelled(AutoApproveError):
    """The caller's deadline expired before a decision was reached."""

    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"evaluation cancelled before {stage}")


class EvaluationInProgress(AutoApproveError):
    """A second evaluation was requested for a PR that is already being evaluated."""
