"""
Engine configuration.

EngineConfig holds every tunable of the decision engine. It can be built
directly, loaded from a YAML policy file, or assembled by entrypoint.py from
action inputs layered over such a file.
"""

import logging
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .constants import (
    CONSENSUS_MIN_CONFIDENCE,
    DEFAULT_DEPENDENCY_BOTS,
    DEFAULT_MAX_FILES,
    DEFAULT_MAX_LINES,
    DEFAULT_MIN_MODELS,
    DEFAULT_MIN_OPEN_SECONDS,
    DEFAULT_MODEL_TIMEOUT,
    ROLE_RANK,
)
from .errors import ValidationError

logger = logging.getLogger(__name__)

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$", re.IGNORECASE)
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}

DURATION_FIELDS = ("min_open_time", "max_open_time", "model_timeout")


def parse_duration(value: Any, name: str = "duration") -> float:
    """Seconds from a number or a string like "90s", "30m", "2h", "7d"."""
    if isinstance(value, bool):
        raise ValidationError(name, value, "expected a duration")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _DURATION.match(value)
        if match:
            return float(match.group(1)) * _UNIT_SECONDS[match.group(2).lower()]
    raise ValidationError(name, value, 'expected a duration such as "90s", "30m", "2h" or "7d"')


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

@dataclass
class EngineConfig:
    """Decision engine settings. Durations are in seconds."""
    max_files: int = DEFAULT_MAX_FILES
    max_lines: int = DEFAULT_MAX_LINES
    min_open_time: float = DEFAULT_MIN_OPEN_SECONDS
    max_open_time: float = 0  # 0 disables the upper bound
    skip_first_time: bool = True
    skip_draft: bool = True
    require_passing_checks: bool = True
    ignore_signing_checks: bool = True
    use_ai: bool = True
    use_consensus: bool = False
    models: list[str] = field(default_factory=list)
    trusted_users: list[str] = field(default_factory=list)
    trusted_min_role: str = ""
    dependency_bots: list[str] = field(default_factory=lambda: list(DEFAULT_DEPENDENCY_BOTS))
    consensus_min_confidence: float = CONSENSUS_MIN_CONFIDENCE
    model_timeout: float = DEFAULT_MODEL_TIMEOUT
    min_models: int = DEFAULT_MIN_MODELS

    def validate(self) -> "EngineConfig":
        """Raise ValidationError on the first bad field; returns self or a normalized copy."""
        if self.max_files < 1:
            raise ValidationError("max_files", self.max_files, "must be at least 1")
        if self.max_lines < 1:
            raise ValidationError("max_lines", self.max_lines, "must be at least 1")
        for name in ("min_open_time", "max_open_time"):
            if getattr(self, name) < 0:
                raise ValidationError(name, getattr(self, name), "cannot be negative")
        if self.max_open_time > 0 and self.min_open_time > self.max_open_time:
            raise ValidationError(
                "min_open_time", self.min_open_time,
                f"cannot exceed max_open_time ({self.max_open_time})",
            )
        if self.trusted_min_role and self.trusted_min_role not in ROLE_RANK:
            raise ValidationError(
                "trusted_min_role", self.trusted_min_role,
                f"must be one of {', '.join(ROLE_RANK)}",
            )
        if self.model_timeout <= 0:
            raise ValidationError("model_timeout", self.model_timeout, "must be positive")
        if not 0 <= self.consensus_min_confidence <= 1:
            raise ValidationError(
                "consensus_min_confidence", self.consensus_min_confidence, "must be between 0 and 1",
            )
        if self.min_models < 1:
            raise ValidationError("min_models", self.min_models, "must be at least 1")
        if self.use_consensus and len(self.models) < 2:
            logger.warning("Consensus needs at least 2 models (%d configured); disabling", len(self.models))
            return replace(self, use_consensus=False)
        return self

    def is_dependency_bot(self, user: str) -> bool:
        return user.lower() in {b.lower() for b in self.dependency_bots}

    def merged(self, overrides: dict[str, Any]) -> "EngineConfig":
        """A copy with ``overrides`` applied (same key rules as load_config)."""
        return replace(self, **_coerce(overrides))


def _coerce(data: dict[str, Any]) -> dict[str, Any]:
    known = {f.name: f for f in fields(EngineConfig)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ValidationError("config", unknown[0], f"unknown configuration key(s): {', '.join(unknown)}")

    out: dict[str, Any] = {}
    for key, value in data.items():
        if key in DURATION_FIELDS:
            out[key] = parse_duration(value, key)
        elif key in ("models", "trusted_users", "dependency_bots"):
            if isinstance(value, str):
                value = [v.strip() for v in value.split(",") if v.strip()]
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ValidationError(key, value, "expected a list of strings")
            out[key] = list(value)
        elif known[key].type in (bool, "bool"):
            if not isinstance(value, bool):
                raise ValidationError(key, value, "expected true or false")
            out[key] = value
        elif known[key].type in (int, "int"):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(key, value, "expected an integer")
            out[key] = value
        elif known[key].type in (float, "float"):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(key, value, "expected a number")
            out[key] = float(value)
        else:
            out[key] = "" if value is None else str(value)
    return out


def load_config(path: str | Path) -> EngineConfig:
    """Load and validate a YAML policy file."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as exc:
        raise ValidationError("config", str(path), f"cannot read policy file: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ValidationError("config", str(path), f"invalid YAML: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValidationError("config", str(path), "policy file must contain a mapping")
    return EngineConfig(**_coerce(raw)).validate()
