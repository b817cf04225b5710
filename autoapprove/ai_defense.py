"""
AI Defense - treats author text as hostile input to the model, and model
output as hostile input to the decision pipeline.

Inbound: titles, descriptions and patches are length-capped, scanned for
prompt injection, suspicious Unicode and pathological repetition, and
neutralized when anything is found.

Outbound: ResponseValidator accepts only a single JSON object with the
verdict schema and nothing that looks like an override switch.
"""

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any

from .code_validator import parse_patch
from .errors import ContentViolation, ResponseValidationError
from .models import ChangeContext, FileDelta

logger = logging.getLogger(__name__)


MAX_TITLE_LENGTH = 500
MAX_DESCRIPTION_LENGTH = 5000
MAX_PATCH_SIZE = 50000
MAX_UNICODE_RATIO = 0.1
MAX_RESPONSE_SIZE = 10000

REPETITION_CHUNK = 20
REPETITION_MIN_LENGTH = 100

TRUNCATION_MARKER = "\n... [truncated for security]"
REDACTION_MARKER = "[REDACTED-INJECTION]"
SANITIZED_COMMENT = "/* [comment sanitized for security] */"

# Highest priority first. The reported threat_type is the most severe one seen.
THREAT_PRIORITY = (
    "prompt_injection",
    "code_injection",
    "suspicious_patch",
    "unicode_attack",
    "repetition_attack",
    "overflow",
)

INJECTION_PATTERNS = [
    (re.compile(r"(?i)(ignore|disregard|forget).{0,20}(previous|above|prior).{0,20}(instruction|prompt|rule)s?"),
     "Instruction override attempt"),
    (re.compile(r"(?i)new\s+(instruction|prompt|rule|task)s?:"), "New instruction injection"),
    (re.compile(r"(?i)system\s+(prompt|message|instruction):"), "System prompt injection"),
    (re.compile(r"(?i)\b(act|behave|pretend)\b.{0,20}\b(as|like|you're|you are)\b"), "Role manipulation attempt"),
    (re.compile(r"(?i)</?(system|assistant|user|instruction)>"), "Chat markup injection"),
    (re.compile(r"(?i)###\s*(system|instruction|important)"), "Markdown instruction injection"),
    (re.compile(r"(?i)approved\"?\s*:\s*true"), "Direct approval injection"),
    (re.compile(r"(?i)(always|must|should)\s+(approve|accept|merge)"), "Forced approval attempt"),
    (re.compile(r"\x00|\x1b\[|\u202e|\ufeff"), "Control character injection"),
    (re.compile(r"(?i)json.*approved.*true"), "JSON injection attempt"),
    (re.compile(r"(?i)\"alters_behavior\"\s*:\s*false"), "Verdict injection attempt"),
]

COMMENT_SPANS = [
    re.compile(r"//.*$", re.MULTILINE),
    re.compile(r"/\*.*?\*/", re.DOTALL),
    re.compile(r"#.*$", re.MULTILINE),
    re.compile(r"<!--.*?-->", re.DOTALL),
    re.compile(r'""".*?"""', re.DOTALL),
]

SUSPICIOUS_COMMENTS = [
    re.compile(r"(?i)//[^\n]*?(ignore|instruction|prompt|approve)[^\n]*"),
    re.compile(r"(?i)/\*.*?(ignore|instruction|prompt|approve).*?\*/", re.DOTALL),
    re.compile(r"(?i)#[^\n]*?(ignore previous|instruction|prompt|approve)[^\n]*"),
    re.compile(r"(?i)<!--.*?(ignore|instruction|prompt|approve).*?-->", re.DOTALL),
]

SUSPICIOUS_PATCH_MARKERS = (
    "APPROVE_ALL",
    "BYPASS_SECURITY",
    "DISABLE_CHECKS",
    "ALWAYS_MERGE",
    "SKIP_VALIDATION",
    "IGNORE_ERRORS",
)

DANGEROUS_CODEPOINTS = {
    "\u202e",  # right-to-left override
    "\u202d",  # left-to-right override
    "\u2066", "\u2067", "\u2068",  # bidi isolates
    "\ufeff",  # zero-width no-break space
    "\u200b", "\u200c", "\u200d",  # zero-width space and joiners
    "\u2060",  # word joiner
}


@dataclass
class SanitizationResult:
    """Sanitized text plus what was found in it."""
    sanitized: str
    threat_detected: bool = False
    threats: list[str] = field(default_factory=list)
    details: list[str] = field(default_factory=list)

    @property
    def threat_type(self) -> str:
        for kind in THREAT_PRIORITY:
            if kind in self.threats:
                return kind
        return ""

    @property
    def persistent(self) -> bool:
        """Threats that neutralization cannot make harmless. Truncation can."""
        return any(t != "overflow" for t in self.threats)

    def flag(self, kind: str, *details: str) -> None:
        self.threat_detected = True
        if kind not in self.threats:
            self.threats.append(kind)
        self.details.extend(details)


@dataclass(frozen=True)
class SanitizedContext:
    context: ChangeContext
    findings: tuple[SanitizationResult, ...] = ()


@dataclass(frozen=True)
class SanitizedFile:
    delta: FileDelta
    finding: SanitizationResult | None = None


def hash_content(text: str) -> str:
    """Generate SHA-256 hash of prompt content for the audit log."""
    return f"sha256:{hashlib.sha256(text.encode('utf-8')).hexdigest()}"


class AIDefense:
    """Sanitizer for everything the change author controls."""

    # -- public API ---------------------------------------------------------

    def sanitize_title(self, title: str) -> SanitizationResult:
        result = SanitizationResult(sanitized=title)
        text = self._cap(title, MAX_TITLE_LENGTH, "Title", result)
        text = self._scan_injection(text, result)
        text = self._remove_control_characters(text)
        text = self._scan_unicode(text, result)
        result.sanitized = text.strip()
        return result

    def sanitize_description(self, description: str) -> SanitizationResult:
        result = SanitizationResult(sanitized=description)
        text = self._cap(description, MAX_DESCRIPTION_LENGTH, "Description", result)
        text = self._scan_injection(text, result)
        text = self._remove_control_characters(text)
        text = self._scan_unicode(text, result)
        self._scan_repetition(text, result)
        result.sanitized = text.strip()
        return result

    def sanitize_patch(self, patch: str, path: str) -> SanitizationResult:
        result = SanitizationResult(sanitized=patch)
        text = patch
        if len(text) > MAX_PATCH_SIZE:
            result.flag("overflow", f"Patch for {path} exceeds maximum size: {len(text)} > {MAX_PATCH_SIZE}")
            text = text[:MAX_PATCH_SIZE] + TRUNCATION_MARKER

        comment_threats = self._comment_injections(text)
        if comment_threats:
            result.flag("code_injection", *comment_threats)
            text = self._neutralize_comments(text)
            text = self._neutralize_injection(text)

        upper = text.upper()
        markers = [m for m in SUSPICIOUS_PATCH_MARKERS if m in upper]
        if markers:
            result.flag("suspicious_patch", f"Patch contains suspicious markers: {', '.join(markers)}")

        added = self._added_text(text)
        if self._has_suspicious_unicode(added):
            result.flag("unicode_attack", f"Suspicious Unicode in added lines of {path}")
            text = self._escape_unicode(text)

        self._scan_repetition(text, result)
        result.sanitized = text
        return result

    def sanitize_context(self, context: ChangeContext) -> SanitizedContext:
        title = self.sanitize_title(context.title)
        description = self.sanitize_description(context.description)
        cleaned = replace(context, title=title.sanitized, description=description.sanitized)
        for res in (title, description):
            if res.threat_detected:
                logger.warning("Threat in PR text (%s): %s", res.threat_type, "; ".join(res.details))
        return SanitizedContext(context=cleaned, findings=(title, description))

    def sanitize_files(self, files: list[FileDelta]) -> list[SanitizedFile]:
        out = []
        for delta in files:
            if delta.patch is None:
                out.append(SanitizedFile(delta=delta))
                continue
            res = self.sanitize_patch(delta.patch, delta.path)
            if res.threat_detected:
                logger.warning("Threat in patch for %s (%s): %s", delta.path, res.threat_type, "; ".join(res.details))
            out.append(SanitizedFile(delta=replace(delta, patch=res.sanitized), finding=res))
        return out

    def detect_threats(self, context: SanitizedContext, files: list[SanitizedFile]) -> bool:
        """
        Second pass over already-sanitized input.

        True when a first-pass finding could not be neutralized, or when the
        sanitized text still trips a detector.
        """
        findings = list(context.findings) + [f.finding for f in files if f.finding is not None]
        if any(f.persistent for f in findings):
            return True

        rescans = [
            self.sanitize_title(context.context.title),
            self.sanitize_description(context.context.description),
        ]
        rescans.extend(
            self.sanitize_patch(f.delta.patch, f.delta.path)
            for f in files if f.delta.patch is not None
        )
        return any(r.persistent for r in rescans)

    def collect_details(self, context: SanitizedContext, files: list[SanitizedFile]) -> list[str]:
        """Flatten every finding into audit strings."""
        details = []
        for label, res in zip(("title", "description"), context.findings):
            if res.threat_detected:
                details.append(f"{label}: {res.threat_type}: {'; '.join(res.details)}")
        for f in files:
            if f.finding is not None and f.finding.threat_detected:
                details.append(f"{f.delta.path}: {f.finding.threat_type}: {'; '.join(f.finding.details)}")
        return details

    # -- detectors ----------------------------------------------------------

    def detect_prompt_injection(self, text: str) -> list[str]:
        return [label for pattern, label in INJECTION_PATTERNS if pattern.search(text)]

    def _comment_injections(self, code: str) -> list[str]:
        threats = []
        for pattern in COMMENT_SPANS:
            for match in pattern.finditer(code):
                found = self.detect_prompt_injection(match.group(0))
                if found:
                    threats.append(f"Injection in code comment: {', '.join(found)}")
        return threats

    @staticmethod
    def _added_text(patch: str) -> str:
        try:
            return "\n".join(line.content for line in parse_patch(patch) if line.sign == "+")
        except ContentViolation:
            # Truncated or malformed: every line counts as added.
            return patch

    def _has_suspicious_unicode(self, text: str) -> bool:
        if not text:
            return False
        non_ascii = 0
        for ch in text:
            if ch in DANGEROUS_CODEPOINTS or "\ue000" <= ch <= "\uf8ff":
                return True
            if ord(ch) > 127:
                non_ascii += 1
        return non_ascii / len(text) > MAX_UNICODE_RATIO

    def _has_repetition(self, text: str) -> bool:
        if len(text) < REPETITION_MIN_LENGTH:
            return False
        chunks: dict[str, int] = {}
        for i in range(0, len(text) - REPETITION_CHUNK + 1, REPETITION_CHUNK // 2):
            chunk = text[i:i + REPETITION_CHUNK]
            chunks[chunk] = chunks.get(chunk, 0) + 1
        max_repetitions = len(text) // REPETITION_CHUNK // 3
        return any(count > max_repetitions and count > 2 for count in chunks.values())

    # -- neutralizers -------------------------------------------------------

    def _cap(self, text: str, limit: int, label: str, result: SanitizationResult) -> str:
        if len(text) <= limit:
            return text
        result.flag("overflow", f"{label} exceeds maximum length: {len(text)} > {limit}")
        return text[:limit] + TRUNCATION_MARKER

    def _scan_injection(self, text: str, result: SanitizationResult) -> str:
        threats = self.detect_prompt_injection(text)
        if not threats:
            return text
        result.flag("prompt_injection", *threats)
        return self._neutralize_injection(text)

    def _scan_unicode(self, text: str, result: SanitizationResult) -> str:
        if not self._has_suspicious_unicode(text):
            return text
        result.flag("unicode_attack", "Suspicious Unicode patterns detected")
        return self._escape_unicode(text)

    def _scan_repetition(self, text: str, result: SanitizationResult) -> None:
        if self._has_repetition(text):
            result.flag("repetition_attack", "Excessive repetitive patterns detected")

    def _neutralize_injection(self, text: str) -> str:
        for pattern, _ in INJECTION_PATTERNS:
            text = pattern.sub(REDACTION_MARKER, text)
        return text.replace("###", "---").replace("```", "'''")

    def _neutralize_comments(self, code: str) -> str:
        for pattern in SUSPICIOUS_COMMENTS:
            code = pattern.sub(SANITIZED_COMMENT, code)
        return code

    @staticmethod
    def _remove_control_characters(text: str) -> str:
        return "".join(ch for ch in text if ch in "\n\t" or (ord(ch) >= 32 and ord(ch) != 127))

    @staticmethod
    def _escape_unicode(text: str) -> str:
        return "".join(ch if ord(ch) < 128 else f"\\u{ord(ch):04x}" for ch in text)


# ---------------------------------------------------------------------------
# Output validation
# ---------------------------------------------------------------------------

VALID_CATEGORIES = frozenset({
    "typo", "comment", "markdown", "lint", "dependency",
    "config", "refactor", "bugfix", "feature", "other",
})

VERDICT_DIMENSIONS = (
    "alters_behavior",
    "not_improvement",
    "non_trivial",
    "risky",
    "insecure_change",
    "possibly_malicious",
    "superfluous",
    "vandalism",
    "confusing",
    "title_desc_mismatch",
    "major_version_bump",
)

SUSPICIOUS_KEYS = frozenset({
    "override", "bypass", "force", "ignore_security", "always_approve",
    "skip_checks", "admin", "auto_approve", "force_merge",
})
SUSPICIOUS_OUTPUT_MARKERS = ("ALWAYS_APPROVE", "FORCE_MERGE", "BYPASS")


def _strip_fences(text: str) -> str:
    cleaned = re.sub(r"^```(?:json)?\s*", "", text.strip())
    return re.sub(r"\s*```$", "", cleaned.strip())


def extract_json_object(text: str) -> str | None:
    """Return the first balanced {...} span, honouring JSON string escapes."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find("{", start + 1)
    return None


class ResponseValidator:
    """
    Structural gate for model output.

    validate() either returns the parsed object or raises
    ResponseValidationError. Callers treat any error as "analysis
    unavailable".
    """

    def __init__(self, required_keys: tuple[str, ...] = VERDICT_DIMENSIONS + ("category", "reason")):
        self.required_keys = required_keys

    def validate(self, raw: str) -> dict[str, Any]:
        return self.validate_with_source(raw)[0]

    def validate_with_source(self, raw: str) -> tuple[dict[str, Any], bool]:
        """Validate and report whether the object had to be cut out of prose."""
        if raw is None or not raw.strip():
            raise ResponseValidationError("empty response")
        if len(raw) > MAX_RESPONSE_SIZE:
            raise ResponseValidationError(f"response too large: {len(raw)} > {MAX_RESPONSE_SIZE}")
        for marker in SUSPICIOUS_OUTPUT_MARKERS:
            if marker in raw:
                raise ResponseValidationError(f"suspicious marker in output: {marker}")

        parsed, extracted = self._parse(raw)
        if not isinstance(parsed, dict):
            raise ResponseValidationError("response is not a JSON object")

        for key in parsed:
            if str(key).lower() in SUSPICIOUS_KEYS:
                raise ResponseValidationError(f"suspicious field detected: {key}")
        missing = [k for k in self.required_keys if k not in parsed]
        if missing:
            raise ResponseValidationError(f"missing required field(s): {', '.join(missing)}")

        for key in VERDICT_DIMENSIONS:
            if key in parsed and not isinstance(parsed[key], bool):
                raise ResponseValidationError(f"{key} must be a boolean")

        category = parsed.get("category")
        if not isinstance(category, str):
            raise ResponseValidationError("category must be a string")
        if category not in VALID_CATEGORIES:
            raise ResponseValidationError(f"invalid category: {category}")

        if not isinstance(parsed.get("reason"), str):
            raise ResponseValidationError("reason must be a string")

        if "confidence" in parsed:
            confidence = parsed["confidence"]
            if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
                raise ResponseValidationError("confidence must be a number")
            if not 0.0 <= float(confidence) <= 1.0:
                raise ResponseValidationError(f"confidence out of range: {confidence}")
        return parsed, extracted

    def _parse(self, raw: str) -> tuple[Any, bool]:
        cleaned = _strip_fences(raw)
        try:
            return json.loads(cleaned), False
        except json.JSONDecodeError:
            pass
        span = extract_json_object(raw)
        if span is None:
            raise ResponseValidationError("no JSON object found in response")
        try:
            return json.loads(span), True
        except json.JSONDecodeError as exc:
            raise ResponseValidationError(f"invalid JSON: {exc}") from exc

    @staticmethod
    def estimate_confidence(parsed: dict[str, Any], extracted: bool) -> float:
        """Heuristic confidence for responses that did not report one."""
        confidence = 1.0
        if len(parsed.get("reason", "")) < 10:
            confidence *= 0.8
        if parsed.get("category") == "other":
            confidence *= 0.9
        if extracted:
            confidence *= 0.9
        if not parsed.get("alters_behavior") and (parsed.get("risky") or parsed.get("possibly_malicious")):
            confidence *= 0.7
        return round(confidence, 4)
