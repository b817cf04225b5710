"""
Code Validator - rule-based scanning of diff text, independent of AI.

Each path is classified into a FileTypeProfile that decides which characters
are forbidden on added lines, how long a line may be, and whether the file
is code or config (and so subject to the behavior-change pass).
"""

import re
from collections import Counter
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import NamedTuple

from unidiff import PatchSet
from unidiff.errors import UnidiffParseError

from .errors import BehaviorChangeError, ContentViolation


# ---------------------------------------------------------------------------
# Character sets
# ---------------------------------------------------------------------------

SHELL_CONTROL_CHARACTERS = {
    "'": "single quote (command injection risk)",
    '"': "double quote (command injection risk)",
    "`": "backtick (command substitution)",
    "$": "dollar sign (variable expansion)",
    "|": "pipe (command chaining)",
    "&": "ampersand (background execution)",
    ";": "semicolon (command separator)",
    ">": "redirect output",
    "<": "redirect input",
    "\\": "escape character",
    "\n": "newline (command injection)",
    "\r": "carriage return (command injection)",
    "*": "glob wildcard",
    "?": "glob single char",
    "{": "brace expansion",
    "}": "brace expansion",
    "~": "home directory expansion",
}

ALL_SHELL_CHARS = frozenset(SHELL_CONTROL_CHARACTERS)
MINIMAL_CHARS = frozenset("`$\r")
CONFIG_CHARS = frozenset("`|&;><\r")
SCRIPT_CHARS = frozenset("`$;|&><\r")
CODE_CHARS = frozenset("`$\r")


@dataclass(frozen=True)
class FileTypeProfile:
    """How strictly a given path is validated. Derived from the path only."""
    kind: str
    is_code: bool
    is_config: bool
    is_markdown: bool
    allow_apostrophes: bool
    max_line_length: int
    forbidden_chars: frozenset

    def describe(self, char: str) -> str:
        return SHELL_CONTROL_CHARACTERS.get(char, repr(char))


# ---------------------------------------------------------------------------
# Path tables
# ---------------------------------------------------------------------------

MARKDOWN_EXTENSIONS = {".md", ".markdown", ".rst", ".txt"}
MINIMAL_BASENAMES = {".gitignore", ".editorconfig", ".gitattributes"}
CONFIG_EXTENSIONS = {".json", ".xml", ".toml", ".ini", ".conf", ".config"}
YAML_EXTENSIONS = {".yml", ".yaml"}
SHELL_EXTENSIONS = {".sh", ".bash", ".zsh", ".fish", ".ksh", ".csh", ".ps1", ".bat", ".cmd"}
SCRIPT_EXTENSIONS = {".py", ".rb", ".pl", ".php"}
COMPILED_EXTENSIONS = {".go", ".java", ".c", ".cpp", ".h", ".hpp", ".cs", ".rs"}
JS_EXTENSIONS = {".js", ".ts", ".jsx", ".tsx"}

BUILD_CONFIG_BASENAMES = {
    "dockerfile", "makefile", "gemfile", "requirements.txt", "pom.xml",
    "build.gradle", ".dockerignore", "docker-compose.yml", "docker-compose.yaml",
}
GO_MODULE_BASENAMES = {"go.mod", "go.sum"}
JSON_MANIFEST_BASENAMES = {"package.json", "composer.json"}
LOCK_BASENAMES = {
    "package-lock.json", "yarn.lock", "cargo.lock", "poetry.lock",
    "pipfile.lock", "gemfile.lock", "composer.lock",
}
DEPENDENCY_BASENAMES = (
    GO_MODULE_BASENAMES | JSON_MANIFEST_BASENAMES | LOCK_BASENAMES
    | {"requirements.txt", "cargo.toml", "pom.xml", "build.gradle", "gemfile"}
)

CI_BASENAMES = {
    ".travis.yml", "jenkinsfile", ".gitlab-ci.yml", "azure-pipelines.yml",
    "buildspec.yml", ".drone.yml", "bitbucket-pipelines.yml", "appveyor.yml",
    ".appveyor.yml", "cloudbuild.yaml", "cloudbuild.yml",
}
CI_DIRECTORIES = {".circleci", ".buildkite"}


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

DANGEROUS_PATTERNS = {
    "yaml": [
        re.compile(r"^\s*-?\s*(script|run|command|cmd|exec|shell):\s*(.+)"),
        re.compile(r"\$\{\{.*\}\}"),
        re.compile(r"\$\(.*\)"),
        re.compile(r"&&|\|\|"),
        re.compile(r"(?i)\b(curl|wget|bash|sh|eval|exec)\b"),
    ],
    "json": [
        re.compile(r'"(command|cmd|exec|script|run)"\s*:\s*"[^"]*[;&|$`]'),
        re.compile(r"\$\(.*\)"),
    ],
    "dockerfile": [
        re.compile(r"(?i)^RUN\s+.*[|;&]"),
        re.compile(r"(?i)^CMD\s+.*[|;&]"),
        re.compile(r"(?i)^ENTRYPOINT\s+.*[|;&]"),
        re.compile(r"curl.*\|\s*(bash|sh)"),
    ],
    "makefile": [
        re.compile(r"\$\(shell.*\)"),
        re.compile(r"@.*[|;&]"),
    ],
    "github_workflow": [
        re.compile(r"run:\s*\|"),
        re.compile(r"\$\{\{\s*github\.event\."),
        re.compile(r"\$\{\{\s*inputs\."),
        re.compile(r"\$\{\{\s*github\.event\.issue\.title"),
        re.compile(r"\$\{\{\s*github\.event\.issue\.body"),
        re.compile(r"\$\{\{\s*github\.event\.pull_request\.title"),
    ],
}

UNTRUSTED_WORKFLOW_INPUTS = ("${{ github.event", "${{ inputs.", "${{ issue.", "${{ pull_request.")

DANGEROUS_COMMANDS = (
    "eval", "exec", "system", "popen", "subprocess", "os.system",
    "runtime.exec", "process.start", "shell_exec", "passthru", "proc_open",
)

COMMAND_SUBSTITUTION = [
    re.compile(r"\$\([^)]+\)"),
    re.compile(r"`[^`]+`"),
    re.compile(r"\$\{[^}]+\}"),
    re.compile(r"%\([^)]+\)s"),
    re.compile(r"""f["'].*\{.*\}"""),
]

C_STYLE_COMMENT_PREFIXES = ("//", "/*", "*/")
MARKUP_COMMENT_PREFIXES = ("<!--", "-->")
DOCSTRING_PREFIXES = ('"""', "'''")
BATCH_COMMENT_PREFIXES = ("::", "rem ", "REM ")
PREPROCESSOR_DIRECTIVE = re.compile(
    r"^#\s*(include|define|undef|if|ifdef|ifndef|elif|else|endif|pragma|import|error|line)\b"
)

VERSION_TOKEN = re.compile(r"v?\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.+-]+)?")
HASH_TOKEN = re.compile(r"h1:[A-Za-z0-9+/=]+|sha(?:1|256|384|512)[-:][A-Za-z0-9+/=]+|\b[0-9a-f]{40,64}\b")
LOCK_HASH_LINE = re.compile(r"^\S+ v\d+\.\d+\.\d+\S* h1:[A-Za-z0-9+/=]+$")

# Per-file patches carry no file headers; unidiff needs them.
PATCH_FILE_HEADER = "--- a/patch\n+++ b/patch\n"
PATCH_FILE_HEADER_LINES = 2


class PatchLine(NamedTuple):
    number: int  # 1-based, counted in the patch text as given
    sign: str  # "+", "-" or " "
    content: str


def parse_patch(patch: str) -> list[PatchLine]:
    """
    Split a per-file patch (as the GitHub API returns it) into hunk lines.

    The ``@@`` hunk sizes decide what is content, so an added line whose own
    text starts with ``++`` or ``--`` is still an added line. Text outside
    any hunk, or a hunk whose body does not match its header, raises
    ContentViolation.
    """
    if not patch.strip():
        return []
    if not patch.startswith("@@"):
        raise ContentViolation("malformed_patch", "patch does not start with a hunk header")
    text = patch if patch.endswith("\n") else patch + "\n"
    try:
        patch_set = PatchSet(PATCH_FILE_HEADER + text)
    except UnidiffParseError as exc:
        raise ContentViolation("malformed_patch", f"unparseable patch: {exc}") from None

    lines = []
    consumed = 0
    for patched_file in patch_set:
        for hunk in patched_file:
            consumed += 1 + len(hunk)
            for line in hunk:
                if line.is_added or line.is_removed or line.is_context:
                    lines.append(PatchLine(
                        line.diff_line_no - PATCH_FILE_HEADER_LINES,
                        line.line_type,
                        line.value.rstrip("\n"),
                    ))
    if consumed != text.count("\n"):
        raise ContentViolation("malformed_patch", "patch contains text outside its hunks")
    return lines


def _basename(path: str) -> str:
    return PurePosixPath(path).name.lower()


def _extension(path: str) -> str:
    return PurePosixPath(path.lower()).suffix


def _is_workflow(path: str) -> bool:
    return ".github/workflows/" in path.lower().replace("\\", "/")


class CodeValidator:
    """
    Static scanner for diff content.

    All methods are pure: the same path and patch always give the same result.
    """

    def classify_file(self, path: str) -> FileTypeProfile:
        """Map a path to its validation profile."""
        base = _basename(path)
        ext = _extension(path)

        if _is_workflow(path):
            return FileTypeProfile("workflow", False, True, False, False, 80, ALL_SHELL_CHARS)
        if base in BUILD_CONFIG_BASENAMES or (base.startswith("requirements") and ext == ".txt"):
            return FileTypeProfile("build_config", False, True, False, False, 80, ALL_SHELL_CHARS)
        if base in GO_MODULE_BASENAMES:
            return FileTypeProfile("go_module", False, True, False, False, 120, CONFIG_CHARS)
        if base in LOCK_BASENAMES:
            return FileTypeProfile("lockfile", False, True, False, False, 200, CONFIG_CHARS)
        if base in JSON_MANIFEST_BASENAMES:
            return FileTypeProfile("manifest", False, True, False, False, 80, CONFIG_CHARS)
        if base in MINIMAL_BASENAMES:
            return FileTypeProfile("minimal", False, False, False, False, 120, MINIMAL_CHARS)
        if ext in MARKDOWN_EXTENSIONS:
            return FileTypeProfile("markdown", False, False, True, True, 100, MINIMAL_CHARS)
        if ext in YAML_EXTENSIONS:
            return FileTypeProfile("yaml", False, True, False, False, 80, ALL_SHELL_CHARS)
        if ext in CONFIG_EXTENSIONS:
            return FileTypeProfile("config", False, True, False, False, 80, CONFIG_CHARS)
        if ext in SHELL_EXTENSIONS:
            return FileTypeProfile("shell", True, False, False, False, 80, ALL_SHELL_CHARS)
        if ext in SCRIPT_EXTENSIONS:
            return FileTypeProfile("script", True, False, False, False, 80, SCRIPT_CHARS)
        if ext in COMPILED_EXTENSIONS:
            return FileTypeProfile("compiled", True, False, False, False, 120, CODE_CHARS)
        if ext in JS_EXTENSIONS:
            return FileTypeProfile("javascript", True, False, False, False, 80, CODE_CHARS)
        return FileTypeProfile("unknown", True, False, False, False, 80, ALL_SHELL_CHARS)

    def detect_file_type(self, path: str) -> str:
        """Pick the dangerous-pattern family for a path ("" when none applies)."""
        base = _basename(path)
        ext = _extension(path)
        if _is_workflow(path):
            return "github_workflow"
        if ext in YAML_EXTENSIONS:
            return "yaml"
        if ext == ".json":
            return "json"
        if "dockerfile" in base:
            return "dockerfile"
        if "makefile" in base:
            return "makefile"
        return ""

    def manual_review_reason(self, path: str) -> str | None:
        """Paths that are never auto-approved, whatever the diff looks like."""
        normalized = path.lower().replace("\\", "/")
        parts = PurePosixPath(normalized).parts
        if _extension(path) in SHELL_EXTENSIONS:
            return "Shell script modifications require manual review"
        if _is_workflow(path):
            return "GitHub Actions workflow changes require manual review"
        if _basename(path) in CI_BASENAMES or CI_DIRECTORIES.intersection(parts[:-1]):
            return "CI/CD configuration changes require manual review"
        if parts and parts[0] == ".github":
            return "GitHub configuration changes require manual review"
        return None

    # -- line level ---------------------------------------------------------

    def validate_line(self, line: str, path: str, is_addition: bool) -> None:
        """
        Check one line of diff content (without its +/- prefix).

        Only added lines are checked. Raises ContentViolation for the first
        rule that fires.
        """
        if not is_addition:
            return
        profile = self.classify_file(path)

        if len(line) > profile.max_line_length:
            raise ContentViolation(
                "line_length",
                f"line exceeds maximum length {profile.max_line_length} characters",
            )

        if profile.kind == "workflow" and any(p in line for p in UNTRUSTED_WORKFLOW_INPUTS):
            raise ContentViolation(
                "untrusted_input",
                "dangerous pattern detected: untrusted GitHub Actions input",
            )

        for char in line:
            if char not in profile.forbidden_chars:
                continue
            if char == "'" and profile.allow_apostrophes:
                continue
            raise ContentViolation(
                "forbidden_character",
                f"forbidden character detected: {profile.describe(char)}",
            )

        for pattern in DANGEROUS_PATTERNS.get(self.detect_file_type(path), []):
            if pattern.search(line):
                raise ContentViolation(
                    "dangerous_pattern",
                    f"dangerous pattern detected: {pattern.pattern}",
                )

        if profile.is_code or profile.is_config:
            self._check_command_injection(line)

    def validate_patch_line(self, line: str, path: str) -> None:
        """Check a raw diff line; the prefix decides whether it is an addition."""
        if line.startswith("-"):
            return
        self.validate_line(line[1:] if line.startswith("+") else line, path, line.startswith("+"))

    def _check_command_injection(self, line: str) -> None:
        lowered = line.lower()
        for command in DANGEROUS_COMMANDS:
            if command in lowered:
                raise ContentViolation(
                    "dangerous_command",
                    f"potentially dangerous command detected: {command}",
                )
        for pattern in COMMAND_SUBSTITUTION:
            if pattern.search(line):
                raise ContentViolation("command_substitution", "command substitution pattern detected")

    # -- patch level --------------------------------------------------------

    def validate_patch(self, patch: str, path: str) -> None:
        """
        Validate every content line, then check for behavior changes.

        Raises ContentViolation (with the 1-based patch line number) or
        BehaviorChangeError.
        """
        for line in parse_patch(patch):
            try:
                self.validate_line(line.content, path, is_addition=line.sign == "+")
            except ContentViolation as exc:
                raise exc.at_line(line.number) from None
        self._check_behavior_change(patch, path)

    def _check_behavior_change(self, patch: str, path: str) -> None:
        profile = self.classify_file(path)
        if not (profile.is_code or profile.is_config):
            return
        if self.is_dependency_update(patch, path):
            return
        label = "code" if profile.is_code else "config"
        for sign, content in self._changed_lines(patch):
            if content.strip() and not self.is_comment_line(content, profile):
                raise BehaviorChangeError(
                    "behavior_change",
                    f"changes to {label} file could alter program behavior",
                )

    def is_safe_change(self, patch: str, path: str) -> bool:
        """True when the patch needs no AI opinion at all."""
        try:
            self.validate_patch(patch, path)
        except ContentViolation:
            return False
        profile = self.classify_file(path)
        # Prose and data files that passed validation cannot change behavior.
        if not (profile.is_code or profile.is_config):
            return True
        if self.is_dependency_update(patch, path):
            return True
        return all(
            not content.strip() or self.is_comment_line(content, profile)
            for sign, content in self._changed_lines(patch)
            if sign == "+"
        )

    def is_comment_line(self, content: str, profile: FileTypeProfile | None = None) -> bool:
        stripped = content.strip()
        if not stripped:
            return False
        if stripped.startswith(C_STYLE_COMMENT_PREFIXES + MARKUP_COMMENT_PREFIXES + DOCSTRING_PREFIXES):
            return True
        if stripped.startswith(BATCH_COMMENT_PREFIXES):
            return True
        if stripped == "*" or stripped.startswith("* "):
            return True
        if stripped.startswith("#"):
            if profile is not None and profile.kind in ("javascript", "compiled"):
                return False
            return not PREPROCESSOR_DIRECTIVE.match(stripped)
        return False

    # -- dependency updates -------------------------------------------------

    def is_dependency_file(self, path: str) -> bool:
        base = _basename(path)
        return base in DEPENDENCY_BASENAMES or (base.startswith("requirements") and base.endswith(".txt"))

    def is_dependency_update(self, patch: str, path: str) -> bool:
        """
        True when a manifest or lock file diff changes nothing but versions.

        Lock-file hash lines are accepted as they are. Every other changed
        line must carry a version token, and after masking version and hash
        tokens the removed and added lines must match one to one.
        """
        if not self.is_dependency_file(path):
            return False
        try:
            changed_lines = self._changed_lines(patch)
        except ContentViolation:
            return False
        removed: Counter = Counter()
        added: Counter = Counter()
        changed = 0
        for sign, content in changed_lines:
            content = content.strip()
            if not content:
                continue
            changed += 1
            if LOCK_HASH_LINE.match(content):
                continue
            if not VERSION_TOKEN.search(content):
                return False
            masked = HASH_TOKEN.sub("<hash>", VERSION_TOKEN.sub("<version>", content))
            (added if sign == "+" else removed)[masked] += 1
        return changed > 0 and removed == added

    @staticmethod
    def _changed_lines(patch: str) -> list[tuple[str, str]]:
        """(sign, content) for every added or removed line."""
        return [(line.sign, line.content) for line in parse_patch(patch) if line.sign != " "]


_default = CodeValidator()

classify_file = _default.classify_file
validate_line = _default.validate_line
validate_patch_line = _default.validate_patch_line
validate_patch = _default.validate_patch
is_safe_change = _default.is_safe_change
is_dependency_update = _default.is_dependency_update
manual_review_reason = _default.manual_review_reason
