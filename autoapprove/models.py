"""
Snapshots of pull request data, created fresh for every evaluation.

The hosting client converts platform objects into these records so the
engine never touches PyGithub types directly.
"""

from dataclasses import dataclass, field
from datetime import datetime

from .constants import STATE_OPEN


@dataclass(frozen=True)
class ChangeRef:
    """owner/repo#number"""
    owner: str
    repo: str
    number: int

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"


@dataclass(frozen=True)
class ChangeRequest:
    """One pull request, fetched once per evaluation."""
    ref: ChangeRef
    state: str
    draft: bool
    title: str
    body: str
    author: str
    author_association: str
    created_at: datetime | None
    updated_at: datetime | None
    changed_files: int
    additions: int
    deletions: int
    author_type: str = "User"
    base_ref: str = ""
    head_ref: str = ""
    head_sha: str = ""
    url: str = ""

    @property
    def total_lines(self) -> int:
        return self.additions + self.deletions

    @property
    def is_open(self) -> bool:
        return self.state == STATE_OPEN

    @property
    def last_activity(self) -> datetime | None:
        return self.updated_at or self.created_at


@dataclass(frozen=True)
class FileDelta:
    """One changed file. ``patch`` is None for binary or oversized files."""
    path: str
    additions: int
    deletions: int
    patch: str | None = None
    status: str = "modified"


@dataclass(frozen=True)
class ReviewRecord:
    author: str
    state: str
    submitted_at: datetime | None = None
    association: str = ""


@dataclass(frozen=True)
class CommentRecord:
    author: str
    association: str
    created_at: datetime | None = None
    body: str = ""
    kind: str = "issue"  # issue | review


@dataclass(frozen=True)
class StatusRecord:
    context: str
    state: str
    description: str = ""


@dataclass(frozen=True)
class CombinedStatus:
    state: str
    statuses: tuple[StatusRecord, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class CheckRun:
    name: str
    status: str
    conclusion: str | None = None


@dataclass(frozen=True)
class ChangeContext:
    """PR metadata handed to the language model (after sanitization)."""
    url: str
    title: str
    description: str
    author: str
    association: str
    repository: str

    @classmethod
    def from_change(cls, change: ChangeRequest) -> "ChangeContext":
        return cls(
            url=change.url,
            title=change.title,
            description=change.body,
            author=change.author,
            association=change.author_association,
            repository=change.ref.full_name,
        )
