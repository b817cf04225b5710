"""
Hosting collaborator interface and PR reference parsing.

The decision engine reads through HostingClient; the ChangeProcessor
writes through it. The production implementation is
adapters/github_client.GitHubClient.
"""

import re
from abc import ABC, abstractmethod

from .constants import MERGE_SQUASH
from .errors import InvalidChangeRefError, ValidationError
from .models import (
    ChangeRef,
    ChangeRequest,
    CheckRun,
    CombinedStatus,
    CommentRecord,
    FileDelta,
    ReviewRecord,
)

SHORT_REF = re.compile(r"^([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)#(\d+)$")
URL_REF = re.compile(
    r"^https?://(?:www\.)?github\.com/([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)/pull/(\d+)(?:[/?#].*)?$"
)


def parse_change_ref(text: str) -> ChangeRef:
    """Parse ``owner/repo#123`` or a github.com pull request URL."""
    if not isinstance(text, str) or not text.strip():
        raise InvalidChangeRefError(text, "empty PR reference")
    text = text.strip()
    match = SHORT_REF.match(text) or URL_REF.match(text)
    if not match:
        raise InvalidChangeRefError(text, "expected owner/repo#number or a pull request URL")
    owner, repo, number = match.group(1), match.group(2), int(match.group(3))
    ref = ChangeRef(owner, repo, number)
    validate_ref(ref)
    return ref


def validate_ref(ref: ChangeRef) -> None:
    if not ref.owner or not ref.owner.strip():
        raise ValidationError("owner", ref.owner, "owner cannot be empty")
    if not ref.repo or not ref.repo.strip():
        raise ValidationError("repo", ref.repo, "repository name cannot be empty")
    if not isinstance(ref.number, int) or ref.number <= 0:
        raise ValidationError("number", ref.number, "PR number must be positive")


class HostingClient(ABC):
    """
    Read and write access to pull requests.

    Implementations retry transient failures and raise APIError once they
    give up. List methods return every page.
    """

    @abstractmethod
    def authenticated_user(self) -> str:
        """Login of the identity the client acts as."""

    @abstractmethod
    def get_change(self, ref: ChangeRef) -> ChangeRequest: ...

    @abstractmethod
    def list_files(self, ref: ChangeRef) -> list[FileDelta]: ...

    @abstractmethod
    def get_combined_status(self, ref: ChangeRef, sha: str) -> CombinedStatus: ...

    @abstractmethod
    def list_check_runs(self, ref: ChangeRef, sha: str) -> list[CheckRun]: ...

    @abstractmethod
    def list_reviews(self, ref: ChangeRef) -> list[ReviewRecord]: ...

    @abstractmethod
    def list_issue_comments(self, ref: ChangeRef) -> list[CommentRecord]: ...

    @abstractmethod
    def list_review_comments(self, ref: ChangeRef) -> list[CommentRecord]: ...

    @abstractmethod
    def get_user_permission(self, ref: ChangeRef, user: str) -> str:
        """Repository permission of ``user``: none, read, triage, write, maintain or admin."""

    @abstractmethod
    def approve(self, ref: ChangeRef, body: str = "") -> None: ...

    @abstractmethod
    def enable_auto_merge(self, ref: ChangeRef, method: str = MERGE_SQUASH) -> None: ...

    @abstractmethod
    def merge(self, ref: ChangeRef, method: str = MERGE_SQUASH) -> str:
        """Merge immediately and return the merge commit SHA."""

    @abstractmethod
    def update_branch(self, ref: ChangeRef) -> None:
        """Merge the base branch into the head; BranchUpToDateError when current."""
