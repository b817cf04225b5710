"""
GitHub hosting client built on PyGithub.

Every call goes through call_with_retry; a final failure is raised as
APIError("GitHub", method, cause). Auto-merge has no REST endpoint and is
enabled through the GraphQL API with requests.

STUB_DIFF_PATH replaces the file listing with a local unified diff, which
lets the action run against a fixture without network access for files.
"""

import logging
from pathlib import Path
from typing import Callable, TypeVar

import requests
from github import Auth, Github, GithubException
from unidiff import PatchSet

from ..constants import MERGE_METHODS, MERGE_SQUASH, STATE_MERGED
from ..errors import APIError, AutoApproveError, BranchUpToDateError, ChangeNotOpenError, ValidationError
from ..hosting import HostingClient
from ..models import (
    ChangeRef,
    ChangeRequest,
    CheckRun,
    CombinedStatus,
    CommentRecord,
    FileDelta,
    ReviewRecord,
    StatusRecord,
)
from ..retry import call_with_retry, status_of

logger = logging.getLogger(__name__)

T = TypeVar("T")

GRAPHQL_URL = "https://api.github.com/graphql"
GRAPHQL_TIMEOUT = 30

ENABLE_AUTO_MERGE = """
mutation($id: ID!, $method: PullRequestMergeMethod!) {
  enablePullRequestAutoMerge(input: {pullRequestId: $id, mergeMethod: $method}) {
    pullRequest { number }
  }
}
"""


def _association(obj) -> str:
    # PyGithub does not expose author_association as an attribute everywhere.
    return (getattr(obj, "raw_data", None) or {}).get("author_association", "") or ""


def _login(user) -> str:
    return user.login if user is not None else ""


def deltas_from_diff(diff_text: str) -> list[FileDelta]:
    """Split a unified diff into FileDeltas, one per file."""
    deltas = []
    for patched in PatchSet(diff_text):
        if patched.is_added_file:
            status = "added"
        elif patched.is_removed_file:
            status = "removed"
        elif patched.source_file[2:] != patched.target_file[2:]:
            status = "renamed"
        else:
            status = "modified"
        patch = None if patched.is_binary_file else "".join(str(hunk) for hunk in patched)
        deltas.append(FileDelta(
            path=patched.path,
            additions=patched.added,
            deletions=patched.removed,
            patch=patch or None,
            status=status,
        ))
    return deltas


class GitHubClient(HostingClient):
    """HostingClient over the GitHub REST API (PyGithub) and GraphQL (requests)."""

    def __init__(
        self,
        auth: Auth.Auth,
        *,
        attempts: int = 3,
        stub_diff_path: str | Path | None = None,
        session: requests.Session | None = None,
        github: Github | None = None,
    ):
        self._auth = auth
        self._gh = github or Github(auth=auth)
        self.attempts = attempts
        self.stub_diff_path = Path(stub_diff_path) if stub_diff_path else None
        self._session = session or requests.Session()

    @classmethod
    def from_token(cls, token: str, **kwargs) -> "GitHubClient":
        return cls(Auth.Token(token), **kwargs)

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    def _call(self, method: str, fn: Callable[[], T]) -> T:
        try:
            return call_with_retry(fn, attempts=self.attempts, describe=f"GitHub {method}")
        except AutoApproveError:
            raise
        except Exception as exc:
            raise APIError("GitHub", method, exc, status_of(exc)) from exc

    def _pull(self, ref: ChangeRef):
        return self._gh.get_repo(ref.full_name).get_pull(ref.number)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def authenticated_user(self) -> str:
        return self._call("authenticated_user", lambda: self._gh.get_user().login)

    def get_change(self, ref: ChangeRef) -> ChangeRequest:
        def fetch() -> ChangeRequest:
            pr = self._pull(ref)
            return ChangeRequest(
                ref=ref,
                state=STATE_MERGED if pr.merged else pr.state,
                draft=bool(pr.draft),
                title=pr.title or "",
                body=pr.body or "",
                author=_login(pr.user),
                author_association=_association(pr),
                created_at=pr.created_at,
                updated_at=pr.updated_at,
                changed_files=pr.changed_files,
                additions=pr.additions,
                deletions=pr.deletions,
                author_type=getattr(pr.user, "type", "") or "User",
                base_ref=pr.base.ref,
                head_ref=pr.head.ref,
                head_sha=pr.head.sha,
                url=pr.html_url,
            )

        return self._call("get_change", fetch)

    def list_files(self, ref: ChangeRef) -> list[FileDelta]:
        if self.stub_diff_path is not None:
            logger.info("Reading files for %s from stub diff %s", ref, self.stub_diff_path)
            try:
                return deltas_from_diff(self.stub_diff_path.read_text(encoding="utf-8"))
            except OSError as exc:
                raise APIError("GitHub", "list_files", exc) from exc

        def fetch() -> list[FileDelta]:
            return [
                FileDelta(
                    path=f.filename,
                    additions=f.additions,
                    deletions=f.deletions,
                    patch=f.patch,
                    status=f.status,
                )
                for f in self._pull(ref).get_files()
            ]

        return self._call("list_files", fetch)

    def get_combined_status(self, ref: ChangeRef, sha: str) -> CombinedStatus:
        def fetch() -> CombinedStatus:
            combined = self._gh.get_repo(ref.full_name).get_commit(sha).get_combined_status()
            return CombinedStatus(
                state=combined.state,
                statuses=tuple(
                    StatusRecord(s.context, s.state, s.description or "")
                    for s in combined.statuses
                ),
            )

        return self._call("get_combined_status", fetch)

    def list_check_runs(self, ref: ChangeRef, sha: str) -> list[CheckRun]:
        def fetch() -> list[CheckRun]:
            commit = self._gh.get_repo(ref.full_name).get_commit(sha)
            return [CheckRun(r.name, r.status, r.conclusion) for r in commit.get_check_runs()]

        return self._call("list_check_runs", fetch)

    def list_reviews(self, ref: ChangeRef) -> list[ReviewRecord]:
        def fetch() -> list[ReviewRecord]:
            return [
                ReviewRecord(_login(r.user), r.state, r.submitted_at, _association(r))
                for r in self._pull(ref).get_reviews()
            ]

        return self._call("list_reviews", fetch)

    def list_issue_comments(self, ref: ChangeRef) -> list[CommentRecord]:
        def fetch() -> list[CommentRecord]:
            return [
                CommentRecord(_login(c.user), _association(c), c.created_at, c.body or "", "issue")
                for c in self._pull(ref).get_issue_comments()
            ]

        return self._call("list_issue_comments", fetch)

    def list_review_comments(self, ref: ChangeRef) -> list[CommentRecord]:
        def fetch() -> list[CommentRecord]:
            return [
                CommentRecord(_login(c.user), _association(c), c.created_at, c.body or "", "review")
                for c in self._pull(ref).get_review_comments()
            ]

        return self._call("list_review_comments", fetch)

    def get_user_permission(self, ref: ChangeRef, user: str) -> str:
        return self._call(
            "get_user_permission",
            lambda: self._gh.get_repo(ref.full_name).get_collaborator_permission(user),
        )

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    def _open_pull(self, ref: ChangeRef, method: str):
        pr = self._call(method, lambda: self._pull(ref))
        if pr.state != "open" or pr.merged:
            raise ChangeNotOpenError(f"{ref} is {STATE_MERGED if pr.merged else pr.state}")
        return pr

    def approve(self, ref: ChangeRef, body: str = "") -> None:
        pr = self._open_pull(ref, "approve")
        self._call("approve", lambda: pr.create_review(body=body, event="APPROVE"))
        logger.info("Approved %s", ref)

    def enable_auto_merge(self, ref: ChangeRef, method: str = MERGE_SQUASH) -> None:
        if method not in MERGE_METHODS:
            raise ValidationError("merge_method", method, f"must be one of {', '.join(MERGE_METHODS)}")
        pr = self._open_pull(ref, "enable_auto_merge")
        variables = {"id": pr.node_id, "method": method.upper()}

        def mutate() -> dict:
            response = self._session.post(
                GRAPHQL_URL,
                json={"query": ENABLE_AUTO_MERGE, "variables": variables},
                headers={"Authorization": f"Bearer {self._auth.token}"},
                timeout=GRAPHQL_TIMEOUT,
            )
            response.raise_for_status()
            result = response.json()
            if result.get("errors"):
                raise RuntimeError(f"GraphQL errors: {result['errors']}")
            return result.get("data") or {}

        self._call("enable_auto_merge", mutate)
        logger.info("Enabled %s auto-merge for %s", method, ref)

    def merge(self, ref: ChangeRef, method: str = MERGE_SQUASH) -> str:
        if method not in MERGE_METHODS:
            raise ValidationError("merge_method", method, f"must be one of {', '.join(MERGE_METHODS)}")
        pr = self._open_pull(ref, "merge")
        result = self._call(
            "merge",
            lambda: pr.merge(commit_title=pr.title, merge_method=method, sha=pr.head.sha),
        )
        if not result.merged:
            raise APIError("GitHub", "merge", result.message)
        logger.info("Merged %s as %s", ref, result.sha[:7])
        return result.sha

    def update_branch(self, ref: ChangeRef) -> None:
        pr = self._open_pull(ref, "update_branch")

        def update() -> bool:
            try:
                return pr.update_branch()
            except GithubException as exc:
                if exc.status == 422 and "no new commits" in str(exc).lower():
                    raise BranchUpToDateError(f"{ref} is already up to date with {pr.base.ref}") from exc
                raise

        self._call("update_branch", update)
        logger.info("Requested branch update for %s", ref)
