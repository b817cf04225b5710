"""
In-memory collaborators for the test suites.
"""

import json
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from autoapprove.constants import MERGE_SQUASH  # noqa: E402
from autoapprove.hosting import HostingClient  # noqa: E402
from autoapprove.llm import LanguageModel  # noqa: E402
from autoapprove.models import (  # noqa: E402
    ChangeRef,
    ChangeRequest,
    CombinedStatus,
    FileDelta,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
REF = ChangeRef("octo", "widgets", 42)

GO_MOD_PATCH = (
    "@@ -5,4 +5,4 @@ go 1.22\n"
    " require (\n"
    "-\tgithub.com/google/go-github/v68 v68.0.0\n"
    "+\tgithub.com/google/go-github/v68 v68.1.0\n"
    " \tgolang.org/x/oauth2 v0.21.0\n"
    " )"
)

README_PATCH = (
    "@@ -1,2 +1,2 @@\n"
    " # Widgets\n"
    "-Widgets is a libary for widgets.\n"
    "+Widgets is a library for widgets. It's small.\n"
)


def make_change(**overrides) -> ChangeRequest:
    fields = dict(
        ref=REF,
        state="open",
        draft=False,
        title="Fix typo in README",
        body="Corrects a spelling mistake.",
        author="contributor",
        author_association="CONTRIBUTOR",
        created_at=NOW - timedelta(days=2),
        updated_at=NOW - timedelta(hours=3),
        changed_files=1,
        additions=1,
        deletions=1,
        head_sha="abc123",
        url="https://github.com/octo/widgets/pull/42",
    )
    fields.update(overrides)
    return ChangeRequest(**fields)


def verdict_json(**overrides) -> str:
    data = {
        "alters_behavior": False,
        "not_improvement": False,
        "non_trivial": False,
        "risky": False,
        "insecure_change": False,
        "possibly_malicious": False,
        "superfluous": False,
        "vandalism": False,
        "confusing": False,
        "title_desc_mismatch": False,
        "major_version_bump": False,
        "category": "typo",
        "reason": "Fixes a spelling mistake in documentation",
        "confidence": 0.95,
    }
    data.update(overrides)
    return json.dumps(data)


class FakeHosting(HostingClient):
    """
    Canned hosting data. Set ``errors[method] = exc`` to make a call fail.
    Write calls are recorded in ``writes``.
    """

    def __init__(self, change=None, files=None, me="autoapprove-bot"):
        self.change = change or make_change()
        self.files = files if files is not None else [FileDelta("README.md", 1, 1, README_PATCH)]
        self.me = me
        self.status = CombinedStatus("success")
        self.check_runs = []
        self.reviews = []
        self.issue_comments = []
        self.review_comments = []
        self.permissions = {}
        self.errors = {}
        self.calls = []
        self.writes = []

    def _record(self, method):
        self.calls.append(method)
        if method in self.errors:
            raise self.errors[method]

    def authenticated_user(self):
        self._record("authenticated_user")
        return self.me

    def get_change(self, ref):
        self._record("get_change")
        return self.change

    def list_files(self, ref):
        self._record("list_files")
        return list(self.files)

    def get_combined_status(self, ref, sha):
        self._record("get_combined_status")
        return self.status

    def list_check_runs(self, ref, sha):
        self._record("list_check_runs")
        return list(self.check_runs)

    def list_reviews(self, ref):
        self._record("list_reviews")
        return list(self.reviews)

    def list_issue_comments(self, ref):
        self._record("list_issue_comments")
        return list(self.issue_comments)

    def list_review_comments(self, ref):
        self._record("list_review_comments")
        return list(self.review_comments)

    def get_user_permission(self, ref, user):
        self._record("get_user_permission")
        return self.permissions.get(user, "none")

    def approve(self, ref, body=""):
        self._record("approve")
        self.writes.append(("approve", ref))

    def enable_auto_merge(self, ref, method=MERGE_SQUASH):
        self._record("enable_auto_merge")
        self.writes.append(("enable_auto_merge", ref, method))

    def merge(self, ref, method=MERGE_SQUASH):
        self._record("merge")
        self.writes.append(("merge", ref, method))
        return "deadbeef"

    def update_branch(self, ref):
        self._record("update_branch")
        self.writes.append(("update_branch", ref))


class FakeModel(LanguageModel):
    """
    Returns ``response`` (or raises it, if it is an exception) after
    sleeping ``delay`` seconds. Counts calls.
    """

    def __init__(self, name="fake/model", response=None, delay=0.0):
        self.name = name
        self.response = verdict_json() if response is None else response
        self.delay = delay
        self.calls = 0
        self.prompts = []
        self._lock = threading.Lock()

    def complete(self, prompt, *, system=None, max_tokens=500, temperature=0.0, timeout=30.0):
        with self._lock:
            self.calls += 1
            self.prompts.append(prompt)
        if self.delay:
            time.sleep(self.delay)
        if isinstance(self.response, BaseException):
            raise self.response
        return self.response
