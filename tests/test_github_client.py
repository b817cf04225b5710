import sys
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from github import Auth, GithubException  # noqa: E402

from autoapprove.adapters.github_client import GitHubClient, deltas_from_diff  # noqa: E402
from autoapprove.errors import (  # noqa: E402
    APIError,
    BranchUpToDateError,
    ChangeNotOpenError,
    InvalidChangeRefError,
    ValidationError,
)
from autoapprove.hosting import parse_change_ref  # noqa: E402
from autoapprove.models import ChangeRef  # noqa: E402

REF = ChangeRef("octo", "widgets", 42)

SAMPLE_DIFF = (
    "diff --git a/README.md b/README.md\n"
    "--- a/README.md\n"
    "+++ b/README.md\n"
    "@@ -1,2 +1,2 @@\n"
    " # Widgets\n"
    "-Widgets is a libary.\n"
    "+Widgets is a library.\n"
    "diff --git a/CHANGELOG.md b/CHANGELOG.md\n"
    "new file mode 100644\n"
    "--- /dev/null\n"
    "+++ b/CHANGELOG.md\n"
    "@@ -0,0 +1,2 @@\n"
    "+# Changelog\n"
    "+- Fixed a typo\n"
)


def fake_pull(state="open", merged=False):
    pr = MagicMock()
    pr.state = state
    pr.merged = merged
    pr.draft = False
    pr.title = "Fix typo"
    pr.body = None
    pr.user.login = "contributor"
    pr.user.type = "User"
    pr.raw_data = {"author_association": "CONTRIBUTOR"}
    pr.created_at = datetime(2026, 2, 27, tzinfo=timezone.utc)
    pr.updated_at = datetime(2026, 3, 1, tzinfo=timezone.utc)
    pr.changed_files = 1
    pr.additions = 1
    pr.deletions = 1
    pr.base.ref = "main"
    pr.head.ref = "fix-typo"
    pr.head.sha = "abc123"
    pr.html_url = "https://github.com/octo/widgets/pull/42"
    pr.node_id = "PR_kwDOA"
    return pr


def client_for(pr, session=None):
    gh = MagicMock()
    gh.get_repo.return_value.get_pull.return_value = pr
    return GitHubClient(Auth.Token("secret"), github=gh, session=session or MagicMock(), attempts=1), gh


class ParseChangeRefTests(unittest.TestCase):
    def test_short_form_and_url(self):
        self.assertEqual(parse_change_ref("octo/widgets#42"), REF)
        self.assertEqual(parse_change_ref("https://github.com/octo/widgets/pull/42"), REF)
        self.assertEqual(parse_change_ref(" https://github.com/octo/widgets/pull/42/files "), REF)

    def test_invalid(self):
        for text in ("", "octo/widgets", "octo#42", "https://gitlab.com/octo/widgets/pull/42", "octo/widgets#x"):
            with self.subTest(text=text):
                with self.assertRaises(InvalidChangeRefError):
                    parse_change_ref(text)

    def test_zero_number(self):
        with self.assertRaises(ValidationError):
            parse_change_ref("octo/widgets#0")


class DeltasFromDiffTests(unittest.TestCase):
    def test_files_and_statuses(self):
        deltas = deltas_from_diff(SAMPLE_DIFF)
        self.assertEqual([d.path for d in deltas], ["README.md", "CHANGELOG.md"])
        readme, changelog = deltas
        self.assertEqual((readme.status, readme.additions, readme.deletions), ("modified", 1, 1))
        self.assertTrue(readme.patch.startswith("@@ -1,2 +1,2 @@"))
        self.assertIn("+Widgets is a library.", readme.patch)
        self.assertEqual((changelog.status, changelog.additions), ("added", 2))

    def test_stub_diff_replaces_listing(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "pr.diff"
            path.write_text(SAMPLE_DIFF, encoding="utf-8")
            gh = MagicMock()
            client = GitHubClient(Auth.Token("secret"), github=gh, stub_diff_path=path)
            self.assertEqual(len(client.list_files(REF)), 2)
            gh.get_repo.assert_not_called()

    def test_missing_stub_is_api_error(self):
        client = GitHubClient(Auth.Token("secret"), github=MagicMock(), stub_diff_path="/nonexistent/pr.diff")
        with self.assertRaises(APIError):
            client.list_files(REF)


class ReadTests(unittest.TestCase):
    def test_get_change_maps_pull_request(self):
        client, _ = client_for(fake_pull())
        change = client.get_change(REF)
        self.assertEqual(change.author, "contributor")
        self.assertEqual(change.author_association, "CONTRIBUTOR")
        self.assertEqual(change.body, "")
        self.assertEqual(change.head_sha, "abc123")
        self.assertTrue(change.is_open)

    def test_merged_pull_request_state(self):
        client, _ = client_for(fake_pull(state="closed", merged=True))
        self.assertEqual(client.get_change(REF).state, "merged")

    def test_failures_become_api_errors(self):
        gh = MagicMock()
        gh.get_user.side_effect = GithubException(401, {"message": "Bad credentials"}, None)
        client = GitHubClient(Auth.Token("secret"), github=gh, attempts=3)
        with self.assertRaises(APIError) as ctx:
            client.authenticated_user()
        self.assertEqual(ctx.exception.status, 401)
        self.assertEqual(ctx.exception.method, "authenticated_user")
        self.assertEqual(gh.get_user.call_count, 1)

    def test_combined_status(self):
        client, gh = client_for(fake_pull())
        status = MagicMock(context="ci/build", state="failure", description=None)
        gh.get_repo.return_value.get_commit.return_value.get_combined_status.return_value = MagicMock(
            state="failure", statuses=[status],
        )
        combined = client.get_combined_status(REF, "abc123")
        self.assertEqual(combined.state, "failure")
        self.assertEqual(combined.statuses[0].context, "ci/build")
        self.assertEqual(combined.statuses[0].description, "")


class WriteTests(unittest.TestCase):
    def test_approve_creates_review(self):
        pr = fake_pull()
        client, _ = client_for(pr)
        client.approve(REF, "looks fine")
        pr.create_review.assert_called_once_with(body="looks fine", event="APPROVE")

    def test_closed_pull_request_is_not_written(self):
        pr = fake_pull(state="closed")
        client, _ = client_for(pr)
        with self.assertRaises(ChangeNotOpenError):
            client.approve(REF)
        pr.create_review.assert_not_called()

    def test_enable_auto_merge_posts_graphql(self):
        session = MagicMock()
        session.post.return_value.json.return_value = {"data": {"enablePullRequestAutoMerge": {}}}
        client, _ = client_for(fake_pull(), session=session)
        client.enable_auto_merge(REF, "squash")
        _, kwargs = session.post.call_args
        self.assertEqual(kwargs["json"]["variables"], {"id": "PR_kwDOA", "method": "SQUASH"})
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer secret")

    def test_enable_auto_merge_graphql_error(self):
        session = MagicMock()
        session.post.return_value.json.return_value = {"errors": [{"message": "Auto merge is not allowed"}]}
        client, _ = client_for(fake_pull(), session=session)
        with self.assertRaises(APIError) as ctx:
            client.enable_auto_merge(REF)
        self.assertIn("Auto merge is not allowed", str(ctx.exception))

    def test_invalid_merge_method(self):
        client, _ = client_for(fake_pull())
        with self.assertRaises(ValidationError):
            client.enable_auto_merge(REF, "octopus")

    def test_merge_returns_sha(self):
        pr = fake_pull()
        pr.merge.return_value = MagicMock(merged=True, sha="deadbeefcafe")
        client, _ = client_for(pr)
        self.assertEqual(client.merge(REF, "merge"), "deadbeefcafe")
        pr.merge.assert_called_once_with(commit_title="Fix typo", merge_method="merge", sha="abc123")

    def test_update_branch_already_current(self):
        pr = fake_pull()
        pr.update_branch.side_effect = GithubException(
            422, {"message": "There are no new commits on the base branch."}, None,
        )
        client, _ = client_for(pr)
        with self.assertRaises(BranchUpToDateError):
            client.update_branch(REF)


if __name__ == "__main__":
    unittest.main()
