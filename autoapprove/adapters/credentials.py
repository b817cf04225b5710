"""
GitHub credential providers.

StaticTokenProvider reads a token from the environment and falls back to
the GitHub CLI. AppInstallationTokenProvider authenticates as a GitHub App
installation; PyGithub refreshes the installation token on expiry.
"""

import logging
import os
import subprocess

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.hazmat.primitives.serialization import load_pem_private_key
from github import Auth

from ..errors import MissingTokenError, ValidationError

logger = logging.getLogger(__name__)

TOKEN_VARIABLES = ("INPUT_GITHUB_TOKEN", "GITHUB_TOKEN", "GH_TOKEN")
GH_CLI_TIMEOUT = 10


class StaticTokenProvider:
    """A fixed personal access token or workflow token."""

    def __init__(self, token: str | None = None, environ=None):
        self._token = token
        self._environ = os.environ if environ is None else environ

    def token(self) -> str:
        if self._token:
            return self._token
        for name in TOKEN_VARIABLES:
            value = self._environ.get(name, "").strip()
            if value:
                return value
        return self._token_from_cli()

    @staticmethod
    def _token_from_cli() -> str:
        try:
            result = subprocess.run(
                ["gh", "auth", "token"],
                capture_output=True,
                text=True,
                timeout=GH_CLI_TIMEOUT,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise MissingTokenError(
                f"no GitHub token in {', '.join(TOKEN_VARIABLES)} and gh CLI unavailable: {exc}"
            ) from exc
        token = result.stdout.strip()
        if result.returncode != 0 or not token:
            raise MissingTokenError(
                f"no GitHub token in {', '.join(TOKEN_VARIABLES)} and `gh auth token` returned nothing"
            )
        return token

    def auth(self) -> Auth.Auth:
        return Auth.Token(self.token())


class AppInstallationTokenProvider:
    """GitHub App installation credentials."""

    def __init__(self, app_id: int | str, private_key_pem: str, installation_id: int | str):
        try:
            self.app_id = int(app_id)
        except (TypeError, ValueError) as exc:
            raise ValidationError("app_id", app_id, "must be an integer") from exc
        try:
            self.installation_id = int(installation_id)
        except (TypeError, ValueError) as exc:
            raise ValidationError("installation_id", installation_id, "must be an integer") from exc
        self.private_key_pem = self._validate_key(private_key_pem)

    @staticmethod
    def _validate_key(pem: str) -> str:
        if not pem or not pem.strip():
            raise ValidationError("private_key", "", "private key cannot be empty")
        # Keys pasted into secrets often arrive with literal "\n".
        pem = pem.replace("\\n", "\n").strip() + "\n"
        try:
            key = load_pem_private_key(pem.encode(), password=None)
        except (ValueError, TypeError) as exc:
            raise ValidationError("private_key", "<redacted>", f"not a valid PEM private key: {exc}") from exc
        if not isinstance(key, RSAPrivateKey):
            raise ValidationError("private_key", "<redacted>", "GitHub App keys must be RSA")
        return pem

    def auth(self) -> Auth.Auth:
        app_auth = Auth.AppAuth(self.app_id, self.private_key_pem)
        logger.debug("Using GitHub App %d installation %d", self.app_id, self.installation_id)
        return app_auth.get_installation_auth(self.installation_id)
