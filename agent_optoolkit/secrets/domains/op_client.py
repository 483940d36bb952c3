"""1Password secret store client wrapper.

The store is reached through the ``op`` command line tool. Service account
tokens are handed to ``op`` through its environment, never on the command line;
desktop app integration passes ``--account`` and lets the signed-in app
authenticate.
"""
import os
import logging
import subprocess
from pathlib import Path
from typing import List, Mapping, Optional

from .errors import AuthError, FetchError, FetchErrorKind
from .models import CredentialSource, DesktopAgentAccount, ServiceAccountToken, Session, VaultRef

logger = logging.getLogger(__name__)

TOKEN_ENV_VAR = "OP_SERVICE_ACCOUNT_TOKEN"
TOKEN_PREFIX = "ops_"
DEFAULT_OP_BINARY = "op"
DEFAULT_CALL_TIMEOUT = 30.0

# Lower-cased stderr fragments emitted by ``op read``
_NOT_FOUND_MARKERS = ("isn't an item", "isn't a vault", "not found", "could not find", "no item found", "isn't a field")
_PERMISSION_MARKERS = ("permission", "forbidden", "not authorized", "unauthorized", "access denied")


def read_service_account_token(path: Path) -> str:
    """
    Read and sanity-check a service account token file.

    Args:
        path: Token file path

    Returns:
        Token string with surrounding whitespace removed

    Raises:
        AuthError: If the file is missing, unreadable, empty, or malformed
    """
    suggestions = [
        f"Write a 1Password service account token to {path}",
        "Or use --desktop-integration ACCOUNT to authenticate through the desktop app",
    ]
    try:
        token = Path(path).read_text().strip()
    except FileNotFoundError as e:
        raise AuthError(
            "Token file does not exist",
            stage="Reading service account token", resource=str(path), cause=e, suggestions=suggestions,
        )
    except (OSError, UnicodeDecodeError) as e:
        raise AuthError(
            "Token file could not be read",
            stage="Reading service account token", resource=str(path), cause=e,
            suggestions=[f"Check read permissions on {path}"] + suggestions,
        )

    if not token:
        raise AuthError(
            "Token file is empty",
            stage="Reading service account token", resource=str(path), suggestions=suggestions,
        )
    if any(c.isspace() for c in token) or not token.startswith(TOKEN_PREFIX):
        raise AuthError(
            f"Token file does not contain a service account token (expected a single '{TOKEN_PREFIX}...' value)",
            stage="Reading service account token", resource=str(path),
            suggestions=["Copy the token again from the 1Password service account page"] + suggestions,
        )
    return token


def classify_fetch_failure(stderr: str) -> FetchErrorKind:
    """Map ``op read`` stderr onto a fetch error kind."""
    text = stderr.lower()
    if any(m in text for m in _PERMISSION_MARKERS):
        return FetchErrorKind.PERMISSION_DENIED
    if any(m in text for m in _NOT_FOUND_MARKERS):
        return FetchErrorKind.NOT_FOUND
    return FetchErrorKind.UNAVAILABLE


class OnePasswordClient:
    """Wrapper around the 1Password CLI."""

    def __init__(self, op_binary: str = DEFAULT_OP_BINARY, timeout: float = DEFAULT_CALL_TIMEOUT):
        self.op_binary = op_binary
        self.timeout = timeout

    def _command(self, session_account: Optional[str], *args: str) -> List[str]:
        cmd = [self.op_binary]
        if session_account:
            cmd += ["--account", session_account]
        cmd += list(args)
        return cmd

    def _run(self, cmd: List[str], env: Mapping[str, str]) -> subprocess.CompletedProcess:
        child_env = dict(os.environ)
        child_env.update(env)
        return subprocess.run(
            cmd, capture_output=True, env=child_env, timeout=self.timeout, check=False
        )

    def authenticate(self, source: CredentialSource) -> Session:
        """
        Establish a session for the given credential source.

        Args:
            source: ServiceAccountToken or DesktopAgentAccount

        Returns:
            Session used by fetch_secret

        Raises:
            AuthError: If the credential is unusable or the store rejects it
        """
        if isinstance(source, ServiceAccountToken):
            token = read_service_account_token(source.path)
            session = Session(source=source, env={TOKEN_ENV_VAR: token})
            resource = str(source.path)
            suggestions = [
                "Check that the service account token has not been revoked",
                "Check network connectivity to 1Password",
            ]
        elif isinstance(source, DesktopAgentAccount):
            if not source.account_name:
                raise AuthError(
                    "Desktop integration account name is empty",
                    stage="Authenticating with desktop app",
                    suggestions=["Pass the account shorthand or sign-in address to --desktop-integration"],
                )
            session = Session(source=source, account=source.account_name)
            resource = source.account_name
            suggestions = [
                "Make sure the 1Password desktop app is running and unlocked",
                "Enable 'Integrate with 1Password CLI' in the desktop app developer settings",
                "Check the account name with: op account list",
            ]
        else:
            raise AuthError(f"Unsupported credential source: {source!r}", stage="Authenticating")

        cmd = self._command(session.account, "whoami", "--format", "json")
        try:
            result = self._run(cmd, session.env)
        except FileNotFoundError as e:
            raise AuthError(
                f"1Password CLI '{self.op_binary}' not found",
                stage="Authenticating with 1Password", resource=resource, cause=e,
                suggestions=["Install the 1Password CLI and make sure it is in PATH"],
            )
        except subprocess.TimeoutExpired as e:
            raise AuthError(
                f"1Password CLI did not answer within {self.timeout}s",
                stage="Authenticating with 1Password", resource=resource, cause=e, suggestions=suggestions,
            )

        if result.returncode != 0:
            stderr = (result.stderr or b"").decode("utf-8", errors="replace").strip()
            raise AuthError(
                f"1Password rejected the credential: {stderr or 'exit code ' + str(result.returncode)}",
                stage="Authenticating with 1Password", resource=resource, suggestions=suggestions,
            )

        logger.info(f"Authenticated with 1Password using {type(source).__name__}")
        return session

    def fetch_secret(self, session: Session, vault_ref: VaultRef) -> bytes:
        """
        Fetch one field value.

        Args:
            session: Session returned by authenticate
            vault_ref: Vault/item/field address

        Returns:
            Raw field bytes exactly as stored

        Raises:
            FetchError: NOT_FOUND, PERMISSION_DENIED, or UNAVAILABLE
        """
        cmd = self._command(session.account, "read", "--no-newline", vault_ref.uri)
        try:
            result = self._run(cmd, session.env)
        except subprocess.TimeoutExpired as e:
            raise FetchError(
                FetchErrorKind.UNAVAILABLE,
                f"1Password CLI timed out after {self.timeout}s",
                stage="Fetching secret", resource=vault_ref.uri, cause=e,
            )
        except OSError as e:
            raise FetchError(
                FetchErrorKind.UNAVAILABLE,
                "1Password CLI could not be started",
                stage="Fetching secret", resource=vault_ref.uri, cause=e,
            )

        if result.returncode == 0:
            return result.stdout

        stderr = (result.stderr or b"").decode("utf-8", errors="replace").strip()
        kind = classify_fetch_failure(stderr)
        logger.debug(f"op read failed for {vault_ref.uri} ({kind.value}): {stderr}")
        if kind is FetchErrorKind.NOT_FOUND:
            suggestions = [f"Check that vault '{vault_ref.vault}', item '{vault_ref.item}' and field '{vault_ref.field}' exist"]
        elif kind is FetchErrorKind.PERMISSION_DENIED:
            suggestions = [f"Grant the credential read access to vault '{vault_ref.vault}'"]
        else:
            suggestions = ["Check network connectivity to 1Password", "Retry the run later"]
        raise FetchError(
            kind, stderr or f"op exited with code {result.returncode}",
            stage="Fetching secret", resource=vault_ref.uri, suggestions=suggestions,
        )
