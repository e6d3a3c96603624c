"""
gupload - Google Drive upload, clone and share CLI

Copyright 2026 UAA Software

Permission is hereby granted, free of charge, to any person obtaining a copy of
this software and associated documentation files (the “Software”), to deal in
the Software without restriction, including without limitation the rights to
use, copy, modify, merge, publish, distribute, sublicense, and/or sell copies of
the Software, and to permit persons to whom the Software is furnished to do so,
subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED “AS IS”, WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY, FITNESS
FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR
COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER
IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN
CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE SOFTWARE.
"""

import argparse
import hashlib
import json
import logging
import mimetypes
import os
import re
import stat
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable
from urllib.parse import urlencode

import requests
from filelock import FileLock as _FileLock


# Module-level logger
logger = logging.getLogger("gupload")


# =============================================================================
# Exceptions
# =============================================================================


class GUploadError(Exception):
    """Base error for gupload."""

    def __init__(self, message: str, body: str = ""):
        super().__init__(message)
        self.body = body


class ConfigIOError(GUploadError):
    """Credential store cannot be read or written."""


class AccountError(GUploadError):
    """Error in account management."""


class InvalidNameError(AccountError):
    """Account name does not match the allowed pattern."""


class DuplicateNameError(AccountError):
    """Account name is already in use."""


class NotFoundError(AccountError):
    """Account to delete does not exist."""


class NoSuchAccountError(AccountError):
    """Explicitly requested account does not exist."""


class NonInteractiveError(AccountError):
    """Input is required but no terminal is available."""


class CredentialError(GUploadError):
    """Error while validating or acquiring credentials."""


class CredentialShapeError(CredentialError):
    """A credential does not have the expected shape."""


class NonInteractiveCredentialError(CredentialError, NonInteractiveError):
    """A credential is missing and cannot be asked for."""


class TokenExchangeError(CredentialError):
    """Authorization code exchange did not yield a refresh token."""


class RefreshError(CredentialError):
    """Access token refresh failed."""


class TransferError(GUploadError):
    """Upload or copy request failed."""

    def __init__(self, message: str, body: str = "", status: int = 0):
        super().__init__(message, body)
        self.status = status


class MetadataError(GUploadError):
    """Remote metadata could not be read or parsed."""


class ShareError(GUploadError):
    """Permission could not be granted."""


# =============================================================================
# Output Helpers
# =============================================================================


class Colors:
    """ANSI color codes for terminal output."""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"


def use_color() -> bool:
    """Check if color output should be used.

    Colors are disabled if:
    - NO_COLOR environment variable is set
    - CI environment variable is set
    - stdout is not a TTY
    """
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("CI"):
        return False
    if not sys.stdout.isatty():
        return False
    return True


def colorize(text: str, color: str, force: bool = False) -> str:
    """Wrap text in ANSI color codes if appropriate."""
    if not force and not use_color():
        return text
    color_code = getattr(Colors, color.upper(), "")
    if color_code:
        return f"{color_code}{text}{Colors.RESET}"
    return text


def format_bytes(size: int) -> str:
    """Format byte size as human-readable string."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024:
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}PB"


def die(message: str, hint: str | None = None, exit_code: int = 1) -> int:
    """Print error message with optional hint and return exit_code.

    Args:
        message: Error message to display
        hint: Optional remediation hint
        exit_code: Exit code to return

    Returns:
        Exit code (for testing purposes)
    """
    error_msg = f"Error: {message}"
    if use_color():
        error_msg = f"{Colors.RED}{error_msg}{Colors.RESET}"
    print(error_msg, file=sys.stderr)

    if hint:
        hint_msg = f"Hint: {hint}"
        if use_color():
            hint_msg = f"{Colors.YELLOW}{hint_msg}{Colors.RESET}"
        print(hint_msg, file=sys.stderr)

    logger.error(f"Exited with code {exit_code}: {message}")
    if hint:
        logger.error(f"Hint: {hint}")

    return exit_code


# =============================================================================
# Logging
# =============================================================================


def setup_logging(verbosity: int = 0, log_file: bool = True) -> None:
    """Set up logging with console and file handlers.

    Args:
        verbosity: 0=INFO, 1=DEBUG, 2=DEBUG with logger names
        log_file: Whether to write to ~/.gupload/gupload.log
    """
    if verbosity >= 2:
        level = logging.DEBUG
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    elif verbosity >= 1:
        level = logging.DEBUG
        fmt = "%(asctime)s - %(levelname)s - %(message)s"
    else:
        level = logging.INFO
        fmt = "%(asctime)s - %(levelname)s - %(message)s"

    logger.handlers = []
    # Handlers filter; the file log always gets DEBUG
    logger.setLevel(logging.DEBUG)

    # Console only shows warnings unless verbose
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING if verbosity == 0 else level)
    console_handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(console_handler)

    if log_file:
        log_dir = Path.home() / ".gupload"
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / "gupload.log"

        file_handler = logging.FileHandler(log_path, mode="a")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        logger.addHandler(file_handler)

        logger.debug(f"Logging initialized (verbosity={verbosity})")


# =============================================================================
# Low-level Utilities
# =============================================================================


def with_file_lock(path: Path, timeout: float = 10.0):
    """Return a cross-platform file lock context manager.

    Args:
        path: Path to lock file
        timeout: Seconds to wait for lock (default 10s, -1 for infinite)
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    return _FileLock(path, timeout=timeout)


def atomic_write_text(dest: Path, text: str, encoding: str = "utf-8") -> None:
    """Write text to dest atomically via temp file + rename."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=dest.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(text.encode(encoding))
        os.replace(temp_path, dest)
    except Exception:
        try:
            os.close(fd)
        except OSError:
            pass
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def md5_file(path: Path) -> str:
    """Compute MD5 hex digest of a file."""
    md5 = hashlib.md5()
    with path.open("rb") as f:
        while True:
            chunk = f.read(65536)  # 64KB chunks
            if not chunk:
                break
            md5.update(chunk)
    return md5.hexdigest().lower()


# =============================================================================
# Configuration
# =============================================================================


DEFAULT_SETTINGS: dict[str, Any] = {
    "api": {
        "url": "https://www.googleapis.com",
        "version": "v3",
        "auth_url": "https://accounts.google.com/o/oauth2/auth",
        "token_url": "https://accounts.google.com/o/oauth2/token",
        "redirect_uri": "urn:ietf:wg:oauth:2.0:oob",
        "scope": "https://www.googleapis.com/auth/drive",
    },
    "upload": {
        "description": "",
        "check_mode": "none",
        "skip_duplicates": False,
    },
}


def get_user_config_dir() -> Path:
    """Return ~/.config/gupload/, creating if needed."""
    env_override = os.environ.get("GUPLOAD_USER_CONFIG")
    if env_override:
        config_dir = Path(env_override)
    elif os.name == "nt":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
        config_dir = base / "gupload"
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
        config_dir = base / "gupload"

    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_path() -> Path:
    """Resolve the credential store path, honoring GUPLOAD_CONFIG."""
    config_path = os.environ.get("GUPLOAD_CONFIG")
    if config_path:
        return Path(config_path)
    return get_user_config_dir() / "gupload.conf"


def get_session_dir() -> Path:
    """Resolve the directory holding resumable upload sessions."""
    session_dir = os.environ.get("GUPLOAD_SESSION_DIR")
    if session_dir:
        return Path(session_dir)
    return Path.home() / ".gupload" / "sessions"


def deep_merge(target: dict, source: dict) -> dict:
    """Deep merge two dictionaries."""
    result = target.copy()
    for key, value in source.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_settings() -> dict[str, Any]:
    """Load config.toml from the user config dir over the defaults."""
    import tomllib

    settings_path = get_user_config_dir() / "config.toml"
    user_settings = {}
    if settings_path.exists():
        with settings_path.open("rb") as f:
            user_settings = tomllib.load(f)

    return deep_merge(DEFAULT_SETTINGS, user_settings)


def warn_if_config_exposed(config_path: Path) -> None:
    """Warn if the credential store is readable by group or others."""
    if os.name == "nt" or not config_path.exists():
        return
    mode = config_path.stat().st_mode
    if mode & (stat.S_IRWXG | stat.S_IRWXO):
        print(
            colorize(f"Warning: {config_path} is readable by other users", "YELLOW"),
            file=sys.stderr,
        )
        print(f"Run: chmod 400 {config_path}", file=sys.stderr)


# =============================================================================
# Config Store
# =============================================================================


_LINE_RE = re.compile(r"^([A-Za-z0-9_]+)=(.*)$")


def _decode_value(raw: str) -> str:
    raw = raw.strip()
    if raw.startswith('"') and raw.endswith('"') and len(raw) >= 2:
        try:
            return json.loads(raw)
        except ValueError:
            return raw[1:-1]
    return raw


class ConfigStore:
    """Flat KEY="VALUE" store backing credentials and tokens.

    Every write rewrites the whole file under a file lock, with write
    permission granted only for the duration of the rewrite. Writing a key
    removes every earlier line for that key, so each key appears once.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    def _read_lines(self) -> list[str]:
        if not self.path.exists():
            return []
        try:
            return self.path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise ConfigIOError(f"Cannot read config {self.path}: {e}") from e

    def read(self) -> dict[str, str]:
        """Return all entries; later lines win over earlier ones."""
        values: dict[str, str] = {}
        for line in self._read_lines():
            match = _LINE_RE.match(line)
            if match:
                values[match.group(1)] = _decode_value(match.group(2))
        return values

    def get(self, key: str, default: str = "") -> str:
        return self.read().get(key, default)

    def keys(self) -> list[str]:
        """Keys in file order, without duplicates."""
        seen: dict[str, None] = {}
        for line in self._read_lines():
            match = _LINE_RE.match(line)
            if match:
                seen.setdefault(match.group(1), None)
        return list(seen)

    def set(self, key: str, value: str) -> None:
        self.update({key: value})

    def update(self, values: dict[str, str]) -> None:
        """Replace the given keys in one rewrite, appending new values."""
        if not values:
            return

        def transform(lines: list[str]) -> list[str]:
            kept = [
                line
                for line in lines
                if line.strip() and self._line_key(line) not in values
            ]
            for key, value in values.items():
                kept.append(f"{key}={json.dumps(str(value))}")
            return kept

        self._rewrite(transform)

    def remove(self, match: Callable[[str, str], bool]) -> int:
        """Drop every entry for which match(key, value) is true."""
        removed = 0

        def transform(lines: list[str]) -> list[str]:
            nonlocal removed
            kept = []
            for line in lines:
                parsed = _LINE_RE.match(line)
                if parsed and match(parsed.group(1), _decode_value(parsed.group(2))):
                    removed += 1
                    continue
                if line.strip():
                    kept.append(line)
            return kept

        self._rewrite(transform)
        return removed

    def replace_all(self, values: dict[str, str], drop: Callable[[str], bool]) -> None:
        """Prepend values and drop matching keys in a single rewrite."""

        def transform(lines: list[str]) -> list[str]:
            head = [f"{key}={json.dumps(str(value))}" for key, value in values.items()]
            rest = [
                line
                for line in lines
                if line.strip() and not self._replaced(line, values, drop)
            ]
            return head + rest

        self._rewrite(transform)

    def _replaced(self, line: str, values: dict[str, str], drop: Callable[[str], bool]) -> bool:
        key = self._line_key(line) or ""
        return drop(key) or key in values

    def delete(self) -> None:
        """Remove the store file and its lock."""
        for path in (self.path, self.lock_path):
            if path.exists():
                self._make_writable()
                path.unlink()

    @staticmethod
    def _line_key(line: str) -> str | None:
        match = _LINE_RE.match(line)
        return match.group(1) if match else None

    def _make_writable(self) -> None:
        if self.path.exists():
            os.chmod(self.path, self.path.stat().st_mode | stat.S_IWUSR)

    def _rewrite(self, transform: Callable[[list[str]], list[str]]) -> None:
        try:
            with with_file_lock(self.lock_path):
                lines = self._read_lines()
                self._make_writable()
                try:
                    atomic_write_text(self.path, "\n".join(transform(lines)) + "\n")
                finally:
                    if self.path.exists():
                        os.chmod(self.path, stat.S_IRUSR)
        except OSError as e:
            raise ConfigIOError(f"Cannot write config {self.path}: {e}") from e


# =============================================================================
# Input
# =============================================================================


class Prompter:
    """Source of interactive answers.

    The default implementation reads stdin and is interactive only when
    both stdin and stdout are terminals.
    """

    def __init__(self, interactive: bool | None = None):
        if interactive is None:
            interactive = sys.stdin.isatty() and sys.stdout.isatty()
        self.interactive = interactive

    def ask(self, message: str) -> str:
        if not self.interactive:
            raise NonInteractiveError("Not running in an interactive terminal")
        return input(f"{message}\n-> ").strip()

    def say(self, message: str) -> None:
        print(message, file=sys.stderr)


# =============================================================================
# Accounts
# =============================================================================


CLIENT_ID = "CLIENT_ID"
CLIENT_SECRET = "CLIENT_SECRET"
REFRESH_TOKEN = "REFRESH_TOKEN"
ROOT_FOLDER = "ROOT_FOLDER"
ROOT_FOLDER_NAME = "ROOT_FOLDER_NAME"
ACCESS_TOKEN = "ACCESS_TOKEN"
ACCESS_TOKEN_EXPIRY = "ACCESS_TOKEN_EXPIRY"
ACCOUNT_FIELDS = (
    CLIENT_ID,
    CLIENT_SECRET,
    REFRESH_TOKEN,
    ROOT_FOLDER,
    ROOT_FOLDER_NAME,
    ACCESS_TOKEN,
    ACCESS_TOKEN_EXPIRY,
)
DEFAULT_ACCOUNT = "DEFAULT_ACCOUNT"

ACCOUNT_NAME_RE = re.compile(r"[A-Za-z0-9_]+")
_ACCOUNT_KEY_RE = re.compile(r"^ACCOUNT_(.+)_CLIENT_ID$")


def account_key(name: str, field_name: str) -> str:
    """Store key for one field of one account."""
    return f"ACCOUNT_{name}_{field_name}"


def _parse_expiry(value: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


@dataclass
class CredentialSet:
    """Credentials of a single account."""

    client_id: str = ""
    client_secret: str = ""
    refresh_token: str = ""
    access_token: str = ""
    access_token_expiry: int = 0
    root_folder: str = ""
    root_folder_name: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)


class AccountRegistry:
    """Named account profiles stored in a ConfigStore."""

    def __init__(self, store: ConfigStore, prompter: Prompter | None = None):
        self.store = store
        self.prompter = prompter or Prompter()
        self.accounts: dict[int, str] = {}

    @staticmethod
    def name_valid(name: str | None) -> bool:
        return bool(name) and ACCOUNT_NAME_RE.fullmatch(name) is not None

    def get(self, name: str, field_name: str) -> str:
        return self.store.get(account_key(name, field_name))

    def set(self, name: str, field_name: str, value: str) -> None:
        self.store.set(account_key(name, field_name), value)

    def update(self, name: str, values: dict[str, str]) -> None:
        self.store.update({account_key(name, k): v for k, v in values.items()})

    def credentials(self, name: str) -> CredentialSet:
        values = self.store.read()

        def value(field_name: str) -> str:
            return values.get(account_key(name, field_name), "")

        return CredentialSet(
            client_id=value(CLIENT_ID),
            client_secret=value(CLIENT_SECRET),
            refresh_token=value(REFRESH_TOKEN),
            access_token=value(ACCESS_TOKEN),
            access_token_expiry=_parse_expiry(value(ACCESS_TOKEN_EXPIRY)),
            root_folder=value(ROOT_FOLDER),
            root_folder_name=value(ROOT_FOLDER_NAME),
        )

    def exists(self, name: str | None) -> bool:
        """True if name is valid and the account has id, secret and refresh token."""
        if not self.name_valid(name):
            return False
        return self.credentials(name).configured

    def list_accounts(self) -> list[tuple[int, str]]:
        """Number every fully configured account in config order.

        The result is also kept in self.accounts for menu selection.
        """
        self.accounts = {}
        for key in self.store.keys():
            match = _ACCOUNT_KEY_RE.match(key)
            if match and self.exists(match.group(1)):
                self.accounts[len(self.accounts) + 1] = match.group(1)
        return list(self.accounts.items())

    def create(self, proposed: str | None = None) -> str:
        """Pick a new account name, prompting until a valid unused one is given.

        With an explicit name and no terminal, invalid or duplicate names
        raise instead of prompting.
        """
        name = proposed
        while True:
            if name:
                if not self.name_valid(name):
                    error: AccountError = InvalidNameError(
                        f"Account name ({name}) invalid, only letters, numbers "
                        "and underscores are allowed"
                    )
                elif self.exists(name):
                    error = DuplicateNameError(f"Account ({name}) already exists")
                else:
                    logger.info(f"New account name: {name}")
                    return name
                if not self.prompter.interactive:
                    raise error
                self.prompter.say(f"Warning: {error} Input a different name.")
            elif not self.prompter.interactive:
                raise NonInteractiveError(
                    "Not running in an interactive terminal, cannot ask for new account name"
                )
            name = self.prompter.ask("New account name:")

    def delete(self, name: str) -> None:
        if not self.exists(name):
            raise NotFoundError(f"No such account ({name}) exists")
        keys = {account_key(name, f) for f in ACCOUNT_FIELDS}
        self.store.remove(
            lambda key, value: key in keys or (key == DEFAULT_ACCOUNT and value == name)
        )
        logger.info(f"Deleted account {name}")

    def migrate_legacy(self) -> str | None:
        """Move unscoped CLIENT_ID/CLIENT_SECRET/REFRESH_TOKEN into a named account.

        Returns the new account name, or None when there was nothing to do.
        """
        values = self.store.read()
        if not all(values.get(k) for k in (CLIENT_ID, CLIENT_SECRET, REFRESH_TOKEN)):
            return None

        name, count = "default", 0
        while self.exists(name):
            count += 1
            name = f"default{count}"

        migrated = {
            account_key(name, k): values.get(k, "")
            for k in (CLIENT_ID, CLIENT_SECRET, REFRESH_TOKEN, ROOT_FOLDER, ROOT_FOLDER_NAME)
        }
        self.store.replace_all(migrated, drop=lambda key: key in ACCOUNT_FIELDS)
        logger.info(f"Migrated legacy config to account {name}")
        return name

    def default(self) -> str:
        return self.store.get(DEFAULT_ACCOUNT)

    def set_default(self, name: str) -> None:
        self.store.set(DEFAULT_ACCOUNT, name)

    def select_default(
        self,
        explicit: str | None = None,
        on_create: Callable[[str], Any] | None = None,
    ) -> str:
        """Choose the account for this run and remember it as the default.

        Precedence: explicit name, configured default, the only account,
        a menu choice (or the first account without a terminal), and
        finally a newly created account passed to on_create.
        """
        current = self.default()
        default_valid = self.exists(current)
        if current and not default_valid:
            logger.info(f"Default account {current} is not valid, clearing it")
            self.store.remove(lambda key, value: key == DEFAULT_ACCOUNT)

        if explicit:
            if not self.exists(explicit):
                raise NoSuchAccountError(f"No such account ({explicit}) exists")
            name = explicit
        elif default_valid:
            name = current
        else:
            accounts = self.list_accounts()
            if len(accounts) == 1:
                name = accounts[0][1]
            elif accounts:
                name = self._choose(accounts)
            else:
                name = self.create()
                if on_create is not None:
                    on_create(name)

        if not default_valid:
            self.set_default(name)
        return name

    def _choose(self, accounts: list[tuple[int, str]]) -> str:
        if not self.prompter.interactive:
            print(
                "Warning: Not running in a terminal, choosing first account as default.",
                file=sys.stderr,
            )
            return self.accounts[1]

        menu = "\n".join(f"{index}. {name}" for index, name in accounts)
        self.prompter.say(f"{menu}\nAbove accounts are configured, but default one not set.")
        while True:
            answer = self.prompter.ask("Choose default account:")
            if answer.isdigit() and int(answer) in self.accounts:
                return self.accounts[int(answer)]


# =============================================================================
# Credentials
# =============================================================================


CLIENT_ID_RE = re.compile(r"[0-9]+-[0-9A-Za-z_]{32}\.apps\.googleusercontent\.com")
CLIENT_SECRET_RE = re.compile(r"[0-9A-Za-z_-]+")
REFRESH_TOKEN_RE = re.compile(r"[0-9]//[0-9A-Za-z_-]+")
AUTHORIZATION_CODE_RE = re.compile(r"[0-9]/[0-9A-Za-z_-]+")
ACCESS_TOKEN_RE = re.compile(r"ya29\.[0-9A-Za-z_-]+")

CREDENTIAL_PATTERNS = {
    CLIENT_ID: CLIENT_ID_RE,
    CLIENT_SECRET: CLIENT_SECRET_RE,
    REFRESH_TOKEN: REFRESH_TOKEN_RE,
    ACCESS_TOKEN: ACCESS_TOKEN_RE,
    "AUTHORIZATION_CODE": AUTHORIZATION_CODE_RE,
}


class CredentialState:
    EMPTY = "empty"
    INVALID = "invalid"
    VALID = "valid"


def credential_state(value: str | None, pattern: re.Pattern) -> str:
    if not value:
        return CredentialState.EMPTY
    if pattern.fullmatch(value):
        return CredentialState.VALID
    return CredentialState.INVALID


def validate_credential(kind: str, value: str) -> str:
    """Return value if it has the shape expected for kind."""
    if credential_state(value, CREDENTIAL_PATTERNS[kind]) != CredentialState.VALID:
        raise CredentialShapeError(f"Invalid {kind.replace('_', ' ').lower()}")
    return value


def refresh_access_token(
    http,
    token_url: str,
    creds: CredentialSet,
    *,
    response: str | None = None,
    clock: Callable[[], float] = time.time,
    timeout: float | None = None,
) -> tuple[str, int]:
    """Exchange the refresh token for a new access token.

    A token endpoint response already in hand can be passed as response to
    skip the request. Expiry is one second ahead of the reported lifetime.

    Returns:
        Tuple of (access_token, expiry_epoch_seconds)

    Raises:
        RefreshError: with the raw endpoint body when no token is returned
    """
    if response is None:
        try:
            resp = http.post(
                token_url,
                data={
                    "client_id": creds.client_id,
                    "client_secret": creds.client_secret,
                    "refresh_token": creds.refresh_token,
                    "grant_type": "refresh_token",
                },
                timeout=timeout,
            )
        except requests.RequestException as e:
            raise RefreshError(f"Token refresh request failed: {e}") from e
        response = resp.text

    try:
        payload = json.loads(response)
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    token = payload.get("access_token")
    expires_in = payload.get("expires_in")
    if not token or expires_in is None:
        raise RefreshError("Could not refresh access token", body=response)

    try:
        expiry = int(clock()) + int(expires_in) - 1
    except (TypeError, ValueError) as e:
        raise RefreshError(f"Invalid token lifetime: {expires_in!r}", body=response) from e
    return token, expiry


class CredentialManager:
    """Validates and acquires the four credentials of an account."""

    def __init__(
        self,
        registry: AccountRegistry,
        settings: dict[str, Any] | None = None,
        prompter: Prompter | None = None,
        http=None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.settings = settings or DEFAULT_SETTINGS
        self.prompter = prompter or registry.prompter
        self.http = http or requests.Session()
        self.clock = clock

    @property
    def api(self) -> dict[str, str]:
        return self.settings["api"]

    def ensure(self, name: str) -> CredentialSet:
        """Make sure all credentials of name are present and valid."""
        creds = self.registry.credentials(name)
        creds.client_id = self.check_client(name, CLIENT_ID, creds.client_id)
        creds.client_secret = self.check_client(name, CLIENT_SECRET, creds.client_secret)
        creds.refresh_token = self.check_refresh_token(name, creds)
        self.check_access_token(name, creds)
        return creds

    def check_client(self, name: str, field_name: str, value: str = "") -> str:
        """Return a valid client id or secret, asking for it when needed.

        Values typed in are saved once valid; stored valid values are not
        rewritten.
        """
        pattern = CREDENTIAL_PATTERNS[field_name]
        label = field_name.replace("_", " ").title()
        entered = False
        while True:
            state = credential_state(value, pattern)
            if state == CredentialState.VALID:
                if entered:
                    self.registry.set(name, field_name, value)
                return value
            if state == CredentialState.INVALID:
                where = "- Try again" if entered else f"in config ({self.registry.store.path})"
                self.prompter.say(f"Invalid {label} {where}")
            if not self.prompter.interactive:
                raise NonInteractiveCredentialError(
                    f"{label} missing or invalid for account {name}, and no terminal to ask"
                )
            value = self.prompter.ask(f"Enter {label}")
            entered = True

    def authorization_url(self, client_id: str) -> str:
        query = urlencode(
            {
                "client_id": client_id,
                "redirect_uri": self.api["redirect_uri"],
                "scope": self.api["scope"],
                "response_type": "code",
                "prompt": "consent",
            }
        )
        return f"{self.api['auth_url']}?{query}"

    def check_refresh_token(self, name: str, creds: CredentialSet) -> str:
        """Return a valid refresh token, running the consent flow if needed."""
        state = credential_state(creds.refresh_token, REFRESH_TOKEN_RE)
        if state == CredentialState.VALID:
            return creds.refresh_token
        if state == CredentialState.INVALID:
            self.prompter.say("Error: Invalid refresh token in config file, follow below steps..")
        if not self.prompter.interactive:
            raise NonInteractiveCredentialError(
                f"Refresh token missing or invalid for account {name}, and no terminal to ask"
            )

        pasted = self.prompter.ask(
            "If you have a refresh token generated, then type the token, "
            "else leave blank and press return key.."
        )
        if pasted:
            try:
                creds.refresh_token = validate_credential(REFRESH_TOKEN, pasted)
                self.check_access_token(name, creds, force_refresh=True)
            except (CredentialShapeError, RefreshError) as e:
                logger.debug(f"Pasted refresh token rejected: {e}")
                self.prompter.say(
                    "Error: Invalid refresh token given, follow below steps to generate.."
                )
            else:
                self.registry.set(name, REFRESH_TOKEN, pasted)
                return pasted

        return self._authorize(name, creds)

    def _ask_code(self) -> str:
        message = "Enter the authorization code"
        while True:
            try:
                return validate_credential("AUTHORIZATION_CODE", self.prompter.ask(message))
            except CredentialShapeError:
                message = "Invalid code given, try again.."

    def _authorize(self, name: str, creds: CredentialSet) -> str:
        self.prompter.say(
            "Visit the below URL, tap on allow and then enter the code obtained\n\n"
            + self.authorization_url(creds.client_id)
        )
        code = self._ask_code()

        try:
            resp = self.http.post(
                self.api["token_url"],
                data={
                    "code": code,
                    "client_id": creds.client_id,
                    "client_secret": creds.client_secret,
                    "redirect_uri": self.api["redirect_uri"],
                    "grant_type": "authorization_code",
                },
            )
        except requests.RequestException as e:
            raise TokenExchangeError(f"Authorization code exchange failed: {e}") from e

        body = resp.text
        try:
            payload = json.loads(body)
        except ValueError:
            payload = {}
        refresh_token = payload.get("refresh_token") if isinstance(payload, dict) else None
        if not refresh_token:
            raise TokenExchangeError(
                "Cannot fetch refresh token, make sure the authorization code was correct",
                body=body,
            )

        creds.refresh_token = refresh_token
        self.check_access_token(name, creds, force_refresh=True, response=body)
        self.registry.set(name, REFRESH_TOKEN, refresh_token)
        return refresh_token

    def check_access_token(
        self,
        name: str,
        creds: CredentialSet,
        force_refresh: bool = False,
        response: str | None = None,
    ) -> CredentialSet:
        """Refresh the access token unless the current one is usable.

        The token is kept when it has the right shape and has not expired
        and force_refresh is false. A new token and its expiry are saved
        to the account.
        """
        if (
            not force_refresh
            and credential_state(creds.access_token, ACCESS_TOKEN_RE) == CredentialState.VALID
            and creds.access_token_expiry >= int(self.clock())
        ):
            return creds

        try:
            token, expiry = refresh_access_token(
                self.http,
                self.api["token_url"],
                creds,
                response=response,
                clock=self.clock,
            )
        except RefreshError as e:
            if e.body:
                print(e.body, file=sys.stderr)
            raise

        creds.access_token, creds.access_token_expiry = token, expiry
        self.registry.update(name, {ACCESS_TOKEN: token, ACCESS_TOKEN_EXPIRY: str(expiry)})
        logger.debug(f"Access token for {name} valid until {expiry}")
        return creds


# =============================================================================
# Token Refresher
# =============================================================================


class TokenRefresher(threading.Thread):
    """Background thread keeping one account's access token fresh.

    Tokens are written to a private scratch store, never to the main
    config. stop() ends the loop and wakes any pending sleep.
    """

    LEAD_TIME = 300
    REFRESH_TIMEOUT = 30
    PACE = 1

    def __init__(
        self,
        creds: CredentialSet,
        scratch_path: Path,
        token_url: str,
        http=None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(name="gupload-token-refresher", daemon=True)
        self.creds = creds
        self.scratch = ConfigStore(scratch_path)
        self.token_url = token_url
        self.http = http or requests.Session()
        self.clock = clock
        self._stop_event = threading.Event()
        self.scratch.update(
            {
                ACCESS_TOKEN: creds.access_token,
                ACCESS_TOKEN_EXPIRY: str(creds.access_token_expiry),
            }
        )

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def current_token(self) -> str:
        return self.scratch.get(ACCESS_TOKEN)

    def current_expiry(self) -> int:
        return _parse_expiry(self.scratch.get(ACCESS_TOKEN_EXPIRY))

    def run(self) -> None:
        logger.debug("Token refresher started")
        while not self._stop_event.is_set():
            if not threading.main_thread().is_alive():
                break
            self.step()
            self._stop_event.wait(self.PACE)
        logger.debug("Token refresher stopped")

    def step(self) -> None:
        """One loop iteration: refresh when close to expiry, else sleep until then."""
        remaining = self.current_expiry() - int(self.clock())
        if remaining <= self.LEAD_TIME:
            self.refresh_once()
        else:
            self._stop_event.wait(max(remaining - self.LEAD_TIME, 0))

    def refresh_once(self) -> bool:
        """Refresh into the scratch store; failures are logged and retried next time."""
        try:
            token, expiry = refresh_access_token(
                self.http,
                self.token_url,
                self.creds,
                clock=self.clock,
                timeout=self.REFRESH_TIMEOUT,
            )
            self.scratch.update({ACCESS_TOKEN: token, ACCESS_TOKEN_EXPIRY: str(expiry)})
        except (GUploadError, requests.RequestException, OSError, ValueError) as e:
            logger.warning(f"Background token refresh failed, will retry: {e}")
            return False
        logger.debug(f"Background token refresh succeeded, valid until {expiry}")
        return True


# =============================================================================
# Session
# =============================================================================


@dataclass
class Session:
    """Everything one run needs: store, account, credentials and settings."""

    store: ConfigStore
    registry: AccountRegistry
    manager: CredentialManager
    account: str
    credentials: CredentialSet
    settings: dict[str, Any]
    refresher: TokenRefresher | None = None
    initial_token: str = ""

    def access_token(self) -> str:
        if self.refresher is not None and not self.refresher.stopped:
            token = self.refresher.current_token()
            if token:
                return token
        return self.credentials.access_token

    def start_refresher(self, http=None, clock: Callable[[], float] | None = None) -> TokenRefresher:
        fd, scratch = tempfile.mkstemp(prefix="gupload-token-")
        os.close(fd)
        self.refresher = TokenRefresher(
            self.credentials,
            Path(scratch),
            self.settings["api"]["token_url"],
            http=http or self.manager.http,
            clock=clock or self.manager.clock,
        )
        self.refresher.start()
        return self.refresher

    def close(self) -> None:
        """Stop the refresher and keep the latest token it obtained."""
        if self.refresher is None:
            return
        self.refresher.stop(timeout=self.refresher.REFRESH_TIMEOUT + self.refresher.PACE)
        token, expiry = self.refresher.current_token(), self.refresher.current_expiry()
        if token and token != self.initial_token:
            self.credentials.access_token, self.credentials.access_token_expiry = token, expiry
            self.registry.update(
                self.account, {ACCESS_TOKEN: token, ACCESS_TOKEN_EXPIRY: str(expiry)}
            )
        self.refresher.scratch.delete()
        self.refresher = None


def open_session(
    settings: dict[str, Any] | None = None,
    prompter: Prompter | None = None,
    account: str | None = None,
    new_account: str | None = None,
    background: bool = True,
    store: ConfigStore | None = None,
    http=None,
) -> Session:
    """Select an account, validate its credentials and start token renewal."""
    settings = settings or load_settings()
    store = store or ConfigStore(get_config_path())
    registry = AccountRegistry(store, prompter)
    registry.migrate_legacy()
    manager = CredentialManager(registry, settings, prompter, http=http)

    if new_account:
        name = registry.create(new_account)
        manager.ensure(name)
        if not registry.exists(registry.default()):
            registry.set_default(name)
    else:
        name = registry.select_default(account, on_create=manager.ensure)

    creds = manager.ensure(name)
    logger.info(f"Using account {name}")
    session = Session(
        store=store,
        registry=registry,
        manager=manager,
        account=name,
        credentials=creds,
        settings=settings,
        initial_token=creds.access_token,
    )
    if background:
        session.start_refresher()
    return session


# =============================================================================
# Drive API
# =============================================================================


FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
FILE_FIELDS = "id,name,mimeType,size,md5Checksum"
ALL_DRIVES = {"supportsAllDrives": "true", "includeItemsFromAllDrives": "true"}


@dataclass
class ApiResponse:
    """Status, body and headers of an API call. Status 0 means no response."""

    status: int
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> dict[str, Any]:
        try:
            data = json.loads(self.body)
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


class APIClient:
    """Authenticated requests against the Drive API."""

    def __init__(self, token_source: Callable[[], str], settings: dict[str, Any] | None = None, http=None):
        self.token_source = token_source
        self.settings = settings or DEFAULT_SETTINGS
        self.http = http or requests.Session()

    @property
    def api_base(self) -> str:
        api = self.settings["api"]
        return f"{api['url']}/drive/{api['version']}"

    @property
    def upload_base(self) -> str:
        api = self.settings["api"]
        return f"{api['url']}/upload/drive/{api['version']}"

    def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        json_body: Any = None,
        data: Any = None,
        timeout: float | None = None,
    ) -> ApiResponse:
        request_headers = {"Authorization": f"Bearer {self.token_source()}"}
        request_headers.update(headers or {})
        logger.debug(f"{method} {url}")
        try:
            resp = self.http.request(
                method,
                url,
                params=params,
                headers=request_headers,
                json=json_body,
                data=data,
                timeout=timeout,
                allow_redirects=False,
            )
        except requests.RequestException as e:
            logger.debug(f"{method} {url} failed: {e}")
            return ApiResponse(0, str(e))
        return ApiResponse(resp.status_code, resp.text, resp.headers)


def check_internet(http=None, timeout: float = 10) -> bool:
    """Return True if Google is reachable within timeout seconds."""
    http = http or requests.Session()
    try:
        http.head("https://www.google.com", timeout=timeout)
    except requests.RequestException as e:
        logger.debug(f"Internet check failed: {e}")
        return False
    return True


def escape_query_value(value: str) -> str:
    """Escape a value for a single-quoted Drive query string."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def extract_id(value: str) -> str:
    """Extract a file or folder id from a Drive/Docs URL, or return value as is."""
    value = value.strip()
    if "drive.google.com" in value and "id=" in value:
        value = value.split("id=", 1)[1]
    elif ("drive.google.com" in value and "file/d/" in value) or (
        value.startswith("http") and "docs.google.com" in value and "/d/" in value
    ):
        value = value.split("/d/", 1)[1].split("/", 1)[0]
    elif "drive.google.com" in value and "folders" in value:
        value = value.split("/folders/", 1)[1]
    else:
        return value
    return value.split("?", 1)[0].split("&", 1)[0]


def drive_info(client: APIClient, file_id: str, fields: str) -> dict[str, Any]:
    """Fetch the given metadata fields of a file or folder."""
    resp = client.request(
        "GET",
        f"{client.api_base}/files/{file_id}",
        params={"fields": fields, **ALL_DRIVES},
    )
    info = resp.json()
    if not resp.ok or not info:
        raise MetadataError(f"Cannot fetch info for {file_id}", body=resp.body)
    return info


def create_folder(client: APIClient, name: str, parent_id: str) -> str:
    """Return the id of folder name under parent_id, creating it if missing."""
    query = (
        f"mimeType='{FOLDER_MIME_TYPE}' and name='{escape_query_value(name)}' "
        f"and trashed=false and '{parent_id}' in parents"
    )
    resp = client.request(
        "GET",
        f"{client.api_base}/files",
        params={"q": query, "fields": "files(id)", **ALL_DRIVES},
    )
    files = resp.json().get("files") or []
    if files and files[0].get("id"):
        return files[0]["id"]

    logger.info(f"Creating folder {name} in {parent_id}")
    resp = client.request(
        "POST",
        f"{client.api_base}/files",
        params={"fields": "id", "supportsAllDrives": "true"},
        json_body={"mimeType": FOLDER_MIME_TYPE, "name": name, "parents": [parent_id]},
    )
    folder_id = resp.json().get("id")
    if not folder_id:
        raise MetadataError(f"Cannot create folder {name}", body=resp.body)
    return folder_id


def ensure_root_folder(session: Session, client: APIClient, override: str | None = None) -> str:
    """Resolve the target folder id for this run.

    An explicit id or URL wins, then the account's stored root folder,
    then the Drive root. The stored root's name is fetched once and saved.
    """
    if override:
        return extract_id(override)

    creds = session.credentials
    folder_id = creds.root_folder or "root"
    if not creds.root_folder_name:
        info = drive_info(client, folder_id, "id,name")
        creds.root_folder, creds.root_folder_name = info.get("id", folder_id), info.get("name", "")
        session.registry.update(
            session.account,
            {ROOT_FOLDER: creds.root_folder, ROOT_FOLDER_NAME: creds.root_folder_name},
        )
    return creds.root_folder or folder_id


@dataclass
class RemoteFile:
    """The metadata of a remote file consulted for duplicate checks."""

    id: str
    name: str = ""
    mime_type: str = ""
    size: int | None = None
    md5: str | None = None

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "RemoteFile":
        if not data.get("id"):
            raise MetadataError("Response has no file id", body=json.dumps(data))
        size = data.get("size")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            mime_type=data.get("mimeType", ""),
            size=int(size) if size is not None else None,
            md5=data.get("md5Checksum"),
        )


@dataclass
class UploadResult:
    """Outcome of one upload or clone."""

    file: RemoteFile
    status: str
    bytes_sent: int = 0


CHECK_FIELDS = {"none": None, "size": "size", "md5": "md5Checksum"}


def find_existing_file(
    client: APIClient,
    name: str,
    folder_id: str,
    check_field: str | None = None,
    check_value: str | None = None,
) -> dict[str, Any] | None:
    """Find a file called name directly under folder_id.

    When check_field is given the file only matches if that field equals
    check_value.

    Raises:
        TransferError: if the search request gets no response
        MetadataError: if the search response cannot be understood
    """
    query = f"name='{escape_query_value(name)}' and '{folder_id}' in parents and trashed=false"
    fields = "id,name,mimeType" + (f",{check_field}" if check_field else "")
    resp = client.request(
        "GET",
        f"{client.api_base}/files",
        params={"q": query, "fields": f"files({fields})", **ALL_DRIVES},
    )
    if resp.status == 0:
        raise TransferError(f"Cannot check if {name} exists", body=resp.body)
    data = resp.json()
    if not resp.ok or "files" not in data:
        raise MetadataError(f"Cannot check if {name} exists", body=resp.body)

    for candidate in data["files"]:
        if not candidate.get("id"):
            continue
        if check_field and str(candidate.get(check_field)) != str(check_value):
            continue
        return candidate
    return None


def render_description(template: str, name: str, size: int, mime_type: str = "") -> str:
    return template.replace("%f", name).replace("%s", str(size)).replace("%m", mime_type)


# =============================================================================
# Upload Sessions
# =============================================================================


RESUMABLE_THRESHOLD = 1_000_000


class UploadSessionStore:
    """Resumable upload URIs on disk, one file per (name, folder, size)."""

    def __init__(self, directory: Path | None = None):
        self.directory = Path(directory) if directory else get_session_dir()

    def path_for(self, name: str, folder_id: str, size: int) -> Path:
        safe_name = name.replace("/", "_").replace(os.sep, "_")
        return self.directory / f"{safe_name}__::__{folder_id}__::__{size}"

    def load(self, name: str, folder_id: str, size: int) -> str | None:
        path = self.path_for(name, folder_id, size)
        if not path.exists():
            return None
        return path.read_text().strip() or None

    def save(self, name: str, folder_id: str, size: int, uri: str) -> bool:
        """Persist uri if the file is large enough to be worth resuming."""
        if size <= RESUMABLE_THRESHOLD:
            return False
        atomic_write_text(self.path_for(name, folder_id, size), uri + "\n")
        return True

    def remove(self, name: str, folder_id: str, size: int) -> None:
        path = self.path_for(name, folder_id, size)
        if path.exists():
            path.unlink()
            logger.debug(f"Removed upload session {path.name}")


# =============================================================================
# Upload Engine
# =============================================================================


_RANGE_RE = re.compile(r"bytes=0-(\d+)")


class UploadEngine:
    """Creates or updates one local file in a Drive folder.

    Interrupted uploads of large files are resumed from the last byte the
    server acknowledged.
    """

    def __init__(
        self,
        client: APIClient,
        sessions: UploadSessionStore | None = None,
        settings: dict[str, Any] | None = None,
        skip_duplicates: bool = False,
        check_mode: str = "none",
    ):
        if check_mode not in CHECK_FIELDS:
            raise ValueError(f"Unknown check mode: {check_mode}")
        self.client = client
        self.sessions = sessions or UploadSessionStore()
        self.settings = settings or DEFAULT_SETTINGS
        self.skip_duplicates = skip_duplicates
        self.check_mode = check_mode

    def _check_value(self, path: Path, size: int) -> tuple[str | None, str | None]:
        if self.check_mode == "size":
            return "size", str(size)
        if self.check_mode == "md5":
            return "md5Checksum", md5_file(path)
        return None, None

    def upload(self, path: Path, folder_id: str, job: str = "create") -> UploadResult:
        path = Path(path)
        name = path.name
        size = path.stat().st_size
        mime_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
        description = render_description(
            self.settings["upload"].get("description", ""), name, size, mime_type
        )

        method, url, status = "POST", f"{self.client.upload_base}/files", "uploaded"
        body: dict[str, Any] = {"mimeType": mime_type, "name": name, "parents": [folder_id]}

        if job == "update":
            check_field, check_value = self._check_value(path, size)
            existing = find_existing_file(self.client, name, folder_id, check_field, check_value)
            if existing:
                if self.skip_duplicates:
                    logger.info(f"{name} already exists, skipping")
                    return UploadResult(RemoteFile.from_json(existing), "skipped", 0)
                logger.info(f"Overwriting {name} ({existing['id']})")
                method = "PATCH"
                url = f"{self.client.upload_base}/files/{existing['id']}"
                body = {"mimeType": mime_type, "name": name, "addParents": [folder_id]}
                status = "updated"

        if description:
            body["description"] = description

        return self._transfer(path, name, folder_id, size, mime_type, method, url, body, status)

    def _transfer(
        self,
        path: Path,
        name: str,
        folder_id: str,
        size: int,
        mime_type: str,
        method: str,
        url: str,
        body: dict[str, Any],
        status: str,
    ) -> UploadResult:
        key = (name, folder_id, size)
        uri = self.sessions.load(*key)
        if uri:
            probe = self.client.request("PUT", uri, headers={"Content-Length": "0"})
            if probe.status == 308:
                last_byte = self._last_received_byte(uri, size)
                if last_byte:
                    start = last_byte + 1
                    logger.info(f"Resuming {name} from byte {start}")
                    remote = self._send(uri, path, mime_type, start, size)
                    self.sessions.remove(*key)
                    return UploadResult(remote, "resumed", size - start)
                logger.debug(f"Session for {name} has no bytes yet, starting over")
            elif probe.status in (200, 201):
                logger.info(f"{name} was already uploaded by a previous session")
                self.sessions.remove(*key)
                return UploadResult(RemoteFile.from_json(probe.json()), "completed", 0)
            else:
                logger.debug(f"Session for {name} is dead (status {probe.status})")
            self.sessions.remove(*key)

        return self._full_upload(path, key, mime_type, method, url, body, status)

    def _last_received_byte(self, uri: str, size: int) -> int | None:
        resp = self.client.request(
            "PUT", uri, headers={"Content-Length": "0", "Content-Range": f"bytes */{size}"}
        )
        match = _RANGE_RE.search(resp.headers.get("Range", "") or "")
        return int(match.group(1)) if match else None

    def _full_upload(
        self,
        path: Path,
        key: tuple[str, str, int],
        mime_type: str,
        method: str,
        url: str,
        body: dict[str, Any],
        status: str,
    ) -> UploadResult:
        name, _, size = key
        logger.debug(f"Starting fresh upload of {name} ({size} bytes)")
        resp = self.client.request(
            method,
            url,
            params={"uploadType": "resumable", "fields": FILE_FIELDS, **ALL_DRIVES},
            headers={
                "Content-Type": "application/json; charset=UTF-8",
                "X-Upload-Content-Type": mime_type,
                "X-Upload-Content-Length": str(size),
            },
            json_body=body,
        )
        uri = resp.headers.get("Location", "") if resp.ok else ""
        if "upload_id" not in uri:
            raise TransferError(
                f"Cannot create upload session for {name}", body=resp.body, status=resp.status
            )

        if self.sessions.save(*key, uri):
            logger.debug(f"Saved upload session for {name}")
        remote = self._send(uri, path, mime_type, 0, size)
        self.sessions.remove(*key)
        return UploadResult(remote, status, size)

    def _send(self, uri: str, path: Path, mime_type: str, start: int, size: int) -> RemoteFile:
        # requests speaks HTTP/1.1 only, which resuming needs
        headers = {"Content-Type": mime_type, "Content-Length": str(size - start)}
        if start:
            headers["Content-Range"] = f"bytes {start}-{size - 1}/{size}"
        with path.open("rb") as f:
            f.seek(start)
            resp = self.client.request("PUT", uri, headers=headers, data=f)
        if resp.status not in (200, 201):
            raise TransferError(
                f"Upload of {path.name} failed with status {resp.status}",
                body=resp.body,
                status=resp.status,
            )
        return RemoteFile.from_json(resp.json())


# =============================================================================
# Clone Engine
# =============================================================================


class CloneEngine:
    """Copies an existing Drive file into a folder without downloading it."""

    def __init__(
        self,
        client: APIClient,
        settings: dict[str, Any] | None = None,
        skip_duplicates: bool = False,
        check_mode: str = "none",
    ):
        if check_mode not in CHECK_FIELDS:
            raise ValueError(f"Unknown check mode: {check_mode}")
        self.client = client
        self.settings = settings or DEFAULT_SETTINGS
        self.skip_duplicates = skip_duplicates
        self.check_mode = check_mode

    def clone(self, source_id: str, folder_id: str, job: str = "create") -> UploadResult:
        source = drive_info(self.client, source_id, FILE_FIELDS)
        name = source.get("name", "")
        size = int(source.get("size") or 0)
        description = render_description(
            self.settings["upload"].get("description", ""), name, size
        )

        body: dict[str, Any] = {"parents": [folder_id]}
        status, stale_id = "cloned", None

        if job == "update":
            check_field = CHECK_FIELDS[self.check_mode]
            check_value = source.get(check_field) if check_field else None
            existing = find_existing_file(self.client, name, folder_id, check_field, check_value)
            if existing:
                if self.skip_duplicates:
                    logger.info(f"{name} already exists, skipping")
                    return UploadResult(RemoteFile.from_json(existing), "skipped", 0)
                logger.info(f"Overwriting {name} ({existing['id']})")
                info = drive_info(self.client, existing["id"], "parents,writersCanShare")
                body = {k: info[k] for k in ("parents", "writersCanShare") if k in info}
                if existing["id"] != source_id:
                    stale_id, status = existing["id"], "updated"

        if description:
            body["description"] = description
        resp = self.client.request(
            "POST",
            f"{self.client.api_base}/files/{source_id}/copy",
            params={"fields": FILE_FIELDS, **ALL_DRIVES},
            headers={"Content-Type": "application/json; charset=UTF-8"},
            json_body=body,
        )
        if not resp.ok:
            raise TransferError(f"Cannot clone {name}", body=resp.body, status=resp.status)
        remote = RemoteFile.from_json(resp.json())

        if stale_id:
            deleted = self.client.request(
                "DELETE", f"{self.client.api_base}/files/{stale_id}", params=ALL_DRIVES
            )
            if not deleted.ok:
                logger.warning(f"Could not delete replaced file {stale_id}: {deleted.body}")
        return UploadResult(remote, status, 0)


# =============================================================================
# Sharing
# =============================================================================


SHARE_ROLES = ("reader", "commenter", "writer")


class ShareManager:
    """Grants permissions on Drive files and folders."""

    def __init__(self, client: APIClient):
        self.client = client

    def share(self, file_id: str, role: str = "reader", email: str | None = None) -> str:
        """Share file_id with email, or with anyone holding the link.

        Returns:
            The new permission id
        """
        body = {"role": role, "type": "user" if email else "anyone"}
        if email:
            body["emailAddress"] = email
        resp = self.client.request(
            "POST",
            f"{self.client.api_base}/files/{file_id}/permissions",
            params=ALL_DRIVES,
            headers={"Content-Type": "application/json; charset=UTF-8"},
            json_body=body,
        )
        permission_id = resp.json().get("id")
        if not permission_id:
            print("Error: Cannot Share.", file=sys.stderr)
            print(resp.body, file=sys.stderr)
            raise ShareError(f"Cannot share {file_id}", body=resp.body)
        logger.info(f"Shared {file_id} as {role} with {email or 'anyone'}")
        return permission_id


# =============================================================================
# Commands
# =============================================================================


def _report(message: str, quiet: bool, color: str | None = None) -> None:
    if quiet:
        return
    print(colorize(message, color) if color else message)


def _print_result(result: UploadResult, quiet: bool) -> None:
    remote = result.file
    size = format_bytes(remote.size) if remote.size is not None else "?"
    _report(f"{remote.name} | {size} | {result.status.capitalize()}", quiet, "GREEN")
    _report(f"ID: {remote.id}", quiet)


def _job(args) -> str:
    return "update" if args.overwrite or args.skip_duplicates else "create"


def _share_after(client: APIClient, args, file_id: str) -> bool:
    """Share a transferred file when asked to; False if sharing failed."""
    if args.share is None:
        return True
    try:
        ShareManager(client).share(file_id, args.role, args.share or None)
    except ShareError as e:
        die(str(e))
        return False
    return True


def _summarize(verb: str, failed: list[str], share_failed: list[str]) -> int:
    if failed:
        print(f"Failed to {verb} {len(failed)} files", file=sys.stderr)
    if share_failed:
        print(f"Failed to share {len(share_failed)} files", file=sys.stderr)
    return 1 if failed or share_failed else 0


def cmd_upload(session: Session, client: APIClient, args) -> int:
    """Upload each file given on the command line."""
    folder_id = ensure_root_folder(session, client, args.folder)
    engine = UploadEngine(
        client,
        UploadSessionStore(),
        session.settings,
        skip_duplicates=args.skip_duplicates,
        check_mode=args.check_mode,
    )

    failed = []
    share_failed = []
    for path_str in args.files:
        path = Path(path_str)
        if not path.is_file():
            die(f"File not found: {path_str}")
            failed.append(path_str)
            continue
        try:
            result = engine.upload(path, folder_id, _job(args))
        except GUploadError as e:
            if e.body:
                print(e.body, file=sys.stderr)
            die(f"{path.name}: {e}")
            failed.append(path_str)
            continue
        _print_result(result, args.quiet)
        if not _share_after(client, args, result.file.id):
            share_failed.append(path_str)

    return _summarize("upload", failed, share_failed)


def cmd_clone(session: Session, client: APIClient, args) -> int:
    """Clone each Drive id or URL given on the command line."""
    folder_id = ensure_root_folder(session, client, args.folder)
    engine = CloneEngine(
        client,
        session.settings,
        skip_duplicates=args.skip_duplicates,
        check_mode=args.check_mode,
    )

    failed = []
    share_failed = []
    for source in args.sources:
        try:
            result = engine.clone(extract_id(source), folder_id, _job(args))
        except GUploadError as e:
            if e.body:
                print(e.body, file=sys.stderr)
            die(f"{source}: {e}")
            failed.append(source)
            continue
        _print_result(result, args.quiet)
        if not _share_after(client, args, result.file.id):
            share_failed.append(source)

    return _summarize("clone", failed, share_failed)


def cmd_share(client: APIClient, args) -> int:
    try:
        permission_id = ShareManager(client).share(extract_id(args.id), args.role, args.email)
    except ShareError as e:
        return die(str(e))
    _report(f"Shared ({permission_id})", args.quiet, "GREEN")
    return 0


def cmd_account(args, prompter: Prompter) -> int:
    """List, delete or set default accounts without validating credentials."""
    registry = AccountRegistry(ConfigStore(get_config_path()), prompter)
    registry.migrate_legacy()

    if args.account_command == "list":
        accounts = registry.list_accounts()
        if not accounts:
            print("No accounts configured yet.", file=sys.stderr)
            return 0
        default = registry.default()
        for index, name in accounts:
            marker = " (default)" if name == default else ""
            print(f"{index}. {name}{marker}")
        return 0

    if args.account_command == "delete":
        try:
            registry.delete(args.name)
        except NotFoundError as e:
            return die(str(e), hint="Run 'gupload account list' to see accounts")
        _report(f"Successfully deleted account ({args.name}) from config.", args.quiet)
        return 0

    if args.account_command == "default":
        if not registry.exists(args.name):
            return die(f"No such account ({args.name}) exists")
        registry.set_default(args.name)
        _report(f"Default account set to {args.name}", args.quiet)
        return 0

    return 0


def _add_transfer_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-f", "--folder", help="Target folder id or URL")
    parser.add_argument(
        "-o", "--overwrite", action="store_true", help="Overwrite a file with the same name"
    )
    parser.add_argument(
        "-d",
        "--skip-duplicates",
        action="store_true",
        help="Skip if a file with the same name already exists",
    )
    parser.add_argument(
        "-m",
        "--check-mode",
        choices=list(CHECK_FIELDS),
        default=None,
        help="Extra check for existing files: size or md5",
    )
    parser.add_argument(
        "-s",
        "--share",
        nargs="?",
        const="",
        default=None,
        metavar="EMAIL",
        help="Share after upload, with EMAIL or anyone with the link",
    )
    parser.add_argument("--role", choices=SHARE_ROLES, default="reader", help="Share role")


def main(argv: list[str] | None = None, prompter: Prompter | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="gupload", description="Upload, clone and share Google Drive files", exit_on_error=False
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use -v for DEBUG, -vv for TRACE)",
    )
    parser.add_argument("-q", "--quiet", action="store_true", help="Only print errors")
    parser.add_argument("-a", "--account", help="Use this account for the run")
    parser.add_argument("-c", "--create-account", metavar="NAME", help="Create a new account")
    parser.add_argument(
        "-D",
        "--no-background",
        action="store_true",
        help="Do not renew the access token in the background",
    )
    parser.add_argument(
        "--skip-internet-check", action="store_true", help="Do not check connectivity first"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    upload_parser = subparsers.add_parser("upload", help="Upload local files")
    upload_parser.add_argument("files", nargs="+", help="Files to upload")
    _add_transfer_options(upload_parser)

    clone_parser = subparsers.add_parser("clone", help="Copy Drive files by id or URL")
    clone_parser.add_argument("sources", nargs="+", help="File ids or URLs")
    _add_transfer_options(clone_parser)

    share_parser = subparsers.add_parser("share", help="Share a Drive file or folder")
    share_parser.add_argument("id", help="File id or URL")
    share_parser.add_argument("--email", help="Share with this user instead of anyone")
    share_parser.add_argument("--role", choices=SHARE_ROLES, default="reader", help="Share role")

    account_parser = subparsers.add_parser("account", help="Manage accounts")
    account_subparsers = account_parser.add_subparsers(
        dest="account_command", help="Account subcommands"
    )
    account_subparsers.add_parser("list", help="List configured accounts")
    delete_parser = account_subparsers.add_parser("delete", help="Delete an account")
    delete_parser.add_argument("name")
    default_parser = account_subparsers.add_parser("default", help="Set the default account")
    default_parser.add_argument("name")

    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # argparse calls sys.exit() on --help or errors
        return e.code if isinstance(e.code, int) else 1
    except Exception:
        return 1

    setup_logging(verbosity=args.verbose, log_file=True)

    if args.command is None:
        parser.print_help()
        return 0

    prompter = prompter or Prompter()
    warn_if_config_exposed(get_config_path())

    if args.command == "account":
        if args.account_command is None:
            account_parser.print_help()
            return 0
        try:
            return cmd_account(args, prompter)
        except GUploadError as e:
            return die(str(e))

    if not args.skip_internet_check and not check_internet():
        return die("Internet connection not available")

    try:
        settings = load_settings()
    except (OSError, ValueError) as e:
        return die(f"Cannot read settings: {e}")

    if args.command in ("upload", "clone"):
        if args.check_mode is None:
            args.check_mode = settings["upload"].get("check_mode", "none")
        if args.check_mode not in CHECK_FIELDS:
            return die(f"Unknown check mode in config.toml: {args.check_mode}")
        args.skip_duplicates = args.skip_duplicates or bool(
            settings["upload"].get("skip_duplicates")
        )

    try:
        session = open_session(
            settings,
            prompter,
            account=args.account,
            new_account=args.create_account,
            background=not args.no_background,
        )
    except NonInteractiveError as e:
        return die(str(e), hint="Run gupload in a terminal once to set up the account")
    except GUploadError as e:
        return die(str(e))

    client = APIClient(session.access_token, settings)
    try:
        if args.command == "upload":
            return cmd_upload(session, client, args)
        elif args.command == "clone":
            return cmd_clone(session, client, args)
        elif args.command == "share":
            return cmd_share(client, args)
    except GUploadError as e:
        return die(str(e))
    finally:
        session.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
