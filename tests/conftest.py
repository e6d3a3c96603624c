"""Test fixtures and utilities for gupload."""

import json
import logging
from pathlib import Path
from typing import Any, Callable

import pytest
import requests
from requests.structures import CaseInsensitiveDict

import gupload


NOW = 1_700_000_000

API = "https://www.googleapis.com/drive/v3"
UPLOAD_API = "https://www.googleapis.com/upload/drive/v3"
TOKEN_URL = "https://accounts.google.com/o/oauth2/token"

CLIENT_ID = "123456789012-" + "a1B2" * 8 + ".apps.googleusercontent.com"
CLIENT_SECRET = "GOCSPX-client_secret"
REFRESH_TOKEN = "1//0gRefresh-Token_value"
ACCESS_TOKEN = "ya29.a0Access-Token_value"
NEW_ACCESS_TOKEN = "ya29.a0Renewed-Token_value"
AUTH_CODE = "4/0AXauthorization-code"


class FakeResponse:
    """Minimal requests.Response stand-in."""

    def __init__(self, status_code: int = 200, body: Any = "", headers: dict | None = None):
        self.status_code = status_code
        self.text = body if isinstance(body, str) else json.dumps(body)
        self.headers = CaseInsensitiveDict(headers or {})


class FakeHTTP:
    """Stand-in for requests.Session that replays queued responses.

    Usage:
        http = FakeHTTP()
        http.add("GET", f"{API}/files", FakeResponse(200, {"files": []}))
        http.add("PUT", uri, FakeResponse(308), FakeResponse(200, {...}))

    Responses for a route are consumed in order; the last one repeats.
    A response may be an exception instance, which is raised instead.
    """

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.routes: dict[tuple[str, str], list[Any]] = {}

    def add(self, method: str, url: str, *responses: Any) -> None:
        self.routes.setdefault((method, url), []).extend(responses)

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        data = kwargs.get("data")
        if hasattr(data, "read"):
            kwargs["data"] = data.read()
        self.calls.append({"method": method, "url": url, **kwargs})

        queue = self.routes.get((method, url))
        if not queue:
            raise AssertionError(f"Unexpected request: {method} {url}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self.request("POST", url, **kwargs)

    def head(self, url: str, **kwargs: Any) -> FakeResponse:
        return self.request("HEAD", url, **kwargs)

    def calls_to(self, method: str, url: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["method"] == method and c["url"] == url]


class ScriptedPrompter(gupload.Prompter):
    """Prompter that replays answers instead of reading a terminal."""

    def __init__(self, answers: list[str] | None = None, interactive: bool = True):
        super().__init__(interactive=interactive)
        self.answers = list(answers or [])
        self.questions: list[str] = []
        self.messages: list[str] = []

    def ask(self, message: str) -> str:
        self.questions.append(message)
        if not self.interactive or not self.answers:
            raise gupload.NonInteractiveError(f"No scripted answer for: {message}")
        return self.answers.pop(0)

    def say(self, message: str) -> None:
        self.messages.append(message)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: Any) -> Path:
    """Point every config, session and log path into tmp_path."""
    user_config = tmp_path / "user_config"
    user_config.mkdir()
    monkeypatch.setenv("GUPLOAD_USER_CONFIG", str(user_config))
    monkeypatch.setenv("GUPLOAD_CONFIG", str(user_config / "gupload.conf"))
    monkeypatch.setenv("GUPLOAD_SESSION_DIR", str(tmp_path / "sessions"))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("USERPROFILE", str(tmp_path / "home"))
    return user_config


@pytest.fixture(autouse=True)
def block_network(monkeypatch: Any) -> None:
    """Fail any real HTTP request instead of touching the network."""

    def guarded_request(self: Any, method: str, url: str, *args: Any, **kwargs: Any) -> Any:
        raise requests.ConnectionError(f"Network disabled in tests: {method} {url}")

    monkeypatch.setattr(requests.Session, "request", guarded_request)


@pytest.fixture(autouse=True)
def reset_logger() -> Any:
    """Close handlers installed by setup_logging() during a test."""
    yield
    for handler in list(gupload.logger.handlers):
        handler.close()
    gupload.logger.handlers = []
    gupload.logger.setLevel(logging.NOTSET)


@pytest.fixture
def store(tmp_path: Path) -> gupload.ConfigStore:
    return gupload.ConfigStore(tmp_path / "gupload.conf")


@pytest.fixture
def http() -> FakeHTTP:
    return FakeHTTP()


@pytest.fixture
def prompter() -> Callable[..., ScriptedPrompter]:
    """Build a ScriptedPrompter.

    Usage:
        def test_something(prompter):
            p = prompter(["answer1", "answer2"])
            p = prompter(interactive=False)
    """

    def _create(answers: list[str] | None = None, interactive: bool = True) -> ScriptedPrompter:
        return ScriptedPrompter(answers, interactive=interactive)

    return _create


@pytest.fixture
def add_account(store: gupload.ConfigStore) -> Callable[..., None]:
    """Write a fully configured account into the store."""

    def _add(name: str, expiry: int = NOW + 3600, **overrides: str) -> None:
        values = {
            gupload.CLIENT_ID: CLIENT_ID,
            gupload.CLIENT_SECRET: CLIENT_SECRET,
            gupload.REFRESH_TOKEN: REFRESH_TOKEN,
            gupload.ACCESS_TOKEN: ACCESS_TOKEN,
            gupload.ACCESS_TOKEN_EXPIRY: str(expiry),
        }
        values.update(overrides)
        store.update({gupload.account_key(name, k): v for k, v in values.items()})

    return _add


@pytest.fixture
def client(http: FakeHTTP) -> gupload.APIClient:
    return gupload.APIClient(lambda: ACCESS_TOKEN, http=http)


def token_response(access_token: str = NEW_ACCESS_TOKEN, expires_in: int = 3599, **extra: Any) -> FakeResponse:
    return FakeResponse(200, {"access_token": access_token, "expires_in": expires_in, **extra})
