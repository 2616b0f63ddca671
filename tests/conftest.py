from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional, Union

import httpx
import pytest

from unitedwerise.config import Settings, load_settings
from unitedwerise.db import create_user, init_db
from unitedwerise.rate_limiter import reset_rate_limiter
from unitedwerise.services import Services, build_services

FIXED_NOW = datetime(2025, 3, 12, 15, 30, tzinfo=timezone.utc)

# Variables read by service constructors; cleared so a developer's shell never leaks into a test
EXTERNAL_ENV = (
    "AZURE_OPENAI_ENDPOINT",
    "AZURE_OPENAI_API_KEY",
    "OPENAI_API_KEY",
    "NEWS_API_KEY",
    "GEOCODIO_API_KEY",
    "AZURE_CONTENT_SAFETY_ENDPOINT",
    "AZURE_CONTENT_SAFETY_KEY",
    "SLACK_WEBHOOK_URL",
    "UWR_ADMIN_API_KEY",
    "SENTRY_DSN",
    "UWR_CONFIG",
    "UWR_DB_PATH",
    "UWR_LLM_PROVIDER",
    "UWR_LLM_MODEL",
    "UWR_EMBEDDING_PROVIDER",
    "RATE_LIMITING_ENABLED",
)

Reply = Union[None, str, Dict[str, Any], Callable[[str, Optional[str]], Any]]


class FakeLLM:
    """Drop-in for LLMClient that answers from canned replies.

    A reply may be a fixed value or a callable receiving ``(prompt, system)``.
    """

    provider = "fake"

    def __init__(self, json_reply: Reply = None, text_reply: Reply = None, enabled: bool = True) -> None:
        self.enabled = enabled
        self.json_reply = json_reply
        self.text_reply = text_reply
        self.calls: List[Dict[str, Any]] = []

    @staticmethod
    def _resolve(reply: Reply, prompt: str, system: Optional[str]) -> Any:
        if callable(reply):
            return reply(prompt, system)
        return reply

    def ask(self, prompt: str, system: Optional[str] = None, **kwargs: Any) -> Optional[str]:
        self.calls.append({"prompt": prompt, "system": system, **kwargs})
        return self._resolve(self.text_reply, prompt, system)

    def ask_json(self, prompt: str, system: Optional[str] = None, **kwargs: Any) -> Optional[Dict[str, Any]]:
        self.calls.append({"prompt": prompt, "system": system, **kwargs})
        return self._resolve(self.json_reply, prompt, system)


class FakeResponse:
    def __init__(self, status_code: int = 200, data: Any = None) -> None:
        self.status_code = status_code
        self._data = data if data is not None else {}
        self.headers: Dict[str, str] = {}

    def json(self) -> Any:
        return self._data

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise httpx.HTTPError(f"status {self.status_code}")


class FakeHTTP:
    """Replacement for ``httpx.Client`` that records requests and plays back responses."""

    def __init__(self, responses: List[FakeResponse]) -> None:
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []

    def _next(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.requests.append({"method": method, "url": url, **kwargs})
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    def factory(self, *args: Any, **kwargs: Any) -> "FakeHTTP._Client":
        return FakeHTTP._Client(self)

    class _Client:
        def __init__(self, owner: "FakeHTTP") -> None:
            self.owner = owner

        def __enter__(self) -> "FakeHTTP._Client":
            return self

        def __exit__(self, *exc: Any) -> None:
            return None

        def get(self, url: str, **kwargs: Any) -> FakeResponse:
            return self.owner._next("GET", url, **kwargs)

        def post(self, url: str, **kwargs: Any) -> FakeResponse:
            return self.owner._next("POST", url, **kwargs)

        def close(self) -> None:
            return None


@pytest.fixture()
def fake_http(monkeypatch: pytest.MonkeyPatch) -> Callable[..., FakeHTTP]:
    """Patch ``httpx.Client`` and ``time.sleep``; returns a function taking the responses to play."""
    import time

    monkeypatch.setattr(time, "sleep", lambda _seconds: None)

    def install(*responses: FakeResponse) -> FakeHTTP:
        fake = FakeHTTP(list(responses) or [FakeResponse()])
        monkeypatch.setattr(httpx, "Client", fake.factory)
        return fake

    return install


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    for name in EXTERNAL_ENV:
        monkeypatch.delenv(name, raising=False)
    reset_rate_limiter()
    yield
    reset_rate_limiter()


@pytest.fixture(scope="session")
def test_settings_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """Create an isolated settings.yaml for tests pointing at temp DB."""

    tmp_dir = tmp_path_factory.mktemp("settings")
    settings_path = tmp_dir / "settings.yaml"
    db_path = tmp_dir / "app.db"
    settings_yaml = f"""
app:
  database_path: "{db_path}"
  llm:
    provider: "dummy"
    model: "test-model"
    temperature: 0.2
  embeddings:
    provider: "hash"
    dimension: 256
  rate_limit:
    enabled: false
  topics:
    min_posts_per_topic: 5
    similarity_threshold: 0.7
"""
    settings_path.write_text(settings_yaml.strip(), encoding="utf-8")
    return settings_path


@pytest.fixture()
def settings(test_settings_path: Path, tmp_path: Path) -> Settings:
    """Load settings referencing a temporary database path."""

    s = load_settings(str(test_settings_path))
    s.app.database_path = str(tmp_path / "app.db")
    return s


@pytest.fixture()
def db_path(settings: Settings) -> Generator[str, None, None]:
    """Yield a database path after init + migrations."""

    path = settings.app.database_path
    init_db(path)
    try:
        yield path
    finally:
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(path + suffix):
                os.remove(path + suffix)


@pytest.fixture()
def users(db_path: str) -> Dict[str, Dict[str, Any]]:
    return {
        "alice": create_user(db_path, "alice", user_id="u-alice", email="alice@example.com", state="CA", city="Sacramento"),
        "bob": create_user(db_path, "bob", user_id="u-bob", email="bob@example.com", state="CA", city="Fresno"),
        "carol": create_user(db_path, "carol", user_id="u-carol", state="TX", city="Austin", is_moderator=True),
        "admin": create_user(db_path, "admin", user_id="u-admin", is_admin=True, is_moderator=True),
    }


@pytest.fixture()
def services(settings: Settings, db_path: str) -> Services:
    return build_services(settings)
