"""Shared test fixtures for plannersync.

The remote side is FakeContentsAPI: an in-memory stand-in for the
GitHub/Gitee contents endpoint, passed to the transport in place of a
requests.Session. It enforces sha-based optimistic concurrency the
way the real providers do and records every request it serves.
"""

from __future__ import annotations

import base64
import hashlib
import json
from collections import defaultdict, deque
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote

import pytest
import requests

from plannersync.storage import LocalStore
from plannersync.sync.engine import SyncEngine
from plannersync.sync.models import ConnectionProfile, ProviderKind
from plannersync.sync.transport import create_transport

_REASONS = {
    200: "OK", 201: "Created", 400: "Bad Request", 401: "Unauthorized",
    404: "Not Found", 405: "Method Not Allowed", 409: "Conflict",
    422: "Unprocessable Entity", 500: "Internal Server Error",
}


class FakeResponse:
    """The slice of requests.Response the transport reads."""

    def __init__(self, status_code: int, payload: Any = None, text: Optional[str] = None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self.reason = _REASONS.get(status_code, "")

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


def blob_sha(text: str) -> str:
    data = text.encode("utf-8")
    return hashlib.sha1(b"blob %d\0" % len(data) + data).hexdigest()


def b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


class FakeContentsAPI:
    """In-memory repository contents endpoint.

    Args:
        provider: "github" or "gitee"; picks the permission field name
            and whether POST creation exists.
        allow_post_create: Gitee only. Whether POST creates files.
        allow_plain_put_create: Whether a sha-less PUT creates files.
        allow_empty_sha_create: Whether PUT with ``sha: ""`` creates files.
    """

    def __init__(
        self,
        provider: str = "github",
        owner: str = "alice",
        repo: str = "planner",
        allow_post_create: bool = True,
        allow_plain_put_create: bool = True,
        allow_empty_sha_create: bool = False,
    ) -> None:
        self.provider = provider
        self.owner = owner
        self.repo = repo
        self.allow_post_create = allow_post_create
        self.allow_plain_put_create = allow_plain_put_create
        self.allow_empty_sha_create = allow_empty_sha_create

        self.files: dict[str, tuple[str, str]] = {}
        self.dirs: set[str] = set()
        self.repo_status = 200
        self.permissions: dict[str, bool] = {"admin": False, "push": True, "pull": True}
        self.calls: list[tuple[str, str]] = []
        self.requests: list[dict[str, Any]] = []
        self._failures: dict[tuple[str, str], deque] = defaultdict(deque)

    # -- test helpers -------------------------------------------------------

    def seed(self, path: str, text: str) -> str:
        """Place a file without recording a call. Returns its sha."""
        sha = blob_sha(text)
        self.files[path] = (text, sha)
        return sha

    def text_of(self, path: str) -> str:
        return self.files[path][0]

    def sha_of(self, path: str) -> str:
        return self.files[path][1]

    def fail_next(self, method: str, path: str, status: int = 500,
                  exc: Optional[Exception] = None) -> None:
        """Make the next ``method`` on ``path`` fail once."""
        self._failures[(method, path)].append(exc or status)

    def count(self, method: Optional[str] = None, path: Optional[str] = None) -> int:
        return sum(
            1 for m, p in self.calls
            if (method is None or m == method) and (path is None or p == path)
        )

    def reset_calls(self) -> None:
        self.calls.clear()
        self.requests.clear()

    # -- session interface --------------------------------------------------

    def request(self, method, url, headers=None, params=None, json=None, timeout=None):
        rest = url[url.index("/repos/") + 1:]
        parts = rest.split("/", 3)
        if len(parts) == 3:
            path = "<repo>"
        else:
            suffix = parts[3]
            path = unquote(suffix[len("contents/"):]) if suffix.startswith("contents/") else ""

        self.calls.append((method, path))
        self.requests.append(
            {"method": method, "path": path, "body": json, "headers": headers, "params": params}
        )

        queued = self._failures.get((method, path))
        if queued:
            failure = queued.popleft()
            if isinstance(failure, Exception):
                raise failure
            return FakeResponse(failure, {"message": "injected failure"})

        if path == "<repo>":
            return self._repo()
        handler = getattr(self, f"_{method.lower()}")
        return handler(path, json or {})

    def _repo(self) -> FakeResponse:
        if self.repo_status != 200:
            return FakeResponse(self.repo_status, {"message": "nope"})
        field = "permissions" if self.provider == "github" else "permission"
        return FakeResponse(200, {
            "full_name": f"{self.owner}/{self.repo}",
            field: dict(self.permissions),
        })

    def _entry(self, path: str) -> dict[str, Any]:
        text, sha = self.files[path]
        return {
            "type": "file",
            "name": path.rsplit("/", 1)[-1],
            "path": path,
            "sha": sha,
            "size": len(text.encode("utf-8")),
            "download_url": f"https://raw.example/{path}",
        }

    def _get(self, path: str, body: dict) -> FakeResponse:
        if path in self.files:
            entry = self._entry(path)
            encoded = b64(self.text_of(path))
            # Providers wrap base64 at 60 columns.
            entry["content"] = "\n".join(
                encoded[i:i + 60] for i in range(0, len(encoded), 60)
            )
            entry["encoding"] = "base64"
            return FakeResponse(200, entry)

        prefix = f"{path}/" if path else ""
        children = [p for p in self.files if p.startswith(prefix) and "/" not in p[len(prefix):]]
        subdirs = [d for d in self.dirs if d.startswith(prefix) and "/" not in d[len(prefix):]]
        if path == "" or children or subdirs:
            listing = [self._entry(p) for p in sorted(children)]
            listing += [
                {"type": "dir", "name": d, "path": d, "sha": blob_sha(d), "size": 0}
                for d in sorted(subdirs)
            ]
            return FakeResponse(200, listing)
        return FakeResponse(404, {"message": "Not Found"})

    def _write(self, path: str, body: dict, status: int) -> FakeResponse:
        text = base64.b64decode(body.get("content", "")).decode("utf-8")
        sha = self.seed(path, text)
        entry = self._entry(path)
        return FakeResponse(status, {"content": entry, "commit": {"sha": blob_sha(path + sha)}})

    def _put(self, path: str, body: dict) -> FakeResponse:
        sha = body.get("sha")
        if path in self.files:
            if not sha:
                return FakeResponse(422, {"message": "Invalid request. \"sha\" wasn't supplied."})
            if sha != self.sha_of(path):
                return FakeResponse(409, {"message": f"{path} does not match {sha}"})
            return self._write(path, body, 200)

        if sha == "":
            if self.allow_empty_sha_create:
                return self._write(path, body, 201)
            return FakeResponse(400, {"message": "sha is required"})
        if sha:
            return FakeResponse(409, {"message": f"{path} does not match {sha}"})
        if not self.allow_plain_put_create:
            return FakeResponse(400, {"message": "file does not exist"})
        return self._write(path, body, 201)

    def _post(self, path: str, body: dict) -> FakeResponse:
        if self.provider != "gitee" or not self.allow_post_create:
            return FakeResponse(405, {"message": "Method Not Allowed"})
        if path in self.files:
            return FakeResponse(400, {"message": "file already exists"})
        return self._write(path, body, 201)

    def _delete(self, path: str, body: dict) -> FakeResponse:
        if path not in self.files:
            return FakeResponse(404, {"message": "Not Found"})
        if body.get("sha") != self.sha_of(path):
            return FakeResponse(409, {"message": "sha does not match"})
        del self.files[path]
        return FakeResponse(200, {"commit": {}})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_home(tmp_path: Path) -> Path:
    """Provide a temporary sync home directory."""
    home = tmp_path / ".plannersync"
    home.mkdir()
    return home


@pytest.fixture
def store(sync_home: Path) -> LocalStore:
    return LocalStore.in_home(sync_home)


@pytest.fixture
def github_api() -> FakeContentsAPI:
    return FakeContentsAPI("github")


@pytest.fixture
def gitee_api() -> FakeContentsAPI:
    return FakeContentsAPI("gitee")


def profile_for(api: FakeContentsAPI) -> ConnectionProfile:
    return ConnectionProfile(
        provider=ProviderKind(api.provider),
        token="test-token-123456",
        owner=api.owner,
        repo=api.repo,
    )


@pytest.fixture
def make_engine(sync_home: Path, store: LocalStore):
    """Build a connected SyncEngine talking to a fake API."""

    def _make(api: FakeContentsAPI, connect: bool = True) -> SyncEngine:
        engine = SyncEngine(
            sync_home,
            store=store,
            transport_factory=lambda profile, **kw: create_transport(profile, session=api, **kw),
        )
        if connect:
            check = engine.connect(profile_for(api))
            assert check.ok, check.message
            api.reset_calls()
        return engine

    return _make


@pytest.fixture
def engine(make_engine, github_api) -> SyncEngine:
    return make_engine(github_api)


@pytest.fixture
def planner_data(store: LocalStore) -> LocalStore:
    """Populate every module's local keys with realistic data."""
    store.write_json("tasks", [
        {"id": "t1", "title": "Write report", "completed": False, "groupId": "g1"},
        {"id": "t2", "title": "Buy milk", "completed": True, "groupId": None},
    ])
    store.write_json("taskGroups", [{"id": "g1", "name": "Work", "color": "#3b82f6"}])
    store.write_json("habits", [
        {"id": "h1", "name": "Read", "completedDates": ["2026-10-01", "2026-10-02"]},
    ])
    store.write_json("bookmarks-data", {
        "bookmarks": [{"id": "b1", "title": "Docs", "url": "https://example.com", "groupId": "bg1"}],
        "groups": [{"id": "bg1", "name": "Reference"}],
    })
    store.write_json("calendar-events", [
        {"id": "e1", "title": "Dentist", "date": "2026-10-20", "time": "09:30"},
    ])
    return store


@pytest.fixture
def network_down() -> requests.ConnectionError:
    return requests.ConnectionError("network unreachable")
