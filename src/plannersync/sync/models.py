"""
Sync data models -- connection profile, remote envelope, and status.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from . import hashing

SYNC_PREFIX = "sync-"

AUX_SETTING_KEYS = ["app-theme", "app-searchEngine", "app-sidebarCollapsed"]


class ProviderKind(str, Enum):
    """Supported Git hosting providers."""

    GITHUB = "github"
    GITEE = "gitee"

    @property
    def default_branch(self) -> str:
        return "master" if self is ProviderKind.GITEE else "main"

    @property
    def display_name(self) -> str:
        return "GitHub" if self is ProviderKind.GITHUB else "Gitee"


class ConnectionProfile(BaseModel):
    """Where the remote store lives and how to authenticate.

    The token is excluded from ``repr`` so profiles can be logged.
    """

    provider: ProviderKind
    token: str = Field(repr=False)
    owner: str
    repo: str
    branch: Optional[str] = None

    def with_default_branch(self) -> "ConnectionProfile":
        """Return a copy whose missing branch is the provider default."""
        if self.branch:
            return self
        return self.model_copy(update={"branch": self.provider.default_branch})

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


class RemoteRecord(BaseModel):
    """The envelope stored in each remote sync file.

    Serialized with the browser app's keys (``data``, ``lastSyncTime``,
    ``hash``) so either side can read files the other wrote.
    """

    model_config = ConfigDict(populate_by_name=True)

    payload: Any = Field(alias="data")
    last_sync_time: str = Field(alias="lastSyncTime")
    fingerprint: str = Field(alias="hash")

    @classmethod
    def seal(cls, payload: Any) -> "RemoteRecord":
        """Wrap ``payload`` with the current time and its fingerprint."""
        return cls(
            payload=payload,
            last_sync_time=datetime.now(timezone.utc).isoformat(),
            fingerprint=hashing.fingerprint(payload),
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


class RemoteFile(BaseModel):
    """A fetched remote file: decoded text plus its version token."""

    path: str
    content: str
    version_token: str


class RemoteFileHandle(BaseModel):
    """Result of a successful write.

    ``version_token`` is None when the provider did not echo one back;
    callers must then rediscover it before the next update.
    """

    path: str
    version_token: Optional[str] = None


class RemoteEntry(BaseModel):
    """One file entry from a directory listing."""

    name: str
    version_token: str
    size: int = 0
    path: str
    download_url: Optional[str] = None


class ConnectionCheck(BaseModel):
    """Outcome of a repository access check."""

    ok: bool
    message: str
    status_code: Optional[int] = None


class ModuleSyncState(str, Enum):
    """Per-module position relative to the remote copy."""

    UNKNOWN = "unknown"
    IN_SYNC = "in_sync"
    LOCAL_AHEAD = "local_ahead"
    REMOTE_AHEAD = "remote_ahead"
    CONFLICT = "conflict"


class SyncStatus(BaseModel):
    """Derived, never persisted."""

    module: str
    filename: str
    local_fingerprint: str = ""
    remote_fingerprint: str = ""
    needs_sync: bool = False
    last_sync_time: Optional[str] = None
    state: ModuleSyncState = ModuleSyncState.UNKNOWN


class BatchResult(BaseModel):
    """Per-module outcome of a batch sync."""

    success: bool
    results: dict[str, bool] = Field(default_factory=dict)

    @classmethod
    def from_results(cls, results: dict[str, bool]) -> "BatchResult":
        return cls(success=all(results.values()), results=results)

    @property
    def succeeded(self) -> int:
        return sum(1 for ok in self.results.values() if ok)

    def summary(self) -> str:
        """Short human-readable status line."""
        total = len(self.results)
        if total == 0:
            return "nothing to sync" if self.success else "sync not available"
        if self.success:
            return f"synced {total} module{'s' if total != 1 else ''}"
        return f"partial sync: {self.succeeded}/{total} modules succeeded"


class SyncSettings(BaseModel):
    """User-tunable sync behaviour, persisted as YAML."""

    auto_sync: bool = True
    poll_interval: float = Field(default=1.0, gt=0)
    debounce_seconds: float = Field(default=3.0, ge=0)
    cooldown_seconds: float = Field(default=5.0, ge=0)
    request_timeout: float = Field(default=30.0, gt=0)
    watched_keys: list[str] = Field(default_factory=list)
