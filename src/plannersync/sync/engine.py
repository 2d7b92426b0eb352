"""
Sync Engine -- per-module reconciliation against the remote store.

The engine owns one sync session: the active transport plus two
in-memory caches, rebuilt on every connect and never persisted.

    fingerprint cache   module -> last local fingerprint this engine saw
    token cache         module -> last known remote version token

Direction heuristic for auto-sync, per module whose local and remote
fingerprints differ:

    local changed since the engine last looked  ->  push
    remote file missing                         ->  push
    otherwise                                   ->  pull

It cannot tell a true concurrent edit from an ordinary one. When both
sides moved, the module is labelled CONFLICT, a warning is logged, and
local still wins: last writer wins per module, nothing is merged.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Union

import yaml

from .. import SYNC_HOME
from ..storage import LocalStore
from . import hashing
from .credentials import CredentialStore
from .registry import DataModule, ModuleRegistry, default_registry
from .hashing import fingerprint
from .models import (
    AUX_SETTING_KEYS,
    SYNC_PREFIX,
    BatchResult,
    ConnectionCheck,
    ConnectionProfile,
    ModuleSyncState,
    RemoteEntry,
    RemoteRecord,
    SyncSettings,
    SyncStatus,
)
from .transport import RemoteTransport, TransportError, create_transport

logger = logging.getLogger("plannersync.sync.engine")

CONFIG_FILENAME = "config.yaml"

ModuleRef = Union[str, DataModule]


class NotConnectedError(RuntimeError):
    """An operation needed a remote session but none is connected."""


def load_settings(home: Path) -> SyncSettings:
    """Read SyncSettings from ``<home>/config.yaml``, defaulting on error."""
    config_file = home / CONFIG_FILENAME
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return SyncSettings(**data)
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            logger.warning("Failed to load sync settings: %s", exc)
    return SyncSettings()


def save_settings(home: Path, settings: SyncSettings) -> None:
    home.mkdir(parents=True, exist_ok=True)
    (home / CONFIG_FILENAME).write_text(
        yaml.dump(settings.model_dump(mode="json"), default_flow_style=False),
        encoding="utf-8",
    )


class SyncEngine:
    """Orchestrates module sync for one user and one repository.

    Args:
        home: Sync home directory. Defaults to ~/.plannersync.
        store: Local store. Defaults to the store inside ``home``.
        registry: Module table. Defaults to the planner's four modules.
        transport_factory: Builds a transport from a profile; swap it
            to inject a fake HTTP session.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        store: Optional[LocalStore] = None,
        registry: Optional[ModuleRegistry] = None,
        transport_factory: Optional[Callable[..., RemoteTransport]] = None,
    ) -> None:
        self.home = Path(home or SYNC_HOME).expanduser()
        self.store = store or LocalStore.in_home(self.home)
        self.registry = registry or default_registry(self.store)
        self.credentials = CredentialStore(self.store)
        self.settings = load_settings(self.home)
        self._transport_factory = transport_factory or create_transport

        self.transport: Optional[RemoteTransport] = None
        self._fingerprints: dict[str, str] = {}
        self._tokens: dict[str, str] = {}
        self._lock = threading.RLock()

    # -- session ------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self.transport is not None

    def connect(self, profile: Optional[ConnectionProfile] = None) -> ConnectionCheck:
        """Open a sync session.

        Uses ``profile`` if given (without persisting it), else the
        stored profile. The session is only kept if the repository is
        reachable with write access.

        Returns:
            The access check, with a user-facing message.
        """
        if profile is None:
            profile = self.credentials.active or self.credentials.load()
        if profile is None:
            return ConnectionCheck(ok=False, message="Sync is not configured")

        transport = self._transport_factory(
            profile, timeout=self.settings.request_timeout
        )
        check = transport.check_access()

        with self._lock:
            if not check.ok:
                self.transport = None
                logger.warning("Connection to %s refused: %s", profile.full_name, check.message)
                return check

            self.transport = transport
            self._tokens.clear()
            self._fingerprints = {
                m.name: self._local_fingerprint(m) for m in self.registry
            }
        logger.info("Sync session open: %s", check.message)
        return check

    def disconnect(self) -> None:
        """Drop the session and its caches."""
        with self._lock:
            self.transport = None
            self._fingerprints.clear()
            self._tokens.clear()
        logger.info("Sync session closed")

    def _require_transport(self) -> RemoteTransport:
        if self.transport is None:
            raise NotConnectedError("No sync session; connect first")
        return self.transport

    def save_settings(self) -> None:
        save_settings(self.home, self.settings)

    def watched_keys(self) -> list[str]:
        """Local keys the change monitor should snapshot."""
        if self.settings.watched_keys:
            return list(self.settings.watched_keys)
        return self.registry.storage_keys() + AUX_SETTING_KEYS

    # -- helpers ------------------------------------------------------------

    def _resolve(self, module: ModuleRef) -> DataModule:
        if isinstance(module, DataModule):
            return module
        found = self.registry.get(module)
        if found is None:
            raise KeyError(f"Unknown module: {module}")
        return found

    @staticmethod
    def _local_fingerprint(module: DataModule) -> str:
        return fingerprint(module.read_local())

    @staticmethod
    def _commit_message(verb: str, module: DataModule) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        return f"{verb} {module.name} data - {stamp}"

    def _fetch_record(self, module: DataModule) -> Optional[RemoteRecord]:
        """Fetch and parse the module's remote envelope, caching its token."""
        remote = self._require_transport().get_file(module.remote_path)
        if remote is None:
            self._tokens.pop(module.name, None)
            return None
        self._tokens[module.name] = remote.version_token
        return RemoteRecord.model_validate(json.loads(remote.content))

    # -- status -------------------------------------------------------------

    def status_of(self, module: ModuleRef) -> SyncStatus:
        """Compare local and remote fingerprints for one module.

        Failures yield state UNKNOWN with ``needs_sync`` False, so a
        broken remote file is never acted on automatically.
        """
        module = self._resolve(module)
        status = SyncStatus(module=module.name, filename=module.filename)
        with self._lock:
            try:
                local = module.read_local()
                record = self._fetch_record(module)
            except (TransportError, ValueError) as exc:
                logger.error("Status check failed for %s: %s", module.name, exc)
                return status

            status.local_fingerprint = fingerprint(local)
            if record is None:
                status.needs_sync = True
                status.state = ModuleSyncState.LOCAL_AHEAD
                return status

            # The stored hash may be the browser app's; compare content too.
            remote_content_fp = fingerprint(record.payload)
            status.remote_fingerprint = record.fingerprint
            status.last_sync_time = record.last_sync_time
            status.needs_sync = not (
                status.local_fingerprint == remote_content_fp
                or hashing.matches(local, record.fingerprint)
            )
            status.state = self._classify(module, status, remote_content_fp)
        return status

    def _classify(
        self, module: DataModule, status: SyncStatus, remote_content_fp: str
    ) -> ModuleSyncState:
        if not status.needs_sync:
            return ModuleSyncState.IN_SYNC

        seen = self._fingerprints.get(module.name)
        local_moved = status.local_fingerprint != seen
        remote_moved = seen is not None and remote_content_fp != seen
        if local_moved and remote_moved:
            return ModuleSyncState.CONFLICT
        if local_moved:
            return ModuleSyncState.LOCAL_AHEAD
        return ModuleSyncState.REMOTE_AHEAD

    def check_status(self) -> list[SyncStatus]:
        """Status of every registered module, in registry order."""
        return [self.status_of(m) for m in self.registry]

    # -- single module ------------------------------------------------------

    def push_module(self, module: ModuleRef) -> bool:
        """Upload the module's local snapshot.

        Uses the cached version token when there is one. If the write
        fails and the remote token has moved on, the write is retried
        once against the current token. Any other failure is final.
        """
        module = self._resolve(module)
        with self._lock:
            try:
                transport = self._require_transport()
                record = RemoteRecord.seal(module.read_local())
                content = record.to_json()
                message = self._commit_message("Update", module)
                token = self._tokens.get(module.name)

                handle = transport.put_file(module.remote_path, content, message, token)
                if handle is None and token:
                    current = transport.get_file(module.remote_path)
                    current_token = current.version_token if current else None
                    if current_token != token:
                        logger.info("Cached token for %s is stale, retrying once", module.name)
                        self._tokens.pop(module.name, None)
                        handle = transport.put_file(
                            module.remote_path, content, message, current_token
                        )
            except (TransportError, ValueError) as exc:
                logger.error("Push of %s failed: %s", module.name, exc)
                return False

            if handle is None:
                logger.error("Push of %s was rejected", module.name)
                return False

            self._fingerprints[module.name] = record.fingerprint
            if handle.version_token:
                self._tokens[module.name] = handle.version_token
            else:
                self._tokens.pop(module.name, None)
        logger.info("Pushed %s (%s)", module.name, record.fingerprint)
        return True

    def pull_module(self, module: ModuleRef) -> bool:
        """Replace the module's local data with the remote snapshot.

        A missing remote file is a normal "nothing to pull" (False).
        A stored fingerprint that does not match the payload is logged
        and the payload is applied anyway. Fingerprints in the browser
        app's insertion-order form are accepted.
        """
        module = self._resolve(module)
        with self._lock:
            try:
                record = self._fetch_record(module)
            except (TransportError, ValueError) as exc:
                logger.error("Pull of %s failed: %s", module.name, exc)
                return False

            if record is None:
                logger.info("No remote data for %s", module.name)
                return False

            if not hashing.matches(record.payload, record.fingerprint):
                logger.warning(
                    "Integrity check failed for %s: stored %s, computed %s",
                    module.name,
                    record.fingerprint,
                    fingerprint(record.payload),
                )

            try:
                module.write_local(record.payload)
            except (OSError, TypeError, ValueError) as exc:
                logger.error("Writing pulled %s locally failed: %s", module.name, exc)
                return False

            self._fingerprints[module.name] = self._local_fingerprint(module)
        logger.info("Pulled %s (%s)", module.name, record.fingerprint)
        return True

    # -- batches ------------------------------------------------------------

    def _run_batch(self, label: str, action: Callable[[DataModule], bool]) -> BatchResult:
        if not self.connected:
            logger.warning("%s skipped: not connected", label)
            return BatchResult(success=False)

        results: dict[str, bool] = {}
        with self._lock:
            for module in self.registry:
                try:
                    results[module.name] = bool(action(module))
                except Exception as exc:
                    logger.exception("%s: %s raised %s", label, module.name, exc)
                    results[module.name] = False

        result = BatchResult.from_results(results)
        logger.info("%s: %s", label, result.summary())
        return result

    def sync_all_to_cloud(self) -> BatchResult:
        """Push every module, regardless of status."""
        return self._run_batch("Push all", self.push_module)

    def sync_all_from_cloud(self) -> BatchResult:
        """Pull every module, regardless of status."""
        return self._run_batch("Pull all", self.pull_module)

    def cleanup_cloud_files(self) -> BatchResult:
        """Delete every module's remote sync file."""
        def delete(module: DataModule) -> bool:
            ok = self._require_transport().delete_file(
                module.remote_path, f"Remove {module.name} sync file"
            )
            if ok:
                self._tokens.pop(module.name, None)
            return ok

        return self._run_batch("Cleanup", delete)

    def list_sync_files(self) -> list[RemoteEntry]:
        """Remote files at the repository root that belong to sync."""
        entries = self._require_transport().list_files("")
        return [e for e in entries if e.name.startswith(SYNC_PREFIX)]

    def auto_sync(self) -> BatchResult:
        """Sync only the modules that need it, choosing direction per module.

        One directory listing is fetched up front. A module whose local
        fingerprint and remote version token both match the caches is
        skipped without any further request. Modules that are already
        in sync are left out of the results.
        """
        if not self.connected:
            return BatchResult(success=False)

        results: dict[str, bool] = {}
        with self._lock:
            listing = self._remote_listing()
            for module in self.registry:
                try:
                    outcome = self._auto_sync_module(module, listing)
                except Exception as exc:
                    logger.exception("Auto-sync of %s raised %s", module.name, exc)
                    outcome = False
                if outcome is not None:
                    results[module.name] = outcome

        result = BatchResult.from_results(results)
        if results:
            logger.info("Auto-sync: %s", result.summary())
        return result

    def _remote_listing(self) -> Optional[dict[str, RemoteEntry]]:
        try:
            return {e.name: e for e in self.list_sync_files()}
        except (TransportError, ValueError) as exc:
            logger.warning("Listing remote files failed, checking each module: %s", exc)
            return None

    def _auto_sync_module(
        self, module: DataModule, listing: Optional[dict[str, RemoteEntry]]
    ) -> Optional[bool]:
        """Returns None when nothing had to be done."""
        local_fp = self._local_fingerprint(module)
        seen = self._fingerprints.get(module.name)

        if listing is not None and local_fp == seen:
            entry = listing.get(module.remote_path)
            cached_token = self._tokens.get(module.name)
            if entry is not None and cached_token and entry.version_token == cached_token:
                return None

        status = self.status_of(module)
        if not status.needs_sync:
            if status.state is ModuleSyncState.IN_SYNC:
                self._fingerprints[module.name] = status.local_fingerprint
            return None

        local_changed = local_fp != seen

        if status.state is ModuleSyncState.CONFLICT:
            logger.warning(
                "%s changed locally and remotely; keeping the local copy",
                module.name,
            )
        if local_changed or not status.remote_fingerprint:
            return self.push_module(module)
        return self.pull_module(module)
