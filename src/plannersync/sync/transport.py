"""
Remote Content Transport -- a Git host's contents API as a JSON blob store.

GitHub and Gitee both expose ``repos/{owner}/{repo}/contents/{path}``
but disagree on the details: base URL, default branch, permission
field names, and how a brand-new file is created. Those differences
live in a ProviderDialect picked once from the connection profile;
RemoteTransport itself only speaks the shared shape.

    get_file     GET    contents/{path}?ref={branch}   -> text + sha
    put_file     PUT    contents/{path}  {message, content, branch, sha?}
    delete_file  DELETE contents/{path}  {message, sha, branch}
    list_files   GET    contents/{dir}                 -> [entries]

Absence is never an exception: a missing file is None, a missing
directory is an empty list. Network failures, malformed responses and
error statuses on file reads (403 rate limits, 5xx) raise TransportError.
"""

from __future__ import annotations

import base64
import binascii
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional
from urllib.parse import quote

import requests

from .models import (
    ConnectionCheck,
    ConnectionProfile,
    ProviderKind,
    RemoteEntry,
    RemoteFile,
    RemoteFileHandle,
)

logger = logging.getLogger("plannersync.sync.transport")

DEFAULT_TIMEOUT = 30.0


class TransportError(RuntimeError):
    """The provider could not be reached or answered with garbage."""


def encode_content(text: str) -> str:
    """Base64-encode UTF-8 text for the contents API."""
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def decode_content(encoded: str) -> str:
    """Decode the API's base64 payload (which may contain line breaks).

    Raises:
        TransportError: If the payload is not base64 UTF-8 text.
    """
    try:
        raw = base64.b64decode("".join(encoded.split()), validate=True)
        return raw.decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise TransportError(f"Undecodable file content: {exc}") from exc


def _is_token_rejection(resp: requests.Response) -> bool:
    """Did the provider refuse the write because of the sha?"""
    if resp.status_code == 409:
        return True
    return resp.status_code in (400, 422) and "sha" in resp.text.lower()


# ---------------------------------------------------------------------------
# Provider dialects
# ---------------------------------------------------------------------------


class ProviderDialect(ABC):
    """Everything that differs between providers."""

    kind: ProviderKind
    api_base: str
    # Both providers have shipped both spellings at some point.
    permission_fields: tuple[str, ...] = ("permissions", "permission")
    write_permissions: tuple[str, ...] = ()

    def auth_headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"token {token}"}

    def has_write_access(self, repo_data: dict[str, Any]) -> bool:
        """Inspect repository metadata for any write-capable permission."""
        for field_name in self.permission_fields:
            perms = repo_data.get(field_name)
            if not isinstance(perms, dict):
                continue
            if any(perms.get(flag) for flag in self.write_permissions):
                return True
        return False

    def repo_label(self, repo_data: dict[str, Any]) -> str:
        return str(
            repo_data.get("full_name")
            or repo_data.get("path")
            or repo_data.get("name")
            or "?"
        )

    @abstractmethod
    def create_file(
        self,
        transport: "RemoteTransport",
        path: str,
        encoded: str,
        message: str,
    ) -> Optional[RemoteFileHandle]:
        """Create a file that does not exist yet.

        Returns:
            Handle of the new file, or None if creation failed.
        """


class GitHubDialect(ProviderDialect):
    """api.github.com: creation is a PUT without a sha."""

    kind = ProviderKind.GITHUB
    api_base = "https://api.github.com"
    write_permissions = ("push", "admin", "maintain")

    def create_file(self, transport, path, encoded, message):
        body = {"message": message, "content": encoded, "branch": transport.branch}
        handle, _ = transport._put(path, body)
        return handle


class GiteeDialect(ProviderDialect):
    """gitee.com API v5.

    Gitee has rejected sha-less PUTs for new files on some deployments,
    so creation walks a fallback chain and stops at the first success:

    1. POST to the contents endpoint
    2. PUT an empty file, then PUT the real content with the returned sha
    3. PUT with an explicitly empty sha
    """

    kind = ProviderKind.GITEE
    api_base = "https://gitee.com/api/v5"
    write_permissions = ("push", "admin", "master")

    def create_file(self, transport, path, encoded, message):
        attempts = (
            ("post-create", self._post_create),
            ("create-then-update", self._create_then_update),
            ("put-empty-sha", self._put_empty_sha),
        )
        for label, attempt in attempts:
            try:
                handle = attempt(transport, path, encoded, message)
            except TransportError as exc:
                logger.info("Gitee %s for %s errored: %s", label, path, exc)
                continue
            if handle is not None:
                logger.info("Created %s via Gitee %s", path, label)
                return handle
            logger.info("Gitee %s for %s failed, trying next method", label, path)

        logger.error("All Gitee file creation methods failed for %s", path)
        return None

    def _post_create(self, transport, path, encoded, message):
        body = {"message": message, "content": encoded, "branch": transport.branch}
        resp = transport._request("POST", transport._contents_endpoint(path), body=body)
        if not resp.ok:
            return None
        return transport._handle_from(resp, path)

    def _create_then_update(self, transport, path, encoded, message):
        placeholder = {
            "message": f"Initialize {path}",
            "content": encode_content(""),
            "branch": transport.branch,
        }
        created, _ = transport._put(path, placeholder)
        if created is None or not created.version_token:
            return None

        update = {
            "message": message,
            "content": encoded,
            "sha": created.version_token,
            "branch": transport.branch,
        }
        handle, _ = transport._put(path, update)
        return handle

    def _put_empty_sha(self, transport, path, encoded, message):
        body = {
            "message": message,
            "content": encoded,
            "branch": transport.branch,
            "sha": "",
        }
        resp = transport._request("PUT", transport._contents_endpoint(path), body=body)
        if not resp.ok:
            return None
        return transport._handle_from(resp, path)


DIALECTS: dict[ProviderKind, type[ProviderDialect]] = {
    ProviderKind.GITHUB: GitHubDialect,
    ProviderKind.GITEE: GiteeDialect,
}


def dialect_for(kind: ProviderKind) -> ProviderDialect:
    """Instantiate the dialect for a provider kind.

    Raises:
        ValueError: If the provider is not supported.
    """
    factory = DIALECTS.get(kind)
    if not factory:
        raise ValueError(f"Unsupported provider: {kind}")
    return factory()


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class RemoteTransport:
    """Authenticated client for one repository on one branch.

    Args:
        profile: Connection profile; a missing branch takes the
            provider default.
        session: requests-compatible session (anything with a
            ``request`` method). Defaults to a new requests.Session.
        timeout: Per-request timeout in seconds.
        dialect: Override the dialect derived from the profile.
    """

    def __init__(
        self,
        profile: ConnectionProfile,
        session: Optional[Any] = None,
        timeout: float = DEFAULT_TIMEOUT,
        dialect: Optional[ProviderDialect] = None,
    ) -> None:
        self.profile = profile.with_default_branch()
        self.dialect = dialect or dialect_for(self.profile.provider)
        self.timeout = timeout
        self._session = session if session is not None else requests.Session()

    @property
    def branch(self) -> str:
        return self.profile.branch or self.profile.provider.default_branch

    @property
    def repo_path(self) -> str:
        return f"repos/{self.profile.owner}/{self.profile.repo}"

    def _contents_endpoint(self, path: str) -> str:
        quoted = quote(path.strip("/"), safe="/")
        base = f"{self.repo_path}/contents"
        return f"{base}/{quoted}" if quoted else base

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, str]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> requests.Response:
        """Send one authenticated request.

        Raises:
            TransportError: On connection failure or timeout.
        """
        url = f"{self.dialect.api_base}/{endpoint}"
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        headers.update(self.dialect.auth_headers(self.profile.token))

        logger.debug("%s %s", method, url)
        try:
            return self._session.request(
                method,
                url,
                headers=headers,
                params=params,
                json=body,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"{method} {endpoint}: {exc}") from exc

    @staticmethod
    def _json(resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise TransportError(
                f"Malformed JSON from provider (HTTP {resp.status_code})"
            ) from exc

    @staticmethod
    def _handle_from(resp: requests.Response, path: str) -> RemoteFileHandle:
        """Build a handle from a write response, tolerating thin bodies."""
        try:
            content = resp.json().get("content")
        except (ValueError, AttributeError):
            content = None
        token = content.get("sha") if isinstance(content, dict) else None
        return RemoteFileHandle(path=path, version_token=token)

    # -- repository ---------------------------------------------------------

    def check_access(self) -> ConnectionCheck:
        """Verify the repository exists and the token can write to it."""
        try:
            resp = self._request("GET", self.repo_path)
        except TransportError as exc:
            return ConnectionCheck(ok=False, message=f"Connection error: {exc}")

        if resp.status_code == 401:
            return ConnectionCheck(
                ok=False, message="Token invalid", status_code=401
            )
        if resp.status_code == 404:
            return ConnectionCheck(
                ok=False,
                message="Repository not found or inaccessible",
                status_code=404,
            )
        if not resp.ok:
            return ConnectionCheck(
                ok=False,
                message=f"Connection failed: {resp.status_code} {resp.reason}",
                status_code=resp.status_code,
            )

        try:
            repo_data = self._json(resp)
        except TransportError as exc:
            return ConnectionCheck(ok=False, message=f"Connection error: {exc}")
        if not isinstance(repo_data, dict):
            return ConnectionCheck(
                ok=False, message="Connection error: unexpected repository payload"
            )

        if self.dialect.has_write_access(repo_data):
            return ConnectionCheck(
                ok=True,
                message=f"Connected to {self.dialect.repo_label(repo_data)}",
                status_code=resp.status_code,
            )
        return ConnectionCheck(
            ok=False,
            message="Repository reachable but the token has no write permission",
            status_code=resp.status_code,
        )

    def repo_info(self) -> Optional[dict[str, Any]]:
        """Raw repository metadata, or None if unavailable."""
        resp = self._request("GET", self.repo_path)
        if not resp.ok:
            return None
        data = self._json(resp)
        return data if isinstance(data, dict) else None

    def repository_exists(self) -> bool:
        try:
            return self._request("GET", self.repo_path).ok
        except TransportError as exc:
            logger.error("Repository check failed: %s", exc)
            return False

    # -- files --------------------------------------------------------------

    def get_file(self, path: str) -> Optional[RemoteFile]:
        """Fetch and decode a file.

        Returns:
            The file text and version token, or None when the file
            (or the branch, or the repo) does not exist.

        Raises:
            TransportError: Network failure, an error status other than
                404 (rate limit, server error), or an undecodable response.
        """
        resp = self._request(
            "GET", self._contents_endpoint(path), params={"ref": self.branch}
        )
        if resp.status_code == 404:
            return None
        if not resp.ok:
            raise TransportError(
                f"GET {path} returned {resp.status_code} {resp.reason}"
            )

        data = self._json(resp)
        if not isinstance(data, dict) or not data.get("sha"):
            return None

        return RemoteFile(
            path=path,
            content=decode_content(data.get("content") or ""),
            version_token=data["sha"],
        )

    def _put(
        self, path: str, body: dict[str, Any]
    ) -> tuple[Optional[RemoteFileHandle], requests.Response]:
        """One PUT attempt. A write only counts if the body echoes content."""
        resp = self._request("PUT", self._contents_endpoint(path), body=body)
        if resp.status_code not in (200, 201):
            logger.debug("PUT %s returned %d: %s", path, resp.status_code, resp.text[:200])
            return None, resp

        data = self._json(resp)
        content = data.get("content") if isinstance(data, dict) else None
        if content is None:
            return None, resp
        token = content.get("sha") if isinstance(content, dict) else None
        return RemoteFileHandle(path=path, version_token=token), resp

    def put_file(
        self,
        path: str,
        content: str,
        message: str,
        version_token: Optional[str] = None,
    ) -> Optional[RemoteFileHandle]:
        """Create or update a file with optimistic concurrency.

        With ``version_token`` the write is conditional: if the remote
        has moved on, the provider rejects it and this returns None.
        It never retries with a newer token on the caller's behalf.

        Without a token the current one is looked up first. A missing
        file is created through the dialect; an existing one is updated,
        and if that update loses a race the token is re-fetched and the
        update retried exactly once.

        Returns:
            Handle of the written file (truthy), or None on failure.
        """
        encoded = encode_content(content)

        if version_token:
            handle, resp = self._update(path, encoded, message, version_token)
            if handle is None and _is_token_rejection(resp):
                logger.warning(
                    "Stale version token for %s, remote has changed", path
                )
            return handle

        existing = self.get_file(path)
        if existing is None:
            return self.dialect.create_file(self, path, encoded, message)

        handle, resp = self._update(path, encoded, message, existing.version_token)
        if handle is None and _is_token_rejection(resp):
            logger.info("Version token for %s moved, retrying once", path)
            fresh = self.get_file(path)
            if fresh is not None:
                handle, _ = self._update(path, encoded, message, fresh.version_token)
        if handle is None:
            logger.error("Update of %s failed (HTTP %d)", path, resp.status_code)
        return handle

    def _update(self, path, encoded, message, version_token):
        body = {
            "message": message,
            "content": encoded,
            "sha": version_token,
            "branch": self.branch,
        }
        return self._put(path, body)

    def delete_file(self, path: str, message: str) -> bool:
        """Delete a file. Deleting a missing file succeeds without a request."""
        existing = self.get_file(path)
        if existing is None:
            return True

        resp = self._request(
            "DELETE",
            self._contents_endpoint(path),
            body={
                "message": message,
                "sha": existing.version_token,
                "branch": self.branch,
            },
        )
        if not resp.ok:
            logger.error("DELETE %s returned %d", path, resp.status_code)
        return resp.ok

    def list_files(self, path: str = "") -> list[RemoteEntry]:
        """List the files (not directories) directly under ``path``."""
        resp = self._request(
            "GET", self._contents_endpoint(path), params={"ref": self.branch}
        )
        if resp.status_code == 404:
            return []
        if not resp.ok:
            logger.warning("Listing %r returned %d", path, resp.status_code)
            return []

        data = self._json(resp)
        if not isinstance(data, list):
            return []

        return [
            RemoteEntry(
                name=item["name"],
                version_token=item.get("sha", ""),
                size=item.get("size") or 0,
                path=item.get("path", item["name"]),
                download_url=item.get("download_url"),
            )
            for item in data
            if isinstance(item, dict) and item.get("type") == "file" and "name" in item
        ]


def create_transport(
    profile: ConnectionProfile,
    session: Optional[Any] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> RemoteTransport:
    """Factory used by the engine; tests swap in a fake session here."""
    return RemoteTransport(profile, session=session, timeout=timeout)
