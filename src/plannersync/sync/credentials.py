"""
Credential Store -- the encrypted connection profile.

The profile (provider, token, owner, repo, branch) never touches disk
in plaintext. It is Fernet-encrypted (AES-128-CBC + HMAC-SHA256) with
an application-level key and kept in the local store under one key.

A blob that fails to decrypt is treated as "no profile", not an error:
the user simply configures the connection again.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError

from ..storage import LocalStore
from .models import ConnectionProfile

logger = logging.getLogger("plannersync.sync.credentials")

STORAGE_KEY = "git-sync-config-encrypted"
APP_SECRET = "all-in-one-git-sync-secret"


def _fernet_for(secret: str) -> Fernet:
    """Build a Fernet cipher from an arbitrary-length secret.

    Fernet wants 32 url-safe-base64 bytes, so the secret is stretched
    through SHA-256 first.
    """
    key_material = hashlib.sha256(secret.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(key_material))


class CredentialStore:
    """Owns the single active ConnectionProfile.

    Args:
        store: Local store the encrypted blob is written to.
        secret: Application secret the Fernet key derives from.
    """

    def __init__(self, store: LocalStore, secret: str = APP_SECRET) -> None:
        self._store = store
        self._fernet = _fernet_for(secret)
        self.active: Optional[ConnectionProfile] = None

    def encrypt(self, profile: ConnectionProfile) -> str:
        payload = profile.model_dump_json().encode("utf-8")
        return self._fernet.encrypt(payload).decode("ascii")

    def decrypt(self, blob: str) -> Optional[ConnectionProfile]:
        """Decrypt a stored blob.

        Returns:
            The profile, or None if the blob is corrupt, was written
            with another key, or no longer matches the profile schema.
        """
        try:
            raw = self._fernet.decrypt(blob.encode("ascii"))
            return ConnectionProfile.model_validate_json(raw)
        except (InvalidToken, ValidationError, UnicodeError, json.JSONDecodeError) as exc:
            logger.error("Failed to decrypt sync config: %s", type(exc).__name__)
            return None

    def save(self, profile: ConnectionProfile) -> ConnectionProfile:
        """Normalize, encrypt, persist, and activate a profile.

        Args:
            profile: Profile from the user's configuration action.

        Returns:
            The stored profile with its branch filled in.
        """
        profile = profile.with_default_branch()
        self._store.set_item(STORAGE_KEY, self.encrypt(profile))
        self.active = profile
        logger.info(
            "Saved %s sync profile for %s (branch %s)",
            profile.provider.display_name,
            profile.full_name,
            profile.branch,
        )
        return profile

    def load(self) -> Optional[ConnectionProfile]:
        """Load and activate the persisted profile, if any."""
        blob = self._store.get_item(STORAGE_KEY)
        if not blob:
            return None

        profile = self.decrypt(blob)
        if profile is None:
            return None

        profile = profile.with_default_branch()
        self.active = profile
        return profile

    def clear(self) -> None:
        """Forget the profile on disk and in memory."""
        self._store.remove_item(STORAGE_KEY)
        self.active = None
        logger.info("Cleared sync profile")
