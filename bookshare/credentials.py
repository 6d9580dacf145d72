"""Credential stores for the bearer token used by the REST client and chat hub.

The core only ever reads the token through ``get_token()``; how it got
there (login flow, refresh) is outside this package.
"""
from __future__ import annotations

import logging
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from config import settings

TOKEN_KEY = "auth_token"
USER_ID_KEY = "user_id"

logger = logging.getLogger(__name__)


class CredentialStore:
    def get_token(self) -> Optional[str]:
        raise NotImplementedError

    def get_user_id(self) -> Optional[str]:
        return None


class KeyringCredentialStore(CredentialStore):
    """Token storage backed by the OS keyring."""

    def __init__(self, service_name: Optional[str] = None):
        self.service_name = service_name or settings.keyring_service

    def _read(self, key: str) -> Optional[str]:
        try:
            return keyring.get_password(self.service_name, key)
        except KeyringError as e:
            logger.warning(f"Could not read {key} from keyring: {e}")
            return None

    def get_token(self) -> Optional[str]:
        return self._read(TOKEN_KEY)

    def get_user_id(self) -> Optional[str]:
        return self._read(USER_ID_KEY)

    def save(self, token: str, user_id: Optional[str] = None) -> None:
        keyring.set_password(self.service_name, TOKEN_KEY, token)
        if user_id:
            keyring.set_password(self.service_name, USER_ID_KEY, user_id)

    def clear(self) -> None:
        for key in (TOKEN_KEY, USER_ID_KEY):
            try:
                keyring.delete_password(self.service_name, key)
            except PasswordDeleteError:
                pass


class StaticCredentialStore(CredentialStore):
    """Holds a token in memory; useful for scripts and tests."""

    def __init__(self, token: Optional[str] = None, user_id: Optional[str] = None):
        self.token = token
        self.user_id = user_id

    def get_token(self) -> Optional[str]:
        return self.token

    def get_user_id(self) -> Optional[str]:
        return self.user_id
