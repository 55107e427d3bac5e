from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from .errors import StorageError

logger = logging.getLogger(__name__)

SERVICE_NAME = "skillmarket-cli"
ACCOUNT_NAME = "skillmarket-token"

# Tokens closer than this to expiry are treated as expired.
EXPIRY_BUFFER = timedelta(minutes=5)


@dataclass(frozen=True)
class Token:
    access_token: str
    expires_at: datetime
    refresh_token: str | None = None
    scopes: frozenset[str] = field(default_factory=frozenset)
    user_id: str = ""
    device_id: str = ""

    def __post_init__(self) -> None:
        if not self.access_token:
            raise ValueError("access_token must not be empty")
        if self.expires_at.tzinfo is None:
            object.__setattr__(self, "expires_at", self.expires_at.replace(tzinfo=timezone.utc))

    def to_json(self) -> str:
        return json.dumps(
            {
                "accessToken": self.access_token,
                "refreshToken": self.refresh_token,
                "expiresAt": self.expires_at.astimezone(timezone.utc).isoformat(),
                "scopes": sorted(self.scopes),
                "userId": self.user_id,
                "deviceId": self.device_id,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "Token":
        data: Any = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("token payload must be an object")
        expires_at = datetime.fromisoformat(str(data["expiresAt"]).replace("Z", "+00:00"))
        refresh = data.get("refreshToken")
        scopes = data.get("scopes") or []
        return cls(
            access_token=str(data["accessToken"]),
            refresh_token=refresh if isinstance(refresh, str) and refresh else None,
            expires_at=expires_at,
            scopes=frozenset(str(s) for s in scopes),
            user_id=str(data.get("userId") or ""),
            device_id=str(data.get("deviceId") or ""),
        )


def token_is_fresh(token: Token, *, now: datetime | None = None) -> bool:
    now_dt = now or datetime.now(timezone.utc)
    return token.expires_at > now_dt + EXPIRY_BUFFER


class CredentialStore(Protocol):
    def store(self, token: Token) -> None:
        ...

    def get(self) -> Token | None:
        ...

    def delete(self) -> None:
        ...

    def is_valid(self) -> bool:
        ...


class KeyringCredentialStore:
    """
    Keeps the token bundle in the OS secret store (macOS Keychain, Windows
    Credential Manager, Secret Service on Linux) through ``keyring``.

    A backend object may be passed to bypass the globally configured keyring.
    """

    def __init__(
        self,
        *,
        service: str = SERVICE_NAME,
        account: str = ACCOUNT_NAME,
        backend: Any | None = None,
    ) -> None:
        self.service = service
        self.account = account
        self._backend = backend if backend is not None else keyring

    def store(self, token: Token) -> None:
        try:
            self._backend.set_password(self.service, self.account, token.to_json())
        except KeyringError as e:
            raise StorageError(f"Failed to store token: {e}") from e

    def get(self) -> Token | None:
        try:
            raw = self._backend.get_password(self.service, self.account)
        except KeyringError as e:
            logger.debug("Could not read token from keyring: %s", e)
            return None
        if not raw:
            return None
        try:
            return Token.from_json(raw)
        except (ValueError, KeyError, TypeError):
            logger.debug("Stored token is not readable; treating it as absent.")
            return None

    def delete(self) -> None:
        try:
            self._backend.delete_password(self.service, self.account)
        except PasswordDeleteError:
            pass
        except KeyringError as e:
            logger.debug("Could not delete token from keyring: %s", e)

    def is_valid(self) -> bool:
        token = self.get()
        return token is not None and token_is_fresh(token)
