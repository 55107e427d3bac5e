from __future__ import annotations

import sys
from dataclasses import dataclass


class SkillmarketError(RuntimeError):
    pass


class AuthError(SkillmarketError):
    pass


class LoginTimeoutError(AuthError):
    pass


class RateLimitError(SkillmarketError):
    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class NetworkError(SkillmarketError):
    pass


@dataclass(frozen=True)
class HTTPStatusError(NetworkError):
    status_code: int
    body: str

    def __str__(self) -> str:  # pragma: no cover
        return f"HTTP {self.status_code}: {self.body}"


class VerificationError(SkillmarketError):
    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class NotFoundError(SkillmarketError):
    pass


class StorageError(SkillmarketError):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.hint = storage_hint()

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} ({self.hint})" if self.hint else base


def storage_hint(platform: str | None = None) -> str:
    p = platform or sys.platform
    if p == "darwin":
        return "check that the login keychain is unlocked in Keychain Access"
    if p.startswith("win"):
        return "check that Windows Credential Manager is available for your account"
    return "install and unlock a Secret Service provider such as gnome-keyring or KWallet"
