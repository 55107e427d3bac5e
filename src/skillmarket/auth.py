from __future__ import annotations

import getpass
import hashlib
import logging
import os
import socket
import sys
import time
import webbrowser
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from .audit import AuditLogger
from .config import Config
from .credentials import CredentialStore, Token, token_is_fresh
from .errors import AuthError, LoginTimeoutError, SkillmarketError

logger = logging.getLogger(__name__)

DEVICE_CODE_PATH = "/api/v1/auth/device-code"
TOKEN_PATH = "/api/v1/auth/token"
USER_INFO_PATH = "/api/v1/user/me"

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
LOGIN_SCOPE = "read:content read:download"

DEFAULT_POLL_INTERVAL_S = 5.0
DEFAULT_DEVICE_CODE_TTL_S = 900.0


def derive_device_id(hostname: str, username: str, secondary: str) -> str:
    machine_id = f"{hostname}-{username}-{secondary}"
    return hashlib.sha256(machine_id.encode("utf-8")).hexdigest()[:16]


def _username() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):  # no passwd entry / no login env
        return ""


def current_device_id() -> str:
    if sys.platform.startswith("win"):
        secondary = os.environ.get("USERPROFILE") or os.environ.get("HOME") or ""
    else:
        secondary = str(os.getuid()) if hasattr(os, "getuid") else ""
    return derive_device_id(socket.gethostname(), _username(), secondary)


def _stderr_echo(message: str) -> None:
    print(message, file=sys.stderr)


def _error_code(resp: httpx.Response) -> str | None:
    try:
        data = resp.json()
    except ValueError:
        return None
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"]
    return None


class DeviceFlowAuthenticator:
    """
    OAuth 2.0 device authorization grant against the marketplace auth server.

    The token bundle lives in an injected CredentialStore; the clock, sleep and
    browser opener are injectable so the polling loop can run without real waits.
    """

    def __init__(
        self,
        config: Config,
        store: CredentialStore,
        *,
        http: httpx.Client | None = None,
        audit: AuditLogger | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] | None = None,
        open_browser: Callable[[str], Any] = webbrowser.open,
        echo: Callable[[str], None] = _stderr_echo,
        device_id: str | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.audit = audit
        self.device_id = device_id or current_device_id()
        self._owns_http = http is None
        self._http = http or httpx.Client(timeout=config.timeout_s, follow_redirects=True)
        self._clock = clock
        self._sleep = sleep
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._open_browser = open_browser
        self._echo = echo

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "DeviceFlowAuthenticator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _url(self, path: str) -> str:
        return f"{self.config.api_url.rstrip('/')}{path}"

    def _audit(self, operation: str, success: bool, error: str | None = None) -> None:
        if self.audit is not None:
            self.audit.log_auth(operation, success, error)

    def request_device_code(self) -> dict[str, Any]:
        try:
            resp = self._http.post(
                self._url(DEVICE_CODE_PATH),
                json={"client_id": self.config.client_id, "scope": LOGIN_SCOPE, "device_id": self.device_id},
            )
        except httpx.HTTPError as e:
            raise AuthError(f"Could not reach the authorization server: {e}") from e
        if resp.status_code >= 400:
            raise AuthError(f"Device code request failed: HTTP {resp.status_code} {resp.text.strip()}".rstrip())
        try:
            data = resp.json()
        except ValueError as e:
            raise AuthError("Unexpected device code response.") from e
        if not isinstance(data, dict):
            raise AuthError("Unexpected device code response.")
        for key in ("device_code", "user_code", "verification_uri"):
            if not isinstance(data.get(key), str) or not data[key]:
                raise AuthError(f"Unexpected device code response: missing {key}")
        return data

    def fetch_user_info(self, access_token: str) -> dict[str, Any]:
        try:
            resp = self._http.get(self._url(USER_INFO_PATH), headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as e:
            raise AuthError(f"Could not fetch user profile: {e}") from e
        if resp.status_code >= 400:
            raise AuthError(f"Could not fetch user profile: HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise AuthError("Unexpected user profile response.") from e
        if not isinstance(data, dict):
            raise AuthError("Unexpected user profile response.")
        return data

    def _compose_token(self, payload: dict[str, Any], *, previous_refresh: str | None = None) -> Token:
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise AuthError("Token response is missing access_token.")
        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token:
            refresh_token = previous_refresh
        expires_in = payload.get("expires_in")
        ttl = float(expires_in) if isinstance(expires_in, (int, float)) else 3600.0
        scope = payload.get("scope")
        scopes = frozenset(scope.split()) if isinstance(scope, str) else frozenset()

        user = self.fetch_user_info(access_token)
        return Token(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=self._now() + timedelta(seconds=ttl),
            scopes=scopes,
            user_id=str(user.get("id") or ""),
            device_id=self.device_id,
        )

    def login(self) -> Token:
        try:
            token = self._login()
        except SkillmarketError as e:
            self._audit("login", False, str(e))
            raise
        self._audit("login", True)
        return token

    def _login(self) -> Token:
        data = self.request_device_code()
        device_code = data["device_code"]
        user_code = data["user_code"]
        verification_uri = data["verification_uri"]

        interval = data.get("interval")
        wait = float(interval) if isinstance(interval, (int, float)) and interval > 0 else DEFAULT_POLL_INTERVAL_S
        expires_in = data.get("expires_in")
        budget = float(expires_in) if isinstance(expires_in, (int, float)) else DEFAULT_DEVICE_CODE_TTL_S

        self._echo(f"Please visit: {verification_uri}")
        self._echo(f"Enter code: {user_code}")
        try:
            self._open_browser(verification_uri)
        except (webbrowser.Error, OSError) as e:
            logger.debug("Could not open a browser: %s", e)
        self._echo("Waiting for authorization...")

        deadline = self._clock() + budget
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            self._sleep(min(wait, remaining))
            if self._clock() >= deadline:
                break
            try:
                resp = self._http.post(
                    self._url(TOKEN_PATH),
                    json={
                        "grant_type": DEVICE_CODE_GRANT,
                        "device_code": device_code,
                        "client_id": self.config.client_id,
                    },
                )
            except httpx.HTTPError as e:
                logger.debug("Token poll failed, retrying: %s", e)
                continue

            if resp.status_code < 400:
                try:
                    payload = resp.json()
                except ValueError:
                    logger.debug("Token poll returned a non-JSON body, retrying.")
                    continue
                if isinstance(payload, dict) and payload.get("access_token"):
                    token = self._compose_token(payload)
                    self.store.store(token)
                    return token
                continue

            code = _error_code(resp)
            if code == "authorization_pending":
                continue
            if code == "slow_down":
                wait *= 2
                continue
            if code == "expired_token":
                raise AuthError("Authorization expired. Please try again.")
            if code == "access_denied":
                raise AuthError("Authorization denied.")
            logger.debug("Token poll returned HTTP %s (%s), retrying.", resp.status_code, code)

        raise LoginTimeoutError("Authorization timeout. Please try again.")

    def refresh_token(self, refresh_token: str) -> Token:
        try:
            resp = self._http.post(
                self._url(TOKEN_PATH),
                json={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.config.client_id,
                },
            )
            if resp.status_code >= 400:
                raise AuthError(f"HTTP {resp.status_code}")
            payload = resp.json()
            if not isinstance(payload, dict):
                raise AuthError("unexpected response")
            token = self._compose_token(payload, previous_refresh=refresh_token)
            self.store.store(token)
        except (SkillmarketError, httpx.HTTPError, ValueError) as e:
            self._audit("token_refresh", False, str(e))
            raise AuthError(f"Token refresh failed: {e}") from e
        self._audit("token_refresh", True)
        return token

    def get_authenticated_token(self) -> Token | None:
        token = self.store.get()
        if token is None:
            return None
        if token_is_fresh(token, now=self._now()):
            return token
        if token.refresh_token:
            try:
                return self.refresh_token(token.refresh_token)
            except AuthError as e:
                logger.debug("Refresh failed, a new login is required: %s", e)
        self.store.delete()
        return None

    def logout(self) -> None:
        self.store.delete()
        self._audit("logout", True)
