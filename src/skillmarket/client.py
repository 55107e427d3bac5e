from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable
from urllib.parse import quote, urlsplit, urlunsplit

import httpx

from ._version import __version__
from .auth import DeviceFlowAuthenticator
from .config import Config
from .errors import AuthError, HTTPStatusError, NetworkError, RateLimitError, SkillmarketError

FUNCTIONS_PREFIX = "/functions/v1"
SEARCH_PATH = f"{FUNCTIONS_PREFIX}/search"

HOUR_S = 60 * 60

# category -> (max requests, window seconds)
DEFAULT_RATE_LIMITS: dict[str, tuple[int, float]] = {
    "search": (100, HOUR_S),
    "download": (50, HOUR_S),
    "install": (20, HOUR_S),
}


@dataclass(frozen=True)
class ContentItem:
    id: str
    name: str
    slug: str
    type: str
    description: str = ""
    version: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_obj(cls, obj: dict[str, Any]) -> "ContentItem":
        name = str(obj.get("name") or obj.get("slug") or "")
        version = obj.get("version")
        return cls(
            id=str(obj.get("id") or ""),
            name=name,
            slug=str(obj.get("slug") or name),
            type=str(obj.get("type") or ""),
            description=str(obj.get("description") or ""),
            version=str(version) if version is not None else None,
            raw=dict(obj),
        )


@dataclass(frozen=True)
class SearchResult:
    items: list[ContentItem]
    total: int
    page: int
    limit: int


@dataclass(frozen=True)
class DownloadInfo:
    url: str
    version: str
    size: int
    integrity_hash: str | None


def endpoint_category(path: str) -> str:
    if "/search" in path:
        return "search"
    if "/download" in path:
        return "download"
    if "/install" in path:
        return "install"
    return "default"


class RateLimiter:
    """
    Client-side throttle with one sliding window of request timestamps per
    endpoint category. Categories without a limit are never throttled.
    """

    def __init__(
        self,
        limits: dict[str, tuple[int, float]] | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.limits = dict(DEFAULT_RATE_LIMITS if limits is None else limits)
        self._clock = clock
        self._requests: dict[str, list[float]] = {}

    def _prune(self, category: str, now: float) -> list[float]:
        max_requests, window = self.limits[category]
        valid = [ts for ts in self._requests.get(category, []) if now - ts < window]
        self._requests[category] = valid
        return valid

    def retry_in(self, category: str) -> float:
        if category not in self.limits:
            return 0.0
        now = self._clock()
        valid = self._prune(category, now)
        if not valid:
            return 0.0
        _, window = self.limits[category]
        return max(0.0, window - (now - valid[0]))

    def acquire(self, category: str) -> None:
        if category not in self.limits:
            return
        now = self._clock()
        valid = self._prune(category, now)
        max_requests, window = self.limits[category]
        if len(valid) >= max_requests:
            wait = max(0.0, window - (now - valid[0]))
            raise RateLimitError(
                f"Rate limit exceeded for {category}. Please wait {int(-(-wait // 1))} seconds.",
                retry_after=wait,
            )
        valid.append(now)


def sign_request(method: str, path: str, timestamp: str, body: str, access_token: str) -> str:
    message = f"{method.upper()}{path}{timestamp}{body}"
    secret = access_token[:32]
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def _origin(url: str) -> str | None:
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return urlunsplit((parts.scheme, parts.netloc, "", "", "")).rstrip("/")


def _unwrap_success_envelope(obj: Any) -> Any:
    """
    Supports APIs that wrap responses as:
      {"success": true, "data": {...}}
      {"success": false, "error": {...}}
    """
    if not isinstance(obj, dict):
        return obj
    if obj.get("success") is True and "data" in obj:
        return obj.get("data")
    if obj.get("success") is False and "error" in obj:
        raise SkillmarketError(f"API error: {obj.get('error')}")
    return obj


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        n = int(value)
    except (TypeError, ValueError):
        return default
    return n if n >= 0 else default


def _retry_after(resp: httpx.Response) -> float | None:
    value = resp.headers.get("retry-after")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class MarketplaceClient:
    """
    Authenticated gateway to the marketplace API.

    Every request carries the bearer token, an HMAC request signature and a
    timestamp, and is counted against the local rate limiter before it is sent.
    """

    def __init__(
        self,
        config: Config,
        authenticator: DeviceFlowAuthenticator,
        *,
        http: httpx.Client | None = None,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.auth = authenticator
        self.rate_limiter = rate_limiter or RateLimiter()
        self._clock = clock
        self._owns_http = http is None
        self._http = http or httpx.Client(
            timeout=config.timeout_s,
            follow_redirects=True,
            headers={"User-Agent": f"skillmarket-cli/{__version__}"},
        )

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "MarketplaceClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def base_url(self) -> str:
        return self.config.api_url.rstrip("/")

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{path}"

    def request(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: Any | None = None,
        _retry_auth: bool = True,
    ) -> httpx.Response:
        token = self.auth.get_authenticated_token()
        if token is None:
            raise AuthError('Not authenticated. Run "skillmarket login" first.')

        method = method.upper()
        body = json.dumps(json_body, separators=(",", ":")) if json_body is not None else ""
        timestamp = str(int(self._clock() * 1000))
        headers = {
            "Authorization": f"Bearer {token.access_token}",
            "X-Request-Signature": sign_request(method, path, timestamp, body, token.access_token),
            "X-Request-Timestamp": timestamp,
        }
        if body:
            headers["Content-Type"] = "application/json"

        self.rate_limiter.acquire(endpoint_category(path))

        try:
            resp = self._http.request(
                method,
                self._url(path),
                params=params,
                content=body.encode("utf-8") if body else None,
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"Request failed: {e}") from e

        if resp.status_code == 401 and _retry_auth:
            stored = self.auth.store.get()
            if stored is None or not stored.refresh_token:
                raise AuthError('Authentication expired. Please run "skillmarket login" again.')
            try:
                self.auth.refresh_token(stored.refresh_token)
            except AuthError as e:
                raise AuthError('Authentication expired. Please run "skillmarket login" again.') from e
            return self.request(method=method, path=path, params=params, json_body=json_body, _retry_auth=False)

        if resp.status_code == 429:
            retry_after = _retry_after(resp)
            wait = f"{retry_after:g}" if retry_after is not None else "a few"
            raise RateLimitError(
                f"Rate limit exceeded. Please wait {wait} seconds before retrying.",
                retry_after=retry_after,
            )

        if resp.status_code >= 400:
            raise HTTPStatusError(resp.status_code, resp.text)
        return resp

    def _json(self, resp: httpx.Response) -> Any:
        try:
            return _unwrap_success_envelope(resp.json())
        except json.JSONDecodeError as e:
            raise NetworkError(f"Expected a JSON response from {resp.request.url}") from e

    def search(
        self,
        query: str,
        *,
        content_type: str | None = None,
        category: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> SearchResult:
        params: dict[str, Any] = {"q": query}
        if content_type:
            params["type"] = content_type
        if category:
            params["category"] = category
        if limit:
            params["limit"] = limit
        if offset:
            params["offset"] = offset

        data = self._json(self.request(method="GET", path=SEARCH_PATH, params=params))
        raw_items = data.get("items") if isinstance(data, dict) else data
        items = [ContentItem.from_obj(x) for x in (raw_items or []) if isinstance(x, dict)]
        meta = data if isinstance(data, dict) else {}
        return SearchResult(
            items=items,
            total=_as_int(meta.get("total"), len(items)),
            page=_as_int(meta.get("page"), 1) or 1,
            limit=_as_int(meta.get("limit"), limit or len(items)),
        )

    def get_download_info(self, item: ContentItem, *, version: str | None = None) -> DownloadInfo:
        body: dict[str, Any] = {"id": item.id}
        if version:
            body["version"] = version
        path = f"{FUNCTIONS_PREFIX}/download-{quote(item.type, safe='')}"
        data = self._json(self.request(method="POST", path=path, json_body=body))
        if not isinstance(data, dict) or not isinstance(data.get("url"), str) or not data["url"]:
            raise SkillmarketError(f"Download endpoint returned no URL for {item.slug}.")
        integrity = data.get("integrityHash")
        size = data.get("size")
        return DownloadInfo(
            url=data["url"],
            version=str(data.get("version") or version or "latest"),
            size=int(size) if isinstance(size, (int, float)) else 0,
            integrity_hash=integrity if isinstance(integrity, str) and integrity else None,
        )

    def download_archive(self, url: str, dest: Path) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        url_origin = _origin(url)
        if url_origin is None or url_origin == _origin(self.base_url):
            resp = self.request(method="GET", path=url)
            dest.write_bytes(resp.content)
            return dest

        # Pre-signed storage URLs on another origin must not receive our token.
        try:
            with self._http.stream("GET", url) as resp:
                if resp.status_code >= 400:
                    resp.read()
                    raise HTTPStatusError(resp.status_code, resp.text)
                with dest.open("wb") as out:
                    for chunk in resp.iter_bytes():
                        out.write(chunk)
        except httpx.HTTPError as e:
            raise NetworkError(f"Download failed: {e}") from e
        return dest
