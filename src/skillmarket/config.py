from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Literal

from platformdirs import user_config_path

DEFAULT_API_URL = "https://api.skillmarket.dev"
DEFAULT_CLIENT_ID = "skillmarket-cli"
DEFAULT_TIMEOUT_S = 30.0

Scope = Literal["global", "local"]
SCOPES: tuple[Scope, ...] = ("global", "local")

CONTENT_TYPES = ("skill", "agent", "command", "hook", "plugin", "mcp", "settings")

_TYPE_DIRS = {
    "skill": "skills",
    "agent": "agents",
    "command": "commands",
    "hook": "hooks",
    "plugin": "plugins",
    "mcp": "mcps",
    "settings": "settings",
}


@dataclass(frozen=True)
class Config:
    api_url: str = DEFAULT_API_URL
    client_id: str = DEFAULT_CLIENT_ID
    timeout_s: float = DEFAULT_TIMEOUT_S
    global_dir: str | None = None  # defaults to ~/.claude
    local_dir: str | None = None  # defaults to ./.claude
    audit_log: bool = True


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLMARKET_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("skillmarket") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def merge_overrides(
    base: Config,
    *,
    api_url: str | None = None,
    client_id: str | None = None,
    timeout_s: float | None = None,
    environ: dict[str, str] | None = None,
) -> Config:
    # Env overrides config; explicit arguments (CLI flags) override both.
    env = os.environ if environ is None else environ
    timeout: Any = timeout_s or env.get("SKILLMARKET_TIMEOUT_S") or base.timeout_s
    try:
        timeout_f = float(timeout)
    except (TypeError, ValueError):
        timeout_f = base.timeout_s
    return replace(
        base,
        api_url=(api_url or env.get("SKILLMARKET_API_URL") or base.api_url).rstrip("/"),
        client_id=client_id or env.get("SKILLMARKET_CLIENT_ID") or base.client_id,
        timeout_s=timeout_f,
    )


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]


class ScopePaths:
    """
    On-disk layout for both installation scopes.

    Each scope root holds ``registry.json``, ``version-history.json``,
    ``settings.json`` and one directory per content type.
    """

    def __init__(self, *, global_dir: Path, local_dir: Path) -> None:
        self.global_dir = global_dir
        self.local_dir = local_dir

    @classmethod
    def from_config(cls, cfg: Config, *, cwd: Path | None = None) -> "ScopePaths":
        global_dir = Path(cfg.global_dir).expanduser() if cfg.global_dir else Path.home() / ".claude"
        if cfg.local_dir:
            local_dir = Path(cfg.local_dir).expanduser()
        else:
            local_dir = (cwd or Path.cwd()) / ".claude"
        return cls(global_dir=global_dir.resolve(), local_dir=local_dir.resolve())

    def root(self, scope: Scope) -> Path:
        if scope == "global":
            return self.global_dir
        if scope == "local":
            return self.local_dir
        raise ValueError(f"Unknown scope: {scope!r}")

    def content_type_dir(self, scope: Scope, content_type: str) -> Path:
        return self.root(scope) / _TYPE_DIRS.get(content_type, content_type + "s")

    def registry_path(self, scope: Scope) -> Path:
        return self.root(scope) / "registry.json"

    def history_path(self, scope: Scope) -> Path:
        return self.root(scope) / "version-history.json"

    def settings_path(self, scope: Scope) -> Path:
        return self.root(scope) / "settings.json"

    def audit_log_path(self) -> Path:
        return self.global_dir / "audit.log"

    def detect_scope(self) -> Scope:
        return "local" if self.local_dir.exists() else "global"


def write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    tmp.replace(path)
