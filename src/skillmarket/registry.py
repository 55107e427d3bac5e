from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Any

from .config import SCOPES, Scope, ScopePaths, write_json_atomic

logger = logging.getLogger(__name__)

REGISTRY_VERSION = "1.0.0"


@dataclass(frozen=True)
class InstalledPackage:
    name: str
    type: str
    version: str
    installed_at: str
    path: str
    scope: Scope

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.name, self.type, self.scope)

    def to_obj(self) -> dict[str, Any]:
        d = asdict(self)
        d["installedAt"] = d.pop("installed_at")
        return d

    @classmethod
    def from_obj(cls, obj: dict[str, Any]) -> "InstalledPackage | None":
        try:
            return cls(
                name=str(obj["name"]),
                type=str(obj["type"]),
                version=str(obj.get("version") or ""),
                installed_at=str(obj.get("installedAt") or ""),
                path=str(obj.get("path") or ""),
                scope=obj["scope"],
            )
        except (KeyError, TypeError):
            return None


def _empty() -> dict[str, Any]:
    return {"packages": [], "version": REGISTRY_VERSION}


class Registry:
    """
    One ``registry.json`` per scope, rewritten wholesale on every change.
    There is no locking: concurrent invocations against one scope can lose writes.
    """

    def __init__(self, paths: ScopePaths) -> None:
        self.paths = paths

    def load(self, scope: Scope) -> list[InstalledPackage]:
        path = self.paths.registry_path(scope)
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("Failed to load registry %s, creating a new one.", path)
            return []
        if not isinstance(raw, dict) or not isinstance(raw.get("packages"), list):
            return []
        packages = (InstalledPackage.from_obj(p) for p in raw["packages"] if isinstance(p, dict))
        return [p for p in packages if p is not None]

    def save(self, packages: list[InstalledPackage], scope: Scope) -> None:
        payload = _empty()
        payload["packages"] = [p.to_obj() for p in packages]
        write_json_atomic(self.paths.registry_path(scope), payload)

    def add(self, pkg: InstalledPackage) -> None:
        packages = [p for p in self.load(pkg.scope) if p.key != pkg.key]
        packages.append(pkg)
        self.save(packages, pkg.scope)

    def remove(self, name: str, content_type: str, scope: Scope) -> None:
        key = (name, content_type, scope)
        packages = self.load(scope)
        self.save([p for p in packages if p.key != key], scope)

    def installed(self, scope: Scope | None = None, content_type: str | None = None) -> list[InstalledPackage]:
        scopes: tuple[Scope, ...] = (scope,) if scope else SCOPES
        out: list[InstalledPackage] = []
        for s in scopes:
            packages = [p for p in self.load(s) if p.scope == s]
            if content_type:
                packages = [p for p in packages if p.type == content_type]
            out.extend(packages)
        return out

    def find(
        self,
        name: str,
        *,
        scope: Scope | None = None,
        content_type: str | None = None,
    ) -> InstalledPackage | None:
        candidates = self.installed(scope, content_type)
        for pkg in candidates:
            if pkg.name == name:
                return pkg
        for pkg in candidates:
            if name in pkg.name:
                return pkg
        return None
