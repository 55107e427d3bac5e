from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Protocol

MANIFEST_CANDIDATES = ("package.json", "manifest.json", ".install-metadata.json")


@dataclass(frozen=True)
class PackageDependency:
    name: str
    type: str
    version: str | None = None
    optional: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.type)


@dataclass(frozen=True)
class PackageManifest:
    name: str
    type: str
    version: str
    dependencies: tuple[PackageDependency, ...] = field(default_factory=tuple)
    peer_dependencies: tuple[PackageDependency, ...] = field(default_factory=tuple)
    optional_dependencies: tuple[PackageDependency, ...] = field(default_factory=tuple)


class InstalledLike(Protocol):
    name: str
    type: str
    version: str


def _parse_dependency(raw: Any, *, default_type: str) -> PackageDependency | None:
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        # "name@version" shorthand
        if "@" in text[1:]:
            name, version = text.rsplit("@", 1)
            return PackageDependency(name=name.strip(), type=default_type, version=version.strip() or None)
        return PackageDependency(name=text, type=default_type)

    if not isinstance(raw, dict):
        return None
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    dep_type = raw.get("type")
    version = raw.get("version")
    return PackageDependency(
        name=name.strip(),
        type=dep_type.strip() if isinstance(dep_type, str) and dep_type.strip() else default_type,
        version=str(version).strip() if version not in (None, "") else None,
        optional=bool(raw.get("optional", False)),
    )


def _parse_dependency_list(raw: Any, *, default_type: str) -> tuple[PackageDependency, ...]:
    if not isinstance(raw, list):
        return ()
    deps = (_parse_dependency(item, default_type=default_type) for item in raw)
    return tuple(d for d in deps if d is not None)


def parse_manifest(obj: dict[str, Any]) -> PackageManifest:
    pkg_type = str(obj.get("type") or "skill")
    return PackageManifest(
        name=str(obj.get("name") or ""),
        type=pkg_type,
        version=str(obj.get("version") or ""),
        dependencies=_parse_dependency_list(obj.get("dependencies"), default_type=pkg_type),
        peer_dependencies=_parse_dependency_list(obj.get("peerDependencies"), default_type=pkg_type),
        optional_dependencies=_parse_dependency_list(obj.get("optionalDependencies"), default_type=pkg_type),
    )


def read_package_manifest(package_dir: Path) -> PackageManifest | None:
    for filename in MANIFEST_CANDIDATES:
        path = package_dir / filename
        if not path.is_file():
            continue
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            continue
        if isinstance(data, dict):
            return parse_manifest(data)
    return None


def _is_satisfied(dep: PackageDependency, installed: Iterable[InstalledLike]) -> bool:
    return any(
        pkg.name == dep.name and pkg.type == dep.type and (not dep.version or pkg.version == dep.version)
        for pkg in installed
    )


def resolve_dependencies(manifest: PackageManifest, installed: Iterable[InstalledLike]) -> list[PackageDependency]:
    """
    Declared dependencies and peer dependencies that no installed package
    satisfies. ``optional_dependencies`` is not consulted; a dependency is
    optional only through its own ``optional`` flag.
    """
    installed_list = list(installed)
    missing: list[PackageDependency] = []
    for dep in (*manifest.dependencies, *manifest.peer_dependencies):
        if not _is_satisfied(dep, installed_list):
            missing.append(dep)
    return missing
