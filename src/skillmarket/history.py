from __future__ import annotations

import json
from datetime import datetime, timezone
from functools import cmp_to_key
from typing import Any

from .config import Scope, ScopePaths, write_json_atomic
from .versions import compare_versions


class VersionHistory:
    """Per-scope ``version-history.json``: every version ever installed for each package."""

    def __init__(self, paths: ScopePaths) -> None:
        self.paths = paths

    def load(self, scope: Scope) -> list[dict[str, Any]]:
        path = self.paths.history_path(scope)
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return []
        if not isinstance(raw, list):
            return []
        return [h for h in raw if isinstance(h, dict)]

    def save(self, history: list[dict[str, Any]], scope: Scope) -> None:
        write_json_atomic(self.paths.history_path(scope), history)

    def record(self, package_id: str, name: str, content_type: str, version: str, scope: Scope) -> None:
        history = self.load(scope)
        entry = next(
            (h for h in history if h.get("packageId") == package_id and h.get("packageType") == content_type),
            None,
        )
        if entry is None:
            entry = {
                "packageId": package_id,
                "packageName": name,
                "packageType": content_type,
                "versions": [],
                "currentVersion": version,
            }
            history.append(entry)

        versions = entry.setdefault("versions", [])
        if not any(v.get("version") == version for v in versions):
            versions.append(
                {
                    "version": version,
                    "installedAt": datetime.now(timezone.utc).isoformat(),
                    "canRollback": len(versions) > 0,
                }
            )
        entry["currentVersion"] = version
        self.save(history, scope)

    def rollback_versions(self, name: str, content_type: str, scope: Scope) -> list[dict[str, Any]]:
        entry = next(
            (
                h
                for h in self.load(scope)
                if h.get("packageName") == name and h.get("packageType") == content_type
            ),
            None,
        )
        if entry is None:
            return []
        current = entry.get("currentVersion")
        previous = [v for v in entry.get("versions", []) if v.get("version") != current]
        return sorted(
            previous,
            key=cmp_to_key(lambda a, b: compare_versions(str(a.get("version")), str(b.get("version")))),
            reverse=True,
        )
