from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol

from .config import Scope, ScopePaths, write_json_atomic

logger = logging.getLogger(__name__)

_PERMISSION_LISTS = ("allow", "ask", "deny", "additionalDirectories")
_CONCAT_LISTS = ("enabledPlugins", "enabledMcpjsonServers")
_OVERRIDE_KEYS = ("model", "modelConfig", "statusLine")


class Registrar(Protocol):
    def register(self, content_type: str, name: str, package_dir: Path, scope: Scope) -> None:
        ...

    def unregister(self, content_type: str, name: str, package_dir: Path, scope: Scope) -> None:
        ...


def _as_list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, list) else []


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def merge_settings(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """
    Merge a settings preset into existing settings.

    Permission lists, hook entries and the enable lists are concatenated,
    maps are updated key by key and a few scalar keys are overridden.
    Overlay values of the wrong shape are skipped.
    """
    merged = dict(base)

    if isinstance(overlay.get("permissions"), dict):
        base_perms = _as_dict(base.get("permissions"))
        perms = {**base_perms, **overlay["permissions"]}
        for key in _PERMISSION_LISTS:
            perms[key] = _as_list(base_perms.get(key)) + _as_list(overlay["permissions"].get(key))
        merged["permissions"] = perms

    if isinstance(overlay.get("env"), dict):
        merged["env"] = {**_as_dict(base.get("env")), **overlay["env"]}

    if isinstance(overlay.get("hooks"), dict):
        hooks = {k: _as_list(v) for k, v in _as_dict(base.get("hooks")).items()}
        for event, entries in overlay["hooks"].items():
            if not isinstance(entries, list):
                logger.warning("Ignoring hooks.%s in preset: expected a list", event)
                continue
            hooks[event] = hooks.get(event, []) + entries
        merged["hooks"] = hooks

    for key in _CONCAT_LISTS:
        if not isinstance(overlay.get(key), list):
            continue
        current = base.get(key)
        if isinstance(current, dict):
            # Object form maps name -> enabled; keep the user's flags.
            added = {n: True for n in overlay[key] if isinstance(n, str) and n not in current}
            merged[key] = {**current, **added}
        else:
            merged[key] = _as_list(current) + overlay[key]

    for key in _OVERRIDE_KEYS:
        if overlay.get(key):
            merged[key] = overlay[key]

    if isinstance(overlay.get("mcpApprovals"), dict):
        merged["mcpApprovals"] = {**_as_dict(base.get("mcpApprovals")), **overlay["mcpApprovals"]}

    return merged


def _read_json_object(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


class HostRegistrar:
    """
    Wires installed packages into the assistant's own ``settings.json`` for
    the scope: plugins are enabled, MCP servers declared, presets merged.
    """

    def __init__(self, paths: ScopePaths) -> None:
        self.paths = paths

    def load_settings(self, scope: Scope) -> dict[str, Any]:
        path = self.paths.settings_path(scope)
        if not path.exists():
            return {}
        data = _read_json_object(path)
        if data is None:
            logger.warning("Failed to load %s; starting from empty settings.", path)
            return {}
        return data

    def save_settings(self, settings: dict[str, Any], scope: Scope) -> None:
        write_json_atomic(self.paths.settings_path(scope), settings)

    def _mcp_server_name(self, name: str, package_dir: Path) -> str | None:
        mcp_json = package_dir / "mcp.json"
        if not mcp_json.is_file():
            return None
        cfg = _read_json_object(mcp_json) or {}
        server = cfg.get("name")
        return server if isinstance(server, str) and server else name

    def _enable(self, settings: dict[str, Any], key: str, name: str) -> bool:
        current = settings.get(key)
        if current is None:
            settings[key] = [name]
            return True
        if isinstance(current, list):
            if name in current:
                return False
            settings[key] = current + [name]
            return True
        if isinstance(current, dict):
            if current.get(name) is True:
                return False
            settings[key] = {**current, name: True}
            return True
        raise ValueError(f"Unexpected {key} value in settings: {type(current).__name__}")

    def _disable(self, settings: dict[str, Any], key: str, name: str) -> bool:
        current = settings.get(key)
        if isinstance(current, list) and name in current:
            settings[key] = [x for x in current if x != name]
            return True
        if isinstance(current, dict) and name in current:
            settings[key] = {k: v for k, v in current.items() if k != name}
            return True
        return False

    def register(self, content_type: str, name: str, package_dir: Path, scope: Scope) -> None:
        settings = self.load_settings(scope)

        if content_type == "hook":
            # Hook scripts are picked up from the hooks directory.
            logger.debug("Hook %s installed in %s", name, package_dir)
            return

        if content_type == "plugin":
            if self._enable(settings, "enabledPlugins", name):
                self.save_settings(settings, scope)
                logger.info("Plugin %s enabled in settings", name)
            return

        if content_type in ("mcp", "agent", "skill"):
            server = self._mcp_server_name(name, package_dir)
            if server is None:
                return
            if self._enable(settings, "enabledMcpjsonServers", server):
                self.save_settings(settings, scope)
                logger.info('MCP server "%s" enabled in settings', server)
            return

        if content_type == "settings":
            preset_path = package_dir / "settings.json"
            if not preset_path.is_file():
                return
            preset = _read_json_object(preset_path)
            if preset is None:
                raise ValueError(f"Settings preset is not a JSON object: {preset_path}")
            self.save_settings(merge_settings(settings, preset), scope)
            logger.info("Settings preset %s merged into settings", name)

    def unregister(self, content_type: str, name: str, package_dir: Path, scope: Scope) -> None:
        settings = self.load_settings(scope)
        changed = False

        if content_type == "plugin":
            changed = self._disable(settings, "enabledPlugins", name)

        if content_type in ("mcp", "agent", "skill"):
            server = self._mcp_server_name(name, package_dir)
            if server is not None:
                changed = self._disable(settings, "enabledMcpjsonServers", server)

        if changed:
            self.save_settings(settings, scope)
