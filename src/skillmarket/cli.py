from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from dataclasses import asdict, replace
from typing import Any

from ._version import __version__
from .audit import AuditLogger
from .auth import DeviceFlowAuthenticator
from .client import MarketplaceClient
from .config import (
    CONTENT_TYPES,
    Config,
    Scope,
    ScopePaths,
    config_path,
    load_config,
    merge_overrides,
    redact_token,
    save_config,
)
from .credentials import KeyringCredentialStore
from .errors import AuthError, HTTPStatusError, NotFoundError, SkillmarketError
from .history import VersionHistory
from .integration import HostRegistrar
from .manager import InstallReport, PackageManager
from .registry import Registry
from .versions import is_valid_version

_HANDLER_NAME = "skillmarket-cli"


class _CliFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = super().format(record)
        if record.levelno == logging.INFO:
            return msg
        return f"{record.levelname.lower()}: {msg}"


def _configure_logging(verbose: bool) -> None:
    logger = logging.getLogger("skillmarket")
    for h in list(logger.handlers):
        if h.get_name() == _HANDLER_NAME:
            logger.removeHandler(h)
    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(_CliFormatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _runtime_cfg(args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    return merge_overrides(
        load_config(),
        api_url=getattr(args, "api_url", None),
        client_id=getattr(args, "client_id", None),
        timeout_s=getattr(args, "timeout_s", None),
    )


def _scope_arg(args: argparse.Namespace) -> Scope | None:
    if getattr(args, "global_scope", False):
        return "global"
    if getattr(args, "local_scope", False):
        return "local"
    return None


def _audit(cfg: Config, paths: ScopePaths) -> AuditLogger:
    return AuditLogger(paths.audit_log_path(), enabled=cfg.audit_log)


def _authenticator(cfg: Config, paths: ScopePaths) -> DeviceFlowAuthenticator:
    return DeviceFlowAuthenticator(cfg, KeyringCredentialStore(), audit=_audit(cfg, paths))


def _manager(cfg: Config, paths: ScopePaths, client: MarketplaceClient | None) -> PackageManager:
    return PackageManager(
        market=client,  # type: ignore[arg-type]
        paths=paths,
        registry=Registry(paths),
        history=VersionHistory(paths),
        audit=_audit(cfg, paths),
        registrar=HostRegistrar(paths),
    )


def _http_error_detail(body: str) -> str | None:
    text = body.strip()
    if not text:
        return None
    try:
        obj = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(obj, dict):
        for key in ("message", "detail", "error"):
            value = obj.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return text


def _format_http_error(err: HTTPStatusError) -> str:
    detail = _http_error_detail(err.body)
    if err.status_code == 403:
        base = "HTTP 403 Forbidden. You are authenticated but not allowed to access this resource."
    elif err.status_code == 404:
        base = "HTTP 404 Not Found. Resource does not exist or is not visible to your account."
    else:
        base = f"HTTP {err.status_code}"
    if detail:
        return f"{base} {detail}"
    return base


def _check_version_arg(version: str | None) -> None:
    if version is not None and not is_valid_version(version):
        raise SkillmarketError(f"Invalid version: {version!r} (expected e.g. 1.2.0)")


def _print_report(report: InstallReport) -> int:
    for key in report.installed:
        print(f"installed: {key}")
    for name in report.failed:
        print(f"failed: {name}")
    if report.failed:
        print(f"{len(report.installed)} installed, {len(report.failed)} failed")
    return 0 if report.ok else 1


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillmarket",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install skills, agents, commands, hooks, plugins, MCP servers and settings presets.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SKILLMARKET_API_URL, SKILLMARKET_CLIENT_ID, SKILLMARKET_TIMEOUT_S, SKILLMARKET_CONFIG_PATH
            """
        ),
    )

    def _add_runtime_overrides(parser: argparse.ArgumentParser) -> None:
        # Accepted both before and after the subcommand.
        parser.add_argument("--api-url", default=argparse.SUPPRESS, help="Marketplace API URL")
        parser.add_argument("--client-id", default=argparse.SUPPRESS, help="OAuth client id")
        parser.add_argument("--timeout-s", type=float, default=argparse.SUPPRESS, help="HTTP timeout in seconds")
        parser.add_argument(
            "-v", "--verbose", action="store_true", default=argparse.SUPPRESS, help="Enable debug logging"
        )

    def _add_scope_flags(parser: argparse.ArgumentParser) -> None:
        g = parser.add_mutually_exclusive_group()
        g.add_argument("-g", "--global", dest="global_scope", action="store_true", help="Use the global scope")
        g.add_argument("-l", "--local", dest="local_scope", action="store_true", help="Use the project scope")

    _add_runtime_overrides(p)
    p.add_argument("--version", action="version", version=f"skillmarket {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    for name, help_text in (
        ("login", "Authenticate with the marketplace (device flow)"),
        ("logout", "Remove stored credentials"),
        ("whoami", "Show the authenticated user"),
    ):
        _add_runtime_overrides(sub.add_parser(name, help=help_text))

    install = sub.add_parser("install", aliases=["i"], help="Install one or more packages")
    _add_runtime_overrides(install)
    install.add_argument("names", nargs="+", help="Package names")
    _add_scope_flags(install)
    install.add_argument("-t", "--type", dest="content_type", choices=CONTENT_TYPES, default="skill")
    install.add_argument("--version", dest="pkg_version", help="Version to install (default: latest)")
    install.add_argument("--skip-dependencies", action="store_true", help="Do not install declared dependencies")

    uninstall = sub.add_parser("uninstall", aliases=["remove", "rm"], help="Remove an installed package")
    _add_runtime_overrides(uninstall)
    uninstall.add_argument("name")
    _add_scope_flags(uninstall)
    uninstall.add_argument("-t", "--type", dest="content_type", choices=CONTENT_TYPES)

    update = sub.add_parser("update", aliases=["up"], help="Update installed packages to the latest version")
    _add_runtime_overrides(update)
    update.add_argument("names", nargs="*", help="Package names (default: all installed)")
    _add_scope_flags(update)
    update.add_argument("--check", action="store_true", help="Only list available updates")

    rollback = sub.add_parser("rollback", help="Reinstall a previously installed version")
    _add_runtime_overrides(rollback)
    rollback.add_argument("name")
    _add_scope_flags(rollback)
    rollback.add_argument("-t", "--type", dest="content_type", choices=CONTENT_TYPES)
    rollback.add_argument("--to", dest="pkg_version", help="Version to restore (default: newest previous)")
    rollback.add_argument("--list", action="store_true", help="Only list versions available for rollback")

    ls = sub.add_parser("list", aliases=["ls"], help="List installed packages")
    _add_runtime_overrides(ls)
    _add_scope_flags(ls)
    ls.add_argument("-t", "--type", dest="content_type", choices=CONTENT_TYPES)
    ls.add_argument("--json", action="store_true", help="Output JSON")

    search = sub.add_parser("search", aliases=["s"], help="Search the marketplace")
    _add_runtime_overrides(search)
    search.add_argument("query")
    search.add_argument("-t", "--type", dest="content_type", choices=CONTENT_TYPES)
    search.add_argument("-c", "--category")
    search.add_argument("--limit", type=int, default=20)
    search.add_argument("--json", action="store_true", help="Output JSON")

    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_show = cfg_sub.add_parser("show", help="Show effective config")
    _add_runtime_overrides(cfg_show)

    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--api-url", dest="set_api_url")
    cfg_set.add_argument("--client-id", dest="set_client_id")
    cfg_set.add_argument("--timeout-s", dest="set_timeout_s", type=float)
    cfg_set.add_argument("--global-dir", dest="set_global_dir", help="Global scope root (default: ~/.claude)")
    cfg_set.add_argument("--local-dir", dest="set_local_dir", help="Project scope root (default: ./.claude)")
    cfg_set.add_argument("--audit-log", dest="set_audit_log", action=argparse.BooleanOptionalAction, default=None)

    audit = sub.add_parser("audit", help="Show recent audit log entries")
    _add_runtime_overrides(audit)
    audit.add_argument("--limit", type=int, default=20)
    audit.add_argument("--json", action="store_true", help="Output JSON")

    return p


_CMD_ALIASES = {"i": "install", "remove": "uninstall", "rm": "uninstall", "up": "update", "ls": "list", "s": "search"}


def cmd_login(args: argparse.Namespace) -> int:
    cfg = _runtime_cfg(args)
    paths = ScopePaths.from_config(cfg)
    with _authenticator(cfg, paths) as auth:
        token = auth.login()
    print("Successfully logged in.")
    if token.user_id:
        print(f"user: {token.user_id}")
    return 0


def cmd_logout(args: argparse.Namespace) -> int:
    cfg = _runtime_cfg(args)
    paths = ScopePaths.from_config(cfg)
    with _authenticator(cfg, paths) as auth:
        auth.logout()
    print("Logged out.")
    return 0


def cmd_whoami(args: argparse.Namespace) -> int:
    cfg = _runtime_cfg(args)
    paths = ScopePaths.from_config(cfg)
    with _authenticator(cfg, paths) as auth:
        token = auth.get_authenticated_token()
        if token is None:
            raise AuthError('Not authenticated. Run "skillmarket login" first.')
        info = auth.fetch_user_info(token.access_token)
    for key in ("email", "username", "name", "id"):
        value = info.get(key)
        if isinstance(value, str) and value:
            print(f"{key}: {value}")
    print(f"token: {redact_token(token.access_token)}")
    print(f"expires: {token.expires_at.isoformat()}")
    return 0


def cmd_install(args: argparse.Namespace) -> int:
    _check_version_arg(args.pkg_version)
    cfg = _runtime_cfg(args)
    paths = ScopePaths.from_config(cfg)
    scope = _scope_arg(args) or paths.detect_scope()
    with _authenticator(cfg, paths) as auth, MarketplaceClient(cfg, auth) as client:
        report = _manager(cfg, paths, client).install(
            list(args.names),
            scope=scope,
            content_type=args.content_type,
            version=args.pkg_version,
            skip_dependencies=args.skip_dependencies,
        )

    return _print_report(report)


def cmd_uninstall(args: argparse.Namespace) -> int:
    cfg = _runtime_cfg(args)
    paths = ScopePaths.from_config(cfg)
    pkg = _manager(cfg, paths, None).uninstall(args.name, scope=_scope_arg(args), content_type=args.content_type)
    print(f"removed: {pkg.name} ({pkg.type}, {pkg.scope})")
    return 0


def cmd_update(args: argparse.Namespace) -> int:
    cfg = _runtime_cfg(args)
    paths = ScopePaths.from_config(cfg)
    names = list(args.names) or None
    with _authenticator(cfg, paths) as auth, MarketplaceClient(cfg, auth) as client:
        manager = _manager(cfg, paths, client)
        if not args.check:
            report = manager.update(names, scope=_scope_arg(args))
            if not report.installed and not report.failed:
                print("All packages are up to date.")
            return _print_report(report)
        candidates = manager.check_updates(scope=_scope_arg(args), names=names)

    if not candidates:
        print("All packages are up to date.")
        return 0
    rows = [["NAME", "TYPE", "SCOPE", "CURRENT", "LATEST"]]
    for c in candidates:
        rows.append([c.package.name, c.package.type, c.package.scope, c.package.version, c.latest_version])
    _print_table(rows)
    return 0


def cmd_rollback(args: argparse.Namespace) -> int:
    cfg = _runtime_cfg(args)
    paths = ScopePaths.from_config(cfg)
    _check_version_arg(args.pkg_version)

    if args.list:
        pkg = Registry(paths).find(args.name, scope=_scope_arg(args), content_type=args.content_type)
        if pkg is None:
            raise NotFoundError(f"Package not found: {args.name}")
        versions = VersionHistory(paths).rollback_versions(pkg.name, pkg.type, pkg.scope)
        if not versions:
            print(f"No previous versions of {pkg.name}.")
            return 0
        rows = [["VERSION", "INSTALLED AT"]]
        for v in versions:
            rows.append([str(v.get("version") or ""), str(v.get("installedAt") or "")])
        _print_table(rows)
        return 0

    with _authenticator(cfg, paths) as auth, MarketplaceClient(cfg, auth) as client:
        report = _manager(cfg, paths, client).rollback(
            args.name, version=args.pkg_version, scope=_scope_arg(args), content_type=args.content_type
        )
    return _print_report(report)


def cmd_list(args: argparse.Namespace) -> int:
    cfg = _runtime_cfg(args)
    paths = ScopePaths.from_config(cfg)
    packages = Registry(paths).installed(_scope_arg(args), args.content_type)

    if args.json:
        print(json.dumps([p.to_obj() for p in packages], indent=2, sort_keys=True))
        return 0

    if not packages:
        print("No packages installed.")
        return 0
    rows = [["NAME", "TYPE", "VERSION", "SCOPE"]]
    for p in sorted(packages, key=lambda x: (x.scope, x.type, x.name)):
        rows.append([p.name, p.type, p.version or "-", p.scope])
    _print_table(rows)
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    cfg = _runtime_cfg(args)
    paths = ScopePaths.from_config(cfg)
    with _authenticator(cfg, paths) as auth, MarketplaceClient(cfg, auth) as client:
        result = client.search(args.query, content_type=args.content_type, category=args.category, limit=args.limit)

    if args.json:
        print(json.dumps([item.raw for item in result.items], indent=2, sort_keys=True))
        return 0

    if not result.items:
        print("No results.")
        return 0
    rows = [["NAME", "TYPE", "VERSION", "DESCRIPTION"]]
    for item in result.items:
        desc = (item.description or "").replace("\n", " ")
        if len(desc) > 60:
            desc = desc[:57] + "..."
        rows.append([item.slug, item.type, item.version or "-", desc])
    _print_table(rows)
    print(f"{len(result.items)} of {result.total} result(s)")
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = _runtime_cfg(args)
        paths = ScopePaths.from_config(cfg)
        d: dict[str, Any] = asdict(cfg)
        d["global_dir"] = str(paths.global_dir)
        d["local_dir"] = str(paths.local_dir)
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        updates: dict[str, Any] = {}
        if args.set_api_url is not None:
            updates["api_url"] = args.set_api_url.rstrip("/")
        if args.set_client_id is not None:
            updates["client_id"] = args.set_client_id
        if args.set_timeout_s is not None:
            updates["timeout_s"] = args.set_timeout_s
        if args.set_global_dir is not None:
            updates["global_dir"] = args.set_global_dir or None
        if args.set_local_dir is not None:
            updates["local_dir"] = args.set_local_dir or None
        if args.set_audit_log is not None:
            updates["audit_log"] = args.set_audit_log
        path = save_config(replace(cfg, **updates))
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_audit(args: argparse.Namespace) -> int:
    cfg = _runtime_cfg(args)
    entries = _audit(cfg, ScopePaths.from_config(cfg)).read_recent(args.limit)

    if args.json:
        print(json.dumps(entries, indent=2, sort_keys=True))
        return 0

    if not entries:
        print("No audit entries.")
        return 0
    rows = [["TIMESTAMP", "OPERATION", "RESULT", "DETAIL"]]
    for e in entries:
        detail = e.get("error") or e.get("packageId") or ""
        rows.append(
            [
                str(e.get("timestamp") or ""),
                str(e.get("operation") or ""),
                "ok" if e.get("success") else "failed",
                str(detail),
            ]
        )
    _print_table(rows)
    return 0


_COMMANDS = {
    "login": cmd_login,
    "logout": cmd_logout,
    "whoami": cmd_whoami,
    "install": cmd_install,
    "uninstall": cmd_uninstall,
    "update": cmd_update,
    "rollback": cmd_rollback,
    "list": cmd_list,
    "search": cmd_search,
    "config": cmd_config,
    "audit": cmd_audit,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(getattr(args, "verbose", False))
    cmd = _CMD_ALIASES.get(args.cmd, args.cmd)
    try:
        return _COMMANDS[cmd](args)
    except HTTPStatusError as e:
        print(f"error: {_format_http_error(e)}", file=sys.stderr)
        return 1
    except SkillmarketError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
