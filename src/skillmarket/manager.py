from __future__ import annotations

import logging
import shutil
import tempfile
import zipfile
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from .audit import AuditLogger
from .client import ContentItem, DownloadInfo, SearchResult
from .config import Scope, ScopePaths
from .dependencies import read_package_manifest, resolve_dependencies
from .errors import NotFoundError, SkillmarketError, VerificationError
from .history import VersionHistory
from .installer import install_package
from .integration import Registrar
from .registry import InstalledPackage, Registry
from .verifier import verify_package
from .versions import compare_versions, is_valid_version

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 5


class Marketplace(Protocol):
    def search(
        self,
        query: str,
        *,
        content_type: str | None = None,
        category: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> SearchResult:
        ...

    def get_download_info(self, item: ContentItem, *, version: str | None = None) -> DownloadInfo:
        ...

    def download_archive(self, url: str, dest: Path) -> Path:
        ...


@dataclass(frozen=True)
class InstallRequest:
    name: str
    content_type: str
    version: str | None = None
    optional: bool = False
    required_by: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.content_type)


@dataclass
class InstallReport:
    installed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    failed_roots: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_roots


def _pick_item(name: str, items: list[ContentItem]) -> ContentItem:
    for item in items:
        if item.slug == name or item.name == name:
            return item
    return items[0]


@dataclass(frozen=True)
class UpdateCandidate:
    package: InstalledPackage
    latest_version: str


class PackageManager:
    """
    Install pipeline: search, download, verify, extract, register, record.

    Requested packages are processed one at a time; each package's dependency
    tree is drained from an explicit worklist before the next one starts.
    """

    def __init__(
        self,
        *,
        market: Marketplace,
        paths: ScopePaths,
        registry: Registry,
        history: VersionHistory | None = None,
        audit: AuditLogger | None = None,
        registrar: Registrar | None = None,
    ) -> None:
        self.market = market
        self.paths = paths
        self.registry = registry
        self.history = history
        self.audit = audit
        self.registrar = registrar

    def install(
        self,
        names: list[str],
        *,
        scope: Scope,
        content_type: str = "skill",
        version: str | None = None,
        skip_dependencies: bool = False,
    ) -> InstallReport:
        report = InstallReport()
        for name in names:
            root = InstallRequest(name=name, content_type=content_type, version=version)
            self._install_tree(root, scope=scope, report=report, skip_dependencies=skip_dependencies)
        return report

    def _install_tree(
        self,
        root: InstallRequest,
        *,
        scope: Scope,
        report: InstallReport,
        skip_dependencies: bool,
    ) -> None:
        worklist: deque[InstallRequest] = deque([root])
        visited: set[tuple[str, str]] = set()

        while worklist:
            req = worklist.popleft()
            if req.key in visited:
                logger.debug("Skipping %s (%s): already handled in this install", req.name, req.content_type)
                continue
            visited.add(req.key)

            try:
                install_dir, label = self.install_one(req, scope=scope)
            except (SkillmarketError, OSError, zipfile.BadZipFile) as e:
                self._record_failure(req, e, report)
                continue
            report.installed.append(label)

            if skip_dependencies:
                continue
            manifest = read_package_manifest(install_dir)
            if manifest is None:
                continue
            missing = resolve_dependencies(manifest, self.registry.installed(scope))
            if missing:
                logger.info("Installing %d dependencies of %s", len(missing), req.name)
            # Depth first: a dependency's own subtree completes before its next sibling.
            worklist.extendleft(
                reversed(
                    [
                        InstallRequest(
                            name=dep.name,
                            content_type=dep.type,
                            version=dep.version,
                            optional=dep.optional,
                            required_by=req.name,
                        )
                        for dep in missing
                    ]
                )
            )

    def _record_failure(self, req: InstallRequest, err: Exception, report: InstallReport) -> None:
        msg = str(err)
        if self.audit is not None:
            self.audit.log_install(req.name, req.content_type, False, msg)
        if req.required_by is None:
            logger.error("Failed to install %s: %s", req.name, msg)
            if isinstance(err, VerificationError):
                for detail in err.errors:
                    logger.error("  - %s", detail)
            report.failed.append(req.name)
            report.failed_roots.append(req.name)
            return
        if req.optional:
            warning = f"Optional dependency {req.name} of {req.required_by} failed (skipped): {msg}"
            logger.warning(warning)
            report.warnings.append(warning)
            return
        logger.error("Failed to install dependency %s of %s: %s", req.name, req.required_by, msg)
        report.failed.append(req.name)

    def install_one(self, req: InstallRequest, *, scope: Scope) -> tuple[Path, str]:
        result = self.market.search(req.name, content_type=req.content_type, limit=SEARCH_LIMIT)
        if not result.items:
            raise NotFoundError(f"Package not found: {req.name}")
        item = _pick_item(req.name, result.items)
        content_type = item.type or req.content_type

        info = self.market.get_download_info(item, version=req.version)
        if info.integrity_hash is None:
            logger.warning("No integrity hash declared for %s; skipping hash check.", item.slug)

        with tempfile.TemporaryDirectory(prefix="skillmarket-dl-") as td:
            archive = Path(td) / f"{item.slug}.zip"
            try:
                self.market.download_archive(info.url, archive)
            except SkillmarketError as e:
                if self.audit is not None:
                    self.audit.log_download(item.id, content_type, False, str(e))
                raise
            if self.audit is not None:
                self.audit.log_download(item.id, content_type, True, metadata={"version": info.version})

            verification = verify_package(archive, Path(td) / "inspect", content_type, info.integrity_hash)
            if not verification.valid:
                raise VerificationError(
                    f"Package verification failed for {item.slug}: {'; '.join(verification.errors)}",
                    verification.errors,
                )

            install_dir = install_package(
                archive,
                item.slug,
                scope=scope,
                content_type=content_type,
                paths=self.paths,
                version=info.version,
                registrar=self.registrar,
            )

        self.registry.add(
            InstalledPackage(
                name=item.slug,
                type=content_type,
                version=info.version,
                installed_at=datetime.now(timezone.utc).isoformat(),
                path=str(install_dir),
                scope=scope,
            )
        )
        if self.history is not None:
            try:
                self.history.record(item.id, item.slug, content_type, info.version, scope)
            except OSError as e:
                logger.warning("Could not record version history for %s: %s", item.slug, e)
        if self.audit is not None:
            self.audit.log_install(item.id, content_type, True, metadata={"version": info.version, "scope": scope})

        logger.info("Successfully installed %s@%s", item.name, info.version)
        return install_dir, f"{item.slug}@{info.version}"

    def uninstall(
        self, name: str, *, scope: Scope | None = None, content_type: str | None = None
    ) -> InstalledPackage:
        pkg = self.registry.find(name, scope=scope, content_type=content_type)
        if pkg is None:
            raise NotFoundError(f"Package not found: {name}")

        pkg_dir = Path(pkg.path)
        if self.registrar is not None:
            try:
                self.registrar.unregister(pkg.type, pkg.name, pkg_dir, pkg.scope)
            except Exception as e:
                logger.warning("Failed to unregister %s from settings: %s", pkg.name, e)
        if pkg_dir.exists():
            shutil.rmtree(pkg_dir)
        self.registry.remove(pkg.name, pkg.type, pkg.scope)
        logger.info("Successfully uninstalled %s", pkg.name)
        return pkg

    def check_updates(self, *, scope: Scope | None = None, names: list[str] | None = None) -> list[UpdateCandidate]:
        """
        Compare installed packages against the catalogue.

        Only exact slug or name matches count, and a catalogue version that is
        not a valid version string is never offered as an update.
        """
        candidates: list[UpdateCandidate] = []
        for pkg in self.registry.installed(scope):
            if names and pkg.name not in names:
                continue
            try:
                result = self.market.search(pkg.name, content_type=pkg.type, limit=SEARCH_LIMIT)
            except SkillmarketError as e:
                logger.warning("Could not check %s for updates: %s", pkg.name, e)
                continue
            item = next((i for i in result.items if pkg.name in (i.slug, i.name)), None)
            if item is None or not item.version or not is_valid_version(item.version):
                logger.debug("No comparable catalogue version for %s", pkg.name)
                continue
            if compare_versions(item.version, pkg.version) > 0:
                candidates.append(UpdateCandidate(package=pkg, latest_version=item.version))
        return candidates

    def update(self, names: list[str] | None = None, *, scope: Scope | None = None) -> InstallReport:
        report = InstallReport()
        if names:
            installed = {p.name for p in self.registry.installed(scope)}
            for name in names:
                if name not in installed:
                    self._record_failure(
                        InstallRequest(name=name, content_type="skill"),
                        NotFoundError(f"Package not installed: {name}"),
                        report,
                    )

        for candidate in self.check_updates(scope=scope, names=names):
            pkg = candidate.package
            logger.info("Updating %s %s -> %s", pkg.name, pkg.version, candidate.latest_version)
            root = InstallRequest(name=pkg.name, content_type=pkg.type, version=candidate.latest_version)
            self._install_tree(root, scope=pkg.scope, report=report, skip_dependencies=False)
        return report

    def rollback(
        self,
        name: str,
        *,
        version: str | None = None,
        scope: Scope | None = None,
        content_type: str | None = None,
    ) -> InstallReport:
        if self.history is None:
            raise SkillmarketError("Version history is not available.")
        pkg = self.registry.find(name, scope=scope, content_type=content_type)
        if pkg is None:
            raise NotFoundError(f"Package not found: {name}")

        previous = [str(v.get("version")) for v in self.history.rollback_versions(pkg.name, pkg.type, pkg.scope)]
        if not previous:
            raise NotFoundError(f"No previous version of {pkg.name} to roll back to.")
        target = version or previous[0]
        if target not in previous:
            raise NotFoundError(f"Version {target} of {pkg.name} is not a rollback candidate in {pkg.scope} scope.")

        logger.info("Rolling back %s %s -> %s", pkg.name, pkg.version, target)
        report = InstallReport()
        root = InstallRequest(name=pkg.name, content_type=pkg.type, version=target)
        self._install_tree(root, scope=pkg.scope, report=report, skip_dependencies=True)
        return report
