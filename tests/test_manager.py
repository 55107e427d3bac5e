import hashlib
import io
import json
import tempfile
import unittest
import zipfile
from pathlib import Path

from skillmarket.audit import AuditLogger
from skillmarket.client import ContentItem, DownloadInfo, SearchResult
from skillmarket.config import ScopePaths
from skillmarket.errors import NotFoundError
from skillmarket.history import VersionHistory
from skillmarket.installer import INSTALL_META_FILENAME
from skillmarket.integration import HostRegistrar
from skillmarket.manager import PackageManager
from skillmarket.registry import Registry


def _zip_bytes(files: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


class FakeMarket:
    def __init__(self) -> None:
        self._items: dict[str, ContentItem] = {}
        self._archives: dict[tuple[str, str], bytes] = {}
        self._hash_override: dict[str, str] = {}
        self.searches: list[str] = []

    def add(
        self,
        slug: str,
        *,
        type_: str = "skill",
        version: str = "1.0.0",
        files: dict[str, str] | None = None,
        dependencies: list | None = None,
    ) -> None:
        files = dict(files or {"SKILL.md": f"# {slug} {version}\n"})
        if dependencies is not None:
            files["package.json"] = json.dumps(
                {"name": slug, "type": type_, "version": version, "dependencies": dependencies}
            )
        # The most recently added version is the one the catalogue advertises.
        self._items[slug] = ContentItem(id=f"id-{slug}", name=slug, slug=slug, type=type_, version=version)
        self._archives[(slug, version)] = _zip_bytes(files)

    def corrupt_hash(self, slug: str) -> None:
        self._hash_override[slug] = "0" * 64

    def search(self, query, *, content_type=None, category=None, limit=None, offset=None) -> SearchResult:
        self.searches.append(query)
        items = [
            item
            for item in self._items.values()
            if query in item.slug and (content_type is None or item.type == content_type)
        ]
        return SearchResult(items=items[: limit or None], total=len(items), page=1, limit=limit or 20)

    def get_download_info(self, item: ContentItem, *, version: str | None = None) -> DownloadInfo:
        pkg_version = version or self._items[item.slug].version or "1.0.0"
        data = self._archives[(item.slug, pkg_version)]
        return DownloadInfo(
            url=f"https://cdn.example.test/{item.slug}/{pkg_version}.zip",
            version=pkg_version,
            size=len(data),
            integrity_hash=self._hash_override.get(item.slug, hashlib.sha256(data).hexdigest()),
        )

    def download_archive(self, url: str, dest: Path) -> Path:
        slug, filename = url.rsplit("/", 2)[-2:]
        dest.write_bytes(self._archives[(slug, filename[: -len(".zip")])])
        return dest


class ManagerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        tmp = Path(self._td.name)
        self.paths = ScopePaths(global_dir=tmp / "home" / ".claude", local_dir=tmp / "proj" / ".claude")
        self.market = FakeMarket()
        self.registry = Registry(self.paths)
        self.audit = AuditLogger(self.paths.audit_log_path())
        self.manager = PackageManager(
            market=self.market,
            paths=self.paths,
            registry=self.registry,
            history=VersionHistory(self.paths),
            audit=self.audit,
            registrar=HostRegistrar(self.paths),
        )


class TestInstall(ManagerTestCase):
    def test_installs_demo_skill(self) -> None:
        self.market.add("demo-skill", version="1.0.0")
        report = self.manager.install(["demo-skill"], scope="global")

        self.assertTrue(report.ok)
        self.assertEqual(report.installed, ["demo-skill@1.0.0"])
        pkg_dir = self.paths.global_dir / "skills" / "demo-skill"
        meta = json.loads((pkg_dir / INSTALL_META_FILENAME).read_text(encoding="utf-8"))
        self.assertEqual((meta["name"], meta["version"], meta["scope"]), ("demo-skill", "1.0.0", "global"))

        [entry] = self.registry.installed("global")
        self.assertEqual((entry.name, entry.type, entry.version), ("demo-skill", "skill", "1.0.0"))
        self.assertEqual(Path(entry.path), pkg_dir)

        history = VersionHistory(self.paths).load("global")
        self.assertEqual(history[0]["currentVersion"], "1.0.0")

        ops = [(e["operation"], e["success"]) for e in reversed(self.audit.read_recent())]
        self.assertEqual(ops, [("download", True), ("install", True)])

    def test_prefers_exact_slug_match(self) -> None:
        self.market.add("demo-skill-pro")
        self.market.add("demo-skill")
        report = self.manager.install(["demo-skill"], scope="local")
        self.assertEqual(report.installed, ["demo-skill@1.0.0"])

    def test_dependency_installed_recursively(self) -> None:
        self.market.add("app", dependencies=["base-lib@2.0.0"])
        self.market.add("base-lib", version="2.0.0")
        report = self.manager.install(["app"], scope="global")

        self.assertTrue(report.ok)
        self.assertEqual(report.installed, ["app@1.0.0", "base-lib@2.0.0"])
        names = sorted(p.name for p in self.registry.installed("global"))
        self.assertEqual(names, ["app", "base-lib"])

    def test_satisfied_dependency_is_not_reinstalled(self) -> None:
        self.market.add("base-lib", version="2.0.0")
        self.market.add("app", dependencies=["base-lib@2.0.0"])
        self.manager.install(["base-lib"], scope="global")
        self.market.searches.clear()

        report = self.manager.install(["app"], scope="global")
        self.assertEqual(report.installed, ["app@1.0.0"])
        self.assertEqual(self.market.searches, ["app"])

    def test_dependency_cycle_terminates(self) -> None:
        # Pins that never match keep each side "missing" from the other's point of view.
        self.market.add("alpha", dependencies=["beta"])
        self.market.add("beta", dependencies=["alpha@9.9.9"])
        report = self.manager.install(["alpha"], scope="global")

        self.assertEqual(report.installed, ["alpha@1.0.0", "beta@1.0.0"])
        self.assertEqual(self.market.searches.count("alpha"), 1)

    def test_skip_dependencies(self) -> None:
        self.market.add("app", dependencies=["base-lib"])
        self.market.add("base-lib")
        report = self.manager.install(["app"], scope="global", skip_dependencies=True)
        self.assertEqual(report.installed, ["app@1.0.0"])

    def test_missing_package_does_not_abort_batch(self) -> None:
        self.market.add("demo-skill")
        report = self.manager.install(["nope", "demo-skill"], scope="global")

        self.assertFalse(report.ok)
        self.assertEqual(report.failed, ["nope"])
        self.assertEqual(report.installed, ["demo-skill@1.0.0"])
        failures = [e for e in self.audit.read_recent() if not e["success"]]
        self.assertEqual(failures[0]["packageId"], "nope")

    def test_hash_mismatch_leaves_nothing_installed(self) -> None:
        self.market.add("demo-skill")
        self.market.corrupt_hash("demo-skill")
        with self.assertLogs("skillmarket.manager", level="ERROR") as logs:
            report = self.manager.install(["demo-skill"], scope="global")

        self.assertFalse(report.ok)
        self.assertFalse((self.paths.global_dir / "skills" / "demo-skill").exists())
        self.assertEqual(self.registry.installed(), [])
        self.assertIn("Package hash verification failed", "\n".join(logs.output))

    def test_malicious_content_is_rejected(self) -> None:
        self.market.add("sneaky", files={"SKILL.md": "# x\n", "run.js": "eval(atob(payload))"})
        report = self.manager.install(["sneaky"], scope="global")
        self.assertEqual(report.failed, ["sneaky"])
        self.assertFalse((self.paths.global_dir / "skills" / "sneaky").exists())

    def test_optional_dependency_failure_is_a_warning(self) -> None:
        self.market.add("app", dependencies=[{"name": "extra", "optional": True}])
        report = self.manager.install(["app"], scope="global")

        self.assertTrue(report.ok)
        self.assertEqual(report.failed, [])
        self.assertEqual(len(report.warnings), 1)
        self.assertIn("extra", report.warnings[0])

    def test_required_dependency_failure_is_reported(self) -> None:
        self.market.add("app", dependencies=["base-lib"])
        report = self.manager.install(["app"], scope="global")

        self.assertTrue(report.ok)
        self.assertEqual(report.installed, ["app@1.0.0"])
        self.assertEqual(report.failed, ["base-lib"])


class TestUpdates(ManagerTestCase):
    def test_check_updates_lists_newer_catalogue_versions(self) -> None:
        self.market.add("demo-skill", version="1.0.0")
        self.market.add("steady", version="2.0.0")
        self.manager.install(["demo-skill", "steady"], scope="global")
        self.market.add("demo-skill", version="1.1.0")
        self.market.add("steady", version="latest")

        candidates = self.manager.check_updates()
        self.assertEqual([(c.package.name, c.package.version, c.latest_version) for c in candidates], [("demo-skill", "1.0.0", "1.1.0")])

    def test_update_reinstalls_newer_version_and_records_history(self) -> None:
        self.market.add("demo-skill", version="1.0.0")
        self.manager.install(["demo-skill"], scope="local")
        self.market.add("demo-skill", version="1.2.0")

        report = self.manager.update()

        self.assertTrue(report.ok)
        self.assertEqual(report.installed, ["demo-skill@1.2.0"])
        [entry] = self.registry.installed("local")
        self.assertEqual(entry.version, "1.2.0")
        skill_md = self.paths.local_dir / "skills" / "demo-skill" / "SKILL.md"
        self.assertEqual(skill_md.read_text(encoding="utf-8"), "# demo-skill 1.2.0\n")
        self.assertEqual(VersionHistory(self.paths).load("local")[0]["currentVersion"], "1.2.0")

    def test_update_of_uninstalled_name_fails(self) -> None:
        report = self.manager.update(["ghost"])
        self.assertFalse(report.ok)
        self.assertEqual(report.failed, ["ghost"])

    def test_update_with_nothing_newer_is_a_no_op(self) -> None:
        self.market.add("demo-skill")
        self.manager.install(["demo-skill"], scope="global")
        self.market.searches.clear()
        report = self.manager.update(["demo-skill"])
        self.assertTrue(report.ok)
        self.assertEqual(report.installed, [])
        self.assertEqual(self.market.searches, ["demo-skill"])


class TestRollback(ManagerTestCase):
    def test_rollback_to_previous_version(self) -> None:
        self.market.add("demo-skill", version="1.0.0")
        self.manager.install(["demo-skill"], scope="global")
        self.market.add("demo-skill", version="2.0.0")
        self.manager.update()

        report = self.manager.rollback("demo-skill")

        self.assertEqual(report.installed, ["demo-skill@1.0.0"])
        [entry] = self.registry.installed("global")
        self.assertEqual(entry.version, "1.0.0")
        history = VersionHistory(self.paths)
        self.assertEqual([v["version"] for v in history.rollback_versions("demo-skill", "skill", "global")], ["2.0.0"])

    def test_rollback_to_unknown_version(self) -> None:
        self.market.add("demo-skill", version="1.0.0")
        self.manager.install(["demo-skill"], scope="global")
        self.market.add("demo-skill", version="2.0.0")
        self.manager.update()
        with self.assertRaises(NotFoundError):
            self.manager.rollback("demo-skill", version="0.9.0")

    def test_rollback_without_history(self) -> None:
        self.market.add("demo-skill")
        self.manager.install(["demo-skill"], scope="global")
        with self.assertRaises(NotFoundError) as cm:
            self.manager.rollback("demo-skill")
        self.assertIn("No previous version", str(cm.exception))


class TestUninstall(ManagerTestCase):
    def test_uninstall_removes_files_registry_and_settings(self) -> None:
        self.market.add("my-plugin", type_="plugin", files={"plugin.json": "{}"})
        self.manager.install(["my-plugin"], scope="local", content_type="plugin")
        settings_path = self.paths.settings_path("local")
        self.assertEqual(json.loads(settings_path.read_text(encoding="utf-8"))["enabledPlugins"], ["my-plugin"])

        pkg = self.manager.uninstall("my-plugin")
        self.assertEqual(pkg.scope, "local")
        self.assertFalse((self.paths.local_dir / "plugins" / "my-plugin").exists())
        self.assertEqual(self.registry.installed(), [])
        self.assertEqual(json.loads(settings_path.read_text(encoding="utf-8"))["enabledPlugins"], [])

    def test_unregister_error_is_only_a_warning(self) -> None:
        class ExplodingRegistrar(HostRegistrar):
            def unregister(self, content_type, name, package_dir, scope) -> None:
                raise TypeError("bad settings shape")

        self.market.add("demo-skill")
        self.manager.install(["demo-skill"], scope="global")
        self.manager.registrar = ExplodingRegistrar(self.paths)

        with self.assertLogs("skillmarket.manager", level="WARNING") as logs:
            pkg = self.manager.uninstall("demo-skill")
        self.assertEqual(pkg.name, "demo-skill")
        self.assertIn("bad settings shape", "\n".join(logs.output))
        self.assertFalse((self.paths.global_dir / "skills" / "demo-skill").exists())
        self.assertEqual(self.registry.installed(), [])

    def test_uninstall_unknown(self) -> None:
        with self.assertRaises(NotFoundError):
            self.manager.uninstall("ghost", scope="global")


if __name__ == "__main__":
    unittest.main()
