import json
import tempfile
import unittest
from pathlib import Path

from skillmarket.config import ScopePaths
from skillmarket.history import VersionHistory
from skillmarket.registry import InstalledPackage, Registry
from skillmarket.versions import compare_versions, is_valid_version


def _pkg(name: str, type_: str = "skill", version: str = "1.0.0", scope: str = "global") -> InstalledPackage:
    return InstalledPackage(
        name=name,
        type=type_,
        version=version,
        installed_at="2025-01-01T00:00:00+00:00",
        path=f"/tmp/{name}",
        scope=scope,  # type: ignore[arg-type]
    )


class RegistryTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        tmp = Path(self._td.name)
        self.paths = ScopePaths(global_dir=tmp / "g", local_dir=tmp / "l")


class TestRegistry(RegistryTestCase):
    def test_add_replaces_same_key(self) -> None:
        reg = Registry(self.paths)
        reg.add(_pkg("demo", version="1.0.0"))
        reg.add(_pkg("demo", version="1.1.0"))
        reg.add(_pkg("demo", type_="agent", version="0.1.0"))
        reg.add(_pkg("demo", version="9.9.9", scope="local"))

        global_pkgs = reg.installed("global")
        self.assertEqual(sorted((p.type, p.version) for p in global_pkgs), [("agent", "0.1.0"), ("skill", "1.1.0")])
        self.assertEqual([p.version for p in reg.installed("local")], ["9.9.9"])
        self.assertEqual(len(reg.installed()), 3)

        raw = json.loads(self.paths.registry_path("global").read_text(encoding="utf-8"))
        self.assertEqual(raw["version"], "1.0.0")
        self.assertIn("installedAt", raw["packages"][0])

    def test_remove_and_filter(self) -> None:
        reg = Registry(self.paths)
        reg.add(_pkg("a"))
        reg.add(_pkg("b", type_="mcp"))
        self.assertEqual([p.name for p in reg.installed(content_type="mcp")], ["b"])
        reg.remove("a", "skill", "global")
        self.assertEqual([p.name for p in reg.installed("global")], ["b"])
        # Removing an unknown package is a no-op.
        reg.remove("zzz", "skill", "global")
        self.assertEqual(len(reg.installed("global")), 1)

    def test_find_prefers_exact_match(self) -> None:
        reg = Registry(self.paths)
        reg.add(_pkg("demo-skill-extra"))
        reg.add(_pkg("demo-skill"))
        found = reg.find("demo-skill")
        assert found is not None
        self.assertEqual(found.name, "demo-skill")
        partial = reg.find("extra")
        assert partial is not None
        self.assertEqual(partial.name, "demo-skill-extra")
        self.assertIsNone(reg.find("nope"))

    def test_corrupt_registry_reads_as_empty(self) -> None:
        path = self.paths.registry_path("local")
        path.parent.mkdir(parents=True)
        path.write_text("{broken", encoding="utf-8")
        reg = Registry(self.paths)
        with self.assertLogs("skillmarket.registry", level="WARNING"):
            self.assertEqual(reg.load("local"), [])
        reg.add(_pkg("x", scope="local"))
        self.assertEqual([p.name for p in reg.installed("local")], ["x"])


class TestVersionHistory(RegistryTestCase):
    def test_record_and_rollback_candidates(self) -> None:
        history = VersionHistory(self.paths)
        for v in ("1.0.0", "1.10.0", "1.2.0", "1.2.0"):
            history.record("id-1", "demo", "skill", v, "global")

        entries = history.load("global")
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0]["currentVersion"], "1.2.0")
        self.assertEqual([v["version"] for v in entries[0]["versions"]], ["1.0.0", "1.10.0", "1.2.0"])
        self.assertFalse(entries[0]["versions"][0]["canRollback"])
        self.assertTrue(entries[0]["versions"][1]["canRollback"])

        candidates = history.rollback_versions("demo", "skill", "global")
        self.assertEqual([v["version"] for v in candidates], ["1.10.0", "1.0.0"])
        self.assertEqual(history.rollback_versions("other", "skill", "global"), [])


class TestVersions(unittest.TestCase):
    def test_compare(self) -> None:
        self.assertEqual(compare_versions("1.2.0", "1.2"), 0)
        self.assertEqual(compare_versions("v1.10.0", "1.9.9"), 1)
        self.assertEqual(compare_versions("1.0.0-alpha", "1.0.0"), -1)
        self.assertEqual(compare_versions("1.0.0-alpha.2", "1.0.0-alpha.10"), -1)
        self.assertEqual(compare_versions("1.0.0+build.5", "1.0.0"), 0)
        self.assertEqual(compare_versions("latest", "latest"), 0)

    def test_is_valid_version(self) -> None:
        self.assertTrue(is_valid_version("2.0.0"))
        self.assertFalse(is_valid_version("latest"))
        self.assertFalse(is_valid_version(""))


if __name__ == "__main__":
    unittest.main()
