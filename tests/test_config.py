import json
import tempfile
import unittest
from pathlib import Path

from skillmarket.config import Config, ScopePaths, load_config, merge_overrides, redact_token, save_config


class TestConfigFile(unittest.TestCase):
    def test_save_and_load(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "sub" / "config.json"
            self.assertEqual(load_config(path), Config())
            save_config(Config(api_url="https://x.test", timeout_s=3.0), path)
            self.assertEqual(load_config(path), Config(api_url="https://x.test", timeout_s=3.0))

    def test_unknown_keys_are_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            path.write_text(json.dumps({"api_url": "https://y.test", "legacy": True}), encoding="utf-8")
            self.assertEqual(load_config(path).api_url, "https://y.test")

    def test_merge_precedence(self) -> None:
        base = Config(api_url="https://file.test", timeout_s=10.0)
        env = {"SKILLMARKET_API_URL": "https://env.test", "SKILLMARKET_TIMEOUT_S": "bogus"}
        merged = merge_overrides(base, environ=env)
        self.assertEqual(merged.api_url, "https://env.test")
        self.assertEqual(merged.timeout_s, 10.0)
        merged = merge_overrides(base, api_url="https://flag.test/", client_id="cid", environ=env)
        self.assertEqual(merged.api_url, "https://flag.test")
        self.assertEqual(merged.client_id, "cid")

    def test_redact_token(self) -> None:
        self.assertIsNone(redact_token(None))
        self.assertEqual(redact_token("abcdefghijklmnop"), "abcdef...mnop")


class TestScopePaths(unittest.TestCase):
    def test_layout(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cwd = Path(td).resolve()
            paths = ScopePaths.from_config(Config(global_dir=str(cwd / "g")), cwd=cwd)
            self.assertEqual(paths.local_dir, cwd / ".claude")
            self.assertEqual(paths.content_type_dir("global", "mcp"), cwd / "g" / "mcps")
            self.assertEqual(paths.content_type_dir("local", "settings"), cwd / ".claude" / "settings")
            self.assertEqual(paths.registry_path("local"), cwd / ".claude" / "registry.json")
            self.assertEqual(paths.history_path("global"), cwd / "g" / "version-history.json")
            self.assertEqual(paths.audit_log_path(), cwd / "g" / "audit.log")
            self.assertEqual(paths.detect_scope(), "global")
            (cwd / ".claude").mkdir()
            self.assertEqual(paths.detect_scope(), "local")
            with self.assertRaises(ValueError):
                paths.root("team")  # type: ignore[arg-type]


if __name__ == "__main__":
    unittest.main()
