import hashlib
import io
import tempfile
import unittest
import zipfile
from pathlib import Path
from unittest.mock import patch

from skillmarket import verifier
from skillmarket.verifier import (
    scan_for_malicious_content,
    sha256_file,
    validate_structure,
    verify_hash,
    verify_package,
)


def _zip_bytes(files: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


class TestHash(unittest.TestCase):
    def test_verify_hash(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "a.zip"
            path.write_bytes(b"hello")
            digest = hashlib.sha256(b"hello").hexdigest()
            self.assertEqual(sha256_file(path), digest)
            self.assertTrue(verify_hash(path, digest))
            self.assertTrue(verify_hash(path, digest.upper()))
            self.assertFalse(verify_hash(path, "0" * 64))


class TestStructure(unittest.TestCase):
    def test_required_files_per_type(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            result = validate_structure(root, "skill")
            self.assertFalse(result.valid)
            self.assertIn("Missing required file: SKILL.md", result.errors)

            self.assertTrue(validate_structure(root, "command").valid)
            self.assertTrue(validate_structure(root, "hook").valid)

            (root / "manifest.json").write_text("{}", encoding="utf-8")
            self.assertTrue(validate_structure(root, "plugin").valid)

            result = validate_structure(root, "mcp")
            self.assertEqual(result.errors, ["Missing required file: mcp.json"])

    def test_suspicious_extension_is_flagged(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "SKILL.md").write_text("# ok\n", encoding="utf-8")
            (root / "bin").mkdir()
            (root / "bin" / "tool.EXE").write_bytes(b"MZ")
            result = validate_structure(root, "skill")
        self.assertFalse(result.valid)
        self.assertEqual(result.errors, [f"Suspicious file detected: {Path('bin') / 'tool.EXE'}"])

    def test_large_file_is_flagged(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "SKILL.md").write_text("# ok\n", encoding="utf-8")
            (root / "data.bin").write_bytes(b"x" * 2048)
            with patch.object(verifier, "MAX_FILE_BYTES", 1024):
                result = validate_structure(root, "skill")
        self.assertEqual(len(result.errors), 1)
        self.assertTrue(result.errors[0].startswith("File too large: data.bin"))


class TestMaliciousScan(unittest.TestCase):
    def test_patterns_in_text_files(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "SKILL.md").write_text("# Demo\nJust instructions.\n", encoding="utf-8")
            self.assertTrue(scan_for_malicious_content(root).valid)

            (root / "helper.js").write_text("const x = EVAL (payload);\n", encoding="utf-8")
            # Binary-ish extensions are not scanned.
            (root / "blob.dat").write_text("eval(1)", encoding="utf-8")
            result = scan_for_malicious_content(root)
        self.assertFalse(result.valid)
        self.assertEqual(len(result.errors), 1)
        self.assertIn("helper.js", result.errors[0])


class TestVerifyPackage(unittest.TestCase):
    def test_valid_archive(self) -> None:
        data = _zip_bytes({"demo/SKILL.md": "# Demo\n", "demo/notes.txt": "hi\n"})
        with tempfile.TemporaryDirectory() as td:
            archive = Path(td) / "demo.zip"
            archive.write_bytes(data)
            result = verify_package(archive, Path(td) / "missing", "skill", hashlib.sha256(data).hexdigest())
        self.assertTrue(result.valid, result.errors)
        self.assertEqual(result.hash, hashlib.sha256(data).hexdigest())

    def test_hash_mismatch_short_circuits(self) -> None:
        data = _zip_bytes({"SKILL.md": "# Demo\n"})
        with tempfile.TemporaryDirectory() as td:
            archive = Path(td) / "demo.zip"
            archive.write_bytes(data)
            package_dir = Path(td) / "pkg"
            with patch.object(verifier, "validate_structure") as validate:
                result = verify_package(archive, package_dir, "skill", "f" * 64)
            validate.assert_not_called()
            self.assertFalse(package_dir.exists())
        self.assertFalse(result.valid)
        self.assertEqual(result.errors, ["Package hash verification failed"])
        self.assertEqual(result.expected_hash, "f" * 64)

    def test_temp_extraction_is_removed(self) -> None:
        data = _zip_bytes({"AGENT.md": "run eval(x)\n"})
        created: list[str] = []
        real_mkdtemp = tempfile.mkdtemp

        def tracking_mkdtemp(*args, **kwargs):
            path = real_mkdtemp(*args, **kwargs)
            created.append(path)
            return path

        with tempfile.TemporaryDirectory() as td:
            archive = Path(td) / "a.zip"
            archive.write_bytes(data)
            with patch.object(verifier.tempfile, "mkdtemp", side_effect=tracking_mkdtemp):
                result = verify_package(archive, Path(td) / "nope", "agent")

        self.assertFalse(result.valid)
        self.assertEqual(len(created), 1)
        self.assertFalse(Path(created[0]).exists())

    def test_unreadable_archive(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            archive = Path(td) / "bad.zip"
            archive.write_bytes(b"not a zip")
            result = verify_package(archive, Path(td) / "nope", "skill")
        self.assertFalse(result.valid)
        self.assertTrue(result.errors[0].startswith("Could not extract package"))


if __name__ == "__main__":
    unittest.main()
