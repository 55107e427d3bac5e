from __future__ import annotations

import hashlib
import logging
import re
import shutil
import tempfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path

from .errors import VerificationError

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 50 * 1024 * 1024

# Each tuple is a set of alternatives: any one file satisfies the requirement.
REQUIRED_FILES: dict[str, tuple[tuple[str, ...], ...]] = {
    "skill": (("SKILL.md",),),
    "agent": (("AGENT.md",),),
    "command": (),
    "hook": (),
    "plugin": (("plugin.json", "manifest.json"),),
    "mcp": (("mcp.json",),),
    "settings": (("settings.json",),),
}

SUSPICIOUS_EXTENSIONS = {".exe", ".dll", ".so", ".dylib", ".bat", ".sh", ".ps1"}

TEXT_EXTENSIONS = {".js", ".ts", ".py", ".sh", ".md", ".json", ".txt"}

MALICIOUS_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"eval\s*\(",
        r"exec\s*\(",
        r"system\s*\(",
        r"shell_exec",
        r"passthru",
        r"proc_open",
        r"popen",
        r"curl_exec",
        r"file_get_contents.*http",
        r"base64_decode",
    )
]


@dataclass
class VerificationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    hash: str | None = None
    expected_hash: str | None = None


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _hash_matches(path: Path, actual: str, expected_hash: str) -> bool:
    if actual != expected_hash.strip().lower():
        logger.warning("Package integrity check failed for %s (expected %s, got %s)", path.name, expected_hash, actual)
        return False
    logger.debug("Package integrity verified: %s", actual)
    return True


def verify_hash(path: Path, expected_hash: str) -> bool:
    return _hash_matches(path, sha256_file(path), expected_hash)


def missing_required_files(package_dir: Path, content_type: str) -> list[str]:
    missing: list[str] = []
    for alternatives in REQUIRED_FILES.get(content_type, ()):
        if not any((package_dir / name).is_file() for name in alternatives):
            missing.append(" or ".join(alternatives))
    return missing


def _walk_files(root: Path, errors: list[str]) -> list[Path]:
    files: list[Path] = []
    try:
        entries = sorted(root.iterdir())
    except OSError:
        errors.append(f"Error reading directory: {root}")
        return files
    for entry in entries:
        if entry.is_symlink():
            continue
        if entry.is_dir():
            files.extend(_walk_files(entry, errors))
        elif entry.is_file():
            files.append(entry)
    return files


def validate_structure(package_dir: Path, content_type: str) -> VerificationResult:
    errors = [f"Missing required file: {name}" for name in missing_required_files(package_dir, content_type)]

    for path in _walk_files(package_dir, errors):
        if path.suffix.lower() in SUSPICIOUS_EXTENSIONS:
            errors.append(f"Suspicious file detected: {path.relative_to(package_dir)}")
        size = path.stat().st_size
        if size > MAX_FILE_BYTES:
            errors.append(f"File too large: {path.relative_to(package_dir)} ({size / 1024 / 1024:.2f}MB)")

    return VerificationResult(valid=not errors, errors=errors)


def scan_for_malicious_content(package_dir: Path) -> VerificationResult:
    """
    Pattern lint over text files. This is a heuristic, not a sandbox: it
    reports files that mention dynamic evaluation, shell invocation or payload
    decoding so a human can look before the package is trusted.
    """
    errors: list[str] = []
    for path in _walk_files(package_dir, []):
        if path.suffix.lower() not in TEXT_EXTENSIONS:
            continue
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        for pattern in MALICIOUS_PATTERNS:
            if pattern.search(content):
                errors.append(f"Potentially malicious code detected in: {path}")
    return VerificationResult(valid=not errors, errors=errors)


def verify_package(
    archive_path: Path,
    package_dir: Path,
    content_type: str,
    expected_hash: str | None = None,
) -> VerificationResult:
    errors: list[str] = []
    actual_hash: str | None = None

    if expected_hash:
        actual_hash = sha256_file(archive_path)
        if not _hash_matches(archive_path, actual_hash, expected_hash):
            errors.append("Package hash verification failed")
            return VerificationResult(valid=False, errors=errors, hash=actual_hash, expected_hash=expected_hash)

    from .installer import content_root, extract_zip

    verify_dir = package_dir
    temp_dir: Path | None = None
    if not package_dir.exists():
        temp_dir = Path(tempfile.mkdtemp(prefix="skillmarket-verify-"))
        verify_dir = temp_dir

    try:
        if temp_dir is not None:
            try:
                extract_zip(archive_path, temp_dir)
            except (zipfile.BadZipFile, VerificationError) as e:
                errors.append(f"Could not extract package: {e}")
                return VerificationResult(valid=False, errors=errors, hash=actual_hash, expected_hash=expected_hash)
        root = content_root(verify_dir, content_type)
        errors.extend(validate_structure(root, content_type).errors)
        errors.extend(scan_for_malicious_content(root).errors)
    finally:
        if temp_dir is not None:
            shutil.rmtree(temp_dir, ignore_errors=True)

    return VerificationResult(valid=not errors, errors=errors, hash=actual_hash, expected_hash=expected_hash)
