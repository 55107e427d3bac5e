from __future__ import annotations

import logging
import os
import shutil
import stat
import sys
import tempfile
import zipfile
from datetime import datetime, timezone
from pathlib import Path

from .config import Scope, ScopePaths, write_json_atomic
from .errors import SkillmarketError, VerificationError
from .integration import Registrar
from .verifier import REQUIRED_FILES, missing_required_files

logger = logging.getLogger(__name__)

INSTALL_META_FILENAME = ".install-metadata.json"
SCRIPT_SUFFIXES = (".sh", ".py")


def extract_zip(zip_path: Path, dest_dir: Path) -> None:
    dest_dir.mkdir(parents=True, exist_ok=True)
    base = dest_dir.resolve()
    with zipfile.ZipFile(zip_path, "r") as zf:
        for info in zf.infolist():
            name = info.filename
            if not name:
                continue
            if name.startswith(("/", "\\")):
                raise VerificationError(f"Archive contains an absolute path entry: {name!r}")
            target = (dest_dir / name).resolve()
            if not str(target).startswith(str(base) + os.sep) and target != base:
                raise VerificationError(f"Archive contains an invalid path entry: {name!r}")

            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)


def content_root(extracted_dir: Path, content_type: str) -> Path:
    """Return the package root, unwrapping a single top-level folder when the archive has one."""
    if not REQUIRED_FILES.get(content_type) or not missing_required_files(extracted_dir, content_type):
        return extracted_dir
    children = list(extracted_dir.iterdir())
    if len(children) == 1 and children[0].is_dir() and not missing_required_files(children[0], content_type):
        return children[0]
    return extracted_dir


def _check_package_name(name: str) -> str:
    cleaned = name.strip()
    if not cleaned or cleaned in {".", ".."} or "/" in cleaned or "\\" in cleaned:
        raise SkillmarketError(f"Invalid package name: {name!r}")
    return cleaned


def make_scripts_executable(package_dir: Path) -> None:
    if sys.platform.startswith("win"):
        return
    for path in package_dir.rglob("*"):
        if path.suffix not in SCRIPT_SUFFIXES or not path.is_file() or path.is_symlink():
            continue
        try:
            mode = path.stat().st_mode
            path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        except OSError as e:
            logger.warning("Could not mark %s executable: %s", path, e)


def write_install_metadata(package_dir: Path, *, name: str, content_type: str, version: str, scope: Scope) -> Path:
    path = package_dir / INSTALL_META_FILENAME
    write_json_atomic(
        path,
        {
            "name": name,
            "type": content_type,
            "installedAt": datetime.now(timezone.utc).isoformat(),
            "version": version,
            "scope": scope,
        },
    )
    return path


def install_package(
    zip_path: Path,
    package_name: str,
    *,
    scope: Scope,
    content_type: str,
    paths: ScopePaths,
    version: str | None = None,
    registrar: Registrar | None = None,
) -> Path:
    name = _check_package_name(package_name)
    type_dir = paths.content_type_dir(scope, content_type)
    type_dir.mkdir(parents=True, exist_ok=True)
    dest = type_dir / name

    tmp_root = paths.root(scope) / ".tmp"
    tmp_root.mkdir(parents=True, exist_ok=True)

    with tempfile.TemporaryDirectory(prefix="skillmarket-", dir=tmp_root) as td:
        unpack_root = Path(td) / "unpacked"
        extract_zip(zip_path, unpack_root)
        source_root = content_root(unpack_root, content_type)

        backup = dest.with_name(dest.name + ".skillmarket-backup")
        had_existing = dest.exists()
        if backup.exists():
            shutil.rmtree(backup, ignore_errors=True)
        if had_existing:
            dest.rename(backup)

        try:
            shutil.move(str(source_root), str(dest))
            write_install_metadata(dest, name=name, content_type=content_type, version=version or "latest", scope=scope)
        except Exception:
            if dest.exists():
                shutil.rmtree(dest, ignore_errors=True)
            if had_existing and backup.exists():
                backup.rename(dest)
            raise
        finally:
            if backup.exists():
                shutil.rmtree(backup, ignore_errors=True)

    try:
        tmp_root.rmdir()
    except OSError:
        pass

    make_scripts_executable(dest)

    if registrar is not None:
        try:
            registrar.register(content_type, name, dest, scope)
        except Exception as e:
            logger.warning("Failed to register %s in settings: %s", name, e)

    logger.info("Installed %s to %s", name, dest)
    return dest


def validate_package(package_dir: Path, content_type: str) -> bool:
    missing = missing_required_files(package_dir, content_type)
    for name in missing:
        logger.error("Missing required file: %s", name)
    return not missing
