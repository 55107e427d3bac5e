from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Append-only JSON-lines record of auth, download and install events.

    Writing is best effort: a failed write is reported as a warning and never
    interrupts the operation being audited.
    """

    def __init__(self, log_file: Path, *, enabled: bool = True) -> None:
        self.log_file = log_file
        self.enabled = enabled

    def log(self, operation: str, *, success: bool, error: str | None = None, **fields: Any) -> None:
        if not self.enabled:
            return
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "operation": operation,
            "success": success,
        }
        if error is not None:
            entry["error"] = error
        for key, value in fields.items():
            if value is not None:
                entry[key] = value
        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            with self.log_file.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, sort_keys=True) + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.warning("Failed to write audit log: %s", e)

    def log_auth(self, operation: str, success: bool, error: str | None = None) -> None:
        self.log(f"auth.{operation}", success=success, error=error)

    def log_download(
        self,
        package_id: str,
        package_type: str,
        success: bool,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.log(
            "download",
            success=success,
            error=error,
            packageId=package_id,
            packageType=package_type,
            metadata=metadata,
        )

    def log_install(
        self,
        package_id: str,
        package_type: str,
        success: bool,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.log(
            "install",
            success=success,
            error=error,
            packageId=package_id,
            packageType=package_type,
            metadata=metadata,
        )

    def read_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        if not self.log_file.exists():
            return []
        try:
            lines = self.log_file.read_text(encoding="utf-8").splitlines()
        except OSError:
            return []
        entries: list[dict[str, Any]] = []
        for line in lines[-limit:] if limit > 0 else []:
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(obj, dict):
                entries.append(obj)
        entries.reverse()
        return entries
