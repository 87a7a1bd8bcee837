"""Durable file storage for compliance artifacts.

Layout under ``upload_dir``:
    exports/         data portability archives (expire after 7 days)
    certificates/    deletion certificates (kept indefinitely)
    audit-archive/   legal-level e-signature events, one JSON file each

File I/O is synchronous; callers run it through ``asyncio.to_thread``.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog

log = structlog.get_logger(__name__)


class ArtifactStorage:
    def __init__(self, base_dir: Path | str) -> None:
        self.base_dir = Path(base_dir)

    @property
    def exports_dir(self) -> Path:
        return self.base_dir / "exports"

    @property
    def certificates_dir(self) -> Path:
        return self.base_dir / "certificates"

    @property
    def audit_archive_dir(self) -> Path:
        return self.base_dir / "audit-archive"

    def _safe_child(self, directory: Path, name: str) -> Path:
        # Artifact names are generated server-side; refuse anything path-like
        if not name or "/" in name or "\\" in name or name.startswith("."):
            raise ValueError(f"Invalid artifact name: {name!r}")
        return directory / name

    def export_path(self, file_name: str) -> Path:
        return self._safe_child(self.exports_dir, file_name)

    def certificate_path(self, file_name: str) -> Path:
        return self._safe_child(self.certificates_dir, file_name)

    def write_bytes(self, path: Path, data: bytes) -> int:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)
        return len(data)

    def read_bytes(self, path: Path) -> bytes:
        return path.read_bytes()

    def exists(self, path: Path) -> bool:
        return path.is_file()

    def delete(self, path: Path) -> bool:
        """Remove *path*; False when it was already gone."""
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        log.info("storage.artifact_deleted", file_name=path.name)
        return True

    def archive_event(self, tenant_id: str, event_id: str, document: dict[str, Any]) -> Path:
        path = self._safe_child(self.audit_archive_dir / tenant_id, f"{event_id}.json")
        payload = json.dumps(document, ensure_ascii=False, sort_keys=True, default=str)
        self.write_bytes(path, payload.encode("utf-8"))
        return path
