"""On-disk store for uploads awaiting confirmation.

Each upload lives in ``<upload_dir>/<upload_id>/`` as the raw CSV plus a
small JSON sidecar naming the original file and the operator.  Confirmed
uploads are discarded; unconfirmed ones are swept once older than the TTL.
"""
from __future__ import annotations

import json
import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)

UPLOAD_TTL_SECONDS = 60 * 60
UPLOAD_SWEEP_INTERVAL = 60 * 5

FILE_NAME = "members.csv"
META_NAME = "upload.json"


@dataclass(frozen=True, slots=True)
class StoredUpload:
    upload_id: UUID
    path: Path
    filename: str
    operator_id: str


class UploadStore:
    def __init__(self, root: str | Path, ttl_seconds: int = UPLOAD_TTL_SECONDS) -> None:
        self.root = Path(root)
        self.ttl_seconds = ttl_seconds

    def _dir(self, upload_id: UUID) -> Path:
        return self.root / str(upload_id)

    def save(self, content: bytes, *, filename: str, operator_id: str) -> UUID:
        upload_id = uuid4()
        target = self._dir(upload_id)
        target.mkdir(parents=True, exist_ok=True)
        try:
            (target / FILE_NAME).write_bytes(content)
            (target / META_NAME).write_text(
                json.dumps({"filename": Path(filename).name, "operator_id": operator_id}),
                encoding="utf-8",
            )
        except OSError:
            shutil.rmtree(target, ignore_errors=True)
            raise
        return upload_id

    def load(self, upload_id: UUID) -> StoredUpload | None:
        """The stored upload, or ``None`` when it never existed or was swept."""
        target = self._dir(upload_id)
        source = target / FILE_NAME
        if not source.is_file():
            return None
        meta_path = target / META_NAME
        meta = json.loads(meta_path.read_text(encoding="utf-8")) if meta_path.is_file() else {}
        return StoredUpload(
            upload_id=upload_id,
            path=source,
            filename=meta.get("filename", FILE_NAME),
            operator_id=meta.get("operator_id", ""),
        )

    def discard(self, upload_id: UUID) -> None:
        shutil.rmtree(self._dir(upload_id), ignore_errors=True)

    def sweep(self, *, now: float | None = None) -> int:
        """Delete upload directories older than the TTL.  Returns how many went."""
        if not self.root.is_dir():
            return 0
        now = time.time() if now is None else now
        removed = 0
        for child in self.root.iterdir():
            if child.is_dir() and now - child.stat().st_mtime > self.ttl_seconds:
                logger.info("Sweeping expired upload %s", child.name)
                shutil.rmtree(child, ignore_errors=True)
                removed += 1
        return removed
