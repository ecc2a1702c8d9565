"""
Object storage for uploaded resource files.

Files live under STORAGE_DIR/<bucket>/<path> and are served by the app under
/files/<bucket>/<path>.
"""

from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Optional

from config import settings
from exceptions import InvalidInputError
from logging_config import logger


def resource_upload_path(node_id: str, filename: str, now: Optional[datetime] = None) -> str:
    """`<node>/<epoch millis>.<ext>`, keeping the uploaded file's extension."""
    now = now or datetime.now()
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else "bin"
    return f"{node_id}/{int(now.timestamp() * 1000)}.{ext}"


class FileStorage:
    def __init__(self, root: str, bucket: str, public_base_url: str):
        self.root = Path(root)
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")

    @property
    def bucket_dir(self) -> Path:
        return self.root / self.bucket

    def _resolve(self, path: str) -> Path:
        parts = PurePosixPath(path).parts
        if not parts or path.startswith("/") or ".." in parts:
            raise InvalidInputError("Invalid storage path", details={"path": path})
        return self.bucket_dir.joinpath(*parts)

    def upload(self, path: str, data: bytes) -> str:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.info(f"Stored {len(data)} bytes at {self.bucket}/{path}")
        return path

    def public_url(self, path: str) -> str:
        self._resolve(path)
        return f"{self.public_base_url}/files/{self.bucket}/{path}"

    def remove(self, path: str) -> bool:
        target = self._resolve(path)
        if target.exists():
            target.unlink()
            return True
        return False


storage = FileStorage(settings.STORAGE_DIR, settings.STORAGE_BUCKET, settings.PUBLIC_BASE_URL)


def get_storage() -> FileStorage:
    return storage
