from __future__ import annotations

import logging
import os
import threading
from pathlib import Path, PurePosixPath
from urllib.parse import quote

logger = logging.getLogger(__name__)

CANDY_BUCKET = "candy-images"
PHOTO_BUCKET = "booth-photos"


class ObjectExistsError(FileExistsError):
    pass


class LocalObjectStore:
    """Bucketed object storage on the local filesystem with public URLs served by the app."""

    def __init__(self, root: Path, public_base_url: str) -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self._lock = threading.Lock()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, bucket: str, object_path: str) -> Path:
        parts = PurePosixPath(object_path).parts
        if not parts or any(part in ("..", "") for part in parts) or PurePosixPath(object_path).is_absolute():
            raise ValueError(f"invalid object path: {object_path!r}")
        if "/" in bucket or bucket in ("", ".", ".."):
            raise ValueError(f"invalid bucket: {bucket!r}")
        return self.root.joinpath(bucket, *parts)

    def put(self, bucket: str, object_path: str, data: bytes, content_type: str = "image/png") -> str:
        target = self._resolve(bucket, object_path)
        with self._lock:
            if target.exists():
                raise ObjectExistsError(f"{bucket}/{object_path} already exists")
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(target.name + ".part")
            with open(tmp, "wb") as fh:
                fh.write(data)
            os.replace(tmp, target)
        logger.info("Stored %s/%s (%d bytes, %s)", bucket, object_path, len(data), content_type)
        return self.public_url(bucket, object_path)

    def public_url(self, bucket: str, object_path: str) -> str:
        return f"{self.public_base_url}/media/{quote(bucket)}/{quote(object_path)}"
