# faceaccess/photos.py
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Iterable, Optional

from .config import UPLOADS_DIR, UPLOADS_URL_PREFIX
from .errors import StorageError
from .schemas import PhotoRef

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".bmp"}


class PhotoStorage:
    """Uploaded photos on disk, referenced from records by URL path."""

    def __init__(self, root=UPLOADS_DIR, url_prefix: str = UPLOADS_URL_PREFIX):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def save(self, data: bytes, filename: Optional[str] = None) -> PhotoRef:
        ext = Path(filename or "").suffix.lower()
        if ext not in ALLOWED_EXTENSIONS:
            ext = ".jpg"
        name = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}{ext}"
        try:
            with open(self.root / name, "wb") as f:
                f.write(data)
        except OSError as e:
            raise StorageError(f"Failed to save photo: {e}") from e
        return PhotoRef(url=f"{self.url_prefix}/{name}")

    def path_for(self, url: str) -> Optional[Path]:
        """Local file behind a photo URL; None for URLs outside the uploads dir."""
        if not url.startswith(self.url_prefix + "/"):
            return None
        name = os.path.basename(url)
        if not name or name in (".", ".."):
            return None
        return self.root / name

    def release(self, urls: Iterable[str]) -> int:
        """
        Delete the files behind urls and return how many were removed.
        Already missing files are skipped; files that cannot be deleted are
        logged and left behind, since their records are already gone.
        """
        removed = 0
        for url in urls:
            path = self.path_for(url)
            if path is None:
                logger.warning(f"Not releasing photo outside uploads dir: {url}")
                continue
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error(f"Failed to delete photo {url}: {e}")
        return removed
