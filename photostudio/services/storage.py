"""
Local disk storage for generated images
"""
import logging
import os
import uuid
from typing import Dict, Optional

import aiofiles

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
}


def extension_from_mime(mime_type: Optional[str]) -> str:
    """File extension for an image mime type (jpg when unknown)"""
    return EXTENSIONS.get((mime_type or "").lower(), "jpg")


class LocalFileStorage:
    """Stores files under a local directory and serves them by URL"""

    def __init__(self, local_path: str = "uploads", base_url: Optional[str] = None):
        self.local_path = local_path
        self.base_url = base_url.rstrip("/") if base_url else None
        os.makedirs(self.local_path, exist_ok=True)

    def url_for(self, filename: str) -> str:
        relative = f"{os.path.basename(os.path.normpath(self.local_path))}/{filename}"
        if self.base_url:
            return f"{self.base_url}/{relative}"
        return f"/{relative}"

    async def store(self, data: bytes, mime_type: str) -> Dict[str, str]:
        """
        Persist bytes under a random name.

        Returns:
            {"url", "path", "filename"}
        """
        filename = f"{uuid.uuid4()}.{extension_from_mime(mime_type)}"
        path = os.path.join(self.local_path, filename)

        async with aiofiles.open(path, "wb") as f:
            await f.write(data)

        logger.info(f"Stored {len(data)} bytes as {path}")
        return {"url": self.url_for(filename), "path": path, "filename": filename}

    async def read(self, path: str) -> bytes:
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    def exists(self, path: Optional[str]) -> bool:
        return bool(path) and os.path.isfile(path)
