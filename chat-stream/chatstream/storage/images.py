from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import List, Optional, Protocol

from chatstream.core.types import MessageImage

log = logging.getLogger("chatstream.images")


class ImageStore(Protocol):
    def upload(self, path: str, data: bytes) -> str:
        ...


class LocalImageStore:
    """Writes message images under ``root/<user>/<chat>/<message>/<uuid>``."""

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    def upload(self, path: str, data: bytes) -> str:
        target = self.root / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return path


def upload_message_images(
    store: ImageStore, images: List[MessageImage], user_id: str, chat_id: str, message_id: str
) -> List[str]:
    """Upload each image that has data; a failed upload is logged and left out of the result."""
    paths: List[str] = []
    for image in images:
        if image.data is None:
            continue
        path = f"{user_id}/{chat_id}/{message_id}/{uuid.uuid4().hex}"
        stored: Optional[str]
        try:
            stored = store.upload(path, image.data)
        except OSError as e:
            log.error({"event": "images.upload_failed", "path": path, "error": str(e)})
            stored = None
        if stored:
            paths.append(stored)
    return paths
