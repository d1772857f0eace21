"""Uploaded-file handling for /api/analyze-file."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class Attachment:
    file_name: str
    data: bytes
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.data)


def file_snippet(attachment: Attachment, limit: int) -> str:
    """Leading text of the file, decoded as UTF-8; undecodable bytes are replaced."""
    return attachment.data.decode("utf-8", errors="replace")[:limit]


def compose_idea_text(note: str, attachment: Attachment | None, *, snippet_chars: int) -> str:
    """Combine the user's note with file metadata and a content snippet."""
    header = note.strip()
    snippet = ""
    if attachment is not None:
        meta = f"Uploaded file: {attachment.file_name} ({attachment.size} bytes)."
        header = f"{header}\n\n[Attached file]\n{meta}" if header else meta
        snippet = file_snippet(attachment, snippet_chars)
    if snippet:
        return f"{header}\n\n[File content snippet]\n{snippet}"
    return header


class LocalFileStorage:
    """Stores uploaded files under a local directory, keyed by relative path."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    @staticmethod
    def make_key(file_name: str) -> str:
        safe = _UNSAFE_NAME.sub("_", Path(file_name).name) or "upload"
        return f"uploads/{int(time.time() * 1000)}_{safe}"

    def upload(self, key: str, data: bytes) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info("upload event=stored key=%s bytes=%d", key, len(data))
        return key

    def url_for(self, key: str) -> str:
        return self._path(key).as_uri()

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)
        logger.info("upload event=deleted key=%s", key)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Invalid storage key: {key}")
        return path
