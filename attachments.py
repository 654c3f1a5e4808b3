import re
import time
from pathlib import Path
from typing import Optional

from config import get_settings

MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024


def _safe_name(filename: str) -> str:
    name = Path(filename or "").name
    name = re.sub(r"\s+", "_", name.strip())
    name = re.sub(r"[^A-Za-z0-9._-]", "", name)
    return name.lstrip(".") or "attachment"


class AttachmentStore:
    """Local-directory file store for receipts, addressed by reference strings."""

    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root) if root else get_settings().upload_dir

    def save(self, filename: str, content: bytes) -> str:
        if not content:
            raise ValueError("Empty file")
        if len(content) > MAX_ATTACHMENT_BYTES:
            raise ValueError("Attachment too large (max 10MB)")
        self.root.mkdir(parents=True, exist_ok=True)
        ref = f"{int(time.time() * 1000)}_{_safe_name(filename)}"
        (self.root / ref).write_bytes(content)
        return ref

    def path_for(self, ref: str) -> Path:
        return self.root / Path(ref).name

    def open_path(self, ref: str) -> Optional[Path]:
        path = self.path_for(ref)
        return path if path.is_file() else None

    def discard(self, ref: Optional[str]) -> None:
        if ref:
            self.path_for(ref).unlink(missing_ok=True)
