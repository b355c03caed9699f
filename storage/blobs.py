"""Opaque ciphertext blobs on disk, keyed by node. No crypto awareness."""

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

import settings
from errors import NotFound

logger = logging.getLogger(__name__)


class BlobStore:
    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root) if root else settings.VAULT_ROOT / "blobs"
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, ref: str) -> Path:
        # refs are generated by us, but never let one escape the blob directory
        if Path(ref).name != ref:
            raise ValueError(f"invalid blob reference: {ref!r}")
        return self.root / ref

    def put(self, ref: str, ciphertext: bytes) -> None:
        fd, tmp = tempfile.mkstemp(prefix="blob.", suffix=".tmp", dir=str(self.root))
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(ciphertext)
            Path(tmp).replace(self._path(ref))
        finally:
            tmp_path = Path(tmp)
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)

    def get(self, ref: str) -> bytes:
        path = self._path(ref)
        if not path.exists():
            raise NotFound(f"Stored blob missing: {ref}")
        return path.read_bytes()

    def delete(self, ref: str) -> None:
        # a missing blob most likely means it was already deleted
        self._path(ref).unlink(missing_ok=True)
        logger.debug("deleted blob %s", ref)
