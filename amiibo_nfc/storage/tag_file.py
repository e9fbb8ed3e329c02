"""
Tag image files (.bin dumps).
"""

import logging
import os
import tempfile
from pathlib import Path

from ..tag.ntag215 import TOTAL_BYTES

logger = logging.getLogger(__name__)


class TagFile:
    """A 540-byte amiibo dump on disk."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> bytes:
        data = self.path.read_bytes()
        if len(data) != TOTAL_BYTES:
            raise ValueError(f"{self.path} is not a tag image: expected {TOTAL_BYTES} bytes, got {len(data)}")
        return data

    def save(self, data: bytes) -> None:
        """Write atomically: temp file in the same directory, then os.replace."""
        if len(data) != TOTAL_BYTES:
            raise ValueError(f"Expected {TOTAL_BYTES} bytes, got {len(data)}")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, self.path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info(f"Saved tag image to {self.path}")

    def __call__(self, data: bytes) -> None:
        self.save(data)
