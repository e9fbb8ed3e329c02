"""
Long-lived owner of the emulated reader.

The controller itself is not thread-safe: each check-then-act sequence must
run under the service lock. HTTP routes and the reader bridge all go through
``nfc_service.session()``.
"""

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from ..config import KEYS_PATH, TAG_DIR
from ..storage.key_store import KeyStore
from ..storage.tag_file import TagFile
from ..tag.amiibo_format import RawTagImage
from ..tag.ntag215 import TOTAL_BYTES
from .controller import TagDeviceController
from .types import DeviceState, TagProtocol

logger = logging.getLogger(__name__)


class NfcService:
    """Owns one TagDeviceController, its lock and its storage locations."""

    def __init__(self, keys_path: Path = KEYS_PATH, tag_dir: Path = TAG_DIR,
                 controller: Optional[TagDeviceController] = None):
        self.key_store = KeyStore(keys_path)
        self.tag_dir = Path(tag_dir)
        self.device = controller or TagDeviceController(self.key_store)
        self._lock = threading.RLock()

    @contextmanager
    def session(self) -> Iterator[TagDeviceController]:
        """Hold the device lock for a sequence of controller calls."""
        with self._lock:
            yield self.device

    def tag_path(self, data: bytes) -> Path:
        """Default file for a tag image: <tag_dir>/<serial>.bin."""
        return self.tag_dir / f"{RawTagImage(bytes(data)).serial.hex().upper()}.bin"

    def tag_writer(self, data: bytes, path: Optional[Path] = None) -> Optional[TagFile]:
        """The file flushes of this image go to; None for an image of the wrong size."""
        if len(data) != TOTAL_BYTES:
            return None
        return TagFile(path if path is not None else self.tag_path(data))

    def load_amiibo(self, data: bytes, path: Optional[Path] = None) -> bool:
        """
        Place a tag image on the reader, starting detection if needed.

        Flushes are written to ``path``, or to the default tag file.
        """
        with self._lock:
            device = self.device
            if device.state == DeviceState.UNAVAILABLE:
                device.initialize()
            if device.state in (DeviceState.TAG_FOUND, DeviceState.TAG_MOUNTED):
                device.close_tag()
            if device.state in (DeviceState.INITIALIZED, DeviceState.TAG_REMOVED):
                device.start_detection(TagProtocol.ALL)

            return device.load_tag(data, self.tag_writer(data, path))

    def resolve_tag_path(self, path: Union[str, Path]) -> Path:
        """
        Resolve a tag file name against the tag directory.

        Raises:
            ValueError: The path points outside the tag directory.
        """
        tag_dir = self.tag_dir.resolve()
        resolved = (tag_dir / path).resolve()
        if not resolved.is_relative_to(tag_dir):
            raise ValueError(f"{path} is outside the tag directory {tag_dir}")
        return resolved

    def load_amiibo_file(self, path: Union[str, Path]) -> bool:
        """
        Load a .bin dump from the tag directory; flushes write back to the same file.

        Raises:
            ValueError: The path points outside the tag directory.
        """
        path = self.resolve_tag_path(path)
        try:
            data = TagFile(path).load()
        except (OSError, ValueError) as e:
            logger.error(f"Could not load amiibo file {path}: {e}")
            return False
        return self.load_amiibo(data, path)

    def remove_amiibo(self) -> bool:
        with self._lock:
            return self.device.close_tag()


# Global singleton
nfc_service = NfcService()
