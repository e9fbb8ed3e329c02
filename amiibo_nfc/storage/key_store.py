"""
Master key file access.

The key file is read fresh on every load so that dropping a key file into
the data directory takes effect without a restart.
"""

import hashlib
import logging
from pathlib import Path

from ..crypto.keys import MASTER_KEYS_SIZE, AmiiboMasterKeys

logger = logging.getLogger(__name__)

# SHA-256 of the two halves of the community retail key file
RETAIL_DATA_KEY_SHA256 = "868106135941cbcab3552bd14880a7a34304ef340958a6998b61a38ba3ce13d3"
RETAIL_TAG_KEY_SHA256 = "b48727797cd2548200b99c665b20a78190470163ccb8e5682149f1b2f7a006cf"


class KeyStoreError(Exception):
    """The key file exists but cannot be used."""


class KeyStore:
    """Loads AmiiboMasterKeys from a 160-byte key file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def is_available(self) -> bool:
        return self.path.is_file()

    def load(self) -> AmiiboMasterKeys:
        """
        Read and parse the key file.

        Raises:
            OSError: The file cannot be read.
            KeyStoreError: The file has the wrong size or an invalid template.
        """
        data = self.path.read_bytes()
        if len(data) != MASTER_KEYS_SIZE:
            raise KeyStoreError(
                f"Key file {self.path} must be {MASTER_KEYS_SIZE} bytes, got {len(data)}"
            )

        try:
            keys = AmiiboMasterKeys.from_bytes(data)
        except ValueError as e:
            raise KeyStoreError(f"Invalid key file {self.path}: {e}") from e

        if not self.is_retail(keys):
            logger.info(f"Key file {self.path} does not match the retail keys")
        return keys

    @staticmethod
    def is_retail(keys: AmiiboMasterKeys) -> bool:
        return (
            hashlib.sha256(keys.data.to_bytes()).hexdigest() == RETAIL_DATA_KEY_SHA256
            and hashlib.sha256(keys.tag.to_bytes()).hexdigest() == RETAIL_TAG_KEY_SHA256
        )
