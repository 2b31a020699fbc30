"""Module __init__: persisted configuration blobs."""
#
# PURPOSE:
# - **codec.py**: pad4 framing, zlib compression and Config (de)serialization
# - **store.py**: settings stores (memory, file) and the ConfigRepository
#

from .codec import (
    compress,
    decode_config,
    decompress,
    deserialize,
    encode_config,
    pad4,
    serialize,
    unpad4,
)
from .store import (
    CONFIG_KEY,
    ConfigRepository,
    FileSettingsStore,
    MemorySettingsStore,
    SettingsStore,
)

__all__ = [
    "compress",
    "decode_config",
    "decompress",
    "deserialize",
    "encode_config",
    "pad4",
    "serialize",
    "unpad4",
    "CONFIG_KEY",
    "ConfigRepository",
    "FileSettingsStore",
    "MemorySettingsStore",
    "SettingsStore",
]
