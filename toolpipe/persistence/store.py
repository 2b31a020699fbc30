"""
Settings stores and the config repository built on them.

A store is the host persistence surface: opaque bytes under a string key.
ConfigRepository frames a Config through the codec into one such key and
falls back to the packaged defaults when nothing usable is stored.
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol, Union

from toolpipe.errors import ConfigParseError, SerializationError
from toolpipe.model.parsing import config_from_yaml, load_default_config
from toolpipe.model.tools import Config

from .codec import decode_config, encode_config

logger = logging.getLogger(__name__)

CONFIG_KEY = "config"

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


class SettingsStore(Protocol):
    def get_bytes(self, key: str) -> Optional[bytes]:
        ...

    def set_bytes(self, key: str, value: bytes) -> None:
        ...


class MemorySettingsStore:
    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self._values: Dict[str, bytes] = dict(initial or {})
        self._lock = threading.Lock()

    def get_bytes(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._values.get(key)

    def set_bytes(self, key: str, value: bytes) -> None:
        with self._lock:
            self._values[key] = bytes(value)


class FileSettingsStore:
    """One file per key under ``directory``; writes go through a temp file and ``os.replace``."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise ValueError(f"Invalid settings key: {key!r}")
        return self.directory / f"{key}.bin"

    def get_bytes(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def set_bytes(self, key: str, value: bytes) -> None:
        path = self._path(key)
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{key}-", dir=str(self.directory))
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(value)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.debug(f"[Store] Wrote {len(value)} bytes to {path}")


class ConfigRepository:
    """
    Loads and saves the Config blob.

    Args:
        store: Host persistence surface
        key: Settings key holding the blob
        padded: Whether the blob is pad4-wrapped
        default_factory: Config used when the stored blob is missing or corrupt
        override_file: YAML file that takes precedence over the store when set
    """

    def __init__(
        self,
        store: SettingsStore,
        key: str = CONFIG_KEY,
        padded: bool = True,
        default_factory: Callable[[], Config] = load_default_config,
        override_file: Optional[Union[str, Path]] = None,
    ):
        self.store = store
        self.key = key
        self.padded = padded
        self.default_factory = default_factory
        self.override_file = Path(override_file) if override_file else None

    def load(self) -> Config:
        if self.override_file is not None:
            try:
                config = config_from_yaml(self.override_file.read_text(encoding="utf-8"))
            except (OSError, ConfigParseError) as exc:
                logger.warning(f"[Config] Ignoring override file {self.override_file}: {exc}")
            else:
                logger.info(f"[Config] Loaded {self.override_file}: {config.counts()}")
                return config

        blob = self.store.get_bytes(self.key)
        if blob is not None:
            try:
                return decode_config(blob, padded=self.padded)
            except SerializationError as exc:
                logger.warning(f"[Config] Stored blob under '{self.key}' is unusable, using defaults: {exc}")
        else:
            logger.info(f"[Config] No stored config under '{self.key}', using defaults")

        config = self.default_factory()
        self.save(config)
        return config

    def save(self, config: Config) -> None:
        self.store.set_bytes(self.key, encode_config(config, pad=self.padded))
