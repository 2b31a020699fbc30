"""Module codec: binary framing for persisted configuration blobs."""
#
# PURPOSE:
# Turns a Config into the opaque byte sequence handed to the host's settings
# store and back again.
#
# PIPELINE:
#   encode: Config -> canonical map -> compact JSON (UTF-8) -> zlib -> [pad4]
#   decode: [unpad4] -> zlib -> JSON -> canonical map -> Config
#
# PAD4 SCHEME:
# n = 4 - len(data) % 4 bytes are appended, each with value n (1..4). The
# last byte therefore always says how much to strip, including for empty
# input (which becomes b"\x04\x04\x04\x04").
#

import json
import logging
import zlib
from typing import Any, Dict

from toolpipe.errors import ConfigParseError, ErrorCode, SerializationError
from toolpipe.model.parsing import config_from_map, config_to_map
from toolpipe.model.tools import Config

logger = logging.getLogger(__name__)

ALIGNMENT = 4


def pad4(data: bytes) -> bytes:
    n = ALIGNMENT - len(data) % ALIGNMENT
    return bytes(data) + bytes([n]) * n


def unpad4(data: bytes) -> bytes:
    if not data or len(data) % ALIGNMENT:
        raise SerializationError(
            f"Padded data length {len(data)} is not a positive multiple of {ALIGNMENT}",
            code=ErrorCode.SERIAL_BAD_PADDING,
        )
    n = data[-1]
    if not 1 <= n <= ALIGNMENT or data[-n:] != bytes([n]) * n:
        raise SerializationError("Malformed pad4 trailer", code=ErrorCode.SERIAL_BAD_PADDING)
    return bytes(data[:-n])


def compress(data: bytes) -> bytes:
    return zlib.compress(data, 9)


def decompress(data: bytes) -> bytes:
    try:
        return zlib.decompress(data)
    except zlib.error as exc:
        raise SerializationError(f"Corrupt compressed blob: {exc}") from exc


def serialize(config: Config) -> bytes:
    return json.dumps(config_to_map(config), separators=(",", ":"), sort_keys=True).encode("utf-8")


def deserialize(data: bytes) -> Config:
    try:
        document: Dict[str, Any] = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SerializationError(
            f"Persisted config is not valid JSON: {exc}", code=ErrorCode.SERIAL_DECODE_FAILED
        ) from exc
    try:
        return config_from_map(document)
    except ConfigParseError as exc:
        raise SerializationError(
            f"Persisted config does not describe a valid Config: {exc.message}",
            code=ErrorCode.SERIAL_DECODE_FAILED,
            details=exc.to_dict(),
        ) from exc


def encode_config(config: Config, pad: bool = False) -> bytes:
    blob = compress(serialize(config))
    return pad4(blob) if pad else blob


def decode_config(blob: bytes, padded: bool = False) -> Config:
    if padded:
        blob = unpad4(blob)
    return deserialize(decompress(blob))
