import json
import zlib

import pytest

from toolpipe.errors import ErrorCode, SerializationError
from toolpipe.model.parsing import config_from_yaml
from toolpipe.persistence.codec import (
    compress,
    decode_config,
    decompress,
    encode_config,
    pad4,
    serialize,
    unpad4,
)

SAMPLE = """
messageViewers:
- name: Hex
  prefix: [xxd]
  inputMethod: filename
highlighters:
- name: JSON
  prefix: [grep, -q, json]
  inputMethod: stdin
  color: green
"""


@pytest.mark.parametrize("length", range(16))
def test_pad4_aligns_and_is_reversible(length):
    data = bytes(range(length))
    padded = pad4(data)
    assert len(padded) % 4 == 0
    assert len(padded) > len(data)
    n = padded[-1]
    assert 1 <= n <= 4
    assert padded[-n:] == bytes([n]) * n
    assert unpad4(padded) == data


def test_pad4_of_empty_input():
    assert pad4(b"") == b"\x04\x04\x04\x04"
    assert unpad4(b"\x04\x04\x04\x04") == b""


def test_pad4_when_already_aligned():
    assert pad4(b"abcd") == b"abcd\x04\x04\x04\x04"
    assert pad4(b"abc") == b"abc\x01"


@pytest.mark.parametrize("blob", [b"", b"abc", b"abc\x05", b"ab\x03\x03", b"abc\x00"])
def test_unpad4_rejects_malformed_trailers(blob):
    with pytest.raises(SerializationError) as excinfo:
        unpad4(blob)
    assert excinfo.value.code is ErrorCode.SERIAL_BAD_PADDING


def test_zlib_round_trip():
    payload = b"toolpipe " * 100
    compressed = compress(payload)
    assert len(compressed) < len(payload)
    assert decompress(compressed) == payload
    assert decompress(compress(b"")) == b""


def test_decompress_rejects_garbage():
    with pytest.raises(SerializationError) as excinfo:
        decompress(b"definitely not zlib")
    assert excinfo.value.code is ErrorCode.SERIAL_CORRUPT


def test_serialized_form_is_compact_camel_case_json():
    config = config_from_yaml(SAMPLE)
    document = json.loads(serialize(config))
    assert set(document) == {"messageViewers", "highlighters"}
    assert document["messageViewers"][0]["inputMethod"] == "filename"
    assert b": " not in serialize(config)


@pytest.mark.parametrize("pad", [False, True])
def test_config_round_trip(pad):
    config = config_from_yaml(SAMPLE)
    blob = encode_config(config, pad=pad)
    assert (len(blob) % 4 == 0) if pad else True
    assert decode_config(blob, padded=pad) == config


def test_unpadded_blob_is_plain_zlib():
    config = config_from_yaml(SAMPLE)
    assert zlib.decompress(encode_config(config)) == serialize(config)


def test_truncated_blob_is_rejected():
    blob = encode_config(config_from_yaml(SAMPLE))
    with pytest.raises(SerializationError):
        decode_config(blob[: len(blob) // 2])


def test_blob_that_is_not_json():
    with pytest.raises(SerializationError) as excinfo:
        decode_config(compress(b"\xff\xfe not json"))
    assert excinfo.value.code is ErrorCode.SERIAL_DECODE_FAILED


def test_blob_that_is_not_a_config():
    blob = compress(json.dumps({"macros": [{"name": "x"}]}).encode("utf-8"))
    with pytest.raises(SerializationError) as excinfo:
        decode_config(blob)
    assert excinfo.value.code is ErrorCode.SERIAL_DECODE_FAILED
    assert excinfo.value.details["type"] == "MissingFieldError"
