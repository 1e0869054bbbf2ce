"""Marshaling of requests and commands, with optional gzip compression."""

from __future__ import annotations

import gzip
import threading
import zlib
from dataclasses import dataclass
from typing import Any

from replidb.messages import (
    Command,
    DecodeError,
    LoadRequest,
    Noop,
    decode_message,
    encode_message,
)

DEFAULT_BATCH_THRESHOLD = 5
DEFAULT_SIZE_THRESHOLD = 150

NUM_REQUESTS = "num_requests"
NUM_COMPRESSED_REQUESTS = "num_compressed_requests"
NUM_UNCOMPRESSED_REQUESTS = "num_uncompressed_requests"
NUM_COMPRESSED_BYTES = "num_compressed_bytes"
NUM_PRECOMPRESSED_BYTES = "num_precompressed_bytes"
NUM_UNCOMPRESSED_BYTES = "num_uncompressed_bytes"
NUM_COMPRESSION_MISSES = "num_compression_misses"

_stats_lock = threading.Lock()
_stats = {
    name: 0
    for name in (
        NUM_REQUESTS,
        NUM_COMPRESSED_REQUESTS,
        NUM_UNCOMPRESSED_REQUESTS,
        NUM_COMPRESSED_BYTES,
        NUM_UNCOMPRESSED_BYTES,
        NUM_COMPRESSION_MISSES,
        NUM_PRECOMPRESSED_BYTES,
    )
}


def _add(name: str, amount: int) -> None:
    with _stats_lock:
        _stats[name] += amount


def marshaler_stats() -> dict[str, int]:
    """Return a snapshot of the marshaling counters."""
    with _stats_lock:
        return dict(_stats)


@dataclass
class RequestMarshaler:
    """Marshals requests, compressing them when that is worthwhile."""

    batch_threshold: int = DEFAULT_BATCH_THRESHOLD
    size_threshold: int = DEFAULT_SIZE_THRESHOLD
    force_compression: bool = False

    def marshal(self, requester) -> tuple[bytes, bool]:
        """Return the encoded requester and whether it is compressed."""
        _add(NUM_REQUESTS, 1)
        request = requester.request
        statements = request.statements if request is not None else []
        compress = len(statements) >= self.batch_threshold or any(
            len(s.sql) >= self.size_threshold for s in statements
        )

        data = encode_message(requester)
        _add(NUM_PRECOMPRESSED_BYTES, len(data))

        if compress:
            gz_data = gz_compress(data)
            if len(data) > len(gz_data) or self.force_compression:
                data = gz_data
                _add(NUM_COMPRESSED_REQUESTS, 1)
                _add(NUM_COMPRESSED_BYTES, len(data))
            else:
                compress = False
                _add(NUM_COMPRESSION_MISSES, 1)
        else:
            _add(NUM_UNCOMPRESSED_REQUESTS, 1)
            _add(NUM_UNCOMPRESSED_BYTES, len(data))
        return data, compress

    def stats(self) -> dict[str, Any]:
        return {
            "compression_size": self.size_threshold,
            "compression_batch": self.batch_threshold,
            "force_compression": self.force_compression,
        }


def marshal_command(command: Command) -> bytes:
    return encode_message(command)


def unmarshal_command(data: bytes) -> Command:
    return decode_message(data, Command)


def marshal_noop(noop: Noop) -> bytes:
    return encode_message(noop)


def unmarshal_noop(data: bytes) -> Noop:
    return decode_message(data, Noop)


def marshal_load_request(load_request: LoadRequest) -> bytes:
    """Encode and always compress a load request."""
    return gz_compress(encode_message(load_request))


def unmarshal_load_request(data: bytes) -> LoadRequest:
    return decode_message(gz_uncompress(data), LoadRequest)


def unmarshal_sub_command(command: Command, cls):
    """Decode the sub command of ``command`` as an instance of ``cls``."""
    data = command.sub_command
    if command.compressed:
        try:
            data = gz_uncompress(data)
        except ValueError as exc:
            raise ValueError(f"unmarshal sub uncompress: {exc}") from exc
    try:
        return decode_message(data, cls)
    except DecodeError as exc:
        raise DecodeError(f"proto unmarshal: {exc}") from exc


def gz_compress(data: bytes) -> bytes:
    """Gzip-compress at the best compression level."""
    return gzip.compress(bytes(data), compresslevel=9)


def gz_uncompress(data: bytes) -> bytes:
    """Decompress gzip data, raising ValueError when it is invalid."""
    try:
        return gzip.decompress(bytes(data))
    except (OSError, EOFError, zlib.error) as exc:
        raise ValueError(f"unmarshal gzip: {exc}") from exc