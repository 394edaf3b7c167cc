#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
network-optimizer: Network Optimization Layer for Real-Time State Replication
=============================================================================

A self-contained data pipeline for shipping frequently changing state between
peers over a constrained link: compact payloads, send only what changed,
smooth over latency with prediction, adapt output to the measured throughput
and deliver with bounded retries.

Quick Start:
-----------
    >>> from network_optimizer import NetworkOptimizer, OptimizerConfig
    >>>
    >>> optimizer = NetworkOptimizer(OptimizerConfig(min_compress_size=5))
    >>> data, was_compressed = optimizer.compress_data(b"aaaaaaaaaa")
    >>> optimizer.decompress_data(data, was_compressed)
    b'aaaaaaaaaa'

Key Features:
------------
    ✓ LZ77-style sliding window codec with decompression-bomb guards
    ✓ Optional zlib / lz4 / zstd codecs sharing the same size bounds
    ✓ Delta encoding of flat key-value states (JSON)
    ✓ Per-entity history with linear extrapolation and interpolation
    ✓ Rolling bandwidth statistics and an adaptive quality scalar
    ✓ Reliable delivery: ids, attempts, checksums, cancellable retry timers

Pipeline:
--------
    Outbound: state -> DeltaCodec.encode -> Compressor -> ReliableSender -> transport
    Inbound:  transport -> PacketReceiver (validate, decompress) -> DeltaCodec.decode

    PredictionBuffer and BandwidthMonitor are side channels fed by producers
    and by transport instrumentation.

Concurrency:
-----------
    Everything runs on a single cooperative heartbeat. Retry timers are
    callbacks armed through a Scheduler (ManualScheduler for tick-driven
    hosts, AsyncioScheduler for asyncio loops). No threads are spawned.

CLI Usage:
---------
    $ network-optimizer compress payload.bin -o payload.noz
    $ network-optimizer decompress payload.noz -o payload.bin
    $ network-optimizer delta current.json previous.json -o delta.json
    $ network-optimizer patch delta.json previous.json -o current.json
    $ network-optimizer benchmark --size 64
"""

from __future__ import annotations

__version__ = "1.2.0"
__license__ = "GPL-3.0-or-later"

# Public API exports
__all__ = [
    # Facade
    'NetworkOptimizer',
    'NetworkStats',

    # Codecs
    'LZ77Codec',
    'Compressor',
    'CompressionType',
    'CompressionRegistry',
    'CompressionStats',
    'CompressedPacket',
    'DeltaCodec',
    'EncodedState',
    'dump_state',

    # Prediction and monitoring
    'StateSample',
    'PredictionBuffer',
    'PredictionStats',
    'BandwidthSample',
    'BandwidthMonitor',
    'QualityAdapter',
    'LatencyTracker',

    # Scheduling
    'Scheduler',
    'ManualScheduler',
    'AsyncioScheduler',

    # Reliable delivery
    'ChecksumType',
    'compute_checksum',
    'WirePacket',
    'DeliveryState',
    'FailureReason',
    'OutboundMessage',
    'ReliableSender',
    'ReceiveResult',
    'PacketReceiver',

    # Exceptions
    'NetworkOptimizerError',
    'ValidationError',
    'IntegrityError',
    'TransientNetworkError',
    'ExhaustedRetriesError',
    'DeliveryCancelled',

    # Configuration
    'OptimizerConfig',
    'load_config',
    'configure_logging',

    # Validation functions
    'validate_payload',
    'check_compressed_size',

    # Constants
    'MAX_COMPRESSED_SIZE',
    'MAX_DECOMPRESSED_SIZE',
    'MAX_PAYLOAD_SIZE',
    'MIN_MATCH_LENGTH',
    'MAX_MATCH_LENGTH',
    'MAX_WINDOW_SIZE',

    # Utility functions
    'format_size',
    'format_time',
    'clamp',
]

import argparse
import asyncio
import base64
import binascii
import copy
import heapq
import io
import itertools
import json
import logging
import math
import os
import random
import struct
import sys
import time
import uuid
import zlib
from collections import deque
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import (
    Any, Callable, Deque, Dict, Hashable, List, Mapping, Optional,
    Protocol, Tuple, Union, cast
)

import xxhash
import lz4.frame  # type: ignore[import]
import zstandard  # type: ignore[import]

# Normalize untyped third-party modules to `Any` for strict type-checkers.
_lz4_frame: Any = cast(Any, lz4.frame)
_zstandard: Any = cast(Any, zstandard)

# ============================================================================
# CONSTANTS - Hard bounds and codec parameters
# ============================================================================
#
# The size bounds are security relevant: peers are untrusted, and a few bytes
# of back-references can describe megabytes of output.

MAX_COMPRESSED_SIZE = 10 * 1024 * 1024    # 10MB, checked before parsing
MAX_DECOMPRESSED_SIZE = 50 * 1024 * 1024  # 50MB, checked while reconstructing
MAX_PAYLOAD_SIZE = 1024 * 1024            # 1MB outbound limit for reliable sends

DEFAULT_MIN_COMPRESS_SIZE = 100
DEFAULT_WINDOW_SIZE = 4096
DEFAULT_LOOKAHEAD_SIZE = 18

# LZ77 token stream layout:
#
#   b != 0xFF                  literal byte
#   0xFF 0x00                  literal 0xFF
#   0xFF H D_hi D_lo [N]       back-reference
#
# H holds the match length minus TOKEN_LENGTH_BIAS in its low 7 bits and
# TOKEN_HAS_LITERAL in its high bit when a next literal N follows. The final
# reference of a stream may omit N when the match ends exactly at end of input.
TOKEN_MARKER = 0xFF
TOKEN_ESCAPE = 0x00
TOKEN_HAS_LITERAL = 0x80
TOKEN_LENGTH_MASK = 0x7F
TOKEN_LENGTH_BIAS = 2
TOKEN_HEADER_SIZE = 4

MIN_MATCH_LENGTH = 3
MAX_MATCH_LENGTH = TOKEN_LENGTH_MASK + TOKEN_LENGTH_BIAS  # 129
MAX_WINDOW_SIZE = 0xFFFF  # distance travels as u16

# Exponential smoothing: new = OLD_WEIGHT * old + (1 - OLD_WEIGHT) * sample
SMOOTHING_WEIGHT = 0.9

DEFAULT_BASE_UPDATE_RATE = 30  # Hz


# ============================================================================
# UTILITY FUNCTIONS - Formatting and helpers
# ============================================================================

def format_size(size: float) -> str:
    """
    Format byte size in human-readable format.

    Example:
        >>> format_size(1536)
        '1.50 KB'
    """
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(size) < 1024.0:
            return f"{size:.2f} {unit}" if unit != 'B' else f"{int(size)} {unit}"
        size = size / 1024.0
    return f"{size:.2f} PB"


def format_time(seconds: float) -> str:
    """
    Format time duration in human-readable format.

    Example:
        >>> format_time(0.00123)
        '1.23ms'
    """
    if seconds < 0.001:
        return f"{seconds * 1000000:.0f}µs"
    elif seconds < 1.0:
        return f"{seconds * 1000:.2f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    else:
        minutes = int(seconds // 60)
        secs = seconds % 60
        return f"{minutes}m {secs:.1f}s"


def clamp(value: float, low: float, high: float) -> float:
    """Clamp value into [low, high]."""
    return max(low, min(high, value))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ============================================================================
# TERMINAL COLORS - For CLI output (auto-detects TTY)
# ============================================================================

class Colors:
    """
    ANSI color helpers for the CLI.

    Disabled on non-TTY output and when the NO_COLOR environment variable is
    set, so piping to files stays clean.

    Example:
        >>> print(Colors.success("Operation completed"))
        [OK] Operation completed
    """
    _RESET = '\033[0m'
    _BOLD = '\033[1m'
    _RED = '\033[91m'
    _GREEN = '\033[92m'
    _YELLOW = '\033[93m'
    _BLUE = '\033[94m'

    @classmethod
    def _is_enabled(cls) -> bool:
        if os.environ.get('NO_COLOR'):
            return False
        return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()

    @classmethod
    def success(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._GREEN}✓{cls._RESET} {text}"
        return f"[OK] {text}"

    @classmethod
    def error(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._RED}✗{cls._RESET} {text}"
        return f"[ERROR] {text}"

    @classmethod
    def warning(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._YELLOW}⚠{cls._RESET} {text}"
        return f"[WARN] {text}"

    @classmethod
    def info(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._BLUE}ℹ{cls._RESET} {text}"
        return f"[INFO] {text}"

    @classmethod
    def bold(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._BOLD}{text}{cls._RESET}"
        return text


# ============================================================================
# CUSTOM EXCEPTIONS - Hierarchical exception system
# ============================================================================

class NetworkOptimizerError(Exception):
    """
    Base exception for all network-optimizer errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code (also used as the CLI exit status)

    Example:
        >>> raise NetworkOptimizerError("Operation failed", code=1)
    """
    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(NetworkOptimizerError):
    """
    Raised for malformed or out-of-bounds input.

    Non-byte payloads, oversized payloads, bad configuration values and
    malformed wire packets all land here. Never retried.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=2)


class IntegrityError(NetworkOptimizerError):
    """
    Raised when a compressed payload cannot be trusted.

    Covers unparseable token streams, size bounds exceeded during
    decompression and checksum mismatches. The payload is dropped.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=3)


class TransientNetworkError(NetworkOptimizerError):
    """A single send attempt failed at the transport layer (retryable)."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=4)


class ExhaustedRetriesError(NetworkOptimizerError):
    """
    Raised (or attached to the message) when a reliable send used up all
    of its attempts without an acknowledgement.
    """
    def __init__(self, message: str, message_id: str = "", attempts: int = 0) -> None:
        super().__init__(message, code=5)
        self.message_id = message_id
        self.attempts = attempts


class DeliveryCancelled(NetworkOptimizerError):
    """The caller cancelled an in-flight reliable send."""
    def __init__(self, message: str, message_id: str = "") -> None:
        super().__init__(message, code=6)
        self.message_id = message_id


# ============================================================================
# CONFIGURATION - Explicit, typed, defaulted options
# ============================================================================

# camelCase names used by peers and config files -> attribute names
_CONFIG_ALIASES: Dict[str, str] = {
    'minCompressSize': 'min_compress_size',
    'compressionEnabled': 'compression_enabled',
    'windowSize': 'window_size',
    'lookaheadSize': 'lookahead_size',
    'targetBandwidth': 'target_bandwidth',
    'minQuality': 'min_quality',
    'maxQuality': 'max_quality',
    'monitorInterval': 'monitor_interval',
    'predictionBufferCapacity': 'prediction_buffer_capacity',
    'ackTimeout': 'ack_timeout',
    'maxRetries': 'max_retries',
    'predictionEnabled': 'prediction_enabled',
    'interpolationTime': 'interpolation_time',
    'extrapolationTime': 'extrapolation_time',
    'adaptiveQuality': 'adaptive_quality',
    'maxPayloadSize': 'max_payload_size',
    'checksumType': 'checksum_type',
    'verboseLogging': 'verbose_logging',
}


@dataclass
class OptimizerConfig:
    """
    Configuration for every component of the optimizer.

    Each component receives the instance it should use; there is no global
    configuration table.

    Attributes:
        compression_enabled: Run outbound payloads through the compressor
        min_compress_size: Payloads shorter than this are sent as-is
        window_size: LZ77 sliding dictionary size in bytes
        lookahead_size: Longest LZ77 match considered
        algorithm: Codec name ('lz77', 'zlib', 'lz4', 'zstd', 'none')
        prediction_enabled: Feed and query prediction buffers
        prediction_buffer_capacity: Samples kept per entity
        interpolation_time: Render delay used for interpolation (seconds)
        extrapolation_time: Default look-ahead for prediction (seconds)
        monitor_interval: Bandwidth sliding window and tick period (seconds)
        adaptive_quality: Let the adapter move the quality scalar
        target_bandwidth: Throughput that maps to quality 1.0 (bytes/s)
        min_quality: Lower bound of the quality scalar
        max_quality: Upper bound of the quality scalar
        max_retries: Send attempts per reliable message
        ack_timeout: Seconds to wait for an acknowledgement per attempt
        max_payload_size: Largest payload accepted by reliable sends
        checksum_type: 'length' (default), 'crc32' or 'xxh64'
        verbose_logging: Log at INFO instead of WARNING

    Example:
        >>> config = OptimizerConfig.from_dict({"minCompressSize": 5})
        >>> config.min_compress_size
        5
    """
    compression_enabled: bool = True
    min_compress_size: int = DEFAULT_MIN_COMPRESS_SIZE
    window_size: int = DEFAULT_WINDOW_SIZE
    lookahead_size: int = DEFAULT_LOOKAHEAD_SIZE
    algorithm: str = "lz77"

    prediction_enabled: bool = True
    prediction_buffer_capacity: int = 10
    interpolation_time: float = 0.1
    extrapolation_time: float = 0.05

    monitor_interval: float = 1.0
    adaptive_quality: bool = True
    target_bandwidth: float = 1024 * 1024  # 1MB/s
    min_quality: float = 0.3
    max_quality: float = 1.0

    max_retries: int = 3
    ack_timeout: float = 1.0
    max_payload_size: int = MAX_PAYLOAD_SIZE
    checksum_type: str = "length"

    verbose_logging: bool = False

    def validate(self) -> 'OptimizerConfig':
        """
        Check every field for type and range.

        Returns:
            self, so calls can be chained

        Raises:
            ValidationError: On the first invalid field
        """
        if self.min_compress_size < 0:
            raise ValidationError(f"min_compress_size cannot be negative ({self.min_compress_size})")
        if not 1 <= self.window_size <= MAX_WINDOW_SIZE:
            raise ValidationError(
                f"window_size must be in 1..{MAX_WINDOW_SIZE}, got {self.window_size}"
            )
        if not MIN_MATCH_LENGTH <= self.lookahead_size <= MAX_MATCH_LENGTH:
            raise ValidationError(
                f"lookahead_size must be in {MIN_MATCH_LENGTH}..{MAX_MATCH_LENGTH}, "
                f"got {self.lookahead_size}"
            )
        try:
            CompressionType(self.algorithm)
        except ValueError:
            raise ValidationError(f"Unknown compression algorithm: {self.algorithm!r}") from None
        try:
            ChecksumType(self.checksum_type)
        except ValueError:
            raise ValidationError(f"Unknown checksum type: {self.checksum_type!r}") from None
        if self.prediction_buffer_capacity < 2:
            raise ValidationError(
                f"prediction_buffer_capacity must be at least 2, got {self.prediction_buffer_capacity}"
            )
        if self.interpolation_time < 0 or self.extrapolation_time < 0:
            raise ValidationError("interpolation_time and extrapolation_time cannot be negative")
        if self.monitor_interval <= 0:
            raise ValidationError(f"monitor_interval must be positive, got {self.monitor_interval}")
        if self.target_bandwidth <= 0:
            raise ValidationError(f"target_bandwidth must be positive, got {self.target_bandwidth}")
        if not 0 <= self.min_quality <= self.max_quality:
            raise ValidationError(
                f"quality range invalid: min={self.min_quality} max={self.max_quality}"
            )
        if self.max_retries < 1:
            raise ValidationError(f"max_retries must be at least 1, got {self.max_retries}")
        if self.ack_timeout <= 0:
            raise ValidationError(f"ack_timeout must be positive, got {self.ack_timeout}")
        if self.max_payload_size <= 0:
            raise ValidationError(f"max_payload_size must be positive, got {self.max_payload_size}")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'OptimizerConfig':
        """
        Build a validated config from snake_case or camelCase keys.

        Raises:
            ValidationError: On unknown keys or invalid values
        """
        known = set(cls.__dataclass_fields__)
        values: Dict[str, Any] = {}
        for key, value in data.items():
            name = _CONFIG_ALIASES.get(key, key)
            if name not in known:
                raise ValidationError(f"Unknown configuration option: {key!r}")
            values[name] = value
        try:
            config = cls(**values)
        except TypeError as e:
            raise ValidationError(f"Invalid configuration: {e}") from None
        return config.validate()


def load_config(path: str) -> OptimizerConfig:
    """
    Load an OptimizerConfig from a JSON file.

    Raises:
        ValidationError: If the file is not a JSON object or holds bad values
        OSError: If the file cannot be read
    """
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Config file {path} is not valid JSON: {e}") from None
    if not isinstance(data, dict):
        raise ValidationError(f"Config file {path} must contain a JSON object")
    return OptimizerConfig.from_dict(data)


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

logger = logging.getLogger('network-optimizer')
logger.setLevel(logging.WARNING)


def configure_logging(verbose: bool = False) -> None:
    """Install the default handler; INFO when verbose, WARNING otherwise."""
    level = logging.INFO if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    logger.setLevel(level)


# ============================================================================
# DATA STRUCTURES - Type-safe dataclasses
# ============================================================================

@dataclass
class CompressionStats:
    """
    Running compression statistics.

    Attributes:
        ratio: Smoothed compressed/original ratio of successful compressions
        total_saved: Bytes saved across all successful compressions
        total_processed: Original bytes of all successful compressions
        count: Number of successful compressions
    """
    ratio: float = 0.0
    total_saved: int = 0
    total_processed: int = 0
    count: int = 0

    def record(self, original_size: int, compressed_size: int) -> None:
        sample = compressed_size / original_size if original_size else 1.0
        self.ratio = self.ratio * SMOOTHING_WEIGHT + sample * (1 - SMOOTHING_WEIGHT)
        self.total_saved += original_size - compressed_size
        self.total_processed += original_size
        self.count += 1

    def reset(self) -> None:
        self.ratio = 0.0
        self.total_saved = 0
        self.total_processed = 0
        self.count = 0


_CONTAINER_MAGIC = b"NOZ1"
_CONTAINER_HEADER = struct.Struct(">4sBBI")  # magic, algorithm, flags, original size
_CONTAINER_FLAG_COMPRESSED = 0x01


@dataclass(frozen=True)
class CompressedPacket:
    """
    Output of the compressor.

    Invariant: when `compressed` is True the payload is strictly shorter than
    `original_size`; otherwise the payload is the original bytes.

    Attributes:
        payload: Bytes to put on the wire
        compressed: Whether payload went through a codec
        original_size: Size of the input before compression
        algorithm: Codec name used when compressed
    """
    payload: bytes
    compressed: bool
    original_size: int
    algorithm: str = "lz77"

    def __repr__(self) -> str:
        return (
            f"CompressedPacket(size={len(self.payload)}, original={self.original_size}, "
            f"compressed={self.compressed}, algorithm={self.algorithm})"
        )

    @property
    def ratio(self) -> float:
        """Compressed size / original size (1.0 when not compressed)."""
        if not self.original_size:
            return 1.0
        return len(self.payload) / self.original_size

    def to_bytes(self) -> bytes:
        """Serialize to the binary container used by the CLI."""
        algorithm_id = _ALGORITHM_IDS[CompressionType(self.algorithm)]
        flags = _CONTAINER_FLAG_COMPRESSED if self.compressed else 0
        return _CONTAINER_HEADER.pack(
            _CONTAINER_MAGIC, algorithm_id, flags, self.original_size
        ) + self.payload

    @classmethod
    def from_bytes(cls, blob: bytes) -> 'CompressedPacket':
        """
        Parse the binary container.

        Raises:
            ValidationError: On a short blob, bad magic or unknown algorithm
        """
        if len(blob) < _CONTAINER_HEADER.size:
            raise ValidationError(f"Container too short ({len(blob)} bytes)")
        magic, algorithm_id, flags, original_size = _CONTAINER_HEADER.unpack_from(blob)
        if magic != _CONTAINER_MAGIC:
            raise ValidationError(f"Bad container magic: {magic!r}")
        if algorithm_id not in _ALGORITHMS_BY_ID:
            raise ValidationError(f"Unknown algorithm id in container: {algorithm_id}")
        return cls(
            payload=bytes(blob[_CONTAINER_HEADER.size:]),
            compressed=bool(flags & _CONTAINER_FLAG_COMPRESSED),
            original_size=original_size,
            algorithm=_ALGORITHMS_BY_ID[algorithm_id].value,
        )


# ============================================================================
# INPUT VALIDATION
# ============================================================================

def validate_payload(data: Any, max_size: Optional[int] = None) -> bytes:
    """
    Validate a payload and normalize it to bytes.

    Args:
        data: bytes or bytearray
        max_size: Maximum allowed size (optional)

    Returns:
        The payload as immutable bytes

    Raises:
        ValidationError: If data is not bytes-like or exceeds max_size

    Example:
        >>> validate_payload(bytearray(b"hi"))
        b'hi'
        >>> validate_payload("string")  # Raises ValidationError
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise ValidationError(
            f"payload must be bytes or bytearray, got {type(data).__name__}"
        )
    data = bytes(data)
    if max_size is not None and len(data) > max_size:
        raise ValidationError(
            f"payload too large ({format_size(len(data))}), maximum {format_size(max_size)}"
        )
    return data


def check_compressed_size(size: int, limit: int = MAX_COMPRESSED_SIZE) -> None:
    """
    Reject compressed input above the hard bound before any parsing.

    Raises:
        IntegrityError: If size exceeds limit
    """
    if size > limit:
        raise IntegrityError(
            f"compressed data too large ({format_size(size)}), "
            f"maximum {format_size(limit)}: potential decompression bomb"
        )


def _output_limit_exceeded(limit: int) -> IntegrityError:
    return IntegrityError(
        f"decompressed data exceeds {format_size(limit)}: potential decompression bomb"
    )


# ============================================================================
# LZ77 CODEC - Sliding window dictionary compression
#
# The compressor walks the input left to right. At each cursor position it
# looks for the longest run (MIN_MATCH_LENGTH..lookahead_size) that starts
# inside the last window_size bytes. Candidate starts come from a hash chain
# keyed by the next MIN_MATCH_LENGTH bytes, so only positions that can match
# are compared. Matches may run past the cursor (overlapping copies), which is
# how runs of a single byte collapse into one token.
# ============================================================================

class LZ77Codec:
    """
    Reversible byte-level LZ77 codec.

    Args:
        min_compress_size: Inputs shorter than this are returned unchanged
        window_size: Sliding dictionary size (max distance of a reference)
        lookahead_size: Longest match emitted
        max_decompressed_size: Output bound enforced by decompress()
        max_compressed_size: Input bound enforced by decompress()

    Example:
        >>> codec = LZ77Codec(min_compress_size=5)
        >>> out, ok = codec.compress(b"aaaaaaaaaa")
        >>> ok, len(out) < 10
        (True, True)
        >>> codec.decompress(out)
        b'aaaaaaaaaa'
    """

    def __init__(
        self,
        min_compress_size: int = DEFAULT_MIN_COMPRESS_SIZE,
        window_size: int = DEFAULT_WINDOW_SIZE,
        lookahead_size: int = DEFAULT_LOOKAHEAD_SIZE,
        max_decompressed_size: int = MAX_DECOMPRESSED_SIZE,
        max_compressed_size: int = MAX_COMPRESSED_SIZE,
    ) -> None:
        if min_compress_size < 0:
            raise ValidationError(f"min_compress_size cannot be negative ({min_compress_size})")
        if not 1 <= window_size <= MAX_WINDOW_SIZE:
            raise ValidationError(f"window_size must be in 1..{MAX_WINDOW_SIZE}, got {window_size}")
        if not MIN_MATCH_LENGTH <= lookahead_size <= MAX_MATCH_LENGTH:
            raise ValidationError(
                f"lookahead_size must be in {MIN_MATCH_LENGTH}..{MAX_MATCH_LENGTH}, got {lookahead_size}"
            )
        self.min_compress_size = min_compress_size
        self.window_size = window_size
        self.lookahead_size = lookahead_size
        self.max_decompressed_size = max_decompressed_size
        self.max_compressed_size = max_compressed_size

    def __repr__(self) -> str:
        return (
            f"LZ77Codec(window={self.window_size}, lookahead={self.lookahead_size}, "
            f"min_size={self.min_compress_size})"
        )

    def compress(self, data: Union[bytes, bytearray]) -> Tuple[bytes, bool]:
        """
        Compress data into a token stream.

        Args:
            data: Input bytes

        Returns:
            (output, was_compressed). Inputs below min_compress_size come back
            unchanged with False. Otherwise output is always the token stream
            and was_compressed tells whether it is shorter than the input;
            callers should send the original bytes when it is False.

        Raises:
            ValidationError: If data is not bytes-like
        """
        data = validate_payload(data)
        n = len(data)
        if n == 0 or n < self.min_compress_size:
            return data, False

        out = bytearray()
        chains: Dict[bytes, Deque[int]] = {}
        window_size = self.window_size
        lookahead = self.lookahead_size

        def index(pos: int) -> None:
            key = data[pos:pos + MIN_MATCH_LENGTH]
            if len(key) == MIN_MATCH_LENGTH:
                chain = chains.get(key)
                if chain is None:
                    chains[key] = chain = deque()
                chain.append(pos)

        i = 0
        while i < n:
            best_length = 0
            best_distance = 0
            limit = min(lookahead, n - i)
            if limit >= MIN_MATCH_LENGTH:
                candidates = chains.get(data[i:i + MIN_MATCH_LENGTH])
                if candidates:
                    window_start = i - window_size
                    while candidates and candidates[0] < window_start:
                        candidates.popleft()
                    # Newest first: among equal lengths the nearest wins.
                    for j in reversed(candidates):
                        length = MIN_MATCH_LENGTH
                        while length < limit and data[j + length] == data[i + length]:
                            length += 1
                        if length > best_length:
                            best_length = length
                            best_distance = i - j
                            if length == limit:
                                break

            if best_length >= MIN_MATCH_LENGTH:
                end = i + best_length
                header = best_length - TOKEN_LENGTH_BIAS
                if end < n:
                    out.append(TOKEN_MARKER)
                    out.append(header | TOKEN_HAS_LITERAL)
                    out += best_distance.to_bytes(2, 'big')
                    out.append(data[end])
                else:
                    out.append(TOKEN_MARKER)
                    out.append(header)
                    out += best_distance.to_bytes(2, 'big')
                for pos in range(i, min(end + 1, n)):
                    index(pos)
                i = end + 1
            else:
                byte = data[i]
                out.append(byte)
                if byte == TOKEN_MARKER:
                    out.append(TOKEN_ESCAPE)
                index(i)
                i += 1

        result = bytes(out)
        was_compressed = len(result) < n
        logger.debug(
            f"lz77: {n} -> {len(result)} bytes ({len(result) / n:.1%})"
            + ("" if was_compressed else " not worth it")
        )
        return result, was_compressed

    def decompress(self, data: Union[bytes, bytearray]) -> bytes:
        """
        Rebuild the original bytes from a token stream.

        Back-references copy from the already reconstructed output, byte by
        byte when source and destination overlap.

        Args:
            data: Token stream produced by compress()

        Returns:
            The original bytes

        Raises:
            ValidationError: If data is not bytes-like
            IntegrityError: On oversized input, malformed tokens or when the
                output would exceed max_decompressed_size
        """
        data = validate_payload(data)
        check_compressed_size(len(data), self.max_compressed_size)

        limit = self.max_decompressed_size
        out = bytearray()
        n = len(data)
        i = 0
        while i < n:
            byte = data[i]
            if byte != TOKEN_MARKER:
                if len(out) >= limit:
                    raise _output_limit_exceeded(limit)
                out.append(byte)
                i += 1
                continue

            if i + 1 >= n:
                raise IntegrityError(f"truncated token at offset {i}")
            header = data[i + 1]
            if header == TOKEN_ESCAPE:
                if len(out) >= limit:
                    raise _output_limit_exceeded(limit)
                out.append(TOKEN_MARKER)
                i += 2
                continue

            if header & TOKEN_LENGTH_MASK == 0:
                raise IntegrityError(f"invalid match length in token at offset {i}")
            length = (header & TOKEN_LENGTH_MASK) + TOKEN_LENGTH_BIAS
            if length < MIN_MATCH_LENGTH:
                raise IntegrityError(f"match length {length} below minimum at offset {i}")
            if i + TOKEN_HEADER_SIZE > n:
                raise IntegrityError(f"truncated back-reference at offset {i}")
            distance = (data[i + 2] << 8) | data[i + 3]
            if distance == 0 or distance > len(out):
                raise IntegrityError(
                    f"back-reference distance {distance} outside window "
                    f"({len(out)} bytes decoded) at offset {i}"
                )
            has_literal = bool(header & TOKEN_HAS_LITERAL)
            if has_literal and i + TOKEN_HEADER_SIZE >= n:
                raise IntegrityError(f"missing literal after back-reference at offset {i}")
            if not has_literal and i + TOKEN_HEADER_SIZE < n:
                raise IntegrityError(
                    f"back-reference without literal at offset {i} is not the last token"
                )
            if len(out) + length + has_literal > limit:
                raise _output_limit_exceeded(limit)

            start = len(out) - distance
            if distance >= length:
                out += out[start:start + length]
            else:
                for k in range(length):
                    out.append(out[start + k])
            i += TOKEN_HEADER_SIZE
            if has_literal:
                out.append(data[i])
                i += 1

        return bytes(out)


# ============================================================================
# COMPRESSION TYPES - Native LZ77 plus library codecs
# ============================================================================

class CompressionType(Enum):
    """
    Supported compression algorithms.

    LZ77 is the native codec and the default. The library codecs are there
    for peers that prefer throughput (lz4) or ratio (zstd); all of them are
    subject to the same size bounds on decompression.
    """
    NONE = "none"
    LZ77 = "lz77"
    ZLIB = "zlib"
    LZ4 = "lz4"
    ZSTD = "zstd"


_ALGORITHM_IDS: Dict[CompressionType, int] = {
    CompressionType.NONE: 0,
    CompressionType.LZ77: 1,
    CompressionType.ZLIB: 2,
    CompressionType.LZ4: 3,
    CompressionType.ZSTD: 4,
}
_ALGORITHMS_BY_ID: Dict[int, CompressionType] = {v: k for k, v in _ALGORITHM_IDS.items()}


class CompressionRegistry:
    """
    Unified interface over every codec.

    The library decompressors are driven with an output cap so a hostile
    frame cannot allocate past the bound before we get to check it.
    """

    @classmethod
    def compress(
        cls,
        data: bytes,
        comp_type: CompressionType,
        codec: Optional[LZ77Codec] = None,
        level: Optional[int] = None,
    ) -> bytes:
        """
        Compress data using the given algorithm.

        The size threshold is the caller's business; this always compresses.

        Raises:
            ValueError: If the compression type is not supported
        """
        if level is None:
            level = cls.get_compression_level(comp_type)
        if comp_type == CompressionType.NONE:
            return data
        elif comp_type == CompressionType.LZ77:
            codec = codec or LZ77Codec()
            # Threshold 0: compress regardless of size.
            lz = LZ77Codec(0, codec.window_size, codec.lookahead_size)
            return lz.compress(data)[0]
        elif comp_type == CompressionType.ZLIB:
            return zlib.compress(data, level)
        elif comp_type == CompressionType.LZ4:
            return cast(bytes, _lz4_frame.compress(data, compression_level=level, store_size=True))
        elif comp_type == CompressionType.ZSTD:
            return cast(bytes, _zstandard.ZstdCompressor(level=level).compress(data))
        else:
            raise ValueError(f"Unsupported compression type: {comp_type}")

    @classmethod
    def decompress(
        cls,
        data: bytes,
        comp_type: CompressionType,
        codec: Optional[LZ77Codec] = None,
        max_output: int = MAX_DECOMPRESSED_SIZE,
    ) -> bytes:
        """
        Decompress data, enforcing both hard bounds.

        Raises:
            IntegrityError: On oversized input/output or corrupt data
            ValueError: If the compression type is not supported
        """
        check_compressed_size(len(data))
        if comp_type == CompressionType.NONE:
            if len(data) > max_output:
                raise _output_limit_exceeded(max_output)
            return data
        elif comp_type == CompressionType.LZ77:
            codec = codec or LZ77Codec()
            if codec.max_decompressed_size != max_output:
                codec = LZ77Codec(
                    codec.min_compress_size, codec.window_size, codec.lookahead_size,
                    max_decompressed_size=max_output,
                )
            return codec.decompress(data)
        elif comp_type == CompressionType.ZLIB:
            return cls._zlib_decompress(data, max_output)
        elif comp_type == CompressionType.LZ4:
            return cls._lz4_decompress(data, max_output)
        elif comp_type == CompressionType.ZSTD:
            return cls._zstd_decompress(data, max_output)
        else:
            raise ValueError(f"Unsupported compression type: {comp_type}")

    @classmethod
    def get_compression_level(cls, comp_type: CompressionType) -> int:
        """Get default compression level for algorithm."""
        levels = {
            CompressionType.NONE: 0,
            CompressionType.LZ77: 0,
            CompressionType.ZLIB: 6,
            CompressionType.LZ4: 1,   # lz4 uses 0-16, 1 is fast
            CompressionType.ZSTD: 3,  # zstd uses 1-22, 3 is balanced
        }
        return levels.get(comp_type, 6)

    @staticmethod
    def _zlib_decompress(data: bytes, max_output: int) -> bytes:
        decompressor = zlib.decompressobj()
        try:
            out = decompressor.decompress(data, max_output + 1)
        except zlib.error as e:
            raise IntegrityError(f"zlib stream is corrupt: {e}") from None
        if len(out) > max_output or decompressor.unconsumed_tail:
            raise _output_limit_exceeded(max_output)
        if not decompressor.eof:
            raise IntegrityError("zlib stream is truncated")
        return out

    @staticmethod
    def _lz4_decompress(data: bytes, max_output: int) -> bytes:
        decompressor = _lz4_frame.LZ4FrameDecompressor()
        try:
            out = cast(bytes, decompressor.decompress(data, max_length=max_output + 1))
        except RuntimeError as e:
            raise IntegrityError(f"lz4 frame is corrupt: {e}") from None
        if len(out) > max_output:
            raise _output_limit_exceeded(max_output)
        if not decompressor.eof:
            raise IntegrityError("lz4 frame is truncated")
        return out

    @staticmethod
    def _zstd_decompress(data: bytes, max_output: int) -> bytes:
        dctx = _zstandard.ZstdDecompressor()
        chunks: List[bytes] = []
        total = 0
        try:
            with dctx.stream_reader(io.BytesIO(data)) as reader:
                while True:
                    chunk = reader.read(65536)
                    if not chunk:
                        break
                    total += len(chunk)
                    if total > max_output:
                        raise _output_limit_exceeded(max_output)
                    chunks.append(chunk)
        except _zstandard.ZstdError as e:
            raise IntegrityError(f"zstd frame is corrupt: {e}") from None
        return b"".join(chunks)


# ============================================================================
# COMPRESSOR - Configured codec with running statistics
# ============================================================================

class Compressor:
    """
    Stateful compressor used by the sender, the receiver and the facade.

    Honours compression_enabled and min_compress_size, returns the original
    bytes whenever compression does not pay off, and keeps CompressionStats.

    Example:
        >>> compressor = Compressor(OptimizerConfig(min_compress_size=5))
        >>> packet = compressor.pack(b"aaaaaaaaaa")
        >>> packet.compressed
        True
        >>> compressor.unpack(packet)
        b'aaaaaaaaaa'
    """

    def __init__(self, config: Optional[OptimizerConfig] = None) -> None:
        self.config = config or OptimizerConfig()
        self.algorithm = CompressionType(self.config.algorithm)
        self.codec = LZ77Codec(
            min_compress_size=self.config.min_compress_size,
            window_size=self.config.window_size,
            lookahead_size=self.config.lookahead_size,
        )
        self.stats = CompressionStats()

    def compress(self, data: Union[bytes, bytearray]) -> Tuple[bytes, bool]:
        """
        Compress data with the configured algorithm.

        Returns:
            (payload, was_compressed); payload is the original bytes when
            was_compressed is False

        Raises:
            ValidationError: If data is not bytes-like
        """
        data = validate_payload(data)
        if not self.config.compression_enabled or self.algorithm == CompressionType.NONE:
            return data, False
        if len(data) < self.config.min_compress_size:
            return data, False

        if self.algorithm == CompressionType.LZ77:
            output, was_compressed = self.codec.compress(data)
        else:
            output = CompressionRegistry.compress(data, self.algorithm)
            was_compressed = len(output) < len(data)

        if not was_compressed:
            return data, False
        self.stats.record(len(data), len(output))
        return output, True

    def decompress(
        self,
        data: Union[bytes, bytearray],
        compressed: bool = True,
        algorithm: Optional[str] = None,
    ) -> bytes:
        """
        Reverse compress().

        Args:
            data: Payload as received
            compressed: The sender's was_compressed flag
            algorithm: Codec name from the packet (defaults to the configured one)

        Raises:
            ValidationError: If data is not bytes-like or algorithm is unknown
            IntegrityError: On oversized or corrupt input
        """
        data = validate_payload(data)
        if not compressed:
            if len(data) > MAX_DECOMPRESSED_SIZE:
                raise _output_limit_exceeded(MAX_DECOMPRESSED_SIZE)
            return data
        comp_type = self.algorithm
        if algorithm is not None:
            try:
                comp_type = CompressionType(algorithm)
            except ValueError:
                raise ValidationError(f"Unknown compression algorithm: {algorithm!r}") from None
        return CompressionRegistry.decompress(data, comp_type, codec=self.codec)

    def pack(self, data: Union[bytes, bytearray]) -> CompressedPacket:
        """Compress into a CompressedPacket."""
        data = validate_payload(data)
        payload, was_compressed = self.compress(data)
        return CompressedPacket(
            payload=payload,
            compressed=was_compressed,
            original_size=len(data),
            algorithm=self.algorithm.value if was_compressed else CompressionType.NONE.value,
        )

    def unpack(self, packet: CompressedPacket) -> bytes:
        """
        Decompress a CompressedPacket and check its declared size.

        Raises:
            IntegrityError: If the result does not match original_size
        """
        data = self.decompress(packet.payload, packet.compressed, packet.algorithm)
        if len(data) != packet.original_size:
            raise IntegrityError(
                f"size mismatch: expected {packet.original_size} bytes, got {len(data)}"
            )
        return data


# ============================================================================
# CHECKSUMS - Integrity signal carried by every reliable packet
# ============================================================================

class ChecksumType(Enum):
    """
    Integrity signal types.

    LENGTH is the payload byte count: it catches truncation, not corruption.
    CRC32 and XXH64 catch accidental corruption. None of them stop tampering.
    """
    LENGTH = "length"
    CRC32 = "crc32"
    XXH64 = "xxh64"


def compute_checksum(data: bytes, checksum_type: Union[ChecksumType, str] = ChecksumType.LENGTH) -> int:
    """
    Compute the integrity signal of a (possibly compressed) payload.

    Example:
        >>> compute_checksum(b"hello")
        5
        >>> compute_checksum(b"hello", "crc32")
        907060870
    """
    checksum_type = ChecksumType(checksum_type)
    if checksum_type == ChecksumType.LENGTH:
        return len(data)
    elif checksum_type == ChecksumType.CRC32:
        return zlib.crc32(data) & 0xFFFFFFFF
    return xxhash.xxh64_intdigest(data)


# ============================================================================
# DELTA CODEC - Send only the keys that changed
# ============================================================================

DELTA_MARKER = "_isDelta"
DELTA_TIMESTAMP = "_timestamp"
DELTA_REMOVED = "_removed"
_DELTA_RESERVED = frozenset((DELTA_MARKER, DELTA_TIMESTAMP, DELTA_REMOVED))


def dump_state(state: Mapping[str, Any]) -> str:
    """
    Serialize a state as compact JSON with sorted keys.

    Raises:
        ValidationError: If the state is not JSON serializable (NaN included)
    """
    try:
        return json.dumps(state, separators=(',', ':'), sort_keys=True, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"state is not serializable: {e}") from None
    except RecursionError:
        raise ValidationError("state is nested too deeply to serialize") from None


@dataclass(frozen=True)
class EncodedState:
    """A serialized state: either the full state or a delta against a base."""
    data: str
    is_delta: bool

    def __len__(self) -> int:
        return len(self.data)


class DeltaCodec:
    """
    Structural diff/merge of flat key-value states, serialized as JSON.

    encode() picks whichever of (full state, delta) serializes smaller.
    decode() of a delta needs the exact base the encoder diffed against; the
    codec cannot detect a stale base, so drift is the caller's problem.

    Example:
        >>> codec = DeltaCodec()
        >>> previous = {"x": 1, "y": 2, "name": "ship-7", "hp": 100,
        ...             "inventory": ["sword", "shield", "potion"]}
        >>> current = dict(previous, x=5)
        >>> encoded = codec.encode(current, previous)
        >>> encoded.is_delta
        True
        >>> codec.decode(encoded, previous) == current
        True
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    @staticmethod
    def _check_state(state: Any, name: str) -> None:
        if not isinstance(state, Mapping):
            raise ValidationError(f"{name} must be a mapping, got {type(state).__name__}")
        for key in state:
            if not isinstance(key, str):
                raise ValidationError(f"{name} keys must be strings, got {key!r}")
            if key in _DELTA_RESERVED:
                raise ValidationError(f"{name} uses reserved key {key!r}")

    def encode(self, current: Mapping[str, Any], previous: Optional[Mapping[str, Any]] = None) -> EncodedState:
        """
        Encode current, as a delta against previous when that is smaller.

        Raises:
            ValidationError: If a state is not a JSON-serializable string-keyed mapping
        """
        self._check_state(current, "current")
        full = dump_state(current)
        if previous is None:
            return EncodedState(full, False)
        self._check_state(previous, "previous")

        delta: Dict[str, Any] = {}
        for key, value in current.items():
            if key not in previous:
                delta[key] = value
                continue
            old = previous[key]
            # 1 == 1.0 == True, but the receiver must see the exact type.
            if type(old) is not type(value) or old != value:
                delta[key] = value
        removed = sorted(key for key in previous if key not in current)
        if removed:
            delta[DELTA_REMOVED] = removed
        delta[DELTA_MARKER] = True
        delta[DELTA_TIMESTAMP] = self._clock()

        encoded = dump_state(delta)
        if len(encoded) < len(full):
            return EncodedState(encoded, True)
        return EncodedState(full, False)

    def decode(self, encoded: Union[EncodedState, str, bytes], base: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """
        Decode a full state or apply a delta on top of base.

        Raises:
            ValidationError: On malformed JSON, or a delta without a base
        """
        raw = encoded.data if isinstance(encoded, EncodedState) else encoded
        try:
            decoded = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"encoded state is not valid JSON: {e}") from None
        except RecursionError:
            raise ValidationError("encoded state is nested too deeply") from None
        if not isinstance(decoded, dict):
            raise ValidationError(f"encoded state must be a JSON object, got {type(decoded).__name__}")

        if not decoded.get(DELTA_MARKER):
            return decoded
        if base is None:
            raise ValidationError("delta state requires a base state")

        result = copy.deepcopy(dict(base))
        removed = decoded.get(DELTA_REMOVED, [])
        if not isinstance(removed, list):
            raise ValidationError(f"{DELTA_REMOVED} must be a list")
        for key in removed:
            result.pop(key, None)
        for key, value in decoded.items():
            if key not in _DELTA_RESERVED:
                result[key] = value
        return result


# ============================================================================
# PREDICTION - Per-entity history, extrapolation and interpolation
# ============================================================================

@dataclass(frozen=True)
class StateSample:
    """
    One observed state of an entity.

    Attributes:
        timestamp: Monotonic seconds when the state was observed
        fields: Field name -> value; only numeric values are predicted
    """
    timestamp: float
    fields: Mapping[str, Any]


@dataclass
class PredictionStats:
    """
    How well predictions matched the states that later arrived.

    Attributes:
        total_predictions: Predictions checked against an actual state
        corrections: Checks where the error exceeded the tolerance
    """
    total_predictions: int = 0
    corrections: int = 0

    @property
    def accuracy(self) -> float:
        if self.total_predictions == 0:
            return 0.0
        return 1.0 - self.corrections / self.total_predictions


class PredictionBuffer:
    """
    Bounded per-entity history with a linear predictor.

    Buffers are created on the first update for an entity and hold at most
    `capacity` samples, evicting the oldest. They are bounded by capacity, not
    lifetime; forget() exists for hosts that know an entity is gone.

    Example:
        >>> buffer = PredictionBuffer(capacity=10)
        >>> buffer.update("ship", {"x": 0}, timestamp=0.0)
        >>> buffer.predict("ship", 2.0) is None
        True
        >>> buffer.update("ship", {"x": 10}, timestamp=1.0)
        >>> buffer.predict("ship", 2.0)
        {'x': 20.0}
    """

    def __init__(self, capacity: int = 10, clock: Callable[[], float] = time.monotonic) -> None:
        if capacity < 2:
            raise ValidationError(f"capacity must be at least 2, got {capacity}")
        self.capacity = capacity
        self._clock = clock
        self._buffers: Dict[Hashable, Deque[StateSample]] = {}
        self.stats = PredictionStats()

    def __len__(self) -> int:
        return len(self._buffers)

    def __contains__(self, entity_id: Hashable) -> bool:
        return entity_id in self._buffers

    def update(
        self,
        entity_id: Hashable,
        fields: Union[StateSample, Mapping[str, Any]],
        timestamp: Optional[float] = None,
    ) -> None:
        """
        Append a state for entity_id, evicting the oldest sample when full.

        fields may also be a StateSample, whose timestamp is used unless one
        is passed explicitly.

        Raises:
            ValidationError: If fields is not a mapping
        """
        if isinstance(fields, StateSample):
            if timestamp is None:
                timestamp = fields.timestamp
            fields = fields.fields
        if not isinstance(fields, Mapping):
            raise ValidationError(f"state must be a mapping, got {type(fields).__name__}")
        if timestamp is None:
            timestamp = self._clock()
        buffer = self._buffers.get(entity_id)
        if buffer is None:
            buffer = self._buffers[entity_id] = deque(maxlen=self.capacity)
        buffer.append(StateSample(timestamp=float(timestamp), fields=dict(fields)))

    def history(self, entity_id: Hashable) -> List[StateSample]:
        return list(self._buffers.get(entity_id, ()))

    def latest(self, entity_id: Hashable) -> Optional[StateSample]:
        buffer = self._buffers.get(entity_id)
        return buffer[-1] if buffer else None

    def predict(self, entity_id: Hashable, target_time: float) -> Optional[Dict[str, Any]]:
        """
        Extrapolate the state of entity_id at target_time.

        Uses the velocity between the two newest samples. Non-numeric fields,
        and fields that are not numeric in both samples, pass through from
        the newest sample.

        Returns:
            Predicted fields, or None with fewer than 2 samples (warm-up)
        """
        buffer = self._buffers.get(entity_id)
        if buffer is None or len(buffer) < 2:
            return None
        latest, previous = buffer[-1], buffer[-2]
        dt = latest.timestamp - previous.timestamp
        if dt <= 0:
            return dict(latest.fields)
        return self._extrapolate(previous, latest, target_time)

    @staticmethod
    def _extrapolate(previous: StateSample, latest: StateSample, target_time: float) -> Dict[str, Any]:
        dt = latest.timestamp - previous.timestamp
        ahead = target_time - latest.timestamp
        predicted: Dict[str, Any] = {}
        for key, value in latest.fields.items():
            old = previous.fields.get(key)
            if _is_number(value) and _is_number(old):
                velocity = (value - old) / dt
                predicted[key] = value + velocity * ahead
            else:
                predicted[key] = value
        return predicted

    def interpolate(self, entity_id: Hashable, target_time: float) -> Optional[Dict[str, Any]]:
        """
        Blend the two samples that bracket target_time.

        Targets past the newest sample fall back to predict(); targets before
        the oldest sample return the oldest state. Non-numeric fields come
        from the earlier of the two samples.

        Returns:
            Interpolated fields, or None with fewer than 2 samples
        """
        buffer = self._buffers.get(entity_id)
        if buffer is None or len(buffer) < 2:
            return None
        if target_time >= buffer[-1].timestamp:
            return self.predict(entity_id, target_time)
        if target_time <= buffer[0].timestamp:
            return dict(buffer[0].fields)

        samples = list(buffer)
        for before, after in zip(samples, samples[1:]):
            if before.timestamp <= target_time <= after.timestamp:
                span = after.timestamp - before.timestamp
                if span <= 0:
                    return dict(after.fields)
                t = (target_time - before.timestamp) / span
                blended: Dict[str, Any] = {}
                for key, value in before.fields.items():
                    new = after.fields.get(key)
                    if _is_number(value) and _is_number(new):
                        blended[key] = value + (new - value) * t
                    else:
                        blended[key] = value
                return blended
        # Out-of-order timestamps can leave no bracketing pair.
        return dict(buffer[-1].fields)

    def record_correction(
        self,
        predicted: Mapping[str, Any],
        actual: Mapping[str, Any],
        tolerance: float = 0.01,
    ) -> float:
        """
        Compare a prediction with the state that actually arrived.

        Returns:
            The largest absolute error over shared numeric fields
        """
        error = 0.0
        for key, value in actual.items():
            guess = predicted.get(key)
            if _is_number(value) and _is_number(guess):
                error = max(error, abs(value - guess))
        self.stats.total_predictions += 1
        if error > tolerance:
            self.stats.corrections += 1
        return error

    def forget(self, entity_id: Hashable) -> bool:
        return self._buffers.pop(entity_id, None) is not None

    def reset(self) -> None:
        self._buffers.clear()
        self.stats = PredictionStats()


# ============================================================================
# BANDWIDTH MONITORING - Rolling throughput and adaptive quality
# ============================================================================

@dataclass(frozen=True)
class BandwidthSample:
    bytes: int
    timestamp: float


class BandwidthMonitor:
    """
    Sliding-window throughput statistics.

    Samples are kept while `now - timestamp <= monitor_interval`. The window
    is time based, not a fixed-size ring. Update it from the heartbeat only;
    it is not safe for concurrent mutation.

    Attributes:
        average: Smoothed bandwidth (bytes/s), updated by update_average()
        peak: Highest smoothed value seen
    """

    def __init__(self, monitor_interval: float = 1.0, clock: Callable[[], float] = time.monotonic) -> None:
        if monitor_interval <= 0:
            raise ValidationError(f"monitor_interval must be positive, got {monitor_interval}")
        self.monitor_interval = monitor_interval
        self._clock = clock
        self.samples: Deque[BandwidthSample] = deque()
        self.average = 0.0
        self.peak = 0.0
        self.total_bytes = 0

    def record_transfer(self, num_bytes: int) -> None:
        """
        Record num_bytes sent now and purge samples older than the window.

        Raises:
            ValidationError: If num_bytes is not a non-negative int
        """
        if isinstance(num_bytes, bool) or not isinstance(num_bytes, int) or num_bytes < 0:
            raise ValidationError(f"byte count must be a non-negative int, got {num_bytes!r}")
        now = self._clock()
        self.samples.append(BandwidthSample(bytes=num_bytes, timestamp=now))
        self.total_bytes += num_bytes
        self.purge(now)

    def purge(self, now: Optional[float] = None) -> None:
        if now is None:
            now = self._clock()
        while self.samples and now - self.samples[0].timestamp > self.monitor_interval:
            self.samples.popleft()

    def current_bandwidth(self) -> float:
        """Bytes/s over the window; 0.0 with fewer than 2 samples or no elapsed time."""
        if len(self.samples) < 2:
            return 0.0
        span = self.samples[-1].timestamp - self.samples[0].timestamp
        if span <= 0:
            return 0.0
        return sum(sample.bytes for sample in self.samples) / span

    def update_average(self) -> float:
        """Fold the current bandwidth into the smoothed average and return it."""
        current = self.current_bandwidth()
        self.average = self.average * SMOOTHING_WEIGHT + current * (1 - SMOOTHING_WEIGHT)
        self.peak = max(self.peak, self.average, current)
        return self.average

    def reset(self) -> None:
        self.samples.clear()
        self.average = 0.0
        self.peak = 0.0
        self.total_bytes = 0


class QualityAdapter:
    """
    Turns measured throughput into an advisory quality scalar.

    quality = clamp(average_bandwidth / target_bandwidth, min_quality, max_quality)

    The scalar starts at max_quality and is left alone while the smoothed
    average is still zero, so an idle link does not degrade producers.

    Example:
        >>> adapter = QualityAdapter(BandwidthMonitor(), target_bandwidth=1000)
        >>> adapter.set_quality(5.0)
        1.0
    """

    def __init__(
        self,
        monitor: BandwidthMonitor,
        target_bandwidth: float = 1024 * 1024,
        min_quality: float = 0.3,
        max_quality: float = 1.0,
        adaptive: bool = True,
    ) -> None:
        if target_bandwidth <= 0:
            raise ValidationError(f"target_bandwidth must be positive, got {target_bandwidth}")
        if not 0 <= min_quality <= max_quality:
            raise ValidationError(f"quality range invalid: min={min_quality} max={max_quality}")
        self.monitor = monitor
        self.target_bandwidth = target_bandwidth
        self.min_quality = min_quality
        self.max_quality = max_quality
        self.adaptive = adaptive
        self.quality = max_quality

    def tick(self) -> float:
        """One monitoring step: purge, smooth, re-derive quality."""
        self.monitor.purge()
        average = self.monitor.update_average()
        if self.adaptive and average > 0:
            ratio = average / self.target_bandwidth
            self.quality = clamp(ratio, self.min_quality, self.max_quality)
        return self.quality

    def set_quality(self, quality: float) -> float:
        self.quality = clamp(quality, self.min_quality, self.max_quality)
        return self.quality

    def reset(self) -> None:
        self.quality = self.max_quality


class LatencyTracker:
    """
    Round-trip time statistics fed by acknowledgements.

    Attributes:
        current: Last RTT (seconds)
        average: Smoothed RTT (seconds)
        jitter: Mean absolute difference between consecutive samples (seconds)
    """

    def __init__(self, max_samples: int = 20) -> None:
        self.samples: Deque[float] = deque(maxlen=max_samples)
        self.current = 0.0
        self.average = 0.0
        self.jitter = 0.0

    def record(self, rtt: float) -> None:
        if rtt < 0:
            raise ValidationError(f"rtt cannot be negative ({rtt})")
        first = not self.samples
        self.samples.append(rtt)
        self.current = rtt
        if first:
            self.average = rtt
        else:
            self.average = self.average * SMOOTHING_WEIGHT + rtt * (1 - SMOOTHING_WEIGHT)
        values = list(self.samples)
        if len(values) > 1:
            diffs = [abs(b - a) for a, b in zip(values, values[1:])]
            self.jitter = sum(diffs) / len(diffs)

    def reset(self) -> None:
        self.samples.clear()
        self.current = 0.0
        self.average = 0.0
        self.jitter = 0.0


# ============================================================================
# SCHEDULING - Cancellable timers for a cooperative heartbeat
# ============================================================================

class Scheduler(Protocol):
    """Timer service used by ReliableSender and the facade heartbeat."""

    def now(self) -> float: ...

    def schedule(self, delay: float, callback: Callable[[], None]) -> Any: ...

    def cancel(self, token: Any) -> None: ...


@dataclass(order=True)
class _Timer:
    deadline: float
    seq: int
    callback: Callable[[], None] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)
    queued: bool = field(default=True, compare=False)


class ManualScheduler:
    """
    Virtual-clock scheduler driven by an external heartbeat.

    Time only moves when the host calls tick() or advance(); due callbacks
    then run in deadline order on the caller's stack. Cancelling a timer
    marks it dead so it never fires; the heap is rebuilt once dead timers
    outnumber live ones.

    Example:
        >>> scheduler = ManualScheduler()
        >>> fired = []
        >>> token = scheduler.schedule(1.0, lambda: fired.append(1))
        >>> scheduler.advance(1.0)
        1
        >>> fired
        [1]
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._timers: List[_Timer] = []
        self._seq = itertools.count()
        self._dead = 0

    def now(self) -> float:
        return self._now

    def schedule(self, delay: float, callback: Callable[[], None]) -> _Timer:
        if delay < 0:
            raise ValidationError(f"delay cannot be negative ({delay})")
        timer = _Timer(self._now + delay, next(self._seq), callback)
        heapq.heappush(self._timers, timer)
        return timer

    def cancel(self, token: Any) -> None:
        if not isinstance(token, _Timer) or token.cancelled:
            return
        token.cancelled = True
        if token.queued:
            self._dead += 1
            if self._dead * 2 > len(self._timers):
                self._timers = [t for t in self._timers if not t.cancelled]
                heapq.heapify(self._timers)
                self._dead = 0

    @property
    def pending(self) -> int:
        return len(self._timers) - self._dead

    @property
    def heap_size(self) -> int:
        """Timers still held, cancelled ones not yet dropped included."""
        return len(self._timers)

    def tick(self, now: Optional[float] = None) -> int:
        """
        Move the clock to `now` (default: stay put) and run due callbacks.

        Returns:
            Number of callbacks fired
        """
        target = self._now if now is None else max(now, self._now)
        fired = 0
        while self._timers and self._timers[0].deadline <= target:
            timer = heapq.heappop(self._timers)
            timer.queued = False
            if timer.cancelled:
                self._dead -= 1
                continue
            self._now = timer.deadline
            timer.callback()
            fired += 1
        self._now = target
        return fired

    def advance(self, seconds: float) -> int:
        return self.tick(self._now + seconds)


class AsyncioScheduler:
    """Scheduler backed by an asyncio event loop (loop.call_later)."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()

    def now(self) -> float:
        return self._loop.time()

    def schedule(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        if delay < 0:
            raise ValidationError(f"delay cannot be negative ({delay})")
        return self._loop.call_later(delay, callback)

    def cancel(self, token: Any) -> None:
        if isinstance(token, asyncio.TimerHandle):
            token.cancel()


# ============================================================================
# WIRE PACKET - What actually crosses the transport
# ============================================================================

_WIRE_REQUIRED: Dict[str, Tuple[type, ...]] = {
    'id': (str,),
    'data': (str,),
    'compressed': (bool,),
    'timestamp': (int, float),
    'attempt': (int,),
    'checksum': (int,),
    'originalSize': (int,),
}


@dataclass(frozen=True)
class WirePacket:
    """
    A reliable packet as handed to the transport.

    Attributes:
        id: Opaque unique token shared by all attempts of one message
        data: Payload, possibly compressed
        compressed: Whether data went through the compressor
        timestamp: Send time of this attempt
        attempt: Attempt counter, starting at 1
        checksum: Integrity signal over data (see ChecksumType)
        original_size: Size of the payload before compression
        algorithm: Codec used when compressed
        checksum_type: How checksum was computed

    The JSON form uses camelCase keys and base64 for data:

        {"id": "...", "data": "<base64>", "compressed": true,
         "timestamp": 12.5, "attempt": 1, "checksum": 42,
         "originalSize": 120, "algorithm": "lz77", "checksumType": "length"}
    """
    id: str
    data: bytes
    compressed: bool
    timestamp: float
    attempt: int
    checksum: int
    original_size: int
    algorithm: str = "lz77"
    checksum_type: str = "length"

    def __repr__(self) -> str:
        return (
            f"WirePacket(id={self.id}, attempt={self.attempt}, size={len(self.data)}, "
            f"compressed={self.compressed}, checksum={self.checksum})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'data': base64.b64encode(self.data).decode('ascii'),
            'compressed': self.compressed,
            'timestamp': self.timestamp,
            'attempt': self.attempt,
            'checksum': self.checksum,
            'originalSize': self.original_size,
            'algorithm': self.algorithm,
            'checksumType': self.checksum_type,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'WirePacket':
        """
        Rebuild a packet from its dict form, checking shape and types.

        Raises:
            ValidationError: On missing fields, wrong types or bad base64
            IntegrityError: If the decoded payload exceeds MAX_COMPRESSED_SIZE
        """
        if not isinstance(data, Mapping):
            raise ValidationError(f"packet must be a mapping, got {type(data).__name__}")
        for name, types in _WIRE_REQUIRED.items():
            if name not in data:
                raise ValidationError(f"packet is missing field {name!r}")
            value = data[name]
            if isinstance(value, bool) and bool not in types:
                raise ValidationError(f"packet field {name!r} has wrong type bool")
            if not isinstance(value, types):
                raise ValidationError(
                    f"packet field {name!r} has wrong type {type(value).__name__}"
                )
        if data['attempt'] < 1:
            raise ValidationError(f"packet attempt must be >= 1, got {data['attempt']}")
        if data['originalSize'] < 0 or data['checksum'] < 0:
            raise ValidationError("packet sizes and checksum cannot be negative")
        try:
            timestamp = float(data['timestamp'])
        except OverflowError:
            raise ValidationError("packet timestamp is out of range") from None
        if not math.isfinite(timestamp):
            raise ValidationError(f"packet timestamp must be finite, got {timestamp}")

        encoded = data['data']
        # base64 inflates by 4/3; reject before decoding anything huge.
        check_compressed_size(len(encoded) * 3 // 4)
        try:
            payload = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValidationError(f"packet data is not valid base64: {e}") from None

        algorithm = data.get('algorithm', CompressionType.LZ77.value)
        checksum_type = data.get('checksumType', ChecksumType.LENGTH.value)
        if not isinstance(algorithm, str) or not isinstance(checksum_type, str):
            raise ValidationError("packet algorithm and checksumType must be strings")
        return cls(
            id=data['id'],
            data=payload,
            compressed=data['compressed'],
            timestamp=timestamp,
            attempt=data['attempt'],
            checksum=data['checksum'],
            original_size=data['originalSize'],
            algorithm=algorithm,
            checksum_type=checksum_type,
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(',', ':'))

    @classmethod
    def from_json(cls, raw: Union[str, bytes, bytearray]) -> 'WirePacket':
        """
        Parse the JSON form.

        Raises:
            ValidationError: On malformed JSON or packet shape
            IntegrityError: On oversized input
        """
        check_compressed_size(len(raw), MAX_COMPRESSED_SIZE * 2)
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"packet is not valid JSON: {e}") from None
        except RecursionError:
            raise ValidationError("packet JSON is nested too deeply") from None
        return cls.from_dict(data)

    @property
    def encoded_size(self) -> int:
        """Bytes this packet occupies on the wire in JSON form."""
        return len(self.to_json().encode('utf-8'))

    def verify_checksum(self) -> None:
        """
        Raises:
            ValidationError: If checksum_type is unknown
            IntegrityError: If the checksum does not match data
        """
        try:
            checksum_type = ChecksumType(self.checksum_type)
        except ValueError:
            raise ValidationError(f"Unknown checksum type: {self.checksum_type!r}") from None
        expected = compute_checksum(self.data, checksum_type)
        if expected != self.checksum:
            raise IntegrityError(
                f"checksum mismatch for packet {self.id}: "
                f"expected {expected}, got {self.checksum} ({checksum_type.value})"
            )


# ============================================================================
# RELIABLE SENDER - Ack/retry state machine
#
#   IDLE -> SENDING -> WAITING_ACK -> ACKED
#                          |
#                          +-> RETRYING -> SENDING      (attempt < max_retries)
#                          +-> FAILED                   (attempts exhausted / cancel)
# ============================================================================

class DeliveryState(Enum):
    IDLE = "idle"
    SENDING = "sending"
    WAITING_ACK = "waiting_ack"
    RETRYING = "retrying"
    ACKED = "acked"
    FAILED = "failed"


class FailureReason(Enum):
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    INVALID = "invalid"


_TERMINAL_STATES = frozenset((DeliveryState.ACKED, DeliveryState.FAILED))

Transport = Callable[[WirePacket], Any]


@dataclass
class OutboundMessage:
    """
    Tracking record of one logical message.

    Returned by ReliableSender.send(); the sender keeps mutating it as the
    message moves through its states, so callers can poll it or wait for the
    on_complete callback.

    Attributes:
        id: Message id shared by every attempt
        payload: Uncompressed payload
        max_retries: Attempt budget
        ack_timeout: Seconds to wait for each acknowledgement
        state: Current DeliveryState
        attempt: Attempts made so far
        first_sent: Time of the first attempt
        last_sent: Time of the latest attempt
        last_packet: Packet of the latest attempt
        transport_failures: Attempts the transport reported as failed
        last_transport_error: Most recent TransientNetworkError, if any
        failure_reason: Why the message failed (terminal FAILED only)
        error: ExhaustedRetriesError / DeliveryCancelled / ValidationError
    """
    id: str
    payload: bytes
    max_retries: int
    ack_timeout: float
    state: DeliveryState = DeliveryState.IDLE
    attempt: int = 0
    first_sent: Optional[float] = None
    last_sent: Optional[float] = None
    last_packet: Optional[WirePacket] = None
    transport_failures: int = 0
    last_transport_error: Optional[TransientNetworkError] = None
    failure_reason: Optional[FailureReason] = None
    error: Optional[NetworkOptimizerError] = None
    _timer: Any = field(default=None, repr=False, compare=False)

    @property
    def done(self) -> bool:
        return self.state in _TERMINAL_STATES

    @property
    def succeeded(self) -> bool:
        return self.state == DeliveryState.ACKED


class ReliableSender:
    """
    At-least-once delivery over a one-way transport.

    Each send() gets a fresh id and is tracked on its own; any number can be
    in flight and nothing is ordered across messages. Every attempt
    recompresses the payload and stamps a new timestamp and attempt number.
    When an attempt is not acknowledged within ack_timeout the next one is
    sent, until max_retries attempts have been made; the message then fails
    with ExhaustedRetriesError. acknowledge() and cancel() both cancel the
    pending timer, so late acks are no-ops.

    Args:
        transport: Callable taking a WirePacket; returning False or raising
            counts as a transient failure of that attempt
        scheduler: Timer service (also the clock)
        compressor: Compressor for payloads (default from config)
        monitor: BandwidthMonitor fed with encoded packet sizes
        latency: LatencyTracker fed with ack round-trip times
        config: OptimizerConfig for defaults
        on_complete: Called once per message when it reaches ACKED or FAILED
        id_factory: Message id generator (uuid4 hex by default)

    Example:
        >>> scheduler = ManualScheduler()
        >>> sent = []
        >>> sender = ReliableSender(sent.append, scheduler)
        >>> message = sender.send(b"hello", max_retries=3, ack_timeout=1.0)
        >>> sender.acknowledge(message.id)
        True
        >>> message.state
        <DeliveryState.ACKED: 'acked'>
    """

    def __init__(
        self,
        transport: Transport,
        scheduler: Scheduler,
        compressor: Optional[Compressor] = None,
        monitor: Optional[BandwidthMonitor] = None,
        latency: Optional[LatencyTracker] = None,
        config: Optional[OptimizerConfig] = None,
        on_complete: Optional[Callable[[OutboundMessage], None]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.config = config or OptimizerConfig()
        self.transport = transport
        self.scheduler = scheduler
        self.compressor = compressor or Compressor(self.config)
        self.monitor = monitor
        self.latency = latency
        self.on_complete = on_complete
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._checksum_type = ChecksumType(self.config.checksum_type)
        self._messages: Dict[str, OutboundMessage] = {}

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def in_flight(self) -> List[str]:
        return list(self._messages)

    def get(self, message_id: str) -> Optional[OutboundMessage]:
        return self._messages.get(message_id)

    def send(
        self,
        payload: Union[bytes, bytearray],
        max_retries: Optional[int] = None,
        ack_timeout: Optional[float] = None,
    ) -> OutboundMessage:
        """
        Start reliable delivery of payload.

        Invalid input does not raise: the returned message is already FAILED
        with reason INVALID and a ValidationError attached.

        Returns:
            The OutboundMessage tracking this delivery
        """
        if max_retries is None:
            max_retries = self.config.max_retries
        if ack_timeout is None:
            ack_timeout = self.config.ack_timeout
        message = OutboundMessage(
            id=self._id_factory(),
            payload=b"",
            max_retries=max_retries,
            ack_timeout=ack_timeout,
        )
        try:
            if max_retries < 1:
                raise ValidationError(f"max_retries must be at least 1, got {max_retries}")
            if ack_timeout <= 0:
                raise ValidationError(f"ack_timeout must be positive, got {ack_timeout}")
            message.payload = validate_payload(payload, self.config.max_payload_size)
        except ValidationError as e:
            logger.warning(f"Rejected reliable send {message.id}: {e}")
            self._finish(message, DeliveryState.FAILED, FailureReason.INVALID, e)
            return message

        self._messages[message.id] = message
        self._attempt(message)
        return message

    def _attempt(self, message: OutboundMessage) -> None:
        message.attempt += 1
        message.state = DeliveryState.SENDING
        now = self.scheduler.now()
        data, was_compressed = self.compressor.compress(message.payload)
        packet = WirePacket(
            id=message.id,
            data=data,
            compressed=was_compressed,
            timestamp=now,
            attempt=message.attempt,
            checksum=compute_checksum(data, self._checksum_type),
            original_size=len(message.payload),
            algorithm=self.compressor.algorithm.value if was_compressed else CompressionType.NONE.value,
            checksum_type=self._checksum_type.value,
        )
        message.last_packet = packet
        message.last_sent = now
        if message.first_sent is None:
            message.first_sent = now

        try:
            delivered = self.transport(packet)
        except Exception as e:
            delivered = False
            reason = f"{type(e).__name__}: {e}"
        else:
            reason = "transport reported failure"

        if delivered is False:
            message.transport_failures += 1
            message.last_transport_error = TransientNetworkError(
                f"attempt {message.attempt} of {message.id} failed: {reason}"
            )
            logger.warning(str(message.last_transport_error))
        elif self.monitor is not None:
            self.monitor.record_transfer(packet.encoded_size)

        # A loopback transport may have acked (or cancelled) synchronously.
        if message.done:
            return
        message.state = DeliveryState.WAITING_ACK
        message._timer = self.scheduler.schedule(
            message.ack_timeout, lambda: self._on_timeout(message.id)
        )

    def _on_timeout(self, message_id: str) -> None:
        message = self._messages.get(message_id)
        if message is None or message.done:
            return
        message._timer = None
        if message.attempt < message.max_retries:
            message.state = DeliveryState.RETRYING
            logger.info(
                f"No ack for {message_id} after attempt {message.attempt}/{message.max_retries}, retrying"
            )
            self._attempt(message)
            return
        error = ExhaustedRetriesError(
            f"message {message_id} not acknowledged after {message.attempt} attempts",
            message_id=message_id,
            attempts=message.attempt,
        )
        logger.warning(str(error))
        self._finish(message, DeliveryState.FAILED, FailureReason.EXHAUSTED, error)

    def acknowledge(self, message_id: str) -> bool:
        """
        Mark message_id as delivered.

        Returns:
            True if an in-flight message was acknowledged, False for unknown,
            finished or cancelled ids
        """
        message = self._messages.get(message_id)
        if message is None or message.done:
            logger.debug(f"Ignoring ack for unknown or finished message {message_id}")
            return False
        if self.latency is not None and message.last_sent is not None:
            self.latency.record(max(0.0, self.scheduler.now() - message.last_sent))
        self._finish(message, DeliveryState.ACKED)
        return True

    def cancel(self, message_id: str) -> bool:
        """
        Stop retrying message_id and mark it FAILED with reason CANCELLED.

        Returns:
            True if an in-flight message was cancelled
        """
        message = self._messages.get(message_id)
        if message is None or message.done:
            return False
        error = DeliveryCancelled(f"message {message_id} cancelled", message_id=message_id)
        logger.info(str(error))
        self._finish(message, DeliveryState.FAILED, FailureReason.CANCELLED, error)
        return True

    def cancel_all(self) -> int:
        return sum(1 for message_id in list(self._messages) if self.cancel(message_id))

    def _finish(
        self,
        message: OutboundMessage,
        state: DeliveryState,
        reason: Optional[FailureReason] = None,
        error: Optional[NetworkOptimizerError] = None,
    ) -> None:
        if message._timer is not None:
            self.scheduler.cancel(message._timer)
            message._timer = None
        message.state = state
        message.failure_reason = reason
        message.error = error
        self._messages.pop(message.id, None)
        if self.on_complete is not None:
            self.on_complete(message)


# ============================================================================
# PACKET RECEIVER - Validate, decompress, acknowledge
# ============================================================================

@dataclass
class ReceiveResult:
    """
    Outcome of PacketReceiver.receive().

    Attributes:
        ok: Payload accepted (duplicates count as ok)
        packet_id: Id from the packet when it could be read
        payload: Decompressed payload (None for failures and duplicates)
        error: ValidationError or IntegrityError on failure
        duplicate: The id was already delivered; payload withheld
    """
    ok: bool
    packet_id: Optional[str] = None
    payload: Optional[bytes] = None
    error: Optional[NetworkOptimizerError] = None
    duplicate: bool = False


class PacketReceiver:
    """
    Inbound side of reliable delivery.

    Rejects malformed or oversized packets before decompressing, verifies
    the checksum and the declared original size, suppresses redelivered
    retries of ids it has already accepted, and acknowledges every accepted
    packet (duplicates included, since the earlier ack may have been lost).
    Failures are logged and returned, never raised.
    """

    def __init__(
        self,
        compressor: Optional[Compressor] = None,
        send_ack: Optional[Callable[[str], Any]] = None,
        dedupe_capacity: int = 1024,
    ) -> None:
        if dedupe_capacity < 1:
            raise ValidationError(f"dedupe_capacity must be at least 1, got {dedupe_capacity}")
        self.compressor = compressor or Compressor()
        self.send_ack = send_ack
        self._seen: Deque[str] = deque(maxlen=dedupe_capacity)
        self._seen_set: set = set()
        self.accepted = 0
        self.rejected = 0
        self.duplicates = 0

    def receive(self, packet: Union[WirePacket, Mapping[str, Any], str, bytes]) -> ReceiveResult:
        packet_id: Optional[str] = None
        try:
            if isinstance(packet, (str, bytes, bytearray)):
                packet = WirePacket.from_json(packet)
            elif not isinstance(packet, WirePacket):
                packet = WirePacket.from_dict(packet)
            packet_id = packet.id
            packet.verify_checksum()

            if packet.id in self._seen_set:
                self.duplicates += 1
                self._ack(packet.id)
                return ReceiveResult(ok=True, packet_id=packet.id, duplicate=True)

            payload = self.compressor.decompress(packet.data, packet.compressed, packet.algorithm)
            if len(payload) != packet.original_size:
                raise IntegrityError(
                    f"packet {packet.id} declared {packet.original_size} bytes, got {len(payload)}"
                )
        except (ValidationError, IntegrityError) as e:
            self.rejected += 1
            logger.warning(f"Dropped packet {packet_id or '<unknown>'}: {e}")
            return ReceiveResult(ok=False, packet_id=packet_id, error=e)

        self._remember(packet.id)
        self.accepted += 1
        self._ack(packet.id)
        return ReceiveResult(ok=True, packet_id=packet.id, payload=payload)

    def _remember(self, packet_id: str) -> None:
        if len(self._seen) == self._seen.maxlen:
            self._seen_set.discard(self._seen[0])
        self._seen.append(packet_id)
        self._seen_set.add(packet_id)

    def _ack(self, packet_id: str) -> None:
        if self.send_ack is None:
            return
        try:
            self.send_ack(packet_id)
        except Exception as e:
            # The sender retries, and the retry gets acked again.
            logger.warning(f"Failed to send ack for {packet_id}: {type(e).__name__}: {e}")


# ============================================================================
# NETWORK STATISTICS
# ============================================================================

@dataclass
class NetworkStats:
    """
    Snapshot of every monitor, as returned by get_network_stats().

    Bandwidth is in bytes/s, latency in milliseconds.
    """
    bandwidth_current: float = 0.0
    bandwidth_average: float = 0.0
    bandwidth_peak: float = 0.0
    latency_current: float = 0.0
    latency_average: float = 0.0
    latency_jitter: float = 0.0
    compression_ratio: float = 0.0
    compression_total_saved: int = 0
    compression_total_processed: int = 0
    prediction_accuracy: float = 0.0
    prediction_corrections: int = 0
    quality: float = 1.0
    connected: bool = True
    in_flight: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Nested, rounded form for dashboards and logs."""
        return {
            'bandwidth': {
                'current': math.floor(self.bandwidth_current),
                'average': math.floor(self.bandwidth_average),
                'peak': math.floor(self.bandwidth_peak),
            },
            'latency': {
                'current': round(self.latency_current, 2),
                'average': round(self.latency_average, 2),
                'jitter': round(self.latency_jitter, 2),
            },
            'compression': {
                'ratio': math.floor(self.compression_ratio * 100) / 100,
                'totalSaved': self.compression_total_saved,
                'totalProcessed': self.compression_total_processed,
            },
            'prediction': {
                'accuracy': math.floor(self.prediction_accuracy * 100) / 100,
                'corrections': self.prediction_corrections,
            },
            'quality': math.floor(self.quality * 100) / 100,
            'connected': self.connected,
            'inFlight': self.in_flight,
        }


# ============================================================================
# NETWORK OPTIMIZER - Facade wiring every component to one config and clock
# ============================================================================

class NetworkOptimizer:
    """
    One instance per connection: owns the compressor, delta codec, prediction
    buffers, bandwidth/quality/latency monitors, reliable sender and receiver.

    All components share the scheduler's clock. start() arms the periodic
    heartbeat that drives the quality adapter; hosts without a scheduler loop
    can call heartbeat() themselves.

    Args:
        config: OptimizerConfig (validated here)
        scheduler: Timer service; a ManualScheduler when omitted
        transport: One-way send primitive; required for send_reliable()
        send_ack: Ack channel used by receive()
        on_complete: Forwarded to ReliableSender

    Example:
        >>> scheduler = ManualScheduler()
        >>> wire = []
        >>> optimizer = NetworkOptimizer(scheduler=scheduler, transport=wire.append)
        >>> message = optimizer.send_reliable({"x": 1})
        >>> optimizer.acknowledge(message.id)
        True
    """

    def __init__(
        self,
        config: Optional[OptimizerConfig] = None,
        scheduler: Optional[Scheduler] = None,
        transport: Optional[Transport] = None,
        send_ack: Optional[Callable[[str], Any]] = None,
        on_complete: Optional[Callable[[OutboundMessage], None]] = None,
    ) -> None:
        self.config = (config or OptimizerConfig()).validate()
        if self.config.verbose_logging:
            logger.setLevel(logging.INFO)
        self.scheduler: Scheduler = scheduler or ManualScheduler()
        clock = self.scheduler.now

        self.compressor = Compressor(self.config)
        self.delta_codec = DeltaCodec()
        self.predictions = PredictionBuffer(self.config.prediction_buffer_capacity, clock)
        self.bandwidth = BandwidthMonitor(self.config.monitor_interval, clock)
        self.quality_adapter = QualityAdapter(
            self.bandwidth,
            target_bandwidth=self.config.target_bandwidth,
            min_quality=self.config.min_quality,
            max_quality=self.config.max_quality,
            adaptive=self.config.adaptive_quality,
        )
        self.latency = LatencyTracker()
        self.sender: Optional[ReliableSender] = None
        if transport is not None:
            self.sender = ReliableSender(
                transport,
                self.scheduler,
                compressor=self.compressor,
                monitor=self.bandwidth,
                latency=self.latency,
                config=self.config,
                on_complete=on_complete,
            )
        self.receiver = PacketReceiver(self.compressor, send_ack)
        self.connected = True
        self._heartbeat_token: Any = None

        logger.info(
            f"NetworkOptimizer ready: compression="
            f"{self.config.algorithm if self.config.compression_enabled else 'disabled'}, "
            f"prediction={'on' if self.config.prediction_enabled else 'off'}, "
            f"adaptive quality={'on' if self.config.adaptive_quality else 'off'}"
        )

    # -- heartbeat -----------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._heartbeat_token is not None

    def start(self) -> None:
        """Arm the periodic heartbeat (every monitor_interval)."""
        if self._heartbeat_token is None:
            self._heartbeat_token = self.scheduler.schedule(
                self.config.monitor_interval, self._on_heartbeat
            )

    def stop(self) -> None:
        if self._heartbeat_token is not None:
            self.scheduler.cancel(self._heartbeat_token)
            self._heartbeat_token = None

    def _on_heartbeat(self) -> None:
        self._heartbeat_token = None
        self.heartbeat()
        self.start()

    def heartbeat(self) -> float:
        """One monitoring tick; returns the new quality."""
        return self.quality_adapter.tick()

    # -- compression ---------------------------------------------------------

    def compress_data(self, data: Union[bytes, bytearray]) -> Tuple[bytes, bool]:
        return self.compressor.compress(data)

    def decompress_data(
        self,
        data: Union[bytes, bytearray],
        was_compressed: bool = True,
        algorithm: Optional[str] = None,
    ) -> Optional[bytes]:
        """
        Decompress untrusted data.

        Returns:
            The original bytes, or None when the input was rejected (logged)
        """
        try:
            return self.compressor.decompress(data, was_compressed, algorithm)
        except (ValidationError, IntegrityError) as e:
            logger.warning(f"Dropped payload: {e}")
            return None

    # -- delta states --------------------------------------------------------

    def encode_state(self, current: Mapping[str, Any], previous: Optional[Mapping[str, Any]] = None) -> EncodedState:
        return self.delta_codec.encode(current, previous)

    def decode_state(self, encoded: Union[EncodedState, str, bytes], base: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        return self.delta_codec.decode(encoded, base)

    # -- reliable delivery ---------------------------------------------------

    def send_reliable(
        self,
        payload: Union[bytes, bytearray, Mapping[str, Any]],
        max_retries: Optional[int] = None,
        ack_timeout: Optional[float] = None,
    ) -> OutboundMessage:
        """
        Send bytes, or a mapping serialized as JSON, with retries.

        Raises:
            ValidationError: If no transport was configured or the mapping
                is not JSON serializable
        """
        if self.sender is None:
            raise ValidationError("send_reliable() needs a transport")
        if isinstance(payload, Mapping):
            payload = dump_state(payload).encode('utf-8')
        return self.sender.send(payload, max_retries, ack_timeout)

    def acknowledge(self, message_id: str) -> bool:
        return self.sender.acknowledge(message_id) if self.sender is not None else False

    def cancel(self, message_id: str) -> bool:
        return self.sender.cancel(message_id) if self.sender is not None else False

    def receive(self, packet: Union[WirePacket, Mapping[str, Any], str, bytes]) -> ReceiveResult:
        return self.receiver.receive(packet)

    # -- prediction ----------------------------------------------------------

    def update_prediction(self, entity_id: Hashable, state: Mapping[str, Any], timestamp: Optional[float] = None) -> None:
        if not self.config.prediction_enabled:
            return
        self.predictions.update(entity_id, state, timestamp)

    def get_predicted_state(self, entity_id: Hashable, future_time: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Extrapolate to future_time (default: now + extrapolation_time)."""
        if not self.config.prediction_enabled:
            return None
        if future_time is None:
            future_time = self.scheduler.now() + self.config.extrapolation_time
        return self.predictions.predict(entity_id, future_time)

    def get_interpolated_state(self, entity_id: Hashable, render_time: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Interpolate at render_time (default: now - interpolation_time)."""
        if not self.config.prediction_enabled:
            return None
        if render_time is None:
            render_time = self.scheduler.now() - self.config.interpolation_time
        return self.predictions.interpolate(entity_id, render_time)

    # -- quality and stats ---------------------------------------------------

    @property
    def quality(self) -> float:
        return self.quality_adapter.quality

    def set_quality(self, quality: float) -> float:
        return self.quality_adapter.set_quality(quality)

    def get_optimal_update_rate(self, base_rate: int = DEFAULT_BASE_UPDATE_RATE) -> int:
        """
        Updates per second producers should aim for.

        Example:
            base 30Hz, quality 0.5, 200ms average latency -> floor(30 * 0.5 * 0.8) = 12
        """
        # Latency is tracked in seconds: 1 - avg_ms / 1000.
        latency_factor = max(0.1, 1 - self.latency.average)
        return int(math.floor(base_rate * self.quality * latency_factor))

    def get_network_stats(self) -> NetworkStats:
        compression = self.compressor.stats
        return NetworkStats(
            bandwidth_current=self.bandwidth.current_bandwidth(),
            bandwidth_average=self.bandwidth.average,
            bandwidth_peak=self.bandwidth.peak,
            latency_current=self.latency.current * 1000,
            latency_average=self.latency.average * 1000,
            latency_jitter=self.latency.jitter * 1000,
            compression_ratio=compression.ratio,
            compression_total_saved=compression.total_saved,
            compression_total_processed=compression.total_processed,
            prediction_accuracy=self.predictions.stats.accuracy,
            prediction_corrections=self.predictions.stats.corrections,
            quality=self.quality,
            connected=self.connected,
            in_flight=len(self.sender) if self.sender is not None else 0,
        )

    def reset(self) -> None:
        """Drop all history and statistics and cancel in-flight sends."""
        if self.sender is not None:
            self.sender.cancel_all()
        self.predictions.reset()
        self.bandwidth.reset()
        self.quality_adapter.reset()
        self.latency.reset()
        self.compressor.stats.reset()


# ============================================================================
# PERFORMANCE PROFILING - For benchmarks
# ============================================================================

class Profiler:
    """
    Simple wall-clock profiler.

    Example:
        >>> with Profiler("operation") as p:
        ...     pass
        >>> p.elapsed >= 0
        True
    """
    def __init__(self, name: str = "") -> None:
        self.name = name
        self.elapsed = 0.0
        self._start = 0.0

    def __enter__(self) -> 'Profiler':
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.elapsed = time.perf_counter() - self._start
        logger.debug(f"[PROFILE] {self.name}: {self.elapsed * 1000:.2f}ms")


# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

EXIT_FILE_IO = 10
EXIT_INTERRUPTED = 130


def _config_from_args(args: Any) -> OptimizerConfig:
    config = load_config(args.config) if getattr(args, 'config', None) else OptimizerConfig()
    overrides = {
        'algorithm': getattr(args, 'algorithm', None),
        'min_compress_size': getattr(args, 'min_size', None),
        'window_size': getattr(args, 'window', None),
        'lookahead_size': getattr(args, 'lookahead', None),
    }
    for name, value in overrides.items():
        if value is not None:
            setattr(config, name, value)
    return config.validate()


def _read_json_state(path: str) -> Dict[str, Any]:
    with open(path, 'r', encoding='utf-8') as f:
        try:
            state = json.load(f)
        except ValueError as e:
            raise ValidationError(f"{path} is not valid JSON: {e}") from None
        except RecursionError:
            raise ValidationError(f"{path} is nested too deeply") from None
    if not isinstance(state, dict):
        raise ValidationError(f"{path} must contain a JSON object")
    return state


def cli_compress(args: Any) -> int:
    """Compress a file into the NOZ1 container."""
    config = _config_from_args(args)
    with open(args.input, 'rb') as f:
        data = f.read()
    compressor = Compressor(config)
    with Profiler("compress") as p:
        packet = compressor.pack(data)
    with open(args.output, 'wb') as f:
        f.write(packet.to_bytes())
    if not args.quiet:
        state = "compressed" if packet.compressed else "stored (not compressible)"
        print(Colors.success(f"{args.input} -> {args.output}: {state}"))
        print(f"  Original:   {format_size(packet.original_size)}")
        print(f"  Output:     {format_size(len(packet.payload))} ({packet.ratio:.1%})")
        print(f"  Algorithm:  {packet.algorithm}")
        print(f"  Time:       {format_time(p.elapsed)}")
    return 0


def cli_decompress(args: Any) -> int:
    """Restore a file from the NOZ1 container."""
    config = _config_from_args(args)
    with open(args.input, 'rb') as f:
        blob = f.read()
    check_compressed_size(len(blob))
    packet = CompressedPacket.from_bytes(blob)
    data = Compressor(config).unpack(packet)
    with open(args.output, 'wb') as f:
        f.write(data)
    if not args.quiet:
        print(Colors.success(f"{args.input} -> {args.output}: {format_size(len(data))}"))
    return 0


def cli_delta(args: Any) -> int:
    """Encode CURRENT against PREVIOUS."""
    current = _read_json_state(args.current)
    previous = _read_json_state(args.previous)
    encoded = DeltaCodec().encode(current, previous)
    with open(args.output, 'w', encoding='utf-8') as f:
        f.write(encoded.data)
    if not args.quiet:
        kind = "delta" if encoded.is_delta else "full state (delta not smaller)"
        print(Colors.success(f"Wrote {kind} to {args.output} ({len(encoded)} chars)"))
    return 0


def cli_patch(args: Any) -> int:
    """Apply an encoded state to BASE."""
    with open(args.delta, 'r', encoding='utf-8') as f:
        encoded = f.read()
    base = _read_json_state(args.base)
    state = DeltaCodec().decode(encoded, base)
    with open(args.output, 'w', encoding='utf-8') as f:
        json.dump(state, f, indent=2, sort_keys=True)
    if not args.quiet:
        print(Colors.success(f"Wrote {len(state)} keys to {args.output}"))
    return 0


def _benchmark_payload(size: int, rng: random.Random) -> bytes:
    """Replication-like data: repeated entity records with drifting numbers."""
    out = bytearray()
    entity = 0
    while len(out) < size:
        record = {
            "id": f"entity-{entity % 64}",
            "x": round(rng.uniform(-500, 500), 2),
            "y": round(rng.uniform(-500, 500), 2),
            "hp": rng.randint(0, 100),
            "state": rng.choice(["idle", "moving", "attacking"]),
        }
        out += json.dumps(record, sort_keys=True).encode('utf-8')
        if rng.random() < 0.1:
            out += bytes(rng.randint(0, 255) for _ in range(16))
        entity += 1
    return bytes(out[:size])


def cli_benchmark(args: Any) -> int:
    """Compare codecs on synthetic replication traffic."""
    rng = random.Random(args.seed)
    data = _benchmark_payload(args.size * 1024, rng)
    if not args.quiet:
        print(Colors.bold(f"\n{'=' * 60}"))
        print(Colors.bold("  network-optimizer codec benchmark".center(60)))
        print(Colors.bold(f"{'=' * 60}\n"))
        print(f"Payload: {format_size(len(data))}\n")
        print(f"{'codec':<8} {'output':>12} {'ratio':>8} {'compress':>12} {'decompress':>12}")

    for comp_type in (CompressionType.LZ77, CompressionType.ZLIB, CompressionType.LZ4, CompressionType.ZSTD):
        with Profiler(f"{comp_type.value} compress") as pc:
            output = CompressionRegistry.compress(data, comp_type)
        with Profiler(f"{comp_type.value} decompress") as pd:
            restored = CompressionRegistry.decompress(output, comp_type)
        if restored != data:
            raise IntegrityError(f"{comp_type.value} round trip failed")
        if not args.quiet:
            print(
                f"{comp_type.value:<8} {format_size(len(output)):>12} "
                f"{len(output) / len(data):>8.1%} {format_time(pc.elapsed):>12} "
                f"{format_time(pd.elapsed):>12}"
            )
    return 0


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='network-optimizer',
        description='Compression, delta encoding and codec benchmarks for network payloads.',
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('-v', '--verbose', action='store_true', help='log at INFO level')
    parser.add_argument('-q', '--quiet', action='store_true', help='suppress normal output')
    parser.add_argument('--config', help='JSON configuration file')
    sub = parser.add_subparsers(dest='command', required=True)

    def codec_options(p: argparse.ArgumentParser) -> None:
        p.add_argument('--algorithm', choices=[t.value for t in CompressionType])
        p.add_argument('--min-size', type=int, help='minimum size worth compressing')
        p.add_argument('--window', type=int, help='LZ77 window size')
        p.add_argument('--lookahead', type=int, help='LZ77 longest match')

    p = sub.add_parser('compress', help='compress a file')
    p.add_argument('input')
    p.add_argument('-o', '--output', required=True)
    codec_options(p)
    p.set_defaults(func=cli_compress)

    p = sub.add_parser('decompress', help='decompress a file')
    p.add_argument('input')
    p.add_argument('-o', '--output', required=True)
    codec_options(p)
    p.set_defaults(func=cli_decompress)

    p = sub.add_parser('delta', help='delta-encode a JSON state against a previous one')
    p.add_argument('current')
    p.add_argument('previous')
    p.add_argument('-o', '--output', required=True)
    p.set_defaults(func=cli_delta)

    p = sub.add_parser('patch', help='apply an encoded state to a base JSON state')
    p.add_argument('delta')
    p.add_argument('base')
    p.add_argument('-o', '--output', required=True)
    p.set_defaults(func=cli_patch)

    p = sub.add_parser('benchmark', help='compare codecs on synthetic traffic')
    p.add_argument('--size', type=int, default=64, help='payload size in KB (default: 64)')
    p.add_argument('--seed', type=int, default=None)
    p.set_defaults(func=cli_benchmark)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.

    Returns:
        Exit code: 0 on success, the error's code for NetworkOptimizerError,
        10 for file I/O errors, 130 when interrupted
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    try:
        return cast(int, args.func(args))
    except NetworkOptimizerError as e:
        print(Colors.error(f"{type(e).__name__}: {e}"), file=sys.stderr)
        return e.code
    except OSError as e:
        print(Colors.error(f"File I/O error: {e}"), file=sys.stderr)
        return EXIT_FILE_IO
    except KeyboardInterrupt:
        print(Colors.warning("\nOperation cancelled by user"), file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
