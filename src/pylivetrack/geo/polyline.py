"""Encoded polyline codec.

Each coordinate is scaled by ``10**precision``, rounded, delta-encoded
against the previous point, zig-zag transformed and emitted as 5-bit
groups offset by 63, with ``0x20`` set on every group but the last.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

from pylivetrack._constants import (
    POLYLINE_CHAR_OFFSET,
    POLYLINE_CHUNK_BITS,
    POLYLINE_CHUNK_MASK,
    POLYLINE_CONTINUATION_BIT,
    POLYLINE_PRECISION,
)
from pylivetrack.exceptions import MalformedPolylineError
from pylivetrack.geo.geometry import GeoPoint

_MIN_CHAR = POLYLINE_CHAR_OFFSET
_MAX_CHAR = POLYLINE_CHAR_OFFSET + POLYLINE_CHUNK_MASK + POLYLINE_CONTINUATION_BIT


def _round_half_away(value: float) -> int:
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def _encode_value(value: int) -> str:
    v = ~(value << 1) if value < 0 else value << 1
    chunks: list[str] = []
    while v >= POLYLINE_CONTINUATION_BIT:
        chunks.append(chr((POLYLINE_CONTINUATION_BIT | (v & POLYLINE_CHUNK_MASK)) + POLYLINE_CHAR_OFFSET))
        v >>= POLYLINE_CHUNK_BITS
    chunks.append(chr(v + POLYLINE_CHAR_OFFSET))
    return "".join(chunks)


def _decode_value(encoded: str, index: int) -> tuple[int, int]:
    """Decode one signed value starting at *index*; return ``(value, next_index)``."""
    result = 0
    shift = 0
    length = len(encoded)
    while True:
        if index >= length:
            raise MalformedPolylineError(
                f"Polyline truncated inside a continuation sequence at offset {index}",
                position=index,
            )
        code = ord(encoded[index])
        if not _MIN_CHAR <= code <= _MAX_CHAR:
            raise MalformedPolylineError(
                f"Invalid polyline character {encoded[index]!r} at offset {index}",
                position=index,
            )
        chunk = code - POLYLINE_CHAR_OFFSET
        index += 1
        result |= (chunk & POLYLINE_CHUNK_MASK) << shift
        shift += POLYLINE_CHUNK_BITS
        if chunk < POLYLINE_CONTINUATION_BIT:
            break
    value = ~(result >> 1) if result & 1 else result >> 1
    return value, index


def encode(points: Iterable[tuple[float, float]], precision: int = POLYLINE_PRECISION) -> str:
    """Encode ``(lat, lng)`` pairs into a polyline string."""
    factor = 10**precision
    prev_lat = 0
    prev_lng = 0
    parts: list[str] = []
    for lat, lng in points:
        scaled_lat = _round_half_away(lat * factor)
        scaled_lng = _round_half_away(lng * factor)
        parts.append(_encode_value(scaled_lat - prev_lat))
        parts.append(_encode_value(scaled_lng - prev_lng))
        prev_lat = scaled_lat
        prev_lng = scaled_lng
    return "".join(parts)


def decode(encoded: str, precision: int = POLYLINE_PRECISION) -> list[GeoPoint]:
    """Decode a polyline string into points.

    Raises
    ------
    MalformedPolylineError
        If the string ends mid-value, ends after a latitude without its
        longitude, or contains characters outside the encoding alphabet.
    """
    factor = 10**precision
    points: list[GeoPoint] = []
    index = 0
    lat = 0
    lng = 0
    length = len(encoded)
    while index < length:
        d_lat, index = _decode_value(encoded, index)
        if index >= length:
            raise MalformedPolylineError(
                f"Polyline ends after a latitude without longitude at offset {index}",
                position=index,
            )
        d_lng, index = _decode_value(encoded, index)
        lat += d_lat
        lng += d_lng
        points.append(GeoPoint(lat / factor, lng / factor))
    return points
