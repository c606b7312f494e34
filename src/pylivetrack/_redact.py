"""Redaction of provider request parameters for DEBUG logs."""

from __future__ import annotations

from collections.abc import Mapping

_SECRET_PARAMS: frozenset[str] = frozenset({"key", "api_key", "client", "signature"})


def redact_for_log(params: Mapping[str, str], *, max_string: int = 256) -> dict[str, str]:
    """Copy of query *params* with credentials masked and long values shortened.

    Google Directions authenticates with ``key`` (or ``client`` plus
    ``signature`` for premium accounts); waypoint lists can run to kilobytes.
    """
    redacted: dict[str, str] = {}
    for name, value in params.items():
        if name.lower() in _SECRET_PARAMS:
            redacted[name] = "<redacted>"
        elif len(value) > max_string:
            redacted[name] = f"{value[:max_string]}...({len(value) - max_string} more chars)"
        else:
            redacted[name] = value
    return redacted
