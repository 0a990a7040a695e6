"""
Response body decompression.
"""

from __future__ import annotations

import gzip
import zlib
from typing import Optional

import brotli

from harvester.exceptions import ResponseDecodeError


def decode_body(raw: bytes, content_encoding: Optional[str]) -> bytes:
    """
    Decode ``raw`` according to a Content-Encoding header value.

    Supports gzip, deflate (zlib wrapped, falling back to raw deflate) and br.
    Unknown or missing encodings return the body untouched.
    """
    encoding = (content_encoding or "").strip().lower()
    if not raw or encoding in ("", "identity"):
        return raw
    try:
        if encoding in ("gzip", "x-gzip"):
            return gzip.decompress(raw)
        if encoding == "deflate":
            try:
                return zlib.decompress(raw)
            except zlib.error:
                return zlib.decompress(raw, -zlib.MAX_WBITS)
        if encoding == "br":
            return brotli.decompress(raw)
    except (OSError, EOFError, zlib.error, brotli.error) as e:
        raise ResponseDecodeError(f"failed to decode {encoding} body: {e}") from e
    return raw
