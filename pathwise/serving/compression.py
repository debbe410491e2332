"""
Adaptive response compression.

Gzips response bodies when the client accepts it, the body is large
enough to be worth it, and the content is not already-compressed media.
"""

from __future__ import annotations

import gzip

from .._types import Response

SKIPPED_MEDIA = ("image/", "video/", "audio/")


def should_compress(response: Response, accept_encoding: str, minimum_size: int = 1024) -> bool:
    if "gzip" not in accept_encoding.lower():
        return False
    if response.size < minimum_size:
        return False
    if "content-encoding" in response.headers:
        return False
    content_type = response.headers.get("content-type", "").lower()
    return not content_type.startswith(SKIPPED_MEDIA)


def compress_response(
    response: Response,
    accept_encoding: str,
    minimum_size: int = 1024,
    level: int = 6,
) -> Response:
    """Return a gzipped copy of ``response``, or ``response`` itself when skipped."""
    if not should_compress(response, accept_encoding, minimum_size):
        return response

    compressed = gzip.compress(response.body, compresslevel=level)
    if len(compressed) >= response.size:
        return response

    headers = dict(response.headers)
    headers["content-encoding"] = "gzip"
    headers["content-length"] = str(len(compressed))
    vary = headers.get("vary")
    headers["vary"] = f"{vary}, Accept-Encoding" if vary else "Accept-Encoding"
    return Response(status=response.status, headers=headers, body=compressed)
