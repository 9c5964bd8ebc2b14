from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from litestar.background_tasks import BackgroundTask
from litestar.response import Response, Stream

from .errors import UpstreamError, check_bucket_access
from .gateway import ByteRange, ObjectRef

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .gateway import ObjectBody, StorageGateway
else:  # pragma: no cover
    AsyncIterator = Any

LOG = logging.getLogger("s3_prism.proxy")

_RANGE_RE = re.compile(r"^bytes=(\d+)-(\d*)$", re.IGNORECASE)

EXPOSED_HEADERS = ("Content-Range", "Accept-Ranges", "Content-Length", "Content-Type")
PREFLIGHT_METHODS = ("GET", "HEAD", "OPTIONS")
PREFLIGHT_HEADERS = ("Range", "Content-Type")
PREFLIGHT_MAX_AGE = 86400


def parse_range(range_header: str | None, total_size: int) -> ByteRange | None:
    """Parse a ``bytes=<start>-[<end>]`` header against an object size.

    Anything that does not describe a satisfiable single range is treated as
    if no range had been sent, so the caller serves the full object. An end
    past the object is clamped to the last byte.
    """
    if not range_header:
        return None
    match = _RANGE_RE.match(range_header.strip())
    if match is None:
        return None
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else total_size - 1
    end = min(end, total_size - 1)
    if start > end:
        return None
    return ByteRange(start=start, end=end)


def cors_headers(origin: str) -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Expose-Headers": ", ".join(EXPOSED_HEADERS),
    }


def preflight_headers(origin: str) -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": ", ".join(PREFLIGHT_METHODS),
        "Access-Control-Allow-Headers": ", ".join(PREFLIGHT_HEADERS),
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Max-Age": str(PREFLIGHT_MAX_AGE),
    }


class RangeProxy:
    """Streams object bodies to clients with HTTP range semantics.

    Each call re-resolves the object's metadata; nothing is cached between
    requests. The body is pulled from upstream one chunk at a time as the
    client consumes it, and the upstream body is closed as soon as the client
    goes away.
    """

    def __init__(
        self,
        gateway: StorageGateway,
        *,
        cors_origin: str,
        allowed_buckets: frozenset[str] | None = None,
        chunk_size: int = 64 * 1024,
        cache_max_age: int = 3600,
    ) -> None:
        self._gateway = gateway
        self._cors_origin = cors_origin
        self._allowed_buckets = allowed_buckets
        self._chunk_size = chunk_size
        self._cache_max_age = cache_max_age

    async def handle(self, ref: ObjectRef, range_header: str | None) -> Stream:
        check_bucket_access(ref.bucket, self._allowed_buckets)

        metadata = await self._gateway.head_object(ref)
        total_size = metadata.content_length
        byte_range = parse_range(range_header, total_size)
        if range_header and byte_range is None:
            LOG.debug(
                "ignoring unusable range %r for %s (size=%d)",
                range_header,
                ref,
                total_size,
            )

        body = await self._gateway.get_object(ref, byte_range)

        headers = {
            "Content-Type": metadata.content_type,
            "Accept-Ranges": "bytes",
            "Cache-Control": f"public, max-age={self._cache_max_age}",
            **cors_headers(self._cors_origin),
        }
        if byte_range is None:
            headers["Content-Length"] = str(total_size)
            status_code = 200
        else:
            headers["Content-Length"] = str(byte_range.length)
            headers["Content-Range"] = (
                f"bytes {byte_range.start}-{byte_range.end}/{total_size}"
            )
            status_code = 206

        LOG.debug(
            "GET %s status=%s length=%s",
            ref,
            status_code,
            headers["Content-Length"],
        )
        # Closing in the background also covers a client disconnect, which
        # cancels the send loop while the iterator is parked at a yield.
        return Stream(
            content=self._iterate(ref, body),
            status_code=status_code,
            headers=headers,
            background=BackgroundTask(body.aclose),
        )

    async def _iterate(self, ref: ObjectRef, body: ObjectBody) -> AsyncIterator[bytes]:
        sent = 0
        try:
            async for chunk in body.iter_chunks(self._chunk_size):
                sent += len(chunk)
                yield chunk
            if sent != body.content_length:
                LOG.warning(
                    "short body for %s: sent %d of %d bytes",
                    ref,
                    sent,
                    body.content_length,
                )
        except UpstreamError:
            # Headers are already committed; the client sees a short body.
            LOG.warning("stream aborted for %s after %d bytes", ref, sent)
            raise
        finally:
            await body.aclose()

    def preflight(self) -> Response:
        return Response(
            content=None,
            status_code=204,
            headers=preflight_headers(self._cors_origin),
        )
