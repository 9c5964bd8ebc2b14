from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import BadRequest, check_bucket_access
from .gateway import MAX_PAGE_SIZE

if TYPE_CHECKING:
    from .gateway import ObjectSummary, StorageGateway

LOG = logging.getLogger("s3_prism.search")

DEFAULT_MAX_RESULTS = 100


@dataclass(frozen=True)
class SearchResult:
    """Matches of one search call, in listing order.

    ``has_more`` only reports matches that were already fetched and cut off
    by ``max_results``. Pages past the point where the scan stopped are never
    looked at, so it can be false while unscanned pages still hold matches.
    """

    bucket: str
    query: str
    results: list[ObjectSummary]
    has_more: bool

    @property
    def count(self) -> int:
        return len(self.results)


async def search_objects(
    gateway: StorageGateway,
    bucket: str,
    query: str,
    *,
    prefix: str = "",
    max_results: int = DEFAULT_MAX_RESULTS,
    allowed_buckets: frozenset[str] | None = None,
    page_size: int = MAX_PAGE_SIZE,
) -> SearchResult:
    """Find keys under *prefix* containing *query*, ignoring case.

    Pages are requested one at a time and the scan stops as soon as enough
    matches have accumulated or the listing has no continuation token.
    Failures of any page propagate; nothing is retried.
    """
    if not query:
        msg = "Search query is required"
        raise BadRequest(msg)
    if max_results < 1:
        msg = "maxResults must be at least 1"
        raise BadRequest(msg)
    check_bucket_access(bucket, allowed_buckets)

    needle = query.lower()
    matches: list[ObjectSummary] = []
    token: str | None = None
    pages = 0
    while True:
        page = await gateway.list_objects(
            bucket,
            prefix=prefix,
            max_keys=page_size,
            continuation_token=token,
        )
        pages += 1
        matches.extend(obj for obj in page.objects if needle in obj.key.lower())
        token = page.next_continuation_token
        if len(matches) >= max_results or not token:
            break

    LOG.debug(
        "search s3://%s/%s for %r: %d matches in %d pages",
        bucket,
        prefix,
        query,
        len(matches),
        pages,
    )
    return SearchResult(
        bucket=bucket,
        query=query,
        results=matches[:max_results],
        has_more=len(matches) > max_results,
    )
