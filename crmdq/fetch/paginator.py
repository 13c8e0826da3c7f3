"""Cursor pagination over object listings."""
from __future__ import annotations

import asyncio
from typing import AsyncIterator, List, Optional, Sequence

import structlog

from crmdq.fetch.client import CrmClient
from crmdq.storage.models import Record

LOGGER = structlog.get_logger(__name__)


async def iter_pages(
    client: CrmClient,
    object_type: str,
    properties: Sequence[str] = (),
    *,
    page_size: int = 100,
    after: Optional[str] = None,
    page_pause: float = 0.0,
    max_records: Optional[int] = None,
) -> AsyncIterator[List[Record]]:
    """Yield pages of records until the listing has no ``paging.next.after``.

    ``max_records`` is a soft cap: the page that crosses it is still yielded
    whole, and iteration stops afterwards.
    """
    seen = 0
    cursor = after
    while True:
        page = await client.list_page(object_type, properties, limit=page_size, after=cursor)
        records = [Record.from_api(item) for item in page.get("results") or []]
        client.metrics.incr("pages_fetched")
        client.metrics.incr("records_fetched", len(records))
        seen += len(records)
        cursor = ((page.get("paging") or {}).get("next") or {}).get("after")
        LOGGER.debug("page_fetched", object_type=object_type, count=len(records), total=seen, has_more=bool(cursor))
        if records:
            yield records
        if not cursor:
            return
        if max_records is not None and seen >= max_records:
            LOGGER.info("fetch_capped", object_type=object_type, max_records=max_records, next_after=cursor)
            return
        if page_pause > 0:
            await asyncio.sleep(page_pause)


async def fetch_all(
    client: CrmClient,
    object_type: str,
    properties: Sequence[str] = (),
    **kwargs,
) -> List[Record]:
    """Collect every page into one list; an empty collection yields ``[]``."""
    records: List[Record] = []
    async for page in iter_pages(client, object_type, properties, **kwargs):
        records.extend(page)
    LOGGER.info("fetch_complete", object_type=object_type, count=len(records))
    return records
