"""
Call discovery against the collector's record-oriented search.

A single call can surface through any of its messages, so one page of search
results under-counts calls near the page boundary. Discovery walks backwards
through the time range in bounded batches, accumulating records until enough
distinct Call-IDs are known, then correlates everything it fetched.
"""
from __future__ import annotations

import datetime as dt
import logging
from typing import List, Protocol, Set

from sipscope.logging_setup import category_context
from sipscope.services.call_correlator import CallSession, group_calls
from sipscope.services.collector_client import SearchParams
from sipscope.services.collector_models import CallRecord, SearchResult
from sipscope.time_range import from_epoch_ms

LOGGER = logging.getLogger(__name__)

DEFAULT_BATCH_LIMIT = 200
DEFAULT_MAX_BATCHES = 5


class CallSearcher(Protocol):
    def search_calls(self, params: SearchParams) -> SearchResult: ...


def discover_calls(
    client: CallSearcher,
    params: SearchParams,
    reference_number: str = "",
    max_calls: int = 100,
    batch_limit: int = DEFAULT_BATCH_LIMIT,
    max_batches: int = DEFAULT_MAX_BATCHES,
) -> List[CallSession]:
    """
    Return up to `max_calls` sessions matching `params`, newest first.

    Issues at most `max_batches` sequential searches of `batch_limit` records.
    Each batch's upper bound is one millisecond before the oldest record of
    the previous batch. Stops early on an empty batch, a short batch, or once
    `max_calls` distinct Call-IDs have been seen (checked after the whole
    batch is kept). Collector errors propagate; no partial result is returned.
    """
    if max_calls < 1:
        raise ValueError("max_calls must be at least 1")
    if batch_limit < 1 or max_batches < 1:
        raise ValueError("batch_limit and max_batches must be at least 1")

    seen_call_ids: Set[str] = set()
    discovered: List[CallRecord] = []
    window_end: dt.datetime = params.end

    with category_context("DISCOVERY"):
        for batch in range(max_batches):
            if window_end <= params.start:
                break

            result = client.search_calls(params.with_window(window_end, batch_limit))
            records = result.data
            LOGGER.debug(
                "Discovery batch=%d window_end=%s records=%d",
                batch + 1,
                window_end.isoformat(),
                len(records),
                extra={"category": "DISCOVERY"},
            )
            if not records:
                break

            oldest = min(record.create_date for record in records)
            seen_call_ids.update(record.call_id for record in records)
            discovered.extend(records)

            if len(records) < batch_limit or len(seen_call_ids) >= max_calls:
                break
            window_end = from_epoch_ms(oldest - 1)

        if not discovered:
            LOGGER.info("Discovery found no records", extra={"category": "DISCOVERY"})
            return []

        sessions = group_calls(discovered, reference_number)
        LOGGER.info(
            "Discovery completed records=%d call_ids=%d sessions=%d returned=%d",
            len(discovered),
            len(seen_call_ids),
            len(sessions),
            min(len(sessions), max_calls),
            extra={"category": "DISCOVERY"},
        )
        return sessions[:max_calls]
