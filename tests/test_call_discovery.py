import datetime as dt
from typing import List

import pytest

from sipscope.services.call_discovery import discover_calls
from sipscope.services.collector_client import CollectorError, SearchParams
from sipscope.services.collector_models import CallRecord, SearchResult
from sipscope.time_range import to_epoch_ms

UTC = dt.timezone.utc
START = dt.datetime(2026, 2, 4, 17, 0, tzinfo=UTC)
END = dt.datetime(2026, 2, 4, 18, 0, tzinfo=UTC)


class FakeSearcher:
    """Serves pre-built batches and records each request's window."""

    def __init__(self, batches: List[List[CallRecord]]) -> None:
        self.batches = list(batches)
        self.requests: List[SearchParams] = []

    def search_calls(self, params: SearchParams) -> SearchResult:
        self.requests.append(params)
        data = self.batches.pop(0) if self.batches else []
        return SearchResult(data=data)


def _batch(call_ids: List[str], first_ts: int) -> List[CallRecord]:
    return [
        CallRecord(id=first_ts - i, create_date=first_ts - i, call_id=cid, method="INVITE")
        for i, cid in enumerate(call_ids)
    ]


def _params() -> SearchParams:
    return SearchParams(start=START, end=END, smart_input="data_header.from_user = '1'")


def test_short_batch_stops_pagination() -> None:
    client = FakeSearcher([_batch(["a", "b", "a"], to_epoch_ms(END) - 10)])

    sessions = discover_calls(client, _params(), max_calls=10, batch_limit=5)

    assert len(client.requests) == 1
    assert client.requests[0].limit == 5
    assert client.requests[0].end == END
    assert client.requests[0].smart_input == "data_header.from_user = '1'"
    assert {s.call_id for s in sessions} == {"a", "b"}


def test_window_walks_backwards_one_millisecond_before_oldest() -> None:
    first_ts = to_epoch_ms(END) - 100
    client = FakeSearcher([_batch(["a", "b"], first_ts), _batch(["c"], first_ts - 50)])

    discover_calls(client, _params(), max_calls=10, batch_limit=2)

    assert len(client.requests) == 2
    oldest_first_batch = first_ts - 1
    assert to_epoch_ms(client.requests[1].end) == oldest_first_batch - 1
    assert client.requests[1].start == START


def test_empty_batch_stops_and_no_records_yields_empty_list() -> None:
    client = FakeSearcher([[]])
    assert discover_calls(client, _params(), max_calls=5) == []
    assert len(client.requests) == 1


def test_never_exceeds_max_batches() -> None:
    base = to_epoch_ms(END) - 10
    batches = [_batch([f"c{n}a", f"c{n}b"], base - n * 100) for n in range(10)]
    client = FakeSearcher(batches)

    sessions = discover_calls(client, _params(), max_calls=100, batch_limit=2, max_batches=3)

    assert len(client.requests) == 3
    assert len(sessions) == 6


def test_stops_once_enough_call_ids_seen_and_truncates_result() -> None:
    base = to_epoch_ms(END) - 10
    client = FakeSearcher([_batch(["a", "b", "c"], base), _batch(["d", "e", "f"], base - 100)])

    sessions = discover_calls(client, _params(), max_calls=2, batch_limit=3)

    assert len(client.requests) == 1
    assert len(sessions) == 2
    # Newest sessions survive the truncation.
    assert [s.call_id for s in sessions] == ["a", "b"]


def test_limit_check_happens_after_the_whole_batch() -> None:
    # The limit is reached on the first record; the rest of the batch is still kept.
    base = to_epoch_ms(END) - 10
    client = FakeSearcher([_batch(["a", "a", "b"], base)])

    sessions = discover_calls(client, _params(), max_calls=1, batch_limit=3)

    assert len(sessions) == 1
    assert sessions[0].call_id == "a"
    assert sessions[0].msg_count == 2


def test_window_before_range_start_stops_discovery() -> None:
    start_ms = to_epoch_ms(START)
    client = FakeSearcher([_batch(["a", "b"], start_ms + 1), _batch(["c"], start_ms - 100)])

    sessions = discover_calls(client, _params(), max_calls=10, batch_limit=2)

    assert len(client.requests) == 1
    assert {s.call_id for s in sessions} == {"a", "b"}


def test_reference_number_sets_direction() -> None:
    record = CallRecord(create_date=to_epoch_ms(END) - 5, call_id="x", method="INVITE", from_user="+100", to_user="200")
    client = FakeSearcher([[record]])
    (session,) = discover_calls(client, _params(), reference_number="100", max_calls=5)
    assert session.direction == "OUT"


def test_collector_errors_propagate() -> None:
    class FailingSearcher:
        def search_calls(self, params: SearchParams) -> SearchResult:
            raise CollectorError("search calls", "boom", 500)

    with pytest.raises(CollectorError, match="search calls failed: boom"):
        discover_calls(FailingSearcher(), _params(), max_calls=5)


def test_max_calls_must_be_positive() -> None:
    with pytest.raises(ValueError):
        discover_calls(FakeSearcher([]), _params(), max_calls=0)
