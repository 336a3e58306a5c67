import datetime as dt
import json
from typing import Any, Dict, List, Optional

import pytest
import requests

from sipscope.services.collector_client import (
    CollectorClient,
    CollectorError,
    SearchParams,
    build_call_keyed_payload,
    build_search_payload,
    format_session_id,
    local_timezone_minutes,
    merge_search_results,
    to_search_records,
)
from sipscope.services.collector_models import CallRecord, SearchResult

UTC = dt.timezone.utc


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None, content: Optional[bytes] = None) -> None:
        self.status_code = status_code
        if content is None:
            content = json.dumps(body if body is not None else {}).encode("utf-8")
        self.content = content
        self.text = content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.content)


class FakeSession:
    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def _next(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._next("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._next("POST", url, **kwargs)

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        return self._next(method, url, **kwargs)

    def close(self) -> None:
        pass


def _params(**kwargs: Any) -> SearchParams:
    return SearchParams(
        start=dt.datetime(2026, 2, 4, 17, 0, tzinfo=UTC),
        end=dt.datetime(2026, 2, 4, 18, 0, tzinfo=UTC),
        **kwargs,
    )


def test_search_payload_shape() -> None:
    payload = build_search_payload(_params(smart_input="status = 200", call_id="abc"), tz_minutes=-60)

    assert payload["config"]["protocol_id"] == {"name": "SIP", "value": 1}
    assert payload["config"]["protocol_profile"] == {"name": "call", "value": "call"}
    assert payload["param"]["limit"] == 200
    assert payload["param"]["timezone"] == {"name": "Local", "value": -60}
    assert payload["param"]["search"]["1_call"] == [
        {"name": "limit", "value": "200", "type": "string", "hepid": 1},
        {"name": "smartinput", "value": "status = 200", "type": "string", "hepid": 1},
        {"name": "sid", "value": "abc", "type": "string", "hepid": 1},
    ]
    assert payload["timestamp"] == {"from": 1770224400000, "to": 1770228000000}


def test_search_payload_omits_empty_filters() -> None:
    payload = build_search_payload(_params(limit=50), tz_minutes=0)
    assert payload["param"]["search"]["1_call"] == [{"name": "limit", "value": "50", "type": "string", "hepid": 1}]


def test_timezone_is_negated_offset() -> None:
    cet = dt.timezone(dt.timedelta(hours=1))
    assert local_timezone_minutes(dt.datetime(2026, 2, 4, tzinfo=cet)) == -60
    assert local_timezone_minutes(dt.datetime(2026, 2, 4, tzinfo=UTC)) == 0


def test_call_keyed_payload_dedups_call_ids() -> None:
    records = [
        CallRecord(id=1, call_id="a"),
        CallRecord(id=2, call_id="a"),
        CallRecord(id=3, call_id="b"),
        CallRecord(id=4, call_id=""),
    ]
    payload = build_call_keyed_payload(_params(), records, tz_minutes=0)
    assert payload["param"]["search"]["1_call"]["callid"] == ["a", "b"]
    assert payload["param"]["search"]["1_call"]["id"] == [1, 3]


def test_authenticate_stores_bearer_token() -> None:
    session = FakeSession(
        [
            FakeResponse(201, {"token": "tok", "scope": "admin", "message": "ok"}),
            FakeResponse(200, {"data": [{"id": 7, "sid": "x", "srcIp": "10.0.0.1", "create_date": 1000}]}),
        ]
    )
    client = CollectorClient("http://homer:9080/", session=session)

    client.authenticate("admin", "secret")
    result = client.search_calls(_params())

    assert client.authenticated
    assert session.calls[0]["url"] == "http://homer:9080/api/v3/auth"
    assert session.calls[0]["json"] == {"username": "admin", "password": "secret"}
    assert session.calls[1]["url"] == "http://homer:9080/api/v3/search/call/data"
    assert session.calls[1]["headers"]["Authorization"] == "Bearer tok"
    assert result.data[0].call_id == "x"
    assert result.data[0].src_ip == "10.0.0.1"


def test_authenticate_rejects_empty_token_and_bad_status() -> None:
    client = CollectorClient("http://homer", session=FakeSession([FakeResponse(200, {"token": ""})]))
    with pytest.raises(CollectorError, match="empty token"):
        client.authenticate("u", "p")

    client = CollectorClient("http://homer", session=FakeSession([FakeResponse(401, {"message": "denied"})]))
    with pytest.raises(CollectorError) as excinfo:
        client.authenticate("u", "p")
    assert excinfo.value.status_code == 401
    assert excinfo.value.operation == "authenticate"


def test_transport_and_status_errors_name_the_operation() -> None:
    session = FakeSession([requests.ConnectionError("refused"), FakeResponse(500, {"error": "x"})])
    client = CollectorClient("http://homer", session=session)

    with pytest.raises(CollectorError, match="^search calls failed: request failed"):
        client.search_calls(_params())
    with pytest.raises(CollectorError) as excinfo:
        client.get_qos(_params(), [CallRecord(call_id="a")])
    assert excinfo.value.status_code == 500
    assert str(excinfo.value).startswith("get qos failed")


def test_malformed_response_is_a_decode_error() -> None:
    client = CollectorClient("http://homer", session=FakeSession([FakeResponse(200, content=b"<html>")]))
    with pytest.raises(CollectorError, match="failed to decode response"):
        client.search_calls(_params())


def test_null_collections_decode_as_empty() -> None:
    session = FakeSession(
        [
            FakeResponse(200, {"data": None}),
            FakeResponse(200, {"data": {"messages": None}}),
            FakeResponse(200, {"rtcp": {"data": None, "total": 0}, "rtp": None}),
        ]
    )
    client = CollectorClient("http://homer", session=session)
    assert client.search_calls(_params()).data == []
    assert client.get_transaction(_params(), []).data.messages == []
    qos = client.get_qos(_params(), [])
    assert qos.rtcp.data == [] and qos.rtp.data == []


def test_qos_report_node_accepts_scalar_or_list() -> None:
    body = {
        "rtcp": {
            "data": [
                {"sid": "a", "node": ["n1", 2], "raw": "{}"},
                {"sid": "b", "node": "single"},
                {"sid": "c", "node": 5},
            ],
            "total": 3,
        },
        "rtp": {"data": [], "total": 0},
    }
    client = CollectorClient("http://homer", session=FakeSession([FakeResponse(200, body)]))
    reports = client.get_qos(_params(), [CallRecord(call_id="a")]).rtcp.data
    assert [r.nodes for r in reports] == [["n1", "2"], ["single"], ["5"]]


def test_connection_check_and_export() -> None:
    session = FakeSession([FakeResponse(200, {}), FakeResponse(200, content=b"\xd4\xc3\xb2\xa1pcap")])
    client = CollectorClient("http://homer", session=session)

    client.test_connection()
    data = client.export_pcap(_params(call_id="abc"))

    assert session.calls[0]["url"] == "http://homer/api/v3/agent/check"
    assert session.calls[1]["url"] == "http://homer/api/v3/export/call/messages/pcap"
    assert data.startswith(b"\xd4\xc3\xb2\xa1")


def test_connection_check_requires_200() -> None:
    client = CollectorClient("http://homer", session=FakeSession([FakeResponse(503, {})]))
    with pytest.raises(CollectorError) as excinfo:
        client.test_connection()
    assert excinfo.value.status_code == 503


def test_list_aliases() -> None:
    body = {"data": [{"id": 1, "ip": "10.0.0.1", "port": 5060, "alias": "sbc", "captureID": "cap1"}]}
    client = CollectorClient("http://homer", session=FakeSession([FakeResponse(200, body)]))
    (alias,) = client.list_aliases()
    assert alias.alias == "sbc"
    assert alias.capture_id == "cap1"


def test_merge_search_results_dedups_by_id() -> None:
    a = SearchResult(data=[CallRecord(id=1), CallRecord(id=2)])
    b = SearchResult(data=[CallRecord(id=2), CallRecord(id=3)])
    merged = merge_search_results(a, b)
    assert [r.id for r in merged.data] == [1, 2, 3]
    assert merge_search_results(None, b) is b
    assert merge_search_results(a, None) is a


def test_to_search_records_applies_fallbacks() -> None:
    record = CallRecord(
        create_date=1770224400000,
        method="",
        method_text="INVITE",
        to_user="",
        ruri_user="555",
        user_agent="Asterisk PBX 11.13.1~dfsg",
        call_id="824e9152-ab4f-453a-9293-45827b4c96d1",
    )
    (view,) = to_search_records([record])
    assert view.method == "INVITE"
    assert view.to_user == "555"
    assert view.user_agent == "Asterisk 11.13.1"
    assert view.session_id == "824e..96d1"
    assert view.to_dict()["date"] == "2026-02-04T17:00:00+00:00"


def test_format_session_id() -> None:
    assert format_session_id("824e9152-ab4f-453a-9293-45827b4c96d1") == "824e..96d1"
    assert format_session_id("1a675a3e795a2f23@172.31.1.2:5060") == "1a67..2f23@172.31.1.2:5060"
    assert format_session_id("short@h") == "short@h"
    assert format_session_id("") == ""
