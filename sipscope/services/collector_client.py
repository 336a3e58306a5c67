from __future__ import annotations

import datetime as dt
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

import requests
from pydantic import BaseModel, ValidationError

from sipscope.services.collector_models import (
    Alias,
    CallRecord,
    QosResult,
    SearchResult,
    TransactionResult,
)
from sipscope.services.sip_text import format_user_agent
from sipscope.time_range import from_epoch_ms, to_epoch_ms

LOGGER = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 200
DEFAULT_TIMEOUT_SECONDS = 30.0
SIP_HEPID = 1

AUTH_PATH = "/api/v3/auth"
SEARCH_PATH = "/api/v3/search/call/data"
TRANSACTION_PATH = "/api/v3/call/transaction"
QOS_PATH = "/api/v3/call/report/qos"
EXPORT_PCAP_PATH = "/api/v3/export/call/messages/pcap"
ALIAS_PATH = "/api/v3/alias"
HEALTH_PATH = "/api/v3/agent/check"

_OK_STATUSES = (200, 201)

ModelT = TypeVar("ModelT", bound=BaseModel)


class CollectorError(RuntimeError):
    def __init__(self, operation: str, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.status_code = status_code


@dataclass(frozen=True)
class SearchParams:
    start: dt.datetime
    end: dt.datetime
    smart_input: str = ""
    call_id: str = ""
    limit: int = 0

    def with_window(self, end: dt.datetime, limit: int) -> "SearchParams":
        return SearchParams(start=self.start, end=end, smart_input=self.smart_input, call_id=self.call_id, limit=limit)


@dataclass(frozen=True)
class SearchFilter:
    name: str
    value: str
    type: str = "string"
    hepid: int = SIP_HEPID

    def to_payload(self) -> Dict[str, Any]:
        return {"name": self.name, "value": self.value, "type": self.type, "hepid": self.hepid}


def local_timezone_minutes(now: Optional[dt.datetime] = None) -> int:
    """Collector convention: the negated local UTC offset in minutes."""
    current = now or dt.datetime.now().astimezone()
    offset = current.utcoffset() or dt.timedelta(0)
    return -int(offset.total_seconds() // 60)


def build_search_payload(params: SearchParams, tz_minutes: Optional[int] = None) -> Dict[str, Any]:
    limit = params.limit if params.limit > 0 else DEFAULT_SEARCH_LIMIT
    filters = [SearchFilter("limit", str(limit))]
    if params.smart_input:
        filters.append(SearchFilter("smartinput", params.smart_input))
    if params.call_id:
        filters.append(SearchFilter("sid", params.call_id))

    return {
        "config": {
            "protocol_id": {"name": "SIP", "value": SIP_HEPID},
            "protocol_profile": {"name": "call", "value": "call"},
        },
        "param": {
            "transaction": {},
            "limit": limit,
            "search": {"1_call": [item.to_payload() for item in filters]},
            "location": {},
            "timezone": {
                "name": "Local",
                "value": local_timezone_minutes() if tz_minutes is None else tz_minutes,
            },
        },
        "timestamp": {"from": to_epoch_ms(params.start), "to": to_epoch_ms(params.end)},
    }


def build_call_keyed_payload(
    params: SearchParams,
    records: Iterable[CallRecord],
    tz_minutes: Optional[int] = None,
) -> Dict[str, Any]:
    """Payload for transaction/QoS lookups: unique call ids plus one record id per call."""
    call_ids: List[str] = []
    record_ids: List[int] = []
    seen = set()
    for record in records:
        if not record.call_id or record.call_id in seen:
            continue
        seen.add(record.call_id)
        call_ids.append(record.call_id)
        if record.id:
            record_ids.append(record.id)

    return {
        "param": {
            "transaction": {"call": True, "registration": False, "rest": False},
            "limit": params.limit if params.limit > 0 else DEFAULT_SEARCH_LIMIT,
            "search": {"1_call": {"id": record_ids, "callid": call_ids, "uuid": []}},
            "location": {},
            "timezone": {
                "name": "Local",
                "value": local_timezone_minutes() if tz_minutes is None else tz_minutes,
            },
        },
        "timestamp": {"from": to_epoch_ms(params.start), "to": to_epoch_ms(params.end)},
    }


class CollectorClient:
    """Synchronous client for the call-detail-record collector REST API.

    Not safe to share across threads: the bearer token is plain instance state.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = (base_url or "").strip().rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._token: Optional[str] = None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def authenticated(self) -> bool:
        return bool(self._token)

    def close(self) -> None:
        self._session.close()

    def test_connection(self) -> None:
        LOGGER.debug("Health check url=%s", self._base_url, extra={"category": "COLLECTOR"})
        try:
            resp = self._session.get(self._base_url + HEALTH_PATH, timeout=self._timeout)
        except requests.RequestException as exc:
            raise CollectorError("connect", str(exc)) from exc
        if resp.status_code != 200:
            raise CollectorError("connect", f"collector returned status {resp.status_code}", resp.status_code)

    def authenticate(self, username: str, password: str) -> None:
        LOGGER.info("Authenticating url=%s user=%s", self._base_url, username, extra={"category": "COLLECTOR"})
        try:
            resp = self._session.post(
                self._base_url + AUTH_PATH,
                json={"username": username, "password": password},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise CollectorError("authenticate", str(exc)) from exc

        if resp.status_code not in _OK_STATUSES:
            raise CollectorError(
                "authenticate",
                f"status {resp.status_code}: {resp.text}",
                resp.status_code,
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise CollectorError("authenticate", f"failed to decode auth response: {exc}") from exc

        token = body.get("token") if isinstance(body, dict) else None
        if not token:
            raise CollectorError("authenticate", "authentication returned empty token")
        self._token = str(token)
        LOGGER.debug("Authenticated scope=%s", body.get("scope", "-"), extra={"category": "COLLECTOR"})

    def search_calls(self, params: SearchParams) -> SearchResult:
        body = self._request("search calls", "POST", SEARCH_PATH, build_search_payload(params))
        result = self._decode("search calls", body, SearchResult)
        LOGGER.info(
            "Search completed records=%d limit=%s smartinput=%r",
            len(result.data),
            params.limit,
            params.smart_input,
            extra={"category": "COLLECTOR"},
        )
        return result

    def get_transaction(self, params: SearchParams, records: Iterable[CallRecord]) -> TransactionResult:
        payload = build_call_keyed_payload(params, records)
        body = self._request("get transaction", "POST", TRANSACTION_PATH, payload)
        return self._decode("get transaction", body, TransactionResult)

    def get_qos(self, params: SearchParams, records: Iterable[CallRecord]) -> QosResult:
        payload = build_call_keyed_payload(params, records)
        body = self._request("get qos", "POST", QOS_PATH, payload)
        result = self._decode("get qos", body, QosResult)
        LOGGER.info(
            "QoS fetched rtcp=%d rtp=%d",
            len(result.rtcp.data),
            len(result.rtp.data),
            extra={"category": "QOS"},
        )
        return result

    def export_pcap(self, params: SearchParams) -> bytes:
        return self._request("export pcap", "POST", EXPORT_PCAP_PATH, build_search_payload(params))

    def list_aliases(self) -> List[Alias]:
        body = self._request("list aliases", "GET", ALIAS_PATH, None)
        try:
            decoded = json.loads(body)
            items = (decoded.get("data") or []) if isinstance(decoded, dict) else []
            return [Alias.model_validate(item) for item in items]
        except (ValueError, ValidationError) as exc:
            raise CollectorError("list aliases", f"failed to decode aliases: {exc}") from exc

    def _request(self, operation: str, method: str, path: str, payload: Optional[Dict[str, Any]]) -> bytes:
        url = self._base_url + path
        if payload is not None:
            LOGGER.debug(
                "%s %s payload=%s",
                method,
                url,
                json.dumps(payload, indent=2),
                extra={"category": "COLLECTOR"},
            )
        else:
            LOGGER.debug("%s %s", method, url, extra={"category": "COLLECTOR"})

        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        try:
            resp = self._session.request(method, url, json=payload, headers=headers, timeout=self._timeout)
        except requests.RequestException as exc:
            LOGGER.error("%s request failed url=%s error=%s", operation, url, exc, extra={"category": "ERRORS"})
            raise CollectorError(operation, f"request failed: {exc}") from exc

        if resp.status_code not in _OK_STATUSES:
            LOGGER.error(
                "%s rejected url=%s status=%s",
                operation,
                url,
                resp.status_code,
                extra={"category": "ERRORS"},
            )
            raise CollectorError(
                operation,
                f"collector returned status {resp.status_code}: {resp.text}",
                resp.status_code,
            )
        return resp.content

    @staticmethod
    def _decode(operation: str, body: bytes, model: Type[ModelT]) -> ModelT:
        try:
            return model.model_validate_json(body)
        except ValidationError as exc:
            raise CollectorError(operation, f"failed to decode response: {exc}") from exc


def merge_search_results(a: Optional[SearchResult], b: Optional[SearchResult]) -> Optional[SearchResult]:
    """De-duplicate two results by record id, keeping `a`'s records first."""
    if a is None:
        return b
    if b is None:
        return a
    seen = {record.id for record in a.data}
    merged = list(a.data)
    for record in b.data:
        if record.id not in seen:
            merged.append(record)
            seen.add(record.id)
    return SearchResult(data=merged)


@dataclass(frozen=True)
class SearchRecord:
    """Display view of one search hit."""

    date: dt.datetime
    src_ip: str
    src_port: int
    dst_ip: str
    dst_port: int
    method: str
    from_user: str
    to_user: str
    call_id: str
    session_id: str
    user_agent: str
    cseq: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "src_ip": self.src_ip,
            "src_port": self.src_port,
            "dst_ip": self.dst_ip,
            "dst_port": self.dst_port,
            "method": self.method,
            "from_user": self.from_user,
            "to_user": self.to_user,
            "call_id": self.call_id,
            "session_id": self.session_id,
            "user_agent": self.user_agent,
            "cseq": self.cseq,
        }


def to_search_records(records: Iterable[CallRecord]) -> List[SearchRecord]:
    return [
        SearchRecord(
            date=from_epoch_ms(record.create_date),
            src_ip=record.src_ip,
            src_port=record.src_port,
            dst_ip=record.dst_ip,
            dst_port=record.dst_port,
            method=record.method or record.method_text,
            from_user=record.from_user,
            to_user=record.to_user or record.ruri_user,
            call_id=record.call_id,
            session_id=format_session_id(record.call_id),
            user_agent=format_user_agent(record.user_agent),
            cseq=record.cseq,
        )
        for record in records
    ]


def format_session_id(call_id: str) -> str:
    # "824e9152-ab4f-453a-9293-45827b4c96d1" -> "824e..96d1"
    # "1a675a3e795a2f23@172.31.1.2:5060" -> "1a67..2f23@172.31.1.2:5060"
    if not call_id:
        return ""
    local, sep, host = call_id.partition("@")
    stripped = local.replace("-", "")
    if len(stripped) > 8:
        stripped = f"{stripped[:4]}..{stripped[-4:]}"
    return stripped + sep + host
