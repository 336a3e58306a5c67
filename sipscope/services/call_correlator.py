"""
Call correlation: turns flat signaling records into per-call sessions.

Records sharing one Call-ID become a CallSession. Caller/callee come from the
first INVITE, the outcome from the highest SIP response code seen, and the
direction (when a reference number is given) from number containment.
"""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Sequence, Tuple

from sipscope.services.collector_models import CallRecord, TransactionMessage
from sipscope.services.sip_text import status_code_from_raw
from sipscope.time_range import from_epoch_ms

LOGGER = logging.getLogger(__name__)

DIRECTION_IN = "IN"
DIRECTION_OUT = "OUT"

STATUS_ANSWERED = "answered"
STATUS_BUSY = "busy"
STATUS_CANCELLED = "cancelled"
STATUS_NO_ANSWER = "no answer"
STATUS_FAILED = "failed"
STATUS_RINGING = "ringing"


@dataclass(frozen=True)
class CallSession:
    call_id: str
    start_ms: int
    end_ms: int
    caller: str
    callee: str
    direction: str
    status: str
    records: Tuple[CallRecord, ...]

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms

    @property
    def msg_count(self) -> int:
        return len(self.records)

    @property
    def start_time(self) -> dt.datetime:
        return from_epoch_ms(self.start_ms)

    @property
    def end_time(self) -> dt.datetime:
        return from_epoch_ms(self.end_ms)

    def to_dict(self) -> Dict[str, object]:
        return {
            "call_id": self.call_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_ms": self.duration_ms,
            "caller": self.caller,
            "callee": self.callee,
            "direction": self.direction,
            "status": self.status,
            "msg_count": self.msg_count,
        }


def status_label(code: int) -> str:
    if 200 <= code < 300:
        return STATUS_ANSWERED
    if code == 486:
        return STATUS_BUSY
    if code == 487:
        return STATUS_CANCELLED
    if code in (408, 480):
        return STATUS_NO_ANSWER
    if code >= 400:
        return STATUS_FAILED
    if code >= 100:
        return STATUS_RINGING
    return ""


def _response_code(method: str) -> int:
    try:
        code = int(method)
    except (TypeError, ValueError):
        return 0
    return code if code >= 100 else 0


def derive_status(records: Iterable[CallRecord]) -> str:
    """Label the highest response code found in either the method or the status field."""
    highest = 0
    for record in records:
        highest = max(highest, _response_code(record.method))
        if record.status >= 100:
            highest = max(highest, record.status)
    return status_label(highest)


def detect_direction(caller: str, callee: str, number: str) -> str:
    """OUT when the number matches the caller, IN when it matches the callee, else ''.

    Matching is substring containment in either direction after stripping a
    leading '+', so an empty party matches any number.
    """
    norm = (number or "").removeprefix("+")
    norm_caller = (caller or "").removeprefix("+")
    norm_callee = (callee or "").removeprefix("+")
    if norm in norm_caller or norm_caller in norm:
        return DIRECTION_OUT
    if norm in norm_callee or norm_callee in norm:
        return DIRECTION_IN
    return ""


def _parties(record: CallRecord) -> Tuple[str, str]:
    return record.from_user, record.to_user or record.ruri_user


def _build_session(call_id: str, members: List[CallRecord], reference_number: str) -> CallSession:
    members.sort(key=lambda r: r.create_date)

    caller, callee = "", ""
    for record in members:
        if record.method == "INVITE":
            caller, callee = _parties(record)
            break
    if not caller:
        caller, callee = _parties(members[0])

    return CallSession(
        call_id=call_id,
        start_ms=members[0].create_date,
        end_ms=members[-1].create_date,
        caller=caller,
        callee=callee,
        direction=detect_direction(caller, callee, reference_number) if reference_number else "",
        status=derive_status(members),
        records=tuple(members),
    )


def group_calls(records: Iterable[CallRecord], reference_number: str = "") -> List[CallSession]:
    """Group records by Call-ID; sessions are returned newest first."""
    groups: Dict[str, List[CallRecord]] = {}
    for record in records:
        groups.setdefault(record.call_id, []).append(record)

    sessions = [_build_session(call_id, members, reference_number) for call_id, members in groups.items()]
    sessions.sort(key=lambda s: s.start_ms, reverse=True)
    LOGGER.debug(
        "Grouped records into sessions sessions=%d reference_number=%s",
        len(sessions),
        reference_number or "-",
        extra={"category": "DISCOVERY"},
    )
    return sessions


def derive_route(records: Iterable[CallRecord]) -> List[Tuple[str, str]]:
    """Unique (src, dst) IP hops in first-seen order."""
    pairs: List[Tuple[str, str]] = []
    seen = set()
    for record in records:
        pair = (record.src_ip, record.dst_ip)
        if pair not in seen:
            seen.add(pair)
            pairs.append(pair)
    return pairs


def format_route(pairs: Sequence[Tuple[str, str]]) -> str:
    if not pairs:
        return ""
    chain = [pairs[0][0], pairs[0][1]]
    for src, dst in pairs[1:]:
        if src == chain[-1]:
            chain.append(dst)
        else:
            chain.extend((src, dst))
    return " → ".join(chain)


def refine_with_transactions(
    sessions: Iterable[CallSession],
    messages: Iterable[TransactionMessage],
) -> List[CallSession]:
    """
    Re-derive status and end time from full transaction messages.

    Discovery may only have seen part of a call; the transaction endpoint
    returns every message. End time only ever moves later.
    """
    by_call: Dict[str, List[TransactionMessage]] = {}
    for message in messages:
        by_call.setdefault(message.call_id, []).append(message)

    refined: List[CallSession] = []
    for session in sessions:
        members = by_call.get(session.call_id)
        if not members:
            refined.append(session)
            continue

        highest = 0
        latest = 0
        for message in members:
            latest = max(latest, message.create_date)
            if message.raw and message.is_sip():
                highest = max(highest, status_code_from_raw(message.raw))

        updates: Dict[str, object] = {}
        if highest > 0:
            label = status_label(highest)
            if label:
                updates["status"] = label
        if latest > session.end_ms:
            updates["end_ms"] = latest
        refined.append(replace(session, **updates) if updates else session)
    return refined
